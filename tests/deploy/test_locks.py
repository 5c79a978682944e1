"""Tests for per-service advisory locks."""

from __future__ import annotations

from pathlib import Path

import pytest

from conftest import FakeClock


class TestServiceLock:
    """flock-based mutual exclusion."""

    def test_acquire_writes_pid(self, tmp_path: Path):
        import os

        from valops.deploy.locks import service_lock

        with service_lock(tmp_path / "locks", "validator-alice") as path:
            assert path == tmp_path / "locks" / "validator-alice.lock"
            assert path.read_text() == str(os.getpid())

    def test_same_key_contends(self, tmp_path: Path, clock: FakeClock):
        from valops.core.errors import InfrastructureError
        from valops.deploy.locks import service_lock

        with service_lock(tmp_path, "indexer-bob"):
            with pytest.raises(InfrastructureError, match="holds the lock for indexer-bob") as exc_info:
                with service_lock(tmp_path, "indexer-bob", timeout=2, poll_interval=0.5, clock=clock, sleep=clock.sleep):
                    pass
        assert exc_info.value.context.step == "lock"
        assert sum(clock.sleeps) == 2

    def test_different_keys_independent(self, tmp_path: Path):
        from valops.deploy.locks import service_lock

        with service_lock(tmp_path, "indexer-bob"):
            with service_lock(tmp_path, "validator-bob", timeout=1):
                pass

    def test_released_on_exit(self, tmp_path: Path):
        from valops.deploy.locks import service_lock

        with pytest.raises(RuntimeError):
            with service_lock(tmp_path, "indexer-bob"):
                raise RuntimeError("boom")
        with service_lock(tmp_path, "indexer-bob", timeout=1):
            pass

    def test_unusable_lock_dir(self, tmp_path: Path):
        from valops.core.errors import InfrastructureError
        from valops.deploy.locks import service_lock

        blocker = tmp_path / "locks"
        blocker.write_text("")
        with pytest.raises(InfrastructureError, match="cannot open lock file"):
            with service_lock(blocker, "indexer-bob"):
                pass
