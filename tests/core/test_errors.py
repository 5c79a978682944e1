"""Tests for valops.core.errors and valops.core.settings."""

from __future__ import annotations

from pathlib import Path

import pytest


class TestErrorHierarchy:
    """Categories and retry defaults per error class."""

    def test_validation_error_is_final(self):
        from valops.core.errors import ErrorCategory, ValidationError

        err = ValidationError("owner missing", field="owner", missing=["owner"])
        assert err.category == ErrorCategory.VALIDATION
        assert err.retryable is False
        assert err.to_dict()["missing"] == ["owner"]
        assert err.to_dict()["field"] == "owner"

    def test_infrastructure_error_is_retryable(self):
        from valops.core.errors import InfrastructureError

        assert InfrastructureError("useradd failed").retryable is True

    def test_credential_errors_share_base(self):
        from valops.core.errors import (
            CredentialError,
            DecryptionError,
            EncryptionError,
            ErrorCategory,
            InvalidSecretFormat,
        )

        for cls in (EncryptionError, DecryptionError, InvalidSecretFormat):
            err = cls("boom")
            assert isinstance(err, CredentialError)
            assert err.category == ErrorCategory.CREDENTIAL
            assert err.retryable is False

    def test_backup_and_safety_categories(self):
        from valops.core.errors import (
            BackupObligationUnmet,
            DestructiveOperationBlocked,
            ErrorCategory,
        )

        assert BackupObligationUnmet("x").category == ErrorCategory.BACKUP
        assert DestructiveOperationBlocked("x").category == ErrorCategory.SAFETY

    def test_retryable_override(self):
        from valops.core.errors import InfrastructureError

        assert InfrastructureError("x", retryable=False).retryable is False


class TestErrorContext:
    """Context attachment and serialization."""

    def test_with_context_sets_known_fields(self):
        from valops.core.errors import InfrastructureError

        err = InfrastructureError("mkdir failed").with_context(
            step="directories", owner="alice", path="/home/alice"
        )
        assert err.context.step == "directories"
        assert err.to_dict()["context"] == {
            "step": "directories",
            "owner": "alice",
            "path": "/home/alice",
        }

    def test_unknown_keys_go_to_metadata(self):
        from valops.core.errors import InfrastructureError

        err = InfrastructureError("x").with_context(exit_code=9)
        assert err.context.metadata == {"exit_code": 9}
        assert err.to_dict()["context"] == {"exit_code": 9}

    def test_cause_is_chained(self):
        from valops.core.errors import EncryptionError

        cause = OSError("disk full")
        err = EncryptionError("write failed", cause=cause)
        assert err.__cause__ is cause
        assert err.to_dict()["cause"] == "disk full"

    def test_health_timeout_details(self):
        from valops.core.errors import HealthCheckTimeout

        err = HealthCheckTimeout("late", timeout=5, attempts=3, last_detail="refused")
        data = err.to_dict()
        assert data["timeout"] == 5
        assert data["attempts"] == 3
        assert data["last_detail"] == "refused"

    def test_repr(self):
        from valops.core.errors import ValidationError

        assert repr(ValidationError("bad")) == "ValidationError('bad', category=VALIDATION)"


class TestSettings:
    """ValopsSettings defaults and environment overrides."""

    def test_key_paths_default_under_backup_root(self, tmp_path: Path):
        from valops.core.settings import ValopsSettings

        s = ValopsSettings(backup_root=tmp_path)
        assert s.host_identity_key == tmp_path / "host-identity.key"
        assert s.host_recipient == tmp_path / "host-identity.pub"

    def test_env_prefix(self, monkeypatch, tmp_path: Path):
        from valops.core.settings import ValopsSettings

        monkeypatch.setenv("VALOPS_HOME_ROOT", str(tmp_path))
        monkeypatch.setenv("VALOPS_READY_TIMEOUT", "42")
        s = ValopsSettings()
        assert s.home_root == tmp_path
        assert s.ready_timeout == 42

    def test_non_positive_timeout_rejected(self):
        from pydantic import ValidationError
        from valops.core.settings import ValopsSettings

        with pytest.raises(ValidationError):
            ValopsSettings(poll_interval=0)
