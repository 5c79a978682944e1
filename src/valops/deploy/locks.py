"""Advisory per-service locks.

Two concurrent invocations against the same service (``ensure`` racing a
``teardown``, or two operators) would otherwise interleave config writes and
unit installs. ``service_lock`` serializes them with a non-blocking
``fcntl.flock`` on ``{lock_dir}/{key}.lock``, polled through ``wait_ready``
so lock waits follow the same timeout policy as every other wait.

The kernel drops a flock when its holder dies, so a crashed run never
leaves a stale lock behind. The holder's PID is written into the file for
debugging only.

Usage::

    with service_lock(settings.lock_dir, spec.identity, timeout=30):
        ...
"""

from __future__ import annotations

import contextlib
import fcntl
import os
from collections.abc import Iterator
from pathlib import Path
from typing import IO

from valops.core.errors import HealthCheckTimeout, InfrastructureError
from valops.core.logging import get_logger
from valops.deploy.health import ProbeResult, wait_ready

logger = get_logger(__name__)


@contextlib.contextmanager
def service_lock(
    lock_dir: Path,
    key: str,
    timeout: float = 30.0,
    poll_interval: float = 0.5,
    **wait_kwargs,
) -> Iterator[Path]:
    """Hold the advisory lock for ``key`` for the duration of the block.

    Raises
    ------
    InfrastructureError
        If the lock directory is unusable or another holder keeps the lock
        past ``timeout``.
    """
    lock_dir = Path(lock_dir)
    lock_path = lock_dir / f"{key}.lock"
    try:
        lock_dir.mkdir(parents=True, exist_ok=True)
        fh: IO[str] = open(lock_path, "a+")
    except OSError as exc:
        raise InfrastructureError(
            f"cannot open lock file {lock_path}: {exc}", cause=exc
        ).with_context(step="lock", path=str(lock_path)) from exc

    def _try_acquire() -> ProbeResult:
        try:
            fcntl.flock(fh.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            return ProbeResult(False, f"{key} lock held by another process")
        return ProbeResult(True, f"{key} lock acquired")

    try:
        try:
            wait_ready(
                _try_acquire,
                timeout=timeout,
                poll_interval=poll_interval,
                description=f"lock {key}",
                **wait_kwargs,
            )
        except HealthCheckTimeout as exc:
            raise InfrastructureError(
                f"another valops run holds the lock for {key} (waited {timeout:g}s)",
                cause=exc,
            ).with_context(step="lock", path=str(lock_path)) from exc

        fh.seek(0)
        fh.truncate()
        fh.write(str(os.getpid()))
        fh.flush()
        logger.debug("lock.acquired", key=key, path=str(lock_path))
        try:
            yield lock_path
        finally:
            fcntl.flock(fh.fileno(), fcntl.LOCK_UN)
            logger.debug("lock.released", key=key)
    finally:
        fh.close()
