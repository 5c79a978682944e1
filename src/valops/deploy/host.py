"""Filesystem side of the Ensuring step.

Every operation here is idempotent and reports whether it changed anything,
which is how the reconciler proves a second ``ensure`` performs zero writes.
"""

from __future__ import annotations

import os
import shutil
import tempfile
from pathlib import Path

from valops.core.errors import InfrastructureError
from valops.core.logging import get_logger
from valops.deploy.render import RenderedConfig

logger = get_logger(__name__)


class LocalHost:
    """Directories and config files on the local host.

    With ``manage_ownership`` (the default, needs root) created paths are
    chowned to the service principal. Tests and rootless runs turn it off.
    """

    def __init__(self, manage_ownership: bool = True):
        self.manage_ownership = manage_ownership

    def ensure_directory(self, path: Path, owner: str, mode: int = 0o700) -> bool:
        """Create ``path`` with ``mode`` and owner; return True if anything changed."""
        path = Path(path)
        changed = False
        try:
            if not path.is_dir():
                path.mkdir(parents=True, exist_ok=True)
                changed = True
            if path.stat().st_mode & 0o777 != mode:
                os.chmod(path, mode)
                changed = True
            changed = self._ensure_owner(path, owner) or changed
        except OSError as exc:
            raise InfrastructureError(
                f"cannot prepare directory {path}: {exc}", cause=exc
            ).with_context(step="directories", owner=owner, path=str(path)) from exc
        return changed

    def read_bytes(self, path: Path) -> bytes | None:
        """Current file content, or None when the file does not exist."""
        try:
            return Path(path).read_bytes()
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise InfrastructureError(
                f"cannot read {path}: {exc}", cause=exc
            ).with_context(path=str(path)) from exc

    def write_if_changed(self, rendered: RenderedConfig) -> bool:
        """Write ``rendered`` only when the on-disk bytes differ.

        The new content is written to a sibling temp file and renamed over
        the target, so a reader never sees a half-written config.
        """
        path = rendered.path
        if self.read_bytes(path) == rendered.data:
            changed = False
            try:
                if path.stat().st_mode & 0o777 != rendered.mode:
                    os.chmod(path, rendered.mode)
                    changed = True
                changed = self._ensure_owner(path, rendered.owner) or changed
            except OSError as exc:
                raise InfrastructureError(
                    f"cannot fix permissions on {path}: {exc}", cause=exc
                ).with_context(step="config", owner=rendered.owner, path=str(path)) from exc
            return changed

        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.")
            try:
                with os.fdopen(fd, "wb") as fh:
                    fh.write(rendered.data)
                    fh.flush()
                    os.fsync(fh.fileno())
                os.chmod(tmp_name, rendered.mode)
                self._ensure_owner(Path(tmp_name), rendered.owner)
                os.replace(tmp_name, path)
            except BaseException:
                if os.path.exists(tmp_name):
                    os.unlink(tmp_name)
                raise
        except OSError as exc:
            raise InfrastructureError(
                f"cannot write config {path}: {exc}", cause=exc
            ).with_context(step="config", owner=rendered.owner, path=str(path)) from exc

        logger.info("config.written", path=str(path), digest=rendered.digest[:12])
        return True

    def remove_file(self, path: Path) -> bool:
        try:
            Path(path).unlink()
        except FileNotFoundError:
            return False
        except OSError as exc:
            raise InfrastructureError(
                f"cannot remove {path}: {exc}", cause=exc
            ).with_context(path=str(path)) from exc
        return True

    def _ensure_owner(self, path: Path, owner: str) -> bool:
        if not self.manage_ownership:
            return False
        if path.owner() == owner and path.group() == owner:
            return False
        shutil.chown(path, user=owner, group=owner)
        return True
