"""Process supervisor adapter.

valops never forks the node binaries itself. Start/stop/status are delegated
to the host's process supervisor through ``ServiceSupervisorAdapter``; the
reconciler only sees this interface, so tests substitute an in-memory fake.

``SystemdSupervisor`` is the production implementation. Unit templates use
``%i`` instantiation, so one installed template (``titan@.service``) serves
every owner (``titan@alice.service``, ``titan@bob.service``). Templates
refer to the host's home root as ``@HOME_ROOT@``; ``render_unit`` fills it
in before installation.

The same class manages the service principals (``useradd``/``userdel``/``id``),
since on a systemd host the principal and its instance unit share a lifecycle.

Every command goes through ``_run()``, which maps a non-zero exit or a
timeout to ``InfrastructureError`` carrying the step and the stderr.
"""

from __future__ import annotations

import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass
from importlib import resources
from pathlib import Path

from valops.core.errors import InfrastructureError
from valops.core.logging import get_logger
from valops.deploy.specs import ServiceKind, ServiceSpec, get_profile

HOME_ROOT_TOKEN = b"@HOME_ROOT@"

logger = get_logger(__name__)


@dataclass(frozen=True)
class ManagedProcessHandle:
    """Supervisor-level identifier: unit template plus owning principal."""

    unit: str
    owner: str

    @property
    def instance(self) -> str:
        return f"{self.unit}{self.owner}.service"


def unit_template_path(kind: ServiceKind) -> Path:
    """Path of the unit template shipped with valops for ``kind``."""
    ref = resources.files("valops.deploy") / "units" / get_profile(kind).template
    return Path(str(ref))


def render_unit(kind: ServiceKind, home_root: Path) -> bytes:
    """Unit file for ``kind`` with the host's home root substituted."""
    template_path = unit_template_path(kind)
    try:
        template = template_path.read_bytes()
    except OSError as exc:
        raise InfrastructureError(
            f"unit template {template_path} is unreadable", cause=exc
        ).with_context(step="unit", service_kind=kind.value, path=str(template_path)) from exc
    return template.replace(HOME_ROOT_TOKEN, str(Path(home_root)).rstrip("/").encode())


class ServiceSupervisorAdapter(ABC):
    """Interface over the external process supervisor."""

    def handle_for(self, spec: ServiceSpec) -> ManagedProcessHandle:
        return ManagedProcessHandle(unit=spec.profile.unit, owner=spec.owner)

    # ── Units ────────────────────────────────────────────────────

    @abstractmethod
    def install_unit(self, kind: ServiceKind, unit: bytes) -> bool:
        """Install the rendered unit for ``kind``; return True if anything changed."""

    @abstractmethod
    def unit_installed(self, kind: ServiceKind) -> bool: ...

    # ── Process state ────────────────────────────────────────────

    @abstractmethod
    def is_running(self, handle: ManagedProcessHandle) -> bool: ...

    @abstractmethod
    def start(self, handle: ManagedProcessHandle) -> None: ...

    @abstractmethod
    def stop(self, handle: ManagedProcessHandle) -> None: ...

    @abstractmethod
    def restart(self, handle: ManagedProcessHandle) -> None: ...

    @abstractmethod
    def status(self, handle: ManagedProcessHandle) -> str:
        """Supervisor's state word for the instance (``active``, ``inactive``, ...)."""

    # ── Principals ───────────────────────────────────────────────

    @abstractmethod
    def principal_exists(self, owner: str) -> bool: ...

    @abstractmethod
    def ensure_principal(self, owner: str, home: Path) -> bool:
        """Create the OS principal if absent; return True if it was created."""

    # ── Destructive (only after backup guard approval) ──────────

    @abstractmethod
    def disable(self, handle: ManagedProcessHandle) -> None: ...

    @abstractmethod
    def remove_principal(self, owner: str) -> None: ...


class SystemdSupervisor(ServiceSupervisorAdapter):
    """ServiceSupervisorAdapter over ``systemctl`` and the shadow-utils CLIs."""

    def __init__(self, unit_dir: Path = Path("/etc/systemd/system"), timeout: float = 60.0):
        self.unit_dir = Path(unit_dir)
        self._timeout = timeout

    # ── Units ────────────────────────────────────────────────────

    def install_unit(self, kind: ServiceKind, unit: bytes) -> bool:
        profile = get_profile(kind)
        target = self.unit_dir / profile.template
        try:
            if target.exists() and target.read_bytes() == unit:
                return False
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(unit)
            target.chmod(0o644)
        except OSError as exc:
            raise InfrastructureError(
                f"cannot install unit {target}: {exc}", cause=exc
            ).with_context(step="unit", service_kind=kind.value, unit=profile.template) from exc

        self._run(["systemctl", "daemon-reload"], step="unit")
        logger.info("unit.installed", unit=profile.template, path=str(target))
        return True

    def unit_installed(self, kind: ServiceKind) -> bool:
        return (self.unit_dir / get_profile(kind).template).is_file()

    # ── Process state ────────────────────────────────────────────

    def is_running(self, handle: ManagedProcessHandle) -> bool:
        result = self._run(["systemctl", "is-active", "--quiet", handle.instance], check=False)
        return result.returncode == 0

    def start(self, handle: ManagedProcessHandle) -> None:
        self._run(["systemctl", "enable", "--now", handle.instance], step="start", owner=handle.owner)

    def stop(self, handle: ManagedProcessHandle) -> None:
        self._run(["systemctl", "stop", handle.instance], step="stop", owner=handle.owner)

    def restart(self, handle: ManagedProcessHandle) -> None:
        self._run(["systemctl", "restart", handle.instance], step="restart", owner=handle.owner)

    def status(self, handle: ManagedProcessHandle) -> str:
        result = self._run(["systemctl", "is-active", handle.instance], check=False)
        return result.stdout.strip() or "unknown"

    # ── Principals ───────────────────────────────────────────────

    def principal_exists(self, owner: str) -> bool:
        return self._run(["id", "-u", owner], check=False).returncode == 0

    def ensure_principal(self, owner: str, home: Path) -> bool:
        if self.principal_exists(owner):
            return False
        self._run(
            ["useradd", "--create-home", "--home-dir", str(home), "--shell", "/bin/bash", owner],
            step="principal",
            owner=owner,
        )
        logger.info("principal.created", owner=owner, home=str(home))
        return True

    # ── Destructive ──────────────────────────────────────────────

    def disable(self, handle: ManagedProcessHandle) -> None:
        self._run(["systemctl", "disable", handle.instance], step="disable", owner=handle.owner)

    def remove_principal(self, owner: str) -> None:
        if not self.principal_exists(owner):
            return
        self._run(["userdel", "--remove", owner], step="remove_principal", owner=owner)
        logger.info("principal.removed", owner=owner)

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _run(
        self,
        cmd: list[str],
        *,
        check: bool = True,
        step: str | None = None,
        owner: str | None = None,
    ) -> subprocess.CompletedProcess[str]:
        """Run a supervisor CLI command."""
        logger.debug("supervisor.exec", cmd=" ".join(cmd))
        try:
            result = subprocess.run(cmd, capture_output=True, text=True, timeout=self._timeout)
        except subprocess.TimeoutExpired as exc:
            raise InfrastructureError(
                f"{' '.join(cmd)} timed out after {self._timeout:g}s", cause=exc
            ).with_context(step=step, owner=owner) from exc
        except OSError as exc:
            raise InfrastructureError(
                f"cannot run {cmd[0]}: {exc}", cause=exc
            ).with_context(step=step, owner=owner) from exc
        if check and result.returncode != 0:
            raise InfrastructureError(
                f"{' '.join(cmd)} failed (exit {result.returncode}): {result.stderr.strip()}"
            ).with_context(step=step, owner=owner)
        return result
