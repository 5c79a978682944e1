"""Reconciler: declare -> ensure -> start -> verify, per service.

The reconciler drives one ``ServiceSpec`` through the lifecycle state
machine::

    DECLARED ──► ENSURING ──► STARTING ──► VERIFYING ──► READY
        │            │            │             │
        └────────────┴────────────┴─────────────┴──────► FAILED

Ensuring (each step idempotent, each recorded with ``changed``):
    principal    create the OS user if absent
    directories  home, data, logs and the data directory, owner-only
    config       render and write only if the bytes differ
    unit         install the supervisor unit template

Starting:
    not running            -> start
    running, changes made  -> restart (apply config by restarting)
    running, no changes    -> leave alone

Verifying:
    ``wait_ready`` with the kind's readiness check (or the caller's). A
    timeout fails the run but leaves the process running for diagnosis.

Ready:
    Reached only after the post-start backup obligation is met. A backup
    failure fails the run even though ``result.healthy`` is True.

``ensure`` never raises: the outcome, including the error and the state it
failed in, is returned as a ``ReconcileResult``. ``teardown`` raises
``DestructiveOperationBlocked`` before touching anything when the backup
guard refuses. Every operation runs under the per-service advisory lock.
"""

from __future__ import annotations

import hmac
import os
import shutil
import time
from collections.abc import Callable
from pathlib import Path

from valops.core.errors import (
    DecryptionError,
    DestructiveOperationBlocked,
    InfrastructureError,
    InvalidSecretFormat,
    ValidationError,
    ValopsError,
)
from valops.core.logging import LogContext, get_logger
from valops.core.settings import ValopsSettings
from valops.deploy.backup import (
    BackupGuard,
    PeerIdResolver,
    SecretMaterial,
    fingerprint_resolver,
)
from valops.deploy.health import Check, readiness_check, wait_ready
from valops.deploy.host import LocalHost
from valops.deploy.locks import service_lock
from valops.deploy.render import RenderedConfig, config_path, render_config
from valops.deploy.results import (
    BackupReport,
    IdentityDeployment,
    ReconcileResult,
    ReconcileState,
    SecretStatus,
    ServiceStatus,
    TeardownResult,
)
from valops.deploy.specs import ServiceSpec
from valops.deploy.supervisor import ServiceSupervisorAdapter, render_unit
from valops.deploy.vault import (
    CredentialVault,
    scratch_directory,
    secure_erase,
    validate_secret_format,
)

logger = get_logger(__name__)

IDENTITY_SECRET = "identity-secret"


def _logical_id_resolver(settings: ValopsSettings):
    if settings.logical_id == "peer-id":
        return PeerIdResolver(settings.validator_bin, run_as_owner=settings.manage_ownership)
    return fingerprint_resolver


class Reconciler:
    """Drives ServiceSpecs through the lifecycle state machine.

    Args:
        supervisor: Process supervisor adapter (``SystemdSupervisor``).
        vault: Credential vault (``AgeVault``).
        settings: Host paths and timing.
        host: Filesystem operations; defaults to ``LocalHost``.
        backup_guard: Defaults to a guard over ``settings.backup_root``.
        clock, sleep: Injection points for readiness and lock waits.
    """

    def __init__(
        self,
        supervisor: ServiceSupervisorAdapter,
        vault: CredentialVault,
        settings: ValopsSettings,
        *,
        host: LocalHost | None = None,
        backup_guard: BackupGuard | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.supervisor = supervisor
        self.vault = vault
        self.settings = settings
        self.host = host or LocalHost(manage_ownership=settings.manage_ownership)
        self.backup_guard = backup_guard or BackupGuard(
            vault,
            backup_root=settings.backup_root,
            recipient_path=settings.host_recipient,
            identity_key=settings.host_identity_key,
            verify_existing=settings.verify_existing_backups,
            resolver=_logical_id_resolver(settings),
        )
        self._clock = clock
        self._sleep = sleep

    # ------------------------------------------------------------------
    # ensure
    # ------------------------------------------------------------------

    def ensure(self, spec: ServiceSpec, *, check: Check | None = None) -> ReconcileResult:
        """Bring ``spec`` to READY. Never raises; see ``result.state``."""
        result = ReconcileResult(service=spec.identity, kind=spec.kind.value, owner=spec.owner)

        with LogContext(service_id=spec.identity):
            logger.info("ensure.started", network=spec.network_mode.value)
            try:
                spec.validate()
                with self._lock(spec):
                    self._reconcile(spec, result, check)
            except ValopsError as exc:
                exc.with_context(step=exc.context.step or result.state.value)
                result.fail(exc)
                logger.error(
                    "ensure.failed",
                    failed_in=result.transitions[-2].value,
                    error_type=result.error_type,
                    error=exc.message,
                )
            else:
                logger.info("ensure.ready", changes=result.changes, action=result.action)

        result.mark_complete()
        return result

    def _reconcile(self, spec: ServiceSpec, result: ReconcileResult, check: Check | None) -> None:
        result.transition(ReconcileState.ENSURING)
        rendered = self._ensure_infrastructure(spec, result)
        result.config_digest = rendered.digest

        result.transition(ReconcileState.STARTING)
        handle = self.supervisor.handle_for(spec)
        if not self.supervisor.is_running(handle):
            self.supervisor.start(handle)
            result.action = "start"
        elif result.changes:
            self.supervisor.restart(handle)
            result.action = "restart"
        else:
            result.action = "none"
        result.record("process", changed=result.action != "none", detail=result.action)
        logger.info("ensure.step", step="process", action=result.action)

        result.transition(ReconcileState.VERIFYING)
        probe = wait_ready(
            check or readiness_check(spec, self.supervisor, handle),
            timeout=self.settings.ready_timeout or spec.profile.ready_timeout,
            poll_interval=self.settings.poll_interval,
            description=f"{spec.identity} readiness",
            clock=self._clock,
            sleep=self._sleep,
        )
        result.healthy = True
        result.probe_detail = probe.detail

        result.backup = self.backup_guard.require_fresh_backup(spec)
        result.transition(ReconcileState.READY)

    def _ensure_infrastructure(self, spec: ServiceSpec, result: ReconcileResult) -> RenderedConfig:
        home = spec.home_directory(self.settings.home_root)

        changed = self.supervisor.ensure_principal(spec.owner, home)
        self._step(result, "principal", changed)

        changed = False
        for directory in (home, home / "data", home / "logs", spec.data_directory):
            changed = self.host.ensure_directory(directory, spec.owner, 0o700) or changed
        self._step(result, "directories", changed)

        rendered = render_config(spec, self.settings.home_root)
        self._step(result, "config", self.host.write_if_changed(rendered), str(rendered.path))

        unit = render_unit(spec.kind, self.settings.home_root)
        changed = self.supervisor.install_unit(spec.kind, unit)
        self._step(result, "unit", changed, spec.profile.template)
        return rendered

    @staticmethod
    def _step(result: ReconcileResult, name: str, changed: bool, detail: str = "") -> None:
        result.record(name, changed, detail)
        logger.info("ensure.step", step=name, changed=changed)

    # ------------------------------------------------------------------
    # backup / teardown
    # ------------------------------------------------------------------

    def backup(self, spec: ServiceSpec) -> BackupReport:
        """Run the backup obligation on its own (no lifecycle change)."""
        spec.validate(require_parameters=False)
        with self._lock(spec):
            return self.backup_guard.require_fresh_backup(spec)

    def teardown(self, spec: ServiceSpec) -> TeardownResult:
        """Stop and remove a service, only after its secrets are backed up.

        Raises
        ------
        DestructiveOperationBlocked
            If the backup obligation cannot be met. Nothing is touched.
        """
        spec.validate(require_parameters=False)
        with LogContext(service_id=spec.identity), self._lock(spec):
            try:
                report = self.backup_guard.require_fresh_backup(spec)
            except ValopsError as exc:
                logger.error("teardown.blocked", error=exc.message)
                raise DestructiveOperationBlocked(
                    f"{exc.message}; teardown of {spec.identity} aborted",
                    cause=exc,
                ).with_context(
                    step="backup",
                    service_kind=spec.kind.value,
                    owner=spec.owner,
                    logical_id=exc.context.logical_id,
                ) from exc

            result = TeardownResult(
                service=spec.identity, kind=spec.kind.value, owner=spec.owner, backup=report
            )
            handle = self.supervisor.handle_for(spec)
            principal = self.supervisor.principal_exists(spec.owner)

            running = self.supervisor.is_running(handle)
            if running:
                self.supervisor.stop(handle)
            result.record("stop", running)

            if principal:
                self.supervisor.disable(handle)
            result.record("disable", principal)

            for record in report.records:
                secure_erase(record.secret_path)
                result.erased.append(record.logical_id)
            result.record("erase", bool(report.records))

            removed = self.host.remove_file(config_path(spec, self.settings.home_root))
            result.record("config", removed)

            if principal:
                self.supervisor.remove_principal(spec.owner)
            result.record("principal", principal)

            logger.info("teardown.complete", erased=len(result.erased))
        result.mark_complete()
        return result

    # ------------------------------------------------------------------
    # identity deployment
    # ------------------------------------------------------------------

    def deploy_identity(self, spec: ServiceSpec, encrypted_key: Path) -> IdentityDeployment:
        """Decrypt an identity key and install it for the service principal.

        Installing the same key again is a no-op. A different key already in
        place is never replaced.
        """
        spec.validate(require_parameters=False)
        if IDENTITY_SECRET not in spec.profile.secret_names:
            raise ValidationError(
                f"{spec.kind.value} services do not take an identity key", field="kind"
            )
        if not self.supervisor.principal_exists(spec.owner):
            raise InfrastructureError(
                f"principal {spec.owner} does not exist; run 'valops up' first"
            ).with_context(step="identity", owner=spec.owner)

        network = spec.network_mode.value
        identity_dir = spec.data_directory / network
        target = identity_dir / IDENTITY_SECRET

        with LogContext(service_id=spec.identity), self._lock(spec):
            try:
                ciphertext = Path(encrypted_key).read_bytes()
            except OSError as exc:
                raise DecryptionError(
                    f"encrypted identity key {encrypted_key} is unreadable: {exc}", cause=exc
                ).with_context(step="identity", path=str(encrypted_key)) from exc
            with scratch_directory() as scratch:
                plaintext = self.vault.decrypt(ciphertext, self.settings.host_identity_key)
                canonical = validate_secret_format(plaintext).encode("ascii")

                for directory in (
                    spec.data_directory,
                    identity_dir,
                    identity_dir / "key_manager",
                    identity_dir / "key_manager" / "nonces",
                ):
                    self.host.ensure_directory(directory, spec.owner, 0o700)

                changed = self._install_identity(spec, scratch, canonical, target)

            secret = SecretMaterial("", target, network, canonical)
            logical_id = self.backup_guard.resolver(spec, secret)
            logger.info("identity.deployed", logical_id=logical_id, changed=changed)

        return IdentityDeployment(
            service=spec.identity,
            owner=spec.owner,
            network_mode=network,
            path=str(target),
            logical_id=logical_id,
            changed=changed,
        )

    def _install_identity(
        self, spec: ServiceSpec, scratch: Path, canonical: bytes, target: Path
    ) -> bool:
        if target.exists():
            try:
                current = validate_secret_format(target.read_bytes()).encode("ascii")
            except InvalidSecretFormat:
                current = b""
            if hmac.compare_digest(current, canonical):
                return False
            raise InfrastructureError(
                f"a different identity is already installed at {target}; refusing to replace it"
            ).with_context(step="identity", owner=spec.owner, path=str(target))

        staged = scratch / IDENTITY_SECRET
        fd = os.open(staged, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        with os.fdopen(fd, "wb") as fh:
            fh.write(canonical)

        pending = target.with_name(f".{IDENTITY_SECRET}.partial")
        linked = False
        try:
            shutil.copyfile(staged, pending)
            os.chmod(pending, 0o600)
            if self.host.manage_ownership:
                shutil.chown(pending, user=spec.owner, group=spec.owner)
            os.link(pending, target)
            linked = True
        except OSError as exc:
            raise InfrastructureError(
                f"cannot install identity at {target}: {exc}", cause=exc
            ).with_context(step="identity", owner=spec.owner, path=str(target)) from exc
        finally:
            # Once linked, pending and target share an inode: drop the name only.
            if linked:
                pending.unlink(missing_ok=True)
            else:
                secure_erase(pending)
        return True

    # ------------------------------------------------------------------
    # status
    # ------------------------------------------------------------------

    def status(self, spec: ServiceSpec) -> ServiceStatus:
        """Read-only snapshot of the service on this host."""
        spec.validate(require_parameters=False)
        handle = self.supervisor.handle_for(spec)
        rendered = render_config(spec, self.settings.home_root)

        status = ServiceStatus(
            service=spec.identity,
            kind=spec.kind.value,
            owner=spec.owner,
            unit=handle.instance,
            principal_exists=self.supervisor.principal_exists(spec.owner),
            unit_installed=self.supervisor.unit_installed(spec.kind),
            running=self.supervisor.is_running(handle),
            supervisor_state=self.supervisor.status(handle),
            config_path=str(rendered.path),
            config_in_sync=self.host.read_bytes(rendered.path) == rendered.data,
        )
        for secret in self.backup_guard.discover(spec):
            backup = self.backup_guard.find_backup(secret.logical_id)
            status.secrets.append(
                SecretStatus(
                    logical_id=secret.logical_id,
                    path=str(secret.path),
                    backed_up=backup is not None,
                    backed_up_at=backup.created.isoformat() if backup else None,
                )
            )
        return status

    def _lock(self, spec: ServiceSpec):
        return service_lock(
            self.settings.lock_dir,
            spec.identity,
            timeout=self.settings.lock_timeout,
            clock=self._clock,
            sleep=self._sleep,
        )
