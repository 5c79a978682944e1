"""Result models for valops.

Pydantic v2 models that capture the structured outcome of every lifecycle
operation. They replace grep-parsed status lines: the CLI renders them as
rich tables or dumps them with ``model_dump_json(indent=2)``, and tests
assert on fields rather than on log text.

Key Concepts:
    ReconcileState: DECLARED -> ENSURING -> STARTING -> VERIFYING -> READY,
        with FAILED reachable from any state.
    StepRecord: One idempotent Ensuring step and whether it changed the host.
    BackupReport: What the backup guard found and did, per logical id.
    ReconcileResult: Outcome of ``Reconciler.ensure``. ``mark_complete()``
        finalises timestamps and duration.
    TeardownResult / ServiceStatus: Outcomes of ``teardown`` and ``status``.

Tags:
    results, models, pydantic, reconcile, backup, status
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


def _now() -> str:
    return datetime.now(UTC).isoformat()


def _duration(started_at: str, completed_at: str) -> float:
    start = datetime.fromisoformat(started_at)
    end = datetime.fromisoformat(completed_at)
    return (end - start).total_seconds()


class ReconcileState(str, Enum):
    """States of the per-service reconciliation machine."""

    DECLARED = "declared"
    ENSURING = "ensuring"
    STARTING = "starting"
    VERIFYING = "verifying"
    READY = "ready"
    FAILED = "failed"


class StepRecord(BaseModel):
    """One idempotent step and whether it changed anything."""

    name: str
    changed: bool = False
    detail: str = ""


class BackupRecord(BaseModel):
    """Backup status of one discovered secret."""

    logical_id: str
    secret_path: str
    backup_path: str
    network_mode: str | None = None
    created: bool = False
    verified: bool = False


class BackupReport(BaseModel):
    """Result of ``BackupGuard.require_fresh_backup``."""

    records: list[BackupRecord] = Field(default_factory=list)

    @property
    def created(self) -> list[BackupRecord]:
        return [r for r in self.records if r.created]

    @property
    def secrets_found(self) -> int:
        return len(self.records)


class ReconcileResult(BaseModel):
    """Result of ``Reconciler.ensure``."""

    service: str
    kind: str
    owner: str
    state: ReconcileState = ReconcileState.DECLARED
    transitions: list[ReconcileState] = Field(default_factory=lambda: [ReconcileState.DECLARED])
    steps: list[StepRecord] = Field(default_factory=list)
    action: str | None = None  # "start", "restart" or "none"
    healthy: bool = False
    probe_detail: str = ""
    config_digest: str | None = None
    backup: BackupReport | None = None
    started_at: str = Field(default_factory=_now)
    completed_at: str | None = None
    duration_seconds: float = 0.0
    error: dict[str, Any] | None = None
    error_type: str | None = None

    def transition(self, state: ReconcileState) -> None:
        self.state = state
        self.transitions.append(state)

    def record(self, name: str, changed: bool, detail: str = "") -> StepRecord:
        step = StepRecord(name=name, changed=changed, detail=detail)
        self.steps.append(step)
        return step

    @property
    def changes(self) -> int:
        """Number of steps that changed the host."""
        return sum(1 for s in self.steps if s.changed)

    @property
    def succeeded(self) -> bool:
        return self.state is ReconcileState.READY

    def fail(self, exc: Exception) -> None:
        self.transition(ReconcileState.FAILED)
        self.error_type = type(exc).__name__
        to_dict = getattr(exc, "to_dict", None)
        self.error = to_dict() if callable(to_dict) else {"message": str(exc)}

    def mark_complete(self) -> None:
        """Finalise timestamps and duration."""
        self.completed_at = _now()
        self.duration_seconds = _duration(self.started_at, self.completed_at)


class TeardownResult(BaseModel):
    """Result of ``Reconciler.teardown`` (only produced once the guard approved)."""

    service: str
    kind: str
    owner: str
    backup: BackupReport
    steps: list[StepRecord] = Field(default_factory=list)
    erased: list[str] = Field(default_factory=list)
    started_at: str = Field(default_factory=_now)
    completed_at: str | None = None
    duration_seconds: float = 0.0

    def record(self, name: str, changed: bool, detail: str = "") -> StepRecord:
        step = StepRecord(name=name, changed=changed, detail=detail)
        self.steps.append(step)
        return step

    def mark_complete(self) -> None:
        self.completed_at = _now()
        self.duration_seconds = _duration(self.started_at, self.completed_at)


class IdentityDeployment(BaseModel):
    """Result of ``Reconciler.deploy_identity``."""

    service: str
    owner: str
    network_mode: str
    path: str
    logical_id: str
    changed: bool


class SecretStatus(BaseModel):
    logical_id: str
    path: str
    backed_up: bool
    backed_up_at: str | None = None


class ServiceStatus(BaseModel):
    """Read-only snapshot of one service's state on the host."""

    service: str
    kind: str
    owner: str
    unit: str
    principal_exists: bool = False
    unit_installed: bool = False
    running: bool = False
    supervisor_state: str = "unknown"
    config_path: str
    config_in_sync: bool = False
    secrets: list[SecretStatus] = Field(default_factory=list)
    checked_at: str = Field(default_factory=_now)

    @property
    def all_backed_up(self) -> bool:
        return all(s.backed_up for s in self.secrets)
