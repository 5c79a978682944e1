"""Service lifecycle for blockchain node fleets.

Key Concepts:
    ServiceSpec: Frozen declaration of one service instance (kind, owner,
        network, data directory, parameters).
    Reconciler: Drives a spec through DECLARED -> ENSURING -> STARTING ->
        VERIFYING -> READY and owns teardown, backups and identity deployment.
    BackupGuard: Fail-closed "no destructive action without a verified
        encrypted backup".
    AgeVault: age-based encryption of identity secrets.
    SystemdSupervisor: systemctl/useradd adapter; valops never forks the
        node binaries itself.

Architecture::

    ┌──────────────────────────────────────────────────────────────┐
    │                         Reconciler                            │
    ├───────────────┬───────────────┬──────────────┬───────────────┤
    │ ConfigRenderer│ Supervisor    │ HealthProbe  │ BackupGuard   │
    │ (render)      │ (supervisor)  │ (health)     │ (backup)      │
    ├───────────────┴───────────────┴──────────────┼───────────────┤
    │ LocalHost (host) │ service_lock (locks)      │ AgeVault      │
    └──────────────────────────────────────────────┴───────────────┘

Example:
    >>> from valops.deploy import ServiceKind, ServiceSpec
    >>> spec = ServiceSpec(ServiceKind.INDEXER, "alice", "testnet", "/home/alice/data/titan")
    >>> spec.identity
    'indexer-alice'
"""

from __future__ import annotations

from valops.deploy.backup import BackupGuard, PeerIdResolver, fingerprint_logical_id
from valops.deploy.reconciler import Reconciler
from valops.deploy.render import RenderedConfig, render_config
from valops.deploy.results import (
    BackupReport,
    ReconcileResult,
    ReconcileState,
    ServiceStatus,
    TeardownResult,
)
from valops.deploy.specs import NetworkMode, ServiceKind, ServiceSpec, get_profile, load_fleet
from valops.deploy.supervisor import ManagedProcessHandle, ServiceSupervisorAdapter, SystemdSupervisor
from valops.deploy.vault import AgeVault, CredentialVault

__all__ = [
    "AgeVault",
    "BackupGuard",
    "BackupReport",
    "CredentialVault",
    "ManagedProcessHandle",
    "NetworkMode",
    "PeerIdResolver",
    "ReconcileResult",
    "ReconcileState",
    "Reconciler",
    "RenderedConfig",
    "ServiceKind",
    "ServiceSpec",
    "ServiceStatus",
    "ServiceSupervisorAdapter",
    "SystemdSupervisor",
    "TeardownResult",
    "fingerprint_logical_id",
    "get_profile",
    "load_fleet",
    "render_config",
]
