"""Host-level settings for valops.

``ValopsSettings`` gathers every path and timing knob the reconciler needs.
It is constructed once at the process boundary (the CLI) and handed to the
reconciler explicitly; core code never reads environment variables itself.

Environment variables use the ``VALOPS_`` prefix, and a ``.env`` file in the
working directory is honored::

    VALOPS_BACKUP_ROOT=/srv/valops/age
    VALOPS_READY_TIMEOUT=300

Tags:
    settings, configuration, pydantic-settings, valops
"""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _age_dir() -> Path:
    return Path.home() / ".valops" / "age"


class ValopsSettings(BaseSettings):
    """Settings shared by every valops command.

    Fields
    ──────
    home_root              : Parent of each service principal's home directory
    unit_dir               : Where supervisor unit templates are installed
    backup_root            : Operator-owned directory holding ``{logical_id}.enc``
    host_identity_key      : age private key used to decrypt identities
    host_recipient         : age public key (recipient) used for backups
    lock_dir               : Directory for per-service advisory locks
    ready_timeout          : Seconds to wait for readiness (None: the kind's default)
    poll_interval          : Seconds between readiness probes
    lock_timeout           : Seconds to wait for a held service lock
    manage_ownership       : chown files to the service principal (needs root)
    verify_existing_backups: Decrypt existing backups to confirm they still match
    logical_id             : Backup naming: "fingerprint" (sha256 prefix) or "peer-id"
    validator_bin          : Validator executable used to derive the peer id
    """

    model_config = SettingsConfigDict(
        env_prefix="VALOPS_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Layout ───────────────────────────────────────────────────
    home_root: Path = Path("/home")
    unit_dir: Path = Path("/etc/systemd/system")
    backup_root: Path = Field(default_factory=_age_dir)
    host_identity_key: Path | None = None
    host_recipient: Path | None = None
    lock_dir: Path = Field(default_factory=lambda: Path.home() / ".valops" / "locks")

    # ── Timing ───────────────────────────────────────────────────
    ready_timeout: float | None = Field(default=None, gt=0)
    poll_interval: float = Field(default=2.0, gt=0)
    lock_timeout: float = Field(default=30.0, gt=0)

    # ── Behavior ─────────────────────────────────────────────────
    manage_ownership: bool = True
    verify_existing_backups: bool = False
    logical_id: Literal["fingerprint", "peer-id"] = "fingerprint"
    validator_bin: str = "validator"

    # ── Observability ────────────────────────────────────────────
    log_level: str = "INFO"
    json_logs: bool | None = None

    @model_validator(mode="after")
    def _default_key_paths(self) -> ValopsSettings:
        if self.host_identity_key is None:
            self.host_identity_key = self.backup_root / "host-identity.key"
        if self.host_recipient is None:
            self.host_recipient = self.backup_root / "host-identity.pub"
        return self
