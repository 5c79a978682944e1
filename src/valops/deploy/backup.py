"""Backup guard: no destructive action without a verified encrypted backup.

The guard reads every piece of irreplaceable secret material a service keeps
(validator identity keys at ``{data_dir}/{network}/identity-secret``) and
makes sure each one has an encrypted backup ``{backup_root}/{logical_id}.enc`` on disk.

Rules enforced here:

- **Fail closed.** Any doubt (unreadable data directory, malformed secret,
  missing recipient key, ``age`` offline, file absent after encryption)
  raises ``BackupObligationUnmet``. Callers on a destructive path convert
  that into ``DestructiveOperationBlocked`` before touching anything.
- **Create at most once.** An existing backup for a logical id satisfies the
  obligation and is never re-encrypted or overwritten.
- **Trust, then verify.** After encrypting, existence is checked again.
- **Never cached.** The manifest is recomputed by scanning on every call.

Logical ids:
    ``fingerprint_logical_id`` derives the id from the secret itself (first
    32 hex digits of its sha256) and needs no external tool.
    ``PeerIdResolver`` asks the validator binary for the node's public peer
    id (``validator --generate-peer-id``), which is what operators see on
    the network. The reconciler uses it when ``VALOPS_LOGICAL_ID=peer-id``.
"""

from __future__ import annotations

import hashlib
import hmac
import re
import subprocess
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

from valops.core.errors import BackupObligationUnmet, InfrastructureError, ValopsError
from valops.core.logging import get_logger
from valops.deploy.results import BackupRecord, BackupReport
from valops.deploy.specs import ServiceSpec
from valops.deploy.vault import CredentialVault, read_recipient, validate_secret_format

logger = get_logger(__name__)

BACKUP_SUFFIX = ".enc"


@dataclass(frozen=True)
class SecretMaterial:
    """Secret bytes discovered on disk. ``plaintext`` never appears in repr."""

    logical_id: str
    path: Path
    network_mode: str | None
    plaintext: bytes = field(repr=False)


@dataclass(frozen=True)
class EncryptedBackup:
    logical_id: str
    path: Path
    created: datetime


LogicalIdResolver = Callable[[ServiceSpec, SecretMaterial], str]


def fingerprint_logical_id(canonical: str) -> str:
    """Stable id for a secret: first 32 hex digits of sha256(secret)."""
    return hashlib.sha256(canonical.encode("ascii")).hexdigest()[:32]


def fingerprint_resolver(spec: ServiceSpec, secret: SecretMaterial) -> str:
    return fingerprint_logical_id(secret.plaintext.decode("ascii"))


_PEER_ID_RE = re.compile(r'"peer_id"\s*:\s*"([^"]+)"')


class PeerIdResolver:
    """Resolve the logical id by asking the validator for its peer id.

    The validator derives the peer id from the identity secret in
    ``{data_dir}/{network_mode}``. With ``run_as_owner`` the command runs
    as the service principal so it can read the principal's files.
    """

    def __init__(self, validator_cmd: str = "validator", run_as_owner: bool = True, timeout: float = 30.0):
        self.validator_cmd = validator_cmd
        self.run_as_owner = run_as_owner
        self.timeout = timeout

    def __call__(self, spec: ServiceSpec, secret: SecretMaterial) -> str:
        network_mode = secret.network_mode or spec.network_mode.value
        cmd = [
            self.validator_cmd,
            "--generate-peer-id",
            "--data-dir",
            str(spec.data_directory),
            "--network-mode",
            network_mode,
        ]
        if self.run_as_owner:
            cmd = ["sudo", "-u", spec.owner, *cmd]
        try:
            result = subprocess.run(cmd, capture_output=True, text=True, timeout=self.timeout)
        except (OSError, subprocess.TimeoutExpired) as exc:
            raise InfrastructureError(
                f"cannot determine peer id: {exc}", cause=exc
            ).with_context(step="peer_id", owner=spec.owner) from exc

        match = _PEER_ID_RE.search(result.stdout)
        if result.returncode != 0 or not match:
            raise InfrastructureError(
                f"could not determine peer id for {secret.path} "
                f"(exit {result.returncode}): {result.stderr.strip()}"
            ).with_context(step="peer_id", owner=spec.owner, path=str(secret.path))
        return match.group(1)


class BackupGuard:
    """Enforces "no destructive action without a fresh, verified backup".

    Args:
        vault: Encryption backend (``AgeVault`` in production).
        backup_root: Operator-owned directory holding ``{logical_id}.enc``.
        recipient_path: Host public key used for encryption.
        identity_key: Host private key, only needed with ``verify_existing``.
        resolver: Maps a discovered secret to its logical id.
        verify_existing: Decrypt existing backups and compare them with the
            current secret instead of trusting presence alone.
    """

    def __init__(
        self,
        vault: CredentialVault,
        backup_root: Path,
        recipient_path: Path,
        identity_key: Path | None = None,
        resolver: LogicalIdResolver = fingerprint_resolver,
        verify_existing: bool = False,
    ):
        self.vault = vault
        self.backup_root = Path(backup_root)
        self.recipient_path = Path(recipient_path)
        self.identity_key = Path(identity_key) if identity_key else None
        self.resolver = resolver
        self.verify_existing = verify_existing

    def backup_path(self, logical_id: str) -> Path:
        return self.backup_root / f"{logical_id}{BACKUP_SUFFIX}"

    def secret_locations(self, spec: ServiceSpec) -> list[tuple[Path, str | None]]:
        """Where the kind keeps its secrets: the data directory itself, then
        one subdirectory per supported network mode."""
        root = spec.data_directory
        names = sorted(spec.profile.secret_names)
        locations: list[tuple[Path, str | None]] = [(root / n, None) for n in names]
        for mode in spec.profile.network_modes:
            locations += [(root / mode.value / n, mode.value) for n in names]
        return locations

    def discover(self, spec: ServiceSpec) -> list[SecretMaterial]:
        """Read the kind's secret files from their fixed locations.

        A missing data directory means a fresh service with nothing to back
        up. Anything unreadable is an error: secrets that cannot be seen
        cannot be accounted for.
        """
        root = spec.data_directory
        found: list[SecretMaterial] = []
        for path, network in self.secret_locations(spec):
            try:
                data = path.read_bytes()
            except (FileNotFoundError, NotADirectoryError):
                continue
            except OSError as exc:
                raise self._unmet(spec, f"cannot read {path}: {exc}", exc) from exc
            try:
                canonical = validate_secret_format(data).encode("ascii")
                pending = SecretMaterial("", path, network, canonical)
                logical_id = self.resolver(spec, pending)
            except ValopsError as exc:
                raise self._unmet(
                    spec, f"secret material under {root} is unusable: {exc.message}", exc
                ) from exc
            found.append(SecretMaterial(logical_id, path, network, canonical))

        logger.debug("backup.discovered", owner=spec.owner, count=len(found))
        return found

    def manifest(self, spec: ServiceSpec) -> dict[str, Path]:
        """Backup paths that must exist before ``spec`` may be destroyed."""
        return {s.logical_id: self.backup_path(s.logical_id) for s in self.discover(spec)}

    def find_backup(self, logical_id: str) -> EncryptedBackup | None:
        """The backup on disk for ``logical_id``, if any."""
        path = self.backup_path(logical_id)
        if not path.is_file():
            return None
        return EncryptedBackup(
            logical_id=logical_id,
            path=path,
            created=datetime.fromtimestamp(path.stat().st_mtime, UTC),
        )

    def require_fresh_backup(self, spec: ServiceSpec) -> BackupReport:
        """Ensure every discovered secret has an encrypted backup on disk.

        Raises
        ------
        BackupObligationUnmet
            Naming the logical id that could not be backed up or verified.
        """
        report = BackupReport()
        recipient: str | None = None

        for secret in self.discover(spec):
            target = self.backup_path(secret.logical_id)
            record = BackupRecord(
                logical_id=secret.logical_id,
                secret_path=str(secret.path),
                backup_path=str(target),
                network_mode=secret.network_mode,
            )
            try:
                if target.exists():
                    if self.verify_existing:
                        self._verify(secret, target)
                        record.verified = True
                    logger.info("backup.exists", logical_id=secret.logical_id, path=str(target))
                else:
                    if recipient is None:
                        recipient = read_recipient(self.recipient_path)
                    self.vault.encrypt_to_file(secret.plaintext, recipient, target)
                    record.created = True
                    logger.info("backup.created", logical_id=secret.logical_id, path=str(target))
            except (ValopsError, OSError) as exc:
                detail = exc.message if isinstance(exc, ValopsError) else str(exc)
                raise BackupObligationUnmet(
                    f"backup for logical id {secret.logical_id} could not be verified: {detail}",
                    cause=exc,
                ).with_context(
                    service_kind=spec.kind.value,
                    owner=spec.owner,
                    logical_id=secret.logical_id,
                    path=str(target),
                ) from exc

            if not target.is_file():
                raise BackupObligationUnmet(
                    f"backup for logical id {secret.logical_id} is not on disk after encryption"
                ).with_context(
                    owner=spec.owner, logical_id=secret.logical_id, path=str(target)
                )
            report.records.append(record)

        return report

    def _verify(self, secret: SecretMaterial, target: Path) -> None:
        if self.identity_key is None:
            raise BackupObligationUnmet(
                f"cannot verify backup {target}: no host identity key configured"
            )
        plaintext = self.vault.decrypt(target.read_bytes(), self.identity_key)
        canonical = validate_secret_format(plaintext).encode("ascii")
        if not hmac.compare_digest(canonical, secret.plaintext):
            raise BackupObligationUnmet(
                f"existing backup {target} does not decrypt to the current secret"
            )

    @staticmethod
    def _unmet(spec: ServiceSpec, message: str, cause: Exception) -> BackupObligationUnmet:
        return BackupObligationUnmet(message, cause=cause).with_context(
            service_kind=spec.kind.value, owner=spec.owner, path=str(spec.data_directory)
        )
