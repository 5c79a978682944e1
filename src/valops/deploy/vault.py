"""Credential vault: asymmetric encryption of identity secrets.

Encrypts and decrypts small secret blobs (validator identity keys) under the
host's age keypair, and erases plaintext copies.

Key Concepts:
    CredentialVault: Abstract interface injected into the backup guard and
        the reconciler so tests can substitute an in-memory fake.
    AgeVault: Implementation over the ``age`` / ``age-keygen`` CLIs
        (subprocess). Plaintext only ever travels through pipes.
    secure_erase / scratch_directory: Plaintext hygiene. Every code path
        that decrypts to disk does so inside ``scratch_directory()``, which
        erases its contents on exit, including on error.
    validate_secret_format: Rejects anything that is not a 64-character
        lowercase hex key before it is deployed or backed up.

Architecture Decisions:
    - subprocess, not a Python age port: the host already runs ``age`` for
      restores, and a backup must be readable by the stock tool.
    - Failures are mapped to ``EncryptionError`` / ``DecryptionError``.
      Messages carry age's stderr but never plaintext.

Tags:
    credentials, age, encryption, secure-erase, subprocess, valops
"""

from __future__ import annotations

import contextlib
import os
import re
import shutil
import subprocess
import tempfile
from abc import ABC, abstractmethod
from collections.abc import Iterator
from pathlib import Path

from valops.core.errors import DecryptionError, EncryptionError, InvalidSecretFormat
from valops.core.logging import get_logger

logger = get_logger(__name__)

SECRET_RE = re.compile(r"[a-f0-9]{64}")

IDENTITY_KEY_NAME = "host-identity.key"
RECIPIENT_NAME = "host-identity.pub"


# ---------------------------------------------------------------------------
# Plaintext hygiene
# ---------------------------------------------------------------------------


def validate_secret_format(data: bytes | str) -> str:
    """Return the canonical secret text or raise ``InvalidSecretFormat``.

    One trailing newline is tolerated (``echo`` adds it); anything else that
    is not exactly 64 lowercase hex characters is rejected. The offending
    data is never echoed back.
    """
    if isinstance(data, bytes):
        try:
            text = data.decode("ascii")
        except UnicodeDecodeError:
            raise InvalidSecretFormat(
                "secret material is not ASCII (expected 64-character lowercase hex)"
            ) from None
    else:
        text = data
    if text.endswith("\n"):
        text = text[:-1]
    if not SECRET_RE.fullmatch(text):
        raise InvalidSecretFormat(
            f"secret material has invalid format (expected 64-character lowercase hex, "
            f"got {len(text)} characters)"
        )
    return text


def secure_erase(path: Path | str) -> None:
    """Overwrite a file with random bytes then zeros, and unlink it.

    Never raises if the file is already gone.
    """
    path = Path(path)
    try:
        size = path.stat().st_size
    except FileNotFoundError:
        return
    try:
        with open(path, "r+b", buffering=0) as fh:
            for pattern in (os.urandom, lambda n: b"\x00" * n):
                fh.seek(0)
                fh.write(pattern(size))
                os.fsync(fh.fileno())
    except FileNotFoundError:
        return
    except PermissionError:
        logger.warning("erase.overwrite_denied", path=str(path))
    with contextlib.suppress(FileNotFoundError):
        path.unlink()
    logger.debug("erase.done", path=str(path))


@contextlib.contextmanager
def scratch_directory(prefix: str = "valops-") -> Iterator[Path]:
    """Yield a ``0700`` temp directory whose files are erased on exit."""
    directory = Path(tempfile.mkdtemp(prefix=prefix))
    os.chmod(directory, 0o700)
    try:
        yield directory
    finally:
        for item in sorted(directory.rglob("*"), reverse=True):
            if item.is_file() or item.is_symlink():
                secure_erase(item)
        shutil.rmtree(directory, ignore_errors=True)


def read_recipient(path: Path | str) -> str:
    """Load the host's age public key (recipient)."""
    path = Path(path)
    try:
        recipient = path.read_text(encoding="utf-8").strip()
    except OSError as exc:
        raise EncryptionError(
            f"no recipient key at {path}; run 'valops keygen' first", cause=exc
        ).with_context(path=str(path)) from exc
    if not recipient:
        raise EncryptionError(f"recipient key file {path} is empty").with_context(path=str(path))
    return recipient


# ---------------------------------------------------------------------------
# Vault interface
# ---------------------------------------------------------------------------


class CredentialVault(ABC):
    """Encrypt/decrypt secret blobs under the host keypair."""

    @abstractmethod
    def encrypt(self, plaintext: bytes, recipient: str) -> bytes:
        """Return ciphertext of ``plaintext`` for ``recipient``."""

    @abstractmethod
    def decrypt(self, ciphertext: bytes, identity_path: Path) -> bytes:
        """Return plaintext of ``ciphertext`` using the private key file."""

    def encrypt_to_file(self, plaintext: bytes, recipient: str, target: Path) -> Path:
        """Encrypt to ``target`` (mode 0600) without ever overwriting it.

        The ciphertext is written to a sibling temp file and hard-linked into
        place, so a concurrent writer or an existing backup makes this fail
        instead of replacing a historical backup.
        """
        target = Path(target)
        if target.exists():
            raise EncryptionError(
                f"refusing to overwrite existing backup {target}"
            ).with_context(path=str(target))

        ciphertext = self.encrypt(plaintext, recipient)
        try:
            target.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
            fd, tmp_name = tempfile.mkstemp(dir=target.parent, prefix=f".{target.name}.")
        except OSError as exc:
            raise EncryptionError(
                f"cannot write backup under {target.parent}: {exc}", cause=exc
            ).with_context(path=str(target)) from exc

        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(ciphertext)
                fh.flush()
                os.fsync(fh.fileno())
            os.chmod(tmp_name, 0o600)
            os.link(tmp_name, target)
        except FileExistsError as exc:
            raise EncryptionError(
                f"refusing to overwrite existing backup {target}", cause=exc
            ).with_context(path=str(target)) from exc
        except OSError as exc:
            raise EncryptionError(
                f"cannot write backup {target}: {exc}", cause=exc
            ).with_context(path=str(target)) from exc
        finally:
            with contextlib.suppress(FileNotFoundError):
                os.unlink(tmp_name)
        return target


class AgeVault(CredentialVault):
    """CredentialVault over the ``age`` command-line tool."""

    def __init__(
        self,
        age_cmd: str = "age",
        keygen_cmd: str = "age-keygen",
        timeout: float = 30.0,
    ):
        self._age_cmd = age_cmd
        self._keygen_cmd = keygen_cmd
        self._timeout = timeout

    def encrypt(self, plaintext: bytes, recipient: str) -> bytes:
        if not recipient:
            raise EncryptionError("no recipient key given")
        return self._run_tool(
            [self._age_cmd, "-r", recipient], plaintext, EncryptionError, "encrypt"
        )

    def decrypt(self, ciphertext: bytes, identity_path: Path) -> bytes:
        identity_path = Path(identity_path)
        if not identity_path.is_file():
            raise DecryptionError(
                f"host private key not found at {identity_path}; run 'valops keygen' first"
            ).with_context(path=str(identity_path))
        return self._run_tool(
            [self._age_cmd, "-d", "-i", str(identity_path)], ciphertext, DecryptionError, "decrypt"
        )

    def generate_host_keypair(self, directory: Path) -> tuple[Path, Path]:
        """Create the host keypair in ``directory`` unless it already exists.

        Returns ``(identity_key_path, recipient_path)``.
        """
        directory = Path(directory)
        key_path = directory / IDENTITY_KEY_NAME
        pub_path = directory / RECIPIENT_NAME
        if key_path.exists() and pub_path.exists():
            logger.info("keygen.exists", path=str(key_path))
            return key_path, pub_path

        directory.mkdir(parents=True, exist_ok=True, mode=0o700)
        os.chmod(directory, 0o700)
        if not key_path.exists():
            self._run_tool([self._keygen_cmd, "-o", str(key_path)], b"", EncryptionError, "keygen")
            os.chmod(key_path, 0o600)
        public = self._run_tool(
            [self._keygen_cmd, "-y", str(key_path)], b"", EncryptionError, "keygen"
        )
        pub_path.write_bytes(public)
        os.chmod(pub_path, 0o644)
        logger.info("keygen.created", path=str(key_path))
        return key_path, pub_path

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _run_tool(
        self,
        cmd: list[str],
        data: bytes,
        error: type[EncryptionError] | type[DecryptionError],
        op: str,
    ) -> bytes:
        """Run an age CLI command with ``data`` on stdin; return stdout."""
        if shutil.which(cmd[0]) is None:
            raise error(f"{cmd[0]} is not installed; cannot {op}")
        logger.debug("age.exec", op=op, tool=cmd[0])
        try:
            result = subprocess.run(
                cmd,
                input=data,
                capture_output=True,
                timeout=self._timeout,
            )
        except subprocess.TimeoutExpired as exc:
            raise error(f"{cmd[0]} timed out after {self._timeout:g}s during {op}", cause=exc) from exc
        except OSError as exc:
            raise error(f"cannot run {cmd[0]} for {op}: {exc}", cause=exc) from exc
        if result.returncode != 0:
            stderr = result.stderr.decode("utf-8", errors="replace").strip()
            raise error(f"{cmd[0]} {op} failed (exit {result.returncode}): {stderr}")
        return result.stdout
