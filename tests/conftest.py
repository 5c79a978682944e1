"""
Shared pytest fixtures for valops tests.

This module provides:
- In-memory fakes for the process supervisor and the credential vault
- A fake monotonic clock so readiness waits never really sleep
- ValopsSettings pointed at a temporary host layout
- Spec builders for each service kind

Nothing here needs root, systemd or the age binary.
"""

from __future__ import annotations

import sys
from pathlib import Path

import pytest

# Ensure valops package is importable
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from valops.core.errors import DecryptionError, EncryptionError
from valops.core.settings import ValopsSettings
from valops.deploy.specs import ServiceKind, ServiceSpec, get_profile
from valops.deploy.supervisor import ManagedProcessHandle, ServiceSupervisorAdapter
from valops.deploy.vault import CredentialVault

SECRET = "ab" * 32
OTHER_SECRET = "cd" * 32


# =============================================================================
# Fakes
# =============================================================================


class FakeClock:
    """Monotonic clock whose sleep just advances time."""

    def __init__(self, start: float = 0.0):
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class FakeSupervisor(ServiceSupervisorAdapter):
    """In-memory supervisor recording every call."""

    def __init__(self, principals: set[str] | None = None):
        self.principals: set[str] = set(principals or ())
        self.units: dict[ServiceKind, bytes] = {}
        self.running: set[str] = set()
        self.disabled: set[str] = set()
        self.calls: list[tuple[str, str]] = []
        self.fail_on: dict[str, Exception] = {}

    def _call(self, name: str, target: str) -> None:
        self.calls.append((name, target))
        if name in self.fail_on:
            raise self.fail_on[name]

    def install_unit(self, kind: ServiceKind, unit: bytes) -> bool:
        self._call("install_unit", kind.value)
        if self.units.get(kind) == unit:
            return False
        self.units[kind] = unit
        return True

    def unit_installed(self, kind: ServiceKind) -> bool:
        return kind in self.units

    def is_running(self, handle: ManagedProcessHandle) -> bool:
        return handle.instance in self.running

    def start(self, handle: ManagedProcessHandle) -> None:
        self._call("start", handle.instance)
        self.running.add(handle.instance)

    def stop(self, handle: ManagedProcessHandle) -> None:
        self._call("stop", handle.instance)
        self.running.discard(handle.instance)

    def restart(self, handle: ManagedProcessHandle) -> None:
        self._call("restart", handle.instance)
        self.running.add(handle.instance)

    def status(self, handle: ManagedProcessHandle) -> str:
        return "active" if handle.instance in self.running else "inactive"

    def principal_exists(self, owner: str) -> bool:
        return owner in self.principals

    def ensure_principal(self, owner: str, home: Path) -> bool:
        if owner in self.principals:
            return False
        self._call("ensure_principal", owner)
        self.principals.add(owner)
        return True

    def disable(self, handle: ManagedProcessHandle) -> None:
        self._call("disable", handle.instance)
        self.disabled.add(handle.instance)

    def remove_principal(self, owner: str) -> None:
        self._call("remove_principal", owner)
        self.principals.discard(owner)


class FakeVault(CredentialVault):
    """Reversible stand-in for age. ``offline=True`` simulates a missing tool."""

    PREFIX = b"age-fake:"

    def __init__(self, offline: bool = False):
        self.offline = offline
        self.encrypt_calls = 0
        self.decrypt_calls = 0

    def encrypt(self, plaintext: bytes, recipient: str) -> bytes:
        self.encrypt_calls += 1
        if self.offline:
            raise EncryptionError("age is not installed; cannot encrypt")
        return self.PREFIX + plaintext[::-1]

    def decrypt(self, ciphertext: bytes, identity_path: Path) -> bytes:
        self.decrypt_calls += 1
        if self.offline:
            raise DecryptionError("age is not installed; cannot decrypt")
        if not ciphertext.startswith(self.PREFIX):
            raise DecryptionError("ciphertext was not encrypted for this host key")
        return ciphertext[len(self.PREFIX):][::-1]


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings(tmp_path: Path) -> ValopsSettings:
    backup_root = tmp_path / "age"
    backup_root.mkdir()
    (backup_root / "host-identity.pub").write_text("age1fakerecipient\n")
    (backup_root / "host-identity.key").write_text("AGE-SECRET-KEY-FAKE\n")
    return ValopsSettings(
        home_root=tmp_path / "home",
        unit_dir=tmp_path / "units",
        backup_root=backup_root,
        lock_dir=tmp_path / "locks",
        ready_timeout=10,
        poll_interval=1,
        lock_timeout=5,
        manage_ownership=False,
    )


@pytest.fixture
def supervisor() -> FakeSupervisor:
    return FakeSupervisor()


@pytest.fixture
def vault() -> FakeVault:
    return FakeVault()


def make_spec(kind: ServiceKind, settings: ValopsSettings, owner: str = "alice", **overrides) -> ServiceSpec:
    params = {
        ServiceKind.VALIDATOR: {
            "rpc_bind_ip": "127.0.0.1",
            "rpc_bind_port": "9002",
            "titan_endpoint": "http://127.0.0.1:3030",
            "titan_socket_endpoint": "127.0.0.1:8080",
        },
        ServiceKind.INDEXER: {"network": "test"},
        ServiceKind.BASE_LAYER_NODE: {"rpc_user": "bitcoin", "rpc_password": "hunter2"},
    }[kind]
    network = {
        ServiceKind.VALIDATOR: "testnet",
        ServiceKind.INDEXER: "testnet",
        ServiceKind.BASE_LAYER_NODE: "regtest",
    }[kind]
    fields = {
        "kind": kind,
        "owner": owner,
        "network_mode": network,
        "data_directory": settings.home_root / owner / "data" / get_profile(kind).data_subdir,
        "parameters": params,
    }
    fields.update(overrides)
    return ServiceSpec(**fields)


def plant_secret(spec: ServiceSpec, secret: str = SECRET, network: str = "testnet") -> Path:
    """Write an identity secret where the validator keeps it."""
    path = spec.data_directory / network / "identity-secret"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(secret)
    return path
