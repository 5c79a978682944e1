"""Service declarations for valops.

A ``ServiceSpec`` is the immutable description of one managed service
instance: what kind of node it is, which OS principal runs it, which network
it joins, where its data lives and the kind-specific parameters. It is built
once at the process boundary (CLI flags or a fleet file) and passed by value
through every core function. Nothing is read from the environment after that.

Each ``ServiceKind`` has a ``KindProfile`` in the ``KIND_PROFILES`` registry
that carries everything the reconciler needs to know about the kind:

============== ================ ============== ============================
kind           unit template    config file    secrets
============== ================ ============== ============================
validator      arch-validator@  validator.env  identity-secret
indexer        titan@           titan.conf     (none)
base-layer-node bitcoind@       bitcoin.conf   (none)
============== ================ ============== ============================

Adding a kind means adding a profile, a renderer and a probe; the reconciler
and backup guard pick it up through the registry.

Fleet files (YAML) declare several services at once::

    services:
      - name: validator
        kind: validator
        owner: arch
        network_mode: testnet
        data_directory: /home/arch/data/.arch_data
        parameters:
          rpc_bind_ip: 127.0.0.1
          rpc_bind_port: "9002"
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Any

import yaml

from valops.core.errors import ValidationError


class ServiceKind(str, Enum):
    """Families of managed node processes."""

    VALIDATOR = "validator"
    INDEXER = "indexer"
    BASE_LAYER_NODE = "base-layer-node"


class NetworkMode(str, Enum):
    """Networks a service can join (each kind supports a subset)."""

    DEVNET = "devnet"
    TESTNET = "testnet"
    MAINNET = "mainnet"
    REGTEST = "regtest"
    SIGNET = "signet"


_OWNER_RE = re.compile(r"[a-z_][a-z0-9_-]{0,30}")
_PARAM_KEY_RE = re.compile(r"[a-z][a-z0-9_]*")


def _has_control_chars(text: str) -> bool:
    return any(ord(c) < 0x20 or ord(c) == 0x7F for c in text)


@dataclass(frozen=True)
class ServiceSpec:
    """Immutable description of one managed service instance."""

    kind: ServiceKind
    owner: str
    network_mode: NetworkMode
    data_directory: Path
    parameters: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        try:
            object.__setattr__(self, "kind", ServiceKind(self.kind))
            object.__setattr__(self, "network_mode", NetworkMode(self.network_mode))
        except ValueError as exc:
            raise ValidationError(f"invalid service declaration: {exc}") from exc
        object.__setattr__(self, "data_directory", Path(self.data_directory))
        params = {str(k): str(v) for k, v in dict(self.parameters).items()}
        object.__setattr__(self, "parameters", MappingProxyType(params))

    @property
    def identity(self) -> str:
        """Stable key for this instance (used for locks and logs)."""
        return f"{self.kind.value}-{self.owner}"

    @property
    def profile(self) -> KindProfile:
        return get_profile(self.kind)

    def home_directory(self, home_root: Path) -> Path:
        return Path(home_root) / self.owner

    @staticmethod
    def default_data_directory(kind: ServiceKind | str, owner: str, home_root: Path) -> Path:
        return Path(home_root) / owner / "data" / get_profile(kind).data_subdir

    def validate(self, require_parameters: bool = True) -> None:
        """Check completeness before any side effect.

        ``require_parameters=False`` is used by operations that only need to
        locate the service (teardown, status, identity deployment).

        Raises
        ------
        ValidationError
            On a bad owner name, unsupported network, relative data
            directory, unsafe parameter, or missing required parameters.
        """
        if not _OWNER_RE.fullmatch(self.owner or ""):
            raise ValidationError(
                f"owner {self.owner!r} is not a valid system user name",
                field="owner",
            ).with_context(service_kind=self.kind.value)

        profile = self.profile
        if self.network_mode not in profile.network_modes:
            supported = ", ".join(m.value for m in profile.network_modes)
            raise ValidationError(
                f"{self.kind.value} does not support network {self.network_mode.value!r} "
                f"(supported: {supported})",
                field="network_mode",
            ).with_context(service_kind=self.kind.value, owner=self.owner)

        if not self.data_directory.is_absolute():
            raise ValidationError(
                f"data directory {str(self.data_directory)!r} must be an absolute path",
                field="data_directory",
            ).with_context(service_kind=self.kind.value, owner=self.owner)

        if _has_control_chars(str(self.data_directory)):
            raise ValidationError(
                "data directory contains control characters",
                field="data_directory",
            ).with_context(service_kind=self.kind.value, owner=self.owner)

        # Values land verbatim in line-oriented config files.
        for key, value in self.parameters.items():
            if not _PARAM_KEY_RE.fullmatch(key):
                raise ValidationError(
                    f"parameter name {key!r} is not a lowercase identifier",
                    field="parameters",
                ).with_context(service_kind=self.kind.value, owner=self.owner)
            if _has_control_chars(value):
                raise ValidationError(
                    f"parameter {key!r} contains control characters",
                    field="parameters",
                ).with_context(service_kind=self.kind.value, owner=self.owner)

        if not require_parameters:
            return
        missing = [p for p in profile.required_params if not self.parameters.get(p)]
        if missing:
            raise ValidationError(
                f"{self.kind.value} for {self.owner} is missing required parameters: "
                f"{', '.join(missing)}",
                field="parameters",
                missing=missing,
            ).with_context(service_kind=self.kind.value, owner=self.owner)


# ---------------------------------------------------------------------------
# Kind profiles
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class KindProfile:
    """Everything the reconciler needs to know about one service kind."""

    kind: ServiceKind
    unit: str
    """Supervisor unit template name, instantiated per owner (``name@owner``)."""

    template: str
    """File name of the unit template shipped in ``valops/deploy/units``."""

    config_name: str
    """Rendered config file name inside the owner's home directory."""

    network_modes: tuple[NetworkMode, ...]

    required_params: tuple[str, ...] = ()
    """Parameters without which a spec is rejected."""

    defaults: tuple[tuple[str, str], ...] = ()
    """Ordered optional parameters with their defaults."""

    secret_names: tuple[str, ...] = ()
    """File names of irreplaceable secret material under the data directory."""

    data_subdir: str = ""
    """Default data directory name under ``{home}/data``."""

    ready_timeout: float = 120.0

    description: str = ""

    @property
    def param_order(self) -> tuple[str, ...]:
        return self.required_params + tuple(k for k, _ in self.defaults)

    def resolve_parameters(self, spec: ServiceSpec) -> dict[str, str]:
        """Defaults overlaid with the spec's parameters (no network lookups)."""
        values = dict(self.defaults)
        values.update(spec.parameters)
        return values


VALIDATOR = KindProfile(
    kind=ServiceKind.VALIDATOR,
    unit="arch-validator@",
    template="arch-validator@.service",
    config_name="validator.env",
    network_modes=(NetworkMode.DEVNET, NetworkMode.TESTNET, NetworkMode.MAINNET),
    required_params=(
        "rpc_bind_ip",
        "rpc_bind_port",
        "titan_endpoint",
        "titan_socket_endpoint",
    ),
    defaults=(
        ("websocket_enabled", "false"),
        ("websocket_bind_ip", ""),
        ("websocket_bind_port", ""),
    ),
    secret_names=("identity-secret",),
    data_subdir=".arch_data",
    ready_timeout=180.0,
    description="Arch Network validator",
)

INDEXER = KindProfile(
    kind=ServiceKind.INDEXER,
    unit="titan@",
    template="titan@.service",
    config_name="titan.conf",
    network_modes=(
        NetworkMode.TESTNET,
        NetworkMode.MAINNET,
        NetworkMode.REGTEST,
        NetworkMode.SIGNET,
    ),
    defaults=(
        ("network", ""),
        ("bitcoin_rpc_url", "http://127.0.0.1:18443"),
        ("bitcoin_rpc_username", ""),
        ("bitcoin_rpc_password", ""),
        ("http_listen", "127.0.0.1:3030"),
        ("tcp_address", "127.0.0.1:8080"),
        ("index_addresses", "true"),
    ),
    data_subdir="titan",
    ready_timeout=300.0,
    description="Titan chain indexer",
)

BASE_LAYER_NODE = KindProfile(
    kind=ServiceKind.BASE_LAYER_NODE,
    unit="bitcoind@",
    template="bitcoind@.service",
    config_name="bitcoin.conf",
    network_modes=(
        NetworkMode.MAINNET,
        NetworkMode.TESTNET,
        NetworkMode.REGTEST,
        NetworkMode.SIGNET,
    ),
    required_params=("rpc_user", "rpc_password"),
    defaults=(
        ("rpc_bind", "127.0.0.1"),
        ("rpc_port", ""),
        ("rpc_allow_ip", "127.0.0.1"),
        ("prune", "0"),
        ("txindex", "1"),
    ),
    data_subdir="bitcoin",
    ready_timeout=600.0,
    description="bitcoind base-layer node",
)


KIND_PROFILES: dict[ServiceKind, KindProfile] = {
    ServiceKind.VALIDATOR: VALIDATOR,
    ServiceKind.INDEXER: INDEXER,
    ServiceKind.BASE_LAYER_NODE: BASE_LAYER_NODE,
}


def get_profile(kind: ServiceKind | str) -> KindProfile:
    """Look up a kind profile by enum or name (case-insensitive).

    Raises
    ------
    ValidationError
        If the kind is not recognized.
    """
    try:
        key = ServiceKind(kind.lower().strip() if isinstance(kind, str) else kind)
    except ValueError:
        available = ", ".join(k.value for k in ServiceKind)
        raise ValidationError(
            f"Unknown service kind: {kind!r}. Available: {available}", field="kind"
        ) from None
    return KIND_PROFILES[key]


# ---------------------------------------------------------------------------
# Fleet files
# ---------------------------------------------------------------------------


def spec_from_mapping(data: Mapping[str, Any]) -> ServiceSpec:
    """Build a ServiceSpec from a plain mapping (one fleet entry)."""
    try:
        return ServiceSpec(
            kind=get_profile(data["kind"]).kind,
            owner=str(data["owner"]),
            network_mode=NetworkMode(str(data["network_mode"]).lower()),
            data_directory=Path(str(data["data_directory"])),
            parameters=data.get("parameters") or {},
        )
    except KeyError as exc:
        raise ValidationError(
            f"service entry is missing field {exc.args[0]!r}", field=str(exc.args[0])
        ) from exc
    except ValueError as exc:
        raise ValidationError(f"invalid service entry: {exc}") from exc


def load_fleet(path: Path) -> dict[str, ServiceSpec]:
    """Load named ServiceSpecs from a YAML fleet file."""
    try:
        raw = yaml.safe_load(Path(path).read_text(encoding="utf-8")) or {}
    except (OSError, yaml.YAMLError) as exc:
        raise ValidationError(f"cannot read fleet file {path}: {exc}", field="fleet") from exc

    entries = raw.get("services") if isinstance(raw, dict) else None
    if not isinstance(entries, list):
        raise ValidationError(f"fleet file {path} must contain a 'services' list", field="fleet")

    fleet: dict[str, ServiceSpec] = {}
    for entry in entries:
        if not isinstance(entry, dict):
            raise ValidationError(f"fleet file {path}: every service must be a mapping")
        spec = spec_from_mapping(entry)
        name = str(entry.get("name") or spec.identity)
        if name in fleet:
            raise ValidationError(f"fleet file {path}: duplicate service name {name!r}")
        fleet[name] = spec
    return fleet
