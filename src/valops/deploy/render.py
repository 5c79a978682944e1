"""Deterministic config rendering.

``render_config`` turns a ``ServiceSpec`` into the exact bytes that belong in
the service principal's config file. It is a pure function: no I/O, no clock,
no environment. Two renders of an unchanged spec compare equal byte for
byte, which is what lets the reconciler decide "write only if different".

Ordering rules:
    - Known parameters are emitted in the kind profile's order.
    - Unknown (extra) parameters follow, sorted by key.
    - Dict insertion order of ``spec.parameters`` never matters.

Formats:
    validator.env   NAME=value using the validator's native variable names
    titan.conf      key=value, ``network`` first
    bitcoin.conf    bitcoind's own ``key=value`` with a chain selector
"""

from __future__ import annotations

import hashlib
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from valops.deploy.specs import NetworkMode, ServiceKind, ServiceSpec, get_profile

CONFIG_MODE = 0o600

_HEADER = "# Managed by valops. Local edits are overwritten on the next reconcile.\n"


@dataclass(frozen=True)
class RenderedConfig:
    """Canonical config text plus where and how it must be installed."""

    text: str
    path: Path
    owner: str
    mode: int = CONFIG_MODE

    @property
    def data(self) -> bytes:
        return self.text.encode("utf-8")

    @property
    def digest(self) -> str:
        return hashlib.sha256(self.data).hexdigest()


def _extras(spec: ServiceSpec) -> list[tuple[str, str]]:
    known = set(get_profile(spec.kind).param_order)
    return sorted((k, v) for k, v in spec.parameters.items() if k not in known)


def _render_validator(spec: ServiceSpec) -> str:
    p = get_profile(spec.kind).resolve_parameters(spec)
    lines = [
        _HEADER,
        "# Core Configuration",
        f"NETWORK_MODE={spec.network_mode.value}",
        f"DATA_DIR={spec.data_directory}",
        f"RPC_BIND_IP={p['rpc_bind_ip']}",
        f"RPC_BIND_PORT={p['rpc_bind_port']}",
        f"TITAN_ENDPOINT={p['titan_endpoint']}",
        f"TITAN_SOCKET_ENDPOINT={p['titan_socket_endpoint']}",
    ]
    if p["websocket_enabled"] == "true" and p["websocket_bind_ip"] and p["websocket_bind_port"]:
        lines += [
            "",
            "# WebSocket Configuration",
            f"WEBSOCKET_BIND_IP={p['websocket_bind_ip']}",
            f"WEBSOCKET_BIND_PORT={p['websocket_bind_port']}",
        ]
    extras = _extras(spec)
    if extras:
        lines += ["", "# Additional"]
        lines += [f"{k.upper()}={v}" for k, v in extras]
    return "\n".join(lines) + "\n"


_TITAN_NETWORKS = {
    NetworkMode.MAINNET: "bitcoin",
    NetworkMode.TESTNET: "testnet",
    NetworkMode.REGTEST: "regtest",
    NetworkMode.SIGNET: "signet",
}


def _render_indexer(spec: ServiceSpec) -> str:
    profile = get_profile(spec.kind)
    p = profile.resolve_parameters(spec)
    p["network"] = p["network"] or _TITAN_NETWORKS[spec.network_mode]
    lines = [_HEADER]
    lines += [f"{k}={p[k]}" for k in profile.param_order if p[k] != ""]
    lines.append(f"data_dir={spec.data_directory}")
    lines += [f"{k}={v}" for k, v in _extras(spec)]
    return "\n".join(lines) + "\n"


_BITCOIN_CHAINS = {
    NetworkMode.MAINNET: "main",
    NetworkMode.TESTNET: "test",
    NetworkMode.REGTEST: "regtest",
    NetworkMode.SIGNET: "signet",
}

DEFAULT_BITCOIN_RPC_PORTS = {
    NetworkMode.MAINNET: "8332",
    NetworkMode.TESTNET: "18332",
    NetworkMode.REGTEST: "18443",
    NetworkMode.SIGNET: "38332",
}


def bitcoin_rpc_port(spec: ServiceSpec) -> str:
    return spec.parameters.get("rpc_port") or DEFAULT_BITCOIN_RPC_PORTS[spec.network_mode]


def _render_base_layer(spec: ServiceSpec) -> str:
    p = get_profile(spec.kind).resolve_parameters(spec)
    chain = _BITCOIN_CHAINS[spec.network_mode]
    settings = [
        ("server", "1"),
        ("datadir", str(spec.data_directory)),
        ("rpcuser", p["rpc_user"]),
        ("rpcpassword", p["rpc_password"]),
        ("rpcallowip", p["rpc_allow_ip"]),
        ("txindex", p["txindex"]),
    ]
    if p["prune"] not in ("", "0"):
        settings.append(("prune", p["prune"]))
    settings += _extras(spec)

    lines = [_HEADER, f"chain={chain}"]
    lines += [f"{k}={v}" for k, v in settings]
    # Network-scoped options must live in the chain's section on non-main chains.
    section = [f"rpcbind={p['rpc_bind']}", f"rpcport={bitcoin_rpc_port(spec)}"]
    if chain == "main":
        lines += section
    else:
        lines += ["", f"[{chain}]"] + section
    return "\n".join(lines) + "\n"


_RENDERERS: dict[ServiceKind, Callable[[ServiceSpec], str]] = {
    ServiceKind.VALIDATOR: _render_validator,
    ServiceKind.INDEXER: _render_indexer,
    ServiceKind.BASE_LAYER_NODE: _render_base_layer,
}


def config_path(spec: ServiceSpec, home_root: Path) -> Path:
    """Fixed per-principal config location."""
    return spec.home_directory(home_root) / get_profile(spec.kind).config_name


def render_config(spec: ServiceSpec, home_root: Path) -> RenderedConfig:
    """Render ``spec`` to its canonical config (pure, deterministic)."""
    text = _RENDERERS[spec.kind](spec)
    return RenderedConfig(text=text, path=config_path(spec, home_root), owner=spec.owner)
