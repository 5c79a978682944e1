"""Readiness polling and health predicates.

``wait_ready`` is the single retry/timeout primitive in valops. It is used to
wait for supervisor state transitions, for application-level readiness (an
RPC endpoint answering) and for advisory service locks, so the whole system
has one polling policy:

- the timeout is mandatory and must be positive,
- ``check`` is called at most once per ``poll_interval``,
- the call never sleeps past the deadline,
- expiry raises ``HealthCheckTimeout`` carrying the last probe detail.

Predicates return a typed ``ProbeResult`` (or a plain ``bool``) instead of
log lines that have to be grepped. The builders below compose the checks the
reconciler uses::

    check = all_of(
        supervisor_active(supervisor, handle),
        jsonrpc_probe("http://127.0.0.1:9002/", "is_node_ready", expect=is_true),
    )
    wait_ready(check, timeout=120, poll_interval=2, description="validator ready")

Transport failures inside a probe (connection refused, bad JSON) count as
"not ready yet", never as a crash: a node that is still booting refuses
connections.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import httpx

from valops.core.errors import HealthCheckTimeout, ValidationError
from valops.core.logging import get_logger

if TYPE_CHECKING:
    from valops.deploy.specs import ServiceSpec
    from valops.deploy.supervisor import ManagedProcessHandle, ServiceSupervisorAdapter

logger = get_logger(__name__)


@dataclass(frozen=True)
class ProbeResult:
    """Typed outcome of one readiness probe."""

    ready: bool
    detail: str = ""

    def __bool__(self) -> bool:
        return self.ready


Check = Callable[[], "ProbeResult | bool"]


def _as_result(value: ProbeResult | bool) -> ProbeResult:
    if isinstance(value, ProbeResult):
        return value
    return ProbeResult(bool(value), "ready" if value else "not ready")


def wait_ready(
    check: Check,
    timeout: float,
    poll_interval: float,
    *,
    description: str = "service",
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], None] = time.sleep,
) -> ProbeResult:
    """Poll ``check`` until it reports ready or ``timeout`` elapses.

    Parameters
    ----------
    check
        Zero-argument predicate returning ``ProbeResult`` or ``bool``.
    timeout
        Seconds before giving up. Required and must be positive.
    poll_interval
        Seconds between probes. Must be positive.
    description
        Used in log events and in the timeout message.
    clock, sleep
        Injection points for tests.

    Returns
    -------
    ProbeResult
        The first ready result.

    Raises
    ------
    HealthCheckTimeout
        If the deadline passes without a ready result.
    """
    if timeout is None or timeout <= 0:
        raise ValidationError(f"wait_ready({description}) needs a positive timeout", field="timeout")
    if poll_interval <= 0:
        raise ValidationError(
            f"wait_ready({description}) needs a positive poll interval", field="poll_interval"
        )

    deadline = clock() + timeout
    attempts = 0
    last = ProbeResult(False, "not probed")

    while True:
        attempts += 1
        last = _as_result(check())
        if last.ready:
            logger.debug("probe.ready", target=description, attempts=attempts)
            return last

        remaining = deadline - clock()
        if remaining <= 0:
            break
        logger.debug("probe.waiting", target=description, attempt=attempts, detail=last.detail)
        sleep(min(poll_interval, remaining))
        if clock() >= deadline:
            # One final probe at the deadline so a just-in-time success counts.
            attempts += 1
            last = _as_result(check())
            if last.ready:
                return last
            break

    raise HealthCheckTimeout(
        f"{description} did not become ready within {timeout:g}s "
        f"({attempts} probes, last: {last.detail or 'not ready'})",
        timeout=timeout,
        attempts=attempts,
        last_detail=last.detail,
    )


# ── Predicate builders ───────────────────────────────────────────────────


def all_of(*checks: Check) -> Check:
    """Ready only when every check is ready; reports the first failing one."""

    def _check() -> ProbeResult:
        details = []
        for c in checks:
            result = _as_result(c())
            if not result.ready:
                return result
            details.append(result.detail)
        return ProbeResult(True, "; ".join(d for d in details if d))

    return _check


def supervisor_active(
    supervisor: ServiceSupervisorAdapter, handle: ManagedProcessHandle
) -> Check:
    """Ready when the supervisor reports the unit instance as running."""

    def _check() -> ProbeResult:
        if supervisor.is_running(handle):
            return ProbeResult(True, f"{handle.instance} active")
        return ProbeResult(False, f"{handle.instance} not active")

    return _check


def is_true(result: Any) -> bool:
    return result is True


def is_number(result: Any) -> bool:
    return isinstance(result, int | float) and not isinstance(result, bool)


def jsonrpc_call(
    url: str,
    method: str,
    params: list[Any] | None = None,
    *,
    timeout: float = 3.0,
    auth: tuple[str, str] | None = None,
) -> Any:
    """POST a JSON-RPC 2.0 request and return ``result``.

    Raises ``httpx.HTTPError`` on transport or status failures and
    ``ValueError`` on a malformed or error response.
    """
    payload = {"jsonrpc": "2.0", "method": method, "params": params or [], "id": 1}
    with httpx.Client(timeout=timeout, auth=auth) as client:
        resp = client.post(url, json=payload)
        resp.raise_for_status()
        body = resp.json()
    if not isinstance(body, dict):
        raise ValueError(f"{method}: response is not a JSON object")
    if body.get("error"):
        error = body["error"]
        message = error.get("message") if isinstance(error, dict) else error
        raise ValueError(f"{method}: {message}")
    if "result" not in body:
        raise ValueError(f"{method}: response has no result")
    return body["result"]


def jsonrpc_probe(
    url: str,
    method: str,
    *,
    expect: Callable[[Any], bool] = is_number,
    params: list[Any] | None = None,
    timeout: float = 3.0,
    auth: tuple[str, str] | None = None,
) -> Check:
    """Ready when ``method`` answers with a result accepted by ``expect``."""

    def _check() -> ProbeResult:
        try:
            result = jsonrpc_call(url, method, params, timeout=timeout, auth=auth)
        except (httpx.HTTPError, ValueError) as exc:
            return ProbeResult(False, f"{method}: {exc}")
        if expect(result):
            return ProbeResult(True, f"{method} -> {result!r}")
        return ProbeResult(False, f"{method} -> {result!r}")

    return _check


def http_probe(url: str, *, timeout: float = 3.0) -> Check:
    """Ready when ``GET url`` returns a 2xx response."""

    def _check() -> ProbeResult:
        try:
            with httpx.Client(timeout=timeout) as client:
                resp = client.get(url)
        except httpx.HTTPError as exc:
            return ProbeResult(False, f"GET {url}: {exc}")
        if resp.is_success:
            return ProbeResult(True, f"GET {url} -> {resp.status_code}")
        return ProbeResult(False, f"GET {url} -> {resp.status_code}")

    return _check


def application_probe(spec: ServiceSpec) -> Check:
    """The kind-specific application readiness probe for ``spec``."""
    from valops.deploy.render import bitcoin_rpc_port
    from valops.deploy.specs import ServiceKind, get_profile

    params = get_profile(spec.kind).resolve_parameters(spec)

    if spec.kind is ServiceKind.VALIDATOR:
        url = f"http://127.0.0.1:{params['rpc_bind_port']}/"
        return jsonrpc_probe(url, "is_node_ready", expect=is_true)

    if spec.kind is ServiceKind.INDEXER:
        return http_probe(f"http://{params['http_listen']}/tip")

    url = f"http://{params['rpc_bind']}:{bitcoin_rpc_port(spec)}/"
    return jsonrpc_probe(
        url,
        "getblockcount",
        expect=is_number,
        auth=(params["rpc_user"], params["rpc_password"]),
    )


def readiness_check(
    spec: ServiceSpec,
    supervisor: ServiceSupervisorAdapter,
    handle: ManagedProcessHandle,
) -> Check:
    """Supervisor reports active and the service's RPC answers."""
    return all_of(supervisor_active(supervisor, handle), application_probe(spec))
