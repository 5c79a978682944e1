"""Tests for wait_ready and the readiness predicates."""

from __future__ import annotations

from unittest.mock import patch

import httpx
import pytest

from conftest import FakeClock, FakeSupervisor, make_spec


def _sequence(*values):
    it = iter(values)
    calls = []

    def check():
        calls.append(1)
        return next(it)

    check.calls = calls
    return check


class TestWaitReady:
    """Polling and timeout policy."""

    def test_ready_immediately(self, clock: FakeClock):
        from valops.deploy.health import wait_ready

        result = wait_ready(lambda: True, 10, 1, clock=clock, sleep=clock.sleep)
        assert result.ready
        assert clock.sleeps == []

    def test_ready_after_two_polls(self, clock: FakeClock):
        from valops.deploy.health import ProbeResult, wait_ready

        check = _sequence(False, ProbeResult(False, "booting"), ProbeResult(True, "tip=12"))
        result = wait_ready(check, 10, 2, clock=clock, sleep=clock.sleep)
        assert result.detail == "tip=12"
        assert len(check.calls) == 3
        assert clock.sleeps == [2, 2]

    def test_never_ready_times_out(self, clock: FakeClock):
        from valops.core.errors import HealthCheckTimeout
        from valops.deploy.health import ProbeResult, wait_ready

        with pytest.raises(HealthCheckTimeout) as exc_info:
            wait_ready(
                lambda: ProbeResult(False, "connection refused"),
                10,
                3,
                description="titan",
                clock=clock,
                sleep=clock.sleep,
            )
        err = exc_info.value
        assert clock.now >= 10
        assert sum(clock.sleeps) == 10
        assert max(clock.sleeps) <= 3
        assert err.attempts == 5
        assert err.last_detail == "connection refused"
        assert "titan did not become ready within 10s" in err.message

    def test_success_at_deadline_counts(self, clock: FakeClock):
        from valops.deploy.health import wait_ready

        check = _sequence(False, False, True)
        assert wait_ready(check, 4, 2, clock=clock, sleep=clock.sleep).ready
        assert clock.now == 4

    @pytest.mark.parametrize("timeout,interval", [(0, 1), (-1, 1), (None, 1), (5, 0)])
    def test_rejects_bad_policy(self, timeout, interval):
        from valops.core.errors import ValidationError
        from valops.deploy.health import wait_ready

        with pytest.raises(ValidationError):
            wait_ready(lambda: True, timeout, interval)


class TestPredicates:
    """Predicate builders."""

    def test_all_of_reports_first_failure(self):
        from valops.deploy.health import ProbeResult, all_of

        check = all_of(lambda: ProbeResult(True, "a"), lambda: ProbeResult(False, "b down"))
        assert check() == ProbeResult(False, "b down")
        assert all_of(lambda: True, lambda: ProbeResult(True, "c"))().ready

    def test_supervisor_active(self):
        from valops.deploy.health import supervisor_active
        from valops.deploy.supervisor import ManagedProcessHandle

        sup = FakeSupervisor()
        handle = ManagedProcessHandle("titan@", "bob")
        check = supervisor_active(sup, handle)
        assert not check().ready
        sup.running.add(handle.instance)
        assert check().ready

    def test_is_number(self):
        from valops.deploy.health import is_number

        assert is_number(812)
        assert not is_number(True)
        assert not is_number("812")


def _mock_post(client_cls, body=None, exc=None):
    client = client_cls.return_value.__enter__.return_value
    if exc is not None:
        client.post.side_effect = exc
    else:
        client.post.return_value.json.return_value = body
    return client


class TestJsonRpc:
    """JSON-RPC probes over httpx (mocked)."""

    def test_call_returns_result(self):
        from valops.deploy.health import jsonrpc_call

        with patch("valops.deploy.health.httpx.Client") as client_cls:
            client = _mock_post(client_cls, {"jsonrpc": "2.0", "result": 812, "id": 1})
            assert jsonrpc_call("http://127.0.0.1:18443/", "getblockcount") == 812
        payload = client.post.call_args.kwargs["json"]
        assert payload["method"] == "getblockcount"
        assert payload["jsonrpc"] == "2.0"

    def test_call_error_response(self):
        from valops.deploy.health import jsonrpc_call

        with patch("valops.deploy.health.httpx.Client") as client_cls:
            _mock_post(client_cls, {"error": {"code": -28, "message": "Loading block index"}})
            with pytest.raises(ValueError, match="Loading block index"):
                jsonrpc_call("http://x/", "getblockcount")

    def test_probe_expect_true(self):
        from valops.deploy.health import is_true, jsonrpc_probe

        with patch("valops.deploy.health.httpx.Client") as client_cls:
            _mock_post(client_cls, {"result": True})
            assert jsonrpc_probe("http://x/", "is_node_ready", expect=is_true)().ready
            _mock_post(client_cls, {"result": False})
            assert not jsonrpc_probe("http://x/", "is_node_ready", expect=is_true)().ready

    def test_connection_refused_is_not_ready(self):
        from valops.deploy.health import jsonrpc_probe

        with patch("valops.deploy.health.httpx.Client") as client_cls:
            _mock_post(client_cls, exc=httpx.ConnectError("Connection refused"))
            result = jsonrpc_probe("http://x/", "getblockcount")()
        assert not result.ready
        assert "Connection refused" in result.detail

    def test_http_probe(self):
        from valops.deploy.health import http_probe

        with patch("valops.deploy.health.httpx.Client") as client_cls:
            client = client_cls.return_value.__enter__.return_value
            client.get.return_value = httpx.Response(200)
            assert http_probe("http://127.0.0.1:3030/tip")().ready
            client.get.return_value = httpx.Response(503)
            assert not http_probe("http://127.0.0.1:3030/tip")().ready


class TestApplicationProbe:
    """Kind-specific readiness URLs."""

    def test_validator_probe(self, settings):
        from valops.deploy.health import application_probe
        from valops.deploy.specs import ServiceKind

        with patch("valops.deploy.health.jsonrpc_call", return_value=True) as call:
            assert application_probe(make_spec(ServiceKind.VALIDATOR, settings))().ready
        assert call.call_args.args[:2] == ("http://127.0.0.1:9002/", "is_node_ready")

    def test_bitcoind_probe_uses_network_port_and_auth(self, settings):
        from valops.deploy.health import application_probe
        from valops.deploy.specs import ServiceKind

        with patch("valops.deploy.health.jsonrpc_call", return_value=101) as call:
            assert application_probe(make_spec(ServiceKind.BASE_LAYER_NODE, settings))().ready
        assert call.call_args.args[0] == "http://127.0.0.1:18443/"
        assert call.call_args.kwargs["auth"] == ("bitcoin", "hunter2")

    def test_indexer_probe(self, settings):
        from valops.deploy.health import application_probe
        from valops.deploy.specs import ServiceKind

        with patch("valops.deploy.health.httpx.Client") as client_cls:
            client = client_cls.return_value.__enter__.return_value
            client.get.return_value = httpx.Response(200)
            assert application_probe(make_spec(ServiceKind.INDEXER, settings))().ready
        assert client.get.call_args.args[0] == "http://127.0.0.1:3030/tip"
