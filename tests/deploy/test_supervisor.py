"""Tests for the systemd supervisor adapter. ``subprocess.run`` is mocked."""

from __future__ import annotations

import subprocess
from pathlib import Path
from unittest.mock import patch

import pytest


def _completed(returncode: int = 0, stdout: str = "", stderr: str = ""):
    return subprocess.CompletedProcess(args=[], returncode=returncode, stdout=stdout, stderr=stderr)


def _commands(run) -> list[list[str]]:
    return [c.args[0] for c in run.call_args_list]


class TestManagedProcessHandle:
    """Instance naming."""

    def test_instance_name(self):
        from valops.deploy.supervisor import ManagedProcessHandle

        assert ManagedProcessHandle("arch-validator@", "alice").instance == "arch-validator@alice.service"

    def test_handle_for_spec(self):
        from valops.deploy.specs import ServiceSpec
        from valops.deploy.supervisor import SystemdSupervisor

        spec = ServiceSpec("indexer", "bob", "testnet", "/srv")
        assert SystemdSupervisor().handle_for(spec).instance == "titan@bob.service"

    def test_shipped_templates_exist(self):
        from valops.deploy.specs import ServiceKind
        from valops.deploy.supervisor import unit_template_path

        for kind in ServiceKind:
            text = unit_template_path(kind).read_text()
            assert "User=%i" in text
            assert "[Install]" in text
            assert "/home/" not in text


class TestRenderUnit:
    """Home root substitution."""

    def test_paths_follow_home_root(self):
        from valops.deploy.specs import ServiceKind
        from valops.deploy.supervisor import render_unit

        text = render_unit(ServiceKind.INDEXER, Path("/srv/nodes/")).decode()
        assert "ExecStart=/usr/local/bin/titan --config /srv/nodes/%i/titan.conf\n" in text
        assert "StandardOutput=append:/srv/nodes/%i/logs/titan.log\n" in text
        assert "@HOME_ROOT@" not in text

    def test_validator_reads_its_environment_file(self):
        from valops.deploy.specs import ServiceKind
        from valops.deploy.supervisor import render_unit

        text = render_unit(ServiceKind.VALIDATOR, Path("/home")).decode()
        assert "EnvironmentFile=/home/%i/validator.env\n" in text
        assert "ExecStart=/usr/local/bin/validator\n" in text

    def test_missing_template(self, tmp_path: Path):
        from valops.core.errors import InfrastructureError
        from valops.deploy.specs import ServiceKind
        from valops.deploy.supervisor import render_unit

        with patch("valops.deploy.supervisor.unit_template_path", return_value=tmp_path / "nope"):
            with pytest.raises(InfrastructureError, match="unreadable"):
                render_unit(ServiceKind.INDEXER, Path("/home"))


class TestInstallUnit:
    """Unit installation is idempotent."""

    def test_installs_and_reloads(self, tmp_path: Path):
        from valops.deploy.specs import ServiceKind
        from valops.deploy.supervisor import SystemdSupervisor, render_unit

        sup = SystemdSupervisor(unit_dir=tmp_path)
        unit = render_unit(ServiceKind.INDEXER, Path("/home"))
        with patch("valops.deploy.supervisor.subprocess.run", return_value=_completed()) as run:
            assert sup.install_unit(ServiceKind.INDEXER, unit) is True
            assert _commands(run) == [["systemctl", "daemon-reload"]]
            assert (tmp_path / "titan@.service").read_bytes() == unit

            run.reset_mock()
            assert sup.install_unit(ServiceKind.INDEXER, unit) is False
            run.assert_not_called()
        assert sup.unit_installed(ServiceKind.INDEXER)

    def test_changed_home_root_reinstalls(self, tmp_path: Path):
        from valops.deploy.specs import ServiceKind
        from valops.deploy.supervisor import SystemdSupervisor, render_unit

        sup = SystemdSupervisor(unit_dir=tmp_path)
        with patch("valops.deploy.supervisor.subprocess.run", return_value=_completed()):
            sup.install_unit(
                ServiceKind.BASE_LAYER_NODE, render_unit(ServiceKind.BASE_LAYER_NODE, Path("/home"))
            )
            assert sup.install_unit(
                ServiceKind.BASE_LAYER_NODE, render_unit(ServiceKind.BASE_LAYER_NODE, Path("/srv"))
            )
        assert b"-conf=/srv/%i/bitcoin.conf" in (tmp_path / "bitcoind@.service").read_bytes()


class TestProcessControl:
    """systemctl delegation."""

    def test_is_running_maps_exit_code(self):
        from valops.deploy.supervisor import ManagedProcessHandle, SystemdSupervisor

        handle = ManagedProcessHandle("titan@", "bob")
        with patch("valops.deploy.supervisor.subprocess.run", return_value=_completed(0)):
            assert SystemdSupervisor().is_running(handle) is True
        with patch("valops.deploy.supervisor.subprocess.run", return_value=_completed(3)):
            assert SystemdSupervisor().is_running(handle) is False

    def test_start_enables_instance(self):
        from valops.deploy.supervisor import ManagedProcessHandle, SystemdSupervisor

        with patch("valops.deploy.supervisor.subprocess.run", return_value=_completed()) as run:
            SystemdSupervisor().start(ManagedProcessHandle("titan@", "bob"))
        assert _commands(run) == [["systemctl", "enable", "--now", "titan@bob.service"]]

    def test_failure_carries_stderr_and_step(self):
        from valops.core.errors import InfrastructureError
        from valops.deploy.supervisor import ManagedProcessHandle, SystemdSupervisor

        failed = _completed(1, stderr="Failed to restart titan@bob.service: Access denied")
        with patch("valops.deploy.supervisor.subprocess.run", return_value=failed):
            with pytest.raises(InfrastructureError, match="Access denied") as exc_info:
                SystemdSupervisor().restart(ManagedProcessHandle("titan@", "bob"))
        assert exc_info.value.context.step == "restart"
        assert exc_info.value.context.owner == "bob"
        assert exc_info.value.retryable is True

    def test_timeout(self):
        from valops.core.errors import InfrastructureError
        from valops.deploy.supervisor import ManagedProcessHandle, SystemdSupervisor

        with patch(
            "valops.deploy.supervisor.subprocess.run",
            side_effect=subprocess.TimeoutExpired(cmd="systemctl", timeout=60),
        ):
            with pytest.raises(InfrastructureError, match="timed out"):
                SystemdSupervisor().stop(ManagedProcessHandle("titan@", "bob"))

    def test_status_word(self):
        from valops.deploy.supervisor import ManagedProcessHandle, SystemdSupervisor

        with patch(
            "valops.deploy.supervisor.subprocess.run", return_value=_completed(3, stdout="inactive\n")
        ):
            assert SystemdSupervisor().status(ManagedProcessHandle("titan@", "bob")) == "inactive"


class TestPrincipals:
    """useradd / userdel / id."""

    def test_existing_principal_untouched(self):
        from valops.deploy.supervisor import SystemdSupervisor

        with patch("valops.deploy.supervisor.subprocess.run", return_value=_completed(0, "1001\n")) as run:
            assert SystemdSupervisor().ensure_principal("bob", Path("/home/bob")) is False
        assert _commands(run) == [["id", "-u", "bob"]]

    def test_creates_principal(self):
        from valops.deploy.supervisor import SystemdSupervisor

        with patch(
            "valops.deploy.supervisor.subprocess.run",
            side_effect=[_completed(1, stderr="no such user"), _completed(0)],
        ) as run:
            assert SystemdSupervisor().ensure_principal("bob", Path("/home/bob")) is True
        useradd = _commands(run)[1]
        assert useradd[0] == "useradd"
        assert useradd[-1] == "bob"
        assert "/home/bob" in useradd

    def test_remove_absent_principal_is_noop(self):
        from valops.deploy.supervisor import SystemdSupervisor

        with patch("valops.deploy.supervisor.subprocess.run", return_value=_completed(1)) as run:
            SystemdSupervisor().remove_principal("bob")
        assert _commands(run) == [["id", "-u", "bob"]]

    def test_remove_principal(self):
        from valops.deploy.supervisor import SystemdSupervisor

        with patch("valops.deploy.supervisor.subprocess.run", return_value=_completed(0)) as run:
            SystemdSupervisor().remove_principal("bob")
        assert _commands(run)[-1] == ["userdel", "--remove", "bob"]
