"""Tests for minicluster.cli module."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest

from minicluster import cli
from minicluster import config as user_config
from minicluster.exceptions import ManagerError, MissingNodePortError, RetriableError
from minicluster.host import HostManager
from minicluster.models import HostRecord, PowerState, ServiceURL


@pytest.fixture
def manager(store, fake_driver, monkeypatch):
    fake_driver.state = PowerState.RUNNING
    store.records["minicluster"] = HostRecord(name="minicluster", driver_name="virtualbox", driver=fake_driver)
    mgr = HostManager(store)
    monkeypatch.setattr(cli, "_manager", lambda: mgr)
    return mgr


class TestStart:
    def test_full_sequence(self, manager, fake_driver):
        order = []
        with (
            patch("minicluster.cli.update_cluster", side_effect=lambda *a: order.append("update")) as mock_update,
            patch("minicluster.cli.setup_certs", side_effect=lambda *a: order.append("certs")),
            patch("minicluster.cli.start_cluster", side_effect=lambda *a: order.append("start")),
        ):
            assert cli.main(["start", "--memory", "4096"]) == 0
        assert order == ["update", "certs", "start"]
        kube_config = mock_update.call_args.args[1]
        assert kube_config.node_ip == "192.168.99.100"

    def test_retries_transient_host_errors(self, manager):
        host = manager.load()
        attempts = [RetriableError(ManagerError("ssh not up")), host]

        def _ensure(config):
            result = attempts.pop(0)
            if isinstance(result, Exception):
                raise result
            return result

        with (
            patch.object(manager, "ensure_started", side_effect=_ensure) as mock_ensure,
            patch("minicluster.retry.time.sleep"),
            patch("minicluster.cli.update_cluster"),
            patch("minicluster.cli.setup_certs"),
            patch("minicluster.cli.start_cluster"),
        ):
            assert cli.main(["start"]) == 0
        assert mock_ensure.call_count == 2

    def test_engine_flags_reach_machine_config(self, manager):
        with (
            patch.object(user_config, "parse_machine_config", wraps=user_config.parse_machine_config) as mock_parse,
            patch("minicluster.cli.update_cluster"),
            patch("minicluster.cli.setup_certs"),
            patch("minicluster.cli.start_cluster"),
        ):
            argv = ["start", "--insecure-registry", "a:5000", "--insecure-registry", "b:5000", "--docker-env", "A=1"]
            assert cli.main(argv) == 0
        overrides = mock_parse.call_args.args[0]
        assert overrides["insecure-registry"] == ["a:5000", "b:5000"]
        assert overrides["docker-env"] == ["A=1"]
        assert "registry-mirror" not in overrides

    def test_manager_error_returns_one(self, manager):
        with (
            patch("minicluster.cli.update_cluster", side_effect=ManagerError("no localkube")),
            patch("minicluster.cli.log") as mock_log,
        ):
            assert cli.main(["start"]) == 1
        mock_log.assert_called_with("ERROR", "no localkube")


class TestHostCommands:
    def test_status(self, manager, fake_driver, capsys):
        fake_driver.client.run.return_value = "Running\n"
        assert cli.main(["status"]) == 0
        out = capsys.readouterr().out
        assert "minicluster: Running" in out
        assert "localkube: Running" in out

    def test_status_missing(self, store, monkeypatch, capsys):
        monkeypatch.setattr(cli, "_manager", lambda: HostManager(store))
        assert cli.main(["status"]) == 0
        assert "minicluster: Does Not Exist" in capsys.readouterr().out

    def test_ip(self, manager, capsys):
        assert cli.main(["ip"]) == 0
        assert capsys.readouterr().out.strip() == "192.168.99.100"

    def test_stop(self, manager, fake_driver):
        assert cli.main(["stop"]) == 0
        assert fake_driver.state == PowerState.STOPPED

    def test_delete_asks_first(self, manager, store):
        with patch("minicluster.cli.ask_yes_no", return_value=False):
            assert cli.main(["delete"]) == 0
        assert store.exists("minicluster")

    def test_delete_yes(self, manager, store):
        assert cli.main(["delete", "--yes"]) == 0
        assert not store.exists("minicluster")

    def test_docker_env(self, manager, capsys):
        assert cli.main(["docker-env"]) == 0
        out = capsys.readouterr().out
        assert 'export DOCKER_HOST="tcp://192.168.99.100:2376"' in out

    def test_docker_env_unset(self, manager, capsys):
        assert cli.main(["docker-env", "--unset"]) == 0
        assert "unset DOCKER_HOST" in capsys.readouterr().out


class TestServiceCommand:
    def test_url_mode_prints(self, manager, capsys):
        with (
            patch("minicluster.cli.wait_for_ready") as mock_wait,
            patch("minicluster.cli.get_service_urls_for_service", return_value=["http://192.168.99.100:30000"]),
            patch("minicluster.cli.webbrowser.open") as mock_open,
        ):
            assert cli.main(["service", "dashboard", "-n", "kube-system", "--url"]) == 0
        mock_wait.assert_called_once()
        assert mock_wait.call_args.args[:2] == ("kube-system", "dashboard")
        mock_open.assert_not_called()
        assert "http://192.168.99.100:30000" in capsys.readouterr().out

    def test_opens_browser_with_https(self, manager):
        with (
            patch("minicluster.cli.wait_for_ready"),
            patch("minicluster.cli.get_service_urls_for_service", return_value=["http://192.168.99.100:30000"]),
            patch("minicluster.cli.webbrowser.open") as mock_open,
        ):
            assert cli.main(["service", "web", "--https"]) == 0
        mock_open.assert_called_once_with("https://192.168.99.100:30000")

    def test_not_running_exits_one(self, manager, fake_driver):
        fake_driver.state = PowerState.STOPPED
        with pytest.raises(SystemExit) as exc:
            cli.main(["service", "web"])
        assert exc.value.code == 1

    def test_endpoint_never_ready(self, manager, capsys):
        with patch("minicluster.cli.wait_for_ready", side_effect=RetriableError(ManagerError("not ready"))):
            assert cli.main(["service", "web"]) == 1
        assert "Could not find finalized endpoint" in capsys.readouterr().err

    def test_missing_node_port(self, manager, capsys):
        svc = {"metadata": {"name": "db", "namespace": "default"}, "spec": {"type": "ClusterIP"}}
        with (
            patch("minicluster.cli.wait_for_ready"),
            patch("minicluster.cli.get_service_urls_for_service", side_effect=MissingNodePortError(svc)),
        ):
            assert cli.main(["service", "db"]) == 1
        err = capsys.readouterr().err
        assert "does not have a node port" in err
        assert "-n flag" in err

    def test_bad_format(self, manager):
        with patch("minicluster.cli.log") as mock_log:
            assert cli.main(["service", "web", "--format", "{{.Nope}}"]) == 1
        assert "unknown field" in mock_log.call_args.args[1]

    def test_list(self, manager, capsys):
        entries = [ServiceURL("default", "db"), ServiceURL("default", "web", ["http://1.2.3.4:30001"])]
        with patch("minicluster.cli.get_all_service_urls", return_value=entries):
            assert cli.main(["service", "--list"]) == 0
        out = capsys.readouterr().out
        assert "No node port" in out
        assert "http://1.2.3.4:30001" in out


class TestAddonsCommand:
    def test_list(self, capsys):
        assert cli.main(["addons", "list"]) == 0
        out = capsys.readouterr().out
        assert "- dashboard: enabled" in out
        assert "- heapster: disabled" in out

    def test_enable_disable(self):
        assert cli.main(["addons", "enable", "heapster"]) == 0
        assert user_config.addon_enabled("heapster", False) is True
        assert cli.main(["addons", "disable", "heapster"]) == 0
        assert user_config.addon_enabled("heapster", True) is False

    def test_unknown(self):
        assert cli.main(["addons", "enable", "nope"]) == 1

    def test_open_when_stopped_exits_zero(self, manager, fake_driver):
        fake_driver.state = PowerState.STOPPED
        with pytest.raises(SystemExit) as exc:
            cli.main(["addons", "open", "dashboard"])
        assert exc.value.code == 0

    def test_open_uses_endpoint_label(self, manager):
        services = [{"metadata": {"name": "kubernetes-dashboard"}}]
        with (
            patch("minicluster.cli.get_service_list_by_label", return_value=services) as mock_list,
            patch("minicluster.cli._wait_and_open", return_value=0) as mock_open,
        ):
            assert cli.main(["addons", "open", "dashboard", "--url"]) == 0
        assert mock_list.call_args.args == ("kube-system", cli.ADDON_ENDPOINT_LABEL, "dashboard")
        assert mock_open.call_args.args[2] == "kubernetes-dashboard"


class TestConfigCommand:
    def test_set_get_unset(self, capsys):
        assert cli.main(["config", "set", "memory", "4096"]) == 0
        assert cli.main(["config", "get", "memory"]) == 0
        assert capsys.readouterr().out.strip() == "4096"
        assert cli.main(["config", "unset", "memory"]) == 0
        assert cli.main(["config", "get", "memory"]) == 1

    def test_view(self, capsys):
        cli.main(["config", "set", "vm-driver", "kvm"])
        assert cli.main(["config", "view"]) == 0
        assert "- vm-driver: kvm" in capsys.readouterr().out

    def test_invalid_value(self):
        assert cli.main(["config", "set", "cpus", "many"]) == 1


class TestUnexpectedErrors:
    def test_traceback_and_status(self, capsys):
        args = MagicMock(func=MagicMock(side_effect=RuntimeError("boom")))
        with patch.object(cli, "build_parser") as mock_parser:
            mock_parser.return_value.parse_args.return_value = args
            assert cli.main(["ip"]) == 1
        assert "Traceback" in capsys.readouterr().err
