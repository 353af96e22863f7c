"""Tests for minicluster.kvm module (XML rendering and lease lookup)."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest

libvirt = pytest.importorskip("libvirt")

from minicluster.exceptions import ManagerError  # noqa: E402
from minicluster.host import HostManager  # noqa: E402
from minicluster.kvm import KVMDriver, render_network_xml  # noqa: E402
from minicluster.models import HostRecord, PowerState  # noqa: E402


@pytest.fixture
def kvm(tmp_path):
    return KVMDriver(
        "minicluster",
        tmp_path / "machine",
        memory_mb=2048,
        cpus=2,
        disk_size_mb=20480,
        host_only_cidr="192.168.39.1/24",
        boot_iso_url="file:///cache/boot.iso",
    )


def _conn_with_domain(domain):
    conn = MagicMock()
    conn.lookupByName.return_value = domain
    return conn


class TestRenderXml:
    def test_network(self):
        xml = render_network_xml("minicluster-net", "192.168.39.1/24")
        assert "<name>minicluster-net</name>" in xml
        assert 'address="192.168.39.1"' in xml
        assert 'start="192.168.39.2"' in xml
        assert 'end="192.168.39.254"' in xml

    def test_tiny_network_rejected(self):
        with pytest.raises(ManagerError, match="too small"):
            render_network_xml("n", "10.0.0.1/31")

    def test_domain(self, kvm):
        xml = kvm.render_domain_xml()
        assert "<name>minicluster</name>" in xml
        assert '<memory unit="MiB">2048</memory>' in xml
        assert 'file="/cache/boot.iso"' in xml
        assert "minicluster.rawdisk" in xml
        assert 'network="minicluster-net"' in xml

    def test_remote_iso_rejected(self, kvm):
        kvm.boot_iso_url = "https://example.com/boot.iso"
        with pytest.raises(ManagerError, match="local boot image"):
            kvm.render_domain_xml()


class TestKvmState:
    def test_missing_domain(self, kvm):
        conn = MagicMock()
        conn.lookupByName.side_effect = libvirt.libvirtError("not found")
        with patch("minicluster.kvm.libvirt.open", return_value=conn):
            assert kvm.get_state() == PowerState.NONE
        conn.close.assert_called_once()

    def test_running_domain(self, kvm):
        domain = MagicMock()
        domain.state.return_value = (libvirt.VIR_DOMAIN_RUNNING, 1)
        with patch("minicluster.kvm.libvirt.open", return_value=_conn_with_domain(domain)):
            assert kvm.get_state() == PowerState.RUNNING

    def test_ip_from_private_network_lease(self, kvm):
        domain = MagicMock()
        domain.interfaceAddresses.return_value = {
            "vnet0": {"addrs": [{"addr": "192.168.122.50"}]},
            "vnet1": {"addrs": [{"addr": "192.168.39.23"}]},
        }
        with patch("minicluster.kvm.libvirt.open", return_value=_conn_with_domain(domain)):
            assert kvm.get_ip() == "192.168.39.23"

    def test_no_lease_yet(self, kvm):
        domain = MagicMock()
        domain.interfaceAddresses.return_value = {}
        with patch("minicluster.kvm.libvirt.open", return_value=_conn_with_domain(domain)):
            with pytest.raises(ManagerError, match="No IP address found"):
                kvm.get_ip()


class TestKvmConnectionErrors:
    def test_open_failure_is_a_manager_error(self, kvm):
        with patch("minicluster.kvm.libvirt.open", side_effect=libvirt.libvirtError("Failed to connect socket")):
            with pytest.raises(ManagerError, match="Failed to open libvirt connection"):
                kvm.get_state()

    def test_state_failure_is_a_manager_error(self, kvm):
        domain = MagicMock()
        domain.state.side_effect = libvirt.libvirtError("domain vanished")
        conn = _conn_with_domain(domain)
        with patch("minicluster.kvm.libvirt.open", return_value=conn):
            with pytest.raises(ManagerError, match="Error reading state of domain minicluster"):
                kvm.get_state()
        conn.close.assert_called_once()

    def test_running_guard_exits_one_when_libvirt_is_down(self, kvm, store):
        store.records["minicluster"] = HostRecord(name="minicluster", driver_name="kvm", driver=kvm)
        manager = HostManager(store)
        with (
            patch("minicluster.kvm.libvirt.open", side_effect=libvirt.libvirtError("Failed to connect socket")),
            patch("minicluster.host.log") as mock_log,
        ):
            with pytest.raises(SystemExit) as exc:
                manager.ensure_running_or_exit(3)
        assert exc.value.code == 1
        assert "Failed to open libvirt connection" in mock_log.call_args.args[1]

    def test_start_wraps_state_errors(self, kvm, store, machine_config):
        store.records["minicluster"] = HostRecord(name="minicluster", driver_name="kvm", driver=kvm)
        with patch("minicluster.kvm.libvirt.open", side_effect=libvirt.libvirtError("Failed to connect socket")):
            with pytest.raises(ManagerError, match="Error getting state for host"):
                HostManager(store).ensure_started(machine_config)
