"""KVM backend built on the libvirt python bindings."""

from __future__ import annotations

import ipaddress
import time
from pathlib import Path
from typing import Optional
from urllib.parse import urlparse
from xml.etree.ElementTree import Element, SubElement, tostring

try:
    import libvirt  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit(f"libvirt python bindings not available: {exc}")

from minicluster.constants import LIBVIRT_URI
from minicluster.drivers import Driver
from minicluster.exceptions import ManagerError
from minicluster.models import PowerState
from minicluster.utils import ensure_directory, log, run

_STATE_MAP = {
    libvirt.VIR_DOMAIN_RUNNING: PowerState.RUNNING,
    libvirt.VIR_DOMAIN_BLOCKED: PowerState.RUNNING,
    libvirt.VIR_DOMAIN_PAUSED: PowerState.PAUSED,
    libvirt.VIR_DOMAIN_SHUTDOWN: PowerState.STOPPED,
    libvirt.VIR_DOMAIN_SHUTOFF: PowerState.STOPPED,
    libvirt.VIR_DOMAIN_CRASHED: PowerState.ERROR,
    libvirt.VIR_DOMAIN_NOSTATE: PowerState.NONE,
}


def _element_to_str(root: Element) -> str:
    """Serialize an ElementTree element to a pretty-printed XML string without declaration."""
    from xml.dom.minidom import parseString

    raw = tostring(root, encoding="unicode")
    return parseString(raw).documentElement.toprettyxml(indent="  ").strip()


def render_network_xml(name: str, cidr: str) -> str:
    """Render a private NAT network whose gateway and DHCP range come from ``cidr``."""
    interface = ipaddress.ip_interface(cidr)
    hosts = list(interface.network.hosts())
    if len(hosts) < 3:
        raise ManagerError(f"Network {cidr} is too small for a VM network")
    net = Element("network")
    SubElement(net, "name").text = name
    SubElement(net, "forward", mode="nat")
    ip_el = SubElement(net, "ip", address=str(interface.ip), netmask=str(interface.network.netmask))
    dhcp = SubElement(ip_el, "dhcp")
    start = hosts[1] if hosts[0] == interface.ip else hosts[0]
    SubElement(dhcp, "range", start=str(start), end=str(hosts[-1]))
    return _element_to_str(net)


class KVMDriver(Driver):
    name = "kvm"

    @property
    def network_name(self) -> str:
        return f"{self.machine_name}-net"

    @property
    def disk_path(self) -> Path:
        return self.store_path / f"{self.machine_name}.rawdisk"

    def _connect(self):
        try:
            conn = libvirt.open(LIBVIRT_URI)
        except libvirt.libvirtError as exc:
            raise ManagerError(f"Failed to open libvirt connection to {LIBVIRT_URI}: {exc}") from exc
        if conn is None:
            raise ManagerError(f"Failed to open libvirt connection to {LIBVIRT_URI}")
        return conn

    def _lookup(self, conn) -> Optional["libvirt.virDomain"]:
        try:
            return conn.lookupByName(self.machine_name)
        except libvirt.libvirtError:
            return None

    def _iso_path(self) -> str:
        parsed = urlparse(self.boot_iso_url)
        if parsed.scheme in ("", "file"):
            return parsed.path
        raise ManagerError(f"KVM needs a local boot image, got {self.boot_iso_url}")

    def render_domain_xml(self) -> str:
        domain = Element("domain", type="kvm")
        SubElement(domain, "name").text = self.machine_name
        SubElement(domain, "memory", unit="MiB").text = str(self.memory_mb)
        SubElement(domain, "vcpu").text = str(self.cpus)
        os_el = SubElement(domain, "os")
        SubElement(os_el, "type").text = "hvm"
        SubElement(os_el, "boot", dev="cdrom")
        SubElement(os_el, "boot", dev="hd")
        features = SubElement(domain, "features")
        for feature in ("acpi", "apic", "pae"):
            SubElement(features, feature)
        SubElement(domain, "cpu", mode="host-passthrough")
        devices = SubElement(domain, "devices")

        cdrom = SubElement(devices, "disk", type="file", device="cdrom")
        SubElement(cdrom, "source", file=self._iso_path())
        SubElement(cdrom, "target", dev="hdc", bus="scsi")
        SubElement(cdrom, "readonly")

        disk = SubElement(devices, "disk", type="file", device="disk")
        SubElement(disk, "driver", name="qemu", type="raw", cache="default", io="threads")
        SubElement(disk, "source", file=str(self.disk_path))
        SubElement(disk, "target", dev="hda", bus="virtio")

        SubElement(devices, "controller", type="scsi", model="virtio-scsi")

        nat = SubElement(devices, "interface", type="network")
        SubElement(nat, "source", network="default")
        SubElement(nat, "model", type="virtio")
        private = SubElement(devices, "interface", type="network")
        SubElement(private, "source", network=self.network_name)
        SubElement(private, "model", type="virtio")

        serial = SubElement(devices, "serial", type="pty")
        SubElement(serial, "target", port="0")
        rng = SubElement(devices, "rng", model="virtio")
        SubElement(rng, "backend", model="random").text = "/dev/random"
        return _element_to_str(domain)

    def _ensure_network(self, conn) -> None:
        try:
            network = conn.networkLookupByName(self.network_name)
        except libvirt.libvirtError:
            network = conn.networkDefineXML(render_network_xml(self.network_name, self.host_only_cidr))
            log("INFO", f"Defined libvirt network {self.network_name} ({self.host_only_cidr})")
        if not network.isActive():
            network.create()
        if not network.autostart():
            network.setAutostart(True)

    def create(self) -> None:
        ensure_directory(self.store_path)
        self.generate_ssh_key()
        if not self.disk_path.exists():
            run(["qemu-img", "create", "-f", "raw", str(self.disk_path), f"{self.disk_size_mb}M"], capture_output=True)
        conn = self._connect()
        try:
            self._ensure_network(conn)
            if self._lookup(conn) is None:
                conn.defineXML(self.render_domain_xml())
                log("INFO", f"Defined domain {self.machine_name}")
        except libvirt.libvirtError as exc:
            raise ManagerError(f"Error defining domain {self.machine_name}: {exc}") from exc
        finally:
            conn.close()
        self.start()

    def get_state(self) -> PowerState:
        conn = self._connect()
        try:
            domain = self._lookup(conn)
            if domain is None:
                return PowerState.NONE
            state, _reason = domain.state()
            return _STATE_MAP.get(state, PowerState.NONE)
        except libvirt.libvirtError as exc:
            raise ManagerError(f"Error reading state of domain {self.machine_name}: {exc}") from exc
        finally:
            conn.close()

    def get_ip(self) -> str:
        conn = self._connect()
        try:
            domain = self._lookup(conn)
            if domain is None:
                raise ManagerError(f"Domain {self.machine_name} is not defined")
            addresses = domain.interfaceAddresses(libvirt.VIR_DOMAIN_INTERFACE_ADDRESSES_SRC_LEASE)
        except libvirt.libvirtError as exc:
            raise ManagerError(f"Error reading leases for {self.machine_name}: {exc}") from exc
        finally:
            conn.close()
        private = ipaddress.ip_interface(self.host_only_cidr).network
        for iface in addresses.values():
            for addr in iface.get("addrs") or []:
                candidate = addr.get("addr", "")
                if candidate and ipaddress.ip_address(candidate) in private:
                    return candidate
        raise ManagerError(f"No IP address found for {self.machine_name} on {self.network_name}")

    def start(self) -> None:
        conn = self._connect()
        try:
            domain = self._lookup(conn)
            if domain is None:
                raise ManagerError(f"Domain {self.machine_name} is not defined")
            if domain.isActive():
                log("INFO", f"Domain {self.machine_name} already running")
                return
            self._ensure_network(conn)
            domain.create()
        except libvirt.libvirtError as exc:
            message = exc.get_error_message() if hasattr(exc, "get_error_message") else str(exc)
            raise ManagerError(f"Failed to start domain: {message}") from exc
        finally:
            conn.close()
        log("SUCCESS", f"Domain {self.machine_name} started")

    def stop(self, timeout: float = 60.0, interval: float = 1.0) -> None:
        conn = self._connect()
        try:
            domain = self._lookup(conn)
            if domain is None or not domain.isActive():
                return
            domain.shutdown()
            deadline = time.time() + timeout
            while time.time() < deadline:
                if not domain.isActive():
                    log("SUCCESS", f"Domain {self.machine_name} stopped")
                    return
                time.sleep(interval)
            log("WARN", f"Domain {self.machine_name} did not shut down within {int(timeout)}s; forcing off")
            domain.destroy()
        except libvirt.libvirtError as exc:
            raise ManagerError(f"Failed to stop domain {self.machine_name}: {exc}") from exc
        finally:
            conn.close()

    def remove(self) -> None:
        conn = self._connect()
        try:
            domain = self._lookup(conn)
            if domain is not None:
                if domain.isActive():
                    domain.destroy()
                domain.undefine()
            try:
                network = conn.networkLookupByName(self.network_name)
            except libvirt.libvirtError:
                network = None
            if network is not None:
                if network.isActive():
                    network.destroy()
                network.undefine()
        except libvirt.libvirtError as exc:
            raise ManagerError(f"Failed to remove domain {self.machine_name}: {exc}") from exc
        finally:
            conn.close()
        self.disk_path.unlink(missing_ok=True)
