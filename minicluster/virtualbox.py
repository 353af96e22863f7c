"""VirtualBox backend driven through ``VBoxManage``."""

from __future__ import annotations

import ipaddress
import re
import socket
import time
from pathlib import Path
from typing import Dict
from urllib.parse import urlparse

from minicluster.drivers import Driver
from minicluster.exceptions import CommandError, ManagerError
from minicluster.models import PowerState
from minicluster.ssh import SSHClient
from minicluster.utils import ensure_directory, log, run_output

_VM_STATE_RE = re.compile(r'^VMState="(?P<state>[^"]*)"', re.MULTILINE)
_STATE_MAP = {
    "running": PowerState.RUNNING,
    "poweroff": PowerState.STOPPED,
    "aborted": PowerState.STOPPED,
    "saved": PowerState.STOPPED,
    "paused": PowerState.PAUSED,
    "stuck": PowerState.ERROR,
}


def _free_local_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


class VirtualBoxDriver(Driver):
    name = "virtualbox"

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.host_only_adapter = ""

    def to_dict(self) -> Dict[str, object]:
        data = super().to_dict()
        data["host_only_adapter"] = self.host_only_adapter
        return data

    @classmethod
    def from_dict(cls, data):
        params = dict(data)
        adapter = params.pop("host_only_adapter", "")
        driver = super().from_dict(params)
        driver.host_only_adapter = adapter
        return driver

    def _vbox(self, *args: str) -> str:
        return run_output(["VBoxManage", *args])

    @property
    def disk_path(self) -> Path:
        return self.store_path / "disk.vmdk"

    def _iso_path(self) -> str:
        parsed = urlparse(self.boot_iso_url)
        if parsed.scheme in ("", "file"):
            return parsed.path
        raise ManagerError(f"VirtualBox needs a local boot image, got {self.boot_iso_url}")

    def _ensure_host_only_adapter(self) -> str:
        network = ipaddress.ip_interface(self.host_only_cidr)
        listing = self._vbox("list", "hostonlyifs")
        current_name = ""
        for line in listing.splitlines():
            key, _, value = line.partition(":")
            value = value.strip()
            if key == "Name":
                current_name = value
            elif key == "IPAddress" and value == str(network.ip):
                return current_name
        created = self._vbox("hostonlyif", "create")
        match = re.search(r"Interface '([^']+)'", created)
        if not match:
            raise ManagerError(f"Could not parse host-only adapter name from: {created.strip()}")
        adapter = match.group(1)
        self._vbox(
            "hostonlyif", "ipconfig", adapter,
            "--ip", str(network.ip),
            "--netmask", str(network.network.netmask),
        )
        return adapter

    def create(self) -> None:
        ensure_directory(self.store_path)
        self.generate_ssh_key()
        self.ssh_port = _free_local_port()
        self.host_only_adapter = self._ensure_host_only_adapter()
        log("INFO", f"Creating VirtualBox VM {self.machine_name} ({self.memory_mb} MiB, {self.cpus} CPUs)")
        self._vbox(
            "createvm", "--name", self.machine_name,
            "--basefolder", str(self.store_path), "--ostype", "Linux26_64", "--register",
        )
        self._vbox(
            "modifyvm", self.machine_name,
            "--memory", str(self.memory_mb),
            "--cpus", str(self.cpus),
            "--nic1", "nat",
            "--natpf1", f"ssh,tcp,127.0.0.1,{self.ssh_port},,22",
            "--nic2", "hostonly",
            "--hostonlyadapter2", self.host_only_adapter,
            "--boot1", "dvd",
        )
        self._vbox("storagectl", self.machine_name, "--name", "SATA", "--add", "sata", "--hostiocache", "on")
        self._vbox(
            "createmedium", "disk", "--filename", str(self.disk_path),
            "--size", str(self.disk_size_mb), "--format", "VMDK",
        )
        self._vbox(
            "storageattach", self.machine_name, "--storagectl", "SATA",
            "--port", "0", "--device", "0", "--type", "dvddrive", "--medium", self._iso_path(),
        )
        self._vbox(
            "storageattach", self.machine_name, "--storagectl", "SATA",
            "--port", "1", "--device", "0", "--type", "hdd", "--medium", str(self.disk_path),
        )
        self.start()

    def get_state(self) -> PowerState:
        try:
            info = self._vbox("showvminfo", self.machine_name, "--machinereadable")
        except CommandError as exc:
            if "VBOX_E_OBJECT_NOT_FOUND" in exc.stderr or "Could not find a registered machine" in exc.stderr:
                return PowerState.NONE
            raise
        match = _VM_STATE_RE.search(info)
        if not match:
            return PowerState.NONE
        return _STATE_MAP.get(match.group("state"), PowerState.NONE)

    def get_ip(self) -> str:
        # SSH goes through the NAT port forward; the host-only address is what services use.
        output = self._vbox("guestproperty", "get", self.machine_name, "/VirtualBox/GuestInfo/Net/1/V4/IP")
        if output.startswith("Value:"):
            return output.split(":", 1)[1].strip()
        raise ManagerError(f"No host-only IP reported for {self.machine_name} yet")

    def ssh_client(self) -> SSHClient:
        return SSHClient("127.0.0.1", self.ssh_port, self.ssh_user, self.ssh_key_path)

    def start(self) -> None:
        state = self.get_state()
        if state == PowerState.RUNNING:
            log("INFO", f"VM {self.machine_name} already running")
            return
        if state == PowerState.PAUSED:
            self._vbox("controlvm", self.machine_name, "resume")
        else:
            self._vbox("startvm", self.machine_name, "--type", "headless")
        log("SUCCESS", f"VM {self.machine_name} started")

    def stop(self, timeout: float = 60.0, interval: float = 1.0) -> None:
        if self.get_state() != PowerState.RUNNING:
            return
        self._vbox("controlvm", self.machine_name, "acpipowerbutton")
        deadline = time.time() + timeout
        while time.time() < deadline:
            if self.get_state() == PowerState.STOPPED:
                log("SUCCESS", f"VM {self.machine_name} stopped")
                return
            time.sleep(interval)
        log("WARN", f"VM {self.machine_name} ignored ACPI shutdown; powering off")
        self._vbox("controlvm", self.machine_name, "poweroff")

    def remove(self) -> None:
        state = self.get_state()
        if state == PowerState.NONE:
            log("WARN", f"VM {self.machine_name} is not registered with VirtualBox")
            return
        if state in (PowerState.RUNNING, PowerState.PAUSED):
            self._vbox("controlvm", self.machine_name, "poweroff")
        self._vbox("unregistervm", self.machine_name, "--delete")

