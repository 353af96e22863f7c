"""Hypervisor driver interface and the registry of supported backends."""

from __future__ import annotations

import abc
from pathlib import Path
from typing import Any, Callable, Dict

from minicluster.constants import DEFAULT_SSH_USER, MACHINES_DIR
from minicluster.exceptions import ManagerError
from minicluster.models import MachineConfig, PowerState
from minicluster.ssh import SSHClient
from minicluster.utils import ensure_directory, log, run


class Driver(abc.ABC):
    """Control operations one hypervisor backend must provide for the VM."""

    name = ""

    def __init__(
        self,
        machine_name: str,
        store_path: Path,
        *,
        memory_mb: int,
        cpus: int,
        disk_size_mb: int,
        host_only_cidr: str,
        boot_iso_url: str,
        ssh_user: str = DEFAULT_SSH_USER,
        ssh_port: int = 22,
    ) -> None:
        self.machine_name = machine_name
        self.store_path = Path(store_path)
        self.memory_mb = memory_mb
        self.cpus = cpus
        self.disk_size_mb = disk_size_mb
        self.host_only_cidr = host_only_cidr
        self.boot_iso_url = boot_iso_url
        self.ssh_user = ssh_user
        self.ssh_port = ssh_port

    @property
    def ssh_key_path(self) -> Path:
        return self.store_path / "id_rsa"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "machine_name": self.machine_name,
            "store_path": str(self.store_path),
            "memory_mb": self.memory_mb,
            "cpus": self.cpus,
            "disk_size_mb": self.disk_size_mb,
            "host_only_cidr": self.host_only_cidr,
            "boot_iso_url": self.boot_iso_url,
            "ssh_user": self.ssh_user,
            "ssh_port": self.ssh_port,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Driver":
        params = dict(data)
        machine_name = params.pop("machine_name")
        store_path = Path(params.pop("store_path"))
        return cls(machine_name, store_path, **params)

    def ssh_client(self) -> SSHClient:
        return SSHClient(self.get_ip(), self.ssh_port, self.ssh_user, self.ssh_key_path)

    def run_command(self, command: str) -> str:
        return self.ssh_client().run(command)

    def generate_ssh_key(self) -> None:
        if self.ssh_key_path.exists():
            return
        ensure_directory(self.store_path)
        run(
            ["ssh-keygen", "-q", "-t", "rsa", "-b", "2048", "-N", "", "-f", str(self.ssh_key_path)],
            capture_output=True,
        )

    @abc.abstractmethod
    def create(self) -> None:
        """Provision the VM (disk, definition, key pair) and boot it."""

    @abc.abstractmethod
    def get_ip(self) -> str:
        ...

    @abc.abstractmethod
    def get_state(self) -> PowerState:
        ...

    @abc.abstractmethod
    def start(self) -> None:
        ...

    @abc.abstractmethod
    def stop(self) -> None:
        ...

    @abc.abstractmethod
    def remove(self) -> None:
        ...


def _kvm_driver() -> type:
    from minicluster.kvm import KVMDriver

    return KVMDriver


def _virtualbox_driver() -> type:
    from minicluster.virtualbox import VirtualBoxDriver

    return VirtualBoxDriver


DRIVERS: Dict[str, Callable[[], type]] = {
    "kvm": _kvm_driver,
    "virtualbox": _virtualbox_driver,
}
SUPPORTED_DRIVERS = tuple(DRIVERS)


def create_driver(machine_name: str, config: MachineConfig, iso_uri: str) -> Driver:
    """Build the driver for ``config.vm_driver``; an unknown tag terminates the process."""
    factory = DRIVERS.get(config.vm_driver)
    if factory is None:
        log("ERROR", f"Unsupported driver: {config.vm_driver} (supported: {', '.join(SUPPORTED_DRIVERS)})")
        raise SystemExit(1)
    driver_cls = factory()
    return driver_cls(
        machine_name,
        MACHINES_DIR / machine_name,
        memory_mb=config.memory_mb,
        cpus=config.cpus,
        disk_size_mb=config.disk_size_mb,
        host_only_cidr=config.host_only_cidr,
        boot_iso_url=iso_uri,
    )


def driver_from_dict(driver_name: str, data: Dict[str, Any]) -> Driver:
    factory = DRIVERS.get(driver_name)
    if factory is None:
        raise ManagerError(f"Host record references unknown driver '{driver_name}'")
    try:
        return factory().from_dict(data)
    except (KeyError, TypeError) as exc:
        raise ManagerError(f"Malformed driver data for '{driver_name}': {exc}") from exc
