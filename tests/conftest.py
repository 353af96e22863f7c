"""Shared test fixtures: isolated home directory, in-memory store and a scripted driver."""

from __future__ import annotations

from pathlib import Path
from typing import Dict, List, Optional
from unittest.mock import MagicMock

import pytest

from minicluster import constants
from minicluster.drivers import Driver
from minicluster.exceptions import ManagerError
from minicluster.models import HostRecord, KubernetesConfig, MachineConfig, PowerState


class FakeDriver(Driver):
    """Driver whose power state lives in memory; every call is recorded in ``calls``."""

    name = "fake"

    def __init__(self, machine_name: str = "minicluster", store_path: Optional[Path] = None, **kwargs) -> None:
        params = {
            "memory_mb": 1024,
            "cpus": 1,
            "disk_size_mb": 2048,
            "host_only_cidr": "192.168.99.1/24",
            "boot_iso_url": "file:///tmp/boot.iso",
        }
        params.update(kwargs)
        super().__init__(machine_name, store_path or Path("/tmp/fake-machine"), **params)
        self.state = PowerState.NONE
        self.ip = "192.168.99.100"
        self.calls: List[str] = []
        self.client = MagicMock()
        self.client.run.return_value = ""
        self.fail: Dict[str, Exception] = {}

    def _record(self, name: str) -> None:
        self.calls.append(name)
        if name in self.fail:
            raise self.fail[name]

    def create(self) -> None:
        self._record("create")
        self.state = PowerState.RUNNING

    def get_ip(self) -> str:
        self._record("get_ip")
        return self.ip

    def get_state(self) -> PowerState:
        self._record("get_state")
        return self.state

    def start(self) -> None:
        self._record("start")
        self.state = PowerState.RUNNING

    def stop(self) -> None:
        self._record("stop")
        self.state = PowerState.STOPPED

    def remove(self) -> None:
        self._record("remove")
        self.state = PowerState.NONE

    def ssh_client(self):
        self._record("ssh_client")
        return self.client

    def run_command(self, command: str) -> str:
        self._record("run_command")
        return self.client.run(command)


class InMemoryHostStore:
    """Stands in for HostStore; keeps records (and their driver objects) in a dict."""

    def __init__(self) -> None:
        self.records: Dict[str, HostRecord] = {}
        self.saves = 0
        self.fail_save: Optional[Exception] = None
        self.fail_remove: Optional[Exception] = None

    def exists(self, name: str) -> bool:
        return name in self.records

    def load(self, name: str) -> HostRecord:
        if name not in self.records:
            raise ManagerError(f"Host does not exist: {name}")
        return self.records[name]

    def save(self, host: HostRecord) -> None:
        if self.fail_save is not None:
            raise self.fail_save
        self.saves += 1
        self.records[host.name] = host

    def remove(self, name: str) -> None:
        if self.fail_remove is not None:
            raise self.fail_remove
        if name not in self.records:
            raise ManagerError(f"Host does not exist: {name}")
        del self.records[name]


@pytest.fixture(autouse=True)
def mini_home(tmp_path, monkeypatch) -> Path:
    """Point every home-relative path at a temporary directory."""
    home = tmp_path / "home"
    monkeypatch.setattr(constants, "MINI_PATH", home)
    monkeypatch.setattr(constants, "MACHINES_DIR", home / "machines")
    monkeypatch.setattr("minicluster.drivers.MACHINES_DIR", home / "machines")
    monkeypatch.setattr(constants, "ISO_CACHE_DIR", home / "cache" / "iso")
    monkeypatch.setattr(constants, "LOCALKUBE_CACHE_DIR", home / "cache" / "localkube")
    monkeypatch.setattr(constants, "CONFIG_FILE", home / "config" / "config.yaml")
    monkeypatch.setattr(constants, "USER_ADDONS_DIR", home / "addons")
    monkeypatch.setattr(constants, "DOCKER_CERTS_DIR", home / "certs")
    return home


# Environment variables that the config parsers read; cleared for every test.
_CONFIG_ENV_VARS = [
    "VM_DRIVER",
    "MEMORY",
    "CPUS",
    "DISK_SIZE",
    "HOST_ONLY_CIDR",
    "ISO_URL",
    "KUBERNETES_VERSION",
    "CONTAINER_RUNTIME",
    "NETWORK_PLUGIN",
    "DNS_DOMAIN",
    "FEATURE_GATES",
    "EXTRA_CONFIG",
    "DOCKER_ENV",
    "INSECURE_REGISTRY",
    "REGISTRY_MIRROR",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for key in _CONFIG_ENV_VARS:
        monkeypatch.delenv(key, raising=False)


@pytest.fixture
def mock_env(monkeypatch):
    """Helper to set environment variables for tests."""

    def _set(**kwargs):
        for key, value in kwargs.items():
            if value is None:
                monkeypatch.delenv(key, raising=False)
            else:
                monkeypatch.setenv(key, str(value))

    return _set


@pytest.fixture
def machine_config() -> MachineConfig:
    return MachineConfig(
        vm_driver="virtualbox",
        memory_mb=1024,
        cpus=1,
        disk_size_mb=2048,
        host_only_cidr="192.168.99.1/24",
        iso_url="https://example.com/boot.iso",
    )


@pytest.fixture
def kube_config() -> KubernetesConfig:
    return KubernetesConfig(kubernetes_version=constants.DEFAULT_KUBERNETES_VERSION)


@pytest.fixture
def fake_driver(tmp_path) -> FakeDriver:
    return FakeDriver(store_path=tmp_path / "machine")


@pytest.fixture
def store() -> InMemoryHostStore:
    return InMemoryHostStore()
