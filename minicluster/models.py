"""Data models for minicluster."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Dict, List, NamedTuple, Tuple, Union

if TYPE_CHECKING:  # pragma: no cover
    from minicluster.drivers import Driver


class PowerState(enum.Enum):
    NONE = ""
    RUNNING = "Running"
    STOPPED = "Stopped"
    PAUSED = "Paused"
    ERROR = "Error"

    def __str__(self) -> str:
        return self.value


class ExtraOption(NamedTuple):
    component: str
    key: str
    value: str

    def __str__(self) -> str:
        return f"{self.component}.{self.key}={self.value}"


@dataclass(frozen=True)
class MachineConfig:
    vm_driver: str
    memory_mb: int
    cpus: int
    disk_size_mb: int
    host_only_cidr: str
    iso_url: str
    docker_env: Tuple[str, ...] = ()
    insecure_registry: Tuple[str, ...] = ()
    registry_mirror: Tuple[str, ...] = ()


@dataclass(frozen=True)
class KubernetesConfig:
    kubernetes_version: str
    node_ip: str = ""
    container_runtime: str = "docker"
    network_plugin: str = ""
    dns_domain: str = "cluster.local"
    feature_gates: str = ""
    extra_options: Tuple[ExtraOption, ...] = ()


@dataclass(frozen=True)
class EngineOptions:
    """Docker daemon settings applied inside the VM on every start."""

    env: Tuple[str, ...] = ()
    insecure_registry: Tuple[str, ...] = ()
    registry_mirror: Tuple[str, ...] = ()

    @classmethod
    def from_machine_config(cls, config: "MachineConfig") -> "EngineOptions":
        return cls(
            env=config.docker_env,
            insecure_registry=config.insecure_registry,
            registry_mirror=config.registry_mirror,
        )

    @classmethod
    def from_dict(cls, data: Dict[str, List[str]]) -> "EngineOptions":
        return cls(
            env=tuple(data.get("env") or ()),
            insecure_registry=tuple(data.get("insecure_registry") or ()),
            registry_mirror=tuple(data.get("registry_mirror") or ()),
        )

    def to_dict(self) -> Dict[str, List[str]]:
        return {
            "env": list(self.env),
            "insecure_registry": list(self.insecure_registry),
            "registry_mirror": list(self.registry_mirror),
        }


@dataclass
class HostRecord:
    """Persisted descriptor of the single managed VM."""

    name: str
    driver_name: str
    driver: "Driver"
    engine_options: EngineOptions = field(default_factory=EngineOptions)

    def to_dict(self) -> Dict[str, object]:
        return {
            "name": self.name,
            "driver_name": self.driver_name,
            "driver": self.driver.to_dict(),
            "engine_options": self.engine_options.to_dict(),
        }


@dataclass
class CopyableFile:
    """A file to be placed on the VM: payload, destination and permissions."""

    source: Union[bytes, Path]
    target_dir: str
    target_name: str
    permissions: str = "0644"

    @property
    def target_path(self) -> str:
        return f"{self.target_dir.rstrip('/')}/{self.target_name}"

    def read(self) -> bytes:
        if isinstance(self.source, bytes):
            return self.source
        return self.source.read_bytes()


@dataclass
class ServiceURL:
    namespace: str
    name: str
    urls: List[str] = field(default_factory=list)


ServiceURLs = List[ServiceURL]

