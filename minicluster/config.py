"""Configuration loading: user config file, environment variables and defaults."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from minicluster import constants
from minicluster.constants import (
    DEFAULT_CONTAINER_RUNTIME,
    DEFAULT_CPUS,
    DEFAULT_DISK_SIZE,
    DEFAULT_DNS_DOMAIN,
    DEFAULT_HOST_ONLY_CIDR,
    DEFAULT_ISO_URL,
    DEFAULT_KUBERNETES_VERSION,
    DEFAULT_MEMORY_MB,
    DEFAULT_VM_DRIVER,
    EXTRA_OPTION_COMPONENTS,
    EXTRA_OPTION_RE,
    TRUTHY,
)
from minicluster.exceptions import ManagerError
from minicluster.models import ExtraOption, KubernetesConfig, MachineConfig
from minicluster.utils import ensure_directory, get_env, parse_disk_size_mb

# Settings accepted by ``config set``: name -> (environment variable, type).
SETTINGS: Dict[str, Tuple[str, type]] = {
    "vm-driver": ("VM_DRIVER", str),
    "memory": ("MEMORY", int),
    "cpus": ("CPUS", int),
    "disk-size": ("DISK_SIZE", str),
    "host-only-cidr": ("HOST_ONLY_CIDR", str),
    "iso-url": ("ISO_URL", str),
    "kubernetes-version": ("KUBERNETES_VERSION", str),
    "container-runtime": ("CONTAINER_RUNTIME", str),
    "network-plugin": ("NETWORK_PLUGIN", str),
    "dns-domain": ("DNS_DOMAIN", str),
    "feature-gates": ("FEATURE_GATES", str),
}


def _config_path(config_path: Optional[Path]) -> Path:
    return config_path if config_path is not None else constants.CONFIG_FILE


def load_user_config(config_path: Optional[Path] = None) -> Dict[str, Any]:
    path = _config_path(config_path)
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text())
    except yaml.YAMLError as exc:
        raise ManagerError(f"Invalid config file {path}: {exc}") from exc
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ManagerError(f"Config file {path} must contain a mapping")
    return data


def write_user_config(data: Dict[str, Any], config_path: Optional[Path] = None) -> None:
    path = _config_path(config_path)
    ensure_directory(path.parent)
    path.write_text(yaml.safe_dump(data, default_flow_style=False, sort_keys=True))


def _coerce(name: str, raw: Any) -> Any:
    kind = SETTINGS[name][1]
    if kind is int:
        try:
            return int(raw)
        except (TypeError, ValueError):
            raise ManagerError(f"{name} must be an integer (got '{raw}')")
    return str(raw)


def get_config_value(name: str, config_path: Optional[Path] = None) -> Any:
    if name not in SETTINGS:
        raise ManagerError(f"Unknown setting '{name}'. Valid settings: {', '.join(sorted(SETTINGS))}")
    return load_user_config(config_path).get(name)


def set_config_value(name: str, value: str, config_path: Optional[Path] = None) -> None:
    if name not in SETTINGS:
        raise ManagerError(f"Unknown setting '{name}'. Valid settings: {', '.join(sorted(SETTINGS))}")
    data = load_user_config(config_path)
    data[name] = _coerce(name, value)
    write_user_config(data, config_path)


def unset_config_value(name: str, config_path: Optional[Path] = None) -> None:
    data = load_user_config(config_path)
    if data.pop(name, None) is not None:
        write_user_config(data, config_path)


def addon_enabled(name: str, default: bool, config_path: Optional[Path] = None) -> bool:
    addons = load_user_config(config_path).get("addons") or {}
    if not isinstance(addons, dict):
        raise ManagerError("'addons' in the config file must be a mapping of name to true/false")
    raw = addons.get(name)
    if raw is None:
        return default
    if isinstance(raw, bool):
        return raw
    return str(raw).lower() in TRUTHY


def set_addon_enabled(name: str, enabled: bool, config_path: Optional[Path] = None) -> None:
    data = load_user_config(config_path)
    addons = data.get("addons") or {}
    addons[name] = enabled
    data["addons"] = addons
    write_user_config(data, config_path)


def _setting(
    name: str,
    default: str,
    overrides: Optional[Dict[str, Any]],
    user_config: Dict[str, Any],
) -> str:
    """CLI override, then environment, then config file, then default."""
    if overrides and overrides.get(name) is not None:
        return str(overrides[name])
    env_value = get_env(SETTINGS[name][0])
    if env_value is not None and env_value.strip():
        return env_value.strip()
    if user_config.get(name) is not None:
        return str(user_config[name])
    return default


def _positive_int(name: str, raw: str) -> int:
    try:
        value = int(raw)
    except ValueError:
        raise ManagerError(f"{name} must be an integer (got '{raw}')")
    if value < 1:
        raise ManagerError(f"{name} must be >= 1 (got {value})")
    return value


def parse_csv(raw: str) -> Tuple[str, ...]:
    return tuple(item.strip() for item in raw.split(",") if item.strip())


def _engine_list(name: str, env_name: str, overrides: Optional[Dict[str, Any]]) -> Tuple[str, ...]:
    """Repeated CLI values win over the comma separated environment variable."""
    if overrides and overrides.get(name):
        return tuple(str(item).strip() for item in overrides[name] if str(item).strip())
    return parse_csv(get_env(env_name, "") or "")


def parse_extra_options(raw: str) -> Tuple[ExtraOption, ...]:
    """Parse ``component.key=value`` entries separated by commas."""
    options: List[ExtraOption] = []
    for entry in parse_csv(raw):
        match = EXTRA_OPTION_RE.match(entry)
        if not match:
            raise ManagerError(f"Invalid extra option '{entry}', expected component.key=value")
        component = match.group("component")
        if component not in EXTRA_OPTION_COMPONENTS:
            raise ManagerError(
                f"Unknown component '{component}' in extra option '{entry}' "
                f"(valid: {', '.join(sorted(EXTRA_OPTION_COMPONENTS))})"
            )
        options.append(ExtraOption(component, match.group("key"), match.group("value")))
    return tuple(options)


def parse_machine_config(
    overrides: Optional[Dict[str, Any]] = None,
    config_path: Optional[Path] = None,
) -> MachineConfig:
    user_config = load_user_config(config_path)
    memory_raw = _setting("memory", str(DEFAULT_MEMORY_MB), overrides, user_config)
    cpus_raw = _setting("cpus", str(DEFAULT_CPUS), overrides, user_config)
    disk_raw = _setting("disk-size", DEFAULT_DISK_SIZE, overrides, user_config)
    return MachineConfig(
        vm_driver=_setting("vm-driver", DEFAULT_VM_DRIVER, overrides, user_config).lower(),
        memory_mb=_positive_int("memory", memory_raw),
        cpus=_positive_int("cpus", cpus_raw),
        disk_size_mb=parse_disk_size_mb(disk_raw),
        host_only_cidr=_setting("host-only-cidr", DEFAULT_HOST_ONLY_CIDR, overrides, user_config),
        iso_url=_setting("iso-url", DEFAULT_ISO_URL, overrides, user_config),
        docker_env=_engine_list("docker-env", "DOCKER_ENV", overrides),
        insecure_registry=_engine_list("insecure-registry", "INSECURE_REGISTRY", overrides),
        registry_mirror=_engine_list("registry-mirror", "REGISTRY_MIRROR", overrides),
    )


def parse_kubernetes_config(
    overrides: Optional[Dict[str, Any]] = None,
    config_path: Optional[Path] = None,
    node_ip: str = "",
) -> KubernetesConfig:
    user_config = load_user_config(config_path)
    extra_raw = ""
    if overrides and overrides.get("extra-config"):
        extra_raw = str(overrides["extra-config"])
    else:
        extra_raw = get_env("EXTRA_CONFIG", "") or ""
    return KubernetesConfig(
        kubernetes_version=_setting("kubernetes-version", DEFAULT_KUBERNETES_VERSION, overrides, user_config),
        node_ip=node_ip,
        container_runtime=_setting("container-runtime", DEFAULT_CONTAINER_RUNTIME, overrides, user_config),
        network_plugin=_setting("network-plugin", "", overrides, user_config),
        dns_domain=_setting("dns-domain", DEFAULT_DNS_DOMAIN, overrides, user_config),
        feature_gates=_setting("feature-gates", "", overrides, user_config),
        extra_options=parse_extra_options(extra_raw),
    )
