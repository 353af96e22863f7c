"""CLI entry points for minicluster."""

from __future__ import annotations

import argparse
import sys
import webbrowser
from typing import Any, Callable, Dict, List, Optional

from minicluster import config as user_config
from minicluster.assets import ADDONS, get_addon
from minicluster.bootstrap import start_cluster, update_cluster
from minicluster.certs import setup_certs
from minicluster.constants import DEFAULT_NAMESPACE, DEFAULT_SERVICE_FORMAT, MACHINE_NAME
from minicluster.exceptions import ManagerError
from minicluster.host import HostManager
from minicluster.kube import KubeClient
from minicluster.models import PowerState
from minicluster.prompt import ask_yes_no
from minicluster.retry import RetryPolicy
from minicluster.service import (
    UrlTemplate,
    get_all_service_urls,
    get_service_list_by_label,
    get_service_urls_for_service,
    wait_for_ready,
)
from minicluster.store import HostStore
from minicluster.utils import log

START_RETRY = RetryPolicy(attempts=5, interval=2)
ADDON_ENDPOINT_LABEL = "minicluster.io/addon-endpoint"
ADDON_NAMESPACE = "kube-system"

# Machine and cluster flags for ``start``: (flag, setting name, type, help).
_START_FLAGS = (
    ("--vm-driver", "vm-driver", str, "Hypervisor backend (kvm, virtualbox)"),
    ("--memory", "memory", int, "Memory for the VM in MiB"),
    ("--cpus", "cpus", int, "Number of CPUs for the VM"),
    ("--disk-size", "disk-size", str, "Disk size, e.g. 20G"),
    ("--host-only-cidr", "host-only-cidr", str, "CIDR of the host-only network"),
    ("--iso-url", "iso-url", str, "Location of the boot image"),
    ("--kubernetes-version", "kubernetes-version", str, "localkube version or URL to run"),
    ("--container-runtime", "container-runtime", str, "Container runtime used by localkube"),
    ("--network-plugin", "network-plugin", str, "Network plugin passed to localkube"),
    ("--dns-domain", "dns-domain", str, "Cluster DNS domain"),
    ("--feature-gates", "feature-gates", str, "Feature gates passed to localkube"),
    ("--extra-config", "extra-config", str, "Comma separated component.key=value options"),
)

# Repeatable docker engine flags for ``start``: (flag, setting name, help).
_ENGINE_FLAGS = (
    ("--docker-env", "docker-env", "NAME=value exported to the docker daemon"),
    ("--insecure-registry", "insecure-registry", "Registry the docker daemon may reach without TLS"),
    ("--registry-mirror", "registry-mirror", "Registry mirror for the docker daemon"),
)


def _manager() -> HostManager:
    return HostManager(HostStore())


def _overrides(args: argparse.Namespace) -> Dict[str, Any]:
    values = {}
    for _flag, name, _kind, _help in _START_FLAGS:
        value = getattr(args, name.replace("-", "_"), None)
        if value is not None:
            values[name] = value
    for _flag, name, _help in _ENGINE_FLAGS:
        value = getattr(args, name.replace("-", "_"), None)
        if value:
            values[name] = value
    return values


def cmd_start(args: argparse.Namespace) -> int:
    overrides = _overrides(args)
    machine_config = user_config.parse_machine_config(overrides)
    manager = _manager()
    log("INFO", f"Starting local Kubernetes cluster ({machine_config.vm_driver})...")
    host = START_RETRY.run(lambda: manager.ensure_started(machine_config))

    try:
        ip = host.driver.get_ip()
    except ManagerError as exc:
        raise ManagerError(f"Error getting host IP: {exc}") from exc
    kube_config = user_config.parse_kubernetes_config(overrides, node_ip=ip)

    log("INFO", "Moving files into cluster...")
    update_cluster(host.driver, kube_config)
    log("INFO", "Setting up certs...")
    setup_certs(host.driver)
    log("INFO", "Starting cluster components...")
    start_cluster(host.driver, kube_config)
    log("SUCCESS", f"Cluster {MACHINE_NAME} is running at {ip}")
    return 0


def cmd_stop(args: argparse.Namespace) -> int:
    log("INFO", "Stopping local Kubernetes cluster...")
    _manager().stop()
    log("SUCCESS", "Machine stopped.")
    return 0


def cmd_delete(args: argparse.Namespace) -> int:
    if not args.yes and not ask_yes_no(f"Delete the {MACHINE_NAME} VM and all of its data?"):
        log("INFO", "Aborted.")
        return 0
    log("INFO", "Deleting local Kubernetes cluster...")
    _manager().delete()
    log("SUCCESS", "Machine deleted.")
    return 0


def cmd_status(args: argparse.Namespace) -> int:
    manager = _manager()
    state = manager.status()
    print(f"{MACHINE_NAME}: {state}")
    if state == PowerState.RUNNING.value:
        print(f"localkube: {manager.localkube_status()}")
    return 0


def cmd_ip(args: argparse.Namespace) -> int:
    host = _manager().load()
    print(host.driver.get_ip())
    return 0


def cmd_docker_env(args: argparse.Namespace) -> int:
    env = _manager().docker_env()
    if args.unset:
        for key in env:
            print(f"unset {key}")
        return 0
    for key, value in env.items():
        print(f'export {key}="{value}"')
    print(f"# Run this command to configure your shell:\n# eval $({MACHINE_NAME} docker-env)")
    return 0


def cmd_logs(args: argparse.Namespace) -> int:
    print(_manager().logs(), end="")
    return 0


def cmd_ssh(args: argparse.Namespace) -> int:
    return _manager().ssh_shell(args.command)


def _open_urls(urls: List[str], description: str, url_mode: bool, https: bool) -> None:
    for url in urls:
        if https:
            url = url.replace("http", "https", 1)
        if url_mode or not url.startswith("http"):
            print(url)
        else:
            print(f"Opening {description} in default browser...")
            webbrowser.open(url)


def _wait_and_open(manager: HostManager, namespace: str, service: str, template: UrlTemplate,
                   url_mode: bool, https: bool, client: KubeClient) -> int:
    try:
        wait_for_ready(namespace, service, client=client)
    except ManagerError as exc:
        print(f"Could not find finalized endpoint being pointed to by {service}: {exc}", file=sys.stderr)
        return 1
    host = manager.load()
    try:
        urls = get_service_urls_for_service(host.driver, namespace, service, template, client=client)
    except ManagerError as exc:
        print(exc, file=sys.stderr)
        print(
            f"Check that {MACHINE_NAME} is running and that you have specified the correct namespace (-n flag).",
            file=sys.stderr,
        )
        return 1
    _open_urls(urls, f"kubernetes service {namespace}/{service}", url_mode, https)
    return 0


def cmd_service(args: argparse.Namespace) -> int:
    template = UrlTemplate(args.format)
    manager = _manager()
    manager.ensure_running_or_exit(1)
    client = KubeClient()
    if args.list:
        host = manager.load()
        entries = get_all_service_urls(host.driver, args.namespace, template, client=client)
        for entry in entries:
            urls = ", ".join(entry.urls) if entry.urls else "No node port"
            print(f"{entry.namespace:<20} {entry.name:<30} {urls}")
        return 0
    if not args.name:
        log("ERROR", "A service name is required unless --list is given")
        return 1
    return _wait_and_open(manager, args.namespace, args.name, template, args.url, args.https, client)


def cmd_addons_list(args: argparse.Namespace) -> int:
    for name in sorted(ADDONS):
        state = "enabled" if ADDONS[name].is_enabled() else "disabled"
        print(f"- {name}: {state}")
    return 0


def cmd_addons_set(enabled: bool) -> Callable[[argparse.Namespace], int]:
    def _run(args: argparse.Namespace) -> int:
        addon = get_addon(args.name)
        user_config.set_addon_enabled(addon.name, enabled)
        word = "enabled" if enabled else "disabled"
        log("SUCCESS", f"{addon.name} was successfully {word}; run '{MACHINE_NAME} start' to apply it")
        return 0

    return _run


def cmd_addons_open(args: argparse.Namespace) -> int:
    addon = get_addon(args.name)
    manager = _manager()
    # Nothing to open on a stopped cluster, which is not an error for this command.
    manager.ensure_running_or_exit(0)
    if not addon.is_enabled():
        log("ERROR", f"Addon {addon.name} is not enabled. Enable it with '{MACHINE_NAME} addons enable {addon.name}'")
        return 1
    client = KubeClient()
    services = get_service_list_by_label(ADDON_NAMESPACE, ADDON_ENDPOINT_LABEL, addon.name, client=client)
    if not services:
        log("ERROR", f"Addon {addon.name} does not expose a service endpoint")
        return 1
    template = UrlTemplate(args.format)
    for svc in services:
        name = (svc.get("metadata") or {}).get("name", "")
        status = _wait_and_open(manager, ADDON_NAMESPACE, name, template, args.url, args.https, client)
        if status != 0:
            return status
    return 0


def cmd_config_get(args: argparse.Namespace) -> int:
    value = user_config.get_config_value(args.name)
    if value is None:
        log("ERROR", f"{args.name} is not set")
        return 1
    print(value)
    return 0


def cmd_config_set(args: argparse.Namespace) -> int:
    user_config.set_config_value(args.name, args.value)
    return 0


def cmd_config_unset(args: argparse.Namespace) -> int:
    user_config.unset_config_value(args.name)
    return 0


def cmd_config_view(args: argparse.Namespace) -> int:
    for key, value in sorted(user_config.load_user_config().items()):
        print(f"- {key}: {value}")
    return 0


def _add_open_flags(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--url", action="store_true", help="Print the URL instead of opening a browser")
    parser.add_argument("--https", action="store_true", help="Open the URL with https instead of http")
    parser.add_argument("--format", default=DEFAULT_SERVICE_FORMAT, help="URL format template")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog=MACHINE_NAME, description="Run a local Kubernetes cluster in a VM")
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")
    sub.required = True

    start = sub.add_parser("start", help="Create or start the VM and the cluster")
    for flag, name, kind, help_text in _START_FLAGS:
        start.add_argument(flag, dest=name.replace("-", "_"), type=kind, default=None, help=help_text)
    for flag, name, help_text in _ENGINE_FLAGS:
        start.add_argument(flag, dest=name.replace("-", "_"), action="append", default=None, help=help_text)
    start.set_defaults(func=cmd_start)

    sub.add_parser("stop", help="Stop the VM").set_defaults(func=cmd_stop)

    delete = sub.add_parser("delete", help="Delete the VM and its record")
    delete.add_argument("-y", "--yes", action="store_true", help="Do not ask for confirmation")
    delete.set_defaults(func=cmd_delete)

    sub.add_parser("status", help="Show VM and cluster status").set_defaults(func=cmd_status)
    sub.add_parser("ip", help="Print the VM's IP address").set_defaults(func=cmd_ip)

    docker_env = sub.add_parser("docker-env", help="Print shell exports for the VM's docker daemon")
    docker_env.add_argument("-u", "--unset", action="store_true", help="Print unset commands instead")
    docker_env.set_defaults(func=cmd_docker_env)

    sub.add_parser("logs", help="Print localkube logs").set_defaults(func=cmd_logs)

    ssh = sub.add_parser("ssh", help="Open a shell in the VM or run a command there")
    ssh.add_argument("command", nargs=argparse.REMAINDER)
    ssh.set_defaults(func=cmd_ssh)

    service = sub.add_parser("service", help="Print or open the URL of a service")
    service.add_argument("name", nargs="?", help="Service name")
    service.add_argument("-n", "--namespace", default=DEFAULT_NAMESPACE, help="Service namespace")
    service.add_argument("--list", action="store_true", help="List the URLs of every service in the namespace")
    _add_open_flags(service)
    service.set_defaults(func=cmd_service)

    addons = sub.add_parser("addons", help="Manage cluster add-ons")
    addons_sub = addons.add_subparsers(dest="addons_command", metavar="ACTION")
    addons_sub.required = True
    addons_sub.add_parser("list", help="List add-ons and their state").set_defaults(func=cmd_addons_list)
    for action, enabled in (("enable", True), ("disable", False)):
        toggle = addons_sub.add_parser(action, help=f"{action.capitalize()} an add-on")
        toggle.add_argument("name")
        toggle.set_defaults(func=cmd_addons_set(enabled))
    addon_open = addons_sub.add_parser("open", help="Open the endpoint of an add-on")
    addon_open.add_argument("name")
    _add_open_flags(addon_open)
    addon_open.set_defaults(func=cmd_addons_open)

    cfg = sub.add_parser("config", help="Read and write persistent settings")
    cfg_sub = cfg.add_subparsers(dest="config_command", metavar="ACTION")
    cfg_sub.required = True
    cfg_get = cfg_sub.add_parser("get", help="Print a setting")
    cfg_get.add_argument("name")
    cfg_get.set_defaults(func=cmd_config_get)
    cfg_set = cfg_sub.add_parser("set", help="Store a setting")
    cfg_set.add_argument("name")
    cfg_set.add_argument("value")
    cfg_set.set_defaults(func=cmd_config_set)
    cfg_unset = cfg_sub.add_parser("unset", help="Remove a setting")
    cfg_unset.add_argument("name")
    cfg_unset.set_defaults(func=cmd_config_unset)
    cfg_sub.add_parser("view", help="Print every stored setting").set_defaults(func=cmd_config_view)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        return args.func(args)
    except ManagerError as exc:
        log("ERROR", str(exc))
        return 1
    except Exception as exc:
        log("ERROR", f"Unexpected error: {exc}")
        import traceback

        traceback.print_exc()
        return 1
