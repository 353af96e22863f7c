"""Docker engine setup inside the VM: TLS material and daemon options."""

from __future__ import annotations

import re
import shlex
from typing import List

from minicluster import constants
from minicluster.certs import generate_docker_certs
from minicluster.constants import (
    DOCKER_DAEMON_PORT,
    DOCKER_PROFILE_NAME,
    DOCKER_REMOTE_DIR,
    DOCKER_RESTART_COMMAND,
    DOCKER_SERVER_CERT_NAMES,
)
from minicluster.drivers import Driver
from minicluster.exceptions import ManagerError
from minicluster.models import EngineOptions
from minicluster.ssh import SSHClient
from minicluster.utils import log

_REGISTRY_RE = re.compile(r"^[A-Za-z0-9_.:/@\[\]-]+$")
_ENV_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def _check_registry(kind: str, value: str) -> str:
    if not _REGISTRY_RE.match(value):
        raise ManagerError(f"Invalid {kind} value: {value!r}")
    return value


def _check_env(entry: str) -> str:
    name, sep, _value = entry.partition("=")
    if not sep or not _ENV_NAME_RE.match(name):
        raise ManagerError(f"Invalid docker env entry {entry!r}, expected NAME=value")
    return entry


def render_engine_profile(options: EngineOptions, provider: str) -> str:
    """Render the daemon profile sourced by the engine's init script."""
    server_cert, server_key = DOCKER_SERVER_CERT_NAMES
    extra_args: List[str] = [f"--label provider={provider}"]
    extra_args += [f"--insecure-registry {_check_registry('insecure-registry', r)}" for r in options.insecure_registry]
    extra_args += [f"--registry-mirror {_check_registry('registry-mirror', m)}" for m in options.registry_mirror]
    lines = ["EXTRA_ARGS='", *extra_args, "'"]
    lines += [
        f"CACERT={DOCKER_REMOTE_DIR}/ca.pem",
        f"DOCKER_HOST='-H tcp://0.0.0.0:{DOCKER_DAEMON_PORT}'",
        "DOCKER_TLS=auto",
        f"SERVERKEY={DOCKER_REMOTE_DIR}/{server_key}",
        f"SERVERCERT={DOCKER_REMOTE_DIR}/{server_cert}",
        "",
    ]
    lines += [f"export {shlex.quote(_check_env(entry))}" for entry in options.env]
    return "\n".join(lines) + "\n"


def configure_docker(driver: Driver, client: SSHClient, options: EngineOptions) -> None:
    """Push server certificates and the daemon profile, then restart the engine."""
    profile = render_engine_profile(options, driver.name)
    try:
        ip = driver.get_ip()
    except ManagerError as exc:
        raise ManagerError(f"Error getting ip from driver: {exc}") from exc
    certs_dir = generate_docker_certs(ip)

    server_cert, server_key = DOCKER_SERVER_CERT_NAMES
    files = [("ca.pem", "0644"), (server_cert, "0644"), (server_key, "0600")]
    client.run(f"sudo mkdir -p {DOCKER_REMOTE_DIR}")
    for name, permissions in files:
        path = certs_dir / name
        try:
            data = path.read_bytes()
        except OSError as exc:
            raise ManagerError(f"Error reading file: {path}") from exc
        try:
            client.transfer(data, DOCKER_REMOTE_DIR, name, permissions)
        except ManagerError as exc:
            raise ManagerError(f"Error transferring {name}: {exc}") from exc
    try:
        client.transfer(profile.encode(), DOCKER_REMOTE_DIR, DOCKER_PROFILE_NAME, "0644")
        client.run(DOCKER_RESTART_COMMAND)
    except ManagerError as exc:
        raise ManagerError(f"Error configuring docker daemon: {exc}") from exc
    log("INFO", f"Docker engine listening with TLS on {ip}:{DOCKER_DAEMON_PORT} (certs in {constants.DOCKER_CERTS_DIR})")
