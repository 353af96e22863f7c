"""Deliver localkube and add-ons to the VM and start the control plane."""

from __future__ import annotations

import re
from pathlib import Path
from typing import List
from urllib.parse import urlparse

from minicluster import constants
from minicluster.assets import enabled_addon_assets, file_asset, localkube_asset, user_addon_assets
from minicluster.constants import (
    DEFAULT_CERT_PATH,
    DEFAULT_KUBERNETES_VERSION,
    LOCALKUBE_DATA_DIR,
    LOCALKUBE_RELEASE_URL,
    LOCALKUBE_REMOTE_DIR,
    LOCALKUBE_REMOTE_NAME,
)
from minicluster.drivers import Driver
from minicluster.exceptions import ManagerError
from minicluster.models import CopyableFile, KubernetesConfig
from minicluster.ssh import SSHClient
from minicluster.utils import download_file_with_retry, ensure_directory, log

_SAFE_FLAG_RE = re.compile(r"^--[A-Za-z0-9_.,:=/@+-]+$")

START_COMMAND_TEMPLATE = (
    "sudo killall localkube 2>/dev/null || true; "
    "sudo mkdir -p {data_dir} && "
    "sudo sh -c 'PATH=/usr/local/sbin:$PATH nohup {binary} {flags} "
    "> {data_dir}/localkube.out 2> {data_dir}/localkube.err < /dev/null & "
    "echo $! > /var/run/localkube.pid &'"
)


def localkube_uri_was_specified(kube_config: KubernetesConfig) -> bool:
    # A version equal to the default means the bundled binary is used.
    return kube_config.kubernetes_version != DEFAULT_KUBERNETES_VERSION


class LocalkubeCacher:
    """Resolves a requested version to a localkube binary, downloading it once."""

    def __init__(self, kube_config: KubernetesConfig) -> None:
        self.kube_config = kube_config

    @property
    def version(self) -> str:
        return self.kube_config.kubernetes_version

    def source_url(self) -> str:
        if urlparse(self.version).scheme in ("file", "http", "https"):
            return self.version
        return LOCALKUBE_RELEASE_URL.format(version=self.version)

    def cache_path(self) -> Path:
        safe = re.sub(r"[^A-Za-z0-9._-]", "_", self.version)
        return constants.LOCALKUBE_CACHE_DIR / f"localkube-{safe}"

    def is_cached(self) -> bool:
        path = self.cache_path()
        return path.is_file() and path.stat().st_size > 0

    def fetch(self) -> Path:
        url = self.source_url()
        parsed = urlparse(url)
        if parsed.scheme == "file":
            path = Path(parsed.path)
            if not path.is_file():
                raise ManagerError(f"localkube binary not found: {path}")
            return path
        if self.is_cached():
            log("INFO", f"Using cached localkube {self.version}")
            return self.cache_path()
        ensure_directory(self.cache_path().parent)
        download_file_with_retry(url, self.cache_path(), label=f"Downloading localkube {self.version}")
        return self.cache_path()

    def update_localkube_from_uri(self, client: SSHClient) -> None:
        path = self.fetch()
        asset = file_asset(path, LOCALKUBE_REMOTE_DIR, LOCALKUBE_REMOTE_NAME, permissions="0777")
        client.transfer_file(asset)


def update_localkube_from_asset(client: SSHClient) -> None:
    """Push the bundled binary, or the default release when this installation ships none."""
    if constants.LOCALKUBE_ASSET_PATH.is_file():
        client.transfer_file(localkube_asset())
        return
    log("INFO", f"No bundled localkube at {constants.LOCALKUBE_ASSET_PATH}, using release {DEFAULT_KUBERNETES_VERSION}")
    LocalkubeCacher(KubernetesConfig(kubernetes_version=DEFAULT_KUBERNETES_VERSION)).update_localkube_from_uri(client)


def update_cluster(driver: Driver, kube_config: KubernetesConfig) -> None:
    """Push localkube plus every enabled add-on and user asset to the VM."""
    try:
        client = driver.ssh_client()
    except ManagerError as exc:
        raise ManagerError(f"Error creating new ssh client: {exc}") from exc

    if localkube_uri_was_specified(kube_config):
        try:
            LocalkubeCacher(kube_config).update_localkube_from_uri(client)
        except ManagerError as exc:
            raise ManagerError(f"Error updating localkube from uri: {exc}") from exc
    else:
        try:
            update_localkube_from_asset(client)
        except ManagerError as exc:
            raise ManagerError(f"Error updating localkube from asset: {exc}") from exc

    copyable_files: List[CopyableFile] = enabled_addon_assets()
    copyable_files.extend(user_addon_assets())
    for copyable in copyable_files:
        try:
            client.transfer_file(copyable)
        except ManagerError as exc:
            raise ManagerError(f"Error transferring addon {copyable.target_name}: {exc}") from exc
    log("INFO", f"Transferred {len(copyable_files)} add-on files")


def _start_flags(kube_config: KubernetesConfig) -> List[str]:
    flags = [
        "--generate-certs=false",
        "--logtostderr=true",
        "--enable-dns=false",
        f"--cert-dir={DEFAULT_CERT_PATH.rstrip('/')}",
        f"--dns-domain={kube_config.dns_domain}",
    ]
    if kube_config.node_ip:
        flags.append(f"--node-ip={kube_config.node_ip}")
    if kube_config.container_runtime:
        flags.append(f"--container-runtime={kube_config.container_runtime}")
    if kube_config.network_plugin:
        flags.append(f"--network-plugin={kube_config.network_plugin}")
    if kube_config.feature_gates:
        flags.append(f"--feature-gates={kube_config.feature_gates}")
    flags.extend(f"--extra-config={option}" for option in kube_config.extra_options)
    return flags


def get_start_command(kube_config: KubernetesConfig) -> str:
    flags = _start_flags(kube_config)
    for flag in flags:
        if not _SAFE_FLAG_RE.match(flag):
            raise ManagerError(f"Invalid character in localkube flag: {flag!r}")
    return START_COMMAND_TEMPLATE.format(
        data_dir=LOCALKUBE_DATA_DIR,
        binary=f"{LOCALKUBE_REMOTE_DIR}/{LOCALKUBE_REMOTE_NAME}",
        flags=" ".join(flags),
    )


def start_cluster(driver: Driver, kube_config: KubernetesConfig) -> None:
    """Render the localkube start command and run it on the VM."""
    try:
        start_command = get_start_command(kube_config)
    except ManagerError as exc:
        raise ManagerError(f"Error generating start command: {exc}") from exc
    log("DEBUG", start_command)
    try:
        output = driver.run_command(start_command)
    except ManagerError as exc:
        raise ManagerError(f"Error running ssh command: {exc}") from exc
    if output.strip():
        log("DEBUG", output.strip())
