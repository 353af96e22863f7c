"""Files delivered to the VM: add-on manifests, user assets and the localkube binary."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional

from minicluster import config as user_config
from minicluster import constants
from minicluster.constants import ADDONS_MANIFEST_DIR, ADDONS_REMOTE_DIR, LOCALKUBE_REMOTE_DIR, LOCALKUBE_REMOTE_NAME
from minicluster.exceptions import ManagerError
from minicluster.models import CopyableFile
from minicluster.utils import log

MANIFESTS_REMOTE_DIR = "/etc/kubernetes/manifests"


def file_asset(source: Path, target_dir: str, target_name: Optional[str] = None, permissions: str = "0640") -> CopyableFile:
    return CopyableFile(Path(source), target_dir, target_name or Path(source).name, permissions)


@dataclass
class Addon:
    """A named group of files shipped together when the add-on is enabled."""

    name: str
    assets: List[CopyableFile]
    default_enabled: bool = False
    enabled_check: Optional[Callable[[str, bool], bool]] = field(default=None, repr=False)

    def is_enabled(self) -> bool:
        check = self.enabled_check or user_config.addon_enabled
        return check(self.name, self.default_enabled)


def _manifest(name: str, target_dir: str = ADDONS_REMOTE_DIR) -> CopyableFile:
    return file_asset(ADDONS_MANIFEST_DIR / name, target_dir)


ADDONS: Dict[str, Addon] = {
    "addon-manager": Addon(
        "addon-manager",
        [_manifest("addon-manager.yaml", MANIFESTS_REMOTE_DIR)],
        default_enabled=True,
    ),
    "dashboard": Addon(
        "dashboard",
        [_manifest("dashboard-rc.yaml"), _manifest("dashboard-svc.yaml")],
        default_enabled=True,
    ),
    "kube-dns": Addon(
        "kube-dns",
        [_manifest("kube-dns-rc.yaml"), _manifest("kube-dns-svc.yaml")],
        default_enabled=True,
    ),
    "heapster": Addon(
        "heapster",
        [_manifest("heapster-rc.yaml"), _manifest("heapster-svc.yaml")],
        default_enabled=False,
    ),
}


def get_addon(name: str) -> Addon:
    addon = ADDONS.get(name)
    if addon is None:
        raise ManagerError(f"Unknown addon '{name}'. Available addons: {', '.join(sorted(ADDONS))}")
    return addon


def enabled_addon_assets() -> List[CopyableFile]:
    """Assets of every enabled add-on; a failing enablement check aborts the listing."""
    files: List[CopyableFile] = []
    for addon in ADDONS.values():
        try:
            enabled = addon.is_enabled()
        except ManagerError as exc:
            raise ManagerError(f"Error checking whether addon {addon.name} is enabled: {exc}") from exc
        if enabled:
            log("DEBUG", f"Addon {addon.name} enabled")
            files.extend(addon.assets)
    return files


def user_addon_assets(addons_dir: Optional[Path] = None) -> List[CopyableFile]:
    """Every regular file the user placed under the local addons directory."""
    root = addons_dir if addons_dir is not None else constants.USER_ADDONS_DIR
    if not root.is_dir():
        return []
    return [
        file_asset(path, ADDONS_REMOTE_DIR, permissions="0640")
        for path in sorted(root.rglob("*"))
        if path.is_file()
    ]


def localkube_asset(path: Optional[Path] = None) -> CopyableFile:
    """The localkube binary shipped with this installation."""
    source = path if path is not None else constants.LOCALKUBE_ASSET_PATH
    if not source.is_file():
        raise ManagerError(
            f"Bundled localkube binary not found at {source}; "
            "set MINICLUSTER_LOCALKUBE or request an explicit kubernetes version"
        )
    return file_asset(source, LOCALKUBE_REMOTE_DIR, LOCALKUBE_REMOTE_NAME, permissions="0777")
