"""File-backed store for the persisted Host record."""

from __future__ import annotations

import json
import os
import shutil
import tempfile
from pathlib import Path
from typing import Optional

from minicluster import constants
from minicluster.drivers import driver_from_dict
from minicluster.exceptions import ManagerError
from minicluster.models import EngineOptions, HostRecord
from minicluster.utils import ensure_directory, log

RECORD_FILE_NAME = "config.json"


class HostStore:
    """Keeps one JSON descriptor per machine under ``machines/<name>/config.json``."""

    def __init__(self, root: Optional[Path] = None) -> None:
        self.root = Path(root) if root is not None else constants.MACHINES_DIR

    def _record_path(self, name: str) -> Path:
        return self.root / name / RECORD_FILE_NAME

    def exists(self, name: str) -> bool:
        return self._record_path(name).is_file()

    def load(self, name: str) -> HostRecord:
        path = self._record_path(name)
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError as exc:
            raise ManagerError(f"Host does not exist: {name}") from exc
        except (OSError, json.JSONDecodeError) as exc:
            raise ManagerError(f"Error reading host record {path}: {exc}") from exc
        try:
            driver_name = data["driver_name"]
            driver = driver_from_dict(driver_name, data["driver"])
        except KeyError as exc:
            raise ManagerError(f"Host record {path} is missing field {exc}") from exc
        return HostRecord(
            name=data.get("name", name),
            driver_name=driver_name,
            driver=driver,
            engine_options=EngineOptions.from_dict(data.get("engine_options") or {}),
        )

    def save(self, host: HostRecord) -> None:
        """Write the record atomically so a failed save never leaves a partial file behind."""
        path = self._record_path(host.name)
        ensure_directory(path.parent)
        payload = json.dumps(host.to_dict(), indent=2, sort_keys=True)
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=".config-", suffix=".json")
        try:
            with os.fdopen(fd, "w") as fh:
                fh.write(payload)
            os.replace(tmp_name, path)
        except OSError as exc:
            Path(tmp_name).unlink(missing_ok=True)
            raise ManagerError(f"Error saving host record {path}: {exc}") from exc
        log("DEBUG", f"Saved host record {path}")

    def remove(self, name: str) -> None:
        path = self._record_path(name)
        if not path.exists():
            raise ManagerError(f"Host does not exist: {name}")
        try:
            shutil.rmtree(path.parent)
        except OSError as exc:
            raise ManagerError(f"Error removing host record {path}: {exc}") from exc
