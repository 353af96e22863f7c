"""Boot image cache: each ISO is fetched once and reused afterwards."""

from __future__ import annotations

import re
from pathlib import Path
from urllib.parse import urlparse

from minicluster import constants
from minicluster.exceptions import ManagerError
from minicluster.utils import download_file_with_retry, ensure_directory, log


def _is_local(url: str) -> bool:
    return urlparse(url).scheme in ("", "file")


def cached_iso_path(url: str) -> Path:
    parsed = urlparse(url)
    filename = Path(parsed.path or "").name or "boot.iso"
    safe_name = re.sub(r"[^A-Za-z0-9._-]", "_", filename) or "boot.iso"
    return constants.ISO_CACHE_DIR / safe_name


def iso_file_uri(url: str) -> str:
    """Location of the image the drivers should boot from."""
    if _is_local(url):
        return url if url.startswith("file://") else Path(url).resolve().as_uri()
    return cached_iso_path(url).as_uri()


def cache_iso(url: str, retries: int = 3) -> Path:
    """Make sure the image behind ``url`` is available locally; returns its path."""
    if _is_local(url):
        path = Path(urlparse(url).path)
        if not path.exists():
            raise ManagerError(f"Boot image not found: {path}")
        return path
    destination = cached_iso_path(url)
    if destination.exists() and destination.stat().st_size > 0:
        log("INFO", f"Using cached boot image: {destination}")
        return destination
    ensure_directory(destination.parent)
    download_file_with_retry(url, destination, label="Downloading boot image", retries=retries)
    return destination
