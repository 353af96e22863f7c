"""Utility functions for minicluster."""

from __future__ import annotations

import os
import subprocess
import tempfile
import time
from pathlib import Path
from typing import List, Optional
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from minicluster.constants import _LOG_VERBOSE, DISK_SIZE_RE
from minicluster.exceptions import CommandError, ManagerError

_SIZE_FACTORS_MB = {"": 1, "k": 1.0 / 1024, "m": 1, "g": 1024, "t": 1024 * 1024}


def log(level: str, message: str) -> None:
    """Lightweight structured logging with coloured level tags."""
    if level == "DEBUG" and not _LOG_VERBOSE:
        return
    colours = {
        "INFO": "\033[0;34m",
        "WARN": "\033[1;33m",
        "ERROR": "\033[0;31m",
        "SUCCESS": "\033[0;32m",
        "DEBUG": "\033[0;90m",
    }
    colour = colours.get(level, "")
    reset = "\033[0m" if colour else ""
    print(f"{colour}[{level}]{reset} {message}", flush=True)


def get_env(name: str, default: Optional[str] = None) -> Optional[str]:
    return os.environ.get(name, default)


def parse_disk_size_mb(raw: str) -> int:
    """Convert a size such as '20G' or '20480' (MiB) into MiB."""
    match = DISK_SIZE_RE.match(raw.strip())
    if not match:
        raise ManagerError(
            f"Invalid disk size '{raw}'. Use a number with optional suffix: K, M, G, T (e.g. '20G')"
        )
    number, suffix = match.groups()
    size = int(int(number) * _SIZE_FACTORS_MB[suffix.lower()])
    if size < 1:
        raise ManagerError(f"Disk size '{raw}' is smaller than 1 MiB")
    return size


def download_file(url: str, destination: Path, label: str = "Downloading") -> None:
    """Download a file with a progress bar using Python urllib."""
    log("INFO", f"{label}: {url}")
    req = Request(url, headers={"User-Agent": "minicluster/1.0"})
    try:
        response = urlopen(req, timeout=60)
    except HTTPError as exc:
        raise ManagerError(f"HTTP error downloading {url}: {exc.code} {exc.reason}")
    except URLError as exc:
        raise ManagerError(f"Failed to download {url}: {exc.reason}")

    total = response.headers.get("Content-Length")
    total_bytes = int(total) if total else None
    downloaded = 0
    start_time = time.time()

    ensure_directory(destination.parent)
    with tempfile.NamedTemporaryFile(delete=False, dir=destination.parent) as tmp:
        tmp_path = Path(tmp.name)
        try:
            chunk_size = 1024 * 256  # 256 KiB
            while True:
                chunk = response.read(chunk_size)
                if not chunk:
                    break
                tmp.write(chunk)
                downloaded += len(chunk)

                downloaded_mb = downloaded / (1024 * 1024)
                if total_bytes:
                    total_mb = total_bytes / (1024 * 1024)
                    pct = downloaded * 100 / total_bytes
                    bar_len = 30
                    filled = int(bar_len * downloaded / total_bytes)
                    bar = "#" * filled + "-" * (bar_len - filled)
                    print(
                        f"\r  [{bar}] {pct:5.1f}% {downloaded_mb:.1f}/{total_mb:.1f} MiB",
                        end="", flush=True,
                    )
                else:
                    print(f"\r  {downloaded_mb:.1f} MiB downloaded", end="", flush=True)
            print(flush=True)  # newline after progress
            tmp.flush()
        except Exception:
            tmp.close()
            tmp_path.unlink(missing_ok=True)
            raise
    tmp_path.replace(destination)
    elapsed = time.time() - start_time
    log("SUCCESS", f"Downloaded {downloaded / (1024 * 1024):.1f} MiB in {elapsed:.1f}s")


def download_file_with_retry(
    url: str, destination: Path, label: str = "Downloading", retries: int = 3, interval: float = 2.0
) -> None:
    """Download with a bounded number of attempts; network hiccups are transient."""
    from minicluster.exceptions import RetriableError
    from minicluster.retry import retry_after

    def _attempt() -> None:
        try:
            download_file(url, destination, label=label)
        except (ManagerError, OSError) as exc:
            raise RetriableError(exc) from exc

    try:
        retry_after(retries, _attempt, interval)
    except RetriableError as exc:
        raise ManagerError(f"Giving up on {url} after {retries} attempts: {exc.cause}") from exc


def ensure_directory(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)


def run(cmd: List[str], check: bool = True, **kwargs) -> subprocess.CompletedProcess:
    """Run command with logging."""
    log("DEBUG", f"Running: {' '.join(cmd)}")
    result = subprocess.run(cmd, check=check, text=True, **kwargs)
    return result


def run_output(cmd: List[str], input_data: Optional[str] = None) -> str:
    """Run a command capturing stdout; failures become CommandError."""
    log("DEBUG", f"Running: {' '.join(cmd)}")
    try:
        result = subprocess.run(cmd, input=input_data, capture_output=True, text=True)
    except FileNotFoundError as exc:
        raise CommandError(f"Command not found: {cmd[0]}") from exc
    if result.returncode != 0:
        stderr = (result.stderr or "").strip()
        raise CommandError(
            f"Command {cmd[0]} {' '.join(cmd[1:3])} failed with code {result.returncode}: {stderr}",
            return_code=result.returncode,
            stderr=stderr,
        )
    return result.stdout
