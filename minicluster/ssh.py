"""SSH command execution and file transfer to the VM."""

from __future__ import annotations

import shlex
import subprocess
from pathlib import Path
from typing import List, Optional

from minicluster.exceptions import CommandError
from minicluster.models import CopyableFile
from minicluster.utils import log


class SSHClient:
    """Runs commands on the VM through the system ``ssh`` binary."""

    def __init__(self, hostname: str, port: int, user: str, key_path: Path) -> None:
        self.hostname = hostname
        self.port = port
        self.user = user
        self.key_path = key_path

    def base_command(self, tty: bool = False) -> List[str]:
        cmd = [
            "ssh",
            "-p",
            str(self.port),
            "-i",
            str(self.key_path),
            "-o",
            "StrictHostKeyChecking=no",
            "-o",
            "UserKnownHostsFile=/dev/null",
            "-o",
            "LogLevel=ERROR",
            "-o",
            "PasswordAuthentication=no",
            "-o",
            "ConnectTimeout=10",
        ]
        if tty:
            cmd.append("-t")
        else:
            cmd += ["-o", "BatchMode=yes"]
        cmd.append(f"{self.user}@{self.hostname}")
        return cmd

    def run(self, command: str, input_data: Optional[bytes] = None) -> str:
        """Run ``command`` remotely and return its stdout."""
        log("DEBUG", f"ssh {self.user}@{self.hostname}: {command}")
        try:
            result = subprocess.run(
                self.base_command() + [command],
                input=input_data,
                capture_output=True,
            )
        except FileNotFoundError as exc:
            raise CommandError("ssh binary not found on PATH") from exc
        stdout = result.stdout.decode("utf-8", errors="replace")
        if result.returncode != 0:
            stderr = result.stderr.decode("utf-8", errors="replace").strip()
            raise CommandError(
                f"Remote command failed with code {result.returncode}: {stderr or stdout.strip()}",
                return_code=result.returncode,
                stderr=stderr,
            )
        return stdout

    def transfer(self, data: bytes, target_dir: str, target_name: str, permissions: str) -> None:
        """Write ``data`` to ``target_dir/target_name`` on the VM, replacing any existing file."""
        target = f"{target_dir.rstrip('/')}/{target_name}"
        quoted_dir = shlex.quote(target_dir)
        quoted_target = shlex.quote(target)
        command = (
            f"sudo mkdir -p {quoted_dir} && "
            f"sudo rm -f {quoted_target} && "
            f"sudo tee {quoted_target} > /dev/null && "
            f"sudo chmod {shlex.quote(permissions)} {quoted_target}"
        )
        log("DEBUG", f"Transferring {len(data)} bytes to {target} ({permissions})")
        try:
            self.run(command, input_data=data)
        except CommandError as exc:
            raise CommandError(
                f"Error transferring {target}: {exc}", return_code=exc.return_code, stderr=exc.stderr
            ) from exc

    def transfer_file(self, copyable: CopyableFile) -> None:
        try:
            data = copyable.read()
        except OSError as exc:
            raise CommandError(f"Error reading asset {copyable.source}: {exc}") from exc
        self.transfer(data, copyable.target_dir, copyable.target_name, copyable.permissions)

    def shell(self, args: Optional[List[str]] = None) -> int:
        """Open an interactive session (or run ``args``) attached to the local terminal."""
        cmd = self.base_command(tty=True)
        if args:
            cmd.append(" ".join(args))
        return subprocess.call(cmd)
