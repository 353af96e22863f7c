"""Tests for minicluster.ssh module."""

from __future__ import annotations

import subprocess
from pathlib import Path
from unittest.mock import patch

import pytest

from minicluster.exceptions import CommandError
from minicluster.models import CopyableFile
from minicluster.ssh import SSHClient


@pytest.fixture
def client():
    return SSHClient("192.168.99.100", 22, "docker", Path("/keys/id_rsa"))


def _completed(returncode=0, stdout=b"", stderr=b""):
    return subprocess.CompletedProcess(args=[], returncode=returncode, stdout=stdout, stderr=stderr)


class TestBaseCommand:
    def test_batch_mode_without_tty(self, client):
        cmd = client.base_command()
        assert cmd[0] == "ssh"
        assert "BatchMode=yes" in cmd
        assert "-t" not in cmd
        assert cmd[-1] == "docker@192.168.99.100"
        assert cmd[cmd.index("-i") + 1] == "/keys/id_rsa"

    def test_tty(self, client):
        cmd = client.base_command(tty=True)
        assert "-t" in cmd
        assert "BatchMode=yes" not in cmd


class TestRun:
    def test_returns_stdout(self, client):
        with patch("minicluster.ssh.subprocess.run", return_value=_completed(stdout=b"hello\n")) as mock_run:
            assert client.run("echo hello") == "hello\n"
        assert mock_run.call_args.args[0][-1] == "echo hello"

    def test_failure_raises_command_error(self, client):
        with patch("minicluster.ssh.subprocess.run", return_value=_completed(255, stderr=b"No route to host")):
            with pytest.raises(CommandError, match="No route to host") as exc:
                client.run("true")
        assert exc.value.return_code == 255

    def test_missing_ssh_binary(self, client):
        with patch("minicluster.ssh.subprocess.run", side_effect=FileNotFoundError("ssh")):
            with pytest.raises(CommandError, match="ssh binary not found"):
                client.run("true")


class TestTransfer:
    def test_writes_with_sudo_tee_and_chmod(self, client):
        with patch.object(client, "run", return_value="") as mock_run:
            client.transfer(b"data", "/var/lib/localkube/certs/", "ca.key", "0600")
        command = mock_run.call_args.args[0]
        assert "sudo mkdir -p /var/lib/localkube/certs/" in command
        assert "sudo tee /var/lib/localkube/certs/ca.key" in command
        assert "sudo chmod 0600 /var/lib/localkube/certs/ca.key" in command
        assert mock_run.call_args.kwargs["input_data"] == b"data"

    def test_paths_are_quoted(self, client):
        with patch.object(client, "run", return_value="") as mock_run:
            client.transfer(b"", "/etc/kubernetes/addons", "my app.yaml", "0640")
        assert "'/etc/kubernetes/addons/my app.yaml'" in mock_run.call_args.args[0]

    def test_failure_names_target(self, client):
        with patch.object(client, "run", side_effect=CommandError("denied", return_code=1)):
            with pytest.raises(CommandError, match="Error transferring /tmp/x"):
                client.transfer(b"", "/tmp", "x", "0644")

    def test_transfer_file_from_disk(self, client, tmp_path):
        source = tmp_path / "dashboard-rc.yaml"
        source.write_bytes(b"kind: ReplicationController\n")
        with patch.object(client, "transfer") as mock_transfer:
            client.transfer_file(CopyableFile(source, "/etc/kubernetes/addons", "dashboard-rc.yaml", "0640"))
        mock_transfer.assert_called_once_with(
            b"kind: ReplicationController\n", "/etc/kubernetes/addons", "dashboard-rc.yaml", "0640"
        )

    def test_transfer_file_missing_source(self, client, tmp_path):
        with pytest.raises(CommandError, match="Error reading asset"):
            client.transfer_file(CopyableFile(tmp_path / "gone", "/tmp", "gone"))
