"""Unit tests for cluster_shell module."""

import subprocess
from pathlib import PurePosixPath
from unittest.mock import patch

import pytest

from hpcsession.errors import ClusterShellError
from hpcsession.models import LauncherSettings
from hpcsession.modules.cluster_shell import ClusterShell, is_on_cluster


@pytest.fixture
def remote_shell(settings, cluster_home):
    return ClusterShell(settings, on_cluster=False, home=cluster_home)


@pytest.fixture
def local_shell(settings, cluster_home):
    return ClusterShell(settings, on_cluster=True, home=cluster_home)


def completed(returncode=0, stdout="", stderr=""):
    return subprocess.CompletedProcess([], returncode, stdout, stderr)


class TestIsOnCluster:
    """Tests for on-cluster detection."""

    @patch("hpcsession.modules.cluster_shell.shutil.which", return_value=None)
    @patch("hpcsession.modules.cluster_shell.socket.getfqdn", return_value="lc02e01.test.cluster")
    def test_domain_match(self, mock_fqdn, mock_which):
        assert is_on_cluster("test.cluster")

    @patch("hpcsession.modules.cluster_shell.shutil.which", return_value="/usr/bin/bsub")
    @patch("hpcsession.modules.cluster_shell.socket.getfqdn", return_value="laptop.local")
    def test_scheduler_on_path(self, mock_fqdn, mock_which):
        assert is_on_cluster("test.cluster")

    @patch("hpcsession.modules.cluster_shell.shutil.which", return_value=None)
    @patch("hpcsession.modules.cluster_shell.socket.getfqdn", return_value="laptop.local")
    def test_laptop(self, mock_fqdn, mock_which):
        assert not is_on_cluster("test.cluster")


class TestRemoteShell:
    """Tests for commands sent over ssh."""

    def test_ssh_target_with_user(self, cluster_home):
        shell = ClusterShell(LauncherSettings(ssh_user="alice", login_host="h"), on_cluster=False, home=cluster_home)
        assert shell.ssh_base_command()[-1] == "alice@h"

    def test_control_master_options(self, remote_shell):
        cmd = remote_shell.ssh_base_command()
        assert "ControlMaster=auto" in cmd
        assert any(opt.startswith("ControlPath=") for opt in cmd)

    @patch("hpcsession.modules.cluster_shell.subprocess.run")
    def test_run_quotes_remote_command(self, mock_run, remote_shell):
        mock_run.return_value = completed(stdout="RUN\n")

        result = remote_shell.run(["bjobs", "-o", "stat", "4242"])

        assert result.success
        assert result.stdout == "RUN\n"
        cmd = mock_run.call_args.args[0]
        assert cmd[0] == "ssh"
        assert cmd[-1] == "bjobs -o stat 4242"

    @patch("hpcsession.modules.cluster_shell.subprocess.run")
    def test_run_timeout(self, mock_run, remote_shell):
        mock_run.side_effect = subprocess.TimeoutExpired("ssh", 60)
        with pytest.raises(ClusterShellError, match="timed out"):
            remote_shell.run(["bsub"])

    @patch("hpcsession.modules.cluster_shell.subprocess.run")
    def test_read_missing_file(self, mock_run, remote_shell):
        mock_run.return_value = completed(1, stderr="cat: x: No such file or directory\n")
        assert remote_shell.read_file(PurePosixPath("x")) is None

    @patch("hpcsession.modules.cluster_shell.subprocess.run")
    def test_read_failure(self, mock_run, remote_shell):
        mock_run.return_value = completed(255, stderr="Connection closed\n")
        with pytest.raises(ClusterShellError, match="Connection closed"):
            remote_shell.read_file(PurePosixPath("x"))

    @patch("hpcsession.modules.cluster_shell.subprocess.run")
    def test_write_file_uses_stdin(self, mock_run, remote_shell):
        mock_run.return_value = completed()

        remote_shell.write_file(PurePosixPath(".hpcsession/sessions/vscode/reconnect.info"), "text\n")

        assert mock_run.call_args.kwargs["input"] == "text\n"
        assert "mkdir -p .hpcsession/sessions/vscode" in mock_run.call_args.args[0][-1]


class TestLocalShell:
    """Tests for on-cluster file access against the shared home directory."""

    def test_write_read_remove(self, local_shell, cluster_home):
        path = PurePosixPath(".hpcsession/sessions/vscode/status")

        local_shell.write_file(path, "Status:GOOD\n")
        assert (cluster_home / path).read_text() == "Status:GOOD\n"
        assert local_shell.read_file(path) == "Status:GOOD\n"

        local_shell.remove_file(path)
        assert local_shell.read_file(path) is None

    @patch("hpcsession.modules.cluster_shell.subprocess.run")
    def test_run_locally_in_home(self, mock_run, local_shell, cluster_home):
        mock_run.return_value = completed()

        local_shell.run(["bjobs"])

        assert mock_run.call_args.args[0] == ["bjobs"]
        assert mock_run.call_args.kwargs["cwd"] == cluster_home

    def test_make_dirs(self, local_shell, cluster_home):
        local_shell.make_dirs(PurePosixPath("a/b"))
        assert (cluster_home / "a" / "b").is_dir()
