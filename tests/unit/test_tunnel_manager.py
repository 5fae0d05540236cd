"""Unit tests for tunnel_manager module."""

import subprocess
from unittest.mock import Mock, patch

import pytest

from hpcsession.errors import TunnelError
from hpcsession.modules.tunnel_manager import TunnelHandle, TunnelManager


@pytest.fixture
def running_process():
    process = Mock()
    process.poll.return_value = None
    return process


class TestBuildCommand:
    """Tests for TunnelManager.build_command."""

    def test_forward_through_login_host(self, fake_shell):
        command = TunnelManager(fake_shell).build_command(8890, "10.0.0.7", 50123)

        assert command[:3] == ["ssh", "-N", "-L"]
        assert command[3] == "8890:10.0.0.7:50123"
        assert "ExitOnForwardFailure=yes" in command
        assert "ControlMaster=auto" in command
        assert command[-1] == "login.test.cluster"


class TestEstablish:
    """Tests for TunnelManager.establish."""

    @patch("hpcsession.modules.tunnel_manager.subprocess.Popen")
    def test_allocates_free_port_and_starts_detached(self, mock_popen, fake_shell, running_process):
        mock_popen.return_value = running_process
        started = {"done": False}

        def listening(port):
            if port < 8892:
                return True
            return started["done"] and port == 8892

        manager = TunnelManager(fake_shell, is_listening=listening, sleep=Mock())
        mock_popen.side_effect = lambda *a, **k: started.update(done=True) or running_process

        handle = manager.establish("10.0.0.7", 50123, base_port=8890)

        assert handle.local_port == 8892
        assert not handle.reused
        args, kwargs = mock_popen.call_args
        assert "8892:10.0.0.7:50123" in args[0]
        assert kwargs["start_new_session"] is True
        assert kwargs["stdin"] is subprocess.DEVNULL
        assert kwargs["stderr"] is subprocess.DEVNULL

    @patch("hpcsession.modules.tunnel_manager.subprocess.Popen")
    def test_reuses_listening_forward(self, mock_popen, fake_shell):
        """Test an existing forward on the preferred port is not duplicated."""
        manager = TunnelManager(fake_shell, is_listening=lambda port: port == 8890)

        handle = manager.establish("10.0.0.7", 50123, base_port=8890, preferred_port=8890)

        assert handle.reused
        assert handle.local_port == 8890
        assert handle.is_active()
        mock_popen.assert_not_called()

    @patch("hpcsession.modules.tunnel_manager.subprocess.Popen")
    def test_recreates_forward_on_preferred_port(self, mock_popen, fake_shell, running_process):
        mock_popen.return_value = running_process
        listening = Mock(side_effect=[False, True])
        manager = TunnelManager(fake_shell, is_listening=listening, sleep=Mock())

        handle = manager.establish("10.0.0.7", 50123, base_port=8890, preferred_port=8893)

        assert handle.local_port == 8893
        assert not handle.reused

    @patch("hpcsession.modules.tunnel_manager.subprocess.Popen")
    def test_process_exits_early(self, mock_popen, fake_shell):
        process = Mock()
        process.poll.return_value = 255
        process.returncode = 255
        mock_popen.return_value = process
        manager = TunnelManager(fake_shell, is_listening=lambda port: False, sleep=Mock())

        with pytest.raises(TunnelError, match="exited with code 255"):
            manager.establish("10.0.0.7", 50123, base_port=8890)

    @patch("hpcsession.modules.tunnel_manager.time.monotonic")
    @patch("hpcsession.modules.tunnel_manager.subprocess.Popen")
    def test_timeout_stops_ssh(self, mock_popen, mock_monotonic, fake_shell, running_process):
        mock_popen.return_value = running_process
        mock_monotonic.side_effect = [0, 1, 2, 31]
        manager = TunnelManager(fake_shell, timeout=30, is_listening=lambda port: False, sleep=Mock())

        with pytest.raises(TunnelError, match="within 30 seconds"):
            manager.establish("10.0.0.7", 50123, base_port=8890)

        running_process.terminate.assert_called_once()

    @patch("hpcsession.modules.tunnel_manager.subprocess.Popen", side_effect=FileNotFoundError("ssh"))
    def test_ssh_missing(self, mock_popen, fake_shell):
        manager = TunnelManager(fake_shell, is_listening=lambda port: False)

        with pytest.raises(TunnelError, match="Failed to start"):
            manager.establish("10.0.0.7", 50123, base_port=8890)


class TestTunnelHandle:
    """Tests for TunnelHandle."""

    def test_command_line_quoted(self):
        handle = TunnelHandle(8890, "10.0.0.7", 50123, command=["ssh", "-L", "a b"])
        assert handle.command_line == "ssh -L 'a b'"

    def test_inactive_after_exit(self):
        process = Mock()
        process.poll.return_value = 0
        assert not TunnelHandle(8890, "10.0.0.7", 50123, process=process).is_active()
