"""Unit tests for the hpcsession command line.

The launcher and agent are replaced with mocks; these tests cover option
handling, config layering and exit codes.
"""

import subprocess
from pathlib import Path
from unittest.mock import patch

import pytest
from click.testing import CliRunner

from hpcsession import __version__
from hpcsession.cli import main
from hpcsession.config_manager import ConfigManager
from hpcsession.errors import (
    ContentionExhaustedError,
    NoEntitlementError,
    RemoteFailure,
    ValidationError,
)
from hpcsession.models import IsolationLevel, SessionApp


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture(autouse=True)
def temp_config_file(tmp_path, monkeypatch):
    """Keep the real ~/.hpcsession/config.toml out of the tests."""
    config_file = tmp_path / "config.toml"
    monkeypatch.setattr(ConfigManager, "DEFAULT_CONFIG_FILE", config_file)
    return config_file


@pytest.fixture
def mock_launcher():
    with patch("hpcsession.cli.SessionLauncher") as launcher_cls:
        yield launcher_cls.return_value


def launched_request(mock_launcher):
    return mock_launcher.launch.call_args.args[0]


class TestMain:
    """Tests for the main command."""

    def test_launch_with_defaults(self, runner, mock_launcher):
        result = runner.invoke(main, [])

        assert result.exit_code == 0
        request = launched_request(mock_launcher)
        assert request.cores == 1
        assert request.time == "12:00"
        assert request.app is SessionApp.VSCODE

    def test_options_build_request(self, runner, mock_launcher):
        result = runner.invoke(
            main,
            [
                "-c", "8",
                "-t", "24:00",
                "-m", "8000",
                "-R", "avx2",
                "-R", "himem",
                "-s", "analysis",
                "--app", "rstudio",
                "--env", "r44",
                "--isolation", "partial",
                "--long",
            ],
        )

        assert result.exit_code == 0, result.output
        request = launched_request(mock_launcher)
        assert request.cores == 8
        assert request.memory == 8000
        assert request.resources == ("avx2", "himem")
        assert request.session_name == "analysis"
        assert request.app is SessionApp.RSTUDIO
        assert request.isolation is IsolationLevel.PARTIAL
        assert request.long_queue is True

    def test_config_file_overrides_flags(self, runner, mock_launcher, tmp_path):
        config = tmp_path / "custom.toml"
        config.write_text("cores = 16\npoll_interval = 60\n")

        result = runner.invoke(main, ["--cores", "4", "--poll-interval", "10", "--config", str(config)])

        assert result.exit_code == 0, result.output
        assert launched_request(mock_launcher).cores == 16
        with patch("hpcsession.cli.SessionLauncher") as launcher_cls:
            runner.invoke(main, ["--poll-interval", "10"])
            assert launcher_cls.call_args.args[0].poll_interval == 10

    def test_unknown_config_key(self, runner, mock_launcher, temp_config_file):
        temp_config_file.write_text('colour = "blue"\n')

        result = runner.invoke(main, [])

        assert result.exit_code == 1
        assert "Unknown config key: colour" in result.output
        mock_launcher.launch.assert_not_called()

    def test_validation_error_prints_help(self, runner, mock_launcher):
        mock_launcher.launch.side_effect = ValidationError("cores", "65 is outside 1-64")

        result = runner.invoke(main, ["--cores", "65"])

        assert result.exit_code == 1
        assert "Invalid cores" in result.output
        assert "Usage:" in result.output

    @pytest.mark.parametrize(
        ("error", "exit_code"),
        [
            (NoEntitlementError("no accounts"), 2),
            (ContentionExhaustedError("bob", "node7", 3), 1),
            (RemoteFailure(42), 42),
        ],
    )
    def test_error_exit_codes(self, runner, mock_launcher, error, exit_code):
        mock_launcher.launch.side_effect = error

        result = runner.invoke(main, [])

        assert result.exit_code == exit_code
        assert "Error:" in result.output

    def test_interrupt_leaves_job_running(self, runner, mock_launcher):
        mock_launcher.launch.side_effect = KeyboardInterrupt()

        result = runner.invoke(main, [])

        assert result.exit_code == 130
        assert "keeps running" in result.output

    def test_remote_start(self, runner, mock_launcher):
        result = runner.invoke(main, ["--remote-start", "10.0.0.7:50123:tok"])

        assert result.exit_code == 0
        mock_launcher.launch.assert_not_called()
        remote = mock_launcher.attach.call_args.args[1]
        assert (remote.remote_ip, remote.remote_port, remote.token) == ("10.0.0.7", 50123, "tok")

    def test_invalid_remote_start(self, runner, mock_launcher):
        result = runner.invoke(main, ["--remote-start", "10.0.0.7"])

        assert result.exit_code == 1
        assert "Invalid remote-start" in result.output

    @patch("hpcsession.cli.subprocess.run")
    def test_update(self, mock_run, runner, mock_launcher):
        mock_run.return_value = subprocess.CompletedProcess([], returncode=0)

        result = runner.invoke(main, ["--update"])

        assert result.exit_code == 0
        cmd = mock_run.call_args.args[0]
        assert cmd[1:] == ["-m", "pip", "install", "--upgrade", "hpcsession"]
        mock_launcher.launch.assert_not_called()

    @patch("hpcsession.cli.subprocess.run")
    def test_update_failure_exit_code(self, mock_run, runner, mock_launcher):
        mock_run.return_value = subprocess.CompletedProcess([], returncode=1)
        assert runner.invoke(main, ["--update"]).exit_code == 1

    def test_version(self, runner):
        result = runner.invoke(main, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.output


class TestAgentCommand:
    """Tests for the hidden agent subcommand."""

    @patch("hpcsession.cli.RemoteAgent")
    def test_agent_config(self, mock_agent, runner, mock_launcher, tmp_path, monkeypatch):
        monkeypatch.setenv("HOME", str(tmp_path))
        mock_agent.return_value.run.return_value = 0

        result = runner.invoke(
            main,
            [
                "agent",
                "--app", "vscode",
                "--session-dir", ".hpcsession/sessions/vscode",
                "--image", "/images/code.sif",
                "--isolation", "full",
                "--bind", "/sc/arion",
            ],
        )

        assert result.exit_code == 0, result.output
        config = mock_agent.call_args.args[0]
        assert config.session_dir == Path(tmp_path) / ".hpcsession" / "sessions" / "vscode"
        assert config.session_dir.is_dir()
        assert config.isolation is IsolationLevel.FULL
        assert config.binds == ["/sc/arion"]
        mock_launcher.launch.assert_not_called()

    @patch("hpcsession.cli.RemoteAgent")
    def test_agent_exit_code(self, mock_agent, runner, tmp_path):
        mock_agent.return_value.run.return_value = 3

        result = runner.invoke(
            main,
            ["agent", "--app", "vscode", "--session-dir", str(tmp_path / "s"), "--image", "/x.sif"],
        )

        assert result.exit_code == 3

    def test_agent_hidden_from_help(self, runner):
        result = runner.invoke(main, ["--help"])
        assert result.exit_code == 0
        assert "agent" not in result.output
