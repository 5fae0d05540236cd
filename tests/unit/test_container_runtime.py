"""Unit tests for container_runtime module."""

from pathlib import Path
from unittest.mock import patch

import pytest

from hpcsession.models import IsolationLevel, SessionApp
from hpcsession.modules import container_runtime


class TestImages:
    """Tests for image resolution."""

    def test_registry_uri_cached(self):
        sif, uri = container_runtime.resolve_image(
            "oras://ghcr.io/befh/rstudio-server-conda:latest", Path("/cache")
        )
        assert sif == Path("/cache/rstudio-server-conda_latest.sif")
        assert uri == "oras://ghcr.io/befh/rstudio-server-conda:latest"

    def test_local_path(self, temp_home_dir):
        sif, uri = container_runtime.resolve_image("~/images/code.sif", Path("/cache"))
        assert sif == temp_home_dir / "images" / "code.sif"
        assert uri is None

    def test_pull_command(self):
        assert container_runtime.pull_command("apptainer", Path("/c/x.sif"), "docker://x") == [
            "apptainer",
            "pull",
            "/c/x.sif",
            "docker://x",
        ]

    @patch("hpcsession.modules.container_runtime.shutil.which")
    def test_prefers_apptainer(self, mock_which):
        mock_which.side_effect = lambda name: f"/usr/bin/{name}"
        assert container_runtime.find_runtime() == "apptainer"

    @patch("hpcsession.modules.container_runtime.shutil.which")
    def test_falls_back_to_singularity(self, mock_which):
        mock_which.side_effect = lambda name: "/usr/bin/singularity" if name == "singularity" else None
        assert container_runtime.find_runtime() == "singularity"


class TestIsolationFlags:
    """Tests for isolation_flags."""

    @pytest.mark.parametrize(
        ("level", "flags"),
        [
            (IsolationLevel.NONE, []),
            (IsolationLevel.PARTIAL, ["--cleanenv"]),
            (IsolationLevel.FULL, ["--containall", "--home", "/s/home"]),
        ],
    )
    def test_flags(self, level, flags):
        assert container_runtime.isolation_flags(level, Path("/s/home")) == flags


class TestRStudio:
    """Tests for RStudio Server preparation."""

    def test_state_dir_keyed_by_environment(self, tmp_path):
        a = container_runtime.rstudio_state_dir(tmp_path, "/envs/r43")
        b = container_runtime.rstudio_state_dir(tmp_path, "/envs/r44")
        assert a != b
        assert a == container_runtime.rstudio_state_dir(tmp_path, "/envs/r43")

    def test_prepare_creates_dirs_and_binds(self, tmp_path):
        binds = container_runtime.prepare_rstudio(tmp_path, "/envs/r44")
        state = container_runtime.rstudio_state_dir(tmp_path, "/envs/r44")

        for name in container_runtime.RSTUDIO_STATE_DIRS:
            assert (state / name).is_dir()
        assert "provider=sqlite" in (state / "database.conf").read_text()
        assert f"{state / 'run'}:/serverdir" in binds
        assert "/envs/r44:/envs/r44" in binds

    def test_server_command(self):
        cmd = container_runtime.server_command(
            SessionApp.RSTUDIO, "10.0.0.7", 50123, "tok", "/envs/r44", "alice"
        )
        assert cmd[0] == "rserver"
        assert cmd[cmd.index("--www-port") + 1] == "50123"
        assert "--rsession-which-r=/envs/r44/bin/R" in cmd
        assert "--server-user=alice" in cmd

    def test_server_command_needs_env(self):
        with pytest.raises(ValueError):
            container_runtime.server_command(SessionApp.RSTUDIO, "h", 1, "t", None, "alice")

    def test_password_is_token(self):
        env = container_runtime.session_environment(SessionApp.RSTUDIO, "/envs/r44", "alice", "tok")
        assert env["RSTUDIO_PASSWORD"] == "tok"
        assert env["CONDA_PREFIX"] == "/envs/r44"


class TestVSCode:
    """Tests for VS Code commands and URLs."""

    def test_server_command(self):
        cmd = container_runtime.server_command(SessionApp.VSCODE, "10.0.0.7", 50123, "tok", None, "alice")
        assert cmd[:2] == ["bash", "-c"]
        assert cmd[3:5] == ["code", "serve-web"]
        assert cmd[cmd.index("--connection-token") + 1] == "tok"

    def test_environment_without_conda(self):
        env = container_runtime.session_environment(SessionApp.VSCODE, None, "alice", "tok")
        assert env == {"USER": "alice"}

    def test_exec_command_order(self):
        cmd = container_runtime.exec_command(
            "apptainer",
            Path("/c/code.sif"),
            IsolationLevel.PARTIAL,
            Path("/s/home"),
            ["/sc/arion"],
            {"USER": "alice"},
            ["code", "serve-web"],
        )
        assert cmd == [
            "apptainer",
            "exec",
            "--cleanenv",
            "--bind",
            "/sc/arion",
            "--env",
            "USER=alice",
            "/c/code.sif",
            "code",
            "serve-web",
        ]

    def test_session_url(self):
        assert (
            container_runtime.session_url(SessionApp.VSCODE, "localhost", 8890, "a/b")
            == "http://localhost:8890/?tkn=a%2Fb"
        )
        assert container_runtime.session_url(SessionApp.RSTUDIO, "localhost", 8890, "t") == (
            "http://localhost:8890/"
        )
