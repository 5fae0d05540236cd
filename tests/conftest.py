"""
Shared test fixtures for hpcsession tests.

This module provides common fixtures used across the unit tests:
- Launcher settings and session requests
- A cluster shell double backed by a temporary directory
- Fake status sources and clocks for the submission controller
"""

from pathlib import Path, PurePosixPath
from unittest.mock import Mock

import pytest

from hpcsession.models import LauncherSettings, SessionApp, SessionPaths, SessionRequest
from hpcsession.modules.cluster_shell import ClusterShell
from hpcsession.modules.job_descriptor import AccountBalance

# ============================================================================
# DIRECTORY FIXTURES
# ============================================================================


@pytest.fixture
def temp_home_dir(tmp_path, monkeypatch):
    """Temporary home directory for testing.

    Sets HOME so Path.home() and ~ expansion never touch the real home.
    """
    home_dir = tmp_path / "home"
    home_dir.mkdir()
    monkeypatch.setenv("HOME", str(home_dir))
    return home_dir


@pytest.fixture
def cluster_home(tmp_path):
    """Directory standing in for the home directory on the cluster."""
    home = tmp_path / "cluster-home"
    home.mkdir()
    return home


# ============================================================================
# SETTINGS AND REQUEST FIXTURES
# ============================================================================


@pytest.fixture
def settings():
    """Launcher settings with fast intervals for tests."""
    return LauncherSettings(
        login_host="login.test.cluster",
        cluster_domain="test.cluster",
        poll_interval=1,
        status_interval=1,
    )


@pytest.fixture
def request_4_cores():
    """Four cores, twelve hours, 4000 MB per core, queue chosen automatically."""
    return SessionRequest(cores=4, time="12:00", memory=4000, queue="auto", account="acc_lab")


@pytest.fixture
def accounts():
    """Balance snapshot with a free and a paid account."""
    return [
        AccountBalance(name="acc_paid", balance=1200.0, category="paid"),
        AccountBalance(name="acc_free", balance=0.0, category="free"),
    ]


@pytest.fixture
def session_paths(temp_home_dir):
    """Paths of an unnamed VS Code session."""
    return SessionPaths.for_session(SessionApp.VSCODE, None, home=temp_home_dir)


# ============================================================================
# CLUSTER DOUBLES
# ============================================================================


class FakeClusterShell:
    """ClusterShell double keeping 'cluster' files in a local directory."""

    def __init__(self, home: Path, on_cluster: bool = False, settings=None):
        self.home = home
        self.on_cluster = on_cluster
        self.settings = settings or LauncherSettings()
        self.files: dict[str, str] = {}
        self.run = Mock()

    def ssh_base_command(self):
        return ClusterShell(self.settings, on_cluster=False, home=self.home).ssh_base_command()

    def read_file(self, path: PurePosixPath):
        return self.files.get(str(path))

    def write_file(self, path: PurePosixPath, text: str):
        self.files[str(path)] = text

    def remove_file(self, path: PurePosixPath):
        self.files.pop(str(path), None)

    def make_dirs(self, path: PurePosixPath):
        pass


@pytest.fixture
def fake_shell(cluster_home, settings):
    """Off-cluster shell double."""
    return FakeClusterShell(cluster_home, on_cluster=False, settings=settings)


class ScriptedStatusSource:
    """Status source replaying one scripted sequence of reads per submission.

    Each submission consumes the next script; each read returns the next
    entry of the current script (the last entry repeats).
    """

    def __init__(self, scripts: list[list[str | None]]):
        self.scripts = scripts
        self.current: list[str | None] = []
        self.reads = 0
        self.events: list[str] = []

    def begin_submission(self):
        self.current = list(self.scripts.pop(0))
        self.events.append("submit")

    def read(self):
        self.reads += 1
        if len(self.current) > 1:
            return self.current.pop(0)
        return self.current[0] if self.current else None

    def clear(self):
        self.events.append("clear")


@pytest.fixture
def fake_sleep():
    """Sleep double recording requested durations."""
    return Mock()


@pytest.fixture
def make_status_source():
    """Factory for ScriptedStatusSource."""
    return ScriptedStatusSource


@pytest.fixture
def make_shell(settings):
    """Factory for FakeClusterShell."""

    def _make(home: Path, on_cluster: bool = False):
        return FakeClusterShell(home, on_cluster=on_cluster, settings=settings)

    return _make
