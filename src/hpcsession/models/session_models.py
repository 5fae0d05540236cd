"""
Session Data Models

Shared dataclasses for session launches to avoid circular dependencies.

Philosophy:
- Single responsibility: session data structures only
- Zero dependencies: no imports from other hpcsession modules
- Immutable: every layer of configuration produces a new value
"""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path, PurePosixPath


class SessionApp(Enum):
    """Interactive server launched inside the batch job."""

    VSCODE = "vscode"
    RSTUDIO = "rstudio"


class IsolationLevel(Enum):
    """How far the container is cut off from the user's home and environment."""

    NONE = "none"
    PARTIAL = "partial"
    FULL = "full"


@dataclass(frozen=True)
class SessionRequest:
    """User-declared intent for one session launch.

    Attributes:
        cores: Number of CPU cores (1-64)
        time: Wall-clock limit as H[H[H]]:MM
        memory: Memory per core in MB
        resources: Extra scheduler resource tags
        queue: Queue name, or "auto" to choose from the wall-clock time
        account: Account to charge, or None to look it up
        session_name: Optional name namespacing all derived file paths
        env: Conda environment name or path
        image: Container image path or registry URI
        isolation: Isolation level of the container
        app: Server to launch
        long_queue: Explicit opt-in for the long-running queue
    """

    cores: int = 1
    time: str = "12:00"
    memory: int = 4000
    resources: tuple[str, ...] = ()
    queue: str = "auto"
    account: str | None = None
    session_name: str | None = None
    env: str | None = None
    image: str | None = None
    isolation: IsolationLevel = IsolationLevel.NONE
    app: SessionApp = SessionApp.VSCODE
    long_queue: bool = False


@dataclass(frozen=True)
class LauncherSettings:
    """Orchestration settings that are not part of a single request."""

    login_host: str = "minerva.hpc.mssm.edu"
    ssh_user: str | None = None
    cluster_domain: str = "hpc.mssm.edu"
    state_dir: str = ".hpcsession"
    poll_interval: int = 30
    status_interval: int = 5
    status_attempts: int = 5
    max_attempts: int = 3
    local_port: int = 8890
    named_session_local_port: int = 8990
    remote_port_start: int = 50000
    remote_port_end: int = 60000
    remote_command: str = "hpcsession"
    conda_envs_root: str = "~/.conda/envs"
    image_cache_dir: str = "~/.hpcsession/images"
    default_account: str | None = None
    preferred_account_category: str = "free"
    lock_root: str = "/tmp"  # noqa: S108
    binds: tuple[str, ...] = ()
    tunnel_timeout: int = 30

    @property
    def ssh_target(self) -> str:
        """user@host for ssh, or just host when no user is configured."""
        if self.ssh_user:
            return f"{self.ssh_user}@{self.login_host}"
        return self.login_host


@dataclass(frozen=True)
class JobDescriptor:
    """Fully resolved session request. One descriptor, one submission."""

    app: SessionApp
    cores: int
    wall_minutes: int
    memory_per_core: int
    queue: str
    account: str
    resources: tuple[str, ...] = ()
    session_name: str | None = None
    env_path: str | None = None
    image: str | None = None
    isolation: IsolationLevel = IsolationLevel.NONE

    @property
    def total_memory(self) -> int:
        """Total memory in MB across all cores."""
        return self.cores * self.memory_per_core

    @property
    def wall_clock(self) -> str:
        """Wall-clock limit formatted as HH:MM for the scheduler."""
        hours, minutes = divmod(self.wall_minutes, 60)
        return f"{hours:02d}:{minutes:02d}"

    @property
    def job_name(self) -> str:
        if self.session_name:
            return f"hpcsession-{self.app.value}-{self.session_name}"
        return f"hpcsession-{self.app.value}"


@dataclass(frozen=True)
class SessionPaths:
    """Every file path derived from a session's namespace.

    Remote paths are relative to the home directory on the cluster so they
    can be handed to ssh and scp unchanged.
    """

    namespace: str
    remote_dir: PurePosixPath
    local_dir: Path
    remote_status_file: PurePosixPath = field(init=False)
    remote_reconnect_file: PurePosixPath = field(init=False)
    local_reconnect_file: Path = field(init=False)
    job_log: PurePosixPath = field(init=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "remote_status_file", self.remote_dir / "status")
        object.__setattr__(self, "remote_reconnect_file", self.remote_dir / "reconnect.info")
        object.__setattr__(self, "local_reconnect_file", self.local_dir / "reconnect.info")
        object.__setattr__(self, "job_log", self.remote_dir / "job.%J.log")

    @classmethod
    def for_session(
        cls,
        app: SessionApp,
        session_name: str | None,
        state_dir: str = ".hpcsession",
        home: Path | None = None,
    ) -> "SessionPaths":
        """Derive the paths for an app and optional session name."""
        namespace = f"{app.value}-{session_name}" if session_name else app.value
        home = home or Path.home()
        return cls(
            namespace=namespace,
            remote_dir=PurePosixPath(state_dir) / "sessions" / namespace,
            local_dir=home / state_dir / "sessions" / namespace,
        )


__all__ = [
    "IsolationLevel",
    "JobDescriptor",
    "LauncherSettings",
    "SessionApp",
    "SessionPaths",
    "SessionRequest",
]
