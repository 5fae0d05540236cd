"""Container runtime module.

Builds the Singularity/Apptainer command lines that start a session server
on a compute node:
- image resolution (local .sif, or a registry URI pulled into a cache)
- isolation flags for the chosen IsolationLevel
- bind mounts and environment for VS Code and RStudio Server
- the URL a browser should open once the server is forwarded

Nothing here runs a process; the remote agent does that.
"""

import hashlib
import logging
import os
import re
import shutil
from pathlib import Path
from urllib.parse import quote

from hpcsession.models import IsolationLevel, SessionApp

logger = logging.getLogger(__name__)

REGISTRY_SCHEMES = ("oras://", "docker://", "library://", "shub://")
RUNTIMES = ("apptainer", "singularity")

# RStudio Server keeps its state under fixed paths inside the container
RSTUDIO_STATE_DIRS = ("run", "var-lib-rstudio-server", "local-share-rstudio", "log")
RSTUDIO_DATABASE_CONF = "provider=sqlite\ndirectory=/var/lib/rstudio-server\n"
RSTUDIO_RSESSION_CONF = "session-timeout-minutes=0\n"


def find_runtime() -> str:
    """Container runtime available on this node (apptainer preferred)."""
    for runtime in RUNTIMES:
        if shutil.which(runtime):
            return runtime
    return "singularity"


def resolve_image(image: str, cache_dir: Path) -> tuple[Path, str | None]:
    """Map an image reference to a local .sif path and an optional pull URI.

    Example:
        >>> resolve_image("oras://ghcr.io/befh/rstudio-server-conda:latest", Path("/c"))
        (PosixPath('/c/rstudio-server-conda_latest.sif'), 'oras://ghcr.io/befh/rstudio-server-conda:latest')
    """
    if image.startswith(REGISTRY_SCHEMES):
        name = image.split("://", 1)[1].rstrip("/").rsplit("/", 1)[-1]
        name = re.sub(r"[^A-Za-z0-9_.-]", "_", name)
        return cache_dir / f"{name}.sif", image
    return Path(os.path.expanduser(image)), None


def pull_command(runtime: str, sif_path: Path, uri: str) -> list[str]:
    return [runtime, "pull", str(sif_path), uri]


def isolation_flags(level: IsolationLevel, session_home: Path) -> list[str]:
    """Runtime flags for an isolation level.

    - NONE: host environment and home directory are visible
    - PARTIAL: environment dropped, home directory still mounted
    - FULL: contained filesystem, IPC and PID, private home directory
    """
    if level is IsolationLevel.PARTIAL:
        return ["--cleanenv"]
    if level is IsolationLevel.FULL:
        return ["--containall", "--home", str(session_home)]
    return []


def environment_flags(env: dict[str, str]) -> list[str]:
    flags: list[str] = []
    for key, value in env.items():
        flags.extend(["--env", f"{key}={value}"])
    return flags


def bind_flags(binds: list[str]) -> list[str]:
    flags: list[str] = []
    for bind in binds:
        flags.extend(["--bind", bind])
    return flags


def rstudio_state_dir(session_dir: Path, env_path: str) -> Path:
    """Per-environment state directory, keyed by a hash of the environment prefix."""
    digest = hashlib.md5(env_path.encode(), usedforsecurity=False).hexdigest()
    return session_dir / "rstudio" / digest


def prepare_rstudio(session_dir: Path, env_path: str) -> list[str]:
    """Create RStudio Server's state directories and config; return its binds."""
    state = rstudio_state_dir(session_dir, env_path)
    for name in RSTUDIO_STATE_DIRS:
        (state / name).mkdir(parents=True, exist_ok=True)
    database_conf = state / "database.conf"
    rsession_conf = state / "rsession.conf"
    database_conf.write_text(RSTUDIO_DATABASE_CONF)
    rsession_conf.write_text(RSTUDIO_RSESSION_CONF)

    return [
        f"{state / 'run'}:/serverdir",
        f"{state / 'var-lib-rstudio-server'}:/var/lib/rstudio-server",
        "/sys/fs/cgroup/:/sys/fs/cgroup/:ro",
        f"{database_conf}:/etc/rstudio/database.conf",
        f"{rsession_conf}:/etc/rstudio/rsession.conf",
        f"{state / 'local-share-rstudio'}:/home/rstudio/.local/share/rstudio",
        f"{state / 'log'}:/var/log/rstudio/rstudio-server",
        f"{env_path}:{env_path}",
    ]


def server_command(
    app: SessionApp, host: str, port: int, token: str, env_path: str | None, user: str
) -> list[str]:
    """Command run inside the container to start the session server."""
    if app is SessionApp.RSTUDIO:
        if not env_path:
            raise ValueError("RStudio Server needs a conda environment")
        return [
            "rserver",
            "--www-address",
            host,
            "--www-port",
            str(port),
            "--server-data-dir=/serverdir",
            f"--rsession-which-r={env_path}/bin/R",
            f"--rsession-ld-library-path={env_path}/lib",
            f"--server-user={user}",
            "--auth-none=0",
            "--auth-pam-helper-path=pam-helper",
        ]

    # Put the environment's tools first on PATH, then hand over to the VS Code CLI
    activate = 'if [ -n "$CONDA_PREFIX" ]; then export PATH="$CONDA_PREFIX/bin:$PATH"; fi; exec code "$@"'
    return [
        "bash",
        "-c",
        activate,
        "code",
        "serve-web",
        "--host",
        host,
        "--port",
        str(port),
        "--connection-token",
        token,
        "--accept-server-license-terms",
    ]


def session_environment(app: SessionApp, env_path: str | None, user: str, token: str) -> dict[str, str]:
    """Environment passed into the container."""
    env = {"USER": user}
    if env_path:
        env["CONDA_PREFIX"] = env_path
        env["CONDA_DEFAULT_ENV"] = env_path
    if app is SessionApp.RSTUDIO:
        env["RSTUDIO_PASSWORD"] = token
    return env


def exec_command(
    runtime: str,
    sif_path: Path,
    isolation: IsolationLevel,
    session_home: Path,
    binds: list[str],
    env: dict[str, str],
    server_argv: list[str],
) -> list[str]:
    """Full ``<runtime> exec`` command line."""
    return [
        runtime,
        "exec",
        *isolation_flags(isolation, session_home),
        *bind_flags(binds),
        *environment_flags(env),
        str(sif_path),
        *server_argv,
    ]


def session_url(app: SessionApp, host: str, port: int, token: str) -> str:
    """Browser URL for a forwarded (or directly reachable) server."""
    if app is SessionApp.VSCODE:
        return f"http://{host}:{port}/?tkn={quote(token, safe='')}"
    return f"http://{host}:{port}/"


__all__ = [
    "exec_command",
    "find_runtime",
    "isolation_flags",
    "prepare_rstudio",
    "pull_command",
    "resolve_image",
    "rstudio_state_dir",
    "server_command",
    "session_environment",
    "session_url",
]
