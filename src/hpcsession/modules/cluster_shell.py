"""Cluster shell module.

Runs commands and reads/writes small files on the cluster. From a laptop
everything goes through ssh to the login host, multiplexed over one control
master so a two-factor prompt is answered once. On a cluster node the same
calls run locally against the shared home directory.

Security:
- No shell=True; remote commands are quoted with shlex
- Remote paths are relative to the home directory
- Timeout enforcement
"""

import logging
import shlex
import shutil
import socket
import subprocess
from dataclasses import dataclass
from pathlib import Path, PurePosixPath

from hpcsession.errors import ClusterShellError
from hpcsession.models import LauncherSettings

logger = logging.getLogger(__name__)


@dataclass
class CommandResult:
    """Result of a command run on the cluster."""

    exit_code: int
    stdout: str
    stderr: str

    @property
    def success(self) -> bool:
        return self.exit_code == 0


def is_on_cluster(cluster_domain: str) -> bool:
    """Detect whether this process runs on a cluster node.

    A node either resolves to a name inside the cluster domain or has the
    scheduler's submission command on PATH.
    """
    fqdn = socket.getfqdn()
    if cluster_domain and fqdn.endswith(cluster_domain):
        return True
    return shutil.which("bsub") is not None


class ClusterShell:
    """Command and file access to the cluster's login boundary."""

    DEFAULT_TIMEOUT = 60

    def __init__(
        self,
        settings: LauncherSettings,
        on_cluster: bool | None = None,
        home: Path | None = None,
    ):
        self.settings = settings
        self.on_cluster = is_on_cluster(settings.cluster_domain) if on_cluster is None else on_cluster
        self.home = home or Path.home()
        self.control_path = Path.home() / ".ssh" / "cm-hpcsession-%r@%h:%p"

    def ssh_base_command(self) -> list[str]:
        """ssh invocation shared by commands and tunnels."""
        return [
            "ssh",
            "-o",
            f"ControlPath={self.control_path}",
            "-o",
            "ControlMaster=auto",
            "-o",
            "ControlPersist=10m",
            "-o",
            "LogLevel=ERROR",
            self.settings.ssh_target,
        ]

    def run(
        self, argv: list[str], input_text: str | None = None, timeout: int = DEFAULT_TIMEOUT
    ) -> CommandResult:
        """Run a command on the cluster.

        Args:
            argv: Command and arguments
            input_text: Optional text fed to stdin
            timeout: Timeout in seconds

        Returns:
            CommandResult (non-zero exit codes are returned, not raised)

        Raises:
            ClusterShellError: If the command cannot be started or times out
        """
        if self.on_cluster:
            cmd = argv
            cwd: Path | None = self.home
        else:
            cmd = [*self.ssh_base_command(), shlex.join(argv)]
            cwd = None

        logger.debug(f"Executing on cluster: {shlex.join(argv)}")

        try:
            result = subprocess.run(
                cmd,
                input=input_text,
                capture_output=True,
                text=True,
                timeout=timeout,
                cwd=cwd,
                check=False,
            )
        except subprocess.TimeoutExpired as e:
            raise ClusterShellError(f"Command timed out after {timeout}s: {argv[0]}") from e
        except OSError as e:
            raise ClusterShellError(f"Failed to execute {cmd[0]}: {e}") from e

        if result.returncode != 0:
            logger.debug(f"Command exited {result.returncode}: {result.stderr.strip()}")
        return CommandResult(result.returncode, result.stdout, result.stderr)

    def _local(self, path: PurePosixPath) -> Path:
        return self.home / path

    def read_file(self, path: PurePosixPath) -> str | None:
        """Read a file on the cluster, or None if it does not exist."""
        if self.on_cluster:
            try:
                return self._local(path).read_text()
            except FileNotFoundError:
                return None
            except OSError as e:
                raise ClusterShellError(f"Failed to read {path}: {e}") from e

        result = self.run(["cat", str(path)])
        if result.success:
            return result.stdout
        if "No such file" in result.stderr:
            return None
        raise ClusterShellError(f"Failed to read {path}: {result.stderr.strip()}")

    def write_file(self, path: PurePosixPath, text: str) -> None:
        """Write a file on the cluster, creating its directory."""
        if self.on_cluster:
            local = self._local(path)
            try:
                local.parent.mkdir(parents=True, exist_ok=True)
                local.write_text(text)
            except OSError as e:
                raise ClusterShellError(f"Failed to write {path}: {e}") from e
            return

        script = (
            f"mkdir -p {shlex.quote(str(path.parent))} && cat > {shlex.quote(str(path))}"
        )
        result = self.run(["sh", "-c", script], input_text=text)
        if not result.success:
            raise ClusterShellError(f"Failed to write {path}: {result.stderr.strip()}")

    def remove_file(self, path: PurePosixPath) -> None:
        """Remove a file on the cluster; a missing file is not an error."""
        if self.on_cluster:
            try:
                self._local(path).unlink(missing_ok=True)
            except OSError as e:
                raise ClusterShellError(f"Failed to remove {path}: {e}") from e
            return

        result = self.run(["rm", "-f", str(path)])
        if not result.success:
            raise ClusterShellError(f"Failed to remove {path}: {result.stderr.strip()}")

    def make_dirs(self, path: PurePosixPath) -> None:
        if self.on_cluster:
            self._local(path).mkdir(parents=True, exist_ok=True)
            return
        result = self.run(["mkdir", "-p", str(path)])
        if not result.success:
            raise ClusterShellError(f"Failed to create {path}: {result.stderr.strip()}")


__all__ = ["ClusterShell", "CommandResult", "is_on_cluster"]
