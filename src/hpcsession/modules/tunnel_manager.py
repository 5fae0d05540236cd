"""SSH tunnel management module.

Forwards a local port to the session's server on a compute node, through
the cluster's login host:

    localhost:<local_port>  ->  login host  ->  <remote_ip>:<remote_port>

The ssh process is started detached and left running after the launcher
exits; closing the laptop lid or re-running the tool does not kill the
session. A forward already listening on the intended local port is reused
rather than duplicated.

Security:
- Local end binds 127.0.0.1 only (ssh default for -L without bind address)
- No shell=True for subprocess
- Rides on the existing ssh control master, so no new credential prompt
"""

import logging
import shlex
import subprocess
import time
from collections.abc import Callable
from dataclasses import dataclass, field

from hpcsession.errors import TunnelError
from hpcsession.modules.cluster_shell import ClusterShell
from hpcsession.modules.port_allocator import find_free_port, is_port_listening

logger = logging.getLogger(__name__)


@dataclass
class TunnelHandle:
    """A local forward to a remote session."""

    local_port: int
    remote_ip: str
    remote_port: int
    command: list[str] = field(default_factory=list)
    process: subprocess.Popen | None = None
    reused: bool = False

    @property
    def command_line(self) -> str:
        return shlex.join(self.command)

    def is_active(self) -> bool:
        """Check if the tunnel process started by this handle is still running."""
        if not self.process:
            return self.reused
        return self.process.poll() is None


class TunnelManager:
    """Create or reuse SSH local forwards."""

    DEFAULT_TUNNEL_TIMEOUT = 30

    def __init__(
        self,
        shell: ClusterShell,
        timeout: int = DEFAULT_TUNNEL_TIMEOUT,
        is_listening: Callable[[int], bool] = is_port_listening,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.shell = shell
        self.timeout = timeout
        self.is_listening = is_listening
        self.sleep = sleep

    def build_command(self, local_port: int, remote_ip: str, remote_port: int) -> list[str]:
        """ssh command forwarding local_port to remote_ip:remote_port."""
        base = self.shell.ssh_base_command()
        return [
            base[0],
            "-N",
            "-L",
            f"{local_port}:{remote_ip}:{remote_port}",
            "-o",
            "ExitOnForwardFailure=yes",
            "-o",
            "ServerAliveInterval=60",
            *base[1:],
        ]

    def establish(
        self,
        remote_ip: str,
        remote_port: int,
        base_port: int,
        preferred_port: int | None = None,
    ) -> TunnelHandle:
        """Forward a local port to remote_ip:remote_port.

        Args:
            remote_ip: Compute node address the server listens on
            remote_port: Server port on the compute node
            base_port: First local port to probe when allocating
            preferred_port: Local port of a previous forward to reuse

        Returns:
            TunnelHandle (reused=True when an existing forward was found)

        Raises:
            TunnelError: If ssh fails to start or the forward never listens
        """
        if preferred_port is not None:
            command = self.build_command(preferred_port, remote_ip, remote_port)
            if self.is_listening(preferred_port):
                logger.info(f"Reusing existing tunnel on 127.0.0.1:{preferred_port}")
                return TunnelHandle(
                    local_port=preferred_port,
                    remote_ip=remote_ip,
                    remote_port=remote_port,
                    command=command,
                    reused=True,
                )
            local_port = preferred_port
        else:
            local_port = find_free_port(base_port, is_listening=self.is_listening)
            command = self.build_command(local_port, remote_ip, remote_port)

        logger.info(
            f"Creating tunnel: 127.0.0.1:{local_port} -> {remote_ip}:{remote_port} "
            f"via {self.shell.settings.login_host}"
        )
        logger.debug(f"Tunnel command: {shlex.join(command)}")

        try:
            # Detached: the tunnel outlives this process, so no pipes back to it
            process = subprocess.Popen(
                command,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                start_new_session=True,
            )
        except OSError as e:
            raise TunnelError(f"Failed to start tunnel process: {e}") from e

        handle = TunnelHandle(
            local_port=local_port,
            remote_ip=remote_ip,
            remote_port=remote_port,
            command=command,
            process=process,
        )
        self._wait_for_tunnel_ready(handle)
        logger.info(f"Tunnel ready on 127.0.0.1:{local_port}")
        return handle

    def _wait_for_tunnel_ready(self, handle: TunnelHandle) -> None:
        """Wait for the local end of the forward to accept connections.

        Raises:
            TunnelError: If ssh exits or the port never listens within the timeout
        """
        deadline = time.monotonic() + self.timeout

        while time.monotonic() < deadline:
            if not handle.is_active():
                returncode = handle.process.returncode if handle.process else None
                raise TunnelError(
                    f"Tunnel process exited with code {returncode}. "
                    f"Run the command manually to see the error: {handle.command_line}"
                )

            if self.is_listening(handle.local_port):
                return
            self.sleep(1)

        if handle.process is not None:
            handle.process.terminate()
        raise TunnelError(
            f"Tunnel failed to become ready within {self.timeout} seconds. "
            f"Run the command manually to see the error: {handle.command_line}"
        )


__all__ = ["TunnelHandle", "TunnelManager"]
