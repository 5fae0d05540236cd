"""Session launcher.

Composes the modules into the reconnect-or-launch flow:

1. Ask the reconnect store for a still-running session of this app/name.
   If there is one, reattach (tunnel or direct instructions) and stop.
2. Otherwise build a job descriptor, submit it and drive the submission
   controller until the session reports GOOD.
3. Save a reconnect record so the next invocation reattaches, even if
   bridging fails.
4. Bridge the session back: a tunnel from a laptop, direct instructions on
   a cluster node. A tunnel updates the saved record.

Interrupting the launcher leaves the batch job running.
"""

import logging
from dataclasses import dataclass, replace

from rich.console import Console

from hpcsession.errors import ValidationError
from hpcsession.models import LauncherSettings, SessionApp, SessionPaths, SessionRequest
from hpcsession.modules.cluster_shell import ClusterShell
from hpcsession.modules.container_runtime import session_url
from hpcsession.modules.job_descriptor import JobDescriptorBuilder
from hpcsession.modules.lsf_scheduler import LSFScheduler
from hpcsession.modules.reconnect_store import ReconnectRecord, ReconnectStore
from hpcsession.modules.submission_controller import (
    ClusterStatusSource,
    ControllerState,
    SessionOutcome,
    SubmissionController,
)
from hpcsession.modules.tunnel_manager import TunnelManager

logger = logging.getLogger(__name__)

DIRECT_CONNECTION = "direct"

# Status line colour per controller state
STATE_STYLES = {
    ControllerState.BUILT: "cyan",
    ControllerState.SUBMITTED: "cyan",
    ControllerState.AWAITING_START: "yellow",
    ControllerState.AWAITING_STATUS: "yellow",
    ControllerState.RESOLVED: "green",
    ControllerState.CONTENDED: "yellow",
    ControllerState.DEAD: "red",
    ControllerState.FAILED: "red",
}

STATE_MESSAGES = {
    ControllerState.BUILT: "Preparing submission",
    ControllerState.SUBMITTED: "Submitted",
    ControllerState.AWAITING_START: "Waiting for the job to start",
    ControllerState.AWAITING_STATUS: "Job started, waiting for the server",
    ControllerState.RESOLVED: "Server is up",
    ControllerState.CONTENDED: "Node busy",
    ControllerState.DEAD: "Server died",
    ControllerState.FAILED: "Session failed",
}


@dataclass(frozen=True)
class RemoteStart:
    """An already running server given as ip:port:token."""

    remote_ip: str
    remote_port: int
    token: str

    @classmethod
    def parse(cls, value: str) -> "RemoteStart":
        """Parse an ``ip:port:token`` triple.

        Raises:
            ValidationError: If any part is missing or the port is not a port number
        """
        parts = value.split(":", 2)
        if len(parts) != 3 or not all(parts):
            raise ValidationError("remote-start", f"'{value}' is not ip:port:token")
        ip, port, token = parts
        if not port.isdigit() or not 1 <= int(port) <= 65535:
            raise ValidationError("remote-start", f"'{port}' is not a valid port")
        return cls(remote_ip=ip, remote_port=int(port), token=token)


class SessionLauncher:
    """Reconnect to, or launch, one interactive session."""

    def __init__(
        self,
        settings: LauncherSettings,
        shell: ClusterShell | None = None,
        scheduler: LSFScheduler | None = None,
        tunnels: TunnelManager | None = None,
        console: Console | None = None,
    ):
        self.settings = settings
        self.shell = shell or ClusterShell(settings)
        self.scheduler = scheduler or LSFScheduler(self.shell, settings)
        self.tunnels = tunnels or TunnelManager(self.shell, timeout=settings.tunnel_timeout)
        self.console = console or Console()

    def paths_for(self, request: SessionRequest) -> SessionPaths:
        return SessionPaths.for_session(
            request.app, request.session_name, self.settings.state_dir, home=self.shell.home
        )

    def store_for(self, paths: SessionPaths) -> ReconnectStore:
        return ReconnectStore(paths, self.shell, self.scheduler.is_running)

    def base_port(self, request: SessionRequest) -> int:
        """First local port to probe; named sessions use a separate range."""
        if request.session_name:
            return self.settings.named_session_local_port
        return self.settings.local_port

    def launch(self, request: SessionRequest) -> ReconnectRecord:
        """Reattach to a running session or start a new one.

        Returns:
            ReconnectRecord describing the session

        Raises:
            HpcSessionError: Any failure along the way (see hpcsession.errors)
        """
        paths = self.paths_for(request)
        store = self.store_for(paths)

        existing = store.load()
        if existing is not None:
            self._status(f"Found running session in job {existing.job_id}", "green")
            return self._reattach(request, existing, store)

        builder = JobDescriptorBuilder(self.settings, self.scheduler.list_accounts)
        descriptor = builder.build(request)
        self._status(
            f"Requesting {descriptor.cores} cores, {descriptor.memory_per_core} MB/core for "
            f"{descriptor.wall_clock} on queue {descriptor.queue} (account {descriptor.account})",
            "cyan",
        )

        controller = SubmissionController(
            submit=lambda d: self.scheduler.submit(d, paths),
            status_source=ClusterStatusSource(self.shell, paths.remote_status_file),
            poll_interval=self.settings.poll_interval,
            status_interval=self.settings.status_interval,
            status_attempts=self.settings.status_attempts,
            max_attempts=self.settings.max_attempts,
            on_transition=self._on_transition,
        )
        outcome = controller.run(descriptor)

        # Saved before tunnelling so a failed tunnel still leaves the job reattachable
        record = self._direct_record(request, outcome)
        store.save(record)
        if self.shell.on_cluster:
            self._direct_instructions(request.app, record.url)
            return record

        record = self._tunnel_record(request, outcome)
        store.save(record)
        return record

    def attach(self, request: SessionRequest, remote: RemoteStart) -> ReconnectRecord:
        """Tunnel to a server that was started by other means. Nothing is saved."""
        outcome = SessionOutcome(
            job_id="",
            remote_ip=remote.remote_ip,
            remote_port=remote.remote_port,
            token=remote.token,
            attempts=0,
        )
        return self._connect(request, outcome)

    def _connect(self, request: SessionRequest, outcome: SessionOutcome) -> ReconnectRecord:
        if self.shell.on_cluster:
            record = self._direct_record(request, outcome)
            self._direct_instructions(request.app, record.url)
            return record
        return self._tunnel_record(request, outcome)

    @staticmethod
    def _direct_record(request: SessionRequest, outcome: SessionOutcome) -> ReconnectRecord:
        """Record for a session reached at its own address, without a tunnel."""
        url = session_url(request.app, outcome.remote_ip, outcome.remote_port, outcome.token)
        return ReconnectRecord(
            remote_ip=outcome.remote_ip,
            remote_port=outcome.remote_port,
            local_port=outcome.remote_port,
            tunnel_command=DIRECT_CONNECTION,
            url=url,
            job_id=outcome.job_id,
            token=outcome.token,
        )

    def _tunnel_record(self, request: SessionRequest, outcome: SessionOutcome) -> ReconnectRecord:
        handle = self.tunnels.establish(
            outcome.remote_ip, outcome.remote_port, base_port=self.base_port(request)
        )
        url = session_url(request.app, "localhost", handle.local_port, outcome.token)
        self._ready(request.app, url, handle.command_line)
        return ReconnectRecord(
            remote_ip=outcome.remote_ip,
            remote_port=outcome.remote_port,
            local_port=handle.local_port,
            tunnel_command=handle.command_line,
            url=url,
            job_id=outcome.job_id,
            token=outcome.token,
        )

    def _reattach(
        self, request: SessionRequest, record: ReconnectRecord, store: ReconnectStore
    ) -> ReconnectRecord:
        if self.shell.on_cluster:
            url = session_url(request.app, record.remote_ip, record.remote_port, record.token)
            self._direct_instructions(request.app, url)
            return record

        # Direct records have no tunnel of their own yet
        preferred = None if record.tunnel_command == DIRECT_CONNECTION else record.local_port
        handle = self.tunnels.establish(
            record.remote_ip,
            record.remote_port,
            base_port=self.base_port(request),
            preferred_port=preferred,
        )
        url = session_url(request.app, "localhost", handle.local_port, record.token)
        if handle.local_port != record.local_port or url != record.url:
            record = replace(
                record,
                local_port=handle.local_port,
                tunnel_command=handle.command_line,
                url=url,
            )
            store.save(record)
        self._ready(request.app, url, handle.command_line)
        return record

    def _on_transition(self, state: ControllerState, message: str) -> None:
        text = STATE_MESSAGES[state]
        if message:
            text = f"{text}: {message}"
        self._status(text, STATE_STYLES[state])

    def _status(self, message: str, style: str) -> None:
        self.console.print(message, style=style, highlight=False)

    def _ready(self, app: SessionApp, url: str, tunnel_command: str) -> None:
        logger.debug(f"Tunnel command: {tunnel_command}")
        self._status(f"{app.value} session is ready. Open in your browser:", "green")
        self.console.print(f"  {url}", style="bold green", highlight=False)

    def _direct_instructions(self, app: SessionApp, url: str) -> None:
        self._status(
            f"{app.value} session is running on the cluster network. "
            "Open this address from a browser inside the cluster:",
            "green",
        )
        self.console.print(f"  {url}", style="bold green", highlight=False)


__all__ = ["RemoteStart", "SessionLauncher"]
