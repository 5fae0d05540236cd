"""Remote session agent.

Runs inside the batch job on the compute node. It is the writing side of
the status channel:

1. Truncate the status file (an empty file tells the launcher the job started)
2. Claim the node; if another user holds it, report BUSY and stop
3. Prepare the image and environment; a failing step reports FAIL with its code
4. Pick a free port, report RemoteIP and RemotePort
5. Start the server and check it is alive three times, five seconds apart;
   if it dies during the checks report DEAD, otherwise report Token and GOOD
6. Stay with the server until it exits

The node lock is released on every exit path, including termination by the
scheduler (bkill sends SIGINT, then SIGTERM).
"""

import getpass
import logging
import os
import secrets
import signal
import socket
import subprocess
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

from hpcsession.errors import PortAllocationError
from hpcsession.models import IsolationLevel, SessionApp
from hpcsession.modules import container_runtime
from hpcsession.modules.contention_guard import ContentionGuard, DirectoryLockGuard
from hpcsession.modules.port_allocator import find_free_port, is_port_listening
from hpcsession.modules.status_channel import SessionStatus, StatusKey, StatusWriter

logger = logging.getLogger(__name__)

# Exit code reported when a required file is missing
MISSING_FILE_CODE = 2

HANDLED_SIGNALS = (signal.SIGTERM, signal.SIGINT, signal.SIGHUP)


@dataclass
class AgentConfig:
    """Everything the agent needs, as passed on its command line."""

    app: SessionApp
    session_dir: Path
    image: str
    env_path: str | None = None
    isolation: IsolationLevel = IsolationLevel.NONE
    port_start: int = 50000
    port_end: int = 60000
    lock_root: Path = Path("/tmp")  # noqa: S108
    image_cache: Path = Path("~/.hpcsession/images")
    binds: list[str] = field(default_factory=list)

    @property
    def status_file(self) -> Path:
        return self.session_dir / "status"

    @property
    def lock_dir(self) -> Path:
        return self.lock_root / f"hpcsession-{self.app.value}.lock"


class RemoteAgent:
    """Start one session server and report its state through the status file."""

    LIVENESS_CHECKS = 3
    LIVENESS_INTERVAL = 5

    def __init__(
        self,
        config: AgentConfig,
        user: str | None = None,
        hostname: str | None = None,
        host_ip: str | None = None,
        guard: ContentionGuard | None = None,
        runtime: str | None = None,
        run: Callable[..., subprocess.CompletedProcess] = subprocess.run,
        popen: Callable[..., subprocess.Popen] = subprocess.Popen,
        sleep: Callable[[float], None] = time.sleep,
        is_listening: Callable[[int], bool] | None = None,
        token_factory: Callable[[], str] = lambda: secrets.token_urlsafe(24),
    ):
        self.config = config
        self.user = user or getpass.getuser()
        self.hostname = hostname or socket.gethostname()
        self.host_ip = host_ip or socket.gethostbyname(self.hostname)
        self.guard = guard or DirectoryLockGuard(config.lock_dir, self.user, self.hostname)
        self.runtime = runtime or container_runtime.find_runtime()
        self._run = run
        self._popen = popen
        self.sleep = sleep
        self.is_listening = is_listening or (
            lambda port: is_port_listening(port, host=self.host_ip)
        )
        self.token_factory = token_factory
        self.writer = StatusWriter(config.status_file)
        self.process: subprocess.Popen | None = None

    def run(self) -> int:
        """Run the session to completion and return the agent's exit code."""
        self.writer.start()

        owner = self.guard.acquire()
        if owner is not None:
            logger.warning(f"{self.hostname} is in use by {owner.user}, reporting BUSY")
            self.writer.report(SessionStatus.BUSY, owner=owner.user, hostname=owner.hostname)
            return 0

        previous = {sig: signal.signal(sig, self._handle_signal) for sig in HANDLED_SIGNALS}
        try:
            return self._run_session()
        finally:
            self._stop_server()
            self.guard.release()
            for sig, handler in previous.items():
                signal.signal(sig, handler)

    @staticmethod
    def _handle_signal(signum: int, frame: object) -> None:
        logger.info(f"Received signal {signum}, shutting down session")
        raise SystemExit(128 + signum)

    def _stop_server(self) -> None:
        if self.process is None or self.process.poll() is not None:
            return
        self.process.terminate()
        try:
            self.process.wait(timeout=10)
        except subprocess.TimeoutExpired:
            logger.warning(f"Force killing server process {self.process.pid}")
            self.process.kill()

    def _fail(self, code: int, message: str) -> int:
        logger.error(message)
        self.writer.report(SessionStatus.FAIL, code=code)
        return code

    def _prepare_image(self) -> Path | int:
        """Return the local image path, or the exit code of a failed step."""
        cache = Path(os.path.expanduser(str(self.config.image_cache)))
        sif_path, uri = container_runtime.resolve_image(self.config.image, cache)

        if uri and not sif_path.exists():
            cache.mkdir(parents=True, exist_ok=True)
            logger.info(f"Pulling {uri} into {sif_path}")
            result = self._run(container_runtime.pull_command(self.runtime, sif_path, uri))
            if result.returncode != 0:
                return self._fail(result.returncode, f"Failed to pull image {uri}")

        if not sif_path.exists():
            return self._fail(MISSING_FILE_CODE, f"Container image not found: {sif_path}")
        return sif_path

    def _run_session(self) -> int:
        config = self.config

        image = self._prepare_image()
        if isinstance(image, int):
            return image

        env_path = os.path.expanduser(config.env_path) if config.env_path else None
        if env_path and not Path(env_path).is_dir():
            return self._fail(MISSING_FILE_CODE, f"Conda environment not found: {env_path}")

        binds = list(config.binds)
        if config.app is SessionApp.RSTUDIO:
            if not env_path:
                return self._fail(MISSING_FILE_CODE, "RStudio Server needs a conda environment")
            binds.extend(container_runtime.prepare_rstudio(config.session_dir, env_path))

        session_home = config.session_dir / "home"
        if config.isolation is IsolationLevel.FULL:
            session_home.mkdir(parents=True, exist_ok=True)

        try:
            port = find_free_port(
                config.port_start, end=config.port_end, is_listening=self.is_listening
            )
        except PortAllocationError as e:
            return self._fail(1, str(e))
        self.writer.append(StatusKey.REMOTE_IP, self.host_ip)
        self.writer.append(StatusKey.REMOTE_PORT, port)

        token = self.token_factory()
        argv = container_runtime.exec_command(
            self.runtime,
            image,
            config.isolation,
            session_home,
            binds,
            container_runtime.session_environment(config.app, env_path, self.user, token),
            container_runtime.server_command(
                config.app, self.host_ip, port, token, env_path, self.user
            ),
        )
        logger.info(f"Starting {config.app.value} server on {self.host_ip}:{port}")
        self.process = self._popen(argv)

        for check in range(1, self.LIVENESS_CHECKS + 1):
            self.sleep(self.LIVENESS_INTERVAL)
            if self.process.poll() is not None:
                logger.error(
                    f"Server exited with code {self.process.returncode} "
                    f"before liveness check {check}/{self.LIVENESS_CHECKS}"
                )
                self.writer.report(SessionStatus.DEAD)
                return 1

        self.writer.report(SessionStatus.GOOD, token=token)
        logger.info("Session is up")
        return self.process.wait()


__all__ = ["AgentConfig", "RemoteAgent"]
