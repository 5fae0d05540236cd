"""Submission and polling controller.

Drives one session launch from submission to a resolved status record:

    BUILT -> SUBMITTED -> AWAITING_START -> AWAITING_STATUS
          -> RESOLVED | CONTENDED | DEAD | FAILED

The remote job cannot be reached directly, so the controller learns its
outcome by polling the status file the job writes on shared storage. The
wait has two phases:

- AWAITING_START: wait, without bound, for the file to exist and be
  non-empty. This is queueing time and the scheduler enforces its limits.
- AWAITING_STATUS: the job is running; poll a bounded number of times for
  a Status line. Silence past the bound is fatal.

BUSY (another session holds the node) is the only outcome that is retried:
the status file is cleared and the same descriptor is resubmitted, up to
max_attempts submissions in total.

Submission, the status source and sleep are injected so the state machine
can be driven deterministically in tests.
"""

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from pathlib import PurePosixPath
from typing import Protocol

from hpcsession.errors import (
    ContentionExhaustedError,
    DeadSessionError,
    RemoteFailure,
    ServerSilentError,
)
from hpcsession.models import JobDescriptor
from hpcsession.modules.cluster_shell import ClusterShell
from hpcsession.modules.status_channel import SessionStatus, StatusRecord, parse_status_record

logger = logging.getLogger(__name__)


class ControllerState(Enum):
    BUILT = "built"
    SUBMITTED = "submitted"
    AWAITING_START = "awaiting_start"
    AWAITING_STATUS = "awaiting_status"
    RESOLVED = "resolved"
    CONTENDED = "contended"
    DEAD = "dead"
    FAILED = "failed"


class StatusSource(Protocol):
    """Where the controller reads the job's status record from."""

    def read(self) -> str | None:
        """Return the record's text, or None if the file does not exist."""
        ...

    def clear(self) -> None:
        """Delete the record; a missing record is not an error."""
        ...


class ClusterStatusSource:
    """Status file on the cluster's shared storage."""

    def __init__(self, shell: ClusterShell, path: PurePosixPath):
        self.shell = shell
        self.path = path

    def read(self) -> str | None:
        return self.shell.read_file(self.path)

    def clear(self) -> None:
        self.shell.remove_file(self.path)


@dataclass(frozen=True)
class SessionOutcome:
    """A resolved session: where the server listens and how to log in."""

    job_id: str
    remote_ip: str
    remote_port: int
    token: str
    attempts: int


class SubmissionController:
    """State machine for submit, wait-for-start, wait-for-status, retry."""

    DEFAULT_POLL_INTERVAL = 30
    DEFAULT_STATUS_INTERVAL = 5
    DEFAULT_STATUS_ATTEMPTS = 5
    DEFAULT_MAX_ATTEMPTS = 3

    def __init__(
        self,
        submit: Callable[[JobDescriptor], str],
        status_source: StatusSource,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        status_interval: float = DEFAULT_STATUS_INTERVAL,
        status_attempts: int = DEFAULT_STATUS_ATTEMPTS,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        sleep: Callable[[float], None] = time.sleep,
        on_transition: Callable[[ControllerState, str], None] | None = None,
    ):
        """Initialize controller.

        Args:
            submit: Submits a descriptor, returns the job id (raises SubmissionError)
            status_source: Reads and clears the job's status record
            poll_interval: Seconds between checks while the job is queued
            status_interval: Seconds between checks once the job has started
            status_attempts: Checks for a Status line before giving up
            max_attempts: Total submissions allowed when the node is busy
            sleep: Sleep function (injected for tests)
            on_transition: Called with each new state and a short message
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if status_attempts < 0:
            raise ValueError("status_attempts cannot be negative")

        self.submit = submit
        self.status_source = status_source
        self.poll_interval = poll_interval
        self.status_interval = status_interval
        self.status_attempts = status_attempts
        self.max_attempts = max_attempts
        self.sleep = sleep
        self.on_transition = on_transition
        self.state = ControllerState.BUILT
        self.history: list[ControllerState] = []
        self.job_ids: list[str] = []

    def _transition(self, state: ControllerState, message: str = "") -> None:
        self.state = state
        self.history.append(state)
        logger.debug(f"Controller state -> {state.value}: {message}")
        if self.on_transition:
            self.on_transition(state, message)

    def run(self, descriptor: JobDescriptor) -> SessionOutcome:
        """Submit the descriptor and drive it to a resolved session.

        Returns:
            SessionOutcome of the first GOOD status

        Raises:
            SubmissionError: If the scheduler rejects the job
            ServerSilentError: If the job started but never reported a status
            ContentionExhaustedError: If every attempt reported BUSY
            DeadSessionError: If the server died before confirming liveness
            RemoteFailure: If the job reported FAIL
        """
        busy_record: StatusRecord | None = None

        for attempt in range(1, self.max_attempts + 1):
            self._transition(ControllerState.BUILT, f"attempt {attempt}/{self.max_attempts}")
            if attempt == 1:
                # A record left by an earlier run would read as this job's outcome
                self.status_source.clear()

            job_id = self.submit(descriptor)
            self.job_ids.append(job_id)
            self._transition(ControllerState.SUBMITTED, f"job {job_id}")

            self._transition(ControllerState.AWAITING_START, f"job {job_id} queued")
            text = self._wait_for_start()

            self._transition(ControllerState.AWAITING_STATUS, f"job {job_id} started")
            record = self._wait_for_status(text)

            if record.status is SessionStatus.GOOD:
                # The status parser rejects GOOD without these
                assert record.remote_ip is not None and record.remote_port is not None
                assert record.token is not None
                outcome = SessionOutcome(
                    job_id=job_id,
                    remote_ip=record.remote_ip,
                    remote_port=record.remote_port,
                    token=record.token,
                    attempts=attempt,
                )
                self._transition(
                    ControllerState.RESOLVED, f"{outcome.remote_ip}:{outcome.remote_port}"
                )
                return outcome

            if record.status is SessionStatus.BUSY:
                busy_record = record
                self._transition(
                    ControllerState.CONTENDED, f"{record.hostname} in use by {record.owner}"
                )
                self.status_source.clear()
                if attempt < self.max_attempts:
                    logger.warning(
                        f"Node {record.hostname} is busy with a session owned by "
                        f"{record.owner}, resubmitting (attempt {attempt + 1}/{self.max_attempts})"
                    )
                continue

            if record.status is SessionStatus.DEAD:
                self._transition(ControllerState.DEAD, f"job {job_id}")
                raise DeadSessionError(
                    f"Session in job {job_id} exited before it confirmed it was alive. "
                    f"Check the job log for the server's error output."
                )

            code = record.code if record.code is not None else 1
            self._transition(ControllerState.FAILED, f"exit code {code}")
            raise RemoteFailure(code)

        assert busy_record is not None
        logger.error(f"Giving up after {self.max_attempts} busy nodes")
        raise ContentionExhaustedError(busy_record.owner, busy_record.hostname, self.max_attempts)

    def _wait_for_start(self) -> str:
        """Poll until the status file exists and is non-empty. No upper bound."""
        while True:
            text = self.status_source.read()
            if text:
                return text
            logger.debug(f"Job not started yet, checking again in {self.poll_interval}s")
            self.sleep(self.poll_interval)

    def _wait_for_status(self, text: str) -> StatusRecord:
        """Poll a bounded number of times for a Status line."""
        record = parse_status_record(text)
        attempts = 0
        while not record.is_terminal:
            if attempts >= self.status_attempts:
                raise ServerSilentError(
                    f"Session started but reported no status after "
                    f"{self.status_attempts} checks ({self.status_attempts * self.status_interval}s)"
                )
            attempts += 1
            self.sleep(self.status_interval)
            record = parse_status_record(self.status_source.read() or "")
        return record


__all__ = [
    "ClusterStatusSource",
    "ControllerState",
    "SessionOutcome",
    "StatusSource",
    "SubmissionController",
]
