"""Reconnect store.

Persists what a later invocation needs to reattach to a running session,
so running the tool twice opens a tunnel to the existing server instead of
launching a duplicate job.

The record lives in two places: the local machine and the cluster's home
directory. Invocations from a laptop first pull the cluster copy (a session
may have been started elsewhere); invocations on a cluster node use the
shared copy directly. A record is trusted only while the scheduler still
reports its job as running.

Format (fixed labels, fixed order):
    Remote IP address: 10.95.46.101
    Remote port: 51234
    Local port: 8890
    SSH tunnel: ssh -N -L 8890:10.95.46.101:51234 minerva.hpc.mssm.edu
    URL: http://localhost:8890/?tkn=...
    BJOB ID: 4242
    Remote token: ...
"""

import logging
import os
from collections.abc import Callable
from dataclasses import dataclass, fields

from hpcsession.errors import ClusterShellError, ReconnectRecordError
from hpcsession.models import SessionPaths
from hpcsession.modules.cluster_shell import ClusterShell

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReconnectRecord:
    """Everything needed to reattach to a running session."""

    remote_ip: str
    remote_port: int
    local_port: int
    tunnel_command: str
    url: str
    job_id: str
    token: str


# Field -> label, in file order
LABELS: dict[str, str] = {
    "remote_ip": "Remote IP address",
    "remote_port": "Remote port",
    "local_port": "Local port",
    "tunnel_command": "SSH tunnel",
    "url": "URL",
    "job_id": "BJOB ID",
    "token": "Remote token",
}

INT_FIELDS = {"remote_port", "local_port"}


def format_reconnect_record(record: ReconnectRecord) -> str:
    """Encode a record as labeled lines.

    Raises:
        ReconnectRecordError: If a value would span lines
    """
    lines = []
    for field in fields(ReconnectRecord):
        value = str(getattr(record, field.name))
        if "\n" in value or "\r" in value:
            raise ReconnectRecordError(f"{LABELS[field.name]} contains a newline")
        lines.append(f"{LABELS[field.name]}: {value}")
    return "\n".join(lines) + "\n"


def parse_reconnect_record(text: str) -> ReconnectRecord:
    """Decode labeled lines into a record.

    Raises:
        ReconnectRecordError: On missing, extra, reordered or mistyped fields
    """
    lines = text.split("\n")
    if lines and lines[-1] == "":
        lines.pop()
    if len(lines) != len(LABELS):
        raise ReconnectRecordError(f"Expected {len(LABELS)} fields, found {len(lines)} lines")

    values: dict[str, object] = {}
    for line, (name, label) in zip(lines, LABELS.items(), strict=True):
        prefix = f"{label}: "
        if not line.startswith(prefix):
            raise ReconnectRecordError(f"Expected '{label}' field, found {line!r}")
        value = line[len(prefix) :]
        if name in INT_FIELDS:
            try:
                values[name] = int(value)
            except ValueError as e:
                raise ReconnectRecordError(f"{label} must be an integer, got {value!r}") from e
        else:
            values[name] = value
    return ReconnectRecord(**values)  # type: ignore[arg-type]


class ReconnectStore:
    """Load, save and invalidate the reconnect record of one session."""

    def __init__(
        self,
        paths: SessionPaths,
        shell: ClusterShell,
        is_running: Callable[[str], bool],
    ):
        """Initialize store.

        Args:
            paths: Paths of the session namespace
            shell: Access to the cluster copy of the record
            is_running: Reports whether a scheduler job id is still running
        """
        self.paths = paths
        self.shell = shell
        self.is_running = is_running

    @property
    def local_path(self):
        return self.paths.local_reconnect_file

    def load(self) -> ReconnectRecord | None:
        """Return the record of a still-running session, or None.

        A record whose job is no longer running is deleted.
        """
        if not self.shell.on_cluster:
            self._pull_remote_copy()

        if not self.local_path.exists():
            return None

        try:
            record = parse_reconnect_record(self.local_path.read_text())
        except ReconnectRecordError as e:
            logger.warning(f"Discarding unreadable reconnect record {self.local_path}: {e}")
            self.invalidate()
            return None

        if not self.is_running(record.job_id):
            logger.info(f"Job {record.job_id} is no longer running, removing reconnect record")
            self.invalidate()
            return None

        return record

    def save(self, record: ReconnectRecord) -> None:
        """Write the local copy and, from off-cluster, the cluster copy."""
        text = format_reconnect_record(record)
        self._write_local(text)
        if not self.shell.on_cluster:
            self.shell.write_file(self.paths.remote_reconnect_file, text)
        logger.debug(f"Saved reconnect record for job {record.job_id}")

    def invalidate(self) -> None:
        """Delete every copy of the record."""
        self.local_path.unlink(missing_ok=True)
        if not self.shell.on_cluster:
            try:
                self.shell.remove_file(self.paths.remote_reconnect_file)
            except ClusterShellError as e:
                logger.warning(f"Could not remove cluster copy of reconnect record: {e}")

    def _pull_remote_copy(self) -> None:
        """Copy the cluster's record over the local one. Best effort."""
        try:
            text = self.shell.read_file(self.paths.remote_reconnect_file)
        except ClusterShellError as e:
            logger.warning(f"Could not fetch reconnect record from the cluster: {e}")
            return
        if text is None:
            logger.debug("No reconnect record on the cluster")
            return
        self._write_local(text)

    def _write_local(self, text: str) -> None:
        """Write the local copy atomically with owner-only permissions."""
        path = self.local_path
        path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = path.with_suffix(".tmp")
        try:
            temp_path.write_text(text)
            os.chmod(temp_path, 0o600)
            temp_path.replace(path)
        except OSError:
            temp_path.unlink(missing_ok=True)
            raise


__all__ = [
    "ReconnectRecord",
    "ReconnectStore",
    "format_reconnect_record",
    "parse_reconnect_record",
]
