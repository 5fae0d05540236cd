"""Status channel codec.

The batch job reports its outcome by appending ``Key:Value`` lines to a
status file on shared storage; the launcher reads that file over the login
boundary. This module is the serializer/deserializer pair for that record.

Format:
    Status:GOOD
    RemoteIP:10.95.46.101
    RemotePort:51234
    Token:9f2c...

Rules:
- One pair per line, split on the first colon.
- Only the keys in StatusKey are allowed; each at most once.
- A final line without a trailing newline is still being written and is
  ignored until it is terminated.
- Absent keys mean "not yet known" until Status is present. Once Status is
  present, the keys that status requires must be present too.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from hpcsession.errors import StatusRecordError

logger = logging.getLogger(__name__)


class StatusKey(Enum):
    STATUS = "Status"
    REMOTE_IP = "RemoteIP"
    REMOTE_PORT = "RemotePort"
    TOKEN = "Token"
    OWNER = "Owner"
    HOSTNAME = "Hostname"
    CODE = "Code"


class SessionStatus(Enum):
    """Terminal values of the Status key."""

    BUSY = "BUSY"
    DEAD = "DEAD"
    FAIL = "FAIL"
    GOOD = "GOOD"


# Keys that must accompany each terminal status
REQUIRED_KEYS: dict[SessionStatus, tuple[StatusKey, ...]] = {
    SessionStatus.GOOD: (StatusKey.REMOTE_IP, StatusKey.REMOTE_PORT, StatusKey.TOKEN),
    SessionStatus.BUSY: (StatusKey.OWNER, StatusKey.HOSTNAME),
    SessionStatus.FAIL: (StatusKey.CODE,),
    SessionStatus.DEAD: (),
}


@dataclass(frozen=True)
class StatusRecord:
    """Decoded status record. Fields are None until the job writes them."""

    status: SessionStatus | None = None
    remote_ip: str | None = None
    remote_port: int | None = None
    token: str | None = None
    owner: str | None = None
    hostname: str | None = None
    code: int | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status is not None


def format_status_line(key: StatusKey, value: object) -> str:
    """Format one Key:Value line.

    Raises:
        StatusRecordError: If the value contains a newline
    """
    text = str(value)
    if "\n" in text or "\r" in text:
        raise StatusRecordError(f"Status value for {key.value} contains a newline")
    return f"{key.value}:{text}\n"


def parse_status_record(text: str) -> StatusRecord:
    """Decode status file contents.

    Args:
        text: Raw file contents (may be empty)

    Returns:
        StatusRecord with the fields seen so far

    Raises:
        StatusRecordError: On unknown or repeated keys, bad values, or a
            terminal status missing the keys it requires
    """
    lines = text.split("\n")
    # Last element is "" for terminated text, or a fragment still being written
    complete_lines = lines[:-1]
    if lines[-1]:
        logger.debug(f"Ignoring unterminated status line: {lines[-1]!r}")

    values: dict[StatusKey, str] = {}
    for line in complete_lines:
        line = line.strip()
        if not line:
            continue
        if ":" not in line:
            raise StatusRecordError(f"Malformed status line: {line!r}")
        raw_key, raw_value = line.split(":", 1)
        try:
            key = StatusKey(raw_key.strip())
        except ValueError as e:
            raise StatusRecordError(f"Unknown status key: {raw_key!r}") from e
        if key in values:
            raise StatusRecordError(f"Status key {key.value} written more than once")
        values[key] = raw_value.strip()

    status = None
    if StatusKey.STATUS in values:
        try:
            status = SessionStatus(values[StatusKey.STATUS])
        except ValueError as e:
            raise StatusRecordError(f"Unknown status value: {values[StatusKey.STATUS]!r}") from e
        missing = [key.value for key in REQUIRED_KEYS[status] if key not in values]
        if missing:
            raise StatusRecordError(
                f"Status {status.value} is missing required keys: {', '.join(missing)}"
            )

    return StatusRecord(
        status=status,
        remote_ip=values.get(StatusKey.REMOTE_IP),
        remote_port=_parse_int(values, StatusKey.REMOTE_PORT),
        token=values.get(StatusKey.TOKEN),
        owner=values.get(StatusKey.OWNER),
        hostname=values.get(StatusKey.HOSTNAME),
        code=_parse_int(values, StatusKey.CODE),
    )


def _parse_int(values: dict[StatusKey, str], key: StatusKey) -> int | None:
    if key not in values:
        return None
    try:
        return int(values[key])
    except ValueError as e:
        raise StatusRecordError(f"{key.value} must be an integer, got {values[key]!r}") from e


class StatusWriter:
    """Append-only writer used by the batch job on the compute node."""

    def __init__(self, path: Path):
        self.path = path

    def start(self) -> None:
        """Create the status file empty, discarding any previous contents."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text("")

    def append(self, key: StatusKey, value: object) -> None:
        """Append one line. A single write keeps the line whole for readers."""
        line = format_status_line(key, value)
        with self.path.open("a") as f:
            f.write(line)
            f.flush()
        if key is not StatusKey.TOKEN:
            logger.debug(f"Status file {self.path}: {line.strip()}")

    def report(self, status: SessionStatus, **fields: object) -> None:
        """Append the given fields, then the terminal status line last."""
        for name, value in fields.items():
            self.append(StatusKey[name.upper()], value)
        self.append(StatusKey.STATUS, status.value)


__all__ = [
    "SessionStatus",
    "StatusKey",
    "StatusRecord",
    "StatusWriter",
    "format_status_line",
    "parse_status_record",
]
