"""Error taxonomy for session launches.

Every failure surfaced to the user is an HpcSessionError carrying the exit
code the CLI should terminate with. Modules raise the specific subclass;
only the CLI catches and reports them.

Exit codes:
    0: success or handoff to an existing session
    1: generic failure (validation, submission, dead session, contention)
    2: no usable account (distinguishes "fix entitlement" from "fix invocation")
    N: propagated exit code of a remote process that reported FAIL
"""


class HpcSessionError(Exception):
    """Base class for all session launch failures."""

    exit_code = 1


class ValidationError(HpcSessionError):
    """Raised when a session request is invalid. Nothing is submitted."""

    def __init__(self, field: str, message: str):
        self.field = field
        super().__init__(f"Invalid {field}: {message}")


class ConfigError(HpcSessionError):
    """Raised when the configuration file cannot be read or applied."""

    pass


class NoEntitlementError(HpcSessionError):
    """Raised when no scheduler account is available to charge."""

    exit_code = 2


class SubmissionError(HpcSessionError):
    """Raised when the scheduler rejects a job or returns no job id."""

    pass


class ServerSilentError(HpcSessionError):
    """Raised when the job started but never reported a status."""

    pass


class ContentionExhaustedError(HpcSessionError):
    """Raised when every attempt landed on a node held by another session."""

    def __init__(self, owner: str | None, hostname: str | None, attempts: int):
        self.owner = owner
        self.hostname = hostname
        self.attempts = attempts
        super().__init__(
            f"Node still busy after {attempts} attempts: session owned by "
            f"{owner or 'unknown'} on {hostname or 'unknown host'}"
        )


class DeadSessionError(HpcSessionError):
    """Raised when the server exited before its first liveness confirmation."""

    pass


class RemoteFailure(HpcSessionError):
    """Raised when the remote job reported FAIL with an exit code."""

    def __init__(self, code: int):
        self.code = code
        # 0 would read as success to the caller's shell
        self.exit_code = code if code > 0 else 1
        super().__init__(f"Remote session failed with exit code {code}")


class TunnelError(HpcSessionError):
    """Raised when the local forward cannot be established."""

    pass


class PortAllocationError(HpcSessionError):
    """Raised when no free port exists in the probed range."""

    pass


class ClusterShellError(HpcSessionError):
    """Raised when a command on the cluster login boundary cannot be run."""

    pass


class StatusRecordError(HpcSessionError):
    """Raised when a status record is malformed."""

    pass


class ReconnectRecordError(HpcSessionError):
    """Raised when a reconnect record is malformed."""

    pass


__all__ = [
    "ClusterShellError",
    "ConfigError",
    "ContentionExhaustedError",
    "DeadSessionError",
    "HpcSessionError",
    "NoEntitlementError",
    "PortAllocationError",
    "ReconnectRecordError",
    "RemoteFailure",
    "ServerSilentError",
    "StatusRecordError",
    "SubmissionError",
    "TunnelError",
    "ValidationError",
]
