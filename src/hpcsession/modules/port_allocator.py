"""Port allocation module.

Finds a free TCP port by probing upward from a base value. Used for the
local end of the SSH tunnel and, inside the batch job, for the server's
listening port on the compute node.

There is no reservation: another process may bind the port between the
probe and its use. Callers allocate immediately before binding.
"""

import logging
import socket
from collections.abc import Callable

from hpcsession.errors import PortAllocationError

logger = logging.getLogger(__name__)

# Upper end of the probe when the caller gives none
DEFAULT_PROBE_SPAN = 1000


def is_port_listening(port: int, host: str = "127.0.0.1", timeout: float = 0.5) -> bool:
    """Check whether some process is listening on host:port (IPv4, TCP).

    Args:
        port: Port number to probe
        host: Address to probe (default: 127.0.0.1)
        timeout: Connect timeout in seconds

    Returns:
        True if a connection was accepted, False otherwise
    """
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.settimeout(timeout)
            sock.connect((host, port))
            return True
    except (TimeoutError, ConnectionRefusedError, OSError):
        return False


def find_free_port(
    base: int,
    end: int | None = None,
    host: str = "127.0.0.1",
    is_listening: Callable[[int], bool] | None = None,
) -> int:
    """Find the first port at or above base with nothing listening on it.

    Args:
        base: First port to probe
        end: Last port to probe, inclusive (default: base + 1000, capped at 65535)
        host: Address to probe when no predicate is given
        is_listening: Predicate reporting whether a port is occupied

    Returns:
        The first free port in [base, end]

    Raises:
        PortAllocationError: If base is invalid or every port is occupied

    Example:
        >>> find_free_port(8890)
        8890
    """
    if base < 1 or base > 65535:
        raise PortAllocationError(f"Invalid base port: {base}. Port must be between 1 and 65535")

    last = min(end if end is not None else base + DEFAULT_PROBE_SPAN, 65535)
    probe = is_listening or (lambda port: is_port_listening(port, host=host))

    for port in range(base, last + 1):
        if probe(port):
            logger.debug(f"Port {port} is occupied")
            continue
        logger.debug(f"Allocated port {port}")
        return port

    raise PortAllocationError(
        f"No free ports in range {base}-{last}. Close existing sessions or tunnels."
    )


__all__ = ["find_free_port", "is_port_listening"]
