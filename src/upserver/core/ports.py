"""Port allocation for customer preview servers."""

import logging
import socket
from collections.abc import Iterable

from upserver.core.errors import NoFreePorts, PortConfigError, PortInUse

logger = logging.getLogger(__name__)

PROBE_TIMEOUT = 0.5


def validate_port_settings(
    range_start: int,
    range_end: int,
    fixed_port: int | None = None,
) -> None:
    """Check that the range is sane and a fixed port (if any) lies inside it."""
    if not (1 <= range_start <= 65535 and 1 <= range_end <= 65535):
        raise PortConfigError(f"Port range {range_start}-{range_end} is outside 1-65535")
    if range_start > range_end:
        raise PortConfigError(f"Port range start {range_start} is greater than end {range_end}")
    if fixed_port is not None and not range_start <= fixed_port <= range_end:
        raise PortConfigError(
            f"Staging port {fixed_port} is outside the configured range {range_start}-{range_end}"
        )


def is_port_listening(port: int, host: str = "127.0.0.1", timeout: float = PROBE_TIMEOUT) -> bool:
    """TCP connect probe: True if something accepts connections on the port."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.settimeout(timeout)
        try:
            return s.connect_ex((host, port)) == 0
        except OSError:
            return False


def is_port_bindable(port: int, host: str = "127.0.0.1") -> bool:
    """True if we could bind the port right now."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        try:
            s.bind((host, port))
            return True
        except OSError:
            return False


def find_free_port(start: int, end: int, host: str = "127.0.0.1") -> int | None:
    """First bindable port in [start, end], or None."""
    for port in range(start, end + 1):
        if is_port_bindable(port, host):
            return port
    return None


class PortAllocator:
    """Maps a customer to a TCP port: its fixed port, or the next free one in range."""

    def __init__(self, range_start: int, range_end: int, host: str = "127.0.0.1"):
        validate_port_settings(range_start, range_end)
        self.range_start = range_start
        self.range_end = range_end
        self.host = host

    def allocate(
        self,
        customer_id: str,
        fixed_port: int | None = None,
        reserved: Iterable[int] = (),
    ) -> int:
        """Pick a port for the customer.

        A fixed port is never substituted: the public staging hostname is
        routed to exactly that port, so a listener on it is a hard failure.
        """
        if fixed_port is not None:
            if is_port_listening(fixed_port, self.host):
                raise PortInUse(fixed_port)
            logger.debug("Using fixed port %d for customer %s", fixed_port, customer_id)
            return fixed_port

        taken = set(reserved)
        for port in range(self.range_start, self.range_end + 1):
            if port in taken:
                continue
            if is_port_bindable(port, self.host):
                logger.debug("Allocated port %d for customer %s", port, customer_id)
                return port

        raise NoFreePorts(self.range_start, self.range_end)
