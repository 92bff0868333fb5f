"""Network and port allocation for concurrent tunnel sessions."""

import ipaddress
import logging
import threading
from typing import Callable, Set

from .config import Config
from .errors import ResourceExhaustedError
from .models import TunnelNetwork


logger = logging.getLogger(__name__)

BLOCK_PREFIX = 30


def max_session_identity(base: str = None) -> int:  # type: ignore
    """Highest identity the base network can hold."""
    network = ipaddress.ip_network(base or Config.NETWORK_BASE)
    return network.num_addresses // 4 - 1


def allocate_network(identity: int, base: str = None) -> TunnelNetwork:  # type: ignore
    """
    Derive the point-to-point network of a session.

    Block N of the base network is the /30 starting at base + 4 * N; its
    two usable hosts become the server and client addresses. Block 0 is
    never handed out.
    """
    network = ipaddress.ip_network(base or Config.NETWORK_BASE)
    if network.version != 4:
        raise ValueError("Tunnel base network must be IPv4")

    highest = max_session_identity(str(network))
    if identity < 1 or identity > highest:
        raise ValueError(f"Session identity must be between 1 and {highest}")

    start = network.network_address + 4 * identity
    subnet = ipaddress.ip_network(f"{start}/{BLOCK_PREFIX}")
    server_address, client_address = subnet.hosts()

    return TunnelNetwork(
        subnet=subnet,
        server_address=server_address,
        client_address=client_address
    )


def server_interface_name(port: int) -> str:
    """Name of the remote WireGuard interface serving a port."""
    return f"wgs{port}"


def client_interface_name(port: int) -> str:
    """Name of the local WireGuard interface (wg-quick uses the file stem)."""
    return f"wgc{port}"


class PortAllocator:
    """
    Hands out listen ports within [low, high].

    A port stays claimed until released, so two live sessions of one
    controller never share a port even before the remote bind happens.
    """

    def __init__(self, low: int = None, high: int = None):  # type: ignore
        """Initialize the allocator with an inclusive range."""
        self.low = Config.PORT_RANGE_LOW if low is None else low
        self.high = Config.PORT_RANGE_HIGH if high is None else high
        if self.low < 1 or self.high > 65535 or self.low > self.high:
            raise ValueError(f"Invalid port range {self.low}-{self.high}")

        self.claimed: Set[int] = set()
        self.lock = threading.Lock()

    def allocate(self, is_in_use: Callable[[int], bool]) -> int:
        """
        Claim the first port that is neither claimed nor in use.

        Args:
            is_in_use: probe telling whether the remote host already binds a port

        Returns:
            The claimed port
        """
        with self.lock:
            for port in range(self.low, self.high + 1):
                if port in self.claimed:
                    continue
                if is_in_use(port):
                    logger.debug(f"Port {port} is in use on remote host")
                    continue
                self.claimed.add(port)
                logger.info(f"Claimed port {port}")
                return port

        raise ResourceExhaustedError(
            f"no available ports in range {self.low}-{self.high}"
        )

    def release(self, port: int):
        """Return a port to the pool."""
        with self.lock:
            self.claimed.discard(port)

    def identity_for(self, port: int) -> int:
        """Session identity derived from a claimed port (1-based)."""
        if port < self.low or port > self.high:
            raise ValueError(f"Port {port} is outside {self.low}-{self.high}")
        return port - self.low + 1
