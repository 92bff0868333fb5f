"""Data models for the VPN tunnel manager."""

import ipaddress
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, Optional, Tuple

from .errors import TargetError


logger = logging.getLogger(__name__)


class SessionState(Enum):
    """Lifecycle state of a session controller."""

    IDLE = "idle"
    DEPLOYING = "deploying"
    CONNECTED = "connected"
    FAILED = "failed"
    DISCONNECTED = "disconnected"


@dataclass(frozen=True)
class SSHTarget:
    """Remote machine that fronts the target network."""

    host: str
    port: int = 22
    username: str = ""
    password: Optional[str] = field(default=None, repr=False)
    key_path: Optional[str] = None

    def __post_init__(self):
        """Validate the SSH target data."""
        if not self.host:
            raise ValueError("SSH host is required")
        if not self.username:
            raise ValueError("SSH username is required")
        if self.port < 1 or self.port > 65535:
            raise ValueError("Invalid SSH port")
        if not self.password and not self.key_path:
            raise ValueError("No SSH authentication method provided")

    @property
    def address(self) -> str:
        return f"{self.host}:{self.port}"


@dataclass(frozen=True)
class TargetAddressSet:
    """IP addresses to be reached through the tunnel."""

    addresses: Tuple[str, ...]
    pool_name: Optional[str] = None

    def __post_init__(self):
        """Validate the address set."""
        if not self.addresses:
            if self.pool_name:
                raise TargetError(f"Address pool '{self.pool_name}' has no addresses")
            raise TargetError("Target address set cannot be empty")
        for address in self.addresses:
            try:
                ipaddress.ip_address(address)
            except ValueError as e:
                raise TargetError(f"Invalid IP address: {address}") from e

    @classmethod
    def from_address(cls, address: str) -> "TargetAddressSet":
        """Build a set holding a single address."""
        address = (address or "").strip()
        if not address:
            raise TargetError("IP address cannot be empty")
        return cls(addresses=(address,))

    @classmethod
    def from_pool(cls, pool_name: str, members: Iterable[str]) -> "TargetAddressSet":
        """
        Build a set from the members of a named pool.

        Unparseable members are skipped with a warning; a pool with no valid
        member is a target error.
        """
        members = list(members or [])
        if not members:
            raise TargetError(f"Address pool '{pool_name}' has no addresses")

        valid = []
        for member in members:
            member = member.strip()
            try:
                ipaddress.ip_address(member)
            except ValueError:
                logger.warning(f"Skipping invalid address {member!r} in pool '{pool_name}'")
                continue
            valid.append(member)

        if not valid:
            raise TargetError(f"Failed to parse any valid address from pool '{pool_name}'")

        return cls(addresses=tuple(valid), pool_name=pool_name)

    def describe(self) -> str:
        if self.pool_name:
            return f"pool '{self.pool_name}' ({len(self.addresses)} addresses)"
        return self.addresses[0]


@dataclass(frozen=True)
class TunnelNetwork:
    """Point-to-point network of one session."""

    subnet: ipaddress.IPv4Network
    server_address: ipaddress.IPv4Address
    client_address: ipaddress.IPv4Address


@dataclass(frozen=True)
class KeyPair:
    """WireGuard keypair, base64 encoded. Held in memory only."""

    private_key: str = field(repr=False)
    public_key: str


@dataclass(frozen=True)
class DeploymentConfig:
    """Where and as whom the tunnel server is deployed."""

    target: SSHTarget
    remote_work_dir: str


@dataclass(frozen=True)
class ServerConfig:
    """Parameters of the remote tunnel endpoint."""

    keys: KeyPair
    listen_port: int
    network: TunnelNetwork
    target_addresses: Tuple[str, ...]
    interface_name: str
    heartbeat_timeout: int = 12

    def to_dict(self) -> dict:
        """Serializable form handed to the remote tunnel server."""
        return {
            'private_key': self.keys.private_key,
            'public_key': self.keys.public_key,
            'listen_port': self.listen_port,
            'interface': self.interface_name,
            'server_address': str(self.network.server_address),
            'network': str(self.network.subnet),
            'target_addresses': list(self.target_addresses),
            'heartbeat_timeout': self.heartbeat_timeout,
        }


@dataclass(frozen=True)
class ClientConfig:
    """Parameters of the local tunnel endpoint."""

    keys: KeyPair
    server_public_key: str
    server_endpoint: str
    network: TunnelNetwork
    target_addresses: Tuple[str, ...]
    interface_name: str
    persistent_keepalive: int = 25

    @property
    def allowed_ips(self) -> Tuple[str, ...]:
        """Gateway plus every target as single-host routes."""
        routes = [f"{self.network.server_address}/32"]
        for address in self.target_addresses:
            host_bits = ipaddress.ip_address(address).max_prefixlen
            routes.append(f"{address}/{host_bits}")
        return tuple(routes)
