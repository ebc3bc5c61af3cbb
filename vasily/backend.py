"""Ping connection backends and the registry that creates them."""

from __future__ import annotations

import abc
import enum
import ipaddress
from dataclasses import dataclass
from typing import Callable, Union

Address = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]


class IPVersion(enum.IntEnum):
    """IP protocol version of a connection."""

    IPV4 = 4
    IPV6 = 6

    def __str__(self) -> str:
        return "IPv4" if self is IPVersion.IPV4 else "IPv6"


class PacketType(enum.IntEnum):
    """Kind of ping packet sent or received."""

    REQUEST = 0
    REPLY = 1
    TIME_EXCEEDED = 2
    DESTINATION_UNREACHABLE = 3


@dataclass
class Packet:
    """A ping request or reply."""

    type: Union[PacketType, int] = PacketType.REQUEST
    seq: int = 0
    payload: bytes = b""


@dataclass(frozen=True)
class TTLOption:
    """Write option asking for a specific time to live on the sent packet."""

    ttl: int


class BackendTimeout(TimeoutError):
    """An operation reached its timeout or deadline."""


class Conn(abc.ABC):
    """A ping connection."""

    @abc.abstractmethod
    def write_to(self, pkt: Packet, dest: Address, *args: object) -> None:
        """Send ``pkt`` to ``dest``; ``args`` are write options such as TTLOption."""

    @abc.abstractmethod
    def read_from(self, timeout: float | None = None) -> tuple[Packet, Address]:
        """Return the next reply and its sender; raise BackendTimeout on timeout."""

    @abc.abstractmethod
    def close(self) -> None:
        """Close the connection, unblocking pending reads."""

    def __enter__(self) -> "Conn":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class PortConn(Conn):
    """A connection that maps sequence numbers onto destination ports."""

    @abc.abstractmethod
    def seq_base_port(self) -> int:
        """Return the port used for sequence number zero."""

    @abc.abstractmethod
    def set_seq_base_port(self, port: int) -> None:
        """Set the port used for sequence number zero."""


class PrivsepClient(abc.ABC):
    """Creates connections through the privileged helper process."""

    @abc.abstractmethod
    def new_conn(self, name: str, ip_version: IPVersion) -> Conn:
        """Open a connection with the named backend."""


ConnFactory = Callable[[IPVersion], Conn]

_registry: dict[str, ConnFactory] = {}
_privsep_client: PrivsepClient | None = None


def register(name: str, factory: ConnFactory) -> None:
    """Make a backend available under ``name``."""
    _registry[name] = factory


def use_privsep(client: PrivsepClient | None) -> None:
    """Route new connections through ``client``; ``None`` restores direct creation."""
    global _privsep_client
    _privsep_client = client


def new(name: str, ip_version: IPVersion) -> Conn:
    """Create a connection using the named backend."""
    if _privsep_client is not None:
        return _privsep_client.new_conn(name, ip_version)
    try:
        factory = _registry[name]
    except KeyError:
        raise ValueError(f"invalid backend {name!r}") from None
    return factory(ip_version)


def backend_names() -> list[str]:
    """Return the registered backend names in sorted order."""
    return sorted(_registry)


def parse_backend_name(name: str) -> str:
    """Validate a backend name given on the command line."""
    if name not in _registry:
        raise ValueError(f"invalid backend {name!r}")
    return name