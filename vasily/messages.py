"""Messages exchanged between the privileged helper and its client.

Each message is a type byte, an argument count byte and that many
arguments, each an 8-bit length followed by that many bytes.
"""

from __future__ import annotations

import abc
import enum
import ipaddress
from dataclasses import dataclass, field
from typing import BinaryIO, Callable, Union

from .backend import Address, IPVersion, Packet, PacketType

MAX_MESSAGE_LEN = 2 + 255 * (1 + 255)
_MAX_U8 = 255


class MessageError(ValueError):
    """A message is malformed or cannot be encoded."""


class MessageType(enum.IntEnum):
    """Wire type of a message."""

    SHUTDOWN = 0
    PRIVILEGE_DROP = 1
    OPEN_CONNECTION = 2
    OPEN_CONNECTION_REPLY = 3
    CLOSE_CONNECTION = 4
    CLOSE_CONNECTION_REPLY = 5
    SEND_PING = 6
    PING_REPLY = 7


def _encode_int(n: int) -> bytes:
    return (n & 0xFFFFFFFF).to_bytes(4, "big")


def _ip_bytes(addr: object) -> bytes:
    if addr is None:
        return b""
    return ipaddress.ip_address(addr).packed


def _packet_type(value: int) -> Union[PacketType, int]:
    try:
        return PacketType(value)
    except ValueError:
        return value


def encode_packet(pkt: Packet) -> bytes:
    """Encode a packet, silently truncating a payload longer than 255 bytes."""
    payload = bytes(pkt.payload)[:_MAX_U8]
    return (
        bytes([int(pkt.type) & 0xFF])
        + (pkt.seq & 0xFFFF).to_bytes(2, "big")
        + bytes([len(payload)])
        + payload
    )


def decode_packet(data: bytes) -> Packet:
    """Decode a packet encoded by :func:`encode_packet`."""
    if len(data) < 1:
        raise MessageError("error reading packet type")
    if len(data) < 3:
        raise MessageError("error reading sequence number")
    if len(data) < 4:
        raise MessageError("error reading payload len")
    payload_len = data[3]
    payload = data[4 : 4 + payload_len]
    if payload_len and not payload:
        raise MessageError("error reading payload")
    if len(payload) != payload_len:
        raise MessageError(f"short payload: {len(payload)} bytes (want {payload_len})")
    extra = len(data) - 4 - payload_len
    if extra:
        raise MessageError(f"unused {extra} extra bytes at end of payload")
    return Packet(
        type=_packet_type(data[0]),
        seq=int.from_bytes(data[1:3], "big"),
        payload=bytes(payload),
    )


class Message(abc.ABC):
    """A protocol message."""

    @abc.abstractmethod
    def _to_raw(self) -> "RawMessage":
        """Return the raw form of this message."""

    def encode(self) -> bytes:
        """Return the wire encoding of this message."""
        return self._to_raw().encode()

    def write_to(self, stream: BinaryIO) -> int:
        """Write the message to ``stream`` and return the number of bytes written."""
        data = self.encode()
        stream.write(data)
        return len(data)


@dataclass(frozen=True)
class RawMessage(Message):
    """A message as a type and a list of raw arguments."""

    type: Union[MessageType, int] = 0
    args: tuple[bytes, ...] = field(default=())

    def __post_init__(self) -> None:
        if not 0 <= int(self.type) <= _MAX_U8:
            raise MessageError(f"invalid message type: {self.type}")
        try:
            object.__setattr__(self, "type", MessageType(self.type))
        except ValueError:
            object.__setattr__(self, "type", int(self.type))
        object.__setattr__(self, "args", tuple(bytes(a) for a in self.args))

    def _to_raw(self) -> "RawMessage":
        return self

    def encode(self) -> bytes:
        """Return the wire encoding of this message."""
        if len(self.args) > _MAX_U8:
            raise MessageError(f"too many args: {len(self.args)}")
        out = bytearray([int(self.type), len(self.args)])
        for arg in self.args:
            if len(arg) > _MAX_U8:
                raise MessageError(f"arg too long ({len(arg)}): {arg!r}")
            out.append(len(arg))
            out += arg
        return bytes(out)

    def _check_nargs(self, want: int) -> None:
        if len(self.args) != want:
            raise MessageError(f"unexpected argument count: {len(self.args)} (want {want})")

    def _arg(self, i: int) -> bytes:
        if len(self.args) <= i:
            raise MessageError(f"arg {i} not found")
        return self.args[i]

    def _arg_len(self, i: int, want: int) -> bytes:
        arg = self._arg(i)
        if len(arg) != want:
            raise MessageError(f"arg {i} is {len(arg)} bytes (want {want})")
        return arg

    def _arg_int(self, i: int) -> int:
        return int.from_bytes(self._arg_len(i, 4), "big")

    def _arg_str(self, i: int) -> str:
        return self._arg(i).decode("utf-8", "surrogateescape")

    def _arg_ip_version(self, i: int) -> IPVersion:
        value = self._arg_len(i, 1)[0]
        try:
            return IPVersion(value)
        except ValueError:
            raise MessageError(f"invalid IP version: {value}") from None

    def _arg_ip(self, i: int) -> Address:
        arg = self._arg(i)
        if len(arg) not in (4, 16):
            raise MessageError(f"wrong IP length: {len(arg)}")
        return ipaddress.ip_address(arg)

    def _arg_packet(self, i: int) -> Packet:
        return decode_packet(self._arg(i))


@dataclass(frozen=True)
class Shutdown(Message):
    """Tells the server to exit."""

    def _to_raw(self) -> RawMessage:
        return RawMessage(MessageType.SHUTDOWN)

    @classmethod
    def _from_raw(cls, raw: RawMessage) -> "Shutdown":
        raw._check_nargs(0)
        return cls()


@dataclass(frozen=True)
class PrivilegeDrop(Message):
    """Tells the server to give up its privileges for good."""

    def _to_raw(self) -> RawMessage:
        return RawMessage(MessageType.PRIVILEGE_DROP)

    @classmethod
    def _from_raw(cls, raw: RawMessage) -> "PrivilegeDrop":
        raw._check_nargs(0)
        return cls()


@dataclass(frozen=True)
class OpenConnection(Message):
    """Asks the server to open a connection with a backend."""

    backend: str
    ip_version: IPVersion

    def _to_raw(self) -> RawMessage:
        return RawMessage(
            MessageType.OPEN_CONNECTION,
            (
                self.backend.encode("utf-8", "surrogateescape"),
                bytes([int(self.ip_version)]),
            ),
        )

    @classmethod
    def _from_raw(cls, raw: RawMessage) -> "OpenConnection":
        return cls(backend=raw._arg_str(0), ip_version=raw._arg_ip_version(1))


@dataclass(frozen=True)
class OpenConnectionReply(Message):
    """Reports the identifier of a newly opened connection."""

    id: int

    def _to_raw(self) -> RawMessage:
        return RawMessage(MessageType.OPEN_CONNECTION_REPLY, (_encode_int(self.id),))

    @classmethod
    def _from_raw(cls, raw: RawMessage) -> "OpenConnectionReply":
        raw._check_nargs(1)
        return cls(id=raw._arg_int(0))


@dataclass(frozen=True)
class CloseConnection(Message):
    """Asks the server to close a connection."""

    id: int

    def _to_raw(self) -> RawMessage:
        return RawMessage(MessageType.CLOSE_CONNECTION, (_encode_int(self.id),))

    @classmethod
    def _from_raw(cls, raw: RawMessage) -> "CloseConnection":
        raw._check_nargs(1)
        return cls(id=raw._arg_int(0))


@dataclass(frozen=True)
class CloseConnectionReply(Message):
    """Confirms that a connection was closed."""

    id: int

    def _to_raw(self) -> RawMessage:
        return RawMessage(MessageType.CLOSE_CONNECTION_REPLY, (_encode_int(self.id),))

    @classmethod
    def _from_raw(cls, raw: RawMessage) -> "CloseConnectionReply":
        return cls(id=raw._arg_int(0))


@dataclass(frozen=True)
class SendPing(Message):
    """Asks the server to send a ping; a TTL of zero means the default."""

    id: int
    packet: Packet
    addr: Address
    ttl: int = 0

    def _to_raw(self) -> RawMessage:
        return RawMessage(
            MessageType.SEND_PING,
            (
                _encode_int(self.id),
                encode_packet(self.packet),
                _ip_bytes(self.addr),
                _encode_int(self.ttl),
            ),
        )

    @classmethod
    def _from_raw(cls, raw: RawMessage) -> "SendPing":
        raw._check_nargs(4)
        return cls(
            id=raw._arg_int(0),
            packet=raw._arg_packet(1),
            addr=raw._arg_ip(2),
            ttl=raw._arg_int(3),
        )


@dataclass(frozen=True)
class PingReply(Message):
    """Carries a reply received on a connection."""

    id: int
    packet: Packet
    peer: Address

    def _to_raw(self) -> RawMessage:
        return RawMessage(
            MessageType.PING_REPLY,
            (_encode_int(self.id), encode_packet(self.packet), _ip_bytes(self.peer)),
        )

    @classmethod
    def _from_raw(cls, raw: RawMessage) -> "PingReply":
        raw._check_nargs(3)
        return cls(id=raw._arg_int(0), packet=raw._arg_packet(1), peer=raw._arg_ip(2))


_DECODERS: dict[int, Callable[[RawMessage], Message]] = {
    MessageType.SHUTDOWN: Shutdown._from_raw,
    MessageType.PRIVILEGE_DROP: PrivilegeDrop._from_raw,
    MessageType.OPEN_CONNECTION: OpenConnection._from_raw,
    MessageType.OPEN_CONNECTION_REPLY: OpenConnectionReply._from_raw,
    MessageType.CLOSE_CONNECTION: CloseConnection._from_raw,
    MessageType.CLOSE_CONNECTION_REPLY: CloseConnectionReply._from_raw,
    MessageType.SEND_PING: SendPing._from_raw,
    MessageType.PING_REPLY: PingReply._from_raw,
}


def _read_exact(stream: BinaryIO, n: int) -> bytes:
    data = bytearray()
    while len(data) < n:
        chunk = stream.read(n - len(data))
        if not chunk:
            raise EOFError("unexpected end of message stream")
        data += chunk
    return bytes(data)


def read_raw_message(stream: BinaryIO) -> RawMessage:
    """Read one message without interpreting its arguments.

    Raises EOFError when the stream ends before the message is complete.
    """
    msg_type, nargs = _read_exact(stream, 2)
    args = []
    for _ in range(nargs):
        (length,) = _read_exact(stream, 1)
        args.append(_read_exact(stream, length))
    return RawMessage(msg_type, tuple(args))


def read_message(stream: BinaryIO) -> Message:
    """Read and decode one message; unknown types come back as RawMessage."""
    raw = read_raw_message(stream)
    decoder = _DECODERS.get(raw.type)
    return decoder(raw) if decoder else raw