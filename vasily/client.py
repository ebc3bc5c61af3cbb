"""Client side of the privileged helper protocol."""

from __future__ import annotations

import ipaddress
import logging
import queue
import threading
from typing import BinaryIO, Optional, Union

from .backend import (
    Address,
    BackendTimeout,
    Conn,
    IPVersion,
    Packet,
    PrivsepClient,
    TTLOption,
)
from .messages import (
    CloseConnection,
    CloseConnectionReply,
    Message,
    OpenConnection,
    OpenConnectionReply,
    PingReply,
    SendPing,
    Shutdown,
    read_message,
)

log = logging.getLogger(__name__)

_READER_JOIN_TIMEOUT = 1.0


def _ip_of(addr: object) -> Address:
    if isinstance(addr, tuple):
        addr = addr[0]
    return ipaddress.ip_address(addr)


class Client(PrivsepClient):
    """Talks to the privileged helper over a pair of byte streams."""

    def __init__(self, infile: BinaryIO, outfile: BinaryIO) -> None:
        self._in = infile
        self._out = outfile
        self._lock = threading.Lock()
        self._open_replies: queue.Queue[Optional[OpenConnectionReply]] = queue.Queue()
        self._connections: dict[int, Connection] = {}
        self._closing = False
        self._reader = threading.Thread(
            target=self._input_demux, name="privsep-client", daemon=True
        )
        self._reader.start()

    def __enter__(self) -> "Client":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def new_conn(self, name: str, ip_version: IPVersion) -> "Connection":
        """Ask the helper to open a connection with the named backend."""
        self._send(OpenConnection(backend=name, ip_version=IPVersion(ip_version)))
        reply = self._open_replies.get()
        if reply is None:
            raise ConnectionError("privsep server closed the connection")
        conn = Connection(self, reply.id, name)
        with self._lock:
            self._connections[reply.id] = conn
        return conn

    def shutdown(self) -> None:
        """Tell the helper to exit."""
        self._send(Shutdown())

    def close(self) -> None:
        """Close both streams to the helper."""
        self._closing = True
        errors: list[Exception] = []
        with self._lock:
            try:
                self._out.close()
            except OSError as err:
                errors.append(err)
        self._reader.join(_READER_JOIN_TIMEOUT)
        try:
            self._in.close()
        except OSError as err:
            errors.append(err)
        if errors:
            raise errors[0]

    def _send(self, msg: Message) -> None:
        with self._lock:
            try:
                msg.write_to(self._out)
                self._out.flush()
            except (OSError, ValueError) as err:
                raise OSError(f"error writing to server: {err}") from err

    def _input_demux(self) -> None:
        try:
            while True:
                try:
                    msg = read_message(self._in)
                except EOFError:
                    return
                except (OSError, ValueError) as err:
                    if not self._closing:
                        log.warning("Error reading from privsep server: %s", err)
                    return
                if isinstance(msg, OpenConnectionReply):
                    self._open_replies.put(msg)
                elif isinstance(msg, CloseConnectionReply):
                    self._handle_close_reply(msg)
                elif isinstance(msg, PingReply):
                    self._handle_ping_reply(msg)
                else:
                    log.warning("Unknown message read from privsep server: %r", msg)
        finally:
            self._open_replies.put(None)
            with self._lock:
                pending = list(self._connections.values())
                self._connections.clear()
            for conn in pending:
                conn._server_gone()

    def _handle_close_reply(self, msg: CloseConnectionReply) -> None:
        with self._lock:
            conn = self._connections.pop(msg.id, None)
        if conn is None:
            log.info("Received close reply to already closed connection: %d", msg.id)
            return
        conn._mark_closed(None)

    def _handle_ping_reply(self, msg: PingReply) -> None:
        with self._lock:
            conn = self._connections.get(msg.id)
        if conn is None:
            log.info("Reply from unknown connection %d", msg.id)
            return
        conn._replies.put(msg)


class Connection(Conn):
    """A ping connection held open by the privileged helper."""

    def __init__(self, client: Client, conn_id: int, backend_name: str) -> None:
        self._client: Optional[Client] = client
        self.id = conn_id
        self.backend = backend_name
        self._replies: queue.Queue[Optional[PingReply]] = queue.Queue()
        self._closed: queue.Queue[Optional[Exception]] = queue.Queue()

    def write_to(self, pkt: Packet, dest: object, *args: object) -> None:
        """Ask the helper to send ``pkt`` to ``dest``."""
        ttl = 0
        for opt in args:
            if isinstance(opt, TTLOption):
                ttl = opt.ttl
            else:
                raise TypeError(f"unhandled write option: {opt!r}")
        client = self._client
        if client is None:
            raise OSError("use of closed network connection")
        client._send(SendPing(id=self.id, packet=pkt, addr=_ip_of(dest), ttl=ttl))

    def read_from(self, timeout: Union[float, None] = None) -> tuple[Packet, Address]:
        """Return the next reply and its sender."""
        try:
            msg = self._replies.get(timeout=timeout)
        except queue.Empty:
            raise BackendTimeout("timeout") from None
        if msg is None:
            self._replies.put(None)
            raise OSError("use of closed network connection")
        return msg.packet, msg.peer

    def close(self) -> None:
        """Ask the helper to close the connection and wait for it to confirm."""
        client = self._client
        if client is None:
            raise OSError("use of closed network connection")
        client._send(CloseConnection(id=self.id))
        result = self._closed.get()
        if result is not None:
            raise result

    def _mark_closed(self, error: Optional[Exception]) -> None:
        self._client = None
        self._replies.put(None)
        self._closed.put(error)

    def _server_gone(self) -> None:
        self._mark_closed(ConnectionError("privsep server closed the connection"))