"""The privileged helper: opens connections and relays pings for its client."""

from __future__ import annotations

import ipaddress
import logging
import sys
import threading
from typing import BinaryIO, Callable

from . import backend
from .backend import Address, Conn, TTLOption
from .messages import (
    CloseConnection,
    CloseConnectionReply,
    Message,
    MessageError,
    OpenConnection,
    OpenConnectionReply,
    PingReply,
    PrivilegeDrop,
    SendPing,
    Shutdown,
    read_message,
)
from .privsep import drop_privileges

log = logging.getLogger(__name__)


def _ip_of(addr: object) -> Address:
    if isinstance(addr, tuple):
        addr = addr[0]
    return ipaddress.ip_address(addr)


class Server:
    """Handles messages from the unprivileged client and writes replies."""

    def __init__(
        self,
        infile: BinaryIO,
        outfile: BinaryIO,
        exit_func: Callable[[int], object] = sys.exit,
    ) -> None:
        self._in = infile
        self._out = outfile
        self._exit = exit_func
        self.connections: dict[int, Conn] = {}
        self._next_id = 0
        self._conn_lock = threading.Lock()
        self._write_lock = threading.Lock()

    def run(self) -> None:
        """Handle messages until the input ends; malformed input raises."""
        while True:
            try:
                msg = read_message(self._in)
            except EOFError:
                return
            self.handle_message(msg)

    def handle_message(self, msg: Message) -> None:
        """Carry out one request from the client."""
        if isinstance(msg, Shutdown):
            self._exit(0)
        elif isinstance(msg, PrivilegeDrop):
            drop_privileges()
        elif isinstance(msg, OpenConnection):
            self._open_connection(msg)
        elif isinstance(msg, CloseConnection):
            self._close_connection(msg)
        elif isinstance(msg, SendPing):
            self._send_ping(msg)
        else:
            raise MessageError(f"Unexpected message: {msg!r}")

    def close(self) -> None:
        """Close every connection and both streams."""
        with self._conn_lock:
            conns = list(self.connections.values())
            self.connections.clear()
        errors: list[Exception] = []
        for conn in conns:
            try:
                conn.close()
            except Exception as err:  # noqa: BLE001 - collected and re-raised below
                errors.append(err)
        for stream in (self._in, self._out):
            try:
                stream.close()
            except OSError as err:
                errors.append(err)
        if errors:
            raise errors[0]

    def _conn_for(self, conn_id: int) -> Conn:
        with self._conn_lock:
            conn = self.connections.get(conn_id)
        if conn is None:
            raise KeyError(f"No connection for {conn_id}")
        return conn

    def _write(self, msg: Message) -> None:
        with self._write_lock:
            msg.write_to(self._out)
            self._out.flush()

    def _open_connection(self, msg: OpenConnection) -> None:
        conn = backend.new(msg.backend, msg.ip_version)
        with self._conn_lock:
            conn_id = self._next_id
            self._next_id += 1
            self.connections[conn_id] = conn
        threading.Thread(
            target=self._read_loop, args=(conn_id, conn), name=f"privsep-read-{conn_id}", daemon=True
        ).start()
        self._write(OpenConnectionReply(id=conn_id))

    def _close_connection(self, msg: CloseConnection) -> None:
        conn = self._conn_for(msg.id)
        with self._conn_lock:
            del self.connections[msg.id]
        conn.close()
        self._write(CloseConnectionReply(id=msg.id))

    def _send_ping(self, msg: SendPing) -> None:
        conn = self._conn_for(msg.id)
        opts = [TTLOption(ttl=msg.ttl)] if msg.ttl else []
        conn.write_to(msg.packet, msg.addr, *opts)

    def _read_loop(self, conn_id: int, conn: Conn) -> None:
        while True:
            try:
                pkt, peer = conn.read_from(None)
            except Exception as err:  # noqa: BLE001 - a closed connection ends the loop
                with self._conn_lock:
                    still_open = self.connections.get(conn_id) is conn
                if still_open and "closed" not in str(err):
                    log.error("Error reading from connection %d: %s", conn_id, err)
                return
            try:
                self._write(PingReply(id=conn_id, packet=pkt, peer=_ip_of(peer)))
            except (OSError, ValueError) as err:
                log.error("Error writing message: %s", err)
                return