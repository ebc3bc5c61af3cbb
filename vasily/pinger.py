"""Pings a single host repeatedly and keeps a history of the results."""

from __future__ import annotations

import logging
import queue
import threading
import time
from collections import deque
from dataclasses import dataclass, replace
from typing import Iterator, Optional

from . import backend
from .backend import Address, IPVersion, Packet, PacketType
from .history import PingHistory, PingResult, ResultType, Stats

log = logging.getLogger(__name__)

SEQUENCE_NO_MASK = (1 << 16) - 1

_REPLY_TYPES = {
    PacketType.REPLY: ResultType.SUCCESS,
    PacketType.TIME_EXCEEDED: ResultType.TTL_EXCEEDED,
    PacketType.DESTINATION_UNREACHABLE: ResultType.UNREACHABLE,
}


@dataclass
class Options:
    """Pinger settings; zero values select the defaults.

    ``n_pings`` defaults to unlimited, ``interval`` and ``timeout`` to one
    second and ``history`` to 300 results.
    """

    n_pings: int = 0
    interval: float = 0.0
    history: int = 0
    timeout: float = 0.0

    def _max_pings(self) -> Optional[int]:
        return self.n_pings or None

    def _interval(self) -> float:
        return self.interval or 1.0

    def _history(self) -> int:
        return self.history or 300

    def _timeout(self) -> float:
        return self.timeout or 1.0


class Pinger:
    """Pings one destination and records the outcome of every ping."""

    def __init__(
        self,
        backend_name: str,
        ip_version: IPVersion,
        dest: Address,
        options: Optional[Options] = None,
    ) -> None:
        self._options = options or Options()
        self._conn = backend.new(backend_name, ip_version)
        self._dest = dest
        self._done = threading.Event()
        self._events: queue.Queue[tuple] = queue.Queue()
        self._lock = threading.Lock()
        self._hist = PingHistory(self._options._history())

    def __enter__(self) -> "Pinger":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def close(self) -> None:
        """Stop pinging and close the connection."""
        self._done.set()
        self._events.put(("abort",))
        self._conn.close()

    def latest(self) -> PingResult:
        """Return the most recent result, or an empty result if there is none."""
        with self._lock:
            return self._hist.latest()

    def rev_results(self) -> Iterator[tuple[int, PingResult]]:
        """Iterate over ``(seq, result)`` pairs from newest to oldest."""
        with self._lock:
            snapshot = list(self._hist.rev_results())
        return iter(snapshot)

    def history(self) -> list[PingResult]:
        """Return the stored results from oldest to newest."""
        with self._lock:
            return self._hist.history()

    def stats(self) -> Stats:
        """Return the ping statistics."""
        with self._lock:
            return self._hist.stats()

    def run(self) -> None:
        """Ping until all pings are answered or timed out, or until close()."""
        threading.Thread(target=self._send_loop, daemon=True).start()
        threading.Thread(target=self._receive_loop, daemon=True).start()

        timeouts: deque[tuple[int, float]] = deque()
        shutdown = False
        timeout = self._options._timeout()

        while True:
            wait = None
            if timeouts:
                wait = max(0.0, timeouts[0][1] - time.monotonic())
            try:
                event = self._events.get(timeout=wait)
            except queue.Empty:
                seq, _ = timeouts.popleft()
                self._maybe_record_timeout(seq)
                if shutdown and not timeouts:
                    log.info("Main loop: finished shutdown")
                    return
                continue

            kind = event[0]
            if kind == "sent":
                timeouts.append((event[1], time.monotonic() + timeout))
            elif kind == "send_done":
                log.info("Main loop: shutting down")
                shutdown = True
            elif kind == "reply":
                self._handle_reply(event[1], event[2])
            elif kind == "abort":
                log.info("Main loop: aborting")
                return

    def _send_loop(self) -> None:
        interval = self._options._interval()
        remaining = self._options._max_pings()
        seq = 0
        next_tick = time.monotonic() + interval
        try:
            while True:
                if self._done.wait(max(0.0, next_tick - time.monotonic())):
                    return
                next_tick = max(next_tick + interval, time.monotonic())
                if remaining is not None:
                    if remaining <= 0:
                        return
                    remaining -= 1
                try:
                    self._send_ping(seq)
                except Exception as err:  # noqa: BLE001 - any send failure ends the loop
                    log.warning("Ping error; exiting send loop: %s", err)
                    return
                self._events.put(("sent", seq))
                seq = (seq + 1) & SEQUENCE_NO_MASK
        finally:
            self._events.put(("send_done",))

    def _send_ping(self, seq: int) -> None:
        with self._lock:
            try:
                self._conn.write_to(Packet(seq=seq), self._dest)
            except Exception as err:
                raise OSError(f"error pinging {self._dest}: {err}") from err
            self._hist.add(seq)

    def _receive_loop(self) -> None:
        while True:
            try:
                pkt, peer = self._conn.read_from(None)
            except Exception as err:  # noqa: BLE001 - closing the connection ends reads
                log.info("ReadFrom error: %s", err)
                return
            self._events.put(("reply", pkt, peer))

    def _handle_reply(self, pkt: Packet, peer: Address) -> None:
        with self._lock:
            res = replace(self._hist.get(pkt.seq), peer=peer)

            if res.type not in (ResultType.WAITING, ResultType.DROPPED):
                log.info("Duplicate packet: %s", pkt)
                self._hist.record(pkt.seq, replace(res, type=ResultType.DUPLICATE))
                return

            if pkt.type == PacketType.REQUEST:
                raise RuntimeError(f"Unexpected packet request received: {pkt}")
            result_type = _REPLY_TYPES.get(pkt.type)
            if result_type is not None:
                res = replace(res, type=result_type)
            self._hist.record(pkt.seq, res)

    def _maybe_record_timeout(self, seq: int) -> None:
        with self._lock:
            res = self._hist.get(seq)
            if res.type is not ResultType.WAITING:
                return
            self._hist.record(seq, replace(res, type=ResultType.DROPPED))