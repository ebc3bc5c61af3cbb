"""Ring-buffer history of ping results with streaming statistics."""

from __future__ import annotations

import enum
import logging
import math
import time
from dataclasses import dataclass, replace
from typing import Callable, Iterator, Optional

from .backend import Address

log = logging.getLogger(__name__)

Clock = Callable[[], float]


class ResultType(enum.Enum):
    """High-level outcome of a single ping."""

    WAITING = 0
    SUCCESS = 1
    DROPPED = 2
    DUPLICATE = 3
    TTL_EXCEEDED = 4
    UNREACHABLE = 5

    def __str__(self) -> str:
        return _RESULT_NAMES[self]


_RESULT_NAMES = {
    ResultType.WAITING: "Unknown",
    ResultType.SUCCESS: "Success",
    ResultType.DROPPED: "Dropped",
    ResultType.DUPLICATE: "Duplicate",
    ResultType.TTL_EXCEEDED: "TTLExceeded",
    ResultType.UNREACHABLE: "Unreachable",
}


@dataclass(frozen=True)
class PingResult:
    """The result of one ping.

    ``time`` is when the request was sent and ``latency`` how long the
    response took, both in seconds.
    """

    type: ResultType = ResultType.WAITING
    time: float = 0.0
    latency: float = 0.0
    peer: Optional[Address] = None


@dataclass(frozen=True)
class Stats:
    """Statistics for a ping session; latencies are in seconds."""

    n: int = 0
    failures: int = 0
    avg_latency: float = 0.0
    std_dev: float = 0.0

    def packet_loss(self) -> float:
        """Return the fraction of pings without a successful reply."""
        if self.n == 0:
            return math.nan
        return self.failures / self.n


class PingHistory:
    """Keeps the most recent ping results, indexed by sequence number.

    Not thread-safe; callers serialise access themselves.
    """

    def __init__(self, size: int, clock: Optional[Clock] = None) -> None:
        if size < 1:
            raise ValueError(f"history size must be positive: {size}")
        self._results: list[PingResult] = [PingResult()] * size
        self._last_seq = -1
        self._stats = Stats()
        self._m2 = 0.0
        self._clock: Clock = clock or time.time

    def get(self, seq: int) -> PingResult:
        """Return the result for ``seq``, or an empty result if it is gone."""
        if seq < self._last_seq - len(self._results) + 1:
            return PingResult()
        return self._results[seq % len(self._results)]

    def add(self, seq: int) -> None:
        """Record that ping ``seq`` has just been sent; it must be the next number."""
        want = self._last_seq + 1
        if seq != want:
            raise ValueError(f"Wrong sequence number: {seq} (want {want})")
        self._results[seq % len(self._results)] = PingResult(
            type=ResultType.WAITING, time=self._clock()
        )
        self._last_seq = seq

    def record(self, seq: int, result: PingResult) -> PingResult:
        """Store the outcome for ``seq`` and return it with its latency filled in."""
        if self._last_seq - seq >= len(self._results):
            log.info("Seq %d too late to record in history.", seq)
            return result
        result = replace(result, latency=self._clock() - result.time)
        self._results[seq % len(self._results)] = result
        if result.type is not ResultType.DUPLICATE:
            self._add_stats_for(result)
        return result

    def _add_stats_for(self, result: PingResult) -> None:
        stats = self._stats
        n = stats.n + 1
        if result.type is not ResultType.SUCCESS:
            self._stats = replace(stats, n=n, failures=stats.failures + 1)
            return
        successes = n - stats.failures
        prev_avg = stats.avg_latency
        avg = ((successes - 1) * prev_avg + result.latency) / successes
        self._m2 += (result.latency - prev_avg) * (result.latency - avg)
        std_dev = math.sqrt(max(0.0, self._m2) / n)
        self._stats = replace(stats, n=n, avg_latency=avg, std_dev=std_dev)

    def rev_results(self) -> Iterator[tuple[int, PingResult]]:
        """Yield ``(seq, result)`` pairs from newest to oldest."""
        size = len(self._results)
        first = max(0, self._last_seq - size + 1)
        for seq in range(self._last_seq, first - 1, -1):
            yield seq, self._results[seq % size]

    def history(self) -> list[PingResult]:
        """Return the stored results from oldest to newest."""
        return [result for _, result in self.rev_results()][::-1]

    def latest(self) -> PingResult:
        """Return the most recent result, or an empty result if there is none."""
        if self._last_seq == -1:
            return PingResult()
        return self._results[self._last_seq % len(self._results)]

    def stats(self) -> Stats:
        """Return the current statistics."""
        return self._stats