"""
Request coalescing for GitHub reads.

Ten components asking for the same file, profile or permission at once
should cost one API call. ``RequestDeduplicator`` keys each outgoing read
and hands every concurrent caller the same pending result.
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, TypeVar

from loguru import logger

T = TypeVar("T")


@dataclass
class InFlight:
    """One shared fetch and the callers attached to it."""

    task: asyncio.Future
    waiters: int = 1


@dataclass
class DeduplicatorStats:
    total: int = 0  # fetches actually started
    deduplicated: int = 0  # callers that joined an existing fetch
    failed: int = 0
    cancelled: int = 0
    in_flight: int = 0
    peak_in_flight: int = 0

    @property
    def dedup_rate(self) -> float:
        calls = self.total + self.deduplicated
        return self.deduplicated / calls if calls else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_requests": self.total,
            "deduplicated": self.deduplicated,
            "failed": self.failed,
            "cancelled": self.cancelled,
            "in_flight": self.in_flight,
            "peak_in_flight": self.peak_in_flight,
            "dedup_rate": f"{self.dedup_rate:.2%}",
        }


class RequestDeduplicator:
    """
    Coalesces concurrent calls that share a key.

    The first caller for a key starts ``request_fn`` as a task; later callers
    attach to it until it settles, then the key is free again. Results are
    never kept after settlement, that is the cache's job.

    Lookup and registration happen without an intervening await, so on one
    event loop two callers can never both start a fetch for the same key.
    Each caller waits through ``asyncio.shield``: a caller that gives up
    leaves the fetch running for the rest. Aborting the fetch itself goes
    through ``cancel`` or ``cancel_all``.
    """

    def __init__(self, debug: bool = False):
        self._entries: dict[str, InFlight] = {}
        self._debug = debug
        self._stats = DeduplicatorStats()

    async def dedupe(self, key: str, request_fn: Callable[[], Awaitable[T]]) -> T:
        entry = self._entries.get(key)
        if entry is None:
            entry = self._start(key, request_fn)
        else:
            entry.waiters += 1
            self._stats.deduplicated += 1
            self._log(f"DEDUPE: {key[:50]} ({entry.waiters} waiting)")
        return await asyncio.shield(entry.task)

    def _start(self, key: str, request_fn: Callable[[], Awaitable[T]]) -> InFlight:
        self._stats.total += 1
        self._log(f"NEW: {key[:50]}")
        task = asyncio.ensure_future(self._run(key, request_fn))
        task.add_done_callback(_consume_outcome)
        entry = InFlight(task=task)
        self._entries[key] = entry
        self._stats.peak_in_flight = max(self._stats.peak_in_flight, len(self._entries))
        return entry

    async def _run(self, key: str, request_fn: Callable[[], Awaitable[T]]) -> T:
        try:
            return await request_fn()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._stats.failed += 1
            logger.error(f"[Deduplicator] Request failed: {key[:50]} ({e})")
            raise
        finally:
            entry = self._entries.get(key)
            # A cancelled key may already be reused by a newer fetch.
            if entry is not None and entry.task is asyncio.current_task():
                del self._entries[key]
            self._log(f"DONE: {key[:50]}")

    def cancel(self, key: str) -> bool:
        """Abort the fetch for ``key``; every attached caller sees CancelledError."""
        entry = self._entries.pop(key, None)
        if entry is None:
            return False
        entry.task.cancel()
        self._stats.cancelled += 1
        self._log(f"CANCEL: {key[:50]} ({entry.waiters} waiting)")
        return True

    def cancel_all(self) -> int:
        entries, self._entries = self._entries, {}
        for entry in entries.values():
            entry.task.cancel()
        self._stats.cancelled += len(entries)
        if entries:
            self._log(f"CANCEL_ALL: {len(entries)} requests cancelled")
        return len(entries)

    def is_in_flight(self, key: str) -> bool:
        return key in self._entries

    def get_in_flight_count(self) -> int:
        return len(self._entries)

    def get_in_flight_keys(self) -> list[str]:
        return list(self._entries)

    def get_waiters(self, key: str) -> int:
        entry = self._entries.get(key)
        return entry.waiters if entry else 0

    def get_stats(self) -> DeduplicatorStats:
        self._stats.in_flight = len(self._entries)
        return self._stats

    def _log(self, message: str) -> None:
        if self._debug:
            logger.debug(f"[Deduplicator] {message}")


def _consume_outcome(task: asyncio.Future) -> None:
    # Every caller may have left; mark the exception as retrieved.
    if not task.cancelled():
        task.exception()
