"""
Request coalescing for expensive asynchronous operations.

A RequestDeduplicator keeps at most one in-flight task per cache key.
Concurrent callers asking for the same key share that task's outcome
(success or failure). Entries leave the table as soon as the task settles,
so this is a coalescing table for in-flight work, not a result cache.
Entries older than the configured timeout are swept even while still
running: the stale task keeps going but is no longer handed to new callers.

Each concern (search, movie lookups, AI recommendations) gets its own
instance with its own window; see create_deduplicators().
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Mapping, NamedTuple, TypeVar

from .config import AI_DEDUP_TIMEOUT, MOVIE_DEDUP_TIMEOUT, SEARCH_DEDUP_TIMEOUT

logger = logging.getLogger(__name__)

T = TypeVar("T")

_PRIMITIVES = (str, int, float, bool, type(None))


def generate_key(params: Mapping[str, Any]) -> str:
    """
    Build a deterministic cache key from a flat mapping of primitives.

    Keys are sorted before serialization, so insertion order never changes
    the result. Whole floats are folded to ints, so 2000 and 2000.0 share
    a key. Non-primitive values raise TypeError; callers flatten lists
    themselves (e.g. sorted, comma-joined genres).
    """
    normalized = {}
    for name, value in params.items():
        if not isinstance(name, str):
            raise TypeError(f"Cache key parameter names must be strings, got {name!r}")
        if not isinstance(value, _PRIMITIVES):
            raise TypeError(
                f"Cache key parameter '{name}' must be a primitive, got {type(value).__name__}"
            )
        if isinstance(value, float) and value.is_integer():
            value = int(value)
        normalized[name] = value
    return json.dumps(normalized, sort_keys=True, separators=(",", ":"))


@dataclass
class PendingEntry:
    key: str
    future: asyncio.Future
    created_at: float


class RequestDeduplicator:
    """Collapse concurrent calls for the same key into one execution."""

    def __init__(
        self,
        timeout: float = SEARCH_DEDUP_TIMEOUT,
        name: str = "requests",
        clock: Callable[[], float] = time.monotonic,
    ):
        self.timeout = timeout
        self.name = name
        self._clock = clock
        self._pending: dict[str, PendingEntry] = {}

    generate_key = staticmethod(generate_key)

    def deduplicate(self, key: str, operation: Callable[[], Awaitable[T]]) -> asyncio.Future:
        """
        Return the shared future for `key`, starting `operation` if none is live.

        Must be called from inside a running event loop. The lookup and the
        insert happen without yielding, so two callers can never both start
        the operation for one key. The returned future is a shield around the
        shared task: a caller that is cancelled stops waiting, the operation
        keeps running for everyone else.
        """
        self.sweep()

        entry = self._pending.get(key)
        if entry is not None:
            logger.debug(f"[{self.name}] joining in-flight request for {key}")
            return asyncio.shield(entry.future)

        task = asyncio.ensure_future(operation())
        self._pending[key] = PendingEntry(key=key, future=task, created_at=self._clock())
        task.add_done_callback(lambda done: self._on_settled(key, done))
        logger.debug(f"[{self.name}] started request for {key} ({len(self._pending)} pending)")
        return asyncio.shield(task)

    def _on_settled(self, key: str, task: asyncio.Future) -> None:
        entry = self._pending.get(key)
        # A swept key may already hold a newer task; leave that one alone.
        if entry is not None and entry.future is task:
            del self._pending[key]

        if task.cancelled():
            logger.debug(f"[{self.name}] request for {key} was cancelled")
            return
        exc = task.exception()
        if exc is not None:
            logger.debug(f"[{self.name}] request for {key} failed: {type(exc).__name__}: {exc}")

    def sweep(self) -> int:
        """Drop entries older than the timeout. Returns how many were dropped."""
        now = self._clock()
        expired = [
            key for key, entry in self._pending.items()
            if now - entry.created_at > self.timeout
        ]
        for key in expired:
            del self._pending[key]
        if expired:
            logger.debug(f"[{self.name}] swept {len(expired)} stale request(s)")
        return len(expired)

    def clear(self) -> None:
        """Forget every entry. Running tasks are not cancelled."""
        self._pending.clear()

    def pending_count(self) -> int:
        return len(self._pending)


class Deduplicators(NamedTuple):
    search: RequestDeduplicator
    movie: RequestDeduplicator
    ai: RequestDeduplicator


def create_deduplicators(
    search_timeout: float = SEARCH_DEDUP_TIMEOUT,
    movie_timeout: float = MOVIE_DEDUP_TIMEOUT,
    ai_timeout: float = AI_DEDUP_TIMEOUT,
) -> Deduplicators:
    """Build one independent deduplicator per concern."""
    return Deduplicators(
        search=RequestDeduplicator(search_timeout, name="search"),
        movie=RequestDeduplicator(movie_timeout, name="movie"),
        ai=RequestDeduplicator(ai_timeout, name="ai"),
    )
