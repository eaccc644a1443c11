# =============================================================================
# Full-Result Guard — Per-Query Rate Limiter and Failure Cache
# =============================================================================
#
# UI components poll GET /queries/{id}/full-result on re-render. Without a
# guard, a permanently failed query is re-requested on every render tick:
# an infinite retry loop against the backend. Two mechanisms stop that:
#
#   RateLimiter  → at most one request per query id per window (1000 ms).
#                  A second call inside the window waits out the remainder
#                  instead of being rejected, so callers never see an error.
#   FailureCache → terminal `failed` results are served from memory for a
#                  TTL (60 s). Expired entries are dropped lazily on lookup;
#                  nothing evicts proactively.
#
# DESIGN DECISION: Explicit ClientContext instead of module globals.
# Both maps live on a context object handed to the orchestrator. Two
# orchestrators can share one context (one guard per process) or own
# separate ones (test isolation), and the clock and sleep functions are
# injectable so tests can move time forward without sleeping.
#
# DESIGN DECISION: No locks.
# All access happens on one asyncio event loop, and neither map is touched
# across an await in a way that could interleave badly. A thread-based
# caller would need a mutex around both maps.
# =============================================================================

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from query_client.config import Settings
from query_client.models.responses import StreamingStatusEvent

logger = logging.getLogger(__name__)

Clock = Callable[[], float]
Sleep = Callable[[float], Awaitable[None]]


# ---------------------------------------------------------------------------
# Rate Limiter
# ---------------------------------------------------------------------------


class RateLimiter:
    """Spaces out requests for the same query id by a fixed window."""

    def __init__(
        self,
        window_ms: int = 1000,
        clock: Clock = time.monotonic,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._window_seconds = window_ms / 1000.0
        self._clock = clock
        self._sleep = sleep
        self._recent: dict[str, float] = {}

    def should_throttle(self, query_id: str) -> bool:
        """True if a request for this id went out less than one window ago."""
        return self.remaining_seconds(query_id) > 0

    def remaining_seconds(self, query_id: str) -> float:
        last = self._recent.get(query_id)
        if last is None:
            return 0.0
        return max(0.0, self._window_seconds - (self._clock() - last))

    async def wait_turn(self, query_id: str) -> None:
        """
        Claim the next free slot for `query_id` and wait until it starts.

        The slot is reserved before sleeping, so concurrent callers queue up
        one window apart instead of waking together.
        """
        now = self._clock()
        last = self._recent.get(query_id)
        start = now if last is None else max(now, last + self._window_seconds)
        self._recent[query_id] = start

        delay = start - now
        if delay > 0:
            logger.info(
                "Rate limiting query request: %s (waiting %.0f ms)",
                query_id, delay * 1000,
            )
            await self._sleep(delay)


# ---------------------------------------------------------------------------
# Failure Cache
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FailureCacheEntry:
    query_id: str
    result: StreamingStatusEvent
    cached_at: float


class FailureCache:
    """In-memory cache of terminal `failed` results, keyed by query id."""

    def __init__(self, ttl_seconds: float = 60.0, clock: Clock = time.monotonic) -> None:
        self._ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[str, FailureCacheEntry] = {}

    def get(self, query_id: str) -> StreamingStatusEvent | None:
        """
        Return the cached failed result, or None on a miss.

        Every hit returns the same shared instance; callers must treat it as
        read-only. An expired entry counts as a miss and is removed.
        """
        entry = self._entries.get(query_id)
        if entry is None:
            return None
        if self._clock() - entry.cached_at >= self._ttl_seconds:
            del self._entries[query_id]
            return None
        return entry.result

    def put(self, query_id: str, result: StreamingStatusEvent) -> None:
        if result.status != "failed":
            raise ValueError(
                f"Only failed results are cached, got status={result.status!r}"
            )
        logger.info(
            "Caching failed query result to prevent retry loops: %s", query_id
        )
        self._entries[query_id] = FailureCacheEntry(
            query_id=query_id, result=result, cached_at=self._clock()
        )

    def __len__(self) -> int:
        return len(self._entries)


# ---------------------------------------------------------------------------
# Context
# ---------------------------------------------------------------------------


class ClientContext:
    """
    Process-wide guard state, made explicit.

    Holds the rate limiter and the failure cache, sharing one clock.
    """

    def __init__(
        self,
        rate_limit_ms: int = 1000,
        failure_ttl_seconds: float = 60.0,
        clock: Clock = time.monotonic,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.clock = clock
        self.rate_limiter = RateLimiter(rate_limit_ms, clock=clock, sleep=sleep)
        self.failure_cache = FailureCache(failure_ttl_seconds, clock=clock)

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs) -> ClientContext:
        return cls(
            rate_limit_ms=settings.rate_limit_ms,
            failure_ttl_seconds=settings.failed_query_cache_ttl_seconds,
            **kwargs,
        )
