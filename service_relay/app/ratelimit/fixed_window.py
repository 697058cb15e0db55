"""
Fixed-window rate limiter with escalation to a temporary blacklist.

Every identifier gets a counter that resets when its window rolls over. An
identifier that exceeds the per-window threshold is blacklisted for a fixed
block duration, during which every request is declined without touching the
window table.

Bursts straddling a window boundary can reach twice the nominal rate. That is
the accepted cost of the fixed-window counter.
"""

import heapq
import math
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from fastapi import Request

from shared.logging import get_logger

DEFAULT_WINDOW_SECONDS = 60.0
DEFAULT_MAX_REQUESTS = 100
DEFAULT_BLOCK_SECONDS = 900.0
DEFAULT_SWEEP_INTERVAL_SECONDS = 300.0


@dataclass
class ClientWindow:
    """Request count for one identifier inside its current window."""

    count: int
    window_end: float


@dataclass(frozen=True)
class RateLimitDecision:
    """Outcome of a single admission check."""

    allowed: bool
    limit: int
    remaining: int
    reset_at: int  # epoch milliseconds
    blocked: bool = False
    retry_after: int = 0  # seconds until a declined caller may retry

    def headers(self) -> Dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(self.reset_at),
        }


@dataclass
class RateLimitStore:
    """In-memory state owned by one rate limiter.

    Created at service start and never persisted; dropping it on restart
    simply gives every client a fresh window.
    """

    windows: Dict[str, ClientWindow] = field(default_factory=dict)
    blocked_until: Dict[str, float] = field(default_factory=dict)
    expiry_heap: List[Tuple[float, str]] = field(default_factory=list)
    last_sweep: float = 0.0

    def reset(self) -> None:
        self.windows.clear()
        self.blocked_until.clear()
        self.expiry_heap.clear()
        self.last_sweep = 0.0


class FixedWindowRateLimiter:
    """Per-identifier fixed-window counter."""

    def __init__(self,
                 window_seconds: float = DEFAULT_WINDOW_SECONDS,
                 max_requests: int = DEFAULT_MAX_REQUESTS,
                 block_seconds: float = DEFAULT_BLOCK_SECONDS,
                 sweep_interval_seconds: float = DEFAULT_SWEEP_INTERVAL_SECONDS,
                 idle_grace_seconds: Optional[float] = None,
                 store: Optional[RateLimitStore] = None,
                 clock: Callable[[], float] = time.time,
                 on_blacklist: Optional[Callable[[str], None]] = None):
        self.window_seconds = window_seconds
        self.max_requests = max_requests
        self.block_seconds = block_seconds
        self.sweep_interval_seconds = sweep_interval_seconds
        self.idle_grace_seconds = window_seconds if idle_grace_seconds is None else idle_grace_seconds
        self.store = store if store is not None else RateLimitStore()
        self._clock = clock
        self._on_blacklist = on_blacklist
        self._lock = threading.Lock()
        self.logger = get_logger("relay.rate_limiter")

    def admit(self, identifier: str) -> RateLimitDecision:
        """Count one request from ``identifier`` and decide whether to serve it."""
        with self._lock:
            now = self._clock()
            self._release_expired(now)

            until = self.store.blocked_until.get(identifier)
            if until is not None:
                return RateLimitDecision(
                    allowed=False,
                    limit=self.max_requests,
                    remaining=0,
                    reset_at=_to_millis(until),
                    blocked=True,
                    retry_after=math.ceil(until - now),
                )

            self._maybe_sweep(now)

            window = self.store.windows.get(identifier)
            if window is None:
                window = ClientWindow(count=0, window_end=now + self.window_seconds)
                self.store.windows[identifier] = window
            elif now > window.window_end:
                window.count = 0
                window.window_end = now + self.window_seconds

            window.count += 1

            if window.count > self.max_requests:
                until = self._blacklist(identifier, now)
                return RateLimitDecision(
                    allowed=False,
                    limit=self.max_requests,
                    remaining=0,
                    reset_at=_to_millis(until),
                    blocked=True,
                    retry_after=math.ceil(until - now),
                )

            return RateLimitDecision(
                allowed=True,
                limit=self.max_requests,
                remaining=self.max_requests - window.count,
                reset_at=_to_millis(window.window_end),
            )

    def is_blacklisted(self, identifier: str) -> bool:
        with self._lock:
            self._release_expired(self._clock())
            return identifier in self.store.blocked_until

    def stats(self) -> Dict[str, Any]:
        """Sizes of the window table and the blacklist."""
        with self._lock:
            self._release_expired(self._clock())
            return {
                "activeConnections": len(self.store.windows),
                "blacklistedIPs": len(self.store.blocked_until),
            }

    def sweep(self) -> int:
        """Drop windows that have been idle past the grace period."""
        with self._lock:
            return self._sweep(self._clock())

    def _blacklist(self, identifier: str, now: float) -> float:
        until = now + self.block_seconds
        self.store.blocked_until[identifier] = until
        heapq.heappush(self.store.expiry_heap, (until, identifier))
        self.logger.warning(
            "Rate limit exceeded, identifier temporarily blocked",
            client_id=identifier,
            limit=self.max_requests,
            block_seconds=self.block_seconds,
        )
        if self._on_blacklist is not None:
            self._on_blacklist(identifier)
        return until

    def _release_expired(self, now: float) -> None:
        heap = self.store.expiry_heap
        while heap and heap[0][0] <= now:
            until, identifier = heapq.heappop(heap)
            # A later re-block leaves a stale heap entry behind
            if self.store.blocked_until.get(identifier) == until:
                del self.store.blocked_until[identifier]
                self.logger.info("Identifier released from blacklist", client_id=identifier)

    def _maybe_sweep(self, now: float) -> None:
        if now - self.store.last_sweep >= self.sweep_interval_seconds:
            self._sweep(now)

    def _sweep(self, now: float) -> int:
        self.store.last_sweep = now
        cutoff = now - self.idle_grace_seconds
        stale = [
            identifier
            for identifier, window in self.store.windows.items()
            if window.window_end < cutoff and identifier not in self.store.blocked_until
        ]
        for identifier in stale:
            del self.store.windows[identifier]
        if stale:
            self.logger.debug("Swept idle rate limit windows", removed=len(stale))
        return len(stale)


class RateLimitMiddleware:
    """Derives the caller identity for admission control."""

    def __init__(self, rate_limiter: FixedWindowRateLimiter):
        self.rate_limiter = rate_limiter

    def check_request(self, request: Request) -> Tuple[str, RateLimitDecision]:
        client_id = self._get_client_id(request)
        return client_id, self.rate_limiter.admit(client_id)

    def _get_client_id(self, request: Request) -> str:
        """Extract client ID from request."""
        forwarded_for = request.headers.get('X-Forwarded-For')
        if forwarded_for:
            return forwarded_for.split(',')[0].strip()

        real_ip = request.headers.get('X-Real-IP')
        if real_ip:
            return real_ip

        return request.client.host if request.client else 'unknown'


def _to_millis(timestamp: float) -> int:
    return int(timestamp * 1000)
