"""
Rate limiting package for the relay.

Holds the fixed-window limiter, its injectable in-memory store, and the
helper that maps a request to a rate-limited identity.
"""

from .fixed_window import (
    ClientWindow,
    FixedWindowRateLimiter,
    RateLimitDecision,
    RateLimitMiddleware,
    RateLimitStore,
)

__all__ = [
    "ClientWindow",
    "FixedWindowRateLimiter",
    "RateLimitDecision",
    "RateLimitMiddleware",
    "RateLimitStore",
]
