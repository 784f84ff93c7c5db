"""
Parley Middleware - Request processing middleware.

- rate_limit: Per-identity admission control for chat turns
"""

from .rate_limit import (
    RateLimiter,
    RateLimitSnapshot,
    Allowed,
    Rejected,
    client_identity,
    rate_limit_identity,
)

__all__ = [
    "RateLimiter",
    "RateLimitSnapshot",
    "Allowed",
    "Rejected",
    "client_identity",
    "rate_limit_identity",
]
