"""
Rate Limiting - In-memory per-identity admission control.

Two independent fixed windows per identity (minute and hour). A request is
admitted only when both counters are below their ceilings, and then both
increment. Rejections never increment.

Identity records live in an OrderedDict used as an LRU with bounded
capacity, so spoofed identities cannot grow memory without limit. Records
idle longer than the TTL are removed by prune().

Every method is synchronous: a check-and-increment completes within one
event-loop step, so interleaved sessions cannot lose updates.

Usage:
    limiter = RateLimiter(per_minute=60, per_hour=500)
    decision = limiter.admit(identity)
    if not decision.allowed:
        await send_error(retry_after=decision.retry_after)
"""

import hashlib
import logging
import math
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional, Tuple, Union

from starlette.requests import HTTPConnection

from errors import ValidationError
from logging_config import log_admission

logger = logging.getLogger(__name__)

MINUTE = "minute"
HOUR = "hour"
WINDOW_LENGTHS = {MINUTE: 60.0, HOUR: 3600.0}


@dataclass
class _Window:
    start: float
    count: int = 0


@dataclass
class RateLimitRecord:
    """Counters for one identity. Mutated only by RateLimiter."""

    identity: str
    windows: Dict[str, _Window]
    last_seen: float


@dataclass(frozen=True)
class RateLimitSnapshot:
    """Remaining quota, ceilings and reset times (epoch ms) per window."""

    remaining: Dict[str, int]
    limit: Dict[str, int]
    reset_at: Dict[str, int]

    def to_event(self) -> dict:
        """Payload of the ``rate-limit-info`` event."""
        return {
            "remaining": dict(self.remaining),
            "limit": dict(self.limit),
            "resetAt": dict(self.reset_at),
        }


@dataclass(frozen=True)
class Allowed:
    snapshot: RateLimitSnapshot
    allowed: bool = field(default=True, init=False)


@dataclass(frozen=True)
class Rejected:
    retry_after: int
    window: str
    snapshot: RateLimitSnapshot
    allowed: bool = field(default=False, init=False)


AdmissionDecision = Union[Allowed, Rejected]


class RateLimiter:
    """Fixed-window limiter over minute and hour windows."""

    def __init__(
        self,
        per_minute: int = 60,
        per_hour: int = 500,
        max_identities: int = 100_000,
        idle_ttl_s: float = 86_400.0,
        clock: Callable[[], float] = time.time,
    ):
        if per_minute < 1 or per_hour < 1:
            raise ValueError("Rate limit ceilings must be positive")
        if max_identities < 1:
            raise ValueError("max_identities must be positive")
        self.per_minute = per_minute
        self.per_hour = per_hour
        self.max_identities = max_identities
        self.idle_ttl_s = idle_ttl_s
        self._clock = clock
        self._records: "OrderedDict[str, RateLimitRecord]" = OrderedDict()
        self._evictions = 0

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def admit(self, identity: str, limits: Optional[Tuple[int, int]] = None) -> AdmissionDecision:
        """Check and consume one request for ``identity``.

        Args:
            identity: Opaque caller identity (user id, IP, key fingerprint)
            limits: Optional (per_minute, per_hour) override for this caller

        Returns:
            Allowed, or Rejected with the window that triggered it and the
            whole seconds until that window resets (at least 1)
        """
        if not identity:
            raise ValidationError("Rate limit identity is required", parameter="identity")

        ceilings = self._ceilings(limits)
        now = self._clock()
        record = self._touch(identity, now)

        for name, window in record.windows.items():
            if now > window.start + WINDOW_LENGTHS[name]:
                window.start = now
                window.count = 0

        # Minute is checked first so the shorter wait is reported
        for name in (MINUTE, HOUR):
            window = record.windows[name]
            if window.count >= ceilings[name]:
                retry_after = max(1, math.ceil(window.start + WINDOW_LENGTHS[name] - now))
                log_admission(logger, identity, False, window=name, retry_after=retry_after)
                return Rejected(
                    retry_after=retry_after,
                    window=name,
                    snapshot=self._snapshot(record, ceilings, now),
                )

        for window in record.windows.values():
            window.count += 1

        log_admission(logger, identity, True, minute=record.windows[MINUTE].count)
        return Allowed(snapshot=self._snapshot(record, ceilings, now))

    def peek(self, identity: str, limits: Optional[Tuple[int, int]] = None) -> RateLimitSnapshot:
        """Current quota for an identity without consuming a request."""
        ceilings = self._ceilings(limits)
        now = self._clock()
        record = self._records.get(identity)
        if record is None:
            return RateLimitSnapshot(
                remaining=dict(ceilings),
                limit=dict(ceilings),
                reset_at={name: _ms(now + length) for name, length in WINDOW_LENGTHS.items()},
            )
        return self._snapshot(record, ceilings, now)

    def reset(self, identity: str) -> bool:
        """Forget an identity. Returns True if it was tracked."""
        return self._records.pop(identity, None) is not None

    def prune(self) -> int:
        """Remove identities idle longer than the TTL. Returns the count removed."""
        cutoff = self._clock() - self.idle_ttl_s
        removed = 0
        # Oldest-touched first, so stop at the first fresh record
        while self._records:
            identity, record = next(iter(self._records.items()))
            if record.last_seen >= cutoff:
                break
            del self._records[identity]
            removed += 1
        if removed:
            logger.info(f"Rate limiter pruned {removed} idle identities ({len(self._records)} tracked)")
        return removed

    def stats(self) -> dict:
        return {
            "tracked_identities": len(self._records),
            "max_identities": self.max_identities,
            "evictions": self._evictions,
            "limits": {MINUTE: self.per_minute, HOUR: self.per_hour},
        }

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, identity: str) -> bool:
        return identity in self._records

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _ceilings(self, limits: Optional[Tuple[int, int]]) -> Dict[str, int]:
        per_minute, per_hour = limits if limits else (self.per_minute, self.per_hour)
        return {MINUTE: per_minute, HOUR: per_hour}

    def _touch(self, identity: str, now: float) -> RateLimitRecord:
        record = self._records.get(identity)
        if record is not None:
            record.last_seen = now
            self._records.move_to_end(identity)
            return record

        while len(self._records) >= self.max_identities:
            evicted, _ = self._records.popitem(last=False)
            self._evictions += 1
            logger.debug(f"Rate limiter evicted {evicted} (capacity {self.max_identities})")

        record = RateLimitRecord(
            identity=identity,
            windows={name: _Window(start=now) for name in WINDOW_LENGTHS},
            last_seen=now,
        )
        self._records[identity] = record
        return record

    def _snapshot(self, record: RateLimitRecord, ceilings: Dict[str, int], now: float) -> RateLimitSnapshot:
        remaining = {}
        reset_at = {}
        for name, window in record.windows.items():
            expired = now > window.start + WINDOW_LENGTHS[name]
            used = 0 if expired else window.count
            remaining[name] = max(0, ceilings[name] - used)
            start = now if expired else window.start
            reset_at[name] = _ms(start + WINDOW_LENGTHS[name])
        return RateLimitSnapshot(remaining=remaining, limit=dict(ceilings), reset_at=reset_at)


def _ms(seconds: float) -> int:
    return int(seconds * 1000)


# =============================================================================
# Identity extraction
# =============================================================================


def client_identity(connection: HTTPConnection, trust_proxy: bool = False) -> str:
    """Client address for a request or WebSocket.

    Forwarded headers are only honoured behind a trusted proxy; otherwise
    any client could pick its own identity.
    """
    if trust_proxy:
        forwarded = connection.headers.get("X-Forwarded-For")
        if forwarded:
            # First hop is the original client
            return forwarded.split(",")[0].strip()

        real_ip = connection.headers.get("X-Real-IP")
        if real_ip:
            return real_ip.strip()

    if connection.client:
        return connection.client.host

    return "unknown"


def key_fingerprint(api_key: str) -> str:
    """Short SHA-256 fingerprint of a caller-supplied API key."""
    return hashlib.sha256(api_key.encode("utf-8")).hexdigest()[:16]


def rate_limit_identity(user_id: Optional[str], api_key: Optional[str] = None, fallback: str = "unknown") -> str:
    """Identity used as the rate limit bucket key.

    Callers with their own key get a bucket per key, so sharing a user id
    does not share quota.
    """
    if api_key:
        return f"key:{key_fingerprint(api_key)}"
    if user_id:
        return f"user:{user_id}"
    return f"ip:{fallback}"
