"""
Tests for the per-identity rate limiter.
"""

from types import SimpleNamespace

import pytest

from errors import ValidationError
from middleware.rate_limit import (
    HOUR,
    MINUTE,
    RateLimiter,
    client_identity,
    rate_limit_identity,
)


class FakeClock:
    def __init__(self, now: float = 1_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


def _limiter(clock, **kwargs) -> RateLimiter:
    params = {"per_minute": 60, "per_hour": 500}
    params.update(kwargs)
    return RateLimiter(clock=clock, **params)


class TestAdmission:

    def test_61st_request_in_a_minute_is_rejected(self, clock):
        limiter = _limiter(clock)
        for i in range(60):
            assert limiter.admit("user:alice").allowed, f"request {i + 1} should pass"
            clock.advance(0.5)

        decision = limiter.admit("user:alice")
        assert not decision.allowed
        assert decision.window == MINUTE
        assert 1 <= decision.retry_after <= 60

    def test_retry_after_counts_down_to_window_reset(self, clock):
        limiter = _limiter(clock, per_minute=2)
        limiter.admit("ip:1.2.3.4")
        limiter.admit("ip:1.2.3.4")
        clock.advance(45)

        decision = limiter.admit("ip:1.2.3.4")
        assert decision.retry_after == 15

    def test_retry_after_is_at_least_one(self, clock):
        limiter = _limiter(clock, per_minute=1)
        limiter.admit("u")
        clock.advance(59.9)
        assert limiter.admit("u").retry_after == 1

    def test_rejections_do_not_consume(self, clock):
        limiter = _limiter(clock, per_minute=1)
        limiter.admit("u")
        for _ in range(5):
            assert not limiter.admit("u").allowed

        clock.advance(61)
        decision = limiter.admit("u")
        assert decision.allowed
        assert decision.snapshot.remaining[MINUTE] == 0
        assert decision.snapshot.remaining[HOUR] == 498

    def test_hour_window_rejects_after_minutes_reset(self, clock):
        limiter = _limiter(clock, per_minute=5, per_hour=10)
        for _ in range(2):
            for _ in range(5):
                assert limiter.admit("u").allowed
            clock.advance(61)

        decision = limiter.admit("u")
        assert not decision.allowed
        assert decision.window == HOUR
        assert 60 < decision.retry_after <= 3600

    def test_identities_are_independent(self, clock):
        limiter = _limiter(clock, per_minute=1)
        assert limiter.admit("user:a").allowed
        assert not limiter.admit("user:a").allowed
        assert limiter.admit("user:b").allowed

    def test_per_call_limits_override(self, clock):
        limiter = _limiter(clock)
        assert limiter.admit("u", limits=(1, 10)).allowed
        decision = limiter.admit("u", limits=(1, 10))
        assert not decision.allowed
        assert decision.snapshot.limit == {MINUTE: 1, HOUR: 10}

    def test_empty_identity_rejected(self, clock):
        with pytest.raises(ValidationError):
            _limiter(clock).admit("")

    def test_invalid_ceilings(self):
        with pytest.raises(ValueError):
            RateLimiter(per_minute=0)


class TestSnapshot:

    def test_snapshot_event_shape(self, clock):
        limiter = _limiter(clock)
        event = limiter.admit("u").snapshot.to_event()

        assert event["remaining"] == {MINUTE: 59, HOUR: 499}
        assert event["limit"] == {MINUTE: 60, HOUR: 500}
        assert event["resetAt"][MINUTE] == int((clock.now + 60) * 1000)
        assert event["resetAt"][HOUR] == int((clock.now + 3600) * 1000)

    def test_peek_does_not_consume(self, clock):
        limiter = _limiter(clock)
        assert limiter.peek("u").remaining[MINUTE] == 60
        limiter.admit("u")
        assert limiter.peek("u").remaining[MINUTE] == 59
        assert limiter.peek("u").remaining[MINUTE] == 59


class TestCapacity:

    def test_lru_eviction_bounds_memory(self, clock):
        limiter = _limiter(clock, max_identities=3)
        for name in ("a", "b", "c"):
            limiter.admit(name)
        limiter.admit("a")  # refresh a
        limiter.admit("d")

        assert len(limiter) == 3
        assert "b" not in limiter
        assert "a" in limiter
        assert limiter.stats()["evictions"] == 1

    def test_prune_removes_idle(self, clock):
        limiter = _limiter(clock, idle_ttl_s=100)
        limiter.admit("old")
        clock.advance(150)
        limiter.admit("fresh")

        assert limiter.prune() == 1
        assert "old" not in limiter
        assert "fresh" in limiter

    def test_reset(self, clock):
        limiter = _limiter(clock, per_minute=1)
        limiter.admit("u")
        assert limiter.reset("u") is True
        assert limiter.admit("u").allowed
        assert limiter.reset("nobody") is False


class TestIdentity:

    def test_api_key_takes_precedence(self):
        identity = rate_limit_identity("alice", "sk-abc", fallback="1.2.3.4")
        assert identity.startswith("key:")
        assert "sk-abc" not in identity

    def test_user_then_ip(self):
        assert rate_limit_identity("alice", None, fallback="1.2.3.4") == "user:alice"
        assert rate_limit_identity(None, None, fallback="1.2.3.4") == "ip:1.2.3.4"

    def test_forwarded_headers_need_trusted_proxy(self):
        conn = SimpleNamespace(
            headers={"X-Forwarded-For": "9.9.9.9, 10.0.0.1"},
            client=SimpleNamespace(host="10.0.0.1"),
        )
        assert client_identity(conn, trust_proxy=False) == "10.0.0.1"
        assert client_identity(conn, trust_proxy=True) == "9.9.9.9"

    def test_real_ip_and_unknown(self):
        conn = SimpleNamespace(headers={"X-Real-IP": " 8.8.8.8 "}, client=None)
        assert client_identity(conn, trust_proxy=True) == "8.8.8.8"
        assert client_identity(SimpleNamespace(headers={}, client=None)) == "unknown"
