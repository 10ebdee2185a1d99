import pytest

from kondo_agent.services.rate_limiter import SCOPE_GLOBAL, SCOPE_PER_ADDRESS, RateLimiter


class TestGlobalScope:
    def test_allows_before_any_send(self, clock):
        limiter = RateLimiter(60, SCOPE_GLOBAL, clock=clock.monotonic)
        assert limiter.is_allowed() is True
        assert limiter.blocks_all() is False
        assert limiter.remaining_seconds() == 0.0

    def test_blocks_until_interval_elapses(self, clock):
        limiter = RateLimiter(60, SCOPE_GLOBAL, clock=clock.monotonic)
        limiter.record("5511911110000")

        clock.advance(59)
        assert limiter.blocks_all() is True
        assert limiter.remaining_seconds() == pytest.approx(1.0)

        clock.advance(1)
        assert limiter.blocks_all() is False

    def test_one_address_blocks_every_recipient(self, clock):
        limiter = RateLimiter(60, SCOPE_GLOBAL, clock=clock.monotonic)
        limiter.record("5511911110000")
        assert limiter.is_allowed("5511922220000") is False

    def test_never_reports_cooling_addresses(self, clock):
        limiter = RateLimiter(60, SCOPE_GLOBAL, clock=clock.monotonic)
        limiter.record("5511911110000")
        assert limiter.cooling_addresses() == []


class TestPerAddressScope:
    def test_only_the_sent_address_cools_down(self, clock):
        limiter = RateLimiter(60, SCOPE_PER_ADDRESS, clock=clock.monotonic)
        limiter.record("5511911110000")

        assert limiter.blocks_all() is False
        assert limiter.is_allowed("5511911110000") is False
        assert limiter.is_allowed("5511922220000") is True
        assert limiter.cooling_addresses() == ["5511911110000"]

    def test_expired_addresses_are_forgotten(self, clock):
        limiter = RateLimiter(60, SCOPE_PER_ADDRESS, clock=clock.monotonic)
        limiter.record("5511911110000")
        clock.advance(30)
        limiter.record("5511922220000")
        clock.advance(30)

        assert limiter.cooling_addresses() == ["5511922220000"]
        assert "5511911110000" not in limiter._last_sent


def test_unknown_scope_rejected():
    with pytest.raises(ValueError):
        RateLimiter(60, "per_tenant")
