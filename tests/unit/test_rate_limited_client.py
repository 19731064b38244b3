"""
Unit Tests - Rate-Limited API Client
Tests for quota-gated calls, retries and fallbacks.
"""
import asyncio
from unittest.mock import AsyncMock, patch
import pytest

from marketfeed.data_providers.rate_limited_client import (
    APICallOptions,
    RateLimitedAPIClient,
    RetryConfig,
)
from marketfeed.data_providers.rate_limiter import RateLimitConfig, Window
from marketfeed.utils.exceptions import RateLimitError


@pytest.fixture
def client(rate_limiter, cache, no_backoff):
    rate_limiter.configure(RateLimitConfig("yahoo", {Window.MINUTE: 100}))
    return RateLimitedAPIClient(rate_limiter, cache, no_backoff)


def record_sleeps(clock=None):
    """Replacement for RateLimitedAPIClient._sleep that records delays and advances the clock."""
    delays = []

    async def fake_sleep(delay_ms, deadline):
        delays.append(delay_ms)
        if clock is not None:
            clock.advance(milliseconds=delay_ms)
        return True

    return delays, AsyncMock(side_effect=fake_sleep)


class TestSuccessfulCalls:
    """Tests for calls that succeed."""

    @pytest.mark.asyncio
    async def test_success_returns_data_and_caches(self, client, cache):
        operation = AsyncMock(return_value={"price": 190.5})

        result = await client.make_api_call(operation, APICallOptions(provider="yahoo", endpoint="quote"))

        assert result.success is True
        assert result.data == {"price": 190.5}
        assert result.from_cache is False
        assert result.attempts == 1
        assert result.retries_used == 0
        assert result.rate_limit_info.allowed is True
        assert cache.get("yahoo", "quote").data == {"price": 190.5}

    @pytest.mark.asyncio
    async def test_options_from_keyword_arguments(self, client):
        result = await client.make_api_call(AsyncMock(return_value=1), provider="yahoo", max_retries=0)
        assert result.success is True

    @pytest.mark.asyncio
    async def test_custom_cache_ttl(self, client, cache, clock):
        await client.make_api_call(
            AsyncMock(return_value="v"),
            APICallOptions(provider="yahoo", endpoint="e", cache_ttl_ms=1000),
        )
        clock.advance(seconds=2)
        assert cache.get("yahoo", "e") is None

    def test_negative_retries_rejected(self):
        with pytest.raises(ValueError):
            APICallOptions(provider="yahoo", max_retries=-1)
        with pytest.raises(ValueError):
            RetryConfig(max_retries=-1)

    @pytest.mark.asyncio
    async def test_options_and_keywords_together_rejected(self, client):
        operation = AsyncMock()

        with pytest.raises(TypeError):
            await client.make_api_call(operation, APICallOptions(provider="yahoo"), max_retries=0)
        operation.assert_not_awaited()


class TestFailuresAndFallbacks:
    """Tests for retries and the fallback chain."""

    @pytest.mark.asyncio
    async def test_fallback_data_after_all_attempts(self, client):
        operation = AsyncMock(side_effect=RuntimeError("boom"))

        result = await client.make_api_call(
            operation,
            APICallOptions(provider="yahoo", max_retries=2, fallback_data={"price": 1}),
        )

        assert result.success is True
        assert result.data == {"price": 1}
        assert result.from_cache is False
        assert operation.await_count == 3
        assert result.attempts == 3
        assert result.retries_used == 2

    @pytest.mark.asyncio
    async def test_client_default_retry_count(self, rate_limiter, cache):
        rate_limiter.configure(RateLimitConfig("yahoo", {Window.MINUTE: 100}))
        client = RateLimitedAPIClient(rate_limiter, cache, RetryConfig(0, 0, 0, max_retries=1))
        operation = AsyncMock(side_effect=RuntimeError("boom"))

        result = await client.make_api_call(operation, APICallOptions(provider="yahoo"))
        assert operation.await_count == 2
        assert result.retries_used == 1

        operation.reset_mock()
        await client.make_api_call(operation, APICallOptions(provider="yahoo", max_retries=0))
        assert operation.await_count == 1

    @pytest.mark.asyncio
    async def test_cached_data_preferred_over_fallback(self, client):
        await client.make_api_call(AsyncMock(return_value="fresh"), APICallOptions(provider="yahoo", endpoint="q"))

        result = await client.make_api_call(
            AsyncMock(side_effect=RuntimeError("down")),
            APICallOptions(provider="yahoo", endpoint="q", max_retries=0, fallback_data="fallback"),
        )

        assert result.success is True
        assert result.data == "fresh"
        assert result.from_cache is True

    @pytest.mark.asyncio
    async def test_cache_fallback_can_be_disabled(self, client):
        await client.make_api_call(AsyncMock(return_value="fresh"), APICallOptions(provider="yahoo", endpoint="q"))

        result = await client.make_api_call(
            AsyncMock(side_effect=RuntimeError("down")),
            APICallOptions(provider="yahoo", endpoint="q", max_retries=0, fallback_to_cache=False),
        )

        assert result.success is False

    @pytest.mark.asyncio
    async def test_none_is_a_valid_fallback(self, client):
        result = await client.make_api_call(
            AsyncMock(side_effect=RuntimeError("down")),
            APICallOptions(provider="yahoo", max_retries=0, fallback_to_cache=False, fallback_data=None),
        )

        assert result.success is True
        assert result.data is None

    @pytest.mark.asyncio
    async def test_failure_without_fallback(self, client):
        result = await client.make_api_call(
            AsyncMock(side_effect=RuntimeError("connection reset")),
            APICallOptions(provider="yahoo", max_retries=1),
        )

        assert result.success is False
        assert result.data is None
        assert "All retries exhausted" in result.error
        assert "connection reset" in result.error
        assert result.rate_limit_info.allowed is False

    @pytest.mark.asyncio
    async def test_unconfigured_provider_never_calls_operation(self, client):
        operation = AsyncMock()

        result = await client.make_api_call(operation, APICallOptions(provider="nobody"))

        assert result.success is False
        assert result.error == "No rate limit configuration found for provider: nobody"
        operation.assert_not_awaited()


class TestBackoff:
    """Tests for waits between attempts."""

    @pytest.mark.asyncio
    async def test_exponential_backoff_without_final_sleep(self, rate_limiter, cache):
        rate_limiter.configure(RateLimitConfig("yahoo", {Window.MINUTE: 100}))
        client = RateLimitedAPIClient(rate_limiter, cache, RetryConfig(10, 25, 999))
        delays, fake_sleep = record_sleeps()

        with patch.object(RateLimitedAPIClient, "_sleep", fake_sleep):
            await client.make_api_call(
                AsyncMock(side_effect=RuntimeError("boom")),
                APICallOptions(provider="yahoo", max_retries=3),
            )

        assert delays == [10, 20, 25]

    @pytest.mark.asyncio
    async def test_provider_rate_limit_uses_cooldown(self, rate_limiter, cache):
        rate_limiter.configure(RateLimitConfig("finnhub", {Window.MINUTE: 100}))
        client = RateLimitedAPIClient(rate_limiter, cache, RetryConfig(10, 25, 999))
        delays, fake_sleep = record_sleeps()
        operation = AsyncMock(side_effect=[RateLimitError("finnhub", 60), Exception("HTTP 429"), "ok"])

        with patch.object(RateLimitedAPIClient, "_sleep", fake_sleep):
            result = await client.make_api_call(operation, APICallOptions(provider="finnhub", max_retries=3))

        assert result.success is True
        assert result.data == "ok"
        assert delays == [999, 999]
        assert result.attempts == 3

    def test_backoff_formula(self):
        config = RetryConfig()
        assert [config.backoff_ms(a) for a in range(7)] == [1000, 2000, 4000, 8000, 16000, 30000, 30000]


class TestQuotaWaits:
    """Tests for local quota denials inside the client."""

    @pytest.mark.asyncio
    async def test_waits_for_quota_then_succeeds(self, rate_limiter, cache, clock):
        rate_limiter.configure(RateLimitConfig("av", {Window.MINUTE: 1}))
        client = RateLimitedAPIClient(rate_limiter, cache)
        await rate_limiter.check_rate_limit("av")
        delays, fake_sleep = record_sleeps(clock)

        with patch.object(RateLimitedAPIClient, "_sleep", fake_sleep):
            result = await client.make_api_call(AsyncMock(return_value="x"), APICallOptions(provider="av", max_retries=1))

        assert result.success is True
        assert delays == [60000]
        assert result.retries_used == 1
        assert result.attempts == 1

    @pytest.mark.asyncio
    async def test_denied_on_last_attempt_goes_to_fallback(self, rate_limiter, cache):
        rate_limiter.configure(RateLimitConfig("av", {Window.MINUTE: 1}))
        client = RateLimitedAPIClient(rate_limiter, cache)
        await rate_limiter.check_rate_limit("av")
        operation = AsyncMock()

        result = await client.make_api_call(operation, APICallOptions(provider="av", max_retries=0))

        assert result.success is False
        assert result.error == "Rate limit exceeded for perMinute: 1/1"
        assert result.rate_limit_info.wait_time == 60000
        operation.assert_not_awaited()


class TestDeadline:
    """Tests for the overall timeout."""

    @pytest.mark.asyncio
    async def test_slow_operation_hits_deadline(self, client):
        async def slow():
            await asyncio.sleep(5)

        result = await client.make_api_call(slow, APICallOptions(provider="yahoo", timeout=0.05))

        assert result.success is False
        assert "Deadline" in result.error
        assert result.rate_limit_info.allowed is False

    @pytest.mark.asyncio
    async def test_backoff_past_deadline_stops_early(self, rate_limiter, cache):
        rate_limiter.configure(RateLimitConfig("yahoo", {Window.MINUTE: 100}))
        client = RateLimitedAPIClient(rate_limiter, cache, RetryConfig(backoff_base_ms=10000))
        operation = AsyncMock(side_effect=RuntimeError("boom"))

        result = await client.make_api_call(
            operation,
            APICallOptions(provider="yahoo", timeout=0.5, max_retries=3, fallback_data="stale"),
        )

        assert result.success is True
        assert result.data == "stale"
        assert operation.await_count == 1
        assert "Deadline" in result.rate_limit_info.reason


class TestCacheHelpers:
    """Tests for cache passthroughs."""

    @pytest.mark.asyncio
    async def test_cache_stats_and_clear(self, client):
        await client.make_api_call(AsyncMock(return_value=[1]), APICallOptions(provider="yahoo", endpoint="x"))

        stats = client.get_cache_stats()
        assert stats["sets"] == 1
        assert stats["entries"][0]["key"] == "api:yahoo:x"

        client.clear_cache()
        assert client.get_cache_stats()["total_entries"] == 0
