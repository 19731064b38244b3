"""
Integration Tests - Data Aggregator
Tests for failover, budgets, health tracking and result merging across sources.
"""
import asyncio
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Optional
import pytest

from marketfeed.data_providers.adapters.base import (
    BaseAdapter,
    Bar,
    NewsArticle,
    Quote,
    Ticker,
)
from marketfeed.data_providers.adapters.unimplemented import UnimplementedSource
from marketfeed.data_providers.aggregator import DataSourceConfig, FreeDataAggregator
from marketfeed.data_providers.rate_limiter import RateLimitConfig, Window
from marketfeed.utils.exceptions import (
    AllSourcesExhaustedError,
    ProviderError,
    UnconfiguredProviderError,
)


class FakeSource(BaseAdapter):
    """In-memory source that answers or fails on demand."""

    def __init__(
        self,
        name: str,
        price: str = "100",
        fail: Optional[Exception] = None,
        rate_limiter=None,
        provider: Optional[str] = None,
        tickers: Optional[list[str]] = None,
        news: Optional[list[NewsArticle]] = None,
        healthy: bool = True,
    ):
        super().__init__(name=name, provider=provider or name, rate_limiter=rate_limiter)
        self.price = Decimal(price)
        self.fail = fail
        self.tickers = tickers or []
        self.news = news
        self.healthy = healthy
        self.calls: list[str] = []
        self.supports_news = news is not None
        self.closed = False

    async def is_healthy(self) -> bool:
        self.calls.append("is_healthy")
        return self.healthy

    async def get_quote(self, symbol: str) -> Quote:
        self.calls.append(f"quote:{symbol}")
        await self._acquire("quote")
        if self.fail is not None:
            raise self.fail
        if symbol.startswith("BAD"):
            raise ProviderError(self.provider, f"unknown symbol {symbol}")
        return Quote(symbol=symbol, price=self.price, provider=self.name)

    async def get_historical_data(self, symbol: str, start: date, end: Optional[date] = None) -> list[Bar]:
        self.calls.append(f"history:{symbol}")
        if self.fail is not None:
            raise self.fail
        ts = datetime.combine(start, datetime.min.time(), tzinfo=timezone.utc)
        return [Bar(symbol, ts, self.price, self.price, self.price, self.price, 1, provider=self.name)]

    async def search_tickers(self, query: str) -> list[Ticker]:
        self.calls.append(f"search:{query}")
        if self.fail is not None:
            raise self.fail
        return [Ticker(symbol=symbol, provider=self.name) for symbol in self.tickers]

    async def get_news(self, symbols: list[str]) -> list[NewsArticle]:
        self.calls.append("news")
        if self.fail is not None:
            raise self.fail
        return list(self.news or [])

    async def close(self) -> None:
        self.closed = True


def article(url: str, hour: int) -> NewsArticle:
    return NewsArticle(title=url, url=url, time_published=datetime(2024, 3, 15, hour, tzinfo=timezone.utc))


@pytest.fixture
def aggregator(clock):
    return FreeDataAggregator(clock=clock, batch_delay=0)


class TestFailover:
    """Tests for ordered failover on single-result operations."""

    @pytest.mark.asyncio
    async def test_failover_to_next_source(self, aggregator):
        first = FakeSource("a", fail=ProviderError("a", "down"))
        second = FakeSource("b", price="42")
        aggregator.add_data_source("a", first, DataSourceConfig("A", priority=1))
        aggregator.add_data_source("b", second, DataSourceConfig("B", priority=2))

        quote = await aggregator.get_quote("AAPL")

        assert quote.price == Decimal("42")
        assert quote.provider == "b"
        assert aggregator.health.is_healthy("a") is False
        assert "down" in aggregator.health.get("a").last_error
        assert aggregator.health.get("b").success_count == 1

    @pytest.mark.asyncio
    async def test_unhealthy_source_not_retried(self, aggregator):
        first = FakeSource("a", fail=ProviderError("a", "down"))
        second = FakeSource("b")
        aggregator.add_data_source("a", first, DataSourceConfig("A", priority=1))
        aggregator.add_data_source("b", second, DataSourceConfig("B", priority=2))

        await aggregator.get_quote("AAPL")
        await aggregator.get_quote("MSFT")

        assert first.calls == ["quote:AAPL"]

    @pytest.mark.asyncio
    async def test_order_by_priority_then_reliability(self, aggregator):
        low = FakeSource("low")
        high = FakeSource("high")
        later = FakeSource("later")
        aggregator.add_data_source("later", later, DataSourceConfig("Later", priority=2, reliability=1.0))
        aggregator.add_data_source("low", low, DataSourceConfig("Low", priority=1, reliability=0.5))
        aggregator.add_data_source("high", high, DataSourceConfig("High", priority=1, reliability=0.9))

        quote = await aggregator.get_quote("AAPL")

        assert quote.provider == "high"
        assert aggregator._get_sorted_available_sources() == ["high", "low", "later"]

    @pytest.mark.asyncio
    async def test_disabled_source_skipped(self, aggregator):
        disabled = FakeSource("off")
        enabled = FakeSource("on")
        aggregator.add_data_source("off", disabled, DataSourceConfig("Off", priority=1, enabled=False))
        aggregator.add_data_source("on", enabled, DataSourceConfig("On", priority=2))

        assert (await aggregator.get_quote("AAPL")).provider == "on"
        assert disabled.calls == []

    @pytest.mark.asyncio
    async def test_all_sources_fail(self, aggregator):
        for i in range(5):
            source = FakeSource(f"s{i}", fail=ProviderError(f"s{i}", f"error {i}"))
            aggregator.add_data_source(f"s{i}", source, DataSourceConfig(f"S{i}", priority=i))

        with pytest.raises(AllSourcesExhaustedError) as exc_info:
            await aggregator.get_quote("AAPL")

        error = exc_info.value
        assert "AAPL" in str(error)
        assert "all sources" in str(error)
        assert error.attempted_sources == ["s0", "s1", "s2", "s3", "s4"]
        assert "error 4" in error.last_error
        assert all(not aggregator.health.is_healthy(f"s{i}") for i in range(5))

    @pytest.mark.asyncio
    async def test_all_sources_marked_unhealthy(self, aggregator):
        sources = [FakeSource(f"s{i}") for i in range(5)]
        for i, source in enumerate(sources):
            aggregator.add_data_source(f"s{i}", source, DataSourceConfig(f"S{i}", priority=i))
            aggregator.health.mark_unhealthy(f"s{i}", "down")

        with pytest.raises(AllSourcesExhaustedError) as exc_info:
            await aggregator.get_quote("AAPL")

        assert "AAPL" in str(exc_info.value)
        assert "all sources" in str(exc_info.value)
        assert all(source.calls == [] for source in sources)

    @pytest.mark.asyncio
    async def test_source_removed_during_failover(self, aggregator):
        second = FakeSource("b")

        class SlowFailingSource(FakeSource):
            async def get_quote(self, symbol):
                await asyncio.sleep(0)
                aggregator.remove_data_source("b")
                raise ProviderError("a", "down")

        aggregator.add_data_source("a", SlowFailingSource("a"), DataSourceConfig("A", priority=1))
        aggregator.add_data_source("b", second, DataSourceConfig("B", priority=2))

        with pytest.raises(AllSourcesExhaustedError) as exc_info:
            await aggregator.get_quote("AAPL")

        assert exc_info.value.attempted_sources == ["a"]
        assert second.calls == []
        assert "b" not in aggregator.get_usage_stats()
        assert aggregator._budgets.is_configured("b") is False

    @pytest.mark.asyncio
    async def test_removed_source_not_recorded_after_inflight_call(self, aggregator):
        class RemovedMidCall(FakeSource):
            async def get_quote(self, symbol):
                aggregator.remove_data_source("a")
                return await super().get_quote(symbol)

        aggregator.add_data_source("a", RemovedMidCall("a"), DataSourceConfig("A", priority=1))

        quote = await aggregator.get_quote("AAPL")

        assert quote.provider == "a"
        assert aggregator.health.get("a") is None

    @pytest.mark.asyncio
    async def test_no_sources_at_all(self, aggregator):
        with pytest.raises(AllSourcesExhaustedError) as exc_info:
            await aggregator.get_quote("AAPL")
        assert exc_info.value.attempted_sources == []

    @pytest.mark.asyncio
    async def test_historical_data_failover(self, aggregator):
        aggregator.add_data_source("a", FakeSource("a", fail=ProviderError("a", "x")), DataSourceConfig("A", 1))
        aggregator.add_data_source("b", FakeSource("b", price="7"), DataSourceConfig("B", 2))

        bars = await aggregator.get_historical_data("AAPL", date(2024, 3, 1))

        assert bars[0].close == Decimal("7")
        assert bars[0].provider == "b"

    @pytest.mark.asyncio
    async def test_unimplemented_source_falls_through(self, aggregator):
        aggregator.add_data_source("iex", UnimplementedSource("IEX Cloud", "iexcloud"), DataSourceConfig("IEX", 1))
        aggregator.add_data_source("b", FakeSource("b"), DataSourceConfig("B", 2))

        quote = await aggregator.get_quote("AAPL")

        assert quote.provider == "b"
        assert aggregator.health.is_healthy("iex") is False


class TestBudgets:
    """Tests for source budgets and provider quotas."""

    @pytest.mark.asyncio
    async def test_source_budget_skips_without_marking_unhealthy(self, aggregator):
        limited = FakeSource("limited")
        backup = FakeSource("backup")
        aggregator.add_data_source("limited", limited, DataSourceConfig("L", priority=1, rate_limit=2))
        aggregator.add_data_source("backup", backup, DataSourceConfig("B", priority=2))

        providers = [(await aggregator.get_quote("AAPL")).provider for _ in range(3)]

        assert providers == ["limited", "limited", "backup"]
        assert aggregator.health.is_healthy("limited") is True
        assert aggregator.get_usage_stats()["limited"]["requests"] == 2

    @pytest.mark.asyncio
    async def test_budget_recovers_after_a_minute(self, aggregator, clock):
        source = FakeSource("a")
        aggregator.add_data_source("a", source, DataSourceConfig("A", priority=1, rate_limit=1))

        await aggregator.get_quote("AAPL")
        with pytest.raises(AllSourcesExhaustedError):
            await aggregator.get_quote("AAPL")

        clock.advance(seconds=61)
        assert (await aggregator.get_quote("AAPL")).provider == "a"

    @pytest.mark.asyncio
    async def test_provider_quota_skips_and_stays_healthy(self, aggregator, rate_limiter):
        rate_limiter.configure(RateLimitConfig("metered", {Window.MINUTE: 1}))
        metered = FakeSource("a", rate_limiter=rate_limiter, provider="metered")
        backup = FakeSource("b")
        aggregator.add_data_source("a", metered, DataSourceConfig("A", priority=1))
        aggregator.add_data_source("b", backup, DataSourceConfig("B", priority=2))

        assert (await aggregator.get_quote("AAPL")).provider == "a"
        assert (await aggregator.get_quote("AAPL")).provider == "b"
        assert aggregator.health.is_healthy("a") is True

    @pytest.mark.asyncio
    async def test_quota_skip_not_listed_as_attempted(self, aggregator, rate_limiter):
        rate_limiter.configure(RateLimitConfig("metered", {Window.MINUTE: 1}))
        aggregator.add_data_source("a", FakeSource("a", rate_limiter=rate_limiter, provider="metered"),
                                   DataSourceConfig("A", priority=1))
        await rate_limiter.check_rate_limit("metered")

        with pytest.raises(AllSourcesExhaustedError) as exc_info:
            await aggregator.get_quote("AAPL")
        assert exc_info.value.attempted_sources == []

    def test_unconfigured_provider_rejected_at_registration(self, aggregator, rate_limiter):
        source = FakeSource("a", rate_limiter=rate_limiter, provider="nobody")

        with pytest.raises(UnconfiguredProviderError):
            aggregator.add_data_source("a", source, DataSourceConfig("A", priority=1))
        assert "a" not in aggregator.source_ids

    def test_invalid_config(self):
        with pytest.raises(ValueError):
            DataSourceConfig("A", priority=1, rate_limit=-1)
        with pytest.raises(ValueError):
            DataSourceConfig("A", priority=1, reliability=1.5)


class TestMerging:
    """Tests for search and news merging."""

    @pytest.mark.asyncio
    async def test_search_dedup_across_top_sources(self, aggregator):
        aggregator.add_data_source("a", FakeSource("a", tickers=["AAPL", "APLE"]), DataSourceConfig("A", 1))
        aggregator.add_data_source("b", FakeSource("b", tickers=["AAPL", "APPF"]), DataSourceConfig("B", 2))
        aggregator.add_data_source("c", FakeSource("c", tickers=["APPN"]), DataSourceConfig("C", 3))
        fourth = FakeSource("d", tickers=["NEVER"])
        aggregator.add_data_source("d", fourth, DataSourceConfig("D", 4))

        tickers = await aggregator.search_tickers("app")

        assert [t.symbol for t in tickers] == ["AAPL", "APLE", "APPF", "APPN"]
        assert tickers[0].provider == "a"
        assert fourth.calls == []

    @pytest.mark.asyncio
    async def test_search_result_cap(self, aggregator):
        many = [f"SYM{i}" for i in range(30)]
        second = FakeSource("b", tickers=["OTHER"])
        aggregator.add_data_source("a", FakeSource("a", tickers=many), DataSourceConfig("A", 1))
        aggregator.add_data_source("b", second, DataSourceConfig("B", 2))

        tickers = await aggregator.search_tickers("sym")

        assert len(tickers) == 20
        assert second.calls == []

    @pytest.mark.asyncio
    async def test_search_failure_swallowed(self, aggregator):
        aggregator.add_data_source("a", FakeSource("a", fail=ProviderError("a", "x")), DataSourceConfig("A", 1))
        aggregator.add_data_source("b", FakeSource("b", tickers=["MSFT"]), DataSourceConfig("B", 2))

        tickers = await aggregator.search_tickers("msft")

        assert [t.symbol for t in tickers] == ["MSFT"]
        assert aggregator.health.is_healthy("a") is False

    @pytest.mark.asyncio
    async def test_news_merged_dedup_and_sorted(self, aggregator):
        plain = FakeSource("plain")
        aggregator.add_data_source("plain", plain, DataSourceConfig("Plain", 1))
        aggregator.add_data_source("a", FakeSource("a", news=[article("u1", 9), article("u2", 11)]),
                                   DataSourceConfig("A", 2))
        aggregator.add_data_source("b", FakeSource("b", news=[article("u2", 11), article("u3", 10)]),
                                   DataSourceConfig("B", 3))

        news = await aggregator.get_news(["AAPL"])

        assert [a.url for a in news] == ["u2", "u3", "u1"]
        assert plain.calls == []
        assert aggregator.get_usage_stats()["plain"]["requests"] == 0


class TestBatchQuotes:
    """Tests for batched multi-symbol quotes."""

    @pytest.mark.asyncio
    async def test_batches_drop_failed_symbols(self, clock):
        aggregator = FreeDataAggregator(clock=clock, batch_size=10, batch_delay=0)
        aggregator.add_data_source("a", FakeSource("a"), DataSourceConfig("A", 1, rate_limit=0))

        symbols = [f"S{i}" for i in range(23)] + ["BAD1", "BAD2"]
        quotes = await aggregator.get_quotes(symbols)

        assert len(quotes) == 23
        assert {q.symbol for q in quotes} == {f"S{i}" for i in range(23)}


class TestHealth:
    """Tests for health reporting and probing."""

    @pytest.mark.asyncio
    async def test_fresh_sources_not_probed(self, aggregator):
        source = FakeSource("a")
        aggregator.add_data_source("a", source, DataSourceConfig("A", 1))

        report = await aggregator.get_sources_health()

        assert report["a"]["healthy"] is True
        assert report["a"]["kind"] == "live"
        assert report["a"]["config"].name == "A"
        assert source.calls == []

    @pytest.mark.asyncio
    async def test_stale_sources_probed(self, aggregator, clock):
        good = FakeSource("good")
        bad = FakeSource("bad", healthy=False)
        aggregator.add_data_source("good", good, DataSourceConfig("Good", 1))
        aggregator.add_data_source("bad", bad, DataSourceConfig("Bad", 2))

        clock.advance(minutes=6)
        report = await aggregator.get_sources_health()

        assert good.calls == ["is_healthy"]
        assert report["good"]["healthy"] is True
        assert report["good"]["last_check"] == clock.now
        assert report["bad"]["healthy"] is False
        assert report["bad"]["last_error"] == "Health probe failed"

    @pytest.mark.asyncio
    async def test_probe_recovers_unhealthy_source(self, aggregator, clock):
        source = FakeSource("a", fail=ProviderError("a", "blip"))
        aggregator.add_data_source("a", source, DataSourceConfig("A", 1))
        with pytest.raises(AllSourcesExhaustedError):
            await aggregator.get_quote("AAPL")

        assert await aggregator.probe_unhealthy_sources() == {}

        clock.advance(minutes=6)
        source.fail = None
        assert await aggregator.probe_unhealthy_sources() == {"a": True}
        assert (await aggregator.get_quote("AAPL")).provider == "a"

    @pytest.mark.asyncio
    async def test_probe_skipped_when_provider_quota_exhausted(self, aggregator, rate_limiter, clock):
        rate_limiter.configure(RateLimitConfig("metered", {Window.DAY: 1}))
        source = FakeSource("a", rate_limiter=rate_limiter, provider="metered")
        aggregator.add_data_source("a", source, DataSourceConfig("A", 1))
        aggregator.health.mark_unhealthy("a", "earlier failure")
        await rate_limiter.check_rate_limit("metered")

        clock.advance(minutes=6)
        assert await aggregator.probe_unhealthy_sources() == {}
        assert source.calls == []

    @pytest.mark.asyncio
    async def test_remove_and_close(self, aggregator):
        source = FakeSource("a")
        aggregator.add_data_source("a", source, DataSourceConfig("A", 1))
        other = FakeSource("b")
        aggregator.add_data_source("b", other, DataSourceConfig("B", 2))

        assert aggregator.remove_data_source("a") is source
        assert aggregator.source_ids == ["b"]
        assert "a" not in await aggregator.get_sources_health()

        await aggregator.close()
        assert other.closed is True

    @pytest.mark.asyncio
    async def test_usage_stats_reset_time(self, aggregator, clock):
        aggregator.add_data_source("a", FakeSource("a"), DataSourceConfig("A", 1))
        await aggregator.get_quote("AAPL")

        stats = aggregator.get_usage_stats()["a"]
        assert stats["requests"] == 1
        assert stats["reset_time"] == clock.now + timedelta(minutes=1)
