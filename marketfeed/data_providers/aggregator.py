"""
Free Data Aggregator

Combines several data sources behind one interface. Sources are tried in
priority order, skipping those that are disabled, unhealthy or out of
budget, and the first one that answers wins. Search and news merge the
answers of several sources.
"""
import asyncio
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Any, Awaitable, Callable, Optional, TypeVar
from loguru import logger

from marketfeed.data_providers.adapters.base import (
    BaseAdapter,
    Bar,
    NewsArticle,
    Quote,
    SourceKind,
    Ticker,
)
from marketfeed.data_providers.health_monitor import SourceHealthRegistry
from marketfeed.data_providers.rate_limiter import RateLimitConfig, RateLimiter, Window
from marketfeed.utils.exceptions import (
    AllSourcesExhaustedError,
    QuotaExceededError,
    UnconfiguredProviderError,
)


T = TypeVar('T')

# Returned by _call_source when a source was not called
_SKIPPED = object()


@dataclass
class DataSourceConfig:
    """Routing configuration for one source."""
    name: str
    priority: int  # Lower is preferred
    enabled: bool = True
    rate_limit: int = 60  # Requests per minute, 0 for unlimited
    reliability: float = 0.5  # 0-1, breaks priority ties

    def __post_init__(self) -> None:
        if self.rate_limit < 0:
            raise ValueError(f"rate_limit must not be negative: {self.rate_limit}")
        if not 0.0 <= self.reliability <= 1.0:
            raise ValueError(f"reliability must be between 0 and 1: {self.reliability}")

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "priority": self.priority,
            "enabled": self.enabled,
            "rate_limit": self.rate_limit,
            "reliability": self.reliability,
        }


class FreeDataAggregator:
    """
    Multi-source market data client with automatic failover.

    Every admitted call consumes one request from the source's own
    per-minute budget. Adapters additionally consume their provider's
    quota; a provider quota denial skips the source without marking it
    unhealthy. Any other failure marks the source unhealthy and moves on
    to the next one.

    Usage:
        aggregator = FreeDataAggregator()
        aggregator.add_data_source("yahoo", YFinanceAdapter(limiter), DataSourceConfig(
            name="Yahoo Finance", priority=1, rate_limit=2000, reliability=0.9,
        ))

        quote = await aggregator.get_quote("AAPL")
        quotes = await aggregator.get_quotes(["AAPL", "MSFT", "GOOGL"])
    """

    def __init__(
        self,
        health_registry: Optional[SourceHealthRegistry] = None,
        clock: Optional[Callable[[], datetime]] = None,
        batch_size: int = 10,
        batch_delay: float = 1.0,
        search_source_limit: int = 3,
        search_result_limit: int = 20,
        health_check_stale: timedelta = timedelta(minutes=5),
    ):
        self._clock = clock or datetime.now
        self.health = health_registry or SourceHealthRegistry(clock=self._clock)
        self.batch_size = batch_size
        self.batch_delay = batch_delay
        self.search_source_limit = search_source_limit
        self.search_result_limit = search_result_limit
        self.health_check_stale = health_check_stale

        self._sources: dict[str, BaseAdapter] = {}
        self._configs: dict[str, DataSourceConfig] = {}

        # Per-source minute budgets, independent of provider quotas
        self._budgets = RateLimiter(clock=self._clock)

    # ==================== Registration ====================

    def add_data_source(self, source_id: str, source: BaseAdapter, config: DataSourceConfig) -> None:
        """
        Register a source, replacing any previous one with the same id.

        Raises:
            UnconfiguredProviderError: If the source gates its calls through
                a rate limiter that has no quota for its provider
        """
        limiter = source.rate_limiter
        if source.kind == SourceKind.LIVE and limiter is not None and not limiter.is_configured(source.provider):
            raise UnconfiguredProviderError(source.provider)

        self._sources[source_id] = source
        self._configs[source_id] = config
        self._budgets.configure(RateLimitConfig(source_id, {Window.MINUTE: config.rate_limit}))
        self.health.register(source_id)

        logger.info(
            f"Registered data source: {source_id} ({config.name}, priority={config.priority}, "
            f"enabled={config.enabled}, kind={source.kind.value})"
        )

    def remove_data_source(self, source_id: str) -> Optional[BaseAdapter]:
        """Unregister a source. Returns it so the caller can close it."""
        source = self._sources.pop(source_id, None)
        self._configs.pop(source_id, None)
        self._budgets.remove(source_id)
        self.health.unregister(source_id)
        if source is not None:
            logger.info(f"Removed data source: {source_id}")
        return source

    def get_source(self, source_id: str) -> Optional[BaseAdapter]:
        return self._sources.get(source_id)

    def get_config(self, source_id: str) -> Optional[DataSourceConfig]:
        return self._configs.get(source_id)

    @property
    def source_ids(self) -> list[str]:
        return list(self._sources.keys())

    # ==================== Single-Result Operations ====================

    async def get_quote(self, symbol: str) -> Quote:
        """
        Get a quote from the best available source.

        Raises:
            AllSourcesExhaustedError: If no source could answer
        """
        return await self._first_success(
            "quote", symbol, lambda source: source.get_quote(symbol)
        )

    async def get_historical_data(
        self,
        symbol: str,
        start: date,
        end: Optional[date] = None,
    ) -> list[Bar]:
        """
        Get daily bars from the best available source.

        Raises:
            AllSourcesExhaustedError: If no source could answer
        """
        return await self._first_success(
            "historical data", symbol, lambda source: source.get_historical_data(symbol, start, end)
        )

    async def get_quotes(self, symbols: list[str]) -> list[Quote]:
        """
        Get quotes for many symbols.

        Symbols are fetched concurrently in batches with a pause between
        batches. Symbols that no source could answer are left out.
        """
        quotes: list[Quote] = []

        for i in range(0, len(symbols), self.batch_size):
            batch = symbols[i:i + self.batch_size]
            results = await asyncio.gather(*(self._quote_or_none(symbol) for symbol in batch))
            quotes.extend(quote for quote in results if quote is not None)

            if i + self.batch_size < len(symbols):
                await asyncio.sleep(self.batch_delay)

        return quotes

    async def _quote_or_none(self, symbol: str) -> Optional[Quote]:
        try:
            return await self.get_quote(symbol)
        except AllSourcesExhaustedError as e:
            logger.warning(f"Failed to get quote for {symbol}: {e}")
            return None

    async def _first_success(
        self,
        operation: str,
        symbol: str,
        call: Callable[[BaseAdapter], Awaitable[T]],
    ) -> T:
        """Try sources in order until one answers."""
        attempted: list[str] = []
        last_error: Optional[str] = None

        for source_id in self._get_sorted_available_sources():
            result = await self._call_source(source_id, operation, call)
            if result is _SKIPPED:
                continue

            attempted.append(source_id)
            ok, value = result
            if ok:
                return value
            last_error = value

        logger.error(f"Failed to get {operation} for {symbol} from all sources")
        raise AllSourcesExhaustedError(symbol, operation, attempted, last_error)

    # ==================== Merging Operations ====================

    async def search_tickers(self, query: str) -> list[Ticker]:
        """
        Search the top sources and merge their hits.

        Results are deduplicated by symbol and capped. A failing source is
        marked unhealthy and contributes nothing.
        """
        results: list[Ticker] = []
        seen: set[str] = set()
        used = 0

        for source_id in self._get_sorted_available_sources():
            if used >= self.search_source_limit:
                break

            outcome = await self._call_source(source_id, "search", lambda s: s.search_tickers(query))
            if outcome is _SKIPPED:
                continue
            used += 1

            ok, value = outcome
            if not ok:
                continue

            for ticker in value:
                if ticker.symbol not in seen:
                    seen.add(ticker.symbol)
                    results.append(ticker)

            if len(results) >= self.search_result_limit:
                break

        return results[:self.search_result_limit]

    async def get_news(self, symbols: list[str]) -> list[NewsArticle]:
        """Collect news from every news-capable source, newest first, one entry per URL."""
        articles: list[NewsArticle] = []
        seen_urls: set[str] = set()

        for source_id in self._get_sorted_available_sources():
            source = self._sources.get(source_id)
            if source is None or not source.supports_news:
                continue

            outcome = await self._call_source(source_id, "news", lambda s: s.get_news(symbols))
            if outcome is _SKIPPED:
                continue

            ok, value = outcome
            if not ok:
                continue

            for article in value:
                if article.url and article.url not in seen_urls:
                    seen_urls.add(article.url)
                    articles.append(article)

        articles.sort(key=lambda article: article.time_published, reverse=True)
        return articles

    # ==================== Health ====================

    async def get_sources_health(self) -> dict[str, dict[str, Any]]:
        """
        Health of every source.

        Sources not checked within ``health_check_stale`` are probed first.
        Never raises.
        """
        for source_id in list(self._sources):
            if self.health.needs_probe(source_id, self.health_check_stale):
                await self._probe(source_id)

        report = {}
        for source_id, source in list(self._sources.items()):
            health = self.health.get(source_id)
            config = self._configs.get(source_id)
            if health is None or config is None:
                continue
            report[source_id] = {
                "healthy": health.is_healthy,
                "last_check": health.last_check,
                "success_count": health.success_count,
                "failure_count": health.failure_count,
                "last_error": health.last_error,
                "kind": source.kind.value,
                "config": config,
            }
        return report

    async def probe_unhealthy_sources(self) -> dict[str, bool]:
        """Re-probe unhealthy sources whose last check is stale. Returns the probe results."""
        results = {}
        for source_id in self.health.unhealthy_sources():
            if source_id not in self._sources:
                continue
            if not self.health.needs_probe(source_id, self.health_check_stale):
                continue
            healthy = await self._probe(source_id)
            if healthy is not None:
                results[source_id] = healthy

        if results:
            recovered = [source_id for source_id, healthy in results.items() if healthy]
            logger.info(f"Probed {len(results)} unhealthy sources, recovered: {recovered or 'none'}")
        return results

    async def _probe(self, source_id: str) -> Optional[bool]:
        """Probe one source. Returns None when the probe was skipped."""
        source = self._sources.get(source_id)
        if source is None:
            return None

        # A probe would only be denied by an exhausted provider quota
        limiter = source.rate_limiter
        if limiter is not None and not limiter.can_proceed(source.provider):
            logger.debug(f"Skipping probe of {source_id}: provider quota exhausted")
            return None

        try:
            healthy = bool(await source.is_healthy())
            error = None
        except Exception as e:
            healthy = False
            error = str(e)

        if not self._is_registered(source_id, source):
            return None
        self.health.record_probe(source_id, healthy, error)
        return healthy

    # ==================== Usage ====================

    def get_usage_stats(self) -> dict[str, dict[str, Any]]:
        """Requests counted against each source's minute budget."""
        stats = {}
        for source_id in self._sources:
            usage = self._budgets.get_usage(source_id, Window.MINUTE)
            stats[source_id] = {
                "requests": usage.count,
                "reset_time": usage.reset_time,
            }
        return stats

    def sweep_expired(self) -> int:
        """Drop elapsed source budget counters."""
        return self._budgets.sweep_expired()

    async def close(self) -> None:
        """Close every source."""
        for source_id, source in self._sources.items():
            try:
                await source.close()
            except Exception as e:
                logger.error(f"Error closing source {source_id}: {e}")
        logger.info("Data aggregator closed")

    # ==================== Helpers ====================

    def _get_sorted_available_sources(self) -> list[str]:
        """Enabled, healthy sources by ascending priority then descending reliability."""
        available = [
            (source_id, config)
            for source_id, config in self._configs.items()
            if config.enabled and self.health.is_healthy(source_id)
        ]
        available.sort(key=lambda item: (item[1].priority, -item[1].reliability))
        return [source_id for source_id, _ in available]

    async def _call_source(
        self,
        source_id: str,
        operation: str,
        call: Callable[[BaseAdapter], Awaitable[T]],
    ):
        """
        Run ``call`` against one source with budget and health bookkeeping.

        Returns:
            _SKIPPED if the source was not called or was denied by its
            provider quota, else ``(True, value)`` or ``(False, error)``
        """
        if source_id not in self._sources:
            return _SKIPPED

        admission = await self._budgets.check_rate_limit(source_id)
        if not admission.allowed:
            logger.warning(f"Rate limit reached for {source_id}, skipping")
            return _SKIPPED

        # Removed while waiting for admission
        source = self._sources.get(source_id)
        if source is None:
            return _SKIPPED

        loop = asyncio.get_running_loop()
        start_time = loop.time()

        try:
            value = await call(source)
        except QuotaExceededError as e:
            logger.warning(f"Provider quota exhausted for {source_id}, skipping: {e}")
            return _SKIPPED
        except UnconfiguredProviderError:
            raise
        except Exception as e:
            error = str(e) or e.__class__.__name__
            logger.warning(f"Failed to get {operation} from {source_id}: {error}")
            if self._is_registered(source_id, source):
                self.health.mark_unhealthy(source_id, error)
            return False, error

        latency_ms = (loop.time() - start_time) * 1000
        if self._is_registered(source_id, source):
            self.health.mark_healthy(source_id, latency_ms)
        return True, value

    def _is_registered(self, source_id: str, source: BaseAdapter) -> bool:
        return self._sources.get(source_id) is source

