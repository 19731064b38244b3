"""
Market Data Service

Owns the rate limiter, cache, resilient call client, data aggregator and
maintenance scheduler, and manages their lifecycle. The application entry
point creates one instance and passes it to whatever needs market data.
"""
from datetime import datetime
from typing import Any, Callable, Optional
from loguru import logger

from marketfeed.config import Settings, settings as default_settings
from marketfeed.data_providers.aggregator import FreeDataAggregator
from marketfeed.data_providers.cache_manager import CacheConfig, CacheManager
from marketfeed.data_providers.provider_init import (
    create_aggregator,
    create_rate_limiter,
    get_provider_status,
)
from marketfeed.data_providers.rate_limited_client import RateLimitedAPIClient, RetryConfig
from marketfeed.data_providers.rate_limiter import RateLimiter
from marketfeed.scheduler.maintenance import MaintenanceScheduler


class MarketDataService:
    """
    Application-owned market data service.

    Usage:
        async with MarketDataService.create() as service:
            quote = await service.aggregator.get_quote("AAPL")

            result = await service.client.make_api_call(
                lambda: fetch_something(),
                provider="finnhub",
                endpoint="profile",
            )
    """

    def __init__(
        self,
        rate_limiter: RateLimiter,
        cache: CacheManager,
        client: RateLimitedAPIClient,
        aggregator: FreeDataAggregator,
        scheduler: Optional[MaintenanceScheduler] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or default_settings
        self.rate_limiter = rate_limiter
        self.cache = cache
        self.client = client
        self.aggregator = aggregator
        self.scheduler = scheduler
        self._started = False

    @classmethod
    def create(
        cls,
        settings: Optional[Settings] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> "MarketDataService":
        """Wire the default providers and sources from settings."""
        settings = settings or default_settings

        rate_limiter = create_rate_limiter(clock=clock)
        cache = CacheManager(CacheConfig(default_ttl_ms=settings.CACHE_TTL_MS), clock=clock)
        client = RateLimitedAPIClient(rate_limiter, cache, RetryConfig.from_settings(settings))
        aggregator = create_aggregator(settings, rate_limiter, clock=clock)

        scheduler = None
        if settings.ENABLE_MAINTENANCE_JOBS:
            scheduler = MaintenanceScheduler(timezone=settings.TIMEZONE)
            scheduler.register_maintenance_jobs(
                rate_limiter,
                cache,
                aggregator,
                sweep_interval_seconds=settings.SWEEP_INTERVAL_SECONDS,
                probe_interval_seconds=settings.HEALTH_PROBE_INTERVAL_SECONDS,
            )

        return cls(
            rate_limiter=rate_limiter,
            cache=cache,
            client=client,
            aggregator=aggregator,
            scheduler=scheduler,
            settings=settings,
        )

    @property
    def is_started(self) -> bool:
        return self._started

    async def start(self) -> None:
        """Open adapter sessions and start maintenance jobs."""
        if self._started:
            return

        logger.info(f"Starting {self.settings.APP_NAME} market data service...")

        for source_id in self.aggregator.source_ids:
            await self.aggregator.get_source(source_id).initialize()

        if self.scheduler:
            self.scheduler.start()

        self._started = True
        logger.info("Market data service started")

    async def close(self) -> None:
        """Stop maintenance jobs and close every source."""
        if not self._started:
            return

        if self.scheduler:
            self.scheduler.stop()

        await self.aggregator.close()
        self._started = False
        logger.info("Market data service stopped")

    async def __aenter__(self) -> "MarketDataService":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    def get_status(self) -> dict[str, Any]:
        """Quota, cache, cost and job status in one dictionary."""
        costs = self.rate_limiter.get_total_costs()
        return {
            "started": self._started,
            "providers": get_provider_status(self.rate_limiter),
            "sources": self.aggregator.get_usage_stats(),
            "cache": self.cache.get_stats(),
            "costs": {
                "total": float(costs["total"]),
                "providers": {name: float(cost) for name, cost in costs["providers"].items()},
            },
            "jobs": self.scheduler.get_jobs_status() if self.scheduler else None,
        }
