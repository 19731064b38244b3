"""
Provider Initialization Module

Default provider quotas and source routing table, plus the helpers that
turn them into a configured rate limiter and a populated aggregator.
"""
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, Optional
from loguru import logger

from marketfeed.config import Settings
from marketfeed.data_providers.aggregator import DataSourceConfig, FreeDataAggregator
from marketfeed.data_providers.adapters.base import BaseAdapter
from marketfeed.data_providers.adapters.alpha_vantage import AlphaVantageAdapter
from marketfeed.data_providers.adapters.finnhub import FinnhubAdapter
from marketfeed.data_providers.adapters.unimplemented import UnimplementedSource
from marketfeed.data_providers.adapters.yfinance_adapter import YFinanceAdapter
from marketfeed.data_providers.rate_limiter import (
    CallPriority,
    RateLimitConfig,
    RateLimiter,
    Window,
)


# Provider quotas (free tiers unless a cost is set)
PROVIDER_RATE_LIMITS: dict[str, RateLimitConfig] = {
    "alphavantage": RateLimitConfig(
        provider="alphavantage",
        limits={Window.MINUTE: 5, Window.DAY: 500},
        priority=CallPriority.MEDIUM,
    ),
    "finnhub": RateLimitConfig(
        provider="finnhub",
        limits={Window.SECOND: 1, Window.MINUTE: 60, Window.DAY: 1000},
        priority=CallPriority.HIGH,
    ),
    "iexcloud": RateLimitConfig(
        provider="iexcloud",
        limits={Window.SECOND: 10, Window.MINUTE: 100, Window.MONTH: 500000},
        priority=CallPriority.HIGH,
    ),
    "yahoo": RateLimitConfig(
        provider="yahoo",
        limits={Window.SECOND: 2, Window.MINUTE: 10, Window.HOUR: 100},  # Unofficial, keep conservative
        priority=CallPriority.LOW,
    ),
    "polygon": RateLimitConfig(
        provider="polygon",
        limits={Window.SECOND: 5, Window.MINUTE: 100, Window.DAY: 10000},
        cost=Decimal("0.003"),
        priority=CallPriority.HIGH,
    ),
    "alpaca": RateLimitConfig(
        provider="alpaca",
        limits={Window.SECOND: 5, Window.MINUTE: 200, Window.DAY: 10000},
        priority=CallPriority.HIGH,
    ),
}


# Source routing table. Lower priority number is tried first.
DATA_SOURCE_DEFAULTS: dict[str, DataSourceConfig] = {
    "yahoo": DataSourceConfig(name="Yahoo Finance", priority=1, rate_limit=2000, reliability=0.9),
    "alphavantage": DataSourceConfig(name="Alpha Vantage", priority=2, rate_limit=5, reliability=0.8),
    "iex": DataSourceConfig(name="IEX Cloud", priority=3, rate_limit=100, reliability=0.85),
    "finnhub": DataSourceConfig(name="Finnhub", priority=4, rate_limit=60, reliability=0.75),
    "twelvedata": DataSourceConfig(name="Twelve Data", priority=5, rate_limit=8, reliability=0.7),
}


def create_rate_limiter(
    overrides: Optional[dict[str, RateLimitConfig]] = None,
    clock: Optional[Callable[[], datetime]] = None,
) -> RateLimiter:
    """Build a rate limiter holding the default provider quotas, with optional replacements."""
    configs = {**PROVIDER_RATE_LIMITS, **(overrides or {})}
    return RateLimiter(configs=configs.values(), clock=clock)


def _copy_config(source_id: str, enabled: Optional[bool] = None) -> DataSourceConfig:
    default = DATA_SOURCE_DEFAULTS[source_id]
    return DataSourceConfig(
        name=default.name,
        priority=default.priority,
        enabled=default.enabled if enabled is None else enabled,
        rate_limit=default.rate_limit,
        reliability=default.reliability,
    )


def create_default_sources(
    settings: Settings,
    rate_limiter: RateLimiter,
) -> list[tuple[str, BaseAdapter, DataSourceConfig]]:
    """
    Build the default sources.

    Sources that need an API key are registered disabled when the key is
    missing, so they show up in health reports without being routed to.

    Returns:
        List of (source_id, adapter, config)
    """
    timeout = settings.PROVIDER_TIMEOUT_SECONDS

    sources: list[tuple[str, BaseAdapter, DataSourceConfig]] = [
        ("yahoo", YFinanceAdapter(rate_limiter=rate_limiter), _copy_config("yahoo")),
    ]

    if not settings.ALPHA_VANTAGE_API_KEY:
        logger.warning("ALPHA_VANTAGE_API_KEY not set, Alpha Vantage source disabled")
    sources.append((
        "alphavantage",
        AlphaVantageAdapter(settings.ALPHA_VANTAGE_API_KEY, rate_limiter=rate_limiter, timeout_seconds=timeout),
        _copy_config("alphavantage", enabled=bool(settings.ALPHA_VANTAGE_API_KEY)),
    ))

    sources.append(("iex", UnimplementedSource("IEX Cloud", "iexcloud"), _copy_config("iex")))

    if not settings.FINNHUB_API_KEY:
        logger.warning("FINNHUB_API_KEY not set, Finnhub source disabled")
    sources.append((
        "finnhub",
        FinnhubAdapter(settings.FINNHUB_API_KEY, rate_limiter=rate_limiter, timeout_seconds=timeout),
        _copy_config("finnhub", enabled=bool(settings.FINNHUB_API_KEY)),
    ))

    sources.append(("twelvedata", UnimplementedSource("Twelve Data", "twelvedata"), _copy_config("twelvedata")))

    return sources


def create_aggregator(
    settings: Settings,
    rate_limiter: RateLimiter,
    clock: Optional[Callable[[], datetime]] = None,
) -> FreeDataAggregator:
    """Build an aggregator from settings and register the default sources."""
    aggregator = FreeDataAggregator(
        clock=clock,
        batch_size=settings.BATCH_SIZE,
        batch_delay=settings.BATCH_DELAY_SECONDS,
        search_source_limit=settings.SEARCH_SOURCE_LIMIT,
        search_result_limit=settings.SEARCH_RESULT_LIMIT,
        health_check_stale=timedelta(seconds=settings.HEALTH_CHECK_STALE_SECONDS),
    )

    for source_id, source, config in create_default_sources(settings, rate_limiter):
        aggregator.add_data_source(source_id, source, config)

    enabled = [source_id for source_id in aggregator.source_ids if aggregator.get_config(source_id).enabled]
    logger.info(f"Data aggregator ready with sources: {enabled}")
    return aggregator


def get_provider_status(rate_limiter: RateLimiter) -> dict:
    """Get quota status of all configured providers."""
    return {
        provider: rate_limiter.get_stats(provider)
        for provider in rate_limiter.providers
    }
