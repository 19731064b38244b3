"""
Data Providers Package

Quota tracking, response caching, the resilient call client, source
health tracking and the multi-source aggregator.
"""
from marketfeed.data_providers.rate_limiter import (
    RateLimiter,
    RateLimitConfig,
    RateLimitResult,
    UsageStats,
    CallPriority,
    Window,
)
from marketfeed.data_providers.cache_manager import CacheManager, CacheConfig, CacheEntry
from marketfeed.data_providers.rate_limited_client import (
    RateLimitedAPIClient,
    APICallOptions,
    APICallResult,
    RetryConfig,
    NO_FALLBACK,
)
from marketfeed.data_providers.health_monitor import SourceHealthRegistry, SourceHealth
from marketfeed.data_providers.aggregator import FreeDataAggregator, DataSourceConfig

__all__ = [
    # Rate Limiter
    "RateLimiter",
    "RateLimitConfig",
    "RateLimitResult",
    "UsageStats",
    "CallPriority",
    "Window",
    # Cache Manager
    "CacheManager",
    "CacheConfig",
    "CacheEntry",
    # Rate-Limited Client
    "RateLimitedAPIClient",
    "APICallOptions",
    "APICallResult",
    "RetryConfig",
    "NO_FALLBACK",
    # Health
    "SourceHealthRegistry",
    "SourceHealth",
    # Aggregator
    "FreeDataAggregator",
    "DataSourceConfig",
]
