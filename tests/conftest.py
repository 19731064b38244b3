"""
marketfeed - Test Configuration
Shared fixtures and test configuration.
"""
import os
from datetime import datetime, timedelta
import pytest

# Set test environment before any settings are loaded
os.environ["APP_ENV"] = "testing"
os.environ["FINNHUB_API_KEY"] = ""
os.environ["ALPHA_VANTAGE_API_KEY"] = ""
os.environ["LOG_FILE"] = ""


class FakeClock:
    """Manually advanced clock, callable like ``datetime.now``."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


# =========================
# Clock Fixtures
# =========================

@pytest.fixture
def clock() -> FakeClock:
    """Clock starting on a weekday morning, mid-month."""
    return FakeClock(datetime(2024, 3, 15, 10, 0, 0))


# =========================
# Data Provider Fixtures
# =========================

@pytest.fixture
def rate_limiter(clock):
    """Empty rate limiter on the fake clock."""
    from marketfeed.data_providers.rate_limiter import RateLimiter
    return RateLimiter(clock=clock)


@pytest.fixture
def cache(clock):
    """Cache with the default five minute TTL on the fake clock."""
    from marketfeed.data_providers.cache_manager import CacheManager
    return CacheManager(clock=clock)


@pytest.fixture
def no_backoff():
    """Retry settings that never wait."""
    from marketfeed.data_providers.rate_limited_client import RetryConfig
    return RetryConfig(backoff_base_ms=0, backoff_max_ms=0, provider_cooldown_ms=0)


@pytest.fixture
def test_settings():
    """Settings with maintenance jobs off and no API keys."""
    from marketfeed.config import Settings
    return Settings(
        APP_ENV="testing",
        FINNHUB_API_KEY="",
        ALPHA_VANTAGE_API_KEY="",
        ENABLE_MAINTENANCE_JOBS=False,
        BATCH_DELAY_SECONDS=0,
    )
