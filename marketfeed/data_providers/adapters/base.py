"""
Base Data Source Interface

Defines the abstract interface that every data source adapter implements
and the normalized records they return.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, date
from decimal import Decimal
from enum import Enum
from typing import Optional, Any
import asyncio
from loguru import logger

from marketfeed.data_providers.rate_limiter import RateLimiter
from marketfeed.utils.exceptions import (
    QuotaExceededError,
    SourceNotImplementedError,
    UnconfiguredProviderError,
)


class SourceKind(str, Enum):
    """Kinds of data source. Unimplemented sources fail fast on every call."""
    LIVE = "live"
    UNIMPLEMENTED = "unimplemented"


def _num(value: Optional[Decimal]) -> Optional[float]:
    return float(value) if value is not None else None


@dataclass
class Quote:
    """Normalized quote data structure."""
    symbol: str
    price: Decimal
    timestamp: datetime = field(default_factory=datetime.utcnow)
    provider: str = ""

    open: Optional[Decimal] = None
    high: Optional[Decimal] = None
    low: Optional[Decimal] = None
    prev_close: Optional[Decimal] = None
    volume: Optional[int] = None

    # Change metrics
    change: Optional[Decimal] = None
    change_percent: Optional[Decimal] = None

    currency: str = "USD"

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "symbol": self.symbol,
            "price": float(self.price),
            "timestamp": self.timestamp.isoformat(),
            "provider": self.provider,
            "open": _num(self.open),
            "high": _num(self.high),
            "low": _num(self.low),
            "prev_close": _num(self.prev_close),
            "volume": self.volume,
            "change": _num(self.change),
            "change_percent": _num(self.change_percent),
            "currency": self.currency,
        }


@dataclass
class Bar:
    """Normalized daily OHLCV bar."""
    symbol: str
    timestamp: datetime
    open: Decimal
    high: Decimal
    low: Decimal
    close: Decimal
    volume: int
    provider: str = ""

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "symbol": self.symbol,
            "timestamp": self.timestamp.isoformat(),
            "open": float(self.open),
            "high": float(self.high),
            "low": float(self.low),
            "close": float(self.close),
            "volume": self.volume,
            "provider": self.provider,
        }


@dataclass
class Ticker:
    """A symbol search hit."""
    symbol: str
    name: str = ""
    exchange: Optional[str] = None
    type: Optional[str] = None
    region: Optional[str] = None
    currency: Optional[str] = None
    provider: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "symbol": self.symbol,
            "name": self.name,
            "exchange": self.exchange,
            "type": self.type,
            "region": self.region,
            "currency": self.currency,
            "provider": self.provider,
        }


@dataclass
class NewsArticle:
    """A news item. Articles are identified by ``url`` when merging sources."""
    title: str
    url: str
    time_published: datetime
    summary: str = ""
    source: str = ""
    authors: list[str] = field(default_factory=list)
    tickers: list[str] = field(default_factory=list)
    sentiment_score: Optional[float] = None
    provider: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "title": self.title,
            "url": self.url,
            "time_published": self.time_published.isoformat(),
            "summary": self.summary,
            "source": self.source,
            "authors": list(self.authors),
            "tickers": list(self.tickers),
            "sentiment_score": self.sentiment_score,
            "provider": self.provider,
        }


class BaseAdapter(ABC):
    """
    Abstract base class for all data source adapters.

    Each adapter must implement:
    - get_quote(): Latest quote for a symbol
    - get_historical_data(): Daily bars between two dates
    - search_tickers(): Symbol search
    - is_healthy(): Cheap probe used by health checks

    Adapters that call a metered provider gate their own I/O through the
    shared RateLimiter under ``provider``; a denial raises
    QuotaExceededError so the aggregator skips the source instead of
    marking it unhealthy.
    """

    kind: SourceKind = SourceKind.LIVE
    supports_news: bool = False

    def __init__(
        self,
        name: str,
        provider: str,
        rate_limiter: Optional[RateLimiter] = None,
    ):
        self.name = name
        self.provider = provider
        self.rate_limiter = rate_limiter

    async def initialize(self) -> None:
        """Create sessions or clients. Default: nothing to do."""

    async def close(self) -> None:
        """Clean up resources. Default: nothing to do."""

    @abstractmethod
    async def is_healthy(self) -> bool:
        """Check if the provider is reachable. Must not raise."""

    @abstractmethod
    async def get_quote(self, symbol: str) -> Quote:
        """
        Get the latest quote for a single symbol.

        Raises:
            ProviderError: If the request fails
            QuotaExceededError: If the provider's local budget is exhausted
        """

    async def get_quotes(self, symbols: list[str]) -> list[Quote]:
        """Get quotes for several symbols. Symbols that fail are skipped."""
        results = await asyncio.gather(
            *(self.get_quote(symbol) for symbol in symbols),
            return_exceptions=True,
        )
        quotes = []
        for symbol, result in zip(symbols, results):
            if isinstance(result, Exception):
                logger.warning(f"{self.name}: failed to get quote for {symbol}: {result}")
                continue
            quotes.append(result)
        return quotes

    @abstractmethod
    async def get_historical_data(
        self,
        symbol: str,
        start: date,
        end: Optional[date] = None,
    ) -> list[Bar]:
        """Get daily bars sorted by timestamp."""

    @abstractmethod
    async def search_tickers(self, query: str) -> list[Ticker]:
        """Search symbols matching ``query``."""

    async def get_news(self, symbols: list[str]) -> list[NewsArticle]:
        """Get recent news for symbols. Only sources with ``supports_news`` override this."""
        raise SourceNotImplementedError(self.provider, "get_news")

    # Helper methods
    async def _acquire(self, endpoint: str) -> None:
        """Consume one call from the provider's quota or raise."""
        if self.rate_limiter is None:
            return

        result = await self.rate_limiter.check_rate_limit(self.provider, endpoint)
        if result.allowed:
            return

        if not self.rate_limiter.is_configured(self.provider):
            raise UnconfiguredProviderError(self.provider)

        raise QuotaExceededError(
            self.provider,
            window=result.usage.period.value,
            wait_time_ms=result.wait_time,
            reason=result.reason,
        )

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__}(name={self.name}, provider={self.provider})>"
