"""
Alpha Vantage Adapter

Provides access to Alpha Vantage API for quotes, daily series, symbol
search and news sentiment.

Free tier: 5 requests/minute, 500 requests/day.

API Documentation: https://www.alphavantage.co/documentation/
"""
import asyncio
from datetime import datetime, date, timezone
from decimal import Decimal
from typing import Optional, Any
import aiohttp
from loguru import logger

from marketfeed.data_providers.adapters.base import (
    BaseAdapter,
    Bar,
    NewsArticle,
    Quote,
    Ticker,
)
from marketfeed.data_providers.rate_limiter import RateLimiter
from marketfeed.utils.exceptions import (
    AuthenticationError,
    DataNotAvailableError,
    ProviderError,
    RateLimitError,
)


ALPHA_VANTAGE_BASE_URL = "https://www.alphavantage.co/query"
PROVIDER = "alphavantage"

# Alpha Vantage reports throttling inside a 200 response
THROTTLE_KEYS = ("Note", "Information")


class AlphaVantageAdapter(BaseAdapter):
    """
    Alpha Vantage data provider adapter.

    Limitations:
    - Strict rate limiting (5 req/min free)
    - One symbol per request

    Usage:
        adapter = AlphaVantageAdapter("your_api_key", rate_limiter=limiter)
        await adapter.initialize()

        quote = await adapter.get_quote("AAPL")
        bars = await adapter.get_historical_data("MSFT", start_date, end_date)
    """

    supports_news = True

    def __init__(
        self,
        api_key: str,
        rate_limiter: Optional[RateLimiter] = None,
        timeout_seconds: float = 30.0,
        base_url: str = ALPHA_VANTAGE_BASE_URL,
    ):
        super().__init__(name="Alpha Vantage", provider=PROVIDER, rate_limiter=rate_limiter)
        self.api_key = api_key
        self.base_url = base_url
        self.timeout_seconds = timeout_seconds
        self._session: Optional[aiohttp.ClientSession] = None

    async def initialize(self) -> None:
        """Initialize HTTP session."""
        if self._session is None:
            timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)
            self._session = aiohttp.ClientSession(timeout=timeout)
            logger.info("Alpha Vantage adapter initialized")

    async def close(self) -> None:
        """Close HTTP session."""
        if self._session:
            await self._session.close()
            self._session = None
        logger.info("Alpha Vantage adapter closed")

    async def is_healthy(self) -> bool:
        """Check API connectivity."""
        try:
            await self.get_quote("IBM")
            return True
        except Exception as e:
            logger.error(f"Alpha Vantage health check failed: {e}")
            return False

    async def _request(self, params: dict[str, Any]) -> dict[str, Any]:
        """Query the single Alpha Vantage endpoint and return the decoded body."""
        if self._session is None:
            await self.initialize()

        query = {**params, "apikey": self.api_key}

        try:
            async with self._session.get(self.base_url, params=query) as response:
                if response.status == 401:
                    raise AuthenticationError(PROVIDER)
                if response.status == 429:
                    raise RateLimitError(PROVIDER, retry_after=60)
                if response.status != 200:
                    raise ProviderError(PROVIDER, f"API error {response.status}")

                data = await response.json()

        except aiohttp.ClientError as e:
            raise ProviderError(PROVIDER, f"Connection error: {e}")
        except asyncio.TimeoutError:
            raise ProviderError(PROVIDER, f"{params.get('function')} request timed out")

        if any(key in data for key in THROTTLE_KEYS):
            raise RateLimitError(PROVIDER, retry_after=60)
        return data

    # ==================== Quote Methods ====================

    async def get_quote(self, symbol: str) -> Quote:
        """Get real-time quote for a symbol."""
        symbol = symbol.upper()
        await self._acquire("GLOBAL_QUOTE")

        data = await self._request({"function": "GLOBAL_QUOTE", "symbol": symbol})

        if "Error Message" in data:
            raise DataNotAvailableError(PROVIDER, symbol, "quote")

        quote_data = data.get("Global Quote", {})
        if not quote_data or not quote_data.get("05. price"):
            raise DataNotAvailableError(PROVIDER, symbol, "quote")

        return self._parse_quote(symbol, quote_data)

    # ==================== Historical Methods ====================

    async def get_historical_data(
        self,
        symbol: str,
        start: date,
        end: Optional[date] = None,
    ) -> list[Bar]:
        """Get daily bars between ``start`` and ``end`` inclusive."""
        symbol = symbol.upper()
        end = end or date.today()
        await self._acquire("TIME_SERIES_DAILY")

        # Compact output holds the last 100 days
        outputsize = "compact" if (date.today() - start).days <= 100 else "full"
        data = await self._request({
            "function": "TIME_SERIES_DAILY",
            "symbol": symbol,
            "outputsize": outputsize,
        })

        if "Error Message" in data:
            raise DataNotAvailableError(PROVIDER, symbol, "historical")

        time_series = data.get("Time Series (Daily)", {})

        bars = []
        for date_str, values in time_series.items():
            try:
                bar_date = datetime.strptime(date_str, "%Y-%m-%d").replace(tzinfo=timezone.utc)
                if bar_date.date() < start or bar_date.date() > end:
                    continue
                bars.append(self._parse_bar(symbol, bar_date, values))
            except (KeyError, TypeError, ValueError, ArithmeticError) as e:
                logger.debug(f"Failed to parse bar: {e}")

        bars.sort(key=lambda x: x.timestamp)
        return bars

    # ==================== Search Methods ====================

    async def search_tickers(self, query: str) -> list[Ticker]:
        """Search for symbols."""
        await self._acquire("SYMBOL_SEARCH")

        data = await self._request({"function": "SYMBOL_SEARCH", "keywords": query})

        tickers = []
        for item in data.get("bestMatches", []):
            symbol = item.get("1. symbol")
            if not symbol:
                continue
            tickers.append(Ticker(
                symbol=symbol,
                name=item.get("2. name", ""),
                type=item.get("3. type"),
                region=item.get("4. region"),
                currency=item.get("8. currency"),
                provider=PROVIDER,
            ))
        return tickers

    # ==================== News Methods ====================

    async def get_news(self, symbols: list[str]) -> list[NewsArticle]:
        """Get news with sentiment for the given symbols in one request."""
        await self._acquire("NEWS_SENTIMENT")

        data = await self._request({
            "function": "NEWS_SENTIMENT",
            "tickers": ",".join(s.upper() for s in symbols),
        })

        articles = []
        for item in data.get("feed", []):
            article = self._parse_news(item)
            if article is not None:
                articles.append(article)
        return articles

    # ==================== Parsing Methods ====================

    def _parse_quote(self, symbol: str, data: dict[str, Any]) -> Quote:
        """Parse Global Quote response."""
        def dec(key: str) -> Optional[Decimal]:
            value = data.get(key)
            return Decimal(str(value)) if value else None

        change_pct_str = (data.get("10. change percent") or "").replace("%", "")

        return Quote(
            symbol=(data.get("01. symbol") or symbol).upper(),
            price=Decimal(str(data["05. price"])),
            timestamp=datetime.now(timezone.utc),
            provider=PROVIDER,
            open=dec("02. open"),
            high=dec("03. high"),
            low=dec("04. low"),
            prev_close=dec("08. previous close"),
            volume=int(data.get("06. volume", 0) or 0),
            change=dec("09. change"),
            change_percent=Decimal(change_pct_str) if change_pct_str else None,
        )

    def _parse_bar(self, symbol: str, bar_date: datetime, values: dict[str, Any]) -> Bar:
        return Bar(
            symbol=symbol,
            timestamp=bar_date,
            open=Decimal(values["1. open"]),
            high=Decimal(values["2. high"]),
            low=Decimal(values["3. low"]),
            close=Decimal(values["4. close"]),
            volume=int(values.get("5. volume", 0)),
            provider=PROVIDER,
        )

    def _parse_news(self, item: dict[str, Any]) -> Optional[NewsArticle]:
        url = item.get("url")
        if not url:
            return None

        try:
            published = datetime.strptime(item.get("time_published", ""), "%Y%m%dT%H%M%S")
            published = published.replace(tzinfo=timezone.utc)
        except ValueError:
            published = datetime.now(timezone.utc)

        score = item.get("overall_sentiment_score")

        return NewsArticle(
            title=item.get("title", ""),
            url=url,
            time_published=published,
            summary=item.get("summary", ""),
            source=item.get("source", ""),
            authors=list(item.get("authors") or []),
            tickers=[t.get("ticker") for t in item.get("ticker_sentiment", []) if t.get("ticker")],
            sentiment_score=float(score) if score is not None else None,
            provider=PROVIDER,
        )
