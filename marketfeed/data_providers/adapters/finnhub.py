"""
Finnhub Adapter

Provides access to the Finnhub REST API for quotes, daily candles,
symbol search and company news.

API Documentation: https://finnhub.io/docs/api
Free tier: 60 API calls/minute, real-time US stock quotes
"""
import asyncio
from datetime import datetime, date, timezone, timedelta
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


FINNHUB_BASE_URL = "https://finnhub.io/api/v1"
PROVIDER = "finnhub"

# Days of company news requested per symbol
NEWS_LOOKBACK_DAYS = 7


class FinnhubAdapter(BaseAdapter):
    """
    Finnhub data provider adapter.

    Features:
    - Real-time quotes
    - Daily candle data
    - Symbol search
    - Company news

    Usage:
        adapter = FinnhubAdapter("your_api_key", rate_limiter=limiter)
        await adapter.initialize()

        quote = await adapter.get_quote("AAPL")
        bars = await adapter.get_historical_data("AAPL", start_date, end_date)
    """

    supports_news = True

    def __init__(
        self,
        api_key: str,
        rate_limiter: Optional[RateLimiter] = None,
        timeout_seconds: float = 30.0,
        base_url: str = FINNHUB_BASE_URL,
    ):
        super().__init__(name="Finnhub", provider=PROVIDER, rate_limiter=rate_limiter)
        self.api_key = api_key
        self.base_url = base_url
        self.timeout_seconds = timeout_seconds
        self._session: Optional[aiohttp.ClientSession] = None

    async def initialize(self) -> None:
        """Initialize HTTP session."""
        if self._session is None:
            timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)
            self._session = aiohttp.ClientSession(timeout=timeout)
            logger.info("Finnhub adapter initialized")

    async def close(self) -> None:
        """Close HTTP session."""
        if self._session:
            await self._session.close()
            self._session = None
        logger.info("Finnhub adapter closed")

    async def is_healthy(self) -> bool:
        """Check API connectivity."""
        try:
            await self.get_quote("AAPL")
            return True
        except AuthenticationError:
            logger.error("Finnhub authentication failed")
            return False
        except Exception as e:
            logger.warning(f"Finnhub health check failed: {e}")
            return False

    async def _request(self, path: str, params: dict[str, Any]) -> Any:
        """GET a Finnhub endpoint and return the decoded JSON body."""
        if self._session is None:
            await self.initialize()

        url = f"{self.base_url}{path}"
        query = {**params, "token": self.api_key}

        try:
            async with self._session.get(url, params=query) as response:
                if response.status == 200:
                    return await response.json()
                elif response.status == 401:
                    raise AuthenticationError(PROVIDER)
                elif response.status == 429:
                    raise RateLimitError(PROVIDER, retry_after=60)
                else:
                    error_text = await response.text()
                    raise ProviderError(PROVIDER, f"API error {response.status}: {error_text}")

        except aiohttp.ClientError as e:
            raise ProviderError(PROVIDER, f"Connection error: {e}")
        except asyncio.TimeoutError:
            raise ProviderError(PROVIDER, f"Request to {path} timed out")

    # ==================== REST API Methods ====================

    async def get_quote(self, symbol: str) -> Quote:
        """Get latest quote for a symbol."""
        symbol = symbol.upper()
        await self._acquire("quote")

        data = await self._request("/quote", {"symbol": symbol})

        # Finnhub answers unknown symbols with an all-zero payload
        if not data or data.get("c") in (None, 0):
            raise DataNotAvailableError(PROVIDER, symbol, "quote")

        return self._parse_quote(symbol, data)

    async def get_historical_data(
        self,
        symbol: str,
        start: date,
        end: Optional[date] = None,
    ) -> list[Bar]:
        """Get daily candles."""
        symbol = symbol.upper()
        end = end or date.today()
        await self._acquire("candles")

        # Convert to Unix timestamps
        start_ts = int(datetime.combine(start, datetime.min.time(), tzinfo=timezone.utc).timestamp())
        end_ts = int(datetime.combine(end, datetime.max.time(), tzinfo=timezone.utc).timestamp())

        data = await self._request("/stock/candle", {
            "symbol": symbol,
            "resolution": "D",
            "from": start_ts,
            "to": end_ts,
        })

        if not data or data.get("s") == "no_data":
            return []
        if data.get("s") != "ok":
            raise ProviderError(PROVIDER, f"Unexpected candle status for {symbol}: {data.get('s')}")

        return self._parse_candles(symbol, data)

    async def search_tickers(self, query: str) -> list[Ticker]:
        """Search symbols."""
        await self._acquire("search")

        data = await self._request("/search", {"q": query})

        tickers = []
        for item in (data or {}).get("result", []):
            symbol = item.get("symbol")
            if not symbol:
                continue
            tickers.append(Ticker(
                symbol=symbol,
                name=item.get("description", ""),
                type=item.get("type") or None,
                provider=PROVIDER,
            ))
        return tickers

    async def get_news(self, symbols: list[str]) -> list[NewsArticle]:
        """Get company news for the last week, one request per symbol."""
        today = date.today()
        since = today - timedelta(days=NEWS_LOOKBACK_DAYS)

        articles = []
        for symbol in symbols:
            symbol = symbol.upper()
            await self._acquire("company-news")
            items = await self._request("/company-news", {
                "symbol": symbol,
                "from": since.isoformat(),
                "to": today.isoformat(),
            })
            for item in items or []:
                article = self._parse_news(symbol, item)
                if article is not None:
                    articles.append(article)
        return articles

    # ==================== Parsing Methods ====================

    def _parse_quote(self, symbol: str, data: dict[str, Any]) -> Quote:
        """Parse /quote response."""
        def dec(key: str) -> Optional[Decimal]:
            value = data.get(key)
            return Decimal(str(value)) if value is not None else None

        ts = data.get("t")
        timestamp = datetime.fromtimestamp(ts, tz=timezone.utc) if ts else datetime.now(timezone.utc)

        return Quote(
            symbol=symbol,
            price=Decimal(str(data["c"])),
            timestamp=timestamp,
            provider=PROVIDER,
            open=dec("o"),
            high=dec("h"),
            low=dec("l"),
            prev_close=dec("pc"),
            change=dec("d"),
            change_percent=dec("dp"),
        )

    def _parse_candles(self, symbol: str, data: dict[str, Any]) -> list[Bar]:
        """Parse /stock/candle column arrays into bars."""
        timestamps = data.get("t", [])
        opens = data.get("o", [])
        highs = data.get("h", [])
        lows = data.get("l", [])
        closes = data.get("c", [])
        volumes = data.get("v", [])

        bars = []
        for i, ts in enumerate(timestamps):
            try:
                bars.append(Bar(
                    symbol=symbol,
                    timestamp=datetime.fromtimestamp(ts, tz=timezone.utc),
                    open=Decimal(str(opens[i])),
                    high=Decimal(str(highs[i])),
                    low=Decimal(str(lows[i])),
                    close=Decimal(str(closes[i])),
                    volume=int(volumes[i]) if i < len(volumes) else 0,
                    provider=PROVIDER,
                ))
            except (IndexError, TypeError, ValueError) as e:
                logger.debug(f"Failed to parse Finnhub candle {i} for {symbol}: {e}")

        bars.sort(key=lambda bar: bar.timestamp)
        return bars

    def _parse_news(self, symbol: str, item: dict[str, Any]) -> Optional[NewsArticle]:
        url = item.get("url")
        if not url:
            return None

        ts = item.get("datetime")
        published = datetime.fromtimestamp(ts, tz=timezone.utc) if ts else datetime.now(timezone.utc)
        related = [s for s in (item.get("related") or "").split(",") if s]

        return NewsArticle(
            title=item.get("headline", ""),
            url=url,
            time_published=published,
            summary=item.get("summary", ""),
            source=item.get("source", ""),
            tickers=related or [symbol],
            provider=PROVIDER,
        )
