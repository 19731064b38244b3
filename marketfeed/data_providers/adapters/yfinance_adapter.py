"""
yfinance Adapter

Provides access to Yahoo Finance data via the yfinance library.
Free access but unofficial, so calls are gated by a conservative quota.

Note: yfinance is a scraping wrapper, use responsibly.
"""
from datetime import datetime, date, timezone, timedelta
from decimal import Decimal
from typing import Optional, Any
import asyncio
from concurrent.futures import ThreadPoolExecutor
import yfinance as yf
from loguru import logger

from marketfeed.data_providers.adapters.base import (
    BaseAdapter,
    Bar,
    Quote,
    Ticker,
)
from marketfeed.data_providers.rate_limiter import RateLimiter
from marketfeed.utils.exceptions import DataNotAvailableError, ProviderError


PROVIDER = "yahoo"
HEALTH_CHECK_SYMBOL = "AAPL"


def _decimal(value: Any) -> Optional[Decimal]:
    if value is None:
        return None
    try:
        result = Decimal(str(value))
    except (ArithmeticError, ValueError):
        return None
    if result.is_nan() or result == 0:
        return None
    return result


class YFinanceAdapter(BaseAdapter):
    """
    Yahoo Finance data source.

    Features:
    - Delayed quotes for global markets
    - Daily historical bars
    - Symbol search

    The yfinance calls are blocking, so they run in a small thread pool.

    Usage:
        adapter = YFinanceAdapter(rate_limiter=limiter)
        quote = await adapter.get_quote("AAPL")
        bars = await adapter.get_historical_data("MSFT", start, end)
    """

    def __init__(
        self,
        rate_limiter: Optional[RateLimiter] = None,
        max_workers: int = 5,
    ):
        super().__init__(name="Yahoo Finance", provider=PROVIDER, rate_limiter=rate_limiter)
        self._executor = ThreadPoolExecutor(max_workers=max_workers)

    async def close(self) -> None:
        """Close executor."""
        self._executor.shutdown(wait=False)
        logger.info("yfinance adapter closed")

    async def is_healthy(self) -> bool:
        """Check yfinance availability with a known-good symbol."""
        try:
            await self.get_quote(HEALTH_CHECK_SYMBOL)
            return True
        except Exception as e:
            logger.warning(f"yfinance health check failed: {e}")
            return False

    async def _run_sync(self, func):
        """Run synchronous yfinance function in executor."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, func)

    # ==================== Quote Methods ====================

    async def get_quote(self, symbol: str) -> Quote:
        """Get latest quote for a symbol."""
        symbol = symbol.upper()
        await self._acquire("quote")

        try:
            info = await self._run_sync(lambda: yf.Ticker(symbol).fast_info)
        except Exception as e:
            raise ProviderError(PROVIDER, f"Error fetching quote for {symbol}: {e}")

        if info is None:
            raise DataNotAvailableError(PROVIDER, symbol, "quote")

        return self._parse_fast_info(symbol, info)

    # ==================== Historical Methods ====================

    async def get_historical_data(
        self,
        symbol: str,
        start: date,
        end: Optional[date] = None,
    ) -> list[Bar]:
        """Get daily bars for a symbol."""
        symbol = symbol.upper()
        end = end or date.today()
        await self._acquire("historical")

        def fetch_history():
            return yf.Ticker(symbol).history(
                start=start.isoformat(),
                end=(end + timedelta(days=1)).isoformat(),
                interval="1d",
                auto_adjust=True,
            )

        try:
            df = await self._run_sync(fetch_history)
        except Exception as e:
            raise ProviderError(PROVIDER, f"Error fetching history for {symbol}: {e}")

        if df is None or df.empty:
            return []

        bars = []
        for idx, row in df.iterrows():
            try:
                timestamp = idx.to_pydatetime() if hasattr(idx, "to_pydatetime") else idx
                if timestamp.tzinfo is None:
                    timestamp = timestamp.replace(tzinfo=timezone.utc)

                volume = int(row.get("Volume", 0) or 0)
                bars.append(Bar(
                    symbol=symbol,
                    timestamp=timestamp,
                    open=Decimal(str(row.get("Open", 0))),
                    high=Decimal(str(row.get("High", 0))),
                    low=Decimal(str(row.get("Low", 0))),
                    close=Decimal(str(row.get("Close", 0))),
                    volume=volume,
                    provider=PROVIDER,
                ))
            except (TypeError, ValueError, ArithmeticError) as e:
                logger.warning(f"Failed to parse bar for {symbol}: {e}")

        bars.sort(key=lambda bar: bar.timestamp)
        return bars

    # ==================== Search Methods ====================

    async def search_tickers(self, query: str) -> list[Ticker]:
        """Search symbols through Yahoo's search endpoint."""
        await self._acquire("search")

        try:
            hits = await self._run_sync(lambda: yf.Search(query, max_results=20).quotes)
        except Exception as e:
            raise ProviderError(PROVIDER, f"Error searching '{query}': {e}")

        tickers = []
        for hit in hits or []:
            symbol = hit.get("symbol")
            if not symbol:
                continue
            tickers.append(Ticker(
                symbol=symbol,
                name=hit.get("longname") or hit.get("shortname") or "",
                exchange=hit.get("exchDisp") or hit.get("exchange"),
                type=hit.get("quoteType"),
                provider=PROVIDER,
            ))
        return tickers

    # ==================== Parsing Methods ====================

    def _parse_fast_info(self, symbol: str, info) -> Quote:
        """Parse fast_info to Quote."""
        last_price = _decimal(getattr(info, "last_price", None))
        if last_price is None:
            raise DataNotAvailableError(PROVIDER, symbol, "quote")

        prev_close = _decimal(getattr(info, "previous_close", None))
        change = last_price - prev_close if prev_close else None
        change_pct = (change / prev_close * 100) if change is not None and prev_close else None

        volume = getattr(info, "last_volume", None)

        return Quote(
            symbol=symbol,
            price=last_price,
            timestamp=datetime.now(timezone.utc),
            provider=PROVIDER,
            open=_decimal(getattr(info, "open", None)),
            high=_decimal(getattr(info, "day_high", None)),
            low=_decimal(getattr(info, "day_low", None)),
            prev_close=prev_close,
            volume=int(volume) if volume else None,
            change=change,
            change_percent=change_pct,
            currency=getattr(info, "currency", None) or "USD",
        )
