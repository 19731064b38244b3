"""
Unimplemented Source

Placeholder for providers that are registered in the source table but
have no adapter yet. Every call raises immediately and health probes
report the source as down, so nothing synthetic ever reaches callers.
"""
from datetime import date
from typing import Optional

from marketfeed.data_providers.adapters.base import (
    BaseAdapter,
    Bar,
    NewsArticle,
    Quote,
    SourceKind,
    Ticker,
)
from marketfeed.utils.exceptions import SourceNotImplementedError


class UnimplementedSource(BaseAdapter):
    """A source that fails fast on every operation."""

    kind = SourceKind.UNIMPLEMENTED

    def __init__(self, name: str, provider: str):
        super().__init__(name=name, provider=provider)

    async def is_healthy(self) -> bool:
        return False

    async def get_quote(self, symbol: str) -> Quote:
        raise SourceNotImplementedError(self.provider, "get_quote")

    async def get_quotes(self, symbols: list[str]) -> list[Quote]:
        raise SourceNotImplementedError(self.provider, "get_quotes")

    async def get_historical_data(
        self,
        symbol: str,
        start: date,
        end: Optional[date] = None,
    ) -> list[Bar]:
        raise SourceNotImplementedError(self.provider, "get_historical_data")

    async def search_tickers(self, query: str) -> list[Ticker]:
        raise SourceNotImplementedError(self.provider, "search_tickers")

    async def get_news(self, symbols: list[str]) -> list[NewsArticle]:
        raise SourceNotImplementedError(self.provider, "get_news")
