"""
Data Source Adapters Package

Each adapter implements the BaseAdapter interface for consistent data access.
"""
from marketfeed.data_providers.adapters.base import (
    BaseAdapter,
    SourceKind,
    Quote,
    Bar,
    Ticker,
    NewsArticle,
)
from marketfeed.data_providers.adapters.yfinance_adapter import YFinanceAdapter
from marketfeed.data_providers.adapters.finnhub import FinnhubAdapter
from marketfeed.data_providers.adapters.alpha_vantage import AlphaVantageAdapter
from marketfeed.data_providers.adapters.unimplemented import UnimplementedSource

__all__ = [
    # Base
    "BaseAdapter",
    "SourceKind",
    "Quote",
    "Bar",
    "Ticker",
    "NewsArticle",
    # Sources
    "YFinanceAdapter",
    "FinnhubAdapter",
    "AlphaVantageAdapter",
    "UnimplementedSource",
]
