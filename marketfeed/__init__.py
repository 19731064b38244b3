"""
marketfeed

Quota-aware, multi-source market data client.
"""
from marketfeed.service import MarketDataService

__version__ = "0.1.0"

__all__ = ["MarketDataService", "__version__"]
