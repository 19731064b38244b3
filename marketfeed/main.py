"""
marketfeed - Entry Point

Fetches quotes for the symbols given on the command line and logs the
service status. Mainly useful to check API keys and provider health.

    python -m marketfeed.main AAPL MSFT
"""
import asyncio
import sys
from typing import Optional
from loguru import logger

from marketfeed.config import settings
from marketfeed.service import MarketDataService
from marketfeed.utils.logger import setup_logging


async def run(symbols: list[str]) -> int:
    """Fetch quotes through the aggregator. Returns the number of symbols answered."""
    async with MarketDataService.create(settings) as service:
        quotes = await service.aggregator.get_quotes(symbols)
        for quote in quotes:
            logger.info(f"{quote.symbol}: {quote.price} {quote.currency} ({quote.provider})")

        missing = sorted(set(s.upper() for s in symbols) - {q.symbol for q in quotes})
        if missing:
            logger.warning(f"No quote available for: {', '.join(missing)}")

        health = await service.aggregator.get_sources_health()
        for source_id, status in health.items():
            state = "up" if status["healthy"] else "down"
            logger.info(f"Source {source_id}: {state} (failures: {status['failure_count']})")

        return len(quotes)


def main(argv: Optional[list[str]] = None) -> int:
    setup_logging(settings)

    symbols = list(argv if argv is not None else sys.argv[1:]) or ["AAPL"]
    logger.info(f"🚀 Starting {settings.APP_NAME}...")

    answered = asyncio.run(run(symbols))
    return 0 if answered else 1


if __name__ == "__main__":
    sys.exit(main())
