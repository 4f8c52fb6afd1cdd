# service.py
"""Owns the registry, price source, connections and broadcast loop for one app instance."""

import logging
from typing import Optional

from broadcaster import BroadcastScheduler, StaleSymbolSweeper
from config import Settings
from connections import ConnectionManager
from price_generator import PriceSource, RandomWalkPriceGenerator
from registry import WatchlistRegistry

logger = logging.getLogger(__name__)


class TickerService:
    def __init__(self, settings: Optional[Settings] = None, source: Optional[PriceSource] = None):
        self.settings = settings or Settings()
        self.source = source if source is not None else RandomWalkPriceGenerator()
        self.registry = WatchlistRegistry(default_symbols=self.settings.default_symbols)
        self.connections = ConnectionManager(self.registry)
        self.scheduler = BroadcastScheduler(
            self.registry,
            self.source,
            self.connections.deliver,
            interval_ms=self.settings.poll_interval_ms,
            sweeper=StaleSymbolSweeper(self.source, self.settings.evict_after_ticks),
        )

    async def start(self) -> None:
        self.scheduler.start()

    async def stop(self) -> None:
        await self.scheduler.stop()
        await self.connections.close()
        logger.info("Ticker service stopped")
