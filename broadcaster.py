# broadcaster.py
"""Periodic fan-out of prices to connections.

Each tick prices the union of all watchlists once per symbol, then hands every
connection the subset that matches its own watchlist. Delivery goes through a
``deliver(connection_id, prices) -> bool`` callable so nothing here knows about
websockets.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional

from models import PricedSymbol
from price_generator import PriceSource
from registry import WatchlistRegistry

logger = logging.getLogger(__name__)

Deliver = Callable[[str, List[PricedSymbol]], Awaitable[bool]]


@dataclass
class TickReport:
    priced: int = 0
    dispatched: int = 0
    # connections skipped because their previous delivery is still in flight
    dropped: int = 0
    skipped: bool = False


class StaleSymbolSweeper:
    """Evicts price state for symbols missing from demand ``evict_after_ticks`` ticks in a row.

    Works with any source that exposes ``known_symbols()`` and ``forget(symbol)``;
    for other sources (or ``evict_after_ticks <= 0``) it does nothing.
    """

    def __init__(self, source: PriceSource, evict_after_ticks: int):
        self.source = source
        self.evict_after_ticks = evict_after_ticks
        self._absent: Dict[str, int] = {}

    @property
    def enabled(self) -> bool:
        return (
            self.evict_after_ticks > 0
            and hasattr(self.source, "known_symbols")
            and hasattr(self.source, "forget")
        )

    def observe(self, demand) -> List[str]:
        """Record one tick of demand; returns the symbols evicted on this tick."""
        if not self.enabled:
            return []
        evicted = []
        known = self.source.known_symbols()
        for symbol in known:
            if symbol in demand:
                self._absent.pop(symbol, None)
                continue
            misses = self._absent.get(symbol, 0) + 1
            if misses >= self.evict_after_ticks:
                self.source.forget(symbol)
                self._absent.pop(symbol, None)
                evicted.append(symbol)
            else:
                self._absent[symbol] = misses
        # Forget counters for symbols the source no longer holds
        for symbol in set(self._absent) - set(known):
            del self._absent[symbol]
        if evicted:
            logger.debug(f"Evicted price state for {evicted}")
        return evicted


class BroadcastScheduler:
    def __init__(self,
                 registry: WatchlistRegistry,
                 source: PriceSource,
                 deliver: Deliver,
                 interval_ms: int = 3000,
                 sweeper: Optional[StaleSymbolSweeper] = None):
        if interval_ms <= 0:
            raise ValueError("interval_ms must be > 0")
        self.registry = registry
        self.source = source
        self.deliver = deliver
        self.interval_ms = interval_ms
        self.sweeper = sweeper
        self.ticks = 0
        self.delivered = 0
        self.failed = 0
        self.last_report: Optional[TickReport] = None
        self._tick_lock = asyncio.Lock()
        self._task: Optional[asyncio.Task] = None
        # At most one in-flight delivery per connection
        self._pending: Dict[str, asyncio.Task] = {}

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def pending(self) -> int:
        return len(self._pending)

    def price_demand(self, demand) -> Dict[str, PricedSymbol]:
        """Price every demanded symbol exactly once."""
        return {
            symbol: PricedSymbol(symbol=symbol, price=self.source.next_price(symbol))
            for symbol in sorted(demand)
        }

    async def _deliver(self, connection_id: str, prices: List[PricedSymbol]) -> bool:
        return await self.deliver(connection_id, prices)

    def _dispatch(self, connection_id: str, prices: List[PricedSymbol]) -> bool:
        """Start a delivery without waiting for it; False if the previous one is still running."""
        if connection_id in self._pending:
            return False
        task = asyncio.create_task(self._deliver(connection_id, prices))
        self._pending[connection_id] = task
        task.add_done_callback(lambda t, cid=connection_id: self._delivery_done(cid, t))
        return True

    def _delivery_done(self, connection_id: str, task: asyncio.Task) -> None:
        if self._pending.get(connection_id) is task:
            del self._pending[connection_id]
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self.failed += 1
            logger.warning(f"Delivery to {connection_id} failed: {exc}")
        elif not task.result():
            self.failed += 1
            logger.warning(f"Delivery to {connection_id} failed: channel unavailable")
        else:
            self.delivered += 1

    async def drain(self) -> None:
        """Wait for every delivery dispatched so far."""
        while self._pending:
            await asyncio.wait(list(self._pending.values()))

    async def tick(self) -> TickReport:
        """Run one broadcast cycle. Concurrent callers are serialized.

        Deliveries are dispatched as tasks and never awaited here, so a stuck
        channel cannot hold up the tick or other connections.
        """
        async with self._tick_lock:
            report = TickReport()
            demand = self.registry.all_symbols()
            if not demand:
                report.skipped = True
            else:
                priced = self.price_demand(demand)
                report.priced = len(priced)

                for connection_id, watchlist in self.registry.snapshot():
                    subset = [priced[s] for s in sorted(watchlist) if s in priced]
                    if self._dispatch(connection_id, subset):
                        report.dispatched += 1
                    else:
                        report.dropped += 1
                if report.dropped:
                    logger.debug(f"Skipped {report.dropped} connections with a delivery still in flight")

            if self.sweeper is not None:
                self.sweeper.observe(demand)
            self.ticks += 1
            self.last_report = report
            logger.debug(f"Tick {self.ticks}: {report}")
            return report

    async def _run(self) -> None:
        interval_s = self.interval_ms / 1000.0
        while True:
            await asyncio.sleep(interval_s)
            try:
                await self.tick()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Broadcast tick failed")

    def start(self) -> None:
        if self.running:
            return
        logger.info(f"Starting broadcast loop every {self.interval_ms} ms")
        self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        pending = list(self._pending.values())
        for t in pending:
            t.cancel()
        if pending:
            await asyncio.wait(pending)
        self._pending.clear()
        if task is not None:
            logger.info("Broadcast loop stopped")
