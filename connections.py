# connections.py
"""Connection lifecycle: channel bookkeeping plus routing of client events to the registry.

Each connection gets a small outbox drained by its own writer task, so
delivering a price update never waits on a socket.
"""

import asyncio
import logging
import uuid
from typing import Any, Dict, Iterable, List, Optional, Protocol

from models import (
    ADD_SYMBOL,
    REMOVE_SYMBOL,
    SUBSCRIBE,
    PricedSymbol,
    PriceUpdate,
    parse_inbound,
)
from registry import WatchlistRegistry

logger = logging.getLogger(__name__)

DEFAULT_OUTBOX_SIZE = 4


class Channel(Protocol):
    async def send_json(self, data: Any) -> None: ...


class ConnectionManager:
    """Maps connection ids to open channels and keeps their watchlists in step."""

    def __init__(self, registry: WatchlistRegistry, outbox_size: int = DEFAULT_OUTBOX_SIZE):
        if outbox_size <= 0:
            raise ValueError("outbox_size must be > 0")
        self.registry = registry
        self.outbox_size = outbox_size
        self.channels: Dict[str, Channel] = {}
        self.dropped = 0
        self.send_failures = 0
        self._outboxes: Dict[str, asyncio.Queue] = {}
        self._writers: Dict[str, asyncio.Task] = {}

    def connect(self, channel: Channel, connection_id: Optional[str] = None,
                initial_symbols: Optional[Iterable[str]] = None) -> str:
        connection_id = connection_id or uuid.uuid4().hex
        self.channels[connection_id] = channel
        self.registry.register(connection_id, initial_symbols)
        logger.info(f"Client connected: {connection_id}")
        return connection_id

    def disconnect(self, connection_id: str) -> None:
        existed = self.channels.pop(connection_id, None) is not None
        self._drop_outbox(connection_id)
        self.registry.unregister(connection_id)
        if existed:
            logger.info(f"Client disconnected: {connection_id}")

    def handle_message(self, connection_id: str, raw: Any) -> bool:
        """Apply one client event. Malformed events are ignored; returns True if applied."""
        message = parse_inbound(raw)
        if message is None:
            logger.debug(f"Ignoring malformed message from {connection_id}: {raw!r}")
            return False

        if message.event == SUBSCRIBE and isinstance(message.data, list):
            return self.registry.replace(connection_id, message.data)
        if message.event == ADD_SYMBOL and isinstance(message.data, str):
            return self.registry.add(connection_id, message.data)
        if message.event == REMOVE_SYMBOL and isinstance(message.data, str):
            return self.registry.remove(connection_id, message.data)

        logger.debug(f"Ignoring {message.event} with unexpected payload from {connection_id}")
        return False

    async def deliver(self, connection_id: str, prices: List[PricedSymbol]) -> bool:
        """Queue a price_update for the connection's writer; never waits on the socket.

        When the outbox is full the oldest queued update is dropped, so a slow
        client only ever falls behind by ``outbox_size`` frames.
        """
        channel = self.channels.get(connection_id)
        if channel is None:
            return False
        outbox = self._outboxes.get(connection_id)
        if outbox is None:
            outbox = self._outboxes[connection_id] = asyncio.Queue(maxsize=self.outbox_size)
        if outbox.full():
            outbox.get_nowait()
            outbox.task_done()
            self.dropped += 1
            logger.debug(f"Outbox full for {connection_id}, dropped oldest update")
        outbox.put_nowait(PriceUpdate.from_prices(prices).to_wire())

        writer = self._writers.get(connection_id)
        if writer is None or writer.done():
            self._writers[connection_id] = asyncio.create_task(self._writer(connection_id, channel, outbox))
        return True

    async def _writer(self, connection_id: str, channel: Channel, outbox: asyncio.Queue) -> None:
        while True:
            payload = await outbox.get()
            try:
                await channel.send_json(payload)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.send_failures += 1
                logger.warning(f"Send to {connection_id} failed: {e}")
            finally:
                outbox.task_done()

    async def flush(self, connection_id: Optional[str] = None) -> None:
        """Wait until queued updates (for one connection, or all) have been written."""
        ids = [connection_id] if connection_id is not None else list(self._outboxes)
        for cid in ids:
            outbox = self._outboxes.get(cid)
            if outbox is not None:
                await outbox.join()

    def queued(self, connection_id: str) -> int:
        outbox = self._outboxes.get(connection_id)
        return 0 if outbox is None else outbox.qsize()

    def _drop_outbox(self, connection_id: str) -> Optional[asyncio.Task]:
        self._outboxes.pop(connection_id, None)
        writer = self._writers.pop(connection_id, None)
        if writer is not None:
            writer.cancel()
        return writer

    def clear(self) -> None:
        for connection_id in list(self._writers):
            self._drop_outbox(connection_id)
        self._outboxes.clear()
        self.channels.clear()
        self.registry.clear()

    async def close(self) -> None:
        """Cancel every writer, wait for them to finish, then release all state."""
        writers = [w for w in self._writers.values() if not w.done()]
        self.clear()
        if writers:
            await asyncio.wait(writers)

    def __len__(self) -> int:
        return len(self.channels)
