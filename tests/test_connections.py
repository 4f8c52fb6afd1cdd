"""Tests for connection lifecycle and inbound event routing."""

import asyncio
import json

import pytest

from broadcaster import BroadcastScheduler
from connections import ConnectionManager
from models import PricedSymbol
from registry import WatchlistRegistry


class FakeChannel:
	def __init__(self, closed=False):
		self.frames = []
		self.closed = closed

	async def send_json(self, data):
		if self.closed:
			raise RuntimeError("Cannot call send once a close message has been sent")
		self.frames.append(data)


class StuckChannel:
	"""send_json blocks until ``release`` is set, like a socket under back-pressure."""

	def __init__(self):
		self.frames = []
		self.release = asyncio.Event()

	async def send_json(self, data):
		await self.release.wait()
		self.frames.append(data)


class CountingSource:
	def __init__(self):
		self.calls = 0

	def next_price(self, symbol):
		self.calls += 1
		return 123.45


def make_manager():
	registry = WatchlistRegistry()
	return ConnectionManager(registry), registry


def frame(event, data):
	return json.dumps({"event": event, "data": data})


def test_connect_registers_default_watchlist():
	manager, registry = make_manager()
	cid = manager.connect(FakeChannel())
	assert registry.get(cid) == {"AAPL"}
	assert len(manager) == 1


def test_connect_with_explicit_id():
	manager, registry = make_manager()
	assert manager.connect(FakeChannel(), connection_id="abc") == "abc"
	assert "abc" in registry


def test_subscribe_then_add_symbol():
	manager, registry = make_manager()
	cid = manager.connect(FakeChannel())

	assert manager.handle_message(cid, frame("subscribe", ["TSLA", "MSFT"])) is True
	assert manager.handle_message(cid, frame("add_symbol", "goog")) is True

	assert registry.get(cid) == {"TSLA", "MSFT", "GOOG"}


def test_accepts_already_decoded_messages():
	manager, registry = make_manager()
	cid = manager.connect(FakeChannel())
	manager.handle_message(cid, {"event": "remove_symbol", "data": "aapl"})
	assert registry.get(cid) == frozenset()


@pytest.mark.parametrize("raw", [
	"not json",
	frame("subscribe", "TSLA"),
	frame("subscribe", [1, 2]),
	frame("add_symbol", ["TSLA"]),
	frame("remove_symbol", None),
	frame("unsubscribe_all", []),
	json.dumps(["subscribe", ["TSLA"]]),
	b"\xff\xfe",
	None,
])
def test_malformed_messages_are_ignored(raw):
	manager, registry = make_manager()
	cid = manager.connect(FakeChannel())

	assert manager.handle_message(cid, raw) is False
	assert registry.get(cid) == {"AAPL"}


def test_disconnect_drops_watchlist_and_is_idempotent():
	manager, registry = make_manager()
	cid = manager.connect(FakeChannel())
	manager.disconnect(cid)
	manager.disconnect(cid)

	assert cid not in registry
	assert len(manager) == 0
	# late message racing the disconnect
	assert manager.handle_message(cid, frame("add_symbol", "TSLA")) is False
	assert registry.all_symbols() == set()


@pytest.mark.asyncio
async def test_deliver_wraps_price_update_envelope():
	manager, registry = make_manager()
	channel = FakeChannel()
	manager.connect(channel)
	scheduler = BroadcastScheduler(registry, CountingSource(), manager.deliver)

	await scheduler.tick()
	await scheduler.drain()
	await manager.flush()

	assert channel.frames == [
		{"event": "price_update", "data": [{"symbol": "AAPL", "price": 123.45}]}
	]
	await manager.close()


@pytest.mark.asyncio
async def test_deliver_to_unknown_connection_returns_false():
	manager, _ = make_manager()
	assert await manager.deliver("ghost", []) is False


@pytest.mark.asyncio
async def test_closed_channel_does_not_affect_other_clients():
	manager, registry = make_manager()
	broken = FakeChannel(closed=True)
	healthy = FakeChannel()
	manager.connect(broken)
	manager.connect(healthy)
	scheduler = BroadcastScheduler(registry, CountingSource(), manager.deliver)

	report = await scheduler.tick()
	await scheduler.drain()
	await manager.flush()

	assert report.dispatched == 2
	assert manager.send_failures == 1
	assert len(healthy.frames) == 1
	await manager.close()


@pytest.mark.asyncio
async def test_stuck_channel_does_not_hold_up_broadcast():
	manager, registry = make_manager()
	stuck = StuckChannel()
	healthy = FakeChannel()
	stuck_id = manager.connect(stuck)
	manager.connect(healthy)
	scheduler = BroadcastScheduler(registry, CountingSource(), manager.deliver, interval_ms=10)

	scheduler.start()
	await asyncio.sleep(0.3)
	await scheduler.stop()

	assert scheduler.ticks > 5
	assert len(healthy.frames) > 5
	# one frame stuck in send_json, the rest capped by the outbox
	assert manager.queued(stuck_id) <= manager.outbox_size
	assert manager.dropped > 0
	await manager.close()


@pytest.mark.asyncio
async def test_full_outbox_keeps_newest_updates():
	manager, _ = make_manager()
	manager.outbox_size = 2
	stuck = StuckChannel()
	cid = manager.connect(stuck)

	for price in (1.0, 2.0, 3.0, 4.0):
		assert await manager.deliver(cid, [PricedSymbol(symbol="AAPL", price=price)]) is True
		await asyncio.sleep(0)

	# first frame is inside send_json; 2.0 was dropped for 3.0 and 4.0
	assert manager.queued(cid) == 2
	assert manager.dropped == 1
	stuck.release.set()
	await manager.flush(cid)
	assert [f["data"][0]["price"] for f in stuck.frames] == [1.0, 3.0, 4.0]
	await manager.close()


@pytest.mark.asyncio
async def test_disconnect_stops_writer():
	manager, _ = make_manager()
	stuck = StuckChannel()
	cid = manager.connect(stuck)
	await manager.deliver(cid, [])
	await asyncio.sleep(0)

	manager.disconnect(cid)
	await asyncio.sleep(0)

	assert manager.queued(cid) == 0
	assert await manager.deliver(cid, []) is False
	await manager.close()


def test_outbox_size_must_be_positive():
	with pytest.raises(ValueError):
		ConnectionManager(WatchlistRegistry(), outbox_size=0)


@pytest.mark.asyncio
async def test_removing_last_symbol_stops_pricing():
	manager, registry = make_manager()
	channel = FakeChannel()
	cid = manager.connect(channel)
	manager.handle_message(cid, frame("subscribe", ["TSLA"]))
	manager.handle_message(cid, frame("remove_symbol", "TSLA"))
	source = CountingSource()
	scheduler = BroadcastScheduler(registry, source, manager.deliver)

	report = await scheduler.tick()

	assert registry.get(cid) == frozenset()
	assert report.skipped is True
	assert source.calls == 0
	assert channel.frames == []


def test_clear_releases_channels_and_watchlists():
	manager, registry = make_manager()
	manager.connect(FakeChannel())
	manager.clear()
	assert len(manager) == 0
	assert len(registry) == 0
