# registry.py
"""Per-connection watchlists.

Every registered connection id maps to exactly one (possibly empty) set of
normalized symbols. Mutations for ids that are not registered are ignored: they
happen when an inbound message races with the disconnect of its connection.
"""

import logging
import threading
from typing import Callable, Dict, FrozenSet, Iterable, List, Optional, Set, Tuple

from models import normalize_symbol, normalize_symbols

logger = logging.getLogger(__name__)

DEFAULT_SYMBOLS: Tuple[str, ...] = ("AAPL",)


class WatchlistRegistry:
    def __init__(self, default_symbols: Iterable[str] = DEFAULT_SYMBOLS):
        self.default_symbols: FrozenSet[str] = frozenset(normalize_symbols(default_symbols))
        self._watchlists: Dict[str, Set[str]] = {}
        self._lock = threading.RLock()

    def register(self, connection_id: str, initial_symbols: Optional[Iterable[str]] = None) -> None:
        """Create the watchlist for ``connection_id``; an existing one is overwritten.

        ``initial_symbols=None`` means the default watchlist so a new client sees
        prices before its first subscribe message.
        """
        symbols = set(self.default_symbols) if initial_symbols is None else normalize_symbols(initial_symbols)
        with self._lock:
            if connection_id in self._watchlists:
                logger.debug(f"Overwriting watchlist for {connection_id}")
            self._watchlists[connection_id] = symbols

    def replace(self, connection_id: str, symbols: Iterable[str]) -> bool:
        new = normalize_symbols(symbols)
        with self._lock:
            if connection_id not in self._watchlists:
                return False
            self._watchlists[connection_id] = new
            return True

    def add(self, connection_id: str, symbol: str) -> bool:
        symbol = normalize_symbol(symbol)
        with self._lock:
            watchlist = self._watchlists.get(connection_id)
            if watchlist is None or not symbol:
                return False
            watchlist.add(symbol)
            return True

    def remove(self, connection_id: str, symbol: str) -> bool:
        symbol = normalize_symbol(symbol)
        with self._lock:
            watchlist = self._watchlists.get(connection_id)
            if watchlist is None or symbol not in watchlist:
                return False
            watchlist.discard(symbol)
            return True

    def unregister(self, connection_id: str) -> bool:
        with self._lock:
            return self._watchlists.pop(connection_id, None) is not None

    def all_symbols(self) -> Set[str]:
        """Union of every watchlist: the set of symbols to price this tick."""
        with self._lock:
            demand: Set[str] = set()
            for watchlist in self._watchlists.values():
                demand |= watchlist
            return demand

    def snapshot(self) -> List[Tuple[str, FrozenSet[str]]]:
        with self._lock:
            return [(cid, frozenset(wl)) for cid, wl in self._watchlists.items()]

    def for_each(self, fn: Callable[[str, FrozenSet[str]], None]) -> None:
        # Iterates a snapshot so fn may mutate the registry
        for connection_id, watchlist in self.snapshot():
            fn(connection_id, watchlist)

    def get(self, connection_id: str) -> Optional[FrozenSet[str]]:
        with self._lock:
            watchlist = self._watchlists.get(connection_id)
            return None if watchlist is None else frozenset(watchlist)

    def clear(self) -> None:
        with self._lock:
            self._watchlists.clear()

    def __contains__(self, connection_id: object) -> bool:
        with self._lock:
            return connection_id in self._watchlists

    def __len__(self) -> int:
        with self._lock:
            return len(self._watchlists)
