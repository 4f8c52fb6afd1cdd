# price_generator.py
# Synthetic per-symbol prices (random walk with a slight upward drift).

import random
import threading
from typing import Dict, List, Protocol, Union, runtime_checkable

from models import normalize_symbol

BASE_PRICE = 100.0
BASE_SPREAD = 100.0
# (random() - DRIFT_CENTER) is slightly positive on average so prices trend up
DRIFT_CENTER = 0.48
STEP_SCALE = 0.02
PRICE_FLOOR = 0.01


@runtime_checkable
class PriceSource(Protocol):
    """Anything that can quote a symbol; the broadcaster only needs this."""

    def next_price(self, symbol: str) -> float: ...


class RandomWalkPriceGenerator:
    """Keeps one random-walk state per symbol, created on first request.

    ``rng`` may be a ``random.Random`` instance or a seed for reproducible runs.
    """

    def __init__(self, rng: Union[random.Random, int, None] = None):
        if isinstance(rng, random.Random):
            self._rng = rng
        else:
            self._rng = random.Random(rng)
        self._prices: Dict[str, float] = {}
        self._lock = threading.Lock()

    def next_price(self, symbol: str) -> float:
        symbol = normalize_symbol(symbol)
        with self._lock:
            price = self._prices.get(symbol)
            if price is None:
                price = BASE_PRICE + self._rng.random() * BASE_SPREAD
            pct = (self._rng.random() - DRIFT_CENTER) * STEP_SCALE
            price = max(PRICE_FLOOR, price * (1.0 + pct))
            self._prices[symbol] = price
        return round(price, 2)

    def known_symbols(self) -> List[str]:
        with self._lock:
            return list(self._prices)

    def forget(self, symbol: str) -> bool:
        with self._lock:
            return self._prices.pop(normalize_symbol(symbol), None) is not None

    def __len__(self) -> int:
        with self._lock:
            return len(self._prices)

