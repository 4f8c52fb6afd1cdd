# models.py
from typing import Any, Dict, Iterable, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, StrictStr, ValidationError

# Inbound event names accepted from clients
SUBSCRIBE = "subscribe"
ADD_SYMBOL = "add_symbol"
REMOVE_SYMBOL = "remove_symbol"
# Outbound event name for tick results
PRICE_UPDATE = "price_update"


def normalize_symbol(symbol: str) -> str:
    """Canonical form used for storage and comparison: trimmed, upper-case."""
    return symbol.strip().upper()


def normalize_symbols(symbols: Iterable[str]) -> set:
    """Normalize and deduplicate, dropping entries that end up empty."""
    out = set()
    for s in symbols:
        norm = normalize_symbol(s)
        if norm:
            out.add(norm)
    return out


# One priced symbol for one tick (immutable, not persisted)
class PricedSymbol(BaseModel):
    model_config = ConfigDict(frozen=True)

    symbol: str
    price: float


# Envelope for every client -> server websocket frame
class InboundMessage(BaseModel):
    event: Literal["subscribe", "add_symbol", "remove_symbol"]
    data: Union[List[StrictStr], StrictStr]


# Envelope for server -> client tick results
class PriceUpdate(BaseModel):
    event: Literal["price_update"] = PRICE_UPDATE
    data: List[PricedSymbol]

    @classmethod
    def from_prices(cls, prices: Iterable[PricedSymbol]) -> "PriceUpdate":
        return cls(data=list(prices))

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump()


def parse_inbound(raw: Any) -> Optional[InboundMessage]:
    """Decode a client frame; returns None for anything malformed."""
    try:
        if isinstance(raw, (str, bytes, bytearray)):
            return InboundMessage.model_validate_json(raw)
        return InboundMessage.model_validate(raw)
    except ValidationError:
        return None
