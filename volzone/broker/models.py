"""Broker data models — typed representations of Bybit v5 market objects."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional


@dataclass(frozen=True)
class Candle:
    """A single candlestick bar (``timestamp`` is the UTC open time)."""

    timestamp: datetime
    open: float
    high: float
    low: float
    close: float
    volume: float


@dataclass(frozen=True)
class BookLevel:
    """One resting price level of an order book."""

    price: float
    size: float

    @property
    def notional(self) -> float:
        return self.price * self.size


@dataclass(frozen=True)
class TradePrint:
    """An executed trade from the public tape."""

    timestamp: datetime
    price: float
    size: float
    side: str  # aggressor side, "buy" or "sell"
    trade_id: str = ""


@dataclass(frozen=True)
class OrderBookSample:
    """Order book plus trades observed over a short sampling window.

    ``bids`` are sorted best (highest) first, ``asks`` best (lowest) first.
    """

    instrument: str
    started_at: datetime
    window_ms: int
    bids: tuple[BookLevel, ...] = field(default_factory=tuple)
    asks: tuple[BookLevel, ...] = field(default_factory=tuple)
    trades: tuple[TradePrint, ...] = field(default_factory=tuple)

    @property
    def is_empty(self) -> bool:
        return not self.bids and not self.asks

    @property
    def mid_price(self) -> Optional[float]:
        if not self.bids or not self.asks:
            return None
        return (self.bids[0].price + self.asks[0].price) / 2


@dataclass(frozen=True)
class ProtectiveLevels:
    """Take-profit / stop-loss currently attached to a position."""

    trade_id: str
    symbol: str
    take_profit: Optional[float]
    stop_loss: Optional[float]


@dataclass(frozen=True)
class InstrumentInfo:
    """Exchange trading rules for one symbol."""

    symbol: str
    tick_size: float
    price_precision: int  # decimals in the tick size

    def round_price(self, price: float) -> float:
        """Round *price* to the nearest multiple of the tick size."""
        return round(round(price / self.tick_size) * self.tick_size, self.price_precision)

    def format_price(self, price: float) -> str:
        return f"{self.round_price(price):.{self.price_precision}f}"
