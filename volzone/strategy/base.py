"""Collaborator protocols.

Defines the interfaces the engine expects from market data, order-book,
execution and persistence collaborators.  ``BybitClient`` satisfies the first
three; ``SignalRepo`` satisfies the sink.
"""

from __future__ import annotations

from typing import Optional, Protocol, runtime_checkable

from volzone.broker.models import Candle, OrderBookSample, ProtectiveLevels
from volzone.strategy.models import Signal


@runtime_checkable
class MarketDataProvider(Protocol):
    async def fetch_candles(self, instrument: str, interval: str, count: int = 200) -> list[Candle]:
        """Return candles ordered oldest-first."""
        ...


@runtime_checkable
class OrderBookProvider(Protocol):
    async def sample(self, instrument: str, window_ms: int) -> OrderBookSample:
        """Collect book and trades for ``window_ms`` milliseconds."""
        ...


@runtime_checkable
class ExecutionGateway(Protocol):
    async def set_protective_levels(
        self,
        trade_id: str,
        symbol: str,
        take_profit: Optional[float] = None,
        stop_loss: Optional[float] = None,
    ) -> ProtectiveLevels:
        """Apply TP/SL to an open position.

        Raises ``LevelsNotModified`` when the levels already match.
        """
        ...


@runtime_checkable
class SignalSink(Protocol):
    def record_signal(self, signal: Signal) -> int:
        """Persist or forward an emitted signal."""
        ...
