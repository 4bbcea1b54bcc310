"""Order-flow gate — confirms a setup against the live order book and tape.

For a candidate level the gate samples the book and recent trades for a short
window, then scores evidence on each side:

- resting walls near the level (defending-side notional),
- absorption (aggressive flow into the level that fails to trade through),
- volume surges relative to this instrument's previous windows.
"""

import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

import httpx

from volzone.broker.models import OrderBookSample
from volzone.errors import DataUnavailable, InvalidInput
from volzone.strategy.base import OrderBookProvider
from volzone.strategy.models import SIDES, OrderFlowFlags, OrderFlowReading

logger = logging.getLogger("volzone")


@dataclass(frozen=True)
class OrderFlowConfig:
    min_wall_notional: float = 50_000.0
    proximity_bps: float = 5.0
    absorption_ratio: float = 1.5
    surge_multiplier: float = 2.0
    surge_history: int = 20
    window_ms: int = 8_000
    timeout_grace_s: float = 1.0
    far_from_level_pct: float = 0.005
    absorption_weight: float = 0.3
    surge_weight: float = 0.2


# ── Pure scoring ─────────────────────────────────────────────────────────


def analyze_sample(
    sample: OrderBookSample,
    level: float,
    current_price: float,
    baseline_volume: Optional[float] = None,
    config: OrderFlowConfig = OrderFlowConfig(),
) -> OrderFlowReading:
    """Score one order-book sample around *level*.

    Args:
        sample: Book and trades collected over the sampling window.
        level: Price the setup trades from.
        current_price: Latest traded price.
        baseline_volume: Average traded volume of previous windows, or
            ``None`` when there is no history yet (no surge can be flagged).
        config: Thresholds and weights.
    """
    proximity = level * config.proximity_bps / 10_000

    bid_notional = sum(
        b.notional for b in sample.bids
        if b.price <= level and level - b.price <= proximity
    )
    ask_notional = sum(
        a.notional for a in sample.asks
        if a.price >= level and a.price - level <= proximity
    )

    buy_volume = sum(t.size for t in sample.trades if t.side == "buy")
    sell_volume = sum(t.size for t in sample.trades if t.side == "sell")

    # Walls
    long_wall = (
        min(1.0, bid_notional / (2 * config.min_wall_notional))
        if bid_notional >= config.min_wall_notional else 0.0
    )
    short_wall = (
        min(1.0, ask_notional / (2 * config.min_wall_notional))
        if ask_notional >= config.min_wall_notional else 0.0
    )

    # Absorption: aggressive flow into the level that never trades through it
    traded_below = any(t.price < level - proximity for t in sample.trades if t.side == "sell")
    traded_above = any(t.price > level + proximity for t in sample.trades if t.side == "buy")
    absorbing_bids = (
        sell_volume > 0
        and sell_volume >= config.absorption_ratio * buy_volume
        and not traded_below
    )
    absorbing_asks = (
        buy_volume > 0
        and buy_volume >= config.absorption_ratio * sell_volume
        and not traded_above
    )

    # Surge
    window_volume = buy_volume + sell_volume
    surge = (
        baseline_volume is not None
        and baseline_volume > 0
        and window_volume >= config.surge_multiplier * baseline_volume
    )
    buy_surge = surge and buy_volume > sell_volume
    sell_surge = surge and sell_volume > buy_volume

    long_score = (
        long_wall
        + config.absorption_weight * absorbing_bids
        + config.surge_weight * buy_surge
    )
    short_score = (
        short_wall
        + config.absorption_weight * absorbing_asks
        + config.surge_weight * sell_surge
    )

    if long_score > short_score:
        bias, confidence = "long", long_score - 0.5 * short_score
    elif short_score > long_score:
        bias, confidence = "short", short_score - 0.5 * long_score
    else:
        bias, confidence = "neutral", 0.0

    if level > 0 and abs(current_price - level) / level > config.far_from_level_pct:
        confidence *= 0.5

    return OrderFlowReading(
        bias=bias,
        confidence=max(0.0, min(1.0, confidence)),
        flags=OrderFlowFlags(
            absorbing_bids=absorbing_bids,
            absorbing_asks=absorbing_asks,
            buy_volume_surge=buy_surge,
            sell_volume_surge=sell_surge,
        ),
        wall_present=long_wall > 0 or short_wall > 0,
        bid_notional=bid_notional,
        ask_notional=ask_notional,
        level=level,
    )


# ── Gate ─────────────────────────────────────────────────────────────────


class OrderFlowGate:
    """Samples order flow through a provider and scores it.

    Keeps a short per-instrument history of window volumes as the surge
    baseline.  At most one sample per sampling window is recorded, so the
    concurrent reads of one tick count once.

    Args:
        provider: Anything with ``async sample(instrument, window_ms)``.
        config: Thresholds, weights and the sampling window.
    """

    def __init__(self, provider: OrderBookProvider, config: OrderFlowConfig = OrderFlowConfig()) -> None:
        self._provider = provider
        self._config = config
        self._history: dict[str, deque[float]] = {}
        self._recorded_until: dict[str, datetime] = {}

    @property
    def config(self) -> OrderFlowConfig:
        return self._config

    def baseline(self, instrument: str) -> Optional[float]:
        history = self._history.get(instrument)
        if not history:
            return None
        return sum(history) / len(history)

    async def read(
        self,
        instrument: str,
        level: float,
        side: str,
        current_price: float,
    ) -> OrderFlowReading:
        """Sample the book around *level* for a *side* setup.

        The reading itself is side-neutral: both sides are scored from the
        same sample and the caller compares ``reading.bias`` with *side*.
        *side* selects the defending wall reported in the log.

        Raises:
            InvalidInput: *side* is not ``"LONG"`` or ``"SHORT"``.
            DataUnavailable: provider failure, timeout or an empty book.
        """
        if side not in SIDES:
            raise InvalidInput(f"Unknown side {side!r}")

        timeout = self._config.window_ms / 1000 + self._config.timeout_grace_s
        try:
            sample = await asyncio.wait_for(
                self._provider.sample(instrument, self._config.window_ms),
                timeout=timeout,
            )
        except asyncio.TimeoutError as exc:
            raise DataUnavailable(
                f"Order-book sample for {instrument} timed out after {timeout:.1f}s"
            ) from exc
        except (httpx.HTTPError, OSError) as exc:
            raise DataUnavailable(f"Order-book sample for {instrument} failed: {exc}") from exc

        if sample.is_empty:
            raise DataUnavailable(f"Order book for {instrument} is empty")

        reading = analyze_sample(
            sample, level, current_price,
            baseline_volume=self.baseline(instrument),
            config=self._config,
        )

        self._record(instrument, sample)

        defending = reading.bid_notional if side == "LONG" else reading.ask_notional
        logger.debug(
            "%s order flow at %.5f for %s: bias=%s conf=%.2f defending=$%.0f bids=$%.0f asks=$%.0f",
            instrument, level, side, reading.bias, reading.confidence,
            defending, reading.bid_notional, reading.ask_notional,
        )
        return reading

    def _record(self, instrument: str, sample: OrderBookSample) -> None:
        """Add the sample's tape volume to the baseline once per window."""
        until = self._recorded_until.get(instrument)
        if until is not None and sample.started_at < until:
            return
        history = self._history.setdefault(instrument, deque(maxlen=self._config.surge_history))
        history.append(sum(t.size for t in sample.trades))
        self._recorded_until[instrument] = sample.started_at + timedelta(milliseconds=sample.window_ms)
