"""Session VWAP — volume-weighted average price anchored at UTC midnight."""

from typing import Optional, Sequence

from volzone.broker.models import Candle
from volzone.errors import InsufficientData, InvalidInput
from volzone.strategy.zones import utc_midnight

VWAP_SOURCES = ("close", "hl2", "hlc3", "ohlc4")


def typical_price(candle: Candle, source: str = "hl2") -> float:
    if source == "close":
        return candle.close
    if source == "hl2":
        return (candle.high + candle.low) / 2
    if source == "hlc3":
        return (candle.high + candle.low + candle.close) / 3
    if source == "ohlc4":
        return (candle.open + candle.high + candle.low + candle.close) / 4
    raise InvalidInput(f"Unknown VWAP source {source!r}; expected one of {VWAP_SOURCES}")


def _session_candles(
    candles: Sequence[Candle],
    lookback: Optional[int],
    anchored: bool,
) -> Sequence[Candle]:
    if lookback is not None and lookback > 0:
        return candles[-lookback:]
    if not anchored:
        return candles
    start = utc_midnight(candles[-1].timestamp)
    return [c for c in candles if c.timestamp >= start]


def session_vwap(
    candles: Sequence[Candle],
    source: str = "hl2",
    lookback: Optional[int] = None,
    anchored: bool = True,
) -> float:
    """VWAP of the current UTC session.

    Args:
        candles: Bars ordered oldest-first.
        source: Price used per bar — ``close``, ``hl2``, ``hlc3`` or ``ohlc4``.
        lookback: Use only the last *lookback* bars instead of the session.
        anchored: When False (and no lookback), use every bar supplied.

    Returns the last close when the selected bars carry no volume.
    """
    if not candles:
        raise InsufficientData("Need at least 1 candle to compute VWAP")

    selected = _session_candles(candles, lookback, anchored)
    pv = sum(typical_price(c, source) * c.volume for c in selected)
    volume = sum(c.volume for c in selected)
    if volume <= 0:
        return candles[-1].close
    return pv / volume


def vwap_line(candles: Sequence[Candle], source: str = "hl2") -> list[float]:
    """Running session VWAP for each bar; resets at every UTC midnight."""
    line: list[float] = []
    session_start = None
    pv = 0.0
    volume = 0.0
    for c in candles:
        start = utc_midnight(c.timestamp)
        if start != session_start:
            session_start, pv, volume = start, 0.0, 0.0
        pv += typical_price(c, source) * c.volume
        volume += c.volume
        line.append(pv / volume if volume > 0 else c.close)
    return line
