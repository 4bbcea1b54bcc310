"""Instrument configuration dataclass.

Represents one instrument stream in the multi-instrument engine.
"""

from dataclasses import dataclass


@dataclass(frozen=True)
class InstrumentConfig:
    """Settings for a single instrument.

    Each instrument runs its own ``InstrumentEngine`` with its own zone
    ladder, opening-range tracker and polling cadence.
    """

    name: str
    symbol: str  # exchange symbol, e.g. "BTCUSDT"
    interval: str = "1"  # intraday candle interval in minutes (Bybit notation)
    daily_lookback: int = 120  # daily closes fed to the volatility forecaster
    intraday_lookback: int = 500
    subdivisions: int = 4
    poll_interval_seconds: int = 60
    orb_window_minutes: int = 5
    orb_hold_seconds: int = 30
    orb_breakout_margin_pct: float = 0.001
    orb_deadline_minutes: int | None = 60
    profile_bucket_pct: float = 0.001
    enabled: bool = True
