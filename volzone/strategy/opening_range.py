"""Opening range tracker — records the session's opening range and its breakout.

Phases:

- ``collecting``: inside the opening window, the high/low keep widening.
- ``watching``: the range is fixed; waiting for a close beyond it that
  holds for ``hold_seconds``.
- ``resolved``: the session bias is set (or the deadline passed) and never
  changes again for this session.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from volzone.broker.models import Candle
from volzone.errors import InvalidInput
from volzone.strategy.models import (
    PHASE_COLLECTING,
    PHASE_RESOLVED,
    PHASE_WATCHING,
    Breakout,
    SessionContext,
)

logger = logging.getLogger("volzone")

DEFAULT_WINDOW_MINUTES = 5
DEFAULT_BREAKOUT_MARGIN_PCT = 0.001
DEFAULT_HOLD_SECONDS = 30
DEFAULT_BREAKOUT_DEADLINE_MINUTES = 60


@dataclass(frozen=True)
class _PendingBreakout:
    direction: str  # "long" or "short"
    since: datetime


class OpeningRangeTracker:
    """Per-session opening-range state machine.

    Args:
        session_start: UTC start of the session (normally midnight).
        window_minutes: Length of the opening window.
        breakout_margin_pct: Close must exceed the range by this fraction.
        hold_seconds: How long the breakout must hold before it counts.
        breakout_deadline_minutes: Minutes after the window closes with no
            breakout before the session resolves neutral.  ``None`` waits
            for the whole session.
    """

    def __init__(
        self,
        session_start: datetime,
        window_minutes: int = DEFAULT_WINDOW_MINUTES,
        breakout_margin_pct: float = DEFAULT_BREAKOUT_MARGIN_PCT,
        hold_seconds: float = DEFAULT_HOLD_SECONDS,
        breakout_deadline_minutes: Optional[int] = DEFAULT_BREAKOUT_DEADLINE_MINUTES,
    ) -> None:
        if window_minutes <= 0:
            raise InvalidInput(f"window_minutes must be positive, got {window_minutes}")
        if hold_seconds < 0:
            raise InvalidInput(f"hold_seconds must be >= 0, got {hold_seconds}")

        self._session_start = session_start
        self._window_end = session_start + timedelta(minutes=window_minutes)
        self._margin = breakout_margin_pct
        self._hold = timedelta(seconds=hold_seconds)
        self._deadline = (
            self._window_end + timedelta(minutes=breakout_deadline_minutes)
            if breakout_deadline_minutes is not None
            else None
        )

        self._phase = PHASE_COLLECTING
        self._high: Optional[float] = None
        self._low: Optional[float] = None
        self._bias = "neutral"
        self._pending: Optional[_PendingBreakout] = None
        self._last_ts: Optional[datetime] = None

    # ── Read-only state ──────────────────────────────────────────────────

    @property
    def phase(self) -> str:
        return self._phase

    @property
    def session_bias(self) -> str:
        return self._bias

    @property
    def window_end(self) -> datetime:
        return self._window_end

    def context(self) -> SessionContext:
        """Immutable snapshot of the current session state."""
        return SessionContext(
            session_start=self._session_start,
            opening_range_high=self._high,
            opening_range_low=self._low,
            session_bias=self._bias,
            phase=self._phase,
        )

    # ── Updates ──────────────────────────────────────────────────────────

    def update(self, candle: Candle) -> Optional[Breakout]:
        """Feed one candle; return the breakout it confirms, if any.

        Candles at or before the last processed timestamp, or before the
        session start, are ignored.
        """
        ts = candle.timestamp
        if self._last_ts is not None and ts <= self._last_ts:
            return None
        if ts < self._session_start:
            return None
        self._last_ts = ts

        if self._phase == PHASE_RESOLVED:
            return None

        if ts < self._window_end:
            self._high = candle.high if self._high is None else max(self._high, candle.high)
            self._low = candle.low if self._low is None else min(self._low, candle.low)
            return None

        if self._phase == PHASE_COLLECTING:
            if self._high is None or self._low is None:
                logger.info("Opening window closed with no candles — session resolves neutral")
                self._resolve("neutral")
                return None
            self._phase = PHASE_WATCHING
            logger.info("Opening range fixed: high=%.5f low=%.5f", self._high, self._low)

        breakout = self._check_breakout(candle)
        if breakout is not None:
            return breakout

        if self._deadline is not None and ts >= self._deadline:
            logger.info("No opening-range breakout by %s — session resolves neutral", self._deadline)
            self._resolve("neutral")
        return None

    def _check_breakout(self, candle: Candle) -> Optional[Breakout]:
        assert self._high is not None and self._low is not None
        close = candle.close

        direction: Optional[str] = None
        if close >= self._high * (1 + self._margin):
            direction = "long"
        elif close <= self._low * (1 - self._margin):
            direction = "short"

        if direction is None:
            # Back inside the range cancels a pending breakout.
            if self._pending is not None and self._low <= close <= self._high:
                logger.debug("Pending %s breakout reverted at %.5f", self._pending.direction, close)
                self._pending = None
            return None

        if self._pending is None or self._pending.direction != direction:
            self._pending = _PendingBreakout(direction=direction, since=candle.timestamp)

        if candle.timestamp - self._pending.since < self._hold:
            return None

        level = self._high if direction == "long" else self._low
        self._resolve(direction)
        logger.info("Opening-range breakout confirmed: %s through %.5f (close %.5f)", direction, level, close)
        return Breakout(
            direction=direction,
            level=level,
            price=close,
            confirmed_at=candle.timestamp,
        )

    def _resolve(self, bias: str) -> None:
        # Bias is write-once: only the first resolution sticks.
        if self._phase == PHASE_RESOLVED:
            return
        self._bias = bias
        self._phase = PHASE_RESOLVED
        self._pending = None
