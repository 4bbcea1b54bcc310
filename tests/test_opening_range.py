"""Tests for the opening-range tracker state machine."""

from datetime import datetime, timedelta, timezone

import pytest

from volzone.broker.models import Candle
from volzone.errors import InvalidInput
from volzone.strategy.models import PHASE_COLLECTING, PHASE_RESOLVED, PHASE_WATCHING
from volzone.strategy.opening_range import OpeningRangeTracker

SESSION = datetime(2025, 3, 1, tzinfo=timezone.utc)


def _make_candle(offset_s: float, high: float, low: float, close: float) -> Candle:
    return Candle(
        timestamp=SESSION + timedelta(seconds=offset_s),
        open=close,
        high=high,
        low=low,
        close=close,
        volume=10.0,
    )


def _tracker(**overrides) -> OpeningRangeTracker:
    defaults = dict(window_minutes=5, breakout_margin_pct=0.001, hold_seconds=30)
    defaults.update(overrides)
    return OpeningRangeTracker(SESSION, **defaults)


def _collect(tracker: OpeningRangeTracker) -> None:
    """Opening window with a 100.0 / 99.0 range."""
    tracker.update(_make_candle(0, 99.8, 99.2, 99.5))
    tracker.update(_make_candle(60, 100.0, 99.4, 99.9))
    tracker.update(_make_candle(120, 99.7, 99.0, 99.3))


# ── Collecting ───────────────────────────────────────────────────────────


class TestCollecting:
    def test_range_widens_during_window(self):
        t = _tracker()
        _collect(t)
        ctx = t.context()
        assert t.phase == PHASE_COLLECTING
        assert ctx.opening_range_high == 100.0
        assert ctx.opening_range_low == 99.0
        assert ctx.session_bias == "neutral"

    def test_first_post_window_candle_fixes_range(self):
        t = _tracker()
        _collect(t)
        assert t.update(_make_candle(300, 100.05, 99.6, 99.8)) is None
        assert t.phase == PHASE_WATCHING
        assert t.context().opening_range_high == 100.0

    def test_empty_window_resolves_neutral(self):
        t = _tracker()
        t.update(_make_candle(600, 101.0, 100.0, 100.5))
        assert t.phase == PHASE_RESOLVED
        assert t.session_bias == "neutral"
        assert t.context().is_resolved

    def test_ignores_candles_before_session_and_out_of_order(self):
        t = _tracker()
        t.update(_make_candle(-60, 150.0, 50.0, 100.0))
        t.update(_make_candle(60, 100.0, 99.0, 99.5))
        t.update(_make_candle(30, 120.0, 80.0, 100.0))
        ctx = t.context()
        assert ctx.opening_range_high == 100.0
        assert ctx.opening_range_low == 99.0

    def test_invalid_window(self):
        with pytest.raises(InvalidInput):
            _tracker(window_minutes=0)


# ── Breakout ─────────────────────────────────────────────────────────────


class TestBreakout:
    def test_long_breakout_confirmed_after_hold(self):
        t = _tracker()
        _collect(t)
        assert t.update(_make_candle(300, 100.3, 100.0, 100.2)) is None
        assert t.phase == PHASE_WATCHING
        breakout = t.update(_make_candle(330, 100.4, 100.1, 100.3))
        assert breakout is not None
        assert breakout.direction == "long"
        assert breakout.level == 100.0
        assert breakout.price == 100.3
        assert t.session_bias == "long"
        assert t.phase == PHASE_RESOLVED

    def test_short_breakout(self):
        t = _tracker(hold_seconds=0)
        _collect(t)
        breakout = t.update(_make_candle(300, 99.0, 98.7, 98.8))
        assert breakout is not None
        assert breakout.direction == "short"
        assert breakout.level == 99.0
        assert t.session_bias == "short"

    def test_close_within_margin_is_not_a_breakout(self):
        t = _tracker(hold_seconds=0)
        _collect(t)
        # 100.05 < 100.0 * 1.001
        assert t.update(_make_candle(300, 100.06, 99.9, 100.05)) is None
        assert t.phase == PHASE_WATCHING

    def test_reversion_inside_range_cancels_pending(self):
        t = _tracker()
        _collect(t)
        t.update(_make_candle(300, 100.3, 100.0, 100.2))
        t.update(_make_candle(315, 100.2, 99.5, 99.8))
        # Hold is measured from the new excursion, so 30s later is not enough.
        assert t.update(_make_candle(330, 100.3, 100.0, 100.2)) is None
        assert t.update(_make_candle(345, 100.3, 100.0, 100.2)) is None
        assert t.update(_make_candle(360, 100.3, 100.0, 100.2)) is not None

    def test_bias_is_write_once(self):
        t = _tracker(hold_seconds=0)
        _collect(t)
        assert t.update(_make_candle(300, 100.3, 100.0, 100.2)) is not None
        assert t.update(_make_candle(360, 99.0, 98.0, 98.1)) is None
        assert t.session_bias == "long"

    def test_deadline_resolves_neutral(self):
        t = _tracker(breakout_deadline_minutes=10)
        _collect(t)
        t.update(_make_candle(300, 99.9, 99.5, 99.7))
        assert t.phase == PHASE_WATCHING
        t.update(_make_candle(900, 99.9, 99.5, 99.7))
        assert t.phase == PHASE_RESOLVED
        assert t.session_bias == "neutral"

    def test_no_deadline_keeps_watching(self):
        t = _tracker(breakout_deadline_minutes=None)
        _collect(t)
        t.update(_make_candle(300, 99.9, 99.5, 99.7))
        t.update(_make_candle(20_000, 99.9, 99.5, 99.7))
        assert t.phase == PHASE_WATCHING
