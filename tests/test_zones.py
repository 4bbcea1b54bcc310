"""Tests for the zone ladder, level interaction helpers and the daily open."""

from datetime import datetime, timedelta, timezone

import pytest

from volzone.broker.models import Candle
from volzone.errors import InvalidInput
from volzone.strategy.zones import (
    build_zone_map,
    daily_open_utc,
    has_broken_and_held,
    has_touched,
    utc_midnight,
)


def _make_candle(ts: datetime, o: float, c: float | None = None) -> Candle:
    c = o if c is None else c
    return Candle(timestamp=ts, open=o, high=max(o, c), low=min(o, c), close=c, volume=1.0)


# ── Ladder ───────────────────────────────────────────────────────────────


class TestBuildZoneMap:
    def test_bounds_and_spacing(self):
        zm = build_zone_map(100_000.0, 0.025, subdivisions=4)
        assert zm.upper_bound == pytest.approx(102_500.0)
        assert zm.lower_bound == pytest.approx(97_500.0)
        assert zm.upper_levels == pytest.approx((100_625.0, 101_250.0, 101_875.0, 102_500.0))
        assert zm.lower_levels == pytest.approx((99_375.0, 98_750.0, 98_125.0, 97_500.0))
        assert zm.step == pytest.approx(625.0)

    def test_last_level_equals_bound(self):
        zm = build_zone_map(1234.5, 0.037, subdivisions=7)
        assert zm.upper_levels[-1] == zm.upper_bound
        assert zm.lower_levels[-1] == zm.lower_bound

    def test_ladder_strictly_ascending_and_symmetric(self):
        zm = build_zone_map(100_000.0, 0.02, subdivisions=5)
        ladder = zm.ladder()
        assert all(a < b for a, b in zip(ladder, ladder[1:]))
        assert len(ladder) == 11
        for up, down in zip(zm.upper_levels, zm.lower_levels):
            assert up - zm.reference_open == pytest.approx(zm.reference_open - down)

    def test_single_subdivision(self):
        zm = build_zone_map(100.0, 0.05, subdivisions=1)
        assert zm.upper_levels == (pytest.approx(105.0),)
        assert zm.lower_levels == (pytest.approx(95.0),)

    @pytest.mark.parametrize(
        "open_, pct, subs",
        [(0.0, 0.02, 4), (-1.0, 0.02, 4), (float("nan"), 0.02, 4), (100.0, 0.0, 4), (100.0, 0.02, 0)],
    )
    def test_invalid_input(self, open_, pct, subs):
        with pytest.raises(InvalidInput):
            build_zone_map(open_, pct, subs)


class TestQuadrants:
    @pytest.fixture
    def zm(self):
        return build_zone_map(100_000.0, 0.025)

    def test_boundaries(self, zm):
        assert zm.quadrants == pytest.approx(
            {"Q2": 102_500.0, "Q1": 101_250.0, "Q0": 100_000.0, "Q-1": 98_750.0, "Q-2": 97_500.0}
        )

    @pytest.mark.parametrize(
        "price, expected",
        [
            (103_000.0, "Q2"),
            (102_500.0, "Q2"),
            (101_500.0, "Q1"),
            (100_000.0, "Q0"),
            (99_000.0, "Q-1"),
            (98_000.0, "Q-2"),
            (90_000.0, "Q-2"),
        ],
    )
    def test_quadrant_of(self, zm, price, expected):
        assert zm.quadrant_of(price) == expected

    def test_zone_info(self, zm):
        info = zm.zone_info(102_705.0)
        assert info.quadrant == "Q2"
        assert info.nearest_boundary == pytest.approx(102_500.0)
        assert info.distance_to_boundary_pct == pytest.approx(0.205)


class TestNextLevel:
    @pytest.fixture
    def zm(self):
        return build_zone_map(100_000.0, 0.025)

    def test_inside_ladder(self, zm):
        assert zm.next_level_above(100_100.0) == pytest.approx(100_625.0)
        assert zm.next_level_below(100_100.0) == pytest.approx(100_000.0)

    def test_on_a_level_is_strict(self, zm):
        assert zm.next_level_above(100_625.0) == pytest.approx(101_250.0)
        assert zm.next_level_below(100_625.0) == pytest.approx(100_000.0)

    def test_extends_beyond_bounds(self, zm):
        assert zm.next_level_above(102_705.0) == pytest.approx(103_125.0)
        assert zm.next_level_below(97_000.0) == pytest.approx(96_875.0)


# ── Level interaction ────────────────────────────────────────────────────


class TestLevelInteraction:
    def test_touched_within_tolerance(self):
        assert has_touched(102_540.0, 102_500.0, 0.0005)
        assert not has_touched(102_560.0, 102_500.0, 0.0005)

    def test_broken_and_held_up(self):
        assert has_broken_and_held(102_705.0, 102_500.0, "up")
        assert not has_broken_and_held(102_550.0, 102_500.0, "up")

    def test_broken_and_held_down(self):
        assert has_broken_and_held(97_350.0, 97_500.0, "down")
        assert not has_broken_and_held(97_450.0, 97_500.0, "down")

    def test_bad_direction(self):
        with pytest.raises(InvalidInput):
            has_broken_and_held(1.0, 1.0, "sideways")


# ── Daily open ───────────────────────────────────────────────────────────


class TestDailyOpen:
    def test_utc_midnight_converts_timezone(self):
        ts = datetime(2025, 3, 2, 1, 30, tzinfo=timezone(timedelta(hours=3)))
        assert utc_midnight(ts) == datetime(2025, 3, 1, tzinfo=timezone.utc)

    def test_first_candle_after_midnight(self):
        base = datetime(2025, 3, 1, 23, 58, tzinfo=timezone.utc)
        candles = [_make_candle(base + timedelta(minutes=i), 100.0 + i) for i in range(5)]
        assert daily_open_utc(candles) == 102.0

    def test_falls_back_to_last_close(self):
        base = datetime(2025, 3, 1, 22, 0, tzinfo=timezone.utc)
        candles = [_make_candle(base + timedelta(minutes=i), 100.0, 100.5 + i) for i in range(3)]
        now = datetime(2025, 3, 2, 0, 0, 10, tzinfo=timezone.utc)
        assert daily_open_utc(candles, now) == 102.5

    def test_empty(self):
        assert daily_open_utc([]) is None
