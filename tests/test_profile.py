"""Tests for the volume profile and HVN / LVN classification."""

from datetime import datetime, timezone

import pytest

from volzone.broker.models import Candle
from volzone.errors import InsufficientData, InvalidInput
from volzone.strategy.models import NEUTRAL_PROFILE
from volzone.strategy.profile import build_volume_profile

TS = datetime(2025, 3, 1, tzinfo=timezone.utc)


def _make_candle(high: float, low: float, volume: float, close: float | None = None) -> Candle:
    close = low if close is None else close
    return Candle(timestamp=TS, open=close, high=high, low=low, close=close, volume=volume)


def _point(price: float, volume: float) -> Candle:
    """Zero-range candle: all of its volume lands in one bucket."""
    return _make_candle(price, price, volume, close=price)


@pytest.fixture
def profile():
    # Buckets of 100 from 100: volumes 10, 10, 50, 1
    return build_volume_profile(
        [_point(100.0, 10.0), _point(200.0, 10.0), _point(300.0, 50.0), _point(400.0, 1.0)],
        bucket_size=100.0,
    )


# ── Construction ─────────────────────────────────────────────────────────


class TestBuildVolumeProfile:
    def test_volume_spread_by_overlap(self):
        p = build_volume_profile([_make_candle(300.0, 100.0, 100.0)], bucket_size=100.0)
        assert p.bucket_count == 3
        assert p.volume_at(150.0) == pytest.approx(50.0)
        assert p.volume_at(250.0) == pytest.approx(50.0)
        assert p.volume_at(350.0) == pytest.approx(0.0)

    def test_total_volume_conserved(self):
        candles = [_make_candle(110.0, 100.0, 7.0), _make_candle(105.0, 101.5, 3.0)]
        p = build_volume_profile(candles, bucket_size=1.0)
        assert sum(n.volume for n in p.nodes()) == pytest.approx(10.0)

    def test_thresholds(self, profile):
        assert profile.median_volume == pytest.approx(10.0)
        assert profile.hvn_threshold == pytest.approx(20.0)
        assert profile.lvn_threshold == pytest.approx(7.75)

    def test_node_levels(self, profile):
        assert profile.hvn_levels() == pytest.approx([350.0])
        assert profile.lvn_levels() == pytest.approx([450.0])

    def test_no_candles(self):
        with pytest.raises(InsufficientData):
            build_volume_profile([])

    def test_bad_bucket_size(self):
        with pytest.raises(InvalidInput):
            build_volume_profile([_point(100.0, 1.0)], bucket_size=-1.0)

    def test_inverted_percentiles(self):
        with pytest.raises(InvalidInput):
            build_volume_profile([_point(100.0, 1.0)], hvn_percentile=20, lvn_percentile=80)


# ── Classification ───────────────────────────────────────────────────────


class TestClassify:
    def test_price_in_hvn_bucket(self, profile):
        ctx = profile.classify(350.0, tolerance_pct=0.0)
        assert ctx.node_type == "HVN"
        assert ctx.confidence == pytest.approx(1.0)
        assert ctx.nearest_node_price == pytest.approx(350.0)
        assert ctx.distance == pytest.approx(0.0)

    def test_price_in_lvn_bucket(self, profile):
        ctx = profile.classify(450.0, tolerance_pct=0.0)
        assert ctx.node_type == "LVN"
        assert ctx.confidence == pytest.approx(0.9)

    def test_neutral_bucket(self, profile):
        assert profile.classify(150.0, tolerance_pct=0.0) == NEUTRAL_PROFILE

    def test_nearby_node_within_tolerance(self, profile):
        ctx = profile.classify(290.0, tolerance_pct=0.3)
        assert ctx.node_type == "HVN"
        assert ctx.nearest_node_price == pytest.approx(350.0)
        assert ctx.distance == pytest.approx(60.0)

    def test_outside_profile_is_neutral(self, profile):
        assert profile.classify(10_000.0) == NEUTRAL_PROFILE

    def test_all_zero_volume_is_neutral(self):
        p = build_volume_profile([_point(100.0, 0.0), _point(200.0, 0.0)], bucket_size=100.0)
        assert p.classify(150.0) == NEUTRAL_PROFILE
