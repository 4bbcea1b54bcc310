"""Tests for the shared snapshot store and the daily volatility cache."""

from dataclasses import replace
from datetime import date, datetime, timezone

from volzone.state import SessionSnapshot, SnapshotStore, VolatilityCache
from volzone.strategy.models import PHASE_RESOLVED, SessionContext, VolatilityEstimate
from volzone.strategy.zones import build_zone_map

DAY = date(2025, 3, 1)


def _estimate(pct: float, day: date = DAY) -> VolatilityEstimate:
    return VolatilityEstimate(per_model_pct={"garch": pct}, averaged_pct=pct, data_point_count=60, as_of_day=day)


def _snapshot(instrument: str = "BTCUSDT") -> SessionSnapshot:
    return SessionSnapshot(
        instrument=instrument,
        session_day=DAY,
        zone_map=build_zone_map(100_000.0, 0.02),
        session=SessionContext(datetime(2025, 3, 1, tzinfo=timezone.utc), 100_100.0, 99_900.0),
        volatility=_estimate(0.02),
    )


class TestSnapshotStore:
    def test_publish_replaces_whole_snapshot(self):
        store = SnapshotStore()
        first = _snapshot()
        store.publish(first)
        held = store.get("BTCUSDT")

        second = replace(first, session=replace(first.session, session_bias="long", phase=PHASE_RESOLVED))
        store.publish(second)

        assert store.get("BTCUSDT") is second
        # A reader holding the old reference still sees a consistent value.
        assert held.session.session_bias == "neutral"

    def test_instruments(self):
        store = SnapshotStore()
        store.publish(_snapshot("BTCUSDT"))
        store.publish(_snapshot("ETHUSDT"))
        assert sorted(store.instruments()) == ["BTCUSDT", "ETHUSDT"]
        assert store.get("SOLUSDT") is None


class TestVolatilityCache:
    def test_first_value_for_a_day_wins(self):
        cache = VolatilityCache()
        first = cache.put("BTCUSDT", _estimate(0.02))
        second = cache.put("BTCUSDT", _estimate(0.05))
        assert first is second
        assert cache.get("BTCUSDT", DAY).averaged_pct == 0.02

    def test_new_day_replaces_old(self):
        cache = VolatilityCache()
        cache.put("BTCUSDT", _estimate(0.02))
        cache.put("BTCUSDT", _estimate(0.03, date(2025, 3, 2)))
        assert cache.get("BTCUSDT", DAY) is None
        assert cache.get("BTCUSDT", date(2025, 3, 2)).averaged_pct == 0.03

    def test_instruments_are_independent(self):
        cache = VolatilityCache()
        cache.put("BTCUSDT", _estimate(0.02))
        cache.put("ETHUSDT", _estimate(0.04))
        assert cache.get("BTCUSDT", DAY).averaged_pct == 0.02
        assert cache.get("ETHUSDT", DAY).averaged_pct == 0.04
