"""Tests for volzone.repos — SQLite persistence of signals and volatility."""

from datetime import date, datetime, timezone

import pytest

from volzone.repos.db import get_connection, init_db
from volzone.repos.signal_repo import SignalRepo
from volzone.repos.volatility_repo import VolatilityRepo
from volzone.strategy.models import (
    NEUTRAL_PROFILE,
    OrderFlowReading,
    Signal,
    SignalContext,
    VolatilityEstimate,
    ZoneInfo,
)


@pytest.fixture
def db_path(tmp_path):
    path = str(tmp_path / "data" / "volzone.db")
    init_db(path)
    return path


def _make_signal(instrument: str = "BTCUSDT", setup_type: str = "ZONE_BREAKOUT") -> Signal:
    return Signal(
        instrument=instrument,
        setup_type=setup_type,
        side="LONG",
        entry=102_705.0,
        take_profit=103_125.0,
        stop_loss=101_875.0,
        confidence=0.82,
        context=SignalContext(
            session_bias="neutral",
            profile_context=NEUTRAL_PROFILE,
            order_flow=OrderFlowReading(bias="long", confidence=0.8),
            zone_info=ZoneInfo(quadrant="Q2", nearest_boundary=102_500.0, distance_to_boundary_pct=0.205),
            imbalance=None,
            reason="Zone breakout LONG at 102500.00 (Q2)",
            vwap=101_900.0,
        ),
        emitted_at=datetime(2025, 3, 1, 12, tzinfo=timezone.utc),
    )


class TestInitDb:
    def test_creates_tables(self, db_path):
        conn = get_connection(db_path)
        try:
            names = {
                row["name"]
                for row in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")
            }
        finally:
            conn.close()
        assert {"signals", "volatility_estimates"} <= names

    def test_idempotent(self, db_path):
        SignalRepo(db_path).record_signal(_make_signal())
        init_db(db_path)
        assert SignalRepo(db_path).get_signals()["total"] == 1


class TestSignalRepo:
    def test_record_and_read(self, db_path):
        repo = SignalRepo(db_path)
        row_id = repo.record_signal(_make_signal())
        assert row_id == 1

        result = repo.get_signals()
        assert result["total"] == 1
        row = result["signals"][0]
        assert row["setup_type"] == "ZONE_BREAKOUT"
        assert row["take_profit"] == 103_125.0
        assert row["orderflow_bias"] == "long"
        assert row["profile_node"] == "neutral"
        assert row["quadrant"] == "Q2"
        assert row["emitted_at"] == "2025-03-01T12:00:00+00:00"

    def test_filters_and_order(self, db_path):
        repo = SignalRepo(db_path)
        repo.record_signal(_make_signal("BTCUSDT", "ZONE_BREAKOUT"))
        repo.record_signal(_make_signal("ETHUSDT", "ORB"))
        repo.record_signal(_make_signal("BTCUSDT", "ORB"))

        assert repo.get_signals()["signals"][0]["id"] == 3
        assert repo.get_signals(instrument="BTCUSDT")["total"] == 2
        assert repo.get_signals(setup_type="ORB")["total"] == 2
        assert repo.get_signals(instrument="ETHUSDT", setup_type="ORB")["total"] == 1
        assert len(repo.get_signals(limit=1)["signals"]) == 1


class TestVolatilityRepo:
    def test_round_trip(self, db_path):
        repo = VolatilityRepo(db_path)
        estimate = VolatilityEstimate(
            per_model_pct={"garch": 0.021, "egarch": 0.019, "gjr_garch": 0.020},
            averaged_pct=0.02,
            data_point_count=120,
            as_of_day=date(2025, 3, 1),
            fallback_models=("egarch",),
        )
        repo.upsert_estimate("BTCUSDT", estimate)
        assert repo.get_estimate("BTCUSDT", date(2025, 3, 1)) == estimate

    def test_missing(self, db_path):
        assert VolatilityRepo(db_path).get_estimate("BTCUSDT", date(2025, 3, 1)) is None

    def test_upsert_replaces_same_day(self, db_path):
        repo = VolatilityRepo(db_path)
        day = date(2025, 3, 1)
        repo.upsert_estimate("BTCUSDT", VolatilityEstimate({"garch": 0.02}, 0.02, 60, day))
        repo.upsert_estimate("BTCUSDT", VolatilityEstimate({"garch": 0.03}, 0.03, 60, day))
        stored = repo.get_estimate("BTCUSDT", day)
        assert stored.averaged_pct == 0.03
        assert stored.fallback_models == ()
