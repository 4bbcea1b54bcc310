"""Tests for order-flow scoring and the sampling gate."""

import asyncio
from dataclasses import replace
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from volzone.broker.models import BookLevel, OrderBookSample, TradePrint
from volzone.errors import DataUnavailable, InvalidInput
from volzone.strategy.orderflow import OrderFlowConfig, OrderFlowGate, analyze_sample

LEVEL = 100_000.0
TS = datetime(2025, 3, 1, 12, tzinfo=timezone.utc)


def _make_sample(bids=(), asks=(), trades=()) -> OrderBookSample:
    return OrderBookSample(
        instrument="BTCUSDT",
        started_at=TS,
        window_ms=8000,
        bids=tuple(BookLevel(p, s) for p, s in bids),
        asks=tuple(BookLevel(p, s) for p, s in asks),
        trades=tuple(TradePrint(TS, p, s, side) for p, s, side in trades),
    )


# ── Scoring ──────────────────────────────────────────────────────────────


class TestAnalyzeSample:
    def test_bid_wall_near_level_is_long(self):
        sample = _make_sample(bids=[(99_990.0, 0.75)], asks=[(100_500.0, 5.0)])
        reading = analyze_sample(sample, LEVEL, LEVEL)
        assert reading.bias == "long"
        assert reading.wall_present
        assert reading.bid_notional == pytest.approx(74_992.5)
        assert reading.ask_notional == 0.0
        assert reading.confidence == pytest.approx(74_992.5 / 100_000)

    def test_ask_wall_is_short(self):
        sample = _make_sample(bids=[(99_000.0, 5.0)], asks=[(100_020.0, 2.0)])
        reading = analyze_sample(sample, LEVEL, LEVEL)
        assert reading.bias == "short"
        assert reading.confidence == pytest.approx(1.0)

    def test_small_wall_ignored(self):
        sample = _make_sample(bids=[(99_990.0, 0.1)], asks=[(100_010.0, 0.1)])
        reading = analyze_sample(sample, LEVEL, LEVEL)
        assert reading.bias == "neutral"
        assert reading.confidence == 0.0
        assert not reading.wall_present

    def test_confidence_halved_far_from_level(self):
        sample = _make_sample(bids=[(99_990.0, 0.75)])
        near = analyze_sample(sample, LEVEL, LEVEL)
        far = analyze_sample(sample, LEVEL, 101_000.0)
        assert far.confidence == pytest.approx(near.confidence * 0.5)

    def test_sell_absorption_into_bids(self):
        sample = _make_sample(
            bids=[(99_990.0, 0.01)],
            trades=[(100_000.0, 3.0, "sell"), (100_000.0, 1.0, "buy")],
        )
        reading = analyze_sample(sample, LEVEL, LEVEL)
        assert reading.flags.absorbing_bids
        assert not reading.flags.absorbing_asks
        assert reading.bias == "long"
        assert reading.confidence == pytest.approx(0.3)

    def test_trading_through_level_is_not_absorption(self):
        sample = _make_sample(
            bids=[(99_990.0, 0.01)],
            trades=[(100_000.0, 3.0, "sell"), (99_900.0, 1.0, "sell")],
        )
        reading = analyze_sample(sample, LEVEL, LEVEL)
        assert not reading.flags.absorbing_bids

    def test_surge_needs_baseline(self):
        sample = _make_sample(bids=[(99_990.0, 0.01)], trades=[(100_000.0, 3.0, "buy")])
        assert not analyze_sample(sample, LEVEL, LEVEL).flags.buy_volume_surge
        assert analyze_sample(sample, LEVEL, LEVEL, baseline_volume=1.0).flags.buy_volume_surge
        assert not analyze_sample(sample, LEVEL, LEVEL, baseline_volume=2.0).flags.buy_volume_surge


# ── Gate ─────────────────────────────────────────────────────────────────


class _StubProvider:
    def __init__(self, sample=None, exc=None, delay=0.0):
        self.sample_value = sample
        self.exc = exc
        self.delay = delay
        self.calls = 0

    async def sample(self, instrument, window_ms):
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.exc is not None:
            raise self.exc
        return self.sample_value


class TestOrderFlowGate:
    @pytest.mark.asyncio
    async def test_read_scores_and_records_baseline(self):
        sample = _make_sample(bids=[(99_990.0, 0.75)], trades=[(100_000.0, 2.0, "buy")])
        gate = OrderFlowGate(_StubProvider(sample))
        assert gate.baseline("BTCUSDT") is None

        reading = await gate.read("BTCUSDT", LEVEL, "LONG", LEVEL)
        assert reading.bias == "long"
        assert gate.baseline("BTCUSDT") == pytest.approx(2.0)

    @pytest.mark.asyncio
    async def test_empty_book_is_unavailable(self):
        gate = OrderFlowGate(_StubProvider(_make_sample()))
        with pytest.raises(DataUnavailable, match="empty"):
            await gate.read("BTCUSDT", LEVEL, "LONG", LEVEL)

    @pytest.mark.asyncio
    async def test_provider_error_is_unavailable(self):
        gate = OrderFlowGate(_StubProvider(exc=httpx.ConnectError("connection refused")))
        with pytest.raises(DataUnavailable):
            await gate.read("BTCUSDT", LEVEL, "LONG", LEVEL)

    @pytest.mark.asyncio
    async def test_timeout_is_unavailable(self):
        config = OrderFlowConfig(window_ms=10, timeout_grace_s=0.01)
        gate = OrderFlowGate(_StubProvider(_make_sample(bids=[(1.0, 1.0)]), delay=1.0), config)
        with pytest.raises(DataUnavailable, match="timed out"):
            await gate.read("BTCUSDT", LEVEL, "LONG", LEVEL)

    @pytest.mark.asyncio
    async def test_concurrent_reads_record_one_baseline_sample(self):
        sample = _make_sample(bids=[(99_990.0, 0.75)], trades=[(100_000.0, 2.0, "buy")])
        provider = _StubProvider(sample)
        gate = OrderFlowGate(provider)

        await asyncio.gather(
            gate.read("BTCUSDT", LEVEL, "LONG", LEVEL),
            gate.read("BTCUSDT", 100_625.0, "SHORT", LEVEL),
            gate.read("BTCUSDT", 99_375.0, "LONG", LEVEL),
        )
        assert provider.calls == 3
        assert gate.baseline("BTCUSDT") == pytest.approx(2.0)

        # A sample inside the same window is not recorded again
        provider.sample_value = replace(sample, started_at=TS + timedelta(seconds=4), trades=())
        await gate.read("BTCUSDT", LEVEL, "LONG", LEVEL)
        assert gate.baseline("BTCUSDT") == pytest.approx(2.0)

        # The next window is
        provider.sample_value = replace(sample, started_at=TS + timedelta(seconds=8), trades=())
        await gate.read("BTCUSDT", LEVEL, "LONG", LEVEL)
        assert gate.baseline("BTCUSDT") == pytest.approx(1.0)

    @pytest.mark.asyncio
    async def test_reading_does_not_depend_on_side(self):
        sample = _make_sample(bids=[(99_990.0, 0.75)])
        gate = OrderFlowGate(_StubProvider(sample))
        long_reading = await gate.read("BTCUSDT", LEVEL, "LONG", LEVEL)
        short_reading = await gate.read("BTCUSDT", LEVEL, "SHORT", LEVEL)
        assert long_reading == short_reading

    @pytest.mark.asyncio
    async def test_unknown_side_rejected(self):
        provider = _StubProvider(_make_sample(bids=[(99_990.0, 0.75)]))
        gate = OrderFlowGate(provider)
        with pytest.raises(InvalidInput):
            await gate.read("BTCUSDT", LEVEL, "long", LEVEL)
        assert provider.calls == 0
