"""VolZone — per-instrument engine (orchestration loop).

Connects market data, the session builders and the decision engine into a
single polling loop.  Session set-up (volatility → zones → opening range →
profile → imbalances) runs once per UTC day; every cycle then feeds new
closed candles to the opening-range tracker and evaluates the latest one.
"""

import asyncio
import logging
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Optional

import httpx

from volzone.broker.models import Candle
from volzone.config import Config
from volzone.errors import VolZoneError
from volzone.models.instrument_config import InstrumentConfig
from volzone.repos.volatility_repo import VolatilityRepo
from volzone.state import SessionSnapshot, SnapshotStore, VolatilityCache
from volzone.strategy.base import MarketDataProvider, SignalSink
from volzone.strategy.decision import EvaluationContext, SignalDecisionEngine
from volzone.strategy.imbalance import ImbalanceConfig, detect_imbalances, prune_imbalances
from volzone.strategy.models import VolatilityEstimate
from volzone.strategy.opening_range import OpeningRangeTracker
from volzone.strategy.profile import build_volume_profile
from volzone.strategy.volatility import forecast_volatility
from volzone.strategy.vwap import typical_price
from volzone.strategy.zones import build_zone_map, daily_open_utc, utc_midnight

logger = logging.getLogger("volzone")

_INTERVAL_MINUTES = {"D": 1440, "W": 10080}

# Candles requested per tick; widened after a stall so no closed bar is skipped
_TICK_FETCH_MIN = 10
_TICK_FETCH_MAX = 1000


def interval_minutes(interval: str) -> int:
    """Bybit interval notation → minutes (``"15"`` → 15, ``"D"`` → 1440)."""
    if interval in _INTERVAL_MINUTES:
        return _INTERVAL_MINUTES[interval]
    return int(interval)


class InstrumentEngine:
    """Runs the session set-up and evaluation ticks for one instrument.

    Args:
        config: Application configuration (global settings).
        broker: A ``MarketDataProvider`` (``BybitClient`` or a mock).
        decision: Shared ``SignalDecisionEngine``.
        instrument: Per-instrument settings.
        store: Shared snapshot store.
        vol_cache: Shared daily volatility cache.
        sink: Receives emitted signals (e.g. ``SignalRepo``).
        vol_repo: Optional persistence for daily volatility estimates.
    """

    def __init__(
        self,
        config: Config,
        broker: MarketDataProvider,
        decision: SignalDecisionEngine,
        instrument: InstrumentConfig,
        store: SnapshotStore,
        vol_cache: VolatilityCache,
        sink: Optional[SignalSink] = None,
        vol_repo: Optional[VolatilityRepo] = None,
        imbalance_config: ImbalanceConfig = ImbalanceConfig(),
    ) -> None:
        self._config = config
        self._broker = broker
        self._decision = decision
        self._instrument = instrument
        self._store = store
        self._vol_cache = vol_cache
        self._sink = sink
        self._vol_repo = vol_repo
        self._imbalance_config = imbalance_config

        # Session mutation is serialised per instrument; never held across I/O.
        self._lock = asyncio.Lock()
        self._tracker: Optional[OpeningRangeTracker] = None
        self._last_processed: Optional[datetime] = None
        self._previous_close: Optional[float] = None
        self._vwap_pv = 0.0
        self._vwap_volume = 0.0

        self._running: bool = False
        self._cycle_count: int = 0

    @property
    def name(self) -> str:
        return self._instrument.name

    @property
    def symbol(self) -> str:
        return self._instrument.symbol

    @property
    def running(self) -> bool:
        return self._running

    @property
    def cycle_count(self) -> int:
        return self._cycle_count

    # ── Lifecycle ────────────────────────────────────────────────────────

    async def initialize(self, utc_now: Optional[datetime] = None) -> None:
        """Build today's session; a failure is retried on the next cycle."""
        try:
            await self.start_session(utc_now or datetime.now(timezone.utc))
        except (VolZoneError, httpx.HTTPError) as exc:
            logger.error("Instrument '%s' — failed to initialise session: %s", self.name, exc)
        self._running = True

    def stop(self) -> None:
        """Signal the engine to stop after the current cycle."""
        self._running = False

    # ── Daily volatility ─────────────────────────────────────────────────

    async def daily_volatility(self, utc_now: datetime) -> VolatilityEstimate:
        """Today's estimate from the cache, the repository, or a fresh forecast."""
        day = utc_now.date()
        cached = self._vol_cache.get(self.symbol, day)
        if cached is not None:
            return cached
        if self._vol_repo is not None:
            stored = self._vol_repo.get_estimate(self.symbol, day)
            if stored is not None:
                return self._vol_cache.put(self.symbol, stored)

        daily = await self._broker.fetch_candles(self.symbol, "D", self._instrument.daily_lookback)
        midnight = utc_midnight(utc_now)
        closes = [c.close for c in daily if c.timestamp < midnight]
        estimate = await asyncio.to_thread(forecast_volatility, closes, as_of_day=day)
        logger.info(
            "%s volatility for %s: %.4f (%s%s)",
            self.symbol, day, estimate.averaged_pct,
            ", ".join(f"{k}={v:.4f}" for k, v in estimate.per_model_pct.items()),
            f"; EWMA fallback: {', '.join(estimate.fallback_models)}" if estimate.fallback_models else "",
        )
        if self._vol_repo is not None:
            self._vol_repo.upsert_estimate(self.symbol, estimate)
        return self._vol_cache.put(self.symbol, estimate)

    # ── Session set-up ───────────────────────────────────────────────────

    def _closed(self, candles: list[Candle], utc_now: datetime) -> list[Candle]:
        span = timedelta(minutes=interval_minutes(self._instrument.interval))
        return [c for c in candles if c.timestamp + span <= utc_now]

    async def start_session(self, utc_now: datetime) -> SessionSnapshot:
        """Fetch data and publish a fresh snapshot for the UTC day of *utc_now*."""
        session_start = utc_midnight(utc_now)
        volatility = await self.daily_volatility(utc_now)
        intraday = self._closed(
            await self._broker.fetch_candles(
                self.symbol, self._instrument.interval, self._instrument.intraday_lookback,
            ),
            utc_now,
        )
        if not intraday:
            raise VolZoneError(f"No intraday candles for {self.symbol}")

        reference_open = daily_open_utc(intraday, utc_now)
        zone_map = build_zone_map(reference_open, volatility.averaged_pct, self._instrument.subdivisions)

        tracker = OpeningRangeTracker(
            session_start,
            window_minutes=self._instrument.orb_window_minutes,
            breakout_margin_pct=self._instrument.orb_breakout_margin_pct,
            hold_seconds=self._instrument.orb_hold_seconds,
            breakout_deadline_minutes=self._instrument.orb_deadline_minutes,
        )
        session_candles = [c for c in intraday if c.timestamp >= session_start]
        for candle in session_candles:
            tracker.update(candle)

        profile = build_volume_profile(
            intraday, bucket_size=reference_open * self._instrument.profile_bucket_pct,
        )
        imbalances = prune_imbalances(
            detect_imbalances(intraday, zone_map, self._imbalance_config),
            intraday,
            self._imbalance_config.invalidation_margin_pct,
        )

        async with self._lock:
            self._tracker = tracker
            self._last_processed = intraday[-1].timestamp
            self._previous_close = intraday[-1].close
            self._vwap_pv = sum(typical_price(c) * c.volume for c in session_candles)
            self._vwap_volume = sum(c.volume for c in session_candles)
            snapshot = SessionSnapshot(
                instrument=self.symbol,
                session_day=session_start.date(),
                zone_map=zone_map,
                session=tracker.context(),
                volatility=volatility,
                profile=profile,
                imbalances=tuple(imbalances),
                vwap=self._current_vwap(),
            )
            self._store.publish(snapshot)

        logger.info(
            "%s session %s: open=%.2f range=[%.2f, %.2f] imbalances=%d phase=%s",
            self.symbol, session_start.date(), reference_open,
            zone_map.lower_bound, zone_map.upper_bound, len(imbalances),
            tracker.phase,
        )
        return snapshot

    def _current_vwap(self) -> Optional[float]:
        if self._vwap_volume <= 0:
            return None
        return self._vwap_pv / self._vwap_volume

    def _tick_fetch_count(self, utc_now: datetime) -> int:
        """Bars needed to reach back past the last processed candle."""
        if self._last_processed is None:
            return _TICK_FETCH_MIN
        span = timedelta(minutes=interval_minutes(self._instrument.interval))
        missed = int((utc_now - self._last_processed) / span) + 2
        return max(_TICK_FETCH_MIN, min(_TICK_FETCH_MAX, missed))

    # ── Polling loop ─────────────────────────────────────────────────────

    async def run(
        self,
        poll_interval: int | None = None,
        max_cycles: int = 0,
    ) -> list[dict]:
        """Run the evaluation loop until stopped.

        Args:
            poll_interval: Seconds between cycles. Defaults to the
                           instrument config.
            max_cycles: Stop after this many cycles (0 = unlimited).

        Returns:
            List of per-cycle result dicts.
        """
        if poll_interval is None:
            poll_interval = self._instrument.poll_interval_seconds
        results: list[dict] = []
        cycle = 0

        while self._running:
            cycle += 1
            self._cycle_count += 1
            try:
                result = await self.run_once()
                results.append(result)
                logger.info("%s cycle %d: %s", self.name, cycle, result.get("action", "unknown"))
            except (VolZoneError, httpx.HTTPError) as exc:
                logger.error("%s cycle %d error: %s", self.name, cycle, exc)
                results.append({"action": "error", "reason": str(exc)})

            if max_cycles > 0 and cycle >= max_cycles:
                break

            # Interruptible sleep, checks _running every second
            for _ in range(poll_interval):
                if not self._running:
                    break
                await asyncio.sleep(1)

        return results

    # ── Single cycle ─────────────────────────────────────────────────────

    async def run_once(self, utc_now: Optional[datetime] = None) -> dict:
        """Execute one evaluation cycle.

        Returns a dict describing what happened:

        - ``{"action": "session_started", ...}``
        - ``{"action": "skipped", "reason": "no_new_candle"}``
        - ``{"action": "no_signal", ...}``
        - ``{"action": "signal", "setup_type": ..., ...}``

        Args:
            utc_now: Current UTC datetime.  Defaults to ``datetime.now(UTC)``.
        """
        if utc_now is None:
            utc_now = datetime.now(timezone.utc)

        snapshot = self._store.get(self.symbol)
        if snapshot is None or snapshot.session_day != utc_now.date() or self._tracker is None:
            snapshot = await self.start_session(utc_now)
            return {
                "action": "session_started",
                "session_day": snapshot.session_day.isoformat(),
                "averaged_pct": snapshot.volatility.averaged_pct,
            }

        candles = self._closed(
            await self._broker.fetch_candles(
                self.symbol, self._instrument.interval, self._tick_fetch_count(utc_now),
            ),
            utc_now,
        )

        async with self._lock:
            new = [
                c for c in candles
                if self._last_processed is None or c.timestamp > self._last_processed
            ]
            if not new:
                return {"action": "skipped", "reason": "no_new_candle"}

            previous_close = new[-2].close if len(new) > 1 else self._previous_close
            breakout = None
            for candle in new:
                breakout = self._tracker.update(candle) or breakout
                self._vwap_pv += typical_price(candle) * candle.volume
                self._vwap_volume += candle.volume
            self._last_processed = new[-1].timestamp
            self._previous_close = new[-1].close

            current = self._store.get(self.symbol)
            snapshot = replace(
                current,
                session=self._tracker.context(),
                imbalances=tuple(prune_imbalances(
                    current.imbalances, new, self._imbalance_config.invalidation_margin_pct,
                )),
                vwap=self._current_vwap(),
            )
            self._store.publish(snapshot)

        ctx = EvaluationContext.from_snapshot(snapshot, new[-1], previous_close, breakout)
        signal = await self._decision.evaluate(ctx)
        if signal is None:
            return {"action": "no_signal", "phase": snapshot.session.phase, "price": new[-1].close}

        if self._sink is not None:
            self._sink.record_signal(signal)
        return {
            "action": "signal",
            "setup_type": signal.setup_type,
            "side": signal.side,
            "entry": signal.entry,
            "take_profit": signal.take_profit,
            "stop_loss": signal.stop_loss,
            "confidence": signal.confidence,
            "reason": signal.context.reason,
        }
