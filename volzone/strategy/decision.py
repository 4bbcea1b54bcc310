"""Signal decision engine — resolves at most one signal per evaluation tick.

Two regimes:

1. A breakout confirmed on this tick: only the opening-range rule runs
   (``ORB``), gated by order flow at the broken range boundary.
2. A resolved session: zone breakouts, zone rejections and imbalance
   re-entries are collected as candidates, each is scored from order flow,
   the volume profile and the session bias, and the best one wins.

Order-flow queries for all candidates run concurrently.  A candidate whose
query raises ``DataUnavailable`` is dropped; the rest are still scored.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from volzone.broker.models import Candle
from volzone.errors import DataUnavailable
from volzone.state import SessionSnapshot
from volzone.strategy.models import (
    NEUTRAL_PROFILE,
    Breakout,
    Imbalance,
    OrderFlowReading,
    ProfileContext,
    SessionContext,
    Signal,
    SignalContext,
    side_to_bias,
)
from volzone.strategy.orderflow import OrderFlowGate
from volzone.strategy.profile import VolumeProfile
from volzone.strategy.zones import ZoneMap, has_broken_and_held

logger = logging.getLogger("volzone")

# Breakout-style setups want thin volume to travel through; rejection-style
# setups want a high-volume node to lean on.
_BREAKOUT_STYLE = {"ORB", "ZONE_BREAKOUT", "IMBALANCE_CONTINUATION"}
_REJECTION_STYLE = {"ZONE_REJECTION", "IMBALANCE_RETEST"}


@dataclass(frozen=True)
class DecisionConfig:
    min_confidence: float = 0.4
    touch_tolerance_pct: float = 0.0005
    breakout_hold_pct: float = 0.001
    profile_tolerance_pct: float = 0.002
    wick_ratio: float = 1.0
    base_confidence: float = 0.5
    orderflow_weight: float = 0.4
    profile_weight: float = 0.3
    profile_mismatch_factor: float = 0.75
    session_aligned_factor: float = 1.15
    session_opposed_factor: float = 0.7
    neutral_flow_factor: float = 0.5
    stop_margin_pct: float = 0.0005
    evaluation_timeout_s: float = 12.0


@dataclass(frozen=True)
class EvaluationContext:
    """Everything one evaluation tick needs, threaded through every stage."""

    instrument: str
    zone_map: ZoneMap
    session: SessionContext
    candle: Candle
    previous_close: Optional[float] = None
    profile: Optional[VolumeProfile] = None
    imbalances: tuple[Imbalance, ...] = ()
    breakout: Optional[Breakout] = None
    vwap: Optional[float] = None

    @classmethod
    def from_snapshot(
        cls,
        snapshot: SessionSnapshot,
        candle: Candle,
        previous_close: Optional[float],
        breakout: Optional[Breakout] = None,
    ) -> "EvaluationContext":
        return cls(
            instrument=snapshot.instrument,
            zone_map=snapshot.zone_map,
            session=snapshot.session,
            candle=candle,
            previous_close=previous_close,
            profile=snapshot.profile,
            imbalances=snapshot.imbalances,
            breakout=breakout,
            vwap=snapshot.vwap,
        )

    @property
    def price(self) -> float:
        return self.candle.close


@dataclass(frozen=True)
class Candidate:
    setup_type: str
    side: str  # "LONG" or "SHORT"
    level: float
    imbalance: Optional[Imbalance] = None


# ── Candle shape ─────────────────────────────────────────────────────────


def is_rejection_wick_buy(candle: Candle, wick_ratio: float = 1.0) -> bool:
    """Lower wick longer than *wick_ratio* × body (any lower wick for a doji)."""
    body = abs(candle.close - candle.open)
    lower_wick = min(candle.open, candle.close) - candle.low
    if body == 0:
        return lower_wick > 0
    return lower_wick > wick_ratio * body


def is_rejection_wick_sell(candle: Candle, wick_ratio: float = 1.0) -> bool:
    """Upper wick longer than *wick_ratio* × body (any upper wick for a doji)."""
    body = abs(candle.close - candle.open)
    upper_wick = candle.high - max(candle.open, candle.close)
    if body == 0:
        return upper_wick > 0
    return upper_wick > wick_ratio * body


# ── Candidate discovery ──────────────────────────────────────────────────


def orb_candidates(ctx: EvaluationContext) -> list[Candidate]:
    if ctx.breakout is None:
        return []
    side = "LONG" if ctx.breakout.direction == "long" else "SHORT"
    return [Candidate(setup_type="ORB", side=side, level=ctx.breakout.level)]


def zone_candidates(ctx: EvaluationContext, config: DecisionConfig = DecisionConfig()) -> list[Candidate]:
    """Breakouts through, and rejections off, ladder levels on the latest candle."""
    candle = ctx.candle
    prev = ctx.previous_close
    tol = config.touch_tolerance_pct
    ladder = ctx.zone_map.ladder()
    found: list[Candidate] = []

    if prev is not None:
        crossed_up = [
            lv for lv in ladder
            if prev < lv and has_broken_and_held(candle.close, lv, "up", config.breakout_hold_pct)
        ]
        if crossed_up:
            found.append(Candidate("ZONE_BREAKOUT", "LONG", max(crossed_up)))
        crossed_down = [
            lv for lv in ladder
            if prev > lv and has_broken_and_held(candle.close, lv, "down", config.breakout_hold_pct)
        ]
        if crossed_down:
            found.append(Candidate("ZONE_BREAKOUT", "SHORT", min(crossed_down)))

    for lv in ladder:
        approached_from_above = prev is None or prev >= lv
        if (
            approached_from_above
            and candle.low <= lv * (1 + tol)
            and candle.close > lv
            and is_rejection_wick_buy(candle, config.wick_ratio)
        ):
            found.append(Candidate("ZONE_REJECTION", "LONG", lv))

        approached_from_below = prev is None or prev <= lv
        if (
            approached_from_below
            and candle.high >= lv * (1 - tol)
            and candle.close < lv
            and is_rejection_wick_sell(candle, config.wick_ratio)
        ):
            found.append(Candidate("ZONE_REJECTION", "SHORT", lv))

    return found


def imbalance_candidates(ctx: EvaluationContext) -> list[Candidate]:
    """Imbalances whose band the close has just re-entered.

    Re-entering a bullish band from above (or a bearish band from below) is
    a retest.  Re-entering from the other side is a continuation and only
    counts when the session bias points the same way.
    """
    prev = ctx.previous_close
    close = ctx.candle.close
    if prev is None:
        return []

    found: list[Candidate] = []
    for imb in ctx.imbalances:
        if not imb.contains(close) or imb.contains(prev):
            continue
        from_above = prev > imb.upper_boundary
        side = "LONG" if imb.direction == "bullish" else "SHORT"
        if (imb.direction == "bullish") == from_above:
            found.append(Candidate("IMBALANCE_RETEST", side, imb.midpoint, imbalance=imb))
        elif ctx.session.session_bias == side_to_bias(side):
            found.append(Candidate("IMBALANCE_CONTINUATION", side, imb.midpoint, imbalance=imb))
    return found


# ── Scoring ──────────────────────────────────────────────────────────────


def score_candidate(
    candidate: Candidate,
    reading: OrderFlowReading,
    profile: ProfileContext,
    session_bias: str,
    config: DecisionConfig = DecisionConfig(),
) -> Optional[float]:
    """Confidence of *candidate*, or ``None`` when order flow opposes it."""
    wanted = side_to_bias(candidate.side)
    if reading.bias == wanted:
        score = config.base_confidence + config.orderflow_weight * reading.confidence
    elif reading.bias == "neutral":
        score = config.base_confidence
    else:
        return None

    favoured = "LVN" if candidate.setup_type in _BREAKOUT_STYLE else "HVN"
    if profile.node_type == favoured:
        score += config.profile_weight * profile.confidence
    elif profile.node_type != "neutral":
        score *= config.profile_mismatch_factor

    if session_bias == wanted:
        score *= config.session_aligned_factor
    elif session_bias != "neutral":
        score *= config.session_opposed_factor

    if reading.bias == "neutral":
        score *= config.neutral_flow_factor

    return max(0.0, min(1.0, score))


def protective_levels(
    candidate: Candidate,
    entry: float,
    ctx: EvaluationContext,
    config: DecisionConfig = DecisionConfig(),
) -> tuple[float, float]:
    """``(take_profit, stop_loss)`` from the adjacent ladder level or band edge."""
    zm = ctx.zone_map
    if candidate.side == "LONG":
        take_profit = zm.next_level_above(entry)
        if candidate.imbalance is not None:
            stop_loss = candidate.imbalance.lower_boundary * (1 - config.stop_margin_pct)
        elif candidate.setup_type == "ORB" and ctx.session.opening_range_low is not None:
            stop_loss = ctx.session.opening_range_low
        else:
            stop_loss = zm.next_level_below(min(entry, candidate.level))
    else:
        take_profit = zm.next_level_below(entry)
        if candidate.imbalance is not None:
            stop_loss = candidate.imbalance.upper_boundary * (1 + config.stop_margin_pct)
        elif candidate.setup_type == "ORB" and ctx.session.opening_range_high is not None:
            stop_loss = ctx.session.opening_range_high
        else:
            stop_loss = zm.next_level_above(max(entry, candidate.level))
    return take_profit, stop_loss


def _describe(candidate: Candidate, reading: OrderFlowReading, profile: ProfileContext, ctx: EvaluationContext) -> str:
    labels = {
        "ORB": "Opening-range breakout",
        "ZONE_BREAKOUT": "Zone breakout",
        "ZONE_REJECTION": "Zone rejection",
        "IMBALANCE_RETEST": "Imbalance retest",
        "IMBALANCE_CONTINUATION": "Imbalance continuation",
    }
    where = f"{candidate.level:.2f} ({ctx.zone_map.quadrant_of(candidate.level)})"
    parts = [
        f"{labels[candidate.setup_type]} {candidate.side} at {where}",
        f"order flow {reading.bias} {reading.confidence:.2f}",
        f"profile {profile.node_type}",
        f"session {ctx.session.session_bias}",
    ]
    if candidate.imbalance is not None:
        imb = candidate.imbalance
        parts.append(f"{imb.kind} {imb.lower_boundary:.2f}-{imb.upper_boundary:.2f}")
    return ", ".join(parts)


# ── Engine ───────────────────────────────────────────────────────────────


class SignalDecisionEngine:
    """Scores candidates against order flow and emits the best signal.

    Args:
        gate: An ``OrderFlowGate`` (or anything with the same ``read``).
        config: Thresholds and scoring weights.
    """

    def __init__(self, gate: OrderFlowGate, config: DecisionConfig = DecisionConfig()) -> None:
        self._gate = gate
        self._config = config

    async def evaluate(self, ctx: EvaluationContext) -> Optional[Signal]:
        """Evaluate one tick; ``None`` when nothing qualifies or time runs out."""
        try:
            return await asyncio.wait_for(self._evaluate(ctx), timeout=self._config.evaluation_timeout_s)
        except asyncio.TimeoutError:
            logger.warning(
                "%s evaluation exceeded %.1fs — no signal this tick",
                ctx.instrument, self._config.evaluation_timeout_s,
            )
            return None

    def candidates(self, ctx: EvaluationContext) -> list[Candidate]:
        if ctx.breakout is not None:
            return orb_candidates(ctx)
        if not ctx.session.is_resolved:
            return []
        return zone_candidates(ctx, self._config) + imbalance_candidates(ctx)

    async def _evaluate(self, ctx: EvaluationContext) -> Optional[Signal]:
        candidates = self.candidates(ctx)
        if not candidates:
            return None

        readings = await asyncio.gather(
            *(self._gate.read(ctx.instrument, c.level, c.side, ctx.price) for c in candidates),
            return_exceptions=True,
        )

        best: Optional[tuple[float, Candidate, OrderFlowReading, ProfileContext]] = None
        for candidate, reading in zip(candidates, readings):
            if isinstance(reading, DataUnavailable):
                logger.info(
                    "%s %s %s at %.2f unconfirmed: %s",
                    ctx.instrument, candidate.setup_type, candidate.side, candidate.level, reading,
                )
                continue
            if isinstance(reading, BaseException):
                raise reading

            profile = (
                ctx.profile.classify(candidate.level, self._config.profile_tolerance_pct)
                if ctx.profile is not None else NEUTRAL_PROFILE
            )
            confidence = score_candidate(
                candidate, reading, profile, ctx.session.session_bias, self._config,
            )
            if confidence is None or confidence < self._config.min_confidence:
                logger.debug(
                    "%s %s %s dropped (confidence=%s)",
                    ctx.instrument, candidate.setup_type, candidate.side, confidence,
                )
                continue
            # Strict comparison keeps the earliest candidate on ties.
            if best is None or confidence > best[0]:
                best = (confidence, candidate, reading, profile)

        if best is None:
            return None

        confidence, candidate, reading, profile = best
        entry = ctx.price
        take_profit, stop_loss = protective_levels(candidate, entry, ctx, self._config)
        signal = Signal(
            instrument=ctx.instrument,
            setup_type=candidate.setup_type,
            side=candidate.side,
            entry=entry,
            take_profit=take_profit,
            stop_loss=stop_loss,
            confidence=confidence,
            context=SignalContext(
                session_bias=ctx.session.session_bias,
                profile_context=profile,
                order_flow=reading,
                zone_info=ctx.zone_map.zone_info(entry),
                imbalance=candidate.imbalance,
                reason=_describe(candidate, reading, profile, ctx),
                vwap=ctx.vwap,
            ),
            emitted_at=datetime.now(timezone.utc),
        )
        logger.info(
            "%s signal: %s %s @ %.2f TP=%.2f SL=%.2f conf=%.2f",
            ctx.instrument, signal.setup_type, signal.side, entry,
            take_profit, stop_loss, confidence,
        )
        return signal
