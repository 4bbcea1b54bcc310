"""Imbalance detector — fair-value gaps and volume voids.

A fair-value gap (FVG) is the price band left untraded between the first and
third candle of a three-candle sequence.  A volume void is a run of
consecutive candles trading on unusually thin volume.  Both mark areas price
tends to revisit.
"""

import logging
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Optional, Sequence

from volzone.broker.models import Candle
from volzone.strategy.models import Imbalance
from volzone.strategy.zones import ZoneMap

logger = logging.getLogger("volzone")


@dataclass(frozen=True)
class ImbalanceConfig:
    """Detection thresholds (all percentages are fractions)."""

    min_gap_pct: float = 0.001
    max_gap_pct: float = 0.01
    min_void_candles: int = 3
    void_volume_fraction: float = 0.5
    volume_lookback: int = 20
    detect_fvg: bool = True
    detect_voids: bool = True
    merge_overlapping: bool = True
    invalidation_margin_pct: float = 0.0005


def _quadrant(zone_map: Optional[ZoneMap], price: float) -> str:
    return zone_map.quadrant_of(price) if zone_map is not None else "unknown"


# ── Fair-value gaps ──────────────────────────────────────────────────────


def find_fair_value_gaps(
    candles: Sequence[Candle],
    zone_map: Optional[ZoneMap] = None,
    config: ImbalanceConfig = ImbalanceConfig(),
) -> list[Imbalance]:
    """Scan every three-candle window for a gap between candle 1 and 3."""
    found: list[Imbalance] = []
    for i in range(len(candles) - 2):
        first, third = candles[i], candles[i + 2]

        if third.low > first.high:
            lower, upper, direction = first.high, third.low, "bullish"
            gap_pct = (upper - lower) / lower
        elif third.high < first.low:
            lower, upper, direction = third.high, first.low, "bearish"
            gap_pct = (upper - lower) / upper
        else:
            continue

        if not config.min_gap_pct <= gap_pct <= config.max_gap_pct:
            continue

        midpoint = (upper + lower) / 2
        found.append(
            Imbalance(
                upper_boundary=upper,
                lower_boundary=lower,
                midpoint=midpoint,
                direction=direction,
                strength=min(1.0, gap_pct / config.max_gap_pct),
                zone_quadrant=_quadrant(zone_map, midpoint),
                kind="fvg",
                created_at=third.timestamp,
            )
        )
    return found


# ── Volume voids ─────────────────────────────────────────────────────────


def find_volume_voids(
    candles: Sequence[Candle],
    zone_map: Optional[ZoneMap] = None,
    config: ImbalanceConfig = ImbalanceConfig(),
) -> list[Imbalance]:
    """Find runs of thin-volume candles.

    A candle is thin when its volume is below ``void_volume_fraction`` of the
    average volume of the ``volume_lookback`` candles before it.  Runs shorter
    than ``min_void_candles`` are ignored.
    """
    n = config.min_void_candles
    thresholds: list[Optional[float]] = []
    for i in range(len(candles)):
        prior = candles[max(0, i - config.volume_lookback):i]
        if len(prior) < n:
            thresholds.append(None)
            continue
        avg = sum(c.volume for c in prior) / len(prior)
        thresholds.append(avg * config.void_volume_fraction)

    runs: list[tuple[int, int]] = []
    start: Optional[int] = None
    for i, candle in enumerate(candles):
        thin = thresholds[i] is not None and candle.volume < thresholds[i]
        if thin and start is None:
            start = i
        elif not thin and start is not None:
            runs.append((start, i))
            start = None
    if start is not None:
        runs.append((start, len(candles)))

    found: list[Imbalance] = []
    for begin, end in runs:
        window = candles[begin:end]
        if len(window) < n:
            continue
        upper = max(c.high for c in window)
        lower = min(c.low for c in window)
        if lower <= 0 or (upper - lower) / lower < config.min_gap_pct:
            continue

        threshold = sum(thresholds[begin:end]) / len(window)
        avg_volume = sum(c.volume for c in window) / len(window)
        direction = "bullish" if window[-1].close > window[0].open else "bearish"
        midpoint = (upper + lower) / 2
        found.append(
            Imbalance(
                upper_boundary=upper,
                lower_boundary=lower,
                midpoint=midpoint,
                direction=direction,
                strength=min(1.0, max(0.0, (threshold - avg_volume) / threshold)),
                zone_quadrant=_quadrant(zone_map, midpoint),
                kind="void",
                created_at=window[-1].timestamp,
            )
        )
    return found


# ── Merge / prune ────────────────────────────────────────────────────────


def _overlaps(a: Imbalance, b: Imbalance) -> bool:
    return abs(a.midpoint - b.midpoint) < max(a.size, b.size) * 0.5


def merge_imbalances(imbalances: Sequence[Imbalance]) -> list[Imbalance]:
    """Merge same-direction imbalances whose midpoints sit within half a band."""
    ordered = sorted(imbalances, key=lambda imb: imb.midpoint)
    if len(ordered) <= 1:
        return list(ordered)

    merged: list[Imbalance] = []
    current = ordered[0]
    for nxt in ordered[1:]:
        if nxt.direction == current.direction and _overlaps(current, nxt):
            upper = max(current.upper_boundary, nxt.upper_boundary)
            lower = min(current.lower_boundary, nxt.lower_boundary)
            current = replace(
                current,
                upper_boundary=upper,
                lower_boundary=lower,
                midpoint=(upper + lower) / 2,
                strength=max(current.strength, nxt.strength),
                created_at=min(current.created_at, nxt.created_at),
            )
        else:
            merged.append(current)
            current = nxt
    merged.append(current)
    return merged


def detect_imbalances(
    candles: Sequence[Candle],
    zone_map: Optional[ZoneMap] = None,
    config: ImbalanceConfig = ImbalanceConfig(),
) -> list[Imbalance]:
    """Detect fair-value gaps and volume voids in *candles* (oldest first)."""
    if len(candles) < 3:
        return []

    found: list[Imbalance] = []
    if config.detect_fvg:
        found.extend(find_fair_value_gaps(candles, zone_map, config))
    if config.detect_voids:
        found.extend(find_volume_voids(candles, zone_map, config))
    if config.merge_overlapping:
        found = merge_imbalances(found)

    logger.debug("Detected %d imbalance(s) over %d candles", len(found), len(candles))
    return found


def is_invalidated(imbalance: Imbalance, close: float, margin_pct: float) -> bool:
    """True when *close* has traded through the band by more than the margin."""
    if imbalance.direction == "bullish":
        return close < imbalance.lower_boundary * (1 - margin_pct)
    return close > imbalance.upper_boundary * (1 + margin_pct)


def prune_imbalances(
    imbalances: Sequence[Imbalance],
    candles: Sequence[Candle],
    margin_pct: float = ImbalanceConfig.invalidation_margin_pct,
    max_age: Optional[timedelta] = None,
    now: Optional[datetime] = None,
) -> list[Imbalance]:
    """Drop imbalances closed through after their creation, or older than *max_age*."""
    live: list[Imbalance] = []
    for imb in imbalances:
        later = [c for c in candles if c.timestamp > imb.created_at]
        if any(is_invalidated(imb, c.close, margin_pct) for c in later):
            continue
        if max_age is not None and now is not None and now - imb.created_at > max_age:
            continue
        live.append(imb)
    return live
