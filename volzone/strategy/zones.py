"""Zone engine — volatility ladder around the daily open.

The expected daily range ``open·(1 ± pct)`` is split into ``subdivisions``
equal steps on each side.  The range is also divided into four quadrants
(two above, two below the open) used to tag where price currently trades.
"""

import math
from dataclasses import dataclass
from datetime import datetime, time, timezone
from typing import Optional, Sequence

from volzone.broker.models import Candle
from volzone.errors import InvalidInput
from volzone.strategy.models import ZoneInfo

DEFAULT_SUBDIVISIONS = 4
DEFAULT_TOUCH_TOLERANCE_PCT = 0.0005
DEFAULT_HOLD_PCT = 0.001


@dataclass(frozen=True)
class ZoneMap:
    """Price ladder for one session.

    ``upper_levels`` ascend from the first step above the open to
    ``upper_bound``; ``lower_levels`` descend from the first step below the
    open to ``lower_bound``.
    """

    reference_open: float
    pct: float
    upper_bound: float
    lower_bound: float
    upper_levels: tuple[float, ...]
    lower_levels: tuple[float, ...]
    quadrants: dict[str, float]

    @property
    def step(self) -> float:
        return (self.upper_bound - self.reference_open) / len(self.upper_levels)

    def ladder(self) -> list[float]:
        """Every level, including the open, in ascending order."""
        return sorted((*self.lower_levels, self.reference_open, *self.upper_levels))

    def quadrant_of(self, price: float) -> str:
        q = self.quadrants
        if price >= q["Q2"]:
            return "Q2"
        if price >= q["Q1"]:
            return "Q1"
        if price >= q["Q0"]:
            return "Q0"
        if price >= q["Q-1"]:
            return "Q-1"
        return "Q-2"

    def nearest_boundary(self, price: float) -> float:
        """Closest quadrant boundary (``Q-2`` … ``Q2``) to *price*."""
        return min(self.quadrants.values(), key=lambda b: abs(price - b))

    def zone_info(self, price: float) -> ZoneInfo:
        boundary = self.nearest_boundary(price)
        return ZoneInfo(
            quadrant=self.quadrant_of(price),
            nearest_boundary=boundary,
            distance_to_boundary_pct=abs(price - boundary) / self.reference_open * 100,
        )

    def next_level_above(self, price: float) -> float:
        """First ladder level strictly above *price*.

        Beyond the upper bound the ladder is extended by whole steps.
        """
        for level in self.ladder():
            if level > price:
                return level
        steps = math.floor((price - self.upper_bound) / self.step) + 1
        return self.upper_bound + steps * self.step

    def next_level_below(self, price: float) -> float:
        """First ladder level strictly below *price* (extended past the lower bound)."""
        for level in reversed(self.ladder()):
            if level < price:
                return level
        steps = math.floor((self.lower_bound - price) / self.step) + 1
        return self.lower_bound - steps * self.step


def build_zone_map(
    reference_open: float,
    pct: float,
    subdivisions: int = DEFAULT_SUBDIVISIONS,
) -> ZoneMap:
    """Build the zone ladder for a session.

    Args:
        reference_open: The session's opening price.
        pct: Expected range as a fraction (normally ``averaged_pct``).
        subdivisions: Levels per side; the last one equals the bound.

    Raises:
        InvalidInput: non-positive or non-finite open, non-positive pct or
            fewer than one subdivision.
    """
    if not math.isfinite(reference_open) or reference_open <= 0:
        raise InvalidInput(f"reference_open must be positive, got {reference_open}")
    if not math.isfinite(pct) or pct <= 0:
        raise InvalidInput(f"pct must be positive, got {pct}")
    if subdivisions < 1:
        raise InvalidInput(f"subdivisions must be >= 1, got {subdivisions}")

    upper_bound = reference_open * (1 + pct)
    lower_bound = reference_open * (1 - pct)
    step = (upper_bound - reference_open) / subdivisions

    upper = [reference_open + step * i for i in range(1, subdivisions)] + [upper_bound]
    lower = [reference_open - step * i for i in range(1, subdivisions)] + [lower_bound]

    quadrants = {
        "Q2": upper_bound,
        "Q1": reference_open + (upper_bound - reference_open) / 2,
        "Q0": reference_open,
        "Q-1": reference_open - (reference_open - lower_bound) / 2,
        "Q-2": lower_bound,
    }

    return ZoneMap(
        reference_open=reference_open,
        pct=pct,
        upper_bound=upper_bound,
        lower_bound=lower_bound,
        upper_levels=tuple(upper),
        lower_levels=tuple(lower),
        quadrants=quadrants,
    )


# ── Level interaction tests ──────────────────────────────────────────────


def has_touched(price: float, level: float, tolerance_pct: float = DEFAULT_TOUCH_TOLERANCE_PCT) -> bool:
    """True when *price* is within ``level · tolerance_pct`` of *level*."""
    return abs(price - level) <= level * tolerance_pct


def has_broken_and_held(
    price: float,
    level: float,
    direction: str,
    hold_pct: float = DEFAULT_HOLD_PCT,
) -> bool:
    """True when *price* is beyond *level* by at least ``hold_pct``.

    ``direction`` is ``"up"`` or ``"down"``.
    """
    if direction == "up":
        return price >= level * (1 + hold_pct)
    if direction == "down":
        return price <= level * (1 - hold_pct)
    raise InvalidInput(f"direction must be 'up' or 'down', got {direction!r}")


# ── Daily open ───────────────────────────────────────────────────────────


def utc_midnight(ts: datetime) -> datetime:
    """Start of the UTC day containing *ts*."""
    ts = ts.astimezone(timezone.utc)
    return datetime.combine(ts.date(), time.min, tzinfo=timezone.utc)


def daily_open_utc(candles: Sequence[Candle], now: Optional[datetime] = None) -> Optional[float]:
    """Open of the first candle at or after the latest UTC midnight.

    Falls back to the last close when no candle has opened since midnight,
    and ``None`` for an empty sequence.
    """
    if not candles:
        return None
    if now is None:
        now = candles[-1].timestamp
    midnight = utc_midnight(now)
    for candle in candles:
        if candle.timestamp >= midnight:
            return candle.open
    return candles[-1].close
