"""Strategy data models — typed representations for engine inputs and outputs."""

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Optional


# ── Enumerations (plain strings, validated where they are produced) ─────

SIDES = ("LONG", "SHORT")
BIASES = ("long", "short", "neutral")
SETUP_TYPES = (
    "ORB",
    "ZONE_BREAKOUT",
    "ZONE_REJECTION",
    "IMBALANCE_RETEST",
    "IMBALANCE_CONTINUATION",
)

# Session phases of the opening-range tracker
PHASE_COLLECTING = "collecting"
PHASE_WATCHING = "watching"
PHASE_RESOLVED = "resolved"


def side_to_bias(side: str) -> str:
    """``"LONG"`` → ``"long"``, ``"SHORT"`` → ``"short"``."""
    return "long" if side == "LONG" else "short"


def bias_to_side(bias: str) -> Optional[str]:
    if bias == "long":
        return "LONG"
    if bias == "short":
        return "SHORT"
    return None


# ── Volatility ───────────────────────────────────────────────────────────


@dataclass(frozen=True)
class VolatilityEstimate:
    """Daily volatility forecast, averaged over the variance models.

    ``averaged_pct`` is a fraction (0.02 means 2%) and always lies in
    ``[0.01, 0.10]``.
    """

    per_model_pct: dict[str, float]
    averaged_pct: float
    data_point_count: int
    as_of_day: date
    fallback_models: tuple[str, ...] = ()


# ── Zones ────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class ZoneInfo:
    """Where a price sits relative to the zone ladder."""

    quadrant: str  # "Q2", "Q1", "Q0", "Q-1" or "Q-2"
    nearest_boundary: float
    distance_to_boundary_pct: float


# ── Session ──────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class SessionContext:
    """Snapshot of the opening-range state for one trading session."""

    session_start: datetime
    opening_range_high: Optional[float]
    opening_range_low: Optional[float]
    session_bias: str = "neutral"  # "long", "short" or "neutral"
    phase: str = PHASE_COLLECTING

    @property
    def is_resolved(self) -> bool:
        return self.phase == PHASE_RESOLVED


@dataclass(frozen=True)
class Breakout:
    """A confirmed opening-range breakout."""

    direction: str  # "long" or "short"
    level: float  # the range boundary that was broken
    price: float  # close of the confirming candle
    confirmed_at: datetime


# ── Imbalances ───────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Imbalance:
    """A fair-value gap or volume void: a price band the market skipped."""

    upper_boundary: float
    lower_boundary: float
    midpoint: float
    direction: str  # "bullish" or "bearish"
    strength: float  # 0..1
    zone_quadrant: str
    kind: str  # "fvg" or "void"
    created_at: datetime

    @property
    def size(self) -> float:
        return self.upper_boundary - self.lower_boundary

    def contains(self, price: float) -> bool:
        return self.lower_boundary <= price <= self.upper_boundary


# ── Profile ──────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class ProfileContext:
    """Volume-profile classification of a price."""

    node_type: str  # "HVN", "LVN" or "neutral"
    confidence: float
    nearest_node_price: Optional[float]
    distance: Optional[float]


NEUTRAL_PROFILE = ProfileContext(
    node_type="neutral", confidence=0.0, nearest_node_price=None, distance=None,
)


# ── Order flow ───────────────────────────────────────────────────────────


@dataclass(frozen=True)
class OrderFlowFlags:
    absorbing_bids: bool = False
    absorbing_asks: bool = False
    buy_volume_surge: bool = False
    sell_volume_surge: bool = False


@dataclass(frozen=True)
class OrderFlowReading:
    """Result of one order-flow confirmation query (not persisted)."""

    bias: str  # "long", "short" or "neutral"
    confidence: float
    flags: OrderFlowFlags = field(default_factory=OrderFlowFlags)
    wall_present: bool = False
    bid_notional: float = 0.0
    ask_notional: float = 0.0
    level: Optional[float] = None


# ── Signal ───────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class SignalContext:
    """Everything the decision engine knew when it emitted a signal."""

    session_bias: str
    profile_context: ProfileContext
    order_flow: OrderFlowReading
    zone_info: ZoneInfo
    imbalance: Optional[Imbalance]
    reason: str
    vwap: Optional[float] = None


@dataclass(frozen=True)
class Signal:
    """A trade recommendation. Immutable once emitted."""

    instrument: str
    setup_type: str  # one of SETUP_TYPES
    side: str  # "LONG" or "SHORT"
    entry: float
    take_profit: float
    stop_loss: float
    confidence: float
    context: SignalContext
    emitted_at: datetime
