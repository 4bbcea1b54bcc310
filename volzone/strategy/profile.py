"""Volume profile — classify prices as high- or low-volume nodes.

Candle volume is spread across the fixed-size price buckets its high/low
range overlaps.  Buckets at or above the ``hvn_percentile`` of non-zero
bucket volumes are HVNs; buckets at or below ``lvn_percentile`` (including
empty buckets) are LVNs.
"""

import math
from dataclasses import dataclass
from typing import Optional, Sequence

import numpy as np

from volzone.broker.models import Candle
from volzone.errors import InsufficientData, InvalidInput
from volzone.strategy.models import NEUTRAL_PROFILE, ProfileContext

DEFAULT_BUCKET_PCT = 0.001
DEFAULT_PROXIMITY_PCT = 0.002
DEFAULT_HVN_PERCENTILE = 75.0
DEFAULT_LVN_PERCENTILE = 25.0


@dataclass(frozen=True)
class ProfileNode:
    price: float  # bucket centre
    volume: float
    node_type: str  # "HVN", "LVN" or "neutral"


class VolumeProfile:
    """Bucketed volume distribution with HVN / LVN thresholds.

    Built by :func:`build_volume_profile`; immutable afterwards.
    """

    def __init__(
        self,
        min_price: float,
        bucket_size: float,
        volumes: np.ndarray,
        hvn_threshold: float,
        lvn_threshold: float,
        median_volume: float,
    ) -> None:
        self.min_price = min_price
        self.bucket_size = bucket_size
        self._volumes = volumes
        self.hvn_threshold = hvn_threshold
        self.lvn_threshold = lvn_threshold
        self.median_volume = median_volume

    @property
    def max_price(self) -> float:
        return self.min_price + self.bucket_size * len(self._volumes)

    @property
    def bucket_count(self) -> int:
        return len(self._volumes)

    def bucket_center(self, index: int) -> float:
        return self.min_price + (index + 0.5) * self.bucket_size

    def bucket_index(self, price: float) -> int:
        idx = int(math.floor((price - self.min_price) / self.bucket_size))
        return min(max(idx, 0), len(self._volumes) - 1)

    def volume_at(self, price: float) -> float:
        return float(self._volumes[self.bucket_index(price)])

    def _node_type(self, volume: float) -> str:
        if self.median_volume <= 0:
            return "neutral"
        if volume > 0 and volume >= self.hvn_threshold:
            return "HVN"
        if volume <= self.lvn_threshold:
            return "LVN"
        return "neutral"

    def nodes(self) -> list[ProfileNode]:
        return [
            ProfileNode(price=self.bucket_center(i), volume=float(v), node_type=self._node_type(float(v)))
            for i, v in enumerate(self._volumes)
        ]

    def hvn_levels(self) -> list[float]:
        return [n.price for n in self.nodes() if n.node_type == "HVN"]

    def lvn_levels(self) -> list[float]:
        return [n.price for n in self.nodes() if n.node_type == "LVN"]

    def classify(self, price: float, tolerance_pct: float = DEFAULT_PROXIMITY_PCT) -> ProfileContext:
        """Classify *price* against the profile.

        The bucket containing *price* is used when it is a node; otherwise
        the nearest node within ``price · tolerance_pct``.  Prices outside
        the profile by more than the tolerance are neutral.
        """
        tolerance = abs(price) * tolerance_pct
        if price < self.min_price - tolerance or price > self.max_price + tolerance:
            return NEUTRAL_PROFILE
        if self.median_volume <= 0:
            return NEUTRAL_PROFILE

        own = self.bucket_index(price)
        candidates = [own]
        reach = int(math.ceil(tolerance / self.bucket_size))
        for offset in range(1, reach + 1):
            candidates.extend(i for i in (own - offset, own + offset) if 0 <= i < len(self._volumes))

        for idx in candidates:
            volume = float(self._volumes[idx])
            node_type = self._node_type(volume)
            if node_type == "neutral":
                continue
            center = self.bucket_center(idx)
            distance = abs(price - center)
            if idx != own and distance > tolerance:
                continue
            confidence = min(1.0, abs(volume - self.median_volume) / self.median_volume)
            return ProfileContext(
                node_type=node_type,
                confidence=confidence,
                nearest_node_price=center,
                distance=distance,
            )
        return NEUTRAL_PROFILE


def build_volume_profile(
    candles: Sequence[Candle],
    bucket_size: Optional[float] = None,
    hvn_percentile: float = DEFAULT_HVN_PERCENTILE,
    lvn_percentile: float = DEFAULT_LVN_PERCENTILE,
    price_range: Optional[tuple[float, float]] = None,
) -> VolumeProfile:
    """Build a volume profile from *candles*.

    Args:
        candles: Bars to aggregate (any order).
        bucket_size: Absolute bucket height.  Defaults to 0.1% of the
            lowest price.
        hvn_percentile: Percentile of non-zero bucket volumes at/above
            which a bucket is an HVN.
        lvn_percentile: Percentile at/below which a bucket is an LVN.
        price_range: Optional ``(min, max)`` overriding the candle range.

    Raises:
        InsufficientData: no candles.
        InvalidInput: non-positive bucket size or inverted percentiles.
    """
    if not candles:
        raise InsufficientData("Need at least 1 candle to build a volume profile")
    if not 0 <= lvn_percentile <= hvn_percentile <= 100:
        raise InvalidInput(
            f"Percentiles must satisfy 0 <= lvn <= hvn <= 100, got {lvn_percentile}/{hvn_percentile}"
        )

    if price_range is not None:
        lo, hi = price_range
    else:
        lo = min(c.low for c in candles)
        hi = max(c.high for c in candles)
    if bucket_size is None:
        bucket_size = lo * DEFAULT_BUCKET_PCT
    if bucket_size <= 0:
        raise InvalidInput(f"bucket_size must be positive, got {bucket_size}")

    n_buckets = max(1, int(math.ceil((hi - lo) / bucket_size)) + 1)
    volumes = np.zeros(n_buckets)
    lower_edges = lo + np.arange(n_buckets) * bucket_size
    upper_edges = lower_edges + bucket_size

    for c in candles:
        if c.volume <= 0:
            continue
        if c.high <= c.low:
            idx = int(math.floor((c.close - lo) / bucket_size))
            if 0 <= idx < n_buckets:
                volumes[idx] += c.volume
            continue
        overlap = np.minimum(upper_edges, c.high) - np.maximum(lower_edges, c.low)
        overlap = np.clip(overlap, 0.0, None)
        total = overlap.sum()
        if total > 0:
            volumes += c.volume * overlap / total

    nonzero = volumes[volumes > 0]
    if len(nonzero) == 0:
        hvn_thr = lvn_thr = median = 0.0
    else:
        hvn_thr = float(np.percentile(nonzero, hvn_percentile))
        lvn_thr = float(np.percentile(nonzero, lvn_percentile))
        median = float(np.median(nonzero))

    return VolumeProfile(
        min_price=lo,
        bucket_size=bucket_size,
        volumes=volumes,
        hvn_threshold=hvn_thr,
        lvn_threshold=lvn_thr,
        median_volume=median,
    )
