"""Shared engine state — atomically swapped per-instrument snapshots.

Writers (session start, imbalance refresh, daily volatility rollover) build a
complete new immutable value and swap it in under a lock.  Readers take the
current reference without locking and therefore never see a half-updated
zone map or session bias.
"""

import threading
from dataclasses import dataclass
from datetime import date
from typing import Optional

from volzone.strategy.models import Imbalance, SessionContext, VolatilityEstimate
from volzone.strategy.profile import VolumeProfile
from volzone.strategy.zones import ZoneMap


@dataclass(frozen=True)
class SessionSnapshot:
    """Everything evaluation ticks read for one instrument and session."""

    instrument: str
    session_day: date
    zone_map: ZoneMap
    session: SessionContext
    volatility: VolatilityEstimate
    profile: Optional[VolumeProfile] = None
    imbalances: tuple[Imbalance, ...] = ()
    vwap: Optional[float] = None


class SnapshotStore:
    """Single-writer / many-reader store of ``SessionSnapshot`` values."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._snapshots: dict[str, SessionSnapshot] = {}

    def get(self, instrument: str) -> Optional[SessionSnapshot]:
        return self._snapshots.get(instrument)

    def publish(self, snapshot: SessionSnapshot) -> None:
        with self._lock:
            # Copy-on-write so readers iterating the old dict are unaffected.
            updated = dict(self._snapshots)
            updated[snapshot.instrument] = snapshot
            self._snapshots = updated

    def instruments(self) -> list[str]:
        return list(self._snapshots)


class VolatilityCache:
    """Daily ``VolatilityEstimate`` per instrument, computed once per day."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: dict[tuple[str, date], VolatilityEstimate] = {}

    def get(self, instrument: str, day: date) -> Optional[VolatilityEstimate]:
        return self._entries.get((instrument, day))

    def put(self, instrument: str, estimate: VolatilityEstimate) -> VolatilityEstimate:
        """Store *estimate* unless one already exists for that day; return the stored value."""
        key = (instrument, estimate.as_of_day)
        with self._lock:
            existing = self._entries.get(key)
            if existing is not None:
                return existing
            updated = {k: v for k, v in self._entries.items() if k[0] != instrument}
            updated[key] = estimate
            self._entries = updated
            return estimate
