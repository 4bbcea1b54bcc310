"""Volatility repository — one dated estimate per instrument per day."""

import json
from datetime import date, datetime, timezone
from typing import Optional

from volzone.repos.db import get_connection
from volzone.strategy.models import VolatilityEstimate


class VolatilityRepo:
    """Data access layer for daily volatility estimates.

    Args:
        db_path: Path to the SQLite database file.
    """

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path

    def upsert_estimate(self, instrument: str, estimate: VolatilityEstimate) -> None:
        """Store *estimate*, replacing any earlier one for the same day."""
        conn = get_connection(self._db_path)
        try:
            conn.execute(
                """
                INSERT OR REPLACE INTO volatility_estimates
                    (instrument, as_of_day, averaged_pct, per_model_json,
                     fallback_models, data_point_count, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    instrument,
                    estimate.as_of_day.isoformat(),
                    estimate.averaged_pct,
                    json.dumps(estimate.per_model_pct, sort_keys=True),
                    ",".join(estimate.fallback_models),
                    estimate.data_point_count,
                    datetime.now(timezone.utc).isoformat(),
                ),
            )
            conn.commit()
        finally:
            conn.close()

    def get_estimate(self, instrument: str, day: date) -> Optional[VolatilityEstimate]:
        """Return the stored estimate for *instrument* on *day*, or ``None``."""
        conn = get_connection(self._db_path)
        try:
            row = conn.execute(
                "SELECT * FROM volatility_estimates WHERE instrument = ? AND as_of_day = ?",
                (instrument, day.isoformat()),
            ).fetchone()
        finally:
            conn.close()
        if row is None:
            return None
        return VolatilityEstimate(
            per_model_pct=json.loads(row["per_model_json"]),
            averaged_pct=row["averaged_pct"],
            data_point_count=row["data_point_count"],
            as_of_day=date.fromisoformat(row["as_of_day"]),
            fallback_models=tuple(m for m in row["fallback_models"].split(",") if m),
        )
