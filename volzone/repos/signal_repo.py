"""Signal repository — SQLite persistence for emitted signals."""

from typing import Optional

from volzone.repos.db import get_connection
from volzone.strategy.models import Signal


class SignalRepo:
    """Data access layer for signal records; also serves as the engine's signal sink.

    Args:
        db_path: Path to the SQLite database file.
    """

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path

    # ── Write ────────────────────────────────────────────────────────────

    def record_signal(self, signal: Signal) -> int:
        """Insert an emitted signal and return its ``id``."""
        ctx = signal.context
        conn = get_connection(self._db_path)
        try:
            cur = conn.execute(
                """
                INSERT INTO signals
                    (instrument, setup_type, side, entry, take_profit,
                     stop_loss, confidence, session_bias, profile_node,
                     orderflow_bias, quadrant, reason, vwap, emitted_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    signal.instrument, signal.setup_type, signal.side,
                    signal.entry, signal.take_profit, signal.stop_loss,
                    signal.confidence, ctx.session_bias,
                    ctx.profile_context.node_type, ctx.order_flow.bias,
                    ctx.zone_info.quadrant, ctx.reason, ctx.vwap,
                    signal.emitted_at.isoformat(),
                ),
            )
            conn.commit()
            return cur.lastrowid
        finally:
            conn.close()

    # ── Read ─────────────────────────────────────────────────────────────

    def get_signals(
        self,
        limit: int = 20,
        instrument: Optional[str] = None,
        setup_type: Optional[str] = None,
    ) -> dict:
        """Return recent signals, newest first.

        Returns:
            ``{"signals": [...], "total": int}``
        """
        conn = get_connection(self._db_path)
        try:
            conditions: list[str] = []
            params: list = []

            if instrument:
                conditions.append("instrument = ?")
                params.append(instrument)
            if setup_type:
                conditions.append("setup_type = ?")
                params.append(setup_type)

            where_clause = ""
            if conditions:
                where_clause = "WHERE " + " AND ".join(conditions)

            rows = conn.execute(
                f"SELECT * FROM signals {where_clause} ORDER BY id DESC LIMIT ?",
                (*params, limit),
            ).fetchall()
            total = conn.execute(
                f"SELECT COUNT(*) FROM signals {where_clause}",
                params,
            ).fetchone()[0]

            return {"signals": [dict(row) for row in rows], "total": total}
        finally:
            conn.close()
