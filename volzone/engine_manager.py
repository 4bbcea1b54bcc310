"""EngineManager — runs one InstrumentEngine per instrument concurrently.

Each enabled instrument in ``volzone.json`` (or synthesised from env) gets
its own ``InstrumentEngine``.  All engines share one snapshot store, one
daily volatility cache and one decision engine.  Instruments run as
concurrent ``asyncio`` tasks and can be stopped individually or en masse.
"""

import asyncio
import logging
from typing import Optional

from volzone.config import Config
from volzone.engine import InstrumentEngine
from volzone.models.instrument_config import InstrumentConfig
from volzone.repos.volatility_repo import VolatilityRepo
from volzone.state import SnapshotStore, VolatilityCache
from volzone.strategy.base import SignalSink
from volzone.strategy.decision import DecisionConfig, SignalDecisionEngine
from volzone.strategy.orderflow import OrderFlowConfig, OrderFlowGate

logger = logging.getLogger("volzone.engine_manager")


class EngineManager:
    """Lifecycle manager for one-or-many instrument engines.

    Args:
        config:  Global ``Config`` loaded from ``.env``.
        broker:  Shared exchange client (market data and order book).
        instruments: ``InstrumentConfig`` items (disabled ones are skipped).
        sink:    Receives emitted signals.
        vol_repo: Optional daily volatility persistence.
    """

    def __init__(
        self,
        config: Config,
        broker,
        instruments: list[InstrumentConfig],
        sink: Optional[SignalSink] = None,
        vol_repo: Optional[VolatilityRepo] = None,
    ) -> None:
        self._config = config
        self._broker = broker
        self._instruments = [i for i in instruments if i.enabled]
        self._sink = sink
        self._vol_repo = vol_repo
        self._store = SnapshotStore()
        self._vol_cache = VolatilityCache()
        self._decision = SignalDecisionEngine(
            OrderFlowGate(broker, OrderFlowConfig(window_ms=config.orderflow_window_ms)),
            DecisionConfig(
                min_confidence=config.min_signal_confidence,
                evaluation_timeout_s=config.evaluation_timeout_s,
            ),
        )
        self._engines: dict[str, InstrumentEngine] = {}
        self._tasks: dict[str, asyncio.Task] = {}

    # ── Public API ───────────────────────────────────────────────────────

    @property
    def engines(self) -> dict[str, InstrumentEngine]:
        """Map of instrument-name → ``InstrumentEngine``."""
        return dict(self._engines)

    @property
    def instrument_names(self) -> list[str]:
        return list(self._engines.keys())

    @property
    def store(self) -> SnapshotStore:
        return self._store

    def build_engines(self) -> None:
        """Instantiate an ``InstrumentEngine`` per enabled instrument.

        Call **once** before :meth:`run_all`.
        """
        for instrument in self._instruments:
            self._engines[instrument.name] = InstrumentEngine(
                config=self._config,
                broker=self._broker,
                decision=self._decision,
                instrument=instrument,
                store=self._store,
                vol_cache=self._vol_cache,
                sink=self._sink,
                vol_repo=self._vol_repo,
            )
            logger.info("Registered instrument '%s' (%s)", instrument.name, instrument.symbol)

    async def initialize_all(self) -> None:
        """Build today's session for every engine concurrently."""
        await asyncio.gather(*(e.initialize() for e in self._engines.values()))

    async def run_all(self, max_cycles: int = 0) -> dict[str, list[dict]]:
        """Launch all instruments concurrently and wait for them to finish.

        Returns:
            ``{instrument_name: [cycle_results]}`` for every instrument.
        """
        if not self._engines:
            self.build_engines()

        await self.initialize_all()

        tasks = {
            name: asyncio.create_task(eng.run(max_cycles=max_cycles))
            for name, eng in self._engines.items()
        }
        self._tasks = tasks

        results: dict[str, list[dict]] = {}
        for name, task in tasks.items():
            try:
                results[name] = await task
            except Exception as exc:  # pragma: no cover
                logger.error("Instrument '%s' crashed: %s", name, exc)
                results[name] = [{"action": "error", "reason": str(exc)}]

        return results

    def stop_all(self) -> None:
        """Signal every engine to stop gracefully."""
        for name, engine in self._engines.items():
            engine.stop()
            logger.info("Stop signal sent to instrument '%s'.", name)

    def stop_instrument(self, name: str) -> None:
        engine = self._engines.get(name)
        if engine:
            engine.stop()
            logger.info("Stop signal sent to instrument '%s'.", name)

    def get_status(self, name: Optional[str] = None) -> dict:
        """Return aggregated or per-instrument status."""
        def _status(engine: InstrumentEngine) -> dict:
            snapshot = self._store.get(engine.symbol)
            return {
                "symbol": engine.symbol,
                "running": engine.running,
                "cycle_count": engine.cycle_count,
                "session_day": snapshot.session_day.isoformat() if snapshot else None,
                "session_bias": snapshot.session.session_bias if snapshot else None,
                "averaged_pct": snapshot.volatility.averaged_pct if snapshot else None,
            }

        if name is not None:
            engine = self._engines.get(name)
            if engine is None:
                return {"error": f"Unknown instrument: {name}"}
            return {"instrument": name, **_status(engine)}

        return {"instruments": {n: _status(e) for n, e in self._engines.items()}}
