"""Protective-level mutation manager — one in-flight TP/SL change per trade.

``submit()`` never queues.  A request for a trade that already has a
mutation in flight (or waiting to retry) is skipped, as is one arriving
within ``min_interval`` of the previous completion for that trade.  Failed
gateway calls are retried with a linearly growing delay; a gateway
"already at the requested value" answer counts as success.

State lives in this process only.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

from volzone.errors import InvalidInput, LevelsNotModified, MutationExhausted
from volzone.strategy.base import ExecutionGateway

logger = logging.getLogger("volzone")

DEFAULT_MAX_RETRIES = 2
DEFAULT_BASE_DELAY = 2.0  # seconds; multiplied by the attempt number
DEFAULT_MIN_INTERVAL = 1.0  # seconds between completions for one trade

# Outcome statuses
APPLIED = "applied"
SKIPPED_IN_FLIGHT = "skipped_in_flight"
SKIPPED_RATE_LIMITED = "skipped_rate_limited"
FAILED = "failed"
CANCELLED = "cancelled"


@dataclass(frozen=True)
class MutationRequest:
    """Desired protective levels for one open trade."""

    trade_id: str
    symbol: str
    take_profit: Optional[float] = None
    stop_loss: Optional[float] = None


@dataclass
class MutationState:
    """Mutable per-trade bookkeeping while a mutation sequence is live."""

    in_progress: bool
    last_attempt_at: float
    retry_count: int = 0
    last_error: Optional[BaseException] = None
    cancelled: asyncio.Event = field(default_factory=asyncio.Event, repr=False)


@dataclass(frozen=True)
class MutationOutcome:
    trade_id: str
    status: str  # one of the module-level status constants
    attempts: int = 0
    retry_count: int = 0
    error: Optional[BaseException] = None
    noop: bool = False  # gateway reported the levels were already set

    @property
    def ok(self) -> bool:
        return self.status == APPLIED

    def raise_for_status(self) -> None:
        """Raise ``MutationExhausted`` (chained from the gateway error) on failure."""
        if self.status == FAILED:
            raise MutationExhausted(
                f"Mutation for trade {self.trade_id} failed after {self.attempts} attempt(s): {self.error}"
            ) from self.error


class MutationSyncManager:
    """Deduplicates and retries TP/SL mutations against an execution gateway.

    Args:
        gateway: Object implementing ``set_protective_levels``.
        max_retries: Additional attempts after the first failure.
        base_delay: Retry *n* waits ``base_delay * n`` seconds.
        min_interval: Minimum seconds between completed sequences per trade.
        clock: Monotonic time source (injectable for tests).
    """

    def __init__(
        self,
        gateway: ExecutionGateway,
        max_retries: int = DEFAULT_MAX_RETRIES,
        base_delay: float = DEFAULT_BASE_DELAY,
        min_interval: float = DEFAULT_MIN_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._gateway = gateway
        self._max_retries = max_retries
        self._base_delay = base_delay
        self._min_interval = min_interval
        self._clock = clock
        self._states: dict[str, MutationState] = {}
        self._last_completed: dict[str, float] = {}

    # ── Introspection ────────────────────────────────────────────────────

    def is_pending(self, trade_id: str) -> bool:
        return trade_id in self._states

    def state_of(self, trade_id: str) -> Optional[MutationState]:
        return self._states.get(trade_id)

    # ── Cancellation ─────────────────────────────────────────────────────

    def cancel(self, trade_id: str) -> bool:
        """Cancel the live mutation for *trade_id*; a waiting retry returns ``cancelled``.

        A retry that is only waiting is cleared at once.  While a gateway call
        is running the entry stays until that call returns, so no second call
        for the trade can start alongside it.

        Returns ``True`` if there was something to cancel.
        """
        state = self._states.get(trade_id)
        if state is None:
            return False
        state.cancelled.set()
        if not state.in_progress:
            del self._states[trade_id]
        logger.info("Mutation for trade %s cancelled", trade_id)
        return True

    def clear_all(self) -> None:
        for trade_id in list(self._states):
            self.cancel(trade_id)
        self._last_completed.clear()

    # ── Submit ───────────────────────────────────────────────────────────

    async def submit(self, request: MutationRequest) -> MutationOutcome:
        """Apply *request* unless a mutation for that trade is live or too recent.

        Raises:
            InvalidInput: neither take-profit nor stop-loss supplied.
        """
        if request.take_profit is None and request.stop_loss is None:
            raise InvalidInput(f"Mutation for trade {request.trade_id} sets no levels")

        trade_id = request.trade_id
        if trade_id in self._states:
            logger.debug("Mutation for trade %s skipped: already in flight", trade_id)
            return MutationOutcome(trade_id=trade_id, status=SKIPPED_IN_FLIGHT)

        last = self._last_completed.get(trade_id)
        if last is not None and self._clock() - last < self._min_interval:
            logger.debug("Mutation for trade %s skipped: rate limited", trade_id)
            return MutationOutcome(trade_id=trade_id, status=SKIPPED_RATE_LIMITED)

        state = MutationState(in_progress=True, last_attempt_at=self._clock())
        self._states[trade_id] = state
        try:
            return await self._run(request, state)
        finally:
            if self._states.get(trade_id) is state:
                del self._states[trade_id]
                self._last_completed[trade_id] = self._clock()

    async def _run(self, request: MutationRequest, state: MutationState) -> MutationOutcome:
        trade_id = request.trade_id
        attempts = 0
        while True:
            state.in_progress = True
            state.last_attempt_at = self._clock()
            attempts += 1
            try:
                await self._gateway.set_protective_levels(
                    trade_id, request.symbol,
                    take_profit=request.take_profit,
                    stop_loss=request.stop_loss,
                )
            except LevelsNotModified:
                logger.info("Trade %s levels already set (TP=%s SL=%s)", trade_id, request.take_profit, request.stop_loss)
                return MutationOutcome(
                    trade_id=trade_id, status=APPLIED, attempts=attempts,
                    retry_count=state.retry_count, noop=True,
                )
            except Exception as exc:
                state.last_error = exc
                if state.cancelled.is_set():
                    return MutationOutcome(
                        trade_id=trade_id, status=CANCELLED, attempts=attempts,
                        retry_count=state.retry_count, error=exc,
                    )
                if attempts > self._max_retries:
                    logger.error(
                        "Mutation for trade %s failed after %d attempt(s): %s",
                        trade_id, attempts, exc,
                    )
                    return MutationOutcome(
                        trade_id=trade_id, status=FAILED, attempts=attempts,
                        retry_count=state.retry_count, error=exc,
                    )

                state.in_progress = False
                state.retry_count += 1
                delay = self._base_delay * attempts
                logger.warning(
                    "Mutation for trade %s failed (%s) — retry %d/%d in %.1fs",
                    trade_id, exc, state.retry_count, self._max_retries, delay,
                )
                try:
                    await asyncio.wait_for(state.cancelled.wait(), timeout=delay)
                except asyncio.TimeoutError:
                    continue
                return MutationOutcome(
                    trade_id=trade_id, status=CANCELLED, attempts=attempts,
                    retry_count=state.retry_count, error=exc,
                )
            else:
                logger.info(
                    "Trade %s protective levels set: TP=%s SL=%s",
                    trade_id, request.take_profit, request.stop_loss,
                )
                return MutationOutcome(
                    trade_id=trade_id, status=APPLIED, attempts=attempts,
                    retry_count=state.retry_count,
                )
