"""
Monitor Cycle Driver

One pass over every open position:

    IDLE → FETCHING → EVALUATING → PERSISTING → IDLE

- FETCHING: load open positions, fetch one price per distinct symbol
  concurrently, each call bounded by a timeout. Failing symbols are skipped
  this cycle and retried on the next one.
- EVALUATING: run the pure evaluator per position.
- PERSISTING: apply each changed evaluation in its own transaction,
  concurrently across positions. A failure on one position never blocks the
  others.

Cycles are single-flight per driver: a caller arriving while a cycle runs
waits for it to finish, then runs its own.
"""
import asyncio
import logging
import math
import time
from dataclasses import dataclass, field, asdict
from datetime import datetime
from enum import Enum
from typing import Dict, Iterable, List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from lifecycle_engine.models.lifecycle_types import Evaluation, ExitReason, Phase, PositionState
from lifecycle_engine.services.event_emitter import ApplyResult, EventEmitter
from lifecycle_engine.services.metrics import MetricsService, metrics_service
from lifecycle_engine.services.phase_evaluator import EvaluatorConfig, evaluate, force_close
from lifecycle_engine.services.position_store import get_position, load_active_positions
from lifecycle_engine.services.price_oracle import PriceOracle
from lifecycle_engine.utils.clock import utcnow
from lifecycle_engine.utils.exceptions import (
    ConsistencyError,
    DatabaseOperationError,
    LifecycleError,
    PriceUnavailableError,
    StaleStateError,
)
from lifecycle_engine.utils.symbol_utils import get_display_symbol

logger = logging.getLogger(__name__)


class CycleState(str, Enum):
    IDLE = "IDLE"
    FETCHING = "FETCHING"
    EVALUATING = "EVALUATING"
    PERSISTING = "PERSISTING"


@dataclass
class CycleSummary:
    started_at: datetime
    finished_at: Optional[datetime] = None
    positions_checked: int = 0
    transitions_applied: int = 0
    events_written: int = 0
    closes: int = 0
    final_closes: int = 0
    errors: int = 0
    flagged: int = 0
    skipped_symbols: List[str] = field(default_factory=list)
    skipped_positions: int = 0
    pause_triggered: bool = False

    @property
    def duration_sec(self) -> float:
        if self.finished_at is None:
            return 0.0
        return (self.finished_at - self.started_at).total_seconds()

    def to_dict(self) -> dict:
        data = asdict(self)
        data["duration_sec"] = self.duration_sec
        return data


@dataclass(frozen=True)
class MonitorConfig:
    interval_sec: float = 15.0
    fetch_timeout_sec: float = 5.0
    max_concurrency: int = 8
    failure_warn_cycles: int = 3
    evaluator: EvaluatorConfig = field(default_factory=EvaluatorConfig)

    @classmethod
    def from_settings(cls, settings) -> "MonitorConfig":
        return cls(
            interval_sec=settings.MONITOR_INTERVAL_SEC,
            fetch_timeout_sec=settings.PRICE_FETCH_TIMEOUT_SEC,
            max_concurrency=settings.MONITOR_MAX_CONCURRENCY,
            failure_warn_cycles=settings.PRICE_FAILURE_WARN_CYCLES,
            evaluator=EvaluatorConfig.from_settings(settings),
        )


class MonitorCycleDriver:
    """Runs monitor cycles on demand or on its own timer"""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        oracle: PriceOracle,
        emitter: EventEmitter,
        config: Optional[MonitorConfig] = None,
        metrics: MetricsService = metrics_service,
    ):
        self.session_factory = session_factory
        self.oracle = oracle
        self.emitter = emitter
        self.config = config or MonitorConfig()
        self.metrics = metrics

        self.state = CycleState.IDLE
        self.last_summary: Optional[CycleSummary] = None
        self.cycles_run = 0

        self._lock = asyncio.Lock()
        self._stopping = False
        self._wake = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self._failure_streaks: Dict[str, int] = {}

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    # ==================== ONE CYCLE ====================

    async def run_cycle(self, now: Optional[datetime] = None) -> CycleSummary:
        """Run one full pass; waits for any cycle already in progress"""
        async with self._lock:
            return await self._run_cycle(now)

    async def _run_cycle(self, now: Optional[datetime]) -> CycleSummary:
        summary = CycleSummary(started_at=utcnow())
        clock_start = time.monotonic()
        status = "ok"

        try:
            self.state = CycleState.FETCHING
            async with self.session_factory() as db:
                positions = await load_active_positions(db)
            summary.positions_checked = len(positions)

            prices = await self._fetch_prices({p.symbol for p in positions}, summary)

            self.state = CycleState.EVALUATING
            work = self._evaluate_all(positions, prices, now, summary)

            self.state = CycleState.PERSISTING
            if work:
                semaphore = asyncio.Semaphore(max(1, self.config.max_concurrency))
                await asyncio.gather(*(
                    self._persist(semaphore, position, evaluation, price, summary)
                    for position, evaluation, price in work
                ))

            self.metrics.update_open_positions(
                summary.positions_checked - summary.final_closes - summary.flagged
            )

        except Exception as e:
            status = "failed"
            logger.error(f"❌ Monitor cycle failed in {self.state.value}: {e}", exc_info=True)
            raise

        finally:
            self.state = CycleState.IDLE
            summary.finished_at = utcnow()
            self.last_summary = summary
            self.cycles_run += 1
            self.metrics.record_cycle(status, time.monotonic() - clock_start)

        if summary.transitions_applied or summary.errors:
            logger.info(
                f"🔄 Cycle done: {summary.positions_checked} checked, {summary.transitions_applied} transitions, "
                f"{summary.events_written} events, {summary.final_closes} closed, {summary.errors} errors, "
                f"{len(summary.skipped_symbols)} symbols skipped ({summary.duration_sec:.2f}s)"
            )
        else:
            logger.debug(
                f"🔄 Cycle done: {summary.positions_checked} checked, no transitions "
                f"({summary.duration_sec:.2f}s)"
            )
        return summary

    async def _fetch_prices(self, symbols: Iterable[str], summary: CycleSummary) -> Dict[str, float]:
        results = await asyncio.gather(*(self._fetch_price(s, summary) for s in sorted(symbols)))
        return {symbol: price for symbol, price in results if price is not None}

    async def _fetch_price(self, symbol: str, summary: CycleSummary) -> Tuple[str, Optional[float]]:
        started = time.monotonic()
        try:
            price = await asyncio.wait_for(
                self.oracle.get_price(symbol),
                timeout=self.config.fetch_timeout_sec,
            )
        except asyncio.TimeoutError:
            reason = f"timeout after {self.config.fetch_timeout_sec}s"
        except PriceUnavailableError as e:
            reason = e.reason
        except Exception as e:
            # any oracle failure is treated as transient for this cycle
            reason = f"{type(e).__name__}: {e}"
        else:
            self.metrics.record_price_latency(time.monotonic() - started)
            if isinstance(price, (int, float)) and math.isfinite(price) and price > 0:
                streak = self._failure_streaks.pop(symbol, 0)
                if streak >= self.config.failure_warn_cycles:
                    logger.info(f"✅ Price feed for {get_display_symbol(symbol)} recovered after {streak} cycles")
                return symbol, float(price)
            reason = f"invalid price {price!r}"

        self._note_price_failure(symbol, reason, summary)
        return symbol, None

    def _note_price_failure(self, symbol: str, reason: str, summary: CycleSummary):
        streak = self._failure_streaks.get(symbol, 0) + 1
        self._failure_streaks[symbol] = streak
        summary.skipped_symbols.append(symbol)
        self.metrics.record_price_failure(symbol)

        if streak >= self.config.failure_warn_cycles:
            logger.warning(
                f"⚠️ No price for {get_display_symbol(symbol)} for {streak} consecutive cycles: {reason}"
            )
        else:
            logger.debug(f"Skipping {symbol} this cycle ({streak}/{self.config.failure_warn_cycles}): {reason}")

    def _evaluate_all(
        self,
        positions: List[PositionState],
        prices: Dict[str, float],
        now: Optional[datetime],
        summary: CycleSummary,
    ) -> List[Tuple[PositionState, Evaluation, float]]:
        work = []
        for position in positions:
            price = prices.get(position.symbol)
            if price is None:
                summary.skipped_positions += 1
                continue
            try:
                evaluation = evaluate(position, price, now=now, config=self.config.evaluator)
            except LifecycleError as e:
                summary.errors += 1
                self.metrics.record_error("evaluation")
                logger.error(f"❌ Could not evaluate position {position.id}: {e}")
                continue
            if evaluation.changed:
                work.append((position, evaluation, price))
        return work

    async def _persist(
        self,
        semaphore: asyncio.Semaphore,
        position: PositionState,
        evaluation: Evaluation,
        price: float,
        summary: CycleSummary,
    ):
        async with semaphore:
            if self._stopping:
                summary.skipped_positions += 1
                return

            try:
                result = await self.emitter.apply(position, evaluation)

            except ConsistencyError as e:
                summary.errors += 1
                self.metrics.record_error("consistency")
                logger.error(f"🚨 {e}")
                await self._flag(position, "consistency_violation", "; ".join(e.violations), price, summary)

            except StaleStateError as e:
                summary.errors += 1
                self.metrics.record_error("stale")
                logger.warning(f"⚠️ {e} - re-evaluating next cycle")

            except (SQLAlchemyError, DatabaseOperationError) as e:
                summary.errors += 1
                self.metrics.record_error("persistence")
                logger.error(f"❌ Persisting position {position.id} failed, rolled back: {e}")

            except Exception as e:
                summary.errors += 1
                self.metrics.record_error("unexpected")
                logger.error(f"❌ Unexpected error on position {position.id}: {e}", exc_info=True)
                await self._flag(position, "unexpected_error", f"{type(e).__name__}: {e}", price, summary)

            else:
                self._record_result(result, evaluation, summary)

    async def _flag(self, position: PositionState, reason: str, detail: str, price: float, summary: CycleSummary):
        try:
            flagged = await self.emitter.flag_error(position.id, reason, detail, price)
        except Exception as e:
            logger.error(f"❌ Could not flag position {position.id} as ERROR: {e}", exc_info=True)
            return
        if flagged is not None:
            summary.flagged += 1
            summary.events_written += 1
            self.metrics.record_transition("ERROR")

    def _record_result(self, result: ApplyResult, evaluation: Evaluation, summary: CycleSummary):
        for draft in evaluation.events:
            self.metrics.record_transition(draft.event_type.value)
        if result.events_written:
            summary.transitions_applied += 1
            summary.events_written += result.events_written
        summary.closes += len(result.closes)

        if result.position.phase == Phase.ERROR:
            summary.errors += 1
            summary.flagged += 1
            self.metrics.record_error("invalid_position")
        if result.position.phase == Phase.CLOSED:
            summary.final_closes += 1
            self.metrics.record_trade_closed(result.position.outcome.value, result.position.exit_reason.value)

        for update in result.ledger_updates:
            if update.pause_triggered:
                summary.pause_triggered = True
                self.metrics.update_bot_paused(True)

    # ==================== OPERATOR PATH ====================

    async def close_position_manually(
        self,
        position_id: str,
        price: Optional[float] = None,
        operator: str = "operator",
    ) -> ApplyResult:
        """
        Close the remaining position at market, between cycles

        Uses the oracle price when none is given.

        Raises:
            PositionNotFoundError, InvalidTransitionError, PriceUnavailableError
        """
        async with self._lock:
            async with self.session_factory() as db:
                position = await get_position(db, position_id)

            if price is None:
                try:
                    price = await asyncio.wait_for(
                        self.oracle.get_price(position.symbol),
                        timeout=self.config.fetch_timeout_sec,
                    )
                except asyncio.TimeoutError:
                    raise PriceUnavailableError(position.symbol, "timeout")

            evaluation = force_close(position, price, reason=ExitReason.MANUAL, config=self.config.evaluator)
            result = await self.emitter.apply(position, evaluation)

        self._record_result(result, evaluation, CycleSummary(started_at=utcnow()))

        logger.info(
            f"👤 Manual close of {get_display_symbol(position.symbol)} {position_id} by {operator} "
            f"@ {price} ({result.position.realized_r_multiple:+.2f}R total)"
        )
        return result

    # ==================== SCHEDULING ====================

    async def run_forever(self, interval: Optional[float] = None):
        """Self-scheduled cycles until stop() is called"""
        interval = interval if interval is not None else self.config.interval_sec
        self._stopping = False
        self._wake.clear()
        logger.info(f"🔄 Monitor loop started (every {interval}s)")

        while not self._stopping:
            started = time.monotonic()
            try:
                await self.run_cycle()
            except Exception as e:
                # already logged by the cycle; keep the loop alive
                logger.debug(f"Continuing after failed cycle: {e}")

            if self._stopping:
                break
            delay = max(0.0, interval - (time.monotonic() - started))
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass

        logger.info("🛑 Monitor loop stopped")

    def start(self, interval: Optional[float] = None) -> asyncio.Task:
        if not self.is_running:
            self._task = asyncio.create_task(self.run_forever(interval))
        return self._task

    async def stop(self):
        """Start no new per-position units and wait for in-flight ones"""
        self._stopping = True
        self._wake.set()
        if self._task is not None:
            await self._task
            self._task = None
