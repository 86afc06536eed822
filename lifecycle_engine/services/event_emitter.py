"""
Event Emitter

Persists one evaluation as a single transaction: the locked position row,
its appended TradeEvents and the daily ledger rows of any realized closes.
Either all of it commits or none of it does.
"""
import asyncio
import logging
from contextlib import nullcontext
from dataclasses import dataclass, field
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from lifecycle_engine.database.database import supports_row_locks
from lifecycle_engine.database.models import PositionRecord, TradeEvent
from lifecycle_engine.models.lifecycle_types import (
    CloseRecord,
    ErrorPayload,
    Evaluation,
    EventType,
    Phase,
    PositionState,
    TradeEventDraft,
)
from lifecycle_engine.services.phase_evaluator import assert_invariants
from lifecycle_engine.services.risk_ledger import LedgerUpdate, RiskPolicy, record_close
from lifecycle_engine.utils.clock import utcnow
from lifecycle_engine.utils.exceptions import PositionNotFoundError, StaleStateError
from lifecycle_engine.utils.symbol_utils import get_display_symbol

logger = logging.getLogger(__name__)


@dataclass
class ApplyResult:
    position: PositionState
    events_written: int = 0
    closes: List[CloseRecord] = field(default_factory=list)
    ledger_updates: List[LedgerUpdate] = field(default_factory=list)

    @property
    def pause_triggered(self) -> bool:
        return any(u.pause_triggered for u in self.ledger_updates)


class EventEmitter:
    """Transactional writer for lifecycle transitions"""

    def __init__(self, session_factory: async_sessionmaker, policy: Optional[RiskPolicy] = None):
        self.session_factory = session_factory
        self.policy = policy or RiskPolicy()
        # ledger writes are read-modify-write; serialize them where FOR UPDATE is a no-op
        bind = session_factory.kw.get("bind")
        self._serialize_closes = bind is None or not supports_row_locks(bind)
        self._close_lock = asyncio.Lock()

    async def _lock_position(self, db: AsyncSession, position_id: str) -> PositionRecord:
        result = await db.execute(
            select(PositionRecord).where(PositionRecord.id == position_id).with_for_update()
        )
        record = result.scalar_one_or_none()
        if record is None:
            raise PositionNotFoundError(position_id)
        return record

    async def apply(self, before: PositionState, evaluation: Evaluation) -> ApplyResult:
        """
        Write an evaluation of `before`

        Raises:
            StaleStateError: the stored row moved on since `before` was loaded
            ConsistencyError: the transition breaks a position invariant
        """
        if not evaluation.changed:
            return ApplyResult(position=before)

        after = evaluation.position
        guard = self._close_lock if evaluation.closes and self._serialize_closes else nullcontext()
        async with guard, self.session_factory() as db:
            try:
                record = await self._lock_position(db, before.id)
                if record.version != before.version:
                    raise StaleStateError(before.id, before.version, record.version)

                assert_invariants(before, after)

                now = utcnow()
                record.apply_state(after)
                record.version = before.version + 1

                for draft in evaluation.events:
                    db.add(TradeEvent.from_draft(after, draft, now))

                ledger_updates = []
                for close in evaluation.closes:
                    ledger_updates.append(await record_close(db, close, self.policy))

                await db.commit()

            except Exception:
                await db.rollback()
                raise

        stored = after.evolve(version=before.version + 1)
        for draft in evaluation.events:
            self._log_event(stored, draft)

        return ApplyResult(
            position=stored,
            events_written=len(evaluation.events),
            closes=list(evaluation.closes),
            ledger_updates=ledger_updates,
        )

    async def flag_error(
        self,
        position_id: str,
        reason: str,
        detail: str = "",
        price: Optional[float] = None,
    ) -> Optional[PositionState]:
        """
        Move an open position to ERROR with an ERROR event, in its own transaction

        Returns the flagged snapshot, or None when the position is already terminal.
        """
        async with self.session_factory() as db:
            try:
                record = await self._lock_position(db, position_id)
                state = record.to_state()
                if not state.is_open:
                    logger.info(f"Position {position_id} already {state.phase.value}, not flagging ERROR")
                    await db.rollback()
                    return None

                flagged = state.evolve(
                    phase=Phase.ERROR,
                    error_reason=f"{reason}: {detail}" if detail else reason,
                    version=state.version + 1,
                )
                record.apply_state(flagged)
                record.version = flagged.version

                draft = TradeEventDraft(
                    event_type=EventType.ERROR,
                    phase=Phase.ERROR,
                    # no market price on consistency failures; fall back to the stop level
                    price_at_event=price if price is not None else state.current_stop_loss,
                    payload=ErrorPayload(reason=reason, detail=detail),
                    sl_before=state.current_stop_loss,
                    sl_after=state.current_stop_loss,
                    remaining_position_pct=state.remaining_position_pct,
                )
                db.add(TradeEvent.from_draft(flagged, draft, utcnow()))
                await db.commit()

            except Exception:
                await db.rollback()
                raise

        logger.error(
            f"🚨 Position {position_id} ({get_display_symbol(flagged.symbol)}) flagged ERROR: "
            f"{flagged.error_reason} - manual review required"
        )
        return flagged

    def _log_event(self, position: PositionState, draft: TradeEventDraft):
        symbol = get_display_symbol(position.symbol)
        side = position.direction.value
        if draft.event_type in (EventType.TP1_HIT, EventType.TP2_HIT):
            logger.info(
                f"🎯 {draft.event_type.value}: {symbol} {side} @ {draft.price_at_event} "
                f"closed {draft.position_closed_pct:.0f}% ({draft.r_multiple:+.2f}R), "
                f"remaining {draft.remaining_position_pct:.0f}%, SL {draft.sl_before} → {draft.sl_after}"
            )
        elif draft.event_type in (EventType.MOVED_TO_BREAKEVEN, EventType.TRAILING_STOP_ADJUSTED):
            logger.info(
                f"🔒 {draft.event_type.value}: {symbol} {side} SL {draft.sl_before} → {draft.sl_after} "
                f"(price {draft.price_at_event})"
            )
        elif draft.event_type == EventType.STOPPED_OUT:
            logger.warning(
                f"🛑 STOPPED_OUT: {symbol} {side} @ {draft.payload.fill_price} "
                f"({draft.payload.exit_reason.value}, total {draft.payload.total_r_multiple:+.2f}R, "
                f"{draft.payload.outcome.value})"
            )
        elif draft.event_type == EventType.FINAL_CLOSE:
            logger.info(
                f"🏁 FINAL_CLOSE: {symbol} {side} @ {draft.payload.fill_price} "
                f"({draft.payload.exit_reason.value}, total {draft.payload.total_r_multiple:+.2f}R, "
                f"{draft.payload.outcome.value})"
            )
        elif draft.event_type == EventType.ERROR:
            logger.error(f"🚨 ERROR: {symbol} {side} {draft.payload.reason}: {draft.payload.detail}")
        else:
            logger.info(f"📝 {draft.event_type.value}: {symbol} {side} @ {draft.price_at_event}")
