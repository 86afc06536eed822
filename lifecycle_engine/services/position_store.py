"""
Position Store

Adoption of inbound signals as ACTIVE positions, plus the read paths used by
the monitor cycle and the dashboards. Lifecycle writes go through the
EventEmitter only.
"""
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from lifecycle_engine.database.models import PositionRecord, TradeEvent
from lifecycle_engine.models.lifecycle_types import (
    ActivatedPayload,
    Direction,
    EventType,
    OPEN_PHASES,
    Phase,
    PositionState,
    TradeEventDraft,
)
from lifecycle_engine.services.phase_evaluator import validate_levels
from lifecycle_engine.services.risk_ledger import RiskPolicy, get_pause_status
from lifecycle_engine.utils.clock import as_utc, utcnow
from lifecycle_engine.utils.exceptions import PositionNotFoundError, ValidationError
from lifecycle_engine.utils.retry import db_retry
from lifecycle_engine.utils.symbol_utils import get_display_symbol

logger = logging.getLogger(__name__)

MAX_EVENT_PAGE = 1000


@dataclass
class NewPosition:
    """Signal definition supplied by the issuing component"""
    symbol: str
    direction: Direction
    entry_price: float
    stop_loss: float
    take_profit_1: float
    take_profit_2: float
    take_profit_3: float
    id: Optional[str] = None
    tp1_close_pct: Optional[float] = None
    tp2_close_pct: Optional[float] = None
    atr: Optional[float] = None
    max_hold_hours: Optional[float] = None
    activated_at: Optional[datetime] = None


async def create_position(
    db: AsyncSession,
    request: NewPosition,
    default_tp1_pct: float = 33.0,
    default_tp2_pct: float = 33.0,
    policy: Optional[RiskPolicy] = None,
) -> Tuple[PositionState, bool]:
    """
    Validate and adopt a signal as an ACTIVE position

    Returns the stored snapshot and the current pause flag. Creation is never
    blocked by the pause: honoring it is the issuer's job.

    Raises:
        ValidationError: first problem found in the definition
    """
    try:
        direction = Direction(request.direction)
    except ValueError:
        raise ValidationError("direction", request.direction, "must be BUY or SELL")

    symbol = (request.symbol or "").strip().upper()
    if not symbol:
        raise ValidationError("symbol", request.symbol, "must not be empty")

    tp1_pct = request.tp1_close_pct if request.tp1_close_pct is not None else default_tp1_pct
    tp2_pct = request.tp2_close_pct if request.tp2_close_pct is not None else default_tp2_pct

    problems = validate_levels(
        direction,
        request.entry_price,
        request.stop_loss,
        request.take_profit_1,
        request.take_profit_2,
        request.take_profit_3,
        tp1_pct,
        tp2_pct,
    )
    if request.atr is not None and not request.atr > 0:
        problems.append(("atr", request.atr, "must be positive when supplied"))
    if request.max_hold_hours is not None and request.max_hold_hours < 0:
        problems.append(("max_hold_hours", request.max_hold_hours, "must not be negative"))
    if problems:
        field, value, reason = problems[0]
        logger.info(f"⛔ Rejected {symbol} {direction.value} signal: {field}={value} ({reason})")
        raise ValidationError(field, value, reason)

    position_id = request.id or str(uuid.uuid4())
    if await db.get(PositionRecord, position_id) is not None:
        raise ValidationError("id", position_id, "position already exists")

    state = PositionState(
        id=position_id,
        symbol=symbol,
        direction=direction,
        entry_price=float(request.entry_price),
        initial_stop_loss=float(request.stop_loss),
        current_stop_loss=float(request.stop_loss),
        take_profit_1=float(request.take_profit_1),
        take_profit_2=float(request.take_profit_2),
        take_profit_3=float(request.take_profit_3),
        activated_at=as_utc(request.activated_at) if request.activated_at else utcnow(),
        tp1_close_pct=float(tp1_pct),
        tp2_close_pct=float(tp2_pct),
        atr=request.atr,
        max_hold_hours=request.max_hold_hours,
    )

    draft = TradeEventDraft(
        event_type=EventType.ACTIVATED,
        phase=Phase.ACTIVE,
        price_at_event=state.entry_price,
        payload=ActivatedPayload(
            entry_price=state.entry_price,
            stop_loss=state.initial_stop_loss,
            take_profits=(state.take_profit_1, state.take_profit_2, state.take_profit_3),
            tp1_close_pct=state.tp1_close_pct,
            tp2_close_pct=state.tp2_close_pct,
        ),
        sl_after=state.current_stop_loss,
        remaining_position_pct=100.0,
    )

    db.add(PositionRecord.from_state(state))
    await db.flush()  # position row must exist before its event references it
    db.add(TradeEvent.from_draft(state, draft, state.activated_at))
    await db.commit()

    pause = await get_pause_status(db, policy or RiskPolicy())
    if pause["bot_paused"]:
        logger.warning(
            f"⚠️ Position {position_id} ({get_display_symbol(symbol)}) created while bot is paused: "
            f"{pause['pause_reason']}"
        )

    logger.info(
        f"✅ Activated {get_display_symbol(symbol)} {direction.value} @ {state.entry_price} "
        f"(SL {state.initial_stop_loss}, TP {state.take_profit_1}/{state.take_profit_2}/{state.take_profit_3}) "
        f"id={position_id}"
    )
    return state, pause["bot_paused"]


@db_retry
async def load_active_positions(db: AsyncSession) -> List[PositionState]:
    """All positions the monitor cycle manages, oldest first"""
    result = await db.execute(
        select(PositionRecord)
        .where(PositionRecord.phase.in_([p.value for p in OPEN_PHASES]))
        .order_by(PositionRecord.activated_at, PositionRecord.id)
    )
    return [record.to_state() for record in result.scalars().all()]


async def get_position(db: AsyncSession, position_id: str) -> PositionState:
    record = await db.get(PositionRecord, position_id)
    if record is None:
        raise PositionNotFoundError(position_id)
    return record.to_state()


async def list_positions(
    db: AsyncSession,
    phases: Optional[List[Phase]] = None,
    limit: int = 200,
) -> List[PositionState]:
    """Dashboard listing, newest first (all phases when none given)"""
    query = select(PositionRecord)
    if phases:
        query = query.where(PositionRecord.phase.in_([p.value for p in phases]))
    query = query.order_by(PositionRecord.activated_at.desc()).limit(limit)
    result = await db.execute(query)
    return [record.to_state() for record in result.scalars().all()]


async def list_events(
    db: AsyncSession,
    since_id: int = 0,
    signal_id: Optional[str] = None,
    limit: int = 100,
) -> List[TradeEvent]:
    """Append-only feed in write order; pass the last seen id as since_id"""
    query = select(TradeEvent).where(TradeEvent.id > since_id)
    if signal_id:
        query = query.where(TradeEvent.signal_id == signal_id)
    query = query.order_by(TradeEvent.id).limit(min(max(limit, 1), MAX_EVENT_PAGE))
    result = await db.execute(query)
    return list(result.scalars().all())
