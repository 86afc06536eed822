"""
Position API Routes
Inbound signal adoption, dashboard reads and the operator manual close
"""

from fastapi import APIRouter, HTTPException, Depends, Query
from typing import List, Optional
from sqlalchemy.ext.asyncio import AsyncSession

from lifecycle_engine.api.deps import get_db, get_driver, get_risk_policy, require_operator
from lifecycle_engine.api.schemas.positions import (
    ManualCloseRequest,
    PositionCreateRequest,
    PositionCreateResponse,
    PositionResponse,
    TradeEventResponse,
)
from lifecycle_engine.config import settings
from lifecycle_engine.models.lifecycle_types import OPEN_PHASES, Phase
from lifecycle_engine.services.monitor_cycle import MonitorCycleDriver
from lifecycle_engine.services.position_store import (
    NewPosition,
    create_position,
    get_position,
    list_events,
    list_positions,
)
from lifecycle_engine.services.risk_ledger import RiskPolicy
from lifecycle_engine.utils.exceptions import LifecycleError
import logging

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/positions", response_model=PositionCreateResponse, status_code=201)
async def create_position_route(
    payload: PositionCreateRequest,
    db: AsyncSession = Depends(get_db),
    policy: RiskPolicy = Depends(get_risk_policy),
):
    """
    Adopt a signal as an ACTIVE position

    Returns 422 when the levels are malformed. The response carries the
    current pause flag; creation itself is never blocked.
    """
    try:
        state, bot_paused = await create_position(
            db,
            NewPosition(**payload.model_dump()),
            default_tp1_pct=settings.TP1_CLOSE_PCT,
            default_tp2_pct=settings.TP2_CLOSE_PCT,
            policy=policy,
        )
    except LifecycleError:
        raise
    except Exception as e:
        logger.error(f"Error creating position: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to create position")

    return PositionCreateResponse(position=PositionResponse.model_validate(state), bot_paused=bot_paused)


@router.get("/positions", response_model=List[PositionResponse])
async def list_positions_route(
    db: AsyncSession = Depends(get_db),
    phase: Optional[Phase] = Query(None, description="Filter by phase (default: open positions)"),
    limit: int = Query(200, ge=1, le=1000),
):
    phases = [phase] if phase else list(OPEN_PHASES)
    positions = await list_positions(db, phases=phases, limit=limit)
    return [PositionResponse.model_validate(p) for p in positions]


@router.get("/positions/{position_id}", response_model=PositionResponse)
async def get_position_route(position_id: str, db: AsyncSession = Depends(get_db)):
    return PositionResponse.model_validate(await get_position(db, position_id))


@router.get("/positions/{position_id}/events", response_model=List[TradeEventResponse])
async def get_position_events(
    position_id: str,
    db: AsyncSession = Depends(get_db),
    limit: int = Query(100, ge=1, le=1000),
):
    """Audit trail of one position, oldest first"""
    await get_position(db, position_id)
    events = await list_events(db, signal_id=position_id, limit=limit)
    return [TradeEventResponse.model_validate(e) for e in events]


@router.post(
    "/positions/{position_id}/close",
    response_model=PositionResponse,
    dependencies=[Depends(require_operator)],
)
async def close_position_route(
    position_id: str,
    payload: ManualCloseRequest,
    driver: MonitorCycleDriver = Depends(get_driver),
):
    """Operator manual close of the remaining position"""
    result = await driver.close_position_manually(position_id, price=payload.price, operator=payload.operator)
    return PositionResponse.model_validate(result.position)
