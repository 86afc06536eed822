"""
Risk Ledger API Routes
Daily ledger snapshots, the pause contract and the operator clear-pause action
"""

from fastapi import APIRouter, Depends
from datetime import date
from sqlalchemy.ext.asyncio import AsyncSession

from lifecycle_engine.api.deps import get_db, get_risk_policy, require_operator
from lifecycle_engine.api.schemas.ledger import (
    ClearPauseRequest,
    ClearPauseResponse,
    LedgerResponse,
    PauseStatusResponse,
)
from lifecycle_engine.models.lifecycle_types import LedgerState
from lifecycle_engine.services.metrics import metrics_service
from lifecycle_engine.services.risk_ledger import RiskPolicy, clear_pause, get_ledger, get_pause_status
from lifecycle_engine.utils.clock import utcnow

router = APIRouter()


async def _ledger_snapshot(db: AsyncSession, day: date) -> LedgerResponse:
    row = await get_ledger(db, day)
    if row is None:
        # no close booked yet that day
        return LedgerResponse.model_validate(LedgerState(date=day))
    return LedgerResponse.model_validate(row)


@router.get("/risk/ledger/today", response_model=LedgerResponse)
async def get_today_ledger(db: AsyncSession = Depends(get_db)):
    return await _ledger_snapshot(db, utcnow().date())


@router.get("/risk/ledger/{day}", response_model=LedgerResponse)
async def get_ledger_for_day(day: date, db: AsyncSession = Depends(get_db)):
    return await _ledger_snapshot(db, day)


@router.get("/risk/status", response_model=PauseStatusResponse)
async def get_risk_status(
    db: AsyncSession = Depends(get_db),
    policy: RiskPolicy = Depends(get_risk_policy),
):
    """Pause flag signal issuers must check before creating a position"""
    return PauseStatusResponse(**await get_pause_status(db, policy))


@router.post(
    "/risk/pause/clear",
    response_model=ClearPauseResponse,
    dependencies=[Depends(require_operator)],
)
async def clear_pause_route(
    payload: ClearPauseRequest,
    db: AsyncSession = Depends(get_db),
    policy: RiskPolicy = Depends(get_risk_policy),
):
    cleared = await clear_pause(db, payload.operator, note=payload.note, day=payload.day)
    status = await get_pause_status(db, policy)
    metrics_service.update_bot_paused(status["bot_paused"])
    return ClearPauseResponse(cleared_dates=cleared, bot_paused=status["bot_paused"])
