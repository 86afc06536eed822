"""
Trade Event Feed
Ordered, append-only feed for notification and audit consumers
"""

from fastapi import APIRouter, Depends, Query
from typing import Optional
from sqlalchemy.ext.asyncio import AsyncSession

from lifecycle_engine.api.deps import get_db
from lifecycle_engine.api.schemas.positions import EventFeedResponse, TradeEventResponse
from lifecycle_engine.services.position_store import list_events

router = APIRouter()


@router.get("/events", response_model=EventFeedResponse)
async def get_events(
    db: AsyncSession = Depends(get_db),
    since_id: int = Query(0, ge=0, description="Return events with id greater than this"),
    signal_id: Optional[str] = Query(None, description="Filter by position id"),
    limit: int = Query(100, ge=1, le=1000),
):
    events = await list_events(db, since_id=since_id, signal_id=signal_id, limit=limit)
    return EventFeedResponse(
        events=[TradeEventResponse.model_validate(e) for e in events],
        next_since_id=events[-1].id if events else since_id,
    )
