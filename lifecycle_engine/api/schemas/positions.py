"""
Pydantic schemas for position and event endpoints
"""

from pydantic import BaseModel, Field
from typing import Optional, Dict, Any, List
from datetime import datetime

from lifecycle_engine.models.lifecycle_types import Direction, EventType, ExitReason, Outcome, Phase


class PositionCreateRequest(BaseModel):
    """Signal definition from the issuing component"""
    id: Optional[str] = Field(None, max_length=36, description="Signal id (generated when omitted)")
    symbol: str = Field(..., min_length=1, max_length=20, description="Trading symbol, e.g. EURUSD")
    direction: Direction
    entry_price: float = Field(..., description="Entry reference price")
    stop_loss: float = Field(..., description="Initial stop-loss (defines 1R)")
    take_profit_1: float
    take_profit_2: float
    take_profit_3: float
    tp1_close_pct: Optional[float] = Field(None, description="Percent closed at TP1 (default from settings)")
    tp2_close_pct: Optional[float] = Field(None, description="Percent closed at TP2 (default from settings)")
    atr: Optional[float] = Field(None, description="ATR used for the runner's trailing distance")
    max_hold_hours: Optional[float] = Field(None, description="Time exit override, 0 disables")


class PositionResponse(BaseModel):
    """Dashboard view of one position"""
    id: str
    symbol: str
    direction: Direction
    phase: Phase
    entry_price: float
    initial_stop_loss: float
    current_stop_loss: float
    take_profit_1: float
    take_profit_2: float
    take_profit_3: float
    remaining_position_pct: float
    tp1_close_pct: float
    tp2_close_pct: float
    tp1_closed: bool
    tp2_closed: bool
    tp1_pnl: Optional[float] = None
    tp2_pnl: Optional[float] = None
    tp1_closed_at: Optional[datetime] = None
    tp2_closed_at: Optional[datetime] = None
    trailing_active: bool
    max_favorable_excursion: float
    max_adverse_excursion: float
    realized_r_multiple: float
    exit_reason: Optional[ExitReason] = None
    outcome: Optional[Outcome] = None
    error_reason: Optional[str] = None
    activated_at: datetime
    closed_at: Optional[datetime] = None
    version: int

    class Config:
        from_attributes = True


class PositionCreateResponse(BaseModel):
    position: PositionResponse
    bot_paused: bool = Field(..., description="Issuers must not create new signals while true")


class ManualCloseRequest(BaseModel):
    price: Optional[float] = Field(None, gt=0, description="Exit price (oracle price when omitted)")
    operator: str = Field(..., min_length=1, max_length=100)


class TradeEventResponse(BaseModel):
    """Self-describing lifecycle event"""
    id: int
    signal_id: str
    symbol: str
    direction: Direction
    event_type: EventType
    phase: Phase
    price_at_event: float
    sl_before: Optional[float] = None
    sl_after: Optional[float] = None
    position_closed_pct: float
    remaining_position_pct: float
    pnl_realized: Optional[float] = None
    r_multiple: Optional[float] = None
    payload: Dict[str, Any]
    created_at: datetime

    class Config:
        from_attributes = True


class EventFeedResponse(BaseModel):
    events: List[TradeEventResponse]
    next_since_id: int = Field(..., description="Pass back as since_id to continue the feed")
