"""
Pydantic schemas for risk ledger and monitor endpoints
"""

from pydantic import BaseModel, Field
from typing import Optional, List
from datetime import date, datetime


class LedgerResponse(BaseModel):
    """One day's risk aggregate"""
    date: date
    total_trades: int
    winning_trades: int
    losing_trades: int
    breakeven_trades: int
    total_r_multiple: float
    consecutive_losses: int
    consecutive_wins: int
    bot_paused: bool
    pause_reason: Optional[str] = None
    paused_at: Optional[datetime] = None
    pause_cleared_at: Optional[datetime] = None
    pause_cleared_by: Optional[str] = None

    class Config:
        from_attributes = True


class PauseStatusResponse(BaseModel):
    """Contract for signal issuers: check before creating a position"""
    bot_paused: bool
    pause_reason: Optional[str] = None
    paused_at: Optional[datetime] = None
    ledger_date: Optional[date] = None


class ClearPauseRequest(BaseModel):
    operator: str = Field(..., min_length=1, max_length=100)
    note: Optional[str] = Field(None, max_length=500)
    day: Optional[date] = Field(None, description="Clear one day only (default: every paused day)")


class ClearPauseResponse(BaseModel):
    cleared_dates: List[date]
    bot_paused: bool


class CycleSummaryResponse(BaseModel):
    started_at: datetime
    finished_at: Optional[datetime] = None
    duration_sec: float
    positions_checked: int
    transitions_applied: int
    events_written: int
    closes: int
    final_closes: int
    errors: int
    flagged: int
    skipped_symbols: List[str]
    skipped_positions: int
    pause_triggered: bool


class MonitorStatusResponse(BaseModel):
    state: str
    is_running: bool
    cycles_run: int
    last_cycle: Optional[CycleSummaryResponse] = None
