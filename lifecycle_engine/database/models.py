"""
Database Models for the Trade Lifecycle Engine

Three tables, all written only by the engine:
- positions: one row per adopted signal, mutable lifecycle state
- trade_events: append-only audit trail, holds only the position id
- daily_risk_ledger: one row per UTC calendar day
"""
from sqlalchemy import Column, Integer, String, Float, Boolean, Date, DateTime, Text, JSON, ForeignKey, Index
from sqlalchemy.orm import declarative_base
from sqlalchemy.sql import func

from lifecycle_engine.models.lifecycle_types import (
    Direction,
    ExitReason,
    LedgerState,
    Outcome,
    Phase,
    PositionState,
    TradeEventDraft,
    payload_to_dict,
)
from lifecycle_engine.utils.clock import as_utc

Base = declarative_base()


class PositionRecord(Base):
    """
    Lifecycle state of one trading signal

    Created by the signal issuer through the engine's inbound API, then owned
    by the engine. `version` is bumped on every write so a stale evaluation
    can never be applied twice.
    """
    __tablename__ = "positions"
    __table_args__ = (
        Index('idx_positions_phase_activated', 'phase', 'activated_at'),
    )

    id = Column(String(36), primary_key=True)
    symbol = Column(String(20), nullable=False, index=True)
    direction = Column(String(4), nullable=False)  # BUY or SELL

    # Immutable levels
    entry_price = Column(Float, nullable=False)
    initial_stop_loss = Column(Float, nullable=False)
    take_profit_1 = Column(Float, nullable=False)
    take_profit_2 = Column(Float, nullable=False)
    take_profit_3 = Column(Float, nullable=False)
    tp1_close_pct = Column(Float, nullable=False)
    tp2_close_pct = Column(Float, nullable=False)

    # Optional management inputs from the issuer
    atr = Column(Float, nullable=True)
    max_hold_hours = Column(Float, nullable=True)

    # Lifecycle state
    phase = Column(String(10), nullable=False, default='ACTIVE', index=True)
    current_stop_loss = Column(Float, nullable=False)
    remaining_position_pct = Column(Float, nullable=False, default=100.0)
    tp1_closed = Column(Boolean, nullable=False, default=False)
    tp1_pnl = Column(Float, nullable=True)  # R realized at TP1
    tp1_closed_at = Column(DateTime(timezone=True), nullable=True)
    tp2_closed = Column(Boolean, nullable=False, default=False)
    tp2_pnl = Column(Float, nullable=True)  # R realized at TP2
    tp2_closed_at = Column(DateTime(timezone=True), nullable=True)
    trailing_active = Column(Boolean, nullable=False, default=False)

    # Excursions in R (MFE >= 0, MAE <= 0)
    max_favorable_excursion = Column(Float, nullable=False, default=0.0)
    max_adverse_excursion = Column(Float, nullable=False, default=0.0)

    # Outcome
    realized_r_multiple = Column(Float, nullable=False, default=0.0)
    exit_reason = Column(String(20), nullable=True)
    outcome = Column(String(10), nullable=True)
    closed_at = Column(DateTime(timezone=True), nullable=True)
    error_reason = Column(Text, nullable=True)

    activated_at = Column(DateTime(timezone=True), nullable=False)
    version = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    # Columns copied verbatim between record and snapshot
    STATE_FIELDS = (
        'current_stop_loss', 'remaining_position_pct', 'tp1_closed', 'tp1_pnl', 'tp1_closed_at',
        'tp2_closed', 'tp2_pnl', 'tp2_closed_at', 'trailing_active', 'max_favorable_excursion',
        'max_adverse_excursion', 'realized_r_multiple', 'closed_at', 'error_reason',
    )

    def to_state(self) -> PositionState:
        return PositionState(
            id=self.id,
            symbol=self.symbol,
            direction=Direction(self.direction),
            entry_price=self.entry_price,
            initial_stop_loss=self.initial_stop_loss,
            current_stop_loss=self.current_stop_loss,
            take_profit_1=self.take_profit_1,
            take_profit_2=self.take_profit_2,
            take_profit_3=self.take_profit_3,
            activated_at=as_utc(self.activated_at),
            phase=Phase(self.phase),
            remaining_position_pct=self.remaining_position_pct,
            tp1_close_pct=self.tp1_close_pct,
            tp2_close_pct=self.tp2_close_pct,
            tp1_closed=bool(self.tp1_closed),
            tp2_closed=bool(self.tp2_closed),
            tp1_pnl=self.tp1_pnl,
            tp2_pnl=self.tp2_pnl,
            tp1_closed_at=as_utc(self.tp1_closed_at),
            tp2_closed_at=as_utc(self.tp2_closed_at),
            trailing_active=bool(self.trailing_active),
            max_favorable_excursion=self.max_favorable_excursion or 0.0,
            max_adverse_excursion=self.max_adverse_excursion or 0.0,
            realized_r_multiple=self.realized_r_multiple or 0.0,
            atr=self.atr,
            max_hold_hours=self.max_hold_hours,
            exit_reason=ExitReason(self.exit_reason) if self.exit_reason else None,
            outcome=Outcome(self.outcome) if self.outcome else None,
            closed_at=as_utc(self.closed_at),
            error_reason=self.error_reason,
            version=self.version or 0,
        )

    def apply_state(self, state: PositionState):
        """Copy mutable lifecycle fields from a snapshot (immutables are left alone)"""
        for name in self.STATE_FIELDS:
            setattr(self, name, getattr(state, name))
        self.phase = state.phase.value
        self.exit_reason = state.exit_reason.value if state.exit_reason else None
        self.outcome = state.outcome.value if state.outcome else None

    @classmethod
    def from_state(cls, state: PositionState) -> "PositionRecord":
        record = cls(
            id=state.id,
            symbol=state.symbol,
            direction=state.direction.value,
            entry_price=state.entry_price,
            initial_stop_loss=state.initial_stop_loss,
            take_profit_1=state.take_profit_1,
            take_profit_2=state.take_profit_2,
            take_profit_3=state.take_profit_3,
            tp1_close_pct=state.tp1_close_pct,
            tp2_close_pct=state.tp2_close_pct,
            atr=state.atr,
            max_hold_hours=state.max_hold_hours,
            activated_at=state.activated_at,
            version=state.version,
        )
        record.apply_state(state)
        return record

    def __repr__(self):
        return f"<PositionRecord {self.id} {self.symbol} {self.direction} {self.phase}>"


class TradeEvent(Base):
    """
    Append-only lifecycle event

    Self-describing for notification consumers: symbol, direction, stop move,
    closed fraction and realized R are denormalized onto the row, the typed
    payload is stored as JSON tagged by event_type.
    """
    __tablename__ = "trade_events"
    __table_args__ = (
        Index('idx_trade_events_signal_id_id', 'signal_id', 'id'),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    signal_id = Column(String(36), ForeignKey('positions.id'), nullable=False, index=True)
    symbol = Column(String(20), nullable=False)
    direction = Column(String(4), nullable=False)
    event_type = Column(String(30), nullable=False, index=True)
    phase = Column(String(10), nullable=False)
    price_at_event = Column(Float, nullable=False)
    sl_before = Column(Float, nullable=True)
    sl_after = Column(Float, nullable=True)
    position_closed_pct = Column(Float, nullable=False, default=0.0)
    remaining_position_pct = Column(Float, nullable=False)
    pnl_realized = Column(Float, nullable=True)
    r_multiple = Column(Float, nullable=True)
    payload = Column(JSON, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    @classmethod
    def from_draft(cls, position: PositionState, draft: TradeEventDraft, created_at) -> "TradeEvent":
        return cls(
            signal_id=position.id,
            symbol=position.symbol,
            direction=position.direction.value,
            event_type=draft.event_type.value,
            phase=draft.phase.value,
            price_at_event=draft.price_at_event,
            sl_before=draft.sl_before,
            sl_after=draft.sl_after,
            position_closed_pct=draft.position_closed_pct,
            remaining_position_pct=draft.remaining_position_pct,
            pnl_realized=draft.pnl_realized,
            r_multiple=draft.r_multiple,
            payload=payload_to_dict(draft.payload),
            created_at=created_at,
        )

    def __repr__(self):
        return f"<TradeEvent #{self.id} {self.event_type} {self.signal_id}>"


class DailyRiskLedger(Base):
    """Per-day risk aggregate and circuit breaker flag"""
    __tablename__ = "daily_risk_ledger"

    id = Column(Integer, primary_key=True, autoincrement=True)
    date = Column(Date, nullable=False, unique=True, index=True)

    total_trades = Column(Integer, nullable=False, default=0)
    winning_trades = Column(Integer, nullable=False, default=0)
    losing_trades = Column(Integer, nullable=False, default=0)
    breakeven_trades = Column(Integer, nullable=False, default=0)
    total_r_multiple = Column(Float, nullable=False, default=0.0)
    consecutive_losses = Column(Integer, nullable=False, default=0)
    consecutive_wins = Column(Integer, nullable=False, default=0)

    # Circuit breaker (cleared only by an operator)
    bot_paused = Column(Boolean, nullable=False, default=False)
    pause_reason = Column(String(200), nullable=True)
    paused_at = Column(DateTime(timezone=True), nullable=True)
    pause_cleared_at = Column(DateTime(timezone=True), nullable=True)
    pause_cleared_by = Column(String(100), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    STATE_FIELDS = (
        'total_trades', 'winning_trades', 'losing_trades', 'breakeven_trades', 'total_r_multiple',
        'consecutive_losses', 'consecutive_wins', 'bot_paused', 'pause_reason', 'paused_at',
    )

    def to_state(self) -> LedgerState:
        return LedgerState(
            date=self.date,
            total_trades=self.total_trades or 0,
            winning_trades=self.winning_trades or 0,
            losing_trades=self.losing_trades or 0,
            breakeven_trades=self.breakeven_trades or 0,
            total_r_multiple=self.total_r_multiple or 0.0,
            consecutive_losses=self.consecutive_losses or 0,
            consecutive_wins=self.consecutive_wins or 0,
            bot_paused=bool(self.bot_paused),
            pause_reason=self.pause_reason,
            paused_at=as_utc(self.paused_at),
        )

    def apply_state(self, state: LedgerState):
        for name in self.STATE_FIELDS:
            setattr(self, name, getattr(state, name))

    @classmethod
    def from_state(cls, state: LedgerState) -> "DailyRiskLedger":
        ledger = cls(date=state.date)
        ledger.apply_state(state)
        return ledger

    @classmethod
    def state_values(cls, state: LedgerState) -> dict:
        """Column values for an INSERT of a fresh day row"""
        return {"date": state.date, **{name: getattr(state, name) for name in cls.STATE_FIELDS}}

    def __repr__(self):
        return f"<DailyRiskLedger {self.date} W{self.winning_trades}/L{self.losing_trades} paused={self.bot_paused}>"
