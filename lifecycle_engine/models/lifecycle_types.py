"""
Domain types for the trade lifecycle

Plain dataclasses and enums shared by the evaluator, the ledger updater and
the persistence layer. ORM records convert to and from these snapshots so the
state machine never touches a database session.
"""
from dataclasses import dataclass, field, asdict, replace
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union


class Direction(str, Enum):
    BUY = "BUY"
    SELL = "SELL"


class Phase(str, Enum):
    ACTIVE = "ACTIVE"
    PHASE1 = "PHASE1"  # TP1 taken, stop at breakeven
    PHASE2 = "PHASE2"  # TP2 taken, stop at TP1
    PHASE3 = "PHASE3"  # runner under an engaged trailing stop
    CLOSED = "CLOSED"
    ERROR = "ERROR"    # terminal, requires manual review


OPEN_PHASES = (Phase.ACTIVE, Phase.PHASE1, Phase.PHASE2, Phase.PHASE3)

PHASE_RANK = {
    Phase.ACTIVE: 0,
    Phase.PHASE1: 1,
    Phase.PHASE2: 2,
    Phase.PHASE3: 3,
    Phase.CLOSED: 4,
    Phase.ERROR: 4,
}


class EventType(str, Enum):
    ACTIVATED = "ACTIVATED"
    MOVED_TO_BREAKEVEN = "MOVED_TO_BREAKEVEN"
    TP1_HIT = "TP1_HIT"
    TP2_HIT = "TP2_HIT"
    TRAILING_STOP_ADJUSTED = "TRAILING_STOP_ADJUSTED"
    STOPPED_OUT = "STOPPED_OUT"
    FINAL_CLOSE = "FINAL_CLOSE"
    ERROR = "ERROR"


class ExitReason(str, Enum):
    STOP_LOSS = "STOP_LOSS"
    BREAKEVEN_STOP = "BREAKEVEN_STOP"
    PROFIT_LOCK_STOP = "PROFIT_LOCK_STOP"
    TRAILING_STOP = "TRAILING_STOP"
    TAKE_PROFIT_3 = "TAKE_PROFIT_3"
    TIME_EXIT = "TIME_EXIT"
    WEEKEND_CLOSE = "WEEKEND_CLOSE"
    MANUAL = "MANUAL"


class Outcome(str, Enum):
    WIN = "WIN"
    LOSS = "LOSS"
    BREAKEVEN = "BREAKEVEN"

    @classmethod
    def classify(cls, total_r_multiple: float, epsilon_r: float) -> "Outcome":
        """Classify a fully resolved trade by the sign of its cumulative R"""
        if total_r_multiple > epsilon_r:
            return cls.WIN
        if total_r_multiple < -epsilon_r:
            return cls.LOSS
        return cls.BREAKEVEN


# ==================== EVENT PAYLOADS ====================

@dataclass(frozen=True)
class ActivatedPayload:
    entry_price: float
    stop_loss: float
    take_profits: Tuple[float, float, float]
    tp1_close_pct: float
    tp2_close_pct: float


@dataclass(frozen=True)
class StopMovedPayload:
    sl_before: float
    sl_after: float
    trigger: str  # "tp1", "progress", "trailing"


@dataclass(frozen=True)
class PartialClosePayload:
    level: int
    fill_price: float
    closed_pct: float
    remaining_pct: float
    r_multiple: float
    pnl_pips: float


@dataclass(frozen=True)
class ClosePayload:
    exit_reason: ExitReason
    fill_price: float
    closed_pct: float
    r_multiple: float
    total_r_multiple: float
    outcome: Outcome
    pnl_pips: float


@dataclass(frozen=True)
class ErrorPayload:
    reason: str
    detail: str = ""


EventPayload = Union[ActivatedPayload, StopMovedPayload, PartialClosePayload, ClosePayload, ErrorPayload]

PAYLOAD_TYPES = {
    EventType.ACTIVATED: ActivatedPayload,
    EventType.MOVED_TO_BREAKEVEN: StopMovedPayload,
    EventType.TRAILING_STOP_ADJUSTED: StopMovedPayload,
    EventType.TP1_HIT: PartialClosePayload,
    EventType.TP2_HIT: PartialClosePayload,
    EventType.STOPPED_OUT: ClosePayload,
    EventType.FINAL_CLOSE: ClosePayload,
    EventType.ERROR: ErrorPayload,
}


def payload_to_dict(payload: EventPayload) -> Dict[str, Any]:
    """Serialize a payload for the JSON column (enums by value, tuples as lists)"""
    data = asdict(payload)
    for key, value in data.items():
        if isinstance(value, Enum):
            data[key] = value.value
        elif isinstance(value, tuple):
            data[key] = list(value)
    return data


@dataclass(frozen=True)
class TradeEventDraft:
    """An event produced by the evaluator, not yet persisted"""
    event_type: EventType
    phase: Phase
    price_at_event: float
    payload: EventPayload
    sl_before: Optional[float] = None
    sl_after: Optional[float] = None
    position_closed_pct: float = 0.0
    remaining_position_pct: float = 100.0
    pnl_realized: Optional[float] = None
    r_multiple: Optional[float] = None

    def __post_init__(self):
        expected = PAYLOAD_TYPES[self.event_type]
        if not isinstance(self.payload, expected):
            raise TypeError(
                f"{self.event_type.value} requires {expected.__name__}, "
                f"got {type(self.payload).__name__}"
            )


# ==================== POSITION ====================

@dataclass(frozen=True)
class PositionState:
    """Immutable snapshot of one tracked position"""
    id: str
    symbol: str
    direction: Direction
    entry_price: float
    initial_stop_loss: float
    current_stop_loss: float
    take_profit_1: float
    take_profit_2: float
    take_profit_3: float
    activated_at: datetime
    phase: Phase = Phase.ACTIVE
    remaining_position_pct: float = 100.0
    tp1_close_pct: float = 33.0
    tp2_close_pct: float = 33.0
    tp1_closed: bool = False
    tp2_closed: bool = False
    tp1_pnl: Optional[float] = None
    tp2_pnl: Optional[float] = None
    tp1_closed_at: Optional[datetime] = None
    tp2_closed_at: Optional[datetime] = None
    trailing_active: bool = False
    max_favorable_excursion: float = 0.0
    max_adverse_excursion: float = 0.0
    realized_r_multiple: float = 0.0
    atr: Optional[float] = None
    max_hold_hours: Optional[float] = None
    exit_reason: Optional[ExitReason] = None
    outcome: Optional[Outcome] = None
    closed_at: Optional[datetime] = None
    error_reason: Optional[str] = None
    version: int = 0

    @property
    def is_open(self) -> bool:
        return self.phase in OPEN_PHASES

    @property
    def runner_pct(self) -> float:
        return 100.0 - self.tp1_close_pct - self.tp2_close_pct

    @property
    def risk_unit(self) -> float:
        """1R in price terms"""
        return abs(self.entry_price - self.initial_stop_loss)

    def evolve(self, **changes) -> "PositionState":
        return replace(self, **changes)


@dataclass(frozen=True)
class CloseRecord:
    """A realized close (partial or final) to be booked on the daily ledger"""
    position_id: str
    r_multiple: float
    is_final: bool
    closed_at: datetime
    total_r_multiple: float = 0.0


@dataclass
class Evaluation:
    """Result of evaluating one position against one price"""
    position: PositionState
    events: List[TradeEventDraft] = field(default_factory=list)
    closes: List[CloseRecord] = field(default_factory=list)
    excursion_changed: bool = False

    @property
    def transitioned(self) -> bool:
        return bool(self.events)

    @property
    def changed(self) -> bool:
        return self.transitioned or self.excursion_changed

    @property
    def is_final_close(self) -> bool:
        return any(c.is_final for c in self.closes)


# ==================== DAILY RISK LEDGER ====================

@dataclass(frozen=True)
class LedgerState:
    """Snapshot of one calendar day's risk aggregate"""
    date: date
    total_trades: int = 0
    winning_trades: int = 0
    losing_trades: int = 0
    breakeven_trades: int = 0
    total_r_multiple: float = 0.0
    consecutive_losses: int = 0
    consecutive_wins: int = 0
    bot_paused: bool = False
    pause_reason: Optional[str] = None
    paused_at: Optional[datetime] = None

    def evolve(self, **changes) -> "LedgerState":
        return replace(self, **changes)
