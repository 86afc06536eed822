"""
Phase Transition Evaluator

Pure state machine for one position against one price:

    ACTIVE → PHASE1 → PHASE2 → PHASE3 → CLOSED
                                         ERROR (malformed / inconsistent)

Algorithm (direction-normalized, SELL inverts every comparison):
1. Stop-out (highest priority): price crossed current_stop_loss → CLOSED.
   The remaining fraction fills at the stop price.
2. Time exit: held longer than max hold hours → CLOSED at market.
   Weekend close: Friday at or after the close hour (UTC), when enabled →
   CLOSED at market.
3. ACTIVE: TP1 reached → close tranche 1 at TP1, stop to entry (PHASE1).
   Optional early breakeven once price covers a configured share of entry→TP1.
4. PHASE1: TP2 reached → close tranche 2 at TP2, stop to TP1 (PHASE2).
5. PHASE2/PHASE3: TP3 reached → close the runner at TP3. Otherwise the
   trailing stop ratchets behind price, never loosening (PHASE3).

Steps repeat at the same price until none applies, so a gap through TP1 and
TP2 resolves in one evaluation and re-running on the result is a no-op.

R math: 1R = |entry - initial_stop_loss|. A close realizes
    (signed distance entry → fill) / 1R × closed fraction
"""
import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional, Tuple

from lifecycle_engine.models.lifecycle_types import (
    ClosePayload,
    CloseRecord,
    Direction,
    ErrorPayload,
    Evaluation,
    EventType,
    ExitReason,
    Outcome,
    PartialClosePayload,
    Phase,
    PHASE_RANK,
    PositionState,
    StopMovedPayload,
    TradeEventDraft,
)
from lifecycle_engine.utils.clock import as_utc, utcnow
from lifecycle_engine.utils.exceptions import ConsistencyError, InvalidPriceError, InvalidTransitionError
from lifecycle_engine.utils.symbol_utils import price_to_pips

logger = logging.getLogger(__name__)

MAX_STEPS_PER_PRICE = 8
PCT_EPSILON = 1e-9


@dataclass(frozen=True)
class EvaluatorConfig:
    """Runner / exit parameters (built from settings, kept free of I/O)"""
    trailing_distance_r: float = 1.0
    trailing_atr_multiple: float = 1.5
    breakeven_trigger_progress: Optional[float] = None
    max_hold_hours: Optional[float] = 48.0
    breakeven_epsilon_r: float = 0.1
    close_before_weekend: bool = False
    weekend_close_hour: int = 16  # UTC hour on Friday

    @classmethod
    def from_settings(cls, settings) -> "EvaluatorConfig":
        return cls(
            trailing_distance_r=settings.TRAILING_DISTANCE_R,
            trailing_atr_multiple=settings.TRAILING_ATR_MULTIPLE,
            breakeven_trigger_progress=settings.BREAKEVEN_TRIGGER_PROGRESS,
            max_hold_hours=settings.MAX_HOLD_HOURS,
            breakeven_epsilon_r=settings.BREAKEVEN_EPSILON_R,
            close_before_weekend=settings.CLOSE_BEFORE_WEEKEND,
            weekend_close_hour=settings.WEEKEND_CLOSE_HOUR,
        )


# ==================== DIRECTION-NORMALIZED HELPERS ====================

def favorable_move(direction: Direction, entry: float, price: float) -> float:
    """Price distance from entry in the trade's favor (negative when against)"""
    return price - entry if direction == Direction.BUY else entry - price


def has_reached_target(direction: Direction, price: float, level: float) -> bool:
    return price >= level if direction == Direction.BUY else price <= level


def has_crossed_stop(direction: Direction, price: float, stop: float) -> bool:
    return price <= stop if direction == Direction.BUY else price >= stop


def is_tighter(direction: Direction, new_stop: float, old_stop: float) -> bool:
    """True if new_stop reduces risk compared to old_stop"""
    return new_stop > old_stop if direction == Direction.BUY else new_stop < old_stop


def r_multiple_for(position: PositionState, fill_price: float, closed_pct: float) -> float:
    move = favorable_move(position.direction, position.entry_price, fill_price)
    return move / position.risk_unit * (closed_pct / 100.0)


def pnl_for(position: PositionState, fill_price: float, closed_pct: float) -> float:
    move = favorable_move(position.direction, position.entry_price, fill_price)
    return move * (closed_pct / 100.0)


def trailing_distance(position: PositionState, config: EvaluatorConfig) -> float:
    if position.atr and position.atr > 0:
        return position.atr * config.trailing_atr_multiple
    return config.trailing_distance_r * position.risk_unit


def _is_valid_price(value) -> bool:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return False
    return math.isfinite(number) and number > 0


# ==================== VALIDATION ====================

def validate_levels(
    direction: Direction,
    entry_price: float,
    stop_loss: float,
    take_profit_1: float,
    take_profit_2: float,
    take_profit_3: float,
    tp1_close_pct: float,
    tp2_close_pct: float,
) -> List[Tuple[str, object, str]]:
    """
    Check ordering/sign constraints of a position definition

    Returns a list of (field, value, reason); empty when valid.
    """
    problems = []
    prices = {
        "entry_price": entry_price,
        "stop_loss": stop_loss,
        "take_profit_1": take_profit_1,
        "take_profit_2": take_profit_2,
        "take_profit_3": take_profit_3,
    }
    for name, value in prices.items():
        if not _is_valid_price(value):
            problems.append((name, value, "must be a finite positive number"))
    if problems:
        return problems

    if entry_price == stop_loss:
        problems.append(("stop_loss", stop_loss, "zero-width stop distance"))
    elif not is_tighter(direction, entry_price, stop_loss):
        side = "below" if direction == Direction.BUY else "above"
        problems.append(("stop_loss", stop_loss, f"must be {side} entry for {direction.value}"))

    ladder = [("entry_price", entry_price), ("take_profit_1", take_profit_1),
              ("take_profit_2", take_profit_2), ("take_profit_3", take_profit_3)]
    for (_, lower), (name, upper) in zip(ladder, ladder[1:]):
        if favorable_move(direction, lower, upper) <= 0:
            problems.append((name, upper, f"take-profit levels must advance in the {direction.value} direction"))

    for name, pct in (("tp1_close_pct", tp1_close_pct), ("tp2_close_pct", tp2_close_pct)):
        if not (isinstance(pct, (int, float)) and math.isfinite(pct) and pct > 0):
            problems.append((name, pct, "tranche must be a positive percentage"))
    if not problems and tp1_close_pct + tp2_close_pct >= 100.0:
        problems.append(("tp2_close_pct", tp2_close_pct, "tranches must leave a runner (sum < 100)"))

    return problems


def position_problems(position: PositionState) -> List[Tuple[str, object, str]]:
    return validate_levels(
        position.direction,
        position.entry_price,
        position.initial_stop_loss,
        position.take_profit_1,
        position.take_profit_2,
        position.take_profit_3,
        position.tp1_close_pct,
        position.tp2_close_pct,
    )


# ==================== INVARIANTS ====================

def check_invariants(before: PositionState, after: PositionState) -> List[str]:
    """List invariant violations of a before → after transition"""
    violations = []

    for name in ("id", "symbol", "direction", "entry_price", "initial_stop_loss",
                 "take_profit_1", "take_profit_2", "take_profit_3", "activated_at",
                 "tp1_close_pct", "tp2_close_pct"):
        if getattr(before, name) != getattr(after, name):
            violations.append(f"immutable field {name} changed")

    if PHASE_RANK[after.phase] < PHASE_RANK[before.phase]:
        violations.append(f"phase regressed {before.phase.value} -> {after.phase.value}")
    if not before.is_open and after != before:
        violations.append(f"terminal position in {before.phase.value} was modified")

    if after.remaining_position_pct > before.remaining_position_pct + PCT_EPSILON:
        violations.append(
            f"remaining_position_pct increased {before.remaining_position_pct} -> {after.remaining_position_pct}"
        )
    if after.phase != before.phase and after.phase in (Phase.PHASE1, Phase.PHASE2, Phase.CLOSED):
        if after.remaining_position_pct >= before.remaining_position_pct - PCT_EPSILON:
            violations.append(f"phase advanced to {after.phase.value} without closing a tranche")

    if is_tighter(before.direction, before.current_stop_loss, after.current_stop_loss):
        violations.append(
            f"stop loosened {before.current_stop_loss} -> {after.current_stop_loss}"
        )

    for flag, pnl in (("tp1_closed", "tp1_pnl"), ("tp2_closed", "tp2_pnl")):
        if getattr(before, flag) and not getattr(after, flag):
            violations.append(f"{flag} was unset")
        if getattr(before, pnl) is not None and getattr(before, pnl) != getattr(after, pnl):
            violations.append(f"{pnl} changed after being recorded")

    if after.phase != Phase.ERROR:
        closed = after.phase == Phase.CLOSED
        flat = abs(after.remaining_position_pct) <= PCT_EPSILON
        if closed != flat:
            violations.append(
                f"phase {after.phase.value} inconsistent with remaining {after.remaining_position_pct}%"
            )

    if after.max_favorable_excursion < before.max_favorable_excursion:
        violations.append("max_favorable_excursion decreased")
    if after.max_adverse_excursion > before.max_adverse_excursion:
        violations.append("max_adverse_excursion increased")

    return violations


def assert_invariants(before: PositionState, after: PositionState):
    violations = check_invariants(before, after)
    if violations:
        raise ConsistencyError(before.id, violations)


# ==================== EVALUATION ====================

def evaluate(
    position: PositionState,
    price: float,
    now: Optional[datetime] = None,
    config: Optional[EvaluatorConfig] = None,
) -> Evaluation:
    """
    Decide the transition (if any) for a position at the given price

    No side effects: returns the new snapshot, the ordered event drafts and the
    realized closes for the ledger.
    """
    config = config or EvaluatorConfig()
    now = as_utc(now) if now else utcnow()

    if not position.is_open:
        raise InvalidTransitionError(position.id, position.phase.value, "position is not open")
    if not _is_valid_price(price):
        raise InvalidPriceError(position.symbol, price)
    price = float(price)

    problems = position_problems(position)
    if problems:
        return _reject(position, price, problems)

    state, excursion_changed = _update_excursions(position, price)
    evaluation = Evaluation(position=state, excursion_changed=excursion_changed)

    for _ in range(MAX_STEPS_PER_PRICE):
        if not _apply_next_step(evaluation, price, now, config):
            break

    if evaluation.transitioned:
        logger.debug(
            f"🔁 {position.symbol} {position.id}: {position.phase.value} -> {evaluation.position.phase.value} "
            f"({', '.join(e.event_type.value for e in evaluation.events)})"
        )
    return evaluation


def force_close(
    position: PositionState,
    price: float,
    now: Optional[datetime] = None,
    reason: ExitReason = ExitReason.MANUAL,
    config: Optional[EvaluatorConfig] = None,
) -> Evaluation:
    """Close the whole remaining position at market (operator path)"""
    config = config or EvaluatorConfig()
    now = as_utc(now) if now else utcnow()

    if not position.is_open:
        raise InvalidTransitionError(position.id, position.phase.value, "position is not open")
    if not _is_valid_price(price):
        raise InvalidPriceError(position.symbol, price)
    price = float(price)

    state, excursion_changed = _update_excursions(position, price)
    evaluation = Evaluation(position=state, excursion_changed=excursion_changed)
    _close(evaluation, price, now, price, reason, EventType.FINAL_CLOSE, config)
    return evaluation


def _reject(position: PositionState, price: float, problems) -> Evaluation:
    detail = "; ".join(f"{name}={value}: {reason}" for name, value, reason in problems)
    logger.error(f"❌ Position {position.id} ({position.symbol}) rejected as invalid: {detail}")
    state = position.evolve(phase=Phase.ERROR, error_reason=f"invalid_position: {detail}")
    draft = TradeEventDraft(
        event_type=EventType.ERROR,
        phase=Phase.ERROR,
        price_at_event=price,
        payload=ErrorPayload(reason="invalid_position", detail=detail),
        sl_before=position.current_stop_loss,
        sl_after=position.current_stop_loss,
        remaining_position_pct=position.remaining_position_pct,
    )
    return Evaluation(position=state, events=[draft])


def _update_excursions(position: PositionState, price: float) -> Tuple[PositionState, bool]:
    move_r = favorable_move(position.direction, position.entry_price, price) / position.risk_unit
    mfe = max(position.max_favorable_excursion, move_r, 0.0)
    mae = min(position.max_adverse_excursion, move_r, 0.0)
    if mfe == position.max_favorable_excursion and mae == position.max_adverse_excursion:
        return position, False
    return position.evolve(max_favorable_excursion=mfe, max_adverse_excursion=mae), True


def _hold_expired(position: PositionState, now: datetime, config: EvaluatorConfig) -> bool:
    hours = position.max_hold_hours if position.max_hold_hours is not None else config.max_hold_hours
    if not hours or hours <= 0:
        return False
    return now - as_utc(position.activated_at) >= timedelta(hours=hours)


def weekend_close_due(now: datetime, config: EvaluatorConfig) -> bool:
    """Friday at or after the configured UTC hour"""
    if not config.close_before_weekend:
        return False
    now = as_utc(now)
    return now.weekday() == 4 and now.hour >= config.weekend_close_hour


def _breakeven_due(position: PositionState, price: float, config: EvaluatorConfig) -> bool:
    trigger = config.breakeven_trigger_progress
    if not trigger or trigger <= 0 or trigger >= 1:
        return False
    if not is_tighter(position.direction, position.entry_price, position.current_stop_loss):
        return False  # already at or beyond breakeven
    target = favorable_move(position.direction, position.entry_price, position.take_profit_1)
    progress = favorable_move(position.direction, position.entry_price, price) / target
    return progress >= trigger


def _stop_reason(position: PositionState) -> ExitReason:
    if position.phase == Phase.PHASE3:
        return ExitReason.TRAILING_STOP
    if position.phase == Phase.PHASE2:
        return ExitReason.PROFIT_LOCK_STOP
    if position.phase == Phase.PHASE1:
        return ExitReason.BREAKEVEN_STOP
    if position.current_stop_loss == position.initial_stop_loss:
        return ExitReason.STOP_LOSS
    return ExitReason.BREAKEVEN_STOP


def _apply_next_step(evaluation: Evaluation, price: float, now: datetime, config: EvaluatorConfig) -> bool:
    """Apply the highest-priority step due at this price; True if another step may follow"""
    position = evaluation.position
    if not position.is_open:
        return False
    direction = position.direction

    # Stop-out wins any tie with a take-profit
    if has_crossed_stop(direction, price, position.current_stop_loss):
        _close(evaluation, price, now, position.current_stop_loss, _stop_reason(position),
               EventType.STOPPED_OUT, config)
        return False

    if _hold_expired(position, now, config):
        _close(evaluation, price, now, price, ExitReason.TIME_EXIT, EventType.FINAL_CLOSE, config)
        return False

    if weekend_close_due(now, config):
        _close(evaluation, price, now, price, ExitReason.WEEKEND_CLOSE, EventType.FINAL_CLOSE, config)
        return False

    if position.phase == Phase.ACTIVE:
        if has_reached_target(direction, price, position.take_profit_1):
            _take_profit(evaluation, price, now, level=1)
            return True
        if _breakeven_due(position, price, config):
            _move_stop(evaluation, price, position.entry_price, EventType.MOVED_TO_BREAKEVEN, "progress")
            return True
        return False

    if position.phase == Phase.PHASE1:
        if has_reached_target(direction, price, position.take_profit_2):
            _take_profit(evaluation, price, now, level=2)
            return True
        return False

    # PHASE2 / PHASE3: runner
    if has_reached_target(direction, price, position.take_profit_3):
        _close(evaluation, price, now, position.take_profit_3, ExitReason.TAKE_PROFIT_3,
               EventType.FINAL_CLOSE, config)
        return False

    _trail(evaluation, price, config)
    return False


def _take_profit(evaluation: Evaluation, price: float, now: datetime, level: int):
    position = evaluation.position
    if level == 1:
        fill = position.take_profit_1
        closed_pct = position.tp1_close_pct
        locked_stop = position.entry_price
        next_phase = Phase.PHASE1
        event_type = EventType.TP1_HIT
    else:
        fill = position.take_profit_2
        closed_pct = position.tp2_close_pct
        locked_stop = position.take_profit_1
        next_phase = Phase.PHASE2
        event_type = EventType.TP2_HIT

    r_multiple = r_multiple_for(position, fill, closed_pct)
    pnl = pnl_for(position, fill, closed_pct)
    remaining = position.remaining_position_pct - closed_pct
    sl_before = position.current_stop_loss
    sl_after = locked_stop if is_tighter(position.direction, locked_stop, sl_before) else sl_before

    changes = {
        "phase": next_phase,
        "remaining_position_pct": remaining,
        "current_stop_loss": sl_after,
        "realized_r_multiple": position.realized_r_multiple + r_multiple,
    }
    if level == 1:
        changes.update(tp1_closed=True, tp1_pnl=r_multiple, tp1_closed_at=now)
    else:
        changes.update(tp2_closed=True, tp2_pnl=r_multiple, tp2_closed_at=now)
    evaluation.position = position.evolve(**changes)

    evaluation.events.append(TradeEventDraft(
        event_type=event_type,
        phase=next_phase,
        price_at_event=price,
        payload=PartialClosePayload(
            level=level,
            fill_price=fill,
            closed_pct=closed_pct,
            remaining_pct=remaining,
            r_multiple=r_multiple,
            pnl_pips=price_to_pips(position.symbol, pnl),
        ),
        sl_before=sl_before,
        sl_after=sl_after,
        position_closed_pct=closed_pct,
        remaining_position_pct=remaining,
        pnl_realized=pnl,
        r_multiple=r_multiple,
    ))
    if level == 1 and sl_after != sl_before:
        evaluation.events.append(TradeEventDraft(
            event_type=EventType.MOVED_TO_BREAKEVEN,
            phase=next_phase,
            price_at_event=price,
            payload=StopMovedPayload(sl_before=sl_before, sl_after=sl_after, trigger="tp1"),
            sl_before=sl_before,
            sl_after=sl_after,
            remaining_position_pct=remaining,
        ))
    evaluation.closes.append(CloseRecord(
        position_id=position.id,
        r_multiple=r_multiple,
        is_final=False,
        closed_at=now,
        total_r_multiple=evaluation.position.realized_r_multiple,
    ))


def _move_stop(evaluation: Evaluation, price: float, new_stop: float, event_type: EventType, trigger: str):
    position = evaluation.position
    next_phase = Phase.PHASE3 if event_type == EventType.TRAILING_STOP_ADJUSTED else position.phase
    evaluation.position = position.evolve(
        current_stop_loss=new_stop,
        phase=next_phase,
        trailing_active=position.trailing_active or event_type == EventType.TRAILING_STOP_ADJUSTED,
    )
    evaluation.events.append(TradeEventDraft(
        event_type=event_type,
        phase=next_phase,
        price_at_event=price,
        payload=StopMovedPayload(sl_before=position.current_stop_loss, sl_after=new_stop, trigger=trigger),
        sl_before=position.current_stop_loss,
        sl_after=new_stop,
        remaining_position_pct=position.remaining_position_pct,
    ))


def _trail(evaluation: Evaluation, price: float, config: EvaluatorConfig):
    position = evaluation.position
    distance = trailing_distance(position, config)
    if distance <= 0:
        return
    candidate = price - distance if position.direction == Direction.BUY else price + distance
    if is_tighter(position.direction, candidate, position.current_stop_loss):
        _move_stop(evaluation, price, candidate, EventType.TRAILING_STOP_ADJUSTED, "trailing")


def _close(
    evaluation: Evaluation,
    price: float,
    now: datetime,
    fill: float,
    reason: ExitReason,
    event_type: EventType,
    config: EvaluatorConfig,
):
    position = evaluation.position
    closed_pct = position.remaining_position_pct
    r_multiple = r_multiple_for(position, fill, closed_pct)
    pnl = pnl_for(position, fill, closed_pct)
    total_r = position.realized_r_multiple + r_multiple
    outcome = Outcome.classify(total_r, config.breakeven_epsilon_r)

    evaluation.position = position.evolve(
        phase=Phase.CLOSED,
        remaining_position_pct=0.0,
        realized_r_multiple=total_r,
        exit_reason=reason,
        outcome=outcome,
        closed_at=now,
    )
    evaluation.events.append(TradeEventDraft(
        event_type=event_type,
        phase=Phase.CLOSED,
        price_at_event=price,
        payload=ClosePayload(
            exit_reason=reason,
            fill_price=fill,
            closed_pct=closed_pct,
            r_multiple=r_multiple,
            total_r_multiple=total_r,
            outcome=outcome,
            pnl_pips=price_to_pips(position.symbol, pnl),
        ),
        sl_before=position.current_stop_loss,
        sl_after=None,
        position_closed_pct=closed_pct,
        remaining_position_pct=0.0,
        pnl_realized=pnl,
        r_multiple=r_multiple,
    ))
    evaluation.closes.append(CloseRecord(
        position_id=position.id,
        r_multiple=r_multiple,
        is_final=True,
        closed_at=now,
        total_r_multiple=total_r,
    ))
