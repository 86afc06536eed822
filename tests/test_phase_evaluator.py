import math
import random
from datetime import datetime, timedelta, timezone

import pytest

from lifecycle_engine.models.lifecycle_types import (
    Direction,
    EventType,
    ExitReason,
    Outcome,
    Phase,
    PHASE_RANK,
)
from lifecycle_engine.services.phase_evaluator import (
    EvaluatorConfig,
    check_invariants,
    evaluate,
    force_close,
    is_tighter,
    validate_levels,
)
from lifecycle_engine.utils.exceptions import InvalidPriceError, InvalidTransitionError
from tests.factories import NOW, make_eurusd_buy, make_usdjpy_sell


FRIDAY_CLOSE = datetime(2026, 3, 6, 17, 0, tzinfo=timezone.utc)
WEEKEND = EvaluatorConfig(close_before_weekend=True, weekend_close_hour=16)


def event_types(evaluation):
    return [e.event_type for e in evaluation.events]


# ==================== SCENARIOS ====================

def test_scenario_a_tp1_moves_stop_to_breakeven():
    result = evaluate(make_eurusd_buy(), 1.08900, now=NOW)
    position = result.position

    assert position.phase == Phase.PHASE1
    assert position.current_stop_loss == 1.08500
    assert position.tp1_closed is True
    assert position.remaining_position_pct == pytest.approx(67.0)
    assert position.tp1_pnl == pytest.approx(0.66)
    assert event_types(result) == [EventType.TP1_HIT, EventType.MOVED_TO_BREAKEVEN]

    tp1_event = result.events[0]
    assert tp1_event.position_closed_pct == pytest.approx(33.0)
    assert tp1_event.payload.fill_price == 1.08900
    assert tp1_event.payload.pnl_pips == pytest.approx(40.0 * 0.33)
    assert len(result.closes) == 1 and not result.closes[0].is_final


def test_scenario_b_breakeven_stop_after_tp1_is_a_small_win():
    after_tp1 = evaluate(make_eurusd_buy(), 1.08900, now=NOW).position
    result = evaluate(after_tp1, 1.08300, now=NOW)
    position = result.position

    assert position.phase == Phase.CLOSED
    assert position.remaining_position_pct == 0.0
    assert position.exit_reason == ExitReason.BREAKEVEN_STOP
    assert event_types(result) == [EventType.STOPPED_OUT]

    close = result.events[0]
    assert close.payload.fill_price == 1.08500  # fills at the stop, not the tick
    assert close.r_multiple == pytest.approx(0.0)
    assert close.position_closed_pct == pytest.approx(67.0)
    assert position.realized_r_multiple == pytest.approx(0.66)
    assert position.outcome == Outcome.WIN
    assert result.closes[-1].is_final


def test_scenario_c_sell_stopped_out_before_any_tp():
    result = evaluate(make_usdjpy_sell(), 150.20, now=NOW)
    position = result.position

    assert position.phase == Phase.CLOSED
    assert position.exit_reason == ExitReason.STOP_LOSS
    assert position.outcome == Outcome.LOSS
    assert position.realized_r_multiple == pytest.approx(-1.0)
    assert event_types(result) == [EventType.STOPPED_OUT]
    assert result.events[0].payload.pnl_pips == pytest.approx(-20.0)


def test_full_stop_out_realizes_minus_one_r_with_slippage_past_the_stop():
    result = evaluate(make_eurusd_buy(), 1.08000, now=NOW)
    assert result.position.realized_r_multiple == pytest.approx(-1.0)
    assert result.position.max_adverse_excursion == pytest.approx(-2.5)


# ==================== RUNNER ====================

def test_tp2_locks_stop_at_tp1():
    wide_trail = EvaluatorConfig(trailing_distance_r=5.0)
    position = evaluate(make_eurusd_buy(), 1.08900, now=NOW, config=wide_trail).position
    result = evaluate(position, 1.09210, now=NOW, config=wide_trail)

    assert result.position.phase == Phase.PHASE2
    assert result.position.current_stop_loss == 1.08900
    assert result.position.tp2_closed is True
    assert result.position.remaining_position_pct == pytest.approx(34.0)
    assert event_types(result) == [EventType.TP2_HIT]


def test_gap_through_tp1_and_tp2_resolves_in_one_evaluation():
    result = evaluate(make_eurusd_buy(), 1.09200, now=NOW)

    assert event_types(result) == [
        EventType.TP1_HIT,
        EventType.MOVED_TO_BREAKEVEN,
        EventType.TP2_HIT,
        EventType.TRAILING_STOP_ADJUSTED,
    ]
    assert result.position.phase == Phase.PHASE3
    assert result.position.trailing_active is True
    assert result.position.current_stop_loss == pytest.approx(1.09000)
    assert [c.is_final for c in result.closes] == [False, False]


def test_trailing_stop_ratchets_and_never_loosens():
    position = evaluate(make_eurusd_buy(), 1.09200, now=NOW).position

    higher = evaluate(position, 1.09400, now=NOW)
    assert event_types(higher) == [EventType.TRAILING_STOP_ADJUSTED]
    assert higher.position.current_stop_loss == pytest.approx(1.09200)

    pullback = evaluate(higher.position, 1.09300, now=NOW)
    assert pullback.events == []
    assert pullback.position.current_stop_loss == higher.position.current_stop_loss

    stopped = evaluate(pullback.position, 1.09150, now=NOW)
    assert event_types(stopped) == [EventType.STOPPED_OUT]
    assert stopped.position.exit_reason == ExitReason.TRAILING_STOP
    # 0.33 * 2R + 0.33 * 3.5R + 0.34 * 3.5R
    assert stopped.position.realized_r_multiple == pytest.approx(0.66 + 1.155 + 1.19)


def test_trailing_distance_uses_atr_when_supplied():
    config = EvaluatorConfig(trailing_atr_multiple=1.5)
    position = evaluate(make_eurusd_buy(atr=0.0010), 1.09200, now=NOW, config=config).position
    assert position.current_stop_loss == pytest.approx(1.09200 - 0.0015)


def test_tp3_closes_the_runner_at_target():
    result = evaluate(make_eurusd_buy(), 1.09550, now=NOW)
    position = result.position

    assert position.phase == Phase.CLOSED
    assert position.exit_reason == ExitReason.TAKE_PROFIT_3
    assert result.events[-1].event_type == EventType.FINAL_CLOSE
    assert result.events[-1].payload.fill_price == 1.09500
    assert position.realized_r_multiple == pytest.approx(0.66 + 1.155 + 1.7)


# ==================== PRIORITY & EXITS ====================

def test_stop_out_wins_tie_with_take_profit():
    # stop tightened beyond TP1: one tick both hits TP1 and crosses the stop
    position = make_eurusd_buy(current_stop_loss=1.08950)
    result = evaluate(position, 1.08900, now=NOW)

    assert event_types(result) == [EventType.STOPPED_OUT]
    assert result.position.tp1_closed is False
    assert result.position.exit_reason == ExitReason.BREAKEVEN_STOP


def test_time_exit_closes_at_market():
    position = make_eurusd_buy(activated_at=NOW - timedelta(hours=49))
    result = evaluate(position, 1.08600, now=NOW)

    assert result.position.phase == Phase.CLOSED
    assert result.position.exit_reason == ExitReason.TIME_EXIT
    assert result.events[-1].payload.fill_price == 1.08600
    assert result.position.realized_r_multiple == pytest.approx(0.5)


def test_zero_max_hold_disables_time_exit():
    position = make_eurusd_buy(activated_at=NOW - timedelta(hours=500), max_hold_hours=0)
    assert evaluate(position, 1.08600, now=NOW).events == []


def test_weekend_close_flattens_at_market_after_friday_close_hour():
    position = make_eurusd_buy(activated_at=FRIDAY_CLOSE - timedelta(hours=2))
    result = evaluate(position, 1.08650, now=FRIDAY_CLOSE, config=WEEKEND)

    assert event_types(result) == [EventType.FINAL_CLOSE]
    assert result.position.phase == Phase.CLOSED
    assert result.position.exit_reason == ExitReason.WEEKEND_CLOSE
    assert result.position.remaining_position_pct == 0.0
    assert result.events[-1].payload.fill_price == 1.08650
    assert result.position.realized_r_multiple == pytest.approx(0.75)


@pytest.mark.parametrize(
    "now",
    [
        FRIDAY_CLOSE - timedelta(hours=2),  # Friday 15:00
        FRIDAY_CLOSE - timedelta(days=1),  # Thursday 17:00
        FRIDAY_CLOSE + timedelta(days=3),  # Monday 17:00
    ],
)
def test_weekend_close_waits_for_friday_close_hour(now):
    position = make_eurusd_buy(activated_at=now - timedelta(hours=2))
    assert evaluate(position, 1.08650, now=now, config=WEEKEND).events == []


def test_weekend_close_disabled_by_default():
    position = make_eurusd_buy(activated_at=FRIDAY_CLOSE - timedelta(hours=2))
    assert evaluate(position, 1.08650, now=FRIDAY_CLOSE).events == []


def test_stop_out_beats_weekend_close():
    position = make_usdjpy_sell(activated_at=FRIDAY_CLOSE - timedelta(hours=2))
    result = evaluate(position, 150.25, now=FRIDAY_CLOSE, config=WEEKEND)

    assert event_types(result) == [EventType.STOPPED_OUT]
    assert result.position.exit_reason == ExitReason.STOP_LOSS
    assert result.events[-1].payload.fill_price == 150.20


def test_early_breakeven_on_progress_then_flat_close():
    config = EvaluatorConfig(breakeven_trigger_progress=0.5)
    moved = evaluate(make_eurusd_buy(), 1.08710, now=NOW, config=config)

    assert event_types(moved) == [EventType.MOVED_TO_BREAKEVEN]
    assert moved.position.phase == Phase.ACTIVE
    assert moved.position.current_stop_loss == 1.08500
    assert moved.events[0].payload.trigger == "progress"

    closed = evaluate(moved.position, 1.08500, now=NOW, config=config)
    assert closed.position.outcome == Outcome.BREAKEVEN
    assert closed.position.exit_reason == ExitReason.BREAKEVEN_STOP


def test_force_close_uses_market_price():
    position = evaluate(make_eurusd_buy(), 1.08900, now=NOW).position
    result = force_close(position, 1.08700, now=NOW)

    assert result.position.phase == Phase.CLOSED
    assert result.position.exit_reason == ExitReason.MANUAL
    assert result.events[-1].event_type == EventType.FINAL_CLOSE
    assert result.position.realized_r_multiple == pytest.approx(0.66 + 0.67)


# ==================== INPUT HANDLING ====================

@pytest.mark.parametrize("price", [0, -1.0, float("nan"), float("inf"), None, "abc"])
def test_invalid_price_is_rejected(price):
    with pytest.raises(InvalidPriceError):
        evaluate(make_eurusd_buy(), price, now=NOW)


def test_closed_position_cannot_be_evaluated():
    closed = evaluate(make_usdjpy_sell(), 150.30, now=NOW).position
    with pytest.raises(InvalidTransitionError):
        evaluate(closed, 150.30, now=NOW)


def test_non_monotonic_take_profits_flag_error():
    result = evaluate(make_eurusd_buy(take_profit_2=1.08800), 1.08600, now=NOW)

    assert result.position.phase == Phase.ERROR
    assert event_types(result) == [EventType.ERROR]
    assert result.events[0].payload.reason == "invalid_position"
    assert "take_profit_2" in result.position.error_reason


def test_zero_width_stop_flags_error():
    position = make_eurusd_buy(initial_stop_loss=1.08500, current_stop_loss=1.08500)
    result = evaluate(position, 1.08600, now=NOW)
    assert result.position.phase == Phase.ERROR


def test_validate_levels_reports_wrong_side_stop_for_sell():
    problems = validate_levels(Direction.SELL, 150.0, 149.8, 149.7, 149.4, 149.0, 33.0, 33.0)
    assert [p[0] for p in problems] == ["stop_loss"]


def test_validate_levels_requires_a_runner():
    problems = validate_levels(Direction.BUY, 1.085, 1.083, 1.089, 1.092, 1.095, 50.0, 50.0)
    assert problems == [("tp2_close_pct", 50.0, "tranches must leave a runner (sum < 100)")]


def test_check_invariants_catches_loosened_stop_and_phase_regression():
    before = evaluate(make_eurusd_buy(), 1.08900, now=NOW).position
    after = before.evolve(phase=Phase.ACTIVE, current_stop_loss=1.08300)

    violations = check_invariants(before, after)
    assert any("phase regressed" in v for v in violations)
    assert any("stop loosened" in v for v in violations)


# ==================== PROPERTIES ====================

def test_reevaluating_same_price_is_a_noop():
    position = make_eurusd_buy()
    for price in (1.08700, 1.08900, 1.09000, 1.09200, 1.09350, 1.09300):
        first = evaluate(position, price, now=NOW)
        second = evaluate(first.position, price, now=NOW)
        assert second.events == []
        assert second.closes == []
        assert second.excursion_changed is False
        assert second.position == first.position
        position = first.position


@pytest.mark.parametrize("seed", [1, 7, 42, 99])
@pytest.mark.parametrize("factory", [make_eurusd_buy, make_usdjpy_sell])
def test_random_walk_keeps_invariants(factory, seed):
    rng = random.Random(seed)
    position = factory()
    sign = 1 if position.direction == Direction.BUY else -1
    step = position.risk_unit * 0.5
    price = position.entry_price
    closed_pct = 0.0
    r_total = 0.0

    for _ in range(400):
        if not position.is_open:
            break
        price += rng.uniform(-step, step) + sign * step * 0.15
        result = evaluate(position, price, now=NOW)
        after = result.position

        assert check_invariants(position, after) == []
        assert PHASE_RANK[after.phase] >= PHASE_RANK[position.phase]
        assert after.remaining_position_pct <= position.remaining_position_pct
        assert not is_tighter(position.direction, position.current_stop_loss, after.current_stop_loss)

        closed_pct += sum(e.position_closed_pct for e in result.events)
        r_total += sum(e.r_multiple for e in result.events if e.r_multiple is not None)
        position = after

    assert closed_pct + position.remaining_position_pct == pytest.approx(100.0)
    assert r_total == pytest.approx(position.realized_r_multiple)
    if position.phase == Phase.CLOSED:
        assert closed_pct == pytest.approx(100.0)
        assert not math.isnan(position.realized_r_multiple)
