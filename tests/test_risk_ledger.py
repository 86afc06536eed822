import logging
from datetime import date, datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from lifecycle_engine.database.models import DailyRiskLedger
from lifecycle_engine.models.lifecycle_types import CloseRecord, LedgerState, Outcome
from lifecycle_engine.services import risk_ledger
from lifecycle_engine.services.risk_ledger import (
    RiskPolicy,
    apply_close,
    clear_pause,
    clear_pause_state,
    get_ledger,
    get_pause_status,
    ledger_day,
    record_close,
)

DAY1 = date(2026, 3, 2)
DAY2 = date(2026, 3, 3)


def make_close(total_r, is_final=True, r=None, position_id="p1", day=DAY1, hour=12):
    return CloseRecord(
        position_id=position_id,
        r_multiple=total_r if r is None else r,
        is_final=is_final,
        closed_at=datetime(day.year, day.month, day.day, hour, tzinfo=timezone.utc),
        total_r_multiple=total_r,
    )


def book(ledger, totals, policy):
    updates = []
    for i, total in enumerate(totals):
        update = apply_close(ledger, make_close(total, position_id=f"p{i}"), policy)
        updates.append(update)
        ledger = update.ledger
    return ledger, updates


# ==================== PURE LEDGER MATH ====================

def test_partial_close_adds_r_without_counting_a_trade():
    update = apply_close(LedgerState(date=DAY1), make_close(0.66, is_final=False), RiskPolicy())
    assert update.ledger.total_r_multiple == pytest.approx(0.66)
    assert update.ledger.total_trades == 0
    assert update.outcome is None


def test_final_close_counts_by_cumulative_r():
    # TP1 booked earlier (+0.66R), the runner stops at breakeven for 0R
    close = make_close(0.66, r=0.0)
    update = apply_close(LedgerState(date=DAY1, total_r_multiple=0.66), close, RiskPolicy())

    assert update.outcome == Outcome.WIN
    assert update.ledger.winning_trades == 1
    assert update.ledger.total_trades == 1
    assert update.ledger.total_r_multiple == pytest.approx(0.66)
    assert update.ledger.consecutive_wins == 1


def test_breakeven_keeps_loss_streak_by_default():
    ledger, _ = book(LedgerState(date=DAY1), [-1.0, 0.05], RiskPolicy())
    assert ledger.breakeven_trades == 1
    assert ledger.consecutive_losses == 1
    assert ledger.consecutive_wins == 0


def test_breakeven_can_reset_loss_streak():
    ledger, _ = book(LedgerState(date=DAY1), [-1.0, 0.0], RiskPolicy(breakeven_resets_loss_streak=True))
    assert ledger.consecutive_losses == 0


def test_three_losses_trip_the_circuit_breaker(caplog):
    policy = RiskPolicy(consecutive_loss_threshold=3)
    with caplog.at_level(logging.WARNING, logger="lifecycle_engine.services.risk_ledger"):
        ledger, updates = book(LedgerState(date=DAY1), [-1.0, -1.0, -1.0], policy)

    assert [u.pause_triggered for u in updates] == [False, False, True]
    assert ledger.bot_paused is True
    assert ledger.pause_reason == "3 consecutive losses"
    assert ledger.losing_trades == 3
    assert ledger.total_r_multiple == pytest.approx(-3.0)
    assert "CIRCUIT BREAKER" in caplog.text


def test_pause_triggers_only_once():
    ledger, updates = book(LedgerState(date=DAY1), [-1.0] * 5, RiskPolicy(consecutive_loss_threshold=3))
    assert sum(u.pause_triggered for u in updates) == 1
    assert ledger.consecutive_losses == 5


def test_interleaved_win_resets_the_streak():
    ledger, updates = book(LedgerState(date=DAY1), [-1.0, -1.0, 0.5, -1.0, -1.0], RiskPolicy())
    assert not any(u.pause_triggered for u in updates)
    assert ledger.consecutive_losses == 2
    assert ledger.bot_paused is False


def test_clear_pause_state_resets_streak():
    paused = LedgerState(date=DAY1, bot_paused=True, pause_reason="3 consecutive losses", consecutive_losses=3)
    cleared = clear_pause_state(paused)
    assert cleared.bot_paused is False
    assert cleared.pause_reason is None
    assert cleared.consecutive_losses == 0


def test_ledger_day_is_utc_calendar_day():
    late_new_york = datetime(2026, 3, 2, 22, 30, tzinfo=timezone(timedelta(hours=-5)))
    assert ledger_day(late_new_york) == DAY2


# ==================== PERSISTENCE ====================

async def record_all(session_factory, closes, policy):
    async with session_factory() as db:
        updates = [await record_close(db, close, policy) for close in closes]
        await db.commit()
    return updates


async def test_record_close_creates_and_updates_days_row(session_factory, policy):
    await record_all(session_factory, [make_close(0.66, is_final=False), make_close(0.66, r=0.0)], policy)

    async with session_factory() as db:
        row = await get_ledger(db, DAY1)
    assert row.total_trades == 1
    assert row.winning_trades == 1
    assert row.total_r_multiple == pytest.approx(0.66)


async def test_pause_carries_over_to_next_day(session_factory, policy):
    losses = [make_close(-1.0, position_id=f"p{i}") for i in range(3)]
    updates = await record_all(session_factory, losses, policy)
    assert updates[-1].pause_triggered

    await record_all(session_factory, [make_close(1.5, day=DAY2)], policy)

    async with session_factory() as db:
        day2 = await get_ledger(db, DAY2)
        status = await get_pause_status(db, policy, today=date(2026, 3, 5))
    assert day2.bot_paused is True
    assert day2.pause_reason == "3 consecutive losses"
    assert status["bot_paused"] is True
    assert status["ledger_date"] == DAY2


async def test_pause_resets_daily_when_not_carried_over(session_factory):
    policy = RiskPolicy(consecutive_loss_threshold=3, pause_carries_over=False)
    await record_all(session_factory, [make_close(-1.0, position_id=f"p{i}") for i in range(3)], policy)
    await record_all(session_factory, [make_close(1.5, day=DAY2)], policy)

    async with session_factory() as db:
        assert (await get_pause_status(db, policy, today=DAY1))["bot_paused"] is True
        assert (await get_pause_status(db, policy, today=DAY2))["bot_paused"] is False
        assert (await get_ledger(db, DAY2)).bot_paused is False


async def test_clear_pause_records_operator_and_resets_streak(session_factory, policy):
    await record_all(session_factory, [make_close(-1.0, position_id=f"p{i}") for i in range(3)], policy)
    await record_all(session_factory, [make_close(-1.0, day=DAY2, position_id="p9")], policy)

    async with session_factory() as db:
        cleared = await clear_pause(db, "alice", note="reviewed")
    assert set(cleared) == {DAY1, DAY2}

    async with session_factory() as db:
        status = await get_pause_status(db, policy, today=DAY2)
        row = await get_ledger(db, DAY1)
    assert status["bot_paused"] is False
    assert row.consecutive_losses == 0
    assert row.pause_cleared_by == "alice"
    assert row.pause_cleared_at is not None


async def test_clear_pause_with_nothing_paused(session_factory):
    async with session_factory() as db:
        assert await clear_pause(db, "alice") == []


async def test_pause_status_without_any_ledger(session_factory, policy):
    async with session_factory() as db:
        status = await get_pause_status(db, policy, today=DAY1)
    assert status == {"bot_paused": False, "pause_reason": None, "paused_at": None, "ledger_date": None}


async def test_day_row_inserted_by_another_writer_is_reused(session_factory, policy, monkeypatch):
    await record_all(session_factory, [make_close(-1.0)], policy)

    real_lock = risk_ledger._lock_ledger
    lookups = []

    async def late_lookup(db, day):
        lookups.append(day)
        # first lookup misses a row committed just after it ran
        if len(lookups) == 1:
            return None
        return await real_lock(db, day)

    monkeypatch.setattr(risk_ledger, "_lock_ledger", late_lookup)
    await record_all(session_factory, [make_close(-1.0, position_id="p2")], policy)

    async with session_factory() as db:
        rows = (await db.execute(select(DailyRiskLedger))).scalars().all()
    assert len(lookups) == 2
    assert len(rows) == 1
    assert rows[0].losing_trades == 2
    assert rows[0].consecutive_losses == 2
