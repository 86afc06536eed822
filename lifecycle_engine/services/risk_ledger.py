"""
Daily Risk Ledger

Aggregates realized R per UTC calendar day and trips the circuit breaker
after N consecutive losing trades. The pause is a signal to the issuer:
positions already open keep being managed, and only an operator clears it.

apply_close() is pure; the async helpers load and lock the day's row.
"""
import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from lifecycle_engine.database.models import DailyRiskLedger
from lifecycle_engine.models.lifecycle_types import CloseRecord, LedgerState, Outcome
from lifecycle_engine.utils.clock import as_utc, utcnow

logger = logging.getLogger(__name__)

UPSERT_DIALECTS = {"postgresql": postgresql.insert, "sqlite": sqlite.insert}


@dataclass(frozen=True)
class RiskPolicy:
    consecutive_loss_threshold: int = 3
    breakeven_epsilon_r: float = 0.1
    breakeven_resets_loss_streak: bool = False
    pause_carries_over: bool = True

    @classmethod
    def from_settings(cls, settings) -> "RiskPolicy":
        return cls(
            consecutive_loss_threshold=settings.CONSECUTIVE_LOSS_THRESHOLD,
            breakeven_epsilon_r=settings.BREAKEVEN_EPSILON_R,
            breakeven_resets_loss_streak=settings.BREAKEVEN_RESETS_LOSS_STREAK,
            pause_carries_over=settings.PAUSE_CARRIES_OVER,
        )


@dataclass(frozen=True)
class LedgerUpdate:
    ledger: LedgerState
    outcome: Optional[Outcome] = None  # set for final closes only
    pause_triggered: bool = False


def ledger_day(moment: datetime) -> date:
    """Calendar day a close is booked on (UTC)"""
    return as_utc(moment).date()


def apply_close(
    ledger: LedgerState,
    close: CloseRecord,
    policy: RiskPolicy,
    now: Optional[datetime] = None,
) -> LedgerUpdate:
    """
    Book one realized close on a day's ledger

    Partial closes only add R. A final close counts the trade once, in the
    bucket given by its cumulative R, and moves the streak counters.
    """
    updated = ledger.evolve(total_r_multiple=ledger.total_r_multiple + close.r_multiple)
    if not close.is_final:
        return LedgerUpdate(ledger=updated)

    outcome = Outcome.classify(close.total_r_multiple, policy.breakeven_epsilon_r)
    if outcome == Outcome.WIN:
        updated = updated.evolve(
            total_trades=updated.total_trades + 1,
            winning_trades=updated.winning_trades + 1,
            consecutive_losses=0,
            consecutive_wins=updated.consecutive_wins + 1,
        )
    elif outcome == Outcome.LOSS:
        updated = updated.evolve(
            total_trades=updated.total_trades + 1,
            losing_trades=updated.losing_trades + 1,
            consecutive_losses=updated.consecutive_losses + 1,
            consecutive_wins=0,
        )
    else:
        updated = updated.evolve(
            total_trades=updated.total_trades + 1,
            breakeven_trades=updated.breakeven_trades + 1,
            consecutive_losses=0 if policy.breakeven_resets_loss_streak else updated.consecutive_losses,
            consecutive_wins=0,
        )

    pause_triggered = False
    if updated.consecutive_losses >= policy.consecutive_loss_threshold and not updated.bot_paused:
        updated = updated.evolve(
            bot_paused=True,
            pause_reason=f"{updated.consecutive_losses} consecutive losses",
            paused_at=as_utc(now) if now else utcnow(),
        )
        pause_triggered = True
        logger.warning(
            f"🛑 CIRCUIT BREAKER: {updated.consecutive_losses} consecutive losses on {updated.date} "
            f"(position {close.position_id}, day R={updated.total_r_multiple:+.2f}) - bot paused"
        )

    return LedgerUpdate(ledger=updated, outcome=outcome, pause_triggered=pause_triggered)


def clear_pause_state(ledger: LedgerState) -> LedgerState:
    return ledger.evolve(bot_paused=False, pause_reason=None, paused_at=None, consecutive_losses=0)


# ==================== PERSISTENCE ====================

async def get_ledger(db: AsyncSession, day: date) -> Optional[DailyRiskLedger]:
    result = await db.execute(select(DailyRiskLedger).where(DailyRiskLedger.date == day))
    return result.scalar_one_or_none()


async def _lock_ledger(db: AsyncSession, day: date) -> Optional[DailyRiskLedger]:
    result = await db.execute(
        select(DailyRiskLedger).where(DailyRiskLedger.date == day).with_for_update()
    )
    return result.scalar_one_or_none()


async def get_or_create_ledger(db: AsyncSession, day: date, policy: RiskPolicy) -> DailyRiskLedger:
    """
    Load the day's ledger row for update, creating it on first use

    A new day inherits an uncleared pause from the latest earlier ledger when
    the policy carries pauses over. The row is created with
    INSERT ... ON CONFLICT DO NOTHING, so two transactions booking the first
    close of a day both end up locking the same row.
    """
    row = await _lock_ledger(db, day)
    if row is not None:
        return row

    state = LedgerState(date=day)
    if policy.pause_carries_over:
        previous = (await db.execute(
            select(DailyRiskLedger)
            .where(DailyRiskLedger.date < day)
            .order_by(DailyRiskLedger.date.desc())
            .limit(1)
        )).scalar_one_or_none()
        if previous is not None and previous.bot_paused:
            state = state.evolve(
                bot_paused=True,
                pause_reason=previous.pause_reason,
                paused_at=as_utc(previous.paused_at),
            )
            logger.info(f"⏸️ Pause from {previous.date} carried over to {day}")

    insert = UPSERT_DIALECTS.get(db.get_bind().dialect.name)
    if insert is None:
        row = DailyRiskLedger.from_state(state)
        db.add(row)
        await db.flush()
        return row

    await db.execute(
        insert(DailyRiskLedger)
        .values(**DailyRiskLedger.state_values(state))
        .on_conflict_do_nothing(index_elements=["date"])
    )
    return await _lock_ledger(db, day)


async def record_close(db: AsyncSession, close: CloseRecord, policy: RiskPolicy) -> LedgerUpdate:
    """Apply a close to the ledger of its day inside the caller's transaction"""
    row = await get_or_create_ledger(db, ledger_day(close.closed_at), policy)
    update = apply_close(row.to_state(), close, policy, now=close.closed_at)
    row.apply_state(update.ledger)
    return update


async def get_pause_status(db: AsyncSession, policy: RiskPolicy, today: Optional[date] = None) -> dict:
    """Pause flag as seen by signal issuers"""
    today = today or utcnow().date()
    if policy.pause_carries_over:
        result = await db.execute(
            select(DailyRiskLedger)
            .where(DailyRiskLedger.date <= today)
            .order_by(DailyRiskLedger.date.desc())
            .limit(1)
        )
        row = result.scalar_one_or_none()
    else:
        row = await get_ledger(db, today)

    if row is None or not row.bot_paused:
        return {"bot_paused": False, "pause_reason": None, "paused_at": None, "ledger_date": row.date if row else None}
    return {
        "bot_paused": True,
        "pause_reason": row.pause_reason,
        "paused_at": as_utc(row.paused_at),
        "ledger_date": row.date,
    }


async def clear_pause(
    db: AsyncSession,
    operator: str,
    note: Optional[str] = None,
    day: Optional[date] = None,
) -> List[date]:
    """
    Operator action: clear the circuit breaker

    Clears the given day, or every paused ledger when no day is given, and
    resets the loss streak. Commits and returns the cleared dates.
    """
    stmt = select(DailyRiskLedger).where(DailyRiskLedger.bot_paused.is_(True)).with_for_update()
    if day is not None:
        stmt = stmt.where(DailyRiskLedger.date == day)
    rows = (await db.execute(stmt)).scalars().all()

    now = utcnow()
    cleared = []
    for row in rows:
        row.apply_state(clear_pause_state(row.to_state()))
        row.pause_cleared_at = now
        row.pause_cleared_by = operator
        cleared.append(row.date)

    await db.commit()

    if cleared:
        logger.warning(
            f"▶️ Pause cleared by {operator} for {', '.join(str(d) for d in cleared)}"
            + (f" ({note})" if note else "")
        )
    else:
        logger.info(f"Pause clear requested by {operator} but no ledger was paused")
    return cleared
