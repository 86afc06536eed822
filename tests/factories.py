from datetime import datetime, timedelta, timezone

from lifecycle_engine.models.lifecycle_types import Direction, PositionState
from lifecycle_engine.services.position_store import NewPosition

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


def make_eurusd_buy(**overrides) -> PositionState:
    """BUY EURUSD 1.08500, SL 1.08300, TPs 1.08900 / 1.09200 / 1.09500"""
    fields = dict(
        id="eurusd-buy",
        symbol="EURUSD",
        direction=Direction.BUY,
        entry_price=1.08500,
        initial_stop_loss=1.08300,
        current_stop_loss=1.08300,
        take_profit_1=1.08900,
        take_profit_2=1.09200,
        take_profit_3=1.09500,
        activated_at=NOW - timedelta(hours=1),
    )
    fields.update(overrides)
    return PositionState(**fields)


def make_usdjpy_sell(**overrides) -> PositionState:
    """SELL USDJPY 150.00, SL 150.20, TPs 149.70 / 149.40 / 149.00"""
    fields = dict(
        id="usdjpy-sell",
        symbol="USDJPY",
        direction=Direction.SELL,
        entry_price=150.00,
        initial_stop_loss=150.20,
        current_stop_loss=150.20,
        take_profit_1=149.70,
        take_profit_2=149.40,
        take_profit_3=149.00,
        activated_at=NOW - timedelta(hours=1),
    )
    fields.update(overrides)
    return PositionState(**fields)


def eurusd_request(**overrides) -> NewPosition:
    fields = dict(
        symbol="EURUSD",
        direction=Direction.BUY,
        entry_price=1.08500,
        stop_loss=1.08300,
        take_profit_1=1.08900,
        take_profit_2=1.09200,
        take_profit_3=1.09500,
    )
    fields.update(overrides)
    return NewPosition(**fields)


def usdjpy_request(**overrides) -> NewPosition:
    fields = dict(
        symbol="USDJPY",
        direction=Direction.SELL,
        entry_price=150.00,
        stop_loss=150.20,
        take_profit_1=149.70,
        take_profit_2=149.40,
        take_profit_3=149.00,
    )
    fields.update(overrides)
    return NewPosition(**fields)


def eurusd_payload(**overrides) -> dict:
    payload = {
        "symbol": "EURUSD",
        "direction": "BUY",
        "entry_price": 1.08500,
        "stop_loss": 1.08300,
        "take_profit_1": 1.08900,
        "take_profit_2": 1.09200,
        "take_profit_3": 1.09500,
    }
    payload.update(overrides)
    return payload
