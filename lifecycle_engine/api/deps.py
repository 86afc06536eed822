"""
FastAPI dependencies for the Trade Lifecycle Engine
"""
import secrets
from typing import Optional

from fastapi import HTTPException, Request, status, Header

from lifecycle_engine.config import settings
from lifecycle_engine.database.database import get_db  # noqa: F401  (re-exported for routes)
from lifecycle_engine.services.monitor_cycle import MonitorCycleDriver
from lifecycle_engine.services.risk_ledger import RiskPolicy


def get_driver(request: Request) -> MonitorCycleDriver:
    """Monitor driver created in the app lifespan"""
    driver = getattr(request.app.state, "monitor", None)
    if driver is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Monitor not initialized",
        )
    return driver


def get_risk_policy() -> RiskPolicy:
    return RiskPolicy.from_settings(settings)


async def require_operator(x_operator_token: Optional[str] = Header(None)) -> str:
    """
    Guard for the operator path (clear pause, manual close)

    Real authentication stays with the surrounding service; this only keeps
    the admin actions off the self-service surface.
    """
    if not x_operator_token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Operator token required",
        )
    if not secrets.compare_digest(x_operator_token, settings.OPERATOR_TOKEN):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Operator access required",
        )
    return x_operator_token
