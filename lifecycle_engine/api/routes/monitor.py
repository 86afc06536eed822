"""
Monitor API Routes
Lets an external scheduler trigger cycles and exposes driver status
"""

from fastapi import APIRouter, Depends

from lifecycle_engine.api.deps import get_driver
from lifecycle_engine.api.schemas.ledger import CycleSummaryResponse, MonitorStatusResponse
from lifecycle_engine.services.monitor_cycle import MonitorCycleDriver

router = APIRouter()


@router.post("/monitor/run", response_model=CycleSummaryResponse)
async def run_monitor_cycle(driver: MonitorCycleDriver = Depends(get_driver)):
    """Run one cycle now (waits for a cycle already in progress)"""
    summary = await driver.run_cycle()
    return CycleSummaryResponse(**summary.to_dict())


@router.get("/monitor/status", response_model=MonitorStatusResponse)
async def get_monitor_status(driver: MonitorCycleDriver = Depends(get_driver)):
    last = driver.last_summary
    return MonitorStatusResponse(
        state=driver.state.value,
        is_running=driver.is_running,
        cycles_run=driver.cycles_run,
        last_cycle=CycleSummaryResponse(**last.to_dict()) if last else None,
    )
