"""
Trade Lifecycle Engine - FastAPI Backend
"""
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request, HTTPException
from fastapi.responses import JSONResponse, Response
from fastapi.middleware.cors import CORSMiddleware
import logging

from lifecycle_engine.config import settings
from lifecycle_engine.database.database import check_db_health, close_db, get_session_factory, init_db
from lifecycle_engine.logging_config import setup_logging
from lifecycle_engine.services.event_emitter import EventEmitter
from lifecycle_engine.services.metrics import get_metrics, get_metrics_content_type, metrics_service
from lifecycle_engine.services.monitor_cycle import MonitorConfig, MonitorCycleDriver
from lifecycle_engine.services.price_oracle import CcxtPriceOracle
from lifecycle_engine.services.risk_ledger import RiskPolicy, get_pause_status
from lifecycle_engine.utils.clock import utcnow
from lifecycle_engine.utils.exceptions import (
    DatabaseOperationError,
    InvalidPriceError,
    InvalidTransitionError,
    PositionNotFoundError,
    PriceUnavailableError,
    ValidationError,
)

# Setup rotating logs
setup_logging()

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifespan - wire the engine on startup"""

    # ==================== STARTUP ====================
    logger.info(f"🚀 {settings.APP_NAME} starting up...")
    logger.info(f"Environment: {settings.ENVIRONMENT}")

    logger.info("🗄️ Initializing database...")
    session_factory = get_session_factory()
    await init_db()

    oracle = getattr(app.state, "price_oracle", None)
    if oracle is None:
        logger.info(f"💱 Initializing {settings.PRICE_EXCHANGE_ID} price oracle...")
        oracle = CcxtPriceOracle(settings.PRICE_EXCHANGE_ID, settings.PRICE_FETCH_TIMEOUT_SEC)

    policy = RiskPolicy.from_settings(settings)
    emitter = EventEmitter(session_factory, policy)
    monitor = MonitorCycleDriver(session_factory, oracle, emitter, MonitorConfig.from_settings(settings))

    app.state.price_oracle = oracle
    app.state.monitor = monitor

    async with session_factory() as db:
        pause = await get_pause_status(db, policy)
    metrics_service.update_bot_paused(pause["bot_paused"])
    if pause["bot_paused"]:
        logger.warning(f"⏸️ Bot is paused ({pause['pause_reason']}) - waiting for operator clear")

    if settings.MONITOR_AUTOSTART:
        monitor.start()
    else:
        logger.info("⏯️ Monitor autostart disabled - cycles run via POST /api/monitor/run")

    metrics_service.update_component_status("monitor", True)
    logger.info(f"✅ {settings.APP_NAME} started successfully!")

    # ==================== RUNNING ====================
    yield

    # ==================== SHUTDOWN ====================
    logger.info(f"🛑 {settings.APP_NAME} shutting down...")

    await monitor.stop()
    metrics_service.update_component_status("monitor", False)
    await oracle.close()
    await close_db()

    app.state.monitor = None
    app.state.price_oracle = None
    logger.info(f"✅ {settings.APP_NAME} shut down successfully")


# Create FastAPI application
app = FastAPI(
    title=settings.APP_NAME,
    description="Tracks trading signals from activation through partial profit-taking, "
                "breakeven protection and trailing management to final close",
    version=settings.APP_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS_LIST,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

if settings.ENABLE_METRICS:
    metrics_service.init_fastapi_instrumentation(app)


@app.get("/")
async def root():
    """Root endpoint - API information"""
    return {
        "name": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "status": "operational",
        "timestamp": utcnow().isoformat(),
        "endpoints": {
            "health": "/api/health",
            "docs": "/docs",
            "positions": "/api/positions",
            "events": "/api/events",
            "risk": "/api/risk/status",
            "metrics": "/metrics"
        }
    }


@app.get("/api/health")
async def health_check(request: Request):
    """Health check endpoint"""
    database_ok = await check_db_health()
    monitor = getattr(request.app.state, "monitor", None)
    return {
        "status": "healthy" if database_ok else "degraded",
        "timestamp": utcnow().isoformat(),
        "version": settings.APP_VERSION,
        "uptime_sec": round(metrics_service.get_uptime(), 1),
        "services": {
            "api": "operational",
            "database": "operational" if database_ok else "unreachable",
            "monitor": monitor.state.value if monitor else "not_initialized",
            "monitor_loop": "running" if monitor and monitor.is_running else "stopped",
        }
    }


@app.get("/metrics")
async def metrics():
    """Prometheus metrics endpoint"""
    return Response(content=get_metrics(), media_type=get_metrics_content_type())


def _error_response(request: Request, status_code: int, error: str, message: str, **extra) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "error": error,
            "message": message,
            "timestamp": utcnow().isoformat(),
            "path": request.url.path,
            **extra
        }
    )


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError):
    """Malformed position definition - rejected before entering the state machine"""
    return _error_response(
        request, 422, "Validation Error", str(exc),
        field=exc.field, value=repr(exc.value), reason=exc.reason
    )


@app.exception_handler(PositionNotFoundError)
async def not_found_error_handler(request: Request, exc: PositionNotFoundError):
    return _error_response(request, 404, "Not Found", str(exc))


@app.exception_handler(InvalidTransitionError)
async def invalid_transition_handler(request: Request, exc: InvalidTransitionError):
    return _error_response(request, 409, "Conflict", str(exc), phase=exc.phase)


@app.exception_handler(InvalidPriceError)
async def invalid_price_handler(request: Request, exc: InvalidPriceError):
    return _error_response(request, 422, "Invalid Price", str(exc))


@app.exception_handler(PriceUnavailableError)
async def price_unavailable_handler(request: Request, exc: PriceUnavailableError):
    return _error_response(request, 503, "Price Unavailable", str(exc))


@app.exception_handler(DatabaseOperationError)
async def database_error_handler(request: Request, exc: DatabaseOperationError):
    logger.error(f"Database unavailable on {request.method} {request.url.path}: {exc}")
    return _error_response(request, 503, "Service Unavailable", "Database temporarily unavailable")


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    """
    Global HTTPException handler
    Returns structured error responses without leaking implementation details
    """
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": exc.detail if exc.status_code < 500 else "Internal Server Error",
            "status_code": exc.status_code,
            "timestamp": utcnow().isoformat(),
            "path": request.url.path
        },
        headers=exc.headers
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception):
    """
    Global generic exception handler
    Logs full error details but returns safe error response to client
    """
    logger.error(
        f"Unhandled exception on {request.method} {request.url.path}: {exc}",
        exc_info=True,
        extra={
            "method": request.method,
            "path": request.url.path,
            "client": request.client.host if request.client else "unknown"
        }
    )

    return JSONResponse(
        status_code=500,
        content={
            "error": "Internal Server Error",
            "message": "An unexpected error occurred. Please contact support if this persists.",
            "timestamp": utcnow().isoformat(),
            "request_id": request.headers.get("X-Request-ID", "unknown")
        }
    )


from lifecycle_engine.api.routes.positions import router as positions_router
from lifecycle_engine.api.routes.events import router as events_router
from lifecycle_engine.api.routes.risk import router as risk_router
from lifecycle_engine.api.routes.monitor import router as monitor_router

app.include_router(positions_router, prefix="/api", tags=["Positions"])
app.include_router(events_router, prefix="/api", tags=["Events"])
app.include_router(risk_router, prefix="/api", tags=["Risk"])
app.include_router(monitor_router, prefix="/api", tags=["Monitor"])


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "lifecycle_engine.main:app",
        host="0.0.0.0",
        port=settings.API_PORT,
        log_level=settings.LOG_LEVEL.lower()
    )
