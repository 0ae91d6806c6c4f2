"""
backend/contest_engine/main.py

Purpose:
    FastAPI application bootstrap: middleware and router wiring, domain error
    mapping, event bus startup and the scheduler jobs (one per poll tier,
    contest lifecycle, payout reconciliation).

Dependencies:
    - contest_engine.database
    - contest_engine.services.event_bus
    - contest_engine.workers
"""

import logging
from contextlib import asynccontextmanager

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pymongo.errors import ConnectionFailure, DuplicateKeyError, ServerSelectionTimeoutError

import contest_engine.database as _db
from contest_engine.config import settings
from contest_engine.database import close_db, connect_db
from contest_engine.errors import ContestEngineError
from contest_engine.middleware.logging import StructuredLoggingMiddleware, setup_logging

logger = logging.getLogger("contest_engine")
scheduler = AsyncIOScheduler()


def _build_job_specs() -> list[dict]:
    from contest_engine.workers.contest_lifecycle import run_contest_lifecycle
    from contest_engine.workers.payout_reconciler import run_payout_reconciliation
    from contest_engine.workers.result_poller import (
        poll_final_games,
        poll_live_games,
        poll_scheduled_games,
    )

    # Each tier job runs at its tier cadence; per-game next_poll_at handles backoff.
    return [
        {"id": "poll_scheduled", "func": poll_scheduled_games, "seconds": settings.POLL_SCHEDULED_INTERVAL_SECONDS},
        {"id": "poll_live", "func": poll_live_games, "seconds": settings.POLL_LIVE_INTERVAL_SECONDS},
        {"id": "poll_final", "func": poll_final_games, "seconds": settings.POLL_FINAL_INTERVAL_SECONDS},
        {"id": "contest_lifecycle", "func": run_contest_lifecycle, "seconds": settings.LIFECYCLE_INTERVAL_MINUTES * 60},
        {"id": "payout_reconciler", "func": run_payout_reconciliation, "seconds": settings.PAYOUT_RECONCILE_INTERVAL_MINUTES * 60},
    ]


def _register_jobs() -> int:
    added = 0
    for spec in _build_job_specs():
        scheduler.add_job(
            spec["func"],
            "interval",
            id=spec["id"],
            seconds=spec["seconds"],
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        added += 1
    return added


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging(settings.LOG_LEVEL)
    await connect_db()
    from contest_engine.services.event_bus import event_bus
    from contest_engine.services.event_handlers import register_event_handlers

    if settings.EVENT_BUS_ENABLED:
        register_event_handlers(event_bus)
        await event_bus.start()
        logger.info("Event bus enabled")
    else:
        logger.info("Event bus disabled via config; lifecycle sweep drives evaluation")

    if settings.SCHEDULER_ENABLED:
        jobs = _register_jobs()
        scheduler.start()
        logger.info("Background scheduler started with %d jobs", jobs)
    else:
        logger.info("Background scheduler disabled via config")

    yield

    if scheduler.running:
        scheduler.shutdown(wait=False)
    if settings.EVENT_BUS_ENABLED:
        await event_bus.stop()
    from contest_engine.providers.oracle import oracle_provider
    from contest_engine.providers.payments import payment_gateway
    from contest_engine.providers.sports_data import sports_data_provider
    for provider in (sports_data_provider, oracle_provider, payment_gateway):
        close = getattr(provider, "aclose", None)
        if close is not None:
            await close()
    await close_db()


app = FastAPI(
    title="Contest Scoring Engine",
    description="Prediction contest scoring, leaderboards and payouts",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.BACKEND_CORS_ORIGINS.split(","),
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "X-Request-ID"],
)

app.add_middleware(StructuredLoggingMiddleware)

from contest_engine.routers.admin import router as admin_router
from contest_engine.routers.contests import router as contests_router

app.include_router(contests_router)
app.include_router(admin_router)


@app.exception_handler(ContestEngineError)
async def domain_error_handler(request: Request, exc: ContestEngineError):
    if exc.http_status >= 500:
        logger.warning("%s on %s %s: %s", type(exc).__name__, request.method, request.url.path, exc.message)
    return JSONResponse(
        status_code=exc.http_status,
        content={"detail": exc.message, "error": type(exc).__name__},
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    """Return clean validation errors without leaking internal field paths."""
    errors = []
    for err in exc.errors():
        loc = err.get("loc", ())
        field = ".".join(str(part) for part in loc[1:]) if len(loc) > 1 else str(loc[-1]) if loc else "unknown"
        errors.append({"field": field, "message": err.get("msg", "Invalid value.")})
    return JSONResponse(
        status_code=422,
        content={"detail": "Validation error.", "error": "ValidationError", "errors": errors},
    )


@app.exception_handler(DuplicateKeyError)
async def duplicate_key_handler(request: Request, exc: DuplicateKeyError):
    return JSONResponse(status_code=409, content={"detail": "Duplicate entry."})


@app.exception_handler(ServerSelectionTimeoutError)
async def db_timeout_handler(request: Request, exc: ServerSelectionTimeoutError):
    logger.error("Database timeout: %s %s", request.method, request.url.path)
    return JSONResponse(status_code=503, content={"detail": "Service temporarily unavailable."})


@app.exception_handler(ConnectionFailure)
async def db_connection_handler(request: Request, exc: ConnectionFailure):
    logger.error("Database connection failure: %s %s", request.method, request.url.path)
    return JSONResponse(status_code=503, content={"detail": "Service temporarily unavailable."})


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    """Catch-all: log the real error, return a safe generic message."""
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"detail": "An internal error occurred."})


@app.get("/health")
async def health():
    """Health check: DB connection, provider circuits, service status summary."""
    from contest_engine.providers.oracle import oracle_provider
    from contest_engine.providers.payments import payment_gateway
    from contest_engine.providers.sports_data import sports_data_provider
    from contest_engine.services.contest_service import get_service_status

    try:
        result = await _db.db.command("ping")
        db_ok = result.get("ok") == 1.0
    except Exception:
        db_ok = False

    body = {
        "status": "healthy" if db_ok else "degraded",
        "db": "connected" if db_ok else "disconnected",
        "providers": {
            "sports_data": {"circuit_open": getattr(sports_data_provider, "circuit_open", False)},
            "oracle": {"circuit_open": getattr(oracle_provider, "circuit_open", False)},
            "payments": {"circuit_open": getattr(payment_gateway, "circuit_open", False)},
        },
        "scheduler": {"running": scheduler.running},
    }
    if db_ok:
        body["service"] = await get_service_status()
    return body
