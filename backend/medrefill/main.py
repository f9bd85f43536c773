import asyncio
import contextvars
import logging
import time
import traceback
import uuid
from contextlib import asynccontextmanager
from datetime import datetime

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from medrefill.config import get_settings
from medrefill.middleware.security import SecurityHeadersMiddleware
from medrefill.services.errors import WorkflowError

settings = get_settings()
logger = logging.getLogger(__name__)

_is_production = settings.APP_ENV == "production"

APP_VERSION = "1.0.0"

# ---------------------------------------------------------------------------
# Request ID context, propagated into every log record automatically
# ---------------------------------------------------------------------------
request_id_ctx: contextvars.ContextVar[str] = contextvars.ContextVar("request_id", default="-")


class _RequestIdFilter(logging.Filter):
    """Inject the current request ID into every log record."""
    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = request_id_ctx.get("-")
        return True


logging.getLogger().addFilter(_RequestIdFilter())

# Background task health tracking, updated by each loop iteration
_background_health: dict[str, float] = {}

REMINDER_ADVISORY_LOCK_ID = 402118711


async def _create_tables():
    """Development convenience; production schemas are managed by Alembic."""
    from medrefill.database import Base, engine
    import medrefill.models  # noqa: F401  registers every table on Base.metadata

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables ensured")


async def _run_reminder_sweep_once():
    """One sweep, guarded by a PostgreSQL advisory lock so that only one
    worker process sends reminders.  Other backends skip the lock.
    """
    from sqlalchemy import text
    from medrefill.database import AsyncSessionLocal, is_postgres
    from medrefill.services.refill_reminder_service import run_reminder_sweep

    async with AsyncSessionLocal() as db:
        if not is_postgres(db):
            return await run_reminder_sweep(AsyncSessionLocal)

        lock_result = await db.execute(text(f"SELECT pg_try_advisory_lock({REMINDER_ADVISORY_LOCK_ID})"))
        if not lock_result.scalar_one():
            logger.info("reminder_loop: another worker holds the lock, skipping")
            return None
        try:
            return await run_reminder_sweep(AsyncSessionLocal)
        finally:
            await db.execute(text(f"SELECT pg_advisory_unlock({REMINDER_ADVISORY_LOCK_ID})"))
            await db.commit()


async def _reminder_loop():
    """Daily refill reminder sweep at REMINDER_RUN_HOUR:REMINDER_RUN_MINUTE local time."""
    from medrefill.utils.clock import app_timezone, seconds_until_next_run

    logger.info(
        "reminder_loop: started, daily at %02d:%02d %s",
        settings.REMINDER_RUN_HOUR, settings.REMINDER_RUN_MINUTE, settings.APP_TIMEZONE,
    )
    _background_health["reminder_loop_last_ok"] = time.time()

    while True:
        delay = seconds_until_next_run(
            datetime.now(app_timezone()), settings.REMINDER_RUN_HOUR, settings.REMINDER_RUN_MINUTE
        )
        logger.info("reminder_loop: next run in %.0fs", delay)
        await asyncio.sleep(delay)
        try:
            result = await _run_reminder_sweep_once()
            if result is not None:
                logger.info("reminder_loop: %s", result.as_dict())
            _background_health["reminder_loop_last_ok"] = time.time()
        except Exception:
            logger.exception("reminder_loop: sweep failed")


@asynccontextmanager
async def lifespan(app: FastAPI):
    if settings.APP_ENV == "development":
        try:
            await _create_tables()
        except Exception as exc:
            logger.warning("Table creation skipped: %s", exc)

    reminder_task = None
    if settings.REMINDER_LOOP_ENABLED:
        reminder_task = asyncio.create_task(_reminder_loop())

    logger.info("Application startup complete")
    yield

    logger.info("Shutting down, cancelling background tasks...")
    if reminder_task is not None:
        reminder_task.cancel()
        try:
            await reminder_task
        except asyncio.CancelledError:
            logger.info("reminder_loop: stopped")

    try:
        from medrefill.database import engine
        await engine.dispose()
        logger.info("Database connection pool disposed")
    except Exception as exc:
        logger.warning("Error disposing database engine: %s", exc)

    logger.info("Shutdown complete")


app = FastAPI(
    title="Prescription Refill Service",
    version=APP_VERSION,
    lifespan=lifespan,
    docs_url=None if _is_production else "/docs",
    redoc_url=None if _is_production else "/redoc",
    openapi_url=None if _is_production else "/openapi.json",
)


# ---------------------------------------------------------------------------
# Error handlers
# ---------------------------------------------------------------------------
@app.exception_handler(WorkflowError)
async def _workflow_error_handler(request: Request, exc: WorkflowError):
    logger.info(
        "%s on %s %s: %s",
        type(exc).__name__, request.method, request.url.path, exc.message,
    )
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


@app.exception_handler(Exception)
async def _global_exception_handler(request: Request, exc: Exception):
    logger.error(
        "Unhandled exception on %s %s: %s\n%s",
        request.method,
        request.url.path,
        exc,
        traceback.format_exc(),
    )
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"},
    )


# ---------------------------------------------------------------------------
# Middleware stack (last added = outermost)
# Request flow: RequestID -> CORS -> Security -> Routes
# ---------------------------------------------------------------------------
app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=[origin.strip() for origin in settings.CORS_ORIGINS.split(",")],
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "Accept", "X-Requested-With", "X-Request-ID"],
)


@app.middleware("http")
async def _request_id(request: Request, call_next):
    """Attach X-Request-ID to every response and to every log record of the request."""
    rid = request.headers.get("x-request-id") or str(uuid.uuid4())
    request.state.request_id = rid
    token = request_id_ctx.set(rid)
    try:
        response = await call_next(request)
        response.headers["X-Request-ID"] = rid
        return response
    finally:
        request_id_ctx.reset(token)


# ---------------------------------------------------------------------------
# Routers
# ---------------------------------------------------------------------------
from medrefill.routes.prescriptions import router as prescriptions_router  # noqa: E402
from medrefill.routes.refills import (  # noqa: E402
    fulfillment_router,
    patient_router as patient_refills_router,
    pharmacist_router as pharmacist_refills_router,
)
from medrefill.routes.tracking import router as tracking_router  # noqa: E402
from medrefill.routes.inventory import router as inventory_router, medicines_router  # noqa: E402
from medrefill.routes.history import router as history_router  # noqa: E402
from medrefill.routes.reminders import (  # noqa: E402
    admin_router as reminders_admin_router,
    patient_router as reminders_patient_router,
)

app.include_router(prescriptions_router, prefix="/api/prescriptions", tags=["Prescriptions"])
app.include_router(patient_refills_router, prefix="/api/patient/refill-requests", tags=["Refill Requests"])
app.include_router(pharmacist_refills_router, prefix="/api/pharmacist/refill-requests", tags=["Refill Requests"])
app.include_router(fulfillment_router, prefix="/api/refills", tags=["Fulfillment"])
app.include_router(tracking_router, prefix="/api/tracking", tags=["Tracking"])
app.include_router(inventory_router, prefix="/api/inventory", tags=["Inventory"])
app.include_router(medicines_router, prefix="/api/medicines", tags=["Medicines"])
app.include_router(history_router, prefix="/api/history", tags=["Fill History"])
app.include_router(reminders_admin_router, prefix="/api/admin/refill-reminders", tags=["Refill Reminders"])
app.include_router(reminders_patient_router, prefix="/api/patient/refill-reminders", tags=["Refill Reminders"])


@app.get("/api/health")
async def health_check():
    """Verifies DB connectivity; 503 when the database is unreachable."""
    from sqlalchemy import text
    from medrefill.database import AsyncSessionLocal
    from medrefill.services.tracking_service import LiveFeed

    db_ok = False
    try:
        async with AsyncSessionLocal() as session:
            await session.execute(text("SELECT 1"))
            db_ok = True
    except Exception as e:
        logger.warning("health_check: database connection failed: %s", e)

    if not db_ok:
        return JSONResponse(
            status_code=503,
            content={"status": "degraded", "version": APP_VERSION, "database": "unavailable"},
        )

    # The sweep runs daily, so a heartbeat older than ~25h is stale
    reminder_last_ok = _background_health.get("reminder_loop_last_ok")
    reminder_status = "disabled" if not settings.REMINDER_LOOP_ENABLED else "unknown"
    if reminder_last_ok:
        age = time.time() - reminder_last_ok
        reminder_status = "ok" if age < 90000 else f"stale ({int(age)}s ago)"

    return {
        "status": "healthy",
        "version": APP_VERSION,
        "database": "connected",
        "background_tasks": {"reminder_loop": reminder_status},
        "live_feed": LiveFeed.get_instance().get_stats(),
    }
