# app/main.py
"""
FastAPI application entry point.
Includes middleware, global error handlers, routers, and the background
tasks that keep the alert set in sync and run the escalation scan.
"""

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from app.routers import alerts, health
from app.config import settings
from app.database import create_tables
from app.dependencies import build_engine
from app.services.errors import AlertEngineError
from app.utils.logger import get_logger
import time
import asyncio

logger = get_logger(__name__)

app = FastAPI(
    title="Fleet Alert Engine API",
    description="Alert lifecycle, escalation and synchronization for fleet monitoring.",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
)

# ── CORS (allow the monitoring dashboard to call the API) ────────────────────
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],   # Restrict to dashboard origin in production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ── Request Timing Middleware ────────────────────────────────────────────────
@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.time()
    response = await call_next(request)
    duration = round((time.time() - start) * 1000, 2)
    logger.debug(f"{request.method} {request.url.path} → {response.status_code} ({duration}ms)")
    return response


# ── Exception Handlers ───────────────────────────────────────────────────────
@app.exception_handler(AlertEngineError)
async def alert_engine_exception_handler(request: Request, exc: AlertEngineError):
    logger.warning(f"{type(exc).__name__} on {request.url.path}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message, "alert_id": exc.alert_id})


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception on {request.url.path}: {exc}", exc_info=True)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Internal server error"},
    )


# ── Routers ──────────────────────────────────────────────────────────────────
app.include_router(alerts.router, prefix="/api/v1", tags=["🔔 Alerts"])
app.include_router(health.router, prefix="/api/v1", tags=["💚 Health"])


# ── Startup ───────────────────────────────────────────────────────────────────
@app.on_event("startup")
async def startup():
    logger.info("🚀 Fleet Alert Engine starting up...")
    if settings.ALERT_STORE_BACKEND == "database":
        create_tables()
        logger.info("✅ Database tables ready")

    engine = build_engine()
    app.state.engine = engine
    logger.info(f"🗄️  Alert store: {settings.ALERT_STORE_BACKEND}")

    # Initial load before serving, so the first dashboard read is not empty
    await engine.sync.refresh()
    await engine.scheduler.load_rules()

    engine.tasks = [
        asyncio.create_task(engine.sync.run_forever(), name="alert-sync"),
        asyncio.create_task(engine.sync.consume(engine.events), name="alert-push"),
        asyncio.create_task(engine.scheduler.run_forever(), name="escalation-scan"),
    ]
    if engine.feed is not engine.events:
        engine.tasks.append(asyncio.create_task(engine.sync.consume(engine.feed), name="alert-poll"))
    logger.info(f"📡 Event source: {settings.EVENT_SOURCE}")
    logger.info(f"🔄 Sync every {settings.SYNC_INTERVAL_SECONDS}s, "
                f"escalation scan every {settings.ESCALATION_SCAN_INTERVAL_SECONDS}s "
                f"(auto={settings.AUTO_ESCALATION_ENABLED})")
    logger.info(f"🌐 Listening on http://{settings.BACKEND_IP}:{settings.BACKEND_PORT}")
    logger.info("📖 API docs at /docs")


@app.on_event("shutdown")
async def shutdown():
    logger.info("🛑 Fleet Alert Engine shutting down...")
    engine = getattr(app.state, "engine", None)
    if engine is None:
        return
    engine.events.stop()
    for task in engine.tasks:
        task.cancel()
    await asyncio.gather(*engine.tasks, return_exceptions=True)
    await engine.repository.close()
