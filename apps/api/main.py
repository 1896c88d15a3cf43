"""
Generation Engine - FastAPI Backend
Main application entry point: lifecycle, public feed and credits APIs.
"""

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config import settings, validate_security_settings
from database import Base, async_session_maker, engine
import models  # noqa: F401
from routers import auth, billing, feed, generations, health
from services.context import build_engine_context
from services.errors import EngineError
from services.mirror import reconcile_mirror


logger = logging.getLogger(__name__)


async def _reconcile_mirror_once() -> dict:
    async with async_session_maker() as db:
        return await reconcile_mirror(db, limit=settings.MIRROR_RECONCILE_BATCH_SIZE)


async def _periodic_mirror_reconcile() -> None:
    interval_minutes = max(int(settings.MIRROR_RECONCILE_INTERVAL_MINUTES), 0)
    if interval_minutes <= 0:
        return
    while True:
        await asyncio.sleep(interval_minutes * 60)
        try:
            result = await _reconcile_mirror_once()
            if result.get("removed") or result.get("upserted"):
                print(
                    f"🪞 Mirror reconcile: removed={result.get('removed', 0)} "
                    f"upserted={result.get('upserted', 0)}"
                )
        except Exception as exc:
            print(f"⚠️ Mirror reconcile tick failed: {exc}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    print("🚀 Starting Generation Engine API...")
    validate_security_settings()
    if settings.AUTO_CREATE_DB_SCHEMA:
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            print("🗄️ Database schema verified.")
        except Exception as e:
            print(f"⚠️ Database bootstrap skipped: {e}")
    app.state.engine_context = build_engine_context(async_session_maker)
    if settings.MIRROR_RECONCILE_ON_STARTUP:
        try:
            result = await _reconcile_mirror_once()
            print(
                f"♻️ Mirror reconciled after startup: removed={result['removed']} "
                f"upserted={result['upserted']}"
            )
        except Exception as exc:
            print(f"⚠️ Startup mirror reconcile skipped: {exc}")
    reconcile_task = None
    if int(settings.MIRROR_RECONCILE_INTERVAL_MINUTES) > 0:
        reconcile_task = asyncio.create_task(_periodic_mirror_reconcile())
        print(
            "📅 Mirror reconcile loop enabled "
            f"(every {int(settings.MIRROR_RECONCILE_INTERVAL_MINUTES)} min)."
        )
    yield
    # Shutdown
    if reconcile_task is not None:
        reconcile_task.cancel()
        try:
            await reconcile_task
        except asyncio.CancelledError:
            pass
    print("👋 Shutting down API...")


app = FastAPI(
    title="Generation Engine API",
    description="Generation lifecycle, public feed mirror and credit ledger",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(EngineError)
async def engine_error_handler(request: Request, exc: EngineError):
    if exc.status_code >= 500:
        logger.error("%s on %s %s: %s", exc.__class__.__name__, request.method, request.url.path, exc)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(auth.router, prefix="/auth", tags=["Authentication"])
app.include_router(generations.router, prefix="/generations", tags=["Generations"])
app.include_router(feed.router, prefix="/feed", tags=["Feed"])
app.include_router(billing.router, prefix="/billing", tags=["Billing"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Generation Engine API",
        "version": "0.1.0",
        "status": "running"
    }
