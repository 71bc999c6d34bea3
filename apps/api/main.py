"""
Creative Mutation Engine - FastAPI Backend
Main application entry point with health check and API routing.
"""

import asyncio
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager

from config import settings, validate_security_settings
from database import engine, Base
import models  # noqa: F401
from routers import (
    health,
    mutations,
    outcomes,
    genome,
    regrets,
    alerts,
)
from services.drift_detector import ThresholdTable, run_drift_check_service


async def _periodic_drift_check() -> None:
    interval_minutes = max(int(settings.DRIFT_CHECK_INTERVAL_MINUTES), 0)
    if interval_minutes <= 0:
        return
    while True:
        await asyncio.sleep(interval_minutes * 60)
        try:
            result = await run_drift_check_service()
            triggered = int(result.get("alerts_triggered", 0) or 0)
            failed = result.get("failed_sources") or []
            if triggered or failed:
                print(
                    f"📉 Drift check tick: alerts={triggered} "
                    f"failed_sources={','.join(failed) or '-'}"
                )
        except Exception as exc:
            print(f"⚠️ Drift check tick failed: {exc}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    print("🚀 Starting Creative Mutation Engine API...")
    validate_security_settings()
    ThresholdTable.from_settings()
    if settings.AUTO_CREATE_DB_SCHEMA:
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            print("🗄️ Database schema verified.")
        except Exception as e:
            print(f"⚠️ Database bootstrap skipped: {e}")
    drift_task = None
    if settings.DRIFT_CHECK_ENABLED and int(settings.DRIFT_CHECK_INTERVAL_MINUTES) > 0:
        drift_task = asyncio.create_task(_periodic_drift_check())
        print(
            "📅 Drift check loop enabled "
            f"(every {int(settings.DRIFT_CHECK_INTERVAL_MINUTES)} min)."
        )
    yield
    # Shutdown
    if drift_task is not None:
        drift_task.cancel()
        try:
            await drift_task
        except asyncio.CancelledError:
            pass
    print("👋 Shutting down API...")


app = FastAPI(
    title="Creative Mutation Engine API",
    description="Generate creative variants from learned performance and watch each decision source for drift",
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

# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(mutations.router, prefix="/mutations", tags=["Mutations"])
app.include_router(outcomes.router, prefix="/outcomes", tags=["Outcomes"])
app.include_router(genome.router, prefix="/genome", tags=["Genome"])
app.include_router(regrets.router, prefix="/regrets", tags=["Regrets"])
app.include_router(alerts.router, prefix="/alerts", tags=["Alerts"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Creative Mutation Engine API",
        "version": "0.1.0",
        "status": "running"
    }
