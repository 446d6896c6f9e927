"""
School Billing API - Main Application Entry Point

This module initializes and configures the FastAPI application including:
- Logging
- Database and Redis connections
- Billing job scheduler
- Gateway clients (Cora, Focus NFe) shutdown
- CORS middleware
- API routing
- Health check endpoints
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text

from app.api import api_router
from app.core.config import settings
from app.core.cora import close_cora_client
from app.core.database import async_session_maker, close_db, init_db
from app.core.nfse import close_nfse_client
from app.core.redis import close_redis, get_redis, init_redis
from app.core.scheduler import SchedulerHandle
from app.modules.billing import register_billing_jobs

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Handles startup and shutdown events including:
    - Redis connection
    - Database connection
    - Billing job scheduler
    """
    # Startup
    print(f"Starting School Billing API in {settings.python_env} mode...")

    # Initialize Redis
    try:
        await init_redis()
        print("[OK] Redis connected")
    except Exception as e:
        print(f"[FAIL] Redis connection failed: {e}")
        if settings.is_production:
            raise

    # Initialize Database
    try:
        await init_db()
        print("[OK] Database connected")
    except Exception as e:
        print(f"[FAIL] Database connection failed: {e}")
        if settings.is_production:
            raise

    # Initialize Billing Job Scheduler
    scheduler = SchedulerHandle()
    app.state.scheduler = scheduler
    if settings.scheduler_enabled:
        try:
            count = register_billing_jobs(scheduler)
            print(f"[OK] Background scheduler started ({count} jobs)")
        except Exception as e:
            print(f"[FAIL] Background scheduler failed to start: {e}")
            if settings.is_production:
                raise
    else:
        print("[SKIP] Background scheduler disabled")

    yield  # Application runs here

    # Shutdown
    print("Shutting down School Billing API...")

    scheduler.stop()
    print("[OK] Background scheduler stopped")

    await close_cora_client()
    await close_nfse_client()
    await close_redis()
    await close_db()
    print("[OK] Cleanup complete")


app = FastAPI(
    title="School Billing API",
    description="Billing jobs, boletos and NFSe for the language school",
    version="0.1.0",
    docs_url="/docs" if settings.is_development else None,
    redoc_url="/redoc" if settings.is_development else None,
    lifespan=lifespan,
)

app.include_router(api_router, prefix="/api/v1")

# CORS configuration
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/", tags=["Root"])
async def root() -> dict[str, str]:
    """Root endpoint - API welcome message."""
    return {
        "message": "Welcome to School Billing API",
        "status": "running",
        "environment": settings.python_env,
    }


@app.get("/health", tags=["Health"])
async def health_check() -> dict[str, str]:
    """Health check endpoint for container orchestration."""
    return {"status": "healthy"}


@app.get("/ready", tags=["Health"])
async def readiness_check() -> dict[str, str]:
    """Readiness check endpoint."""
    return {"status": "ready"}


@app.get("/debug/db", tags=["Debug"])
async def debug_db():
    """Test database connection."""
    try:
        async with async_session_maker() as session:
            result = await session.execute(text("SELECT 1"))
            return {"database": "connected", "result": result.scalar()}
    except Exception as e:
        return {"database": "error", "message": str(e)}


@app.get("/debug/redis", tags=["Debug"])
async def debug_redis():
    """Test Redis connection."""
    client = get_redis()
    try:
        if client:
            await client.ping()
            return {"redis": "connected"}
        return {"redis": "not initialized"}
    except Exception as e:
        return {"redis": "error", "message": str(e)}


@app.get("/debug/jobs", tags=["Debug"])
async def list_jobs(request: Request):
    """
    List the armed billing jobs.

    Returns:
        Job ids, triggers and next run times.
    """
    if not settings.is_development:
        raise HTTPException(status_code=404, detail="Not Found")

    scheduler: SchedulerHandle | None = getattr(request.app.state, "scheduler", None)
    if scheduler is None:
        return {"jobs": []}
    return {"jobs": scheduler.list_jobs()}
