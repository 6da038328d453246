"""
Creator Credit Ledger - FastAPI Backend
Main application entry point with health check and API routing.
"""

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config import settings, validate_credit_settings, validate_security_settings
from database import async_session_maker, engine, Base
import models  # noqa: F401
from routers import (
    health,
    credits,
    subscriptions,
    topups,
    admin,
)
from services.credit_errors import CreditError
from services.pricing import seed_default_pricing_rules
from services.subscriptions import run_due_rollovers_service


logger = logging.getLogger(__name__)


async def _periodic_rollover() -> None:
    interval_minutes = max(int(settings.ROLLOVER_INTERVAL_MINUTES), 0)
    if interval_minutes <= 0:
        return
    while True:
        await asyncio.sleep(interval_minutes * 60)
        try:
            result = await run_due_rollovers_service()
            due = int(result.get("due_count", 0) or 0)
            if due:
                print(
                    f"🔁 Billing rollover tick: due={due} "
                    f"applied={result.get('applied_count', 0)} "
                    f"failed={len(result.get('failed_user_ids', []))}"
                )
        except Exception as exc:
            print(f"⚠️ Billing rollover tick failed: {exc}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    print("🚀 Starting Creator Credit Ledger API...")
    validate_security_settings()
    validate_credit_settings()
    if settings.AUTO_CREATE_DB_SCHEMA:
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            print("🗄️ Database schema verified.")
        except Exception as e:
            print(f"⚠️ Database bootstrap skipped: {e}")
    try:
        async with async_session_maker() as session:
            seeded = await seed_default_pricing_rules(session)
        if seeded:
            print(f"💳 Seeded {seeded} default pricing rules.")
    except Exception as exc:
        print(f"⚠️ Pricing rule seeding skipped: {exc}")
    rollover_task = None
    if int(settings.ROLLOVER_INTERVAL_MINUTES) > 0:
        rollover_task = asyncio.create_task(_periodic_rollover())
        print(
            "📅 Billing rollover loop enabled "
            f"(every {int(settings.ROLLOVER_INTERVAL_MINUTES)} min)."
        )
    yield
    # Shutdown
    if rollover_task is not None:
        rollover_task.cancel()
        try:
            await rollover_task
        except asyncio.CancelledError:
            pass
    print("👋 Shutting down API...")


app = FastAPI(
    title="Creator Credit Ledger API",
    description="Credit wallets, consumption pricing and subscription billing for creator tooling",
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


@app.exception_handler(CreditError)
async def credit_error_handler(request: Request, exc: CreditError):
    if exc.status_code >= 500:
        logger.error("Credit operation failed on %s: %s", request.url.path, exc)
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(credits.router, prefix="/credits", tags=["Credits"])
app.include_router(subscriptions.router, prefix="/subscriptions", tags=["Subscriptions"])
app.include_router(topups.router, prefix="/topups", tags=["Top-ups"])
app.include_router(admin.router, prefix="/admin", tags=["Admin"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Creator Credit Ledger API",
        "version": "0.1.0",
        "status": "running"
    }
