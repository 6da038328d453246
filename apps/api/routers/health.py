"""
Health check endpoints.
"""

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import func, text
from sqlalchemy.future import select
import redis.asyncio as redis

from config import settings
from database import async_session_maker, engine
from models.credit_wallet import CreditWallet
from models.pricing_rule import PricingRule
from services.billing_period import utc_now

router = APIRouter()


async def _ledger_counts() -> dict:
    async with async_session_maker() as session:
        rules = await session.execute(
            select(func.count(PricingRule.id)).where(PricingRule.is_active.is_(True))
        )
        overdue = await session.execute(
            select(func.count(CreditWallet.id)).where(
                CreditWallet.cycle_end <= utc_now(),
                CreditWallet.is_archived.is_(False),
            )
        )
        return {
            "active_pricing_rules": int(rules.scalar() or 0),
            "wallets_awaiting_rollover": int(overdue.scalar() or 0),
        }


@router.get("/health")
async def health_check():
    """
    Dependency status plus ledger bookkeeping counters.
    Redis only backs rate limiting, so its outage degrades rather than fails.
    """
    report = {
        "status": "healthy",
        "api": "up",
        "database": "unknown",
        "redis": "unknown",
        "payment_signatures": "enforced" if settings.PAYMENT_WEBHOOK_SECRET else "disabled",
        "rollover_interval_minutes": int(settings.ROLLOVER_INTERVAL_MINUTES),
    }

    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        report["database"] = "up"
        report.update(await _ledger_counts())
    except Exception as e:
        report["database"] = f"down: {str(e)}"
        report["status"] = "unhealthy"

    try:
        client = redis.from_url(settings.REDIS_URL)
        await client.ping()
        await client.aclose()
        report["redis"] = "up"
    except Exception as e:
        report["redis"] = f"down: {str(e)}"
        if report["status"] == "healthy":
            report["status"] = "degraded"

    return report


@router.get("/health/ready")
async def readiness_check():
    """Ready once the pricing table has at least one active rule."""
    try:
        counts = await _ledger_counts()
    except Exception as exc:
        return JSONResponse(status_code=503, content={"ready": False, "error": str(exc)})

    if counts["active_pricing_rules"] == 0:
        return JSONResponse(status_code=503, content={"ready": False, "missing": ["pricing_rules"]})
    return {"ready": True, **counts}


@router.get("/health/live")
async def liveness_check():
    """Kubernetes-style liveness probe."""
    return {"alive": True}
