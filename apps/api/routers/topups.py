"""Top-up package pricing and the payment processor confirmation callback."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request
from pydantic import BaseModel, Field, StrictInt, ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, require_capability
from routers.rate_limit import rate_limit
from services import topups
from services.accounts import provision_account
from services.capabilities import CONFIRM_PAYMENTS, PURCHASE_CREDITS, VIEW_CREDITS
from services.subscriptions import effective_tier, get_current_subscription

router = APIRouter()


class TopupEstimateRequest(BaseModel):
    credits: StrictInt = Field(ge=1, le=1_000_000)


class PurchaseConfirmation(BaseModel):
    user_id: str = Field(min_length=1)
    package_type: str = Field(min_length=1, max_length=32)
    external_reference: str = Field(min_length=1, max_length=255)
    credits: Optional[StrictInt] = Field(default=None, ge=1, le=1_000_000)


async def _account_tier(auth: AuthContext, db: AsyncSession) -> str:
    await provision_account(auth.user_id, db, email=auth.email)
    return effective_tier(await get_current_subscription(auth.user_id, db))


@router.get("/options")
async def topup_options(
    auth: AuthContext = Depends(require_capability(VIEW_CREDITS)),
    db: AsyncSession = Depends(get_db),
):
    tier = await _account_tier(auth, db)
    return {
        "tier": tier,
        "tier_discount_percentage": topups.tier_discount(tier),
        "packages": [package.to_dict() for package in topups.price_options(tier)],
    }


@router.post("/estimate")
async def topup_estimate(
    request: TopupEstimateRequest,
    auth: AuthContext = Depends(require_capability(PURCHASE_CREDITS)),
    db: AsyncSession = Depends(get_db),
):
    tier = await _account_tier(auth, db)
    return topups.estimate_topup(request.credits, tier)


@router.get("/history")
async def topup_history(
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    auth: AuthContext = Depends(require_capability(VIEW_CREDITS)),
    db: AsyncSession = Depends(get_db),
):
    await provision_account(auth.user_id, db, email=auth.email)
    return await topups.topup_history(auth.user_id, db, limit=limit, offset=offset)


@router.post("/confirm")
async def confirm_topup_purchase(
    request: Request,
    x_payment_signature: Optional[str] = Header(default=None),
    _rate_limit: None = Depends(rate_limit("topup_confirm", limit=60, window_seconds=60)),
    _auth: AuthContext = Depends(require_capability(CONFIRM_PAYMENTS)),
    db: AsyncSession = Depends(get_db),
):
    """Called by the payment processor once a purchase has been captured."""
    raw_body = await request.body()
    if not topups.verify_payment_signature(raw_body, x_payment_signature):
        raise HTTPException(status_code=401, detail="Invalid payment signature.")
    try:
        confirmation = PurchaseConfirmation.model_validate_json(raw_body)
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=exc.errors(include_url=False)) from exc

    await provision_account(confirmation.user_id, db)
    return await topups.confirm_purchase(
        confirmation.user_id,
        confirmation.package_type,
        confirmation.external_reference,
        db,
        credits=confirmation.credits,
    )
