"""Operator endpoints: wallet controls, pricing publication, billing events."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field, StrictInt
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, require_capability
from services import pricing, subscriptions, wallet
from services.accounts import archive_account, provision_account
from services.capabilities import ADMIN_PRICING, ADMIN_WALLETS, RUN_ROLLOVER
from services.credit_reports import reconcile, system_stats

router = APIRouter()


class CreditAdjustment(BaseModel):
    amount: StrictInt = Field(ge=1)
    reason: str = Field(min_length=1, max_length=255)
    reference_id: Optional[str] = Field(default=None, max_length=128)


class PricingRuleRequest(BaseModel):
    action_type: str = Field(min_length=1, max_length=64)
    credits_per_action: StrictInt = Field(ge=0)
    free_allowance_per_month: StrictInt = Field(default=0, ge=0)
    bulk_discounts: List[Dict[str, Any]] = Field(default_factory=list)
    effective_from: Optional[datetime] = None


class SubscriptionEvent(BaseModel):
    event: Literal["trial_converted", "payment_failed", "payment_recovered", "terminated"]


@router.post("/wallets/{user_id}/lock")
async def lock_wallet(
    user_id: str,
    _auth: AuthContext = Depends(require_capability(ADMIN_WALLETS)),
    db: AsyncSession = Depends(get_db),
):
    await provision_account(user_id, db)
    return await wallet.set_wallet_lock(user_id, db, locked=True)


@router.post("/wallets/{user_id}/unlock")
async def unlock_wallet(
    user_id: str,
    _auth: AuthContext = Depends(require_capability(ADMIN_WALLETS)),
    db: AsyncSession = Depends(get_db),
):
    await provision_account(user_id, db)
    return await wallet.set_wallet_lock(user_id, db, locked=False)


@router.post("/wallets/{user_id}/archive")
async def archive_wallet(
    user_id: str,
    _auth: AuthContext = Depends(require_capability(ADMIN_WALLETS)),
    db: AsyncSession = Depends(get_db),
):
    archived = await archive_account(user_id, db)
    return {"user_id": user_id, "is_archived": bool(archived.is_archived)}


@router.post("/wallets/{user_id}/bonus")
async def grant_bonus(
    user_id: str,
    request: CreditAdjustment,
    _auth: AuthContext = Depends(require_capability(ADMIN_WALLETS)),
    db: AsyncSession = Depends(get_db),
):
    await provision_account(user_id, db)
    return await wallet.credit(
        user_id,
        db,
        amount=request.amount,
        transaction_type="bonus",
        reason=request.reason,
        reference_type="admin",
        reference_id=request.reference_id,
    )


@router.post("/wallets/{user_id}/refund")
async def refund_credits(
    user_id: str,
    request: CreditAdjustment,
    _auth: AuthContext = Depends(require_capability(ADMIN_WALLETS)),
    db: AsyncSession = Depends(get_db),
):
    await provision_account(user_id, db)
    return await wallet.credit(
        user_id,
        db,
        amount=request.amount,
        transaction_type="refunded",
        reason=request.reason,
        reference_type="refund",
        reference_id=request.reference_id,
    )


@router.get("/wallets/{user_id}/reconcile")
async def reconcile_wallet(
    user_id: str,
    _auth: AuthContext = Depends(require_capability(ADMIN_WALLETS)),
    db: AsyncSession = Depends(get_db),
):
    return await reconcile(user_id, db)


@router.post("/pricing")
async def publish_pricing_rule(
    request: PricingRuleRequest,
    _auth: AuthContext = Depends(require_capability(ADMIN_PRICING)),
    db: AsyncSession = Depends(get_db),
):
    rule = await pricing.upsert_pricing_rule(
        db,
        action_type=request.action_type,
        credits_per_action=request.credits_per_action,
        free_allowance_per_month=request.free_allowance_per_month,
        bulk_discounts=request.bulk_discounts,
        effective_from=request.effective_from,
    )
    return pricing.serialize_rule(rule)


@router.delete("/pricing/{action_type}")
async def retire_pricing_rule(
    action_type: str,
    _auth: AuthContext = Depends(require_capability(ADMIN_PRICING)),
    db: AsyncSession = Depends(get_db),
):
    retired = await pricing.deactivate_pricing_rule(action_type, db)
    return {"action_type": action_type, "versions_retired": retired}


@router.post("/subscriptions/{user_id}/events")
async def subscription_payment_event(
    user_id: str,
    request: SubscriptionEvent,
    _auth: AuthContext = Depends(require_capability(ADMIN_WALLETS)),
    db: AsyncSession = Depends(get_db),
):
    await provision_account(user_id, db)
    if request.event == "trial_converted":
        return await subscriptions.activate_trial(user_id, db)
    if request.event == "payment_failed":
        return await subscriptions.mark_past_due(user_id, db)
    if request.event == "payment_recovered":
        return await subscriptions.recover_payment(user_id, db)
    return await subscriptions.cancel(user_id, db, at_period_end=False)


@router.post("/rollover/{user_id}")
async def rollover_account(
    user_id: str,
    _auth: AuthContext = Depends(require_capability(RUN_ROLLOVER)),
    db: AsyncSession = Depends(get_db),
):
    return await subscriptions.rollover(user_id, db)


@router.post("/rollover")
async def rollover_due_accounts(
    _auth: AuthContext = Depends(require_capability(RUN_ROLLOVER)),
):
    return await subscriptions.run_due_rollovers_service()


@router.get("/system/stats")
async def platform_stats(
    _auth: AuthContext = Depends(require_capability(ADMIN_WALLETS)),
    db: AsyncSession = Depends(get_db),
):
    return await system_stats(db)
