"""Credit wallet, ledger, pricing and priced-action endpoints."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field, StrictInt
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, ensure_user_scope, require_capability
from routers.rate_limit import rate_limit
from services import credit_reports, ledger, pricing
from services.accounts import provision_account
from services.allowances import allowance_summary
from services.capabilities import SPEND_CREDITS, VIEW_CREDITS
from services.wallet import get_balance, get_wallet

router = APIRouter()


class PricingCalculateRequest(BaseModel):
    action_type: str = Field(min_length=1, max_length=64)
    quantity: StrictInt = 1


class PerformActionRequest(BaseModel):
    user_id: Optional[str] = None
    action_type: str = Field(min_length=1, max_length=64)
    quantity: StrictInt = 1
    reference_id: Optional[str] = Field(default=None, max_length=128)


async def _scoped_account(auth: AuthContext, user_id: Optional[str], db: AsyncSession) -> str:
    scoped_user_id = ensure_user_scope(auth.user_id, user_id)
    await provision_account(scoped_user_id, db, email=auth.email)
    return scoped_user_id


@router.get("/balance")
async def credit_balance(
    user_id: Optional[str] = Query(default=None),
    auth: AuthContext = Depends(require_capability(VIEW_CREDITS)),
    db: AsyncSession = Depends(get_db),
):
    scoped_user_id = await _scoped_account(auth, user_id, db)
    return await get_balance(scoped_user_id, db)


@router.get("/wallet/summary")
async def credit_wallet_summary(
    user_id: Optional[str] = Query(default=None),
    auth: AuthContext = Depends(require_capability(VIEW_CREDITS)),
    db: AsyncSession = Depends(get_db),
):
    scoped_user_id = await _scoped_account(auth, user_id, db)
    return await credit_reports.wallet_summary(scoped_user_id, db)


@router.get("/dashboard")
async def credit_dashboard(
    auth: AuthContext = Depends(require_capability(VIEW_CREDITS)),
    db: AsyncSession = Depends(get_db),
):
    scoped_user_id = await _scoped_account(auth, None, db)
    wallet = await credit_reports.wallet_summary(scoped_user_id, db)
    recent = await credit_reports.recent_activity(scoped_user_id, db, limit=10)
    usage = await credit_reports.monthly_usage(scoped_user_id, db)
    return {
        "wallet": wallet,
        "recent_transactions": recent["recent_transactions"],
        "monthly_usage": {
            "total_spent": usage["total_credits_spent"],
            "actions_performed": usage["total_actions"],
            "free_allowances_used": usage["free_allowances_used"],
            "top_actions": sorted(
                usage["action_breakdown"],
                key=lambda action: -usage["action_breakdown"][action]["count"],
            )[:3],
        },
        "pricing_rules": await pricing.list_pricing_rules(db),
    }


@router.get("/transactions")
async def credit_transactions(
    limit: int = Query(default=50, ge=1, le=ledger.MAX_PAGE_SIZE),
    offset: int = Query(default=0, ge=0),
    action_type: Optional[str] = Query(default=None),
    transaction_type: Optional[str] = Query(default=None),
    start_date: Optional[datetime] = Query(default=None),
    end_date: Optional[datetime] = Query(default=None),
    user_id: Optional[str] = Query(default=None),
    auth: AuthContext = Depends(require_capability(VIEW_CREDITS)),
    db: AsyncSession = Depends(get_db),
):
    scoped_user_id = await _scoped_account(auth, user_id, db)
    return await ledger.list_transactions(
        scoped_user_id,
        db,
        limit=limit,
        offset=offset,
        action_type=action_type,
        transaction_type=transaction_type,
        start=start_date,
        end=end_date,
    )


@router.get("/transactions/search")
async def search_credit_transactions(
    query: str = Query(min_length=1, max_length=128),
    limit: int = Query(default=50, ge=1, le=ledger.MAX_PAGE_SIZE),
    offset: int = Query(default=0, ge=0),
    auth: AuthContext = Depends(require_capability(VIEW_CREDITS)),
    db: AsyncSession = Depends(get_db),
):
    scoped_user_id = await _scoped_account(auth, None, db)
    return await ledger.list_transactions(scoped_user_id, db, limit=limit, offset=offset, query=query)


@router.get("/summary")
async def credit_transaction_summary(
    start_date: Optional[datetime] = Query(default=None),
    end_date: Optional[datetime] = Query(default=None),
    auth: AuthContext = Depends(require_capability(VIEW_CREDITS)),
    db: AsyncSession = Depends(get_db),
):
    scoped_user_id = await _scoped_account(auth, None, db)
    return await credit_reports.transaction_summary(scoped_user_id, db, start=start_date, end=end_date)


@router.get("/usage/monthly")
async def credit_monthly_usage(
    year: Optional[int] = Query(default=None, ge=2000, le=2100),
    month: Optional[int] = Query(default=None, ge=1, le=12),
    auth: AuthContext = Depends(require_capability(VIEW_CREDITS)),
    db: AsyncSession = Depends(get_db),
):
    scoped_user_id = await _scoped_account(auth, None, db)
    return await credit_reports.monthly_usage(scoped_user_id, db, year=year, month=month)


@router.get("/analytics/spending")
async def credit_spending_analytics(
    months: int = Query(default=6, ge=1, le=24),
    auth: AuthContext = Depends(require_capability(VIEW_CREDITS)),
    db: AsyncSession = Depends(get_db),
):
    scoped_user_id = await _scoped_account(auth, None, db)
    return await credit_reports.spending_analytics(scoped_user_id, db, months=months)


@router.get("/allowances")
async def credit_allowances(
    auth: AuthContext = Depends(require_capability(VIEW_CREDITS)),
    db: AsyncSession = Depends(get_db),
):
    scoped_user_id = await _scoped_account(auth, None, db)
    wallet = await get_wallet(scoped_user_id, db)
    return await allowance_summary(db, wallet, await pricing.active_rules(db))


@router.get("/reconcile")
async def credit_reconcile(
    auth: AuthContext = Depends(require_capability(VIEW_CREDITS)),
    db: AsyncSession = Depends(get_db),
):
    scoped_user_id = await _scoped_account(auth, None, db)
    return await credit_reports.reconcile(scoped_user_id, db)


@router.get("/pricing")
async def pricing_table(
    _auth: AuthContext = Depends(require_capability(VIEW_CREDITS)),
    db: AsyncSession = Depends(get_db),
):
    return await pricing.list_pricing_rules(db)


@router.get("/pricing/{action_type}")
async def pricing_rule(
    action_type: str,
    _auth: AuthContext = Depends(require_capability(VIEW_CREDITS)),
    db: AsyncSession = Depends(get_db),
):
    return pricing.serialize_rule(await pricing.get_active_rule(action_type, db))


@router.post("/pricing/calculate")
async def pricing_calculate(
    request: PricingCalculateRequest,
    auth: AuthContext = Depends(require_capability(VIEW_CREDITS)),
    db: AsyncSession = Depends(get_db),
):
    scoped_user_id = await _scoped_account(auth, None, db)
    priced = await pricing.quote(scoped_user_id, request.action_type, request.quantity, db)
    return priced.to_dict()


@router.get("/can-perform/{action_type}")
async def credit_can_perform(
    action_type: str,
    quantity: int = Query(default=1),
    auth: AuthContext = Depends(require_capability(VIEW_CREDITS)),
    db: AsyncSession = Depends(get_db),
):
    scoped_user_id = await _scoped_account(auth, None, db)
    return await pricing.can_perform(scoped_user_id, action_type, db, quantity=quantity)


@router.post("/actions")
async def perform_priced_action(
    request: PerformActionRequest,
    _rate_limit: None = Depends(rate_limit("credits_actions", limit=120, window_seconds=60)),
    auth: AuthContext = Depends(require_capability(SPEND_CREDITS)),
    db: AsyncSession = Depends(get_db),
):
    scoped_user_id = await _scoped_account(auth, request.user_id, db)
    return await pricing.commit(
        scoped_user_id,
        request.action_type,
        request.quantity,
        db,
        reference_id=request.reference_id,
    )
