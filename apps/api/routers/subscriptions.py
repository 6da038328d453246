"""Subscription tier changes for the authenticated account."""

from __future__ import annotations

from typing import Literal, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, ensure_user_scope, require_capability
from services import subscriptions
from services.accounts import provision_account
from services.capabilities import MANAGE_SUBSCRIPTION, VIEW_CREDITS

router = APIRouter()

TierName = Literal["free", "standard", "premium"]


class TierChangeRequest(BaseModel):
    user_id: Optional[str] = None
    tier: TierName


class CancelRequest(BaseModel):
    user_id: Optional[str] = None
    at_period_end: bool = True


@router.get("")
async def current_subscription(
    user_id: Optional[str] = Query(default=None),
    auth: AuthContext = Depends(require_capability(VIEW_CREDITS)),
    db: AsyncSession = Depends(get_db),
):
    scoped_user_id = ensure_user_scope(auth.user_id, user_id)
    await provision_account(scoped_user_id, db, email=auth.email)
    subscription = await subscriptions.get_current_subscription(scoped_user_id, db)
    return {
        "subscription": subscriptions.serialize_subscription(subscription),
        "effective_tier": subscriptions.effective_tier(subscription),
    }


@router.post("/upgrade")
async def upgrade_subscription(
    request: TierChangeRequest,
    auth: AuthContext = Depends(require_capability(MANAGE_SUBSCRIPTION)),
    db: AsyncSession = Depends(get_db),
):
    scoped_user_id = ensure_user_scope(auth.user_id, request.user_id)
    await provision_account(scoped_user_id, db, email=auth.email)
    return await subscriptions.upgrade(scoped_user_id, request.tier, db)


@router.post("/downgrade")
async def downgrade_subscription(
    request: TierChangeRequest,
    auth: AuthContext = Depends(require_capability(MANAGE_SUBSCRIPTION)),
    db: AsyncSession = Depends(get_db),
):
    scoped_user_id = ensure_user_scope(auth.user_id, request.user_id)
    await provision_account(scoped_user_id, db, email=auth.email)
    return await subscriptions.downgrade(scoped_user_id, request.tier, db)


@router.post("/cancel")
async def cancel_subscription(
    request: CancelRequest,
    auth: AuthContext = Depends(require_capability(MANAGE_SUBSCRIPTION)),
    db: AsyncSession = Depends(get_db),
):
    scoped_user_id = ensure_user_scope(auth.user_id, request.user_id)
    await provision_account(scoped_user_id, db, email=auth.email)
    return await subscriptions.cancel(scoped_user_id, db, at_period_end=request.at_period_end)
