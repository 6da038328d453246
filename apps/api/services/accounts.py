"""Account provisioning: user row, wallet, first subscription and opening grant."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.credit_wallet import CreditWallet
from models.user import User
from services.account_lock import account_scope
from services.billing_period import as_utc, utc_now
from services.credit_errors import WalletNotFound
from services.subscriptions import start_subscription
from services.wallet import apply_credit, find_wallet, monthly_credit_grant


logger = logging.getLogger(__name__)


async def _ensure_user(db: AsyncSession, user_id: str, email: Optional[str]) -> User:
    result = await db.execute(select(User).where(User.id == user_id))
    user = result.scalar_one_or_none()
    if user:
        return user

    user = User(id=user_id, email=email or f"{user_id}@local.invalid")
    db.add(user)
    await db.flush()
    return user


async def provision_account(
    user_id: str,
    db: AsyncSession,
    *,
    email: Optional[str] = None,
    tier: str = "free",
    trial: bool = False,
    now: Optional[datetime] = None,
) -> CreditWallet:
    """Create the wallet for an account, once. Returns the existing wallet on repeat calls."""
    current = as_utc(now) or utc_now()
    async with account_scope(user_id):
        wallet = await find_wallet(user_id, db)
        if wallet is not None:
            return wallet
        try:
            await _ensure_user(db, user_id, email)
            subscription = start_subscription(db, user_id, tier=tier, trial=trial, now=current)
            wallet = CreditWallet(
                id=str(uuid.uuid4()),
                user_id=user_id,
                balance=0,
                plan_credits=0,
                bonus_credits=0,
                package_credits=0,
                purchased_credits=0,
                is_locked=False,
                is_archived=False,
                cycle_start=subscription.current_period_start,
                cycle_end=subscription.current_period_end,
            )
            db.add(wallet)
            await db.flush()

            opening_grant = monthly_credit_grant(tier)
            if opening_grant > 0:
                await apply_credit(
                    db,
                    wallet,
                    amount=opening_grant,
                    transaction_type="earned",
                    description=f"Monthly {tier} plan credits",
                    reference_type="subscription",
                    reference_id=subscription.id,
                    now=current,
                )
            await db.commit()
        except IntegrityError:
            # Provisioned concurrently by another worker.
            await db.rollback()
            wallet = await find_wallet(user_id, db)
            if wallet is None:
                raise
            return wallet
        except Exception:
            await db.rollback()
            raise

    logger.info("Provisioned wallet for %s on %s tier", user_id, tier)
    return wallet


async def archive_account(user_id: str, db: AsyncSession) -> CreditWallet:
    async with account_scope(user_id):
        wallet = await find_wallet(user_id, db)
        if wallet is None:
            raise WalletNotFound(user_id)
        wallet.is_archived = True
        await db.commit()
    logger.info("Archived wallet for %s", user_id)
    return wallet
