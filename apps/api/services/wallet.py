"""Wallet balance mutations.

Every balance change goes through ``apply_credit`` / ``apply_debit`` which
mutate the wallet row and append exactly one ledger entry in the same
transaction. The ``apply_*`` helpers only flush; callers that compose several
steps (pricing commit, rollover, top-up) own the commit, while ``credit`` and
``debit`` are the standalone, self-committing entry points.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.credit_ledger import CreditLedger
from models.credit_wallet import WALLET_BUCKETS, CreditWallet
from services.account_lock import account_scope
from services.billing_period import as_utc, utc_now
from services.credit_errors import (
    InsufficientBalance,
    WalletArchived,
    WalletNotFound,
    require_positive_int,
)
from services.ledger import append_entry


logger = logging.getLogger(__name__)

CREDIT_BUCKET_BY_TYPE = {
    "earned": "plan",
    "purchased": "package",
    "bonus": "bonus",
    "refunded": "purchased",
}
# Expiring plan credits go first, paid-for credits last.
DEBIT_ORDER = ("plan", "bonus", "package", "purchased")


async def get_wallet(user_id: str, db: AsyncSession, *, for_update: bool = False) -> CreditWallet:
    statement = select(CreditWallet).where(CreditWallet.user_id == user_id)
    if for_update:
        statement = statement.with_for_update().execution_options(populate_existing=True)
    result = await db.execute(statement)
    wallet = result.scalar_one_or_none()
    if wallet is None:
        raise WalletNotFound(user_id)
    return wallet


async def find_wallet(user_id: str, db: AsyncSession) -> Optional[CreditWallet]:
    result = await db.execute(select(CreditWallet).where(CreditWallet.user_id == user_id))
    return result.scalar_one_or_none()


def _ensure_open(wallet: CreditWallet) -> None:
    if wallet.is_archived:
        raise WalletArchived(wallet.user_id)


def _drain_buckets(wallet: CreditWallet, amount: int) -> List[Tuple[str, int]]:
    remaining = amount
    drained: List[Tuple[str, int]] = []
    for bucket in DEBIT_ORDER:
        if remaining <= 0:
            break
        field = f"{bucket}_credits"
        available = int(getattr(wallet, field) or 0)
        taken = min(available, remaining)
        if taken:
            setattr(wallet, field, available - taken)
            drained.append((bucket, taken))
            remaining -= taken
    if remaining:
        raise RuntimeError(f"Wallet buckets for '{wallet.user_id}' do not add up to its balance")
    return drained


async def apply_credit(
    db: AsyncSession,
    wallet: CreditWallet,
    *,
    amount: int,
    transaction_type: str,
    bucket: Optional[str] = None,
    action_type: Optional[str] = None,
    description: Optional[str] = None,
    reference_type: Optional[str] = None,
    reference_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> CreditLedger:
    require_positive_int(amount, "amount")
    _ensure_open(wallet)
    target = bucket or CREDIT_BUCKET_BY_TYPE.get(transaction_type)
    if target not in WALLET_BUCKETS:
        raise ValueError(f"Cannot credit wallet with transaction_type '{transaction_type}'")

    field = f"{target}_credits"
    setattr(wallet, field, int(getattr(wallet, field) or 0) + amount)
    wallet.balance = int(wallet.balance) + amount
    entry = await append_entry(
        db,
        wallet,
        transaction_type=transaction_type,
        amount=amount,
        action_type=action_type,
        bucket=target,
        description=description,
        reference_type=reference_type,
        reference_id=reference_id,
        now=now,
    )
    logger.info(
        "Credited %s credits (%s) to %s, balance=%s",
        amount,
        transaction_type,
        wallet.user_id,
        wallet.balance,
    )
    return entry


async def apply_debit(
    db: AsyncSession,
    wallet: CreditWallet,
    *,
    amount: int,
    action_type: Optional[str],
    description: Optional[str] = None,
    reference_type: Optional[str] = None,
    reference_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> CreditLedger:
    require_positive_int(amount, "amount")
    _ensure_open(wallet)
    balance = int(wallet.balance)
    if wallet.is_locked or amount > balance:
        logger.warning(
            "Rejected debit of %s for %s (balance=%s locked=%s)",
            amount,
            wallet.user_id,
            balance,
            wallet.is_locked,
        )
        raise InsufficientBalance(required=amount, available=balance, locked=bool(wallet.is_locked))

    drained = _drain_buckets(wallet, amount)
    wallet.balance = balance - amount
    return await append_entry(
        db,
        wallet,
        transaction_type="spent",
        amount=-amount,
        action_type=action_type,
        bucket=",".join(bucket for bucket, _ in drained),
        description=description,
        reference_type=reference_type,
        reference_id=reference_id,
        now=now,
    )


async def expire_plan_credits(
    db: AsyncSession,
    wallet: CreditWallet,
    *,
    reference_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Optional[CreditLedger]:
    """Write off the unused monthly plan grant at cycle end."""
    expiring = int(wallet.plan_credits or 0)
    if expiring <= 0:
        return None
    wallet.plan_credits = 0
    wallet.balance = int(wallet.balance) - expiring
    return await append_entry(
        db,
        wallet,
        transaction_type="expired",
        amount=-expiring,
        bucket="plan",
        description="Unused monthly plan credits expired",
        reference_type="rollover",
        reference_id=reference_id,
        now=now,
    )


async def credit(
    user_id: str,
    db: AsyncSession,
    *,
    amount: int,
    transaction_type: str = "bonus",
    reason: Optional[str] = None,
    reference_type: Optional[str] = None,
    reference_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    async with account_scope(user_id):
        try:
            wallet = await get_wallet(user_id, db, for_update=True)
            entry = await apply_credit(
                db,
                wallet,
                amount=amount,
                transaction_type=transaction_type,
                description=reason,
                reference_type=reference_type,
                reference_id=reference_id,
                now=now,
            )
            await db.commit()
        except Exception:
            await db.rollback()
            raise
    return {"credited": amount, "entry_id": entry.id, "balance_after": int(wallet.balance)}


async def debit(
    user_id: str,
    db: AsyncSession,
    *,
    amount: int,
    action_type: str,
    reason: Optional[str] = None,
    reference_type: Optional[str] = None,
    reference_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    async with account_scope(user_id):
        try:
            wallet = await get_wallet(user_id, db, for_update=True)
            entry = await apply_debit(
                db,
                wallet,
                amount=amount,
                action_type=action_type,
                description=reason,
                reference_type=reference_type,
                reference_id=reference_id,
                now=now,
            )
            await db.commit()
        except Exception:
            await db.rollback()
            raise
    return {"charged": amount, "entry_id": entry.id, "balance_after": int(wallet.balance)}


async def set_wallet_lock(user_id: str, db: AsyncSession, *, locked: bool) -> Dict[str, Any]:
    """Suspend or resume spending; past transactions are untouched."""
    async with account_scope(user_id):
        try:
            wallet = await get_wallet(user_id, db, for_update=True)
            _ensure_open(wallet)
            wallet.is_locked = bool(locked)
            await db.commit()
        except Exception:
            await db.rollback()
            raise
    logger.info("Wallet for %s %s", user_id, "locked" if locked else "unlocked")
    return {"user_id": user_id, "is_locked": bool(wallet.is_locked)}


def wallet_status(wallet: CreditWallet) -> str:
    if wallet.is_archived:
        return "suspended"
    return "locked" if wallet.is_locked else "active"


async def get_balance(user_id: str, db: AsyncSession) -> Dict[str, Any]:
    wallet = await get_wallet(user_id, db)
    cycle_start = as_utc(wallet.cycle_start)
    cycle_end = as_utc(wallet.cycle_end)
    return {
        "current_balance": int(wallet.balance),
        "is_locked": bool(wallet.is_locked),
        "wallet_status": wallet_status(wallet),
        "billing_cycle_start": cycle_start.isoformat(),
        "next_reset_date": cycle_end.isoformat(),
        "days_until_reset": max((cycle_end - utc_now()).days, 0),
    }


def monthly_credit_grant(tier: str) -> int:
    return max(int(settings.TIER_MONTHLY_CREDITS.get(tier, 0)), 0)
