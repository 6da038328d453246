"""Subscription lifecycle, tier entitlements and billing-cycle rollover."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import TIER_ORDER, settings, tier_rank
from database import async_session_maker
from models.credit_wallet import CreditWallet
from models.subscription import Subscription
from services.account_lock import account_scope
from services.allowances import reset_allowance
from services.billing_period import as_utc, monthly_period, next_period_covering, period_key, utc_now
from services.credit_errors import RolloverAlreadyApplied, SubscriptionStateConflict
from services.pricing import active_rules, round_half_up
from services.wallet import apply_credit, expire_plan_credits, get_wallet, monthly_credit_grant


logger = logging.getLogger(__name__)

STATUS_TRANSITIONS = {
    "trialing": {"active", "cancelled"},
    "active": {"past_due", "cancelled"},
    "past_due": {"active", "cancelled"},
    "cancelled": set(),
}


def _validate_tier(tier: str) -> str:
    if tier not in TIER_ORDER:
        raise SubscriptionStateConflict(f"Unknown tier '{tier}'. Expected one of: {', '.join(TIER_ORDER)}.")
    return tier


def _transition(subscription: Subscription, new_status: str) -> None:
    allowed = STATUS_TRANSITIONS.get(subscription.status, set())
    if new_status not in allowed:
        raise SubscriptionStateConflict(
            f"Cannot move subscription from '{subscription.status}' to '{new_status}'."
        )
    subscription.status = new_status


def serialize_subscription(subscription: Subscription) -> Dict[str, Any]:
    cancelled_at = as_utc(subscription.cancelled_at)
    return {
        "id": subscription.id,
        "tier": subscription.tier,
        "status": subscription.status,
        "current_period_start": as_utc(subscription.current_period_start).isoformat(),
        "current_period_end": as_utc(subscription.current_period_end).isoformat(),
        "cancel_at_period_end": bool(subscription.cancel_at_period_end),
        "pending_tier": subscription.pending_tier,
        "cancelled_at": cancelled_at.isoformat() if cancelled_at else None,
        "monthly_credits": monthly_credit_grant(subscription.tier),
    }


async def get_current_subscription(user_id: str, db: AsyncSession) -> Optional[Subscription]:
    """The live subscription, or the most recently ended one when none is live."""
    result = await db.execute(
        select(Subscription)
        .where(Subscription.user_id == user_id, Subscription.status != "cancelled")
        .order_by(Subscription.current_period_start.desc())
        .limit(1)
    )
    subscription = result.scalar_one_or_none()
    if subscription is not None:
        return subscription

    result = await db.execute(
        select(Subscription)
        .where(Subscription.user_id == user_id)
        .order_by(Subscription.cancelled_at.desc(), Subscription.current_period_start.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def _require_subscription(user_id: str, db: AsyncSession) -> Subscription:
    subscription = await get_current_subscription(user_id, db)
    if subscription is None:
        raise SubscriptionStateConflict(f"Account '{user_id}' has no subscription.")
    return subscription


def effective_tier(subscription: Optional[Subscription]) -> str:
    """Tier whose entitlements apply right now."""
    if subscription is None or subscription.status == "cancelled":
        return "free"
    return subscription.tier


def start_subscription(
    db: AsyncSession,
    user_id: str,
    *,
    tier: str = "free",
    trial: bool = False,
    now: Optional[datetime] = None,
) -> Subscription:
    current = as_utc(now) or utc_now()
    if trial:
        period_start, period_end = current, current + timedelta(days=max(int(settings.TRIAL_DAYS), 1))
    else:
        period_start, period_end = monthly_period(current)
    subscription = Subscription(
        id=str(uuid.uuid4()),
        user_id=user_id,
        tier=_validate_tier(tier),
        status="trialing" if trial else "active",
        current_period_start=period_start,
        current_period_end=period_end,
        cancel_at_period_end=False,
    )
    db.add(subscription)
    return subscription


def prorated_upgrade_credits(
    old_tier: str,
    new_tier: str,
    period_start: datetime,
    period_end: datetime,
    now: datetime,
) -> int:
    """Monthly-grant difference scaled by the unused share of the current cycle."""
    difference = monthly_credit_grant(new_tier) - monthly_credit_grant(old_tier)
    if difference <= 0:
        return 0
    start, end, current = as_utc(period_start), as_utc(period_end), as_utc(now)
    total_seconds = Decimal(str((end - start).total_seconds()))
    if total_seconds <= 0:
        return 0
    remaining_seconds = Decimal(str(max((end - current).total_seconds(), 0.0)))
    fraction = min(remaining_seconds / total_seconds, Decimal(1))
    return round_half_up(Decimal(difference) * fraction)


async def upgrade(
    user_id: str,
    new_tier: str,
    db: AsyncSession,
    *,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Move to a higher tier immediately and credit the prorated grant difference."""
    _validate_tier(new_tier)
    current = as_utc(now) or utc_now()
    async with account_scope(user_id):
        try:
            wallet = await get_wallet(user_id, db, for_update=True)
            subscription = await _require_subscription(user_id, db)
            if subscription.status in ("cancelled", "past_due"):
                raise SubscriptionStateConflict(
                    f"Cannot upgrade a subscription that is '{subscription.status}'."
                )
            if tier_rank(new_tier) <= tier_rank(subscription.tier):
                raise SubscriptionStateConflict(
                    f"'{new_tier}' is not an upgrade from '{subscription.tier}'."
                )

            old_tier = subscription.tier
            credits = prorated_upgrade_credits(
                old_tier,
                new_tier,
                subscription.current_period_start,
                subscription.current_period_end,
                current,
            )
            subscription.tier = new_tier
            subscription.pending_tier = None
            entry = None
            if credits > 0:
                entry = await apply_credit(
                    db,
                    wallet,
                    amount=credits,
                    transaction_type="earned",
                    description=f"Prorated upgrade from {old_tier} to {new_tier}",
                    reference_type="subscription",
                    reference_id=subscription.id,
                    now=current,
                )
            await db.commit()
        except Exception:
            await db.rollback()
            raise

    logger.info("Upgraded %s from %s to %s (+%s credits)", user_id, old_tier, new_tier, credits)
    return {
        "subscription": serialize_subscription(subscription),
        "prorated_credits": credits,
        "entry_id": entry.id if entry is not None else None,
        "balance_after": int(wallet.balance),
    }


async def downgrade(
    user_id: str,
    new_tier: str,
    db: AsyncSession,
) -> Dict[str, Any]:
    """Schedule a lower tier for the next cycle; entitlements are kept until then."""
    _validate_tier(new_tier)
    async with account_scope(user_id):
        subscription = await _require_subscription(user_id, db)
        if subscription.status == "cancelled":
            raise SubscriptionStateConflict("Cannot downgrade a cancelled subscription.")
        if tier_rank(new_tier) >= tier_rank(subscription.tier):
            raise SubscriptionStateConflict(
                f"'{new_tier}' is not a downgrade from '{subscription.tier}'."
            )
        subscription.pending_tier = new_tier
        await db.commit()
    payload = serialize_subscription(subscription)
    return {"subscription": payload, "effective_at": payload["current_period_end"]}


async def cancel(
    user_id: str,
    db: AsyncSession,
    *,
    at_period_end: bool = True,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Cancel at the end of the cycle, or now with a free plan for the rest of it."""
    current = as_utc(now) or utc_now()
    replacement = None
    async with account_scope(user_id):
        subscription = await _require_subscription(user_id, db)
        if subscription.status == "cancelled":
            raise SubscriptionStateConflict("Subscription is already cancelled.")
        if not at_period_end and subscription.tier == "free":
            raise SubscriptionStateConflict("Account is already on the free tier.")
        try:
            if at_period_end:
                subscription.cancel_at_period_end = True
            else:
                _transition(subscription, "cancelled")
                subscription.cancelled_at = current
                subscription.pending_tier = None
                replacement = start_subscription(db, user_id, tier="free", now=current)
                replacement.current_period_start = subscription.current_period_start
                replacement.current_period_end = subscription.current_period_end
            await db.commit()
        except Exception:
            await db.rollback()
            raise
    logger.info("Cancellation recorded for %s (at_period_end=%s)", user_id, at_period_end)
    return {
        "subscription": serialize_subscription(subscription),
        "current_subscription": serialize_subscription(replacement or subscription),
    }


async def _change_status(user_id: str, db: AsyncSession, new_status: str) -> Dict[str, Any]:
    async with account_scope(user_id):
        subscription = await _require_subscription(user_id, db)
        _transition(subscription, new_status)
        await db.commit()
    logger.info("Subscription for %s is now %s", user_id, new_status)
    return {"subscription": serialize_subscription(subscription)}


async def activate_trial(user_id: str, db: AsyncSession) -> Dict[str, Any]:
    """Trial converted: payment confirmed."""
    return await _change_status(user_id, db, "active")


async def mark_past_due(user_id: str, db: AsyncSession) -> Dict[str, Any]:
    return await _change_status(user_id, db, "past_due")


async def recover_payment(user_id: str, db: AsyncSession) -> Dict[str, Any]:
    return await _change_status(user_id, db, "active")


async def _apply_rollover(user_id: str, db: AsyncSession, now: datetime) -> Dict[str, Any]:
    wallet: CreditWallet = await get_wallet(user_id, db, for_update=True)
    subscription = await _require_subscription(user_id, db)
    period_end = as_utc(subscription.current_period_end)
    if now < period_end:
        raise RolloverAlreadyApplied(user_id, period_end.isoformat())

    new_start, new_end = next_period_covering(period_end, now)
    previous_tier = effective_tier(subscription)

    if subscription.status != "cancelled" and (
        subscription.cancel_at_period_end or subscription.status in ("trialing", "past_due")
    ):
        # Requested cancellation, unpaid trial and unrecovered payment all end here.
        _transition(subscription, "cancelled")
        subscription.cancelled_at = now
        subscription.pending_tier = None

    if subscription.status == "cancelled":
        subscription = start_subscription(db, user_id, tier="free", now=new_start)
        subscription.current_period_start, subscription.current_period_end = new_start, new_end
    else:
        if subscription.pending_tier:
            subscription.tier = subscription.pending_tier
            subscription.pending_tier = None
        subscription.current_period_start, subscription.current_period_end = new_start, new_end

    wallet.cycle_start, wallet.cycle_end = new_start, new_end
    cycle_key = period_key(new_start)
    reference = f"rollover:{cycle_key}"

    expired = 0
    if settings.CREDITS_EXPIRE_PLAN_AT_ROLLOVER:
        expired_entry = await expire_plan_credits(db, wallet, reference_id=reference, now=now)
        expired = -int(expired_entry.amount) if expired_entry is not None else 0

    granted = monthly_credit_grant(subscription.tier)
    if granted > 0:
        await apply_credit(
            db,
            wallet,
            amount=granted,
            transaction_type="earned",
            description=f"Monthly {subscription.tier} plan credits",
            reference_type="rollover",
            reference_id=reference,
            now=now,
        )

    rules = await active_rules(db, now=now)
    reset_count = 0
    for action_type in sorted(rules):
        if await reset_allowance(db, user_id, action_type, new_start):
            reset_count += 1

    await db.flush()
    return {
        "applied": True,
        "user_id": user_id,
        "previous_tier": previous_tier,
        "subscription": serialize_subscription(subscription),
        "credits_expired": expired,
        "credits_granted": granted,
        "allowances_reset": reset_count,
        "balance_after": int(wallet.balance),
    }


async def rollover(
    user_id: str,
    db: AsyncSession,
    *,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Close the finished cycle and open the next one as a single transaction.

    A trigger that arrives before the current period has ended (for example a
    duplicate delivery) changes nothing and reports ``applied=False``.
    """
    current = as_utc(now) or utc_now()
    async with account_scope(user_id):
        try:
            result = await _apply_rollover(user_id, db, current)
            await db.commit()
        except RolloverAlreadyApplied as exc:
            await db.rollback()
            return {"applied": False, "user_id": user_id, "current_period_end": exc.period_end}
        except Exception:
            await db.rollback()
            raise
    logger.info(
        "Rolled over %s: granted=%s expired=%s allowances_reset=%s",
        user_id,
        result["credits_granted"],
        result["credits_expired"],
        result["allowances_reset"],
    )
    return result


async def run_due_rollovers_service(
    *,
    now: Optional[datetime] = None,
    session_factory: Optional[Callable[[], AsyncSession]] = None,
) -> Dict[str, Any]:
    """Roll over every account whose cycle has ended.

    Each account is retried as a whole unit up to ``ROLLOVER_MAX_ATTEMPTS``;
    accounts still failing are picked up again on the next tick.
    """
    current = as_utc(now) or utc_now()
    factory = session_factory or async_session_maker
    async with factory() as db:
        result = await db.execute(
            select(CreditWallet.user_id).where(
                CreditWallet.cycle_end <= current,
                CreditWallet.is_archived.is_(False),
            )
        )
        due_user_ids = [row[0] for row in result.all()]

    attempts = max(int(settings.ROLLOVER_MAX_ATTEMPTS), 1)
    applied = 0
    skipped = 0
    failed = []
    for user_id in due_user_ids:
        for attempt in range(1, attempts + 1):
            try:
                async with factory() as db:
                    outcome = await rollover(user_id, db, now=current)
            except Exception:
                logger.exception("Rollover attempt %s/%s failed for %s", attempt, attempts, user_id)
                if attempt == attempts:
                    failed.append(user_id)
                continue
            if outcome.get("applied"):
                applied += 1
            else:
                skipped += 1
            break

    return {
        "due_count": len(due_user_ids),
        "applied_count": applied,
        "skipped_count": skipped,
        "failed_user_ids": failed,
    }
