"""Pricing table and consumption-based pricing engine.

``compute_quote`` is the pure cost function. ``quote`` reads allowance state
without writing anything; ``commit`` re-prices under the account scope and
applies allowance consumption plus the wallet debit as one transaction, so
the charge always reflects state at commit time.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.credit_usage_event import CreditUsageEvent
from models.pricing_rule import PricingRule
from services.account_lock import account_scope
from services.allowances import consume_allowance, remaining_allowance
from services.billing_period import as_utc, utc_now
from services.credit_errors import (
    InsufficientBalance,
    InvalidPricingRule,
    UnknownAction,
    WalletArchived,
    require_positive_int,
)
from services.wallet import apply_debit, get_wallet


logger = logging.getLogger(__name__)

SEED_EFFECTIVE_FROM = datetime(2020, 1, 1, tzinfo=timezone.utc)


@dataclass
class PriceQuote:
    action_type: str
    quantity: int
    credits_per_action: int
    free_allowance_remaining: int
    free_quantity: int
    billable_quantity: int
    discount_percentage: float
    gross_credits: int
    total_credits: int
    bulk_savings: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def round_half_up(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _percentage(value: Any) -> Decimal:
    return Decimal(str(value))


def normalize_bulk_discounts(bulk_discounts: Optional[List[Dict[str, Any]]]) -> List[Dict[str, Any]]:
    """Validate tiers: positive integer thresholds, strictly ascending, 0 < pct <= 100."""
    normalized: List[Dict[str, Any]] = []
    previous_min = 0
    for tier in bulk_discounts or []:
        if not isinstance(tier, dict):
            raise InvalidPricingRule("bulk_discounts entries must be objects")
        min_quantity = tier.get("min_quantity")
        pct = tier.get("discount_percentage")
        if isinstance(min_quantity, bool) or not isinstance(min_quantity, int) or min_quantity <= 0:
            raise InvalidPricingRule("bulk discount min_quantity must be a positive integer")
        if isinstance(pct, bool) or not isinstance(pct, (int, float)) or not 0 < pct <= 100:
            raise InvalidPricingRule("bulk discount discount_percentage must be within (0, 100]")
        if min_quantity <= previous_min:
            raise InvalidPricingRule("bulk_discounts must be strictly ascending by min_quantity")
        previous_min = min_quantity
        normalized.append({"min_quantity": min_quantity, "discount_percentage": pct})
    return normalized


def select_bulk_discount(bulk_discounts: Optional[List[Dict[str, Any]]], billable_quantity: int) -> float:
    """Best-matching tier: the largest min_quantity not above the billable quantity."""
    best_min = 0
    best_pct: float = 0
    for tier in bulk_discounts or []:
        min_quantity = int(tier["min_quantity"])
        if min_quantity <= billable_quantity and min_quantity > best_min:
            best_min = min_quantity
            best_pct = tier["discount_percentage"]
    return best_pct


def compute_quote(rule: PricingRule, quantity: int, free_allowance_remaining: int) -> PriceQuote:
    quantity = require_positive_int(quantity)
    remaining = max(int(free_allowance_remaining), 0)
    billable = max(0, quantity - remaining)
    pct = select_bulk_discount(rule.bulk_discounts, billable)
    gross = billable * int(rule.credits_per_action)
    total = round_half_up(Decimal(gross) * (Decimal(100) - _percentage(pct)) / Decimal(100))
    return PriceQuote(
        action_type=rule.action_type,
        quantity=quantity,
        credits_per_action=int(rule.credits_per_action),
        free_allowance_remaining=remaining,
        free_quantity=quantity - billable,
        billable_quantity=billable,
        discount_percentage=pct,
        gross_credits=gross,
        total_credits=total,
        bulk_savings=gross - total,
    )


def serialize_rule(rule: PricingRule) -> Dict[str, Any]:
    effective_from = as_utc(rule.effective_from)
    return {
        "action_type": rule.action_type,
        "credits_per_action": int(rule.credits_per_action),
        "free_allowance_per_month": int(rule.free_allowance_per_month),
        "bulk_discounts": list(rule.bulk_discounts or []),
        "effective_from": effective_from.isoformat() if effective_from else None,
    }


async def active_rules(db: AsyncSession, *, now: Optional[datetime] = None) -> Dict[str, PricingRule]:
    """Latest effective version of every active rule, keyed by action_type."""
    current = as_utc(now) or utc_now()
    result = await db.execute(
        select(PricingRule)
        .where(PricingRule.is_active.is_(True), PricingRule.effective_from <= current)
        .order_by(PricingRule.action_type.asc(), PricingRule.effective_from.asc())
    )
    rules: Dict[str, PricingRule] = {}
    for rule in result.scalars().all():
        rules[rule.action_type] = rule
    return rules


async def get_active_rule(action_type: str, db: AsyncSession, *, now: Optional[datetime] = None) -> PricingRule:
    current = as_utc(now) or utc_now()
    result = await db.execute(
        select(PricingRule)
        .where(
            PricingRule.action_type == action_type,
            PricingRule.is_active.is_(True),
            PricingRule.effective_from <= current,
        )
        .order_by(PricingRule.effective_from.desc())
        .limit(1)
    )
    rule = result.scalar_one_or_none()
    if rule is None:
        raise UnknownAction(action_type)
    return rule


async def list_pricing_rules(db: AsyncSession, *, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
    rules = await active_rules(db, now=now)
    return [serialize_rule(rule) for _, rule in sorted(rules.items())]


async def upsert_pricing_rule(
    db: AsyncSession,
    *,
    action_type: str,
    credits_per_action: int,
    free_allowance_per_month: int = 0,
    bulk_discounts: Optional[List[Dict[str, Any]]] = None,
    effective_from: Optional[datetime] = None,
) -> PricingRule:
    """Publish a new rule version; requests priced before effective_from keep the old one."""
    action = str(action_type or "").strip()
    if not action:
        raise InvalidPricingRule("action_type is required")
    if isinstance(credits_per_action, bool) or not isinstance(credits_per_action, int) or credits_per_action < 0:
        raise InvalidPricingRule("credits_per_action must be a non-negative integer")
    if (
        isinstance(free_allowance_per_month, bool)
        or not isinstance(free_allowance_per_month, int)
        or free_allowance_per_month < 0
    ):
        raise InvalidPricingRule("free_allowance_per_month must be a non-negative integer")

    rule = PricingRule(
        id=str(uuid.uuid4()),
        action_type=action,
        credits_per_action=credits_per_action,
        free_allowance_per_month=free_allowance_per_month,
        bulk_discounts=normalize_bulk_discounts(bulk_discounts),
        effective_from=as_utc(effective_from) or utc_now(),
        is_active=True,
    )
    db.add(rule)
    await db.commit()
    logger.info("Published pricing rule %s for %s", rule.id, action)
    return rule


async def deactivate_pricing_rule(action_type: str, db: AsyncSession) -> int:
    result = await db.execute(
        select(PricingRule).where(PricingRule.action_type == action_type, PricingRule.is_active.is_(True))
    )
    rows = result.scalars().all()
    if not rows:
        raise UnknownAction(action_type)
    for row in rows:
        row.is_active = False
    await db.commit()
    return len(rows)


async def seed_default_pricing_rules(db: AsyncSession) -> int:
    """Insert configured defaults for actions that have no rule yet."""
    result = await db.execute(select(PricingRule.action_type).distinct())
    existing = {row[0] for row in result.all()}
    inserted = 0
    for defaults in settings.DEFAULT_PRICING_RULES:
        action_type = defaults["action_type"]
        if action_type in existing:
            continue
        db.add(
            PricingRule(
                id=str(uuid.uuid4()),
                action_type=action_type,
                credits_per_action=int(defaults["credits_per_action"]),
                free_allowance_per_month=int(defaults.get("free_allowance_per_month", 0)),
                bulk_discounts=normalize_bulk_discounts(defaults.get("bulk_discounts")),
                effective_from=SEED_EFFECTIVE_FROM,
                is_active=True,
            )
        )
        inserted += 1
    if inserted:
        await db.commit()
    return inserted


async def quote(
    user_id: str,
    action_type: str,
    quantity: int,
    db: AsyncSession,
    *,
    now: Optional[datetime] = None,
) -> PriceQuote:
    """What ``quantity`` actions would cost right now. Never writes."""
    require_positive_int(quantity)
    rule = await get_active_rule(action_type, db, now=now)
    wallet = await get_wallet(user_id, db)
    remaining = await remaining_allowance(db, wallet, rule)
    return compute_quote(rule, quantity, remaining)


async def can_perform(
    user_id: str,
    action_type: str,
    db: AsyncSession,
    *,
    quantity: int = 1,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    priced = await quote(user_id, action_type, quantity, db, now=now)
    wallet = await get_wallet(user_id, db)
    balance = int(wallet.balance)

    reason = None
    if wallet.is_archived:
        reason = "Wallet is archived."
    elif wallet.is_locked:
        reason = "Wallet is locked."
    elif priced.total_credits > balance:
        reason = f"Insufficient credits. Need {priced.total_credits - balance} more credits."

    return {
        "action_type": action_type,
        "quantity": priced.quantity,
        "can_perform": reason is None,
        "credits_required": priced.total_credits,
        "current_balance": balance,
        "free_allowance_remaining": priced.free_allowance_remaining,
        "reason": reason,
    }


async def commit(
    user_id: str,
    action_type: str,
    quantity: int,
    db: AsyncSession,
    *,
    reference_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Charge for ``quantity`` actions. All-or-nothing; re-prices under the account scope."""
    require_positive_int(quantity)
    current = as_utc(now) or utc_now()
    async with account_scope(user_id):
        try:
            wallet = await get_wallet(user_id, db, for_update=True)
            rule = await get_active_rule(action_type, db, now=current)
            remaining = await remaining_allowance(db, wallet, rule)
            priced = compute_quote(rule, quantity, remaining)

            if wallet.is_archived:
                raise WalletArchived(user_id)
            balance = int(wallet.balance)
            if wallet.is_locked or priced.total_credits > balance:
                raise InsufficientBalance(
                    required=priced.total_credits,
                    available=balance,
                    locked=bool(wallet.is_locked),
                )

            await consume_allowance(db, wallet, rule, quantity)
            entry = None
            if priced.total_credits > 0:
                entry = await apply_debit(
                    db,
                    wallet,
                    amount=priced.total_credits,
                    action_type=action_type,
                    description=f"{action_type} x{quantity}",
                    reference_type="action",
                    reference_id=reference_id,
                    now=current,
                )

            event = CreditUsageEvent(
                id=str(uuid.uuid4()),
                user_id=user_id,
                action_type=action_type,
                quantity=quantity,
                free_quantity=priced.free_quantity,
                billable_quantity=priced.billable_quantity,
                discount_percentage=priced.discount_percentage,
                credits_charged=priced.total_credits,
                ledger_entry_id=entry.id if entry is not None else None,
                reference_id=reference_id,
                created_at=current,
            )
            db.add(event)
            await db.commit()
        except Exception:
            await db.rollback()
            raise

    return {
        **priced.to_dict(),
        "credits_charged": priced.total_credits,
        "balance_after": int(wallet.balance),
        "entry_id": entry.id if entry is not None else None,
        "usage_event_id": event.id,
    }
