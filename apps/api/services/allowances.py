"""Monthly free-allowance tracking per account and action type."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.allowance_usage import AllowanceUsage
from models.credit_wallet import CreditWallet
from models.pricing_rule import PricingRule
from services.billing_period import as_utc


async def _load_usage(user_id: str, action_type: str, db: AsyncSession) -> Optional[AllowanceUsage]:
    result = await db.execute(
        select(AllowanceUsage).where(
            AllowanceUsage.user_id == user_id,
            AllowanceUsage.action_type == action_type,
        )
    )
    return result.scalar_one_or_none()


def _usage_in_cycle(row: Optional[AllowanceUsage], cycle_start: datetime) -> Tuple[int, int]:
    if row is None or as_utc(row.cycle_start) != as_utc(cycle_start):
        return 0, 0
    return int(row.used_this_month or 0), int(row.billable_this_month or 0)


def remaining_from_usage(rule: PricingRule, used_this_month: int) -> int:
    return max(0, int(rule.free_allowance_per_month) - int(used_this_month))


async def remaining_allowance(db: AsyncSession, wallet: CreditWallet, rule: PricingRule) -> int:
    """Free quota left for this cycle. Read-only."""
    row = await _load_usage(wallet.user_id, rule.action_type, db)
    used, _ = _usage_in_cycle(row, wallet.cycle_start)
    return remaining_from_usage(rule, used)


async def consume_allowance(
    db: AsyncSession,
    wallet: CreditWallet,
    rule: PricingRule,
    quantity: int,
) -> Tuple[int, int]:
    """Count ``quantity`` actions against the allowance.

    Returns ``(free_quantity, billable_quantity)``. ``used_this_month`` never
    goes past the allowance; the excess lands in ``billable_this_month``.
    Caller must hold the account scope and commit.
    """
    row = await _load_usage(wallet.user_id, rule.action_type, db)
    used, billable = _usage_in_cycle(row, wallet.cycle_start)
    remaining = remaining_from_usage(rule, used)
    free_quantity = min(int(quantity), remaining)
    billable_quantity = int(quantity) - free_quantity

    if row is None:
        row = AllowanceUsage(
            id=str(uuid.uuid4()),
            user_id=wallet.user_id,
            action_type=rule.action_type,
        )
        db.add(row)
    row.cycle_start = as_utc(wallet.cycle_start)
    row.used_this_month = used + free_quantity
    row.billable_this_month = billable + billable_quantity
    await db.flush()
    return free_quantity, billable_quantity


async def reset_allowance(
    db: AsyncSession,
    user_id: str,
    action_type: str,
    cycle_start: datetime,
) -> bool:
    """Zero the counters for a new cycle. A repeat for the same cycle is a no-op (returns False)."""
    cycle_start = as_utc(cycle_start)
    row = await _load_usage(user_id, action_type, db)
    if row is not None and as_utc(row.cycle_start) == cycle_start:
        return False
    if row is None:
        row = AllowanceUsage(id=str(uuid.uuid4()), user_id=user_id, action_type=action_type)
        db.add(row)
    row.cycle_start = cycle_start
    row.used_this_month = 0
    row.billable_this_month = 0
    await db.flush()
    return True


async def allowance_summary(
    db: AsyncSession,
    wallet: CreditWallet,
    rules: Dict[str, PricingRule],
) -> Dict[str, Any]:
    result = await db.execute(select(AllowanceUsage).where(AllowanceUsage.user_id == wallet.user_id))
    rows = {row.action_type: row for row in result.scalars().all()}
    next_reset = as_utc(wallet.cycle_end).isoformat()

    summary: Dict[str, Any] = {}
    for action_type, rule in sorted(rules.items()):
        used, billable = _usage_in_cycle(rows.get(action_type), wallet.cycle_start)
        summary[action_type] = {
            "monthly_allowance": int(rule.free_allowance_per_month),
            "used_this_month": used,
            "billable_this_month": billable,
            "remaining": remaining_from_usage(rule, used),
            "next_reset": next_reset,
        }
    return summary
