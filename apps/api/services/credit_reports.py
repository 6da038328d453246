"""Read-only credit reporting: in/out summaries, usage breakdowns, reconciliation."""

from __future__ import annotations

from collections import defaultdict
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.credit_ledger import CREDIT_IN_TYPES, CREDIT_OUT_TYPES, CreditLedger
from models.credit_usage_event import CreditUsageEvent
from models.credit_wallet import CreditWallet
from services.billing_period import add_months, as_utc, utc_now
from services.ledger import fetch_entries, latest_entry, list_transactions, serialize_entry
from services.pricing import round_half_up
from services.subscriptions import effective_tier, get_current_subscription
from services.wallet import get_balance, get_wallet, monthly_credit_grant


def _month_of(value: Optional[datetime]) -> str:
    return (as_utc(value) or utc_now()).strftime("%Y-%m")


def summarize_entries(entries: Iterable[CreditLedger]) -> Dict[str, Any]:
    """Fold ledger entries into in/out totals and a calendar-month breakdown."""
    credits_in = 0
    credits_out = 0
    by_type: Dict[str, int] = defaultdict(int)
    months: Dict[str, Dict[str, int]] = {}
    for entry in entries:
        amount = int(entry.amount)
        bucket = months.setdefault(_month_of(entry.created_at), {"credits_in": 0, "credits_out": 0})
        by_type[entry.transaction_type] += abs(amount)
        if entry.transaction_type in CREDIT_IN_TYPES:
            credits_in += amount
            bucket["credits_in"] += amount
        elif entry.transaction_type in CREDIT_OUT_TYPES:
            credits_out += -amount
            bucket["credits_out"] += -amount

    monthly_breakdown = [
        {
            "month": month,
            "credits_in": values["credits_in"],
            "credits_out": values["credits_out"],
            "net": values["credits_in"] - values["credits_out"],
        }
        for month, values in sorted(months.items())
    ]
    return {
        "credits_in": credits_in,
        "credits_out": credits_out,
        "net": credits_in - credits_out,
        "by_transaction_type": dict(by_type),
        "monthly_breakdown": monthly_breakdown,
    }


async def transaction_summary(
    user_id: str,
    db: AsyncSession,
    *,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
) -> Dict[str, Any]:
    entries = await fetch_entries(user_id, db, start=start, end=end)
    summary = summarize_entries(entries)
    summary.update(
        {
            "start": as_utc(start).isoformat() if start else None,
            "end": as_utc(end).isoformat() if end else None,
            "transaction_count": len(entries),
        }
    )
    return summary


async def reconcile(user_id: str, db: AsyncSession) -> Dict[str, Any]:
    """Replay the ledger from zero and compare it with the wallet."""
    wallet = await get_wallet(user_id, db)
    entries = await fetch_entries(user_id, db)

    running = 0
    first_mismatch = None
    for entry in entries:
        running += int(entry.amount)
        if first_mismatch is None and running != int(entry.balance_after):
            first_mismatch = entry.id

    last = entries[-1] if entries else None
    last_balance_after = int(last.balance_after) if last is not None else 0
    wallet_balance = int(wallet.balance)
    buckets_total = sum(wallet.bucket_balances().values())
    return {
        "wallet_balance": wallet_balance,
        "replayed_balance": running,
        "last_balance_after": last_balance_after,
        "bucket_total": buckets_total,
        "entry_count": len(entries),
        "first_mismatch_entry_id": first_mismatch,
        "consistent": (
            first_mismatch is None
            and running == wallet_balance == last_balance_after
            and buckets_total == wallet_balance
        ),
    }


async def _usage_events(
    user_id: str,
    db: AsyncSession,
    start: datetime,
    end: datetime,
) -> List[CreditUsageEvent]:
    result = await db.execute(
        select(CreditUsageEvent)
        .where(
            CreditUsageEvent.user_id == user_id,
            CreditUsageEvent.created_at >= start,
            CreditUsageEvent.created_at < end,
        )
        .order_by(CreditUsageEvent.created_at.asc())
    )
    return list(result.scalars().all())


async def monthly_usage(
    user_id: str,
    db: AsyncSession,
    *,
    year: Optional[int] = None,
    month: Optional[int] = None,
) -> Dict[str, Any]:
    today = utc_now()
    start = datetime(year or today.year, month or today.month, 1, tzinfo=timezone.utc)
    end = add_months(start, 1)
    events = await _usage_events(user_id, db, start, end)

    action_breakdown: Dict[str, Dict[str, int]] = {}
    daily: Dict[str, Dict[str, int]] = {}
    for event in events:
        action = action_breakdown.setdefault(event.action_type, {"count": 0, "credits": 0, "free": 0})
        action["count"] += int(event.quantity)
        action["credits"] += int(event.credits_charged)
        action["free"] += int(event.free_quantity)
        day = daily.setdefault(as_utc(event.created_at).strftime("%Y-%m-%d"), {"credits": 0, "actions": 0})
        day["credits"] += int(event.credits_charged)
        day["actions"] += int(event.quantity)

    return {
        "period": start.strftime("%Y-%m"),
        "total_credits_spent": sum(int(event.credits_charged) for event in events),
        "total_actions": sum(int(event.quantity) for event in events),
        "free_allowances_used": sum(int(event.free_quantity) for event in events),
        "action_breakdown": action_breakdown,
        "daily_usage": [{"date": date, **values} for date, values in sorted(daily.items())],
    }


async def spending_analytics(
    user_id: str,
    db: AsyncSession,
    *,
    months: int = 6,
) -> Dict[str, Any]:
    months = max(1, min(int(months), 24))
    now = utc_now()
    window_end = add_months(datetime(now.year, now.month, 1, tzinfo=timezone.utc), 1)
    window_start = add_months(window_end, -months)

    spent = await fetch_entries(user_id, db, start=window_start, end=window_end, transaction_types=["spent"])
    per_month: Dict[str, Dict[str, Any]] = {}
    cursor = window_start
    while cursor < window_end:
        per_month[cursor.strftime("%Y-%m")] = {"credits_spent": 0, "transactions": 0, "by_action": defaultdict(int)}
        cursor = add_months(cursor, 1)

    by_action: Dict[str, int] = defaultdict(int)
    for entry in spent:
        bucket = per_month.get(_month_of(entry.created_at))
        if bucket is None:
            continue
        credits = -int(entry.amount)
        action = entry.action_type or "unknown"
        bucket["credits_spent"] += credits
        bucket["transactions"] += 1
        bucket["by_action"][action] += credits
        by_action[action] += credits

    total = sum(values["credits_spent"] for values in per_month.values())
    return {
        "months": months,
        "total_credits_spent": total,
        "average_monthly_spend": round_half_up(Decimal(total) / months),
        "top_actions": [
            {"action_type": action, "credits": credits}
            for action, credits in sorted(by_action.items(), key=lambda item: (-item[1], item[0]))
        ],
        "monthly": [
            {
                "month": month,
                "credits_spent": values["credits_spent"],
                "transactions": values["transactions"],
                "by_action": dict(values["by_action"]),
            }
            for month, values in per_month.items()
        ],
    }


async def wallet_summary(user_id: str, db: AsyncSession) -> Dict[str, Any]:
    wallet = await get_wallet(user_id, db)
    subscription = await get_current_subscription(user_id, db)
    tier = effective_tier(subscription)
    balance = await get_balance(user_id, db)

    cycle_entries = await fetch_entries(
        user_id,
        db,
        start=wallet.cycle_start,
        end=wallet.cycle_end,
        transaction_types=["spent"],
    )
    last = await latest_entry(user_id, db)
    return {
        **balance,
        "package_name": tier,
        "subscription_status": subscription.status if subscription else None,
        "monthly_allowance": monthly_credit_grant(tier),
        "buckets": wallet.bucket_balances(),
        "total_spent_this_cycle": sum(-int(entry.amount) for entry in cycle_entries),
        "total_transactions_this_cycle": len(cycle_entries),
        "next_billing_date": balance["next_reset_date"],
        "last_transaction": serialize_entry(last) if last is not None else None,
    }


async def recent_activity(user_id: str, db: AsyncSession, *, limit: int = 10) -> Dict[str, Any]:
    page = await list_transactions(user_id, db, limit=limit)
    return {"recent_transactions": page["transactions"], "total": page["total"]}


async def system_stats(db: AsyncSession, *, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Platform-wide counters for the current UTC day."""
    current = as_utc(now) or utc_now()
    day_start = datetime(current.year, current.month, current.day, tzinfo=timezone.utc)
    day_end = day_start + timedelta(days=1)
    today = (CreditLedger.created_at >= day_start, CreditLedger.created_at < day_end)

    total_users = await db.execute(select(func.count(CreditWallet.id)))
    transactions = await db.execute(select(func.count(CreditLedger.id)).where(*today))
    spent = await db.execute(
        select(func.coalesce(func.sum(-CreditLedger.amount), 0)).where(
            CreditLedger.transaction_type == "spent",
            *today,
        )
    )
    usage = await db.execute(
        select(
            func.coalesce(func.sum(CreditUsageEvent.credits_charged), 0),
            func.coalesce(func.sum(CreditUsageEvent.quantity), 0),
        ).where(
            CreditUsageEvent.created_at >= day_start,
            CreditUsageEvent.created_at < day_end,
        )
    )
    charged, actions = usage.one()

    return {
        "date": day_start.strftime("%Y-%m-%d"),
        "total_users": int(total_users.scalar() or 0),
        "total_transactions_today": int(transactions.scalar() or 0),
        "total_credits_spent_today": int(spent.scalar() or 0),
        "total_actions_today": int(actions),
        "average_credits_per_action": round_half_up(Decimal(int(charged)) / int(actions)) if actions else 0,
    }
