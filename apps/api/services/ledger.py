"""Append-only credit ledger: entry creation and transaction queries."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import func, or_
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.credit_ledger import CREDIT_OUT_TYPES, TRANSACTION_TYPES, CreditLedger
from models.credit_wallet import CreditWallet
from services.billing_period import as_utc, period_key, utc_now


MAX_PAGE_SIZE = 200


async def append_entry(
    db: AsyncSession,
    wallet: CreditWallet,
    *,
    transaction_type: str,
    amount: int,
    action_type: Optional[str] = None,
    bucket: Optional[str] = None,
    description: Optional[str] = None,
    reference_type: Optional[str] = None,
    reference_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> CreditLedger:
    """Record the wallet mutation that was just applied.

    Must be called after the wallet balance has been changed, inside the same
    transaction; ``balance_after`` is snapshotted from the wallet.
    """
    if transaction_type not in TRANSACTION_TYPES:
        raise ValueError(f"Unknown transaction_type '{transaction_type}'")
    if amount == 0:
        raise ValueError("Ledger entries must move a non-zero amount")
    if (transaction_type in CREDIT_OUT_TYPES) != (amount < 0):
        raise ValueError(f"{transaction_type} entries must carry a {'negative' if amount > 0 else 'positive'} amount")

    created_at = as_utc(now) or utc_now()
    entry = CreditLedger(
        user_id=wallet.user_id,
        transaction_type=transaction_type,
        action_type=action_type,
        amount=int(amount),
        balance_after=int(wallet.balance),
        bucket=bucket,
        description=description,
        reference_type=reference_type,
        reference_id=reference_id,
        period_key=period_key(created_at),
        created_at=created_at,
    )
    db.add(entry)
    await db.flush()
    return entry


def serialize_entry(entry: CreditLedger) -> Dict[str, Any]:
    created_at = as_utc(entry.created_at)
    return {
        "id": entry.id,
        "transaction_type": entry.transaction_type,
        "action_type": entry.action_type,
        "amount": int(entry.amount),
        "balance_after": int(entry.balance_after),
        "bucket": entry.bucket,
        "description": entry.description,
        "reference_type": entry.reference_type,
        "reference_id": entry.reference_id,
        "created_at": created_at.isoformat() if created_at else None,
    }


async def fetch_entries(
    user_id: str,
    db: AsyncSession,
    *,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    transaction_types: Optional[List[str]] = None,
) -> List[CreditLedger]:
    """All entries for an account in ledger order."""
    statement = select(CreditLedger).where(CreditLedger.user_id == user_id)
    if start is not None:
        statement = statement.where(CreditLedger.created_at >= as_utc(start))
    if end is not None:
        statement = statement.where(CreditLedger.created_at < as_utc(end))
    if transaction_types:
        statement = statement.where(CreditLedger.transaction_type.in_(transaction_types))
    result = await db.execute(statement.order_by(CreditLedger.id.asc()))
    return list(result.scalars().all())


async def latest_entry(user_id: str, db: AsyncSession) -> Optional[CreditLedger]:
    result = await db.execute(
        select(CreditLedger)
        .where(CreditLedger.user_id == user_id)
        .order_by(CreditLedger.id.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def list_transactions(
    user_id: str,
    db: AsyncSession,
    *,
    limit: int = 50,
    offset: int = 0,
    action_type: Optional[str] = None,
    transaction_type: Optional[str] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    query: Optional[str] = None,
) -> Dict[str, Any]:
    limit = max(1, min(int(limit), MAX_PAGE_SIZE))
    offset = max(int(offset), 0)

    filters = [CreditLedger.user_id == user_id]
    if action_type:
        filters.append(CreditLedger.action_type == action_type)
    if transaction_type:
        filters.append(CreditLedger.transaction_type == transaction_type)
    if start is not None:
        filters.append(CreditLedger.created_at >= as_utc(start))
    if end is not None:
        filters.append(CreditLedger.created_at < as_utc(end))
    search = str(query or "").strip()
    if search:
        pattern = f"%{search}%"
        filters.append(
            or_(
                CreditLedger.description.ilike(pattern),
                CreditLedger.action_type.ilike(pattern),
                CreditLedger.transaction_type.ilike(pattern),
                CreditLedger.reference_id.ilike(pattern),
            )
        )

    total_result = await db.execute(select(func.count(CreditLedger.id)).where(*filters))
    total = int(total_result.scalar() or 0)

    result = await db.execute(
        select(CreditLedger)
        .where(*filters)
        .order_by(CreditLedger.id.desc())
        .offset(offset)
        .limit(limit)
    )
    entries = result.scalars().all()
    return {
        "transactions": [serialize_entry(entry) for entry in entries],
        "total": total,
        "pagination": {
            "limit": limit,
            "offset": offset,
            "has_more": offset + len(entries) < total,
        },
    }
