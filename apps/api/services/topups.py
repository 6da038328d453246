"""Top-up packages and confirmation of externally paid purchases.

Prices are integer minor units (cents) of ``TOPUP_CURRENCY``.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import TIER_ORDER, settings
from models.topup_purchase import TopupPurchase
from services.account_lock import account_scope
from services.billing_period import as_utc, utc_now
from services.credit_errors import (
    DuplicatePurchaseConfirmation,
    PurchaseReferenceConflict,
    UnknownTopupPackage,
    require_positive_int,
)
from services.pricing import round_half_up
from services.subscriptions import effective_tier, get_current_subscription
from services.wallet import apply_credit, get_wallet


logger = logging.getLogger(__name__)

CUSTOM_PACKAGE = "custom"


@dataclass
class TopupPackage:
    type: str
    credits: int
    base_price_cents: int
    discount_percentage: int
    discounted_price_cents: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "credits": self.credits,
            "base_price_cents": self.base_price_cents,
            "discount_percentage": self.discount_percentage,
            "discounted_price_cents": self.discounted_price_cents,
            "currency": settings.TOPUP_CURRENCY,
        }


def tier_discount(tier: str) -> int:
    if tier not in TIER_ORDER:
        return 0
    return int(settings.TOPUP_TIER_DISCOUNTS.get(tier, 0))


def _discounted(base_price_cents: int, discount_percentage: int) -> int:
    return round_half_up(Decimal(base_price_cents) * (Decimal(100) - Decimal(discount_percentage)) / Decimal(100))


def build_package(package_type: str, tier: str) -> TopupPackage:
    package_config = settings.TOPUP_PACKAGES.get(package_type)
    if package_config is None:
        raise UnknownTopupPackage(package_type)
    base_price_cents = int(package_config["base_price_cents"])
    discount = tier_discount(tier)
    return TopupPackage(
        type=package_type,
        credits=int(package_config["credits"]),
        base_price_cents=base_price_cents,
        discount_percentage=discount,
        discounted_price_cents=_discounted(base_price_cents, discount),
    )


def price_options(tier: str) -> List[TopupPackage]:
    return [build_package(package_type, tier) for package_type in settings.TOPUP_PACKAGES]


def build_custom_package(credits: int, tier: str) -> TopupPackage:
    credits = require_positive_int(credits, "credits")
    base_price_cents = round_half_up(Decimal(str(settings.TOPUP_PRICE_PER_CREDIT_CENTS)) * credits)
    discount = tier_discount(tier)
    return TopupPackage(
        type=CUSTOM_PACKAGE,
        credits=credits,
        base_price_cents=base_price_cents,
        discount_percentage=discount,
        discounted_price_cents=_discounted(base_price_cents, discount),
    )


def estimate_topup(credits: int, tier: str) -> Dict[str, Any]:
    package = build_custom_package(credits, tier)
    return {
        "credits": package.credits,
        "estimated_cost_cents": package.discounted_price_cents,
        "base_price_cents": package.base_price_cents,
        "discount_percentage": package.discount_percentage,
        "currency": settings.TOPUP_CURRENCY,
    }


def verify_payment_signature(raw_body: bytes, signature: Optional[str]) -> bool:
    """HMAC-SHA256 over the raw callback body. Open when no secret is configured."""
    secret = (settings.PAYMENT_WEBHOOK_SECRET or "").strip()
    if not secret:
        return True
    if not signature:
        logger.warning("Payment callback rejected: missing signature header")
        return False
    expected = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()
    provided = signature.strip()
    if provided.startswith("sha256="):
        provided = provided[len("sha256="):]
    return hmac.compare_digest(expected, provided)


def serialize_purchase(purchase: TopupPurchase) -> Dict[str, Any]:
    created_at = as_utc(purchase.created_at)
    return {
        "purchase_id": purchase.id,
        "external_reference": purchase.external_reference,
        "package_type": purchase.package_type,
        "credits": int(purchase.credits),
        "price_paid_cents": int(purchase.price_paid_cents),
        "discount_percentage": int(purchase.discount_percentage),
        "currency": purchase.currency,
        "entry_id": purchase.ledger_entry_id,
        "balance_after": int(purchase.balance_after),
        "created_at": created_at.isoformat() if created_at else None,
    }


async def _find_purchase(external_reference: str, db: AsyncSession) -> Optional[TopupPurchase]:
    result = await db.execute(
        select(TopupPurchase).where(TopupPurchase.external_reference == external_reference)
    )
    return result.scalar_one_or_none()


def _raise_if_applied(purchase: Optional[TopupPurchase], user_id: str, external_reference: str) -> None:
    if purchase is None:
        return
    if purchase.user_id != user_id:
        raise PurchaseReferenceConflict(external_reference)
    raise DuplicatePurchaseConfirmation(external_reference, serialize_purchase(purchase))


async def _apply_purchase(
    user_id: str,
    package_type: str,
    external_reference: str,
    db: AsyncSession,
    *,
    credits: Optional[int],
    now: datetime,
) -> Dict[str, Any]:
    _raise_if_applied(await _find_purchase(external_reference, db), user_id, external_reference)

    wallet = await get_wallet(user_id, db, for_update=True)
    tier = effective_tier(await get_current_subscription(user_id, db))
    if package_type == CUSTOM_PACKAGE:
        package = build_custom_package(credits, tier)
        bucket = "purchased"
    else:
        package = build_package(package_type, tier)
        bucket = "package"

    entry = await apply_credit(
        db,
        wallet,
        amount=package.credits,
        transaction_type="purchased",
        bucket=bucket,
        description=f"Top-up: {package.type} ({package.credits} credits)",
        reference_type="topup",
        reference_id=external_reference,
        now=now,
    )
    purchase = TopupPurchase(
        id=str(uuid.uuid4()),
        user_id=user_id,
        external_reference=external_reference,
        package_type=package.type,
        credits=package.credits,
        price_paid_cents=package.discounted_price_cents,
        discount_percentage=package.discount_percentage,
        currency=settings.TOPUP_CURRENCY,
        ledger_entry_id=entry.id,
        balance_after=int(wallet.balance),
        created_at=now,
    )
    db.add(purchase)
    await db.commit()
    return serialize_purchase(purchase)


async def confirm_purchase(
    user_id: str,
    package_type: str,
    external_reference: str,
    db: AsyncSession,
    *,
    credits: Optional[int] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Credit a purchase the payment processor reported as paid.

    Idempotent on ``external_reference``: a replayed confirmation returns the
    original result with ``duplicate=True`` and credits nothing.
    """
    reference = str(external_reference or "").strip()
    if not reference:
        raise ValueError("external_reference is required")
    current = as_utc(now) or utc_now()

    async with account_scope(user_id):
        try:
            result = await _apply_purchase(user_id, package_type, reference, db, credits=credits, now=current)
        except DuplicatePurchaseConfirmation as exc:
            await db.rollback()
            logger.info("Ignoring replayed purchase confirmation %s", reference)
            return {**exc.original_result, "duplicate": True}
        except IntegrityError:
            # Same reference confirmed concurrently through another account scope.
            await db.rollback()
            try:
                _raise_if_applied(await _find_purchase(reference, db), user_id, reference)
            except DuplicatePurchaseConfirmation as exc:
                return {**exc.original_result, "duplicate": True}
            raise
        except Exception:
            await db.rollback()
            raise

    logger.info("Applied purchase %s for %s: +%s credits", reference, user_id, result["credits"])
    return {**result, "duplicate": False}


async def topup_history(
    user_id: str,
    db: AsyncSession,
    *,
    limit: int = 20,
    offset: int = 0,
) -> Dict[str, Any]:
    limit = max(1, min(int(limit), 100))
    offset = max(int(offset), 0)
    total_result = await db.execute(
        select(func.count(TopupPurchase.id)).where(TopupPurchase.user_id == user_id)
    )
    result = await db.execute(
        select(TopupPurchase)
        .where(TopupPurchase.user_id == user_id)
        .order_by(TopupPurchase.created_at.desc())
        .offset(offset)
        .limit(limit)
    )
    return {
        "purchases": [serialize_purchase(row) for row in result.scalars().all()],
        "total": int(total_result.scalar() or 0),
    }
