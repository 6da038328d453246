import hashlib
import hmac
from datetime import datetime, timezone

import pytest

from config import settings
from services import topups
from services.accounts import provision_account
from services.credit_errors import InvalidQuantity, PurchaseReferenceConflict, UnknownTopupPackage
from services.credit_reports import reconcile
from services.ledger import fetch_entries
from services.wallet import get_wallet


NOW = datetime(2026, 3, 10, 9, 0, tzinfo=timezone.utc)


def test_price_options_apply_tier_discount():
    free = {package.type: package for package in topups.price_options("free")}
    standard = {package.type: package for package in topups.price_options("standard")}

    assert free["starter"].discounted_price_cents == 2900
    assert standard["starter"].discounted_price_cents == 2610
    assert standard["professional"].discounted_price_cents == 8910
    assert standard["professional"].discount_percentage == 10
    assert topups.tier_discount("unknown") == 0


def test_estimate_topup_for_custom_amount():
    estimate = topups.estimate_topup(1000, "premium")
    assert estimate == {
        "credits": 1000,
        "estimated_cost_cents": 4800,
        "base_price_cents": 6000,
        "discount_percentage": 20,
        "currency": "USD",
    }
    with pytest.raises(InvalidQuantity):
        topups.estimate_topup(0, "free")


def test_estimate_rounds_half_up_to_whole_cents():
    # 7 credits at 6 cents is 42; 20% off leaves 33.6.
    estimate = topups.estimate_topup(7, "premium")
    assert estimate["estimated_cost_cents"] == 34
    assert isinstance(estimate["estimated_cost_cents"], int)


def test_unknown_package_is_rejected():
    with pytest.raises(UnknownTopupPackage):
        topups.build_package("mega", "free")


def test_payment_signature_checked_only_when_secret_configured(monkeypatch):
    body = b'{"external_reference": "pay_1"}'
    monkeypatch.setattr(settings, "PAYMENT_WEBHOOK_SECRET", "")
    assert topups.verify_payment_signature(body, None) is True

    monkeypatch.setattr(settings, "PAYMENT_WEBHOOK_SECRET", "whsec_test")
    digest = hmac.new(b"whsec_test", body, hashlib.sha256).hexdigest()
    assert topups.verify_payment_signature(body, digest) is True
    assert topups.verify_payment_signature(body, f"sha256={digest}") is True
    assert topups.verify_payment_signature(body, "0" * 64) is False
    assert topups.verify_payment_signature(body, None) is False


@pytest.mark.asyncio
async def test_confirm_purchase_is_idempotent(ledger_db):
    await provision_account("buyer", ledger_db, now=NOW)

    first = await topups.confirm_purchase("buyer", "starter", "pay_1", ledger_db, now=NOW)
    replay = await topups.confirm_purchase("buyer", "starter", "pay_1", ledger_db, now=NOW)

    assert first["duplicate"] is False
    assert first["credits"] == 500
    assert first["price_paid_cents"] == 2900
    assert first["balance_after"] == 600
    assert replay["duplicate"] is True
    assert replay["purchase_id"] == first["purchase_id"]
    assert replay["balance_after"] == 600

    wallet = await get_wallet("buyer", ledger_db)
    assert wallet.balance == 600
    assert wallet.package_credits == 500
    purchased = await fetch_entries("buyer", ledger_db, transaction_types=["purchased"])
    assert len(purchased) == 1
    assert purchased[0].reference_id == "pay_1"
    assert (await reconcile("buyer", ledger_db))["consistent"] is True


@pytest.mark.asyncio
async def test_reference_reused_by_another_account_conflicts(ledger_db):
    await provision_account("buyer", ledger_db, now=NOW)
    await provision_account("other", ledger_db, now=NOW)
    await topups.confirm_purchase("buyer", "starter", "pay_shared", ledger_db, now=NOW)

    with pytest.raises(PurchaseReferenceConflict):
        await topups.confirm_purchase("other", "starter", "pay_shared", ledger_db, now=NOW)

    wallet = await get_wallet("other", ledger_db)
    assert wallet.balance == 100


@pytest.mark.asyncio
async def test_custom_topup_uses_tier_price_and_purchased_bucket(ledger_db):
    await provision_account("buyer", ledger_db, tier="standard", now=NOW)

    result = await topups.confirm_purchase("buyer", "custom", "pay_custom", ledger_db, credits=1000, now=NOW)

    assert result["package_type"] == "custom"
    assert result["price_paid_cents"] == 5400
    assert result["discount_percentage"] == 10
    wallet = await get_wallet("buyer", ledger_db)
    assert wallet.purchased_credits == 1000
    assert wallet.balance == 3000


@pytest.mark.asyncio
async def test_failed_confirmation_credits_nothing(ledger_db):
    await provision_account("buyer", ledger_db, now=NOW)

    with pytest.raises(UnknownTopupPackage):
        await topups.confirm_purchase("buyer", "mega", "pay_bad", ledger_db, now=NOW)

    history = await topups.topup_history("buyer", ledger_db)
    assert history == {"purchases": [], "total": 0}
    wallet = await get_wallet("buyer", ledger_db)
    assert wallet.balance == 100
