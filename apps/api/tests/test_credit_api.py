import hashlib
import hmac
import json

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from config import settings
from database import get_db
from main import app
from services.pricing import seed_default_pricing_rules
from services.session_token import create_service_token, create_session_token, decode_session_token


def _auth_header(user_id, role="user"):
    token = create_session_token(user_id, f"{user_id}@example.com", role=role)["token"]
    return {"Authorization": f"Bearer {token}"}


CREATOR_HEADER = _auth_header("api-creator")
PAYMENTS_HEADER = {"Authorization": f"Bearer {create_service_token('payments-bridge')['token']}"}


@pytest_asyncio.fixture
async def credit_client(ledger_sessions):
    async with ledger_sessions() as session:
        await seed_default_pricing_rules(session)

    async def override_get_db():
        async with ledger_sessions() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client
    app.dependency_overrides.pop(get_db, None)


@pytest.mark.asyncio
async def test_balance_provisions_wallet_on_first_use(credit_client):
    response = await credit_client.get("/credits/balance", headers=CREATOR_HEADER)
    assert response.status_code == 200
    payload = response.json()
    assert payload["current_balance"] == 100
    assert payload["wallet_status"] == "active"


@pytest.mark.asyncio
async def test_missing_token_is_unauthorized(credit_client):
    response = await credit_client.get("/credits/balance")
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_cross_user_scope_is_forbidden(credit_client):
    response = await credit_client.get("/credits/balance", params={"user_id": "someone-else"}, headers=CREATOR_HEADER)
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_perform_action_uses_free_allowance_then_charges(credit_client):
    free = await credit_client.post(
        "/credits/actions",
        json={"action_type": "influencer_unlock", "quantity": 5},
        headers=CREATOR_HEADER,
    )
    assert free.status_code == 200
    assert free.json()["credits_charged"] == 0

    paid = await credit_client.post(
        "/credits/actions",
        json={"action_type": "influencer_unlock", "quantity": 1, "reference_id": "unlock-42"},
        headers=CREATOR_HEADER,
    )
    assert paid.status_code == 200
    assert paid.json()["credits_charged"] == 25
    assert paid.json()["balance_after"] == 75

    history = await credit_client.get("/credits/transactions/search", params={"query": "unlock-42"}, headers=CREATOR_HEADER)
    assert history.status_code == 200
    assert history.json()["total"] == 1

    allowances = await credit_client.get("/credits/allowances", headers=CREATOR_HEADER)
    assert allowances.json()["influencer_unlock"]["remaining"] == 0
    assert allowances.json()["influencer_unlock"]["billable_this_month"] == 1


@pytest.mark.asyncio
async def test_pricing_calculate_matches_can_perform(credit_client):
    calculated = await credit_client.post(
        "/credits/pricing/calculate",
        json={"action_type": "email_unlock", "quantity": 100},
        headers=CREATOR_HEADER,
    )
    assert calculated.status_code == 200
    assert calculated.json()["total_credits"] == 80
    assert calculated.json()["discount_percentage"] == 20

    check = await credit_client.get(
        "/credits/can-perform/email_unlock",
        params={"quantity": 100},
        headers=CREATOR_HEADER,
    )
    assert check.json()["can_perform"] is True
    assert check.json()["credits_required"] == 80


@pytest.mark.asyncio
async def test_perform_action_errors_map_to_status_codes(credit_client):
    unknown = await credit_client.post(
        "/credits/actions",
        json={"action_type": "teleport", "quantity": 1},
        headers=CREATOR_HEADER,
    )
    assert unknown.status_code == 404
    assert unknown.json()["error"] == "unknown_action"

    too_expensive = await credit_client.post(
        "/credits/actions",
        json={"action_type": "ai_insights", "quantity": 7},
        headers=CREATOR_HEADER,
    )
    assert too_expensive.status_code == 402
    assert too_expensive.json()["credits_required"] == 105
    assert too_expensive.json()["current_balance"] == 100

    zero = await credit_client.post(
        "/credits/actions",
        json={"action_type": "ai_insights", "quantity": 0},
        headers=CREATOR_HEADER,
    )
    assert zero.status_code == 422
    assert zero.json()["error"] == "invalid_quantity"

    coerced = await credit_client.post(
        "/credits/actions",
        json={"action_type": "ai_insights", "quantity": "2"},
        headers=CREATOR_HEADER,
    )
    assert coerced.status_code == 422


@pytest.mark.asyncio
async def test_viewer_role_cannot_spend(credit_client):
    response = await credit_client.post(
        "/credits/actions",
        json={"action_type": "ai_insights", "quantity": 1},
        headers=_auth_header("api-viewer", role="viewer"),
    )
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_subscription_upgrade_and_downgrade_flow(credit_client):
    current = await credit_client.get("/subscriptions", headers=CREATOR_HEADER)
    assert current.status_code == 200
    assert current.json()["effective_tier"] == "free"

    upgraded = await credit_client.post("/subscriptions/upgrade", json={"tier": "premium"}, headers=CREATOR_HEADER)
    assert upgraded.status_code == 200
    assert upgraded.json()["subscription"]["tier"] == "premium"
    assert upgraded.json()["prorated_credits"] > 0

    downgraded = await credit_client.post("/subscriptions/downgrade", json={"tier": "standard"}, headers=CREATOR_HEADER)
    assert downgraded.status_code == 200
    assert downgraded.json()["subscription"]["pending_tier"] == "standard"

    invalid = await credit_client.post("/subscriptions/downgrade", json={"tier": "premium"}, headers=CREATOR_HEADER)
    assert invalid.status_code == 409
    assert invalid.json()["error"] == "subscription_state_conflict"


@pytest.mark.asyncio
async def test_topup_confirmation_requires_payments_capability(credit_client):
    body = {"user_id": "api-creator", "package_type": "starter", "external_reference": "pay_api_1"}

    denied = await credit_client.post("/topups/confirm", json=body, headers=CREATOR_HEADER)
    assert denied.status_code == 403

    first = await credit_client.post("/topups/confirm", json=body, headers=PAYMENTS_HEADER)
    replay = await credit_client.post("/topups/confirm", json=body, headers=PAYMENTS_HEADER)
    assert first.status_code == 200
    assert first.json()["duplicate"] is False
    assert replay.status_code == 200
    assert replay.json()["duplicate"] is True

    balance = await credit_client.get("/credits/balance", headers=CREATOR_HEADER)
    assert balance.json()["current_balance"] == 600


@pytest.mark.asyncio
async def test_topup_confirmation_verifies_signature(credit_client, monkeypatch):
    monkeypatch.setattr(settings, "PAYMENT_WEBHOOK_SECRET", "whsec_api")
    raw = json.dumps({"user_id": "api-creator", "package_type": "starter", "external_reference": "pay_api_2"}).encode()

    unsigned = await credit_client.post(
        "/topups/confirm",
        content=raw,
        headers={**PAYMENTS_HEADER, "Content-Type": "application/json"},
    )
    assert unsigned.status_code == 401

    signature = hmac.new(b"whsec_api", raw, hashlib.sha256).hexdigest()
    signed = await credit_client.post(
        "/topups/confirm",
        content=raw,
        headers={**PAYMENTS_HEADER, "Content-Type": "application/json", "X-Payment-Signature": signature},
    )
    assert signed.status_code == 200
    assert signed.json()["credits"] == 500


@pytest.mark.asyncio
async def test_topup_options_reflect_effective_tier(credit_client):
    await credit_client.post("/subscriptions/upgrade", json={"tier": "standard"}, headers=CREATOR_HEADER)
    response = await credit_client.get("/topups/options", headers=CREATOR_HEADER)
    assert response.status_code == 200
    payload = response.json()
    assert payload["tier"] == "standard"
    starter = next(package for package in payload["packages"] if package["type"] == "starter")
    assert starter["discounted_price_cents"] == 2610
    assert starter["base_price_cents"] == 2900


@pytest.mark.asyncio
async def test_admin_lock_blocks_spending(credit_client):
    await credit_client.get("/credits/balance", headers=CREATOR_HEADER)
    admin_header = _auth_header("ops-admin", role="admin")

    locked = await credit_client.post("/admin/wallets/api-creator/lock", headers=admin_header)
    assert locked.status_code == 200
    assert locked.json()["is_locked"] is True

    blocked = await credit_client.post(
        "/credits/actions",
        json={"action_type": "influencer_unlock", "quantity": 1},
        headers=CREATOR_HEADER,
    )
    assert blocked.status_code == 402
    assert blocked.json()["wallet_locked"] is True

    forbidden = await credit_client.post("/admin/wallets/api-creator/lock", headers=CREATOR_HEADER)
    assert forbidden.status_code == 403


@pytest.mark.asyncio
async def test_admin_pricing_publication_requires_superadmin(credit_client):
    rule = {
        "action_type": "competitor_scan",
        "credits_per_action": 12,
        "free_allowance_per_month": 1,
        "bulk_discounts": [{"min_quantity": 5, "discount_percentage": 10}],
        "effective_from": "2020-01-01T00:00:00Z",
    }
    denied = await credit_client.post("/admin/pricing", json=rule, headers=_auth_header("ops-admin", role="admin"))
    assert denied.status_code == 403

    published = await credit_client.post("/admin/pricing", json=rule, headers=_auth_header("root", role="superadmin"))
    assert published.status_code == 200
    assert published.json()["credits_per_action"] == 12

    priced = await credit_client.get("/credits/pricing/competitor_scan", headers=CREATOR_HEADER)
    assert priced.status_code == 200
    assert priced.json()["free_allowance_per_month"] == 1

    bad = dict(rule, bulk_discounts=[{"min_quantity": 5, "discount_percentage": 120}])
    rejected = await credit_client.post("/admin/pricing", json=bad, headers=_auth_header("root", role="superadmin"))
    assert rejected.status_code == 422
    assert rejected.json()["error"] == "invalid_pricing_rule"


def test_session_tokens_reject_unknown_roles_and_types():
    with pytest.raises(ValueError):
        create_session_token("someone", role="owner")

    service_claims = decode_session_token(create_service_token("rollover-cron", role="superadmin")["token"])
    assert service_claims["sub"] == "service:rollover-cron"
    assert service_claims["role"] == "superadmin"

    with pytest.raises(ValueError):
        decode_session_token("not-a-token")


@pytest.mark.asyncio
async def test_system_stats_require_wallet_admin(credit_client):
    await credit_client.get("/credits/balance", headers=CREATOR_HEADER)

    denied = await credit_client.get("/admin/system/stats", headers=CREATOR_HEADER)
    assert denied.status_code == 403

    response = await credit_client.get("/admin/system/stats", headers=_auth_header("ops-admin", role="admin"))
    assert response.status_code == 200
    stats = response.json()
    assert stats["total_users"] == 1
    assert stats["total_transactions_today"] == 1
    assert stats["total_credits_spent_today"] == 0
    assert stats["average_credits_per_action"] == 0
