from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.exc import IntegrityError

from services.accounts import archive_account, provision_account
from services.allowances import reset_allowance
from services.billing_period import as_utc
from services.credit_errors import SubscriptionStateConflict
from services.credit_reports import reconcile
from services.ledger import fetch_entries
from services.pricing import commit, upsert_pricing_rule
from services.subscriptions import (
    activate_trial,
    cancel,
    downgrade,
    effective_tier,
    get_current_subscription,
    mark_past_due,
    prorated_upgrade_credits,
    recover_payment,
    rollover,
    run_due_rollovers_service,
    start_subscription,
    upgrade,
)
from services.wallet import get_wallet


NOW = datetime(2026, 3, 10, 9, 0, tzinfo=timezone.utc)
PERIOD_END = datetime(2026, 4, 10, 9, 0, tzinfo=timezone.utc)
USER_ID = "creator-sub"


@pytest.mark.asyncio
async def test_rollover_grants_credits_and_resets_allowance(ledger_db):
    await provision_account(USER_ID, ledger_db, now=NOW)
    await upsert_pricing_rule(
        ledger_db,
        action_type="profile_posts",
        credits_per_action=5,
        free_allowance_per_month=2,
        effective_from=datetime(2020, 1, 1, tzinfo=timezone.utc),
    )
    await commit(USER_ID, "profile_posts", 4, ledger_db, now=NOW)

    result = await rollover(USER_ID, ledger_db, now=PERIOD_END)

    assert result["applied"] is True
    assert result["credits_expired"] == 90
    assert result["credits_granted"] == 100
    assert result["allowances_reset"] == 1
    assert result["balance_after"] == 100
    assert result["subscription"]["current_period_start"] == PERIOD_END.isoformat()

    wallet = await get_wallet(USER_ID, ledger_db)
    assert wallet.balance == 100
    entries = await fetch_entries(USER_ID, ledger_db)
    assert [entry.transaction_type for entry in entries] == ["earned", "spent", "expired", "earned"]
    assert entries[-1].reference_id == "rollover:2026-04"

    # A fresh cycle brings the free allowance back.
    charged = await commit(USER_ID, "profile_posts", 2, ledger_db, now=PERIOD_END + timedelta(hours=1))
    assert charged["credits_charged"] == 0


@pytest.mark.asyncio
async def test_duplicate_rollover_trigger_is_a_no_op(ledger_db):
    await provision_account(USER_ID, ledger_db, now=NOW)

    first = await rollover(USER_ID, ledger_db, now=PERIOD_END)
    second = await rollover(USER_ID, ledger_db, now=PERIOD_END)

    assert first["applied"] is True
    assert second["applied"] is False
    wallet = await get_wallet(USER_ID, ledger_db)
    assert wallet.balance == 100
    assert len(await fetch_entries(USER_ID, ledger_db)) == 3


@pytest.mark.asyncio
async def test_rollover_before_period_end_changes_nothing(ledger_db):
    await provision_account(USER_ID, ledger_db, now=NOW)
    result = await rollover(USER_ID, ledger_db, now=PERIOD_END - timedelta(seconds=1))
    assert result["applied"] is False
    assert len(await fetch_entries(USER_ID, ledger_db)) == 1


@pytest.mark.asyncio
async def test_downgrade_takes_effect_at_rollover(ledger_db):
    await provision_account(USER_ID, ledger_db, tier="premium", now=NOW)

    scheduled = await downgrade(USER_ID, "standard", ledger_db)
    assert scheduled["subscription"]["tier"] == "premium"
    assert scheduled["subscription"]["pending_tier"] == "standard"
    assert scheduled["effective_at"] == PERIOD_END.isoformat()

    result = await rollover(USER_ID, ledger_db, now=PERIOD_END)
    assert result["previous_tier"] == "premium"
    assert result["subscription"]["tier"] == "standard"
    assert result["subscription"]["pending_tier"] is None
    assert result["credits_granted"] == 2000
    assert result["balance_after"] == 2000


@pytest.mark.asyncio
async def test_cancel_at_period_end_falls_back_to_free(ledger_db):
    await provision_account(USER_ID, ledger_db, tier="standard", now=NOW)
    await cancel(USER_ID, ledger_db, at_period_end=True, now=NOW)

    subscription = await get_current_subscription(USER_ID, ledger_db)
    assert effective_tier(subscription) == "standard"

    result = await rollover(USER_ID, ledger_db, now=PERIOD_END)
    assert result["subscription"]["tier"] == "free"
    assert result["subscription"]["status"] == "active"
    assert result["credits_granted"] == 100

    current = await get_current_subscription(USER_ID, ledger_db)
    assert current.tier == "free"
    assert current.status == "active"


@pytest.mark.asyncio
async def test_immediate_cancel_falls_back_to_free_on_same_cycle(ledger_db):
    await provision_account(USER_ID, ledger_db, tier="standard", now=NOW)
    cancelled = await cancel(USER_ID, ledger_db, at_period_end=False, now=NOW)
    assert cancelled["subscription"]["status"] == "cancelled"
    assert cancelled["current_subscription"]["tier"] == "free"
    assert cancelled["current_subscription"]["status"] == "active"

    subscription = await get_current_subscription(USER_ID, ledger_db)
    assert subscription.tier == "free"
    assert subscription.status == "active"
    assert as_utc(subscription.current_period_start) == NOW
    assert as_utc(subscription.current_period_end) == PERIOD_END

    with pytest.raises(SubscriptionStateConflict):
        await cancel(USER_ID, ledger_db, at_period_end=False, now=NOW)

    upgraded = await upgrade(USER_ID, "premium", ledger_db, now=NOW)
    assert upgraded["subscription"]["tier"] == "premium"
    assert upgraded["prorated_credits"] == 5900


@pytest.mark.asyncio
async def test_upgrade_credits_prorated_difference(ledger_db):
    await provision_account(USER_ID, ledger_db, now=NOW)

    halfway = datetime(2026, 3, 25, 21, 0, tzinfo=timezone.utc)
    result = await upgrade(USER_ID, "standard", ledger_db, now=halfway)

    assert result["prorated_credits"] == 950
    assert result["balance_after"] == 1050
    assert result["subscription"]["tier"] == "standard"
    entries = await fetch_entries(USER_ID, ledger_db)
    assert entries[-1].transaction_type == "earned"
    assert entries[-1].amount == 950


def test_prorated_upgrade_credits_edges():
    assert prorated_upgrade_credits("free", "premium", NOW, PERIOD_END, NOW) == 5900
    assert prorated_upgrade_credits("free", "premium", NOW, PERIOD_END, PERIOD_END) == 0
    assert prorated_upgrade_credits("premium", "standard", NOW, PERIOD_END, NOW) == 0


@pytest.mark.asyncio
async def test_tier_changes_must_move_in_the_right_direction(ledger_db):
    await provision_account(USER_ID, ledger_db, tier="standard", now=NOW)

    with pytest.raises(SubscriptionStateConflict):
        await upgrade(USER_ID, "standard", ledger_db, now=NOW)
    with pytest.raises(SubscriptionStateConflict):
        await upgrade(USER_ID, "free", ledger_db, now=NOW)
    with pytest.raises(SubscriptionStateConflict):
        await downgrade(USER_ID, "premium", ledger_db)
    with pytest.raises(SubscriptionStateConflict):
        await upgrade(USER_ID, "platinum", ledger_db, now=NOW)


@pytest.mark.asyncio
async def test_past_due_blocks_upgrade_until_recovered(ledger_db):
    await provision_account(USER_ID, ledger_db, tier="standard", now=NOW)

    await mark_past_due(USER_ID, ledger_db)
    with pytest.raises(SubscriptionStateConflict):
        await upgrade(USER_ID, "premium", ledger_db, now=NOW)

    recovered = await recover_payment(USER_ID, ledger_db)
    assert recovered["subscription"]["status"] == "active"
    result = await upgrade(USER_ID, "premium", ledger_db, now=NOW)
    assert result["subscription"]["tier"] == "premium"


@pytest.mark.asyncio
async def test_trial_lifecycle(ledger_db):
    await provision_account(USER_ID, ledger_db, tier="standard", trial=True, now=NOW)
    subscription = await get_current_subscription(USER_ID, ledger_db)
    assert subscription.status == "trialing"

    activated = await activate_trial(USER_ID, ledger_db)
    assert activated["subscription"]["status"] == "active"
    with pytest.raises(SubscriptionStateConflict):
        await activate_trial(USER_ID, ledger_db)


@pytest.mark.asyncio
async def test_unconverted_trial_lapses_to_free_at_rollover(ledger_db):
    await provision_account(USER_ID, ledger_db, tier="standard", trial=True, now=NOW)

    result = await rollover(USER_ID, ledger_db, now=NOW + timedelta(days=14))
    assert result["applied"] is True
    assert result["previous_tier"] == "standard"
    assert result["subscription"]["tier"] == "free"
    assert result["credits_expired"] == 2000
    assert result["balance_after"] == 100


@pytest.mark.asyncio
async def test_run_due_rollovers_processes_each_due_account_once(ledger_sessions):
    async with ledger_sessions() as db:
        await provision_account("creator-a", db, now=NOW)
        await provision_account("creator-b", db, tier="standard", now=NOW)
        await provision_account("creator-c", db, now=NOW + timedelta(days=5))

    tick = PERIOD_END + timedelta(hours=1)
    result = await run_due_rollovers_service(now=tick, session_factory=ledger_sessions)
    assert result == {"due_count": 2, "applied_count": 2, "skipped_count": 0, "failed_user_ids": []}

    again = await run_due_rollovers_service(now=tick, session_factory=ledger_sessions)
    assert again["due_count"] == 0

    async with ledger_sessions() as db:
        wallet = await get_wallet("creator-b", db)
        assert wallet.balance == 2000


@pytest.mark.asyncio
async def test_run_due_rollovers_skips_archived_wallets(ledger_sessions):
    async with ledger_sessions() as db:
        await provision_account("creator-live", db, now=NOW)
        await provision_account("creator-gone", db, now=NOW)
        await archive_account("creator-gone", db)

    tick = PERIOD_END + timedelta(hours=1)
    result = await run_due_rollovers_service(now=tick, session_factory=ledger_sessions)
    assert result == {"due_count": 1, "applied_count": 1, "skipped_count": 0, "failed_user_ids": []}


async def _seed_rule(db):
    await upsert_pricing_rule(
        db,
        action_type="profile_posts",
        credits_per_action=5,
        free_allowance_per_month=2,
        effective_from=datetime(2020, 1, 1, tzinfo=timezone.utc),
    )


@pytest.mark.asyncio
async def test_failed_rollover_leaves_cycle_untouched(ledger_db, monkeypatch):
    await provision_account(USER_ID, ledger_db, now=NOW)
    await _seed_rule(ledger_db)

    async def _fail_reset(*args, **kwargs):
        raise RuntimeError("allowance store unavailable")

    monkeypatch.setattr("services.subscriptions.reset_allowance", _fail_reset)
    with pytest.raises(RuntimeError):
        await rollover(USER_ID, ledger_db, now=PERIOD_END)

    wallet = await get_wallet(USER_ID, ledger_db)
    assert wallet.balance == 100
    assert as_utc(wallet.cycle_end) == PERIOD_END
    assert len(await fetch_entries(USER_ID, ledger_db)) == 1
    subscription = await get_current_subscription(USER_ID, ledger_db)
    assert as_utc(subscription.current_period_end) == PERIOD_END
    assert (await reconcile(USER_ID, ledger_db))["consistent"] is True

    monkeypatch.undo()
    result = await rollover(USER_ID, ledger_db, now=PERIOD_END)
    assert result["applied"] is True
    assert result["balance_after"] == 100


@pytest.mark.asyncio
async def test_run_due_rollovers_retries_failed_account_as_a_whole(ledger_sessions, monkeypatch):
    async with ledger_sessions() as db:
        await provision_account(USER_ID, db, now=NOW)
        await _seed_rule(db)

    calls = {"count": 0}

    async def _flaky_reset(db, user_id, action_type, period_start):
        calls["count"] += 1
        if calls["count"] == 1:
            raise RuntimeError("transient failure")
        return await reset_allowance(db, user_id, action_type, period_start)

    monkeypatch.setattr("services.subscriptions.reset_allowance", _flaky_reset)
    result = await run_due_rollovers_service(now=PERIOD_END + timedelta(hours=1), session_factory=ledger_sessions)
    assert result == {"due_count": 1, "applied_count": 1, "skipped_count": 0, "failed_user_ids": []}

    async with ledger_sessions() as db:
        wallet = await get_wallet(USER_ID, db)
        assert wallet.balance == 100
        assert as_utc(wallet.cycle_end) == datetime(2026, 5, 10, 9, 0, tzinfo=timezone.utc)
        grants = await fetch_entries(USER_ID, db, transaction_types=["earned"])
        assert [entry.reference_type for entry in grants] == ["subscription", "rollover"]
        assert (await reconcile(USER_ID, db))["consistent"] is True


@pytest.mark.asyncio
async def test_account_holds_one_live_subscription(ledger_db):
    await provision_account(USER_ID, ledger_db, tier="standard", now=NOW)
    await cancel(USER_ID, ledger_db, at_period_end=False, now=NOW)

    start_subscription(ledger_db, USER_ID, tier="premium", now=NOW)
    with pytest.raises(IntegrityError):
        await ledger_db.commit()
    await ledger_db.rollback()

    subscription = await get_current_subscription(USER_ID, ledger_db)
    assert subscription.tier == "free"
