from datetime import datetime, timezone
from decimal import Decimal

import pytest

from models.pricing_rule import PricingRule
from services.billing_period import add_months, next_period_covering, period_key
from services.credit_errors import InvalidPricingRule, InvalidQuantity, require_positive_int
from services.pricing import compute_quote, normalize_bulk_discounts, round_half_up, select_bulk_discount


UNLOCK_TIERS = [
    {"min_quantity": 10, "discount_percentage": 5},
    {"min_quantity": 50, "discount_percentage": 15},
]


def _rule(credits_per_action=25, free_allowance=0, bulk_discounts=None):
    return PricingRule(
        action_type="influencer_unlock",
        credits_per_action=credits_per_action,
        free_allowance_per_month=free_allowance,
        bulk_discounts=bulk_discounts or [],
    )


def test_select_bulk_discount_picks_largest_threshold_reached():
    assert select_bulk_discount(UNLOCK_TIERS, 60) == 15
    assert select_bulk_discount(UNLOCK_TIERS, 50) == 15
    assert select_bulk_discount(UNLOCK_TIERS, 49) == 5
    assert select_bulk_discount(UNLOCK_TIERS, 9) == 0
    assert select_bulk_discount([], 500) == 0


def test_select_bulk_discount_ignores_list_order():
    assert select_bulk_discount(list(reversed(UNLOCK_TIERS)), 60) == 15


def test_compute_quote_applies_allowance_before_discount():
    quote = compute_quote(_rule(credits_per_action=2, free_allowance=5), 8, 5)
    assert quote.free_quantity == 5
    assert quote.billable_quantity == 3
    assert quote.gross_credits == 6
    assert quote.total_credits == 6
    assert quote.bulk_savings == 0


def test_compute_quote_discount_tier_follows_billable_quantity():
    # 14 requested, 5 free: 9 billable stays below the first tier.
    quote = compute_quote(_rule(free_allowance=5, bulk_discounts=UNLOCK_TIERS), 14, 5)
    assert quote.billable_quantity == 9
    assert quote.discount_percentage == 0
    assert quote.total_credits == 225


def test_compute_quote_rounds_half_up():
    quote = compute_quote(_rule(bulk_discounts=UNLOCK_TIERS), 10, 0)
    assert quote.gross_credits == 250
    assert quote.discount_percentage == 5
    assert quote.total_credits == 238
    assert quote.bulk_savings == 12


def test_compute_quote_top_tier():
    quote = compute_quote(_rule(bulk_discounts=UNLOCK_TIERS), 60, 0)
    assert quote.discount_percentage == 15
    assert quote.total_credits == 1275


def test_compute_quote_fully_free_costs_nothing():
    quote = compute_quote(_rule(free_allowance=5, bulk_discounts=UNLOCK_TIERS), 3, 5)
    assert quote.billable_quantity == 0
    assert quote.total_credits == 0
    assert quote.free_allowance_remaining == 5


@pytest.mark.parametrize("bad_quantity", [0, -1, 1.5, "3", True, None])
def test_compute_quote_rejects_non_positive_or_non_integer_quantity(bad_quantity):
    with pytest.raises(InvalidQuantity):
        compute_quote(_rule(), bad_quantity, 0)


def test_require_positive_int_names_the_field():
    with pytest.raises(InvalidQuantity) as exc_info:
        require_positive_int(0, "credits")
    assert "credits" in exc_info.value.message
    assert exc_info.value.status_code == 422


def test_round_half_up_is_not_bankers_rounding():
    assert round_half_up(Decimal("2.5")) == 3
    assert round_half_up(Decimal("3.5")) == 4
    assert round_half_up(Decimal("4.49")) == 4


def test_normalize_bulk_discounts_accepts_valid_tiers():
    assert normalize_bulk_discounts(UNLOCK_TIERS) == UNLOCK_TIERS
    assert normalize_bulk_discounts(None) == []


@pytest.mark.parametrize(
    "tiers",
    [
        [{"min_quantity": 50, "discount_percentage": 15}, {"min_quantity": 10, "discount_percentage": 5}],
        [{"min_quantity": 10, "discount_percentage": 150}],
        [{"min_quantity": 0, "discount_percentage": 5}],
        [{"min_quantity": True, "discount_percentage": 5}],
        [{"min_quantity": 10}],
        ["10:5"],
    ],
)
def test_normalize_bulk_discounts_rejects_malformed_tiers(tiers):
    with pytest.raises(InvalidPricingRule):
        normalize_bulk_discounts(tiers)


def test_add_months_clamps_to_month_end():
    jan_31 = datetime(2026, 1, 31, tzinfo=timezone.utc)
    assert add_months(jan_31, 1) == datetime(2026, 2, 28, tzinfo=timezone.utc)
    assert add_months(jan_31, 13) == datetime(2027, 2, 28, tzinfo=timezone.utc)
    assert add_months(datetime(2026, 3, 15, tzinfo=timezone.utc), -3) == datetime(2025, 12, 15, tzinfo=timezone.utc)


def test_next_period_covering_skips_missed_cycles():
    previous_end = datetime(2026, 1, 10, tzinfo=timezone.utc)
    start, end = next_period_covering(previous_end, datetime(2026, 3, 20, tzinfo=timezone.utc))
    assert start == datetime(2026, 3, 10, tzinfo=timezone.utc)
    assert end == datetime(2026, 4, 10, tzinfo=timezone.utc)


def test_period_key_treats_naive_values_as_utc():
    assert period_key(datetime(2026, 7, 1, 0, 30)) == "2026-07"
