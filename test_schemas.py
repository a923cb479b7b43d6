"""
test_schemas.py
===============
Catalog model construction and invariants.
"""

from datetime import date, datetime, time

import pytest

from schemas import (
    BankDiscount,
    EvaluationContext,
    FixedPriceDeal,
    InvalidDiscount,
    PercentageDeal,
    PercentageLoyalty,
    ReferralLoyalty,
    Selection,
    VisitBasedLoyalty,
    Weekday,
    load_catalog,
    parse_discount,
    CustomerProfile,
)


def base(**overrides):
    payload = {"id": "d-1", "name": "Test discount"}
    payload.update(overrides)
    return payload


def percentage_loyalty(ranges, **overrides):
    return base(kind="loyalty", loyalty_kind="percentage", ranges=ranges, **overrides)


def fixed_loyalty(tiers, **overrides):
    return base(kind="loyalty", loyalty_kind="fixed", tiers=tiers, **overrides)


def visit_loyalty(milestones, **overrides):
    return base(kind="loyalty", loyalty_kind="visit-based", milestones=milestones, **overrides)


# ══════════════════════════════════════════════
#  Variant construction
# ══════════════════════════════════════════════

class TestVariants:

    def test_percentage_deal(self):
        discount = parse_discount(base(kind="percentage-deal", percentage=20, cap_amount=500))
        assert isinstance(discount, PercentageDeal)
        assert discount.percentage == 20
        assert discount.cap_amount == 500

    def test_bank_discount(self):
        discount = parse_discount(base(
            kind="bank-discount", percentage=15,
            cards=[{"bank_id": "hbl", "bank_name": "HBL", "card_type_ids": ["visa", "master"]}],
        ))
        assert isinstance(discount, BankDiscount)
        assert discount.card_for("hbl").card_type_ids == frozenset({"visa", "master"})
        assert discount.card_for("ubl") is None

    def test_fixed_price_deal(self):
        discount = parse_discount(base(
            kind="fixed-price-deal",
            price_options=[{"id": "combo-1", "label": "Lunch Combo A", "price": 599}],
        ))
        assert isinstance(discount, FixedPriceDeal)
        assert discount.option_for("combo-1").price == 599

    def test_nested_loyalty_kinds(self):
        discount = parse_discount(visit_loyalty([{"visits": 5, "label": "M1", "amount": 100}]))
        assert isinstance(discount, VisitBasedLoyalty)

        referral = parse_discount(base(
            kind="loyalty", loyalty_kind="referral",
            referrer_benefit={"kind": "fixed", "amount": 300},
            referred_benefit={"kind": "percentage", "percentage": 10},
            cap_amount=400,
        ))
        assert isinstance(referral, ReferralLoyalty)
        assert referral.referred_benefit.percentage == 10

    def test_discounts_are_immutable(self):
        discount = parse_discount(base(kind="percentage-deal", percentage=20))
        with pytest.raises(Exception):
            discount.percentage = 50

    def test_day_names_are_case_insensitive(self):
        discount = parse_discount(base(
            kind="percentage-deal", percentage=10, all_week=False, days_of_week=["Friday", "saturday"],
        ))
        assert discount.days_of_week == frozenset({Weekday.friday, Weekday.saturday})

    def test_already_parsed_discount_passes_through(self):
        discount = parse_discount(base(kind="percentage-deal", percentage=20))
        assert parse_discount(discount) is discount


# ══════════════════════════════════════════════
#  Field-level validation
# ══════════════════════════════════════════════

class TestFieldValidation:

    def test_unknown_kind(self):
        with pytest.raises(InvalidDiscount) as exc:
            parse_discount(base(kind="super-sale"))
        assert exc.value.invariant == "field"

    def test_percentage_over_100(self):
        with pytest.raises(InvalidDiscount) as exc:
            parse_discount(base(kind="percentage-deal", percentage=110))
        assert exc.value.field == "percentage"

    def test_percentage_deal_needs_at_least_one_percent(self):
        with pytest.raises(InvalidDiscount):
            parse_discount(base(kind="percentage-deal", percentage=0))

    def test_price_below_one_reports_tier_index(self):
        with pytest.raises(InvalidDiscount) as exc:
            parse_discount(base(
                kind="fixed-price-deal",
                price_options=[
                    {"id": "a", "label": "A", "price": 500},
                    {"id": "b", "label": "B", "price": 0},
                ],
            ))
        assert exc.value.tier_index == 1
        assert exc.value.field == "price_options.1.price"

    def test_fields_of_other_kinds_are_rejected(self):
        with pytest.raises(InvalidDiscount):
            parse_discount(percentage_loyalty(
                [{"min_days": 1, "max_days": 30, "percentage": 10}],
                milestones=[{"visits": 5, "label": "M1", "amount": 100}],
            ))

    def test_bank_card_needs_card_types(self):
        with pytest.raises(InvalidDiscount):
            parse_discount(base(
                kind="bank-discount", percentage=15, cards=[{"bank_id": "hbl", "card_type_ids": []}],
            ))

    def test_referral_percentage_benefit_needs_percentage(self):
        with pytest.raises(InvalidDiscount):
            parse_discount(base(
                kind="loyalty", loyalty_kind="referral",
                referrer_benefit={"kind": "percentage"},
                referred_benefit={"kind": "fixed", "amount": 100},
            ))


# ══════════════════════════════════════════════
#  Tier invariants
# ══════════════════════════════════════════════

class TestTierInvariants:

    def test_contiguous_ranges_accepted(self):
        discount = parse_discount(percentage_loyalty([
            {"min_days": 1, "max_days": 30, "percentage": 15},
            {"min_days": 31, "max_days": 60, "percentage": 10},
            {"min_days": 61, "max_days": 120, "percentage": 10},
        ]))
        assert isinstance(discount, PercentageLoyalty)
        assert len(discount.ranges) == 3

    def test_empty_ranges(self):
        with pytest.raises(InvalidDiscount) as exc:
            parse_discount(percentage_loyalty([]))
        assert exc.value.invariant == "empty_tiers"

    def test_max_days_must_exceed_min_days(self):
        with pytest.raises(InvalidDiscount) as exc:
            parse_discount(fixed_loyalty([{"min_days": 10, "max_days": 10, "label": "A", "amount": 50}]))
        assert exc.value.invariant == "range_span"
        assert exc.value.tier_index == 0

    def test_gap_between_ranges(self):
        with pytest.raises(InvalidDiscount) as exc:
            parse_discount(fixed_loyalty([
                {"min_days": 1, "max_days": 30, "label": "Bronze", "amount": 100},
                {"min_days": 35, "max_days": 60, "label": "Silver", "amount": 150},
            ]))
        assert exc.value.invariant == "range_contiguity"
        assert exc.value.tier_index == 1

    def test_overlapping_ranges(self):
        with pytest.raises(InvalidDiscount) as exc:
            parse_discount(fixed_loyalty([
                {"min_days": 1, "max_days": 30, "label": "Bronze", "amount": 100},
                {"min_days": 20, "max_days": 60, "label": "Silver", "amount": 150},
            ]))
        assert exc.value.invariant == "range_contiguity"

    def test_unsorted_ranges(self):
        with pytest.raises(InvalidDiscount) as exc:
            parse_discount(fixed_loyalty([
                {"min_days": 31, "max_days": 60, "label": "Silver", "amount": 150},
                {"min_days": 1, "max_days": 30, "label": "Bronze", "amount": 100},
            ]))
        assert exc.value.invariant == "range_order"

    def test_percentage_may_not_grow_with_later_ranges(self):
        with pytest.raises(InvalidDiscount) as exc:
            parse_discount(percentage_loyalty([
                {"min_days": 1, "max_days": 30, "percentage": 5},
                {"min_days": 31, "max_days": 60, "percentage": 10},
            ]))
        assert exc.value.invariant == "range_monotonicity"
        assert exc.value.tier_index == 1

    def test_fixed_amounts_may_grow(self):
        discount = parse_discount(fixed_loyalty([
            {"min_days": 1, "max_days": 30, "label": "Bronze", "amount": 100},
            {"min_days": 31, "max_days": 60, "label": "Silver", "amount": 150},
        ]))
        assert discount.tiers[1].amount == 150

    def test_milestones_strictly_increasing(self):
        with pytest.raises(InvalidDiscount) as exc:
            parse_discount(visit_loyalty([
                {"visits": 5, "label": "M1", "amount": 100},
                {"visits": 5, "label": "M2", "amount": 250},
            ]))
        assert exc.value.invariant == "milestone_order"
        assert exc.value.tier_index == 1


# ══════════════════════════════════════════════
#  Schedule / audience invariants
# ══════════════════════════════════════════════

class TestScheduleInvariants:

    def test_days_of_week_required_when_not_all_week(self):
        with pytest.raises(InvalidDiscount) as exc:
            parse_discount(base(kind="percentage-deal", percentage=10, all_week=False))
        assert exc.value.invariant == "days_of_week"

    def test_day_start_before_day_end(self):
        with pytest.raises(InvalidDiscount) as exc:
            parse_discount(base(
                kind="percentage-deal", percentage=10, all_day=False, day_start="22:00", day_end="17:00",
            ))
        assert exc.value.invariant == "day_window"

    def test_date_window_required_when_not_always_active(self):
        with pytest.raises(InvalidDiscount) as exc:
            parse_discount(base(kind="percentage-deal", percentage=10, always_active=False))
        assert exc.value.invariant == "active_window"

    def test_date_window_order(self):
        with pytest.raises(InvalidDiscount) as exc:
            parse_discount(base(
                kind="percentage-deal", percentage=10, always_active=False,
                active_from="2024-02-01", active_until="2024-01-01",
            ))
        assert exc.value.invariant == "active_window"

    def test_single_day_window_allowed(self):
        discount = parse_discount(base(
            kind="percentage-deal", percentage=10, always_active=False,
            active_from="2024-01-01", active_until="2024-01-01",
        ))
        assert discount.active_from == date(2024, 1, 1)

    def test_branches_required_when_not_all_branches(self):
        with pytest.raises(InvalidDiscount) as exc:
            parse_discount(base(kind="percentage-deal", percentage=10, all_branches=False))
        assert exc.value.invariant == "branches"

    def test_zoned_day_times_become_wall_clock(self):
        discount = parse_discount(base(
            kind="percentage-deal", percentage=20, all_day=False, day_start="10:00:00Z", day_end="22:00:00+05:00",
        ))
        assert discount.day_start == time(10, 0)
        assert discount.day_end == time(22, 0)
        assert discount.day_start.tzinfo is None

    def test_schedule_fields_parsed(self):
        discount = parse_discount(base(
            kind="percentage-deal", percentage=20, all_day=False, day_start="17:00", day_end="22:00",
            all_branches=False, branches=["Gulberg"],
        ))
        assert discount.day_start == time(17, 0)
        assert discount.branches == frozenset({"Gulberg"})


# ══════════════════════════════════════════════
#  Catalog ingestion & context
# ══════════════════════════════════════════════

class TestCatalogIngestion:

    def test_malformed_entries_are_excluded(self, caplog):
        payloads = [
            base(id="ok", kind="percentage-deal", percentage=20),
            base(id="broken", kind="percentage-deal", percentage=20, all_branches=False),
        ]
        valid, rejected = load_catalog(payloads)
        assert [d.id for d in valid] == ["ok"]
        assert rejected[0][0] == "broken"
        assert rejected[0][1].invariant == "branches"
        assert "broken" in caplog.text

    def test_unknown_customer_context_is_new_customer(self):
        ctx = EvaluationContext.for_customer(None, "Gulberg", datetime(2024, 1, 5, 12, 0))
        assert ctx.loyalty_days == 0
        assert ctx.visit_count == 0
        assert ctx.is_app_user is False

    def test_known_customer_context(self):
        profile = CustomerProfile(phone="03001234567", loyalty_days=45, visit_count=7, is_app_user=True)
        ctx = EvaluationContext.for_customer(profile, "Gulberg", datetime(2024, 1, 5, 12, 0))
        assert (ctx.loyalty_days, ctx.visit_count, ctx.is_app_user) == (45, 7, True)

    def test_selection_sub_option(self):
        assert Selection(price_option_id="combo-1").sub_option == "combo-1"
        assert Selection(bank_id="hbl", card_type_id="visa").sub_option == "hbl:visa"
        assert Selection(bank_id="hbl").sub_option == "hbl"
        assert Selection().sub_option is None
