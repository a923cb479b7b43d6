"""
test_eligibility.py
===================
Eligibility filtering and the staff catalog browsing helpers.
"""

from datetime import datetime

from eligibility import (
    catalog_stats,
    discount_status,
    filter_catalog,
    ineligibility_reasons,
    is_eligible,
    list_eligible,
)
from schemas import (
    CatalogFilter,
    DiscountKind,
    EvaluationContext,
    LifecycleStatus,
    SortOrder,
    parse_discount,
)

# 2024-01-05 is a Friday
FRIDAY_EVENING = datetime(2024, 1, 5, 19, 30)


def deal(discount_id="deal", **overrides):
    payload = {"id": discount_id, "name": f"Deal {discount_id}", "kind": "percentage-deal", "percentage": 20}
    payload.update(overrides)
    return parse_discount(payload)


def context(moment=FRIDAY_EVENING, branch="Gulberg", is_app_user=False):
    return EvaluationContext(branch=branch, moment=moment, is_app_user=is_app_user)


WEEKEND_SPECIAL = deal(
    "weekend",
    always_active=False, active_from="2024-01-01", active_until="2024-01-31",
    all_day=False, day_start="17:00", day_end="22:00",
    all_week=False, days_of_week=["friday", "saturday", "sunday"],
    all_branches=False, branches=["Gulberg", "Johar Town"],
)


# ══════════════════════════════════════════════
#  Eligibility rules
# ══════════════════════════════════════════════

class TestEligibilityRules:

    def test_unrestricted_active_discount_is_eligible(self):
        assert is_eligible(deal(), context())

    def test_all_rules_pass(self):
        assert ineligibility_reasons(WEEKEND_SPECIAL, context()) == []

    def test_inactive_discount(self):
        assert not is_eligible(deal(status="inactive"), context())

    def test_before_start_date(self):
        reasons = ineligibility_reasons(WEEKEND_SPECIAL, context(moment=datetime(2023, 12, 29, 19, 30)))
        assert reasons == ["Discount starts on 2024-01-01"]

    def test_end_date_is_inclusive_until_end_of_day(self):
        last_day = datetime(2024, 1, 31, 23, 59)
        discount = deal(always_active=False, active_from="2024-01-01", active_until="2024-01-31")
        assert is_eligible(discount, context(moment=last_day))
        assert not is_eligible(discount, context(moment=datetime(2024, 2, 1, 0, 0)))

    def test_time_window_is_half_open(self):
        discount = deal(all_day=False, day_start="17:00", day_end="22:00")
        assert is_eligible(discount, context(moment=datetime(2024, 1, 5, 17, 0)))
        assert is_eligible(discount, context(moment=datetime(2024, 1, 5, 21, 59)))
        assert not is_eligible(discount, context(moment=datetime(2024, 1, 5, 22, 0)))
        assert not is_eligible(discount, context(moment=datetime(2024, 1, 5, 16, 59)))

    def test_zoned_time_window_is_compared_as_wall_clock(self):
        discount = deal(all_day=False, day_start="10:00:00Z", day_end="22:00:00Z")
        assert list_eligible([discount], context(moment=datetime(2024, 1, 5, 12, 0))) == [discount]
        assert list_eligible([discount], context(moment=datetime(2024, 1, 5, 23, 0))) == []

    def test_wrong_weekday(self):
        thursday = datetime(2024, 1, 4, 19, 30)
        reasons = ineligibility_reasons(WEEKEND_SPECIAL, context(moment=thursday))
        assert reasons == ["Not available on Thursday"]

    def test_wrong_branch(self):
        reasons = ineligibility_reasons(WEEKEND_SPECIAL, context(branch="DHA Phase 5"))
        assert reasons == ["Not available at branch DHA Phase 5"]

    def test_app_users_only(self):
        discount = deal(app_users_only=True)
        assert not is_eligible(discount, context(is_app_user=False))
        assert is_eligible(discount, context(is_app_user=True))

    def test_every_failed_rule_is_reported(self):
        discount = deal(status="inactive", app_users_only=True, all_branches=False, branches=["MM Alam Road"])
        assert len(ineligibility_reasons(discount, context())) == 3


class TestListEligible:

    def test_filters_catalog(self):
        catalog = [deal("a"), deal("b", status="inactive"), WEEKEND_SPECIAL, deal("c", app_users_only=True)]
        eligible = list_eligible(catalog, context())
        assert [d.id for d in eligible] == ["a", "weekend"]

    def test_is_pure(self):
        catalog = [deal("a"), WEEKEND_SPECIAL, deal("b", status="inactive")]
        ctx = context()
        first = list_eligible(catalog, ctx)
        second = list_eligible(catalog, ctx)
        assert first == second
        assert len(catalog) == 3

    def test_empty_catalog(self):
        assert list_eligible([], context()) == []


# ══════════════════════════════════════════════
#  Catalog browsing
# ══════════════════════════════════════════════

class TestLifecycleStatus:

    def test_statuses(self):
        discount = deal(always_active=False, active_from="2024-01-01", active_until="2024-01-31")
        assert discount_status(discount, datetime(2023, 12, 31)) == LifecycleStatus.upcoming
        assert discount_status(discount, datetime(2024, 1, 31, 23, 0)) == LifecycleStatus.active
        assert discount_status(discount, datetime(2024, 2, 1)) == LifecycleStatus.expired
        assert discount_status(deal(status="inactive"), FRIDAY_EVENING) == LifecycleStatus.inactive


class TestCatalogFilter:

    def catalog(self):
        return [
            deal("old", name="Happy Hour", created_at="2023-08-20T11:30:00"),
            deal("new", name="Weekend Special", description="Friday nights", created_at="2023-11-10T09:45:00",
                 app_users_only=True),
            parse_discount({
                "id": "loyal", "name": "Regular Rewards", "kind": "loyalty", "loyalty_kind": "fixed",
                "created_at": "2023-10-15T10:30:00", "all_branches": False, "branches": ["DHA Phase 5"],
                "tiers": [{"min_days": 1, "max_days": 30, "label": "Bronze", "amount": 100}],
            }),
            deal("gone", name="Autumn", created_at="2023-09-01T00:00:00",
                 always_active=False, active_from="2023-09-01", active_until="2023-09-30"),
        ]

    def test_default_sort_newest_first(self):
        result = filter_catalog(self.catalog(), CatalogFilter(), FRIDAY_EVENING)
        assert [d.id for d in result] == ["new", "loyal", "gone", "old"]

    def test_sort_oldest_and_alphabetical(self):
        oldest = filter_catalog(self.catalog(), CatalogFilter(sort=SortOrder.oldest), FRIDAY_EVENING)
        assert oldest[0].id == "old"
        alpha = filter_catalog(self.catalog(), CatalogFilter(sort=SortOrder.alphabetical), FRIDAY_EVENING)
        assert [d.name for d in alpha] == ["Autumn", "Happy Hour", "Regular Rewards", "Weekend Special"]

    def test_sort_by_status_puts_expired_last(self):
        result = filter_catalog(self.catalog(), CatalogFilter(sort=SortOrder.status), FRIDAY_EVENING)
        assert result[-1].id == "gone"

    def test_search_name_and_description(self):
        by_name = filter_catalog(self.catalog(), CatalogFilter(search="happy"), FRIDAY_EVENING)
        assert [d.id for d in by_name] == ["old"]
        by_description = filter_catalog(self.catalog(), CatalogFilter(search="FRIDAY"), FRIDAY_EVENING)
        assert [d.id for d in by_description] == ["new"]

    def test_kind_status_and_flags(self):
        loyalty = filter_catalog(self.catalog(), CatalogFilter(kind=DiscountKind.loyalty), FRIDAY_EVENING)
        assert [d.id for d in loyalty] == ["loyal"]
        expired = filter_catalog(self.catalog(), CatalogFilter(status=LifecycleStatus.expired), FRIDAY_EVENING)
        assert [d.id for d in expired] == ["gone"]
        app_only = filter_catalog(self.catalog(), CatalogFilter(app_only=True), FRIDAY_EVENING)
        assert [d.id for d in app_only] == ["new"]
        everywhere = filter_catalog(self.catalog(), CatalogFilter(all_branches=True), FRIDAY_EVENING)
        assert "loyal" not in [d.id for d in everywhere]
        always = filter_catalog(self.catalog(), CatalogFilter(always_active=True), FRIDAY_EVENING)
        assert "gone" not in [d.id for d in always]

    def test_branch_filter_keeps_all_branch_discounts(self):
        result = filter_catalog(self.catalog(), CatalogFilter(branch="Gulberg"), FRIDAY_EVENING)
        assert "loyal" not in [d.id for d in result]
        assert len(result) == 3

    def test_stats(self):
        stats = catalog_stats(self.catalog(), FRIDAY_EVENING)
        assert stats.total == 4
        assert stats.by_status[LifecycleStatus.active] == 3
        assert stats.by_status[LifecycleStatus.expired] == 1
        assert stats.by_kind[DiscountKind.percentage_deal] == 3
        assert stats.by_kind[DiscountKind.loyalty] == 1
