"""
eligibility.py
==============
Decides which catalog entries apply to a customer at a branch and moment.

A discount is eligible only if every rule passes:
  1. status is active
  2. date window       active_from <= moment.date() <= active_until (both inclusive)
  3. time of day       day_start <= moment.time() < day_end
  4. day of week       weekday in days_of_week
  5. branch            all_branches, or ctx.branch in branches
  6. audience          app-user-only discounts need ctx.is_app_user

Also hosts the staff-facing catalog browsing helpers (lifecycle status,
filtering, sorting and counts).
"""

import logging
from datetime import datetime
from typing import Iterable, List

from schemas import (
    CatalogFilter,
    CatalogStats,
    DiscountKind,
    DiscountStatus,
    EvaluationContext,
    LifecycleStatus,
    SortOrder,
    Weekday,
)

logger = logging.getLogger(__name__)


def ineligibility_reasons(discount, ctx: EvaluationContext) -> List[str]:
    """Return one reason per failed rule; an empty list means eligible."""
    reasons = []
    moment = ctx.moment

    if discount.status != DiscountStatus.active:
        reasons.append("Discount is not active")

    if not discount.always_active:
        today = moment.date()
        if today < discount.active_from:
            reasons.append(f"Discount starts on {discount.active_from.isoformat()}")
        elif today > discount.active_until:
            reasons.append(f"Discount ended on {discount.active_until.isoformat()}")

    if not discount.all_day:
        now = moment.time().replace(tzinfo=None)
        if not (discount.day_start <= now < discount.day_end):
            reasons.append(
                f"Only available between {discount.day_start.strftime('%H:%M')}"
                f" and {discount.day_end.strftime('%H:%M')}"
            )

    if not discount.all_week and Weekday.of(moment) not in discount.days_of_week:
        reasons.append(f"Not available on {Weekday.of(moment).value.capitalize()}")

    if not discount.all_branches and ctx.branch not in discount.branches:
        reasons.append(f"Not available at branch {ctx.branch}")

    if discount.app_users_only and not ctx.is_app_user:
        reasons.append("Only available to app users")

    return reasons


def is_eligible(discount, ctx: EvaluationContext) -> bool:
    return not ineligibility_reasons(discount, ctx)


def list_eligible(catalog: Iterable, ctx: EvaluationContext) -> List:
    """
    Filter a catalog snapshot down to the discounts applicable in ``ctx``.

    Pure: same catalog and context always give the same list, in catalog order.
    """
    eligible = []
    for discount in catalog:
        reasons = ineligibility_reasons(discount, ctx)
        if reasons:
            logger.debug("Discount %s not eligible: %s", discount.id, "; ".join(reasons))
        else:
            eligible.append(discount)
    return eligible


# ─────────────────────────── Catalog browsing ───────────────────────────

_STATUS_ORDER = {
    LifecycleStatus.active: 0,
    LifecycleStatus.upcoming: 1,
    LifecycleStatus.inactive: 2,
    LifecycleStatus.expired: 3,
}


def discount_status(discount, now: datetime) -> LifecycleStatus:
    """Lifecycle status shown to staff; the end date counts until end of day."""
    if discount.status == DiscountStatus.inactive:
        return LifecycleStatus.inactive
    if not discount.always_active:
        today = now.date()
        if today < discount.active_from:
            return LifecycleStatus.upcoming
        if today > discount.active_until:
            return LifecycleStatus.expired
    return LifecycleStatus.active


def _matches(discount, criteria: CatalogFilter, now: datetime) -> bool:
    if criteria.branch and not (discount.all_branches or criteria.branch in discount.branches):
        return False
    if criteria.status is not None and discount_status(discount, now) != criteria.status:
        return False
    if criteria.kind is not None and discount.kind != criteria.kind.value:
        return False
    if criteria.app_only and not discount.app_users_only:
        return False
    if criteria.all_branches and not discount.all_branches:
        return False
    if criteria.always_active and not discount.always_active:
        return False
    query = criteria.search.strip().lower()
    if query and query not in discount.name.lower() and query not in discount.description.lower():
        return False
    return True


def filter_catalog(catalog: Iterable, criteria: CatalogFilter, now: datetime) -> List:
    """Filter and sort the catalog for the staff management view."""
    matched = [d for d in catalog if _matches(d, criteria, now)]

    if criteria.sort == SortOrder.newest:
        return sorted(matched, key=lambda d: d.created_at, reverse=True)
    if criteria.sort == SortOrder.oldest:
        return sorted(matched, key=lambda d: d.created_at)
    if criteria.sort == SortOrder.alphabetical:
        return sorted(matched, key=lambda d: d.name.lower())
    return sorted(matched, key=lambda d: _STATUS_ORDER[discount_status(d, now)])


def catalog_stats(catalog: Iterable, now: datetime) -> CatalogStats:
    stats = CatalogStats()
    for discount in catalog:
        stats.total += 1
        status = discount_status(discount, now)
        stats.by_status[status] = stats.by_status.get(status, 0) + 1
        kind = DiscountKind(discount.kind)
        stats.by_kind[kind] = stats.by_kind.get(kind, 0) + 1
    return stats
