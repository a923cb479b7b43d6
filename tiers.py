"""
tiers.py
========
Tier selection for loyalty discounts.

- percentage / fixed loyalty: the range with min_days <= loyalty_days <= max_days.
  Ranges are contiguous and non-overlapping, so at most one can match.
- visit-based loyalty: the highest milestone the customer has reached
  (visits <= visit_count). Lower milestones are subsumed, never stacked.
- referral loyalty has no tiers.
"""

from typing import Optional, Sequence, Tuple, Union

from schemas import (
    EvaluationContext,
    FixedLoyalty,
    FixedTier,
    PercentageLoyalty,
    PercentageRange,
    VisitBasedLoyalty,
    VisitMilestone,
)

DayRange = Union[PercentageRange, FixedTier]


def select_range(ranges: Sequence[DayRange], loyalty_days: int) -> Optional[DayRange]:
    """Return the range covering ``loyalty_days``, or None past the last range."""
    for candidate in ranges:
        if candidate.min_days <= loyalty_days <= candidate.max_days:
            return candidate
        if candidate.min_days > loyalty_days:
            # Sorted by min_days, nothing further can match
            break
    return None


def select_milestone(milestones: Sequence[VisitMilestone], visit_count: int) -> Optional[VisitMilestone]:
    """Return the highest milestone with visits <= ``visit_count``."""
    reached = [m for m in milestones if m.visits <= visit_count]
    if not reached:
        return None
    return max(reached, key=lambda m: m.visits)


def next_milestone(milestones: Sequence[VisitMilestone],
                   visit_count: int) -> Optional[Tuple[VisitMilestone, int]]:
    """Return (next unreached milestone, visits still needed), or None when all are reached."""
    upcoming = [m for m in milestones if m.visits > visit_count]
    if not upcoming:
        return None
    target = min(upcoming, key=lambda m: m.visits)
    return target, target.visits - visit_count


def coverage(ranges: Sequence[DayRange]) -> Tuple[int, int]:
    """First and last loyalty day covered by a contiguous range list."""
    return ranges[0].min_days, ranges[-1].max_days


def select_tier(discount, ctx: EvaluationContext):
    """
    Pick the applicable tier of a loyalty discount for this customer.

    Returns the matching PercentageRange / FixedTier / VisitMilestone, or None
    ("no tier"). Discounts without tiers also return None.
    """
    if isinstance(discount, PercentageLoyalty):
        return select_range(discount.ranges, ctx.loyalty_days)
    if isinstance(discount, FixedLoyalty):
        return select_range(discount.tiers, ctx.loyalty_days)
    if isinstance(discount, VisitBasedLoyalty):
        return select_milestone(discount.milestones, ctx.visit_count)
    return None
