"""
discount_engine.py
==================
Core business logic for turning one discount into a monetary benefit for one order.

Implemented Cases:
------------------
1. percentage-deal:
   - percentage of the bill, limited by the optional cap.

2. bank-discount:
   - same arithmetic as percentage-deal, but only once the customer's bank
     (and card type, when given) is selected and belongs to the discount.
     The card does not change the rate, it only gates eligibility.

3. fixed-price-deal:
   - the selected option's price replaces the bill. If the deal price is not
     lower than the bill, the benefit is zero and flagged (not an error).

4. loyalty:
   - percentage:  tier by loyalty days, then capped percentage.
   - fixed:       tier by loyalty days, flat amount limited to the bill.
   - visit-based: highest reached milestone, flat amount limited to the bill.
   - referral:    the referred customer's benefit, once the referrer is verified.
                  The referrer's own reward is recorded separately.

Every case returns either a BenefitResult or a CalculationError value; missing
preconditions are never silently turned into a zero discount. A customer whose
loyalty days fall outside every range gets NoTierMatched (no default rate).
"""

from typing import Optional, Tuple, Union

from config import settings
from schemas import (
    BankDiscount,
    BenefitResult,
    CalculationError,
    CalculationErrorKind,
    EvaluationContext,
    FixedBenefit,
    FixedLoyalty,
    FixedPriceDeal,
    PercentageDeal,
    PercentageLoyalty,
    ReferralLoyalty,
    Selection,
    VisitBasedLoyalty,
)
from tiers import select_tier

Outcome = Union[BenefitResult, CalculationError]


def _fmt(value: float) -> str:
    return f"{value:.2f}".rstrip("0").rstrip(".")


def _money(value: float) -> str:
    return f"{settings.CURRENCY_LABEL} {_fmt(value)}"


def _percentage_of(order_amount: float, percentage: float,
                   cap_amount: Optional[float]) -> Tuple[float, bool]:
    """Returns (discount, capped)."""
    raw = round(order_amount * percentage / 100, 2)
    if cap_amount is not None and raw > cap_amount:
        return round(cap_amount, 2), True
    return raw, False


def _rate_result(order_amount: float, percentage: float, cap_amount: Optional[float],
                 description: str, tier_label: Optional[str] = None) -> BenefitResult:
    amount, capped = _percentage_of(order_amount, percentage, cap_amount)
    if capped:
        description += f" (max {_money(cap_amount)})"
    return BenefitResult(
        original_amount=order_amount,
        amount=amount,
        final_amount=round(order_amount - amount, 2),
        applied_rate=percentage,
        cap_amount=cap_amount if capped else None,
        tier_label=tier_label,
        description=description,
    )


def _flat_result(order_amount: float, flat_amount: float, description: str,
                 tier_label: Optional[str] = None) -> BenefitResult:
    amount = round(min(flat_amount, order_amount), 2)
    if flat_amount > order_amount:
        description += " (limited to bill amount)"
    return BenefitResult(
        original_amount=order_amount,
        amount=amount,
        final_amount=round(order_amount - amount, 2),
        tier_label=tier_label,
        description=description,
    )


# ─────────────────────────── Deals ───────────────────────────

def compute_percentage_deal(discount: PercentageDeal, order_amount: float) -> Outcome:
    return _rate_result(
        order_amount, discount.percentage, discount.cap_amount,
        f"{_fmt(discount.percentage)}% off",
    )


def compute_bank_discount(discount: BankDiscount, order_amount: float,
                          selection: Optional[Selection]) -> Outcome:
    card = discount.card_for(selection.bank_id if selection else None)
    if card is None:
        return CalculationError.of(CalculationErrorKind.no_card_selected)
    if selection.card_type_id is not None and selection.card_type_id not in card.card_type_ids:
        return CalculationError.of(CalculationErrorKind.no_card_selected)
    return _rate_result(
        order_amount, discount.percentage, discount.cap_amount,
        f"{_fmt(discount.percentage)}% off with {card.bank_name or card.bank_id} card",
    )


def compute_fixed_price_deal(discount: FixedPriceDeal, order_amount: float,
                             selection: Optional[Selection]) -> Outcome:
    option = discount.option_for(selection.price_option_id if selection else None)
    if option is None:
        return CalculationError.of(CalculationErrorKind.no_price_option_selected)

    description = f"{option.label or 'Selected deal'} ({_money(option.price)} fixed price)"
    no_discount = option.price >= order_amount
    if no_discount:
        description += " (no discount applied - deal price higher than original)"
    return BenefitResult(
        original_amount=order_amount,
        amount=round(max(0.0, order_amount - option.price), 2),
        final_amount=option.price,
        tier_label=option.label,
        no_discount_applied=no_discount,
        description=description,
    )


# ─────────────────────────── Loyalty ───────────────────────────

def compute_percentage_loyalty(discount: PercentageLoyalty, order_amount: float,
                               ctx: EvaluationContext) -> Outcome:
    tier = select_tier(discount, ctx)
    if tier is None:
        return CalculationError.of(CalculationErrorKind.no_tier_matched)
    return _rate_result(
        order_amount, tier.percentage, discount.cap_amount,
        f"{_fmt(tier.percentage)}% loyalty discount ({tier.min_days}-{tier.max_days} days)",
        tier_label=f"{tier.min_days}-{tier.max_days} days",
    )


def compute_fixed_loyalty(discount: FixedLoyalty, order_amount: float,
                          ctx: EvaluationContext) -> Outcome:
    tier = select_tier(discount, ctx)
    if tier is None:
        return CalculationError.of(CalculationErrorKind.no_tier_matched)
    return _flat_result(
        order_amount, tier.amount,
        f"{tier.label} fixed discount ({tier.min_days}-{tier.max_days} days)",
        tier_label=tier.label,
    )


def compute_visit_loyalty(discount: VisitBasedLoyalty, order_amount: float,
                          ctx: EvaluationContext) -> Outcome:
    milestone = select_tier(discount, ctx)
    if milestone is None:
        return CalculationError.of(CalculationErrorKind.no_tier_matched)
    return _flat_result(
        order_amount, milestone.amount,
        f"{milestone.label} ({milestone.visits} visits milestone)",
        tier_label=milestone.label,
    )


def compute_referral_loyalty(discount: ReferralLoyalty, order_amount: float,
                             referrer_verified: bool) -> Outcome:
    if not referrer_verified:
        return CalculationError.of(CalculationErrorKind.referrer_not_verified)
    benefit = discount.referred_benefit
    if isinstance(benefit, FixedBenefit):
        return _flat_result(
            order_amount, benefit.amount, f"{_money(benefit.amount)} fixed referral discount"
        )
    return _rate_result(
        order_amount, benefit.percentage, discount.cap_amount,
        f"{_fmt(benefit.percentage)}% referred user discount",
    )


# ─────────────────────────── Entry points ───────────────────────────

def calculate(discount, order_amount: float, ctx: EvaluationContext,
              selection: Optional[Selection] = None,
              referrer_verified: bool = False) -> Outcome:
    """
    Compute the benefit of ``discount`` on an order of ``order_amount``.

    ctx supplies the customer's loyalty days / visit count for loyalty tiers.
    selection carries the bank card or fixed-price option, where the kind needs one.
    referrer_verified must be True before a referral discount can be computed.
    """
    if order_amount <= 0:
        return CalculationError.of(CalculationErrorKind.invalid_order_amount)

    if isinstance(discount, PercentageDeal):
        return compute_percentage_deal(discount, order_amount)
    if isinstance(discount, BankDiscount):
        return compute_bank_discount(discount, order_amount, selection)
    if isinstance(discount, FixedPriceDeal):
        return compute_fixed_price_deal(discount, order_amount, selection)
    if isinstance(discount, PercentageLoyalty):
        return compute_percentage_loyalty(discount, order_amount, ctx)
    if isinstance(discount, FixedLoyalty):
        return compute_fixed_loyalty(discount, order_amount, ctx)
    if isinstance(discount, VisitBasedLoyalty):
        return compute_visit_loyalty(discount, order_amount, ctx)
    if isinstance(discount, ReferralLoyalty):
        return compute_referral_loyalty(discount, order_amount, referrer_verified)
    raise TypeError(f"Unknown discount type: {type(discount).__name__}")


def preview(discount, order_amount: float, ctx: EvaluationContext,
            selection: Optional[Selection] = None) -> Outcome:
    """Side-effect free calculation for the UI; safe to call on every keystroke."""
    return calculate(discount, order_amount, ctx, selection)


def requires_selection(discount) -> bool:
    """Kinds that cannot be calculated until staff pick a sub-option."""
    return isinstance(discount, (BankDiscount, FixedPriceDeal))
