import logging
from datetime import date, datetime, time
from enum import Enum
from typing import Annotated, Any, Dict, FrozenSet, Iterable, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError, field_validator, model_validator

logger = logging.getLogger(__name__)


# ─────────────── Enums ───────────────

class DiscountKind(str, Enum):
    percentage_deal = "percentage-deal"
    bank_discount = "bank-discount"
    fixed_price_deal = "fixed-price-deal"
    loyalty = "loyalty"


class LoyaltyKind(str, Enum):
    percentage = "percentage"
    fixed = "fixed"
    visit_based = "visit-based"
    referral = "referral"


class DiscountStatus(str, Enum):
    active = "active"
    inactive = "inactive"


class Weekday(str, Enum):
    # Declared in date.weekday() order
    monday = "monday"
    tuesday = "tuesday"
    wednesday = "wednesday"
    thursday = "thursday"
    friday = "friday"
    saturday = "saturday"
    sunday = "sunday"

    @classmethod
    def of(cls, moment: date) -> "Weekday":
        return list(cls)[moment.weekday()]


# ─────────────── Construction errors ───────────────

class InvalidDiscount(ValueError):
    """
    A discount definition that breaks one of the catalog invariants.

    invariant:  short code of the rule that failed (e.g. "range_contiguity")
    tier_index: zero-based index of the offending range / tier / milestone, if any
    field:      dotted path of the offending field, if the failure is field-level
    """

    def __init__(self, invariant: str, message: str, tier_index: Optional[int] = None,
                 field: Optional[str] = None):
        super().__init__(message)
        self.invariant = invariant
        self.message = message
        self.tier_index = tier_index
        self.field = field

    def to_dict(self) -> Dict[str, Any]:
        return {
            "invariant": self.invariant,
            "message": self.message,
            "tier_index": self.tier_index,
            "field": self.field,
        }


class _Frozen(BaseModel):
    model_config = {"frozen": True, "extra": "forbid"}


# ─────────────── Tier / option sub-schemas ───────────────

def _check_percentage(v: float, minimum: float) -> float:
    if v < minimum:
        raise ValueError(f"Percentage must be at least {minimum:g}")
    if v > 100:
        raise ValueError("Percentage cannot exceed 100")
    return v


class PercentageRange(_Frozen):
    min_days: int = Field(ge=0)
    max_days: int
    percentage: float  # 0-100

    @field_validator("percentage")
    @classmethod
    def percentage_bounds(cls, v: float) -> float:
        return _check_percentage(v, 0)


class FixedTier(_Frozen):
    min_days: int = Field(ge=0)
    max_days: int
    label: str
    amount: float = Field(ge=1)


class VisitMilestone(_Frozen):
    visits: int = Field(ge=1)
    label: str
    amount: float = Field(ge=1)


class PriceOption(_Frozen):
    id: str
    label: str
    price: float = Field(ge=1)


class BankCardRule(_Frozen):
    bank_id: str
    bank_name: Optional[str] = None
    card_type_ids: FrozenSet[str]

    @field_validator("card_type_ids")
    @classmethod
    def not_empty(cls, v: FrozenSet[str]) -> FrozenSet[str]:
        if not v:
            raise ValueError("At least one card type must be selected")
        return v


class PercentageBenefit(_Frozen):
    kind: Literal["percentage"] = "percentage"
    percentage: float

    @field_validator("percentage")
    @classmethod
    def percentage_bounds(cls, v: float) -> float:
        return _check_percentage(v, 1)


class FixedBenefit(_Frozen):
    kind: Literal["fixed"] = "fixed"
    amount: float = Field(ge=1)


ReferralBenefit = Annotated[Union[PercentageBenefit, FixedBenefit], Field(discriminator="kind")]


# ─────────────── Invariant checks ───────────────

def _check_ranges(ranges, non_increasing_percentage: bool = False) -> None:
    if not ranges:
        raise InvalidDiscount("empty_tiers", "At least one range is required")
    for i, current in enumerate(ranges):
        if current.max_days <= current.min_days:
            raise InvalidDiscount(
                "range_span",
                f"Range {i + 1}: maximum days must be greater than minimum days",
                tier_index=i,
            )
        if i == 0:
            continue
        previous = ranges[i - 1]
        if current.min_days <= previous.min_days:
            raise InvalidDiscount(
                "range_order", f"Range {i + 1} must start after range {i}", tier_index=i
            )
        if previous.max_days + 1 != current.min_days:
            raise InvalidDiscount(
                "range_contiguity",
                f"Range {i + 1} must start at day {previous.max_days + 1}",
                tier_index=i,
            )
        if non_increasing_percentage and current.percentage > previous.percentage:
            raise InvalidDiscount(
                "range_monotonicity",
                f"Range {i + 1} percentage cannot be higher than range {i}",
                tier_index=i,
            )


def _check_milestones(milestones) -> None:
    if not milestones:
        raise InvalidDiscount("empty_tiers", "At least one visit milestone is required")
    for i in range(1, len(milestones)):
        if milestones[i].visits <= milestones[i - 1].visits:
            raise InvalidDiscount(
                "milestone_order",
                f"Milestone {i + 1} must require more visits than milestone {i}",
                tier_index=i,
            )


def _check_cap(cap_amount: Optional[float]) -> None:
    if cap_amount is not None and cap_amount <= 0:
        raise InvalidDiscount("cap_amount", "Maximum discount amount must be positive")


# ─────────────── Discount variants ───────────────

class DiscountBase(_Frozen):
    """Fields shared by every discount kind, plus the schedule / audience invariants."""

    id: str
    name: str
    description: str = ""
    status: DiscountStatus = DiscountStatus.active
    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: datetime = Field(default_factory=datetime.now)

    always_active: bool = True
    active_from: Optional[date] = None
    active_until: Optional[date] = None

    all_day: bool = True
    day_start: Optional[time] = None
    day_end: Optional[time] = None

    all_week: bool = True
    days_of_week: FrozenSet[Weekday] = frozenset()

    app_users_only: bool = False

    all_branches: bool = True
    branches: FrozenSet[str] = frozenset()

    @field_validator("days_of_week", mode="before")
    @classmethod
    def lower_day_names(cls, v: Any) -> Any:
        if isinstance(v, (list, tuple, set, frozenset)):
            return [day.lower() if isinstance(day, str) else day for day in v]
        return v

    @field_validator("day_start", "day_end")
    @classmethod
    def wall_clock_time(cls, v: Optional[time]) -> Optional[time]:
        # Compared against the branch's local moment, which is naive
        if v is not None and v.tzinfo is not None:
            return v.replace(tzinfo=None)
        return v

    @model_validator(mode="after")
    def check_schedule(self) -> "DiscountBase":
        if not self.always_active:
            if self.active_from is None or self.active_until is None:
                raise InvalidDiscount("active_window", "Start date and end date are required")
            if self.active_from > self.active_until:
                raise InvalidDiscount("active_window", "End date must be after start date")
        if not self.all_day:
            if self.day_start is None or self.day_end is None:
                raise InvalidDiscount("day_window", "Start time and end time are required")
            if self.day_start >= self.day_end:
                raise InvalidDiscount("day_window", "End time must be after start time")
        if not self.all_week and not self.days_of_week:
            raise InvalidDiscount("days_of_week", "At least one day of the week must be selected")
        if not self.all_branches and not self.branches:
            raise InvalidDiscount("branches", "At least one branch must be selected")
        return self


class PercentageDeal(DiscountBase):
    kind: Literal["percentage-deal"] = "percentage-deal"
    percentage: float
    cap_amount: Optional[float] = None

    @field_validator("percentage")
    @classmethod
    def percentage_bounds(cls, v: float) -> float:
        return _check_percentage(v, 1)

    @model_validator(mode="after")
    def check_cap(self) -> "PercentageDeal":
        _check_cap(self.cap_amount)
        return self


class BankDiscount(DiscountBase):
    kind: Literal["bank-discount"] = "bank-discount"
    percentage: float
    cap_amount: Optional[float] = None
    cards: Tuple[BankCardRule, ...]

    @field_validator("percentage")
    @classmethod
    def percentage_bounds(cls, v: float) -> float:
        return _check_percentage(v, 1)

    @model_validator(mode="after")
    def check_cards(self) -> "BankDiscount":
        _check_cap(self.cap_amount)
        if not self.cards:
            raise InvalidDiscount("cards", "At least one bank card must be selected")
        seen = set()
        for i, card in enumerate(self.cards):
            if card.bank_id in seen:
                raise InvalidDiscount("cards", f"Bank {card.bank_id} is listed twice", tier_index=i)
            seen.add(card.bank_id)
        return self

    def card_for(self, bank_id: Optional[str]) -> Optional[BankCardRule]:
        return next((card for card in self.cards if card.bank_id == bank_id), None)


class FixedPriceDeal(DiscountBase):
    kind: Literal["fixed-price-deal"] = "fixed-price-deal"
    price_options: Tuple[PriceOption, ...]

    @model_validator(mode="after")
    def check_options(self) -> "FixedPriceDeal":
        if not self.price_options:
            raise InvalidDiscount("price_options", "At least one price option is required")
        seen = set()
        for i, option in enumerate(self.price_options):
            if option.id in seen:
                raise InvalidDiscount(
                    "price_options", f"Price option id {option.id!r} is used twice", tier_index=i
                )
            seen.add(option.id)
        return self

    def option_for(self, option_id: Optional[str]) -> Optional[PriceOption]:
        return next((option for option in self.price_options if option.id == option_id), None)


class PercentageLoyalty(DiscountBase):
    kind: Literal["loyalty"] = "loyalty"
    loyalty_kind: Literal["percentage"] = "percentage"
    ranges: Tuple[PercentageRange, ...]
    cap_amount: Optional[float] = None

    @model_validator(mode="after")
    def check_ranges(self) -> "PercentageLoyalty":
        _check_ranges(self.ranges, non_increasing_percentage=True)
        _check_cap(self.cap_amount)
        return self


class FixedLoyalty(DiscountBase):
    kind: Literal["loyalty"] = "loyalty"
    loyalty_kind: Literal["fixed"] = "fixed"
    tiers: Tuple[FixedTier, ...]

    @model_validator(mode="after")
    def check_tiers(self) -> "FixedLoyalty":
        _check_ranges(self.tiers)
        return self


class VisitBasedLoyalty(DiscountBase):
    kind: Literal["loyalty"] = "loyalty"
    loyalty_kind: Literal["visit-based"] = "visit-based"
    milestones: Tuple[VisitMilestone, ...]

    @model_validator(mode="after")
    def check_milestones(self) -> "VisitBasedLoyalty":
        _check_milestones(self.milestones)
        return self


class ReferralLoyalty(DiscountBase):
    kind: Literal["loyalty"] = "loyalty"
    loyalty_kind: Literal["referral"] = "referral"
    referrer_benefit: ReferralBenefit
    referred_benefit: ReferralBenefit
    cap_amount: Optional[float] = None

    @model_validator(mode="after")
    def check_cap(self) -> "ReferralLoyalty":
        _check_cap(self.cap_amount)
        return self


LoyaltyDiscount = Annotated[
    Union[PercentageLoyalty, FixedLoyalty, VisitBasedLoyalty, ReferralLoyalty],
    Field(discriminator="loyalty_kind"),
]

Discount = Annotated[
    Union[PercentageDeal, BankDiscount, FixedPriceDeal, LoyaltyDiscount],
    Field(discriminator="kind"),
]

_discount_adapter = TypeAdapter(Discount)

_KIND_TAGS = {kind.value for kind in DiscountKind}
_LOYALTY_TAGS = {kind.value for kind in LoyaltyKind}


# ─────────────── Catalog ingestion ───────────────

def _as_invalid_discount(exc: ValidationError) -> InvalidDiscount:
    first = exc.errors()[0]
    original = (first.get("ctx") or {}).get("error")
    if isinstance(original, InvalidDiscount):
        return original

    # Drop the union tags pydantic puts at the front of the location
    path = list(first["loc"])
    if path and path[0] in _KIND_TAGS:
        tag = path.pop(0)
        if tag == DiscountKind.loyalty.value and path and path[0] in _LOYALTY_TAGS:
            path.pop(0)
    tier_index = next((part for part in path if isinstance(part, int)), None)
    return InvalidDiscount(
        "field",
        first["msg"],
        tier_index=tier_index,
        field=".".join(str(part) for part in path) or None,
    )


def parse_discount(payload: Any) -> Discount:
    """
    Build a validated, immutable discount from a raw payload.

    This is the only way discounts enter the engine; every downstream module
    assumes the invariants checked here hold.
    Raises InvalidDiscount.
    """
    if isinstance(payload, DiscountBase):
        return payload
    try:
        return _discount_adapter.validate_python(payload)
    except ValidationError as exc:
        raise _as_invalid_discount(exc) from exc


def load_catalog(payloads: Iterable[Any]) -> Tuple[List[Discount], List[Tuple[Optional[str], InvalidDiscount]]]:
    """
    Parse a batch of payloads into a usable catalog snapshot.

    Malformed entries are excluded and reported through the log instead of
    failing the whole batch. Returns (valid_discounts, [(discount_id, error), ...]).
    """
    valid: List[Discount] = []
    rejected: List[Tuple[Optional[str], InvalidDiscount]] = []
    for payload in payloads:
        try:
            valid.append(parse_discount(payload))
        except InvalidDiscount as exc:
            discount_id = payload.get("id") if isinstance(payload, dict) else None
            logger.warning(
                "Excluding discount %s from catalog: %s (invariant=%s, tier=%s)",
                discount_id, exc.message, exc.invariant, exc.tier_index,
            )
            rejected.append((discount_id, exc))
    return valid, rejected


# ─────────────── Evaluation context ───────────────

class CustomerProfile(BaseModel):
    phone: str
    display_name: Optional[str] = None
    loyalty_days: int = 0   # Days since the first recorded visit
    visit_count: int = 0
    is_app_user: bool = False


class EvaluationContext(_Frozen):
    branch: str
    moment: datetime
    is_app_user: bool = False
    loyalty_days: int = Field(default=0, ge=0)
    visit_count: int = Field(default=0, ge=0)

    @classmethod
    def for_customer(cls, profile: Optional[CustomerProfile], branch: str,
                     moment: datetime) -> "EvaluationContext":
        """Unknown customers are evaluated as brand new (no loyalty history)."""
        if profile is None:
            return cls(branch=branch, moment=moment)
        return cls(
            branch=branch,
            moment=moment,
            is_app_user=profile.is_app_user,
            loyalty_days=max(profile.loyalty_days, 0),
            visit_count=max(profile.visit_count, 0),
        )


class Selection(_Frozen):
    """Sub-option picked by staff: the customer's bank card or a fixed-price option."""

    bank_id: Optional[str] = None
    card_type_id: Optional[str] = None
    price_option_id: Optional[str] = None

    @property
    def sub_option(self) -> Optional[str]:
        if self.price_option_id:
            return self.price_option_id
        if self.bank_id and self.card_type_id:
            return f"{self.bank_id}:{self.card_type_id}"
        return self.bank_id


# ─────────────── Calculation results ───────────────

class BenefitResult(BaseModel):
    original_amount: float
    amount: float                          # Absolute discount value
    final_amount: float
    applied_rate: Optional[float] = None   # Percentage actually used, for rate-based kinds
    cap_amount: Optional[float] = None     # Set only when the cap bound the amount
    tier_label: Optional[str] = None
    no_discount_applied: bool = False
    description: str = ""


class CalculationErrorKind(str, Enum):
    no_card_selected = "no-card-selected"
    no_tier_matched = "no-tier-matched"
    no_price_option_selected = "no-price-option-selected"
    referrer_not_verified = "referrer-not-verified"
    invalid_order_amount = "invalid-order-amount"


_CALCULATION_MESSAGES = {
    CalculationErrorKind.no_card_selected:
        "Select the customer's bank card before we can calculate the discount",
    CalculationErrorKind.no_tier_matched:
        "The customer does not qualify for any tier of this loyalty program yet",
    CalculationErrorKind.no_price_option_selected:
        "Select a deal option before we can calculate the discount",
    CalculationErrorKind.referrer_not_verified:
        "Verify the referring user before calculating the referral discount",
    CalculationErrorKind.invalid_order_amount:
        "Enter a bill amount greater than zero",
}


class CalculationError(BaseModel):
    kind: CalculationErrorKind
    message: str

    @classmethod
    def of(cls, kind: CalculationErrorKind) -> "CalculationError":
        return cls(kind=kind, message=_CALCULATION_MESSAGES[kind])


# ─────────────── Applied discount history ───────────────

class AppliedDiscount(_Frozen):
    discount_id: str
    customer_phone: str
    customer_name: str
    branch: str
    order_amount: float
    discount_amount: float
    final_amount: float
    applied_at: datetime
    selected_sub_option: Optional[str] = None
    referrer_phone: Optional[str] = None


class AppliedDiscountResponse(AppliedDiscount):
    id: int

    model_config = {"from_attributes": True, "frozen": True}


# ─────────────── Catalog browsing ───────────────

class LifecycleStatus(str, Enum):
    active = "active"
    upcoming = "upcoming"
    expired = "expired"
    inactive = "inactive"


class SortOrder(str, Enum):
    newest = "newest"
    oldest = "oldest"
    alphabetical = "alphabetical"
    status = "status"


class CatalogFilter(BaseModel):
    status: Optional[LifecycleStatus] = None
    kind: Optional[DiscountKind] = None
    search: str = ""
    branch: Optional[str] = None
    app_only: bool = False
    all_branches: bool = False
    always_active: bool = False
    sort: SortOrder = SortOrder.newest


class CatalogStats(BaseModel):
    total: int = 0
    by_status: Dict[LifecycleStatus, int] = Field(default_factory=dict)
    by_kind: Dict[DiscountKind, int] = Field(default_factory=dict)


# ─────────────── API request / response ───────────────

class EligibilityRequest(BaseModel):
    context: EvaluationContext
    explain: bool = False  # Include the reasons each excluded discount failed


class IneligibleDiscount(BaseModel):
    discount_id: str
    reasons: List[str]


class EligibleDiscountsResponse(BaseModel):
    eligible_discounts: List[Discount]
    ineligible: List[IneligibleDiscount] = Field(default_factory=list)


class PreviewRequest(BaseModel):
    order_amount: float
    context: Optional[EvaluationContext] = None
    selection: Optional[Selection] = None


class PreviewResponse(BaseModel):
    discount_id: str
    result: Optional[BenefitResult] = None
    error: Optional[CalculationError] = None


class CustomerCreate(BaseModel):
    phone: str
    display_name: Optional[str] = None
    first_visit_on: Optional[date] = None
    visit_count: int = Field(default=0, ge=0)
    is_app_user: bool = False


class SessionCreate(BaseModel):
    phone: str
    branch: str
