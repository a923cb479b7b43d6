"""
State machine gating a discount behind customer verification.

    phone-entered -> verifying -> discount-list | no-discounts
    discount-list -> discount-selected -> awaiting-otp -> otp-verified
                  -> ready-to-apply -> applying -> applied | apply-failed

Referral discounts run a second, independent verification of the referring
user; both must succeed before the discount can be applied. Events that are
not allowed in the current state raise TransitionRejected and change nothing.
"""

from __future__ import annotations

import logging
import time
import uuid
from collections import OrderedDict
from datetime import datetime
from enum import Enum
from typing import Annotated, Callable, Dict, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, Field
from starlette.concurrency import run_in_threadpool

from channels import (
    ApplicationRecorder,
    CustomerDirectory,
    OtpChannel,
    ReferralChannel,
    mask_phone,
    phone_number_error,
)
from discount_engine import calculate, requires_selection
from eligibility import list_eligible
from schemas import (
    AppliedDiscount,
    BenefitResult,
    CalculationError,
    EvaluationContext,
    ReferralLoyalty,
    Selection,
    VisitBasedLoyalty,
)
from tiers import next_milestone

logger = logging.getLogger(__name__)


class WorkflowState(str, Enum):
    phone_entered = "phone-entered"
    verifying = "verifying"
    discount_list = "discount-list"
    no_discounts = "no-discounts"
    discount_selected = "discount-selected"
    awaiting_otp = "awaiting-otp"
    otp_verified = "otp-verified"
    ready_to_apply = "ready-to-apply"
    applying = "applying"
    applied = "applied"
    apply_failed = "apply-failed"


class OtpState(str, Enum):
    not_sent = "not-sent"
    awaiting = "awaiting"
    verifying = "verifying"
    verified = "verified"
    failed = "failed"


class ReferrerState(str, Enum):
    not_required = "not-required"
    unverified = "unverified"
    verifying = "verifying"
    verified = "verified"
    failed = "failed"


# States in which a discount is selected and its verification is under way
SELECTED_STATES = frozenset({
    WorkflowState.discount_selected,
    WorkflowState.awaiting_otp,
    WorkflowState.otp_verified,
    WorkflowState.ready_to_apply,
    WorkflowState.apply_failed,
})

LOOKUP_DONE_STATES = SELECTED_STATES | {WorkflowState.discount_list, WorkflowState.no_discounts}

# Pending-request slots; one in-flight call each
OTP_SEND = "otp-send"
OTP_VERIFY = "otp-verify"
REFERRER = "referrer"


# ─────────────── Events ───────────────

class PhoneVerified(BaseModel):
    type: Literal["phone-verified"] = "phone-verified"
    phone: str
    branch: str


class DiscountChosen(BaseModel):
    type: Literal["discount-chosen"] = "discount-chosen"
    discount_id: str


class OtpSubmitted(BaseModel):
    type: Literal["otp-submitted"] = "otp-submitted"
    code: str


class ReferrerSubmitted(BaseModel):
    """Without a code: send a confirmation code to the referrer. With a code: verify it."""

    type: Literal["referrer-submitted"] = "referrer-submitted"
    phone: str
    code: Optional[str] = None


class NameEntered(BaseModel):
    type: Literal["name-entered"] = "name-entered"
    name: str


class BranchChosen(BaseModel):
    type: Literal["branch-chosen"] = "branch-chosen"
    branch: str


class OrderAmountEntered(BaseModel):
    type: Literal["order-amount-entered"] = "order-amount-entered"
    amount: float


class SubOptionChosen(BaseModel):
    type: Literal["sub-option-chosen"] = "sub-option-chosen"
    selection: Selection


class Apply(BaseModel):
    type: Literal["apply"] = "apply"


class Cancel(BaseModel):
    type: Literal["cancel"] = "cancel"


WorkflowEvent = Annotated[
    Union[
        PhoneVerified, DiscountChosen, OtpSubmitted, ReferrerSubmitted, NameEntered,
        BranchChosen, OrderAmountEntered, SubOptionChosen, Apply, Cancel,
    ],
    Field(discriminator="type"),
]


class WorkflowSnapshot(BaseModel):
    session_id: str
    state: WorkflowState
    otp: OtpState
    referrer: ReferrerState
    phone: Optional[str] = None
    customer_name: str = ""
    branch: Optional[str] = None
    eligible_discount_ids: List[str] = Field(default_factory=list)
    discount_id: Optional[str] = None
    order_amount: Optional[float] = None
    selection: Optional[Selection] = None
    benefit: Optional[BenefitResult] = None
    calculation_error: Optional[CalculationError] = None
    visits_to_next_reward: Optional[int] = None
    applied: Optional[AppliedDiscount] = None
    last_error: Optional[str] = None
    pending: List[str] = Field(default_factory=list)


class ChannelUnavailable(Exception):
    """A verification channel call failed; the workflow is back where it was before the call."""

    def __init__(self, slot: str, cause: Exception):
        super().__init__(f"{slot} failed: {cause}")
        self.slot = slot
        self.cause = cause


class TransitionRejected(Exception):
    def __init__(self, event: str, state: WorkflowState, reasons: List[str]):
        super().__init__(f"{event} rejected in state {state.value}: {'; '.join(reasons)}")
        self.event = event
        self.state = state
        self.reasons = reasons


class VerificationWorkflow:
    """
    One customer-facing verification session.

    The catalog is a snapshot taken when the session starts. Channels, the
    customer directory, the recorder and the clock are injected so the
    workflow holds no process-wide state.
    """

    def __init__(self, catalog, otp_channel: OtpChannel, referral_channel: ReferralChannel,
                 directory: CustomerDirectory, recorder: ApplicationRecorder,
                 clock: Callable[[], datetime] = datetime.now,
                 session_id: Optional[str] = None) -> None:
        self.catalog = list(catalog)
        self.otp_channel = otp_channel
        self.referral_channel = referral_channel
        self.directory = directory
        self.recorder = recorder
        self.clock = clock
        self.session_id = session_id or uuid.uuid4().hex

        # Bumped whenever verification state is discarded; late channel results
        # from an older generation are ignored.
        self._generation = 0
        self._pending: Dict[str, object] = {}
        self._handlers = {
            PhoneVerified: self._on_phone_verified,
            DiscountChosen: self._on_discount_chosen,
            OtpSubmitted: self._on_otp_submitted,
            ReferrerSubmitted: self._on_referrer_submitted,
            NameEntered: self._on_name_entered,
            BranchChosen: self._on_branch_chosen,
            OrderAmountEntered: self._on_order_amount_entered,
            SubOptionChosen: self._on_sub_option_chosen,
            Apply: self._on_apply,
            Cancel: self._on_cancel,
        }
        self._reset_lookup()

    # ─────────────── Public API ───────────────

    def current_state(self) -> WorkflowSnapshot:
        outcome = self.benefit
        return WorkflowSnapshot(
            session_id=self.session_id,
            state=self.state,
            otp=self.otp,
            referrer=self.referrer,
            phone=self.phone,
            customer_name=self.customer_name,
            branch=self.branch,
            eligible_discount_ids=[d.id for d in self.eligible],
            discount_id=self.discount.id if self.discount else None,
            order_amount=self.order_amount,
            selection=self.selection,
            benefit=outcome if isinstance(outcome, BenefitResult) else None,
            calculation_error=outcome if isinstance(outcome, CalculationError) else None,
            visits_to_next_reward=self._visits_to_next_reward(),
            applied=self.applied,
            last_error=self.last_error,
            pending=sorted(self._pending),
        )

    async def transition(self, event) -> WorkflowSnapshot:
        handler = self._handlers.get(type(event))
        if handler is None:
            raise TypeError(f"Unknown workflow event: {type(event).__name__}")
        if self.state == WorkflowState.applied:
            if isinstance(event, Apply):
                self._reject(event, "Discount has already been applied for this session")
            self._reject(event, "This session is complete; start a new customer lookup")

        before = self.state
        await handler(event)
        if self.state != before:
            logger.info("Session %s: %s -> %s (%s)", self.session_id, before.value,
                        self.state.value, event.type)
        return self.current_state()

    def apply_blockers(self) -> List[str]:
        """Every precondition still missing before Apply is allowed."""
        blockers = []
        discount = self.discount
        if discount is None:
            return ["Select a discount first"]
        if self.otp != OtpState.verified:
            blockers.append("Verify the OTP sent to the customer's phone before applying a discount")
        if isinstance(discount, ReferralLoyalty) and self.referrer != ReferrerState.verified:
            blockers.append("Verify the referring user before applying the discount")
        if not self.customer_name.strip():
            blockers.append("Enter the customer's name")
        if not self.branch:
            blockers.append("Select the branch where this discount is being applied")
        elif not (discount.all_branches or self.branch in discount.branches):
            blockers.append(f"This discount is not available at branch {self.branch}")
        if self.order_amount is None:
            blockers.append("Enter the bill amount")
        elif isinstance(self.benefit, CalculationError):
            blockers.append(self.benefit.message)
        return blockers

    # ─────────────── Internal helpers ───────────────

    def _reject(self, event, *reasons: str) -> None:
        raise TransitionRejected(event.type, self.state, list(reasons))

    def _require(self, event, allowed, reason: str) -> None:
        if self.state not in allowed:
            self._reject(event, reason)

    def _reset_lookup(self) -> None:
        self.state = WorkflowState.phone_entered
        self.phone: Optional[str] = None
        self.context: Optional[EvaluationContext] = None
        self.eligible: List = []
        self.customer_name = ""
        self.branch: Optional[str] = None
        self.order_amount: Optional[float] = None
        self.applied: Optional[AppliedDiscount] = None
        self._reset_discount()

    def _reset_discount(self) -> None:
        self._generation += 1
        self.discount = None
        self.otp = OtpState.not_sent
        self._otp_token: Optional[str] = None
        self.referrer = ReferrerState.not_required
        self.referrer_phone: Optional[str] = None
        self._referrer_token: Optional[str] = None
        self.selection: Optional[Selection] = None
        self.benefit: Optional[Union[BenefitResult, CalculationError]] = None
        self.last_error: Optional[str] = None

    async def _call(self, slot: str, call):
        marker = object()
        self._pending[slot] = marker
        try:
            return await call
        except Exception as exc:
            raise ChannelUnavailable(slot, exc) from exc
        finally:
            if self._pending.get(slot) is marker:
                del self._pending[slot]

    def _recalculate(self) -> None:
        if self.discount is None or self.order_amount is None:
            self.benefit = None
        else:
            self.benefit = calculate(
                self.discount, self.order_amount, self.context, self.selection,
                referrer_verified=self.referrer == ReferrerState.verified,
            )
        if self.state in (WorkflowState.otp_verified, WorkflowState.ready_to_apply,
                          WorkflowState.apply_failed):
            self.state = WorkflowState.otp_verified if self.apply_blockers() else WorkflowState.ready_to_apply

    def _visits_to_next_reward(self) -> Optional[int]:
        if not isinstance(self.discount, VisitBasedLoyalty) or self.context is None:
            return None
        upcoming = next_milestone(self.discount.milestones, self.context.visit_count)
        return upcoming[1] if upcoming else None

    # ─────────────── Lookup ───────────────

    async def _on_phone_verified(self, event: PhoneVerified) -> None:
        self._require(event, {WorkflowState.phone_entered}, "A customer lookup is already in progress")
        error = phone_number_error(event.phone)
        if error:
            self._reject(event, error)
        if not event.branch:
            self._reject(event, "Select the branch the customer is visiting")

        self.state = WorkflowState.verifying
        try:
            profile = await run_in_threadpool(self.directory.lookup, event.phone)
        except Exception as exc:
            # Without a profile the customer is evaluated as new
            logger.warning("Profile lookup for %s failed, continuing without loyalty history: %s",
                           mask_phone(event.phone), exc)
            profile = None

        self.phone = event.phone
        self.context = EvaluationContext.for_customer(profile, event.branch, self.clock())
        self.customer_name = (profile.display_name or "") if profile else ""
        self.eligible = list_eligible(self.catalog, self.context)
        self.state = WorkflowState.discount_list if self.eligible else WorkflowState.no_discounts
        logger.info("Customer %s: %d eligible discount(s), %d loyalty days, %d visits",
                    mask_phone(event.phone), len(self.eligible),
                    self.context.loyalty_days, self.context.visit_count)

    # ─────────────── Discount selection ───────────────

    async def _on_discount_chosen(self, event: DiscountChosen) -> None:
        self._require(event, {WorkflowState.discount_list}, "Return to the discount list to pick a discount")
        discount = next((d for d in self.eligible if d.id == event.discount_id), None)
        if discount is None:
            self._reject(event, f"Discount {event.discount_id} is not available for this customer")

        self._reset_discount()
        generation = self._generation
        self.discount = discount
        self.state = WorkflowState.discount_selected
        if isinstance(discount, ReferralLoyalty):
            self.referrer = ReferrerState.unverified
        self._recalculate()

        try:
            token = await self._call(OTP_SEND, self.otp_channel.send(self.phone))
        except ChannelUnavailable as exc:
            if generation == self._generation:
                self._reset_discount()
                self.state = WorkflowState.discount_list
                self.last_error = f"Could not send the verification code: {exc.cause}"
            raise
        if generation != self._generation:
            return
        self._otp_token = token
        self.otp = OtpState.awaiting
        self.state = WorkflowState.awaiting_otp

    async def _on_sub_option_chosen(self, event: SubOptionChosen) -> None:
        self._require(event, SELECTED_STATES, "Select a discount first")
        if not requires_selection(self.discount):
            self._reject(event, "This discount has no options to choose from")
        self.selection = event.selection
        self._recalculate()

    async def _on_order_amount_entered(self, event: OrderAmountEntered) -> None:
        self._require(event, LOOKUP_DONE_STATES, "Look up the customer first")
        self.order_amount = event.amount
        self._recalculate()

    async def _on_name_entered(self, event: NameEntered) -> None:
        self._require(event, LOOKUP_DONE_STATES, "Look up the customer first")
        self.customer_name = event.name.strip()
        self._recalculate()

    async def _on_branch_chosen(self, event: BranchChosen) -> None:
        self._require(event, LOOKUP_DONE_STATES, "Look up the customer first")
        if not event.branch.strip():
            self._reject(event, "Select a branch")
        self.branch = event.branch.strip()
        self._recalculate()

    # ─────────────── Verification ───────────────

    async def _on_otp_submitted(self, event: OtpSubmitted) -> None:
        self._require(event, {WorkflowState.awaiting_otp}, "No verification code is awaiting confirmation")
        if OTP_VERIFY in self._pending:
            self._reject(event, "A verification request is already in progress")
        if not event.code.strip():
            self._reject(event, "Enter the verification code sent to the customer")

        generation = self._generation
        previous = self.otp
        self.otp = OtpState.verifying
        try:
            verified = await self._call(OTP_VERIFY, self.otp_channel.verify(self._otp_token, event.code))
        except ChannelUnavailable:
            if generation == self._generation:
                self.otp = previous
            raise
        if generation != self._generation:
            return

        if verified:
            self.otp = OtpState.verified
            self.last_error = None
            if self.state == WorkflowState.awaiting_otp:
                self.state = WorkflowState.otp_verified
            self._recalculate()
        else:
            self.otp = OtpState.failed
            self.last_error = "Invalid OTP. Please try again."

    async def _on_referrer_submitted(self, event: ReferrerSubmitted) -> None:
        self._require(event, SELECTED_STATES, "Select a referral discount first")
        if not isinstance(self.discount, ReferralLoyalty):
            self._reject(event, "Referrer verification only applies to referral discounts")
        if self.referrer == ReferrerState.verified:
            self._reject(event, "The referring user is already verified")
        if REFERRER in self._pending:
            self._reject(event, "A referrer verification request is already in progress")

        if event.code is None:
            await self._request_referrer_code(event)
        else:
            await self._confirm_referrer(event)

    async def _request_referrer_code(self, event: ReferrerSubmitted) -> None:
        error = phone_number_error(event.phone)
        if error:
            self._reject(event, error)
        if event.phone == self.phone:
            self._reject(event, "A customer cannot refer themselves")

        generation = self._generation
        token = await self._call(REFERRER, self.referral_channel.send(event.phone))
        if generation != self._generation:
            return
        self.referrer_phone = event.phone
        self._referrer_token = token
        self.referrer = ReferrerState.verifying

    async def _confirm_referrer(self, event: ReferrerSubmitted) -> None:
        if self._referrer_token is None or event.phone != self.referrer_phone:
            self._reject(event, "Send a confirmation code to this referring user first")

        # A failed check can be retried with the same code request
        generation = self._generation
        previous = self.referrer
        self.referrer = ReferrerState.verifying
        try:
            verified = await self._call(REFERRER, self.referral_channel.verify(self._referrer_token, event.code))
        except ChannelUnavailable:
            if generation == self._generation:
                self.referrer = previous
            raise
        if generation != self._generation:
            return
        if verified:
            self.referrer = ReferrerState.verified
            self.last_error = None
            self._recalculate()
        else:
            self.referrer = ReferrerState.failed
            self.last_error = "This phone number is not registered as a referring user or the code is wrong"

    # ─────────────── Apply / cancel ───────────────

    async def _on_apply(self, event: Apply) -> None:
        if self.state == WorkflowState.applying:
            self._reject(event, "The discount is already being applied")
        blockers = self.apply_blockers()
        if blockers:
            self._reject(event, *blockers)

        self.state = WorkflowState.applying
        benefit = self.benefit
        applied = AppliedDiscount(
            discount_id=self.discount.id,
            customer_phone=self.phone,
            customer_name=self.customer_name,
            branch=self.branch,
            order_amount=self.order_amount,
            discount_amount=benefit.amount,
            final_amount=benefit.final_amount,
            applied_at=self.clock(),
            selected_sub_option=self.selection.sub_option if self.selection else None,
            referrer_phone=self.referrer_phone if self.referrer == ReferrerState.verified else None,
        )
        try:
            self.applied = await run_in_threadpool(self.recorder.record, applied)
        except Exception as exc:
            logger.warning("Session %s: recording discount %s failed: %s",
                           self.session_id, applied.discount_id, exc)
            self.state = WorkflowState.apply_failed
            self.last_error = f"Could not record the discount, please try again ({exc})"
            return

        self.state = WorkflowState.applied
        self.last_error = None
        self.context = None
        logger.info("Applied discount %s for %s at %s: %.2f off %.2f",
                    applied.discount_id, mask_phone(applied.customer_phone), applied.branch,
                    applied.discount_amount, applied.order_amount)

    async def _on_cancel(self, event: Cancel) -> None:
        if self.state in SELECTED_STATES:
            self._reset_discount()
            self.state = WorkflowState.discount_list
            self._pending.clear()
        elif self.state in (WorkflowState.discount_list, WorkflowState.no_discounts):
            self._reset_lookup()
            self._pending.clear()
        else:
            self._reject(event, "Nothing to cancel")


class SessionStore:
    """
    In-memory registry of open workflows.

    Sessions idle for longer than ``ttl_seconds`` are dropped on the next access,
    and the least recently used one is evicted once ``max_sessions`` is exceeded.
    """

    def __init__(self, ttl_seconds: float, max_sessions: int,
                 clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl_seconds = ttl_seconds
        self.max_sessions = max_sessions
        self.clock = clock
        self._sessions: OrderedDict[str, Tuple[VerificationWorkflow, float]] = OrderedDict()

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._sessions

    def add(self, workflow: VerificationWorkflow) -> None:
        self.expire()
        self._sessions[workflow.session_id] = (workflow, self.clock())
        self._sessions.move_to_end(workflow.session_id)
        while len(self._sessions) > self.max_sessions:
            evicted, _ = self._sessions.popitem(last=False)
            logger.info("Session %s evicted, %d sessions open", evicted, self.max_sessions)

    def get(self, session_id: str) -> Optional[VerificationWorkflow]:
        self.expire()
        entry = self._sessions.get(session_id)
        if entry is None:
            return None
        self._sessions[session_id] = (entry[0], self.clock())
        self._sessions.move_to_end(session_id)
        return entry[0]

    def discard(self, session_id: str) -> None:
        self._sessions.pop(session_id, None)

    def clear(self) -> None:
        self._sessions.clear()

    def expire(self) -> int:
        cutoff = self.clock() - self.ttl_seconds
        stale = [sid for sid, (_, seen) in self._sessions.items() if seen < cutoff]
        for sid in stale:
            del self._sessions[sid]
        if stale:
            logger.info("Expired %d idle session(s)", len(stale))
        return len(stale)
