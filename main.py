"""
main.py
=======
FastAPI application entry point.

Endpoints:
  POST   /discounts                  - Create a discount
  GET    /discounts                  - List all discounts
  GET    /discounts/browse           - Filter / sort the catalog for staff
  GET    /discounts/stats            - Counts per lifecycle status and kind
  GET    /discounts/{id}             - Get discount by ID
  PUT    /discounts/{id}             - Update discount
  DELETE /discounts/{id}             - Delete discount
  POST   /eligible-discounts         - Discounts applicable to a customer / branch / moment
  POST   /discounts/{id}/preview     - Calculate the benefit of one discount for an order
  POST   /customers                  - Register a customer
  GET    /customers/{phone}          - Customer loyalty profile
  POST   /sessions                   - Start a verification session for a phone number
  GET    /sessions/{id}              - Current session state
  POST   /sessions/{id}/events       - Drive the session (OTP, selections, apply, cancel)
  DELETE /sessions/{id}              - Close a session
  GET    /applied-discounts          - Applied discount history
"""

import logging
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import Body, Depends, FastAPI, HTTPException, status
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

import channels
import discount_engine
import eligibility
import models
import schemas
import verification
from config import settings
from database import SessionLocal, get_db, init_db

logging.basicConfig(level=settings.LOG_LEVEL, format="%(asctime)s - %(levelname)s - %(message)s")
logger = logging.getLogger(__name__)

# Create DB tables on startup
init_db()

app = FastAPI(
    title="Restaurant Discounts API",
    description="Discount catalog, eligibility, benefit calculation and customer verification for restaurant staff.",
    version="1.0.0",
)

# Verification sessions and the demo channels live on the app, not in the engine
app.state.sessions = verification.SessionStore(settings.SESSION_TTL_SECONDS, settings.MAX_SESSIONS)
app.state.otp_channel = channels.StaticCodeOtpChannel()
app.state.referral_channel = channels.RegisteredReferrerChannel()


def get_session_factory():
    """Session factory for collaborators that outlive a single request."""
    return SessionLocal


def get_clock():
    return datetime.now


def _catalog(db: Session) -> List[schemas.Discount]:
    valid, _ = schemas.load_catalog(record.payload for record in db.query(models.DiscountRecord).all())
    return valid


def _get_record(db: Session, discount_id: str) -> models.DiscountRecord:
    record = db.query(models.DiscountRecord).filter(models.DiscountRecord.id == discount_id).first()
    if not record:
        raise HTTPException(status_code=404, detail=f"Discount with id={discount_id} not found")
    return record


def _parse_or_422(payload: Dict[str, Any]) -> schemas.Discount:
    try:
        return schemas.parse_discount(payload)
    except schemas.InvalidDiscount as exc:
        raise HTTPException(status_code=422, detail=exc.to_dict())


# ═══════════════════════════════════════════════════
#  DISCOUNT CRUD
# ═══════════════════════════════════════════════════

@app.post(
    "/discounts",
    response_model=schemas.Discount,
    status_code=status.HTTP_201_CREATED,
    tags=["Discounts"],
    summary="Create a new discount",
)
def create_discount(payload: Dict[str, Any] = Body(...), db: Session = Depends(get_db)):
    """
    Create a new discount. Supported kinds:
    - **percentage-deal**: percentage off the bill, optionally capped.
    - **bank-discount**: percentage off for holders of selected bank cards.
    - **fixed-price-deal**: fixed prices for listed deal options.
    - **loyalty**: percentage / fixed tiers by loyalty days, visit milestones, or referral.
    """
    now = datetime.now()
    payload = {**payload, "created_at": now, "updated_at": now}
    payload.setdefault("id", uuid.uuid4().hex)
    discount = _parse_or_422(payload)

    if db.query(models.DiscountRecord).filter(models.DiscountRecord.id == discount.id).first():
        raise HTTPException(status_code=409, detail=f"Discount with id={discount.id} already exists")

    db.add(models.DiscountRecord(
        id=discount.id,
        kind=discount.kind,
        status=discount.status.value,
        payload=discount.model_dump(mode="json"),
    ))
    db.commit()
    logger.info("Created %s discount %s", discount.kind, discount.id)
    return discount


@app.get(
    "/discounts",
    response_model=List[schemas.Discount],
    tags=["Discounts"],
    summary="Get all discounts",
)
def get_all_discounts(db: Session = Depends(get_db)):
    """Retrieve all discounts (both active and inactive)."""
    return _catalog(db)


@app.get(
    "/discounts/browse",
    response_model=List[schemas.Discount],
    tags=["Discounts"],
    summary="Filter and sort the catalog",
)
def browse_discounts(criteria: schemas.CatalogFilter = Depends(), db: Session = Depends(get_db),
                     clock=Depends(get_clock)):
    return eligibility.filter_catalog(_catalog(db), criteria, clock())


@app.get(
    "/discounts/stats",
    response_model=schemas.CatalogStats,
    tags=["Discounts"],
    summary="Catalog counts per status and kind",
)
def discount_stats(db: Session = Depends(get_db), clock=Depends(get_clock)):
    return eligibility.catalog_stats(_catalog(db), clock())


@app.get(
    "/discounts/{discount_id}",
    response_model=schemas.Discount,
    tags=["Discounts"],
    summary="Get a discount by ID",
)
def get_discount(discount_id: str, db: Session = Depends(get_db)):
    return _parse_or_422(_get_record(db, discount_id).payload)


@app.put(
    "/discounts/{discount_id}",
    response_model=schemas.Discount,
    tags=["Discounts"],
    summary="Update a discount",
)
def update_discount(discount_id: str, update_data: Dict[str, Any] = Body(...), db: Session = Depends(get_db)):
    """
    Update a specific discount. Only provided fields are changed; the merged
    definition must still satisfy every catalog invariant.
    """
    record = _get_record(db, discount_id)
    merged = {**record.payload, **update_data}
    merged["id"] = discount_id
    merged["created_at"] = record.payload.get("created_at")
    merged["updated_at"] = datetime.now()
    discount = _parse_or_422(merged)

    record.kind = discount.kind
    record.status = discount.status.value
    record.payload = discount.model_dump(mode="json")
    db.commit()
    return discount


@app.delete(
    "/discounts/{discount_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    tags=["Discounts"],
    summary="Delete a discount",
)
def delete_discount(discount_id: str, db: Session = Depends(get_db)):
    record = _get_record(db, discount_id)
    db.delete(record)
    db.commit()
    return None


# ═══════════════════════════════════════════════════
#  ELIGIBILITY & PREVIEW
# ═══════════════════════════════════════════════════

@app.post(
    "/eligible-discounts",
    response_model=schemas.EligibleDiscountsResponse,
    tags=["Eligibility"],
    summary="Fetch all discounts applicable in a context",
)
def get_eligible_discounts(request: schemas.EligibilityRequest, db: Session = Depends(get_db)):
    """
    Given a branch, moment and customer segment, returns every active discount
    whose schedule, branch list and audience allow it.
    """
    catalog = _catalog(db)
    eligible = eligibility.list_eligible(catalog, request.context)

    ineligible = []
    if request.explain:
        eligible_ids = {d.id for d in eligible}
        ineligible = [
            schemas.IneligibleDiscount(
                discount_id=d.id, reasons=eligibility.ineligibility_reasons(d, request.context)
            )
            for d in catalog if d.id not in eligible_ids
        ]
    return schemas.EligibleDiscountsResponse(eligible_discounts=eligible, ineligible=ineligible)


@app.post(
    "/discounts/{discount_id}/preview",
    response_model=schemas.PreviewResponse,
    tags=["Eligibility"],
    summary="Preview the benefit of a discount",
)
def preview_discount(discount_id: str, request: schemas.PreviewRequest, db: Session = Depends(get_db),
                     clock=Depends(get_clock)):
    """
    Calculates the discount for an order without recording anything.

    Missing selections (bank card, deal option) or an unmatched loyalty tier come
    back as an `error` object rather than an HTTP error.
    """
    discount = _parse_or_422(_get_record(db, discount_id).payload)
    ctx = request.context or schemas.EvaluationContext(branch="", moment=clock())
    outcome = discount_engine.preview(discount, request.order_amount, ctx, request.selection)
    if isinstance(outcome, schemas.CalculationError):
        return schemas.PreviewResponse(discount_id=discount_id, error=outcome)
    return schemas.PreviewResponse(discount_id=discount_id, result=outcome)


# ═══════════════════════════════════════════════════
#  CUSTOMERS
# ═══════════════════════════════════════════════════

@app.post(
    "/customers",
    response_model=schemas.CustomerProfile,
    status_code=status.HTTP_201_CREATED,
    tags=["Customers"],
    summary="Register a customer",
)
def create_customer(customer: schemas.CustomerCreate, db: Session = Depends(get_db),
                    session_factory=Depends(get_session_factory)):
    error = channels.phone_number_error(customer.phone)
    if error:
        raise HTTPException(status_code=422, detail=error)
    if db.get(models.CustomerRecord, customer.phone):
        raise HTTPException(status_code=409, detail=f"Customer {customer.phone} already exists")

    db.add(models.CustomerRecord(**customer.model_dump()))
    db.commit()
    return channels.SqlCustomerDirectory(session_factory).lookup(customer.phone)


@app.get(
    "/customers/{phone}",
    response_model=schemas.CustomerProfile,
    tags=["Customers"],
    summary="Get a customer's loyalty profile",
)
def get_customer(phone: str, session_factory=Depends(get_session_factory)):
    profile = channels.SqlCustomerDirectory(session_factory).lookup(phone)
    if profile is None:
        raise HTTPException(status_code=404, detail=f"Customer {phone} not found")
    return profile


# ═══════════════════════════════════════════════════
#  VERIFICATION SESSIONS
# ═══════════════════════════════════════════════════

def _get_session(session_id: str) -> verification.VerificationWorkflow:
    workflow = app.state.sessions.get(session_id)
    if workflow is None:
        raise HTTPException(status_code=404, detail=f"Session {session_id} not found")
    return workflow


def _rejected(exc: verification.TransitionRejected, status_code: int = 409) -> HTTPException:
    return HTTPException(
        status_code=status_code,
        detail={"event": exc.event, "state": exc.state.value, "reasons": exc.reasons},
    )


@app.post(
    "/sessions",
    response_model=verification.WorkflowSnapshot,
    status_code=status.HTTP_201_CREATED,
    tags=["Verification"],
    summary="Start a verification session",
)
async def create_session(request: schemas.SessionCreate, db: Session = Depends(get_db),
                         session_factory=Depends(get_session_factory), clock=Depends(get_clock)):
    """Looks up the customer and lists the discounts they can use right now."""
    workflow = verification.VerificationWorkflow(
        catalog=await run_in_threadpool(_catalog, db),
        otp_channel=app.state.otp_channel,
        referral_channel=app.state.referral_channel,
        directory=channels.SqlCustomerDirectory(session_factory, today=lambda: clock().date()),
        recorder=channels.SqlApplicationRecorder(session_factory),
        clock=clock,
    )
    try:
        snapshot = await workflow.transition(
            verification.PhoneVerified(phone=request.phone, branch=request.branch)
        )
    except verification.TransitionRejected as exc:
        raise _rejected(exc, status_code=422)
    app.state.sessions.add(workflow)
    return snapshot


@app.get(
    "/sessions/{session_id}",
    response_model=verification.WorkflowSnapshot,
    tags=["Verification"],
    summary="Get the current session state",
)
def get_session(session_id: str):
    return _get_session(session_id).current_state()


@app.post(
    "/sessions/{session_id}/events",
    response_model=verification.WorkflowSnapshot,
    tags=["Verification"],
    summary="Send an event to a session",
)
async def send_event(session_id: str, event: verification.WorkflowEvent):
    workflow = _get_session(session_id)
    try:
        snapshot = await workflow.transition(event)
    except verification.TransitionRejected as exc:
        raise _rejected(exc)
    except verification.ChannelUnavailable as exc:
        logger.warning("Session %s: %s", session_id, exc)
        raise HTTPException(
            status_code=503,
            detail={"reason": "Verification service unavailable, please try again",
                    "state": workflow.current_state().model_dump(mode="json")},
        )
    if snapshot.state == verification.WorkflowState.applied:
        # Committed; nothing more can happen in this session
        app.state.sessions.discard(session_id)
    return snapshot


@app.delete(
    "/sessions/{session_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    tags=["Verification"],
    summary="Close a session",
)
def close_session(session_id: str):
    _get_session(session_id)
    app.state.sessions.discard(session_id)
    return None


# ═══════════════════════════════════════════════════
#  APPLIED DISCOUNTS
# ═══════════════════════════════════════════════════

@app.get(
    "/applied-discounts",
    response_model=List[schemas.AppliedDiscountResponse],
    tags=["Applied Discounts"],
    summary="Applied discount history",
)
def get_applied_discounts(phone: Optional[str] = None, db: Session = Depends(get_db)):
    """Newest first; optionally only one customer's history."""
    query = db.query(models.AppliedDiscountRecord)
    if phone:
        query = query.filter(models.AppliedDiscountRecord.customer_phone == phone)
    return query.order_by(models.AppliedDiscountRecord.applied_at.desc(),
                          models.AppliedDiscountRecord.id.desc()).all()


# ═══════════════════════════════════════════════════
#  HEALTH CHECK
# ═══════════════════════════════════════════════════

@app.get("/", tags=["Health"], summary="Health check")
def root():
    return {"status": "ok", "message": "Restaurant Discounts API is running"}
