"""
channels.py
===========
Collaborators the verification workflow talks to.

- OtpChannel / ReferralChannel: send a code to a phone, later verify it.
  Only the boolean outcome of verify() matters to the workflow.
- CustomerDirectory: phone -> CustomerProfile (None for unknown customers).
- ApplicationRecorder: persists a committed AppliedDiscount.

The demo channels below deliver no SMS; the code is fixed by configuration.
"""

import logging
import secrets
from datetime import date
from typing import Callable, Dict, Iterable, Optional, Protocol

from sqlalchemy.orm import Session

import models
from config import settings
from schemas import AppliedDiscount, AppliedDiscountResponse, CustomerProfile

logger = logging.getLogger(__name__)


def mask_phone(phone: str) -> str:
    if len(phone) <= 6:
        return "***"
    return f"{phone[:4]}***{phone[-2:]}"


def phone_number_error(phone: Optional[str]) -> Optional[str]:
    """Return why ``phone`` is not a valid customer number, or None if it is."""
    if not phone or not phone.strip():
        return "Phone number is required"
    if not phone.isdigit():
        return "Phone number must contain digits only"
    if len(phone) != settings.PHONE_LENGTH:
        return f"Phone number must be {settings.PHONE_LENGTH} digits"
    if not phone.startswith(settings.PHONE_PREFIX):
        return f"Phone number must start with {settings.PHONE_PREFIX}"
    return None


# ─────────────────────────── Protocols ───────────────────────────

class OtpChannel(Protocol):
    async def send(self, phone: str) -> str:
        ...

    async def verify(self, token: str, code: str) -> bool:
        ...


class ReferralChannel(Protocol):
    async def send(self, phone: str) -> str:
        ...

    async def verify(self, token: str, code: str) -> bool:
        ...


class CustomerDirectory(Protocol):
    def lookup(self, phone: str) -> Optional[CustomerProfile]:
        ...


class ApplicationRecorder(Protocol):
    def record(self, applied: AppliedDiscount) -> AppliedDiscount:
        ...


# ─────────────────────────── Demo channels ───────────────────────────

class StaticCodeOtpChannel:
    """Issues tokens for any phone; the expected code is always the configured one."""

    def __init__(self, code: Optional[str] = None):
        self.code = code or settings.DEMO_OTP_CODE
        self._issued: Dict[str, str] = {}  # token -> phone

    async def send(self, phone: str) -> str:
        token = secrets.token_urlsafe(16)
        self._issued[token] = phone
        logger.info("Verification code sent to %s", mask_phone(phone))
        return token

    async def verify(self, token: str, code: str) -> bool:
        return token in self._issued and code == self.code


class RegisteredReferrerChannel(StaticCodeOtpChannel):
    """Like the OTP channel, but only registered referrers can ever be verified."""

    def __init__(self, referrers: Optional[Iterable[str]] = None, code: Optional[str] = None):
        super().__init__(code)
        self.referrers = frozenset(settings.REGISTERED_REFERRERS if referrers is None else referrers)

    async def verify(self, token: str, code: str) -> bool:
        phone = self._issued.get(token)
        if phone not in self.referrers:
            logger.info("Referrer %s is not registered", mask_phone(phone or ""))
            return False
        return await super().verify(token, code)


# ─────────────────────────── SQL-backed ───────────────────────────

class SqlCustomerDirectory:
    def __init__(self, session_factory: Callable[[], Session],
                 today: Callable[[], date] = date.today):
        self.session_factory = session_factory
        self.today = today

    def lookup(self, phone: str) -> Optional[CustomerProfile]:
        with self.session_factory() as db:
            row = db.get(models.CustomerRecord, phone)
            if row is None:
                return None
            loyalty_days = 0
            if row.first_visit_on is not None:
                loyalty_days = max((self.today() - row.first_visit_on).days, 0)
            return CustomerProfile(
                phone=row.phone,
                display_name=row.display_name,
                loyalty_days=loyalty_days,
                visit_count=row.visit_count,
                is_app_user=row.is_app_user,
            )


class SqlApplicationRecorder:
    """Appends to the applied_discounts table; a failed commit leaves no row behind."""

    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory

    def record(self, applied: AppliedDiscount) -> AppliedDiscountResponse:
        with self.session_factory() as db:
            row = models.AppliedDiscountRecord(**applied.model_dump())
            db.add(row)
            try:
                db.commit()
            except Exception:
                db.rollback()
                raise
            db.refresh(row)
            return AppliedDiscountResponse.model_validate(row)
