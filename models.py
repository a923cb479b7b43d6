from sqlalchemy import Boolean, Column, Date, DateTime, Float, Integer, JSON, String
from sqlalchemy.sql import func
from database import Base


class DiscountRecord(Base):
    """
    Database model for catalog discounts.

    kind:    'percentage-deal' | 'bank-discount' | 'fixed-price-deal' | 'loyalty'
    payload: JSON field storing the full discount definition as accepted by
             schemas.parse_discount (kind-specific fields included).
    """
    __tablename__ = "discounts"

    id = Column(String, primary_key=True, index=True)
    kind = Column(String, nullable=False)
    status = Column(String, nullable=False, default="active")
    payload = Column(JSON, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())


class CustomerRecord(Base):
    """Walk-in customer history used to build the evaluation context."""
    __tablename__ = "customers"

    phone = Column(String, primary_key=True, index=True)
    display_name = Column(String, nullable=True)
    first_visit_on = Column(Date, nullable=True)
    visit_count = Column(Integer, nullable=False, default=0)
    is_app_user = Column(Boolean, nullable=False, default=False)


class AppliedDiscountRecord(Base):
    """Append-only history of committed discount applications."""
    __tablename__ = "applied_discounts"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    discount_id = Column(String, nullable=False, index=True)
    customer_phone = Column(String, nullable=False, index=True)
    customer_name = Column(String, nullable=False)
    branch = Column(String, nullable=False)
    order_amount = Column(Float, nullable=False)
    discount_amount = Column(Float, nullable=False)
    final_amount = Column(Float, nullable=False)
    selected_sub_option = Column(String, nullable=True)
    referrer_phone = Column(String, nullable=True)
    applied_at = Column(DateTime, nullable=False)
