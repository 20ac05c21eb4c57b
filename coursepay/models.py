from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, Integer, String, Text, UniqueConstraint
from coursepay.database import Base


def utcnow():
    return datetime.now(timezone.utc)


class Course(Base):
    __tablename__ = "courses"

    id = Column(String, primary_key=True)
    title = Column(String, nullable=False)
    price = Column(Integer, nullable=False, default=0)      # minor units
    currency = Column(String(3), nullable=False, default="LKR")
    published = Column(Boolean, nullable=False, default=False)


class PaymentIntent(Base):
    __tablename__ = "payment_intents"

    id = Column(String, primary_key=True)
    buyer_id = Column(String, nullable=False, index=True)
    buyer_email = Column(String, nullable=True)
    course_id = Column(String, nullable=False, index=True)
    amount = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False)
    settlement_amount = Column(Integer, nullable=False)
    settlement_currency = Column(String(3), nullable=False)
    gateway = Column(String, nullable=False)                 # redirect | checkout | bank
    status = Column(String, nullable=False, index=True)      # pending | confirmed | failed | expired
    external_reference = Column(String, nullable=True)
    bank_reference = Column(String, nullable=True)
    admin_id = Column(String, nullable=True)
    admin_notes = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class AccessGrant(Base):
    __tablename__ = "access_grants"
    __table_args__ = (
        UniqueConstraint("buyer_id", "course_id", name="uq_access_grant_buyer_course"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    buyer_id = Column(String, nullable=False)
    course_id = Column(String, nullable=False)
    payment_intent_id = Column(String, nullable=False)
    granted_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class Invoice(Base):
    __tablename__ = "invoices"

    id = Column(Integer, primary_key=True, autoincrement=True)
    invoice_number = Column(String, unique=True, nullable=False)
    payment_intent_id = Column(String, unique=True, nullable=False)
    buyer_id = Column(String, nullable=False)
    course_id = Column(String, nullable=False)
    amount = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class SideEffectFailure(Base):
    """Post-grant step that failed and waits for a manual retry."""

    __tablename__ = "side_effect_failures"

    id = Column(Integer, primary_key=True, autoincrement=True)
    payment_intent_id = Column(String, nullable=False, index=True)
    step = Column(String, nullable=False)                    # invoice | email
    error = Column(Text, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    resolved_at = Column(DateTime(timezone=True), nullable=True)
