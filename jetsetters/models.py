"""
SQLAlchemy models for the quote, payment and booking ledger
Money columns are Numeric(12, 2) and always handled as Decimal
"""

from sqlalchemy import Column, Integer, String, DateTime, Numeric, Boolean, Text, ForeignKey, Index, JSON, Uuid, UniqueConstraint
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional
import uuid
import enum

from .database import Base
from .errors import NotFoundError


def as_uuid(value) -> uuid.UUID:
    """Parse an id from a path or payload; malformed ids are treated as unknown records."""
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except ValueError:
        raise NotFoundError(f"Invalid id: {value}")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands datetimes back naive; everything we store is UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


MONEY = Numeric(12, 2, asdecimal=True)
ZERO = Decimal("0.00")


# Enums
class ServiceType(str, enum.Enum):
    FLIGHT = "flight"
    HOTEL = "hotel"
    CRUISE = "cruise"
    PACKAGE = "package"
    GENERAL = "general"


class InquiryStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    QUOTED = "quoted"
    BOOKED = "booked"
    CANCELLED = "cancelled"
    CLOSED = "closed"


class QuoteStatus(str, enum.Enum):
    DRAFT = "draft"
    SENT = "sent"
    ACCEPTED = "accepted"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class QuotePaymentStatus(str, enum.Enum):
    UNPAID = "unpaid"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"
    VOIDED = "voided"
    REFUND_PENDING = "refund_pending"


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"
    REFUND_PENDING = "refund_pending"
    VOIDED = "voided"


# refunded/voided can only be left by a brand new attempt record
TERMINAL_PAYMENT_STATUSES = frozenset({PaymentStatus.REFUNDED.value, PaymentStatus.VOIDED.value})


class BookingStatus(str, enum.Enum):
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


class PaymentAction(str, enum.Enum):
    REFUND = "REFUND"
    VOID = "VOID"


# Models
class PricingPolicy(Base):
    __tablename__ = "pricing_policies"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    service_type = Column(String(20), unique=True, nullable=False, index=True)
    fixed_fee = Column(MONEY, nullable=False, default=ZERO)
    fee_percentage = Column(Numeric(7, 4, asdecimal=True), nullable=False, default=Decimal("0"))
    port_charge = Column(MONEY, nullable=True)  # cruise only
    markup_percentage = Column(Numeric(7, 4, asdecimal=True), nullable=True)  # package markup
    version = Column(Integer, nullable=False, default=1)
    updated_by = Column(String(255), nullable=True)

    # Timestamps
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class Inquiry(Base):
    __tablename__ = "inquiries"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    customer_name = Column(String(255), nullable=False)
    customer_email = Column(String(255), nullable=False, index=True)
    customer_phone = Column(String(50), nullable=True)
    inquiry_type = Column(String(20), nullable=False, default=ServiceType.GENERAL.value)
    # advisory only, read through services.status.effective_status
    status = Column(String(20), nullable=False, default=InquiryStatus.PENDING.value)
    notes = Column(Text, nullable=True)

    # Timestamps
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("idx_inquiries_status", "status"),
    )


class Quote(Base):
    __tablename__ = "quotes"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    inquiry_id = Column(Uuid, ForeignKey("inquiries.id"), nullable=False, index=True)
    quote_number = Column(String(40), unique=True, nullable=False)
    title = Column(String(500), nullable=False)
    service_type = Column(String(20), nullable=False)

    # Pricing
    breakdown = Column(JSON, nullable=False, default=list)  # [{item, quantity, unit_price, amount}]
    total_amount = Column(MONEY, nullable=False)
    currency = Column(String(3), nullable=False, default="USD")
    pricing_snapshot = Column(JSON, nullable=False, default=dict)  # resolved policy values at creation

    status = Column(String(20), nullable=False, default=QuoteStatus.DRAFT.value)
    payment_status = Column(String(20), nullable=False, default=QuotePaymentStatus.UNPAID.value)
    notes = Column(Text, nullable=True)

    # Timestamps
    created_at = Column(DateTime(timezone=True), default=utcnow)
    sent_at = Column(DateTime(timezone=True), nullable=True)
    accepted_at = Column(DateTime(timezone=True), nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    paid_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("idx_quotes_status_expires", "status", "expires_at"),
    )


class Payment(Base):
    __tablename__ = "payments"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    quote_id = Column(Uuid, ForeignKey("quotes.id"), nullable=False, index=True)
    gateway_order_id = Column(String(64), unique=True, nullable=False, index=True)
    session_id = Column(String(128), nullable=True, index=True)
    success_indicator = Column(String(128), nullable=True)
    checkout_url = Column(String(500), nullable=True)

    amount = Column(MONEY, nullable=False)
    currency = Column(String(3), nullable=False, default="USD")
    refunded_amount = Column(MONEY, nullable=False, default=ZERO)
    payment_method = Column(String(50), nullable=True)
    payment_status = Column(String(20), nullable=False, default=PaymentStatus.PENDING.value)
    arc_transaction_id = Column(String(64), nullable=True)
    failure_reason = Column(Text, nullable=True)

    booking_type = Column(String(20), nullable=True)
    customer_email = Column(String(255), nullable=True)
    customer_name = Column(String(255), nullable=True)
    gateway_snapshot = Column(JSON, nullable=True)  # last normalized order status

    # optimistic concurrency counter, bumped by SQLAlchemy on every UPDATE
    version = Column(Integer, nullable=False)

    # Timestamps
    created_at = Column(DateTime(timezone=True), default=utcnow)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index("idx_payments_status", "payment_status"),
    )


class Refund(Base):
    __tablename__ = "refunds"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    payment_id = Column(Uuid, ForeignKey("payments.id"), nullable=False, index=True)
    gateway_transaction_id = Column(String(64), nullable=False)
    amount = Column(MONEY, nullable=False)
    currency = Column(String(3), nullable=False, default="USD")
    reason = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        UniqueConstraint("payment_id", "gateway_transaction_id", name="_payment_refund_txn_uc"),
    )


class PaymentEvent(Base):
    """Append-only trail of every payment transition and recorded failure."""

    __tablename__ = "payment_events"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    payment_id = Column(Uuid, ForeignKey("payments.id"), nullable=False, index=True)
    event_type = Column(String(50), nullable=False)
    from_status = Column(String(20), nullable=True)
    to_status = Column(String(20), nullable=True)
    details = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)


class BookingRecord(Base):
    __tablename__ = "bookings"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    payment_id = Column(Uuid, ForeignKey("payments.id"), unique=True, nullable=False)
    booking_reference = Column(String(20), unique=True, nullable=False, index=True)
    supplier_order_id = Column(String(255), nullable=True)
    status = Column(String(20), nullable=False, default=BookingStatus.CONFIRMED.value)

    # Cancellation
    cancellation_reason = Column(Text, nullable=True)
    cancelled_by = Column(String(20), nullable=True)  # customer, admin
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    refund_pending = Column(Boolean, nullable=False, default=False)
    supplier_cancelled = Column(Boolean, nullable=True)
    supplier_error = Column(Text, nullable=True)

    # Timestamps
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
