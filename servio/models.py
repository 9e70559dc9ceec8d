"""
SERVIO – SQLAlchemy Models

This file defines the data model for the booking settlement core:
- Users (customers, professionals, admins)
- Services (catalog rows snapshotted into bookings)
- Bookings & append-only Tracking Updates
- Payments, Refund lines & append-only Webhook Events
- Notifications
- Jobs (DB-backed background queue)

Money columns hold major currency units (e.g. rupees); conversion to the
gateway's minor units happens only at the gateway boundary.
"""
import enum
from datetime import datetime, timezone

from sqlalchemy import (
    Column, Integer, String, Boolean, DateTime, ForeignKey,
    JSON, Numeric, Float, func, UniqueConstraint, Index
)
from sqlalchemy.orm import relationship
from .db import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# =====================================================
# ENUMERATIONS
# =====================================================

class UserRole(str, enum.Enum):
    CUSTOMER = "customer"
    PROFESSIONAL = "professional"
    ADMIN = "admin"


class BookingStatus(str, enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    ASSIGNED = "assigned"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    REJECTED = "rejected"


class BookingPaymentStatus(str, enum.Enum):
    UNPAID = "unpaid"
    PENDING_COD = "pending_cod"
    PAID = "paid"
    REFUNDED = "refunded"


class PaymentMethod(str, enum.Enum):
    GATEWAY = "gateway"
    COD = "cod"


class PaymentStatus(str, enum.Enum):
    CREATED = "created"
    AUTHORIZED = "authorized"
    CAPTURED = "captured"
    FAILED = "failed"
    REFUNDED = "refunded"


class RefundStatus(str, enum.Enum):
    NONE = "none"
    PENDING = "pending"
    PROCESSED = "processed"
    FAILED = "failed"


# =====================================================
# USER MODEL
# =====================================================

class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True)
    email = Column(String(255), unique=True, nullable=True, index=True)
    full_name = Column(String(128), nullable=True)
    phone = Column(String(20), nullable=True)

    role = Column(String(32), nullable=False, default=UserRole.CUSTOMER.value)  # customer/professional/admin
    is_active = Column(Boolean, default=True, nullable=False)

    # Professional aggregate, recomputed in the background after each rating
    rating = Column(Float, nullable=False, default=0.0)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(),
                        onupdate=func.now(), nullable=False)

    def __repr__(self):
        return f"<User(id={self.id}, role={self.role})>"


# =====================================================
# SERVICE CATALOG
# =====================================================

class Service(Base):
    __tablename__ = "services"

    id = Column(Integer, primary_key=True)
    title = Column(String(255), nullable=False)
    price = Column(Numeric(12, 2), nullable=False)
    duration = Column(Integer, nullable=True)  # minutes
    is_active = Column(Boolean, default=True, nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


# =====================================================
# BOOKING MODEL
# =====================================================

class Booking(Base):
    __tablename__ = "bookings"

    id = Column(Integer, primary_key=True)

    customer_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    professional_id = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)

    # [{serviceId, title, price, duration}] captured at creation time
    services = Column(JSON, nullable=False, default=list)

    scheduled_date = Column(DateTime(timezone=True), nullable=True)
    scheduled_time = Column(String(16), nullable=True)
    location = Column(JSON, nullable=True)  # {address, lat, lng}
    notes = Column(String(1024), nullable=True)

    status = Column(String(24), nullable=False, default=BookingStatus.PENDING.value, index=True)

    price = Column(Numeric(12, 2), nullable=False, default=0)
    total_amount = Column(Numeric(12, 2), nullable=False, default=0)
    payment_method = Column(String(16), nullable=False, default=PaymentMethod.GATEWAY.value)
    payment_status = Column(String(16), nullable=False, default=BookingPaymentStatus.UNPAID.value)
    payment_id = Column(Integer, nullable=True)  # captured payment, no FK to avoid a cycle

    rating_score = Column(Integer, nullable=True)
    rating_review = Column(String(2048), nullable=True)
    rated_at = Column(DateTime(timezone=True), nullable=True)

    service_started_at = Column(DateTime(timezone=True), nullable=True)
    service_completed_at = Column(DateTime(timezone=True), nullable=True)

    version = Column(Integer, nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(),
                        onupdate=func.now(), nullable=False)

    # Relationships
    tracking_updates = relationship(
        "BookingTrackingUpdate",
        back_populates="booking",
        order_by="BookingTrackingUpdate.id",
        cascade="save-update, merge",
    )
    customer = relationship("User", foreign_keys=[customer_id])
    professional = relationship("User", foreign_keys=[professional_id])

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index("ix_bookings_professional_status", "professional_id", "status"),
    )

    def __repr__(self):
        return f"<Booking(id={self.id}, status={self.status}, payment_status={self.payment_status})>"


class BookingTrackingUpdate(Base):
    """Append-only: rows are inserted with a status change and never updated."""

    __tablename__ = "booking_tracking_updates"

    id = Column(Integer, primary_key=True)
    booking_id = Column(Integer, ForeignKey("bookings.id", ondelete="CASCADE"),
                        nullable=False, index=True)

    status = Column(String(24), nullable=False)
    message = Column(String(1024), nullable=False)
    updated_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    location = Column(JSON, nullable=True)

    timestamp = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    booking = relationship("Booking", back_populates="tracking_updates")


# =====================================================
# PAYMENT MODEL
# =====================================================

class Payment(Base):
    """One row per gateway order attempt. Never deleted."""

    __tablename__ = "payments"

    id = Column(Integer, primary_key=True)
    booking_id = Column(Integer, ForeignKey("bookings.id"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)

    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(8), nullable=False, default="INR")

    gateway_order_id = Column(String(128), unique=True, nullable=False, index=True)
    gateway_payment_id = Column(String(128), nullable=True, index=True)
    gateway_signature = Column(String(256), nullable=True)

    status = Column(String(16), nullable=False, default=PaymentStatus.CREATED.value, index=True)
    payment_method = Column(String(32), nullable=True)  # card/netbanking/wallet/upi/emi
    payment_details = Column(JSON, nullable=True)
    notes = Column(JSON, nullable=True, default=dict)
    receipt_id = Column(String(64), nullable=True)

    refund_id = Column(String(128), nullable=True)  # latest refund
    refund_amount = Column(Numeric(12, 2), nullable=False, default=0)  # cumulative
    refund_status = Column(String(16), nullable=False, default=RefundStatus.NONE.value)

    error_code = Column(String(128), nullable=True)
    error_description = Column(String(512), nullable=True)

    captured_at = Column(DateTime(timezone=True), nullable=True)
    version = Column(Integer, nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(),
                        onupdate=func.now(), nullable=False)

    # Relationships
    webhook_events = relationship(
        "PaymentWebhookEvent",
        back_populates="payment",
        order_by="PaymentWebhookEvent.id",
        cascade="save-update, merge",
    )
    refunds = relationship(
        "PaymentRefund",
        back_populates="payment",
        order_by="PaymentRefund.id",
        cascade="save-update, merge",
    )

    __mapper_args__ = {"version_id_col": version}

    @property
    def refund_percentage(self) -> float:
        if not self.refund_amount or not self.amount:
            return 0.0
        return float(self.refund_amount) / float(self.amount) * 100

    def has_webhook_event(self, event_id: str) -> bool:
        return any(e.event_id == event_id for e in self.webhook_events)

    def __repr__(self):
        return f"<Payment(id={self.id}, order={self.gateway_order_id}, status={self.status})>"


class PaymentRefund(Base):
    __tablename__ = "payment_refunds"

    id = Column(Integer, primary_key=True)
    payment_id = Column(Integer, ForeignKey("payments.id", ondelete="CASCADE"),
                        nullable=False, index=True)
    refund_id = Column(String(128), unique=True, nullable=False, index=True)
    amount = Column(Numeric(12, 2), nullable=False)
    status = Column(String(16), nullable=False, default=RefundStatus.PENDING.value)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(),
                        onupdate=func.now(), nullable=False)

    payment = relationship("Payment", back_populates="refunds")


class PaymentWebhookEvent(Base):
    """Append-only audit trail of inbound gateway events."""

    __tablename__ = "payment_webhook_events"

    id = Column(Integer, primary_key=True)
    payment_id = Column(Integer, ForeignKey("payments.id", ondelete="CASCADE"),
                        nullable=False, index=True)
    event_id = Column(String(160), nullable=False)
    event_type = Column(String(64), nullable=False)
    raw_payload = Column(JSON, nullable=True)

    timestamp = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    payment = relationship("Payment", back_populates="webhook_events")

    __table_args__ = (
        UniqueConstraint("payment_id", "event_id", name="uq_payment_webhook_event"),
    )


# =====================================================
# NOTIFICATIONS
# =====================================================

class Notification(Base):
    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True)
    recipient_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"),
                          nullable=False, index=True)

    title = Column(String(255), nullable=False)
    message = Column(String(1024), nullable=False)
    type = Column(String(64), nullable=False)
    data = Column(JSON, nullable=True)
    is_read = Column(Boolean, default=False, nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


# =====================================================
# BACKGROUND JOBS
# =====================================================

class Job(Base):
    __tablename__ = "jobs"

    id = Column(Integer, primary_key=True, index=True)
    task_name = Column(String(128), nullable=False, index=True)
    arguments = Column(JSON, nullable=False, default=dict)

    status = Column(String(32), default="pending", nullable=False, index=True)  # pending, running, completed, failed

    scheduled_at = Column(DateTime(timezone=True), default=utcnow, nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    error = Column(String, nullable=True)
    retry_count = Column(Integer, default=0, nullable=False)

    def __repr__(self):
        return f"<Job(id={self.id}, task={self.task_name}, status={self.status})>"
