"""
shared/models/models.py
All SQLAlchemy ORM models for the SlotBook platform.
UUID primary keys throughout; every instant is stored as UTC.
"""

import uuid
from datetime import date as date_type, datetime, time
from decimal import Decimal
from enum import Enum as PyEnum
from typing import List, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Date,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    SmallInteger,
    String,
    Text,
    Time,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from config.database import Base, UTCDateTime, utcnow

JSONType = JSON().with_variant(JSONB(), "postgresql")
Money = Numeric(12, 2)


# ── Enumerations ──────────────────────────────────────────────

class UserRole(str, PyEnum):
    CLIENT = "client"
    PROVIDER = "provider"
    ADMIN = "admin"


class PricingType(str, PyEnum):
    HOURLY = "hourly"
    PACKAGE = "package"


class SlotStatus(str, PyEnum):
    AVAILABLE = "available"
    HELD = "held"
    BOOKED = "booked"


class BookingMode(str, PyEnum):
    INSTANT = "instant"
    REQUEST = "request"


class BookingStatus(str, PyEnum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    COMPLETED = "completed"
    DISPUTED = "disputed"
    RESOLVED = "resolved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


class EvidenceType(str, PyEnum):
    BEFORE = "before"
    DURING = "during"
    AFTER = "after"
    OTHER = "other"


class DisputeOutcome(str, PyEnum):
    CLIENT = "client"
    PROVIDER = "provider"


class TransactionType(str, PyEnum):
    PAYMENT_RECEIVED = "payment_received"
    RELEASE_PENDING = "release_pending"
    REFUND = "refund"
    ADJUSTMENT = "adjustment"
    PAYOUT = "payout"
    PAYOUT_REVERSAL = "payout_reversal"


class BalanceType(str, PyEnum):
    PENDING = "pending"
    AVAILABLE = "available"


class PayoutStatus(str, PyEnum):
    PENDING = "pending"
    APPROVED = "approved"
    PROCESSING = "processing"
    COMPLETED = "completed"
    REJECTED = "rejected"
    FAILED = "failed"
    CANCELLED = "cancelled"


class PaymentStatus(str, PyEnum):
    PENDING = "pending"
    CAPTURED = "captured"
    REFUNDED = "refunded"
    FAILED = "failed"
    PARTIALLY_REFUNDED = "partially_refunded"


class NotificationType(str, PyEnum):
    BOOKING_REQUESTED = "booking_requested"
    BOOKING_ACCEPTED = "booking_accepted"
    BOOKING_REJECTED = "booking_rejected"
    BOOKING_CANCELLED = "booking_cancelled"
    BOOKING_RESCHEDULED = "booking_rescheduled"
    WORK_COMPLETED = "work_completed"
    BOOKING_COMPLETED = "booking_completed"
    BOOKING_DISPUTED = "booking_disputed"
    DISPUTE_RESOLVED = "dispute_resolved"
    PAYMENT_SUCCESS = "payment_success"
    PAYMENT_FAILED = "payment_failed"


# ── Mixins ────────────────────────────────────────────────────

class TimestampMixin:
    """Adds created_at and updated_at to any model."""
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=utcnow, onupdate=utcnow, nullable=False
    )


# ── Accounts & Catalog ────────────────────────────────────────

class User(TimestampMixin, Base):
    """Account provisioned by the identity provider."""
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    role: Mapped[UserRole] = mapped_column(
        Enum(UserRole), nullable=False, default=UserRole.CLIENT
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    __table_args__ = (Index("ix_users_role", "role"),)


class Service(TimestampMixin, Base):
    """Something a provider sells. Either or both prices may be offered."""
    __tablename__ = "services"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    provider_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    pricing_type: Mapped[PricingType] = mapped_column(
        Enum(PricingType), nullable=False, default=PricingType.HOURLY
    )
    hourly_rate: Mapped[Optional[Decimal]] = mapped_column(Money, nullable=True)
    package_price: Mapped[Optional[Decimal]] = mapped_column(Money, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    __table_args__ = (
        CheckConstraint(
            "hourly_rate IS NOT NULL OR package_price IS NOT NULL",
            name="ck_service_has_price",
        ),
        Index("ix_services_provider_id", "provider_id"),
    )


# ── Availability ──────────────────────────────────────────────

class AvailabilityRule(TimestampMixin, Base):
    """Recurring weekly window. day_of_week follows date.weekday(): 0=Monday."""
    __tablename__ = "availability_rules"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    provider_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    day_of_week: Mapped[int] = mapped_column(SmallInteger, nullable=False)
    start_time: Mapped[time] = mapped_column(Time, nullable=False)
    end_time: Mapped[time] = mapped_column(Time, nullable=False)
    slot_duration: Mapped[int] = mapped_column(Integer, nullable=False, default=30)
    buffer_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    __table_args__ = (
        CheckConstraint("day_of_week >= 0 AND day_of_week <= 6", name="ck_rule_day_of_week"),
        Index("ix_rules_provider_active", "provider_id", "is_active"),
    )


class AvailabilityOverride(TimestampMixin, Base):
    """Date-specific exception: blocks the day or replaces its open hours."""
    __tablename__ = "availability_overrides"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    provider_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    date: Mapped[date_type] = mapped_column(Date, nullable=False)
    is_available: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    start_time: Mapped[Optional[time]] = mapped_column(Time, nullable=True)
    end_time: Mapped[Optional[time]] = mapped_column(Time, nullable=True)
    reason: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    __table_args__ = (
        UniqueConstraint("provider_id", "date", name="uq_override_provider_date"),
    )


class SlotHold(Base):
    """
    Short-lived exclusive claim on contiguous slots. Logically absent
    once expires_at has passed, whether or not the sweep has run.
    """
    __tablename__ = "slot_holds"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    holder_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    provider_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    slot_ids: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_slot_holds_holder", "holder_id"),
        Index("ix_slot_holds_expires_at", "expires_at"),
    )


class Slot(Base):
    """
    Smallest bookable unit of a provider's time.
    hold_* columns are only meaningful while status is HELD.
    """
    __tablename__ = "slots"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    provider_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    start: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    end: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    status: Mapped[SlotStatus] = mapped_column(
        Enum(SlotStatus), nullable=False, default=SlotStatus.AVAILABLE
    )
    hold_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("slot_holds.id", ondelete="SET NULL"), nullable=True
    )
    held_by: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=True
    )
    hold_expires_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    booking_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("bookings.id", ondelete="SET NULL"), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("provider_id", "start", name="uq_slot_provider_start"),
        CheckConstraint('"end" > start', name="ck_slot_positive_length"),
        Index("ix_slots_provider_start", "provider_id", "start"),
        Index("ix_slots_hold_id", "hold_id"),
        Index("ix_slots_booking_id", "booking_id"),
    )


# ── Bookings ──────────────────────────────────────────────────

class Booking(TimestampMixin, Base):
    """
    Reservation of contiguous slots with a lifecycle:
    pending → accepted → awaiting_confirmation → completed | disputed → resolved,
    with side exits pending → rejected and pending/accepted → cancelled.
    Retained indefinitely as an audit record once any party has acted.
    """
    __tablename__ = "bookings"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    booking_number: Mapped[str] = mapped_column(String(20), unique=True, nullable=False)
    client_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=False
    )
    provider_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=False
    )
    service_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("services.id"), nullable=False
    )
    slot_ids: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)

    # Schedule
    start: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    end: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    duration_minutes: Mapped[int] = mapped_column(Integer, nullable=False)

    # Pricing
    pricing_type: Mapped[PricingType] = mapped_column(Enum(PricingType), nullable=False)
    booking_mode: Mapped[BookingMode] = mapped_column(
        Enum(BookingMode), nullable=False, default=BookingMode.REQUEST
    )
    service_fee: Mapped[Decimal] = mapped_column(Money, nullable=False)
    platform_fee: Mapped[Decimal] = mapped_column(Money, nullable=False)
    total_price: Mapped[Decimal] = mapped_column(Money, nullable=False)

    status: Mapped[BookingStatus] = mapped_column(
        Enum(BookingStatus), nullable=False, default=BookingStatus.PENDING
    )
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Provider decision / cancellation
    accepted_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    rejected_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    rejection_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    cancelled_by: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    cancellation_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Dual confirmation
    work_completed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    completion_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    confirmation_deadline: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    confirmed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    auto_confirmed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    completed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)

    # Dispute
    dispute_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    disputed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)

    # Resolution
    resolution: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    resolved_in_favor_of: Mapped[Optional[DisputeOutcome]] = mapped_column(
        Enum(DisputeOutcome), nullable=True
    )
    refund_percentage: Mapped[Optional[int]] = mapped_column(SmallInteger, nullable=True)
    client_refund_amount: Mapped[Optional[Decimal]] = mapped_column(Money, nullable=True)
    provider_release_amount: Mapped[Optional[Decimal]] = mapped_column(Money, nullable=True)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    resolved_by_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=True
    )

    # Reschedule history
    reschedule_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    previous_start: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    previous_end: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    reschedule_reason: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    rescheduled_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)

    # Bumped on every UPDATE; a stale writer fails instead of overwriting
    version_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    evidence: Mapped[List["BookingEvidence"]] = relationship(
        back_populates="booking",
        lazy="selectin",
        passive_deletes=True,
        order_by="BookingEvidence.uploaded_at",
    )

    __table_args__ = (
        CheckConstraint(
            "refund_percentage IS NULL OR (refund_percentage >= 0 AND refund_percentage <= 100)",
            name="ck_booking_refund_percentage",
        ),
        Index("ix_bookings_client_id", "client_id"),
        Index("ix_bookings_provider_id", "provider_id"),
        Index("ix_bookings_status", "status"),
        Index("ix_bookings_confirmation_deadline", "status", "confirmation_deadline"),
    )
    __mapper_args__ = {"version_id_col": version_id}


class BookingEvidence(Base):
    """Append-only proof of work. Only the storage object key is kept."""
    __tablename__ = "booking_evidence"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    booking_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("bookings.id", ondelete="CASCADE"), nullable=False
    )
    uploaded_by: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=False
    )
    evidence_type: Mapped[EvidenceType] = mapped_column(
        Enum(EvidenceType), nullable=False, default=EvidenceType.AFTER
    )
    file_ref: Mapped[str] = mapped_column(String(500), nullable=False)
    caption: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    uploaded_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)

    booking: Mapped["Booking"] = relationship(back_populates="evidence")

    __table_args__ = (Index("ix_booking_evidence_booking_id", "booking_id"),)


class BookingAuditLog(Base):
    """Immutable log of all booking status transitions."""
    __tablename__ = "booking_audit_logs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    booking_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("bookings.id", ondelete="CASCADE"), nullable=False
    )
    from_status: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    to_status: Mapped[str] = mapped_column(String(30), nullable=False)
    changed_by_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=True
    )  # NULL for system transitions (auto-confirm)
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    audit_metadata: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)

    __table_args__ = (Index("ix_booking_audit_booking_id", "booking_id"),)


# ── Money ─────────────────────────────────────────────────────

class Payment(TimestampMixin, Base):
    """Payment for a booking. Linked 1-to-1 with a booking."""
    __tablename__ = "payments"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    booking_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("bookings.id"), unique=True, nullable=False
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=False
    )

    # Razorpay IDs
    razorpay_order_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    razorpay_payment_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    razorpay_signature: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)

    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="INR")
    platform_fee: Mapped[Decimal] = mapped_column(Money, default=Decimal("0.00"))
    status: Mapped[PaymentStatus] = mapped_column(
        Enum(PaymentStatus), default=PaymentStatus.PENDING
    )
    refund_amount: Mapped[Decimal] = mapped_column(Money, default=Decimal("0.00"))
    refund_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    captured_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    refunded_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)

    __table_args__ = (
        Index("ix_payments_razorpay_order", "razorpay_order_id"),
        Index("ix_payments_razorpay_payment", "razorpay_payment_id"),
    )


class Wallet(TimestampMixin, Base):
    """Per-provider running balances. Always equal to the ledger sums."""
    __tablename__ = "wallets"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    provider_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), unique=True, nullable=False
    )
    available_balance: Mapped[Decimal] = mapped_column(
        Money, nullable=False, default=Decimal("0.00")
    )
    pending_balance: Mapped[Decimal] = mapped_column(
        Money, nullable=False, default=Decimal("0.00")
    )


class Payout(TimestampMixin, Base):
    """
    Provider withdrawal request. The amount leaves available_balance when
    requested and comes back as a reversal if the payout is rejected,
    fails or is cancelled. Moving the money to a bank happens elsewhere.
    """
    __tablename__ = "payouts"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    provider_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=False
    )
    wallet_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("wallets.id", ondelete="CASCADE"), nullable=False
    )
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    payout_method: Mapped[str] = mapped_column(String(50), nullable=False)
    payout_details: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    status: Mapped[PayoutStatus] = mapped_column(
        Enum(PayoutStatus), nullable=False, default=PayoutStatus.PENDING
    )
    admin_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    rejection_reason: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    processed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    completed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    version_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_payout_amount_positive"),
        Index("ix_payouts_provider_status", "provider_id", "status"),
    )
    __mapper_args__ = {"version_id_col": version_id}


class WalletTransaction(Base):
    """Immutable, append-only ledger entry. reference_id makes writes idempotent."""
    __tablename__ = "wallet_transactions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    wallet_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("wallets.id", ondelete="CASCADE"), nullable=False
    )
    provider_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=False
    )
    booking_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("bookings.id", ondelete="SET NULL"), nullable=True
    )
    payment_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("payments.id", ondelete="SET NULL"), nullable=True
    )
    payout_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("payouts.id", ondelete="SET NULL"), nullable=True
    )
    type: Mapped[TransactionType] = mapped_column(Enum(TransactionType), nullable=False)
    balance_type: Mapped[BalanceType] = mapped_column(Enum(BalanceType), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)  # signed
    balance_after: Mapped[Decimal] = mapped_column(Money, nullable=False)
    reference_id: Mapped[str] = mapped_column(String(120), unique=True, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_wallet_tx_provider", "provider_id", "created_at"),
        Index("ix_wallet_tx_booking", "booking_id"),
        Index("ix_wallet_tx_payout", "payout_id"),
    )


# ── Reviews ───────────────────────────────────────────────────

class Review(TimestampMixin, Base):
    """Client's rating of a finished booking. One per booking (unique constraint)."""
    __tablename__ = "reviews"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    booking_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("bookings.id"), unique=True, nullable=False
    )
    client_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=False
    )
    provider_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=False
    )
    rating: Mapped[int] = mapped_column(SmallInteger, nullable=False)
    comment: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    is_visible: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    __table_args__ = (
        CheckConstraint("rating >= 1 AND rating <= 5", name="ck_review_rating_range"),
        Index("ix_reviews_provider_id", "provider_id", "created_at"),
        Index("ix_reviews_client_id", "client_id"),
    )


# ── Notifications & Admin ─────────────────────────────────────

class Notification(TimestampMixin, Base):
    """In-app notification written for every booking lifecycle event."""
    __tablename__ = "notifications"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=False
    )
    booking_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("bookings.id", ondelete="SET NULL"), nullable=True
    )
    type: Mapped[NotificationType] = mapped_column(Enum(NotificationType), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    body: Mapped[str] = mapped_column(Text, nullable=False)
    data: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    is_read: Mapped[bool] = mapped_column(Boolean, default=False)
    read_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)

    __table_args__ = (Index("ix_notifications_user_id_read", "user_id", "is_read"),)


class AdminAuditLog(Base):
    """Immutable log of all admin actions."""
    __tablename__ = "admin_audit_logs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    admin_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=False
    )
    action: Mapped[str] = mapped_column(String(100), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False)
    entity_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    payload: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    ip_address: Mapped[Optional[str]] = mapped_column(String(45), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)

    __table_args__ = (
        Index("ix_admin_audit_admin_id", "admin_id"),
        Index("ix_admin_audit_created_at", "created_at"),
    )
