"""
shared/schemas/schemas.py
All Pydantic v2 request/response schemas for the platform.
"""

import uuid
from datetime import date, datetime, time, timezone
from decimal import Decimal
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator, model_validator

from shared.models.models import (
    BalanceType,
    BookingMode,
    DisputeOutcome,
    EvidenceType,
    PayoutStatus,
    PricingType,
)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# ── Base ──────────────────────────────────────────────────────

class BaseSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True, use_enum_values=True)


class PaginatedResponse(BaseSchema):
    items: List[Any]
    total: int
    page: int
    page_size: int
    pages: int


# ── User ──────────────────────────────────────────────────────

class UserResponse(BaseSchema):
    id: uuid.UUID
    email: str
    name: str
    role: str
    is_active: bool
    created_at: datetime


# ── Catalog ───────────────────────────────────────────────────

class ServiceCreateRequest(BaseSchema):
    title: str = Field(..., min_length=2, max_length=255)
    description: Optional[str] = Field(None, max_length=5000)
    pricing_type: PricingType = PricingType.HOURLY
    hourly_rate: Optional[Decimal] = Field(None, gt=0, max_digits=12, decimal_places=2)
    package_price: Optional[Decimal] = Field(None, gt=0, max_digits=12, decimal_places=2)

    @model_validator(mode="after")
    def price_matches_pricing_type(self):
        if self.pricing_type == PricingType.HOURLY and self.hourly_rate is None:
            raise ValueError("hourly_rate is required for hourly services")
        if self.pricing_type == PricingType.PACKAGE and self.package_price is None:
            raise ValueError("package_price is required for package services")
        return self


class ServiceUpdateRequest(BaseSchema):
    title: Optional[str] = Field(None, min_length=2, max_length=255)
    description: Optional[str] = Field(None, max_length=5000)
    pricing_type: Optional[PricingType] = None
    hourly_rate: Optional[Decimal] = Field(None, gt=0, max_digits=12, decimal_places=2)
    package_price: Optional[Decimal] = Field(None, gt=0, max_digits=12, decimal_places=2)
    is_active: Optional[bool] = None


class ServiceResponse(BaseSchema):
    id: uuid.UUID
    provider_id: uuid.UUID
    title: str
    description: Optional[str]
    pricing_type: str
    hourly_rate: Optional[Decimal]
    package_price: Optional[Decimal]
    is_active: bool


# ── Availability: rules & overrides ───────────────────────────

class AvailabilityRuleIn(BaseSchema):
    day_of_week: int = Field(..., ge=0, le=6, description="0=Monday … 6=Sunday")
    start_time: time
    end_time: time
    slot_duration: int = Field(30, ge=5, le=480)
    buffer_minutes: int = Field(0, ge=0, le=240)


class AvailabilityRulesReplaceRequest(BaseSchema):
    rules: List[AvailabilityRuleIn] = Field(default_factory=list, max_length=50)


class AvailabilityRuleResponse(BaseSchema):
    id: uuid.UUID
    provider_id: uuid.UUID
    day_of_week: int
    start_time: time
    end_time: time
    slot_duration: int
    buffer_minutes: int
    is_active: bool


class AvailabilityOverrideRequest(BaseSchema):
    date: date
    is_available: bool = False
    start_time: Optional[time] = None
    end_time: Optional[time] = None
    reason: Optional[str] = Field(None, max_length=255)


class AvailabilityOverrideResponse(BaseSchema):
    id: uuid.UUID
    provider_id: uuid.UUID
    date: date
    is_available: bool
    start_time: Optional[time]
    end_time: Optional[time]
    reason: Optional[str]


class SlotGenerationResponse(BaseSchema):
    created: int
    removed: int
    horizon_start: date
    horizon_end: date


# ── Availability: slots, holds, calendar ──────────────────────

class SlotResponse(BaseSchema):
    id: uuid.UUID
    start: datetime
    end: datetime
    status: str
    is_held: bool = False
    hold_expires_at: Optional[datetime] = None
    held_by_me: bool = False


class DaySlotsResponse(BaseSchema):
    provider_id: uuid.UUID
    date: date
    slots: List[SlotResponse]


class CalendarDay(BaseSchema):
    date: date
    available_count: int
    held_count: int
    booked_count: int
    total_count: int
    is_blocked: bool
    status: Literal["available", "held", "fully_booked", "unavailable"]


class CalendarMonthResponse(BaseSchema):
    provider_id: uuid.UUID
    year: int
    month: int
    days: List[CalendarDay]
    overrides: List[AvailabilityOverrideResponse]


class HoldRequest(BaseSchema):
    slot_ids: List[uuid.UUID] = Field(..., min_length=1)


class HoldResponse(BaseSchema):
    hold_id: uuid.UUID
    provider_id: uuid.UUID
    slots: List[SlotResponse]
    hold_expires_at: datetime
    hold_duration_minutes: int
    server_time: datetime


class ReleaseRequest(BaseSchema):
    slot_ids: Optional[List[uuid.UUID]] = None
    hold_id: Optional[uuid.UUID] = None


class ReleaseResponse(BaseSchema):
    released_slots: int
    success: bool = True


# ── Booking: requests ─────────────────────────────────────────

class BookingCreateRequest(BaseSchema):
    provider_id: uuid.UUID
    service_id: uuid.UUID
    slot_ids: List[uuid.UUID] = Field(..., min_length=1)
    booking_mode: BookingMode = BookingMode.REQUEST
    pricing_type: PricingType = PricingType.HOURLY
    notes: Optional[str] = Field(None, max_length=2000)


class BookingStatusUpdateRequest(BaseSchema):
    status: Literal["accepted", "rejected", "cancelled"]
    reason: Optional[str] = Field(None, max_length=1000)


class BookingConfirmRequest(BaseSchema):
    confirmed: bool
    dispute_reason: Optional[str] = Field(None, max_length=2000)


class DisputeResolveRequest(BaseSchema):
    resolution: str = Field(..., max_length=5000)
    resolved_in_favor_of: DisputeOutcome
    refund_percentage: Optional[int] = Field(None, ge=0, le=100)


class RescheduleRequest(BaseSchema):
    start_date: datetime
    end_date: datetime
    reason: Optional[str] = Field(None, max_length=500)

    @field_validator("start_date", "end_date")
    @classmethod
    def assume_utc(cls, v: datetime) -> datetime:
        return _as_utc(v)


# ── Booking: responses (tagged by status) ─────────────────────

class EvidenceResponse(BaseSchema):
    id: uuid.UUID
    booking_id: uuid.UUID
    uploaded_by: uuid.UUID
    evidence_type: EvidenceType
    file_ref: str
    caption: Optional[str]
    uploaded_at: datetime


class _BookingBase(BaseSchema):
    id: uuid.UUID
    booking_number: str
    client_id: uuid.UUID
    provider_id: uuid.UUID
    service_id: uuid.UUID
    slot_ids: List[uuid.UUID]
    start: datetime
    end: datetime
    duration_minutes: int
    pricing_type: str
    booking_mode: str
    service_fee: Decimal
    platform_fee: Decimal
    total_price: Decimal
    notes: Optional[str] = None
    reschedule_count: int = 0
    previous_start: Optional[datetime] = None
    previous_end: Optional[datetime] = None
    reschedule_reason: Optional[str] = None
    rescheduled_at: Optional[datetime] = None
    created_at: datetime


class PendingBooking(_BookingBase):
    status: Literal["pending"]


class AcceptedBooking(_BookingBase):
    status: Literal["accepted"]
    accepted_at: datetime


class RejectedBooking(_BookingBase):
    status: Literal["rejected"]
    rejected_at: datetime
    rejection_reason: Optional[str] = None


class CancelledBooking(_BookingBase):
    status: Literal["cancelled"]
    accepted_at: Optional[datetime] = None
    cancelled_at: datetime
    cancelled_by: str
    cancellation_reason: Optional[str] = None


class _WorkReported(_BookingBase):
    accepted_at: datetime
    work_completed_at: datetime
    completion_notes: Optional[str] = None
    confirmation_deadline: datetime
    evidence: List[EvidenceResponse]


class AwaitingConfirmationBooking(_WorkReported):
    status: Literal["awaiting_confirmation"]


class CompletedBooking(_WorkReported):
    status: Literal["completed"]
    confirmed_at: Optional[datetime] = None
    auto_confirmed: bool
    completed_at: datetime


class DisputedBooking(_WorkReported):
    status: Literal["disputed"]
    dispute_reason: str
    disputed_at: datetime


class ResolvedBooking(_WorkReported):
    status: Literal["resolved"]
    dispute_reason: str
    disputed_at: datetime
    resolution: str
    resolved_in_favor_of: DisputeOutcome
    refund_percentage: int
    client_refund_amount: Decimal
    provider_release_amount: Decimal
    resolved_at: datetime


BookingResponse = Annotated[
    Union[
        PendingBooking,
        AcceptedBooking,
        RejectedBooking,
        CancelledBooking,
        AwaitingConfirmationBooking,
        CompletedBooking,
        DisputedBooking,
        ResolvedBooking,
    ],
    Field(discriminator="status"),
]

booking_response_adapter = TypeAdapter(BookingResponse)


class BookingAuditLogResponse(BaseSchema):
    id: uuid.UUID
    booking_id: uuid.UUID
    from_status: Optional[str]
    to_status: str
    changed_by_id: Optional[uuid.UUID]
    reason: Optional[str]
    audit_metadata: Optional[dict]
    created_at: datetime


# ── Payment ───────────────────────────────────────────────────

class PaymentInitiateRequest(BaseSchema):
    booking_id: uuid.UUID


class PaymentInitiateResponse(BaseSchema):
    razorpay_order_id: str
    razorpay_key_id: str
    amount: int  # in paise
    currency: str
    booking_id: str


class PaymentVerifyRequest(BaseSchema):
    booking_id: uuid.UUID
    razorpay_order_id: str
    razorpay_payment_id: str
    razorpay_signature: str


class PaymentResponse(BaseSchema):
    id: uuid.UUID
    booking_id: uuid.UUID
    amount: Decimal
    currency: str
    platform_fee: Decimal
    status: str
    refund_amount: Decimal
    captured_at: Optional[datetime]
    created_at: datetime


# ── Wallet ────────────────────────────────────────────────────

class WalletResponse(BaseSchema):
    provider_id: uuid.UUID
    available_balance: Decimal
    pending_balance: Decimal


class WalletTransactionResponse(BaseSchema):
    id: uuid.UUID
    booking_id: Optional[uuid.UUID]
    payment_id: Optional[uuid.UUID]
    payout_id: Optional[uuid.UUID] = None
    type: str
    balance_type: str
    amount: Decimal
    balance_after: Decimal
    reference_id: str
    description: Optional[str]
    created_at: datetime


class WalletReconciliationResponse(BaseSchema):
    provider_id: uuid.UUID
    available_balance: Decimal
    pending_balance: Decimal
    ledger_available: Decimal
    ledger_pending: Decimal
    balanced: bool


class WalletAdjustRequest(BaseSchema):
    amount: Decimal = Field(..., max_digits=12, decimal_places=2)
    balance_type: BalanceType = BalanceType.AVAILABLE
    reason: str = Field(..., min_length=5, max_length=500)

    @field_validator("amount")
    @classmethod
    def non_zero(cls, v: Decimal) -> Decimal:
        if v == 0:
            raise ValueError("amount must be non-zero")
        return v


class PayoutRequest(BaseSchema):
    amount: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2)
    payout_method: str = Field(..., min_length=2, max_length=50)
    payout_details: Optional[dict] = None


class PayoutStatusUpdateRequest(BaseSchema):
    status: PayoutStatus
    admin_notes: Optional[str] = Field(None, max_length=2000)
    rejection_reason: Optional[str] = Field(None, max_length=500)


class PayoutResponse(BaseSchema):
    id: uuid.UUID
    provider_id: uuid.UUID
    amount: Decimal
    payout_method: str
    payout_details: Optional[dict]
    status: str
    admin_notes: Optional[str]
    rejection_reason: Optional[str]
    created_at: datetime
    processed_at: Optional[datetime]
    completed_at: Optional[datetime]


# ── Review ────────────────────────────────────────────────────

class ReviewCreateRequest(BaseSchema):
    booking_id: uuid.UUID
    rating: int = Field(..., ge=1, le=5)
    comment: Optional[str] = Field(None, max_length=2000)


class ReviewResponse(BaseSchema):
    id: uuid.UUID
    booking_id: uuid.UUID
    client_id: uuid.UUID
    provider_id: uuid.UUID
    rating: int
    comment: Optional[str]
    created_at: datetime


class ReviewEligibilityResponse(BaseSchema):
    can_review: bool
    reason: Optional[str] = None
    review_id: Optional[uuid.UUID] = None


class ReviewStats(BaseSchema):
    total_reviews: int
    average_rating: float
    distribution: Dict[int, int]


class ProviderReviewsResponse(BaseSchema):
    reviews: List[ReviewResponse]
    stats: ReviewStats


# ── Admin ─────────────────────────────────────────────────────

class HoldSweepResponse(BaseSchema):
    released_slots: int
    deleted_holds: int


class AdminAuditLogResponse(BaseSchema):
    id: uuid.UUID
    admin_id: uuid.UUID
    action: str
    entity_type: str
    entity_id: Optional[str]
    payload: Optional[dict]
    ip_address: Optional[str]
    created_at: datetime


# ── Notification ──────────────────────────────────────────────

class NotificationResponse(BaseSchema):
    id: uuid.UUID
    type: str
    title: str
    body: str
    booking_id: Optional[uuid.UUID]
    is_read: bool
    created_at: datetime


# ── Common ────────────────────────────────────────────────────

class MessageResponse(BaseSchema):
    message: str
    success: bool = True


class ErrorResponse(BaseSchema):
    detail: str
    code: Optional[str] = None
