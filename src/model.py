"""
model.py

Domain models for the Tailor Marketplace order fulfillment workflow.

Entities
--------
- User
- TailorProfile
- Booking            (embeds Quote and its status history)
- Quote / QuoteItem / StageEstimates / QuoteResponse
- Order              (embeds WorkPlan, Stages, DelayRequests, Dispute)
- WorkPlan / WorkPlanRevision / StageDefinition
- Stage / StageNote
- DelayRequest
- CompletionFeedback
- Dispute
- StatusHistoryEntry
- NotificationLog
- DomainEvent

All models use Python dataclasses for clean, framework-agnostic definitions.
UUID primary keys are used throughout for portability.
Timestamps are always stored in UTC.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class UserRole(str, Enum):
    CUSTOMER = "customer"
    TAILOR = "tailor"
    ADMIN = "admin"


class BookingStatus(str, Enum):
    """
    Lifecycle status of a consultation booking.

    PENDING            – Requested by the customer, awaiting the tailor.
    CONFIRMED          – Tailor accepted the slot.
    CONSULTATION_DONE  – Consultation held; tailor may now quote.
    QUOTE_SUBMITTED    – Quote awaiting the customer's answer.
    QUOTE_ACCEPTED     – Customer accepted; payment is due.
    PAID               – Funds held in escrow.
    CONVERTED          – An Order was created from this booking.
    CANCELLED          – Cancelled by a party before conversion.
    DECLINED           – Tailor refused the request.
    """
    PENDING = "pending"
    CONFIRMED = "confirmed"
    CONSULTATION_DONE = "consultation_done"
    QUOTE_SUBMITTED = "quote_submitted"
    QUOTE_ACCEPTED = "quote_accepted"
    PAID = "paid"
    CONVERTED = "converted"
    CANCELLED = "cancelled"
    DECLINED = "declined"


class PaymentStatus(str, Enum):
    """Escrow state of the booking's payment."""
    PENDING = "pending"
    HELD = "held"
    RELEASED = "released"
    REFUNDED = "refunded"


class QuoteResponseStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


class OrderStatus(str, Enum):
    """
    Lifecycle status of a tailoring order.

    AWAITING_PLAN  – Tailor must submit a work plan before the plan deadline.
    PLAN_REVIEW    – Plan submitted, awaiting customer approval.
    PLAN_REJECTED  – Customer rejected the plan; tailor must revise.
    IN_PROGRESS    – Stages are being worked through in order.
    READY          – All stages complete; awaiting customer sign-off.
    COMPLETED      – Customer confirmed delivery; escrow captured.
    CANCELLED      – Terminated before completion; escrow released.
    DISPUTED       – Under admin review; work is frozen.
    """
    AWAITING_PLAN = "awaiting_plan"
    PLAN_REVIEW = "plan_review"
    PLAN_REJECTED = "plan_rejected"
    IN_PROGRESS = "in_progress"
    READY = "ready"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    DISPUTED = "disputed"


class StageStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class DelayRequestStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class DisputeStatus(str, Enum):
    OPEN = "open"
    UNDER_REVIEW = "under_review"
    RESOLVED = "resolved"


# ---------------------------------------------------------------------------
# Parties
# ---------------------------------------------------------------------------


@dataclass
class User:
    """A person using the marketplace: customer, tailor or admin."""
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    full_name: str = ""
    email: str = ""
    role: UserRole = UserRole.CUSTOMER
    is_active: bool = True
    created_at: datetime = field(default_factory=_now)


@dataclass
class TailorProfile:
    """
    Storefront of a tailor.  Bookings reference the profile, while
    authorization checks compare against the owning user_id.
    """
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    user_id: uuid.UUID = field(default_factory=uuid.uuid4)   # FK → User.id
    business_name: str = ""
    accepting_bookings: bool = True
    payout_account_id: Optional[str] = None                  # escrow destination
    created_at: datetime = field(default_factory=_now)


# ---------------------------------------------------------------------------
# Shared value objects
# ---------------------------------------------------------------------------


@dataclass
class StatusHistoryEntry:
    """One append-only record of a status mutation on a Booking or Order."""
    status: str = ""
    changed_at: datetime = field(default_factory=_now)
    changed_by_id: Optional[uuid.UUID] = None
    note: str = ""


# ---------------------------------------------------------------------------
# Booking & Quote
# ---------------------------------------------------------------------------


@dataclass
class QuoteItem:
    description: str = ""
    quantity: int = 1
    unit_price: float = 0.0


@dataclass
class StageEstimates:
    """Per-stage day estimates used to build the default work plan."""
    design: int = 3
    sew: int = 7
    deliver: int = 2

    @property
    def total(self) -> int:
        return self.design + self.sew + self.deliver


@dataclass
class QuoteResponse:
    status: QuoteResponseStatus = QuoteResponseStatus.PENDING
    responded_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None


@dataclass
class Quote:
    items: List[QuoteItem] = field(default_factory=list)
    labor_cost: float = 0.0
    material_cost: float = 0.0
    total_amount: float = 0.0
    currency: str = "USD"
    estimated_days: StageEstimates = field(default_factory=StageEstimates)
    total_estimated_days: int = 0
    notes: str = ""
    revision: int = 1
    submitted_at: datetime = field(default_factory=_now)
    valid_until: Optional[datetime] = None
    customer_response: QuoteResponse = field(default_factory=QuoteResponse)


@dataclass
class Booking:
    """
    A customer's request for a consultation slot with a tailor.

    The booking carries the negotiation (consultation and quote) and the
    escrow linkage until it converts into exactly one Order.
    """
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    customer_id: uuid.UUID = field(default_factory=uuid.uuid4)   # FK → User.id
    tailor_id: uuid.UUID = field(default_factory=uuid.uuid4)     # FK → TailorProfile.id

    # Slot
    booking_date: Optional[date] = None
    start_time: str = ""        # "HH:MM"
    end_time: str = ""          # "HH:MM"
    service: str = ""
    notes: str = ""

    status: BookingStatus = BookingStatus.PENDING
    status_history: List[StatusHistoryEntry] = field(default_factory=list)

    # Negotiation
    consultation_notes: str = ""
    consultation_completed_at: Optional[datetime] = None
    decline_reason: Optional[str] = None
    quote: Optional[Quote] = None

    # Escrow
    payment_status: PaymentStatus = PaymentStatus.PENDING
    escrow_ref: Optional[str] = None
    paid_at: Optional[datetime] = None

    order_id: Optional[uuid.UUID] = None                         # FK → Order.id

    # Cancellation
    cancelled_at: Optional[datetime] = None
    cancelled_by_id: Optional[uuid.UUID] = None
    cancellation_reason: Optional[str] = None

    # Concurrency token, incremented on every committed write
    version: int = 0

    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)


# ---------------------------------------------------------------------------
# Order & Work Plan
# ---------------------------------------------------------------------------


@dataclass
class StageNote:
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    text: str = ""
    added_by_id: Optional[uuid.UUID] = None
    added_at: datetime = field(default_factory=_now)


@dataclass
class Stage:
    """A single step of a work plan.  Stages are worked strictly in order."""
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    name: str = ""
    description: str = ""
    estimated_days: int = 1
    order: int = 0              # 0-based position within the plan
    status: StageStatus = StageStatus.PENDING
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    notes: List[StageNote] = field(default_factory=list)


@dataclass(frozen=True)
class StageDefinition:
    """Name, description and duration of a stage, as submitted by the tailor."""
    name: str
    description: str
    estimated_days: int


@dataclass(frozen=True)
class WorkPlanRevision:
    """
    A rejected plan, archived with the rejection reason and the customer
    who rejected it.  Entries are never edited once written.
    """
    revised_at: datetime
    revised_by_id: Optional[uuid.UUID]
    reason: str
    previous_stages: Tuple[StageDefinition, ...] = ()


@dataclass
class WorkPlan:
    stages: List[Stage] = field(default_factory=list)
    total_estimated_days: int = 0
    estimated_completion: Optional[datetime] = None
    submitted_at: Optional[datetime] = None
    approved_at: Optional[datetime] = None
    rejected_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    revision_history: List[WorkPlanRevision] = field(default_factory=list)


@dataclass
class DelayRequest:
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    requested_at: datetime = field(default_factory=_now)
    requested_by_id: Optional[uuid.UUID] = None
    reason: str = ""
    additional_days: int = 1
    status: DelayRequestStatus = DelayRequestStatus.PENDING
    reviewed_at: Optional[datetime] = None
    reviewed_by_id: Optional[uuid.UUID] = None
    review_notes: Optional[str] = None


@dataclass
class CompletionFeedback:
    rating: Optional[int] = None      # 1..5
    comment: str = ""
    submitted_at: datetime = field(default_factory=_now)


@dataclass
class Dispute:
    raised_at: datetime = field(default_factory=_now)
    raised_by_id: Optional[uuid.UUID] = None
    reason: str = ""
    status: DisputeStatus = DisputeStatus.OPEN
    reviewed_by_id: Optional[uuid.UUID] = None
    reviewed_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None
    resolution: Optional[str] = None


@dataclass
class Order:
    """
    The fulfillment record created from a paid booking.

    Embeds its work plan, stage list, delay requests and status history so
    the whole aggregate is read and written as one unit.
    """
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    booking_id: uuid.UUID = field(default_factory=uuid.uuid4)    # unique FK → Booking.id
    customer_id: uuid.UUID = field(default_factory=uuid.uuid4)   # FK → User.id
    tailor_id: uuid.UUID = field(default_factory=uuid.uuid4)     # FK → TailorProfile.id

    status: OrderStatus = OrderStatus.AWAITING_PLAN
    status_history: List[StatusHistoryEntry] = field(default_factory=list)

    work_plan: Optional[WorkPlan] = None
    current_stage: int = 0
    delay_requests: List[DelayRequest] = field(default_factory=list)

    # Deadlines & reminder flags
    plan_deadline: Optional[datetime] = None
    plan_reminder_sent: bool = False
    plan_overdue_notified: bool = False
    completion_overdue_notified: bool = False

    # Milestones
    work_started_at: Optional[datetime] = None
    work_completed_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    completion_feedback: Optional[CompletionFeedback] = None

    # Cancellation
    cancelled_at: Optional[datetime] = None
    cancelled_by_id: Optional[uuid.UUID] = None
    cancellation_reason: Optional[str] = None

    # Dispute
    dispute: Optional[Dispute] = None
    status_before_dispute: Optional[OrderStatus] = None

    version: int = 0

    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)

    @property
    def stages(self) -> List[Stage]:
        return self.work_plan.stages if self.work_plan else []


# ---------------------------------------------------------------------------
# Notifications & events
# ---------------------------------------------------------------------------


@dataclass
class NotificationLog:
    """
    Outbox record of a notification handed to the dispatcher.
    Immutable once created.
    """
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    template_id: str = ""
    recipient_id: Optional[uuid.UUID] = None     # None → admin channel
    recipient_label: str = ""                    # "customer" / "tailor" / "admin"
    entity_type: str = ""
    entity_id: Optional[uuid.UUID] = None
    context: Dict[str, Any] = field(default_factory=dict)
    notified_at: datetime = field(default_factory=_now)


@dataclass(frozen=True)
class DomainEvent:
    """
    A committed fact about a Booking or Order, published after the unit of
    work succeeds.  Subscribers only ever see events of durable changes.
    """
    name: str
    entity_type: str
    entity_id: uuid.UUID
    actor_id: Optional[uuid.UUID] = None
    previous_status: Optional[str] = None
    new_status: Optional[str] = None
    customer_id: Optional[uuid.UUID] = None
    tailor_user_id: Optional[uuid.UUID] = None
    notify_admin: bool = False
    context: Dict[str, Any] = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=_now)
