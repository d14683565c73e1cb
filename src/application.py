"""
application.py

Application layer for the Tailor Marketplace order fulfillment workflow.

Overview
--------
The application layer sits between the presentation layer (API) and the
domain / service layer.  It is responsible for:

  1. Defining clean output DTOs (dataclasses) that carry only the data
     the presentation layer needs; no raw domain objects are leaked upward.
  2. Declaring abstract Repository interfaces and the ports the workflow
     consumes (payment gateway, notification dispatcher, settings provider),
     so the layer stays persistence- and vendor-agnostic.
  3. Declaring the UnitOfWork abstraction so that every mutation inside a
     use case (booking + order + escrow bookkeeping) commits atomically.
  4. Implementing Use Case handlers, one class per user-facing operation,
     that orchestrate service calls, repository reads/writes, gateway calls
     and post-commit events in the correct order.

Structure
---------
DTOs
    UserDTO, TailorProfileDTO, StatusHistoryDTO, HistoryPageDTO
    QuoteItemDTO, QuoteDTO, BookingDTO
    StageNoteDTO, StageDTO, WorkPlanRevisionDTO, WorkPlanDTO
    DelayRequestDTO, DisputeDTO, OrderDTO
    OverdueOrdersDTO, DeadlineScanResultDTO, SettingDTO, NotificationLogDTO

Repository interfaces
    AbstractUserRepository, AbstractTailorProfileRepository
    AbstractBookingRepository, AbstractOrderRepository
    AbstractNotificationLogRepository

Ports
    AbstractPaymentGateway, AbstractNotificationDispatcher,
    AbstractSettingsProvider

Events
    EventBus, NotificationSubscriber

Unit of Work
    AbstractUnitOfWork

Use Cases
    --- Parties ---
    CreateUserUseCase, GetUserUseCase
    CreateTailorProfileUseCase, GetTailorProfileUseCase,
    ListTailorProfilesUseCase, SetTailorAvailabilityUseCase

    --- Bookings ---
    RequestBookingUseCase, ConfirmBookingUseCase, DeclineBookingUseCase,
    CompleteConsultationUseCase, SubmitQuoteUseCase, RespondToQuoteUseCase,
    PayBookingUseCase, CancelBookingUseCase,
    GetBookingUseCase, ListBookingsUseCase, GetBookingHistoryUseCase

    --- Orders ---
    ConvertBookingToOrderUseCase, SubmitWorkPlanUseCase,
    ApproveWorkPlanUseCase, RejectWorkPlanUseCase, CompleteStageUseCase,
    AddStageNoteUseCase, RequestDelayUseCase, RespondToDelayUseCase,
    MarkOrderCompletedUseCase, CancelOrderUseCase,
    RaiseDisputeUseCase, ReviewDisputeUseCase, ResolveDisputeUseCase,
    GetOrderUseCase, ListOrdersUseCase, GetOrderHistoryUseCase

    --- Administration ---
    GetOverdueOrdersUseCase, ScanOrderDeadlinesUseCase,
    GetSettingsUseCase, UpdateSettingUseCase, GetMyNotificationsUseCase

Design notes
------------
- Use cases receive commands and return DTOs only; no domain objects cross
  the application boundary.
- Each use case accepts a UnitOfWork as its sole dependency.  The UoW
  exposes all repositories and ports and handles commit/rollback.
- Workflow settings are read once per use case into a PolicySnapshot.
- Gateway calls happen after validation and before the local commit; when
  the commit fails after funds were held, the hold is voided.
- Events are collected on the UoW and published only after a successful
  commit.  Subscriber failures are logged and never fail the use case.
- All timestamps flowing out are ISO-8601 strings (UTC).
"""

from __future__ import annotations

import abc
import functools
import logging
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence

from model import (
    Booking,
    BookingStatus,
    DelayRequest,
    DomainEvent,
    NotificationLog,
    Order,
    OrderStatus,
    PaymentStatus,
    QuoteItem,
    Stage,
    StageDefinition,
    StageEstimates,
    StatusHistoryEntry,
    TailorProfile,
    User,
    UserRole,
)
from service import (
    BookingService,
    DeadlineService,
    OrderService,
    Parties,
    PermissionDenied,
    PolicySnapshot,
    WorkPlanService,
    require_party,
    require_role,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class ApplicationError(Exception):
    """Raised when a use case cannot complete due to a business rule violation."""
    code = "validation_error"


class NotFoundError(ApplicationError):
    """Raised when a requested entity does not exist."""
    code = "not_found"


class AuthorizationError(ApplicationError):
    """Raised when the acting user is neither an owning party nor an admin."""
    code = "unauthorized"


class OrderAlreadyExists(ApplicationError):
    """Raised when a booking has already been converted into an order."""
    code = "order_already_exists"


class ConcurrencyConflict(ApplicationError):
    """Raised at commit when a record changed after it was read."""
    code = "concurrency_conflict"


class PaymentGatewayFailure(ApplicationError):
    """Raised by a payment gateway adapter; local state is left untouched."""
    code = "payment_gateway_failure"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _fmt(dt: Optional[datetime]) -> Optional[str]:
    """Convert a datetime to an ISO-8601 UTC string, or None."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.isoformat()


def _fmt_date(d: Optional[date]) -> Optional[str]:
    return d.isoformat() if d else None


def _id(value: Optional[uuid.UUID]) -> Optional[str]:
    return str(value) if value else None


@contextmanager
def _authorized():
    """Translate guard failures from the service layer into AuthorizationError."""
    try:
        yield
    except PermissionDenied as exc:
        raise AuthorizationError(str(exc)) from exc


# ===========================================================================
# DTO DEFINITIONS
# ===========================================================================

# ---------------------------------------------------------------------------
# Party DTOs
# ---------------------------------------------------------------------------

@dataclass
class UserDTO:
    id: str
    full_name: str
    email: str
    role: str
    is_active: bool


@dataclass
class TailorProfileDTO:
    id: str
    user_id: str
    business_name: str
    accepting_bookings: bool
    payout_account_id: Optional[str]


# ---------------------------------------------------------------------------
# History DTOs
# ---------------------------------------------------------------------------

@dataclass
class StatusHistoryDTO:
    status: str
    changed_at: str
    changed_by_id: Optional[str]
    note: str


@dataclass
class HistoryPageDTO:
    """One page of a booking's or order's status history, oldest first."""
    entity_id: str
    total: int
    offset: int
    limit: int
    items: List[StatusHistoryDTO]


# ---------------------------------------------------------------------------
# Booking DTOs
# ---------------------------------------------------------------------------

@dataclass
class QuoteItemDTO:
    description: str
    quantity: int
    unit_price: float
    line_total: float


@dataclass
class QuoteDTO:
    items: List[QuoteItemDTO]
    labor_cost: float
    material_cost: float
    total_amount: float
    currency: str
    estimated_days: Dict[str, int]
    total_estimated_days: int
    notes: str
    revision: int
    submitted_at: str
    valid_until: Optional[str]
    response_status: str
    responded_at: Optional[str]
    rejection_reason: Optional[str]


@dataclass
class BookingDTO:
    id: str
    customer_id: str
    tailor_id: str
    date: Optional[str]
    start_time: str
    end_time: str
    service: str
    notes: str
    status: str
    consultation_notes: str
    consultation_completed_at: Optional[str]
    decline_reason: Optional[str]
    quote: Optional[QuoteDTO]
    payment_status: str
    escrow_ref: Optional[str]
    paid_at: Optional[str]
    order_id: Optional[str]
    cancelled_at: Optional[str]
    cancellation_reason: Optional[str]
    history_length: int
    version: int
    created_at: str
    updated_at: str


# ---------------------------------------------------------------------------
# Order DTOs
# ---------------------------------------------------------------------------

@dataclass
class StageNoteDTO:
    id: str
    text: str
    added_by_id: Optional[str]
    added_at: str


@dataclass
class StageDTO:
    id: str
    index: int
    name: str
    description: str
    estimated_days: int
    status: str
    started_at: Optional[str]
    completed_at: Optional[str]
    notes: List[StageNoteDTO]


@dataclass
class WorkPlanRevisionDTO:
    revised_at: str
    revised_by_id: Optional[str]
    reason: str
    previous_stages: List[Dict[str, Any]]


@dataclass
class WorkPlanDTO:
    stages: List[StageDTO]
    total_estimated_days: int
    estimated_completion: Optional[str]
    submitted_at: Optional[str]
    approved_at: Optional[str]
    rejected_at: Optional[str]
    rejection_reason: Optional[str]
    revision_history: List[WorkPlanRevisionDTO]


@dataclass
class DelayRequestDTO:
    id: str
    requested_at: str
    requested_by_id: Optional[str]
    reason: str
    additional_days: int
    status: str
    reviewed_at: Optional[str]
    reviewed_by_id: Optional[str]
    review_notes: Optional[str]


@dataclass
class DisputeDTO:
    raised_at: str
    raised_by_id: Optional[str]
    reason: str
    status: str
    reviewed_by_id: Optional[str]
    resolved_at: Optional[str]
    resolution: Optional[str]


@dataclass
class OrderDTO:
    id: str
    booking_id: str
    customer_id: str
    tailor_id: str
    status: str
    work_plan: Optional[WorkPlanDTO]
    current_stage: int
    current_stage_info: Optional[StageDTO]
    delay_requests: List[DelayRequestDTO]
    plan_deadline: Optional[str]
    plan_reminder_sent: bool
    plan_overdue_notified: bool
    completion_overdue_notified: bool
    work_started_at: Optional[str]
    work_completed_at: Optional[str]
    delivered_at: Optional[str]
    completed_at: Optional[str]
    rating: Optional[int]
    feedback_comment: Optional[str]
    cancelled_at: Optional[str]
    cancellation_reason: Optional[str]
    dispute: Optional[DisputeDTO]
    # Derived on read
    progress_percentage: int
    is_overdue: bool
    days_remaining: Optional[int]
    history_length: int
    version: int
    created_at: str
    updated_at: str


# ---------------------------------------------------------------------------
# Administration DTOs
# ---------------------------------------------------------------------------

@dataclass
class OverdueOrdersDTO:
    overdue_plans: List[OrderDTO]
    overdue_completions: List[OrderDTO]


@dataclass
class DeadlineScanResultDTO:
    scanned: int
    plan_reminders: int
    plan_overdue: int
    completion_overdue: int
    order_ids: List[str]


@dataclass
class SettingDTO:
    key: str
    value: Any


@dataclass
class NotificationLogDTO:
    id: str
    template_id: str
    recipient_id: Optional[str]
    recipient_label: str
    entity_type: str
    entity_id: Optional[str]
    context: Dict[str, Any]
    notified_at: str


# ---------------------------------------------------------------------------
# Assembler helpers  (domain model → DTO)
# ---------------------------------------------------------------------------

class _Assembler:
    """Converts domain model instances into DTOs."""

    @staticmethod
    def user(u: User) -> UserDTO:
        return UserDTO(
            id=str(u.id),
            full_name=u.full_name,
            email=u.email,
            role=u.role.value,
            is_active=u.is_active,
        )

    @staticmethod
    def tailor(t: TailorProfile) -> TailorProfileDTO:
        return TailorProfileDTO(
            id=str(t.id),
            user_id=str(t.user_id),
            business_name=t.business_name,
            accepting_bookings=t.accepting_bookings,
            payout_account_id=t.payout_account_id,
        )

    @staticmethod
    def history_entry(h: StatusHistoryEntry) -> StatusHistoryDTO:
        return StatusHistoryDTO(
            status=h.status,
            changed_at=_fmt(h.changed_at),
            changed_by_id=_id(h.changed_by_id),
            note=h.note,
        )

    @staticmethod
    def history_page(
        entity_id: uuid.UUID, history: Sequence[StatusHistoryEntry], offset: int, limit: int
    ) -> HistoryPageDTO:
        window = history[offset:offset + limit]
        return HistoryPageDTO(
            entity_id=str(entity_id),
            total=len(history),
            offset=offset,
            limit=limit,
            items=[_Assembler.history_entry(h) for h in window],
        )

    @staticmethod
    def booking(b: Booking) -> BookingDTO:
        quote = None
        if b.quote is not None:
            q = b.quote
            quote = QuoteDTO(
                items=[
                    QuoteItemDTO(
                        description=i.description,
                        quantity=i.quantity,
                        unit_price=round(i.unit_price, 2),
                        line_total=round(i.quantity * i.unit_price, 2),
                    )
                    for i in q.items
                ],
                labor_cost=q.labor_cost,
                material_cost=q.material_cost,
                total_amount=q.total_amount,
                currency=q.currency,
                estimated_days={
                    "design": q.estimated_days.design,
                    "sew": q.estimated_days.sew,
                    "deliver": q.estimated_days.deliver,
                },
                total_estimated_days=q.total_estimated_days,
                notes=q.notes,
                revision=q.revision,
                submitted_at=_fmt(q.submitted_at),
                valid_until=_fmt(q.valid_until),
                response_status=q.customer_response.status.value,
                responded_at=_fmt(q.customer_response.responded_at),
                rejection_reason=q.customer_response.rejection_reason,
            )
        return BookingDTO(
            id=str(b.id),
            customer_id=str(b.customer_id),
            tailor_id=str(b.tailor_id),
            date=_fmt_date(b.booking_date),
            start_time=b.start_time,
            end_time=b.end_time,
            service=b.service,
            notes=b.notes,
            status=b.status.value,
            consultation_notes=b.consultation_notes,
            consultation_completed_at=_fmt(b.consultation_completed_at),
            decline_reason=b.decline_reason,
            quote=quote,
            payment_status=b.payment_status.value,
            escrow_ref=b.escrow_ref,
            paid_at=_fmt(b.paid_at),
            order_id=_id(b.order_id),
            cancelled_at=_fmt(b.cancelled_at),
            cancellation_reason=b.cancellation_reason,
            history_length=len(b.status_history),
            version=b.version,
            created_at=_fmt(b.created_at),
            updated_at=_fmt(b.updated_at),
        )

    @staticmethod
    def stage(s: Stage, index: int) -> StageDTO:
        return StageDTO(
            id=str(s.id),
            index=index,
            name=s.name,
            description=s.description,
            estimated_days=s.estimated_days,
            status=s.status.value,
            started_at=_fmt(s.started_at),
            completed_at=_fmt(s.completed_at),
            notes=[
                StageNoteDTO(id=str(n.id), text=n.text, added_by_id=_id(n.added_by_id), added_at=_fmt(n.added_at))
                for n in s.notes
            ],
        )

    @staticmethod
    def delay_request(d: DelayRequest) -> DelayRequestDTO:
        return DelayRequestDTO(
            id=str(d.id),
            requested_at=_fmt(d.requested_at),
            requested_by_id=_id(d.requested_by_id),
            reason=d.reason,
            additional_days=d.additional_days,
            status=d.status.value,
            reviewed_at=_fmt(d.reviewed_at),
            reviewed_by_id=_id(d.reviewed_by_id),
            review_notes=d.review_notes,
        )

    @staticmethod
    def order(o: Order) -> OrderDTO:
        work_plan = None
        if o.work_plan is not None:
            wp = o.work_plan
            work_plan = WorkPlanDTO(
                stages=[_Assembler.stage(s, i) for i, s in enumerate(wp.stages)],
                total_estimated_days=wp.total_estimated_days,
                estimated_completion=_fmt(wp.estimated_completion),
                submitted_at=_fmt(wp.submitted_at),
                approved_at=_fmt(wp.approved_at),
                rejected_at=_fmt(wp.rejected_at),
                rejection_reason=wp.rejection_reason,
                revision_history=[
                    WorkPlanRevisionDTO(
                        revised_at=_fmt(r.revised_at),
                        revised_by_id=_id(r.revised_by_id),
                        reason=r.reason,
                        previous_stages=[
                            {"name": s.name, "description": s.description, "estimated_days": s.estimated_days}
                            for s in r.previous_stages
                        ],
                    )
                    for r in wp.revision_history
                ],
            )
        dispute = None
        if o.dispute is not None:
            dispute = DisputeDTO(
                raised_at=_fmt(o.dispute.raised_at),
                raised_by_id=_id(o.dispute.raised_by_id),
                reason=o.dispute.reason,
                status=o.dispute.status.value,
                reviewed_by_id=_id(o.dispute.reviewed_by_id),
                resolved_at=_fmt(o.dispute.resolved_at),
                resolution=o.dispute.resolution,
            )
        current = _plan_svc.current_stage_info(o)
        feedback = o.completion_feedback
        return OrderDTO(
            id=str(o.id),
            booking_id=str(o.booking_id),
            customer_id=str(o.customer_id),
            tailor_id=str(o.tailor_id),
            status=o.status.value,
            work_plan=work_plan,
            current_stage=o.current_stage,
            current_stage_info=_Assembler.stage(current, o.current_stage) if current else None,
            delay_requests=[_Assembler.delay_request(d) for d in o.delay_requests],
            plan_deadline=_fmt(o.plan_deadline),
            plan_reminder_sent=o.plan_reminder_sent,
            plan_overdue_notified=o.plan_overdue_notified,
            completion_overdue_notified=o.completion_overdue_notified,
            work_started_at=_fmt(o.work_started_at),
            work_completed_at=_fmt(o.work_completed_at),
            delivered_at=_fmt(o.delivered_at),
            completed_at=_fmt(o.completed_at),
            rating=feedback.rating if feedback else None,
            feedback_comment=feedback.comment if feedback else None,
            cancelled_at=_fmt(o.cancelled_at),
            cancellation_reason=o.cancellation_reason,
            dispute=dispute,
            progress_percentage=_plan_svc.progress_percentage(o),
            is_overdue=_plan_svc.is_overdue(o),
            days_remaining=_plan_svc.days_remaining(o),
            history_length=len(o.status_history),
            version=o.version,
            created_at=_fmt(o.created_at),
            updated_at=_fmt(o.updated_at),
        )

    @staticmethod
    def notification(n: NotificationLog) -> NotificationLogDTO:
        return NotificationLogDTO(
            id=str(n.id),
            template_id=n.template_id,
            recipient_id=_id(n.recipient_id),
            recipient_label=n.recipient_label,
            entity_type=n.entity_type,
            entity_id=_id(n.entity_id),
            context=dict(n.context),
            notified_at=_fmt(n.notified_at),
        )


# ===========================================================================
# REPOSITORY INTERFACES
# ===========================================================================
#
# add() stages a new record; save() stages an update of a record obtained
# from get() in the same unit of work.  Nothing is visible to other units of
# work until commit().

class AbstractUserRepository(abc.ABC):
    @abc.abstractmethod
    def get(self, user_id: uuid.UUID) -> Optional[User]: ...
    @abc.abstractmethod
    def get_by_email(self, email: str) -> Optional[User]: ...
    @abc.abstractmethod
    def add(self, user: User) -> None: ...


class AbstractTailorProfileRepository(abc.ABC):
    @abc.abstractmethod
    def get(self, tailor_id: uuid.UUID) -> Optional[TailorProfile]: ...
    @abc.abstractmethod
    def get_by_user(self, user_id: uuid.UUID) -> Optional[TailorProfile]: ...
    @abc.abstractmethod
    def list_all(self) -> List[TailorProfile]: ...
    @abc.abstractmethod
    def add(self, profile: TailorProfile) -> None: ...
    @abc.abstractmethod
    def save(self, profile: TailorProfile) -> None: ...


class AbstractBookingRepository(abc.ABC):
    @abc.abstractmethod
    def get(self, booking_id: uuid.UUID) -> Optional[Booking]: ...
    @abc.abstractmethod
    def list_for_tailor(self, tailor_id: uuid.UUID) -> List[Booking]: ...
    @abc.abstractmethod
    def list_for_customer(self, customer_id: uuid.UUID) -> List[Booking]: ...
    @abc.abstractmethod
    def list_all(self) -> List[Booking]: ...
    @abc.abstractmethod
    def add(self, booking: Booking) -> None: ...
    @abc.abstractmethod
    def save(self, booking: Booking) -> None: ...


class AbstractOrderRepository(abc.ABC):
    @abc.abstractmethod
    def get(self, order_id: uuid.UUID) -> Optional[Order]: ...
    @abc.abstractmethod
    def get_by_booking(self, booking_id: uuid.UUID) -> Optional[Order]: ...
    @abc.abstractmethod
    def list_by_status(self, *statuses: OrderStatus) -> List[Order]: ...
    @abc.abstractmethod
    def list_all(self) -> List[Order]: ...
    @abc.abstractmethod
    def add(self, order: Order) -> None: ...
    @abc.abstractmethod
    def save(self, order: Order) -> None: ...


class AbstractNotificationLogRepository(abc.ABC):
    @abc.abstractmethod
    def list_for_recipient(self, recipient_id: Optional[uuid.UUID]) -> List[NotificationLog]: ...
    @abc.abstractmethod
    def list_all(self) -> List[NotificationLog]: ...


# ===========================================================================
# PORTS
# ===========================================================================

class AbstractPaymentGateway(abc.ABC):
    """
    Escrow provider.  Implementations must be idempotent per reference:
    holding twice for the same reference returns the existing hold, and
    capturing / cancelling an already captured / cancelled hold is a no-op.
    Failures are raised as PaymentGatewayFailure.
    """

    @abc.abstractmethod
    def authorize_and_hold(self, amount: float, currency: str, destination: Optional[str], reference_id: str) -> str: ...
    @abc.abstractmethod
    def capture(self, escrow_ref: str) -> None: ...
    @abc.abstractmethod
    def cancel(self, escrow_ref: str) -> None: ...
    @abc.abstractmethod
    def refund(self, escrow_ref: str, amount: Optional[float] = None) -> None: ...


@dataclass(frozen=True)
class Recipient:
    label: str                          # "customer" / "tailor" / "admin"
    user_id: Optional[uuid.UUID] = None


class AbstractNotificationDispatcher(abc.ABC):
    @abc.abstractmethod
    def notify(self, template_id: str, recipient: Recipient, context: Dict[str, Any]) -> None: ...


class AbstractSettingsProvider(abc.ABC):
    @abc.abstractmethod
    def get_value(self, key: str) -> Any: ...
    @abc.abstractmethod
    def set_value(self, key: str, value: Any) -> None: ...
    @abc.abstractmethod
    def all_values(self) -> Dict[str, Any]: ...


# ===========================================================================
# EVENTS
# ===========================================================================

class EventBus:
    """
    In-process publish/subscribe for committed domain events.  A failing
    handler is logged and skipped; it never affects the publisher.
    """

    def __init__(self) -> None:
        self._handlers: List[Callable[[DomainEvent], None]] = []

    def subscribe(self, handler: Callable[[DomainEvent], None]) -> None:
        self._handlers.append(handler)

    def publish(self, event: DomainEvent) -> None:
        for handler in list(self._handlers):
            try:
                handler(event)
            except Exception:
                logger.exception(f"Event handler {handler!r} failed for {event.name} on {event.entity_id}")


class NotificationSubscriber:
    """Routes committed events to the notification dispatcher."""

    # event name → parties to notify; admins are added when the event asks
    ROUTES: Dict[str, tuple] = {
        "booking.requested": ("tailor",),
        "booking.confirmed": ("customer",),
        "booking.declined": ("customer",),
        "booking.consultation_completed": ("customer", "tailor"),
        "booking.quote_submitted": ("customer",),
        "booking.quote_accepted": ("tailor",),
        "booking.quote_rejected": ("tailor",),
        "booking.paid": ("customer", "tailor"),
        "booking.cancelled": ("customer", "tailor"),
        "order.created": ("customer", "tailor"),
        "order.plan_submitted": ("customer",),
        "order.plan_approved": ("tailor",),
        "order.plan_rejected": ("tailor",),
        "order.stage_completed": ("customer",),
        "order.ready": ("customer",),
        "order.delay_requested": ("customer",),
        "order.delay_approved": ("tailor",),
        "order.delay_rejected": ("tailor",),
        "order.completed": ("tailor",),
        "order.cancelled": ("customer", "tailor"),
        "order.dispute_raised": ("customer", "tailor"),
        "order.dispute_under_review": ("customer", "tailor"),
        "order.dispute_resolved": ("customer", "tailor"),
        "order.plan_reminder": ("tailor",),
        "order.plan_overdue": ("tailor",),
        "order.completion_overdue": ("customer", "tailor"),
    }

    def __init__(self, dispatcher: AbstractNotificationDispatcher):
        self._dispatcher = dispatcher

    def recipients_for(self, event: DomainEvent) -> List[Recipient]:
        recipients = []
        for label in self.ROUTES.get(event.name, ()):
            user_id = event.customer_id if label == "customer" else event.tailor_user_id
            if user_id is not None:
                recipients.append(Recipient(label=label, user_id=user_id))
        if event.notify_admin:
            recipients.append(Recipient(label="admin"))
        return recipients

    def __call__(self, event: DomainEvent) -> None:
        context = {
            "entity_type": event.entity_type,
            "entity_id": str(event.entity_id),
            "previous_status": event.previous_status,
            "new_status": event.new_status,
            "actor_id": _id(event.actor_id),
            **event.context,
        }
        for recipient in self.recipients_for(event):
            try:
                self._dispatcher.notify(event.name, recipient, context)
            except Exception:
                logger.exception(f"Notification {event.name} to {recipient.label} {recipient.user_id} failed")


# ===========================================================================
# UNIT OF WORK
# ===========================================================================

class AbstractUnitOfWork(abc.ABC):
    """
    Groups all repositories and ports under a single transactional boundary.
    Use as a context manager:

        with uow:
            uow.bookings.save(booking)
            uow.collect(event)
            uow.commit()

    commit() applies every staged write atomically, then publishes the
    collected events.  rollback() discards both.

    Gateway calls that cannot be undone (voiding or capturing escrow) are
    registered with on_commit().  They run inside commit() after every
    staged write has passed its checks and before any is applied; if one
    raises, nothing is written.
    """
    users: AbstractUserRepository
    tailors: AbstractTailorProfileRepository
    bookings: AbstractBookingRepository
    orders: AbstractOrderRepository
    notifications: AbstractNotificationLogRepository
    payments: AbstractPaymentGateway
    settings: AbstractSettingsProvider

    def __enter__(self) -> "AbstractUnitOfWork":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        if exc_type:
            self.rollback()
        else:
            self.commit()

    @abc.abstractmethod
    def collect(self, event: DomainEvent) -> None: ...

    @abc.abstractmethod
    def on_commit(self, action: Callable[[], None]) -> None: ...

    @abc.abstractmethod
    def commit(self) -> None: ...

    @abc.abstractmethod
    def rollback(self) -> None: ...


# ===========================================================================
# SERVICE SINGLETONS (shared across use cases)
# ===========================================================================

_booking_svc = BookingService()
_plan_svc = WorkPlanService()
_order_svc = OrderService(plans=_plan_svc)
_deadline_svc = DeadlineService()


# ===========================================================================
# USE CASE HELPERS
# ===========================================================================

def _get_user_or_raise(uow: AbstractUnitOfWork, user_id: uuid.UUID) -> User:
    user = uow.users.get(user_id)
    if user is None or not user.is_active:
        raise NotFoundError(f"User {user_id} not found.")
    return user


def _get_tailor_or_raise(uow: AbstractUnitOfWork, tailor_id: uuid.UUID) -> TailorProfile:
    tailor = uow.tailors.get(tailor_id)
    if tailor is None:
        raise NotFoundError(f"Tailor {tailor_id} not found.")
    return tailor


def _get_booking_or_raise(uow: AbstractUnitOfWork, booking_id: uuid.UUID) -> Booking:
    booking = uow.bookings.get(booking_id)
    if booking is None:
        raise NotFoundError(f"Booking {booking_id} not found.")
    return booking


def _get_order_or_raise(uow: AbstractUnitOfWork, order_id: uuid.UUID) -> Order:
    order = uow.orders.get(order_id)
    if order is None:
        raise NotFoundError(f"Order {order_id} not found.")
    return order


def _get_delay_request_or_raise(order: Order, request_id: uuid.UUID) -> DelayRequest:
    request = next((d for d in order.delay_requests if d.id == request_id), None)
    if request is None:
        raise NotFoundError(f"Delay request {request_id} not found on order {order.id}.")
    return request


def _parties(uow: AbstractUnitOfWork, customer_id: uuid.UUID, tailor_id: uuid.UUID) -> Parties:
    tailor = _get_tailor_or_raise(uow, tailor_id)
    return Parties(customer_id=customer_id, tailor_user_id=tailor.user_id)


def _load_policy(uow: AbstractUnitOfWork) -> PolicySnapshot:
    return PolicySnapshot.from_lookup(uow.settings.get_value)


def _require_viewer(actor: User, parties: Parties) -> None:
    with _authorized():
        require_party(actor, parties, "customer", "tailor", "admin")


def _emit(
    uow: AbstractUnitOfWork,
    name: str,
    entity,
    actor: Optional[User],
    parties: Parties,
    previous_status: Optional[str] = None,
    notify_admin: bool = False,
    **context: Any,
) -> None:
    uow.collect(
        DomainEvent(
            name=name,
            entity_type=type(entity).__name__.lower(),
            entity_id=entity.id,
            actor_id=actor.id if actor else None,
            previous_status=previous_status,
            new_status=entity.status.value,
            customer_id=parties.customer_id,
            tailor_user_id=parties.tailor_user_id,
            notify_admin=notify_admin,
            context=context,
        )
    )


# ===========================================================================
# USE CASES - PARTIES
# ===========================================================================

@dataclass
class CreateUserCommand:
    full_name: str
    email: str
    role: UserRole


class CreateUserUseCase:
    def execute(self, cmd: CreateUserCommand, uow: AbstractUnitOfWork) -> UserDTO:
        with uow:
            if uow.users.get_by_email(cmd.email) is not None:
                raise ApplicationError(f"A user with email '{cmd.email}' already exists.")
            user = User(full_name=cmd.full_name.strip(), email=cmd.email.lower(), role=cmd.role)
            uow.users.add(user)
            uow.commit()
            logger.info(f"user {user.id} registered as {user.role.value}")
            return _Assembler.user(user)


class GetUserUseCase:
    def execute(self, user_id: uuid.UUID, uow: AbstractUnitOfWork) -> UserDTO:
        with uow:
            return _Assembler.user(_get_user_or_raise(uow, user_id))


@dataclass
class CreateTailorProfileCommand:
    business_name: str
    acting_user_id: uuid.UUID
    payout_account_id: Optional[str] = None
    accepting_bookings: bool = True


class CreateTailorProfileUseCase:
    """Open a storefront for the acting tailor.  One profile per user."""

    def execute(self, cmd: CreateTailorProfileCommand, uow: AbstractUnitOfWork) -> TailorProfileDTO:
        with uow:
            actor = _get_user_or_raise(uow, cmd.acting_user_id)
            with _authorized():
                require_role(actor, UserRole.TAILOR)
            if uow.tailors.get_by_user(actor.id) is not None:
                raise ApplicationError(f"User {actor.id} already has a tailor profile.")
            profile = TailorProfile(
                user_id=actor.id,
                business_name=cmd.business_name.strip(),
                accepting_bookings=cmd.accepting_bookings,
                payout_account_id=cmd.payout_account_id,
            )
            uow.tailors.add(profile)
            uow.commit()
            return _Assembler.tailor(profile)


class GetTailorProfileUseCase:
    def execute(self, tailor_id: uuid.UUID, uow: AbstractUnitOfWork) -> TailorProfileDTO:
        with uow:
            return _Assembler.tailor(_get_tailor_or_raise(uow, tailor_id))


class ListTailorProfilesUseCase:
    def execute(self, uow: AbstractUnitOfWork, accepting_only: bool = False) -> List[TailorProfileDTO]:
        with uow:
            tailors = uow.tailors.list_all()
            if accepting_only:
                tailors = [t for t in tailors if t.accepting_bookings]
            return [_Assembler.tailor(t) for t in sorted(tailors, key=lambda t: t.business_name)]


@dataclass
class SetTailorAvailabilityCommand:
    tailor_id: uuid.UUID
    accepting_bookings: bool
    acting_user_id: uuid.UUID


class SetTailorAvailabilityUseCase:
    def execute(self, cmd: SetTailorAvailabilityCommand, uow: AbstractUnitOfWork) -> TailorProfileDTO:
        with uow:
            actor = _get_user_or_raise(uow, cmd.acting_user_id)
            tailor = _get_tailor_or_raise(uow, cmd.tailor_id)
            if actor.id != tailor.user_id and actor.role != UserRole.ADMIN:
                raise AuthorizationError("Only the tailor or an admin may change availability.")
            tailor.accepting_bookings = cmd.accepting_bookings
            uow.tailors.save(tailor)
            uow.commit()
            return _Assembler.tailor(tailor)


# ===========================================================================
# USE CASES - BOOKINGS
# ===========================================================================

@dataclass
class RequestBookingCommand:
    tailor_id: uuid.UUID
    booking_date: date
    start_time: str
    end_time: str
    service: str
    acting_user_id: uuid.UUID
    notes: str = ""


class RequestBookingUseCase:
    """
    Reserve a consultation slot.  The slot is re-checked at commit so two
    simultaneous requests for the same slot cannot both succeed.
    """

    def execute(self, cmd: RequestBookingCommand, uow: AbstractUnitOfWork) -> BookingDTO:
        with uow:
            actor = _get_user_or_raise(uow, cmd.acting_user_id)
            tailor = _get_tailor_or_raise(uow, cmd.tailor_id)
            with _authorized():
                booking = _booking_svc.request_booking(
                    customer=actor,
                    tailor=tailor,
                    booking_date=cmd.booking_date,
                    start_time=cmd.start_time,
                    end_time=cmd.end_time,
                    service=cmd.service,
                    notes=cmd.notes,
                    existing_bookings=uow.bookings.list_for_tailor(tailor.id),
                )
            uow.bookings.add(booking)
            parties = Parties(customer_id=actor.id, tailor_user_id=tailor.user_id)
            _emit(uow, "booking.requested", booking, actor, parties,
                  date=_fmt_date(booking.booking_date), start_time=booking.start_time)
            uow.commit()
            return _Assembler.booking(booking)


@dataclass
class BookingActionCommand:
    """Shared shape of the booking transitions that take an optional text."""
    booking_id: uuid.UUID
    acting_user_id: uuid.UUID
    text: str = ""


class ConfirmBookingUseCase:
    def execute(self, cmd: BookingActionCommand, uow: AbstractUnitOfWork) -> BookingDTO:
        with uow:
            actor = _get_user_or_raise(uow, cmd.acting_user_id)
            booking = _get_booking_or_raise(uow, cmd.booking_id)
            parties = _parties(uow, booking.customer_id, booking.tailor_id)
            previous = booking.status.value
            with _authorized():
                _booking_svc.confirm(booking, actor, parties)
            uow.bookings.save(booking)
            _emit(uow, "booking.confirmed", booking, actor, parties, previous)
            uow.commit()
            return _Assembler.booking(booking)


class DeclineBookingUseCase:
    def execute(self, cmd: BookingActionCommand, uow: AbstractUnitOfWork) -> BookingDTO:
        with uow:
            actor = _get_user_or_raise(uow, cmd.acting_user_id)
            booking = _get_booking_or_raise(uow, cmd.booking_id)
            parties = _parties(uow, booking.customer_id, booking.tailor_id)
            previous = booking.status.value
            with _authorized():
                _booking_svc.decline(booking, actor, parties, cmd.text)
            uow.bookings.save(booking)
            _emit(uow, "booking.declined", booking, actor, parties, previous, reason=cmd.text)
            uow.commit()
            return _Assembler.booking(booking)


class CompleteConsultationUseCase:
    def execute(self, cmd: BookingActionCommand, uow: AbstractUnitOfWork) -> BookingDTO:
        with uow:
            actor = _get_user_or_raise(uow, cmd.acting_user_id)
            booking = _get_booking_or_raise(uow, cmd.booking_id)
            parties = _parties(uow, booking.customer_id, booking.tailor_id)
            previous = booking.status.value
            with _authorized():
                _booking_svc.complete_consultation(booking, actor, cmd.text)
            uow.bookings.save(booking)
            _emit(uow, "booking.consultation_completed", booking, actor, parties, previous)
            uow.commit()
            return _Assembler.booking(booking)


@dataclass
class SubmitQuoteCommand:
    booking_id: uuid.UUID
    items: List[QuoteItem]
    labor_cost: float
    material_cost: float
    acting_user_id: uuid.UUID
    estimated_days: Optional[StageEstimates] = None
    currency: Optional[str] = None
    notes: str = ""


class SubmitQuoteUseCase:
    def __init__(self, default_currency: str = "USD"):
        self._default_currency = default_currency

    def execute(self, cmd: SubmitQuoteCommand, uow: AbstractUnitOfWork) -> BookingDTO:
        with uow:
            actor = _get_user_or_raise(uow, cmd.acting_user_id)
            booking = _get_booking_or_raise(uow, cmd.booking_id)
            parties = _parties(uow, booking.customer_id, booking.tailor_id)
            policy = _load_policy(uow)
            previous = booking.status.value
            with _authorized():
                _booking_svc.submit_quote(
                    booking,
                    actor,
                    parties,
                    items=cmd.items,
                    labor_cost=cmd.labor_cost,
                    material_cost=cmd.material_cost,
                    estimated_days=cmd.estimated_days,
                    currency=cmd.currency or self._default_currency,
                    notes=cmd.notes,
                    validity_days=policy.quote_validity_days,
                )
            uow.bookings.save(booking)
            _emit(uow, "booking.quote_submitted", booking, actor, parties, previous,
                  total_amount=booking.quote.total_amount, currency=booking.quote.currency)
            uow.commit()
            return _Assembler.booking(booking)


@dataclass
class RespondToQuoteCommand:
    booking_id: uuid.UUID
    accepted: bool
    acting_user_id: uuid.UUID
    reason: Optional[str] = None


class RespondToQuoteUseCase:
    def execute(self, cmd: RespondToQuoteCommand, uow: AbstractUnitOfWork) -> BookingDTO:
        with uow:
            actor = _get_user_or_raise(uow, cmd.acting_user_id)
            booking = _get_booking_or_raise(uow, cmd.booking_id)
            parties = _parties(uow, booking.customer_id, booking.tailor_id)
            previous = booking.status.value
            with _authorized():
                _booking_svc.respond_to_quote(booking, actor, parties, cmd.accepted, cmd.reason)
            uow.bookings.save(booking)
            name = "booking.quote_accepted" if cmd.accepted else "booking.quote_rejected"
            _emit(uow, name, booking, actor, parties, previous, reason=cmd.reason)
            uow.commit()
            return _Assembler.booking(booking)


class PayBookingUseCase:
    """
    Hold the quoted amount in escrow, then mark the booking paid.

    The booking is only committed after the gateway confirms the hold.  If
    the commit itself fails (e.g. a concurrent cancel won the race) the hold
    is voided so no funds stay locked against a cancelled booking, unless a
    concurrent payment of the same booking already committed that hold.
    """

    def execute(self, cmd: BookingActionCommand, uow: AbstractUnitOfWork) -> BookingDTO:
        with uow:
            actor = _get_user_or_raise(uow, cmd.acting_user_id)
            booking = _get_booking_or_raise(uow, cmd.booking_id)
            tailor = _get_tailor_or_raise(uow, booking.tailor_id)
            parties = Parties(customer_id=booking.customer_id, tailor_user_id=tailor.user_id)
            previous = booking.status.value
            with _authorized():
                quote = _booking_svc.ensure_can_pay(booking, actor, parties)

            escrow_ref = uow.payments.authorize_and_hold(
                amount=quote.total_amount,
                currency=quote.currency,
                destination=tailor.payout_account_id,
                reference_id=str(booking.id),
            )
            with _authorized():
                _booking_svc.record_payment(booking, actor, parties, escrow_ref)
            uow.bookings.save(booking)
            _emit(uow, "booking.paid", booking, actor, parties, previous,
                  amount=quote.total_amount, currency=quote.currency)
            try:
                uow.commit()
            except Exception:
                stored = uow.bookings.get(booking.id)
                if stored is None or stored.escrow_ref != escrow_ref:
                    logger.warning(f"Commit failed after escrow hold {escrow_ref}; voiding hold")
                    uow.payments.cancel(escrow_ref)
                raise
            return _Assembler.booking(booking)


class CancelBookingUseCase:
    """Cancel from any non-terminal status.  A held payment is voided as the cancellation commits."""

    def execute(self, cmd: BookingActionCommand, uow: AbstractUnitOfWork) -> BookingDTO:
        with uow:
            actor = _get_user_or_raise(uow, cmd.acting_user_id)
            booking = _get_booking_or_raise(uow, cmd.booking_id)
            parties = _parties(uow, booking.customer_id, booking.tailor_id)
            previous = booking.status.value
            with _authorized():
                _booking_svc.ensure_can_cancel(booking, actor, parties)
            if booking.payment_status == PaymentStatus.HELD and booking.escrow_ref:
                uow.on_commit(functools.partial(uow.payments.cancel, booking.escrow_ref))
            with _authorized():
                _booking_svc.cancel(booking, actor, parties, cmd.text)
            uow.bookings.save(booking)
            _emit(uow, "booking.cancelled", booking, actor, parties, previous, reason=cmd.text)
            uow.commit()
            return _Assembler.booking(booking)


class GetBookingUseCase:
    def execute(self, booking_id: uuid.UUID, acting_user_id: uuid.UUID, uow: AbstractUnitOfWork) -> BookingDTO:
        with uow:
            actor = _get_user_or_raise(uow, acting_user_id)
            booking = _get_booking_or_raise(uow, booking_id)
            _require_viewer(actor, _parties(uow, booking.customer_id, booking.tailor_id))
            return _Assembler.booking(booking)


class ListBookingsUseCase:
    """Customers see their bookings, tailors their storefront's, admins all."""

    def execute(
        self,
        acting_user_id: uuid.UUID,
        uow: AbstractUnitOfWork,
        status: Optional[BookingStatus] = None,
    ) -> List[BookingDTO]:
        with uow:
            actor = _get_user_or_raise(uow, acting_user_id)
            if actor.role == UserRole.ADMIN:
                bookings = uow.bookings.list_all()
            elif actor.role == UserRole.TAILOR:
                tailor = uow.tailors.get_by_user(actor.id)
                bookings = uow.bookings.list_for_tailor(tailor.id) if tailor else []
            else:
                bookings = uow.bookings.list_for_customer(actor.id)
            if status is not None:
                bookings = [b for b in bookings if b.status == status]
            bookings.sort(key=lambda b: b.created_at, reverse=True)
            return [_Assembler.booking(b) for b in bookings]


class GetBookingHistoryUseCase:
    def execute(
        self,
        booking_id: uuid.UUID,
        acting_user_id: uuid.UUID,
        uow: AbstractUnitOfWork,
        offset: int = 0,
        limit: int = 50,
    ) -> HistoryPageDTO:
        with uow:
            actor = _get_user_or_raise(uow, acting_user_id)
            booking = _get_booking_or_raise(uow, booking_id)
            _require_viewer(actor, _parties(uow, booking.customer_id, booking.tailor_id))
            return _Assembler.history_page(booking.id, booking.status_history, offset, limit)


# ===========================================================================
# USE CASES - ORDERS
# ===========================================================================

@dataclass
class ConvertBookingCommand:
    booking_id: uuid.UUID
    acting_user_id: uuid.UUID


class ConvertBookingToOrderUseCase:
    """
    Create the Order for a paid booking and mark the booking converted, in
    one unit of work.  The unique booking reference on orders is enforced
    again at commit, so a retried or concurrent conversion cannot create a
    second order.
    """

    def execute(self, cmd: ConvertBookingCommand, uow: AbstractUnitOfWork) -> OrderDTO:
        with uow:
            actor = _get_user_or_raise(uow, cmd.acting_user_id)
            booking = _get_booking_or_raise(uow, cmd.booking_id)
            parties = _parties(uow, booking.customer_id, booking.tailor_id)
            existing = uow.orders.get_by_booking(booking.id)
            if existing is not None:
                raise OrderAlreadyExists(f"Booking {booking.id} was already converted to order {existing.id}.")
            policy = _load_policy(uow)
            previous = booking.status.value
            with _authorized():
                _booking_svc.ensure_can_convert(booking, actor, parties)
                order = _order_svc.create_from_booking(booking, actor, policy)
                _booking_svc.mark_converted(booking, actor, parties, order.id)
            uow.orders.add(order)
            uow.bookings.save(booking)
            _emit(uow, "booking.converted", booking, actor, parties, previous, order_id=str(order.id))
            _emit(uow, "order.created", order, actor, parties, None,
                  plan_deadline=_fmt(order.plan_deadline))
            uow.commit()
            return _Assembler.order(order)


@dataclass
class SubmitWorkPlanCommand:
    order_id: uuid.UUID
    stages: List[StageDefinition]
    acting_user_id: uuid.UUID


class SubmitWorkPlanUseCase:
    def execute(self, cmd: SubmitWorkPlanCommand, uow: AbstractUnitOfWork) -> OrderDTO:
        with uow:
            actor = _get_user_or_raise(uow, cmd.acting_user_id)
            order = _get_order_or_raise(uow, cmd.order_id)
            parties = _parties(uow, order.customer_id, order.tailor_id)
            policy = _load_policy(uow)
            previous = order.status.value
            with _authorized():
                _order_svc.submit_work_plan(order, actor, parties, cmd.stages, policy)
            uow.orders.save(order)
            name = "order.plan_submitted" if order.status == OrderStatus.PLAN_REVIEW else "order.plan_approved"
            _emit(uow, name, order, actor, parties, previous,
                  total_estimated_days=order.work_plan.total_estimated_days)
            uow.commit()
            return _Assembler.order(order)


@dataclass
class OrderActionCommand:
    """Shared shape of the order transitions that take an optional text."""
    order_id: uuid.UUID
    acting_user_id: uuid.UUID
    text: str = ""


class ApproveWorkPlanUseCase:
    def execute(self, cmd: OrderActionCommand, uow: AbstractUnitOfWork) -> OrderDTO:
        with uow:
            actor = _get_user_or_raise(uow, cmd.acting_user_id)
            order = _get_order_or_raise(uow, cmd.order_id)
            parties = _parties(uow, order.customer_id, order.tailor_id)
            previous = order.status.value
            with _authorized():
                _order_svc.approve_work_plan(order, actor, parties)
            uow.orders.save(order)
            _emit(uow, "order.plan_approved", order, actor, parties, previous)
            uow.commit()
            return _Assembler.order(order)


class RejectWorkPlanUseCase:
    def execute(self, cmd: OrderActionCommand, uow: AbstractUnitOfWork) -> OrderDTO:
        with uow:
            actor = _get_user_or_raise(uow, cmd.acting_user_id)
            order = _get_order_or_raise(uow, cmd.order_id)
            parties = _parties(uow, order.customer_id, order.tailor_id)
            previous = order.status.value
            with _authorized():
                _order_svc.reject_work_plan(order, actor, parties, cmd.text)
            uow.orders.save(order)
            _emit(uow, "order.plan_rejected", order, actor, parties, previous, reason=cmd.text)
            uow.commit()
            return _Assembler.order(order)


@dataclass
class CompleteStageCommand:
    order_id: uuid.UUID
    stage_index: int
    acting_user_id: uuid.UUID
    note: Optional[str] = None


class CompleteStageUseCase:
    def execute(self, cmd: CompleteStageCommand, uow: AbstractUnitOfWork) -> OrderDTO:
        with uow:
            actor = _get_user_or_raise(uow, cmd.acting_user_id)
            order = _get_order_or_raise(uow, cmd.order_id)
            parties = _parties(uow, order.customer_id, order.tailor_id)
            policy = _load_policy(uow)
            previous = order.status.value
            with _authorized():
                _order_svc.complete_stage(order, actor, parties, cmd.stage_index, cmd.note)
            uow.orders.save(order)
            stage_name = order.stages[cmd.stage_index].name
            _emit(uow, "order.stage_completed", order, actor, parties, previous,
                  stage_index=cmd.stage_index, stage_name=stage_name)
            if order.status == OrderStatus.READY:
                _emit(uow, "order.ready", order, actor, parties, previous,
                      notify_admin=policy.notify_admin_on_completion)
            uow.commit()
            return _Assembler.order(order)


@dataclass
class AddStageNoteCommand:
    order_id: uuid.UUID
    stage_index: int
    text: str
    acting_user_id: uuid.UUID


class AddStageNoteUseCase:
    def execute(self, cmd: AddStageNoteCommand, uow: AbstractUnitOfWork) -> OrderDTO:
        with uow:
            actor = _get_user_or_raise(uow, cmd.acting_user_id)
            order = _get_order_or_raise(uow, cmd.order_id)
            parties = _parties(uow, order.customer_id, order.tailor_id)
            with _authorized():
                _order_svc.add_stage_note(order, actor, parties, cmd.stage_index, cmd.text)
            uow.orders.save(order)
            uow.commit()
            return _Assembler.order(order)


@dataclass
class RequestDelayCommand:
    order_id: uuid.UUID
    reason: str
    additional_days: int
    acting_user_id: uuid.UUID


class RequestDelayUseCase:
    def execute(self, cmd: RequestDelayCommand, uow: AbstractUnitOfWork) -> OrderDTO:
        with uow:
            actor = _get_user_or_raise(uow, cmd.acting_user_id)
            order = _get_order_or_raise(uow, cmd.order_id)
            parties = _parties(uow, order.customer_id, order.tailor_id)
            policy = _load_policy(uow)
            with _authorized():
                request = _order_svc.request_delay(order, actor, parties, cmd.reason, cmd.additional_days)
            uow.orders.save(order)
            _emit(uow, "order.delay_requested", order, actor, parties,
                  notify_admin=policy.notify_admin_on_delay,
                  delay_request_id=str(request.id), additional_days=request.additional_days)
            uow.commit()
            return _Assembler.order(order)


@dataclass
class RespondToDelayCommand:
    order_id: uuid.UUID
    request_id: uuid.UUID
    approved: bool
    acting_user_id: uuid.UUID
    notes: Optional[str] = None


class RespondToDelayUseCase:
    def execute(self, cmd: RespondToDelayCommand, uow: AbstractUnitOfWork) -> OrderDTO:
        with uow:
            actor = _get_user_or_raise(uow, cmd.acting_user_id)
            order = _get_order_or_raise(uow, cmd.order_id)
            parties = _parties(uow, order.customer_id, order.tailor_id)
            request = _get_delay_request_or_raise(order, cmd.request_id)
            with _authorized():
                _order_svc.respond_to_delay(order, actor, parties, request, cmd.approved, cmd.notes)
            uow.orders.save(order)
            name = "order.delay_approved" if cmd.approved else "order.delay_rejected"
            _emit(uow, name, order, actor, parties,
                  delay_request_id=str(request.id), additional_days=request.additional_days)
            uow.commit()
            return _Assembler.order(order)


@dataclass
class MarkOrderCompletedCommand:
    order_id: uuid.UUID
    acting_user_id: uuid.UUID
    rating: Optional[int] = None
    comment: Optional[str] = None


class MarkOrderCompletedUseCase:
    """
    Customer signs off a ready order.  Escrow is captured inside the commit,
    once the order is known to still be ready; a gateway failure leaves it
    in ready.
    """

    def execute(self, cmd: MarkOrderCompletedCommand, uow: AbstractUnitOfWork) -> OrderDTO:
        with uow:
            actor = _get_user_or_raise(uow, cmd.acting_user_id)
            order = _get_order_or_raise(uow, cmd.order_id)
            booking = _get_booking_or_raise(uow, order.booking_id)
            parties = _parties(uow, order.customer_id, order.tailor_id)
            policy = _load_policy(uow)
            previous = order.status.value
            with _authorized():
                _order_svc.ensure_can_complete(order, actor, parties)

            if booking.payment_status == PaymentStatus.HELD and booking.escrow_ref:
                uow.on_commit(functools.partial(uow.payments.capture, booking.escrow_ref))
                _booking_svc.mark_released(booking)
                uow.bookings.save(booking)

            with _authorized():
                _order_svc.mark_completed(order, actor, parties, cmd.rating, cmd.comment)
            uow.orders.save(order)
            _emit(uow, "order.completed", order, actor, parties, previous,
                  notify_admin=policy.notify_admin_on_completion, rating=cmd.rating)
            uow.commit()
            return _Assembler.order(order)


def _release_escrow(uow: AbstractUnitOfWork, booking: Booking) -> None:
    """Void a held payment once the cancellation commits; a refunded booking is left alone."""
    if booking.payment_status == PaymentStatus.HELD and booking.escrow_ref:
        uow.on_commit(functools.partial(uow.payments.cancel, booking.escrow_ref))
        _booking_svc.mark_refunded(booking)
        uow.bookings.save(booking)


class CancelOrderUseCase:
    def execute(self, cmd: OrderActionCommand, uow: AbstractUnitOfWork) -> OrderDTO:
        with uow:
            actor = _get_user_or_raise(uow, cmd.acting_user_id)
            order = _get_order_or_raise(uow, cmd.order_id)
            booking = _get_booking_or_raise(uow, order.booking_id)
            parties = _parties(uow, order.customer_id, order.tailor_id)
            previous = order.status.value
            with _authorized():
                _order_svc.ensure_can_cancel(order, actor, parties)
            _release_escrow(uow, booking)
            with _authorized():
                _order_svc.cancel(order, actor, parties, cmd.text)
            uow.orders.save(order)
            _emit(uow, "order.cancelled", order, actor, parties, previous,
                  notify_admin=True, reason=cmd.text)
            uow.commit()
            return _Assembler.order(order)


class RaiseDisputeUseCase:
    def execute(self, cmd: OrderActionCommand, uow: AbstractUnitOfWork) -> OrderDTO:
        with uow:
            actor = _get_user_or_raise(uow, cmd.acting_user_id)
            order = _get_order_or_raise(uow, cmd.order_id)
            parties = _parties(uow, order.customer_id, order.tailor_id)
            previous = order.status.value
            with _authorized():
                _order_svc.raise_dispute(order, actor, parties, cmd.text)
            uow.orders.save(order)
            _emit(uow, "order.dispute_raised", order, actor, parties, previous,
                  notify_admin=True, reason=cmd.text)
            uow.commit()
            return _Assembler.order(order)


class ReviewDisputeUseCase:
    def execute(self, cmd: OrderActionCommand, uow: AbstractUnitOfWork) -> OrderDTO:
        with uow:
            actor = _get_user_or_raise(uow, cmd.acting_user_id)
            order = _get_order_or_raise(uow, cmd.order_id)
            parties = _parties(uow, order.customer_id, order.tailor_id)
            with _authorized():
                _order_svc.review_dispute(order, actor)
            uow.orders.save(order)
            _emit(uow, "order.dispute_under_review", order, actor, parties)
            uow.commit()
            return _Assembler.order(order)


@dataclass
class ResolveDisputeCommand:
    order_id: uuid.UUID
    resolution: str
    acting_user_id: uuid.UUID
    cancel_order: bool = False


class ResolveDisputeUseCase:
    """Close a dispute: resume the order, or cancel it and void the escrow hold."""

    def execute(self, cmd: ResolveDisputeCommand, uow: AbstractUnitOfWork) -> OrderDTO:
        with uow:
            actor = _get_user_or_raise(uow, cmd.acting_user_id)
            order = _get_order_or_raise(uow, cmd.order_id)
            parties = _parties(uow, order.customer_id, order.tailor_id)
            previous = order.status.value
            with _authorized():
                _order_svc.ensure_can_resolve(order, actor, cmd.cancel_order)
            if cmd.cancel_order:
                _release_escrow(uow, _get_booking_or_raise(uow, order.booking_id))
            with _authorized():
                _order_svc.resolve_dispute(order, actor, cmd.resolution, cmd.cancel_order)
            uow.orders.save(order)
            _emit(uow, "order.dispute_resolved", order, actor, parties, previous,
                  resolution=cmd.resolution, cancelled=cmd.cancel_order)
            uow.commit()
            return _Assembler.order(order)


class GetOrderUseCase:
    def execute(self, order_id: uuid.UUID, acting_user_id: uuid.UUID, uow: AbstractUnitOfWork) -> OrderDTO:
        with uow:
            actor = _get_user_or_raise(uow, acting_user_id)
            order = _get_order_or_raise(uow, order_id)
            _require_viewer(actor, _parties(uow, order.customer_id, order.tailor_id))
            return _Assembler.order(order)


class ListOrdersUseCase:
    def execute(
        self,
        acting_user_id: uuid.UUID,
        uow: AbstractUnitOfWork,
        status: Optional[OrderStatus] = None,
    ) -> List[OrderDTO]:
        with uow:
            actor = _get_user_or_raise(uow, acting_user_id)
            orders = uow.orders.list_by_status(status) if status else uow.orders.list_all()
            if actor.role == UserRole.TAILOR:
                tailor = uow.tailors.get_by_user(actor.id)
                orders = [o for o in orders if tailor and o.tailor_id == tailor.id]
            elif actor.role == UserRole.CUSTOMER:
                orders = [o for o in orders if o.customer_id == actor.id]
            orders.sort(key=lambda o: o.created_at, reverse=True)
            return [_Assembler.order(o) for o in orders]


class GetOrderHistoryUseCase:
    def execute(
        self,
        order_id: uuid.UUID,
        acting_user_id: uuid.UUID,
        uow: AbstractUnitOfWork,
        offset: int = 0,
        limit: int = 50,
    ) -> HistoryPageDTO:
        with uow:
            actor = _get_user_or_raise(uow, acting_user_id)
            order = _get_order_or_raise(uow, order_id)
            _require_viewer(actor, _parties(uow, order.customer_id, order.tailor_id))
            return _Assembler.history_page(order.id, order.status_history, offset, limit)


# ===========================================================================
# USE CASES - ADMINISTRATION
# ===========================================================================

def _require_admin(uow: AbstractUnitOfWork, acting_user_id: uuid.UUID) -> User:
    actor = _get_user_or_raise(uow, acting_user_id)
    with _authorized():
        require_role(actor, UserRole.ADMIN)
    return actor


class GetOverdueOrdersUseCase:
    def execute(self, acting_user_id: uuid.UUID, uow: AbstractUnitOfWork) -> OverdueOrdersDTO:
        with uow:
            _require_admin(uow, acting_user_id)
            orders = uow.orders.list_by_status(OrderStatus.AWAITING_PLAN, OrderStatus.IN_PROGRESS)
            return OverdueOrdersDTO(
                overdue_plans=[_Assembler.order(o) for o in _deadline_svc.overdue_plans(orders)],
                overdue_completions=[_Assembler.order(o) for o in _deadline_svc.overdue_completions(orders)],
            )


class ScanOrderDeadlinesUseCase:
    """
    One pass of the periodic deadline job.  Sets each reminder / overdue
    flag at most once and emits the matching event; no order changes status.
    """

    def execute(self, acting_user_id: uuid.UUID, uow: AbstractUnitOfWork) -> DeadlineScanResultDTO:
        with uow:
            actor = _require_admin(uow, acting_user_id)
            policy = _load_policy(uow)
            orders = uow.orders.list_by_status(OrderStatus.AWAITING_PLAN, OrderStatus.IN_PROGRESS)
            raised = _deadline_svc.scan(orders, policy)
            counts = {
                DeadlineService.PLAN_REMINDER: 0,
                DeadlineService.PLAN_OVERDUE: 0,
                DeadlineService.COMPLETION_OVERDUE: 0,
            }
            touched: Dict[uuid.UUID, Order] = {}
            for order, name in raised:
                counts[name] += 1
                touched[order.id] = order
                parties = _parties(uow, order.customer_id, order.tailor_id)
                _emit(uow, name, order, actor, parties,
                      notify_admin=name != DeadlineService.PLAN_REMINDER,
                      plan_deadline=_fmt(order.plan_deadline))
            for order in touched.values():
                uow.orders.save(order)
            uow.commit()
            logger.info(f"Deadline scan: {len(orders)} orders scanned, {len(raised)} flags raised")
            return DeadlineScanResultDTO(
                scanned=len(orders),
                plan_reminders=counts[DeadlineService.PLAN_REMINDER],
                plan_overdue=counts[DeadlineService.PLAN_OVERDUE],
                completion_overdue=counts[DeadlineService.COMPLETION_OVERDUE],
                order_ids=[str(i) for i in touched],
            )


class GetSettingsUseCase:
    def execute(self, acting_user_id: uuid.UUID, uow: AbstractUnitOfWork) -> List[SettingDTO]:
        with uow:
            _get_user_or_raise(uow, acting_user_id)
            values = uow.settings.all_values()
            return [SettingDTO(key=k, value=values[k]) for k in sorted(values)]


@dataclass
class UpdateSettingCommand:
    key: str
    value: Any
    acting_user_id: uuid.UUID


class UpdateSettingUseCase:
    """
    Change one workflow setting.  The new value must have the same type as
    the current one; numeric settings must not be negative.  The value is
    written when the unit of work commits.
    """

    def execute(self, cmd: UpdateSettingCommand, uow: AbstractUnitOfWork) -> SettingDTO:
        with uow:
            _require_admin(uow, cmd.acting_user_id)
            current = uow.settings.get_value(cmd.key)
            if current is None:
                raise NotFoundError(f"Setting '{cmd.key}' not found.")
            if isinstance(current, bool):
                if not isinstance(cmd.value, bool):
                    raise ApplicationError(f"Setting '{cmd.key}' expects true or false.")
            elif isinstance(current, int):
                if isinstance(cmd.value, bool) or not isinstance(cmd.value, int) or cmd.value < 0:
                    raise ApplicationError(f"Setting '{cmd.key}' expects a non-negative integer.")
            uow.on_commit(functools.partial(uow.settings.set_value, cmd.key, cmd.value))
            uow.commit()
            logger.info(f"Setting {cmd.key} changed from {current!r} to {cmd.value!r}")
            return SettingDTO(key=cmd.key, value=cmd.value)


# ===========================================================================
# USE CASES - NOTIFICATIONS
# ===========================================================================

class GetMyNotificationsUseCase:
    """Admins also see the shared admin channel."""

    def execute(self, acting_user_id: uuid.UUID, uow: AbstractUnitOfWork) -> List[NotificationLogDTO]:
        with uow:
            actor = _get_user_or_raise(uow, acting_user_id)
            logs = uow.notifications.list_for_recipient(actor.id)
            if actor.role == UserRole.ADMIN:
                logs = logs + uow.notifications.list_for_recipient(None)
            logs.sort(key=lambda n: n.notified_at, reverse=True)
            return [_Assembler.notification(n) for n in logs]
