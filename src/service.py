"""
service.py

Service layer for the Tailor Marketplace order fulfillment workflow.

Responsibilities
----------------
Each service class encapsulates all business logic for its domain.
Services receive and return domain model instances (from model.py).
No persistence is handled here; callers are responsible for loading and
storing models through the unit of work in application.py.

Services
--------
- BookingService    – Booking state machine and quote negotiation
- WorkPlanService   – Stage validation, default plan, progress / overdue math
- OrderService      – Order state machine, stage progression, delays, disputes
- DeadlineService   – Plan-deadline and completion-overdue detection

Design notes
------------
- All mutating methods accept the acting User and stamp history entries
  and updated_at fields accordingly.
- UTC datetimes are used throughout.  Every service takes a ``clock``
  callable so tests can pin "now".
- Business rule violations raise DomainError subclasses (all ValueError)
  carrying a stable ``code``.  Nothing is mutated before validation passes.
- Authorization checks are declared as guard helpers and called at the
  start of each operation; they raise PermissionDenied.
- Operations that call the payment gateway are split into an
  ``ensure_can_*`` guard and the mutating method, so the caller can place
  the gateway call in between.
"""

from __future__ import annotations

import logging
import math
import uuid
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Callable, Dict, FrozenSet, List, Mapping, Optional, Sequence, Tuple

from model import (
    Booking,
    BookingStatus,
    CompletionFeedback,
    DelayRequest,
    DelayRequestStatus,
    Dispute,
    DisputeStatus,
    Order,
    OrderStatus,
    PaymentStatus,
    Quote,
    QuoteItem,
    QuoteResponse,
    QuoteResponseStatus,
    Stage,
    StageDefinition,
    StageEstimates,
    StageNote,
    StageStatus,
    StatusHistoryEntry,
    TailorProfile,
    User,
    UserRole,
    WorkPlan,
    WorkPlanRevision,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class DomainError(ValueError):
    """Base class for business rule violations.  ``code`` is stable for clients."""
    code = "validation_error"


class InvalidTransition(DomainError):
    code = "invalid_transition"

    def __init__(self, entity: str, current: str, attempted: str, message: Optional[str] = None):
        self.entity = entity
        self.current = current
        self.attempted = attempted
        super().__init__(message or f"Cannot move {entity} from {current} to {attempted}.")


class RevisionLimitExceeded(DomainError):
    code = "revision_limit_exceeded"


class DuplicatePendingDelay(DomainError):
    code = "duplicate_pending_delay"


class AlreadyProcessed(DomainError):
    code = "already_processed"


class InvalidStageIndex(DomainError):
    code = "invalid_stage_index"


class InvalidWorkPlan(DomainError):
    code = "invalid_work_plan"


class QuoteExpired(DomainError):
    code = "quote_expired"


class SlotUnavailable(DomainError):
    code = "slot_unavailable"


class TailorNotAcceptingBookings(DomainError):
    code = "tailor_not_accepting_bookings"


class PermissionDenied(ValueError):
    """Raised by the guard helpers; the application layer maps it to 403."""


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------

def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Parties:
    """The two owners of a booking / order, as User ids."""
    customer_id: uuid.UUID
    tailor_user_id: uuid.UUID


def require_role(actor: User, *allowed_roles: UserRole) -> None:
    """Raise PermissionDenied if the actor does not hold one of the allowed roles."""
    if actor.role not in allowed_roles:
        raise PermissionDenied(
            f"User {actor.id} does not hold any of the required "
            f"roles: {[r.value for r in allowed_roles]}."
        )


def require_party(actor: User, parties: Parties, *allowed: str) -> None:
    """
    Raise PermissionDenied unless the actor is one of the allowed parties.
    ``allowed`` is any of "customer", "tailor", "admin".
    """
    if "customer" in allowed and actor.id == parties.customer_id:
        return
    if "tailor" in allowed and actor.id == parties.tailor_user_id:
        return
    if "admin" in allowed and actor.role == UserRole.ADMIN:
        return
    raise PermissionDenied(
        f"User {actor.id} is not allowed to perform this action "
        f"(allowed: {', '.join(allowed)})."
    )


def _require_text(value: Optional[str], field_name: str, max_length: int, required: bool = True) -> str:
    text = (value or "").strip()
    if required and not text:
        raise DomainError(f"{field_name} is required.")
    if len(text) > max_length:
        raise DomainError(f"{field_name} must be at most {max_length} characters.")
    return text


# ---------------------------------------------------------------------------
# Transition tables
# ---------------------------------------------------------------------------

BOOKING_TRANSITIONS: Dict[BookingStatus, FrozenSet[BookingStatus]] = {
    BookingStatus.PENDING: frozenset({
        BookingStatus.CONFIRMED, BookingStatus.DECLINED, BookingStatus.CANCELLED,
    }),
    BookingStatus.CONFIRMED: frozenset({
        BookingStatus.CONSULTATION_DONE, BookingStatus.CANCELLED,
    }),
    BookingStatus.CONSULTATION_DONE: frozenset({
        BookingStatus.QUOTE_SUBMITTED, BookingStatus.CANCELLED,
    }),
    # Rejecting a quote hands the booking back to the tailor for a new quote
    BookingStatus.QUOTE_SUBMITTED: frozenset({
        BookingStatus.QUOTE_ACCEPTED, BookingStatus.CONSULTATION_DONE, BookingStatus.CANCELLED,
    }),
    BookingStatus.QUOTE_ACCEPTED: frozenset({
        BookingStatus.PAID, BookingStatus.CANCELLED,
    }),
    BookingStatus.PAID: frozenset({
        BookingStatus.CONVERTED, BookingStatus.CANCELLED,
    }),
    BookingStatus.CONVERTED: frozenset(),
    BookingStatus.CANCELLED: frozenset(),
    BookingStatus.DECLINED: frozenset(),
}

TERMINAL_BOOKING_STATUSES = frozenset(s for s, targets in BOOKING_TRANSITIONS.items() if not targets)

_OPEN_ORDER_STATUSES = frozenset({
    OrderStatus.AWAITING_PLAN,
    OrderStatus.PLAN_REVIEW,
    OrderStatus.PLAN_REJECTED,
    OrderStatus.IN_PROGRESS,
    OrderStatus.READY,
})

ORDER_TRANSITIONS: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    OrderStatus.AWAITING_PLAN: frozenset({
        OrderStatus.PLAN_REVIEW, OrderStatus.IN_PROGRESS,
        OrderStatus.CANCELLED, OrderStatus.DISPUTED,
    }),
    OrderStatus.PLAN_REVIEW: frozenset({
        OrderStatus.IN_PROGRESS, OrderStatus.PLAN_REJECTED,
        OrderStatus.CANCELLED, OrderStatus.DISPUTED,
    }),
    OrderStatus.PLAN_REJECTED: frozenset({
        OrderStatus.PLAN_REVIEW, OrderStatus.IN_PROGRESS,
        OrderStatus.CANCELLED, OrderStatus.DISPUTED,
    }),
    OrderStatus.IN_PROGRESS: frozenset({
        OrderStatus.READY, OrderStatus.CANCELLED, OrderStatus.DISPUTED,
    }),
    OrderStatus.READY: frozenset({
        OrderStatus.COMPLETED, OrderStatus.CANCELLED, OrderStatus.DISPUTED,
    }),
    # Resolution puts the order back where it was before the dispute
    OrderStatus.DISPUTED: _OPEN_ORDER_STATUSES | {OrderStatus.CANCELLED},
    OrderStatus.COMPLETED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}

TERMINAL_ORDER_STATUSES = frozenset(s for s, targets in ORDER_TRANSITIONS.items() if not targets)


def _check_transition(entity_name: str, table: Mapping, current, target) -> None:
    if target not in table.get(current, frozenset()):
        raise InvalidTransition(entity_name, current.value, target.value)


def _apply_transition(
    entity_name: str,
    entity,
    table: Mapping,
    target,
    actor_id: Optional[uuid.UUID],
    now: datetime,
    note: str = "",
) -> None:
    """Validate, then move ``entity`` to ``target`` and append one history entry."""
    previous = entity.status
    _check_transition(entity_name, table, previous, target)
    entity.status = target
    entity.status_history.append(
        StatusHistoryEntry(status=target.value, changed_at=now, changed_by_id=actor_id, note=note)
    )
    entity.updated_at = now
    logger.info(f"{entity_name} {entity.id}: {previous.value} -> {target.value} (by {actor_id})")


def _require_status(entity_name: str, entity, allowed, action: str) -> None:
    """Guard for operations that need a given status but do not change it."""
    if entity.status not in allowed:
        raise InvalidTransition(
            entity_name,
            entity.status.value,
            action,
            message=f"Cannot {action} while {entity_name} is {entity.status.value}.",
        )


# ---------------------------------------------------------------------------
# Policy snapshot
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PolicySnapshot:
    """
    Workflow settings read once at the start of a use case, so a single
    request never sees two different values for the same key.
    """
    plan_creation_deadline_hours: int = 168
    plan_reminder_hours_before: int = 12
    max_plan_revisions: int = 3
    customer_approval_required: bool = True
    require_work_plan: bool = True
    notify_admin_on_completion: bool = True
    notify_admin_on_delay: bool = True
    quote_validity_days: int = 14

    KEYS = {
        "order_plan_creation_deadline_hours": "plan_creation_deadline_hours",
        "order_plan_reminder_hours_before": "plan_reminder_hours_before",
        "order_max_plan_revisions": "max_plan_revisions",
        "order_customer_approval_required": "customer_approval_required",
        "order_require_work_plan": "require_work_plan",
        "order_notify_admin_on_completion": "notify_admin_on_completion",
        "order_notify_admin_on_delay": "notify_admin_on_delay",
        "quote_validity_days": "quote_validity_days",
    }

    @classmethod
    def from_lookup(cls, get_value: Callable[[str], object]) -> "PolicySnapshot":
        values = {}
        for key, attr in cls.KEYS.items():
            value = get_value(key)
            if value is not None:
                values[attr] = value
        return cls(**values)


# ---------------------------------------------------------------------------
# Slot availability
# ---------------------------------------------------------------------------

def find_slot_conflict(
    bookings: Sequence[Booking],
    tailor_id: uuid.UUID,
    booking_date: date,
    start_time: str,
    exclude_id: Optional[uuid.UUID] = None,
) -> Optional[Booking]:
    """Return an active booking that already holds the tailor's slot, if any."""
    for b in bookings:
        if b.id == exclude_id:
            continue
        if (
            b.tailor_id == tailor_id
            and b.booking_date == booking_date
            and b.start_time == start_time
            and b.status not in TERMINAL_BOOKING_STATUSES
        ):
            return b
    return None


def _parse_hhmm(value: str, field_name: str) -> Tuple[int, int]:
    try:
        hours, minutes = value.split(":")
        h, m = int(hours), int(minutes)
    except (AttributeError, ValueError):
        raise DomainError(f"{field_name} must be in HH:MM format.")
    if not (0 <= h < 24 and 0 <= m < 60):
        raise DomainError(f"{field_name} must be in HH:MM format.")
    return h, m


# ---------------------------------------------------------------------------
# BookingService
# ---------------------------------------------------------------------------

class BookingService:
    """
    Governs the negotiation lifecycle of a booking, from the customer's
    request to the hand-off into an Order.
    """

    ENTITY = "booking"

    def __init__(self, clock: Callable[[], datetime] = _utcnow):
        self._clock = clock

    def _move(self, booking: Booking, target: BookingStatus, actor: User, now: datetime, note: str = "") -> None:
        _apply_transition(self.ENTITY, booking, BOOKING_TRANSITIONS, target, actor.id, now, note)

    def request_booking(
        self,
        customer: User,
        tailor: TailorProfile,
        booking_date: date,
        start_time: str,
        end_time: str,
        service: str,
        notes: str,
        existing_bookings: Sequence[Booking],
    ) -> Booking:
        """Create and return a new pending Booking (unsaved)."""
        require_role(customer, UserRole.CUSTOMER)
        if not tailor.accepting_bookings:
            raise TailorNotAcceptingBookings(
                f"Tailor {tailor.business_name or tailor.id} is not accepting bookings."
            )
        service = _require_text(service, "service", 200)
        notes = _require_text(notes, "notes", 1000, required=False)
        if _parse_hhmm(end_time, "end_time") <= _parse_hhmm(start_time, "start_time"):
            raise DomainError("end_time must be after start_time.")
        if find_slot_conflict(existing_bookings, tailor.id, booking_date, start_time):
            raise SlotUnavailable(
                f"Tailor {tailor.id} already has a booking on {booking_date.isoformat()} at {start_time}."
            )

        now = self._clock()
        booking = Booking(
            customer_id=customer.id,
            tailor_id=tailor.id,
            booking_date=booking_date,
            start_time=start_time,
            end_time=end_time,
            service=service,
            notes=notes,
            status=BookingStatus.PENDING,
            status_history=[
                StatusHistoryEntry(
                    status=BookingStatus.PENDING.value,
                    changed_at=now,
                    changed_by_id=customer.id,
                    note="Booking requested",
                )
            ],
            created_at=now,
            updated_at=now,
        )
        logger.info(f"booking {booking.id} requested by {customer.id} for tailor {tailor.id}")
        return booking

    def confirm(self, booking: Booking, actor: User, parties: Parties) -> Booking:
        require_party(actor, parties, "tailor")
        self._move(booking, BookingStatus.CONFIRMED, actor, self._clock(), "Booking confirmed by tailor")
        return booking

    def decline(self, booking: Booking, actor: User, parties: Parties, reason: str) -> Booking:
        require_party(actor, parties, "tailor")
        reason = _require_text(reason, "reason", 500, required=False)
        _check_transition(self.ENTITY, BOOKING_TRANSITIONS, booking.status, BookingStatus.DECLINED)
        booking.decline_reason = reason or None
        self._move(booking, BookingStatus.DECLINED, actor, self._clock(), reason)
        return booking

    def complete_consultation(self, booking: Booking, actor: User, notes: str = "") -> Booking:
        """Only an admin may record that the consultation took place."""
        require_role(actor, UserRole.ADMIN)
        notes = _require_text(notes, "notes", 1000, required=False)
        _check_transition(self.ENTITY, BOOKING_TRANSITIONS, booking.status, BookingStatus.CONSULTATION_DONE)
        now = self._clock()
        booking.consultation_notes = notes
        booking.consultation_completed_at = now
        self._move(booking, BookingStatus.CONSULTATION_DONE, actor, now, "Consultation completed")
        return booking

    def submit_quote(
        self,
        booking: Booking,
        actor: User,
        parties: Parties,
        items: Sequence[QuoteItem],
        labor_cost: float,
        material_cost: float,
        estimated_days: Optional[StageEstimates],
        currency: str,
        notes: str,
        validity_days: int,
    ) -> Booking:
        """
        Price the job and hand it to the customer.

        total_amount is the items subtotal plus labor and material costs.
        A resubmission after a rejected quote bumps the quote revision.
        """
        require_party(actor, parties, "tailor")
        _check_transition(self.ENTITY, BOOKING_TRANSITIONS, booking.status, BookingStatus.QUOTE_SUBMITTED)
        for item in items:
            _require_text(item.description, "item description", 200)
            if item.quantity < 1:
                raise DomainError("item quantity must be at least 1.")
            if item.unit_price < 0:
                raise DomainError("item unit_price must not be negative.")
        if labor_cost < 0 or material_cost < 0:
            raise DomainError("labor_cost and material_cost must not be negative.")
        estimates = estimated_days or StageEstimates()
        if min(estimates.design, estimates.sew, estimates.deliver) < 1:
            raise DomainError("Each stage estimate must be at least 1 day.")

        total = self.quote_total(items, labor_cost, material_cost)
        if total <= 0:
            raise DomainError("Quote total must be greater than zero.")

        now = self._clock()
        revision = booking.quote.revision + 1 if booking.quote else 1
        booking.quote = Quote(
            items=list(items),
            labor_cost=round(labor_cost, 2),
            material_cost=round(material_cost, 2),
            total_amount=total,
            currency=currency.upper(),
            estimated_days=estimates,
            total_estimated_days=estimates.total,
            notes=_require_text(notes, "notes", 1000, required=False),
            revision=revision,
            submitted_at=now,
            valid_until=now + timedelta(days=validity_days),
            customer_response=QuoteResponse(status=QuoteResponseStatus.PENDING),
        )
        self._move(
            booking, BookingStatus.QUOTE_SUBMITTED, actor, now,
            f"Quote submitted: {total:.2f} {booking.quote.currency}",
        )
        return booking

    @staticmethod
    def quote_total(items: Sequence[QuoteItem], labor_cost: float, material_cost: float) -> float:
        subtotal = sum(i.quantity * i.unit_price for i in items)
        return round(subtotal + labor_cost + material_cost, 2)

    def respond_to_quote(
        self,
        booking: Booking,
        actor: User,
        parties: Parties,
        accepted: bool,
        reason: Optional[str] = None,
    ) -> Booking:
        require_party(actor, parties, "customer")
        target = BookingStatus.QUOTE_ACCEPTED if accepted else BookingStatus.CONSULTATION_DONE
        _check_transition(self.ENTITY, BOOKING_TRANSITIONS, booking.status, target)
        now = self._clock()
        quote = booking.quote
        if accepted:
            if quote.valid_until and now > quote.valid_until:
                raise QuoteExpired(
                    f"Quote expired on {quote.valid_until.isoformat()}; ask the tailor for a new quote."
                )
            quote.customer_response = QuoteResponse(status=QuoteResponseStatus.ACCEPTED, responded_at=now)
            self._move(booking, target, actor, now, "Quote accepted")
        else:
            reason = _require_text(reason, "reason", 500)
            quote.customer_response = QuoteResponse(
                status=QuoteResponseStatus.REJECTED, responded_at=now, rejection_reason=reason,
            )
            self._move(booking, target, actor, now, f"Quote rejected: {reason}")
        return booking

    def ensure_can_pay(self, booking: Booking, actor: User, parties: Parties) -> Quote:
        """Validate a payment attempt before any funds are touched."""
        require_party(actor, parties, "customer")
        _check_transition(self.ENTITY, BOOKING_TRANSITIONS, booking.status, BookingStatus.PAID)
        return booking.quote

    def record_payment(self, booking: Booking, actor: User, parties: Parties, escrow_ref: str) -> Booking:
        self.ensure_can_pay(booking, actor, parties)
        now = self._clock()
        booking.escrow_ref = escrow_ref
        booking.payment_status = PaymentStatus.HELD
        booking.paid_at = now
        self._move(booking, BookingStatus.PAID, actor, now, f"Payment held in escrow ({escrow_ref})")
        return booking

    def ensure_can_convert(self, booking: Booking, actor: User, parties: Parties) -> None:
        require_party(actor, parties, "customer", "tailor", "admin")
        _check_transition(self.ENTITY, BOOKING_TRANSITIONS, booking.status, BookingStatus.CONVERTED)

    def mark_converted(self, booking: Booking, actor: User, parties: Parties, order_id: uuid.UUID) -> Booking:
        self.ensure_can_convert(booking, actor, parties)
        booking.order_id = order_id
        self._move(booking, BookingStatus.CONVERTED, actor, self._clock(), f"Converted to order {order_id}")
        return booking

    def mark_released(self, booking: Booking) -> Booking:
        """Escrow captured and paid out to the tailor."""
        if booking.payment_status != PaymentStatus.HELD:
            raise DomainError(f"Cannot release a payment that is {booking.payment_status.value}.")
        booking.payment_status = PaymentStatus.RELEASED
        booking.updated_at = self._clock()
        return booking

    def mark_refunded(self, booking: Booking) -> Booking:
        """Escrow hold voided and returned to the customer."""
        if booking.payment_status != PaymentStatus.HELD:
            raise DomainError(f"Cannot refund a payment that is {booking.payment_status.value}.")
        booking.payment_status = PaymentStatus.REFUNDED
        booking.updated_at = self._clock()
        return booking

    def ensure_can_cancel(self, booking: Booking, actor: User, parties: Parties) -> None:
        require_party(actor, parties, "customer", "tailor", "admin")
        _check_transition(self.ENTITY, BOOKING_TRANSITIONS, booking.status, BookingStatus.CANCELLED)

    def cancel(self, booking: Booking, actor: User, parties: Parties, reason: str) -> Booking:
        """
        Cancel from any non-terminal status.  A held payment is recorded as
        refunded; the caller voids the hold when the cancellation commits.
        """
        self.ensure_can_cancel(booking, actor, parties)
        reason = _require_text(reason, "reason", 500, required=False)
        now = self._clock()
        if booking.payment_status == PaymentStatus.HELD:
            self.mark_refunded(booking)
        booking.cancelled_at = now
        booking.cancelled_by_id = actor.id
        booking.cancellation_reason = reason or None
        self._move(booking, BookingStatus.CANCELLED, actor, now, reason)
        return booking


# ---------------------------------------------------------------------------
# WorkPlanService
# ---------------------------------------------------------------------------

class WorkPlanService:
    """Stage breakdown validation and the read-side metrics of an order."""

    MAX_STAGES = 20

    def __init__(self, clock: Callable[[], datetime] = _utcnow):
        self._clock = clock

    def validate(self, definitions: Sequence[StageDefinition]) -> List[StageDefinition]:
        if not definitions:
            raise InvalidWorkPlan("A work plan needs at least one stage.")
        if len(definitions) > self.MAX_STAGES:
            raise InvalidWorkPlan(f"A work plan may have at most {self.MAX_STAGES} stages.")
        cleaned = []
        for i, d in enumerate(definitions):
            name = (d.name or "").strip()
            if not name or len(name) > 100:
                raise InvalidWorkPlan(f"Stage {i}: name is required and must be at most 100 characters.")
            description = (d.description or "").strip()
            if len(description) > 500:
                raise InvalidWorkPlan(f"Stage {i}: description must be at most 500 characters.")
            if d.estimated_days < 1:
                raise InvalidWorkPlan(f"Stage {i}: estimated_days must be at least 1.")
            cleaned.append(StageDefinition(name=name, description=description, estimated_days=d.estimated_days))
        return cleaned

    @staticmethod
    def default_plan(estimates: Optional[StageEstimates]) -> List[StageDefinition]:
        e = estimates or StageEstimates()
        return [
            StageDefinition("Design", "Finalize design and measurements", e.design),
            StageDefinition("Sew", "Cut and sew the garment", e.sew),
            StageDefinition("Deliver", "Final fitting and delivery", e.deliver),
        ]

    def build_plan(self, definitions: Sequence[StageDefinition], submitted_at: datetime) -> WorkPlan:
        stages = [
            Stage(name=d.name, description=d.description, estimated_days=d.estimated_days, order=i)
            for i, d in enumerate(definitions)
        ]
        total = sum(s.estimated_days for s in stages)
        return WorkPlan(
            stages=stages,
            total_estimated_days=total,
            estimated_completion=submitted_at + timedelta(days=total),
            submitted_at=submitted_at,
        )

    @staticmethod
    def snapshot(stages: Sequence[Stage]) -> Tuple[StageDefinition, ...]:
        return tuple(StageDefinition(s.name, s.description, s.estimated_days) for s in stages)

    @staticmethod
    def start_stage(order: Order, index: int, now: datetime) -> None:
        stage = order.stages[index]
        stage.status = StageStatus.IN_PROGRESS
        stage.started_at = now
        order.current_stage = index

    # -- derived values ---------------------------------------------------

    @staticmethod
    def progress_percentage(order: Order) -> int:
        stages = order.stages
        if not stages:
            return 0
        done = sum(1 for s in stages if s.status == StageStatus.COMPLETED)
        return round(done / len(stages) * 100)

    def is_overdue(self, order: Order, now: Optional[datetime] = None) -> bool:
        plan = order.work_plan
        if plan is None or plan.estimated_completion is None:
            return False
        if order.status in TERMINAL_ORDER_STATUSES:
            return False
        return (now or self._clock()) > plan.estimated_completion

    def days_remaining(self, order: Order, now: Optional[datetime] = None) -> Optional[int]:
        plan = order.work_plan
        if plan is None or plan.estimated_completion is None:
            return None
        remaining = plan.estimated_completion - (now or self._clock())
        return math.ceil(remaining / timedelta(days=1))

    @staticmethod
    def current_stage_info(order: Order) -> Optional[Stage]:
        if 0 <= order.current_stage < len(order.stages):
            return order.stages[order.current_stage]
        return None


# ---------------------------------------------------------------------------
# OrderService
# ---------------------------------------------------------------------------

class OrderService:
    """
    Governs the execution lifecycle of an order: work plan negotiation,
    stage progression, delay requests, completion, cancellation and disputes.
    """

    ENTITY = "order"

    def __init__(self, clock: Callable[[], datetime] = _utcnow, plans: Optional[WorkPlanService] = None):
        self._clock = clock
        self._plans = plans or WorkPlanService(clock)

    def _move(self, order: Order, target: OrderStatus, actor_id: Optional[uuid.UUID], now: datetime, note: str = "") -> None:
        _apply_transition(self.ENTITY, order, ORDER_TRANSITIONS, target, actor_id, now, note)

    def _activate(self, order: Order, actor_id: Optional[uuid.UUID], now: datetime, note: str) -> None:
        """Enter in_progress and start the first stage."""
        self._move(order, OrderStatus.IN_PROGRESS, actor_id, now, note)
        order.work_plan.approved_at = now
        order.work_started_at = now
        self._plans.start_stage(order, 0, now)

    # -- creation ---------------------------------------------------------

    def create_from_booking(self, booking: Booking, actor: User, policy: PolicySnapshot) -> Order:
        """
        Build the Order for a paid booking (unsaved).

        With ``require_work_plan`` the order waits for the tailor's plan;
        otherwise a Design / Sew / Deliver plan is derived from the quote
        estimates and work starts immediately.
        """
        now = self._clock()
        order = Order(
            booking_id=booking.id,
            customer_id=booking.customer_id,
            tailor_id=booking.tailor_id,
            plan_deadline=now + timedelta(hours=policy.plan_creation_deadline_hours),
            created_at=now,
            updated_at=now,
        )
        if policy.require_work_plan:
            order.status = OrderStatus.AWAITING_PLAN
            note = "Order created; awaiting work plan"
        else:
            estimates = booking.quote.estimated_days if booking.quote else None
            order.work_plan = self._plans.build_plan(self._plans.default_plan(estimates), now)
            order.work_plan.approved_at = now
            order.work_started_at = now
            order.status = OrderStatus.IN_PROGRESS
            self._plans.start_stage(order, 0, now)
            note = "Order created with default work plan"
        order.status_history.append(
            StatusHistoryEntry(status=order.status.value, changed_at=now, changed_by_id=actor.id, note=note)
        )
        logger.info(f"order {order.id} created from booking {booking.id} in {order.status.value}")
        return order

    # -- work plan --------------------------------------------------------

    def submit_work_plan(
        self,
        order: Order,
        actor: User,
        parties: Parties,
        definitions: Sequence[StageDefinition],
        policy: PolicySnapshot,
    ) -> Order:
        require_party(actor, parties, "tailor")
        target = OrderStatus.PLAN_REVIEW if policy.customer_approval_required else OrderStatus.IN_PROGRESS
        if order.status not in (OrderStatus.AWAITING_PLAN, OrderStatus.PLAN_REJECTED):
            raise InvalidTransition(self.ENTITY, order.status.value, OrderStatus.PLAN_REVIEW.value)
        _check_transition(self.ENTITY, ORDER_TRANSITIONS, order.status, target)
        cleaned = self._plans.validate(definitions)

        history = []
        if order.status == OrderStatus.PLAN_REJECTED and order.work_plan is not None:
            history = list(order.work_plan.revision_history)
            # The newest entry is the rejection being answered now.
            revised = len(history) - 1
            if revised >= policy.max_plan_revisions:
                raise RevisionLimitExceeded(
                    f"Work plan has already been revised {revised} times "
                    f"(limit {policy.max_plan_revisions})."
                )

        now = self._clock()
        plan = self._plans.build_plan(cleaned, now)
        plan.revision_history = history
        order.work_plan = plan
        order.current_stage = 0
        if target == OrderStatus.PLAN_REVIEW:
            self._move(order, target, actor.id, now, f"Work plan submitted ({plan.total_estimated_days} days)")
        else:
            self._activate(order, actor.id, now, "Work plan submitted and auto-approved")
        return order

    def approve_work_plan(self, order: Order, actor: User, parties: Parties) -> Order:
        require_party(actor, parties, "customer")
        if order.status != OrderStatus.PLAN_REVIEW:
            raise InvalidTransition(self.ENTITY, order.status.value, OrderStatus.IN_PROGRESS.value)
        self._activate(order, actor.id, self._clock(), "Work plan approved")
        return order

    def reject_work_plan(self, order: Order, actor: User, parties: Parties, reason: str) -> Order:
        """Reject the plan and archive its stages with the reason."""
        require_party(actor, parties, "customer")
        _check_transition(self.ENTITY, ORDER_TRANSITIONS, order.status, OrderStatus.PLAN_REJECTED)
        reason = _require_text(reason, "reason", 500)
        now = self._clock()
        plan = order.work_plan
        plan.rejected_at = now
        plan.rejection_reason = reason
        plan.revision_history.append(
            WorkPlanRevision(
                revised_at=now,
                revised_by_id=actor.id,
                reason=reason,
                previous_stages=self._plans.snapshot(plan.stages),
            )
        )
        self._move(order, OrderStatus.PLAN_REJECTED, actor.id, now, f"Work plan rejected: {reason}")
        return order

    # -- stages -----------------------------------------------------------

    def _stage_at(self, order: Order, stage_index: int) -> Stage:
        if not 0 <= stage_index < len(order.stages):
            raise InvalidStageIndex(f"Stage index {stage_index} is out of range.")
        return order.stages[stage_index]

    def complete_stage(
        self,
        order: Order,
        actor: User,
        parties: Parties,
        stage_index: int,
        note: Optional[str] = None,
    ) -> Order:
        """
        Complete the current stage.  The last stage moves the order to
        ready; otherwise the next stage starts.
        """
        require_party(actor, parties, "tailor")
        _require_status(self.ENTITY, order, {OrderStatus.IN_PROGRESS}, "complete a stage")
        stage = self._stage_at(order, stage_index)
        if stage.status == StageStatus.COMPLETED:
            raise InvalidStageIndex(f"Stage {stage_index} is already completed.")
        if stage_index != order.current_stage:
            raise InvalidStageIndex(
                f"Stage {stage_index} cannot be completed before stage {order.current_stage}."
            )
        note = _require_text(note, "note", 500, required=False)

        now = self._clock()
        stage.status = StageStatus.COMPLETED
        stage.completed_at = now
        if stage.started_at is None:
            stage.started_at = now
        if note:
            stage.notes.append(StageNote(text=note, added_by_id=actor.id, added_at=now))

        if stage_index == len(order.stages) - 1:
            order.current_stage = len(order.stages)
            order.work_completed_at = now
            self._move(order, OrderStatus.READY, actor.id, now, "All stages completed")
        else:
            self._plans.start_stage(order, stage_index + 1, now)
            order.updated_at = now
            logger.info(f"order {order.id}: stage {stage_index} completed, stage {stage_index + 1} started")
        return order

    def add_stage_note(self, order: Order, actor: User, parties: Parties, stage_index: int, text: str) -> StageNote:
        require_party(actor, parties, "tailor")
        _require_status(self.ENTITY, order, _OPEN_ORDER_STATUSES, "add a stage note")
        stage = self._stage_at(order, stage_index)
        now = self._clock()
        note = StageNote(text=_require_text(text, "note", 500), added_by_id=actor.id, added_at=now)
        stage.notes.append(note)
        order.updated_at = now
        return note

    # -- delays -----------------------------------------------------------

    def request_delay(
        self,
        order: Order,
        actor: User,
        parties: Parties,
        reason: str,
        additional_days: int,
    ) -> DelayRequest:
        require_party(actor, parties, "tailor")
        _require_status(self.ENTITY, order, {OrderStatus.IN_PROGRESS}, "request a delay")
        reason = _require_text(reason, "reason", 500)
        if additional_days < 1:
            raise DomainError("additional_days must be at least 1.")
        if any(d.status == DelayRequestStatus.PENDING for d in order.delay_requests):
            raise DuplicatePendingDelay("A delay request is already pending for this order.")
        now = self._clock()
        request = DelayRequest(
            requested_at=now,
            requested_by_id=actor.id,
            reason=reason,
            additional_days=additional_days,
        )
        order.delay_requests.append(request)
        order.updated_at = now
        return request

    def respond_to_delay(
        self,
        order: Order,
        actor: User,
        parties: Parties,
        request: DelayRequest,
        approved: bool,
        notes: Optional[str] = None,
    ) -> DelayRequest:
        """Approval pushes estimated_completion out by exactly additional_days."""
        require_party(actor, parties, "customer")
        if request.status != DelayRequestStatus.PENDING:
            raise AlreadyProcessed(f"Delay request {request.id} was already {request.status.value}.")
        notes = _require_text(notes, "notes", 500, required=False)
        now = self._clock()
        request.status = DelayRequestStatus.APPROVED if approved else DelayRequestStatus.REJECTED
        request.reviewed_at = now
        request.reviewed_by_id = actor.id
        request.review_notes = notes or None
        if approved and order.work_plan and order.work_plan.estimated_completion:
            order.work_plan.estimated_completion += timedelta(days=request.additional_days)
            order.completion_overdue_notified = False
        order.updated_at = now
        return request

    # -- completion & cancellation ---------------------------------------

    def ensure_can_complete(self, order: Order, actor: User, parties: Parties) -> None:
        require_party(actor, parties, "customer")
        _check_transition(self.ENTITY, ORDER_TRANSITIONS, order.status, OrderStatus.COMPLETED)

    def mark_completed(
        self,
        order: Order,
        actor: User,
        parties: Parties,
        rating: Optional[int] = None,
        comment: Optional[str] = None,
    ) -> Order:
        self.ensure_can_complete(order, actor, parties)
        if rating is not None and not 1 <= rating <= 5:
            raise DomainError("rating must be between 1 and 5.")
        comment = _require_text(comment, "comment", 1000, required=False)
        now = self._clock()
        order.delivered_at = now
        order.completed_at = now
        if rating is not None or comment:
            order.completion_feedback = CompletionFeedback(rating=rating, comment=comment, submitted_at=now)
        self._move(order, OrderStatus.COMPLETED, actor.id, now, "Order completed by customer")
        return order

    def ensure_can_cancel(self, order: Order, actor: User, parties: Parties) -> None:
        require_party(actor, parties, "customer", "tailor", "admin")
        _check_transition(self.ENTITY, ORDER_TRANSITIONS, order.status, OrderStatus.CANCELLED)

    def cancel(self, order: Order, actor: User, parties: Parties, reason: str) -> Order:
        self.ensure_can_cancel(order, actor, parties)
        reason = _require_text(reason, "reason", 500, required=False)
        now = self._clock()
        order.cancelled_at = now
        order.cancelled_by_id = actor.id
        order.cancellation_reason = reason or None
        self._move(order, OrderStatus.CANCELLED, actor.id, now, reason)
        return order

    # -- disputes ---------------------------------------------------------

    def raise_dispute(self, order: Order, actor: User, parties: Parties, reason: str) -> Order:
        require_party(actor, parties, "customer", "tailor")
        _check_transition(self.ENTITY, ORDER_TRANSITIONS, order.status, OrderStatus.DISPUTED)
        reason = _require_text(reason, "reason", 1000)
        now = self._clock()
        order.status_before_dispute = order.status
        order.dispute = Dispute(raised_at=now, raised_by_id=actor.id, reason=reason)
        self._move(order, OrderStatus.DISPUTED, actor.id, now, f"Dispute raised: {reason}")
        return order

    def review_dispute(self, order: Order, actor: User) -> Order:
        require_role(actor, UserRole.ADMIN)
        self._require_dispute(order, DisputeStatus.OPEN)
        now = self._clock()
        order.dispute.status = DisputeStatus.UNDER_REVIEW
        order.dispute.reviewed_by_id = actor.id
        order.dispute.reviewed_at = now
        order.updated_at = now
        return order

    def ensure_can_resolve(self, order: Order, actor: User, cancel_order: bool) -> None:
        require_role(actor, UserRole.ADMIN)
        self._require_dispute(order, DisputeStatus.OPEN, DisputeStatus.UNDER_REVIEW)
        target = OrderStatus.CANCELLED if cancel_order else order.status_before_dispute
        _check_transition(self.ENTITY, ORDER_TRANSITIONS, order.status, target)

    def resolve_dispute(self, order: Order, actor: User, resolution: str, cancel_order: bool = False) -> Order:
        """
        Close the dispute.  The order either resumes from the status it had
        when the dispute was raised, or is cancelled.
        """
        self.ensure_can_resolve(order, actor, cancel_order)
        resolution = _require_text(resolution, "resolution", 1000)
        now = self._clock()
        order.dispute.status = DisputeStatus.RESOLVED
        order.dispute.resolved_at = now
        order.dispute.resolution = resolution
        if order.dispute.reviewed_by_id is None:
            order.dispute.reviewed_by_id = actor.id
        if cancel_order:
            order.cancelled_at = now
            order.cancelled_by_id = actor.id
            order.cancellation_reason = resolution
            self._move(order, OrderStatus.CANCELLED, actor.id, now, f"Dispute resolved: {resolution}")
        else:
            self._move(order, order.status_before_dispute, actor.id, now, f"Dispute resolved: {resolution}")
        order.status_before_dispute = None
        return order

    def _require_dispute(self, order: Order, *allowed: DisputeStatus) -> None:
        if order.status != OrderStatus.DISPUTED or order.dispute is None:
            raise InvalidTransition(
                self.ENTITY, order.status.value, OrderStatus.DISPUTED.value,
                message=f"Order {order.id} has no active dispute.",
            )
        if order.dispute.status not in allowed:
            raise AlreadyProcessed(f"Dispute is already {order.dispute.status.value}.")


# ---------------------------------------------------------------------------
# DeadlineService
# ---------------------------------------------------------------------------

class DeadlineService:
    """
    Detects plan-deadline and completion-overdue conditions.  Never changes
    an order's status; it only sets the one-shot notification flags.
    """

    PLAN_REMINDER = "order.plan_reminder"
    PLAN_OVERDUE = "order.plan_overdue"
    COMPLETION_OVERDUE = "order.completion_overdue"

    def __init__(self, clock: Callable[[], datetime] = _utcnow):
        self._clock = clock

    def overdue_plans(self, orders: Sequence[Order], now: Optional[datetime] = None) -> List[Order]:
        now = now or self._clock()
        return [
            o for o in orders
            if o.status == OrderStatus.AWAITING_PLAN and o.plan_deadline and now > o.plan_deadline
        ]

    def overdue_completions(self, orders: Sequence[Order], now: Optional[datetime] = None) -> List[Order]:
        now = now or self._clock()
        return [
            o for o in orders
            if o.status == OrderStatus.IN_PROGRESS
            and o.work_plan is not None
            and o.work_plan.estimated_completion is not None
            and now > o.work_plan.estimated_completion
        ]

    def scan(self, orders: Sequence[Order], policy: PolicySnapshot) -> List[Tuple[Order, str]]:
        """
        Return (order, event name) pairs for every flag raised in this pass.
        The orders are mutated in place and must be saved by the caller.
        """
        now = self._clock()
        raised: List[Tuple[Order, str]] = []
        overdue_plan_ids = {o.id for o in self.overdue_plans(orders, now)}
        reminder_window = timedelta(hours=policy.plan_reminder_hours_before)

        for order in orders:
            if order.id in overdue_plan_ids:
                if not order.plan_overdue_notified:
                    order.plan_overdue_notified = True
                    raised.append((order, self.PLAN_OVERDUE))
            elif (
                order.status == OrderStatus.AWAITING_PLAN
                and order.plan_deadline
                and not order.plan_reminder_sent
                and order.plan_deadline - now <= reminder_window
            ):
                order.plan_reminder_sent = True
                raised.append((order, self.PLAN_REMINDER))

        for order in self.overdue_completions(orders, now):
            if not order.completion_overdue_notified:
                order.completion_overdue_notified = True
                raised.append((order, self.COMPLETION_OVERDUE))

        for order, name in raised:
            order.updated_at = now
            logger.info(f"order {order.id}: {name}")
        return raised
