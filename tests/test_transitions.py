"""
Status tables are closed: any move they do not list is refused and leaves
the record as it was.  Every move they do list adds exactly one history
entry.
"""

import copy
import uuid

import pytest

from application import (
    BookingActionCommand,
    CancelBookingUseCase,
    MarkOrderCompletedCommand,
    MarkOrderCompletedUseCase,
    OrderActionCommand,
    RaiseDisputeUseCase,
    ResolveDisputeCommand,
    ResolveDisputeUseCase,
    ReviewDisputeUseCase,
)
from model import Booking, BookingStatus, Order, OrderStatus, Quote, User, UserRole
from service import (
    BOOKING_TRANSITIONS,
    ORDER_TRANSITIONS,
    BookingService,
    InvalidTransition,
    OrderService,
    Parties,
    PolicySnapshot,
)

from conftest import THREE_STAGES

CUSTOMER = User(role=UserRole.CUSTOMER)
TAILOR = User(role=UserRole.TAILOR)
ADMIN = User(role=UserRole.ADMIN)
PARTIES = Parties(customer_id=CUSTOMER.id, tailor_user_id=TAILOR.id)


# ---------------------------------------------------------------------------
# Closure
# ---------------------------------------------------------------------------

BOOKING_OPERATIONS = [
    (BookingStatus.CONFIRMED, "confirm", lambda svc, b: svc.confirm(b, TAILOR, PARTIES)),
    (BookingStatus.DECLINED, "decline", lambda svc, b: svc.decline(b, TAILOR, PARTIES, "Busy")),
    (BookingStatus.CONSULTATION_DONE, "complete_consultation",
     lambda svc, b: svc.complete_consultation(b, ADMIN, "Measured")),
    (BookingStatus.QUOTE_SUBMITTED, "submit_quote",
     lambda svc, b: svc.submit_quote(b, TAILOR, PARTIES, [], 80.0, 20.0, None, "USD", "", 14)),
    (BookingStatus.QUOTE_ACCEPTED, "accept_quote",
     lambda svc, b: svc.respond_to_quote(b, CUSTOMER, PARTIES, accepted=True)),
    (BookingStatus.CONSULTATION_DONE, "reject_quote",
     lambda svc, b: svc.respond_to_quote(b, CUSTOMER, PARTIES, accepted=False, reason="Too much")),
    (BookingStatus.PAID, "record_payment",
     lambda svc, b: svc.record_payment(b, CUSTOMER, PARTIES, "esc_test")),
    (BookingStatus.CONVERTED, "mark_converted",
     lambda svc, b: svc.mark_converted(b, CUSTOMER, PARTIES, uuid.uuid4())),
    (BookingStatus.CANCELLED, "cancel", lambda svc, b: svc.cancel(b, CUSTOMER, PARTIES, "")),
]

ORDER_OPERATIONS = [
    (OrderStatus.PLAN_REVIEW, "submit_work_plan",
     lambda svc, o: svc.submit_work_plan(o, TAILOR, PARTIES, THREE_STAGES, PolicySnapshot())),
    (OrderStatus.IN_PROGRESS, "approve_work_plan", lambda svc, o: svc.approve_work_plan(o, CUSTOMER, PARTIES)),
    (OrderStatus.PLAN_REJECTED, "reject_work_plan",
     lambda svc, o: svc.reject_work_plan(o, CUSTOMER, PARTIES, "Too slow")),
    (OrderStatus.READY, "complete_stage", lambda svc, o: svc.complete_stage(o, TAILOR, PARTIES, 0)),
    (OrderStatus.COMPLETED, "mark_completed", lambda svc, o: svc.mark_completed(o, CUSTOMER, PARTIES)),
    (OrderStatus.CANCELLED, "cancel", lambda svc, o: svc.cancel(o, CUSTOMER, PARTIES, "")),
    (OrderStatus.DISPUTED, "raise_dispute", lambda svc, o: svc.raise_dispute(o, CUSTOMER, PARTIES, "Bad fit")),
]


def _illegal(table, operations):
    return [
        pytest.param(source, target, call, id=f"{source.value}-{name}")
        for source in table
        for target, name, call in operations
        if target not in table[source]
    ]


@pytest.mark.parametrize("source, target, call", _illegal(BOOKING_TRANSITIONS, BOOKING_OPERATIONS))
def test_booking_moves_outside_the_table_are_refused(source, target, call):
    booking = Booking(customer_id=CUSTOMER.id, status=source, quote=Quote(total_amount=100.0))
    before = copy.deepcopy(booking)
    with pytest.raises(InvalidTransition) as exc:
        call(BookingService(), booking)
    assert exc.value.current == source.value
    assert booking == before


@pytest.mark.parametrize("source, target, call", _illegal(ORDER_TRANSITIONS, ORDER_OPERATIONS))
def test_order_moves_outside_the_table_are_refused(source, target, call):
    order = Order(customer_id=CUSTOMER.id, status=source)
    before = copy.deepcopy(order)
    with pytest.raises(InvalidTransition) as exc:
        call(OrderService(), order)
    assert exc.value.current == source.value
    assert order == before


def test_terminal_statuses_have_no_way_out():
    assert BOOKING_TRANSITIONS[BookingStatus.CONVERTED] == frozenset()
    assert BOOKING_TRANSITIONS[BookingStatus.DECLINED] == frozenset()
    assert ORDER_TRANSITIONS[OrderStatus.COMPLETED] == frozenset()
    assert ORDER_TRANSITIONS[OrderStatus.CANCELLED] == frozenset()


# ---------------------------------------------------------------------------
# History
# ---------------------------------------------------------------------------

class _History:
    def __init__(self, market, repo_name, entity_id):
        self._market = market
        self._repo_name = repo_name
        self._entity_id = entity_id

    def read(self):
        with self._market.uow() as uow:
            return getattr(uow, self._repo_name).get(self._entity_id).status_history

    def grows_by_one(self, action, status):
        before = self.read()
        result = action()
        after = self.read()
        assert after[:len(before)] == before
        assert len(after) == len(before) + 1
        assert after[-1].status == status
        return result

    def unchanged(self, action):
        before = self.read()
        result = action()
        assert self.read() == before
        return result


def test_every_move_appends_exactly_one_history_entry(market):
    booking_id = uuid.UUID(market.request().id)
    booking = _History(market, "bookings", booking_id)
    assert [h.status for h in booking.read()] == ["pending"]

    booking.grows_by_one(lambda: market.confirm(booking_id), "confirmed")
    booking.grows_by_one(lambda: market.consult(booking_id), "consultation_done")
    booking.grows_by_one(lambda: market.quote(booking_id), "quote_submitted")
    booking.grows_by_one(lambda: market.accept(booking_id), "quote_accepted")
    booking.grows_by_one(lambda: market.pay(booking_id), "paid")
    converted = booking.grows_by_one(lambda: market.convert(booking_id), "converted")

    order_id = uuid.UUID(converted.id)
    order = _History(market, "orders", order_id)
    assert [h.status for h in order.read()] == ["awaiting_plan"]

    order.grows_by_one(lambda: market.submit_plan(order_id), "plan_review")
    order.grows_by_one(lambda: market.approve(order_id), "in_progress")

    raise_cmd = OrderActionCommand(order_id=order_id, acting_user_id=market.tailor_user.id, text="Fabric swapped")
    order.grows_by_one(lambda: RaiseDisputeUseCase().execute(raise_cmd, market.uow()), "disputed")
    review_cmd = OrderActionCommand(order_id=order_id, acting_user_id=market.admin.id)
    order.unchanged(lambda: ReviewDisputeUseCase().execute(review_cmd, market.uow()))
    resolve_cmd = ResolveDisputeCommand(order_id=order_id, resolution="Agreed on fabric", acting_user_id=market.admin.id)
    order.grows_by_one(lambda: ResolveDisputeUseCase().execute(resolve_cmd, market.uow()), "in_progress")

    order.unchanged(lambda: market.complete_stage(order_id, 0))
    order.unchanged(lambda: market.complete_stage(order_id, 1))
    order.grows_by_one(lambda: market.complete_stage(order_id, 2), "ready")
    complete_cmd = MarkOrderCompletedCommand(order_id=order_id, acting_user_id=market.customer.id, rating=5)
    order.grows_by_one(lambda: MarkOrderCompletedUseCase().execute(complete_cmd, market.uow()), "completed")

    assert [h.status for h in order.read()] == [
        "awaiting_plan", "plan_review", "in_progress", "disputed", "in_progress", "ready", "completed",
    ]
    assert booking.read()[-1].status == "converted"


def test_refused_move_leaves_history_alone(market):
    booking_id = uuid.UUID(market.request().id)
    booking = _History(market, "bookings", booking_id)
    cmd = BookingActionCommand(booking_id=booking_id, acting_user_id=market.customer.id, text="Wrong date")
    booking.grows_by_one(lambda: CancelBookingUseCase().execute(cmd, market.uow()), "cancelled")

    before = booking.read()
    with pytest.raises(InvalidTransition):
        market.confirm(booking_id)
    assert booking.read() == before
