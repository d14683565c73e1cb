"""
Two units of work racing on the same record: the first commit wins and the
second is refused without writing anything.
"""

import threading
import uuid
from datetime import date, timedelta

import pytest

from application import (
    BookingActionCommand,
    CancelBookingUseCase,
    CancelOrderUseCase,
    ConcurrencyConflict,
    EventBus,
    MarkOrderCompletedCommand,
    MarkOrderCompletedUseCase,
    OrderActionCommand,
    OrderAlreadyExists,
    PayBookingUseCase,
)
from infrastructure import InMemoryUnitOfWork
from model import BookingStatus, DomainEvent, OrderStatus, PaymentStatus
from service import (
    BookingService,
    InvalidTransition,
    OrderService,
    Parties,
    PolicySnapshot,
    SlotUnavailable,
)


@pytest.fixture
def parties(customer, tailor_user):
    return Parties(customer_id=customer.id, tailor_user_id=tailor_user.id)


def test_approve_and_reject_race_has_one_winner(market, uow_factory, customer, parties):
    order_id = market.new_order()
    market.submit_plan(order_id)
    svc = OrderService()

    uow_a, uow_b = uow_factory(), uow_factory()
    order_a = uow_a.orders.get(order_id)
    order_b = uow_b.orders.get(order_id)

    svc.approve_work_plan(order_a, customer, parties)
    uow_a.orders.save(order_a)
    svc.reject_work_plan(order_b, customer, parties, "Changed my mind")
    uow_b.orders.save(order_b)

    uow_a.commit()
    with pytest.raises(InvalidTransition) as exc:
        uow_b.commit()
    assert exc.value.current == "in_progress"
    assert exc.value.attempted == "plan_rejected"

    with uow_factory() as uow:
        stored = uow.orders.get(order_id)
    assert stored.status == OrderStatus.IN_PROGRESS
    assert "plan_rejected" not in [h.status for h in stored.status_history]
    assert stored.work_plan.revision_history == []


def test_concurrent_conversion_creates_one_order(market, uow_factory, db, customer, parties):
    booking_id = market.paid_booking()
    bookings, orders = BookingService(), OrderService()

    staged = []
    for uow in (uow_factory(), uow_factory()):
        booking = uow.bookings.get(booking_id)
        assert uow.orders.get_by_booking(booking_id) is None
        order = orders.create_from_booking(booking, customer, PolicySnapshot())
        bookings.mark_converted(booking, customer, parties, order.id)
        uow.orders.add(order)
        uow.bookings.save(booking)
        staged.append(uow)

    staged[0].commit()
    with pytest.raises(OrderAlreadyExists):
        staged[1].commit()
    assert len(db.orders) == 1


def test_same_slot_requested_twice_concurrently(market, uow_factory, customer, tailor):
    day = date.today() + timedelta(days=60)
    svc = BookingService()
    staged = []
    for _ in range(2):
        uow = uow_factory()
        booking = svc.request_booking(
            customer, tailor, day, "09:00", "10:00", "Alterations", "", uow.bookings.list_for_tailor(tailor.id),
        )
        uow.bookings.add(booking)
        staged.append(uow)

    staged[0].commit()
    with pytest.raises(SlotUnavailable):
        staged[1].commit()


def test_stale_write_without_status_change_is_a_conflict(market, uow_factory, tailor_user, parties):
    order_id = market.in_progress_order()
    svc = OrderService()

    uow_a, uow_b = uow_factory(), uow_factory()
    order_a = uow_a.orders.get(order_id)
    order_b = uow_b.orders.get(order_id)
    svc.add_stage_note(order_a, tailor_user, parties, 0, "First")
    svc.add_stage_note(order_b, tailor_user, parties, 0, "Second")
    uow_a.orders.save(order_a)
    uow_b.orders.save(order_b)

    uow_a.commit()
    with pytest.raises(ConcurrencyConflict):
        uow_b.commit()

    with uow_factory() as uow:
        notes = [n.text for n in uow.orders.get(order_id).stages[0].notes]
    assert notes == ["First"]


def test_failed_commit_publishes_no_events(market, db, gateway, customer, parties):
    order_id = market.new_order()
    market.submit_plan(order_id)
    published = []
    bus = EventBus()
    bus.subscribe(published.append)
    svc = OrderService()

    uow_a = InMemoryUnitOfWork(db=db, payments=gateway, bus=bus)
    uow_b = InMemoryUnitOfWork(db=db, payments=gateway, bus=bus)
    order_a, order_b = uow_a.orders.get(order_id), uow_b.orders.get(order_id)
    svc.approve_work_plan(order_a, customer, parties)
    svc.approve_work_plan(order_b, customer, parties)
    for uow, order in ((uow_a, order_a), (uow_b, order_b)):
        uow.orders.save(order)
        uow.collect(_event(order))

    uow_a.commit()
    with pytest.raises(InvalidTransition):
        uow_b.commit()
    uow_b.rollback()
    assert len(published) == 1


def test_failing_subscriber_does_not_break_the_use_case(market, db, gateway):
    bus = EventBus()

    def explode(event):
        raise RuntimeError("mail server down")

    bus.subscribe(explode)
    market.uow = lambda: InMemoryUnitOfWork(db=db, payments=gateway, bus=bus)
    assert market.request().status == "pending"


def test_parallel_stage_completion_applies_once(market, uow_factory):
    order_id = market.in_progress_order()
    outcomes = []

    def worker():
        try:
            market.complete_stage(order_id, 0)
            outcomes.append("ok")
        except (InvalidTransition, ConcurrencyConflict, ValueError) as exc:
            outcomes.append(type(exc).__name__)

    threads = [threading.Thread(target=worker) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert outcomes.count("ok") == 1
    with uow_factory() as uow:
        order = uow.orders.get(order_id)
    assert order.current_stage == 1
    assert [h.status for h in order.status_history].count("in_progress") == 1


def _event(order):
    return DomainEvent(name="order.plan_approved", entity_type="order", entity_id=order.id, new_status=order.status.value)


# ---------------------------------------------------------------------------
# Escrow under races
# ---------------------------------------------------------------------------

class _InterleavedUnitOfWork(InMemoryUnitOfWork):
    """Lets a competing request commit just before this one does."""

    def __init__(self, competitor, **kwargs):
        super().__init__(**kwargs)
        self._competitor = competitor

    def commit(self):
        competitor, self._competitor = self._competitor, None
        if competitor is not None:
            competitor()
        super().commit()


def _stored_booking(uow_factory, booking_id):
    with uow_factory() as uow:
        return uow.bookings.get(booking_id)


def test_cancel_losing_to_conversion_keeps_the_hold(market, db, gateway, uow_factory):
    booking_id = market.paid_booking()
    converted = []
    uow = _InterleavedUnitOfWork(lambda: converted.append(market.convert(booking_id)), db=db, payments=gateway)
    cmd = BookingActionCommand(booking_id=booking_id, acting_user_id=market.customer.id, text="Changed my mind")

    with pytest.raises(InvalidTransition):
        CancelBookingUseCase().execute(cmd, uow)

    booking = _stored_booking(uow_factory, booking_id)
    assert booking.status == BookingStatus.CONVERTED
    assert booking.payment_status == PaymentStatus.HELD
    assert db.escrow[booking.escrow_ref]["status"] == "held"
    assert ("cancel", booking.escrow_ref) not in gateway.calls

    order_id = uuid.UUID(converted[0].id)
    market.submit_plan(order_id)
    market.approve(order_id)
    for i in range(3):
        market.complete_stage(order_id, i)
    done = MarkOrderCompletedUseCase().execute(
        MarkOrderCompletedCommand(order_id=order_id, acting_user_id=market.customer.id), market.uow(),
    )
    assert done.status == "completed"
    assert db.escrow[booking.escrow_ref]["status"] == "captured"


def test_order_cancel_losing_to_completion_does_not_void(market, db, gateway, uow_factory):
    order_id = market.ready_order()
    complete = MarkOrderCompletedCommand(order_id=order_id, acting_user_id=market.customer.id)
    uow = _InterleavedUnitOfWork(
        lambda: MarkOrderCompletedUseCase().execute(complete, market.uow()), db=db, payments=gateway,
    )
    cmd = OrderActionCommand(order_id=order_id, acting_user_id=market.customer.id, text="Too late")

    # The booking is checked first and was re-versioned by the capture.
    with pytest.raises(ConcurrencyConflict):
        CancelOrderUseCase().execute(cmd, uow)

    with uow_factory() as check:
        order = check.orders.get(order_id)
        booking = check.bookings.get(order.booking_id)
    assert order.status == OrderStatus.COMPLETED
    assert booking.payment_status == PaymentStatus.RELEASED
    assert [op for op, _ in gateway.calls if op in ("capture", "cancel")] == ["capture"]


def test_losing_payment_keeps_the_winning_hold(market, db, gateway, uow_factory):
    booking_id = market.accepted_booking()
    uow = _InterleavedUnitOfWork(lambda: market.pay(booking_id), db=db, payments=gateway)
    cmd = BookingActionCommand(booking_id=booking_id, acting_user_id=market.customer.id)

    with pytest.raises(InvalidTransition):
        PayBookingUseCase().execute(cmd, uow)

    booking = _stored_booking(uow_factory, booking_id)
    assert booking.status == BookingStatus.PAID
    assert db.escrow[booking.escrow_ref]["status"] == "held"
    assert ("cancel", booking.escrow_ref) not in gateway.calls


def test_queued_actions_skip_a_refused_commit(market, uow_factory, db, tailor_user, parties):
    order_id = market.in_progress_order()
    svc = OrderService()
    ran = []
    limit = db.settings["order_max_plan_revisions"]

    uow_a, uow_b = uow_factory(), uow_factory()
    order_a = uow_a.orders.get(order_id)
    order_b = uow_b.orders.get(order_id)
    svc.add_stage_note(order_a, tailor_user, parties, 0, "First")
    svc.add_stage_note(order_b, tailor_user, parties, 0, "Second")
    uow_a.orders.save(order_a)
    uow_b.orders.save(order_b)
    uow_a.on_commit(lambda: ran.append("a"))
    uow_b.on_commit(lambda: ran.append("b"))
    uow_b.on_commit(lambda: uow_b.settings.set_value("order_max_plan_revisions", limit + 5))

    uow_a.commit()
    with pytest.raises(ConcurrencyConflict):
        uow_b.commit()
    uow_b.rollback()

    assert ran == ["a"]
    assert db.settings["order_max_plan_revisions"] == limit
