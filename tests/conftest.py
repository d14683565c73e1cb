import uuid
from datetime import date, timedelta
from itertools import count

import pytest

from application import (
    BookingActionCommand,
    CompleteStageCommand,
    ConfirmBookingUseCase,
    CompleteConsultationUseCase,
    CompleteStageUseCase,
    ConvertBookingCommand,
    ConvertBookingToOrderUseCase,
    OrderActionCommand,
    ApproveWorkPlanUseCase,
    PayBookingUseCase,
    RejectWorkPlanUseCase,
    RequestBookingCommand,
    RequestBookingUseCase,
    RespondToQuoteCommand,
    RespondToQuoteUseCase,
    SubmitQuoteCommand,
    SubmitQuoteUseCase,
    SubmitWorkPlanCommand,
    SubmitWorkPlanUseCase,
)
from infrastructure import InMemoryDatabase, InMemoryUnitOfWork, SimulatedPaymentGateway, build_event_bus
from model import QuoteItem, StageDefinition, TailorProfile, User, UserRole


THREE_STAGES = [
    StageDefinition("Design", "Sketch and measurements", 2),
    StageDefinition("Sew", "Cut and sew", 5),
    StageDefinition("Deliver", "Final fitting", 1),
]


@pytest.fixture
def db():
    return InMemoryDatabase()


@pytest.fixture
def gateway(db):
    return SimulatedPaymentGateway(db)


@pytest.fixture
def uow_factory(db, gateway):
    bus = build_event_bus(db)
    return lambda: InMemoryUnitOfWork(db=db, payments=gateway, bus=bus)


def _seed(db, obj):
    store = db.tailors if isinstance(obj, TailorProfile) else db.users
    store.put(obj)
    return obj


@pytest.fixture
def admin(db):
    return _seed(db, User(full_name="Admin", email="admin@marketplace.io", role=UserRole.ADMIN))


@pytest.fixture
def customer(db):
    return _seed(db, User(full_name="Ada Customer", email="ada@customers.io", role=UserRole.CUSTOMER))


@pytest.fixture
def other_customer(db):
    return _seed(db, User(full_name="Bob Customer", email="bob@customers.io", role=UserRole.CUSTOMER))


@pytest.fixture
def tailor_user(db):
    return _seed(db, User(full_name="Tomas Tailor", email="tomas@tailors.io", role=UserRole.TAILOR))


@pytest.fixture
def tailor(db, tailor_user):
    return _seed(db, TailorProfile(user_id=tailor_user.id, business_name="Tomas Bespoke", payout_account_id="acct_tomas"))


class Marketplace:
    """Drives bookings and orders through the use cases, step by step."""

    def __init__(self, uow_factory, admin, customer, tailor_user, tailor):
        self.uow = uow_factory
        self.admin = admin
        self.customer = customer
        self.tailor_user = tailor_user
        self.tailor = tailor
        self._days = count(7)

    # -- bookings ---------------------------------------------------------

    def request(self, booking_date=None, start_time="10:00"):
        cmd = RequestBookingCommand(
            tailor_id=self.tailor.id,
            booking_date=booking_date or date.today() + timedelta(days=next(self._days)),
            start_time=start_time,
            end_time="11:00",
            service="Wedding suit",
            acting_user_id=self.customer.id,
        )
        return RequestBookingUseCase().execute(cmd, self.uow())

    def confirm(self, booking_id):
        cmd = BookingActionCommand(booking_id=booking_id, acting_user_id=self.tailor_user.id)
        return ConfirmBookingUseCase().execute(cmd, self.uow())

    def consult(self, booking_id):
        cmd = BookingActionCommand(booking_id=booking_id, acting_user_id=self.admin.id, text="Measured")
        return CompleteConsultationUseCase().execute(cmd, self.uow())

    def quote(self, booking_id, labor_cost=50.0, material_cost=25.0):
        cmd = SubmitQuoteCommand(
            booking_id=booking_id,
            items=[QuoteItem("Wool fabric", 2, 30.0), QuoteItem("Buttons", 10, 0.5)],
            labor_cost=labor_cost,
            material_cost=material_cost,
            acting_user_id=self.tailor_user.id,
        )
        return SubmitQuoteUseCase().execute(cmd, self.uow())

    def accept(self, booking_id):
        cmd = RespondToQuoteCommand(booking_id=booking_id, accepted=True, acting_user_id=self.customer.id)
        return RespondToQuoteUseCase().execute(cmd, self.uow())

    def pay(self, booking_id):
        cmd = BookingActionCommand(booking_id=booking_id, acting_user_id=self.customer.id)
        return PayBookingUseCase().execute(cmd, self.uow())

    def accepted_booking(self):
        booking_id = uuid.UUID(self.request().id)
        self.confirm(booking_id)
        self.consult(booking_id)
        self.quote(booking_id)
        self.accept(booking_id)
        return booking_id

    def paid_booking(self):
        booking_id = self.accepted_booking()
        self.pay(booking_id)
        return booking_id

    # -- orders -----------------------------------------------------------

    def convert(self, booking_id):
        cmd = ConvertBookingCommand(booking_id=booking_id, acting_user_id=self.customer.id)
        return ConvertBookingToOrderUseCase().execute(cmd, self.uow())

    def new_order(self):
        return uuid.UUID(self.convert(self.paid_booking()).id)

    def submit_plan(self, order_id, stages=None):
        cmd = SubmitWorkPlanCommand(
            order_id=order_id, stages=list(stages or THREE_STAGES), acting_user_id=self.tailor_user.id,
        )
        return SubmitWorkPlanUseCase().execute(cmd, self.uow())

    def approve(self, order_id):
        cmd = OrderActionCommand(order_id=order_id, acting_user_id=self.customer.id)
        return ApproveWorkPlanUseCase().execute(cmd, self.uow())

    def reject(self, order_id, reason="Too long"):
        cmd = OrderActionCommand(order_id=order_id, acting_user_id=self.customer.id, text=reason)
        return RejectWorkPlanUseCase().execute(cmd, self.uow())

    def in_progress_order(self, stages=None):
        order_id = self.new_order()
        self.submit_plan(order_id, stages)
        self.approve(order_id)
        return order_id

    def complete_stage(self, order_id, index, note=None):
        cmd = CompleteStageCommand(
            order_id=order_id, stage_index=index, note=note, acting_user_id=self.tailor_user.id,
        )
        return CompleteStageUseCase().execute(cmd, self.uow())

    def ready_order(self):
        order_id = self.in_progress_order()
        for i in range(len(THREE_STAGES)):
            self.complete_stage(order_id, i)
        return order_id


@pytest.fixture
def market(uow_factory, admin, customer, tailor_user, tailor):
    return Marketplace(uow_factory, admin, customer, tailor_user, tailor)
