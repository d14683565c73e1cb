from datetime import datetime, timedelta, timezone

import pytest

from application import GetOrderUseCase, UpdateSettingCommand, UpdateSettingUseCase
from model import (
    Booking,
    Order,
    OrderStatus,
    Quote,
    StageDefinition,
    StageEstimates,
    StageStatus,
    User,
    UserRole,
)
from service import (
    InvalidStageIndex,
    InvalidTransition,
    InvalidWorkPlan,
    OrderService,
    Parties,
    PolicySnapshot,
    RevisionLimitExceeded,
    WorkPlanService,
)

from conftest import THREE_STAGES

NOW = datetime(2026, 5, 4, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
def people():
    customer = User(role=UserRole.CUSTOMER)
    tailor = User(role=UserRole.TAILOR)
    return customer, tailor, Parties(customer_id=customer.id, tailor_user_id=tailor.id)


@pytest.fixture
def orders():
    return OrderService(clock=lambda: NOW, plans=WorkPlanService(clock=lambda: NOW))


def _awaiting_plan(customer):
    return Order(customer_id=customer.id, status=OrderStatus.AWAITING_PLAN)


# ---------------------------------------------------------------------------
# Plan construction
# ---------------------------------------------------------------------------

def test_submitted_plan_sums_days_and_sets_estimated_completion(orders, people):
    customer, tailor, parties = people
    order = _awaiting_plan(customer)
    orders.submit_work_plan(order, tailor, parties, THREE_STAGES, PolicySnapshot())

    assert order.status == OrderStatus.PLAN_REVIEW
    assert order.work_plan.total_estimated_days == 8
    assert order.work_plan.estimated_completion == NOW + timedelta(days=8)
    assert [s.order for s in order.stages] == [0, 1, 2]
    assert all(s.status == StageStatus.PENDING for s in order.stages)


def test_empty_plan_is_rejected(orders, people):
    customer, tailor, parties = people
    order = _awaiting_plan(customer)
    with pytest.raises(InvalidWorkPlan):
        orders.submit_work_plan(order, tailor, parties, [], PolicySnapshot())
    assert order.status == OrderStatus.AWAITING_PLAN


def test_stage_needs_at_least_one_day(orders, people):
    customer, tailor, parties = people
    with pytest.raises(InvalidWorkPlan):
        orders.submit_work_plan(
            _awaiting_plan(customer), tailor, parties, [StageDefinition("Sew", "", 0)], PolicySnapshot(),
        )


def test_plan_without_customer_approval_starts_immediately(orders, people):
    customer, tailor, parties = people
    order = _awaiting_plan(customer)
    orders.submit_work_plan(order, tailor, parties, THREE_STAGES, PolicySnapshot(customer_approval_required=False))
    assert order.status == OrderStatus.IN_PROGRESS
    assert order.stages[0].status == StageStatus.IN_PROGRESS
    assert order.work_started_at == NOW


def test_default_plan_follows_quote_estimates(orders, people):
    customer, _, _ = people
    booking = Booking(customer_id=customer.id, quote=Quote(estimated_days=StageEstimates(design=1, sew=4, deliver=2)))
    order = orders.create_from_booking(booking, customer, PolicySnapshot(require_work_plan=False))
    assert order.status == OrderStatus.IN_PROGRESS
    assert [(s.name, s.estimated_days) for s in order.stages] == [("Design", 1), ("Sew", 4), ("Deliver", 2)]
    assert order.status_history[0].status == "in_progress"


def test_order_gets_plan_deadline_from_policy(orders, people):
    customer, _, _ = people
    order = orders.create_from_booking(Booking(customer_id=customer.id), customer, PolicySnapshot(plan_creation_deadline_hours=48))
    assert order.status == OrderStatus.AWAITING_PLAN
    assert order.plan_deadline == NOW + timedelta(hours=48)


# ---------------------------------------------------------------------------
# Review & revisions
# ---------------------------------------------------------------------------

def test_rejection_archives_the_plan(orders, people):
    customer, tailor, parties = people
    order = _awaiting_plan(customer)
    orders.submit_work_plan(order, tailor, parties, THREE_STAGES, PolicySnapshot())
    orders.reject_work_plan(order, customer, parties, "Sewing takes too long")

    assert order.status == OrderStatus.PLAN_REJECTED
    revision = order.work_plan.revision_history[0]
    assert revision.reason == "Sewing takes too long"
    assert revision.revised_by_id == customer.id
    assert [s.name for s in revision.previous_stages] == ["Design", "Sew", "Deliver"]


def test_resubmission_keeps_revision_history(orders, people):
    customer, tailor, parties = people
    order = _awaiting_plan(customer)
    orders.submit_work_plan(order, tailor, parties, THREE_STAGES, PolicySnapshot())
    orders.reject_work_plan(order, customer, parties, "Too long")
    orders.submit_work_plan(order, tailor, parties, [StageDefinition("Sew", "Everything", 4)], PolicySnapshot())

    assert order.status == OrderStatus.PLAN_REVIEW
    assert len(order.work_plan.revision_history) == 1
    assert order.work_plan.total_estimated_days == 4


def test_revision_limit_is_enforced(orders, people):
    customer, tailor, parties = people
    policy = PolicySnapshot(max_plan_revisions=2)
    order = _awaiting_plan(customer)
    orders.submit_work_plan(order, tailor, parties, THREE_STAGES, policy)
    for reason in ("No", "Still no"):
        orders.reject_work_plan(order, customer, parties, reason)
        orders.submit_work_plan(order, tailor, parties, THREE_STAGES, policy)
    orders.reject_work_plan(order, customer, parties, "Never")

    with pytest.raises(RevisionLimitExceeded):
        orders.submit_work_plan(order, tailor, parties, THREE_STAGES, policy)
    assert order.status == OrderStatus.PLAN_REJECTED
    assert len(order.work_plan.revision_history) == 3


def test_plan_cannot_be_submitted_while_in_progress(orders, people):
    customer, tailor, parties = people
    order = _awaiting_plan(customer)
    orders.submit_work_plan(order, tailor, parties, THREE_STAGES, PolicySnapshot())
    orders.approve_work_plan(order, customer, parties)
    with pytest.raises(InvalidTransition):
        orders.submit_work_plan(order, tailor, parties, THREE_STAGES, PolicySnapshot())


def test_revision_scenario_through_use_cases(market):
    order_id = market.new_order()
    market.submit_plan(order_id)
    rejected = market.reject(order_id, "Too long")
    assert rejected.status == "plan_rejected"
    assert len(rejected.work_plan.revision_history) == 1

    resubmitted = market.submit_plan(order_id, [StageDefinition("Sew", "All in one", 5)])
    assert resubmitted.status == "plan_review"
    assert len(resubmitted.work_plan.revision_history) == 1

    market.reject(order_id, "Still too long")
    market.submit_plan(order_id)
    market.reject(order_id, "No")
    third = market.submit_plan(order_id)
    assert third.status == "plan_review"
    assert len(third.work_plan.revision_history) == 3

    market.reject(order_id, "Final no")
    with pytest.raises(RevisionLimitExceeded):
        market.submit_plan(order_id)


def test_revision_limit_comes_from_settings(market):
    cmd = UpdateSettingCommand(key="order_max_plan_revisions", value=1, acting_user_id=market.admin.id)
    UpdateSettingUseCase().execute(cmd, market.uow())
    order_id = market.new_order()
    market.submit_plan(order_id)
    market.reject(order_id)
    assert market.submit_plan(order_id).status == "plan_review"
    market.reject(order_id)
    with pytest.raises(RevisionLimitExceeded):
        market.submit_plan(order_id)


# ---------------------------------------------------------------------------
# Stages & derived values
# ---------------------------------------------------------------------------

def test_stages_complete_strictly_in_order(orders, people):
    customer, tailor, parties = people
    order = _awaiting_plan(customer)
    orders.submit_work_plan(order, tailor, parties, THREE_STAGES, PolicySnapshot())
    orders.approve_work_plan(order, customer, parties)

    with pytest.raises(InvalidStageIndex):
        orders.complete_stage(order, tailor, parties, 1)
    with pytest.raises(InvalidStageIndex):
        orders.complete_stage(order, tailor, parties, 7)

    orders.complete_stage(order, tailor, parties, 0, note="Pattern drafted")
    assert order.current_stage == 1
    assert order.stages[0].notes[0].text == "Pattern drafted"
    assert order.stages[1].status == StageStatus.IN_PROGRESS

    with pytest.raises(InvalidStageIndex):
        orders.complete_stage(order, tailor, parties, 0)


def test_last_stage_moves_order_to_ready(orders, people):
    customer, tailor, parties = people
    order = _awaiting_plan(customer)
    orders.submit_work_plan(order, tailor, parties, THREE_STAGES, PolicySnapshot())
    orders.approve_work_plan(order, customer, parties)
    for i in range(3):
        orders.complete_stage(order, tailor, parties, i)

    assert order.status == OrderStatus.READY
    assert order.work_completed_at == NOW
    assert WorkPlanService.progress_percentage(order) == 100
    assert WorkPlanService.current_stage_info(order) is None


def test_progress_rounds_to_nearest_percent(orders, people):
    customer, tailor, parties = people
    order = _awaiting_plan(customer)
    orders.submit_work_plan(order, tailor, parties, THREE_STAGES, PolicySnapshot())
    orders.approve_work_plan(order, customer, parties)
    orders.complete_stage(order, tailor, parties, 0)
    assert WorkPlanService.progress_percentage(order) == 33
    orders.complete_stage(order, tailor, parties, 1)
    assert WorkPlanService.progress_percentage(order) == 67


def test_days_remaining_and_overdue(orders, people):
    customer, tailor, parties = people
    plans = WorkPlanService(clock=lambda: NOW)
    order = _awaiting_plan(customer)
    assert plans.days_remaining(order) is None
    assert plans.is_overdue(order) is False

    orders.submit_work_plan(order, tailor, parties, THREE_STAGES, PolicySnapshot())
    orders.approve_work_plan(order, customer, parties)
    assert plans.days_remaining(order) == 8
    assert plans.days_remaining(order, now=NOW + timedelta(days=7, hours=1)) == 1
    assert plans.is_overdue(order, now=NOW + timedelta(days=8, seconds=1)) is True
    assert plans.days_remaining(order, now=NOW + timedelta(days=10)) == -2


def test_order_dto_carries_derived_values(market):
    order_id = market.in_progress_order()
    market.complete_stage(order_id, 0)
    dto = GetOrderUseCase().execute(order_id, market.customer.id, market.uow())
    assert dto.progress_percentage == 33
    assert dto.current_stage == 1
    assert dto.current_stage_info.name == "Sew"
    assert dto.is_overdue is False
    assert dto.days_remaining == 8
