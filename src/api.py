"""
api.py

REST API layer for the Tailor Marketplace order fulfillment workflow.

Framework : FastAPI
Auth      : Bearer token.  The token is resolved to a User UUID by the
            get_current_user_id dependency; the real token verification
            (JWT / session lookup) belongs in front of this service.
            Every endpoint receives the resolved user UUID as
            `current_user_id` and passes it to the relevant use case command.

Structure
---------
  Routers (all prefixed under /api/v1)
  ├── /users                          - registration
  ├── /tailors                        - storefronts & availability
  ├── /bookings                       - booking → quote → payment workflow
  │   └── /{booking_id}/history       - status history
  ├── /orders                         - order fulfillment workflow
  │   ├── /{order_id}/work-plan       - plan submission & review
  │   ├── /{order_id}/stages          - stage completion & notes
  │   ├── /{order_id}/delay-request   - delay negotiation
  │   └── /{order_id}/dispute         - dispute handling
  ├── /admin/orders                   - overdue view & deadline scan
  ├── /settings                       - workflow policy settings
  └── /me/notifications               - current-user notification inbox

Error handling
--------------
  Every error body is { "detail": "<message>", "code": "<code>" }.

  NotFoundError                         → 404
  AuthorizationError                    → 403
  InvalidTransition & other conflicts   → 409
  InvalidStageIndex, validation errors  → 422
  PaymentGatewayFailure                 → 502
  Unhandled                             → 500 (FastAPI default)

Response envelope
-----------------
  Success  : { "data": <payload> }

Running
-------
  uvicorn main:app --reload
"""

from __future__ import annotations

import dataclasses
import logging
import uuid
from datetime import date
from typing import Any, Dict, List, Optional, Union

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Path, Query, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi_mcp import FastApiMCP
from pydantic import BaseModel, EmailStr, Field, field_validator

import config
from application import (
    # Exceptions
    ApplicationError,
    AuthorizationError,
    NotFoundError,
    # Use-case commands
    AddStageNoteCommand,
    BookingActionCommand,
    CompleteStageCommand,
    ConvertBookingCommand,
    CreateTailorProfileCommand,
    CreateUserCommand,
    MarkOrderCompletedCommand,
    OrderActionCommand,
    RequestBookingCommand,
    RequestDelayCommand,
    ResolveDisputeCommand,
    RespondToDelayCommand,
    RespondToQuoteCommand,
    SetTailorAvailabilityCommand,
    SubmitQuoteCommand,
    SubmitWorkPlanCommand,
    UpdateSettingCommand,
    AbstractUnitOfWork,
)
from infrastructure import InMemoryUnitOfWork
from model import (
    BookingStatus,
    OrderStatus,
    QuoteItem,
    StageDefinition,
    StageEstimates,
    User,
    UserRole,
)
from service import DomainError, PermissionDenied

logger = logging.getLogger(__name__)

ADMIN_USER_ID = uuid.UUID(config.ADMIN_USER_ID)


# ---------------------------------------------------------------------------
# App bootstrap
# ---------------------------------------------------------------------------

app = FastAPI(
    title=config.APP_NAME,
    version="1.0.0",
    description=(
        "REST API for the tailoring marketplace fulfillment workflow: "
        "consultation bookings, quotes, escrow payments, orders, work plans, "
        "stage tracking, delay requests, disputes and deadline reminders."
    ),
    docs_url="/docs",
    redoc_url="/redoc",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------

def get_uow() -> AbstractUnitOfWork:
    """Returns the in-memory Unit of Work (no database required)."""
    return InMemoryUnitOfWork()


def get_current_user_id(authorization: Optional[str] = Header(default=None)) -> uuid.UUID:
    """Resolve `Authorization: Bearer <user-uuid>` to the acting user's id."""
    if not authorization:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing bearer token.")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Expected a bearer token.")
    try:
        return uuid.UUID(token.strip())
    except ValueError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid bearer token.")


@app.on_event("startup")
def seed_admin_user():
    """
    Ensure the admin account exists so a fresh process can complete
    consultations, resolve disputes and change settings.
    """
    uow = app.dependency_overrides.get(get_uow, get_uow)()
    with uow:
        if uow.users.get(ADMIN_USER_ID) is None:
            uow.users.add(
                User(id=ADMIN_USER_ID, full_name="Marketplace Admin", email=config.ADMIN_EMAIL, role=UserRole.ADMIN)
            )
            uow.commit()
            logger.info(f"Admin user seeded: {ADMIN_USER_ID}")


# ---------------------------------------------------------------------------
# Global exception handlers
# ---------------------------------------------------------------------------

_STATUS_BY_CODE = {
    "not_found": 404,
    "unauthorized": 403,
    "invalid_transition": 409,
    "revision_limit_exceeded": 409,
    "duplicate_pending_delay": 409,
    "already_processed": 409,
    "quote_expired": 409,
    "slot_unavailable": 409,
    "tailor_not_accepting_bookings": 409,
    "order_already_exists": 409,
    "concurrency_conflict": 409,
    "invalid_stage_index": 422,
    "invalid_work_plan": 422,
    "validation_error": 422,
    "payment_gateway_failure": 502,
}


def _error(exc: Exception) -> JSONResponse:
    code = getattr(exc, "code", "validation_error")
    return JSONResponse(
        status_code=_STATUS_BY_CODE.get(code, 422),
        content={"detail": str(exc), "code": code},
    )


@app.exception_handler(NotFoundError)
async def not_found_handler(request, exc: NotFoundError):
    return _error(exc)


@app.exception_handler(AuthorizationError)
async def authorization_handler(request, exc: AuthorizationError):
    return _error(exc)


@app.exception_handler(PermissionDenied)
async def permission_denied_handler(request, exc: PermissionDenied):
    return JSONResponse(status_code=403, content={"detail": str(exc), "code": "unauthorized"})


@app.exception_handler(ApplicationError)
async def application_error_handler(request, exc: ApplicationError):
    return _error(exc)


@app.exception_handler(DomainError)
async def domain_error_handler(request, exc: DomainError):
    return _error(exc)


@app.exception_handler(ValueError)
async def value_error_handler(request, exc: ValueError):
    return JSONResponse(status_code=422, content={"detail": str(exc), "code": "validation_error"})


# ---------------------------------------------------------------------------
# Envelope helper
# ---------------------------------------------------------------------------

def _ok(data: Any) -> Dict:
    """Wrap a DTO or list of DTOs in the standard success envelope."""
    if dataclasses.is_dataclass(data):
        return {"data": dataclasses.asdict(data)}
    if isinstance(data, list):
        return {
            "data": [
                dataclasses.asdict(item) if dataclasses.is_dataclass(item) else item
                for item in data
            ]
        }
    return {"data": data}


# ===========================================================================
# REQUEST BODY SCHEMAS  (Pydantic v2)
# ===========================================================================

_HHMM = r"^([01]\d|2[0-3]):[0-5]\d$"


# ---------------------------------------------------------------------------
# Party schemas
# ---------------------------------------------------------------------------

class CreateUserRequest(BaseModel):
    full_name: str = Field(..., min_length=1, max_length=200)
    email: EmailStr
    role: str = Field(default="customer", description="One of: customer, tailor")

    @field_validator("role")
    @classmethod
    def validate_role(cls, v: str) -> str:
        valid = {UserRole.CUSTOMER.value, UserRole.TAILOR.value}
        if v not in valid:
            raise ValueError(f"role must be one of: {sorted(valid)}")
        return v


class CreateTailorProfileRequest(BaseModel):
    business_name: str = Field(..., min_length=1, max_length=200)
    payout_account_id: Optional[str] = Field(default=None, max_length=100)
    accepting_bookings: bool = True


class SetAvailabilityRequest(BaseModel):
    accepting_bookings: bool


# ---------------------------------------------------------------------------
# Booking schemas
# ---------------------------------------------------------------------------

class RequestBookingRequest(BaseModel):
    tailor_id: uuid.UUID
    booking_date: date = Field(..., alias="date")
    start_time: str = Field(..., pattern=_HHMM, description="HH:MM")
    end_time: str = Field(..., pattern=_HHMM, description="HH:MM")
    service: str = Field(..., min_length=1, max_length=200)
    notes: str = Field(default="", max_length=1000)


class ReasonRequest(BaseModel):
    reason: str = Field(default="", max_length=500)


class ConsultationRequest(BaseModel):
    notes: str = Field(default="", max_length=1000)


class QuoteItemRequest(BaseModel):
    description: str = Field(..., min_length=1, max_length=200)
    quantity: int = Field(default=1, ge=1)
    unit_price: float = Field(..., ge=0)


class EstimatedDaysRequest(BaseModel):
    design: int = Field(default=3, ge=1)
    sew: int = Field(default=7, ge=1)
    deliver: int = Field(default=2, ge=1)


class SubmitQuoteRequest(BaseModel):
    items: List[QuoteItemRequest] = Field(default_factory=list)
    labor_cost: float = Field(default=0.0, ge=0)
    material_cost: float = Field(default=0.0, ge=0)
    estimated_days: Optional[EstimatedDaysRequest] = None
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)
    notes: str = Field(default="", max_length=1000)


class RejectRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=500)


# ---------------------------------------------------------------------------
# Order schemas
# ---------------------------------------------------------------------------

class ConvertBookingRequest(BaseModel):
    booking_id: uuid.UUID


class StageRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    description: str = Field(default="", max_length=500)
    estimated_days: int = Field(..., ge=1)


class SubmitWorkPlanRequest(BaseModel):
    stages: List[StageRequest] = Field(..., min_length=1, max_length=20)


class CompleteStageRequest(BaseModel):
    note: Optional[str] = Field(default=None, max_length=500)


class StageNoteRequest(BaseModel):
    text: str = Field(..., min_length=1, max_length=500)


class DelayRequestRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=500)
    additional_days: int = Field(..., ge=1)


class DelayResponseRequest(BaseModel):
    approved: bool
    notes: Optional[str] = Field(default=None, max_length=500)


class CompleteOrderRequest(BaseModel):
    rating: Optional[int] = Field(default=None, ge=1, le=5)
    comment: Optional[str] = Field(default=None, max_length=1000)


class DisputeRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=1000)


class ResolveDisputeRequest(BaseModel):
    resolution: str = Field(..., min_length=1, max_length=1000)
    cancel_order: bool = False


# ---------------------------------------------------------------------------
# Settings schemas
# ---------------------------------------------------------------------------

class UpdateSettingRequest(BaseModel):
    value: Union[bool, int]


# ===========================================================================
# ROUTERS
# ===========================================================================

api_v1 = APIRouter(prefix="/api/v1")


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------

user_router = APIRouter(prefix="/users", tags=["Users"])


@user_router.post(
    "",
    status_code=status.HTTP_201_CREATED,
    summary="Register a customer or tailor",
    response_description="The created user.  Its id is the bearer token.",
)
def create_user(
    body: CreateUserRequest,
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    from application import CreateUserUseCase
    cmd = CreateUserCommand(full_name=body.full_name, email=str(body.email), role=UserRole(body.role))
    return _ok(CreateUserUseCase().execute(cmd, uow))


@user_router.get("/{user_id}", summary="Get a user by ID")
def get_user(
    user_id: uuid.UUID = Path(...),
    current_user_id: uuid.UUID = Depends(get_current_user_id),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    from application import GetUserUseCase
    return _ok(GetUserUseCase().execute(user_id, uow))


# ---------------------------------------------------------------------------
# Tailors
# ---------------------------------------------------------------------------

tailor_router = APIRouter(prefix="/tailors", tags=["Tailors"])


@tailor_router.post(
    "",
    status_code=status.HTTP_201_CREATED,
    summary="Open a tailor storefront",
)
def create_tailor_profile(
    body: CreateTailorProfileRequest,
    current_user_id: uuid.UUID = Depends(get_current_user_id),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    """The acting user must hold the tailor role and have no storefront yet."""
    from application import CreateTailorProfileUseCase
    cmd = CreateTailorProfileCommand(
        business_name=body.business_name,
        acting_user_id=current_user_id,
        payout_account_id=body.payout_account_id,
        accepting_bookings=body.accepting_bookings,
    )
    return _ok(CreateTailorProfileUseCase().execute(cmd, uow))


@tailor_router.get("", summary="List tailor storefronts")
def list_tailors(
    accepting_only: bool = Query(default=False),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    from application import ListTailorProfilesUseCase
    return _ok(ListTailorProfilesUseCase().execute(uow, accepting_only=accepting_only))


@tailor_router.get("/{tailor_id}", summary="Get a tailor storefront")
def get_tailor_profile(
    tailor_id: uuid.UUID = Path(...),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    from application import GetTailorProfileUseCase
    return _ok(GetTailorProfileUseCase().execute(tailor_id, uow))


@tailor_router.patch("/{tailor_id}/availability", summary="Open or close a storefront for bookings")
def set_tailor_availability(
    body: SetAvailabilityRequest,
    tailor_id: uuid.UUID = Path(...),
    current_user_id: uuid.UUID = Depends(get_current_user_id),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    from application import SetTailorAvailabilityUseCase
    cmd = SetTailorAvailabilityCommand(
        tailor_id=tailor_id, accepting_bookings=body.accepting_bookings, acting_user_id=current_user_id,
    )
    return _ok(SetTailorAvailabilityUseCase().execute(cmd, uow))


# ---------------------------------------------------------------------------
# Bookings
# ---------------------------------------------------------------------------

booking_router = APIRouter(prefix="/bookings", tags=["Bookings"])


@booking_router.post(
    "",
    status_code=status.HTTP_201_CREATED,
    summary="Request a consultation slot",
)
def request_booking(
    body: RequestBookingRequest,
    current_user_id: uuid.UUID = Depends(get_current_user_id),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    """
    Customers only.  Fails with `slot_unavailable` when the tailor already
    has an active booking at the same date and start time.
    """
    from application import RequestBookingUseCase
    cmd = RequestBookingCommand(
        tailor_id=body.tailor_id,
        booking_date=body.booking_date,
        start_time=body.start_time,
        end_time=body.end_time,
        service=body.service,
        notes=body.notes,
        acting_user_id=current_user_id,
    )
    return _ok(RequestBookingUseCase().execute(cmd, uow))


@booking_router.get("", summary="List my bookings")
def list_bookings(
    status_filter: Optional[BookingStatus] = Query(default=None, alias="status"),
    current_user_id: uuid.UUID = Depends(get_current_user_id),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    from application import ListBookingsUseCase
    return _ok(ListBookingsUseCase().execute(current_user_id, uow, status=status_filter))


@booking_router.get("/{booking_id}", summary="Get a booking")
def get_booking(
    booking_id: uuid.UUID = Path(...),
    current_user_id: uuid.UUID = Depends(get_current_user_id),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    from application import GetBookingUseCase
    return _ok(GetBookingUseCase().execute(booking_id, current_user_id, uow))


@booking_router.get("/{booking_id}/history", summary="Page through a booking's status history")
def get_booking_history(
    booking_id: uuid.UUID = Path(...),
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=200),
    current_user_id: uuid.UUID = Depends(get_current_user_id),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    from application import GetBookingHistoryUseCase
    return _ok(GetBookingHistoryUseCase().execute(booking_id, current_user_id, uow, offset=offset, limit=limit))


@booking_router.put("/{booking_id}/confirm", summary="Tailor confirms the slot")
def confirm_booking(
    booking_id: uuid.UUID = Path(...),
    current_user_id: uuid.UUID = Depends(get_current_user_id),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    from application import ConfirmBookingUseCase
    cmd = BookingActionCommand(booking_id=booking_id, acting_user_id=current_user_id)
    return _ok(ConfirmBookingUseCase().execute(cmd, uow))


@booking_router.put("/{booking_id}/decline", summary="Tailor declines the request")
def decline_booking(
    body: ReasonRequest,
    booking_id: uuid.UUID = Path(...),
    current_user_id: uuid.UUID = Depends(get_current_user_id),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    from application import DeclineBookingUseCase
    cmd = BookingActionCommand(booking_id=booking_id, acting_user_id=current_user_id, text=body.reason)
    return _ok(DeclineBookingUseCase().execute(cmd, uow))


@booking_router.put("/{booking_id}/consultation", summary="Admin records the consultation")
def complete_consultation(
    body: ConsultationRequest,
    booking_id: uuid.UUID = Path(...),
    current_user_id: uuid.UUID = Depends(get_current_user_id),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    from application import CompleteConsultationUseCase
    cmd = BookingActionCommand(booking_id=booking_id, acting_user_id=current_user_id, text=body.notes)
    return _ok(CompleteConsultationUseCase().execute(cmd, uow))


@booking_router.put("/{booking_id}/quote", summary="Tailor submits (or resubmits) a quote")
def submit_quote(
    body: SubmitQuoteRequest,
    booking_id: uuid.UUID = Path(...),
    current_user_id: uuid.UUID = Depends(get_current_user_id),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    """total_amount = Σ(quantity × unit_price) + labor_cost + material_cost."""
    from application import SubmitQuoteUseCase
    estimates = None
    if body.estimated_days is not None:
        estimates = StageEstimates(**body.estimated_days.model_dump())
    cmd = SubmitQuoteCommand(
        booking_id=booking_id,
        items=[QuoteItem(**i.model_dump()) for i in body.items],
        labor_cost=body.labor_cost,
        material_cost=body.material_cost,
        estimated_days=estimates,
        currency=body.currency,
        notes=body.notes,
        acting_user_id=current_user_id,
    )
    return _ok(SubmitQuoteUseCase(default_currency=config.DEFAULT_CURRENCY).execute(cmd, uow))


@booking_router.put("/{booking_id}/quote/accept", summary="Customer accepts the quote")
def accept_quote(
    booking_id: uuid.UUID = Path(...),
    current_user_id: uuid.UUID = Depends(get_current_user_id),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    from application import RespondToQuoteUseCase
    cmd = RespondToQuoteCommand(booking_id=booking_id, accepted=True, acting_user_id=current_user_id)
    return _ok(RespondToQuoteUseCase().execute(cmd, uow))


@booking_router.put("/{booking_id}/quote/reject", summary="Customer rejects the quote")
def reject_quote(
    body: RejectRequest,
    booking_id: uuid.UUID = Path(...),
    current_user_id: uuid.UUID = Depends(get_current_user_id),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    from application import RespondToQuoteUseCase
    cmd = RespondToQuoteCommand(
        booking_id=booking_id, accepted=False, reason=body.reason, acting_user_id=current_user_id,
    )
    return _ok(RespondToQuoteUseCase().execute(cmd, uow))


@booking_router.post("/{booking_id}/pay", summary="Customer pays; funds are held in escrow")
def pay_booking(
    booking_id: uuid.UUID = Path(...),
    current_user_id: uuid.UUID = Depends(get_current_user_id),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    from application import PayBookingUseCase
    cmd = BookingActionCommand(booking_id=booking_id, acting_user_id=current_user_id)
    return _ok(PayBookingUseCase().execute(cmd, uow))


@booking_router.put("/{booking_id}/cancel", summary="Cancel a booking")
def cancel_booking(
    body: ReasonRequest,
    booking_id: uuid.UUID = Path(...),
    current_user_id: uuid.UUID = Depends(get_current_user_id),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    from application import CancelBookingUseCase
    cmd = BookingActionCommand(booking_id=booking_id, acting_user_id=current_user_id, text=body.reason)
    return _ok(CancelBookingUseCase().execute(cmd, uow))


# ---------------------------------------------------------------------------
# Orders
# ---------------------------------------------------------------------------

order_router = APIRouter(prefix="/orders", tags=["Orders"])


@order_router.post(
    "",
    status_code=status.HTTP_201_CREATED,
    summary="Convert a paid booking into an order",
)
def convert_booking(
    body: ConvertBookingRequest,
    current_user_id: uuid.UUID = Depends(get_current_user_id),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    from application import ConvertBookingToOrderUseCase
    cmd = ConvertBookingCommand(booking_id=body.booking_id, acting_user_id=current_user_id)
    return _ok(ConvertBookingToOrderUseCase().execute(cmd, uow))


@order_router.get("", summary="List my orders")
def list_orders(
    status_filter: Optional[OrderStatus] = Query(default=None, alias="status"),
    current_user_id: uuid.UUID = Depends(get_current_user_id),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    from application import ListOrdersUseCase
    return _ok(ListOrdersUseCase().execute(current_user_id, uow, status=status_filter))


@order_router.get("/{order_id}", summary="Get an order with progress and overdue state")
def get_order(
    order_id: uuid.UUID = Path(...),
    current_user_id: uuid.UUID = Depends(get_current_user_id),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    from application import GetOrderUseCase
    return _ok(GetOrderUseCase().execute(order_id, current_user_id, uow))


@order_router.get("/{order_id}/history", summary="Page through an order's status history")
def get_order_history(
    order_id: uuid.UUID = Path(...),
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=200),
    current_user_id: uuid.UUID = Depends(get_current_user_id),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    from application import GetOrderHistoryUseCase
    return _ok(GetOrderHistoryUseCase().execute(order_id, current_user_id, uow, offset=offset, limit=limit))


@order_router.post("/{order_id}/work-plan", summary="Tailor submits a work plan")
def submit_work_plan(
    body: SubmitWorkPlanRequest,
    order_id: uuid.UUID = Path(...),
    current_user_id: uuid.UUID = Depends(get_current_user_id),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    """
    Allowed from awaiting_plan and plan_rejected.  Resubmissions are capped
    by the `order_max_plan_revisions` setting.
    """
    from application import SubmitWorkPlanUseCase
    cmd = SubmitWorkPlanCommand(
        order_id=order_id,
        stages=[StageDefinition(s.name, s.description, s.estimated_days) for s in body.stages],
        acting_user_id=current_user_id,
    )
    return _ok(SubmitWorkPlanUseCase().execute(cmd, uow))


@order_router.put("/{order_id}/work-plan/approve", summary="Customer approves the work plan")
def approve_work_plan(
    order_id: uuid.UUID = Path(...),
    current_user_id: uuid.UUID = Depends(get_current_user_id),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    from application import ApproveWorkPlanUseCase
    cmd = OrderActionCommand(order_id=order_id, acting_user_id=current_user_id)
    return _ok(ApproveWorkPlanUseCase().execute(cmd, uow))


@order_router.put("/{order_id}/work-plan/reject", summary="Customer rejects the work plan")
def reject_work_plan(
    body: RejectRequest,
    order_id: uuid.UUID = Path(...),
    current_user_id: uuid.UUID = Depends(get_current_user_id),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    from application import RejectWorkPlanUseCase
    cmd = OrderActionCommand(order_id=order_id, acting_user_id=current_user_id, text=body.reason)
    return _ok(RejectWorkPlanUseCase().execute(cmd, uow))


@order_router.put("/{order_id}/stages/{stage_index}/complete", summary="Tailor completes the current stage")
def complete_stage(
    body: Optional[CompleteStageRequest] = None,
    order_id: uuid.UUID = Path(...),
    stage_index: int = Path(...),
    current_user_id: uuid.UUID = Depends(get_current_user_id),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    from application import CompleteStageUseCase
    cmd = CompleteStageCommand(
        order_id=order_id,
        stage_index=stage_index,
        note=body.note if body else None,
        acting_user_id=current_user_id,
    )
    return _ok(CompleteStageUseCase().execute(cmd, uow))


@order_router.post(
    "/{order_id}/stages/{stage_index}/notes",
    status_code=status.HTTP_201_CREATED,
    summary="Tailor adds a progress note to a stage",
)
def add_stage_note(
    body: StageNoteRequest,
    order_id: uuid.UUID = Path(...),
    stage_index: int = Path(...),
    current_user_id: uuid.UUID = Depends(get_current_user_id),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    from application import AddStageNoteUseCase
    cmd = AddStageNoteCommand(
        order_id=order_id, stage_index=stage_index, text=body.text, acting_user_id=current_user_id,
    )
    return _ok(AddStageNoteUseCase().execute(cmd, uow))


@order_router.post(
    "/{order_id}/delay-request",
    status_code=status.HTTP_201_CREATED,
    summary="Tailor asks for more time",
)
def request_delay(
    body: DelayRequestRequest,
    order_id: uuid.UUID = Path(...),
    current_user_id: uuid.UUID = Depends(get_current_user_id),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    """At most one delay request may be pending per order."""
    from application import RequestDelayUseCase
    cmd = RequestDelayCommand(
        order_id=order_id,
        reason=body.reason,
        additional_days=body.additional_days,
        acting_user_id=current_user_id,
    )
    return _ok(RequestDelayUseCase().execute(cmd, uow))


@order_router.put("/{order_id}/delay-request/{request_id}", summary="Customer answers a delay request")
def respond_to_delay(
    body: DelayResponseRequest,
    order_id: uuid.UUID = Path(...),
    request_id: uuid.UUID = Path(...),
    current_user_id: uuid.UUID = Depends(get_current_user_id),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    from application import RespondToDelayUseCase
    cmd = RespondToDelayCommand(
        order_id=order_id,
        request_id=request_id,
        approved=body.approved,
        notes=body.notes,
        acting_user_id=current_user_id,
    )
    return _ok(RespondToDelayUseCase().execute(cmd, uow))


@order_router.put("/{order_id}/complete", summary="Customer signs off; escrow is captured")
def complete_order(
    body: Optional[CompleteOrderRequest] = None,
    order_id: uuid.UUID = Path(...),
    current_user_id: uuid.UUID = Depends(get_current_user_id),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    from application import MarkOrderCompletedUseCase
    cmd = MarkOrderCompletedCommand(
        order_id=order_id,
        acting_user_id=current_user_id,
        rating=body.rating if body else None,
        comment=body.comment if body else None,
    )
    return _ok(MarkOrderCompletedUseCase().execute(cmd, uow))


@order_router.put("/{order_id}/cancel", summary="Cancel an order; escrow hold is voided")
def cancel_order(
    body: ReasonRequest,
    order_id: uuid.UUID = Path(...),
    current_user_id: uuid.UUID = Depends(get_current_user_id),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    from application import CancelOrderUseCase
    cmd = OrderActionCommand(order_id=order_id, acting_user_id=current_user_id, text=body.reason)
    return _ok(CancelOrderUseCase().execute(cmd, uow))


@order_router.post(
    "/{order_id}/dispute",
    status_code=status.HTTP_201_CREATED,
    summary="Customer or tailor raises a dispute",
)
def raise_dispute(
    body: DisputeRequest,
    order_id: uuid.UUID = Path(...),
    current_user_id: uuid.UUID = Depends(get_current_user_id),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    from application import RaiseDisputeUseCase
    cmd = OrderActionCommand(order_id=order_id, acting_user_id=current_user_id, text=body.reason)
    return _ok(RaiseDisputeUseCase().execute(cmd, uow))


@order_router.put("/{order_id}/dispute/review", summary="Admin takes a dispute under review")
def review_dispute(
    order_id: uuid.UUID = Path(...),
    current_user_id: uuid.UUID = Depends(get_current_user_id),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    from application import ReviewDisputeUseCase
    cmd = OrderActionCommand(order_id=order_id, acting_user_id=current_user_id)
    return _ok(ReviewDisputeUseCase().execute(cmd, uow))


@order_router.put("/{order_id}/dispute/resolve", summary="Admin resolves a dispute")
def resolve_dispute(
    body: ResolveDisputeRequest,
    order_id: uuid.UUID = Path(...),
    current_user_id: uuid.UUID = Depends(get_current_user_id),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    """Resumes the order where it was, or cancels it when `cancel_order` is set."""
    from application import ResolveDisputeUseCase
    cmd = ResolveDisputeCommand(
        order_id=order_id,
        resolution=body.resolution,
        cancel_order=body.cancel_order,
        acting_user_id=current_user_id,
    )
    return _ok(ResolveDisputeUseCase().execute(cmd, uow))


# ---------------------------------------------------------------------------
# Administration
# ---------------------------------------------------------------------------

admin_router = APIRouter(prefix="/admin", tags=["Administration"])


@admin_router.get("/orders/overdue", summary="Orders past their plan deadline or estimated completion")
def get_overdue_orders(
    current_user_id: uuid.UUID = Depends(get_current_user_id),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    from application import GetOverdueOrdersUseCase
    return _ok(GetOverdueOrdersUseCase().execute(current_user_id, uow))


@admin_router.post("/orders/deadline-scan", summary="Run one pass of the deadline reminder job")
def scan_order_deadlines(
    current_user_id: uuid.UUID = Depends(get_current_user_id),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    from application import ScanOrderDeadlinesUseCase
    return _ok(ScanOrderDeadlinesUseCase().execute(current_user_id, uow))


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

settings_router = APIRouter(prefix="/settings", tags=["Settings"])


@settings_router.get("", summary="List workflow settings")
def get_settings(
    current_user_id: uuid.UUID = Depends(get_current_user_id),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    from application import GetSettingsUseCase
    return _ok(GetSettingsUseCase().execute(current_user_id, uow))


@settings_router.put("/{key}", summary="Change a workflow setting (admin)")
def update_setting(
    body: UpdateSettingRequest,
    key: str = Path(...),
    current_user_id: uuid.UUID = Depends(get_current_user_id),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    from application import UpdateSettingUseCase
    cmd = UpdateSettingCommand(key=key, value=body.value, acting_user_id=current_user_id)
    return _ok(UpdateSettingUseCase().execute(cmd, uow))


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------

me_router = APIRouter(prefix="/me", tags=["Notifications"])


@me_router.get("/notifications", summary="My notification inbox")
def get_my_notifications(
    current_user_id: uuid.UUID = Depends(get_current_user_id),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    from application import GetMyNotificationsUseCase
    return _ok(GetMyNotificationsUseCase().execute(current_user_id, uow))


# ---------------------------------------------------------------------------
# Register routers
# ---------------------------------------------------------------------------

api_v1.include_router(user_router)
api_v1.include_router(tailor_router)
api_v1.include_router(booking_router)
api_v1.include_router(order_router)
api_v1.include_router(admin_router)
api_v1.include_router(settings_router)
api_v1.include_router(me_router)

app.include_router(api_v1)

# ---------------------------------------------------------------------------
# MCP server: exposes every endpoint above as an MCP tool.
# Accessible at: http://localhost:8000/mcp
# ---------------------------------------------------------------------------
mcp = FastApiMCP(app)
mcp.mount()


# ---------------------------------------------------------------------------
# Health check
# ---------------------------------------------------------------------------

@app.get("/health", tags=["Health"], summary="Service health check")
def health():
    return {"status": "ok"}


# ---------------------------------------------------------------------------
# OpenAPI tag metadata (shown in Swagger UI sidebar)
# ---------------------------------------------------------------------------

tags_metadata = [
    {
        "name": "Health",
        "description": "Liveness probe.",
    },
    {
        "name": "Users",
        "description": "Register customers and tailors.  The returned id is used as the bearer token.",
    },
    {
        "name": "Tailors",
        "description": "Tailor storefronts.  A closed storefront rejects new booking requests.",
    },
    {
        "name": "Bookings",
        "description": (
            "Consultation bookings and quote negotiation, up to the escrow payment "
            "that makes a booking convertible into an order."
        ),
    },
    {
        "name": "Orders",
        "description": (
            "Order fulfillment: work plan review, strictly ordered stages, delay "
            "requests, customer sign-off, cancellation and disputes."
        ),
    },
    {
        "name": "Administration",
        "description": "Overdue order view and the deadline reminder job.",
    },
    {
        "name": "Settings",
        "description": "Runtime workflow policy, read once per request.",
    },
    {
        "name": "Notifications",
        "description": "Notifications recorded for the current user.",
    },
]

app.openapi_tags = tags_metadata
