"""
infrastructure.py

In-memory implementation of the repository interfaces, the ports and the
Unit of Work.

This is a self-contained backend that stores everything in plain Python
dicts keyed by UUID.  It is suitable for local development, demos and
integration testing without a real database or payment provider, but it
keeps the same guarantees a SQL backend would give:

  - repositories hand out copies, so nothing a use case does is visible
    to other units of work before commit();
  - commit() checks every written record against the status and version
    it was read with, under a single lock, and applies all writes or none;
  - the booking slot and the one-order-per-booking rules are re-checked at
    commit;
  - domain events are published only after the writes are applied.

To swap in a real database (e.g. SQLAlchemy + PostgreSQL) later, implement
the same Abstract* interfaces from application.py and override get_uow() in
api.py:

    app.dependency_overrides[get_uow] = lambda: SqlAlchemyUnitOfWork(session)

Nothing in service.py, application.py, or api.py needs to change.
"""

from __future__ import annotations

import copy
import logging
import threading
import uuid
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple

import config
from application import (
    AbstractBookingRepository,
    AbstractNotificationDispatcher,
    AbstractNotificationLogRepository,
    AbstractOrderRepository,
    AbstractPaymentGateway,
    AbstractSettingsProvider,
    AbstractTailorProfileRepository,
    AbstractUnitOfWork,
    AbstractUserRepository,
    ConcurrencyConflict,
    EventBus,
    NotificationSubscriber,
    OrderAlreadyExists,
    PaymentGatewayFailure,
    Recipient,
)
from model import DomainEvent, NotificationLog, OrderStatus
from service import InvalidTransition, SlotUnavailable, find_slot_conflict

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Generic in-memory store
# ---------------------------------------------------------------------------

class _Store(dict):
    """A plain dict with typed fetch/put helpers."""

    def fetch(self, key: uuid.UUID):
        return self.get(key)

    def put(self, obj) -> None:
        self[obj.id] = obj

    def all(self) -> list:
        return list(self.values())


# ---------------------------------------------------------------------------
# Shared in-memory database (module-level singleton)
# Persists for the lifetime of the process; restarting uvicorn resets it.
# ---------------------------------------------------------------------------

class InMemoryDatabase:
    def __init__(self, settings: Optional[Dict[str, Any]] = None):
        self.users:         _Store = _Store()
        self.tailors:       _Store = _Store()
        self.bookings:      _Store = _Store()
        self.orders:        _Store = _Store()
        self.notifications: _Store = _Store()
        self.escrow:        Dict[str, Dict[str, Any]] = {}
        self.settings:      Dict[str, Any] = dict(settings or config.DEFAULT_POLICY_SETTINGS)
        # Serialises commit(); readers never block
        self.lock = threading.RLock()


# Module-level singleton, shared across all requests
_db = InMemoryDatabase()


# ---------------------------------------------------------------------------
# Repository implementations
# ---------------------------------------------------------------------------

class _TrackingRepository:
    """
    Base for aggregate repositories.  Reads return deep copies and remember
    the (status, version) they saw; writes are staged on the unit of work.
    """

    def __init__(self, store: _Store, uow: "InMemoryUnitOfWork", name: str):
        self._s = store
        self._uow = uow
        self._name = name

    def _read(self, obj):
        if obj is None:
            return None
        self._uow._remember(self._name, obj)
        return copy.deepcopy(obj)

    def _read_many(self, objs: Iterable) -> list:
        return [self._read(o) for o in objs]

    def add(self, obj) -> None:
        self._uow._stage(self._name, obj, is_new=True)

    def save(self, obj) -> None:
        self._uow._stage(self._name, obj, is_new=False)


class InMemoryUserRepository(_TrackingRepository, AbstractUserRepository):
    def get(self, user_id):           return self._read(self._s.fetch(user_id))
    def get_by_email(self, email):
        return self._read(next((u for u in self._s.all() if u.email == email.lower()), None))


class InMemoryTailorProfileRepository(_TrackingRepository, AbstractTailorProfileRepository):
    def get(self, tailor_id):         return self._read(self._s.fetch(tailor_id))
    def get_by_user(self, user_id):
        return self._read(next((t for t in self._s.all() if t.user_id == user_id), None))
    def list_all(self):               return self._read_many(self._s.all())


class InMemoryBookingRepository(_TrackingRepository, AbstractBookingRepository):
    def get(self, booking_id):        return self._read(self._s.fetch(booking_id))
    def list_for_tailor(self, tailor_id):
        return self._read_many(b for b in self._s.all() if b.tailor_id == tailor_id)
    def list_for_customer(self, customer_id):
        return self._read_many(b for b in self._s.all() if b.customer_id == customer_id)
    def list_all(self):               return self._read_many(self._s.all())


class InMemoryOrderRepository(_TrackingRepository, AbstractOrderRepository):
    def get(self, order_id):          return self._read(self._s.fetch(order_id))
    def get_by_booking(self, booking_id):
        return self._read(next((o for o in self._s.all() if o.booking_id == booking_id), None))
    def list_by_status(self, *statuses: OrderStatus):
        return self._read_many(o for o in self._s.all() if o.status in statuses)
    def list_all(self):               return self._read_many(self._s.all())


class InMemoryNotificationLogRepository(AbstractNotificationLogRepository):
    def __init__(self, store: _Store): self._s = store
    def list_for_recipient(self, recipient_id):
        return [copy.deepcopy(n) for n in self._s.all() if n.recipient_id == recipient_id]
    def list_all(self):               return [copy.deepcopy(n) for n in self._s.all()]


# ---------------------------------------------------------------------------
# Ports
# ---------------------------------------------------------------------------

class SimulatedPaymentGateway(AbstractPaymentGateway):
    """
    Escrow simulator.  Holds live in the database's escrow table so every
    unit of work sees the same state.  Operations named in
    ``fail_operations`` raise PaymentGatewayFailure, for testing the
    failure paths.
    """

    def __init__(self, db: InMemoryDatabase = _db, fail_operations: Optional[Set[str]] = None):
        self._db = db
        self.fail_operations: Set[str] = set(fail_operations or ())
        self.calls: List[Tuple[str, str]] = []

    def _check(self, operation: str, ref: str) -> None:
        self.calls.append((operation, ref))
        if operation in self.fail_operations:
            raise PaymentGatewayFailure(f"Payment gateway rejected {operation} for {ref}.")

    def _hold(self, escrow_ref: str) -> Dict[str, Any]:
        hold = self._db.escrow.get(escrow_ref)
        if hold is None:
            raise PaymentGatewayFailure(f"Unknown escrow reference {escrow_ref}.")
        return hold

    def authorize_and_hold(self, amount, currency, destination, reference_id):
        self._check("authorize_and_hold", reference_id)
        with self._db.lock:
            for ref, hold in self._db.escrow.items():
                if hold["reference_id"] == reference_id and hold["status"] == "held":
                    return ref
            escrow_ref = f"esc_{uuid.uuid4().hex[:24]}"
            self._db.escrow[escrow_ref] = {
                "reference_id": reference_id,
                "amount": amount,
                "currency": currency,
                "destination": destination,
                "status": "held",
                "refunded_amount": 0.0,
            }
        logger.info(f"Escrow {escrow_ref}: held {amount:.2f} {currency} for {reference_id}")
        return escrow_ref

    def capture(self, escrow_ref):
        self._check("capture", escrow_ref)
        with self._db.lock:
            hold = self._hold(escrow_ref)
            if hold["status"] == "captured":
                return
            if hold["status"] != "held":
                raise PaymentGatewayFailure(f"Escrow {escrow_ref} is {hold['status']} and cannot be captured.")
            hold["status"] = "captured"
        logger.info(f"Escrow {escrow_ref}: captured for {hold['destination']}")

    def cancel(self, escrow_ref):
        self._check("cancel", escrow_ref)
        with self._db.lock:
            hold = self._hold(escrow_ref)
            if hold["status"] == "cancelled":
                return
            if hold["status"] != "held":
                raise PaymentGatewayFailure(f"Escrow {escrow_ref} is {hold['status']} and cannot be cancelled.")
            hold["status"] = "cancelled"
        logger.info(f"Escrow {escrow_ref}: hold cancelled")

    def refund(self, escrow_ref, amount=None):
        self._check("refund", escrow_ref)
        with self._db.lock:
            hold = self._hold(escrow_ref)
            if hold["status"] not in ("captured", "refunded"):
                raise PaymentGatewayFailure(f"Escrow {escrow_ref} is {hold['status']} and cannot be refunded.")
            remaining = round(hold["amount"] - hold["refunded_amount"], 2)
            amount = remaining if amount is None else amount
            if amount <= 0 or amount > remaining:
                raise PaymentGatewayFailure(f"Refund of {amount} exceeds the refundable {remaining}.")
            hold["refunded_amount"] = round(hold["refunded_amount"] + amount, 2)
            if hold["refunded_amount"] >= hold["amount"]:
                hold["status"] = "refunded"
        logger.info(f"Escrow {escrow_ref}: refunded {amount:.2f}")


class LoggingNotificationDispatcher(AbstractNotificationDispatcher):
    """Writes every notification to the notification log and the app log."""

    def __init__(self, db: InMemoryDatabase = _db):
        self._db = db

    def notify(self, template_id: str, recipient: Recipient, context: Dict[str, Any]) -> None:
        entity_id = context.get("entity_id")
        log = NotificationLog(
            template_id=template_id,
            recipient_id=recipient.user_id,
            recipient_label=recipient.label,
            entity_type=context.get("entity_type", ""),
            entity_id=uuid.UUID(entity_id) if entity_id else None,
            context=dict(context),
        )
        with self._db.lock:
            self._db.notifications.put(log)
        logger.info(f"Notify {recipient.label} {recipient.user_id or ''}: {template_id} ({entity_id})")


class InMemorySettingsProvider(AbstractSettingsProvider):
    def __init__(self, db: InMemoryDatabase = _db):
        self._db = db

    def get_value(self, key: str) -> Any:
        return self._db.settings.get(key)

    def set_value(self, key: str, value: Any) -> None:
        with self._db.lock:
            self._db.settings[key] = value

    def all_values(self) -> Dict[str, Any]:
        return dict(self._db.settings)


def build_event_bus(db: InMemoryDatabase = _db) -> EventBus:
    bus = EventBus()
    bus.subscribe(NotificationSubscriber(LoggingNotificationDispatcher(db)))
    return bus


# ---------------------------------------------------------------------------
# Unit of Work
# ---------------------------------------------------------------------------

class InMemoryUnitOfWork(AbstractUnitOfWork):
    """
    Stages writes and applies them atomically on commit().  A record saved
    here must not have changed in the store since it was read; otherwise
    the whole commit is refused and nothing is written.  Actions queued
    with on_commit() run under the same lock, between the checks and the
    writes.
    """

    def __init__(
        self,
        db: InMemoryDatabase = _db,
        payments: Optional[AbstractPaymentGateway] = None,
        bus: Optional[EventBus] = None,
    ):
        self._db = db
        self.users         = InMemoryUserRepository(db.users, self, "users")
        self.tailors       = InMemoryTailorProfileRepository(db.tailors, self, "tailors")
        self.bookings      = InMemoryBookingRepository(db.bookings, self, "bookings")
        self.orders        = InMemoryOrderRepository(db.orders, self, "orders")
        self.notifications = InMemoryNotificationLogRepository(db.notifications)
        self.payments      = payments or SimulatedPaymentGateway(db)
        self.settings      = InMemorySettingsProvider(db)
        self._bus = bus or build_event_bus(db)
        self._reads: Dict[Tuple[str, uuid.UUID], Tuple[Any, int]] = {}
        self._writes: Dict[Tuple[str, uuid.UUID], Tuple[Any, bool]] = {}
        self._events: List[DomainEvent] = []
        self._on_commit: List[Callable[[], None]] = []

    # -- staging ----------------------------------------------------------

    def _remember(self, name: str, obj) -> None:
        status = getattr(obj, "status", None)
        self._reads.setdefault((name, obj.id), (status, getattr(obj, "version", 0)))

    def _stage(self, name: str, obj, is_new: bool) -> None:
        key = (name, obj.id)
        if key in self._writes:
            is_new = self._writes[key][1]
        self._writes[key] = (obj, is_new)

    def collect(self, event: DomainEvent) -> None:
        self._events.append(event)

    def on_commit(self, action: Callable[[], None]) -> None:
        self._on_commit.append(action)

    # -- commit / rollback ------------------------------------------------

    def _check_new(self, name: str, obj, new_bookings: list, new_orders: list) -> None:
        store: _Store = getattr(self._db, name)
        if obj.id in store:
            raise ConcurrencyConflict(f"{name[:-1].capitalize()} {obj.id} already exists.")
        if name == "bookings":
            clash = find_slot_conflict(
                self._db.bookings.all() + new_bookings, obj.tailor_id, obj.booking_date, obj.start_time,
            )
            if clash is not None:
                raise SlotUnavailable(
                    f"Tailor {obj.tailor_id} already has a booking on {obj.booking_date} at {obj.start_time}."
                )
            new_bookings.append(obj)
        elif name == "orders":
            taken = [o for o in self._db.orders.all() + new_orders if o.booking_id == obj.booking_id]
            if taken:
                raise OrderAlreadyExists(f"Booking {obj.booking_id} was already converted to order {taken[0].id}.")
            new_orders.append(obj)

    def _check_existing(self, name: str, obj) -> None:
        stored = getattr(self._db, name).fetch(obj.id)
        if stored is None:
            raise ConcurrencyConflict(f"{name[:-1].capitalize()} {obj.id} no longer exists.")
        read_status, read_version = self._reads.get((name, obj.id), (None, getattr(obj, "version", 0)))
        stored_status = getattr(stored, "status", None)
        new_status = getattr(obj, "status", None)
        if stored_status != read_status and new_status != read_status:
            # Someone else moved the record first; report it as the transition
            # this unit of work can no longer make.
            raise InvalidTransition(name[:-1], stored_status.value, new_status.value)
        if stored_status != read_status or getattr(stored, "version", 0) != read_version:
            raise ConcurrencyConflict(
                f"{name[:-1].capitalize()} {obj.id} was modified by another request; reload and retry."
            )

    def commit(self) -> None:
        if not self._writes and not self._on_commit:
            self._publish()
            return
        with self._db.lock:
            new_bookings: list = []
            new_orders: list = []
            for (name, _), (obj, is_new) in self._writes.items():
                if is_new:
                    self._check_new(name, obj, new_bookings, new_orders)
                else:
                    self._check_existing(name, obj)
            actions, self._on_commit = self._on_commit, []
            for action in actions:
                action()
            for (name, _), (obj, is_new) in self._writes.items():
                if hasattr(obj, "version"):
                    obj.version += 1
                getattr(self._db, name).put(copy.deepcopy(obj))
            logger.debug(f"Committed {len(self._writes)} record(s)")
        self._writes.clear()
        self._reads.clear()
        self._publish()

    def _publish(self) -> None:
        events, self._events = self._events, []
        for event in events:
            self._bus.publish(event)

    def rollback(self) -> None:
        self._writes.clear()
        self._reads.clear()
        self._events.clear()
        self._on_commit.clear()
