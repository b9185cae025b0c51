"""Order lifecycle engine.

Applies the state machine rules to stored orders, couples the slot
reservation/release to the status write, records every committed
transition in the audit trail and publishes lifecycle events.

Locking discipline:
- one lock per order, held across the whole read-check-reserve-record-commit
  sequence, so transitions of one order are serialized;
- the capacity allocator only ever takes slot locks, and always after the
  order lock (never the other way round);
- events are published after the order lock is released.
"""

# pylint: disable=too-many-arguments,too-many-locals,too-many-return-statements
from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import date
from typing import TYPE_CHECKING, Any

from order_pipeline.core.audit.audit_trail import InMemoryAuditTrail, JsonlAuditTrail, replay_orders
from order_pipeline.core.capacity.allocator import CapacityAllocator
from order_pipeline.core.capacity.calendar import ConfiguredCalendar
from order_pipeline.core.domain import order_state_machine as osm
from order_pipeline.core.domain.errors import AuditWriteError, DuplicateOrderError, ReservationFault
from order_pipeline.core.domain.reject_reasons import RejectReason
from order_pipeline.core.domain.slots import Reservation, SlotKey
from order_pipeline.core.domain.state import Order, OrderRepository
from order_pipeline.core.domain.types import (
    DateAvailability,
    OrderId,
    TransitionAttempt,
    TransitionMetadata,
    TransitionRecord,
)
from order_pipeline.core.events.event_bus import EventBus
from order_pipeline.core.events.events import (
    OrderTransitionEvent,
    PaymentStatusChangedEvent,
    TransitionRejectedEvent,
)
from order_pipeline.core.lifecycle.lifecycle_config import CancellationPolicyConfig, LifecycleConfig
from order_pipeline.core.ports.clock import Clock, SystemClock

if TYPE_CHECKING:
    from datetime import datetime

    from order_pipeline.core.audit.audit_trail import AuditTrail

LOGGER = logging.getLogger(__name__)

PAYMENT_STATUSES: frozenset[str] = frozenset({"unset", "paid", "refunded", "failed"})
TRIGGERS: frozenset[str] = frozenset({"manual", "payment_timeout", "ready_timeout"})


@dataclass(slots=True)
class TransitionResult:
    """Outcome of request_transition().

    - success: the order is now in new_status (committed or already there)
    - previous_status / new_status: status before and after the attempt;
      equal on no-ops and on rejections, None when the order does not exist
    - error: a RejectReason constant when success is False
    - record: the audit record written, None for no-ops and rejections
    """

    success: bool
    order_id: OrderId
    previous_status: str | None
    new_status: str | None
    error: str | None = None
    message: str | None = None
    record: TransitionRecord | None = None

    @property
    def noop(self) -> bool:
        return self.success and self.record is None


class OrderLifecycle:
    """Order state machine bound to storage, capacity and audit."""

    def __init__(
        self,
        *,
        repository: OrderRepository,
        allocator: CapacityAllocator,
        audit_trail: AuditTrail,
        event_bus: EventBus,
        clock: Clock,
        cancellation_policy: CancellationPolicyConfig | None = None,
    ) -> None:
        self._repository = repository
        self._allocator = allocator
        self._audit = audit_trail
        self._event_bus = event_bus
        self._clock = clock
        self._cancellation_policy = (
            cancellation_policy if cancellation_policy is not None else CancellationPolicyConfig()
        )

    @classmethod
    def from_config(
        cls,
        config: LifecycleConfig,
        *,
        clock: Clock | None = None,
        event_bus: EventBus | None = None,
    ) -> OrderLifecycle:
        """Wire a lifecycle with in-process storage from a LifecycleConfig.

        An existing audit_path is replayed: orders and slot bookings come
        back exactly as the trail last recorded them.
        """
        clock = clock if clock is not None else SystemClock()
        event_bus = event_bus if event_bus is not None else EventBus()

        calendar = ConfiguredCalendar(config.calendar, clock)
        allocator = CapacityAllocator(
            calendar,
            event_bus,
            max_cas_retries=config.allocator.max_cas_retries,
        )
        audit_trail: AuditTrail
        if config.audit_path is not None:
            audit_trail = JsonlAuditTrail(config.audit_path)
        else:
            audit_trail = InMemoryAuditTrail()

        lifecycle = cls(
            repository=OrderRepository(),
            allocator=allocator,
            audit_trail=audit_trail,
            event_bus=event_bus,
            clock=clock,
            cancellation_policy=config.cancellation,
        )
        lifecycle.restore_from_audit()
        return lifecycle

    def restore_from_audit(self) -> int:
        """Rebuild orders and slot counters from the audit trail.

        Must run before the lifecycle serves any request. Returns the number
        of orders restored.
        """
        if len(self._repository):
            raise RuntimeError("restore_from_audit() needs an empty order repository")

        history = [record for order_id in self._audit.order_ids() for record in self._audit.history(order_id)]
        if not history:
            return 0

        orders = replay_orders(history)

        issued: dict[SlotKey, set[str]] = {}
        for record in history:
            meta = record.metadata
            if meta.reservation_id is not None:
                slot = SlotKey.parse(meta.slot_date, meta.time_bucket)
                issued.setdefault(slot, set()).add(meta.reservation_id)

        held: dict[SlotKey, set[str]] = {}
        for order in orders.values():
            if order.reservation is not None:
                held.setdefault(order.reservation.slot, set()).add(order.reservation.reservation_id)

        for slot, reservation_ids in issued.items():
            self._allocator.restore_slot(slot, held.get(slot, ()), reservation_ids)

        for order in orders.values():
            with self._repository.lock(order.order_id):
                self._repository.insert(order)

        LOGGER.info(
            "Orders restored from audit trail",
            extra={"orders": len(orders), "records": len(history), "slots": len(issued)},
        )
        return len(orders)

    @property
    def allocator(self) -> CapacityAllocator:
        return self._allocator

    @property
    def audit_trail(self) -> AuditTrail:
        return self._audit

    @property
    def repository(self) -> OrderRepository:
        return self._repository

    # ---------------------------------------------------------------------
    # Order creation
    # ---------------------------------------------------------------------

    def create_order(
        self,
        order_id: OrderId,
        day: date | str,
        time_bucket: str,
        *,
        actor_role: str = "customer",
        actor_id: str | None = None,
        customer_id: str | None = None,
    ) -> Order:
        """Create an order in 'pending' for the requested slot.

        Raises DuplicateOrderError if order_id exists and ValueError on a
        malformed id, slot or role. Creation does not reserve capacity.
        """
        if isinstance(order_id, bool) or not isinstance(order_id, (int, str)) or order_id == "":
            raise ValueError(f"Invalid order id {order_id!r}")
        if actor_role not in osm.VALID_ROLES:
            raise ValueError(f"Unknown role {actor_role!r}")

        slot = SlotKey.parse(day, time_bucket)
        now = self._clock.now()

        with self._repository.lock(order_id):
            if order_id in self._repository:
                raise DuplicateOrderError(order_id)

            order = Order(
                order_id=order_id,
                requested_slot=slot,
                created_at=now,
                status=osm.INITIAL_STATUS,
                customer_id=customer_id,
            )
            record = TransitionRecord(
                order_id=order_id,
                sequence=self._audit.next_sequence(order_id),
                previous_status=None,
                new_status=osm.INITIAL_STATUS,
                actor_role=actor_role,
                actor_id=actor_id,
                reason="order created",
                timestamp=now,
                metadata=TransitionMetadata(slot_date=slot.date, time_bucket=slot.time_bucket),
            )
            self._audit.record(record)
            self._repository.insert(order)

        LOGGER.info(
            "Order created",
            extra={"order_id": order_id, "slot": str(slot), "actor_role": actor_role},
        )
        self._publish(self._transition_event(record, order))
        return order

    # ---------------------------------------------------------------------
    # Transitions
    # ---------------------------------------------------------------------

    def request_transition(
        self,
        order_id: OrderId,
        target_status: str,
        caller_role: str,
        reason: str | None = None,
        *,
        actor_id: str | None = None,
        trigger: str = "manual",
    ) -> TransitionResult:
        """Move order_id to target_status on behalf of caller_role.

        Rejections are returned, never raised. Faults (audit write failure,
        double release) propagate as exceptions after rolling back.
        """
        if trigger not in TRIGGERS:
            raise ValueError(f"Unknown trigger {trigger!r}")

        event: Any = None

        with self._repository.lock(order_id):
            now = self._clock.now()
            order = self._repository.get(order_id)

            if order is None:
                result = self._reject(
                    order_id, None, target_status, caller_role, actor_id, now,
                    RejectReason.ORDER_NOT_FOUND, f"order {order_id!r} does not exist",
                )
            elif target_status == order.status:
                result = TransitionResult(
                    success=True,
                    order_id=order_id,
                    previous_status=order.status,
                    new_status=order.status,
                    message="already in requested status",
                )
                self._record_attempt(result, target_status, caller_role, actor_id, now)
            else:
                rejection = self._check(order, target_status, caller_role) or self._check_reason(
                    target_status, reason
                )
                if rejection is not None:
                    result = self._reject(
                        order_id, order.status, target_status, caller_role, actor_id, now, *rejection,
                    )
                else:
                    result, updated, record = self._apply(
                        order, target_status, caller_role, actor_id, reason, trigger, now,
                    )
                    if updated is not None and record is not None:
                        event = self._transition_event(record, updated, order.payment_status)

        if event is not None:
            self._publish(event)
        elif not result.success:
            self._publish(
                TransitionRejectedEvent(
                    timestamp=now,
                    order_id=order_id,
                    current_status=result.previous_status,
                    target_status=str(target_status),
                    actor_role=str(caller_role),
                    reason=str(result.error),
                )
            )
        return result

    def _check(self, order: Order, target_status: str, caller_role: str) -> tuple[str, str] | None:
        """Graph, role and guard checks, in that order. Returns (reason, message) or None."""
        if not osm.is_valid_status(target_status):
            return RejectReason.INVALID_TRANSITION, f"unknown status {target_status!r}"

        if not osm.is_valid_transition(order.status, target_status):
            return (
                RejectReason.INVALID_TRANSITION,
                f"no transition from {order.status!r} to {target_status!r}",
            )

        if not osm.can_transition(order.status, target_status, caller_role):
            return (
                RejectReason.UNAUTHORIZED,
                f"role {caller_role!r} cannot move an order from {order.status!r} to {target_status!r}",
            )

        if osm.requires_payment(target_status) and order.payment_status != "paid":
            return (
                RejectReason.PAYMENT_NOT_CONFIRMED,
                f"payment status is {order.payment_status!r}, expected 'paid'",
            )

        return None

    @staticmethod
    def _check_reason(target_status: str, reason: str | None) -> tuple[str, str] | None:
        if osm.requires_reason(target_status) and (reason is None or not reason.strip()):
            return RejectReason.INVALID_TRANSITION, f"a reason is required to move an order to {target_status!r}"
        return None

    def _apply(
        self,
        order: Order,
        target_status: str,
        caller_role: str,
        actor_id: str | None,
        reason: str | None,
        trigger: str,
        now: datetime,
    ) -> tuple[TransitionResult, Order | None, TransitionRecord | None]:
        """Reserve, record and commit one legal transition. Caller holds the order lock."""
        reservation: Reservation | None = None
        released: Reservation | None = None

        if osm.reserves_capacity(order.status, target_status):
            outcome = self._allocator.reserve_slot(order.requested_slot)
            if outcome.reservation is None:
                result = self._reject(
                    order.order_id, order.status, target_status, caller_role, actor_id, now,
                    RejectReason.CAPACITY_EXCEEDED,
                    f"slot {order.requested_slot} is {outcome.slot_reason} "
                    f"({outcome.booked}/{outcome.limit})",
                )
                return result, None, None
            reservation = outcome.reservation

        if osm.releases_capacity(order.status, target_status) and order.reservation is not None:
            released = order.reservation
            if not self._allocator.is_held(released):
                raise ReservationFault(
                    f"order {order.order_id!r} references reservation "
                    f"{released.reservation_id} that is not held"
                )

        try:
            refund_percentage = self._refund_percentage(order, target_status, now)
            updated, metadata = self._next_snapshot(
                order, target_status, now, reservation, released, trigger, refund_percentage,
            )
            record = TransitionRecord(
                order_id=order.order_id,
                sequence=self._audit.next_sequence(order.order_id),
                previous_status=order.status,
                new_status=target_status,
                actor_role=caller_role,
                actor_id=actor_id,
                reason=reason,
                timestamp=now,
                metadata=metadata,
            )
        except Exception:
            self._roll_back(order, target_status, reservation)
            raise

        try:
            self._audit.record(record)
        except AuditWriteError:
            self._roll_back(order, target_status, reservation)
            raise
        except Exception as exc:
            self._roll_back(order, target_status, reservation)
            raise AuditWriteError(f"audit write failed for order {order.order_id!r}") from exc

        self._repository.commit(updated)

        if released is not None:
            self._allocator.release(released)

        result = TransitionResult(
            success=True,
            order_id=order.order_id,
            previous_status=order.status,
            new_status=target_status,
            record=record,
        )
        self._record_attempt(result, target_status, caller_role, actor_id, now)

        LOGGER.info(
            "Order transition committed",
            extra={
                "order_id": order.order_id,
                "previous_status": order.status,
                "new_status": target_status,
                "actor_role": caller_role,
            },
        )
        return result, updated, record

    def _roll_back(self, order: Order, target_status: str, reservation: Reservation | None) -> None:
        if reservation is not None:
            self._allocator.release(reservation)
        LOGGER.exception(
            "Transition aborted before commit; nothing applied",
            extra={"order_id": order.order_id, "target_status": target_status},
        )

    def _refund_percentage(self, order: Order, target_status: str, now: datetime) -> int | None:
        """Refund owed for cancelling order now, from the lead time left before its slot."""
        if target_status != "cancelled":
            return None
        if order.payment_status != "paid":
            return 0
        slot_start = self._allocator.calendar.slot_start(order.requested_slot)
        hours_before = max(0.0, (slot_start - now).total_seconds() / 3600)
        return self._cancellation_policy.refund_percentage(hours_before)

    @staticmethod
    def _next_snapshot(
        order: Order,
        target_status: str,
        now: datetime,
        reservation: Reservation | None,
        released: Reservation | None,
        trigger: str,
        refund_percentage: int | None = None,
    ) -> tuple[Order, TransitionMetadata]:
        changes: dict[str, Any] = {"status": target_status}
        meta: dict[str, Any] = {"trigger": trigger}

        if reservation is not None:
            changes["reservation"] = reservation
            meta["reservation_id"] = reservation.reservation_id
            meta["slot_date"] = reservation.slot.date
            meta["time_bucket"] = reservation.slot.time_bucket

        if target_status == "confirmed":
            changes["confirmed_at"] = now
            minutes = osm.elapsed_minutes(order.created_at, now)
            changes["time_to_confirm_minutes"] = minutes
            meta["time_to_confirm_minutes"] = minutes

        elif target_status == "ready":
            if order.ready_at is None:
                changes["ready_at"] = now
            minutes = osm.elapsed_minutes(order.confirmed_at, now)
            changes["time_to_ready_minutes"] = minutes
            meta["time_to_ready_minutes"] = minutes

        elif target_status == "completed":
            changes["completed_at"] = now
            minutes = osm.elapsed_minutes(order.ready_at, now)
            changes["time_to_complete_minutes"] = minutes
            meta["time_to_complete_minutes"] = minutes

        elif target_status == "cancelled":
            changes["cancelled_at"] = now
            changes["reservation"] = None
            meta["refund_required"] = order.payment_status == "paid"
            meta["refund_percentage"] = refund_percentage
            if released is not None:
                meta["released_reservation_id"] = released.reservation_id
                meta["slot_date"] = released.slot.date
                meta["time_bucket"] = released.slot.time_bucket

        return replace(order, **changes), TransitionMetadata(**meta)

    def _reject(
        self,
        order_id: OrderId,
        current_status: str | None,
        target_status: str,
        caller_role: str,
        actor_id: str | None,
        now: datetime,
        error: str,
        message: str,
    ) -> TransitionResult:
        result = TransitionResult(
            success=False,
            order_id=order_id,
            previous_status=current_status,
            new_status=current_status,
            error=error,
            message=message,
        )
        self._record_attempt(result, target_status, caller_role, actor_id, now)
        LOGGER.info(
            "Order transition rejected",
            extra={
                "order_id": order_id,
                "current_status": current_status,
                "target_status": target_status,
                "actor_role": caller_role,
                "reject_reason": error,
            },
        )
        return result

    def _record_attempt(
        self,
        result: TransitionResult,
        target_status: str,
        caller_role: str,
        actor_id: str | None,
        now: datetime,
    ) -> None:
        if not result.success:
            outcome = "rejected"
        elif result.record is None:
            outcome = "noop"
        else:
            outcome = "committed"

        attempt = TransitionAttempt(
            order_id=result.order_id,
            current_status=result.previous_status,
            target_status=str(target_status),
            actor_role=str(caller_role),
            actor_id=actor_id,
            outcome=outcome,
            error=result.error,
            message=result.message,
            timestamp=now,
        )
        # The attempt log is observability; its failure never changes the outcome.
        try:
            self._audit.record_attempt(attempt)
        except Exception:  # pylint: disable=broad-exception-caught
            LOGGER.exception(
                "Transition attempt could not be logged",
                extra={"order_id": result.order_id, "target_status": target_status, "outcome": outcome},
            )

    # ---------------------------------------------------------------------
    # Payment collaborator
    # ---------------------------------------------------------------------

    def set_payment_status(self, order_id: OrderId, payment_status: str) -> Order:
        """Record a payment status reported by the payment collaborator.

        Only payment_status is written; the order status never changes here.
        """
        if payment_status not in PAYMENT_STATUSES:
            raise ValueError(f"Unknown payment status {payment_status!r}")

        with self._repository.lock(order_id):
            previous = self._repository.require(order_id).payment_status
            updated = self._repository.set_payment_status(order_id, payment_status)

        if previous != payment_status:
            self._publish(
                PaymentStatusChangedEvent(
                    timestamp=self._clock.now(),
                    order_id=order_id,
                    previous_payment_status=previous,
                    payment_status=payment_status,
                )
            )
        return updated

    # ---------------------------------------------------------------------
    # Queries
    # ---------------------------------------------------------------------

    def get_order(self, order_id: OrderId) -> Order:
        return self._repository.require(order_id)

    def orders(self) -> list[Order]:
        return self._repository.snapshot()

    def history(self, order_id: OrderId) -> list[TransitionRecord]:
        self._repository.require(order_id)
        return self._audit.history(order_id)

    def attempts(self, order_id: OrderId) -> list[TransitionAttempt]:
        return self._audit.attempts(order_id)

    def available_transitions(self, order_id: OrderId, role: str) -> list[str]:
        """Statuses role could move the order to right now (capacity not checked)."""
        order = self._repository.require(order_id)
        return [
            status
            for status in osm.VALID_STATUSES
            if status != order.status and self._check(order, status, role) is None
        ]

    def availability(self, day: date | str) -> DateAvailability:
        return self._allocator.availability(day)

    def reconcile(self) -> list[OrderId]:
        """Orders whose stored status differs from their last audit record.

        Non-empty only if a process stopped between the audit write and the
        status commit; the audit trail is authoritative for those orders.
        """
        mismatched: list[OrderId] = []
        for order_id in self._audit.order_ids():
            last = self._audit.last_record(order_id)
            order = self._repository.get(order_id)
            stored = None if order is None else order.status
            if last is not None and stored != last.new_status:
                mismatched.append(order_id)
                LOGGER.warning(
                    "Order status disagrees with audit trail",
                    extra={
                        "order_id": order_id,
                        "stored_status": stored,
                        "audit_status": last.new_status,
                    },
                )
        return mismatched

    # ---------------------------------------------------------------------
    # Publishing
    # ---------------------------------------------------------------------

    def _transition_event(
        self,
        record: TransitionRecord,
        order: Order,
        payment_status: str | None = None,
    ) -> OrderTransitionEvent:
        effects = osm.side_effects(
            record.previous_status,
            record.new_status,
            order.payment_status if payment_status is None else payment_status,
        )
        return OrderTransitionEvent(
            timestamp=record.timestamp,
            order_id=record.order_id,
            previous_status=record.previous_status,
            new_status=record.new_status,
            actor_role=record.actor_role,
            actor_id=record.actor_id,
            reason=record.reason,
            sequence=record.sequence,
            email_type=effects.email_type,
            webhook_event=effects.webhook_event,
            refund_required=effects.refund_required,
            refund_percentage=record.metadata.refund_percentage or 0,
            time_to_confirm_minutes=record.metadata.time_to_confirm_minutes,
            time_to_ready_minutes=record.metadata.time_to_ready_minutes,
            time_to_complete_minutes=record.metadata.time_to_complete_minutes,
        )

    def _publish(self, event: Any) -> None:
        # The transition is already committed; a failing subscriber must not undo it.
        try:
            self._event_bus.emit(event)
        except Exception:  # pylint: disable=broad-exception-caught
            LOGGER.exception(
                "Lifecycle event publication failed",
                extra={"event_type": type(event).__name__},
            )
