"""
Domain event models.

These events represent immutable facts observed by the lifecycle core.
They are consumed by loggers, recorders, metrics and the external
notification collaborators.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime

from order_pipeline.core.domain.types import OrderId


@dataclass(frozen=True, slots=True)
class OrderTransitionEvent:
    """Published after each committed transition (including creation)."""

    timestamp: datetime
    order_id: OrderId
    previous_status: str | None
    new_status: str

    actor_role: str
    actor_id: str | None
    reason: str | None

    sequence: int

    email_type: str | None = None
    webhook_event: str | None = None
    refund_required: bool = False
    refund_percentage: int = 0

    time_to_confirm_minutes: int | None = None
    time_to_ready_minutes: int | None = None
    time_to_complete_minutes: int | None = None


@dataclass(frozen=True, slots=True)
class TransitionRejectedEvent:
    timestamp: datetime
    order_id: OrderId
    current_status: str | None
    target_status: str
    actor_role: str
    reason: str


@dataclass(frozen=True, slots=True)
class PaymentStatusChangedEvent:
    timestamp: datetime
    order_id: OrderId
    previous_payment_status: str
    payment_status: str


@dataclass(frozen=True, slots=True)
class SlotReservedEvent:
    timestamp: datetime
    slot_date: date
    time_bucket: str
    reservation_id: str
    booked: int
    limit: int


@dataclass(frozen=True, slots=True)
class SlotReleasedEvent:
    timestamp: datetime
    slot_date: date
    time_bucket: str
    reservation_id: str
    booked: int


@dataclass(frozen=True, slots=True)
class CapacityRejectedEvent:
    timestamp: datetime
    slot_date: date
    time_bucket: str
    booked: int
    limit: int
    slot_reason: str


@dataclass(frozen=True, slots=True)
class OrderReminderEvent:
    """Order confirmed long ago but production has not started."""

    timestamp: datetime
    order_id: OrderId
    confirmed_at: datetime
    hours_waiting: float
