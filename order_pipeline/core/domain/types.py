"""Core shared data models and schemas.

This module defines the canonical Pydantic models for audit records,
transition attempts, transition metadata and capacity availability. These
types are treated as schema definitions (see core/schemas/) and intentionally
prioritize structural clarity over minimal class size.
"""

# pylint: disable=missing-class-docstring
from __future__ import annotations

from datetime import date, datetime
from typing import Literal, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------

OrderStatus = Literal[
    "pending",
    "confirmed",
    "in_progress",
    "ready",
    "completed",
    "cancelled",
]

PaymentStatus = Literal["unset", "paid", "refunded", "failed"]

Role = Literal["customer", "baker", "owner", "admin", "system"]

TransitionTrigger = Literal["manual", "payment_timeout", "ready_timeout"]

AttemptOutcome = Literal["committed", "noop", "rejected"]

SlotReason = Literal[
    "available",
    "full",
    "holiday",
    "closed_day",
    "outside_hours",
    "past",
]

OrderId = Union[int, str]


# ---------------------------------------------------------------------------
# Transition metadata
# ---------------------------------------------------------------------------


class TransitionMetadata(BaseModel):
    """Structured payload attached to a committed transition.

    Every field is optional, but unknown keys are rejected so the audit trail
    stays queryable.
    """

    trigger: TransitionTrigger = "manual"

    time_bucket: str | None = Field(default=None, pattern=r"^([01]\d|2[0-3]):[0-5]\d$")
    slot_date: date | None = None

    reservation_id: str | None = Field(default=None, min_length=1)
    released_reservation_id: str | None = Field(default=None, min_length=1)

    time_to_confirm_minutes: int | None = Field(default=None, ge=0)
    time_to_ready_minutes: int | None = Field(default=None, ge=0)
    time_to_complete_minutes: int | None = Field(default=None, ge=0)

    refund_required: bool = False
    refund_percentage: int | None = Field(default=None, ge=0, le=100)

    model_config = ConfigDict(extra="forbid", frozen=True)

    @model_validator(mode="after")
    def validate_reservation_fields(self) -> TransitionMetadata:
        if self.reservation_id is not None and self.released_reservation_id is not None:
            raise ValueError("a transition cannot both reserve and release capacity")
        return self


# ---------------------------------------------------------------------------
# Audit models
# ---------------------------------------------------------------------------


class TransitionRecord(BaseModel):
    """Immutable audit fact for one committed transition.

    previous_status is None only for the record written at order creation.
    sequence is monotonic per order and reflects commit order.
    """

    order_id: OrderId
    sequence: int = Field(..., ge=0)

    previous_status: OrderStatus | None
    new_status: OrderStatus

    actor_role: Role
    actor_id: str | None = None

    reason: str | None = None
    timestamp: datetime

    metadata: TransitionMetadata = Field(default_factory=TransitionMetadata)

    model_config = ConfigDict(extra="forbid", frozen=True)

    @model_validator(mode="after")
    def validate_status_change(self) -> TransitionRecord:
        if self.previous_status == self.new_status:
            raise ValueError("a committed transition must change the status")
        if self.previous_status is None and self.new_status != "pending":
            raise ValueError("orders are created in 'pending'")
        return self


class TransitionAttempt(BaseModel):
    """Observability entry for every transition attempt, whatever its outcome."""

    order_id: OrderId

    current_status: OrderStatus | None
    target_status: str

    actor_role: str
    actor_id: str | None = None

    outcome: AttemptOutcome
    error: str | None = None
    message: str | None = None

    timestamp: datetime

    model_config = ConfigDict(extra="forbid", frozen=True)

    @model_validator(mode="after")
    def validate_error_for_outcome(self) -> TransitionAttempt:
        if self.outcome == "rejected" and self.error is None:
            raise ValueError("rejected attempts must carry an error")
        if self.outcome != "rejected" and self.error is not None:
            raise ValueError("only rejected attempts carry an error")
        return self


# ---------------------------------------------------------------------------
# Capacity availability models
# ---------------------------------------------------------------------------


class SlotAvailability(BaseModel):
    time_bucket: str = Field(..., pattern=r"^([01]\d|2[0-3]):[0-5]\d$")
    limit: int = Field(..., ge=0)
    booked: int = Field(..., ge=0)
    remaining: int = Field(..., ge=0)
    reason: SlotReason

    model_config = ConfigDict(extra="forbid", frozen=True)


class DateAvailability(BaseModel):
    date: date
    available: bool
    reason: SlotReason
    holiday_name: str | None = None
    slots: list[SlotAvailability] = Field(default_factory=list)

    model_config = ConfigDict(extra="forbid", frozen=True)

    @property
    def remaining(self) -> int:
        return sum(slot.remaining for slot in self.slots)

    def remaining_by_bucket(self) -> dict[str, int]:
        return {slot.time_bucket: slot.remaining for slot in self.slots}
