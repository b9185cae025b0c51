"""
Order lifecycle state machine definitions.

This module defines the canonical order statuses, the allowed transitions
between them, which roles may trigger each transition, and the side effects
attached to each edge. It is pure: no storage, no locking, no I/O. The
OrderLifecycle applies these rules under the per-order lock.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

VALID_STATUSES: tuple[str, ...] = (
    "pending",
    "confirmed",
    "in_progress",
    "ready",
    "completed",
    "cancelled",
)

VALID_ROLES: frozenset[str] = frozenset({"customer", "baker", "owner", "admin", "system"})

INITIAL_STATUS: str = "pending"

# Terminal order statuses: once reached, the order is considered complete.
ORDER_TERMINAL_STATES: frozenset[str] = frozenset({"completed", "cancelled"})

# Statuses in which the order holds a capacity reservation.
SLOT_HOLDING_STATES: frozenset[str] = frozenset({"confirmed", "in_progress", "ready"})

_STAFF: frozenset[str] = frozenset({"baker", "owner", "admin"})


# Allowed order status transitions.
#
# Key   : (previous status, next status)
# Value : roles permitted to trigger the edge
#
# Notes:
# - Edges not listed here do not exist, whatever the role.
# - cancelled is reachable from pending, confirmed and in_progress only.
# - completed is reachable from ready only.
ORDER_TRANSITION_ROLES: dict[tuple[str, str], frozenset[str]] = {
    ("pending", "confirmed"): _STAFF | {"system"},
    ("pending", "cancelled"): _STAFF | {"customer", "system"},
    ("confirmed", "in_progress"): _STAFF,
    ("confirmed", "cancelled"): _STAFF | {"customer", "system"},
    ("in_progress", "ready"): _STAFF,
    ("in_progress", "cancelled"): _STAFF,
    ("ready", "completed"): _STAFF | {"system"},
}

ORDER_ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    status: frozenset(nxt for (prev, nxt) in ORDER_TRANSITION_ROLES if prev == status)
    for status in VALID_STATUSES
}


def is_valid_status(status: object) -> bool:
    """Return True if status is one of the order statuses."""
    return isinstance(status, str) and status in VALID_STATUSES


def is_terminal_state(status: str) -> bool:
    """Return True if the given status is terminal."""
    return status in ORDER_TERMINAL_STATES


def is_valid_transition(prev_status: str, next_status: str) -> bool:
    """Return True if the edge prev_status -> next_status exists in the graph."""
    return (prev_status, next_status) in ORDER_TRANSITION_ROLES


def permitted_roles(prev_status: str, next_status: str) -> frozenset[str]:
    """Return the roles allowed to trigger prev_status -> next_status (empty if no edge)."""
    return ORDER_TRANSITION_ROLES.get((prev_status, next_status), frozenset())


def can_transition(prev_status: str, next_status: str, role: str) -> bool:
    """Return True if role may trigger the edge prev_status -> next_status."""
    return role in permitted_roles(prev_status, next_status)


def requires_payment(next_status: str) -> bool:
    """Guard: confirming an order requires payment_status == 'paid'."""
    return next_status == "confirmed"


def requires_reason(next_status: str) -> bool:
    """Guard: cancelling an order requires a non-blank reason."""
    return next_status == "cancelled"


def reserves_capacity(prev_status: str, next_status: str) -> bool:
    """Return True if the edge books the order's slot."""
    return next_status == "confirmed" and prev_status not in SLOT_HOLDING_STATES


def releases_capacity(prev_status: str, next_status: str) -> bool:
    """Return True if the edge gives the order's slot back."""
    return next_status == "cancelled" and prev_status in SLOT_HOLDING_STATES


# ---------------------------------------------------------------------------
# Side effects
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class TransitionSideEffects:
    """Effects external collaborators perform after a committed transition.

    The core never sends email, fires webhooks or refunds: it only describes
    what should happen and publishes it on the lifecycle event.
    """

    email_type: str | None = None
    webhook_event: str | None = None
    update_metrics: bool = False
    refund_required: bool = False

    @property
    def send_email(self) -> bool:
        return self.email_type is not None

    @property
    def send_webhook(self) -> bool:
        return self.webhook_event is not None


_EDGE_SIDE_EFFECTS: dict[tuple[str, str], TransitionSideEffects] = {
    ("pending", "confirmed"): TransitionSideEffects(
        email_type="order_confirmation",
        update_metrics=True,
    ),
    ("confirmed", "in_progress"): TransitionSideEffects(
        email_type="order_started",
        update_metrics=True,
    ),
    ("in_progress", "ready"): TransitionSideEffects(
        email_type="order_ready",
        webhook_event="order.ready",
        update_metrics=True,
    ),
    ("ready", "completed"): TransitionSideEffects(
        email_type="order_completed",
        update_metrics=True,
    ),
}


def side_effects(prev_status: str | None, next_status: str, payment_status: str) -> TransitionSideEffects:
    """Return the side effects of prev_status -> next_status."""
    if prev_status is None:
        return TransitionSideEffects()

    if next_status == "cancelled":
        return TransitionSideEffects(
            email_type="order_cancelled",
            refund_required=payment_status == "paid",
        )

    return _EDGE_SIDE_EFFECTS.get((prev_status, next_status), TransitionSideEffects())


# ---------------------------------------------------------------------------
# Time metrics
# ---------------------------------------------------------------------------


def elapsed_minutes(start: datetime | None, end: datetime) -> int | None:
    """Whole minutes between start and end, rounded; None if start is unknown."""
    if start is None:
        return None
    return max(0, round((end - start).total_seconds() / 60))
