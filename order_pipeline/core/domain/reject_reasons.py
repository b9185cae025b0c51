"""Reject reasons returned in transition and reservation outcomes."""

from __future__ import annotations


class RejectReason:
    """String constants identifying why an attempt did not commit.

    These are results, not exceptions: every failed attempt returns exactly
    one of them to the caller.
    """

    ORDER_NOT_FOUND = "OrderNotFound"
    INVALID_TRANSITION = "InvalidTransition"
    UNAUTHORIZED = "Unauthorized"
    PAYMENT_NOT_CONFIRMED = "PaymentNotConfirmed"
    CAPACITY_EXCEEDED = "CapacityExceeded"

    ALL: frozenset[str] = frozenset(
        {
            ORDER_NOT_FOUND,
            INVALID_TRANSITION,
            UNAUTHORIZED,
            PAYMENT_NOT_CONFIRMED,
            CAPACITY_EXCEEDED,
        }
    )

    # Reasons a caller may retry with the same input once external state changes.
    RETRYABLE: frozenset[str] = frozenset({PAYMENT_NOT_CONFIRMED, CAPACITY_EXCEEDED})
