"""Fault exceptions.

Business rejections are returned as values (see reject_reasons). The
exceptions below signal programming errors or infrastructure failures.
"""

from __future__ import annotations


class OrderPipelineError(Exception):
    """Base class for all order_pipeline faults."""


class ReservationFault(OrderPipelineError):
    """A reservation was released that is not currently held."""


class ConcurrencyConflict(OrderPipelineError):
    """A compare-and-set lost a race. Internal to the capacity allocator."""


class AuditWriteError(OrderPipelineError):
    """The audit trail could not append a record; the transition was rolled back."""


class DuplicateOrderError(OrderPipelineError):
    """An order with the same identifier already exists."""


class OrderNotFoundError(OrderPipelineError, KeyError):
    """Query on an order identifier that does not exist."""
