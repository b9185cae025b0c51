"""Runtime order state.

Orders are stored as immutable snapshots. The repository swaps snapshots
under a per-order lock; nothing outside OrderLifecycle writes status, and
nothing outside the payment collaborator writes payment_status.
"""

# pylint: disable=too-many-instance-attributes
from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, replace
from datetime import datetime

from order_pipeline.core.domain.errors import DuplicateOrderError, OrderNotFoundError
from order_pipeline.core.domain.keyed_locks import KeyedLocks
from order_pipeline.core.domain.slots import Reservation, SlotKey
from order_pipeline.core.domain.types import OrderId


@dataclass(frozen=True, slots=True)
class Order:
    """Snapshot of one order.

    reservation is set while the order holds capacity on requested_slot.
    The *_minutes fields are derived metrics, not invariant-bearing.
    """

    order_id: OrderId
    requested_slot: SlotKey
    created_at: datetime

    status: str = "pending"
    payment_status: str = "unset"

    customer_id: str | None = None
    reservation: Reservation | None = None

    confirmed_at: datetime | None = None
    ready_at: datetime | None = None
    completed_at: datetime | None = None
    cancelled_at: datetime | None = None

    time_to_confirm_minutes: int | None = None
    time_to_ready_minutes: int | None = None
    time_to_complete_minutes: int | None = None

    @property
    def holds_reservation(self) -> bool:
        return self.reservation is not None


class OrderRepository:
    """In-memory order store keyed by order id.

    Reads return the current snapshot without locking. Writers must hold
    lock(order_id) across their read-check-write.
    """

    def __init__(self) -> None:
        self._orders: dict[OrderId, Order] = {}
        self._locks = KeyedLocks()

    @contextmanager
    def lock(self, order_id: OrderId) -> Iterator[None]:
        """Exclusive access to one order for the duration of the block."""
        with self._locks.get(order_id):
            yield

    def owns_lock(self, order_id: OrderId) -> bool:
        # RLock exposes _is_owned; used to assert the write discipline.
        lock = self._locks.get(order_id)
        return bool(lock._is_owned())  # pylint: disable=protected-access

    def get(self, order_id: OrderId) -> Order | None:
        return self._orders.get(order_id)

    def require(self, order_id: OrderId) -> Order:
        order = self._orders.get(order_id)
        if order is None:
            raise OrderNotFoundError(order_id)
        return order

    def __contains__(self, order_id: object) -> bool:
        return order_id in self._orders

    def __len__(self) -> int:
        return len(self._orders)

    def snapshot(self) -> list[Order]:
        """Point-in-time copy of all orders."""
        return list(self._orders.values())

    def insert(self, order: Order) -> None:
        """Store a new order. Caller must hold lock(order.order_id)."""
        self._assert_locked(order.order_id)
        if order.order_id in self._orders:
            raise DuplicateOrderError(order.order_id)
        self._orders[order.order_id] = order

    def commit(self, order: Order) -> None:
        """Replace the stored snapshot. Caller must hold lock(order.order_id)."""
        self._assert_locked(order.order_id)
        if order.order_id not in self._orders:
            raise OrderNotFoundError(order.order_id)
        self._orders[order.order_id] = order

    def set_payment_status(self, order_id: OrderId, payment_status: str) -> Order:
        """Write payment_status only. Status and reservations are untouched."""
        with self.lock(order_id):
            current = self.require(order_id)
            updated = replace(current, payment_status=payment_status)
            self._orders[order_id] = updated
            return updated

    def _assert_locked(self, order_id: OrderId) -> None:
        if not self.owns_lock(order_id):
            raise RuntimeError(f"order {order_id!r} written without holding its lock")
