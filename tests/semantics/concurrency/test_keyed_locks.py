"""
Semantic test: per-key locks.

Invariant:
Each key maps to one re-entrant lock; distinct keys never share a lock,
so work on disjoint orders or slots never contends on a global lock.
"""

from __future__ import annotations

import threading
from datetime import datetime, timezone

import pytest

from order_pipeline.core.domain.keyed_locks import KeyedLocks
from order_pipeline.core.domain.slots import SlotKey
from order_pipeline.core.domain.state import Order, OrderRepository


def test_same_key_same_lock() -> None:
    locks = KeyedLocks()

    assert locks.get("A") is locks.get("A")
    assert locks.get("A") is not locks.get("B")
    assert locks.get(SlotKey.parse("2024-06-01", "14:00")) is locks.get(SlotKey.parse("2024-06-01", "14:00"))
    assert len(locks) == 3


def test_lock_is_reentrant() -> None:
    locks = KeyedLocks()
    lock = locks.get("A")

    with lock:
        assert lock.acquire(blocking=False)
        lock.release()


def test_other_key_not_blocked_by_held_lock() -> None:
    locks = KeyedLocks()
    acquired = threading.Event()

    def _other() -> None:
        with locks.get("B"):
            acquired.set()

    with locks.get("A"):
        thread = threading.Thread(target=_other)
        thread.start()
        assert acquired.wait(timeout=5)
        thread.join()


def test_repository_writes_require_the_order_lock() -> None:
    repository = OrderRepository()
    order = Order(
        order_id="A",
        requested_slot=SlotKey.parse("2024-06-01", "14:00"),
        created_at=datetime(2024, 5, 31, 12, 0, tzinfo=timezone.utc),
    )

    with pytest.raises(RuntimeError):
        repository.insert(order)

    with repository.lock("A"):
        assert repository.owns_lock("A")
        repository.insert(order)

    assert not repository.owns_lock("A")
    assert "A" in repository
    assert len(repository) == 1
