"""
Semantic test: reopening a durable trail restores orders and bookings.

Invariant:
A lifecycle built on an existing JSONL audit trail starts from the state
the trail records: every order with its status, slot, timestamps and
held reservation, and every slot counter with its bookings. A restart
therefore never lets a full slot accept another confirmation, and known
order ids stay taken.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from order_pipeline.core.audit.audit_trail import load_records, replay_orders
from order_pipeline.core.capacity.calendar_config import CalendarConfig
from order_pipeline.core.domain.errors import DuplicateOrderError, ReservationFault
from order_pipeline.core.domain.reject_reasons import RejectReason
from order_pipeline.core.domain.slots import SlotKey
from order_pipeline.core.events.sinks.null_event_bus import NullEventBus
from order_pipeline.core.lifecycle.lifecycle import OrderLifecycle
from order_pipeline.core.lifecycle.lifecycle_config import LifecycleConfig
from order_pipeline.core.ports.clock import ManualClock

T0 = datetime(2024, 5, 31, 12, 0, tzinfo=timezone.utc)


def _open(audit_path: Path, clock: ManualClock | None = None) -> OrderLifecycle:
    config = LifecycleConfig(calendar=CalendarConfig(default_slot_capacity=1), audit_path=audit_path)
    return OrderLifecycle.from_config(
        config,
        clock=clock if clock is not None else ManualClock(T0),
        event_bus=NullEventBus(),
    )


def _confirmed_then_closed(audit_path: Path) -> OrderLifecycle:
    first = _open(audit_path)
    first.create_order(1, "2024-06-01", "14:00")
    first.set_payment_status(1, "paid")
    assert first.request_transition(1, "confirmed", "owner").success
    first.audit_trail.close()
    return first


def test_restart_keeps_bookings_and_limit(tmp_path: Path) -> None:
    audit_path = tmp_path / "trail.jsonl"
    first = _confirmed_then_closed(audit_path)
    reservation = first.get_order(1).reservation

    second = _open(audit_path)

    assert second.reconcile() == []
    restored = second.get_order(1)
    assert restored.status == "confirmed"
    assert restored.payment_status == "paid"
    assert restored.reservation == reservation
    assert second.allocator.is_held(restored.reservation)
    assert second.allocator.booked("2024-06-01", "14:00") == 1

    second.create_order(2, "2024-06-01", "14:00")
    second.set_payment_status(2, "paid")
    result = second.request_transition(2, "confirmed", "owner")

    assert result.error == RejectReason.CAPACITY_EXCEEDED
    assert second.allocator.booked("2024-06-01", "14:00") == 1


def test_restored_reservation_can_be_released(tmp_path: Path) -> None:
    audit_path = tmp_path / "trail.jsonl"
    first = _confirmed_then_closed(audit_path)
    first_reservation_id = first.get_order(1).reservation.reservation_id

    second = _open(audit_path)
    assert second.request_transition(1, "cancelled", "customer", "changed plans").success
    assert second.allocator.booked("2024-06-01", "14:00") == 0

    second.create_order(2, "2024-06-01", "14:00")
    second.set_payment_status(2, "paid")
    assert second.request_transition(2, "confirmed", "owner").success

    assert second.get_order(2).reservation.reservation_id != first_reservation_id
    assert second.allocator.booked("2024-06-01", "14:00") == 1


def test_restart_keeps_order_ids_taken(tmp_path: Path) -> None:
    audit_path = tmp_path / "trail.jsonl"
    _confirmed_then_closed(audit_path)

    second = _open(audit_path)

    with pytest.raises(DuplicateOrderError):
        second.create_order(1, "2024-06-02", "10:00")
    assert [r.new_status for r in second.history(1)] == ["pending", "confirmed"]


def test_restart_restores_timestamps_and_metrics(tmp_path: Path) -> None:
    audit_path = tmp_path / "trail.jsonl"
    clock = ManualClock(T0)
    first = _open(audit_path, clock)
    first.create_order("cake", "2024-06-01", "14:00")
    first.set_payment_status("cake", "paid")
    clock.advance(timedelta(minutes=10))
    first.request_transition("cake", "confirmed", "owner")
    first.request_transition("cake", "in_progress", "baker")
    clock.advance(timedelta(minutes=90))
    first.request_transition("cake", "ready", "baker")
    first.audit_trail.close()

    second = _open(audit_path, clock)
    order = second.get_order("cake")

    assert order.status == "ready"
    assert order.created_at == T0
    assert order.confirmed_at == T0 + timedelta(minutes=10)
    assert order.ready_at == T0 + timedelta(minutes=100)
    assert order.time_to_confirm_minutes == 10
    assert order.time_to_ready_minutes == 90
    assert order.reservation is not None
    assert second.request_transition("cake", "completed", "owner").success


def test_unpaid_pending_order_restores_unpaid(tmp_path: Path) -> None:
    audit_path = tmp_path / "trail.jsonl"
    first = _open(audit_path)
    first.create_order("A", "2024-06-01", "14:00", customer_id="c-1")
    first.audit_trail.close()

    [order] = replay_orders(load_records(audit_path)).values()

    assert order.status == "pending"
    assert order.payment_status == "unset"
    assert order.reservation is None
    assert order.customer_id is None


def test_empty_trail_restores_nothing(tmp_path: Path) -> None:
    lifecycle = _open(tmp_path / "trail.jsonl")

    assert lifecycle.orders() == []
    assert lifecycle.restore_from_audit() == 0


def test_restore_needs_an_empty_repository(tmp_path: Path) -> None:
    lifecycle = _open(tmp_path / "trail.jsonl")
    lifecycle.create_order("A", "2024-06-01", "14:00")

    with pytest.raises(RuntimeError):
        lifecycle.restore_from_audit()


def test_foreign_reservation_ids_are_refused(tmp_path: Path) -> None:
    lifecycle = _open(tmp_path / "trail.jsonl")
    slot = SlotKey.parse("2024-06-01", "14:00")

    with pytest.raises(ReservationFault):
        lifecycle.allocator.restore_slot(slot, {"42"}, {"42"})
    assert lifecycle.allocator.booked("2024-06-01", "14:00") == 0
