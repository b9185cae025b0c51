"""
Semantic test: audit completeness and ordering.

Invariant:
Every committed transition has exactly one audit record with matching
previous/new status and actor; records of one order are returned in
commit order with gap-free sequence numbers. Rejected attempts produce
attempt entries but no records.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from order_pipeline.core.audit.audit_trail import InMemoryAuditTrail
from order_pipeline.core.domain.errors import AuditWriteError
from order_pipeline.core.domain.types import TransitionRecord
from order_pipeline.core.events.sinks.null_event_bus import NullEventBus
from order_pipeline.core.lifecycle.lifecycle import OrderLifecycle
from order_pipeline.core.lifecycle.lifecycle_config import LifecycleConfig
from order_pipeline.core.ports.clock import ManualClock

T0 = datetime(2024, 5, 31, 12, 0, tzinfo=timezone.utc)


def test_each_commit_has_one_matching_record() -> None:
    clock = ManualClock(T0)
    lifecycle = OrderLifecycle.from_config(LifecycleConfig(), clock=clock, event_bus=NullEventBus())

    lifecycle.create_order("A", "2024-06-01", "14:00", actor_id="cust-1")
    lifecycle.set_payment_status("A", "paid")

    steps = [
        ("in_progress", "baker", "baker-1"),  # rejected: no edge from pending
        ("confirmed", "system", None),
        ("in_progress", "customer", "cust-1"),  # rejected: unauthorized
        ("in_progress", "baker", "baker-1"),
        ("ready", "baker", "baker-1"),
        ("completed", "owner", "owner-1"),
    ]
    committed = []
    for target, role, actor in steps:
        clock.advance(timedelta(minutes=1))
        result = lifecycle.request_transition("A", target, role, actor_id=actor)
        if result.success:
            committed.append(result.record)

    history = lifecycle.history("A")

    assert [r.sequence for r in history] == list(range(len(history)))
    assert history[1:] == committed
    assert [(r.previous_status, r.new_status, r.actor_role, r.actor_id) for r in history] == [
        (None, "pending", "customer", "cust-1"),
        ("pending", "confirmed", "system", None),
        ("confirmed", "in_progress", "baker", "baker-1"),
        ("in_progress", "ready", "baker", "baker-1"),
        ("ready", "completed", "owner", "owner-1"),
    ]
    timestamps = [r.timestamp for r in history]
    assert timestamps == sorted(timestamps)

    attempts = lifecycle.attempts("A")
    assert [a.outcome for a in attempts] == [
        "rejected",
        "committed",
        "rejected",
        "committed",
        "committed",
        "committed",
    ]
    assert [a.error for a in attempts if a.outcome == "rejected"] == ["InvalidTransition", "Unauthorized"]


def test_trail_rejects_out_of_order_records() -> None:
    trail = InMemoryAuditTrail()
    created = TransitionRecord(
        order_id=7, sequence=0, previous_status=None, new_status="pending",
        actor_role="customer", timestamp=T0,
    )
    trail.record(created)

    with pytest.raises(AuditWriteError):
        trail.record(created)

    with pytest.raises(AuditWriteError):
        trail.record(
            TransitionRecord(
                order_id=7, sequence=1, previous_status="confirmed", new_status="in_progress",
                actor_role="baker", timestamp=T0,
            )
        )

    with pytest.raises(AuditWriteError):
        trail.record(
            TransitionRecord(
                order_id=8, sequence=0, previous_status="pending", new_status="cancelled",
                actor_role="customer", timestamp=T0,
            )
        )

    assert trail.history(7) == [created]
    assert trail.next_sequence(7) == 1
    assert trail.next_sequence(8) == 0


def test_all_records_are_time_ordered_across_orders() -> None:
    clock = ManualClock(T0)
    lifecycle = OrderLifecycle.from_config(LifecycleConfig(), clock=clock, event_bus=NullEventBus())

    lifecycle.create_order("B", "2024-06-01", "10:00")
    clock.advance(timedelta(seconds=1))
    lifecycle.create_order("A", "2024-06-01", "10:00")
    clock.advance(timedelta(seconds=1))
    lifecycle.request_transition("B", "cancelled", "customer", "changed plans")

    trail = lifecycle.audit_trail
    assert isinstance(trail, InMemoryAuditTrail)
    assert [(r.order_id, r.new_status) for r in trail.all_records()] == [
        ("B", "pending"),
        ("A", "pending"),
        ("B", "cancelled"),
    ]
