"""
Semantic test: Prometheus lifecycle metrics.

Invariant:
The Prometheus sink counts committed transitions, rejections and slot
reservations from lifecycle events in its own registry, and pushes only
when a Pushgateway URL is configured.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

from order_pipeline.core.capacity.calendar_config import CalendarConfig
from order_pipeline.core.events.event_bus import EventBus
from order_pipeline.core.lifecycle.lifecycle import OrderLifecycle
from order_pipeline.core.lifecycle.lifecycle_config import LifecycleConfig
from order_pipeline.core.ports.clock import ManualClock
from order_pipeline.runtime import prometheus_metrics
from order_pipeline.runtime.prometheus_metrics import PrometheusLifecycleSink

T0 = datetime(2024, 5, 31, 12, 0, tzinfo=timezone.utc)


def test_lifecycle_events_update_metrics(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("PROMETHEUS_PUSHGATEWAY_URL", raising=False)
    sink = PrometheusLifecycleSink()
    clock = ManualClock(T0)
    config = LifecycleConfig(calendar=CalendarConfig(default_slot_capacity=1))
    lifecycle = OrderLifecycle.from_config(config, clock=clock, event_bus=EventBus([sink]))

    for order_id in ("A", "B"):
        lifecycle.create_order(order_id, "2024-06-01", "14:00")
        lifecycle.set_payment_status(order_id, "paid")

    clock.advance(timedelta(minutes=20))
    lifecycle.request_transition("A", "confirmed", "owner")
    lifecycle.request_transition("B", "confirmed", "owner")  # slot full
    lifecycle.request_transition("A", "cancelled", "customer", "changed plans")

    assert sink.sample("order_transitions_total", {"previous_status": "none", "new_status": "pending"}) == 2
    assert sink.sample("order_transitions_total", {"previous_status": "pending", "new_status": "confirmed"}) == 1
    assert sink.sample("order_transitions_total", {"previous_status": "confirmed", "new_status": "cancelled"}) == 1
    assert sink.sample(
        "order_transition_rejections_total",
        {"reason": "CapacityExceeded", "target_status": "confirmed"},
    ) == 1
    assert sink.sample("slot_reservations_total", {"outcome": "reserved"}) == 1
    assert sink.sample("slot_reservations_total", {"outcome": "rejected"}) == 1
    assert sink.sample("slot_reservations_total", {"outcome": "released"}) == 1
    assert sink.sample("order_time_to_confirm_minutes_count") == 1
    assert sink.sample("order_time_to_confirm_minutes_sum") == 20


def test_push_is_disabled_without_gateway(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("PROMETHEUS_PUSHGATEWAY_URL", raising=False)
    calls: list[Any] = []
    monkeypatch.setattr(prometheus_metrics, "push_to_gateway", lambda **kwargs: calls.append(kwargs))

    sink = PrometheusLifecycleSink()
    sink.push_all(job="order-pipeline")

    assert not sink.is_enabled()
    assert calls == []


def test_push_uses_gateway_and_grouping_key(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("PROMETHEUS_PUSHGATEWAY_URL", "http://pushgateway:9091")
    monkeypatch.setenv("PROMETHEUS_PUSHGATEWAY_GROUPING_KEY_JSON", '{"shop": "central", "replicas": 2}')
    calls: list[dict[str, Any]] = []
    monkeypatch.setattr(prometheus_metrics, "push_to_gateway", lambda **kwargs: calls.append(kwargs))

    sink = PrometheusLifecycleSink()
    sink.push_all(job="order-pipeline")

    assert sink.is_enabled()
    assert len(calls) == 1
    assert calls[0]["gateway"] == "http://pushgateway:9091"
    assert calls[0]["job"] == "order-pipeline"
    assert calls[0]["registry"] is sink.registry
    # Non-string values are dropped from the grouping key.
    assert calls[0]["grouping_key"] == {"shop": "central"}


def test_invalid_grouping_key_is_ignored(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("PROMETHEUS_PUSHGATEWAY_GROUPING_KEY_JSON", "{not json")

    assert PrometheusLifecycleSink._load_grouping_key() == {}  # pylint: disable=protected-access
