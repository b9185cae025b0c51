from __future__ import annotations

import json
import logging
import os
from typing import Any

from prometheus_client import CollectorRegistry, Counter, Histogram, push_to_gateway

from order_pipeline.core.events.events import (
    CapacityRejectedEvent,
    OrderTransitionEvent,
    SlotReleasedEvent,
    SlotReservedEvent,
    TransitionRejectedEvent,
)

LOGGER = logging.getLogger(__name__)

_MINUTE_BUCKETS = (5, 15, 30, 60, 120, 240, 480, 1440, 2880, 10080)


class PrometheusLifecycleSink:
    """Event sink that turns lifecycle events into Prometheus metrics.

    Metrics live in a private CollectorRegistry so several lifecycles (and
    tests) can coexist in one process. Expose the registry through
    prometheus_client's HTTP helpers, or push it with push_all().

    Optional environment:
    - PROMETHEUS_PUSHGATEWAY_URL: URL to the Pushgateway.
    - PROMETHEUS_PUSHGATEWAY_GROUPING_KEY_JSON: JSON object used as grouping key.

    Pushing is best-effort: callers should treat it as a side-effect and
    never fail an order operation because of metrics delivery.
    """

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        self._registry = registry if registry is not None else CollectorRegistry()
        self._pushgateway_url = os.environ.get("PROMETHEUS_PUSHGATEWAY_URL")
        self._grouping_key = self._load_grouping_key()

        self.transitions = Counter(
            "order_transitions",
            "Committed order status transitions",
            labelnames=["previous_status", "new_status"],
            registry=self._registry,
        )
        self.rejections = Counter(
            "order_transition_rejections",
            "Rejected order transition attempts",
            labelnames=["reason", "target_status"],
            registry=self._registry,
        )
        self.reservations = Counter(
            "slot_reservations",
            "Slot capacity reservations by outcome",
            labelnames=["outcome"],
            registry=self._registry,
        )
        self.time_to_confirm = Histogram(
            "order_time_to_confirm_minutes",
            "Minutes from order creation to confirmation",
            buckets=_MINUTE_BUCKETS,
            registry=self._registry,
        )
        self.time_to_ready = Histogram(
            "order_time_to_ready_minutes",
            "Minutes from confirmation to ready",
            buckets=_MINUTE_BUCKETS,
            registry=self._registry,
        )
        self.time_to_complete = Histogram(
            "order_time_to_complete_minutes",
            "Minutes from ready to completed",
            buckets=_MINUTE_BUCKETS,
            registry=self._registry,
        )

    @property
    def registry(self) -> CollectorRegistry:
        return self._registry

    def is_enabled(self) -> bool:
        return self._pushgateway_url is not None

    @staticmethod
    def _load_grouping_key() -> dict[str, str]:
        raw = os.environ.get("PROMETHEUS_PUSHGATEWAY_GROUPING_KEY_JSON")
        if not raw:
            return {}

        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            LOGGER.warning(
                "Invalid PROMETHEUS_PUSHGATEWAY_GROUPING_KEY_JSON; ignoring"
            )
            return {}

        if not isinstance(data, dict):
            return {}

        grouping: dict[str, str] = {}
        for key, value in data.items():
            if isinstance(key, str) and isinstance(value, str):
                grouping[key] = value
        return grouping

    def on_event(self, event: Any) -> None:
        if isinstance(event, OrderTransitionEvent):
            self.transitions.labels(
                previous_status=event.previous_status or "none",
                new_status=event.new_status,
            ).inc()
            if event.time_to_confirm_minutes is not None:
                self.time_to_confirm.observe(event.time_to_confirm_minutes)
            if event.time_to_ready_minutes is not None:
                self.time_to_ready.observe(event.time_to_ready_minutes)
            if event.time_to_complete_minutes is not None:
                self.time_to_complete.observe(event.time_to_complete_minutes)
        elif isinstance(event, TransitionRejectedEvent):
            self.rejections.labels(reason=event.reason, target_status=event.target_status).inc()
        elif isinstance(event, SlotReservedEvent):
            self.reservations.labels(outcome="reserved").inc()
        elif isinstance(event, SlotReleasedEvent):
            self.reservations.labels(outcome="released").inc()
        elif isinstance(event, CapacityRejectedEvent):
            self.reservations.labels(outcome="rejected").inc()

    def sample(self, name: str, labels: dict[str, str] | None = None) -> float | None:
        """Current value of a sample in this sink's registry."""
        return self._registry.get_sample_value(name, labels or {})

    def push_all(self, *, job: str) -> None:
        if not self._pushgateway_url:
            return

        push_to_gateway(
            gateway=self._pushgateway_url,
            job=job,
            registry=self._registry,
            grouping_key=self._grouping_key,
        )

        LOGGER.info(
            "Prometheus metrics pushed",
            extra={"job": job, "grouping_key": self._grouping_key},
        )
