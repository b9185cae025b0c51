from __future__ import annotations

import threading
from typing import Any

from order_pipeline.core.events.event_bus import EventBus


class _NullSink:
    """Event sink that discards all events."""

    def on_event(self, event: Any) -> None:
        return


class NullEventBus(EventBus):
    """EventBus that discards all events (used for tests)."""

    def __init__(self) -> None:
        super().__init__(sinks=[_NullSink()])


class CollectingSink:
    """Keeps every event in memory, in emission order (used for tests)."""

    def __init__(self) -> None:
        self.events: list[Any] = []
        self._lock = threading.Lock()

    def on_event(self, event: Any) -> None:
        with self._lock:
            self.events.append(event)

    def of_type(self, event_type: type) -> list[Any]:
        with self._lock:
            return [event for event in self.events if isinstance(event, event_type)]
