"""
Logging event sink.
"""
from __future__ import annotations

import logging
from typing import Any


class LoggingEventSink:
    """Logs domain events using the standard logging module."""

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self._logger = logger if logger is not None else logging.getLogger("order_pipeline.events")

    def on_event(self, event: Any) -> None:
        self._logger.info(
            "domain_event",
            extra={"event": event, "event_type": type(event).__name__},
        )
