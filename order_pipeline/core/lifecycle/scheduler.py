"""Time-based automatic transitions.

One pass of run_once():
- cancels pending orders still unpaid after unpaid_timeout_minutes;
- completes ready orders nobody collected within ready_autocomplete_hours;
- emits a reminder for confirmed orders not started within
  unstarted_reminder_hours.

Automatic transitions go through OrderLifecycle.request_transition with the
'system' role, so they obey the same graph, locks and audit as manual ones.
Wiring run_once() to a timer or cron is left to the host process.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import TYPE_CHECKING

from order_pipeline.core.events.events import OrderReminderEvent

if TYPE_CHECKING:
    from order_pipeline.core.events.event_bus import EventBus
    from order_pipeline.core.lifecycle.lifecycle import OrderLifecycle, TransitionResult
    from order_pipeline.core.lifecycle.lifecycle_config import SchedulerConfig
    from order_pipeline.core.ports.clock import Clock

LOGGER = logging.getLogger(__name__)

SYSTEM_ROLE = "system"
UNPAID_REASON = "Auto-cancelled: payment not completed in time"
READY_REASON = "Auto-completed: order ready and not collected"


@dataclass(slots=True)
class SchedulerReport:
    cancelled: list[TransitionResult] = field(default_factory=list)
    completed: list[TransitionResult] = field(default_factory=list)
    reminders: list[OrderReminderEvent] = field(default_factory=list)
    skipped: list[TransitionResult] = field(default_factory=list)


class LifecycleScheduler:
    """Applies the timed lifecycle rules to every stored order."""

    def __init__(
        self,
        lifecycle: OrderLifecycle,
        config: SchedulerConfig,
        clock: Clock,
        event_bus: EventBus,
    ) -> None:
        self._lifecycle = lifecycle
        self._config = config
        self._clock = clock
        self._event_bus = event_bus

    def run_once(self) -> SchedulerReport:
        report = SchedulerReport()
        self.auto_cancel_unpaid_orders(report)
        self.auto_complete_ready_orders(report)
        self.find_unstarted_orders(report)

        LOGGER.info(
            "Scheduler pass finished",
            extra={
                "cancelled": len(report.cancelled),
                "completed": len(report.completed),
                "reminders": len(report.reminders),
                "skipped": len(report.skipped),
            },
        )
        return report

    def auto_cancel_unpaid_orders(self, report: SchedulerReport | None = None) -> list[TransitionResult]:
        report = report if report is not None else SchedulerReport()
        cutoff = self._clock.now() - timedelta(minutes=self._config.unpaid_timeout_minutes)

        for order in self._lifecycle.orders():
            if order.status != "pending" or order.payment_status == "paid":
                continue
            if order.created_at >= cutoff:
                continue

            result = self._lifecycle.request_transition(
                order.order_id,
                "cancelled",
                SYSTEM_ROLE,
                UNPAID_REASON,
                trigger="payment_timeout",
            )
            # The snapshot may be stale: a concurrent request can have moved the order.
            (report.cancelled if result.success and not result.noop else report.skipped).append(result)

        return report.cancelled

    def auto_complete_ready_orders(self, report: SchedulerReport | None = None) -> list[TransitionResult]:
        report = report if report is not None else SchedulerReport()
        cutoff = self._clock.now() - timedelta(hours=self._config.ready_autocomplete_hours)

        for order in self._lifecycle.orders():
            if order.status != "ready" or order.ready_at is None:
                continue
            if order.ready_at >= cutoff:
                continue

            result = self._lifecycle.request_transition(
                order.order_id,
                "completed",
                SYSTEM_ROLE,
                READY_REASON,
                trigger="ready_timeout",
            )
            (report.completed if result.success and not result.noop else report.skipped).append(result)

        return report.completed

    def find_unstarted_orders(self, report: SchedulerReport | None = None) -> list[OrderReminderEvent]:
        report = report if report is not None else SchedulerReport()
        now = self._clock.now()
        cutoff = now - timedelta(hours=self._config.unstarted_reminder_hours)

        for order in self._lifecycle.orders():
            if order.status != "confirmed" or order.confirmed_at is None:
                continue
            if order.confirmed_at >= cutoff:
                continue

            reminder = OrderReminderEvent(
                timestamp=now,
                order_id=order.order_id,
                confirmed_at=order.confirmed_at,
                hours_waiting=round((now - order.confirmed_at).total_seconds() / 3600, 2),
            )
            report.reminders.append(reminder)
            try:
                self._event_bus.emit(reminder)
            except Exception:  # pylint: disable=broad-exception-caught
                LOGGER.exception("Reminder publication failed", extra={"order_id": order.order_id})

        return report.reminders
