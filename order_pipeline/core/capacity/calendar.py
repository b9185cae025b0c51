"""Clock/Calendar provider.

Derives the effective capacity limit of each slot from the business
calendar: holidays and closed days have limit 0, buckets outside opening
hours have limit 0, past slots have limit 0, everything else gets the
configured per-slot capacity (or an override).
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import date, datetime, timedelta

from order_pipeline.core.capacity.calendar_config import CalendarConfig
from order_pipeline.core.domain.slots import SlotKey
from order_pipeline.core.ports.clock import Clock

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class SlotLimit:
    """Effective limit of a slot and why it has that limit."""

    limit: int
    reason: str
    holiday_name: str | None = None


class ConfiguredCalendar:
    """Read-only calendar oracle backed by a CalendarConfig.

    The configuration may be swapped with refresh(); readers always see one
    complete configuration, never a mix of two.
    """

    def __init__(self, config: CalendarConfig, clock: Clock) -> None:
        self._config = config
        self._clock = clock
        self._lock = threading.Lock()

    @property
    def config(self) -> CalendarConfig:
        return self._config

    @property
    def clock(self) -> Clock:
        return self._clock

    def now(self) -> datetime:
        return self._clock.now()

    def refresh(self, config: CalendarConfig) -> None:
        """Install a new calendar configuration."""
        with self._lock:
            self._config = config
        LOGGER.info(
            "Calendar configuration refreshed",
            extra={
                "timezone": config.timezone,
                "slot_minutes": config.slot_minutes,
                "holidays": len(config.holidays),
                "overrides": len(config.overrides),
            },
        )

    def time_buckets(self, day: date) -> list[str]:
        """Bucket start times (HH:MM) within opening hours, ignoring holidays."""
        return self._time_buckets(self._config, day)

    @staticmethod
    def _time_buckets(config: CalendarConfig, day: date) -> list[str]:
        hours = config.hours_for(day)
        if hours is None or hours.is_closed:
            return []

        step = timedelta(minutes=config.slot_minutes)
        cursor = datetime.combine(day, hours.open_time)
        close = datetime.combine(day, hours.close_time)

        buckets: list[str] = []
        while cursor + step <= close:
            buckets.append(cursor.strftime("%H:%M"))
            cursor += step
        return buckets

    def slot_start(self, slot: SlotKey) -> datetime:
        """Aware start time of slot in the calendar timezone."""
        return self._slot_start(self._config, slot)

    @staticmethod
    def _slot_start(config: CalendarConfig, slot: SlotKey) -> datetime:
        hour, minute = (int(part) for part in slot.time_bucket.split(":"))
        return datetime(
            slot.date.year,
            slot.date.month,
            slot.date.day,
            hour,
            minute,
            tzinfo=config.zone,
        )

    def slot_limit(self, slot: SlotKey) -> SlotLimit:
        """Effective capacity limit for slot right now."""
        config = self._config

        day_limit = self._day_closure(config, slot.date)
        if day_limit is not None:
            return day_limit

        if slot.time_bucket not in self._time_buckets(config, slot.date):
            return SlotLimit(limit=0, reason="outside_hours")

        if self._slot_start(config, slot) <= self._clock.now():
            return SlotLimit(limit=0, reason="past")

        override = config.override_for(slot.date, slot.time_bucket)
        limit = config.default_slot_capacity if override is None else override.max_orders
        return SlotLimit(limit=limit, reason="available")

    def day_closure(self, day: date) -> SlotLimit | None:
        """Return a zero limit if the whole day is closed, else None."""
        return self._day_closure(self._config, day)

    @staticmethod
    def _day_closure(config: CalendarConfig, day: date) -> SlotLimit | None:
        holiday = config.holiday_on(day)
        if holiday is not None and holiday.is_closed:
            return SlotLimit(limit=0, reason="holiday", holiday_name=holiday.name)

        hours = config.hours_for(day)
        if hours is None or hours.is_closed:
            return SlotLimit(limit=0, reason="closed_day")

        return None
