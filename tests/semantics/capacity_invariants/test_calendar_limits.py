"""
Semantic test: calendar-derived slot limits.

Invariant:
The effective limit of a slot comes from the business calendar: holidays
and closed weekdays have limit 0, buckets outside opening hours and past
slots have limit 0, overrides beat the default capacity (bucket-level
over date-level). Availability reads the live counters.
"""

from __future__ import annotations

from datetime import date, datetime, time, timezone

from order_pipeline.core.capacity.allocator import CapacityAllocator
from order_pipeline.core.capacity.calendar import ConfiguredCalendar
from order_pipeline.core.capacity.calendar_config import (
    BusinessHours,
    CalendarConfig,
    CapacityOverride,
    Holiday,
)
from order_pipeline.core.domain.slots import SlotKey
from order_pipeline.core.events.sinks.null_event_bus import NullEventBus
from order_pipeline.core.ports.clock import ManualClock

# Friday 2024-05-31 12:00 UTC. 2024-06-01 is a Saturday, 2024-06-02 a Sunday.
T0 = datetime(2024, 5, 31, 12, 0, tzinfo=timezone.utc)


def _config(**overrides) -> CalendarConfig:
    data = {
        "default_slot_capacity": 2,
        "holidays": [Holiday(date=date(2024, 6, 3), name="Bank holiday")],
        "overrides": [
            CapacityOverride(date=date(2024, 6, 4), max_orders=5, notes="wedding season"),
            CapacityOverride(date=date(2024, 6, 4), time_bucket="10:00", max_orders=0),
        ],
    }
    data.update(overrides)
    return CalendarConfig(**data)


def test_slot_limit_reasons() -> None:
    calendar = ConfiguredCalendar(_config(), ManualClock(T0))

    def limit(day: str, bucket: str):
        return calendar.slot_limit(SlotKey.parse(day, bucket))

    assert (limit("2024-06-01", "14:00").limit, limit("2024-06-01", "14:00").reason) == (2, "available")
    assert limit("2024-06-02", "14:00").reason == "closed_day"
    assert limit("2024-06-02", "14:00").limit == 0

    holiday = limit("2024-06-03", "14:00")
    assert (holiday.limit, holiday.reason, holiday.holiday_name) == (0, "holiday", "Bank holiday")

    assert limit("2024-06-01", "20:00").reason == "outside_hours"
    assert limit("2024-06-01", "17:00").reason == "outside_hours"
    assert limit("2024-06-01", "10:30").reason == "outside_hours"

    # Today's earlier slot has already started.
    past = limit("2024-05-31", "11:00")
    assert (past.limit, past.reason) == (0, "past")
    assert limit("2024-05-31", "12:00").reason == "past"
    assert limit("2024-05-31", "13:00").reason == "available"

    assert limit("2024-06-04", "14:00").limit == 5
    assert limit("2024-06-04", "10:00").limit == 0


def test_reserve_on_closed_slot_reports_reason() -> None:
    calendar = ConfiguredCalendar(_config(), ManualClock(T0))
    allocator = CapacityAllocator(calendar, NullEventBus())

    holiday = allocator.reserve("2024-06-03", "10:00")
    assert not holiday.success
    assert holiday.slot_reason == "holiday"

    assert allocator.reserve("2024-06-02", "10:00").slot_reason == "closed_day"
    assert allocator.reserve("2024-05-31", "09:00").slot_reason == "past"


def test_availability_reflects_live_counters() -> None:
    calendar = ConfiguredCalendar(_config(), ManualClock(T0))
    allocator = CapacityAllocator(calendar, NullEventBus())

    allocator.reserve("2024-06-01", "09:00")
    allocator.reserve("2024-06-01", "09:00")
    allocator.reserve("2024-06-01", "10:00")

    availability = allocator.availability("2024-06-01")
    by_bucket = {slot.time_bucket: slot for slot in availability.slots}

    assert availability.available
    assert availability.reason == "available"
    assert list(by_bucket) == ["09:00", "10:00", "11:00", "12:00", "13:00", "14:00", "15:00", "16:00"]
    assert (by_bucket["09:00"].remaining, by_bucket["09:00"].reason) == (0, "full")
    assert by_bucket["10:00"].remaining == 1
    assert by_bucket["16:00"].remaining == 2
    assert availability.remaining == 0 + 1 + 2 * 6


def test_availability_for_closed_days() -> None:
    calendar = ConfiguredCalendar(_config(), ManualClock(T0))
    allocator = CapacityAllocator(calendar, NullEventBus())

    sunday = allocator.availability(date(2024, 6, 2))
    assert not sunday.available
    assert sunday.reason == "closed_day"
    assert sunday.slots == []

    holiday = allocator.availability("2024-06-03")
    assert holiday.reason == "holiday"
    assert holiday.holiday_name == "Bank holiday"


def test_available_dates_skips_closed_and_full_days() -> None:
    config = _config(default_slot_capacity=1)
    calendar = ConfiguredCalendar(config, ManualClock(T0))
    allocator = CapacityAllocator(calendar, NullEventBus())

    for bucket in calendar.time_buckets(date(2024, 6, 1)):
        assert allocator.reserve("2024-06-01", bucket).success

    dates = allocator.available_dates("2024-05-31", 6)

    # 06-01 full, 06-02 Sunday, 06-03 holiday.
    assert dates == [date(2024, 5, 31), date(2024, 6, 4), date(2024, 6, 5)]


def test_refresh_swaps_configuration() -> None:
    calendar = ConfiguredCalendar(_config(), ManualClock(T0))
    allocator = CapacityAllocator(calendar, NullEventBus())
    assert allocator.reserve("2024-06-01", "14:00").success

    sunday_open = [
        BusinessHours(day_of_week=day, open_time=time(8, 0), close_time=time(12, 0))
        for day in range(7)
    ]
    calendar.refresh(_config(default_slot_capacity=1, business_hours=sunday_open))

    assert calendar.slot_limit(SlotKey.parse("2024-06-02", "08:00")).reason == "available"
    assert calendar.slot_limit(SlotKey.parse("2024-06-01", "14:00")).reason == "outside_hours"

    # Lowering a limit keeps existing bookings but blocks new ones.
    calendar.refresh(_config(default_slot_capacity=1))
    assert allocator.booked("2024-06-01", "14:00") == 1
    assert not allocator.reserve("2024-06-01", "14:00").success


def test_calendar_timezone_drives_past_check() -> None:
    # 12:00 UTC is 14:00 in Berlin (CEST).
    config = _config(timezone="Europe/Berlin")
    calendar = ConfiguredCalendar(config, ManualClock(T0))

    assert calendar.slot_limit(SlotKey.parse("2024-05-31", "13:00")).reason == "past"
    assert calendar.slot_limit(SlotKey.parse("2024-05-31", "15:00")).reason == "available"
