"""Business calendar configuration model."""

from __future__ import annotations

from datetime import date, time
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

_MINUTES_PER_DAY = 24 * 60


class BusinessHours(BaseModel):
    """Opening hours for one weekday (0=Monday .. 6=Sunday)."""

    day_of_week: int = Field(..., ge=0, le=6)
    open_time: time | None = None
    close_time: time | None = None
    is_closed: bool = False

    model_config = ConfigDict(extra="forbid", frozen=True)

    @model_validator(mode="after")
    def validate_hours(self) -> BusinessHours:
        if self.is_closed:
            return self
        if self.open_time is None or self.close_time is None:
            raise ValueError("open_time and close_time are required on open days")
        if self.open_time >= self.close_time:
            raise ValueError("open_time must be before close_time")
        return self


class Holiday(BaseModel):
    date: date
    name: str = Field(..., min_length=1)
    is_closed: bool = True

    model_config = ConfigDict(extra="forbid", frozen=True)


class CapacityOverride(BaseModel):
    """Per-date (or per-slot, when time_bucket is set) capacity override."""

    date: date
    time_bucket: str | None = Field(default=None, pattern=r"^([01]\d|2[0-3]):[0-5]\d$")
    max_orders: int = Field(..., ge=0)
    notes: str | None = None

    model_config = ConfigDict(extra="forbid", frozen=True)


def _default_business_hours() -> list[BusinessHours]:
    hours = [
        BusinessHours(day_of_week=day, open_time=time(9, 0), close_time=time(17, 0))
        for day in range(6)
    ]
    hours.append(BusinessHours(day_of_week=6, is_closed=True))
    return hours


class CalendarConfig(BaseModel):
    """Structured-only business calendar configuration.

    A weekday missing from business_hours is treated as closed. Override
    precedence: bucket-level, then date-level, then default_slot_capacity.
    """

    timezone: str = "UTC"
    slot_minutes: int = Field(default=60, gt=0, le=_MINUTES_PER_DAY)
    default_slot_capacity: int = Field(default=2, ge=0)

    business_hours: list[BusinessHours] = Field(default_factory=_default_business_hours)
    holidays: list[Holiday] = Field(default_factory=list)
    overrides: list[CapacityOverride] = Field(default_factory=list)

    model_config = ConfigDict(extra="forbid", frozen=True)

    @classmethod
    def from_json_obj(cls, obj: dict[str, Any]) -> CalendarConfig:
        """Create a CalendarConfig instance from a JSON-compatible object."""
        return cls.model_validate(obj)

    @classmethod
    def from_json_file(cls, path: str | Path) -> CalendarConfig:
        return cls.model_validate_json(Path(path).read_text(encoding="utf-8"))

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"unknown timezone {value!r}") from exc
        return value

    @model_validator(mode="after")
    def validate_consistency(self) -> CalendarConfig:
        """Validate internal consistency of the calendar configuration."""
        if _MINUTES_PER_DAY % self.slot_minutes != 0:
            raise ValueError("slot_minutes must divide a day evenly")

        days = [hours.day_of_week for hours in self.business_hours]
        if len(days) != len(set(days)):
            raise ValueError("business_hours lists a weekday more than once")

        holiday_dates = [holiday.date for holiday in self.holidays]
        if len(holiday_dates) != len(set(holiday_dates)):
            raise ValueError("holidays lists a date more than once")

        override_keys = [(o.date, o.time_bucket) for o in self.overrides]
        if len(override_keys) != len(set(override_keys)):
            raise ValueError("overrides lists a (date, time_bucket) more than once")

        return self

    @property
    def zone(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)

    def hours_for(self, day: date) -> BusinessHours | None:
        """Return the business hours for the weekday of day (None = not configured)."""
        weekday = day.weekday()
        for hours in self.business_hours:
            if hours.day_of_week == weekday:
                return hours
        return None

    def holiday_on(self, day: date) -> Holiday | None:
        for holiday in self.holidays:
            if holiday.date == day:
                return holiday
        return None

    def override_for(self, day: date, time_bucket: str) -> CapacityOverride | None:
        date_level: CapacityOverride | None = None
        for override in self.overrides:
            if override.date != day:
                continue
            if override.time_bucket == time_bucket:
                return override
            if override.time_bucket is None:
                date_level = override
        return date_level
