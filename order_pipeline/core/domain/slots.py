"""Capacity slot keys and reservation handles."""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass
from datetime import date, datetime

_TIME_BUCKET_RE = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")


@dataclass(frozen=True, slots=True)
class SlotKey:
    """Deterministic slot identifier for production capacity.

    The slot is defined by (date, time_bucket), where time_bucket is the
    bucket start formatted as HH:MM.
    """

    date: date
    time_bucket: str

    @classmethod
    def parse(cls, day: date | str, time_bucket: str) -> SlotKey:
        """Build a SlotKey from a date (or YYYY-MM-DD string) and an HH:MM bucket."""
        if isinstance(day, datetime):
            day = day.date()
        elif isinstance(day, str):
            try:
                day = date.fromisoformat(day)
            except ValueError as exc:
                raise ValueError(f"Invalid date format {day!r}; use YYYY-MM-DD") from exc

        if not isinstance(time_bucket, str) or not _TIME_BUCKET_RE.match(time_bucket):
            raise ValueError(f"Invalid time bucket {time_bucket!r}; use HH:MM")

        return cls(date=day, time_bucket=time_bucket)

    def __str__(self) -> str:
        return f"{self.date.isoformat()}T{self.time_bucket}"


@dataclass(frozen=True, slots=True)
class Reservation:
    """Handle for one consumed unit of a slot's capacity.

    Released exactly once through the allocator that issued it.
    """

    reservation_id: str
    slot: SlotKey
    reserved_at: datetime


def stable_reservation_id(slot: SlotKey, ticket: int, namespace: str) -> str:
    """Return a stable numeric string for the n-th reservation ever issued on a slot.

    The returned value is a decimal string representing a non-negative 63-bit
    integer. Tickets are monotonic per slot, so ids never repeat for a slot
    within a namespace.
    """
    if not namespace:
        raise ValueError("namespace must be non-empty")
    if ticket < 0:
        raise ValueError("ticket must be non-negative")

    payload = f"{slot.date.isoformat()}:{slot.time_bucket}:{ticket}:{namespace}".encode("utf-8")
    digest = hashlib.blake2b(payload, digest_size=8).digest()
    reservation_id = int.from_bytes(digest, "big") & ((1 << 63) - 1)
    return str(reservation_id)
