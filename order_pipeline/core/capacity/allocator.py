"""Capacity allocator.

Owns the per-slot booking counters and enforces booked <= limit under any
interleaving of concurrent reserve/release calls.

Counters are immutable snapshots swapped by compare-and-set, each slot
guarded by its own lock. reserve() first tries a bounded number of
optimistic read/check/CAS rounds; if it keeps losing races it takes the
slot lock and decides there, so every call ends in a definite outcome and
a slot with free capacity is never reported full.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import TYPE_CHECKING

from order_pipeline.core.domain.errors import ConcurrencyConflict, ReservationFault
from order_pipeline.core.domain.keyed_locks import KeyedLocks
from order_pipeline.core.domain.reject_reasons import RejectReason
from order_pipeline.core.domain.slots import Reservation, SlotKey, stable_reservation_id
from order_pipeline.core.domain.types import DateAvailability, SlotAvailability
from order_pipeline.core.events.events import (
    CapacityRejectedEvent,
    SlotReleasedEvent,
    SlotReservedEvent,
)

if TYPE_CHECKING:
    from order_pipeline.core.capacity.calendar import ConfiguredCalendar, SlotLimit
    from order_pipeline.core.events.event_bus import EventBus

LOGGER = logging.getLogger(__name__)

DEFAULT_MAX_CAS_RETRIES = 8
RESERVATION_NAMESPACE = "slot-reservation-v1"

# Tickets a slot may have issued without an audit record (rolled back reservations).
MAX_UNRECORDED_TICKETS = 10_000


# ---------------------------------------------------------------------------
# Slot counters
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class SlotCounter:
    """Immutable state of one slot.

    - booked: units currently held
    - issued: reservations ever issued (ticket source for reservation ids)
    - version: bumped on every change, used by compare-and-set
    - held: ids of reservations currently held
    """

    booked: int = 0
    issued: int = 0
    version: int = 0
    held: frozenset[str] = field(default_factory=frozenset)

    def with_reservation(self, reservation_id: str) -> SlotCounter:
        return SlotCounter(
            booked=self.booked + 1,
            issued=self.issued + 1,
            version=self.version + 1,
            held=self.held | {reservation_id},
        )

    def without_reservation(self, reservation_id: str) -> SlotCounter:
        return SlotCounter(
            booked=self.booked - 1,
            issued=self.issued,
            version=self.version + 1,
            held=self.held - {reservation_id},
        )


class SlotCounterStore:
    """Addressable map of slot key -> SlotCounter.

    Slots are materialized lazily with booked = 0 and never deleted.
    """

    def __init__(self) -> None:
        self._counters: dict[SlotKey, SlotCounter] = {}
        self._locks = KeyedLocks()

    @contextmanager
    def lock(self, slot: SlotKey) -> Iterator[None]:
        with self._locks.get(slot):
            yield

    def get(self, slot: SlotKey) -> SlotCounter:
        counter = self._counters.get(slot)
        if counter is not None:
            return counter
        with self.lock(slot):
            return self._counters.setdefault(slot, SlotCounter())

    def peek(self, slot: SlotKey) -> SlotCounter | None:
        """Current counter without materializing the slot."""
        return self._counters.get(slot)

    def compare_and_set(self, slot: SlotKey, expected: SlotCounter, new: SlotCounter) -> None:
        """Install new if the stored counter is still expected, else raise ConcurrencyConflict."""
        with self.lock(slot):
            current = self._counters.get(slot, SlotCounter())
            if current.version != expected.version:
                raise ConcurrencyConflict(
                    f"slot {slot} moved from version {expected.version} to {current.version}"
                )
            self._counters[slot] = new

    def restore(self, slot: SlotKey, counter: SlotCounter) -> None:
        """Install counter on a slot no reservation has touched yet."""
        with self.lock(slot):
            current = self._counters.get(slot)
            if current is not None and current.version != 0:
                raise ConcurrencyConflict(f"slot {slot} is already in use (version {current.version})")
            self._counters[slot] = counter

    def slots_on(self, day: date) -> dict[str, SlotCounter]:
        return {
            slot.time_bucket: counter
            for slot, counter in list(self._counters.items())
            if slot.date == day
        }


# ---------------------------------------------------------------------------
# Outcomes
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class ReservationOutcome:
    """Result of a reserve() call.

    Exactly one of reservation / reject_reason is set.
    """

    slot: SlotKey
    reservation: Reservation | None
    reject_reason: str | None
    limit: int
    booked: int
    slot_reason: str = "available"

    @property
    def success(self) -> bool:
        return self.reservation is not None


# ---------------------------------------------------------------------------
# Allocator
# ---------------------------------------------------------------------------


class CapacityAllocator:
    """Reserve, release and report capacity per (date, time bucket) slot."""

    def __init__(
        self,
        calendar: ConfiguredCalendar,
        event_bus: EventBus,
        *,
        max_cas_retries: int = DEFAULT_MAX_CAS_RETRIES,
        store: SlotCounterStore | None = None,
    ) -> None:
        if max_cas_retries < 1:
            raise ValueError("max_cas_retries must be >= 1")

        self._calendar = calendar
        self._event_bus = event_bus
        self._max_cas_retries = int(max_cas_retries)
        self._store = store if store is not None else SlotCounterStore()

        # Observability only.
        self.cas_conflicts = 0
        self.locked_fallbacks = 0

    @property
    def calendar(self) -> ConfiguredCalendar:
        return self._calendar

    # ---------------------------------------------------------------------
    # Reserve
    # ---------------------------------------------------------------------

    def reserve(self, day: date | str, time_bucket: str) -> ReservationOutcome:
        """Take one unit of capacity on (day, time_bucket)."""
        return self.reserve_slot(SlotKey.parse(day, time_bucket))

    def reserve_slot(self, slot: SlotKey) -> ReservationOutcome:
        slot_limit = self._calendar.slot_limit(slot)

        for attempt in range(self._max_cas_retries):
            current = self._store.get(slot)
            if current.booked >= slot_limit.limit:
                return self._rejected(slot, current, slot_limit)

            reservation = self._new_reservation(slot, current)
            try:
                self._store.compare_and_set(slot, current, current.with_reservation(reservation.reservation_id))
            except ConcurrencyConflict:
                self.cas_conflicts += 1
                LOGGER.debug(
                    "Slot reservation lost a race; retrying",
                    extra={"slot": str(slot), "attempt": attempt + 1},
                )
                continue

            return self._reserved(slot, current.booked + 1, slot_limit, reservation)

        # Contention outlasted the optimistic budget: decide under the slot lock.
        self.locked_fallbacks += 1
        with self._store.lock(slot):
            current = self._store.get(slot)
            locked_reservation: Reservation | None = None
            if current.booked < slot_limit.limit:
                locked_reservation = self._new_reservation(slot, current)
                self._store.compare_and_set(
                    slot, current, current.with_reservation(locked_reservation.reservation_id)
                )

        if locked_reservation is None:
            return self._rejected(slot, current, slot_limit)
        return self._reserved(slot, current.booked + 1, slot_limit, locked_reservation)

    def _new_reservation(self, slot: SlotKey, current: SlotCounter) -> Reservation:
        return Reservation(
            reservation_id=stable_reservation_id(slot, current.issued, RESERVATION_NAMESPACE),
            slot=slot,
            reserved_at=self._calendar.now(),
        )

    def _reserved(
        self,
        slot: SlotKey,
        booked: int,
        slot_limit: SlotLimit,
        reservation: Reservation,
    ) -> ReservationOutcome:
        self._emit(
            SlotReservedEvent(
                timestamp=reservation.reserved_at,
                slot_date=slot.date,
                time_bucket=slot.time_bucket,
                reservation_id=reservation.reservation_id,
                booked=booked,
                limit=slot_limit.limit,
            )
        )
        return ReservationOutcome(
            slot=slot,
            reservation=reservation,
            reject_reason=None,
            limit=slot_limit.limit,
            booked=booked,
            slot_reason=slot_limit.reason,
        )

    def _rejected(self, slot: SlotKey, current: SlotCounter, slot_limit: SlotLimit) -> ReservationOutcome:
        slot_reason = "full" if slot_limit.reason == "available" else slot_limit.reason
        LOGGER.info(
            "Slot reservation rejected",
            extra={
                "slot": str(slot),
                "booked": current.booked,
                "limit": slot_limit.limit,
                "slot_reason": slot_reason,
            },
        )
        self._emit(
            CapacityRejectedEvent(
                timestamp=self._calendar.now(),
                slot_date=slot.date,
                time_bucket=slot.time_bucket,
                booked=current.booked,
                limit=slot_limit.limit,
                slot_reason=slot_reason,
            )
        )
        return ReservationOutcome(
            slot=slot,
            reservation=None,
            reject_reason=RejectReason.CAPACITY_EXCEEDED,
            limit=slot_limit.limit,
            booked=current.booked,
            slot_reason=slot_reason,
        )

    # ---------------------------------------------------------------------
    # Release
    # ---------------------------------------------------------------------

    def is_held(self, reservation: Reservation) -> bool:
        counter = self._store.peek(reservation.slot)
        return counter is not None and reservation.reservation_id in counter.held

    def release(self, reservation: Reservation) -> None:
        """Give back one unit. Releasing a reservation that is not held raises ReservationFault."""
        slot = reservation.slot
        with self._store.lock(slot):
            current = self._store.peek(slot)
            if current is None or reservation.reservation_id not in current.held:
                raise ReservationFault(
                    f"reservation {reservation.reservation_id} is not held on slot {slot}"
                )
            self._store.compare_and_set(slot, current, current.without_reservation(reservation.reservation_id))
            booked = current.booked - 1

        self._emit(
            SlotReleasedEvent(
                timestamp=self._calendar.now(),
                slot_date=slot.date,
                time_bucket=slot.time_bucket,
                reservation_id=reservation.reservation_id,
                booked=booked,
            )
        )

    # ---------------------------------------------------------------------
    # Restore
    # ---------------------------------------------------------------------

    def restore_slot(self, slot: SlotKey, held_ids: Iterable[str], issued_ids: Iterable[str]) -> None:
        """Seed a slot counter from reservations replayed out of the audit trail.

        held_ids become the held reservations; issued_ids are every id the
        slot ever handed out. The ticket counter is advanced past all of them
        so new reservations never reuse a recorded id. The calendar limit is
        not checked: restored bookings were admitted under the limit in force
        when they were made.
        """
        held = frozenset(held_ids)
        pending = set(issued_ids) | held
        budget = len(pending) + MAX_UNRECORDED_TICKETS

        issued = 0
        while pending:
            if issued >= budget:
                raise ReservationFault(
                    f"slot {slot}: reservation ids {sorted(pending)} were not issued by this allocator"
                )
            pending.discard(stable_reservation_id(slot, issued, RESERVATION_NAMESPACE))
            issued += 1

        self._store.restore(
            slot,
            SlotCounter(booked=len(held), issued=issued, version=1, held=held),
        )
        LOGGER.info(
            "Slot counter restored",
            extra={"slot": str(slot), "booked": len(held), "issued": issued},
        )

    # ---------------------------------------------------------------------
    # Queries
    # ---------------------------------------------------------------------

    def booked(self, day: date | str, time_bucket: str) -> int:
        counter = self._store.peek(SlotKey.parse(day, time_bucket))
        return 0 if counter is None else counter.booked

    def availability(self, day: date | str) -> DateAvailability:
        """Remaining capacity per time bucket, read from the live counters."""
        day = SlotKey.parse(day, "00:00").date

        closure = self._calendar.day_closure(day)
        booked_by_bucket = self._store.slots_on(day)

        if closure is not None:
            return DateAvailability(
                date=day,
                available=False,
                reason=closure.reason,
                holiday_name=closure.holiday_name,
                slots=[],
            )

        slots: list[SlotAvailability] = []
        for bucket in self._calendar.time_buckets(day):
            slot_limit = self._calendar.slot_limit(SlotKey(date=day, time_bucket=bucket))
            counter = booked_by_bucket.get(bucket)
            booked = 0 if counter is None else counter.booked
            remaining = max(0, slot_limit.limit - booked)

            reason = slot_limit.reason
            if reason == "available" and remaining == 0:
                reason = "full"

            slots.append(
                SlotAvailability(
                    time_bucket=bucket,
                    limit=slot_limit.limit,
                    booked=booked,
                    remaining=remaining,
                    reason=reason,
                )
            )

        available = any(slot.remaining > 0 for slot in slots)
        if available:
            day_reason = "available"
        elif slots and all(slot.reason == "past" for slot in slots):
            day_reason = "past"
        elif slots:
            day_reason = "full"
        else:
            day_reason = "outside_hours"

        return DateAvailability(date=day, available=available, reason=day_reason, slots=slots)

    def available_dates(self, start: date | str, days: int) -> list[date]:
        """Dates in [start, start + days) with at least one bookable unit."""
        if days < 0:
            raise ValueError("days must be >= 0")
        first = SlotKey.parse(start, "00:00").date
        return [
            day
            for day in (first + timedelta(days=offset) for offset in range(days))
            if self.availability(day).available
        ]

    def _emit(self, event: object) -> None:
        # Counters are already updated; a failing subscriber must not leak a unit.
        try:
            self._event_bus.emit(event)
        except Exception:  # pylint: disable=broad-exception-caught
            LOGGER.exception(
                "Capacity event publication failed",
                extra={"event_type": type(event).__name__},
            )
