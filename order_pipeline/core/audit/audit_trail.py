"""Append-only audit trail of order transitions.

Two streams are kept:
- records: one TransitionRecord per committed transition, per-order
  sequence numbers in commit order. Never updated or deleted.
- attempts: one TransitionAttempt per request, whatever its outcome.

OrderLifecycle writes the record before it swaps the order snapshot, while
holding the order lock, so no status change exists without a record. While
the process runs, reconcile() finds an order whose last record is ahead of
its stored status; after a restart replay_orders() rebuilds every order
from the records, so the trail wins.
"""

from __future__ import annotations

import json
import logging
import threading
from collections.abc import Iterable
from dataclasses import replace
from pathlib import Path
from typing import Any, Protocol

from pydantic import ValidationError

from order_pipeline.core.domain.errors import AuditWriteError
from order_pipeline.core.domain.keyed_locks import KeyedLocks
from order_pipeline.core.domain.slots import Reservation, SlotKey
from order_pipeline.core.domain.state import Order
from order_pipeline.core.domain.types import OrderId, TransitionAttempt, TransitionRecord

LOGGER = logging.getLogger(__name__)


class AuditTrail(Protocol):
    def next_sequence(self, order_id: OrderId) -> int:
        """Sequence number the next committed record of order_id must carry."""

    def record(self, record: TransitionRecord) -> None:
        """Append a committed transition. Raises AuditWriteError on failure."""

    def record_attempt(self, attempt: TransitionAttempt) -> None:
        """Append an attempt entry (observability)."""

    def history(self, order_id: OrderId) -> list[TransitionRecord]:
        """Committed records of order_id in commit order."""

    def attempts(self, order_id: OrderId) -> list[TransitionAttempt]:
        """Attempt entries of order_id in arrival order."""

    def last_record(self, order_id: OrderId) -> TransitionRecord | None:
        """Most recent committed record of order_id, None if it has none."""

    def order_ids(self) -> list[OrderId]:
        """Orders with at least one committed record."""


class InMemoryAuditTrail:
    """Audit trail held in process memory."""

    def __init__(self, records: Iterable[TransitionRecord] | None = None) -> None:
        self._records: dict[OrderId, list[TransitionRecord]] = {}
        self._attempts: dict[OrderId, list[TransitionAttempt]] = {}
        self._locks = KeyedLocks()

        for record in records or ():
            self._append(record)

    def next_sequence(self, order_id: OrderId) -> int:
        return len(self._records.get(order_id, ()))

    def record(self, record: TransitionRecord) -> None:
        self._append(record)

    def _append(self, record: TransitionRecord) -> None:
        with self._locks.get(record.order_id):
            self.check_next(record)
            self._records.setdefault(record.order_id, []).append(record)

    def check_next(self, record: TransitionRecord) -> None:
        """Raise AuditWriteError unless record extends the order's history."""
        with self._locks.get(record.order_id):
            bucket = self._records.get(record.order_id, [])

            expected = len(bucket)
            if record.sequence != expected:
                raise AuditWriteError(
                    f"order {record.order_id!r}: record sequence {record.sequence}, expected {expected}"
                )
            if not bucket and record.previous_status is not None:
                raise AuditWriteError(f"order {record.order_id!r}: history must start at creation")
            if bucket and bucket[-1].new_status != record.previous_status:
                raise AuditWriteError(
                    f"order {record.order_id!r}: record starts from {record.previous_status!r}, "
                    f"history ends at {bucket[-1].new_status!r}"
                )

    def record_attempt(self, attempt: TransitionAttempt) -> None:
        with self._locks.get(attempt.order_id):
            self._attempts.setdefault(attempt.order_id, []).append(attempt)

    def history(self, order_id: OrderId) -> list[TransitionRecord]:
        with self._locks.get(order_id):
            return list(self._records.get(order_id, ()))

    def attempts(self, order_id: OrderId) -> list[TransitionAttempt]:
        with self._locks.get(order_id):
            return list(self._attempts.get(order_id, ()))

    def last_record(self, order_id: OrderId) -> TransitionRecord | None:
        with self._locks.get(order_id):
            bucket = self._records.get(order_id)
            return bucket[-1] if bucket else None

    def order_ids(self) -> list[OrderId]:
        return list(self._records)

    def all_records(self) -> list[TransitionRecord]:
        """Every committed record, ordered by timestamp then per-order sequence."""
        flat = [record for bucket in list(self._records.values()) for record in list(bucket)]
        return sorted(flat, key=lambda r: (r.timestamp, str(r.order_id), r.sequence))


class JsonlAuditTrail(InMemoryAuditTrail):
    """Audit trail that also appends every entry as a JSON line to a file.

    The line is written and flushed before the in-memory append, so a record
    visible in memory is always on disk. Existing files are replayed on open.
    """

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        existing = load_records(self._path) if self._path.exists() else []
        super().__init__(records=existing)

        self._fh = self._path.open("a", encoding="utf-8")
        self._file_lock = threading.Lock()
        self._closed = False

        LOGGER.info(
            "Audit trail opened",
            extra={"path": str(self._path), "replayed_records": len(existing)},
        )

    @property
    def path(self) -> Path:
        return self._path

    def record(self, record: TransitionRecord) -> None:
        self.check_next(record)
        self._write_line("transition", record.model_dump(mode="json"))
        super().record(record)

    def record_attempt(self, attempt: TransitionAttempt) -> None:
        self._write_line("attempt", attempt.model_dump(mode="json"))
        super().record_attempt(attempt)

    def _write_line(self, kind: str, payload: dict) -> None:
        line = json.dumps({"kind": kind, **payload})
        with self._file_lock:
            if self._closed:
                raise AuditWriteError(f"audit trail {self._path} is closed")
            try:
                self._fh.write(line + "\n")
                self._fh.flush()
            except OSError as exc:
                raise AuditWriteError(f"failed to append to {self._path}") from exc

    def close(self) -> None:
        with self._file_lock:
            if self._closed:
                return
            self._fh.flush()
            self._fh.close()
            self._closed = True


def load_records(path: str | Path) -> list[TransitionRecord]:
    """Replay the committed records of a JSONL audit file, in file order.

    A truncated last line (crash mid-write) is skipped with a warning; any
    other malformed line raises.
    """
    records: list[TransitionRecord] = []
    lines = Path(path).read_text(encoding="utf-8").splitlines()

    for index, line in enumerate(lines):
        if not line.strip():
            continue
        try:
            obj = json.loads(line)
        except json.JSONDecodeError:
            if index == len(lines) - 1:
                LOGGER.warning("Skipping truncated audit line", extra={"path": str(path), "line": index + 1})
                continue
            raise

        if obj.pop("kind", None) != "transition":
            continue
        try:
            records.append(TransitionRecord.model_validate(obj))
        except ValidationError:
            LOGGER.exception("Invalid audit record", extra={"path": str(path), "line": index + 1})
            raise

    return records


def replay_statuses(records: Iterable[TransitionRecord]) -> dict[OrderId, str]:
    """Status of each order according to the audit trail alone."""
    statuses: dict[OrderId, str] = {}
    for record in records:
        statuses[record.order_id] = record.new_status
    return statuses


def replay_orders(history: Iterable[TransitionRecord]) -> dict[OrderId, Order]:
    """Order snapshots rebuilt from committed records alone.

    history must list each order's records in sequence order (records of
    different orders may interleave). The trail does not carry payment
    status or customer: an order whose history proves a payment (a
    confirmation, or a cancellation that required a refund) comes back as
    'paid', any other as 'unset' until the payment collaborator reports
    again; customer_id is not restored.
    """
    orders: dict[OrderId, Order] = {}

    for record in history:
        meta = record.metadata
        order = orders.get(record.order_id)

        if order is None:
            if record.previous_status is not None or meta.slot_date is None or meta.time_bucket is None:
                raise ValueError(f"order {record.order_id!r}: history does not start with a creation record")
            orders[record.order_id] = Order(
                order_id=record.order_id,
                requested_slot=SlotKey.parse(meta.slot_date, meta.time_bucket),
                created_at=record.timestamp,
                status=record.new_status,
            )
            continue

        changes: dict[str, Any] = {"status": record.new_status}

        if meta.reservation_id is not None:
            changes["reservation"] = Reservation(
                reservation_id=meta.reservation_id,
                slot=SlotKey.parse(meta.slot_date, meta.time_bucket),
                reserved_at=record.timestamp,
            )
            changes["payment_status"] = "paid"

        if record.new_status == "confirmed":
            changes["confirmed_at"] = record.timestamp
            changes["time_to_confirm_minutes"] = meta.time_to_confirm_minutes
        elif record.new_status == "ready":
            if order.ready_at is None:
                changes["ready_at"] = record.timestamp
            changes["time_to_ready_minutes"] = meta.time_to_ready_minutes
        elif record.new_status == "completed":
            changes["completed_at"] = record.timestamp
            changes["time_to_complete_minutes"] = meta.time_to_complete_minutes
        elif record.new_status == "cancelled":
            changes["cancelled_at"] = record.timestamp
            changes["reservation"] = None
            if meta.refund_required:
                changes["payment_status"] = "paid"

        orders[record.order_id] = replace(order, **changes)

    return orders
