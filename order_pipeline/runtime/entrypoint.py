from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from order_pipeline.core.audit.audit_trail import load_records, replay_statuses
from order_pipeline.core.capacity.allocator import CapacityAllocator
from order_pipeline.core.capacity.calendar import ConfiguredCalendar
from order_pipeline.core.events.sinks.null_event_bus import NullEventBus
from order_pipeline.core.lifecycle.lifecycle_config import LifecycleConfig
from order_pipeline.core.ports.clock import SystemClock

LOGGER = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _load_config(path: Path) -> LifecycleConfig:
    if not path.exists():
        raise FileNotFoundError(path)
    return LifecycleConfig.from_json_file(path)


def _print_json(obj: Any) -> None:
    print(json.dumps(obj, indent=2, sort_keys=True, default=str))


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def cmd_validate_config(args: argparse.Namespace) -> int:
    try:
        config = _load_config(args.config)
    except ValidationError as exc:
        print(str(exc), file=sys.stderr)
        return 1

    _print_json(config.model_dump(mode="json"))
    return 0


def cmd_availability(args: argparse.Namespace) -> int:
    config = _load_config(args.config)
    calendar = ConfiguredCalendar(config.calendar, SystemClock())
    allocator = CapacityAllocator(
        calendar,
        NullEventBus(),
        max_cas_retries=config.allocator.max_cas_retries,
    )

    if args.days > 1:
        dates = allocator.available_dates(args.date, args.days)
    else:
        dates = [args.date]

    _print_json([allocator.availability(day).model_dump(mode="json") for day in dates])
    return 0


def cmd_replay_audit(args: argparse.Namespace) -> int:
    records = load_records(args.audit)
    statuses = replay_statuses(records)

    _print_json(
        {
            "records": len(records),
            "orders": {str(order_id): status for order_id, status in statuses.items()},
        }
    )
    return 0


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        "order-pipeline",
        description="Order lifecycle and slot capacity tooling",
    )
    parser.add_argument("--log-level", type=str, default="WARNING")

    sub = parser.add_subparsers(dest="command", required=True)

    validate = sub.add_parser("validate-config", help="Validate a lifecycle config file")
    validate.add_argument("--config", type=Path, required=True)
    validate.set_defaults(func=cmd_validate_config)

    availability = sub.add_parser(
        "availability",
        help="Show slot capacity for a date from the calendar (no bookings)",
    )
    availability.add_argument("--config", type=Path, required=True)
    availability.add_argument("--date", type=str, required=True, help="YYYY-MM-DD")
    availability.add_argument(
        "--days",
        type=int,
        default=1,
        help="List the bookable dates among the next N days instead",
    )
    availability.set_defaults(func=cmd_availability)

    replay = sub.add_parser("replay-audit", help="Replay a JSONL audit trail")
    replay.add_argument("--audit", type=Path, required=True)
    replay.set_defaults(func=cmd_replay_audit)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    return int(args.func(args))


if __name__ == "__main__":
    sys.exit(main())
