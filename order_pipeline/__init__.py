"""Public API for the order_pipeline package.

Only symbols imported here are considered part of the stable,
supported external interface.
"""

from __future__ import annotations

from importlib.metadata import PackageNotFoundError, version

# ----------------------------------------------------------------------
# Audit API
# ----------------------------------------------------------------------
from order_pipeline.core.audit.audit_trail import (
    AuditTrail,
    InMemoryAuditTrail,
    JsonlAuditTrail,
    load_records,
    replay_orders,
)

# ----------------------------------------------------------------------
# Capacity API
# ----------------------------------------------------------------------
from order_pipeline.core.capacity.allocator import CapacityAllocator, ReservationOutcome
from order_pipeline.core.capacity.calendar import ConfiguredCalendar
from order_pipeline.core.capacity.calendar_config import (
    BusinessHours,
    CalendarConfig,
    CapacityOverride,
    Holiday,
)

# ----------------------------------------------------------------------
# Domain Types
# ----------------------------------------------------------------------
from order_pipeline.core.domain.errors import (
    AuditWriteError,
    DuplicateOrderError,
    OrderNotFoundError,
    OrderPipelineError,
    ReservationFault,
)
from order_pipeline.core.domain.reject_reasons import RejectReason
from order_pipeline.core.domain.slots import Reservation, SlotKey
from order_pipeline.core.domain.state import Order, OrderRepository
from order_pipeline.core.domain.types import (
    DateAvailability,
    SlotAvailability,
    TransitionAttempt,
    TransitionMetadata,
    TransitionRecord,
)

# ----------------------------------------------------------------------
# Events
# ----------------------------------------------------------------------
from order_pipeline.core.events.event_bus import EventBus
from order_pipeline.core.events.events import (
    OrderReminderEvent,
    OrderTransitionEvent,
    TransitionRejectedEvent,
)

# ----------------------------------------------------------------------
# Lifecycle API
# ----------------------------------------------------------------------
from order_pipeline.core.lifecycle.lifecycle import OrderLifecycle, TransitionResult
from order_pipeline.core.lifecycle.lifecycle_config import (
    AllocatorConfig,
    CancellationPolicyConfig,
    CancellationTier,
    LifecycleConfig,
    SchedulerConfig,
)
from order_pipeline.core.lifecycle.scheduler import LifecycleScheduler, SchedulerReport
from order_pipeline.core.ports.clock import Clock, ManualClock, SystemClock

# ----------------------------------------------------------------------
# Public API definition
# ----------------------------------------------------------------------

__all__ = [
    # Lifecycle
    "OrderLifecycle",
    "TransitionResult",
    "LifecycleScheduler",
    "SchedulerReport",

    # Config
    "LifecycleConfig",
    "AllocatorConfig",
    "SchedulerConfig",
    "CancellationPolicyConfig",
    "CancellationTier",
    "CalendarConfig",
    "BusinessHours",
    "Holiday",
    "CapacityOverride",

    # Capacity
    "CapacityAllocator",
    "ReservationOutcome",
    "ConfiguredCalendar",
    "SlotKey",
    "Reservation",
    "DateAvailability",
    "SlotAvailability",

    # Orders and audit
    "Order",
    "OrderRepository",
    "TransitionRecord",
    "TransitionAttempt",
    "TransitionMetadata",
    "AuditTrail",
    "InMemoryAuditTrail",
    "JsonlAuditTrail",
    "load_records",
    "replay_orders",

    # Errors
    "RejectReason",
    "OrderPipelineError",
    "ReservationFault",
    "AuditWriteError",
    "DuplicateOrderError",
    "OrderNotFoundError",

    # Events and ports
    "EventBus",
    "OrderTransitionEvent",
    "TransitionRejectedEvent",
    "OrderReminderEvent",
    "Clock",
    "SystemClock",
    "ManualClock",

    # Version
    "__version__",
]

# ----------------------------------------------------------------------
# Package version
# ----------------------------------------------------------------------

try:
    __version__ = version("order-pipeline")
except PackageNotFoundError:
    __version__ = "0.0.0"
