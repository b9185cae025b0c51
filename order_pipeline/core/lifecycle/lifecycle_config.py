"""Lifecycle configuration model."""

from __future__ import annotations

from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

from order_pipeline.core.capacity.calendar_config import CalendarConfig


class AllocatorConfig(BaseModel):
    # Optimistic compare-and-set rounds before reserve() decides under the slot lock.
    max_cas_retries: int = Field(default=8, ge=1, le=1000)

    model_config = ConfigDict(extra="forbid", frozen=True)


class SchedulerConfig(BaseModel):
    unpaid_timeout_minutes: float = Field(default=30, gt=0)
    ready_autocomplete_hours: float = Field(default=24, gt=0)
    unstarted_reminder_hours: float = Field(default=12, gt=0)

    model_config = ConfigDict(extra="forbid", frozen=True)


class CancellationTier(BaseModel):
    """Refund granted to a paid order cancelled at least hours_before_needed before its slot."""

    hours_before_needed: float = Field(..., ge=0)
    refund_percentage: int = Field(..., ge=0, le=100)
    description: str | None = None

    model_config = ConfigDict(extra="forbid", frozen=True)


def _default_cancellation_tiers() -> list[CancellationTier]:
    return [
        CancellationTier(hours_before_needed=48, refund_percentage=100, description="Full refund"),
        CancellationTier(hours_before_needed=24, refund_percentage=50, description="Partial refund"),
    ]


class CancellationPolicyConfig(BaseModel):
    """Refund tiers by lead time. The tier with the largest threshold not
    above the remaining lead time applies; no tier means no refund.
    """

    tiers: list[CancellationTier] = Field(default_factory=_default_cancellation_tiers)

    model_config = ConfigDict(extra="forbid", frozen=True)

    @model_validator(mode="after")
    def validate_tiers(self) -> CancellationPolicyConfig:
        thresholds = [tier.hours_before_needed for tier in self.tiers]
        if len(thresholds) != len(set(thresholds)):
            raise ValueError("tiers lists an hours_before_needed more than once")
        return self

    def tier_for(self, hours_before: float) -> CancellationTier | None:
        eligible = [tier for tier in self.tiers if hours_before >= tier.hours_before_needed]
        return max(eligible, key=lambda tier: tier.hours_before_needed, default=None)

    def refund_percentage(self, hours_before: float) -> int:
        tier = self.tier_for(hours_before)
        return 0 if tier is None else tier.refund_percentage


class LifecycleConfig(BaseModel):
    """Structured-only configuration for the order lifecycle core."""

    calendar: CalendarConfig = Field(default_factory=CalendarConfig)
    allocator: AllocatorConfig = Field(default_factory=AllocatorConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    cancellation: CancellationPolicyConfig = Field(default_factory=CancellationPolicyConfig)

    # Path of the JSONL audit trail; None keeps the trail in memory only.
    audit_path: Path | None = None

    model_config = ConfigDict(extra="forbid", frozen=True)

    @classmethod
    def from_json_obj(cls, obj: dict[str, Any]) -> LifecycleConfig:
        """Create a LifecycleConfig instance from a JSON-compatible object."""
        return cls.model_validate(obj)

    @classmethod
    def from_json_file(cls, path: str | Path) -> LifecycleConfig:
        return cls.model_validate_json(Path(path).read_text(encoding="utf-8"))
