"""Autoscaling schemas.

Key Components:
    AutoscalerConfig: Per-service control loop configuration
    MetricSample: A single observation read from the metrics source
    ScalingDirection: Direction of a scaling decision
    ScalingDecision: Outcome of one autoscaler tick
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, model_validator


class AutoscalerConfig(BaseModel):
    """Control loop configuration for one service.

    The loop computes ``current * observed / target``, clamps to
    ``[min_instances, max_instances]`` and rounds half up.

    Attributes:
        enabled: Whether a control loop runs for the service.
        metric: Metric queried from the metrics source.
        target_value: Target value of the metric (e.g., 60 for 60% CPU).
        window_seconds: Trailing window of samples averaged per tick.
        tick_interval_seconds: Delay between ticks.
        min_instances: Lower bound for the instance count.
        max_instances: Upper bound for the instance count.
        min_change: Smallest instance delta worth applying.
        stabilization_window_seconds: Scale-down suppression after a scale-up.
        missed_ticks_alert_threshold: Consecutive skipped ticks raising an alert.

    Examples:
        >>> config = AutoscalerConfig(min_instances=2, max_instances=20)
        >>> config.stabilization_window_seconds
        300.0
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    enabled: bool = Field(default=True)
    metric: str = Field(default="cpu_utilization", min_length=1)
    target_value: float = Field(default=60.0, gt=0.0)
    window_seconds: float = Field(default=300.0, gt=0.0)
    tick_interval_seconds: float = Field(default=30.0, gt=0.0)
    min_instances: int = Field(default=1, ge=0)
    max_instances: int = Field(default=10, ge=1)
    min_change: int = Field(default=1, ge=1)
    stabilization_window_seconds: float = Field(default=300.0, ge=0.0)
    missed_ticks_alert_threshold: int = Field(default=3, ge=1)

    @model_validator(mode="after")
    def validate_bounds(self) -> AutoscalerConfig:
        """Validate min_instances <= max_instances."""
        if self.min_instances > self.max_instances:
            raise ValueError(
                f"min_instances ({self.min_instances}) must be <= "
                f"max_instances ({self.max_instances})"
            )
        return self

    def clamp(self, count: int) -> int:
        """Clamp an instance count into the configured bounds."""
        return max(self.min_instances, min(self.max_instances, count))


class MetricSample(BaseModel):
    """A single metric observation. Read from the metrics source, never persisted."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    target: str = Field(..., description="Deployment or instance set the sample describes")
    metric: str = Field(..., description="Metric name")
    value: float = Field(..., description="Observed value")
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class ScalingDirection(str, Enum):
    """Direction of a scaling decision."""

    UP = "up"
    DOWN = "down"
    NONE = "none"


class ScalingDecision(BaseModel):
    """Outcome of a single autoscaler tick.

    Attributes:
        deployment_id: "<environment>/<service>".
        observed: Mean metric value over the window.
        current: Instance count before the tick.
        recommended: Clamped, rounded recommendation.
        applied: Instance count after the tick.
        direction: Direction of the applied change.
        suppressed: True when a scale-down was held back by stabilization.
        reason: Human-readable explanation.
        decided_at: Tick timestamp (UTC).
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    deployment_id: str
    observed: float
    current: int = Field(..., ge=0)
    recommended: int = Field(..., ge=0)
    applied: int = Field(..., ge=0)
    direction: ScalingDirection
    suppressed: bool = False
    reason: str
    decided_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


__all__ = [
    "AutoscalerConfig",
    "MetricSample",
    "ScalingDecision",
    "ScalingDirection",
]
