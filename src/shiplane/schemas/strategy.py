"""Deployment strategy configuration schemas.

Key Components:
    StrategyKind: Supported deployment strategies
    RetryConfig: Bounded exponential backoff for provisioner calls
    BlueGreenConfig: Verification window for blue/green cut-overs
    CanaryConfig: Traffic steps and analysis thresholds for canaries

All thresholds are configuration parameters with conservative defaults,
never hard-coded constants.
"""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class StrategyKind(str, Enum):
    """Deployment strategy for an environment.

    Examples:
        >>> StrategyKind("canary")
        <StrategyKind.CANARY: 'canary'>
    """

    BLUE_GREEN = "blue_green"
    CANARY = "canary"


class RetryConfig(BaseModel):
    """Retry policy configuration for transient provisioner failures.

    Uses exponential backoff with optional jitter. The defaults give the
    delay sequence 2s, 4s, 8s, 16s between five attempts, capped at 30s.

    Examples:
        >>> config = RetryConfig()
        >>> (config.max_attempts, config.initial_delay_seconds, config.max_delay_seconds)
        (5, 2.0, 30.0)
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    max_attempts: int = Field(
        default=5,
        ge=1,
        le=10,
        description="Maximum number of attempts, including the first one",
    )
    initial_delay_seconds: float = Field(
        default=2.0,
        ge=0.0,
        description="Delay before the first retry",
    )
    backoff_multiplier: float = Field(
        default=2.0,
        ge=1.0,
        le=5.0,
        description="Multiplier for exponential backoff",
    )
    max_delay_seconds: float = Field(
        default=30.0,
        ge=0.0,
        description="Maximum delay between attempts",
    )
    jitter: bool = Field(
        default=False,
        description="Add +/-25% random jitter to delays",
    )


class BlueGreenConfig(BaseModel):
    """Verification settings for blue/green deployments.

    The candidate is committed once ``consecutive_successes`` probes in a
    row report healthy. Probes run every ``probe_interval_seconds``; by
    default that is ``verification_window_seconds / consecutive_successes``.

    Attributes:
        verification_window_seconds: Health-check window observed after cut-over.
        consecutive_successes: Healthy probes in a row required to commit (N).
        probe_interval_seconds: Delay between probes (None derives it from the window).
        probe_timeout_seconds: Timeout of a single probe.
        max_wait_seconds: Upper bound on verification before rolling back.

    Examples:
        >>> BlueGreenConfig().effective_probe_interval
        20.0
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    verification_window_seconds: float = Field(default=60.0, ge=0.0)
    consecutive_successes: int = Field(default=3, ge=1, le=100)
    probe_interval_seconds: float | None = Field(default=None, ge=0.0)
    probe_timeout_seconds: float = Field(default=10.0, gt=0.0)
    max_wait_seconds: float = Field(default=120.0, ge=0.0)

    @property
    def effective_probe_interval(self) -> float:
        """Interval between probes in seconds."""
        if self.probe_interval_seconds is not None:
            return self.probe_interval_seconds
        return self.verification_window_seconds / self.consecutive_successes

    @model_validator(mode="after")
    def validate_max_wait(self) -> BlueGreenConfig:
        """Ensure the timeout leaves room for the verification window."""
        if self.max_wait_seconds < self.verification_window_seconds:
            raise ValueError(
                "max_wait_seconds must be >= verification_window_seconds "
                f"({self.max_wait_seconds} < {self.verification_window_seconds})"
            )
        return self


def _default_canary_steps() -> list[int]:
    return [5, 25, 50, 100]


class CanaryConfig(BaseModel):
    """Traffic steps and analysis thresholds for canary deployments.

    A step is healthy when the candidate's error rate is at most
    ``max(baseline * error_rate_multiplier, error_rate_floor)`` and its P99
    latency is at most ``baseline + max_latency_delta_ms``.

    Attributes:
        steps: Candidate traffic percentages, strictly ascending, ending at 100.
        analysis_window_seconds: How long each step is held before analysis.
        error_rate_multiplier: Allowed candidate/baseline error-rate ratio.
        error_rate_floor: Candidate error rate always tolerated (baseline near zero).
        max_latency_delta_ms: Allowed P99 latency increase over baseline.
        error_rate_metric: Metric name queried for error rate.
        latency_metric: Metric name queried for P99 latency.

    Examples:
        >>> CanaryConfig().steps
        [5, 25, 50, 100]
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    steps: list[int] = Field(
        default_factory=_default_canary_steps,
        min_length=1,
        description="Candidate traffic weights per step (percent)",
    )
    analysis_window_seconds: float = Field(default=300.0, ge=0.0)
    error_rate_multiplier: float = Field(default=1.5, ge=1.0)
    error_rate_floor: float = Field(default=0.001, ge=0.0, le=1.0)
    max_latency_delta_ms: float = Field(default=100.0, ge=0.0)
    error_rate_metric: str = Field(default="error_rate", min_length=1)
    latency_metric: str = Field(default="latency_p99_ms", min_length=1)

    @field_validator("steps")
    @classmethod
    def validate_steps(cls, v: list[int]) -> list[int]:
        """Validate steps are ascending percentages ending at 100."""
        if any(step <= 0 or step > 100 for step in v):
            raise ValueError(f"Canary steps must be within (0, 100], got {v}")
        if any(later <= earlier for earlier, later in zip(v, v[1:])):
            raise ValueError(f"Canary steps must be strictly ascending, got {v}")
        if v[-1] != 100:
            raise ValueError(f"Last canary step must be 100, got {v[-1]}")
        return v


__all__ = [
    "BlueGreenConfig",
    "CanaryConfig",
    "RetryConfig",
    "StrategyKind",
]
