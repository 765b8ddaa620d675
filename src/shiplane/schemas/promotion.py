"""Promotion lifecycle schemas.

This module defines Pydantic v2 schemas for promoting container images
through an ordered list of environments, each with its own deployment
strategy and optional approval gate, plus the append-only audit record of
every promotion attempt.

Key Components:
    PromotionOutcome: pending -> {succeeded, failed, rolled_back}
    PromotionRecord: Audit record of one environment promotion
    EnvironmentLock: Lock state preventing promotions
    EnvironmentConfig: Per-environment strategy and approval configuration
    ServiceConfig: Per-service repository mapping, secrets and autoscaling
    WebhookConfig: Webhook notification configuration
    ReleaseConfig: Top-level configuration
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from shiplane.errors import InvalidOutcomeTransitionError
from shiplane.schemas.autoscaling import AutoscalerConfig
from shiplane.schemas.image import Image
from shiplane.schemas.strategy import (
    BlueGreenConfig,
    CanaryConfig,
    RetryConfig,
    StrategyKind,
)

# =============================================================================
# Enums
# =============================================================================


class PromotionOutcome(str, Enum):
    """Outcome of a promotion into one environment.

    Outcomes only move from PENDING to one of the terminal values.

    Examples:
        >>> PromotionOutcome.PENDING.is_terminal
        False
    """

    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"

    @property
    def is_terminal(self) -> bool:
        """True for every outcome except PENDING."""
        return self is not PromotionOutcome.PENDING


# =============================================================================
# Audit records
# =============================================================================


class PromotionRecord(BaseModel):
    """Append-only audit record of one environment promotion.

    Created by the release orchestrator when a promotion starts; concluded
    exactly once with ``conclude()``, which returns a new record.

    Attributes:
        promotion_id: Unique identifier of this promotion attempt.
        service: Service being promoted.
        image: Image being promoted.
        from_environment: Previous environment in the order (None for the first).
        to_environment: Target environment.
        started_at: When the promotion started (UTC).
        finished_at: When the outcome was set (UTC).
        outcome: pending, succeeded, failed or rolled_back.
        reason: Human-readable explanation of the outcome.
        degraded: True when the failure left the deployment degraded.
        approver: Who approved (or rejected) the promotion.
        trace_id: Trace identifier for correlation.

    Examples:
        >>> record = PromotionRecord(service="web", image=image, to_environment="dev")
        >>> record.conclude(PromotionOutcome.SUCCEEDED, "committed").outcome
        <PromotionOutcome.SUCCEEDED: 'succeeded'>
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    promotion_id: str = Field(default_factory=lambda: uuid4().hex)
    service: str = Field(..., min_length=1)
    image: Image
    from_environment: str | None = None
    to_environment: str = Field(..., min_length=1)
    started_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: datetime | None = None
    outcome: PromotionOutcome = PromotionOutcome.PENDING
    reason: str = ""
    degraded: bool = False
    approver: str | None = None
    trace_id: str | None = None

    def conclude(
        self,
        outcome: PromotionOutcome,
        reason: str,
        *,
        degraded: bool = False,
        approver: str | None = None,
    ) -> PromotionRecord:
        """Return a copy of this record with its terminal outcome set.

        Args:
            outcome: Terminal outcome.
            reason: Human-readable explanation.
            degraded: Whether the deployment was left degraded.
            approver: Approver identity, if any.

        Returns:
            New, concluded PromotionRecord.

        Raises:
            InvalidOutcomeTransitionError: If the record is already concluded
                or the requested outcome is PENDING.
        """
        if self.outcome.is_terminal or not outcome.is_terminal:
            raise InvalidOutcomeTransitionError(
                self.promotion_id, self.outcome.value, outcome.value
            )
        return self.model_copy(
            update={
                "outcome": outcome,
                "reason": reason,
                "degraded": degraded,
                "approver": approver if approver is not None else self.approver,
                "finished_at": datetime.now(timezone.utc),
            }
        )

    def with_reason(self, reason: str) -> PromotionRecord:
        """Return a copy of a pending record with an updated reason."""
        if self.outcome.is_terminal:
            raise InvalidOutcomeTransitionError(
                self.promotion_id, self.outcome.value, self.outcome.value
            )
        return self.model_copy(update={"reason": reason})


# =============================================================================
# Configuration
# =============================================================================


class EnvironmentLock(BaseModel):
    """Lock state for an environment to prevent promotions.

    Typically used during incidents or maintenance windows.

    Examples:
        >>> lock = EnvironmentLock(locked=True, reason="Incident #123", locked_by="sre")
        >>> lock.locked
        True
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    locked: bool = Field(..., description="Whether environment is locked")
    reason: str | None = Field(default=None, description="Why environment was locked")
    locked_by: str | None = Field(default=None, description="Operator who locked it")
    locked_at: datetime | None = Field(default=None, description="When lock was applied (UTC)")


class EnvironmentConfig(BaseModel):
    """Per-environment promotion configuration.

    Attributes:
        name: Environment name (e.g., "dev", "staging", "production").
        order: Position in the promotion path (lower promotes first).
        strategy: Deployment strategy used in this environment.
        approval_required: Whether promotions wait for an approval signal.
        approval_timeout_seconds: Approval wait limit (None waits indefinitely).
        blue_green: Blue/green verification settings.
        canary: Canary steps and analysis thresholds.
        lock: Static lock state (runtime locks are managed by the orchestrator).

    Examples:
        >>> env = EnvironmentConfig(name="production", order=2, strategy="canary",
        ...                         approval_required=True)
        >>> env.approval_required
        True
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str = Field(
        ...,
        min_length=1,
        max_length=50,
        pattern=r"^[a-z][a-z0-9_-]*$",
        description="Environment name (lowercase, alphanumeric with hyphens/underscores)",
    )
    order: int = Field(..., ge=0, description="Position in the promotion path")
    strategy: StrategyKind = Field(
        default=StrategyKind.BLUE_GREEN,
        description="Deployment strategy for this environment",
    )
    approval_required: bool = Field(
        default=False,
        description="Whether promotions wait for an external approval",
    )
    approval_timeout_seconds: float | None = Field(
        default=None,
        gt=0.0,
        description="Approval wait limit in seconds (None waits indefinitely)",
    )
    blue_green: BlueGreenConfig = Field(default_factory=BlueGreenConfig)
    canary: CanaryConfig = Field(default_factory=CanaryConfig)
    lock: EnvironmentLock | None = Field(default=None, description="Static lock state")


class ServiceConfig(BaseModel):
    """Per-service configuration.

    Attributes:
        name: Service name.
        repository: Image repository whose pushes trigger promotions.
        initial_instances: Instance count of a first deployment.
        secret_keys: Secret keys resolved per environment into the instance spec.
        autoscaling: Control loop configuration.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str = Field(..., min_length=1, pattern=r"^[a-z][a-z0-9_-]*$")
    repository: str = Field(..., min_length=1)
    initial_instances: int = Field(default=2, ge=1)
    secret_keys: list[str] = Field(default_factory=list)
    autoscaling: AutoscalerConfig = Field(default_factory=AutoscalerConfig)

    @model_validator(mode="after")
    def validate_initial_within_bounds(self) -> ServiceConfig:
        """Validate initial_instances lies within the autoscaling bounds."""
        bounds = self.autoscaling
        if not bounds.min_instances <= self.initial_instances <= bounds.max_instances:
            raise ValueError(
                f"initial_instances {self.initial_instances} outside autoscaling "
                f"bounds [{bounds.min_instances}, {bounds.max_instances}]"
            )
        return self


VALID_WEBHOOK_EVENTS = frozenset(
    {
        "promote",
        "rollback",
        "degraded",
        "approval_requested",
        "scaling_alert",
        "lock",
        "unlock",
    }
)
"""Event types a webhook can subscribe to."""


class WebhookConfig(BaseModel):
    """Webhook notification configuration.

    Examples:
        >>> config = WebhookConfig(url="https://hooks.example.com/x", events=["rollback"])
        >>> config.timeout_seconds
        30
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    url: str = Field(..., min_length=1, description="Webhook endpoint URL")
    events: list[str] = Field(..., min_length=1, description="Event types to notify")
    headers: dict[str, str] | None = Field(default=None, description="Custom headers")
    timeout_seconds: int = Field(default=30, ge=1, le=300)
    retry_count: int = Field(default=3, ge=0, le=10)

    @field_validator("events")
    @classmethod
    def validate_events(cls, v: list[str]) -> list[str]:
        """Validate all events are valid webhook event types."""
        invalid = set(v) - VALID_WEBHOOK_EVENTS
        if invalid:
            raise ValueError(
                f"Invalid event types: {invalid}. Valid types: {sorted(VALID_WEBHOOK_EVENTS)}"
            )
        return v


def _default_environments() -> list[EnvironmentConfig]:
    """Create default environments [dev, staging, production]."""
    return [
        EnvironmentConfig(name="dev", order=0, strategy=StrategyKind.BLUE_GREEN),
        EnvironmentConfig(name="staging", order=1, strategy=StrategyKind.CANARY),
        EnvironmentConfig(
            name="production",
            order=2,
            strategy=StrategyKind.CANARY,
            approval_required=True,
        ),
    ]


class ReleaseConfig(BaseModel):
    """Top-level release configuration, usually loaded from release.yaml.

    Examples:
        >>> config = ReleaseConfig()
        >>> [env.name for env in config.ordered_environments]
        ['dev', 'staging', 'production']
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    environments: list[EnvironmentConfig] = Field(
        default_factory=_default_environments,
        min_length=1,
        description="Environments of the promotion path",
    )
    services: list[ServiceConfig] = Field(default_factory=list)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    webhooks: list[WebhookConfig] | None = Field(default=None)
    store_url: str = Field(
        default="sqlite+aiosqlite:///shiplane.db",
        description="SQLAlchemy async URL of the durable store",
    )

    @field_validator("environments")
    @classmethod
    def validate_unique_environments(
        cls, v: list[EnvironmentConfig]
    ) -> list[EnvironmentConfig]:
        """Validate environment names and orders are unique."""
        names = [env.name for env in v]
        duplicates = {name for name in names if names.count(name) > 1}
        if duplicates:
            raise ValueError(
                f"Environment names must be unique. Duplicates found: {duplicates}"
            )
        orders = [env.order for env in v]
        if len(set(orders)) != len(orders):
            raise ValueError(f"Environment orders must be unique, got {sorted(orders)}")
        return v

    @field_validator("services")
    @classmethod
    def validate_unique_services(cls, v: list[ServiceConfig]) -> list[ServiceConfig]:
        """Validate service names and repositories are unique."""
        for attr in ("name", "repository"):
            values = [getattr(service, attr) for service in v]
            duplicates = {value for value in values if values.count(value) > 1}
            if duplicates:
                raise ValueError(f"Service {attr}s must be unique. Duplicates: {duplicates}")
        return v

    @property
    def ordered_environments(self) -> list[EnvironmentConfig]:
        """Environments sorted by ascending order."""
        return sorted(self.environments, key=lambda env: env.order)

    def get_environment(self, name: str) -> EnvironmentConfig | None:
        """Get environment configuration by name."""
        for env in self.environments:
            if env.name == name:
                return env
        return None

    def get_service(self, name: str) -> ServiceConfig | None:
        """Get service configuration by name."""
        for service in self.services:
            if service.name == name:
                return service
        return None

    def service_for_repository(self, repository: str) -> ServiceConfig | None:
        """Get the service whose images live in ``repository``."""
        for service in self.services:
            if service.repository == repository:
                return service
        return None


__all__ = [
    "VALID_WEBHOOK_EVENTS",
    "EnvironmentConfig",
    "EnvironmentLock",
    "PromotionOutcome",
    "PromotionRecord",
    "ReleaseConfig",
    "ServiceConfig",
    "WebhookConfig",
]
