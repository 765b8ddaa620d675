"""Deployment state schemas.

A Deployment is the live state of one service in one environment. Two
writers own disjoint field groups:

- The strategy engine owns the strategy fields (STRATEGY_FIELDS).
- The autoscaler owns the instance-count fields (SCALING_FIELDS).

Stores apply partial updates per group so neither writer clobbers the
other's fields.

Key Components:
    StrategyState: Strategy state machine states
    InstanceSet: A group of instances running one image digest
    Deployment: Live deployment record
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, model_validator

from shiplane.schemas.image import Image


class StrategyState(str, Enum):
    """States of the blue/green and canary state machines.

    COMMITTED and ROLLED_BACK are reported as transition outcomes; the
    deployment itself returns to IDLE afterwards. DEGRADED is terminal until
    an operator acknowledges it.
    """

    IDLE = "idle"
    PROVISIONING = "provisioning"
    TRAFFIC_SWITCHING = "traffic_switching"
    VERIFYING = "verifying"
    RAMP_UP = "ramp_up"
    ANALYZING = "analyzing"
    ROLLING_BACK = "rolling_back"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"
    DEGRADED = "degraded"


TRANSITION_STATES = frozenset(
    {
        StrategyState.PROVISIONING,
        StrategyState.TRAFFIC_SWITCHING,
        StrategyState.VERIFYING,
        StrategyState.RAMP_UP,
        StrategyState.ANALYZING,
        StrategyState.ROLLING_BACK,
    }
)
"""States in which a strategy transition is in progress."""

STRATEGY_FIELDS = frozenset(
    {
        "active_image",
        "candidate_image",
        "strategy_state",
        "canary_step",
        "active_set",
        "candidate_set",
        "traffic_weights",
        "promotion_id",
        "retired_instance_ids",
        "reason",
    }
)
"""Fields written only by the strategy engine."""

SCALING_FIELDS = frozenset({"instance_count", "desired_instance_count", "active_set"})
"""Fields written only by the autoscaler (active_set only to add/remove instances)."""


class InstanceSet(BaseModel):
    """A group of instances running a single image digest.

    Attributes:
        set_id: Stable identifier used as traffic-weight key.
        image_digest: Digest every instance in the set runs.
        instance_ids: Provisioner instance identifiers.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    set_id: str = Field(..., min_length=1)
    image_digest: str = Field(..., min_length=1)
    instance_ids: list[str] = Field(default_factory=list)

    @property
    def size(self) -> int:
        """Number of instances in the set."""
        return len(self.instance_ids)


class Deployment(BaseModel):
    """Live deployment of a service in an environment.

    Attributes:
        environment: Environment name.
        service: Service name.
        active_image: Image serving traffic (exactly one at any time).
        candidate_image: Image being rolled out (only during a transition).
        strategy_state: Current strategy state machine state.
        canary_step: Index into the canary steps while ramping.
        active_set: Instances of the active image.
        candidate_set: Instances of the candidate image (during a transition).
        traffic_weights: Last traffic weights written, by instance set id.
        instance_count: Instances currently running the active image.
        desired_instance_count: Instance count chosen by the autoscaler.
        min_instances: Lower autoscaling bound.
        max_instances: Upper autoscaling bound.
        promotion_id: Promotion driving the current transition.
        retired_instance_ids: Old instances whose removal must be retried.
        reason: Explanation of the last terminal state.
        updated_at: Last write timestamp (UTC).
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    environment: str = Field(..., min_length=1)
    service: str = Field(..., min_length=1)
    active_image: Image
    candidate_image: Image | None = None
    strategy_state: StrategyState = StrategyState.IDLE
    canary_step: int | None = Field(default=None, ge=0)
    active_set: InstanceSet
    candidate_set: InstanceSet | None = None
    traffic_weights: dict[str, int] = Field(default_factory=dict)
    instance_count: int = Field(..., ge=0)
    desired_instance_count: int = Field(..., ge=0)
    min_instances: int = Field(default=1, ge=0)
    max_instances: int = Field(default=10, ge=1)
    promotion_id: str | None = None
    retired_instance_ids: list[str] = Field(default_factory=list)
    reason: str | None = None
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @model_validator(mode="after")
    def validate_desired_within_bounds(self) -> Deployment:
        """Validate desired_instance_count stays within [min, max]."""
        if not self.min_instances <= self.desired_instance_count <= self.max_instances:
            raise ValueError(
                f"desired_instance_count {self.desired_instance_count} outside "
                f"[{self.min_instances}, {self.max_instances}]"
            )
        return self

    @property
    def deployment_id(self) -> str:
        """Identifier of the deployment, "<environment>/<service>"."""
        return f"{self.environment}/{self.service}"

    @property
    def is_transitioning(self) -> bool:
        """True while a strategy transition is in progress."""
        return self.strategy_state in TRANSITION_STATES

    @property
    def is_degraded(self) -> bool:
        """True when a failed rollback left the deployment needing an operator."""
        return self.strategy_state == StrategyState.DEGRADED


__all__ = [
    "SCALING_FIELDS",
    "STRATEGY_FIELDS",
    "TRANSITION_STATES",
    "Deployment",
    "InstanceSet",
    "StrategyState",
]
