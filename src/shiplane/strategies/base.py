"""Shared machinery of the deployment strategies.

A strategy drives one deployment from IDLE through a transition to one of
three outcomes:

- COMMITTED: the candidate serves 100% of traffic and is the active image.
- ROLLED_BACK: the active set serves 100% of traffic again and the
  candidate set is gone.
- DEGRADED: rollback itself failed; an operator must intervene.

Invariants kept by every strategy:
- The active set is never removed before the transition has committed.
- Traffic writes are absolute weight maps tagged with a request token, so
  a retried write is a no-op for the provisioner.
- Traffic writes are never interrupted by cancellation.
- A failed switch-back is reported as DEGRADED, never left silent.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any, ClassVar

import structlog

from shiplane.errors import ConfigurationError, DegradedStateError, ReleaseError
from shiplane.orchestrator.locks import DeploymentLocks
from shiplane.protocols import (
    HealthProbe,
    InstanceSpec,
    MetricsSource,
    Provisioner,
    SecretsStore,
)
from shiplane.resilience import CancelToken, RetryPolicy
from shiplane.schemas.deployment import Deployment, InstanceSet, StrategyState
from shiplane.schemas.image import Image
from shiplane.schemas.promotion import EnvironmentConfig
from shiplane.schemas.strategy import StrategyKind
from shiplane.store.base import ReleaseStore
from shiplane.telemetry.metrics import ReleaseMetrics, get_release_metrics

logger = structlog.get_logger(__name__)

FULL_TRAFFIC = 100


@dataclass(frozen=True)
class StrategyResult:
    """Outcome of one strategy transition.

    Attributes:
        state: COMMITTED, ROLLED_BACK or DEGRADED.
        deployment: Deployment after the transition (None when a bootstrap
            failed before anything was persisted).
        reason: Human-readable explanation.
        error: The failure that caused a rollback or degradation, if any.
    """

    state: StrategyState
    deployment: Deployment | None
    reason: str
    error: ReleaseError | None = None

    @property
    def committed(self) -> bool:
        return self.state == StrategyState.COMMITTED

    @property
    def rolled_back(self) -> bool:
        return self.state == StrategyState.ROLLED_BACK

    @property
    def degraded(self) -> bool:
        return self.state == StrategyState.DEGRADED


@dataclass
class StrategyContext:
    """Collaborators shared by every strategy run."""

    store: ReleaseStore
    provisioner: Provisioner
    probe: HealthProbe
    metrics: MetricsSource
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    locks: DeploymentLocks = field(default_factory=DeploymentLocks)
    secrets: SecretsStore | None = None
    release_metrics: ReleaseMetrics = field(default_factory=get_release_metrics)


async def resolve_secrets(
    secrets: SecretsStore | None,
    keys: Sequence[str],
    environment: str,
) -> dict[str, str]:
    """Resolve ``keys`` in ``environment``.

    Raises:
        ConfigurationError: If a key is configured but no secrets store is
            available, or the store cannot resolve it.
    """
    if not keys:
        return {}
    if secrets is None:
        raise ConfigurationError(f"secret keys {list(keys)} configured but no secrets store")
    values: dict[str, str] = {}
    for key in keys:
        try:
            values[key] = await secrets.get(key, environment)
        except Exception as e:
            raise ConfigurationError(
                f"secret '{key}' unavailable in environment '{environment}': {e}"
            ) from e
    return values


def candidate_set_id(service: str, image: Image, promotion_id: str) -> str:
    """Instance set id for the candidate of a promotion."""
    return f"{service}-{image.short_digest}-{promotion_id[:8]}"


def token(promotion_id: str, step: str) -> str:
    """Request token of a provisioner call within a promotion."""
    return f"{promotion_id}:{step}"


class Strategy(ABC):
    """Base class of the blue/green and canary state machines.

    Args:
        ctx: Shared collaborators.
        environment: Configuration of the environment being deployed.
        secrets: Resolved secrets for instance specs.
    """

    kind: ClassVar[StrategyKind]

    def __init__(
        self,
        ctx: StrategyContext,
        environment: EnvironmentConfig,
        secrets: dict[str, str] | None = None,
    ) -> None:
        self.ctx = ctx
        self.environment = environment
        self._secrets = secrets or {}
        self._log = logger.bind(component=f"strategy.{self.kind.value}")

    @abstractmethod
    async def run(
        self,
        deployment: Deployment,
        candidate: Image,
        promotion_id: str,
        cancel: CancelToken,
    ) -> StrategyResult:
        """Drive ``deployment`` to ``candidate``."""

    # ------------------------------------------------------------------
    # Building blocks
    # ------------------------------------------------------------------

    def spec(self, deployment: Deployment, image: Image, set_id: str) -> InstanceSpec:
        """Instance spec for new instances of ``image`` in ``set_id``."""
        return InstanceSpec(
            service=deployment.service,
            environment=deployment.environment,
            image=image,
            set_id=set_id,
            secrets=self._secrets,
            labels={"shiplane/set": set_id, "shiplane/digest": image.short_digest},
        )

    async def update(self, deployment: Deployment, **changes: Any) -> Deployment:
        """Write strategy fields of ``deployment``."""
        return await self.ctx.store.update_strategy(
            deployment.environment, deployment.service, **changes
        )

    async def enter(
        self,
        deployment: Deployment,
        candidate: Image,
        promotion_id: str,
        state: StrategyState,
    ) -> Deployment:
        """Start a transition: record the candidate and an empty candidate set.

        Runs under the scaling lock so an in-flight scaling change completes
        first, and the autoscaler sees the transition from now on.
        """
        candidate_set = InstanceSet(
            set_id=candidate_set_id(deployment.service, candidate, promotion_id),
            image_digest=candidate.digest,
        )
        async with self.ctx.locks.scaling(deployment.deployment_id):
            deployment = await self.update(
                deployment,
                strategy_state=state,
                candidate_image=candidate,
                candidate_set=candidate_set,
                canary_step=None,
                promotion_id=promotion_id,
                reason=None,
            )
        self._log.info(
            "transition_started",
            deployment_id=deployment.deployment_id,
            promotion_id=promotion_id,
            candidate=candidate.reference,
            active=deployment.active_image.reference,
        )
        return deployment

    async def provision(
        self,
        deployment: Deployment,
        count: int,
        request_token: str,
        cancel: CancelToken,
    ) -> Deployment:
        """Add ``count`` instances of the candidate to the candidate set.

        Raises:
            ProvisionError: If the provisioner keeps failing.
            PromotionCancelled: If ``cancel`` fired while waiting to retry.
        """
        candidate_set = deployment.candidate_set
        candidate = deployment.candidate_image
        if candidate_set is None or candidate is None:
            raise ConfigurationError(f"{deployment.deployment_id} has no candidate to provision")
        ids = await self.ctx.retry.call(
            "create_instances",
            self.ctx.provisioner.create_instances,
            self.spec(deployment, candidate, candidate_set.set_id),
            count,
            request_token,
            cancel=cancel,
        )
        self._log.info(
            "instances_created",
            deployment_id=deployment.deployment_id,
            set_id=candidate_set.set_id,
            count=len(ids),
        )
        grown = candidate_set.model_copy(
            update={"instance_ids": [*candidate_set.instance_ids, *ids]}
        )
        return await self.update(deployment, candidate_set=grown)

    async def switch(
        self,
        deployment: Deployment,
        weights: dict[str, int],
        request_token: str,
    ) -> Deployment:
        """Write absolute traffic weights. Never interrupted by cancellation.

        Raises:
            ProvisionError: If the write keeps failing.
        """
        await self.ctx.retry.call(
            "switch_traffic",
            self.ctx.provisioner.switch_traffic,
            weights,
            request_token,
        )
        self._log.info(
            "traffic_switched",
            deployment_id=deployment.deployment_id,
            weights=weights,
        )
        return await self.update(deployment, traffic_weights=weights)

    async def remove(
        self,
        deployment: Deployment,
        instance_ids: Sequence[str],
        request_token: str,
    ) -> list[str]:
        """Remove instances; return the ids that could not be removed."""
        if not instance_ids:
            return []
        try:
            await self.ctx.retry.call(
                "remove_instances",
                self.ctx.provisioner.remove_instances,
                list(instance_ids),
                request_token,
            )
        except Exception as e:
            self._log.warning(
                "instance_removal_failed",
                deployment_id=deployment.deployment_id,
                instance_ids=list(instance_ids),
                error=str(e),
            )
            return list(instance_ids)
        return []

    # ------------------------------------------------------------------
    # Terminal transitions
    # ------------------------------------------------------------------

    async def commit(self, deployment: Deployment) -> StrategyResult:
        """Make the candidate active, then decommission the old active set."""
        candidate_set = deployment.candidate_set
        candidate = deployment.candidate_image
        if candidate_set is None or candidate is None:
            raise ConfigurationError(f"{deployment.deployment_id} has no candidate to commit")
        old_set = deployment.active_set
        promotion_id = deployment.promotion_id or "commit"

        async with self.ctx.locks.scaling(deployment.deployment_id):
            deployment = await self.update(
                deployment,
                strategy_state=StrategyState.COMMITTED,
                active_image=candidate,
                active_set=candidate_set,
                candidate_image=None,
                candidate_set=None,
                canary_step=None,
                traffic_weights={candidate_set.set_id: FULL_TRAFFIC},
                promotion_id=None,
                retired_instance_ids=[*deployment.retired_instance_ids, *old_set.instance_ids],
                reason="committed",
            )

        leftover = await self.remove(
            deployment, old_set.instance_ids, token(promotion_id, "decommission")
        )
        remaining = [
            i
            for i in deployment.retired_instance_ids
            if i not in old_set.instance_ids or i in leftover
        ]
        deployment = await self.update(
            deployment,
            strategy_state=StrategyState.IDLE,
            retired_instance_ids=remaining,
        )
        self._log.info(
            "strategy_committed",
            deployment_id=deployment.deployment_id,
            promotion_id=promotion_id,
            active=candidate.reference,
            retired_pending=len(remaining),
        )
        return StrategyResult(StrategyState.COMMITTED, deployment, "committed")

    async def rollback(
        self,
        deployment: Deployment,
        reason: str,
        error: ReleaseError | None = None,
        *,
        traffic_touched: bool = True,
    ) -> StrategyResult:
        """Restore 100% traffic to the active set and remove the candidate.

        Args:
            deployment: Deployment mid-transition.
            reason: Why the transition is being rolled back.
            error: Failure that triggered the rollback.
            traffic_touched: False when no weight was ever written for the
                candidate, so no switch-back is needed.

        Returns:
            ROLLED_BACK result, or DEGRADED if the switch-back failed.
        """
        promotion_id = deployment.promotion_id or "recover"
        active_id = deployment.active_set.set_id
        candidate_set = deployment.candidate_set
        deployment = await self.update(
            deployment, strategy_state=StrategyState.ROLLING_BACK, reason=reason
        )

        if traffic_touched and candidate_set is not None:
            try:
                deployment = await self.switch(
                    deployment,
                    {active_id: FULL_TRAFFIC, candidate_set.set_id: 0},
                    token(promotion_id, "rollback"),
                )
            except Exception as e:
                return await self.degrade(deployment, f"{reason}; switch-back failed: {e}")

        retired = list(deployment.retired_instance_ids)
        if candidate_set is not None:
            retired += await self.remove(
                deployment, candidate_set.instance_ids, token(promotion_id, "remove-candidate")
            )

        async with self.ctx.locks.scaling(deployment.deployment_id):
            deployment = await self.update(
                deployment,
                strategy_state=StrategyState.IDLE,
                candidate_image=None,
                candidate_set=None,
                canary_step=None,
                traffic_weights={active_id: FULL_TRAFFIC},
                promotion_id=None,
                retired_instance_ids=retired,
                reason=reason,
            )
        self.ctx.release_metrics.record_rollback(deployment.environment, self.kind.value)
        self._log.warning(
            "strategy_rolled_back",
            deployment_id=deployment.deployment_id,
            promotion_id=promotion_id,
            reason=reason,
        )
        return StrategyResult(StrategyState.ROLLED_BACK, deployment, reason, error)

    async def degrade(self, deployment: Deployment, reason: str) -> StrategyResult:
        """Mark the deployment DEGRADED; an operator must resolve it."""
        async with self.ctx.locks.scaling(deployment.deployment_id):
            deployment = await self.update(
                deployment, strategy_state=StrategyState.DEGRADED, reason=reason
            )
        self._log.error(
            "deployment_degraded",
            deployment_id=deployment.deployment_id,
            reason=reason,
            traffic_weights=deployment.traffic_weights,
        )
        return StrategyResult(
            StrategyState.DEGRADED,
            deployment,
            reason,
            DegradedStateError(deployment.deployment_id, reason),
        )


__all__ = [
    "FULL_TRAFFIC",
    "Strategy",
    "StrategyContext",
    "StrategyResult",
    "candidate_set_id",
    "resolve_secrets",
    "token",
]
