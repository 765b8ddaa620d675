"""Deployment strategy engine.

Entry point of every change to a deployment's strategy fields. It picks
the environment's strategy, holds the deployment's strategy lock for the
whole transition and turns every failure into a StrategyResult. Only
ConfigurationError escapes, and always before anything is mutated.

Example:
    >>> engine = StrategyEngine(config, ctx)
    >>> result = await engine.promote(deployment, image, promotion_id="p-1")
    >>> result.state
    <StrategyState.COMMITTED: 'committed'>
"""

from __future__ import annotations

import structlog

from shiplane.errors import (
    ConfigurationError,
    DeploymentNotFoundError,
    PromotionCancelled,
    ProvisionError,
)
from shiplane.resilience import CancelToken
from shiplane.schemas.deployment import Deployment, InstanceSet, StrategyState
from shiplane.schemas.image import Image
from shiplane.schemas.promotion import EnvironmentConfig, ReleaseConfig, ServiceConfig
from shiplane.schemas.strategy import StrategyKind
from shiplane.strategies.base import (
    FULL_TRAFFIC,
    Strategy,
    StrategyContext,
    StrategyResult,
    candidate_set_id,
    resolve_secrets,
    token,
)
from shiplane.strategies.blue_green import BlueGreenStrategy
from shiplane.strategies.canary import CanaryStrategy

logger = structlog.get_logger(__name__)

STRATEGIES: dict[StrategyKind, type[Strategy]] = {
    StrategyKind.BLUE_GREEN: BlueGreenStrategy,
    StrategyKind.CANARY: CanaryStrategy,
}


class StrategyEngine:
    """Executes deployment strategies against the provisioner.

    Args:
        config: Release configuration (environments and services).
        ctx: Collaborators shared by every strategy run.
    """

    def __init__(self, config: ReleaseConfig, ctx: StrategyContext) -> None:
        self.config = config
        self.ctx = ctx
        self._log = logger.bind(component="strategy_engine")

    def environment(self, name: str) -> EnvironmentConfig:
        """Configuration of environment ``name``.

        Raises:
            ConfigurationError: If the environment is not configured.
        """
        env = self.config.get_environment(name)
        if env is None:
            raise ConfigurationError(f"unknown environment '{name}'")
        return env

    def service(self, name: str) -> ServiceConfig:
        """Configuration of service ``name``.

        Raises:
            ConfigurationError: If the service is not configured.
        """
        service = self.config.get_service(name)
        if service is None:
            raise ConfigurationError(f"unknown service '{name}'")
        return service

    async def _strategy(self, deployment_env: str, service: str) -> Strategy:
        env = self.environment(deployment_env)
        service_config = self.config.get_service(service)
        keys = service_config.secret_keys if service_config else []
        secrets = await resolve_secrets(self.ctx.secrets, keys, deployment_env)
        return STRATEGIES[env.strategy](self.ctx, env, secrets)

    async def promote(
        self,
        deployment: Deployment,
        candidate: Image,
        *,
        promotion_id: str,
        cancel: CancelToken | None = None,
    ) -> StrategyResult:
        """Roll ``candidate`` out to ``deployment`` with the environment's strategy.

        Args:
            deployment: Target deployment (re-read under the strategy lock).
            candidate: Image to roll out.
            promotion_id: Promotion driving the transition (request token prefix).
            cancel: Cancellation token checked at safe checkpoints.

        Returns:
            COMMITTED, ROLLED_BACK or DEGRADED result.

        Raises:
            ConfigurationError: If the environment or a secret is misconfigured.
            DeploymentNotFoundError: If the deployment no longer exists.
        """
        strategy = await self._strategy(deployment.environment, deployment.service)
        cancel = cancel or CancelToken()
        deployment_id = deployment.deployment_id

        async with self.ctx.locks.strategy(deployment_id):
            current = await self.ctx.store.get_deployment(
                deployment.environment, deployment.service
            )
            if current is None:
                raise DeploymentNotFoundError(deployment.environment, deployment.service)
            if current.is_degraded:
                return StrategyResult(
                    StrategyState.DEGRADED,
                    current,
                    f"deployment degraded, operator action required: {current.reason}",
                )
            if current.is_transitioning:
                recovered = await self._recover_locked(current)
                if recovered.degraded:
                    return recovered
                current = recovered.deployment or current
            if current.active_image.digest == candidate.digest:
                return StrategyResult(StrategyState.COMMITTED, current, "already active")

            current = await self._retire(current, promotion_id)
            try:
                return await strategy.run(current, candidate, promotion_id, cancel)
            except ConfigurationError:
                raise
            except Exception as e:
                self._log.exception(
                    "strategy_failed_unexpectedly",
                    deployment_id=deployment_id,
                    promotion_id=promotion_id,
                )
                latest = await self.ctx.store.get_deployment(
                    deployment.environment, deployment.service
                )
                assert latest is not None
                if not latest.is_transitioning:
                    return StrategyResult(
                        StrategyState.ROLLED_BACK, latest, f"unexpected error: {e}"
                    )
                return await strategy.rollback(latest, f"unexpected error: {e}")

    async def bootstrap(
        self,
        environment: str,
        service: str,
        image: Image,
        *,
        promotion_id: str,
        cancel: CancelToken | None = None,
    ) -> StrategyResult:
        """Create the first deployment of ``service`` in ``environment``.

        Provisions ``initial_instances`` instances, routes 100% of traffic to
        them and persists the deployment.

        Raises:
            ConfigurationError: If the environment or service is not configured.
        """
        service_config = self.service(service)
        bounds = service_config.autoscaling
        strategy = await self._strategy(environment, service)
        deployment_id = f"{environment}/{service}"
        set_id = candidate_set_id(service, image, promotion_id)
        count = service_config.initial_instances

        async with self.ctx.locks.strategy(deployment_id):
            existing = await self.ctx.store.get_deployment(environment, service)
            if existing is not None:
                return StrategyResult(StrategyState.COMMITTED, existing, "already deployed")

            draft = Deployment(
                environment=environment,
                service=service,
                active_image=image,
                active_set=InstanceSet(set_id=set_id, image_digest=image.digest),
                instance_count=count,
                desired_instance_count=count,
                min_instances=bounds.min_instances,
                max_instances=bounds.max_instances,
            )
            try:
                ids = await self.ctx.retry.call(
                    "create_instances",
                    self.ctx.provisioner.create_instances,
                    strategy.spec(draft, image, set_id),
                    count,
                    token(promotion_id, "bootstrap"),
                    cancel=cancel,
                )
            except PromotionCancelled as e:
                self._log.info("bootstrap_cancelled", deployment_id=deployment_id)
                return StrategyResult(StrategyState.ROLLED_BACK, None, "cancelled", e)
            except ProvisionError as e:
                self._log.warning("bootstrap_failed", deployment_id=deployment_id, error=str(e))
                return StrategyResult(
                    StrategyState.ROLLED_BACK, None, f"provisioning failed: {e.reason}", e
                )

            weights = {set_id: FULL_TRAFFIC}
            try:
                await self.ctx.retry.call(
                    "switch_traffic",
                    self.ctx.provisioner.switch_traffic,
                    weights,
                    token(promotion_id, "bootstrap-route"),
                )
            except ProvisionError as e:
                await strategy.remove(draft, ids, token(promotion_id, "bootstrap-remove"))
                return StrategyResult(
                    StrategyState.ROLLED_BACK, None, f"traffic switch failed: {e.reason}", e
                )

            deployment = await self.ctx.store.create_deployment(
                draft.model_copy(
                    update={
                        "active_set": InstanceSet(
                            set_id=set_id, image_digest=image.digest, instance_ids=ids
                        ),
                        "traffic_weights": weights,
                        "reason": "bootstrapped",
                    }
                )
            )
        self._log.info(
            "deployment_bootstrapped",
            deployment_id=deployment_id,
            image=image.reference,
            instances=len(ids),
        )
        return StrategyResult(StrategyState.COMMITTED, deployment, "bootstrapped")

    async def recover(self, deployment: Deployment) -> StrategyResult | None:
        """Roll back a deployment left mid-transition (e.g., by a crash).

        Returns:
            None if the deployment was not transitioning, otherwise the
            ROLLED_BACK (or DEGRADED) result.
        """
        async with self.ctx.locks.strategy(deployment.deployment_id):
            current = await self.ctx.store.get_deployment(
                deployment.environment, deployment.service
            )
            if current is None or not current.is_transitioning:
                return None
            return await self._recover_locked(current)

    async def _recover_locked(self, deployment: Deployment) -> StrategyResult:
        strategy = await self._strategy(deployment.environment, deployment.service)
        self._log.warning(
            "recovering_interrupted_transition",
            deployment_id=deployment.deployment_id,
            state=deployment.strategy_state.value,
            promotion_id=deployment.promotion_id,
        )
        return await strategy.rollback(deployment, "interrupted")

    async def acknowledge_degraded(
        self, environment: str, service: str, operator: str
    ) -> Deployment:
        """Return a DEGRADED deployment to IDLE after manual repair.

        The operator is expected to have restored the active set's traffic.
        Candidate fields are cleared; candidate instances are left to the
        operator.

        Raises:
            DeploymentNotFoundError: If no such deployment exists.
            ConfigurationError: If the deployment is not degraded.
        """
        deployment_id = f"{environment}/{service}"
        async with self.ctx.locks.strategy(deployment_id):
            current = await self.ctx.store.get_deployment(environment, service)
            if current is None:
                raise DeploymentNotFoundError(environment, service)
            if not current.is_degraded:
                raise ConfigurationError(f"{deployment_id} is not degraded")
            async with self.ctx.locks.scaling(deployment_id):
                updated = await self.ctx.store.update_strategy(
                    environment,
                    service,
                    strategy_state=StrategyState.IDLE,
                    candidate_image=None,
                    candidate_set=None,
                    canary_step=None,
                    traffic_weights={current.active_set.set_id: FULL_TRAFFIC},
                    promotion_id=None,
                    reason=f"degraded state acknowledged by {operator}",
                )
        self._log.info("degraded_acknowledged", deployment_id=deployment_id, operator=operator)
        return updated

    async def _retire(self, deployment: Deployment, promotion_id: str) -> Deployment:
        """Retry removal of instances a previous commit could not decommission."""
        if not deployment.retired_instance_ids:
            return deployment
        strategy = await self._strategy(deployment.environment, deployment.service)
        leftover = await strategy.remove(
            deployment, deployment.retired_instance_ids, token(promotion_id, "retire")
        )
        if leftover:
            self._log.warning(
                "retired_instances_remain",
                deployment_id=deployment.deployment_id,
                count=len(leftover),
            )
        return await self.ctx.store.update_strategy(
            deployment.environment, deployment.service, retired_instance_ids=leftover
        )


__all__ = ["STRATEGIES", "StrategyEngine"]
