"""Autoscaling control loop for one deployment.

Each tick:

1. Reads the live deployment; defers when a strategy transition is in
   progress or the deployment is degraded.
2. Averages the configured metric over the trailing window. A missing or
   failing query skips the tick; after ``missed_ticks_alert_threshold``
   consecutive skips one alert is raised.
3. Recommends ``round_half_up(current * observed / target)`` clamped to
   the deployment's bounds.
4. Suppresses scale-downs for ``stabilization_window_seconds`` after a
   scale-up, and ignores changes smaller than ``min_change``.
5. Applies the change under the deployment's scaling lock: scale-up adds
   instances of the active image to the active set, scale-down removes
   the newest ones.
"""

from __future__ import annotations

import math
import time
from collections.abc import Callable
from statistics import fmean
from uuid import uuid4

import structlog

from shiplane.errors import ProvisionError
from shiplane.protocols import AlertSink, InstanceSpec
from shiplane.schemas.autoscaling import (
    AutoscalerConfig,
    MetricSample,
    ScalingDecision,
    ScalingDirection,
)
from shiplane.schemas.deployment import Deployment
from shiplane.strategies.base import StrategyContext, resolve_secrets
from shiplane.telemetry.tracing import create_span

logger = structlog.get_logger(__name__)


def round_half_up(value: float) -> int:
    """Round to the nearest integer, halves away from zero for positive values."""
    return math.floor(value + 0.5)


class Autoscaler:
    """Control loop state and logic for one (environment, service) deployment.

    Args:
        environment: Environment of the deployment.
        service: Service of the deployment.
        config: Control loop configuration.
        ctx: Shared collaborators (store, provisioner, metrics, retry, locks).
        alerts: Sink for missing-metric alerts.
        secret_keys: Secret keys resolved into the spec of new instances.
        clock: Monotonic clock in seconds (injectable for tests).
    """

    def __init__(
        self,
        environment: str,
        service: str,
        config: AutoscalerConfig,
        ctx: StrategyContext,
        *,
        alerts: AlertSink | None = None,
        secret_keys: list[str] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.environment = environment
        self.service = service
        self.config = config
        self.ctx = ctx
        self._alerts = alerts
        self._secret_keys = secret_keys or []
        self._clock = clock
        self._last_scale_up: float | None = None
        self._missed_ticks = 0
        self._alerted = False
        self._log = logger.bind(component="autoscaler", deployment_id=self.deployment_id)

    @property
    def deployment_id(self) -> str:
        return f"{self.environment}/{self.service}"

    @property
    def missed_ticks(self) -> int:
        """Consecutive ticks skipped for lack of metrics."""
        return self._missed_ticks

    async def tick(self) -> ScalingDecision | None:
        """Run one evaluation.

        Returns:
            The decision, or None when the tick was skipped or deferred.
        """
        with create_span(
            "shiplane.autoscaler.tick", attributes={"deployment_id": self.deployment_id}
        ) as span:
            decision = await self._tick()
            if decision is not None:
                span.set_attribute("direction", decision.direction.value)
                span.set_attribute("applied", decision.applied)
            return decision

    async def _tick(self) -> ScalingDecision | None:
        deployment = await self.ctx.store.get_deployment(self.environment, self.service)
        if deployment is None:
            self._log.debug("scaling_skipped", reason="no deployment")
            return None
        if deployment.is_transitioning or deployment.is_degraded:
            self._log.info(
                "scaling_deferred",
                strategy_state=deployment.strategy_state.value,
            )
            return None

        samples = await self._observe()
        if not samples:
            await self._record_miss()
            return None
        self._missed_ticks = 0
        self._alerted = False

        observed = fmean(sample.value for sample in samples)
        current = deployment.instance_count
        recommended = self._recommend(deployment, observed)
        now = self._clock()

        if recommended < current and self._in_stabilization(now):
            reason = (
                f"scale-down to {recommended} suppressed for "
                f"{self.config.stabilization_window_seconds:g}s after scale-up"
            )
            await self._set_desired(current)
            return self._decision(observed, current, recommended, current, reason, suppressed=True)

        if abs(recommended - current) < self.config.min_change:
            await self._set_desired(current)
            return self._decision(observed, current, recommended, current, "within min_change")

        return await self._apply(observed, current, recommended, now)

    def _recommend(self, deployment: Deployment, observed: float) -> int:
        raw = deployment.instance_count * observed / self.config.target_value
        rounded = round_half_up(raw)
        return max(deployment.min_instances, min(deployment.max_instances, rounded))

    def _in_stabilization(self, now: float) -> bool:
        if self._last_scale_up is None:
            return False
        return now - self._last_scale_up < self.config.stabilization_window_seconds

    async def _observe(self) -> list[MetricSample]:
        try:
            series = await self.ctx.metrics.query(
                self.deployment_id, self.config.metric, self.config.window_seconds
            )
        except Exception as e:
            self._log.warning("metrics_query_failed", metric=self.config.metric, error=str(e))
            return []
        return [
            MetricSample(target=self.deployment_id, metric=self.config.metric, value=value)
            for value in series
        ]

    async def _record_miss(self) -> None:
        self._missed_ticks += 1
        self._log.info("scaling_tick_skipped", missed_ticks=self._missed_ticks)
        if self._missed_ticks < self.config.missed_ticks_alert_threshold or self._alerted:
            return
        self._alerted = True
        event = {
            "deployment_id": self.deployment_id,
            "environment": self.environment,
            "service": self.service,
            "metric": self.config.metric,
            "missed_ticks": self._missed_ticks,
        }
        self._log.error("scaling_metrics_missing", **event)
        if self._alerts is not None:
            try:
                await self._alerts.alert("scaling_alert", event)
            except Exception as e:
                self._log.warning("alert_delivery_failed", error=str(e))

    async def _set_desired(self, desired: int) -> None:
        async with self.ctx.locks.scaling(self.deployment_id):
            await self.ctx.store.update_scaling(
                self.environment, self.service, desired_instance_count=desired
            )

    async def _apply(
        self, observed: float, current: int, recommended: int, now: float
    ) -> ScalingDecision | None:
        async with self.ctx.locks.scaling(self.deployment_id):
            deployment = await self.ctx.store.get_deployment(self.environment, self.service)
            if deployment is None or deployment.is_transitioning or deployment.is_degraded:
                self._log.info("scaling_deferred", reason="transition started")
                return None
            if deployment.instance_count != current:
                self._log.info("scaling_deferred", reason="instance count changed")
                return None

            await self.ctx.store.update_scaling(
                self.environment, self.service, desired_instance_count=recommended
            )
            request_token = f"scale:{self.deployment_id}:{uuid4().hex}"
            active_set = deployment.active_set
            try:
                if recommended > current:
                    ids = await self.ctx.retry.call(
                        "create_instances",
                        self.ctx.provisioner.create_instances,
                        await self._spec(deployment),
                        recommended - current,
                        request_token,
                    )
                    instance_ids = [*active_set.instance_ids, *ids]
                else:
                    keep = len(active_set.instance_ids) - (current - recommended)
                    newest = active_set.instance_ids[max(keep, 0):]
                    await self.ctx.retry.call(
                        "remove_instances",
                        self.ctx.provisioner.remove_instances,
                        newest,
                        request_token,
                    )
                    instance_ids = active_set.instance_ids[: max(keep, 0)]
            except ProvisionError as e:
                self._log.error("scaling_failed", target=recommended, error=str(e))
                return self._decision(
                    observed, current, recommended, current, f"scaling failed: {e.reason}"
                )

            await self.ctx.store.update_scaling(
                self.environment,
                self.service,
                instance_count=recommended,
                active_set=active_set.model_copy(update={"instance_ids": instance_ids}),
            )

        direction = ScalingDirection.UP if recommended > current else ScalingDirection.DOWN
        if direction == ScalingDirection.UP:
            self._last_scale_up = now
        self.ctx.release_metrics.record_scaling(direction.value)
        self._log.info(
            "scale_applied",
            direction=direction.value,
            previous=current,
            instances=recommended,
            observed=observed,
        )
        return self._decision(
            observed, current, recommended, recommended, f"scaled {direction.value}"
        )

    async def _spec(self, deployment: Deployment) -> InstanceSpec:
        secrets = await resolve_secrets(self.ctx.secrets, self._secret_keys, self.environment)
        return InstanceSpec(
            service=self.service,
            environment=self.environment,
            image=deployment.active_image,
            set_id=deployment.active_set.set_id,
            secrets=secrets,
            labels={
                "shiplane/set": deployment.active_set.set_id,
                "shiplane/digest": deployment.active_image.short_digest,
            },
        )

    def _decision(
        self,
        observed: float,
        current: int,
        recommended: int,
        applied: int,
        reason: str,
        *,
        suppressed: bool = False,
    ) -> ScalingDecision:
        if applied > current:
            direction = ScalingDirection.UP
        elif applied < current:
            direction = ScalingDirection.DOWN
        else:
            direction = ScalingDirection.NONE
        return ScalingDecision(
            deployment_id=self.deployment_id,
            observed=observed,
            current=current,
            recommended=recommended,
            applied=applied,
            direction=direction,
            suppressed=suppressed,
            reason=reason,
        )


__all__ = ["Autoscaler", "round_half_up"]
