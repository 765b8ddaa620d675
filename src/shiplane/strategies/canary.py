"""Canary deployment strategy.

State machine:
    IDLE -> RAMP_UP(step) -> ANALYZING -> {RAMP_UP(step + 1), ROLLING_BACK} -> COMMITTED

Each step grows the candidate set to ``ceil(instance_count * weight / 100)``
instances, writes ``{baseline: 100 - weight, candidate: weight}``, holds for
the analysis window and compares candidate against baseline:

    healthy = candidate_error_rate <= max(baseline_error_rate * multiplier, floor)
              and candidate_p99 <= baseline_p99 + max_latency_delta_ms

An unhealthy step (or missing candidate metrics) drops the candidate to 0%
in a single write. Because steps are validated strictly ascending, the
candidate weight never decreases except for that single drop.
"""

from __future__ import annotations

import math
from statistics import fmean

from shiplane.errors import PromotionCancelled, ProvisionError, VerificationFailure
from shiplane.resilience import CancelToken
from shiplane.schemas.deployment import Deployment, StrategyState
from shiplane.schemas.image import Image
from shiplane.schemas.strategy import StrategyKind
from shiplane.strategies.base import FULL_TRAFFIC, Strategy, StrategyResult, token
from shiplane.telemetry.tracing import create_span


class CanaryStrategy(Strategy):
    """Progressive traffic shift with metric analysis at every step."""

    kind = StrategyKind.CANARY

    async def run(
        self,
        deployment: Deployment,
        candidate: Image,
        promotion_id: str,
        cancel: CancelToken,
    ) -> StrategyResult:
        with create_span(
            "shiplane.strategy.canary",
            attributes={
                "deployment_id": deployment.deployment_id,
                "promotion_id": promotion_id,
                "candidate": candidate.reference,
                "steps": str(self.environment.canary.steps),
            },
        ) as span:
            result = await self._run(deployment, candidate, promotion_id, cancel)
            span.set_attribute("outcome", result.state.value)
            return result

    async def _run(
        self,
        deployment: Deployment,
        candidate: Image,
        promotion_id: str,
        cancel: CancelToken,
    ) -> StrategyResult:
        config = self.environment.canary
        deployment = await self.enter(deployment, candidate, promotion_id, StrategyState.RAMP_UP)
        baseline_id = deployment.active_set.set_id
        count = max(deployment.instance_count, 1)
        traffic_touched = False
        last_baseline: tuple[float, float] | None = None

        for step, weight in enumerate(config.steps):
            if cancel.cancelled:
                return await self.rollback(
                    deployment,
                    "cancelled",
                    PromotionCancelled(promotion_id, f"canary step {step}"),
                    traffic_touched=traffic_touched,
                )
            deployment = await self.update(
                deployment, strategy_state=StrategyState.RAMP_UP, canary_step=step
            )

            candidate_set = deployment.candidate_set
            assert candidate_set is not None
            missing = max(1, math.ceil(count * weight / FULL_TRAFFIC)) - candidate_set.size
            if missing > 0:
                try:
                    deployment = await self.provision(
                        deployment, missing, token(promotion_id, f"grow-{step}"), cancel
                    )
                except PromotionCancelled as e:
                    return await self.rollback(
                        deployment, "cancelled", e, traffic_touched=traffic_touched
                    )
                except ProvisionError as e:
                    return await self.rollback(
                        deployment,
                        f"provisioning failed at {weight}%: {e.reason}",
                        e,
                        traffic_touched=traffic_touched,
                    )
                candidate_set = deployment.candidate_set
                assert candidate_set is not None

            try:
                deployment = await self.switch(
                    deployment,
                    {baseline_id: FULL_TRAFFIC - weight, candidate_set.set_id: weight},
                    token(promotion_id, f"step-{step}"),
                )
            except ProvisionError as e:
                return await self.rollback(
                    deployment, f"traffic switch to {weight}% failed: {e.reason}", e
                )
            traffic_touched = True

            deployment = await self.update(deployment, strategy_state=StrategyState.ANALYZING)
            if await cancel.sleep(config.analysis_window_seconds):
                return await self.rollback(
                    deployment,
                    "cancelled",
                    PromotionCancelled(promotion_id, f"canary step {step}"),
                )

            failure, last_baseline = await self.analyze(
                deployment, candidate_set.set_id, baseline_id, weight, last_baseline
            )
            if failure is not None:
                return await self.rollback(deployment, failure.reason, failure)
            self._log.info(
                "canary_step_healthy",
                deployment_id=deployment.deployment_id,
                step=step,
                weight=weight,
            )

        return await self.commit(deployment)

    async def analyze(
        self,
        deployment: Deployment,
        candidate_id: str,
        baseline_id: str,
        weight: int,
        last_baseline: tuple[float, float] | None,
    ) -> tuple[VerificationFailure | None, tuple[float, float] | None]:
        """Compare candidate and baseline metrics over the analysis window.

        Once the candidate takes all traffic the baseline may stop reporting;
        the baseline values of the previous step are used in that case.

        Returns:
            (failure or None, baseline (error rate, P99) used for comparison).
        """
        config = self.environment.canary
        window = config.analysis_window_seconds
        deployment_id = deployment.deployment_id

        candidate = await self._observe(candidate_id, window)
        baseline = await self._observe(baseline_id, window) or last_baseline
        if candidate is None:
            return (
                VerificationFailure(deployment_id, f"candidate metrics missing at {weight}%"),
                baseline,
            )
        if baseline is None:
            return (
                VerificationFailure(deployment_id, f"baseline metrics missing at {weight}%"),
                baseline,
            )

        candidate_errors, candidate_p99 = candidate
        baseline_errors, baseline_p99 = baseline
        allowed_errors = max(baseline_errors * config.error_rate_multiplier, config.error_rate_floor)
        allowed_p99 = baseline_p99 + config.max_latency_delta_ms
        self._log.debug(
            "canary_analysis",
            deployment_id=deployment_id,
            weight=weight,
            candidate_error_rate=candidate_errors,
            allowed_error_rate=allowed_errors,
            candidate_p99_ms=candidate_p99,
            allowed_p99_ms=allowed_p99,
        )
        if candidate_errors > allowed_errors:
            return (
                VerificationFailure(
                    deployment_id,
                    f"error rate {candidate_errors:.4f} exceeds {allowed_errors:.4f} at {weight}%",
                ),
                baseline,
            )
        if candidate_p99 > allowed_p99:
            return (
                VerificationFailure(
                    deployment_id,
                    f"p99 latency {candidate_p99:.1f}ms exceeds {allowed_p99:.1f}ms at {weight}%",
                ),
                baseline,
            )
        return None, baseline

    async def _observe(self, target: str, window: float) -> tuple[float, float] | None:
        """Mean error rate and P99 latency of ``target``, or None if unavailable."""
        config = self.environment.canary
        try:
            errors = await self.ctx.metrics.query(target, config.error_rate_metric, window)
            latency = await self.ctx.metrics.query(target, config.latency_metric, window)
        except Exception as e:
            self._log.warning("metrics_query_failed", target=target, error=str(e))
            return None
        if not errors or not latency:
            return None
        return fmean(errors), fmean(latency)


__all__ = ["CanaryStrategy"]
