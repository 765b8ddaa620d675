"""Blue/green deployment strategy.

State machine:
    IDLE -> PROVISIONING -> TRAFFIC_SWITCHING -> VERIFYING -> {COMMITTED, ROLLED_BACK}

1. PROVISIONING: a full candidate set (same size as the active set) is
   created next to the active one. Failure rolls back without touching
   traffic.
2. TRAFFIC_SWITCHING: one absolute write ``{active: 0, candidate: 100}``.
3. VERIFYING: the candidate must pass ``consecutive_successes`` probes in a
   row before ``max_wait_seconds`` elapse. Any failed, erroring or timed
   out probe switches traffic back to the active set before the rollback
   is reported.
4. COMMITTED: the candidate becomes active and the old set is removed.
"""

from __future__ import annotations

import asyncio

from shiplane.errors import PromotionCancelled, ProvisionError, ReleaseError, VerificationFailure
from shiplane.resilience import CancelToken
from shiplane.schemas.deployment import Deployment, StrategyState
from shiplane.schemas.image import Image
from shiplane.schemas.strategy import StrategyKind
from shiplane.strategies.base import FULL_TRAFFIC, Strategy, StrategyResult, token
from shiplane.telemetry.tracing import create_span


class BlueGreenStrategy(Strategy):
    """Atomic cut-over from the active set to a fully provisioned candidate."""

    kind = StrategyKind.BLUE_GREEN

    async def run(
        self,
        deployment: Deployment,
        candidate: Image,
        promotion_id: str,
        cancel: CancelToken,
    ) -> StrategyResult:
        with create_span(
            "shiplane.strategy.blue_green",
            attributes={
                "deployment_id": deployment.deployment_id,
                "promotion_id": promotion_id,
                "candidate": candidate.reference,
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
        deployment = await self.enter(
            deployment, candidate, promotion_id, StrategyState.PROVISIONING
        )
        count = max(deployment.instance_count, 1)

        try:
            deployment = await self.provision(
                deployment, count, token(promotion_id, "provision"), cancel
            )
        except PromotionCancelled as e:
            return await self.rollback(deployment, "cancelled", e, traffic_touched=False)
        except ProvisionError as e:
            return await self.rollback(
                deployment, f"provisioning failed: {e.reason}", e, traffic_touched=False
            )
        if cancel.cancelled:
            return await self.rollback(
                deployment,
                "cancelled",
                PromotionCancelled(promotion_id, StrategyState.PROVISIONING.value),
                traffic_touched=False,
            )

        candidate_set = deployment.candidate_set
        assert candidate_set is not None
        deployment = await self.update(deployment, strategy_state=StrategyState.TRAFFIC_SWITCHING)
        try:
            deployment = await self.switch(
                deployment,
                {deployment.active_set.set_id: 0, candidate_set.set_id: FULL_TRAFFIC},
                token(promotion_id, "switch"),
            )
        except ProvisionError as e:
            return await self.rollback(deployment, f"traffic switch failed: {e.reason}", e)

        deployment = await self.update(deployment, strategy_state=StrategyState.VERIFYING)
        failure = await self.verify(deployment, cancel)
        if failure is not None:
            reason = failure.reason if isinstance(failure, VerificationFailure) else "cancelled"
            return await self.rollback(deployment, reason, failure)
        return await self.commit(deployment)

    async def verify(self, deployment: Deployment, cancel: CancelToken) -> ReleaseError | None:
        """Probe the candidate until N consecutive successes.

        Returns:
            None once verified, otherwise the failure that requires rollback.
        """
        config = self.environment.blue_green
        candidate_set = deployment.candidate_set
        assert candidate_set is not None
        deployment_id = deployment.deployment_id
        loop = asyncio.get_running_loop()
        deadline = loop.time() + config.max_wait_seconds
        successes = 0
        probe_number = 0

        while successes < config.consecutive_successes:
            remaining = deadline - loop.time()
            if remaining <= 0:
                return VerificationFailure(
                    deployment_id,
                    f"verification exceeded {config.max_wait_seconds:g}s "
                    f"({successes}/{config.consecutive_successes} healthy probes)",
                )
            probe_number += 1
            try:
                healthy = await asyncio.wait_for(
                    self.ctx.probe.probe(deployment_id, candidate_set.set_id),
                    timeout=min(config.probe_timeout_seconds, remaining),
                )
            except asyncio.TimeoutError:
                return VerificationFailure(deployment_id, f"probe {probe_number} timed out")
            except Exception as e:
                self._log.warning(
                    "probe_error",
                    deployment_id=deployment_id,
                    probe=probe_number,
                    error=str(e),
                )
                return VerificationFailure(deployment_id, f"probe {probe_number} errored: {e}")
            if not healthy:
                return VerificationFailure(deployment_id, f"probe {probe_number} failed")

            successes += 1
            self._log.debug(
                "probe_succeeded",
                deployment_id=deployment_id,
                probe=probe_number,
                consecutive=successes,
            )
            if successes < config.consecutive_successes:
                interval = min(config.effective_probe_interval, max(deadline - loop.time(), 0.0))
                if await cancel.sleep(interval):
                    return PromotionCancelled(
                        deployment.promotion_id or "", StrategyState.VERIFYING.value
                    )
        return None


__all__ = ["BlueGreenStrategy"]
