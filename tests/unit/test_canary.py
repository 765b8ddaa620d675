"""Unit tests for the canary strategy."""

from __future__ import annotations

import pytest

from shiplane.errors import PromotionCancelled, ProvisionError
from shiplane.resilience import CancelToken
from shiplane.schemas.deployment import StrategyState
from shiplane.schemas.promotion import EnvironmentConfig
from shiplane.schemas.strategy import CanaryConfig
from shiplane.strategies.base import StrategyContext
from shiplane.strategies.canary import CanaryStrategy

from testing.fakes import FAST_CANARY

PROMOTION_ID = "c7654321-canary"


def _strategy(ctx: StrategyContext, config: CanaryConfig = FAST_CANARY) -> CanaryStrategy:
    return CanaryStrategy(
        ctx, EnvironmentConfig(name="staging", order=1, strategy="canary", canary=config)
    )


def _candidate_weights(history: list[dict[str, int]], candidate_id: str) -> list[int]:
    return [weights[candidate_id] for weights in history if candidate_id in weights]


class TestRamp:
    """Tests for a healthy ramp through every step."""

    @pytest.mark.asyncio
    async def test_weights_ascend_then_commit(
        self, ctx, provisioner, store, deploy, make_image
    ) -> None:
        deployment = await deploy("staging", make_image("a"))
        seed_id = deployment.active_set.set_id
        candidate = make_image("b")
        candidate_id = f"web-{candidate.short_digest}-c7654321"

        result = await _strategy(ctx).run(deployment, candidate, PROMOTION_ID, CancelToken())

        assert result.committed
        assert provisioner.weight_history[1:] == [
            {seed_id: 95, candidate_id: 5},
            {seed_id: 75, candidate_id: 25},
            {seed_id: 50, candidate_id: 50},
            {seed_id: 0, candidate_id: 100},
        ]
        stored = await store.get_deployment("staging", "web")
        assert stored.strategy_state == StrategyState.IDLE
        assert stored.active_image.digest == candidate.digest
        assert stored.active_set.size == 2
        assert stored.canary_step is None
        assert provisioner.running(seed_id) == []

    @pytest.mark.asyncio
    async def test_candidate_grows_with_weight(
        self, ctx, provisioner, deploy, make_image
    ) -> None:
        deployment = await deploy("staging", make_image("a"), count=4)

        result = await _strategy(ctx).run(deployment, make_image("b"), PROMOTION_ID, CancelToken())

        assert result.committed
        # ceil(4 * w / 100) for w in 5, 25, 50, 100 -> 1, 1, 2, 4
        assert provisioner.tokens("create_instances")[1:] == [
            f"{PROMOTION_ID}:grow-0",
            f"{PROMOTION_ID}:grow-2",
            f"{PROMOTION_ID}:grow-3",
        ]
        assert result.deployment.active_set.size == 4

    @pytest.mark.asyncio
    async def test_baseline_falls_back_to_previous_step(
        self, ctx, provisioner, metrics, deploy, make_image
    ) -> None:
        deployment = await deploy("staging", make_image("a"))
        seed_id = deployment.active_set.set_id

        def baseline_goes_quiet(weights: dict[str, int]) -> None:
            if weights.get(seed_id) == 0:
                metrics.set(seed_id, "error_rate", [])

        provisioner.hooks["switch_traffic"] = baseline_goes_quiet
        result = await _strategy(ctx).run(deployment, make_image("b"), PROMOTION_ID, CancelToken())

        assert result.committed


class TestAnalysis:
    """Tests for metric analysis and the single-write drop to 0%."""

    @pytest.mark.asyncio
    async def test_error_rate_breach_drops_candidate_to_zero(
        self, ctx, provisioner, metrics, store, deploy, make_image
    ) -> None:
        deployment = await deploy("staging", make_image("a"))
        seed_id = deployment.active_set.set_id
        candidate = make_image("b")
        candidate_id = f"web-{candidate.short_digest}-c7654321"

        def degrade_at_half(weights: dict[str, int]) -> None:
            if weights.get(candidate_id) == 50:
                metrics.set(candidate_id, "error_rate", [0.05, 0.07])

        provisioner.hooks["switch_traffic"] = degrade_at_half
        result = await _strategy(ctx).run(deployment, candidate, PROMOTION_ID, CancelToken())

        assert result.rolled_back
        assert "error rate" in result.reason
        assert "at 50%" in result.reason
        assert _candidate_weights(provisioner.weight_history, candidate_id) == [5, 25, 50, 0]
        assert provisioner.weight_history[-1] == {seed_id: 100, candidate_id: 0}
        stored = await store.get_deployment("staging", "web")
        assert stored.active_image.digest == make_image("a").digest
        assert stored.traffic_weights == {seed_id: 100}
        assert provisioner.running(candidate_id) == []

    @pytest.mark.asyncio
    async def test_latency_breach(self, ctx, metrics, deploy, make_image) -> None:
        deployment = await deploy("staging", make_image("a"))
        candidate = make_image("b")
        metrics.set(f"web-{candidate.short_digest}", "latency_p99_ms", [400.0])

        result = await _strategy(ctx).run(deployment, candidate, PROMOTION_ID, CancelToken())

        assert result.rolled_back
        assert "p99 latency" in result.reason
        assert "at 5%" in result.reason

    @pytest.mark.asyncio
    async def test_error_floor_tolerates_zero_baseline(
        self, ctx, metrics, deploy, make_image
    ) -> None:
        deployment = await deploy("staging", make_image("a"))
        candidate = make_image("b")
        metrics.set(deployment.active_set.set_id, "error_rate", [0.0])
        metrics.set(f"web-{candidate.short_digest}", "error_rate", [0.0005])

        result = await _strategy(ctx).run(deployment, candidate, PROMOTION_ID, CancelToken())

        assert result.committed

    @pytest.mark.asyncio
    async def test_missing_candidate_metrics_rolls_back(
        self, ctx, metrics, deploy, make_image
    ) -> None:
        deployment = await deploy("staging", make_image("a"))
        candidate = make_image("b")
        metrics.set(f"web-{candidate.short_digest}", "error_rate", [])

        result = await _strategy(ctx).run(deployment, candidate, PROMOTION_ID, CancelToken())

        assert result.rolled_back
        assert result.reason == "candidate metrics missing at 5%"

    @pytest.mark.asyncio
    async def test_metrics_backend_error_rolls_back(
        self, ctx, metrics, deploy, make_image
    ) -> None:
        deployment = await deploy("staging", make_image("a"))
        candidate = make_image("b")
        metrics.fail(f"web-{candidate.short_digest}", "error_rate")

        result = await _strategy(ctx).run(deployment, candidate, PROMOTION_ID, CancelToken())

        assert result.rolled_back
        assert "candidate metrics missing" in result.reason


class TestFailures:
    @pytest.mark.asyncio
    async def test_provision_failure_before_first_step(
        self, ctx, provisioner, deploy, make_image
    ) -> None:
        deployment = await deploy("staging", make_image("a"))
        provisioner.fail("create_instances", times=3)

        result = await _strategy(ctx).run(deployment, make_image("b"), PROMOTION_ID, CancelToken())

        assert result.rolled_back
        assert result.reason.startswith("provisioning failed at 5%")
        assert isinstance(result.error, ProvisionError)
        assert len(provisioner.weight_history) == 1

    @pytest.mark.asyncio
    async def test_cancel_between_steps(self, ctx, provisioner, deploy, make_image) -> None:
        deployment = await deploy("staging", make_image("a"))
        seed_id = deployment.active_set.set_id
        candidate = make_image("b")
        candidate_id = f"web-{candidate.short_digest}-c7654321"
        token = CancelToken()

        def cancel_at_quarter(weights: dict[str, int]) -> None:
            if weights.get(candidate_id) == 25:
                token.cancel("operator request")

        provisioner.hooks["switch_traffic"] = cancel_at_quarter
        result = await _strategy(ctx).run(deployment, candidate, PROMOTION_ID, token)

        assert result.rolled_back
        assert result.reason == "cancelled"
        assert _candidate_weights(provisioner.weight_history, candidate_id) == [5, 25, 0]
        assert provisioner.weight_history[-1] == {seed_id: 100, candidate_id: 0}

    @pytest.mark.asyncio
    async def test_cancel_while_retrying_growth_switches_back(
        self, ctx, provisioner, store, deploy, make_image
    ) -> None:
        deployment = await deploy("staging", make_image("a"))
        seed_id = deployment.active_set.set_id
        candidate = make_image("b")
        candidate_id = f"web-{candidate.short_digest}-c7654321"
        token = CancelToken()

        def cancel_on_growth(spec, count: int) -> None:
            if spec.set_id == candidate_id and provisioner.running(candidate_id):
                token.cancel("operator request")
                raise ProvisionError("create_instances", "capacity exhausted")

        provisioner.hooks["create_instances"] = cancel_on_growth
        result = await _strategy(ctx).run(deployment, candidate, PROMOTION_ID, token)

        assert result.rolled_back
        assert result.reason == "cancelled"
        assert isinstance(result.error, PromotionCancelled)
        assert _candidate_weights(provisioner.weight_history, candidate_id) == [5, 25, 50, 0]
        stored = await store.get_deployment("staging", "web")
        assert stored.strategy_state == StrategyState.IDLE
        assert stored.traffic_weights == {seed_id: 100}
        assert provisioner.running(candidate_id) == []

    @pytest.mark.asyncio
    async def test_failed_drop_degrades(
        self, ctx, provisioner, metrics, store, deploy, make_image
    ) -> None:
        deployment = await deploy("staging", make_image("a"))
        candidate = make_image("b")
        candidate_id = f"web-{candidate.short_digest}-c7654321"
        metrics.set(candidate_id, "error_rate", [0.5])

        def refuse_drop(weights: dict[str, int]) -> None:
            if weights.get(candidate_id) == 0:
                raise ProvisionError("switch_traffic", "router unreachable", retryable=False)

        provisioner.hooks["switch_traffic"] = refuse_drop
        result = await _strategy(ctx).run(deployment, candidate, PROMOTION_ID, CancelToken())

        assert result.degraded
        stored = await store.get_deployment("staging", "web")
        assert stored.strategy_state == StrategyState.DEGRADED
        assert stored.traffic_weights[candidate_id] == 5
