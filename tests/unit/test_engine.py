"""Unit tests for StrategyEngine."""

from __future__ import annotations

import pytest

from shiplane.errors import (
    ConfigurationError,
    DeploymentNotFoundError,
    PromotionCancelled,
    ProvisionError,
)
from shiplane.resilience import CancelToken
from shiplane.schemas.autoscaling import AutoscalerConfig
from shiplane.schemas.deployment import InstanceSet, StrategyState
from shiplane.schemas.promotion import EnvironmentConfig, ReleaseConfig, ServiceConfig
from shiplane.strategies.engine import StrategyEngine

from testing.fakes import FAST_BLUE_GREEN, FakeSecretsStore


@pytest.fixture
def engine(release_config, ctx) -> StrategyEngine:
    return StrategyEngine(release_config, ctx)


class TestLookups:
    def test_unknown_environment_and_service(self, engine: StrategyEngine) -> None:
        assert engine.environment("dev").name == "dev"
        assert engine.service("web").repository == "acme/web"
        with pytest.raises(ConfigurationError, match="unknown environment 'qa'"):
            engine.environment("qa")
        with pytest.raises(ConfigurationError, match="unknown service 'api'"):
            engine.service("api")


class TestPromote:
    """Tests for StrategyEngine.promote."""

    @pytest.mark.asyncio
    async def test_dispatches_on_environment_strategy(
        self, engine: StrategyEngine, provisioner, deploy, make_image
    ) -> None:
        dev = await deploy("dev", make_image("a"))
        staging = await deploy("staging", make_image("a"))

        dev_result = await engine.promote(dev, make_image("b"), promotion_id="p-dev-0001")
        staging_result = await engine.promote(
            staging, make_image("b"), promotion_id="p-stg-0001"
        )

        assert dev_result.committed
        assert staging_result.committed
        assert "p-dev-0001:switch" in provisioner.tokens("switch_traffic")
        assert "p-stg-0001:step-0" in provisioner.tokens("switch_traffic")

    @pytest.mark.asyncio
    async def test_same_digest_is_a_no_op(
        self, engine: StrategyEngine, provisioner, deploy, make_image
    ) -> None:
        deployment = await deploy("dev", make_image("a"))
        calls_before = len(provisioner.calls)

        result = await engine.promote(deployment, make_image("a"), promotion_id="p-same")

        assert result.committed
        assert result.reason == "already active"
        assert len(provisioner.calls) == calls_before

    @pytest.mark.asyncio
    async def test_degraded_deployment_refused(
        self, engine: StrategyEngine, store, deploy, make_image
    ) -> None:
        await deploy("dev", make_image("a"))
        deployment = await store.update_strategy(
            "dev", "web", strategy_state=StrategyState.DEGRADED, reason="router unreachable"
        )

        result = await engine.promote(deployment, make_image("b"), promotion_id="p-deg")

        assert result.degraded
        assert "operator action required: router unreachable" in result.reason

    @pytest.mark.asyncio
    async def test_missing_deployment(self, engine: StrategyEngine, store, deploy, make_image) -> None:
        deployment = await deploy("dev", make_image("a"))
        other = deployment.model_copy(update={"service": "api"})

        with pytest.raises(DeploymentNotFoundError):
            await engine.promote(other, make_image("b"), promotion_id="p-missing")

    @pytest.mark.asyncio
    async def test_interrupted_transition_recovered_first(
        self, engine: StrategyEngine, provisioner, store, deploy, make_image
    ) -> None:
        deployment = await deploy("dev", make_image("a"))
        seed_id = deployment.active_set.set_id
        stale = InstanceSet(set_id="web-cccccccccccc-crashed0", image_digest=make_image("c").digest)
        await store.update_strategy(
            "dev",
            "web",
            strategy_state=StrategyState.VERIFYING,
            candidate_image=make_image("c"),
            candidate_set=stale,
            promotion_id="crashed0",
        )

        result = await engine.promote(deployment, make_image("b"), promotion_id="p-after")

        assert result.committed
        assert "crashed0:rollback" in provisioner.tokens("switch_traffic")
        assert {seed_id: 100, stale.set_id: 0} in provisioner.weight_history

    @pytest.mark.asyncio
    async def test_unexpected_error_rolls_back(
        self, engine: StrategyEngine, provisioner, store, deploy, make_image
    ) -> None:
        deployment = await deploy("dev", make_image("a"))
        seed_id = deployment.active_set.set_id

        def explode(weights: dict[str, int]) -> None:
            if weights.get(seed_id) == 0:
                raise RuntimeError("router bug")

        provisioner.hooks["switch_traffic"] = explode
        result = await engine.promote(deployment, make_image("b"), promotion_id="p-bug")

        assert result.rolled_back
        assert result.reason == "unexpected error: router bug"
        stored = await store.get_deployment("dev", "web")
        assert stored.strategy_state == StrategyState.IDLE
        assert stored.active_image.digest == make_image("a").digest

    @pytest.mark.asyncio
    async def test_retired_instances_removed_on_next_promotion(
        self, engine: StrategyEngine, provisioner, store, deploy, make_image
    ) -> None:
        deployment = await deploy("dev", make_image("a"))
        old_ids = list(deployment.active_set.instance_ids)
        provisioner.fail("remove_instances", times=3)
        await engine.promote(deployment, make_image("b"), promotion_id="p-first")
        assert (await store.get_deployment("dev", "web")).retired_instance_ids == old_ids

        current = await store.get_deployment("dev", "web")
        result = await engine.promote(current, make_image("c"), promotion_id="p-second")

        assert result.committed
        assert "p-second:retire" in provisioner.tokens("remove_instances")
        assert set(old_ids) <= set(provisioner.removed)
        assert result.deployment.retired_instance_ids == []


class TestSecrets:
    """Tests for environment-scoped secret resolution."""

    def _config(self) -> ReleaseConfig:
        return ReleaseConfig(
            environments=[EnvironmentConfig(name="dev", order=0, blue_green=FAST_BLUE_GREEN)],
            services=[
                ServiceConfig(
                    name="web",
                    repository="acme/web",
                    secret_keys=["DATABASE_URL"],
                    autoscaling=AutoscalerConfig(min_instances=1, max_instances=5),
                )
            ],
        )

    @pytest.mark.asyncio
    async def test_secrets_reach_instance_spec(
        self, ctx, provisioner, deploy, make_image
    ) -> None:
        ctx.secrets = FakeSecretsStore({("DATABASE_URL", "dev"): "postgres://dev"})
        engine = StrategyEngine(self._config(), ctx)
        deployment = await deploy("dev", make_image("a"), max_instances=5)

        result = await engine.promote(deployment, make_image("b"), promotion_id="p-secret")

        assert result.committed
        candidate_id = result.deployment.active_set.set_id
        spec = provisioner.instances[provisioner.running(candidate_id)[0]]
        assert spec.secrets == {"DATABASE_URL": "postgres://dev"}
        assert ctx.secrets.lookups == [("DATABASE_URL", "dev")]

    @pytest.mark.asyncio
    async def test_missing_secret_fails_before_any_change(
        self, ctx, provisioner, deploy, make_image
    ) -> None:
        engine = StrategyEngine(self._config(), ctx)
        deployment = await deploy("dev", make_image("a"), max_instances=5)
        calls_before = len(provisioner.calls)

        with pytest.raises(ConfigurationError, match="DATABASE_URL"):
            await engine.promote(deployment, make_image("b"), promotion_id="p-nosecret")
        assert len(provisioner.calls) == calls_before


class TestBootstrap:
    """Tests for the first deployment of a service."""

    @pytest.mark.asyncio
    async def test_creates_deployment(self, engine: StrategyEngine, provisioner, store, make_image) -> None:
        image = make_image("a")

        result = await engine.bootstrap("dev", "web", image, promotion_id="p-boot0001")

        assert result.committed
        assert result.reason == "bootstrapped"
        stored = await store.get_deployment("dev", "web")
        set_id = f"web-{image.short_digest}-p-boot00"
        assert stored.active_set.set_id == set_id
        assert stored.active_set.size == 2
        assert stored.traffic_weights == {set_id: 100}
        assert (stored.min_instances, stored.max_instances) == (1, 20)
        assert provisioner.weight_history == [{set_id: 100}]

    @pytest.mark.asyncio
    async def test_existing_deployment_untouched(
        self, engine: StrategyEngine, provisioner, deploy, make_image
    ) -> None:
        await deploy("dev", make_image("a"))
        calls_before = len(provisioner.calls)

        result = await engine.bootstrap("dev", "web", make_image("b"), promotion_id="p-boot")

        assert result.reason == "already deployed"
        assert len(provisioner.calls) == calls_before

    @pytest.mark.asyncio
    async def test_provision_failure_persists_nothing(
        self, engine: StrategyEngine, provisioner, store, make_image
    ) -> None:
        provisioner.fail("create_instances", times=3)

        result = await engine.bootstrap("dev", "web", make_image("a"), promotion_id="p-boot")

        assert result.rolled_back
        assert result.deployment is None
        assert await store.get_deployment("dev", "web") is None

    @pytest.mark.asyncio
    async def test_cancelled_while_retrying_provisioning(
        self, engine: StrategyEngine, provisioner, store, make_image
    ) -> None:
        token = CancelToken()

        def cancel_and_fail(spec, count: int) -> None:
            token.cancel("operator request")
            raise ProvisionError("create_instances", "capacity exhausted")

        provisioner.hooks["create_instances"] = cancel_and_fail

        result = await engine.bootstrap(
            "dev", "web", make_image("a"), promotion_id="p-boot", cancel=token
        )

        assert result.rolled_back
        assert result.reason == "cancelled"
        assert isinstance(result.error, PromotionCancelled)
        assert provisioner.tokens("create_instances") == ["p-boot:bootstrap"]
        assert provisioner.tokens("switch_traffic") == []
        assert await store.get_deployment("dev", "web") is None

    @pytest.mark.asyncio
    async def test_route_failure_removes_instances(
        self, engine: StrategyEngine, provisioner, store, make_image
    ) -> None:
        provisioner.fail("switch_traffic", times=3)

        result = await engine.bootstrap("dev", "web", make_image("a"), promotion_id="p-boot")

        assert result.rolled_back
        assert provisioner.instances == {}
        assert provisioner.tokens("remove_instances") == ["p-boot:bootstrap-remove"]
        assert await store.get_deployment("dev", "web") is None

    @pytest.mark.asyncio
    async def test_unknown_service(self, engine: StrategyEngine, make_image) -> None:
        with pytest.raises(ConfigurationError):
            await engine.bootstrap("dev", "api", make_image("a"), promotion_id="p-boot")


class TestRecovery:
    @pytest.mark.asyncio
    async def test_recover_rolls_back_interrupted(
        self, engine: StrategyEngine, store, deploy, make_image
    ) -> None:
        deployment = await deploy("staging", make_image("a"))
        assert await engine.recover(deployment) is None

        await store.update_strategy(
            "staging",
            "web",
            strategy_state=StrategyState.ANALYZING,
            candidate_image=make_image("b"),
            candidate_set=InstanceSet(set_id="web-b-crash", image_digest=make_image("b").digest),
            canary_step=1,
            promotion_id="crash001",
        )

        result = await engine.recover(deployment)

        assert result is not None
        assert result.rolled_back
        assert result.reason == "interrupted"
        stored = await store.get_deployment("staging", "web")
        assert stored.strategy_state == StrategyState.IDLE
        assert stored.candidate_set is None
        assert stored.canary_step is None

    @pytest.mark.asyncio
    async def test_acknowledge_degraded(
        self, engine: StrategyEngine, store, deploy, make_image
    ) -> None:
        deployment = await deploy("dev", make_image("a"))
        with pytest.raises(ConfigurationError, match="not degraded"):
            await engine.acknowledge_degraded("dev", "web", "sre")

        await store.update_strategy(
            "dev", "web", strategy_state=StrategyState.DEGRADED, reason="switch-back failed"
        )
        updated = await engine.acknowledge_degraded("dev", "web", "sre")

        assert updated.strategy_state == StrategyState.IDLE
        assert updated.reason == "degraded state acknowledged by sre"
        assert updated.traffic_weights == {deployment.active_set.set_id: 100}

        with pytest.raises(DeploymentNotFoundError):
            await engine.acknowledge_degraded("production", "web", "sre")
