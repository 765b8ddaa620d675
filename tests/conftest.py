"""Shared test configuration for shiplane.

Wires the fakes from ``testing.fakes`` into fixtures and a StrategyContext.

Key Fixtures:
- provisioner: FakeProvisioner, idempotent per request token
- probe / metrics / secrets / registry / alerts: scripted collaborators
- ctx: StrategyContext over an InMemoryReleaseStore with a zero-delay retry policy
- release_config: dev (blue/green) -> staging (canary) -> production (canary + approval)
- make_image / deploy: factories for images and seeded deployments
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable

import pytest

from shiplane.protocols import InstanceSpec
from shiplane.resilience import RetryPolicy
from shiplane.schemas.autoscaling import AutoscalerConfig
from shiplane.schemas.deployment import Deployment, InstanceSet
from shiplane.schemas.image import Image
from shiplane.schemas.promotion import EnvironmentConfig, ReleaseConfig, ServiceConfig
from shiplane.schemas.strategy import RetryConfig
from shiplane.store.memory import InMemoryReleaseStore
from shiplane.strategies.base import StrategyContext
from shiplane.telemetry.metrics import ReleaseMetrics

from testing.fakes import (
    FAST_BLUE_GREEN,
    FAST_CANARY,
    FakeClock,
    FakeHealthProbe,
    FakeImageRegistry,
    FakeMetricsSource,
    FakeProvisioner,
    FakeSecretsStore,
    RecordingAlertSink,
    make_digest,
)


@pytest.fixture
def provisioner() -> FakeProvisioner:
    return FakeProvisioner()


@pytest.fixture
def probe() -> FakeHealthProbe:
    return FakeHealthProbe()


@pytest.fixture
def metrics() -> FakeMetricsSource:
    """Metrics source where every instance set reports the same healthy values."""
    source = FakeMetricsSource()
    source.set("", "error_rate", [0.01, 0.01])
    source.set("", "latency_p99_ms", [120.0, 130.0])
    return source


@pytest.fixture
def secrets() -> FakeSecretsStore:
    return FakeSecretsStore()


@pytest.fixture
def registry() -> FakeImageRegistry:
    return FakeImageRegistry()


@pytest.fixture
def alerts() -> RecordingAlertSink:
    return RecordingAlertSink()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> InMemoryReleaseStore:
    return InMemoryReleaseStore()


@pytest.fixture
def retry() -> RetryPolicy:
    """Retry policy with three attempts and no backoff delay."""
    return RetryPolicy(
        RetryConfig(max_attempts=3, initial_delay_seconds=0.0, max_delay_seconds=0.0)
    )


@pytest.fixture
def ctx(
    store: InMemoryReleaseStore,
    provisioner: FakeProvisioner,
    probe: FakeHealthProbe,
    metrics: FakeMetricsSource,
    secrets: FakeSecretsStore,
    retry: RetryPolicy,
) -> StrategyContext:
    return StrategyContext(
        store=store,
        provisioner=provisioner,
        probe=probe,
        metrics=metrics,
        retry=retry,
        secrets=secrets,
        release_metrics=ReleaseMetrics(),
    )


@pytest.fixture
def release_config() -> ReleaseConfig:
    """dev (blue/green) -> staging (canary) -> production (canary, approval)."""
    return ReleaseConfig(
        environments=[
            EnvironmentConfig(
                name="dev", order=0, strategy="blue_green", blue_green=FAST_BLUE_GREEN
            ),
            EnvironmentConfig(name="staging", order=1, strategy="canary", canary=FAST_CANARY),
            EnvironmentConfig(
                name="production",
                order=2,
                strategy="canary",
                canary=FAST_CANARY,
                approval_required=True,
            ),
        ],
        services=[
            ServiceConfig(
                name="web",
                repository="acme/web",
                initial_instances=2,
                autoscaling=AutoscalerConfig(min_instances=1, max_instances=20),
            ),
        ],
    )


@pytest.fixture
def make_image() -> Callable[..., Image]:
    """Factory for images: ``make_image("a")`` has digest sha256:aaaa..."""

    def _make(char: str, tag: str | None = None, repository: str = "acme/web") -> Image:
        return Image(repository=repository, tag=tag or f"v-{char}", digest=make_digest(char))

    return _make


@pytest.fixture
def deploy(
    store: InMemoryReleaseStore, provisioner: FakeProvisioner
) -> Callable[..., Awaitable[Deployment]]:
    """Factory seeding an idle deployment whose instances exist in the provisioner."""

    async def _deploy(
        environment: str,
        image: Image,
        *,
        service: str = "web",
        count: int = 2,
        min_instances: int = 1,
        max_instances: int = 20,
    ) -> Deployment:
        set_id = f"{service}-{image.short_digest}-seed"
        spec = InstanceSpec(service=service, environment=environment, image=image, set_id=set_id)
        ids = await provisioner.create_instances(spec, count, f"seed:{environment}:{set_id}")
        await provisioner.switch_traffic({set_id: 100}, f"seed-route:{environment}:{set_id}")
        return await store.create_deployment(
            Deployment(
                environment=environment,
                service=service,
                active_image=image,
                active_set=InstanceSet(set_id=set_id, image_digest=image.digest, instance_ids=ids),
                traffic_weights={set_id: 100},
                instance_count=count,
                desired_instance_count=count,
                min_instances=min_instances,
                max_instances=max_instances,
            )
        )

    return _deploy
