"""Unit tests for the in-memory release store and the shared update rules."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from shiplane.errors import DeploymentNotFoundError, InvalidOutcomeTransitionError
from shiplane.schemas.deployment import Deployment, InstanceSet, StrategyState
from shiplane.schemas.promotion import EnvironmentLock, PromotionOutcome, PromotionRecord
from shiplane.store.base import ReleaseStore
from shiplane.store.memory import InMemoryReleaseStore


@pytest.fixture
def deployment(make_image) -> Deployment:
    image = make_image("a")
    return Deployment(
        environment="dev",
        service="web",
        active_image=image,
        active_set=InstanceSet(set_id="web-a", image_digest=image.digest, instance_ids=["i-1"]),
        traffic_weights={"web-a": 100},
        instance_count=1,
        desired_instance_count=1,
        min_instances=1,
        max_instances=5,
    )


def test_satisfies_protocol(store: InMemoryReleaseStore) -> None:
    assert isinstance(store, ReleaseStore)


class TestRecords:
    """Tests for the promotion audit trail."""

    @pytest.mark.asyncio
    async def test_pending_record_replaced_by_conclusion(
        self, store: InMemoryReleaseStore, make_image
    ) -> None:
        record = PromotionRecord(service="web", image=make_image("a"), to_environment="dev")
        await store.save_record(record)
        assert await store.pending_records() == [record]

        done = record.conclude(PromotionOutcome.SUCCEEDED, "committed")
        await store.save_record(done)

        assert await store.get_record(record.promotion_id) == done
        assert await store.pending_records() == []
        assert await store.list_records("web") == [done]
        assert await store.list_records("api") == []

    @pytest.mark.asyncio
    async def test_records_ordered_by_start_then_id(
        self, store: InMemoryReleaseStore, make_image
    ) -> None:
        started = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
        later = PromotionRecord(
            promotion_id="p-0",
            service="web",
            image=make_image("c"),
            to_environment="dev",
            started_at=started + timedelta(seconds=1),
        )
        tied = [
            PromotionRecord(
                promotion_id=promotion_id,
                service="web",
                image=make_image("a"),
                to_environment="dev",
                started_at=started,
            )
            for promotion_id in ("p-2", "p-1")
        ]
        for record in (later, *tied):
            await store.save_record(record)

        expected = ["p-1", "p-2", "p-0"]
        assert [r.promotion_id for r in await store.list_records("web")] == expected
        assert [r.promotion_id for r in await store.pending_records()] == expected

    @pytest.mark.asyncio
    async def test_concluded_record_is_final(
        self, store: InMemoryReleaseStore, make_image
    ) -> None:
        record = PromotionRecord(service="web", image=make_image("a"), to_environment="dev")
        done = record.conclude(PromotionOutcome.FAILED, "environment locked")
        await store.save_record(done)

        # Saving the identical record again is harmless.
        await store.save_record(done)
        with pytest.raises(InvalidOutcomeTransitionError):
            await store.save_record(record)


class TestDeployments:
    """Tests for field-group updates of deployments."""

    @pytest.mark.asyncio
    async def test_create_is_unique(
        self, store: InMemoryReleaseStore, deployment: Deployment
    ) -> None:
        await store.create_deployment(deployment)
        with pytest.raises(ValueError, match="already exists"):
            await store.create_deployment(deployment)
        assert await store.list_deployments() == [deployment]

    @pytest.mark.asyncio
    async def test_strategy_update_keeps_scaling_fields(
        self, store: InMemoryReleaseStore, deployment: Deployment, make_image
    ) -> None:
        await store.create_deployment(deployment)
        await store.update_scaling("dev", "web", desired_instance_count=3)

        updated = await store.update_strategy(
            "dev",
            "web",
            strategy_state=StrategyState.PROVISIONING,
            candidate_image=make_image("b"),
        )

        assert updated.strategy_state == StrategyState.PROVISIONING
        assert updated.candidate_image is not None
        assert updated.candidate_image.digest == make_image("b").digest
        assert updated.desired_instance_count == 3
        assert updated.updated_at >= deployment.updated_at

    @pytest.mark.asyncio
    async def test_writers_cannot_touch_foreign_fields(
        self, store: InMemoryReleaseStore, deployment: Deployment
    ) -> None:
        await store.create_deployment(deployment)
        with pytest.raises(ValueError, match="desired_instance_count"):
            await store.update_strategy("dev", "web", desired_instance_count=2)
        with pytest.raises(ValueError, match="strategy_state"):
            await store.update_scaling("dev", "web", strategy_state=StrategyState.IDLE)

    @pytest.mark.asyncio
    async def test_update_revalidates_bounds(
        self, store: InMemoryReleaseStore, deployment: Deployment
    ) -> None:
        await store.create_deployment(deployment)
        with pytest.raises(ValidationError):
            await store.update_scaling("dev", "web", desired_instance_count=9)
        current = await store.get_deployment("dev", "web")
        assert current is not None
        assert current.desired_instance_count == 1

    @pytest.mark.asyncio
    async def test_update_missing_deployment(self, store: InMemoryReleaseStore) -> None:
        with pytest.raises(DeploymentNotFoundError):
            await store.update_strategy("dev", "web", reason="x")


class TestLocks:
    @pytest.mark.asyncio
    async def test_save_and_clear(self, store: InMemoryReleaseStore) -> None:
        lock = EnvironmentLock(locked=True, reason="incident", locked_by="sre")
        await store.save_lock("production", lock)
        assert await store.get_lock("production") == lock

        await store.save_lock("production", None)
        assert await store.get_lock("production") is None

    @pytest.mark.asyncio
    async def test_unlocked_lock_clears(self, store: InMemoryReleaseStore) -> None:
        await store.save_lock("dev", EnvironmentLock(locked=True, reason="x"))
        await store.save_lock("dev", EnvironmentLock(locked=False))
        assert await store.get_lock("dev") is None
