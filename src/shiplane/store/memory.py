"""In-memory release store for tests and single-process use."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from shiplane.errors import DeploymentNotFoundError
from shiplane.schemas.deployment import Deployment
from shiplane.schemas.promotion import EnvironmentLock, PromotionRecord
from shiplane.store.base import check_replace, scaling_update, strategy_update


def _record_order(record: PromotionRecord) -> tuple[datetime, str]:
    return (record.started_at, record.promotion_id)


class InMemoryReleaseStore:
    """ReleaseStore keeping everything in dictionaries.

    Every method completes without suspending, so each read-modify-write
    is atomic with respect to other tasks on the event loop.
    """

    def __init__(self) -> None:
        self._records: dict[str, PromotionRecord] = {}
        self._deployments: dict[tuple[str, str], Deployment] = {}
        self._locks: dict[str, EnvironmentLock] = {}

    async def save_record(self, record: PromotionRecord) -> None:
        check_replace(self._records.get(record.promotion_id), record)
        self._records[record.promotion_id] = record

    async def get_record(self, promotion_id: str) -> PromotionRecord | None:
        return self._records.get(promotion_id)

    async def list_records(self, service: str) -> list[PromotionRecord]:
        return sorted(
            (r for r in self._records.values() if r.service == service), key=_record_order
        )

    async def pending_records(self) -> list[PromotionRecord]:
        return sorted(
            (r for r in self._records.values() if not r.outcome.is_terminal), key=_record_order
        )

    async def create_deployment(self, deployment: Deployment) -> Deployment:
        key = (deployment.environment, deployment.service)
        if key in self._deployments:
            raise ValueError(f"Deployment {deployment.deployment_id} already exists")
        self._deployments[key] = deployment
        return deployment

    async def get_deployment(self, environment: str, service: str) -> Deployment | None:
        return self._deployments.get((environment, service))

    async def list_deployments(self) -> list[Deployment]:
        return list(self._deployments.values())

    async def update_strategy(
        self, environment: str, service: str, **changes: Any
    ) -> Deployment:
        updated = strategy_update(self._current(environment, service), changes)
        self._deployments[(environment, service)] = updated
        return updated

    async def update_scaling(
        self, environment: str, service: str, **changes: Any
    ) -> Deployment:
        updated = scaling_update(self._current(environment, service), changes)
        self._deployments[(environment, service)] = updated
        return updated

    async def save_lock(self, environment: str, lock: EnvironmentLock | None) -> None:
        if lock is None or not lock.locked:
            self._locks.pop(environment, None)
        else:
            self._locks[environment] = lock

    async def get_lock(self, environment: str) -> EnvironmentLock | None:
        return self._locks.get(environment)

    def _current(self, environment: str, service: str) -> Deployment:
        deployment = self._deployments.get((environment, service))
        if deployment is None:
            raise DeploymentNotFoundError(environment, service)
        return deployment


__all__ = ["InMemoryReleaseStore"]
