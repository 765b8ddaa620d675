"""SQL-backed release store.

Provides the ReleaseStore operations on top of SQLAlchemy async sessions.
Each operation runs in its own transaction. Deployment updates are
read-modify-write cycles serialized by an in-process lock and, on
PostgreSQL, by ``SELECT ... FOR UPDATE``.

Example:
    >>> store = SqlReleaseStore.from_url("sqlite+aiosqlite:///shiplane.db")
    >>> await store.create_schema()
    >>> records = await store.list_records("web")
    >>> await store.close()
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Mapping
from typing import Any

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from shiplane.errors import DeploymentNotFoundError
from shiplane.schemas.deployment import Deployment
from shiplane.schemas.promotion import EnvironmentLock, PromotionOutcome, PromotionRecord
from shiplane.store.base import check_replace, scaling_update, strategy_update
from shiplane.store.models import (
    Base,
    DeploymentModel,
    EnvironmentLockModel,
    PromotionRecordModel,
)

logger = structlog.get_logger(__name__)


class SqlReleaseStore:
    """ReleaseStore persisted through SQLAlchemy.

    Args:
        engine: Async engine (SQLite via aiosqlite or PostgreSQL via asyncpg).
    """

    def __init__(self, engine: AsyncEngine) -> None:
        self._engine = engine
        self._sessions = async_sessionmaker(engine, expire_on_commit=False)
        self._update_lock = asyncio.Lock()
        self._log = logger.bind(component="release_store")

    @classmethod
    def from_url(cls, url: str) -> SqlReleaseStore:
        """Create a store from an SQLAlchemy async URL."""
        return cls(create_async_engine(url))

    async def create_schema(self) -> None:
        """Create all tables that do not exist yet."""
        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        self._log.debug("schema_created", url=str(self._engine.url))

    async def close(self) -> None:
        """Dispose of the engine's connection pool."""
        await self._engine.dispose()

    # ------------------------------------------------------------------
    # Promotion records
    # ------------------------------------------------------------------

    async def save_record(self, record: PromotionRecord) -> None:
        async with self._sessions() as session, session.begin():
            row = await session.get(PromotionRecordModel, record.promotion_id)
            if row is None:
                session.add(
                    PromotionRecordModel(
                        promotion_id=record.promotion_id,
                        service=record.service,
                        to_environment=record.to_environment,
                        outcome=record.outcome.value,
                        started_at=record.started_at,
                        data=record.model_dump(mode="json"),
                    )
                )
            else:
                check_replace(PromotionRecord.model_validate(row.data), record)
                row.outcome = record.outcome.value
                row.data = record.model_dump(mode="json")
        self._log.debug(
            "record_saved",
            promotion_id=record.promotion_id,
            outcome=record.outcome.value,
        )

    async def get_record(self, promotion_id: str) -> PromotionRecord | None:
        async with self._sessions() as session:
            row = await session.get(PromotionRecordModel, promotion_id)
            return None if row is None else PromotionRecord.model_validate(row.data)

    async def list_records(self, service: str) -> list[PromotionRecord]:
        stmt = (
            select(PromotionRecordModel)
            .where(PromotionRecordModel.service == service)
            .order_by(PromotionRecordModel.started_at, PromotionRecordModel.promotion_id)
        )
        return await self._records(stmt)

    async def pending_records(self) -> list[PromotionRecord]:
        stmt = (
            select(PromotionRecordModel)
            .where(PromotionRecordModel.outcome == PromotionOutcome.PENDING.value)
            .order_by(PromotionRecordModel.started_at, PromotionRecordModel.promotion_id)
        )
        return await self._records(stmt)

    async def _records(self, stmt: Any) -> list[PromotionRecord]:
        async with self._sessions() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [PromotionRecord.model_validate(row.data) for row in rows]

    # ------------------------------------------------------------------
    # Deployments
    # ------------------------------------------------------------------

    async def create_deployment(self, deployment: Deployment) -> Deployment:
        async with self._sessions() as session, session.begin():
            existing = await session.get(
                DeploymentModel, (deployment.environment, deployment.service)
            )
            if existing is not None:
                raise ValueError(f"Deployment {deployment.deployment_id} already exists")
            session.add(
                DeploymentModel(
                    environment=deployment.environment,
                    service=deployment.service,
                    strategy_state=deployment.strategy_state.value,
                    updated_at=deployment.updated_at,
                    data=deployment.model_dump(mode="json"),
                )
            )
        self._log.info("deployment_created", deployment_id=deployment.deployment_id)
        return deployment

    async def get_deployment(self, environment: str, service: str) -> Deployment | None:
        async with self._sessions() as session:
            row = await session.get(DeploymentModel, (environment, service))
            return None if row is None else Deployment.model_validate(row.data)

    async def list_deployments(self) -> list[Deployment]:
        stmt = select(DeploymentModel).order_by(
            DeploymentModel.environment, DeploymentModel.service
        )
        async with self._sessions() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [Deployment.model_validate(row.data) for row in rows]

    async def update_strategy(
        self, environment: str, service: str, **changes: Any
    ) -> Deployment:
        return await self._update(environment, service, changes, strategy_update)

    async def update_scaling(
        self, environment: str, service: str, **changes: Any
    ) -> Deployment:
        return await self._update(environment, service, changes, scaling_update)

    async def _update(
        self,
        environment: str,
        service: str,
        changes: Mapping[str, Any],
        apply: Callable[[Deployment, Mapping[str, Any]], Deployment],
    ) -> Deployment:
        stmt = (
            select(DeploymentModel)
            .where(
                DeploymentModel.environment == environment,
                DeploymentModel.service == service,
            )
            .with_for_update()
        )
        async with self._update_lock:
            async with self._sessions() as session, session.begin():
                row = (await session.execute(stmt)).scalar_one_or_none()
                if row is None:
                    raise DeploymentNotFoundError(environment, service)
                updated = apply(Deployment.model_validate(row.data), changes)
                row.strategy_state = updated.strategy_state.value
                row.updated_at = updated.updated_at
                row.data = updated.model_dump(mode="json")
        return updated

    # ------------------------------------------------------------------
    # Environment locks
    # ------------------------------------------------------------------

    async def save_lock(self, environment: str, lock: EnvironmentLock | None) -> None:
        async with self._sessions() as session, session.begin():
            row = await session.get(EnvironmentLockModel, environment)
            if lock is None or not lock.locked:
                if row is not None:
                    await session.delete(row)
                return
            if row is None:
                row = EnvironmentLockModel(environment=environment)
                session.add(row)
            row.locked = True
            row.reason = lock.reason
            row.locked_by = lock.locked_by
            row.locked_at = lock.locked_at

    async def get_lock(self, environment: str) -> EnvironmentLock | None:
        async with self._sessions() as session:
            row = await session.get(EnvironmentLockModel, environment)
            if row is None:
                return None
            return EnvironmentLock(
                locked=row.locked,
                reason=row.reason,
                locked_by=row.locked_by,
                locked_at=row.locked_at,
            )


__all__ = ["SqlReleaseStore"]
