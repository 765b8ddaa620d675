"""SQLAlchemy async models for release state persistence.

Each row stores the full pydantic model as JSON in ``data`` alongside the
columns used for lookups and ordering, so the schema stays portable
between SQLite (aiosqlite) and PostgreSQL (asyncpg).
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, Boolean, DateTime, Index, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all shiplane models."""

    pass


class PromotionRecordModel(Base):
    """Persisted promotion audit record.

    Maps to the PromotionRecord pydantic model.
    """

    __tablename__ = "promotion_records"

    promotion_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    service: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    to_environment: Mapped[str] = mapped_column(String(50), nullable=False)
    outcome: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    data: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)

    __table_args__ = (Index("ix_promotion_records_service_time", "service", "started_at"),)


class DeploymentModel(Base):
    """Live deployment of a service in an environment.

    Maps to the Deployment pydantic model. One row per (environment, service).
    """

    __tablename__ = "deployments"

    environment: Mapped[str] = mapped_column(String(50), primary_key=True)
    service: Mapped[str] = mapped_column(String(255), primary_key=True)
    strategy_state: Mapped[str] = mapped_column(String(30), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    data: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)


class EnvironmentLockModel(Base):
    """Runtime lock of an environment. A row exists only while locked."""

    __tablename__ = "environment_locks"

    environment: Mapped[str] = mapped_column(String(50), primary_key=True)
    locked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    locked_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    locked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


__all__ = [
    "Base",
    "DeploymentModel",
    "EnvironmentLockModel",
    "PromotionRecordModel",
]
