"""Release store interface and shared update rules.

Persisted state is the audit trail of PromotionRecords, the live
Deployment of every (environment, service) and the runtime environment
locks. Deployments are never replaced wholesale by their writers: the
strategy engine calls ``update_strategy`` and the autoscaler calls
``update_scaling``, each touching only its own field group.
"""

from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Any, Protocol, runtime_checkable

from shiplane.errors import InvalidOutcomeTransitionError
from shiplane.schemas.deployment import SCALING_FIELDS, STRATEGY_FIELDS, Deployment
from shiplane.schemas.promotion import EnvironmentLock, PromotionRecord


@runtime_checkable
class ReleaseStore(Protocol):
    """Durable state of the release orchestrator."""

    async def save_record(self, record: PromotionRecord) -> None:
        """Insert a record or replace a pending one with the same promotion_id."""
        ...

    async def get_record(self, promotion_id: str) -> PromotionRecord | None:
        """Fetch a record by promotion id."""
        ...

    async def list_records(self, service: str) -> list[PromotionRecord]:
        """All records of a service, oldest first (ties ordered by promotion id)."""
        ...

    async def pending_records(self) -> list[PromotionRecord]:
        """Records whose outcome is still pending, ordered like ``list_records``."""
        ...

    async def create_deployment(self, deployment: Deployment) -> Deployment:
        """Persist the first deployment of a service in an environment."""
        ...

    async def get_deployment(self, environment: str, service: str) -> Deployment | None:
        """Fetch the live deployment, if any."""
        ...

    async def list_deployments(self) -> list[Deployment]:
        """All live deployments."""
        ...

    async def update_strategy(
        self, environment: str, service: str, **changes: Any
    ) -> Deployment:
        """Apply strategy-field changes and return the updated deployment."""
        ...

    async def update_scaling(
        self, environment: str, service: str, **changes: Any
    ) -> Deployment:
        """Apply instance-count changes and return the updated deployment."""
        ...

    async def save_lock(self, environment: str, lock: EnvironmentLock | None) -> None:
        """Set (or clear, with None) the runtime lock of an environment."""
        ...

    async def get_lock(self, environment: str) -> EnvironmentLock | None:
        """Runtime lock of an environment, if locked."""
        ...


def apply_update(
    current: Deployment,
    changes: Mapping[str, Any],
    allowed: frozenset[str],
) -> Deployment:
    """Return ``current`` with ``changes`` applied and re-validated.

    Args:
        current: Deployment as stored.
        changes: Field values to overwrite.
        allowed: Field group the writer owns.

    Returns:
        New Deployment with a fresh updated_at.

    Raises:
        ValueError: If a change targets a field outside ``allowed``.
        pydantic.ValidationError: If the result violates a model invariant.
    """
    foreign = set(changes) - allowed
    if foreign:
        raise ValueError(f"Fields {sorted(foreign)} are not writable by this writer")
    data = current.model_dump()
    data.update(changes)
    data["updated_at"] = datetime.now(timezone.utc)
    return Deployment.model_validate(data)


def strategy_update(current: Deployment, changes: Mapping[str, Any]) -> Deployment:
    """Apply strategy engine changes."""
    return apply_update(current, changes, STRATEGY_FIELDS)


def scaling_update(current: Deployment, changes: Mapping[str, Any]) -> Deployment:
    """Apply autoscaler changes."""
    return apply_update(current, changes, SCALING_FIELDS)


def check_replace(existing: PromotionRecord | None, record: PromotionRecord) -> None:
    """Reject overwriting a concluded record.

    Raises:
        InvalidOutcomeTransitionError: If ``existing`` is terminal and differs
            from ``record``.
    """
    if existing is not None and existing.outcome.is_terminal and existing != record:
        raise InvalidOutcomeTransitionError(
            record.promotion_id, existing.outcome.value, record.outcome.value
        )


__all__ = [
    "ReleaseStore",
    "apply_update",
    "check_replace",
    "scaling_update",
    "strategy_update",
]
