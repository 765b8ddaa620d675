"""Keyed asyncio locks for services and deployments.

ServiceLocks serializes promotions of one service across all
environments. DeploymentLocks hands out the two locks of a deployment:
``strategy`` (held by the strategy engine for a whole transition) and
``scaling`` (held by the autoscaler while applying a change, and briefly
by the engine when entering and leaving a transition).
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field

import structlog

logger = structlog.get_logger(__name__)


class ServiceLocks:
    """One lock per service; later requests queue behind the holder."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._waiting: dict[str, int] = {}

    def lock(self, service: str) -> asyncio.Lock:
        """Return the lock of ``service``, creating it on first use."""
        return self._locks.setdefault(service, asyncio.Lock())

    def is_locked(self, service: str) -> bool:
        return service in self._locks and self._locks[service].locked()

    def waiting(self, service: str) -> int:
        """Number of requests queued behind the current holder."""
        return self._waiting.get(service, 0)

    @asynccontextmanager
    async def hold(self, service: str, **log_context: object) -> AsyncIterator[None]:
        """Hold the service lock, logging ``promotion_queued`` when it must wait."""
        lock = self.lock(service)
        if lock.locked():
            self._waiting[service] = self._waiting.get(service, 0) + 1
            logger.info(
                "promotion_queued",
                service=service,
                queue_depth=self._waiting[service],
                **log_context,
            )
            try:
                await lock.acquire()
            finally:
                self._waiting[service] -= 1
        else:
            await lock.acquire()
        try:
            yield
        finally:
            lock.release()


@dataclass
class _DeploymentLockPair:
    strategy: asyncio.Lock = field(default_factory=asyncio.Lock)
    scaling: asyncio.Lock = field(default_factory=asyncio.Lock)


class DeploymentLocks:
    """Strategy and scaling locks per deployment id.

    Lock order is always strategy before scaling.
    """

    def __init__(self) -> None:
        self._pairs: dict[str, _DeploymentLockPair] = {}

    def _pair(self, deployment_id: str) -> _DeploymentLockPair:
        return self._pairs.setdefault(deployment_id, _DeploymentLockPair())

    def strategy(self, deployment_id: str) -> asyncio.Lock:
        return self._pair(deployment_id).strategy

    def scaling(self, deployment_id: str) -> asyncio.Lock:
        return self._pair(deployment_id).scaling


__all__ = ["DeploymentLocks", "ServiceLocks"]
