"""Capability interfaces of the external collaborators.

shiplane never talks to infrastructure directly. Provisioners, health
probes, metrics backends, image registries, secret stores and alert sinks
are injected as objects implementing these protocols, so the release logic
runs unchanged against real adapters or in-memory fakes.

Idempotence contract:
    Every provisioner call carries a request token. Repeating a call with
    the same token must not create, remove or switch anything twice; the
    provisioner returns the result of the first call instead.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any, Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict, Field

from shiplane.schemas.image import Image


class InstanceSpec(BaseModel):
    """Everything a provisioner needs to start instances of an image.

    Attributes:
        service: Service name.
        environment: Target environment.
        image: Image to run (pulled by digest).
        set_id: Instance set the new instances belong to.
        secrets: Environment-scoped secrets resolved from the secrets store.
        labels: Free-form labels attached to every instance.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    service: str
    environment: str
    image: Image
    set_id: str
    secrets: dict[str, str] = Field(default_factory=dict, repr=False)
    labels: dict[str, str] = Field(default_factory=dict)


@runtime_checkable
class Provisioner(Protocol):
    """Creates and removes instances and writes router weights.

    Implementations raise ProvisionError on failure.

    Example:
        >>> class KubeProvisioner:
        ...     async def create_instances(self, spec, count, token):
        ...         return await self._scale_replicaset(spec, count, token)
    """

    async def create_instances(
        self, spec: InstanceSpec, count: int, token: str
    ) -> list[str]:
        """Start ``count`` instances of ``spec`` and return their ids."""
        ...

    async def remove_instances(self, instance_ids: Sequence[str], token: str) -> None:
        """Stop and remove the given instances."""
        ...

    async def switch_traffic(self, weights: dict[str, int], token: str) -> None:
        """Atomically write absolute traffic weights (percent by instance set id)."""
        ...


@runtime_checkable
class HealthProbe(Protocol):
    """Probes the health of an instance set."""

    async def probe(self, deployment_id: str, set_id: str) -> bool:
        """Return True when every instance of the set reports healthy."""
        ...


@runtime_checkable
class MetricsSource(Protocol):
    """Read-only access to a metrics backend."""

    async def query(self, target: str, metric: str, window_seconds: float) -> list[float]:
        """Return the metric series of ``target`` over the trailing window.

        Args:
            target: Deployment id or instance set id.
            metric: Metric name (e.g., "cpu_utilization").
            window_seconds: Trailing window length.

        Returns:
            Observed values, oldest first. Empty when no samples exist.
        """
        ...


@runtime_checkable
class ImageRegistry(Protocol):
    """Image builder/registry capability."""

    async def push(self, image: Image, tags: Sequence[str]) -> str:
        """Push an image under ``tags`` and return its digest."""
        ...

    async def pull(self, repository: str, tag: str) -> Image:
        """Resolve a tag to a pullable image."""
        ...


@runtime_checkable
class SecretsStore(Protocol):
    """Environment-scoped secret lookup."""

    async def get(self, key: str, environment: str) -> str:
        """Return the secret value of ``key`` in ``environment``."""
        ...


@runtime_checkable
class AlertSink(Protocol):
    """Receives observability alerts (e.g., repeated missing metrics)."""

    async def alert(self, event_type: str, event_data: dict[str, Any]) -> None:
        """Deliver an alert. Must not raise."""
        ...


__all__ = [
    "AlertSink",
    "HealthProbe",
    "ImageRegistry",
    "InstanceSpec",
    "MetricsSource",
    "Provisioner",
    "SecretsStore",
]
