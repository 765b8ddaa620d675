"""In-memory fakes of shiplane's external collaborators.

Every fake records the calls it receives so tests can assert on the exact
interaction.

Fakes:
    FakeProvisioner: Instances and weights in memory, idempotent per request token
    FakeHealthProbe / FakeMetricsSource / FakeSecretsStore: Scripted answers
    FakeImageRegistry: Tag to digest map
    RecordingAlertSink: Collects autoscaler alerts
    FakeClock: Monotonic clock advanced by hand

Constants:
    FAST_BLUE_GREEN / FAST_CANARY: Strategy configurations without waits
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Sequence
from typing import Any

from shiplane.errors import ProvisionError
from shiplane.protocols import InstanceSpec
from shiplane.schemas.image import Image
from shiplane.schemas.strategy import BlueGreenConfig, CanaryConfig

class FakeProvisioner:
    """Provisioner keeping instances and weights in memory.

    Repeating a call with a token that already succeeded returns the first
    result without acting again. Failures are injected per operation with
    ``fail()`` or with a hook that may raise.
    """

    def __init__(self) -> None:
        self.instances: dict[str, InstanceSpec] = {}
        self.weights: dict[str, int] = {}
        self.weight_history: list[dict[str, int]] = []
        self.removed: list[str] = []
        self.calls: list[tuple[str, str]] = []
        self.hooks: dict[str, Callable[..., None]] = {}
        self._failures: dict[str, list[Exception]] = {}
        self._results: dict[str, Any] = {}
        self._next_id = 0

    def fail(self, operation: str, times: int = 1, *, retryable: bool = True) -> None:
        """Make the next ``times`` calls of ``operation`` raise ProvisionError."""
        self._failures.setdefault(operation, []).extend(
            ProvisionError(operation, "injected failure", retryable=retryable)
            for _ in range(times)
        )

    def _check(self, operation: str, *args: Any) -> None:
        queued = self._failures.get(operation)
        if queued:
            raise queued.pop(0)
        hook = self.hooks.get(operation)
        if hook is not None:
            hook(*args)

    def running(self, set_id: str) -> list[str]:
        """Ids of live instances belonging to ``set_id``."""
        return [i for i, spec in self.instances.items() if spec.set_id == set_id]

    def tokens(self, operation: str) -> list[str]:
        return [token for op, token in self.calls if op == operation]

    async def create_instances(self, spec: InstanceSpec, count: int, token: str) -> list[str]:
        self.calls.append(("create_instances", token))
        if token in self._results:
            return list(self._results[token])
        self._check("create_instances", spec, count)
        ids = []
        for _ in range(count):
            self._next_id += 1
            instance_id = f"i-{self._next_id:04d}"
            self.instances[instance_id] = spec
            ids.append(instance_id)
        self._results[token] = ids
        return list(ids)

    async def remove_instances(self, instance_ids: Sequence[str], token: str) -> None:
        self.calls.append(("remove_instances", token))
        if token in self._results:
            return
        self._check("remove_instances", list(instance_ids))
        for instance_id in instance_ids:
            self.instances.pop(instance_id, None)
            self.removed.append(instance_id)
        self._results[token] = None

    async def switch_traffic(self, weights: dict[str, int], token: str) -> None:
        self.calls.append(("switch_traffic", token))
        if token in self._results:
            return
        self._check("switch_traffic", dict(weights))
        self.weights.update(weights)
        self.weight_history.append(dict(weights))
        self._results[token] = None


class FakeHealthProbe:
    """Health probe answering from a script, then from ``healthy``."""

    def __init__(self) -> None:
        self.healthy = True
        self.script: list[bool | Exception] = []
        self.delay = 0.0
        self.calls: list[tuple[str, str]] = []

    async def probe(self, deployment_id: str, set_id: str) -> bool:
        self.calls.append((deployment_id, set_id))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.script:
            result = self.script.pop(0)
            if isinstance(result, Exception):
                raise result
            return result
        return self.healthy


class FakeMetricsSource:
    """Metrics source matching targets by prefix; the latest rule wins."""

    def __init__(self) -> None:
        self._rules: list[tuple[str, str, list[float] | Exception]] = []
        self.queries: list[tuple[str, str, float]] = []

    def set(self, prefix: str, metric: str, values: list[float]) -> None:
        self._rules.insert(0, (prefix, metric, list(values)))

    def fail(self, prefix: str, metric: str, error: Exception | None = None) -> None:
        self._rules.insert(0, (prefix, metric, error or ConnectionError("metrics unavailable")))

    async def query(self, target: str, metric: str, window_seconds: float) -> list[float]:
        self.queries.append((target, metric, window_seconds))
        for prefix, name, values in self._rules:
            if name == metric and target.startswith(prefix):
                if isinstance(values, Exception):
                    raise values
                return list(values)
        return []


class FakeSecretsStore:
    def __init__(self, values: dict[tuple[str, str], str] | None = None) -> None:
        self.values = dict(values or {})
        self.lookups: list[tuple[str, str]] = []

    async def get(self, key: str, environment: str) -> str:
        self.lookups.append((key, environment))
        try:
            return self.values[(key, environment)]
        except KeyError:
            raise KeyError(f"{key} not set in {environment}") from None


class FakeImageRegistry:
    """Image registry handing out the digest registered per repository:tag."""

    def __init__(self) -> None:
        self.digests: dict[str, str] = {}
        self.pushes: list[tuple[Image, list[str]]] = []

    async def push(self, image: Image, tags: Sequence[str]) -> str:
        self.pushes.append((image, list(tags)))
        for tag in tags:
            self.digests[f"{image.repository}:{tag}"] = image.digest
        return image.digest

    async def pull(self, repository: str, tag: str) -> Image:
        return Image(repository=repository, tag=tag, digest=self.digests[f"{repository}:{tag}"])


class RecordingAlertSink:
    def __init__(self) -> None:
        self.alerts: list[tuple[str, dict[str, Any]]] = []

    async def alert(self, event_type: str, event_data: dict[str, Any]) -> None:
        self.alerts.append((event_type, event_data))


class FakeClock:
    """Monotonic clock advanced by hand."""

    def __init__(self, now: float = 0.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def make_digest(char: str) -> str:
    """A valid digest made of one repeated hex character."""
    return "sha256:" + char * 64


FAST_BLUE_GREEN = BlueGreenConfig(
    verification_window_seconds=0.0,
    consecutive_successes=3,
    probe_timeout_seconds=1.0,
    max_wait_seconds=5.0,
)
FAST_CANARY = CanaryConfig(steps=[5, 25, 50, 100], analysis_window_seconds=0.0)


__all__ = [
    "FAST_BLUE_GREEN",
    "FAST_CANARY",
    "FakeClock",
    "FakeHealthProbe",
    "FakeImageRegistry",
    "FakeMetricsSource",
    "FakeProvisioner",
    "FakeSecretsStore",
    "RecordingAlertSink",
    "make_digest",
]
