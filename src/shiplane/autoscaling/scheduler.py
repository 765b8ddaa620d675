"""AutoscalerScheduler - one periodic control loop per live deployment.

Ticks of one deployment run one after another and every loop stays alive
when a tick raises.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable

import structlog

from shiplane.autoscaling.controller import Autoscaler
from shiplane.protocols import AlertSink
from shiplane.schemas.promotion import ReleaseConfig
from shiplane.strategies.base import StrategyContext

logger = structlog.get_logger(__name__)


class AutoscalerScheduler:
    """Runs an Autoscaler loop for every deployment with autoscaling enabled.

    - Serial ticks: the next interval starts after the previous tick returns
    - Exception resilience: a failing tick is logged and the loop continues
    - Replace-on-reschedule: scheduling a deployment again restarts its loop

    Args:
        config: Release configuration (per-service autoscaling settings).
        ctx: Shared collaborators.
        alerts: Sink for missing-metric alerts.
        clock: Monotonic clock passed to every Autoscaler.

    Example:
        >>> scheduler = AutoscalerScheduler(config, ctx, alerts=notifier)
        >>> await scheduler.sync()
        ['dev/web', 'staging/web']
        >>> scheduler.cancel_all()
    """

    def __init__(
        self,
        config: ReleaseConfig,
        ctx: StrategyContext,
        *,
        alerts: AlertSink | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config
        self._ctx = ctx
        self._alerts = alerts
        self._clock = clock
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._autoscalers: dict[str, Autoscaler] = {}
        self._logger = logger.bind(component="autoscaler_scheduler")

    async def sync(self) -> list[str]:
        """Start loops for live deployments that have none yet.

        Returns:
            Deployment ids whose loops were started by this call.
        """
        started: list[str] = []
        for deployment in await self._ctx.store.list_deployments():
            if deployment.deployment_id in self._tasks:
                continue
            service = self._config.get_service(deployment.service)
            if service is None or not service.autoscaling.enabled:
                continue
            autoscaler = Autoscaler(
                deployment.environment,
                deployment.service,
                service.autoscaling,
                self._ctx,
                alerts=self._alerts,
                secret_keys=service.secret_keys,
                clock=self._clock,
            )
            await self.schedule(autoscaler)
            started.append(deployment.deployment_id)
        return started

    async def schedule(self, autoscaler: Autoscaler) -> None:
        """Start (or restart) the periodic loop of ``autoscaler``."""
        name = autoscaler.deployment_id
        interval = autoscaler.config.tick_interval_seconds
        if name in self._tasks:
            self._logger.info("replacing_existing_loop", deployment_id=name)
            self.cancel(name)

        self._autoscalers[name] = autoscaler
        self._tasks[name] = asyncio.create_task(self._run_periodic(autoscaler, interval))
        self._logger.info("loop_scheduled", deployment_id=name, interval_seconds=interval)

    async def _run_periodic(self, autoscaler: Autoscaler, interval_seconds: float) -> None:
        name = autoscaler.deployment_id
        first_run = True
        while True:
            if not first_run:
                await asyncio.sleep(interval_seconds)
            first_run = False

            try:
                await autoscaler.tick()
            except Exception as e:
                self._logger.error(
                    "tick_error",
                    deployment_id=name,
                    error=str(e),
                    exc_info=True,
                )

    def is_scheduled(self, deployment_id: str) -> bool:
        return deployment_id in self._tasks

    def autoscaler(self, deployment_id: str) -> Autoscaler | None:
        """Autoscaler of a scheduled deployment."""
        return self._autoscalers.get(deployment_id)

    @property
    def scheduled(self) -> list[str]:
        """Deployment ids with a running loop."""
        return list(self._tasks)

    def cancel(self, deployment_id: str) -> None:
        """Stop the loop of a deployment.

        Raises:
            KeyError: If no loop runs for the deployment.
        """
        if deployment_id not in self._tasks:
            raise KeyError(f"No autoscaler loop for {deployment_id}")
        self._tasks.pop(deployment_id).cancel()
        self._autoscalers.pop(deployment_id, None)
        self._logger.info("loop_cancelled", deployment_id=deployment_id)

    def cancel_all(self) -> None:
        """Stop every loop."""
        for deployment_id in list(self._tasks):
            self.cancel(deployment_id)


__all__ = ["AutoscalerScheduler"]
