"""Release orchestrator: drives images through the ordered environments.

For every environment, in ascending order, the orchestrator:

1. Opens a pending PromotionRecord (or resumes one paused at an approval
   gate). An image already active in the environment concludes
   immediately as succeeded.
2. Refuses locked environments.
3. Waits on the approval gate when the environment requires it.
4. Hands the rollout to the strategy engine (bootstrapping the first
   deployment of a service).
5. Concludes the record from the strategy result and decides whether to
   continue.

Promotions of one service are serialized by a per-service lock. Webhook
notifications are best-effort: failures are logged and never fail a
promotion.

Example:
    >>> orchestrator = ReleaseOrchestrator(config, ctx)
    >>> async for record in orchestrator.promote(image):
    ...     print(record.to_environment, record.outcome.value)
    dev succeeded
    staging succeeded
    production pending
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from datetime import datetime, timezone
from typing import Any

import structlog

from shiplane.autoscaling.scheduler import AutoscalerScheduler
from shiplane.errors import (
    ApprovalRejected,
    ApprovalTimeout,
    ConfigurationError,
    DeploymentNotFoundError,
    ImageNotFoundError,
    PromotionCancelled,
    PromotionNotFoundError,
)
from shiplane.orchestrator.approvals import ApprovalGate
from shiplane.orchestrator.locks import ServiceLocks
from shiplane.registry.index import ArtifactRegistryIndex
from shiplane.resilience import CancelToken
from shiplane.schemas.deployment import Deployment
from shiplane.schemas.image import Image, PromotionStatus
from shiplane.schemas.promotion import (
    EnvironmentConfig,
    EnvironmentLock,
    PromotionOutcome,
    PromotionRecord,
    ReleaseConfig,
)
from shiplane.store.base import ReleaseStore
from shiplane.strategies.base import StrategyContext, StrategyResult
from shiplane.strategies.engine import StrategyEngine
from shiplane.telemetry.tracing import create_span, current_trace_id
from shiplane.webhooks import WebhookNotifier

logger = structlog.get_logger(__name__)

AWAITING_APPROVAL = "awaiting approval"
"""Reason carried by a pending record paused at an approval gate."""

CANCELLED = "cancelled"

_INDEX_STATUS = {
    PromotionOutcome.SUCCEEDED: PromotionStatus.PROMOTED,
    PromotionOutcome.ROLLED_BACK: PromotionStatus.ROLLED_BACK,
    PromotionOutcome.FAILED: PromotionStatus.FAILED,
}


class ReleaseOrchestrator:
    """Sequences promotions, approval gates, locks and the strategy engine.

    Args:
        config: Release configuration.
        ctx: Collaborators shared with the strategy engine and autoscalers.
        index: Artifact registry index (a fresh one by default).
        approvals: Approval gate (a fresh one by default).
        notifier: Webhook notifier (built from ``config.webhooks`` by default).
        scheduler: Autoscaler scheduler synced after start-up and bootstraps.

    Example:
        >>> orchestrator = ReleaseOrchestrator(config, ctx)
        >>> await orchestrator.start()
        >>> await orchestrator.on_image_pushed("acme/web", "abc123", digest)
    """

    def __init__(
        self,
        config: ReleaseConfig,
        ctx: StrategyContext,
        *,
        index: ArtifactRegistryIndex | None = None,
        approvals: ApprovalGate | None = None,
        notifier: WebhookNotifier | None = None,
        scheduler: AutoscalerScheduler | None = None,
    ) -> None:
        self.config = config
        self.ctx = ctx
        self.engine = StrategyEngine(config, ctx)
        self.index = index or ArtifactRegistryIndex()
        self.approvals = approvals or ApprovalGate()
        self.scheduler = scheduler
        if notifier is None and config.webhooks:
            notifier = WebhookNotifier(config.webhooks)
        self._notifier = notifier
        self._service_locks = ServiceLocks()
        self._cancel_tokens: dict[str, CancelToken] = {}
        self._queue: asyncio.Queue[Image] = asyncio.Queue()
        self._dispatcher: asyncio.Task[None] | None = None
        self._tasks: set[asyncio.Task[None]] = set()
        self._stopping = False
        self._log = logger.bind(component="release_orchestrator")

    @property
    def store(self) -> ReleaseStore:
        return self.ctx.store

    # ------------------------------------------------------------------
    # Promotion
    # ------------------------------------------------------------------

    async def promote(
        self,
        image: Image,
        *,
        force: bool = False,
        cancel: CancelToken | None = None,
    ) -> AsyncIterator[PromotionRecord]:
        """Promote ``image`` through the environments in ascending order.

        Yields one record per environment attempted. The sequence stops at
        the first record that is not succeeded (a paused record included)
        unless ``force`` is set; cancellation always stops it. Calling
        again with the same image skips environments where it is already
        active and resumes a promotion paused at an approval gate.

        The service lock is held until the iterator is exhausted or closed.

        Args:
            image: Image to promote.
            force: Continue past failed or rolled back environments.
            cancel: Token cancelling the whole sequence.

        Yields:
            The record of each environment, concluded or paused.

        Raises:
            ConfigurationError: If no service is configured for the image's repository.
        """
        service = self.config.service_for_repository(image.repository)
        if service is None:
            raise ConfigurationError(f"no service configured for repository '{image.repository}'")
        self._ensure_indexed(image)
        cancel = cancel or CancelToken()

        async with self._service_locks.hold(service.name, image=image.reference):
            if self._stopping:
                cancel.cancel(CANCELLED)
            self._log.info("promotion_started", service=service.name, image=image.reference)
            previous: str | None = None
            for env in self.config.ordered_environments:
                if cancel.cancelled:
                    break
                record = await self._promote_environment(
                    image, service.name, env, previous, cancel
                )
                yield record
                previous = env.name
                if record.outcome == PromotionOutcome.PENDING or cancel.cancelled:
                    break
                if record.outcome != PromotionOutcome.SUCCEEDED and not force:
                    break
            self._log.info("promotion_finished", service=service.name, image=image.reference)

    async def _promote_environment(
        self,
        image: Image,
        service: str,
        env: EnvironmentConfig,
        previous: str | None,
        cancel: CancelToken,
    ) -> PromotionRecord:
        with create_span(
            "shiplane.promote",
            attributes={
                "service": service,
                "environment": env.name,
                "image.digest": image.digest,
                "strategy": env.strategy.value,
            },
        ) as span:
            record = await self._open_record(image, service, env.name, previous)
            span.set_attribute("promotion_id", record.promotion_id)
            self._cancel_tokens[record.promotion_id] = cancel
            try:
                record = await self._run_environment(record, image, service, env, cancel)
            finally:
                self._cancel_tokens.pop(record.promotion_id, None)
            span.set_attribute("outcome", record.outcome.value)
            return record

    async def _open_record(
        self, image: Image, service: str, environment: str, previous: str | None
    ) -> PromotionRecord:
        for record in await self.store.list_records(service):
            if (
                record.outcome == PromotionOutcome.PENDING
                and record.to_environment == environment
                and record.image.digest == image.digest
            ):
                self._log.info(
                    "promotion_resumed",
                    promotion_id=record.promotion_id,
                    environment=environment,
                )
                return record

        record = PromotionRecord(
            service=service,
            image=image,
            from_environment=previous,
            to_environment=environment,
            trace_id=current_trace_id(),
        )
        await self.store.save_record(record)
        self.index.mark(image.digest, environment, PromotionStatus.PENDING)
        return record

    async def _run_environment(
        self,
        record: PromotionRecord,
        image: Image,
        service: str,
        env: EnvironmentConfig,
        cancel: CancelToken,
    ) -> PromotionRecord:
        log = self._log.bind(
            promotion_id=record.promotion_id, service=service, environment=env.name
        )

        deployment = await self.store.get_deployment(env.name, service)
        if (
            deployment is not None
            and not deployment.is_transitioning
            and deployment.active_image.digest == image.digest
        ):
            return await self._conclude(record, PromotionOutcome.SUCCEEDED, "already active")

        lock = await self.lock_status(env.name)
        if lock.locked:
            log.warning("environment_locked", locked_by=lock.locked_by, lock_reason=lock.reason)
            reason = "environment locked"
            if lock.reason:
                reason += f": {lock.reason}"
            return await self._conclude(record, PromotionOutcome.FAILED, reason)

        approver: str | None = None
        if env.approval_required:
            self.approvals.request_approval(record.promotion_id)
            if record.reason != AWAITING_APPROVAL:
                record = record.with_reason(AWAITING_APPROVAL)
                await self.store.save_record(record)
                await self._notify("approval_requested", self._event(record))
            try:
                approver = await self.approvals.wait(
                    record.promotion_id,
                    timeout=env.approval_timeout_seconds,
                    cancel=cancel,
                )
            except ApprovalTimeout:
                log.info("promotion_paused", timeout_seconds=env.approval_timeout_seconds)
                return record
            except ApprovalRejected as e:
                return await self._conclude(
                    record, PromotionOutcome.FAILED, str(e), approver=e.rejected_by
                )
            except PromotionCancelled:
                return await self._conclude(record, PromotionOutcome.FAILED, CANCELLED)
            record = record.with_reason(f"approved by {approver}")
            await self.store.save_record(record)

        if cancel.cancelled:
            return await self._conclude(record, PromotionOutcome.FAILED, CANCELLED, approver=approver)

        try:
            if deployment is None:
                result = await self.engine.bootstrap(
                    env.name, service, image, promotion_id=record.promotion_id, cancel=cancel
                )
            else:
                result = await self.engine.promote(
                    deployment, image, promotion_id=record.promotion_id, cancel=cancel
                )
        except (ConfigurationError, DeploymentNotFoundError) as e:
            log.error("promotion_aborted", error=str(e))
            return await self._conclude(record, PromotionOutcome.FAILED, str(e), approver=approver)

        record = await self._conclude_result(record, result, approver)
        if deployment is None and result.committed and self.scheduler is not None:
            await self.scheduler.sync()
        return record

    async def _conclude_result(
        self, record: PromotionRecord, result: StrategyResult, approver: str | None
    ) -> PromotionRecord:
        if result.committed:
            record = await self._conclude(
                record, PromotionOutcome.SUCCEEDED, result.reason, approver=approver
            )
            await self._notify("promote", self._event(record))
        elif result.rolled_back:
            record = await self._conclude(
                record, PromotionOutcome.ROLLED_BACK, result.reason, approver=approver
            )
            await self._notify("rollback", self._event(record))
        else:
            record = await self._conclude(
                record, PromotionOutcome.FAILED, result.reason, degraded=True, approver=approver
            )
            await self._notify("degraded", self._event(record))
        return record

    async def _conclude(
        self,
        record: PromotionRecord,
        outcome: PromotionOutcome,
        reason: str,
        *,
        degraded: bool = False,
        approver: str | None = None,
    ) -> PromotionRecord:
        concluded = record.conclude(outcome, reason, degraded=degraded, approver=approver)
        await self.store.save_record(concluded)
        self.approvals.discard(record.promotion_id)
        self._ensure_indexed(record.image)
        self.index.mark(record.image.digest, record.to_environment, _INDEX_STATUS[outcome])

        duration = None
        if concluded.finished_at is not None:
            duration = (concluded.finished_at - concluded.started_at).total_seconds()
        self.ctx.release_metrics.record_promotion(
            record.to_environment, outcome.value, duration_seconds=duration
        )
        self._log.info(
            "promotion_concluded",
            promotion_id=record.promotion_id,
            service=record.service,
            environment=record.to_environment,
            outcome=outcome.value,
            reason=reason,
            degraded=degraded,
        )
        return concluded

    def _ensure_indexed(self, image: Image) -> None:
        try:
            self.index.get(image.digest)
        except ImageNotFoundError:
            self.index.register(image.repository, image.tag, image.digest)

    # ------------------------------------------------------------------
    # Trigger and dispatcher
    # ------------------------------------------------------------------

    async def on_image_pushed(self, repository: str, tag: str, digest: str) -> Image:
        """Register a pushed image and enqueue its promotion.

        The digest is checked against the image registry when one is
        configured on the index.

        Returns:
            The registered image.

        Raises:
            ConfigurationError: If no service is configured for ``repository``.
            DigestMismatchError: If the registry resolves ``tag`` to another digest.
        """
        service = self.config.service_for_repository(repository)
        if service is None:
            raise ConfigurationError(f"no service configured for repository '{repository}'")
        if self.index.registry is not None:
            image = await self.index.register_verified(repository, tag, digest)
        else:
            image = self.index.register(repository, tag, digest)
        await self._queue.put(image)
        self._log.info(
            "promotion_enqueued",
            service=service.name,
            image=image.reference,
            queue_size=self._queue.qsize(),
        )
        return image

    async def start(self) -> None:
        """Recover interrupted work, start autoscaler loops and the dispatcher."""
        await self.recover()
        if self.scheduler is not None:
            await self.scheduler.sync()
        if self._dispatcher is None or self._dispatcher.done():
            self._dispatcher = asyncio.create_task(self._dispatch())
        self._log.info("orchestrator_started")

    async def stop(self, timeout: float = 60.0) -> None:
        """Stop the dispatcher, cancel in-flight promotions and autoscaler loops.

        In-flight promotions are cancelled through their tokens, so each one
        rolls back at its next safe checkpoint. Promotions still queued on a
        service lock are cancelled before they start. Tasks that have not
        finished after ``timeout`` seconds are cancelled outright.

        Args:
            timeout: Seconds to wait for in-flight promotions to roll back.
        """
        if self._dispatcher is not None:
            self._dispatcher.cancel()
            await asyncio.gather(self._dispatcher, return_exceptions=True)
            self._dispatcher = None

        self._stopping = True
        try:
            for token in list(self._cancel_tokens.values()):
                token.cancel(CANCELLED)
            pending = list(self._tasks)
            stragglers: set[asyncio.Task[None]] = set()
            if pending:
                _done, stragglers = await asyncio.wait(pending, timeout=timeout)
            for task in stragglers:
                task.cancel()
            await asyncio.gather(*stragglers, return_exceptions=True)
        finally:
            self._stopping = False

        if self.scheduler is not None:
            self.scheduler.cancel_all()
        if stragglers:
            self._log.warning("promotions_abandoned", count=len(stragglers))
        self._log.info("orchestrator_stopped", cancelled=len(pending))

    async def drain(self) -> None:
        """Wait until every enqueued promotion has been run."""
        await self._queue.join()
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _dispatch(self) -> None:
        while True:
            image = await self._queue.get()
            task = asyncio.create_task(self._run(image))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            self._queue.task_done()

    async def _run(self, image: Image) -> None:
        try:
            async for _record in self.promote(image):
                pass
        except Exception:
            self._log.exception("promotion_failed", image=image.reference)

    # ------------------------------------------------------------------
    # Approvals and cancellation
    # ------------------------------------------------------------------

    async def approve(self, promotion_id: str, approver: str) -> None:
        """Approve a promotion waiting at (or paused on) an approval gate.

        Raises:
            PromotionNotFoundError: If no pending approval exists.
            InvalidOutcomeTransitionError: If the approval was already decided.
        """
        await self._reopen_gate(promotion_id)
        self.approvals.approve(promotion_id, approver)

    async def reject(
        self, promotion_id: str, rejected_by: str, reason: str | None = None
    ) -> None:
        """Reject a promotion waiting at (or paused on) an approval gate.

        Raises:
            PromotionNotFoundError: If no pending approval exists.
            InvalidOutcomeTransitionError: If the approval was already decided.
        """
        await self._reopen_gate(promotion_id)
        self.approvals.reject(promotion_id, rejected_by, reason)

    async def _reopen_gate(self, promotion_id: str) -> None:
        if self.approvals.get(promotion_id) is not None:
            return
        record = await self.store.get_record(promotion_id)
        if record is None or record.outcome.is_terminal or record.reason != AWAITING_APPROVAL:
            raise PromotionNotFoundError(promotion_id)
        self.approvals.request_approval(promotion_id)

    async def cancel(self, promotion_id: str) -> PromotionRecord | None:
        """Cancel an in-flight or paused promotion.

        An in-flight promotion stops at its next safe checkpoint (a
        strategy rolls back). A paused promotion is concluded as failed
        right away.

        Returns:
            The concluded record of a paused promotion, None for an
            in-flight one.

        Raises:
            PromotionNotFoundError: If the promotion is neither running nor pending.
        """
        token = self._cancel_tokens.get(promotion_id)
        if token is not None:
            token.cancel(CANCELLED)
            self._log.info("promotion_cancel_requested", promotion_id=promotion_id)
            return None
        record = await self.store.get_record(promotion_id)
        if record is None or record.outcome.is_terminal:
            raise PromotionNotFoundError(promotion_id)
        return await self._conclude(record, PromotionOutcome.FAILED, CANCELLED)

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    async def list_promotions(self, service: str) -> list[PromotionRecord]:
        """Promotion records of ``service``, oldest first."""
        return await self.store.list_records(service)

    async def get_deployment(self, environment: str, service: str) -> Deployment:
        """Live deployment of ``service`` in ``environment``.

        Raises:
            DeploymentNotFoundError: If the service was never deployed there.
        """
        deployment = await self.store.get_deployment(environment, service)
        if deployment is None:
            raise DeploymentNotFoundError(environment, service)
        return deployment

    async def acknowledge_degraded(
        self, environment: str, service: str, operator: str
    ) -> Deployment:
        """Return a degraded deployment to service after manual repair."""
        return await self.engine.acknowledge_degraded(environment, service, operator)

    # ------------------------------------------------------------------
    # Environment locks
    # ------------------------------------------------------------------

    async def lock_environment(self, environment: str, reason: str, operator: str) -> None:
        """Lock an environment to prevent promotions.

        Args:
            environment: Environment to lock.
            reason: Reason for locking (e.g., "Incident #123").
            operator: Identity of the operator.

        Raises:
            ConfigurationError: If the environment does not exist.
        """
        with create_span(
            "shiplane.lock_environment",
            attributes={"environment": environment, "operator": operator},
        ):
            self.engine.environment(environment)
            locked_at = datetime.now(timezone.utc)
            await self.store.save_lock(
                environment,
                EnvironmentLock(
                    locked=True, reason=reason, locked_by=operator, locked_at=locked_at
                ),
            )
            self._log.info(
                "environment_lock_applied",
                environment=environment,
                reason=reason,
                locked_by=operator,
            )
            await self._notify(
                "lock",
                {
                    "environment": environment,
                    "reason": reason,
                    "operator": operator,
                    "timestamp": locked_at.isoformat(),
                },
            )

    async def unlock_environment(self, environment: str, operator: str | None = None) -> None:
        """Remove the runtime lock of an environment. Idempotent.

        A lock set statically in the environment's configuration stays.

        Raises:
            ConfigurationError: If the environment does not exist.
        """
        with create_span(
            "shiplane.unlock_environment",
            attributes={"environment": environment, "operator": operator},
        ):
            self.engine.environment(environment)
            await self.store.save_lock(environment, None)
            self._log.info("environment_lock_released", environment=environment, operator=operator)
            await self._notify(
                "unlock",
                {
                    "environment": environment,
                    "operator": operator,
                    "timestamp": datetime.now(timezone.utc).isoformat(),
                },
            )

    async def lock_status(self, environment: str) -> EnvironmentLock:
        """Effective lock state: the runtime lock, else the configured one."""
        lock = await self.store.get_lock(environment)
        if lock is not None and lock.locked:
            return lock
        env = self.engine.environment(environment)
        if env.lock is not None and env.lock.locked:
            return env.lock
        return EnvironmentLock(locked=False)

    # ------------------------------------------------------------------
    # Recovery
    # ------------------------------------------------------------------

    async def recover(self) -> list[PromotionRecord]:
        """Finish work a previous process left behind.

        Deployments left mid-transition are rolled back and their records
        concluded as rolled back ("interrupted"). Records paused at an
        approval gate get their gate reopened. Any other pending record
        is concluded as failed ("interrupted").

        Returns:
            Records concluded by the recovery.
        """
        results: dict[str, StrategyResult] = {}
        for deployment in await self.store.list_deployments():
            if not deployment.is_transitioning:
                continue
            result = await self.engine.recover(deployment)
            if result is not None and deployment.promotion_id is not None:
                results[deployment.promotion_id] = result

        concluded: list[PromotionRecord] = []
        for record in await self.store.pending_records():
            pid = record.promotion_id
            if pid in self._cancel_tokens:
                continue
            result = results.get(pid)
            if result is not None and result.degraded:
                concluded.append(
                    await self._conclude(
                        record, PromotionOutcome.FAILED, result.reason, degraded=True
                    )
                )
            elif result is not None:
                concluded.append(
                    await self._conclude(record, PromotionOutcome.ROLLED_BACK, "interrupted")
                )
            elif record.reason == AWAITING_APPROVAL:
                self.approvals.request_approval(pid)
            else:
                concluded.append(
                    await self._conclude(record, PromotionOutcome.FAILED, "interrupted")
                )

        if concluded:
            self._log.warning("interrupted_promotions_recovered", count=len(concluded))
        return concluded

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------

    @staticmethod
    def _event(record: PromotionRecord) -> dict[str, Any]:
        return {
            "promotion_id": record.promotion_id,
            "service": record.service,
            "environment": record.to_environment,
            "image": record.image.reference,
            "digest": record.image.digest,
            "outcome": record.outcome.value,
            "reason": record.reason,
            "degraded": record.degraded,
            "approver": record.approver,
            "trace_id": record.trace_id,
        }

    async def _notify(self, event_type: str, event_data: dict[str, Any]) -> None:
        """Send a webhook notification. Failures are logged, never raised."""
        if self._notifier is None:
            return
        try:
            results = await self._notifier.notify_all(event_type, event_data)
        except Exception as e:
            self._log.error("webhook_notification_error", event_type=event_type, error=str(e))
            return
        if not results:
            self._log.debug(
                "webhook_skipped", event_type=event_type, reason="no_webhooks_subscribed"
            )


__all__ = ["AWAITING_APPROVAL", "ReleaseOrchestrator"]
