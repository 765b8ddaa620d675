"""Approval gates for environments that require a human or automated signal.

A promotion into a gated environment calls ``request()`` and then waits
on the gate. The decision arrives through ``approve()`` or ``reject()``,
usually from another task (API handler, CLI, chat-ops bot). A decision
made while nobody waits (for example during a paused promotion) is kept
and returned by the next ``wait()``.

Example:
    >>> gate = ApprovalGate()
    >>> request = gate.request_approval("p-1")
    >>> gate.approve("p-1", "alice")
    >>> await gate.wait("p-1")
    'alice'
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

import structlog

from shiplane.errors import (
    ApprovalRejected,
    ApprovalTimeout,
    InvalidOutcomeTransitionError,
    PromotionCancelled,
    PromotionNotFoundError,
)
from shiplane.resilience import CancelToken

logger = structlog.get_logger(__name__)


class ApprovalStatus(str, Enum):
    """Decision state of an approval request."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


@dataclass
class ApprovalRequest:
    """An outstanding or decided approval request."""

    promotion_id: str
    requested_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    status: ApprovalStatus = ApprovalStatus.PENDING
    decided_by: str | None = None
    reason: str | None = None
    decided: asyncio.Event = field(default_factory=asyncio.Event, repr=False)


class ApprovalGate:
    """Registry of approval requests keyed by promotion id."""

    def __init__(self) -> None:
        self._requests: dict[str, ApprovalRequest] = {}

    def request_approval(self, promotion_id: str) -> ApprovalRequest:
        """Open an approval request. Requesting an open promotion again is a no-op."""
        existing = self._requests.get(promotion_id)
        if existing is not None:
            return existing
        req = ApprovalRequest(promotion_id=promotion_id)
        self._requests[promotion_id] = req
        logger.info("approval_requested", promotion_id=promotion_id)
        return req

    def get(self, promotion_id: str) -> ApprovalRequest | None:
        return self._requests.get(promotion_id)

    def pending(self) -> list[ApprovalRequest]:
        """Requests still awaiting a decision, oldest first."""
        return [r for r in self._requests.values() if r.status == ApprovalStatus.PENDING]

    def approve(self, promotion_id: str, approver: str) -> None:
        """Approve a pending request.

        Raises:
            PromotionNotFoundError: If no request exists for the promotion.
            InvalidOutcomeTransitionError: If the request was already decided.
        """
        self._decide(promotion_id, ApprovalStatus.APPROVED, approver, None)

    def reject(self, promotion_id: str, rejected_by: str, reason: str | None = None) -> None:
        """Reject a pending request.

        Raises:
            PromotionNotFoundError: If no request exists for the promotion.
            InvalidOutcomeTransitionError: If the request was already decided.
        """
        self._decide(promotion_id, ApprovalStatus.REJECTED, rejected_by, reason)

    def _decide(
        self,
        promotion_id: str,
        status: ApprovalStatus,
        decided_by: str,
        reason: str | None,
    ) -> None:
        req = self._requests.get(promotion_id)
        if req is None:
            raise PromotionNotFoundError(promotion_id)
        if req.status != ApprovalStatus.PENDING:
            raise InvalidOutcomeTransitionError(promotion_id, req.status.value, status.value)
        req.status = status
        req.decided_by = decided_by
        req.reason = reason
        req.decided.set()
        logger.info(
            f"approval_{status.value}",
            promotion_id=promotion_id,
            decided_by=decided_by,
            reason=reason,
        )

    async def wait(
        self,
        promotion_id: str,
        *,
        timeout: float | None = None,
        cancel: CancelToken | None = None,
    ) -> str:
        """Wait for the decision on a request.

        Args:
            promotion_id: Promotion awaiting approval.
            timeout: Seconds to wait (None waits indefinitely).
            cancel: Token that ends the wait early.

        Returns:
            Identity of the approver.

        Raises:
            PromotionNotFoundError: If no request exists for the promotion.
            ApprovalRejected: If the request was rejected.
            ApprovalTimeout: If no decision arrived within ``timeout``. The
                request stays open.
            PromotionCancelled: If ``cancel`` fired first.
        """
        req = self._requests.get(promotion_id)
        if req is None:
            raise PromotionNotFoundError(promotion_id)

        if req.status == ApprovalStatus.PENDING:
            decided = asyncio.ensure_future(req.decided.wait())
            waiters: set[asyncio.Future[object]] = {decided}
            if cancel is not None:
                waiters.add(asyncio.ensure_future(cancel.wait()))
            try:
                await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
            finally:
                for waiter in waiters:
                    waiter.cancel()

            if req.status == ApprovalStatus.PENDING:
                if cancel is not None and cancel.cancelled:
                    raise PromotionCancelled(promotion_id, "approval")
                raise ApprovalTimeout(promotion_id, timeout or 0.0)

        if req.status == ApprovalStatus.REJECTED:
            raise ApprovalRejected(promotion_id, req.decided_by or "unknown", req.reason)
        return req.decided_by or "unknown"

    def discard(self, promotion_id: str) -> None:
        """Forget a request once its promotion has concluded."""
        self._requests.pop(promotion_id, None)


__all__ = ["ApprovalGate", "ApprovalRequest", "ApprovalStatus"]
