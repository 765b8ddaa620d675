"""Retry policy and cancellation for release operations.

Key Components:
    CancelToken: Cooperative cancellation checked at safe checkpoints
    RetryPolicy: Bounded exponential backoff for provisioner calls

Design Principles:
- Non-blocking: every delay is an ``await`` that releases the event loop
- Prompt cancellation: backoff delays and verification windows wake up as
  soon as a CancelToken fires
- Bounded: after ``max_attempts`` the last failure is surfaced as a
  ProvisionError and the caller rolls back

Example:
    >>> policy = RetryPolicy(RetryConfig(max_attempts=5))
    >>> ids = await policy.call(
    ...     "create_instances",
    ...     provisioner.create_instances, spec, 3, token,
    ... )
"""

from __future__ import annotations

import asyncio
import random
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import structlog

from shiplane.errors import PromotionCancelled, ProvisionError
from shiplane.schemas.strategy import RetryConfig

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class CancelToken:
    """Cooperative cancellation signal for one promotion.

    Cancellation is a request, not an interruption: code checks
    ``cancelled`` at safe checkpoints and uses ``sleep()`` for waits that
    must end early once cancellation is requested. Traffic writes never
    look at the token, so a cut-over always completes before the request
    is honoured.

    Example:
        >>> token = CancelToken()
        >>> token.cancel("operator request")
        >>> token.cancelled
        True
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        """True once cancellation has been requested."""
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        """Request cancellation. Repeated requests keep the first reason."""
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    async def wait(self) -> None:
        """Wait until cancellation is requested."""
        await self._event.wait()

    async def sleep(self, seconds: float) -> bool:
        """Sleep for ``seconds`` unless cancelled first.

        Returns:
            True if cancellation was requested before or during the sleep.
        """
        if seconds <= 0:
            await asyncio.sleep(0)
            return self.cancelled
        try:
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return False
        return True


class RetryPolicy:
    """Retry policy with exponential backoff and optional jitter.

    Retry Timeline (default config):
    - Attempt 1: Immediate
    - Attempt 2: 2s delay
    - Attempt 3: 4s delay
    - Attempt 4: 8s delay
    - Attempt 5: 16s delay (delays capped at 30s)

    Attributes:
        config: RetryConfig with max_attempts, delays and jitter settings.
    """

    def __init__(
        self,
        config: RetryConfig | None = None,
        retryable_exceptions: tuple[type[BaseException], ...] | None = None,
    ) -> None:
        """Initialize RetryPolicy.

        Args:
            config: Retry configuration. Uses defaults if None.
            retryable_exceptions: Exception types to retry on. Defaults to
                (ProvisionError, ConnectionError, TimeoutError); a
                ProvisionError is only retried when its ``retryable`` flag is set.
        """
        self._config = config or RetryConfig()
        self._retryable_exceptions = retryable_exceptions or (
            ProvisionError,
            ConnectionError,
            TimeoutError,
            asyncio.TimeoutError,
        )

    @property
    def config(self) -> RetryConfig:
        """Return the retry configuration."""
        return self._config

    def calculate_delay(self, attempt: int) -> float:
        """Calculate delay before the next attempt.

        Uses exponential backoff: delay = initial * (multiplier ^ attempt),
        capped at max_delay_seconds, with +/-25% jitter when enabled.

        Args:
            attempt: Current attempt number (0-indexed).

        Returns:
            Delay in seconds.
        """
        delay = min(
            self._config.initial_delay_seconds * (self._config.backoff_multiplier**attempt),
            self._config.max_delay_seconds,
        )
        if self._config.jitter:
            jitter_range = delay * 0.25
            delay += random.uniform(-jitter_range, jitter_range)
        return max(delay, 0.0)

    def should_retry(self, exception: BaseException) -> bool:
        """Check if exception is retryable."""
        if isinstance(exception, ProvisionError):
            return exception.retryable
        return isinstance(exception, self._retryable_exceptions)

    async def call(
        self,
        operation: str,
        func: Callable[..., Awaitable[T]],
        *args: Any,
        cancel: CancelToken | None = None,
        **kwargs: Any,
    ) -> T:
        """Await ``func(*args, **kwargs)`` with retries.

        Args:
            operation: Operation name for logs and errors.
            func: Coroutine function to call.
            *args: Positional arguments for func.
            cancel: Token that cuts backoff delays short. When it fires during
                a delay, no further attempt is made.
            **kwargs: Keyword arguments for func.

        Returns:
            The result of the first successful attempt.

        Raises:
            ProvisionError: If every attempt failed with a retryable error,
                or a non-retryable ProvisionError was raised.
            PromotionCancelled: If ``cancel`` fired during a backoff delay.
        """
        max_attempts = self._config.max_attempts
        for attempt in range(max_attempts):
            try:
                return await func(*args, **kwargs)
            except Exception as e:
                if not self.should_retry(e):
                    raise

                remaining = max_attempts - attempt - 1
                if remaining == 0:
                    logger.warning(
                        "retry_exhausted",
                        operation=operation,
                        attempts=max_attempts,
                        error=str(e),
                    )
                    raise _as_provision_error(operation, e) from e

                delay = self.calculate_delay(attempt)
                logger.debug(
                    "retry_attempt",
                    operation=operation,
                    attempt=attempt + 1,
                    max_attempts=max_attempts,
                    delay_seconds=delay,
                    error=str(e),
                )
                if cancel is not None:
                    if await cancel.sleep(delay):
                        logger.info(
                            "retry_cancelled",
                            operation=operation,
                            attempt=attempt + 1,
                        )
                        raise PromotionCancelled("", operation) from e
                else:
                    await asyncio.sleep(delay)

        # Should not reach here, but satisfy type checker
        raise RuntimeError("Retry loop exited without result")


def _as_provision_error(operation: str, error: Exception) -> ProvisionError:
    if isinstance(error, ProvisionError):
        return error
    return ProvisionError(operation, str(error) or type(error).__name__)


__all__ = ["CancelToken", "RetryPolicy"]
