"""Webhook notifications for release lifecycle events.

Every configured webhook subscribes to a subset of the events in
VALID_WEBHOOK_EVENTS. Delivery is an HTTP POST of a JSON payload:

    {"event_type": "rollback", "service": "web", "environment": "staging", ...}

Server errors (5xx), timeouts and transport errors are retried with
exponential backoff; client errors (4xx) are not. Delivery failures are
logged and reported in the result, never raised, so a broken webhook can
never fail a promotion.

Example:
    >>> notifier = WebhookNotifier([
    ...     WebhookConfig(url="https://hooks.example.com/x", events=["rollback"]),
    ... ])
    >>> results = await notifier.notify_all("rollback", {"service": "web"})
"""

from __future__ import annotations

import asyncio
import time
from typing import Any

import httpx
import structlog
from pydantic import BaseModel, ConfigDict, Field

from shiplane.schemas.promotion import WebhookConfig
from shiplane.telemetry.tracing import create_span

logger = structlog.get_logger(__name__)

BACKOFF_BASE_SECONDS = 1.0
"""Base delay for exponential backoff (doubles each retry)."""


class WebhookNotificationResult(BaseModel):
    """Result of delivering one event to one webhook.

    Attributes:
        success: Whether the notification was delivered successfully.
        status_code: HTTP response status code (if a response was received).
        url: Target webhook URL.
        error: Error message if delivery failed.
        attempts: Number of delivery attempts made.
    """

    model_config = ConfigDict(extra="forbid")

    success: bool
    status_code: int | None = None
    url: str
    error: str | None = None
    attempts: int = Field(default=1, ge=1)


class WebhookNotifier:
    """Delivers release events to the configured webhooks.

    Also satisfies the AlertSink protocol through ``alert()``, which the
    autoscaler uses for repeated missing-metric alerts.
    """

    def __init__(
        self,
        configs: list[WebhookConfig] | None = None,
        *,
        backoff_base_seconds: float = BACKOFF_BASE_SECONDS,
    ) -> None:
        self.configs = list(configs or [])
        self._backoff_base = backoff_base_seconds

    def subscribers(self, event_type: str) -> list[WebhookConfig]:
        """Return the webhooks subscribed to ``event_type``."""
        return [config for config in self.configs if event_type in config.events]

    @staticmethod
    def build_payload(event_type: str, event_data: dict[str, Any]) -> dict[str, Any]:
        """Build the JSON payload for an event."""
        return {"event_type": event_type, **event_data}

    async def notify(
        self,
        config: WebhookConfig,
        event_type: str,
        event_data: dict[str, Any],
    ) -> WebhookNotificationResult:
        """Deliver one event to one webhook, retrying transient failures.

        Args:
            config: Target webhook.
            event_type: Event type (must be one of VALID_WEBHOOK_EVENTS).
            event_data: Event-specific payload fields.

        Returns:
            WebhookNotificationResult with the delivery status.
        """
        payload = self.build_payload(event_type, event_data)
        max_attempts = 1 + config.retry_count
        last_status: int | None = None
        last_error: str | None = None

        with create_span(
            "shiplane.webhook.notify",
            attributes={"webhook.url": config.url, "webhook.event_type": event_type},
        ) as span:
            start = time.monotonic()
            for attempt in range(1, max_attempts + 1):
                try:
                    async with httpx.AsyncClient(timeout=config.timeout_seconds) as client:
                        response = await client.post(
                            config.url,
                            json=payload,
                            headers=config.headers or {},
                        )
                except httpx.TimeoutException:
                    last_status, last_error = None, "Request timed out"
                except httpx.RequestError as e:
                    last_status, last_error = None, str(e)
                else:
                    last_status = response.status_code
                    if response.status_code < 400:
                        span.set_attribute("webhook.attempts", attempt)
                        logger.info(
                            "webhook_notification_sent",
                            url=config.url,
                            event_type=event_type,
                            status_code=response.status_code,
                            attempts=attempt,
                            duration_ms=int((time.monotonic() - start) * 1000),
                        )
                        return WebhookNotificationResult(
                            success=True,
                            status_code=response.status_code,
                            url=config.url,
                            attempts=attempt,
                        )
                    if response.status_code < 500:
                        last_error = f"Client error: {response.status_code}"
                        break
                    last_error = f"Server error: {response.status_code}"

                if attempt < max_attempts:
                    delay = self._backoff_base * (2 ** (attempt - 1))
                    logger.warning(
                        "webhook_notification_retry",
                        url=config.url,
                        event_type=event_type,
                        error=last_error,
                        attempt=attempt,
                        max_attempts=max_attempts,
                        backoff_seconds=delay,
                    )
                    await asyncio.sleep(delay)

            span.set_attribute("webhook.attempts", attempt)
            logger.error(
                "webhook_notification_failed",
                url=config.url,
                event_type=event_type,
                status_code=last_status,
                error=last_error,
                attempts=attempt,
            )
            return WebhookNotificationResult(
                success=False,
                status_code=last_status,
                url=config.url,
                error=last_error,
                attempts=attempt,
            )

    async def notify_all(
        self,
        event_type: str,
        event_data: dict[str, Any],
    ) -> list[WebhookNotificationResult]:
        """Deliver an event to every subscribed webhook.

        A failing webhook does not stop delivery to the others.

        Returns:
            One result per subscribed webhook (empty when none subscribe).
        """
        return [
            await self.notify(config, event_type, event_data)
            for config in self.subscribers(event_type)
        ]

    async def alert(self, event_type: str, event_data: dict[str, Any]) -> None:
        """AlertSink entry point: deliver and discard the results."""
        await self.notify_all(event_type, event_data)


__all__ = [
    "WebhookNotificationResult",
    "WebhookNotifier",
]
