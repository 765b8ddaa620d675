"""Unit tests for WebhookNotifier."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest
from pydantic import ValidationError

from shiplane.schemas.promotion import WebhookConfig
from shiplane.webhooks import WebhookNotifier


@pytest.fixture
def webhook_config() -> WebhookConfig:
    return WebhookConfig(
        url="https://hooks.example.com/webhook",
        events=["promote", "rollback"],
        headers={"Authorization": "Bearer test-token"},
        timeout_seconds=30,
        retry_count=3,
    )


@pytest.fixture
def rollback_event() -> dict:
    return {
        "promotion_id": "p-123",
        "service": "web",
        "environment": "staging",
        "reason": "probe 2 failed",
    }


class TestSubscriptions:
    def test_subscribers_filter_by_event(self, webhook_config: WebhookConfig) -> None:
        pager = WebhookConfig(url="https://pager.example.com", events=["degraded", "scaling_alert"])
        notifier = WebhookNotifier([webhook_config, pager])

        assert notifier.subscribers("promote") == [webhook_config]
        assert notifier.subscribers("scaling_alert") == [pager]
        assert notifier.subscribers("lock") == []

    def test_invalid_event_type_rejected(self) -> None:
        with pytest.raises(ValidationError, match="Invalid event types"):
            WebhookConfig(url="https://example.com", events=["deploy"])

    def test_payload_carries_event_type(self) -> None:
        payload = WebhookNotifier.build_payload("rollback", {"service": "web"})
        assert payload == {"event_type": "rollback", "service": "web"}


class TestDelivery:
    """Tests for HTTP delivery and retries."""

    @pytest.mark.asyncio
    async def test_success_posts_payload_with_headers(
        self, webhook_config: WebhookConfig, rollback_event: dict
    ) -> None:
        notifier = WebhookNotifier([webhook_config])

        with patch("httpx.AsyncClient.post") as mock_post:
            mock_post.return_value = MagicMock(status_code=200)

            result = await notifier.notify(webhook_config, "rollback", rollback_event)

        assert result.success is True
        assert result.status_code == 200
        assert result.attempts == 1
        mock_post.assert_called_once()
        call = mock_post.call_args
        assert call.args[0] == "https://hooks.example.com/webhook"
        assert call.kwargs["json"]["event_type"] == "rollback"
        assert call.kwargs["json"]["reason"] == "probe 2 failed"
        assert call.kwargs["headers"] == {"Authorization": "Bearer test-token"}

    @pytest.mark.asyncio
    async def test_server_errors_retried_with_backoff(
        self, webhook_config: WebhookConfig, rollback_event: dict
    ) -> None:
        notifier = WebhookNotifier([webhook_config])

        with (
            patch("httpx.AsyncClient.post") as mock_post,
            patch("asyncio.sleep", new_callable=AsyncMock) as mock_sleep,
        ):
            mock_post.side_effect = [
                MagicMock(status_code=500),
                MagicMock(status_code=503),
                MagicMock(status_code=204),
            ]

            result = await notifier.notify(webhook_config, "rollback", rollback_event)

        assert result.success is True
        assert result.attempts == 3
        assert [c.args[0] for c in mock_sleep.call_args_list] == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_gives_up_after_retry_count(
        self, webhook_config: WebhookConfig, rollback_event: dict
    ) -> None:
        notifier = WebhookNotifier([webhook_config], backoff_base_seconds=0.0)

        with patch("httpx.AsyncClient.post") as mock_post:
            mock_post.return_value = MagicMock(status_code=502)

            result = await notifier.notify(webhook_config, "rollback", rollback_event)

        assert result.success is False
        assert result.error == "Server error: 502"
        assert result.attempts == 4
        assert mock_post.call_count == 4

    @pytest.mark.asyncio
    async def test_client_error_not_retried(
        self, webhook_config: WebhookConfig, rollback_event: dict
    ) -> None:
        notifier = WebhookNotifier([webhook_config], backoff_base_seconds=0.0)

        with patch("httpx.AsyncClient.post") as mock_post:
            mock_post.return_value = MagicMock(status_code=404)

            result = await notifier.notify(webhook_config, "rollback", rollback_event)

        assert result.success is False
        assert result.status_code == 404
        assert result.error == "Client error: 404"
        assert mock_post.call_count == 1

    @pytest.mark.asyncio
    async def test_transport_errors_retried(
        self, webhook_config: WebhookConfig, rollback_event: dict
    ) -> None:
        notifier = WebhookNotifier([webhook_config], backoff_base_seconds=0.0)

        with patch("httpx.AsyncClient.post") as mock_post:
            mock_post.side_effect = [
                httpx.ConnectError("connection refused"),
                httpx.ReadTimeout("slow"),
                MagicMock(status_code=200),
            ]

            result = await notifier.notify(webhook_config, "rollback", rollback_event)

        assert result.success is True
        assert result.attempts == 3

    @pytest.mark.asyncio
    async def test_timeout_reported(self, rollback_event: dict) -> None:
        config = WebhookConfig(url="https://slow.example.com", events=["rollback"], retry_count=0)
        notifier = WebhookNotifier([config])

        with patch("httpx.AsyncClient.post") as mock_post:
            mock_post.side_effect = httpx.ReadTimeout("slow")

            result = await notifier.notify(config, "rollback", rollback_event)

        assert result.success is False
        assert result.status_code is None
        assert result.error == "Request timed out"


class TestFanOut:
    @pytest.mark.asyncio
    async def test_notify_all_reaches_every_subscriber(self, rollback_event: dict) -> None:
        configs = [
            WebhookConfig(url="https://a.example.com", events=["rollback"], retry_count=0),
            WebhookConfig(url="https://b.example.com", events=["rollback"], retry_count=0),
            WebhookConfig(url="https://c.example.com", events=["promote"], retry_count=0),
        ]
        notifier = WebhookNotifier(configs)

        with patch("httpx.AsyncClient.post") as mock_post:
            mock_post.side_effect = [MagicMock(status_code=500), MagicMock(status_code=200)]

            results = await notifier.notify_all("rollback", rollback_event)

        assert [(r.url, r.success) for r in results] == [
            ("https://a.example.com", False),
            ("https://b.example.com", True),
        ]

    @pytest.mark.asyncio
    async def test_no_subscribers(self, rollback_event: dict) -> None:
        notifier = WebhookNotifier()

        with patch("httpx.AsyncClient.post") as mock_post:
            assert await notifier.notify_all("rollback", rollback_event) == []

        mock_post.assert_not_called()

    @pytest.mark.asyncio
    async def test_alert_delivers_scaling_alert(self) -> None:
        config = WebhookConfig(url="https://pager.example.com", events=["scaling_alert"])
        notifier = WebhookNotifier([config])

        with patch("httpx.AsyncClient.post") as mock_post:
            mock_post.return_value = MagicMock(status_code=200)

            await notifier.alert("scaling_alert", {"deployment_id": "dev/web", "missed_ticks": 3})

        payload = mock_post.call_args.kwargs["json"]
        assert payload == {
            "event_type": "scaling_alert",
            "deployment_id": "dev/web",
            "missed_ticks": 3,
        }
