"""
Unit tests for the webhook notification sink.
"""

import json

import httpx
import pytest

from service_relay.app.adapters.webhook_notifier import (
    FAILURE_COLOR,
    SUCCESS_COLOR,
    WebhookNotifier,
    build_embed,
)
from shared.circuit_breaker import CircuitBreakerOpenException, CircuitBreakerState
from shared.errors import ExternalServiceError


@pytest.fixture
def entry():
    return {
        "timestamp": "2024-05-01T12:00:00+00:00",
        "apiKey": "GS_abcdefghijklmnop",
        "command": "ban",
        "executor": "moderator1",
        "target": "griefer",
        "details": "Reason: griefing",
        "success": True,
        "id": "1714564800000_000001_deadbeef",
    }


def _client(handler):
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class TestBuildEmbed:

    def test_success_embed(self, entry):
        embed = build_embed(entry)

        assert embed["title"] == "Command: ban"
        assert embed["color"] == SUCCESS_COLOR
        fields = {f["name"]: f["value"] for f in embed["fields"]}
        assert fields == {
            "Executor": "moderator1",
            "Target": "griefer",
            "Status": "Success",
            "Details": "Reason: griefing",
        }
        assert embed["timestamp"] == entry["timestamp"]

    def test_tenant_key_is_redacted(self, entry):
        footer = build_embed(entry)["footer"]["text"]

        assert footer == "API Key: GS_abcdefg..."
        assert entry["apiKey"] not in footer

    def test_failure_embed_placeholders(self, entry):
        entry.update(success=False, target=None, details="")
        embed = build_embed(entry)

        fields = {f["name"]: f["value"] for f in embed["fields"]}
        assert embed["color"] == FAILURE_COLOR
        assert fields["Target"] == "N/A"
        assert fields["Details"] == "No details"
        assert fields["Status"] == "Failed"


class TestWebhookNotifier:

    @pytest.mark.asyncio
    async def test_posts_embed(self, entry):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(json.loads(request.content))
            return httpx.Response(204)

        notifier = WebhookNotifier("https://hooks.example/webhook", client=_client(handler))
        await notifier.notify(entry)
        await notifier.close()

        assert seen == [{"embeds": [build_embed(entry)]}]

    @pytest.mark.asyncio
    async def test_error_status_raises(self, entry):
        notifier = WebhookNotifier(
            "https://hooks.example/webhook",
            client=_client(lambda request: httpx.Response(500)),
        )

        with pytest.raises(ExternalServiceError):
            await notifier.notify(entry)

    @pytest.mark.asyncio
    async def test_transport_error_is_wrapped(self, entry):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        notifier = WebhookNotifier("https://hooks.example/webhook", client=_client(handler))

        with pytest.raises(ExternalServiceError) as exc_info:
            await notifier.notify(entry)
        assert "refused" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_circuit_opens_after_repeated_failures(self, entry):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(503)

        changes = []
        notifier = WebhookNotifier(
            "https://hooks.example/webhook",
            failure_threshold=2,
            recovery_timeout=60.0,
            on_circuit_change=lambda name, state: changes.append((name, state)),
            client=_client(handler),
        )
        breaker = notifier.circuit_breaker

        for _ in range(2):
            with pytest.raises(ExternalServiceError):
                await notifier.notify(entry)

        with pytest.raises(ExternalServiceError) as exc_info:
            await notifier.notify(entry)

        assert len(calls) == 2
        assert breaker.is_open()
        assert changes == [("log_webhook", CircuitBreakerState.OPEN)]
        assert isinstance(exc_info.value.__cause__, CircuitBreakerOpenException)
