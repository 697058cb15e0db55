"""
Webhook notification sink for command log entries.

Posts a Discord-compatible embed per entry. Calls are guarded by a circuit
breaker so an unreachable webhook stops costing a timeout per entry.
"""

from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

import httpx

from shared.circuit_breaker import CircuitBreaker, CircuitBreakerState
from shared.errors import ExternalServiceError
from shared.logging import get_logger, redact_key

SUCCESS_COLOR = 0x2ECC71
FAILURE_COLOR = 0xE74C3C


def build_embed(entry: Dict[str, Any]) -> Dict[str, Any]:
    """Summarize a log entry as an embed."""
    success = bool(entry.get("success"))
    return {
        "title": f"Command: {entry.get('command')}",
        "color": SUCCESS_COLOR if success else FAILURE_COLOR,
        "fields": [
            {"name": "Executor", "value": str(entry.get("executor") or "Unknown"), "inline": True},
            {"name": "Target", "value": str(entry.get("target") or "N/A"), "inline": True},
            {"name": "Status", "value": "Success" if success else "Failed", "inline": True},
            {"name": "Details", "value": str(entry.get("details") or "No details")},
        ],
        "timestamp": entry.get("timestamp") or datetime.now(timezone.utc).isoformat(),
        "footer": {"text": f"API Key: {redact_key(entry.get('apiKey'))}"},
    }


class WebhookNotifier:
    """Sends command summaries to an incoming-webhook URL."""

    def __init__(self,
                 webhook_url: str,
                 timeout: float = 5.0,
                 failure_threshold: int = 3,
                 recovery_timeout: float = 60.0,
                 on_circuit_change: Optional[Callable[[str, CircuitBreakerState], None]] = None,
                 client: Optional[httpx.AsyncClient] = None):
        self.webhook_url = webhook_url
        self.timeout = timeout
        self.logger = get_logger("relay.webhook_notifier")
        self.circuit_breaker = CircuitBreaker(
            failure_threshold=failure_threshold,
            recovery_timeout=recovery_timeout,
            name="log_webhook",
            on_state_change=on_circuit_change,
        )
        self._client = client

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def notify(self, entry: Dict[str, Any]) -> None:
        """Deliver one entry. Raises ``ExternalServiceError`` on failure."""

        async def _post():
            client = await self._get_client()
            response = await client.post(self.webhook_url, json={"embeds": [build_embed(entry)]})
            if response.status_code >= 400:
                raise ExternalServiceError(
                    "webhook",
                    f"unexpected status {response.status_code}",
                    details={"status_code": response.status_code},
                )

        try:
            await self.circuit_breaker.call(_post)
        except ExternalServiceError:
            raise
        except Exception as e:
            raise ExternalServiceError("webhook", str(e) or type(e).__name__) from e

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
