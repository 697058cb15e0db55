"""
Moderation relay service.

Routes administrative commands from operator tooling to polling game
servers, with admission control in front of every request and an audit
record behind every command.
"""

import asyncio
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from fastapi import Depends, Request
from fastapi.responses import JSONResponse

from shared.base_service import BaseService
from shared.circuit_breaker import CircuitBreakerState
from shared.config import ServiceConfig, get_config
from shared.errors import RateLimitError
from shared.logging import set_client_context
from service_relay.app.actions.action_queue import ActionQueue
from service_relay.app.adapters.webhook_notifier import WebhookNotifier
from service_relay.app.audit.command_log import CommandLog
from service_relay.app.domain.models import AdminRequest, RegisterGameRequest
from service_relay.app.domain.moderation import ModerationService, parse_payload
from service_relay.app.domain.tenants import (
    Tenant,
    TenantRegistry,
    TenantResolver,
    read_json_body,
    verify_operator_key,
)
from service_relay.app.ratelimit.fixed_window import (
    FixedWindowRateLimiter,
    RateLimitMiddleware,
    RateLimitStore,
)

SERVICE_NAME = "relay"
DEFAULT_PORT = 3000


class RelayService(BaseService):
    """Moderation relay service implementation."""

    def __init__(self,
                 config: Optional[ServiceConfig] = None,
                 rate_limit_store: Optional[RateLimitStore] = None,
                 notifier: Optional[WebhookNotifier] = None,
                 clock=None):
        super().__init__(SERVICE_NAME, DEFAULT_PORT, config=config)

        limiter_kwargs: Dict[str, Any] = {}
        if clock is not None:
            limiter_kwargs["clock"] = clock
        self.rate_limiter = FixedWindowRateLimiter(
            window_seconds=self.config.rate_limit_window_seconds,
            max_requests=self.config.rate_limit_max_requests,
            block_seconds=self.config.rate_limit_block_seconds,
            sweep_interval_seconds=self.config.rate_limit_sweep_interval_seconds,
            store=rate_limit_store,
            on_blacklist=lambda _identifier: self.metrics.increment_counter("blacklist_events_total"),
            **limiter_kwargs,
        )
        self.rate_limit_middleware = RateLimitMiddleware(self.rate_limiter)

        if notifier is None and self.config.log_webhook_url:
            notifier = WebhookNotifier(
                self.config.log_webhook_url,
                timeout=self.config.notification_timeout_seconds,
                failure_threshold=self.config.notification_failure_threshold,
                recovery_timeout=self.config.notification_recovery_seconds,
                on_circuit_change=self._record_circuit_state,
            )
        self.notifier = notifier

        data_dir = Path(self.config.data_dir)
        self.command_log = CommandLog(
            self.config.logs_dir,
            max_entries=self.config.command_log_max_entries,
            default_limit=self.config.logs_default_limit,
            notifier=self.notifier,
            metrics=self.metrics,
        )
        self.action_queue = ActionQueue(data_dir, metrics=self.metrics)
        self.tenants = TenantRegistry(data_dir)
        self.moderation = ModerationService(data_dir, self.action_queue, self.command_log)
        self.require_tenant = TenantResolver(self.tenants)

        self._setup_rate_limiting()
        self._setup_relay_routes()

        self.app.state.relay_service = self

    async def _on_startup(self) -> None:
        data_dir = Path(self.config.data_dir)
        data_dir.mkdir(parents=True, exist_ok=True)
        await asyncio.gather(
            self.tenants.store.ensure(),
            self.action_queue.store.ensure(),
            self.moderation.bans.ensure(),
            self.moderation.warnings.ensure(),
            self.command_log.initialize(),
        )
        self.logger.info(
            "Relay started",
            rate_limit=self.config.rate_limit_max_requests,
            window_seconds=self.config.rate_limit_window_seconds,
            notifications=self.notifier is not None,
        )

    async def _on_shutdown(self) -> None:
        await self.command_log.flush_notifications()
        if self.notifier is not None:
            await self.notifier.close()

    async def _check_dependencies(self) -> Dict[str, str]:
        return {
            "storage": "ok" if Path(self.config.data_dir).exists() else "missing",
            "log_webhook": (
                "disabled" if self.notifier is None
                else self.notifier.circuit_breaker.get_state()["state"]
            ),
        }

    def _record_circuit_state(self, _name: str, state: CircuitBreakerState) -> None:
        self.metrics.set_gauge("notification_circuit_open", 1 if state == CircuitBreakerState.OPEN else 0)

    def _setup_rate_limiting(self):
        """Admission control for every request, ahead of all other handling."""

        @self.app.middleware("http")
        async def enforce_rate_limit(request: Request, call_next):
            client_id, decision = self.rate_limit_middleware.check_request(request)
            set_client_context(client_id=client_id)

            if not decision.allowed:
                self.metrics.increment_counter(
                    "rate_limit_rejections_total",
                    reason="blacklisted" if decision.blocked else "window",
                )
                error = RateLimitError("Rate limit exceeded. Try again in 15 minutes.")
                return JSONResponse(
                    status_code=429,
                    content={"success": False, "message": error.message, "code": error.code},
                    headers={"Retry-After": str(decision.retry_after)},
                )

            response = await call_next(request)
            response.headers.update(decision.headers())
            return response

    def _setup_relay_routes(self):
        """Set up relay routes."""

        require_tenant = self.require_tenant

        @self.app.get("/api/status")
        async def status():
            """Service status with admission-control table sizes."""
            stats = self.rate_limiter.stats()
            self.metrics.set_gauge("rate_limit_tracked_clients", stats["activeConnections"])
            self.metrics.set_gauge("rate_limit_blacklisted_clients", stats["blacklistedIPs"])
            return {
                "success": True,
                "status": "online",
                "uptime": self._get_uptime(),
                "rateLimits": stats,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            }

        @self.app.get("/api/logs")
        async def list_logs(request: Request, tenant: Tenant = Depends(require_tenant)):
            """Recent command log entries for the calling tenant."""
            limit = _parse_limit(request.query_params.get("limit"))
            logs = await self.command_log.list(tenant.api_key, limit)
            return {"success": True, "logs": logs}

        @self.app.post("/api/logs/clear")
        async def clear_logs(request: Request):
            """Archive and empty the live command log (operator only)."""
            body = parse_payload(AdminRequest, await read_json_body(request))
            verify_operator_key(body.admin_key, self.config.admin_key)
            archived = await self.command_log.clear()
            return {"success": True, "message": "Logs cleared and archived", "archived": archived}

        @self.app.post("/api/game/register")
        async def register_game(request: Request):
            """Provision a tenant key for a new game (operator only)."""
            payload = await read_json_body(request)
            operator = parse_payload(AdminRequest, payload)
            verify_operator_key(operator.admin_key, self.config.admin_key)
            body = parse_payload(RegisterGameRequest, payload)
            tenant = await self.tenants.register(body.game_name, body.owner_id)
            return {"success": True, "apiKey": tenant.api_key, "message": "Game registered successfully"}

        @self.app.post("/api/moderation/kick")
        async def kick(request: Request, tenant: Tenant = Depends(require_tenant)):
            message = await self.moderation.kick(tenant.api_key, await read_json_body(request))
            return {"success": True, "message": message}

        @self.app.post("/api/moderation/ban")
        async def ban(request: Request, tenant: Tenant = Depends(require_tenant)):
            message = await self.moderation.ban(tenant.api_key, await read_json_body(request))
            return {"success": True, "message": message}

        @self.app.post("/api/moderation/warn")
        async def warn(request: Request, tenant: Tenant = Depends(require_tenant)):
            message = await self.moderation.warn(tenant.api_key, await read_json_body(request))
            return {"success": True, "message": message}

        @self.app.get("/api/game/poll")
        async def poll(tenant: Tenant = Depends(require_tenant)):
            """Deliver and clear the tenant's pending actions."""
            actions = await self.action_queue.drain(tenant.api_key)
            return {"success": True, "actions": actions}


def _parse_limit(raw: Optional[str]) -> Optional[int]:
    try:
        return int(raw) if raw is not None else None
    except ValueError:
        return None


def create_app(config: Optional[ServiceConfig] = None, **kwargs):
    """Create FastAPI application."""
    service = RelayService(config=config, **kwargs)
    return service.app


if __name__ == "__main__":
    service = RelayService(config=get_config(SERVICE_NAME, DEFAULT_PORT))
    service.run()
