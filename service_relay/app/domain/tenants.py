"""
Tenant registry and credential resolution.

Tenants are game registrations keyed by an opaque API key. The registry is a
plain JSON table; the relay only needs to look keys up and provision new ones.
"""

import hmac
import secrets
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from fastapi import Request

from shared.errors import AuthenticationError, AuthorizationError
from shared.logging import get_logger, redact_key, set_client_context
from service_relay.app.adapters.json_store import JsonFileStore

GAMES_FILE_NAME = "games.json"
API_KEY_PREFIX = "GS_"
API_KEY_HEADER = "X-API-Key"


def generate_api_key() -> str:
    return API_KEY_PREFIX + secrets.token_hex(13)


@dataclass(frozen=True)
class Tenant:
    api_key: str
    game_name: Optional[str]
    owner_id: Optional[str]
    created_at: Optional[str]
    is_active: bool = True

    @classmethod
    def from_record(cls, api_key: str, record: Dict[str, Any]) -> "Tenant":
        return cls(
            api_key=api_key,
            game_name=record.get("gameName"),
            owner_id=record.get("ownerId"),
            created_at=record.get("createdAt"),
            is_active=record.get("isActive", True) is not False,
        )


class TenantRegistry:
    """Lookup and provisioning of tenant keys."""

    def __init__(self, data_dir):
        self.store = JsonFileStore(Path(data_dir) / GAMES_FILE_NAME)
        self.logger = get_logger("relay.tenants")

    async def get(self, api_key: str) -> Optional[Tenant]:
        games = await self.store.read()
        record = games.get(api_key)
        if not isinstance(record, dict):
            return None
        return Tenant.from_record(api_key, record)

    async def register(self, game_name: str, owner_id: str) -> Tenant:
        api_key = generate_api_key()
        record = {
            "gameName": game_name,
            "ownerId": owner_id,
            "createdAt": datetime.now(timezone.utc).isoformat(),
            "isActive": True,
        }

        def _add(games: Dict[str, Any]) -> None:
            games[api_key] = record

        await self.store.update(_add)
        self.logger.info("Game registered", game_name=game_name, tenant=redact_key(api_key))
        return Tenant.from_record(api_key, record)


class TenantResolver:
    """FastAPI dependency that authenticates the calling tenant."""

    def __init__(self, registry: TenantRegistry):
        self.registry = registry
        self.logger = get_logger("relay.tenant_resolver")

    async def __call__(self, request: Request) -> Tenant:
        api_key = await extract_api_key(request)
        if not api_key:
            raise AuthenticationError("No API key provided")

        tenant = await self.registry.get(api_key)
        if tenant is None or not tenant.is_active:
            self.logger.warning("Rejected API key", tenant=redact_key(api_key))
            raise AuthorizationError("Invalid API key")

        set_client_context(tenant_key=api_key)
        request.state.tenant = tenant
        return tenant


async def extract_api_key(request: Request) -> Optional[str]:
    """Body, then query string, then header."""
    if request.method in ("POST", "PUT", "PATCH"):
        body = await read_json_body(request)
        key = body.get("apiKey")
        if isinstance(key, str) and key:
            return key

    key = request.query_params.get("apiKey")
    if key:
        return key

    return request.headers.get(API_KEY_HEADER) or None


async def read_json_body(request: Request) -> Dict[str, Any]:
    """Parsed JSON object body, or an empty dict for anything else."""
    try:
        body = await request.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


def verify_operator_key(provided: Optional[str], expected: Optional[str]) -> None:
    """Raise unless the operator credential matches the configured one."""
    if not expected or not provided:
        raise AuthorizationError("Unauthorized")
    if not hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8")):
        raise AuthorizationError("Unauthorized")
