"""
Moderation commands: kick, ban and warn.

Every command is recorded in the command log, whether it succeeded or not.
A command that fails validation or storage is logged with ``success=False``
and the error is re-raised for the HTTP layer to answer.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Optional

import pydantic

from shared.errors import PersistenceError, RelayException, ServiceError, ValidationError
from shared.logging import get_logger
from service_relay.app.actions.action_queue import ActionQueue
from service_relay.app.adapters.json_store import JsonFileStore
from service_relay.app.audit.command_log import CommandLog
from service_relay.app.domain.models import BanRequest, KickRequest, WarnRequest, calculate_expiry

BANS_FILE_NAME = "bans.json"
WARNINGS_FILE_NAME = "warnings.json"

_FLAG = pydantic.TypeAdapter(bool)


@dataclass(frozen=True)
class CommandOutcome:
    """What a successful command reports to the log and to the caller."""

    command: str
    executor: Optional[str]
    target: str
    details: str
    message: str


class ModerationService:
    """Applies moderation commands for a tenant and audits them."""

    def __init__(self, data_dir, action_queue: ActionQueue, command_log: CommandLog):
        self.bans = JsonFileStore(Path(data_dir) / BANS_FILE_NAME)
        self.warnings = JsonFileStore(Path(data_dir) / WARNINGS_FILE_NAME)
        self.action_queue = action_queue
        self.command_log = command_log
        self.logger = get_logger("relay.moderation")

    async def kick(self, tenant_key: str, payload: Dict[str, Any]) -> str:
        async def _kick() -> CommandOutcome:
            request = parse_payload(KickRequest, payload)
            await self.action_queue.enqueue(tenant_key, {
                "type": "kick",
                "player": request.player,
                "kickedBy": request.kicked_by,
            })
            return CommandOutcome(
                command="kick",
                executor=request.kicked_by,
                target=request.player,
                details="Player kicked from game",
                message=f"Kick command queued for {request.player}",
            )

        return await self._execute(
            tenant_key, "kick", payload.get("kickedBy"), payload.get("player"),
            _kick, "Error processing kick command",
        )

    async def ban(self, tenant_key: str, payload: Dict[str, Any]) -> str:
        async def _ban() -> CommandOutcome:
            request = parse_payload(BanRequest, payload)
            now = datetime.now(timezone.utc)
            record = {
                "player": request.player,
                "gameId": tenant_key,
                "reason": request.reason,
                "bannedBy": request.banned_by,
                "timestamp": now.isoformat(),
                "isPermanent": not request.is_temp,
                "expiresAt": calculate_expiry(request.duration, now) if request.is_temp else None,
            }

            def _store(bans: Dict[str, Any]) -> None:
                bans[f"{tenant_key}:{request.player}"] = record

            await self.bans.update(_store)
            await self.action_queue.enqueue(tenant_key, {
                "type": "kick",
                "player": request.player,
                "reason": "Banned",
            })
            details = f"Reason: {request.reason}"
            if request.is_temp:
                details += f" | Duration: {request.duration}"
            return CommandOutcome(
                command=request.command,
                executor=request.banned_by,
                target=request.player,
                details=details,
                message=f"{request.player} has been banned",
            )

        # Only used when the payload does not validate
        guessed = "tempban" if _as_flag(payload.get("isTemp")) else "ban"
        return await self._execute(
            tenant_key, guessed, payload.get("bannedBy"), payload.get("player"),
            _ban, "Error processing ban",
        )

    async def warn(self, tenant_key: str, payload: Dict[str, Any]) -> str:
        async def _warn() -> CommandOutcome:
            request = parse_payload(WarnRequest, payload)
            timestamp = datetime.now(timezone.utc).isoformat()
            record = {
                "player": request.player,
                "gameId": tenant_key,
                "reason": request.reason,
                "warnedBy": request.warned_by,
                "timestamp": timestamp,
            }

            def _store(warnings: Dict[str, Any]) -> None:
                warnings[f"{tenant_key}:{request.player}:{timestamp}"] = record

            await self.warnings.update(_store)
            await self.action_queue.enqueue(tenant_key, {
                "type": "warn",
                "player": request.player,
                "reason": request.reason,
                "warnedBy": request.warned_by,
            })
            return CommandOutcome(
                command="warn",
                executor=request.warned_by,
                target=request.player,
                details=f"Reason: {request.reason}",
                message=f"{request.player} has been warned",
            )

        return await self._execute(
            tenant_key, "warn", payload.get("warnedBy"), payload.get("player"),
            _warn, "Error processing warning",
        )

    async def _execute(self,
                       tenant_key: str,
                       command: str,
                       executor: Any,
                       target: Any,
                       operation: Callable[[], Awaitable[CommandOutcome]],
                       failure_message: str) -> str:
        """Run ``operation`` and audit it.

        ``command``, ``executor`` and ``target`` come from the raw payload and
        are only logged when the operation fails; a success is logged with
        what the operation reports.
        """
        try:
            outcome = await operation()
        except Exception as e:
            await self._record_failure(
                tenant_key, command, _as_text(executor), _as_text(target), f"Error: {_describe(e)}"
            )
            if isinstance(e, RelayException):
                raise
            self.logger.error("Moderation command failed", command=command, error=str(e), exc_info=True)
            raise ServiceError(failure_message) from e

        await self.command_log.record(
            tenant_key, outcome.command, outcome.executor, outcome.target, outcome.details, True
        )
        return outcome.message

    async def _record_failure(self, tenant_key: str, command: str, executor: Optional[str],
                              target: Optional[str], details: str) -> None:
        try:
            await self.command_log.record(tenant_key, command, executor, target, details, False)
        except PersistenceError as e:
            # The command error is what the caller sees
            self.logger.error("Could not record failed command", command=command, error=e.message)


def parse_payload(model, payload: Dict[str, Any]):
    try:
        return model.model_validate(payload)
    except pydantic.ValidationError as e:
        problems = [
            f"{'.'.join(str(part) for part in err['loc']) or 'payload'}: {err['msg']}"
            for err in e.errors()
        ]
        raise ValidationError("Invalid command payload", details={"errors": problems}) from e


def _describe(error: Exception) -> str:
    if isinstance(error, ValidationError):
        return "; ".join(error.details.get("errors", [])) or error.message
    if isinstance(error, RelayException):
        return error.message
    return str(error) or type(error).__name__


def _as_flag(value: Any) -> bool:
    """Read a flag the way the request models do."""
    try:
        return _FLAG.validate_python(value)
    except pydantic.ValidationError:
        return False


def _as_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    return value if isinstance(value, str) else str(value)
