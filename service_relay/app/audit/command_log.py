"""
Append-only command log with size-bounded rotation.

The live log is a single JSON document ``{"logs": [...]}`` holding the most
recent entries across all tenants in creation order. When it grows past the
cap, the oldest entries move to a new write-once archive file. The archive is
written before the truncated live log, so an entry is never missing from
both places.

Entries can be mirrored to a notification sink. Dispatch happens in the
background after the write and its failures are only logged.
"""

import asyncio
import itertools
import secrets
import time
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, Set, Tuple

from shared.errors import PersistenceError
from shared.logging import get_logger
from shared.metrics import MetricsCollector
from service_relay.app.adapters.json_store import JsonFileStore, write_json_exclusive

DEFAULT_MAX_ENTRIES = 1000
DEFAULT_LIST_LIMIT = 50
LOG_FILE_NAME = "command_logs.json"
ARCHIVE_DIR_NAME = "archived"

_sequence = itertools.count(1)


def generate_entry_id() -> str:
    """Creation-time id: millis, a per-process sequence and a random suffix."""
    return f"{int(time.time() * 1000)}_{next(_sequence):06d}_{secrets.token_hex(4)}"


class NotificationSink(Protocol):
    async def notify(self, entry: Dict[str, Any]) -> None: ...


@dataclass(frozen=True)
class LogEntry:
    """One audit record. Field names match the on-disk document."""

    timestamp: str
    apiKey: str
    command: str
    executor: str
    target: Optional[str]
    details: str
    success: bool
    id: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def create(cls, tenant_key: str, command: str, executor: Optional[str],
               target: Optional[str], details: Optional[str], success: bool) -> "LogEntry":
        return cls(
            timestamp=datetime.now(timezone.utc).isoformat(),
            apiKey=tenant_key,
            command=command,
            executor=executor or "system",
            target=target,
            details=details or "",
            success=bool(success),
            id=generate_entry_id(),
        )


class CommandLog:
    """Audit trail of administrative actions."""

    def __init__(self,
                 logs_dir,
                 max_entries: int = DEFAULT_MAX_ENTRIES,
                 default_limit: int = DEFAULT_LIST_LIMIT,
                 notifier: Optional[NotificationSink] = None,
                 metrics: Optional[MetricsCollector] = None):
        self.logs_dir = Path(logs_dir)
        self.archive_dir = self.logs_dir / ARCHIVE_DIR_NAME
        self.store = JsonFileStore(self.logs_dir / LOG_FILE_NAME, default={"logs": []})
        self.max_entries = max_entries
        self.default_limit = default_limit
        self.notifier = notifier
        self.metrics = metrics
        self.logger = get_logger("relay.command_log")
        self._pending_notifications: Set[asyncio.Task] = set()

    async def initialize(self) -> None:
        self.archive_dir.mkdir(parents=True, exist_ok=True)
        await self.store.ensure()
        self.logger.info("Command log initialized", path=str(self.store.path))

    async def record(self,
                     tenant_key: str,
                     command: str,
                     executor: Optional[str],
                     target: Optional[str],
                     details: Optional[str],
                     success: bool) -> LogEntry:
        """Append an entry and persist the live log.

        Raises ``PersistenceError`` if the log could not be written.
        """
        entry = LogEntry.create(tenant_key, command, executor, target, details, success)

        async def _append(document: Dict[str, Any]) -> Tuple[Dict[str, Any], int]:
            logs = _entries_of(document)
            logs.append(entry.to_dict())
            overflow = len(logs) - self.max_entries
            if overflow > 0:
                await self._archive(logs[:overflow], reason="rotation")
                logs = logs[overflow:]
            return {"logs": logs}, max(overflow, 0)

        archived = await self.store.transact(_append)

        if self.metrics:
            self.metrics.increment_counter(
                "commands_logged_total", command=command, success=str(entry.success).lower()
            )
        self.logger.info(
            "Command logged",
            command=command,
            executor=entry.executor,
            success=entry.success,
            archived=archived,
        )

        if self.notifier is not None:
            self._dispatch(entry)
        return entry

    async def list(self, tenant_key: str, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """Most recent entries for one tenant, newest first."""
        if limit is None or limit <= 0:
            limit = self.default_limit
        document = await self.store.read()
        matches: List[Dict[str, Any]] = []
        for entry in reversed(_entries_of(document)):
            if entry.get("apiKey") != tenant_key:
                continue
            matches.append(entry)
            if len(matches) >= limit:
                break
        return matches

    async def clear(self) -> int:
        """Archive the whole live log and start an empty one."""

        async def _clear(document: Dict[str, Any]) -> Tuple[Dict[str, Any], int]:
            logs = _entries_of(document)
            if logs:
                await self._archive(logs, reason="clear")
            return {"logs": []}, len(logs)

        archived = await self.store.transact(_clear)
        self.logger.info("Command log cleared", archived=archived)
        return archived

    async def flush_notifications(self) -> None:
        """Wait for in-flight notification dispatches."""
        while self._pending_notifications:
            await asyncio.gather(*list(self._pending_notifications), return_exceptions=True)

    def archive_files(self) -> List[Path]:
        if not self.archive_dir.exists():
            return []
        return sorted(self.archive_dir.glob("logs_*.json"))

    async def _archive(self, entries: List[Dict[str, Any]], reason: str) -> Path:
        try:
            path = await asyncio.to_thread(self._write_archive, entries)
        except OSError as e:
            self.logger.error("Archive write failed", count=len(entries), error=str(e))
            raise PersistenceError("Unable to archive command log", details={"reason": reason}) from e
        if self.metrics:
            self.metrics.increment_counter("log_rotations_total", reason=reason)
        self.logger.info("Archived command log entries", count=len(entries), archive=path.name, reason=reason)
        return path

    def _write_archive(self, entries: List[Dict[str, Any]]) -> Path:
        stamp = int(time.time() * 1000)
        attempt = 0
        while True:
            suffix = f"_{attempt}" if attempt else ""
            path = self.archive_dir / f"logs_{stamp}{suffix}.json"
            try:
                write_json_exclusive(path, {"logs": entries})
                return path
            except FileExistsError:
                attempt += 1

    def _dispatch(self, entry: LogEntry) -> None:
        task = asyncio.create_task(self._notify(entry))
        self._pending_notifications.add(task)
        task.add_done_callback(self._pending_notifications.discard)

    async def _notify(self, entry: LogEntry) -> None:
        try:
            await self.notifier.notify(entry.to_dict())
        except Exception as e:
            if self.metrics:
                self.metrics.increment_counter("notification_failures_total")
            self.logger.warning("Log notification failed", command=entry.command, entry_id=entry.id, error=str(e))


def _entries_of(document: Any) -> List[Dict[str, Any]]:
    logs = document.get("logs") if isinstance(document, dict) else None
    return list(logs) if isinstance(logs, list) else []
