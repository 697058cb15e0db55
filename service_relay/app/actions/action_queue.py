"""
Per-tenant queue of commands waiting for a game server to poll them.

The queue lives in the game state table as
``{tenant_key: {"pendingActions": [...]}}``. Delivery is at-most-once: a
drain clears the list in the same locked read-modify-write that reads it,
and nothing is kept for redelivery if the consumer fails afterwards.
"""

from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from shared.logging import get_logger
from shared.metrics import MetricsCollector
from service_relay.app.adapters.json_store import JsonFileStore

GAME_STATE_FILE_NAME = "gamestate.json"
PENDING_KEY = "pendingActions"


class ActionQueue:
    """FIFO of pending actions, one per tenant."""

    def __init__(self, data_dir, metrics: Optional[MetricsCollector] = None):
        self.store = JsonFileStore(Path(data_dir) / GAME_STATE_FILE_NAME)
        self.metrics = metrics
        self.logger = get_logger("relay.action_queue")

    async def enqueue(self, tenant_key: str, action: Dict[str, Any]) -> Dict[str, Any]:
        """Append ``action`` and persist before returning the stored copy."""
        if not action.get("type"):
            raise ValueError("action requires a type")
        stored = dict(action)
        stored["timestamp"] = datetime.now(timezone.utc).isoformat()

        def _append(state: Dict[str, Any]) -> int:
            pending = _pending_of(state, tenant_key)
            pending.append(stored)
            return len(pending)

        depth = await self.store.update(_append)

        if self.metrics:
            self.metrics.increment_counter("actions_enqueued_total", type=stored["type"])
        self.logger.info("Action enqueued", action_type=stored["type"], queue_depth=depth)
        return stored

    async def drain(self, tenant_key: str) -> List[Dict[str, Any]]:
        """Remove and return every pending action for the tenant, oldest first."""

        def _take(state: Dict[str, Any]) -> List[Dict[str, Any]]:
            pending = _pending_of(state, tenant_key)
            taken = list(pending)
            pending.clear()
            return taken

        actions = await self.store.update(_take)

        if actions:
            if self.metrics:
                self.metrics.increment_counter("actions_drained_total", len(actions))
            self.logger.info("Actions delivered", count=len(actions))
        return actions

    async def pending_count(self, tenant_key: str) -> int:
        state = await self.store.read()
        entry = state.get(tenant_key)
        if not isinstance(entry, dict):
            return 0
        pending = entry.get(PENDING_KEY)
        return len(pending) if isinstance(pending, list) else 0


def _pending_of(state: Dict[str, Any], tenant_key: str) -> List[Dict[str, Any]]:
    entry = state.get(tenant_key)
    if not isinstance(entry, dict):
        entry = state[tenant_key] = {}
    pending = entry.get(PENDING_KEY)
    if not isinstance(pending, list):
        pending = entry[PENDING_KEY] = []
    return pending
