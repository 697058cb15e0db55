"""
Adapters package for the relay.

Wraps the relay's external collaborators:

- JSON document tables on disk (the persistence collaborator)
- The webhook notification sink for command log entries

Keep adapters thin and side-effect free outside of explicit calls.
"""

from .json_store import JsonFileStore
from .webhook_notifier import WebhookNotifier

__all__ = [
    "JsonFileStore",
    "WebhookNotifier",
]
