"""
Pending-action delivery for polling game servers.
"""

from .action_queue import ActionQueue

__all__ = ["ActionQueue"]
