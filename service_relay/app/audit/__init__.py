"""
Audit package: the command log and its archive rotation.
"""

from .command_log import CommandLog, LogEntry, generate_entry_id

__all__ = ["CommandLog", "LogEntry", "generate_entry_id"]
