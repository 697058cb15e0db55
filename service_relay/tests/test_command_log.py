"""
Unit tests for the command log.
"""

import asyncio
import json

import pytest
from unittest.mock import AsyncMock, patch

from service_relay.app.audit.command_log import CommandLog, LogEntry, generate_entry_id
from shared.errors import PersistenceError
from shared.metrics import MetricsCollector


def _read_archives(command_log):
    entries = []
    for path in command_log.archive_files():
        entries.extend(json.loads(path.read_text(encoding="utf-8"))["logs"])
    return entries


def _seed(command_log, entries):
    command_log.logs_dir.mkdir(parents=True, exist_ok=True)
    command_log.store.path.write_text(json.dumps({"logs": entries}), encoding="utf-8")


def _entry(i, tenant="GS_tenant_one"):
    return {
        "timestamp": f"2024-01-01T00:00:{i % 60:02d}+00:00",
        "apiKey": tenant,
        "command": "kick",
        "executor": "mod",
        "target": f"player{i}",
        "details": "",
        "success": True,
        "id": f"seed_{i}",
    }


class TestCommandLog:
    """Test cases for CommandLog."""

    @pytest.fixture
    def command_log(self, tmp_path):
        return CommandLog(tmp_path / "logs", max_entries=5)

    @pytest.mark.asyncio
    async def test_record_persists_entry(self, command_log):
        entry = await command_log.record("GS_abc", "kick", "mod", "player1", "Player kicked from game", True)

        document = json.loads(command_log.store.path.read_text(encoding="utf-8"))
        assert document["logs"] == [entry.to_dict()]
        assert entry.apiKey == "GS_abc"
        assert entry.success is True

    @pytest.mark.asyncio
    async def test_record_defaults(self, command_log):
        entry = await command_log.record("GS_abc", "kick", None, None, None, False)

        assert entry.executor == "system"
        assert entry.target is None
        assert entry.details == ""

    @pytest.mark.asyncio
    async def test_entries_are_immutable(self, command_log):
        entry = await command_log.record("GS_abc", "warn", "mod", "p", "x", True)
        with pytest.raises(AttributeError):
            entry.command = "ban"

    @pytest.mark.asyncio
    async def test_rotation_moves_overflow_to_archive(self, command_log):
        for i in range(8):
            await command_log.record("GS_abc", "kick", "mod", f"p{i}", "", True)

        live = (await command_log.store.read())["logs"]
        archived = _read_archives(command_log)

        assert [e["target"] for e in live] == ["p3", "p4", "p5", "p6", "p7"]
        assert [e["target"] for e in archived] == ["p0", "p1", "p2"]
        assert len(command_log.archive_files()) == 3

    @pytest.mark.asyncio
    async def test_live_plus_archives_is_full_history(self, command_log):
        recorded = []
        for i in range(17):
            entry = await command_log.record("GS_abc", "kick", "mod", f"p{i}", "", True)
            recorded.append(entry.id)

        live = (await command_log.store.read())["logs"]
        history = sorted(_read_archives(command_log) + live, key=lambda e: recorded.index(e["id"]))

        assert [e["id"] for e in history] == recorded

    @pytest.mark.asyncio
    async def test_full_log_plus_one_archives_exactly_one(self, tmp_path):
        command_log = CommandLog(tmp_path / "logs", max_entries=1000)
        _seed(command_log, [_entry(i) for i in range(1000)])

        entry = await command_log.record("GS_tenant_one", "ban", "mod", "late", "", True)

        live = (await command_log.store.read())["logs"]
        assert len(live) == 1000
        assert live[-1]["id"] == entry.id
        assert live[0]["id"] == "seed_1"
        assert len(command_log.archive_files()) == 1
        assert [e["id"] for e in _read_archives(command_log)] == ["seed_0"]

    @pytest.mark.asyncio
    async def test_archive_written_before_live_log(self, command_log):
        _seed(command_log, [_entry(i) for i in range(5)])

        with patch(
            "service_relay.app.audit.command_log.write_json_exclusive",
            side_effect=OSError("read-only"),
        ):
            with pytest.raises(PersistenceError):
                await command_log.record("GS_tenant_one", "kick", "mod", "p", "", True)

        live = (await command_log.store.read())["logs"]
        assert [e["id"] for e in live] == [f"seed_{i}" for i in range(5)]

    @pytest.mark.asyncio
    async def test_write_failure_surfaces(self, command_log):
        with patch(
            "service_relay.app.adapters.json_store.write_json_atomic",
            side_effect=OSError("disk full"),
        ):
            with pytest.raises(PersistenceError):
                await command_log.record("GS_abc", "kick", "mod", "p", "", True)

    @pytest.mark.asyncio
    async def test_list_is_tenant_scoped_newest_first_and_bounded(self, tmp_path):
        command_log = CommandLog(tmp_path / "logs", max_entries=100)
        for i in range(6):
            await command_log.record("GS_one", "kick", "mod", f"one{i}", "", True)
            await command_log.record("GS_two", "kick", "mod", f"two{i}", "", True)

        logs = await command_log.list("GS_one", limit=4)

        assert [e["target"] for e in logs] == ["one5", "one4", "one3", "one2"]
        assert all(e["apiKey"] == "GS_one" for e in logs)

    @pytest.mark.asyncio
    async def test_list_default_limit(self, tmp_path):
        command_log = CommandLog(tmp_path / "logs", max_entries=100, default_limit=3)
        for i in range(5):
            await command_log.record("GS_one", "kick", "mod", f"p{i}", "", True)

        assert len(await command_log.list("GS_one")) == 3
        assert len(await command_log.list("GS_one", limit=0)) == 3

    @pytest.mark.asyncio
    async def test_list_ignores_archives(self, command_log):
        for i in range(7):
            await command_log.record("GS_abc", "kick", "mod", f"p{i}", "", True)

        logs = await command_log.list("GS_abc", limit=50)
        assert len(logs) == 5

    @pytest.mark.asyncio
    async def test_list_unreadable_log_is_empty(self, command_log):
        command_log.logs_dir.mkdir(parents=True)
        command_log.store.path.write_text("garbage", encoding="utf-8")

        assert await command_log.list("GS_abc") == []

    @pytest.mark.asyncio
    async def test_clear_archives_everything(self, command_log):
        for i in range(3):
            await command_log.record("GS_abc", "kick", "mod", f"p{i}", "", True)

        archived = await command_log.clear()

        assert archived == 3
        assert (await command_log.store.read()) == {"logs": []}
        assert [e["target"] for e in _read_archives(command_log)] == ["p0", "p1", "p2"]

    @pytest.mark.asyncio
    async def test_clear_empty_log_writes_no_archive(self, command_log):
        assert await command_log.clear() == 0
        assert command_log.archive_files() == []

    @pytest.mark.asyncio
    async def test_concurrent_records_are_all_kept(self, tmp_path):
        command_log = CommandLog(tmp_path / "logs", max_entries=1000)
        await asyncio.gather(*(
            command_log.record("GS_abc", "kick", "mod", f"p{i}", "", True) for i in range(20)
        ))

        live = (await command_log.store.read())["logs"]
        assert len(live) == 20
        assert len({e["id"] for e in live}) == 20

    @pytest.mark.asyncio
    async def test_initialize_creates_files(self, command_log):
        await command_log.initialize()

        assert command_log.archive_dir.is_dir()
        assert json.loads(command_log.store.path.read_text(encoding="utf-8")) == {"logs": []}

    @pytest.mark.asyncio
    async def test_rotation_metrics(self, tmp_path):
        metrics = MetricsCollector("relay")
        command_log = CommandLog(tmp_path / "logs", max_entries=1, metrics=metrics)
        await command_log.record("GS_abc", "kick", "mod", "a", "", True)
        await command_log.record("GS_abc", "kick", "mod", "b", "", False)

        assert metrics.registry.get_sample_value(
            "log_rotations_total", {"reason": "rotation"}
        ) == 1
        assert metrics.registry.get_sample_value(
            "commands_logged_total", {"command": "kick", "success": "false"}
        ) == 1


class TestNotifications:
    """Notification dispatch from the command log."""

    @pytest.mark.asyncio
    async def test_notifier_receives_entry_after_persistence(self, tmp_path):
        notifier = AsyncMock()
        command_log = CommandLog(tmp_path / "logs", notifier=notifier)

        entry = await command_log.record("GS_abc", "ban", "mod", "p", "Reason: x", True)
        await command_log.flush_notifications()

        notifier.notify.assert_awaited_once_with(entry.to_dict())

    @pytest.mark.asyncio
    async def test_notifier_failure_does_not_reach_caller(self, tmp_path):
        notifier = AsyncMock()
        notifier.notify.side_effect = RuntimeError("webhook down")
        metrics = MetricsCollector("relay")
        command_log = CommandLog(tmp_path / "logs", notifier=notifier, metrics=metrics)

        entry = await command_log.record("GS_abc", "ban", "mod", "p", "", True)
        await command_log.flush_notifications()

        assert entry.success is True
        assert metrics.registry.get_sample_value("notification_failures_total") == 1

    @pytest.mark.asyncio
    async def test_no_notification_when_write_fails(self, tmp_path):
        notifier = AsyncMock()
        command_log = CommandLog(tmp_path / "logs", notifier=notifier)

        with patch(
            "service_relay.app.adapters.json_store.write_json_atomic",
            side_effect=OSError("disk full"),
        ):
            with pytest.raises(PersistenceError):
                await command_log.record("GS_abc", "kick", "mod", "p", "", True)
        await command_log.flush_notifications()

        notifier.notify.assert_not_awaited()


class TestEntryIds:

    def test_ids_are_unique(self):
        ids = {generate_entry_id() for _ in range(5000)}
        assert len(ids) == 5000

    def test_create_uses_iso_timestamp(self):
        entry = LogEntry.create("GS_abc", "kick", "mod", "p", "d", True)
        assert "T" in entry.timestamp
        assert entry.timestamp.endswith("+00:00")
