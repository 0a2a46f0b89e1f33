"""Tests for the file-queue command channel and its authorization matrix."""

from __future__ import annotations

import json
from pathlib import Path
from unittest.mock import AsyncMock

import pytest

from conftest import (
    FAMILY,
    FAMILY_GROUP_JID,
    FRIEND,
    FRIENDS_GROUP_JID,
    MAIN_JID,
    OWNER,
    STRANGER,
    make_group,
)
from warden.command_channel import (
    CommandChannel,
    CommandParseError,
    parse_command,
)
from warden.groups import GroupRegistry
from warden.models import ContextTier, TaskStatus, UserTier
from warden.scheduler import TaskScheduler


@pytest.fixture
def groups(config) -> GroupRegistry:
    reg = GroupRegistry(config.data_dir / "registered_groups.json", config.groups_dir, "main")
    reg.register(MAIN_JID, make_group("Main", "main", ContextTier.OWNER))
    reg.register(FAMILY_GROUP_JID, make_group("Family", "family", ContextTier.FAMILY))
    reg.register(FRIENDS_GROUP_JID, make_group("Friends", "friends", ContextTier.FRIEND))
    return reg


@pytest.fixture
def transport():
    t = AsyncMock()
    t.send = AsyncMock()
    return t


@pytest.fixture
def scheduler(store):
    return TaskScheduler(store, "UTC", execute=AsyncMock(), send=AsyncMock())


@pytest.fixture
def refresh():
    return AsyncMock()


@pytest.fixture
def channel(config, groups, users, store, scheduler, transport, refresh) -> CommandChannel:
    return CommandChannel(
        config.ipc_dir,
        groups=groups,
        users=users,
        store=store,
        scheduler=scheduler,
        transport=transport,
        refresh_groups=refresh,
    )


def _drop(channel: CommandChannel, folder: str, queue: str, payload: dict, name: str = "cmd.json") -> Path:
    path = channel.ipc_dir / folder / queue / name
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload))
    return path


def _quarantined(channel: CommandChannel, folder: str, name: str = "cmd.json") -> bool:
    return (channel.ipc_dir / "errors" / f"{folder}-{name}").exists()


async def _make_task(scheduler: TaskScheduler, folder: str, jid: str) -> str:
    task = await scheduler.create_task(
        group_folder=folder,
        chat_jid=jid,
        prompt="daily digest",
        schedule_type="cron",
        schedule_value="0 9 * * *",
    )
    return task.id


class TestParsing:
    def test_unknown_type(self):
        with pytest.raises(CommandParseError):
            parse_command(b'{"type": "format_disk"}')

    def test_not_json(self):
        with pytest.raises(CommandParseError):
            parse_command(b"{{{")

    def test_aliases(self):
        cmd = parse_command(b'{"type": "pause_task", "taskId": "task-1"}')
        assert cmd.task_id == "task-1"

    async def test_garbage_file_is_quarantined(self, channel):
        path = channel.ipc_dir / "family" / "tasks" / "bad.json"
        path.parent.mkdir(parents=True)
        path.write_text("not json at all")
        assert await channel.drain() == 0
        assert not path.exists()
        assert _quarantined(channel, "family", "bad.json")

    async def test_wrong_queue_is_quarantined(self, channel, transport):
        _drop(channel, "main", "tasks", {"type": "message", "chatJid": MAIN_JID, "text": "hi"})
        await channel.drain()
        transport.send.assert_not_called()
        assert _quarantined(channel, "main")

    async def test_repeat_quarantine_keeps_earlier_file(self, channel):
        for body in ("first bad", "second bad"):
            path = channel.ipc_dir / "family" / "tasks" / "bad.json"
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(body)
            await channel.drain()

        errors = channel.ipc_dir / "errors"
        assert (errors / "family-bad.json").read_text() == "first bad"
        assert (errors / "family-bad.1.json").read_text() == "second bad"


class TestMessages:
    async def test_main_can_message_any_chat(self, channel, transport):
        path = _drop(channel, "main", "messages", {"type": "message", "chatJid": FRIENDS_GROUP_JID, "text": "hello"})
        assert await channel.drain() == 1
        transport.send.assert_awaited_once_with(FRIENDS_GROUP_JID, "hello")
        assert not path.exists()

    async def test_group_can_message_itself(self, channel, transport):
        _drop(channel, "friends", "messages", {"type": "message", "chatJid": FRIENDS_GROUP_JID, "text": "hi"})
        assert await channel.drain() == 1
        transport.send.assert_awaited_once()

    async def test_group_cannot_message_other_chat(self, channel, transport):
        _drop(channel, "family", "messages", {"type": "message", "chatJid": MAIN_JID, "text": "psst"})
        assert await channel.drain() == 0
        transport.send.assert_not_called()
        assert _quarantined(channel, "family")


class TestTaskManagement:
    async def test_cross_namespace_pause_denied(self, channel, scheduler, store):
        task_id = await _make_task(scheduler, "main", MAIN_JID)
        _drop(channel, "family", "tasks", {"type": "pause_task", "taskId": task_id})

        await channel.drain()

        assert (await store.get_task(task_id)).status == TaskStatus.ACTIVE
        assert _quarantined(channel, "family")

    async def test_owner_pause_any(self, channel, scheduler, store):
        task_id = await _make_task(scheduler, "family", FAMILY_GROUP_JID)
        _drop(channel, "main", "tasks", {"type": "pause_task", "taskId": task_id})
        assert await channel.drain() == 1
        assert (await store.get_task(task_id)).status == TaskStatus.PAUSED

        _drop(channel, "main", "tasks", {"type": "resume_task", "taskId": task_id}, name="r.json")
        assert await channel.drain() == 1
        assert (await store.get_task(task_id)).status == TaskStatus.ACTIVE

    async def test_family_manages_own(self, channel, scheduler, store):
        task_id = await _make_task(scheduler, "family", FAMILY_GROUP_JID)
        _drop(channel, "family", "tasks", {"type": "cancel_task", "taskId": task_id})
        assert await channel.drain() == 1
        assert await store.get_task(task_id) is None

    async def test_friend_cannot_manage_own(self, channel, scheduler, store):
        task_id = await _make_task(scheduler, "friends", FRIENDS_GROUP_JID)
        _drop(channel, "friends", "tasks", {"type": "cancel_task", "taskId": task_id})
        assert await channel.drain() == 0
        assert await store.get_task(task_id) is not None

    async def test_missing_task_is_invalid(self, channel):
        _drop(channel, "main", "tasks", {"type": "pause_task", "taskId": "task-nope"})
        assert await channel.drain() == 0
        assert _quarantined(channel, "main")


class TestScheduling:
    async def test_family_schedules_own_group(self, channel, store):
        _drop(
            channel,
            "family",
            "tasks",
            {"type": "schedule_task", "prompt": "p", "schedule_type": "interval", "schedule_value": "60000"},
        )
        assert await channel.drain() == 1
        tasks = await store.get_tasks_for_group("family")
        assert len(tasks) == 1
        assert tasks[0].chat_jid == FAMILY_GROUP_JID

    async def test_family_cannot_target_other_group(self, channel, store):
        _drop(
            channel,
            "family",
            "tasks",
            {
                "type": "schedule_task",
                "prompt": "p",
                "schedule_type": "interval",
                "schedule_value": "60000",
                "groupFolder": "main",
            },
        )
        assert await channel.drain() == 0
        assert await store.get_all_tasks() == []

    async def test_owner_targets_other_group(self, channel, store):
        _drop(
            channel,
            "main",
            "tasks",
            {
                "type": "schedule_task",
                "prompt": "p",
                "schedule_type": "once",
                "schedule_value": "2099-01-01T00:00:00Z",
                "groupFolder": "friends",
            },
        )
        assert await channel.drain() == 1
        (task,) = await store.get_tasks_for_group("friends")
        assert task.chat_jid == FRIENDS_GROUP_JID

    async def test_friend_cannot_schedule(self, channel, store):
        _drop(
            channel,
            "friends",
            "tasks",
            {"type": "schedule_task", "prompt": "p", "schedule_type": "interval", "schedule_value": "60000"},
        )
        assert await channel.drain() == 0
        assert await store.get_all_tasks() == []

    async def test_bad_schedule_is_invalid(self, channel, store):
        _drop(
            channel,
            "main",
            "tasks",
            {"type": "schedule_task", "prompt": "p", "schedule_type": "cron", "schedule_value": "every day"},
        )
        assert await channel.drain() == 0
        assert _quarantined(channel, "main")

    async def test_unregistered_target(self, channel, store):
        _drop(
            channel,
            "main",
            "tasks",
            {
                "type": "schedule_task",
                "prompt": "p",
                "schedule_type": "interval",
                "schedule_value": "1000",
                "groupFolder": "ghost",
            },
        )
        assert await channel.drain() == 0


class TestOwnerCommands:
    async def test_register_group_from_main(self, channel, groups, config):
        _drop(
            channel,
            "main",
            "tasks",
            {
                "type": "register_group",
                "jid": "120363000000000009@g.us",
                "name": "Hiking",
                "folder": "hiking",
                "trigger": "@Warden",
                "contextTier": "friend",
                "containerConfig": {
                    "timeout": 60000,
                    "additionalMounts": [{"hostPath": "/", "readonly": False}],
                },
            },
        )
        assert await channel.drain() == 1
        group = groups.get("120363000000000009@g.us")
        assert group.context_tier == ContextTier.FRIEND
        assert group.container_config.timeout == 60000
        assert group.container_config.additional_mounts == []
        assert (config.groups_dir / "hiking" / "logs").is_dir()

    async def test_register_group_denied_for_family(self, channel, groups):
        _drop(
            channel,
            "family",
            "tasks",
            {"type": "register_group", "jid": "x@g.us", "name": "X", "folder": "x", "trigger": "@W"},
        )
        assert await channel.drain() == 0
        assert groups.get("x@g.us") is None

    async def test_add_and_remove_user(self, channel, users):
        _drop(channel, "main", "tasks", {"type": "add_user", "userJid": STRANGER, "userName": "Sam", "tier": "friend"})
        assert await channel.drain() == 1
        assert users.get_tier(STRANGER) == UserTier.FRIEND
        assert users.get_user_info(STRANGER).added_by == OWNER

        _drop(channel, "main", "tasks", {"type": "remove_user", "userJid": STRANGER}, name="rm.json")
        assert await channel.drain() == 1
        assert users.get_tier(STRANGER) == UserTier.STRANGER

    async def test_add_existing_user_is_invalid(self, channel, users):
        _drop(channel, "main", "tasks", {"type": "add_user", "userJid": FRIEND, "userName": "Fred", "tier": "family"})
        assert await channel.drain() == 0
        assert users.get_tier(FRIEND) == UserTier.FRIEND

    async def test_owner_tier_cannot_be_granted(self, channel, users):
        _drop(channel, "main", "tasks", {"type": "add_user", "userJid": STRANGER, "userName": "Sam", "tier": "owner"})
        assert await channel.drain() == 0
        assert users.get_tier(STRANGER) == UserTier.STRANGER

    async def test_owner_cannot_be_removed(self, channel, users):
        _drop(channel, "main", "tasks", {"type": "remove_user", "userJid": OWNER})
        assert await channel.drain() == 0
        assert users.get_tier(OWNER) == UserTier.OWNER

    async def test_family_cannot_add_user(self, channel, users):
        _drop(channel, "family", "tasks", {"type": "add_user", "userJid": STRANGER, "userName": "Sam", "tier": "family"})
        assert await channel.drain() == 0
        assert users.get_tier(STRANGER) == UserTier.STRANGER

    async def test_refresh_groups_owner_only(self, channel, refresh):
        _drop(channel, "friends", "tasks", {"type": "refresh_groups"})
        assert await channel.drain() == 0
        refresh.assert_not_called()

        _drop(channel, "main", "tasks", {"type": "refresh_groups"})
        assert await channel.drain() == 1
        refresh.assert_awaited_once_with("main")


class TestResponses:
    async def test_list_users_for_family(self, channel):
        _drop(channel, "family", "tasks", {"type": "list_users", "requestId": "req-1"})
        assert await channel.drain() == 1
        data = json.loads((channel.ipc_dir / "family" / "responses" / "req-1.json").read_text())
        assert data["owner"]["jid"] == OWNER
        assert [u["jid"] for u in data["family"]] == [FAMILY]
        assert [u["jid"] for u in data["friend"]] == [FRIEND]

    async def test_list_users_denied_for_friend(self, channel):
        _drop(channel, "friends", "tasks", {"type": "list_users"})
        assert await channel.drain() == 0
        assert not (channel.ipc_dir / "friends" / "responses" / "list_users.json").exists()

    async def test_get_my_tier(self, channel):
        _drop(channel, "friends", "tasks", {"type": "get_my_tier"})
        assert await channel.drain() == 1
        data = json.loads((channel.ipc_dir / "friends" / "responses" / "get_my_tier.json").read_text())
        assert data["tier"] == "friend"
        assert data["isMain"] is False

    async def test_request_id_cannot_escape(self, channel):
        _drop(channel, "main", "tasks", {"type": "get_my_tier", "requestId": "../../evil"})
        assert await channel.drain() == 0
        assert _quarantined(channel, "main")


class TestNamespaceIdentity:
    async def test_unregistered_namespace_is_friend(self, channel):
        assert channel.source_for("ghost").tier == ContextTier.FRIEND

    async def test_payload_cannot_claim_identity(self, channel, scheduler, store):
        task_id = await _make_task(scheduler, "main", MAIN_JID)
        _drop(
            channel,
            "friends",
            "tasks",
            {"type": "cancel_task", "taskId": task_id, "groupFolder": "main", "isMain": True},
        )
        assert await channel.drain() == 0
        assert await store.get_task(task_id) is not None

    async def test_errors_dir_not_drained(self, channel):
        _drop(channel, "errors", "tasks", {"type": "get_my_tier"})
        assert "errors" not in channel.namespaces()
