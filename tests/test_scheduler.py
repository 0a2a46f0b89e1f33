"""Tests for schedule parsing and the task scheduler tick."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from warden.models import ContextMode, ScheduledTask, ScheduleType, TaskStatus
from warden.scheduler import ScheduleError, TaskScheduler, compute_next_run, to_iso

WED_NOON = datetime(2024, 1, 3, 12, 0, tzinfo=timezone.utc)
MON_9 = datetime(2024, 1, 8, 9, 0, tzinfo=timezone.utc)


class Clock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


class TestComputeNextRun:
    def test_cron_weekly(self):
        assert compute_next_run("cron", "0 9 * * 1", "UTC", WED_NOON) == MON_9

    def test_cron_in_local_time_zone(self):
        # 07:00 in New York; next 09:00 local is 14:00 UTC.
        result = compute_next_run("cron", "0 9 * * *", "America/New_York", WED_NOON)
        assert result == datetime(2024, 1, 3, 14, 0, tzinfo=timezone.utc)

    def test_interval(self):
        assert compute_next_run("interval", "3600000", "UTC", WED_NOON) == WED_NOON + timedelta(
            hours=1
        )

    def test_once_with_offset(self):
        result = compute_next_run("once", "2024-02-01T10:00:00Z", "UTC", WED_NOON)
        assert result == datetime(2024, 2, 1, 10, 0, tzinfo=timezone.utc)

    def test_once_naive_is_local(self):
        result = compute_next_run("once", "2024-02-01T10:00:00", "Europe/Berlin", WED_NOON)
        assert result == datetime(2024, 2, 1, 9, 0, tzinfo=timezone.utc)

    @pytest.mark.parametrize(
        "kind,value",
        [
            ("cron", "not a cron"),
            ("cron", "61 * * * *"),
            ("interval", "soon"),
            ("interval", "0"),
            ("interval", "-5"),
            ("once", "next tuesday"),
            ("weekly", "1"),
        ],
    )
    def test_invalid(self, kind, value):
        with pytest.raises(ScheduleError):
            compute_next_run(kind, value, "UTC", WED_NOON)


@pytest.fixture
def executed():
    return []


@pytest.fixture
def sent():
    return []


def _scheduler(store, clock, executed, sent, outcome=("success", "done", None)):
    async def execute(task: ScheduledTask):
        executed.append(task.id)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    async def send(chat_jid: str, text: str):
        sent.append((chat_jid, text))

    return TaskScheduler(store, "UTC", execute=execute, send=send, clock=clock)


class TestTaskScheduler:
    async def test_create_validates(self, store):
        scheduler = _scheduler(store, Clock(WED_NOON), [], [])
        with pytest.raises(ScheduleError):
            await scheduler.create_task(
                group_folder="main",
                chat_jid="c",
                prompt="p",
                schedule_type="cron",
                schedule_value="bogus",
            )
        assert await store.get_all_tasks() == []

    async def test_create_defaults(self, store):
        scheduler = _scheduler(store, Clock(WED_NOON), [], [])
        task = await scheduler.create_task(
            group_folder="main",
            chat_jid="c",
            prompt="p",
            schedule_type="cron",
            schedule_value="0 9 * * 1",
        )
        assert task.id.startswith("task-")
        assert task.context_mode == ContextMode.ISOLATED
        assert task.status == TaskStatus.ACTIVE
        assert task.next_run == to_iso(MON_9)

    async def test_cron_runs_and_reschedules(self, store, executed, sent):
        clock = Clock(WED_NOON)
        scheduler = _scheduler(store, clock, executed, sent)
        task = await scheduler.create_task(
            group_folder="main",
            chat_jid="owner@s.whatsapp.net",
            prompt="weekly summary",
            schedule_type=ScheduleType.CRON,
            schedule_value="0 9 * * 1",
        )

        assert await scheduler.tick() == 0
        clock.now = MON_9 + timedelta(seconds=30)
        assert await scheduler.tick() == 1

        updated = await store.get_task(task.id)
        assert updated.next_run == to_iso(MON_9 + timedelta(days=7))
        assert updated.status == TaskStatus.ACTIVE
        assert updated.last_result == "done"
        assert executed == [task.id]
        assert sent == [("owner@s.whatsapp.net", "done")]

        logs = await store.get_task_run_logs(task.id)
        assert len(logs) == 1
        assert logs[0].status == "success"

    async def test_once_completes(self, store, executed, sent):
        clock = Clock(WED_NOON)
        scheduler = _scheduler(store, clock, executed, sent)
        task = await scheduler.create_task(
            group_folder="main",
            chat_jid="c",
            prompt="remind me",
            schedule_type="once",
            schedule_value="2024-01-03T12:30:00Z",
        )
        clock.now = WED_NOON + timedelta(hours=1)
        await scheduler.tick()
        await scheduler.tick()

        updated = await store.get_task(task.id)
        assert updated.status == TaskStatus.COMPLETED
        assert updated.next_run is None
        assert executed == [task.id]

    async def test_interval_advances_from_run_time(self, store, executed, sent):
        clock = Clock(WED_NOON)
        scheduler = _scheduler(store, clock, executed, sent)
        task = await scheduler.create_task(
            group_folder="main",
            chat_jid="c",
            prompt="ping",
            schedule_type="interval",
            schedule_value="60000",
        )
        clock.now = WED_NOON + timedelta(minutes=5)
        await scheduler.tick()
        updated = await store.get_task(task.id)
        assert updated.next_run == to_iso(WED_NOON + timedelta(minutes=6))

    async def test_paused_task_is_skipped(self, store, executed, sent):
        clock = Clock(WED_NOON)
        scheduler = _scheduler(store, clock, executed, sent)
        task = await scheduler.create_task(
            group_folder="main",
            chat_jid="c",
            prompt="ping",
            schedule_type="interval",
            schedule_value="60000",
        )
        await store.update_task(task.id, status=TaskStatus.PAUSED)
        clock.now = WED_NOON + timedelta(hours=1)
        assert await scheduler.tick() == 0
        assert executed == []

    async def test_error_is_logged_not_sent(self, store, executed, sent):
        clock = Clock(WED_NOON)
        scheduler = _scheduler(store, clock, executed, sent, outcome=RuntimeError("sandbox down"))
        task = await scheduler.create_task(
            group_folder="main",
            chat_jid="c",
            prompt="ping",
            schedule_type="interval",
            schedule_value="60000",
        )
        clock.now = WED_NOON + timedelta(minutes=2)
        await scheduler.tick()

        updated = await store.get_task(task.id)
        assert updated.last_result == "Error: sandbox down"
        assert updated.status == TaskStatus.ACTIVE
        assert sent == []
        logs = await store.get_task_run_logs(task.id)
        assert logs[0].status == "error"
        assert logs[0].error == "sandbox down"
