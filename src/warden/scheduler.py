"""Task scheduler — cron / interval / one-shot agent runs.

Schedules are validated when a task is created (``compute_next_run``
raises ``ScheduleError``), so the tick only ever sees parsable values.
``next_run`` is stored as a UTC ISO-8601 string; cron expressions are
evaluated in the deployment's configured time zone.
"""

from __future__ import annotations

import logging
import secrets
import time
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Awaitable, Callable
from zoneinfo import ZoneInfo

from croniter import croniter

from warden.models import ContextMode, ScheduledTask, ScheduleType, TaskRunLog, TaskStatus

if TYPE_CHECKING:
    from warden.store import MessageStore

logger = logging.getLogger(__name__)


class ScheduleError(ValueError):
    """A schedule value could not be parsed for its kind."""


def to_iso(dt: datetime) -> str:
    """Stored timestamp format: timezone-aware, UTC."""
    return dt.astimezone(timezone.utc).isoformat()


def new_task_id() -> str:
    return f"task-{int(time.time() * 1000)}-{secrets.token_hex(3)}"


def compute_next_run(
    kind: ScheduleType | str,
    value: str,
    tz: str,
    now: datetime | None = None,
) -> datetime | None:
    """Next fire time after ``now`` for a schedule.

    - cron: next match of the expression, evaluated in ``tz``
    - interval: ``now`` plus ``value`` milliseconds
    - once: the ISO timestamp in ``value`` (naive values are read in ``tz``)

    Raises:
        ScheduleError: if ``value`` is not valid for ``kind``.
    """
    try:
        kind = ScheduleType(kind)
    except ValueError as exc:
        raise ScheduleError(f"Unknown schedule type: {kind!r}") from exc

    zone = ZoneInfo(tz)
    base = now or datetime.now(timezone.utc)
    if base.tzinfo is None:
        base = base.replace(tzinfo=timezone.utc)

    if kind == ScheduleType.CRON:
        if not croniter.is_valid(value):
            raise ScheduleError(f"Invalid cron expression: {value!r}")
        next_dt = croniter(value, base.astimezone(zone)).get_next(datetime)
        if next_dt.tzinfo is None:
            next_dt = next_dt.replace(tzinfo=zone)
        return next_dt.astimezone(timezone.utc)

    if kind == ScheduleType.INTERVAL:
        try:
            ms = int(value)
        except ValueError as exc:
            raise ScheduleError(f"Invalid interval: {value!r}") from exc
        if ms <= 0:
            raise ScheduleError(f"Interval must be positive: {value!r}")
        return base + timedelta(milliseconds=ms)

    try:
        scheduled = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError as exc:
        raise ScheduleError(f"Invalid timestamp: {value!r}") from exc
    if scheduled.tzinfo is None:
        scheduled = scheduled.replace(tzinfo=zone)
    return scheduled.astimezone(timezone.utc)


def next_run_after_fire(task: ScheduledTask, tz: str, now: datetime) -> datetime | None:
    """Reschedule after a run; one-shot tasks have no next run."""
    if task.schedule_type == ScheduleType.ONCE:
        return None
    return compute_next_run(task.schedule_type, task.schedule_value, tz, now)


# task -> (status, result, error)
TaskExecutor = Callable[[ScheduledTask], Awaitable[tuple[str, str | None, str | None]]]
ResultSender = Callable[[str, str], Awaitable[None]]


class TaskScheduler:
    """Runs due tasks on each tick and keeps their bookkeeping consistent."""

    def __init__(
        self,
        store: MessageStore,
        timezone_name: str,
        execute: TaskExecutor,
        send: ResultSender,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.store = store
        self.timezone = timezone_name
        self._execute = execute
        self._send = send
        self._clock = clock

    async def create_task(
        self,
        *,
        group_folder: str,
        chat_jid: str,
        prompt: str,
        schedule_type: ScheduleType | str,
        schedule_value: str,
        context_mode: ContextMode | str | None = None,
    ) -> ScheduledTask:
        """Validate the schedule and persist a new active task.

        Raises:
            ScheduleError: for an unparsable schedule; nothing is stored.
        """
        now = self._clock()
        next_run = compute_next_run(schedule_type, schedule_value, self.timezone, now)
        try:
            mode = ContextMode(context_mode) if context_mode else ContextMode.ISOLATED
        except ValueError:
            mode = ContextMode.ISOLATED
        task = ScheduledTask(
            id=new_task_id(),
            group_folder=group_folder,
            chat_jid=chat_jid,
            prompt=prompt,
            schedule_type=ScheduleType(schedule_type),
            schedule_value=schedule_value,
            context_mode=mode,
            next_run=to_iso(next_run) if next_run else None,
            created_at=to_iso(now),
        )
        return await self.store.create_task(task)

    async def tick(self) -> int:
        """Run every due task once. Returns how many ran."""
        now = self._clock()
        due = await self.store.get_due_tasks(to_iso(now))
        if due:
            logger.info("Scheduler: %d due task(s)", len(due))
        for task in due:
            # Re-read: a command may have paused or cancelled it since the query.
            current = await self.store.get_task(task.id)
            if current is None or current.status != TaskStatus.ACTIVE:
                continue
            await self.run_task(current)
        return len(due)

    async def run_task(self, task: ScheduledTask) -> TaskRunLog:
        started = time.monotonic()
        run_at = self._clock()
        logger.info("Running scheduled task %s for group %s", task.id, task.group_folder)

        try:
            status, result, error = await self._execute(task)
        except Exception as exc:
            logger.exception("Scheduled task %s raised", task.id)
            status, result, error = "error", None, str(exc)

        duration_ms = int((time.monotonic() - started) * 1000)
        log = TaskRunLog(
            task_id=task.id,
            run_at=to_iso(run_at),
            duration_ms=duration_ms,
            status=status,
            result=result,
            error=error,
        )
        await self.store.log_task_run(log)

        if status == "success" and result:
            try:
                await self._send(task.chat_jid, result)
            except Exception:
                logger.exception("Failed to deliver result of task %s", task.id)

        next_run = next_run_after_fire(task, self.timezone, self._clock())
        summary = (
            (result or "Completed")[:200] if status == "success" else f"Error: {error}"
        )
        await self.store.update_task_after_run(
            task.id, to_iso(next_run) if next_run else None, summary
        )
        logger.info(
            "Task %s finished in %dms (status=%s, next_run=%s)",
            task.id,
            duration_ms,
            status,
            to_iso(next_run) if next_run else None,
        )
        return log
