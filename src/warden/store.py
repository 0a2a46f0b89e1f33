"""Message Store — SQLite-backed chats, messages, tasks and participants.

Holds inbound message history for registered chats, the scheduled task
table with its append-only run log, the last-known participant set per
group, and a persisted copy of each group's stranger decision.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone

import aiosqlite

from warden.models import (
    ChatInfo,
    ContextMode,
    NewMessage,
    ScheduledTask,
    ScheduleType,
    TaskRunLog,
    TaskStatus,
)

logger = logging.getLogger(__name__)

# Pseudo-chat row that records when group names were last synced.
GROUP_SYNC_JID = "__group_sync__"

SCHEMA = """
CREATE TABLE IF NOT EXISTS chats (
    jid TEXT PRIMARY KEY,
    name TEXT,
    last_message_time TEXT
);

CREATE TABLE IF NOT EXISTS messages (
    id TEXT,
    chat_jid TEXT,
    sender TEXT,
    sender_name TEXT,
    content TEXT,
    timestamp TEXT,
    PRIMARY KEY (id, chat_jid),
    FOREIGN KEY (chat_jid) REFERENCES chats(jid)
);

CREATE TABLE IF NOT EXISTS scheduled_tasks (
    id TEXT PRIMARY KEY,
    group_folder TEXT NOT NULL,
    chat_jid TEXT NOT NULL,
    prompt TEXT NOT NULL,
    schedule_type TEXT NOT NULL,
    schedule_value TEXT NOT NULL,
    context_mode TEXT NOT NULL DEFAULT 'isolated',
    next_run TEXT,
    last_run TEXT,
    last_result TEXT,
    status TEXT NOT NULL DEFAULT 'active',
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS task_run_logs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    task_id TEXT NOT NULL,
    run_at TEXT NOT NULL,
    duration_ms INTEGER NOT NULL,
    status TEXT NOT NULL,
    result TEXT,
    error TEXT,
    FOREIGN KEY (task_id) REFERENCES scheduled_tasks(id)
);

CREATE TABLE IF NOT EXISTS group_participants (
    group_jid TEXT NOT NULL,
    user_jid TEXT NOT NULL,
    joined_at TEXT NOT NULL,
    is_active INTEGER NOT NULL DEFAULT 1,
    PRIMARY KEY (group_jid, user_jid)
);

CREATE TABLE IF NOT EXISTS stranger_detection_cache (
    group_jid TEXT PRIMARY KEY,
    has_strangers INTEGER NOT NULL,
    last_checked TEXT NOT NULL,
    participant_snapshot TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_messages_timestamp ON messages(timestamp);
CREATE INDEX IF NOT EXISTS idx_tasks_next_run ON scheduled_tasks(next_run);
CREATE INDEX IF NOT EXISTS idx_tasks_status ON scheduled_tasks(status);
CREATE INDEX IF NOT EXISTS idx_task_run_logs ON task_run_logs(task_id, run_at);
CREATE INDEX IF NOT EXISTS idx_group_participants_group ON group_participants(group_jid);
"""

_TASK_MUTABLE_FIELDS = frozenset(
    {"prompt", "schedule_type", "schedule_value", "context_mode", "next_run", "status"}
)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class MessageStore:
    """SQLite-backed store with async access."""

    def __init__(self, db_path: str):
        self.db_path = db_path
        self._db: aiosqlite.Connection | None = None

    async def initialize(self) -> None:
        """Open database and create tables."""
        self._db = await aiosqlite.connect(self.db_path)
        self._db.row_factory = aiosqlite.Row
        await self._db.execute("PRAGMA journal_mode=WAL")
        await self._db.executescript(SCHEMA)
        await self._db.commit()
        logger.info("Message store initialized: %s", self.db_path)

    async def close(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None

    @property
    def db(self) -> aiosqlite.Connection:
        if self._db is None:
            raise RuntimeError("Store not initialized — call initialize() first")
        return self._db

    # ── Chats ────────────────────────────────────────────────────────────

    async def store_chat_metadata(
        self, chat_jid: str, timestamp: str, name: str | None = None
    ) -> None:
        """Upsert a chat row; ``last_message_time`` only ever moves forward."""
        if name:
            await self.db.execute(
                """INSERT INTO chats (jid, name, last_message_time) VALUES (?, ?, ?)
                   ON CONFLICT(jid) DO UPDATE SET
                     name = excluded.name,
                     last_message_time = MAX(last_message_time, excluded.last_message_time)""",
                (chat_jid, name, timestamp),
            )
        else:
            await self.db.execute(
                """INSERT INTO chats (jid, name, last_message_time) VALUES (?, ?, ?)
                   ON CONFLICT(jid) DO UPDATE SET
                     last_message_time = MAX(last_message_time, excluded.last_message_time)""",
                (chat_jid, chat_jid, timestamp),
            )
        await self.db.commit()

    async def update_chat_name(self, chat_jid: str, name: str) -> None:
        """Set a chat's name without touching an existing activity timestamp."""
        await self.db.execute(
            """INSERT INTO chats (jid, name, last_message_time) VALUES (?, ?, ?)
               ON CONFLICT(jid) DO UPDATE SET name = excluded.name""",
            (chat_jid, name, _now()),
        )
        await self.db.commit()

    async def get_all_chats(self) -> list[ChatInfo]:
        """Known chats, most recent activity first (sync marker excluded)."""
        cursor = await self.db.execute(
            "SELECT jid, name, last_message_time FROM chats WHERE jid != ? "
            "ORDER BY last_message_time DESC",
            (GROUP_SYNC_JID,),
        )
        rows = await cursor.fetchall()
        return [
            ChatInfo(jid=r["jid"], name=r["name"] or r["jid"], last_message_time=r["last_message_time"] or "")
            for r in rows
        ]

    async def get_last_group_sync(self) -> str | None:
        cursor = await self.db.execute(
            "SELECT last_message_time FROM chats WHERE jid = ?", (GROUP_SYNC_JID,)
        )
        row = await cursor.fetchone()
        return row["last_message_time"] if row else None

    async def set_last_group_sync(self) -> None:
        await self.db.execute(
            "INSERT OR REPLACE INTO chats (jid, name, last_message_time) VALUES (?, ?, ?)",
            (GROUP_SYNC_JID, GROUP_SYNC_JID, _now()),
        )
        await self.db.commit()

    # ── Messages ─────────────────────────────────────────────────────────

    async def store_message(self, msg: NewMessage) -> None:
        await self.db.execute(
            """INSERT OR REPLACE INTO messages
               (id, chat_jid, sender, sender_name, content, timestamp)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (msg.id, msg.chat_jid, msg.sender, msg.sender_name, msg.content, msg.timestamp),
        )
        await self.db.commit()

    async def get_new_messages(
        self, jids: list[str], last_timestamp: str
    ) -> tuple[list[NewMessage], str]:
        """Messages after ``last_timestamp`` across ``jids``, oldest first, plus the max timestamp seen."""
        if not jids:
            return [], last_timestamp
        placeholders = ",".join("?" for _ in jids)
        cursor = await self.db.execute(
            f"""SELECT id, chat_jid, sender, sender_name, content, timestamp
                FROM messages
                WHERE timestamp > ? AND chat_jid IN ({placeholders})
                ORDER BY timestamp""",
            (last_timestamp, *jids),
        )
        rows = await cursor.fetchall()
        messages = [NewMessage(**dict(r)) for r in rows]
        newest = max([last_timestamp, *(m.timestamp for m in messages)])
        return messages, newest

    async def get_messages_since(self, chat_jid: str, since: str) -> list[NewMessage]:
        cursor = await self.db.execute(
            """SELECT id, chat_jid, sender, sender_name, content, timestamp
               FROM messages
               WHERE chat_jid = ? AND timestamp > ?
               ORDER BY timestamp""",
            (chat_jid, since),
        )
        rows = await cursor.fetchall()
        return [NewMessage(**dict(r)) for r in rows]

    async def get_sender_names(self, chat_jid: str) -> dict[str, str]:
        """Latest display name seen for each sender in a chat."""
        cursor = await self.db.execute(
            """SELECT sender, sender_name FROM messages
               WHERE chat_jid = ? ORDER BY timestamp""",
            (chat_jid,),
        )
        return {r["sender"]: r["sender_name"] for r in await cursor.fetchall() if r["sender_name"]}

    # ── Scheduled tasks ──────────────────────────────────────────────────

    async def create_task(self, task: ScheduledTask) -> ScheduledTask:
        await self.db.execute(
            """INSERT INTO scheduled_tasks
               (id, group_folder, chat_jid, prompt, schedule_type, schedule_value,
                context_mode, next_run, status, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                task.id,
                task.group_folder,
                task.chat_jid,
                task.prompt,
                task.schedule_type.value,
                task.schedule_value,
                task.context_mode.value,
                task.next_run,
                task.status.value,
                task.created_at,
            ),
        )
        await self.db.commit()
        logger.info(
            "Created task %s (group=%s, %s=%s)",
            task.id,
            task.group_folder,
            task.schedule_type.value,
            task.schedule_value,
        )
        return task

    async def get_task(self, task_id: str) -> ScheduledTask | None:
        cursor = await self.db.execute("SELECT * FROM scheduled_tasks WHERE id = ?", (task_id,))
        row = await cursor.fetchone()
        return self._row_to_task(row) if row else None

    async def get_tasks_for_group(self, group_folder: str) -> list[ScheduledTask]:
        cursor = await self.db.execute(
            "SELECT * FROM scheduled_tasks WHERE group_folder = ? ORDER BY created_at DESC",
            (group_folder,),
        )
        return [self._row_to_task(r) for r in await cursor.fetchall()]

    async def get_all_tasks(self) -> list[ScheduledTask]:
        cursor = await self.db.execute("SELECT * FROM scheduled_tasks ORDER BY created_at DESC")
        return [self._row_to_task(r) for r in await cursor.fetchall()]

    async def update_task(self, task_id: str, **fields: object) -> None:
        """Update selected columns of a task (prompt, schedule, status, next_run...)."""
        unknown = set(fields) - _TASK_MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update task fields: {', '.join(sorted(unknown))}")
        if not fields:
            return
        columns = ", ".join(f"{name} = ?" for name in fields)
        values = [v.value if hasattr(v, "value") else v for v in fields.values()]
        await self.db.execute(
            f"UPDATE scheduled_tasks SET {columns} WHERE id = ?", (*values, task_id)
        )
        await self.db.commit()

    async def delete_task(self, task_id: str) -> None:
        """Delete a task and its run history."""
        await self.db.execute("DELETE FROM task_run_logs WHERE task_id = ?", (task_id,))
        await self.db.execute("DELETE FROM scheduled_tasks WHERE id = ?", (task_id,))
        await self.db.commit()
        logger.info("Deleted task %s", task_id)

    async def get_due_tasks(self, now: str | None = None) -> list[ScheduledTask]:
        """Active tasks whose next_run is at or before ``now``, earliest first."""
        cursor = await self.db.execute(
            """SELECT * FROM scheduled_tasks
               WHERE status = 'active' AND next_run IS NOT NULL AND next_run <= ?
               ORDER BY next_run""",
            (now or _now(),),
        )
        return [self._row_to_task(r) for r in await cursor.fetchall()]

    async def update_task_after_run(
        self, task_id: str, next_run: str | None, last_result: str
    ) -> None:
        """Record a run; a null ``next_run`` completes the task."""
        await self.db.execute(
            """UPDATE scheduled_tasks
               SET next_run = ?, last_run = ?, last_result = ?,
                   status = CASE WHEN ? IS NULL THEN 'completed' ELSE status END
               WHERE id = ?""",
            (next_run, _now(), last_result, next_run, task_id),
        )
        await self.db.commit()

    async def log_task_run(self, log: TaskRunLog) -> None:
        await self.db.execute(
            """INSERT INTO task_run_logs (task_id, run_at, duration_ms, status, result, error)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (log.task_id, log.run_at, log.duration_ms, log.status, log.result, log.error),
        )
        await self.db.commit()

    async def get_task_run_logs(self, task_id: str, limit: int = 10) -> list[TaskRunLog]:
        cursor = await self.db.execute(
            """SELECT task_id, run_at, duration_ms, status, result, error
               FROM task_run_logs WHERE task_id = ?
               ORDER BY run_at DESC LIMIT ?""",
            (task_id, limit),
        )
        return [TaskRunLog(**dict(r)) for r in await cursor.fetchall()]

    # ── Participants ─────────────────────────────────────────────────────

    async def get_group_participants(self, group_jid: str) -> list[str]:
        cursor = await self.db.execute(
            "SELECT user_jid FROM group_participants WHERE group_jid = ? AND is_active = 1",
            (group_jid,),
        )
        return [r["user_jid"] for r in await cursor.fetchall()]

    async def update_group_participants(
        self, group_jid: str, participants: list[str]
    ) -> tuple[set[str], set[str]]:
        """Replace the active participant set. Returns (joined, left) relative to before."""
        previous = set(await self.get_group_participants(group_jid))
        current = set(participants)
        now = _now()
        try:
            await self.db.execute(
                "UPDATE group_participants SET is_active = 0 WHERE group_jid = ?", (group_jid,)
            )
            await self.db.executemany(
                """INSERT INTO group_participants (group_jid, user_jid, joined_at, is_active)
                   VALUES (?, ?, ?, 1)
                   ON CONFLICT(group_jid, user_jid) DO UPDATE SET is_active = 1""",
                [(group_jid, jid, now) for jid in current],
            )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise
        joined, left = current - previous, previous - current
        if joined or left:
            logger.info(
                "Participants changed in %s: +%d -%d", group_jid, len(joined), len(left)
            )
        return joined, left

    # ── Stranger decisions ───────────────────────────────────────────────

    async def get_stranger_cache(self, group_jid: str) -> tuple[bool, str, list[str]] | None:
        """Persisted (has_strangers, last_checked, participant_snapshot) for a group."""
        cursor = await self.db.execute(
            """SELECT has_strangers, last_checked, participant_snapshot
               FROM stranger_detection_cache WHERE group_jid = ?""",
            (group_jid,),
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        return bool(row["has_strangers"]), row["last_checked"], json.loads(row["participant_snapshot"])

    async def set_stranger_cache(
        self, group_jid: str, has_strangers: bool, participants: list[str]
    ) -> None:
        await self.db.execute(
            """INSERT OR REPLACE INTO stranger_detection_cache
               (group_jid, has_strangers, last_checked, participant_snapshot)
               VALUES (?, ?, ?, ?)""",
            (group_jid, 1 if has_strangers else 0, _now(), json.dumps(sorted(participants))),
        )
        await self.db.commit()

    async def clear_stranger_cache(self, group_jid: str | None = None) -> None:
        if group_jid is None:
            await self.db.execute("DELETE FROM stranger_detection_cache")
        else:
            await self.db.execute(
                "DELETE FROM stranger_detection_cache WHERE group_jid = ?", (group_jid,)
            )
        await self.db.commit()

    # ── Helpers ──────────────────────────────────────────────────────────

    @staticmethod
    def _row_to_task(row: aiosqlite.Row) -> ScheduledTask:
        return ScheduledTask(
            id=row["id"],
            group_folder=row["group_folder"],
            chat_jid=row["chat_jid"],
            prompt=row["prompt"],
            schedule_type=ScheduleType(row["schedule_type"]),
            schedule_value=row["schedule_value"],
            context_mode=ContextMode(row["context_mode"] or "isolated"),
            next_run=row["next_run"],
            last_run=row["last_run"],
            last_result=row["last_result"],
            status=TaskStatus(row["status"]),
            created_at=row["created_at"],
        )
