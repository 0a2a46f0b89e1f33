"""Warden Host — wires the trust core, sandbox, and loops together.

Startup sequence:
1. Create data, groups, store and command-channel directories
2. Initialize SQLite store, load JSON state (groups, sessions, watermarks)
3. Start the transport adapter and sync the group directory
4. Start the three polling loops (intake, command drain, scheduler) plus
   the daily group directory sync

Shutdown stops the loops first, then closes the transport and the store.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any

from warden.authorization import PolicyEngine, StrangerCache, StrangerGate
from warden.command_channel import CommandChannel
from warden.config import WardenConfig
from warden.groups import GroupRegistry
from warden.intake import MessageIntake, is_group_chat
from warden.models import (
    ContainerInput,
    ContainerOutput,
    ContextMode,
    ContextTier,
    NewMessage,
    RegisteredGroup,
    ScheduledTask,
)
from warden.mount_security import MountSecurityValidator
from warden.sandbox import (
    AvailableGroup,
    ContainerRunner,
    write_groups_snapshot,
    write_tasks_snapshot,
)
from warden.sandbox.runner import SpawnFn
from warden.scheduler import TaskScheduler
from warden.state import RouterState, SessionStore
from warden.store import MessageStore
from warden.supervisor import PollingLoop
from warden.transport import BridgeTransport, Transport
from warden.users import UserRegistry

logger = logging.getLogger(__name__)


class WardenHost:
    """Owns every long-lived component and their lifecycle."""

    def __init__(
        self,
        config: WardenConfig,
        *,
        transport: Transport | None = None,
        spawn: SpawnFn | None = None,
    ):
        self.config = config
        data_dir = config.data_dir
        runtime = config.runtime

        self.users = UserRegistry(data_dir / "users.json", cache_ttl=runtime.registry_cache_ttl)
        self.policy = PolicyEngine(self.users)
        self.stranger_gate = StrangerGate(self.policy, StrangerCache(ttl=runtime.stranger_cache_ttl))
        # Any registry change may turn a stranger into a member or back.
        self.users.on_change(self._forget_stranger_decisions)

        self.groups = GroupRegistry(
            data_dir / "registered_groups.json", config.groups_dir, runtime.main_group_folder
        )
        self.sessions = SessionStore(data_dir / "sessions.json")
        self.router_state = RouterState(data_dir / "router_state.json")
        self.store = MessageStore(str(config.store_dir / "messages.db"))

        self.validator = MountSecurityValidator(config.mount_allowlist_path)
        if spawn is not None:
            self.runner = ContainerRunner(config, self.validator, spawn=spawn)
        else:
            self.runner = ContainerRunner(config, self.validator)

        self._owns_transport = transport is None
        self.transport: Transport = transport or BridgeTransport(
            config.bridge.url, token=config.bridge.token, timeout=config.bridge.timeout
        )

        self.scheduler = TaskScheduler(
            self.store, runtime.timezone, execute=self._execute_task, send=self.send_message
        )
        self.intake = MessageIntake(
            groups=self.groups,
            store=self.store,
            state=self.router_state,
            policy=self.policy,
            stranger_gate=self.stranger_gate,
            users=self.users,
            transport=self.transport,
            trigger=config.assistant.trigger_regex,
            run_agent=self.agent_reply,
        )
        self.commands = CommandChannel(
            config.ipc_dir,
            groups=self.groups,
            users=self.users,
            store=self.store,
            scheduler=self.scheduler,
            transport=self.transport,
            refresh_groups=self.refresh_groups,
        )

        self.loops = {
            "intake": PollingLoop("message-intake", runtime.poll_interval, self.intake.poll),
            "commands": PollingLoop("command-channel", runtime.ipc_poll_interval, self.commands.drain),
            "scheduler": PollingLoop("scheduler", runtime.scheduler_interval, self.scheduler.tick),
            "group_sync": PollingLoop(
                "group-sync", runtime.group_sync_interval, self.sync_group_metadata
            ),
        }
        self._started = False
        self._background: set[asyncio.Task] = set()

    # ── Lifecycle ────────────────────────────────────────────────────────

    async def start(self) -> None:
        logger.info("Warden host starting (project=%s)", self.config.project_root)
        for path in (
            self.config.data_dir,
            self.config.groups_dir,
            self.config.store_dir,
            self.config.ipc_dir,
        ):
            path.mkdir(parents=True, exist_ok=True)

        await self.store.initialize()
        self.groups.load()
        self.sessions.load()
        self.router_state.load()
        await self.restore_stranger_decisions()

        if self._owns_transport:
            await self.transport.start()

        for loop in self.loops.values():
            await loop.start()
        self._started = True
        logger.info("Warden host started (%d registered groups)", len(self.groups.jids()))

    async def stop(self) -> None:
        logger.info("Warden host shutting down")
        for loop in self.loops.values():
            await loop.stop()
        if self._owns_transport:
            await self.transport.close()
        await self.store.close()
        self._started = False
        logger.info("Warden host stopped")

    def status(self) -> dict[str, Any]:
        return {
            "started": self._started,
            "loops": {
                name: {
                    "running": loop.running,
                    "ticks": loop.tick_count,
                    "last_tick_at": loop.last_tick_at.isoformat() if loop.last_tick_at else None,
                }
                for name, loop in self.loops.items()
            },
            "registered_groups": len(self.groups.jids()),
            "owner_configured": self.users.owner is not None,
        }

    # ── Inbound ──────────────────────────────────────────────────────────

    async def ingest(self, msg: NewMessage, chat_name: str | None = None) -> bool:
        """Record an inbound message. Content is kept only for registered chats."""
        await self.store.store_chat_metadata(msg.chat_jid, msg.timestamp, chat_name)
        if self.groups.get(msg.chat_jid) is None:
            return False
        await self.store.store_message(msg)
        return True

    async def send_message(self, chat_jid: str, text: str) -> None:
        await self.transport.send(chat_jid, text)

    # ── Agent runs ───────────────────────────────────────────────────────

    def default_tier(self, group: RegisteredGroup) -> ContextTier:
        if group.context_tier:
            return group.context_tier
        return ContextTier.OWNER if self.groups.is_main(group) else ContextTier.FRIEND

    async def run_agent(
        self,
        group: RegisteredGroup,
        prompt: str,
        chat_jid: str,
        tier: ContextTier,
        *,
        use_group_session: bool = True,
        is_scheduled_task: bool = False,
    ) -> ContainerOutput:
        is_main = self.groups.is_main(group)

        # Session read, run and session write share the group lock so a
        # queued run sees the session the previous run produced.
        async with self.runner.lock_for(group.folder):
            write_tasks_snapshot(
                self.config.ipc_dir, group.folder, is_main, await self.store.get_all_tasks()
            )
            write_groups_snapshot(
                self.config.ipc_dir, group.folder, is_main, await self.available_groups()
            )

            session_id = self.sessions.get(group.folder) if use_group_session else None
            output = await self.runner.run_locked(
                group,
                ContainerInput(
                    prompt=prompt,
                    session_id=session_id,
                    group_folder=group.folder,
                    chat_jid=chat_jid,
                    is_main=is_main,
                    is_scheduled_task=is_scheduled_task,
                    effective_tier=tier,
                ),
            )
            if output.new_session_id and use_group_session:
                self.sessions.set(group.folder, output.new_session_id)
        if output.status == "error":
            logger.error("Agent run for %s failed: %s", group.name, output.error)
        return output

    async def agent_reply(
        self, group: RegisteredGroup, prompt: str, chat_jid: str, tier: ContextTier
    ) -> str | None:
        output = await self.run_agent(group, prompt, chat_jid, tier)
        return output.result if output.status == "success" else None

    async def _execute_task(self, task: ScheduledTask) -> tuple[str, str | None, str | None]:
        matches = self.groups.by_folder(task.group_folder)
        if not matches:
            return "error", None, f"Group not found: {task.group_folder}"
        _, group = matches[0]
        output = await self.run_agent(
            group,
            task.prompt,
            task.chat_jid,
            self.default_tier(group),
            use_group_session=task.context_mode == ContextMode.GROUP,
            is_scheduled_task=True,
        )
        return output.status, output.result, output.error

    # ── Stranger decisions ───────────────────────────────────────────────

    async def restore_stranger_decisions(self) -> int:
        """Seed the stranger gate from positive decisions persisted before a restart."""
        now = datetime.now(timezone.utc)
        restored = 0
        for jid in self.groups.jids():
            row = await self.store.get_stranger_cache(jid)
            if row is None or not row[0]:
                continue
            _, last_checked, snapshot = row
            age = (now - datetime.fromisoformat(last_checked)).total_seconds()
            if self.stranger_gate.restore(jid, snapshot, age):
                restored += 1
        if restored:
            logger.info("Restored %d stranger decision(s) from the store", restored)
        return restored

    def _forget_stranger_decisions(self) -> None:
        self.stranger_gate.invalidate()
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        task = loop.create_task(self._clear_stranger_rows(), name="clear-stranger-cache")
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _clear_stranger_rows(self) -> None:
        try:
            await self.store.clear_stranger_cache()
        except Exception:
            logger.exception("Failed to clear persisted stranger decisions")

    # ── Group directory ──────────────────────────────────────────────────

    async def sync_group_metadata(self, force: bool = False) -> int:
        """Copy group names from the transport into the chats table."""
        if not force:
            last = await self.store.get_last_group_sync()
            if last:
                elapsed = datetime.now(timezone.utc) - datetime.fromisoformat(last)
                if elapsed.total_seconds() < self.config.runtime.group_sync_interval:
                    logger.debug("Skipping group sync, last synced %s", last)
                    return 0

        try:
            groups = await self.transport.list_groups()
        except Exception:
            logger.exception("Failed to sync group metadata")
            return 0

        count = 0
        for meta in groups:
            if meta.subject:
                await self.store.update_chat_name(meta.jid, meta.subject)
                count += 1
        await self.store.set_last_group_sync()
        logger.info("Group metadata synced (%d groups)", count)
        return count

    async def available_groups(self) -> list[AvailableGroup]:
        registered = set(self.groups.jids())
        return [
            AvailableGroup(
                jid=chat.jid,
                name=chat.name,
                last_activity=chat.last_message_time,
                is_registered=chat.jid in registered,
            )
            for chat in await self.store.get_all_chats()
            if is_group_chat(chat.jid)
        ]

    async def refresh_groups(self, source_folder: str) -> None:
        await self.sync_group_metadata(force=True)
        matches = self.groups.by_folder(source_folder)
        is_main = bool(matches) and self.groups.is_main(matches[0][1])
        write_groups_snapshot(
            self.config.ipc_dir, source_folder, is_main, await self.available_groups()
        )


async def check_container_runtime(runtime: str) -> str | None:
    """Return None if the runtime CLI answers, else an operator-facing error."""
    try:
        proc = await asyncio.create_subprocess_exec(
            runtime,
            "--version",
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError:
        return f"Container runtime {runtime!r} not found on PATH. Install it or set sandbox.runtime."
    except OSError as exc:
        return f"Container runtime {runtime!r} could not be started: {exc}"
    try:
        _, stderr = await asyncio.wait_for(proc.communicate(), timeout=10)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        return f"Container runtime {runtime!r} did not respond within 10s."
    if proc.returncode != 0:
        return (
            f"Container runtime {runtime!r} failed (exit {proc.returncode}): "
            f"{stderr.decode(errors='replace').strip()[:200]}"
        )
    return None
