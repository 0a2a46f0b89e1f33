"""Command channel — file-queue requests from sandboxes to the host.

Each registered group's sandbox sees only its own namespace directory::

    <ipc>/<folder>/messages/*.json   outbound chat messages
    <ipc>/<folder>/tasks/*.json      everything else
    <ipc>/<folder>/responses/        answers to read-style commands

Every file goes through one transaction: parse, authorize using the
directory name as the sender's identity, apply, then delete. Any failure
(unparsable payload, denied request, invalid target) moves the file to
``<ipc>/errors/<folder>-<file>``; quarantined files are never retried.
Identity or routing fields inside a payload are never trusted: targets
are always re-resolved from the group registry.
"""

from __future__ import annotations

import json
import logging
import os
import re
from pathlib import Path
from typing import TYPE_CHECKING, Annotated, Awaitable, Callable, Literal, Union, assert_never

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from warden.groups import GroupRegistrationError
from warden.models import ContainerConfig, ContextTier, RegisteredGroup, ScheduledTask, TaskStatus
from warden.scheduler import ScheduleError
from warden.users import RegistryError
from warden.utils import save_json

if TYPE_CHECKING:
    from warden.groups import GroupRegistry
    from warden.scheduler import TaskScheduler
    from warden.store import MessageStore
    from warden.transport import Transport
    from warden.users import UserRegistry

logger = logging.getLogger(__name__)

ERRORS_DIR = "errors"
MESSAGES_QUEUE = "messages"
TASKS_QUEUE = "tasks"
RESPONSES_DIR = "responses"

_REQUEST_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]{0,127}$")


# ── Command types ────────────────────────────────────────────────────────────


class _Command(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class SendMessage(_Command):
    type: Literal["message"]
    chat_jid: str = Field(alias="chatJid", min_length=1)
    text: str = Field(min_length=1)


class ScheduleTask(_Command):
    type: Literal["schedule_task"]
    prompt: str = Field(min_length=1)
    schedule_type: Literal["cron", "interval", "once"]
    schedule_value: str = Field(min_length=1)
    context_mode: Literal["group", "isolated"] | None = None
    group_folder: str | None = Field(default=None, alias="groupFolder")


class PauseTask(_Command):
    type: Literal["pause_task"]
    task_id: str = Field(alias="taskId")


class ResumeTask(_Command):
    type: Literal["resume_task"]
    task_id: str = Field(alias="taskId")


class CancelTask(_Command):
    type: Literal["cancel_task"]
    task_id: str = Field(alias="taskId")


class RefreshGroups(_Command):
    type: Literal["refresh_groups"]


class RegisterGroup(_Command):
    type: Literal["register_group"]
    jid: str = Field(min_length=1)
    name: str = Field(min_length=1)
    folder: str = Field(min_length=1)
    trigger: str = Field(min_length=1)
    context_tier: ContextTier | None = Field(default=None, alias="contextTier")
    container_config: ContainerConfig | None = Field(default=None, alias="containerConfig")


class AddUser(_Command):
    type: Literal["add_user"]
    user_jid: str = Field(alias="userJid", min_length=1)
    user_name: str = Field(alias="userName", min_length=1)
    tier: Literal["family", "friend"]


class RemoveUser(_Command):
    type: Literal["remove_user"]
    user_jid: str = Field(alias="userJid", min_length=1)


class ListUsers(_Command):
    type: Literal["list_users"]
    request_id: str | None = Field(default=None, alias="requestId")


class GetMyTier(_Command):
    type: Literal["get_my_tier"]
    request_id: str | None = Field(default=None, alias="requestId")


Command = Annotated[
    Union[
        SendMessage,
        ScheduleTask,
        PauseTask,
        ResumeTask,
        CancelTask,
        RefreshGroups,
        RegisterGroup,
        AddUser,
        RemoveUser,
        ListUsers,
        GetMyTier,
    ],
    Field(discriminator="type"),
]

command_adapter: TypeAdapter[Command] = TypeAdapter(Command)


# ── Errors ───────────────────────────────────────────────────────────────────


class CommandError(Exception):
    """A command file could not be applied; the file is quarantined."""


class CommandParseError(CommandError):
    pass


class CommandDenied(CommandError):
    """The source namespace is not allowed to do this."""


class CommandInvalid(CommandError):
    """The request names a missing target or carries invalid values."""


# ── Source identity ──────────────────────────────────────────────────────────


class SourceNamespace(BaseModel):
    """Who sent a command, derived only from the directory it was found in."""

    folder: str
    is_main: bool
    tier: ContextTier


def parse_command(raw: str | bytes) -> Command:
    try:
        return command_adapter.validate_python(json.loads(raw))
    except (ValueError, ValidationError) as exc:
        raise CommandParseError(str(exc)) from exc


class CommandChannel:
    """Drains every namespace's queues and applies authorized commands."""

    def __init__(
        self,
        ipc_dir: Path,
        *,
        groups: GroupRegistry,
        users: UserRegistry,
        store: MessageStore,
        scheduler: TaskScheduler,
        transport: Transport,
        refresh_groups: Callable[[str], Awaitable[None]],
    ):
        self.ipc_dir = ipc_dir
        self.groups = groups
        self.users = users
        self.store = store
        self.scheduler = scheduler
        self.transport = transport
        # Called with the source folder; re-syncs the directory and rewrites its snapshot.
        self._refresh_groups = refresh_groups

    # ── Draining ─────────────────────────────────────────────────────────

    def source_for(self, folder: str) -> SourceNamespace:
        matches = self.groups.by_folder(folder)
        tier = matches[0][1].context_tier if matches else None
        return SourceNamespace(
            folder=folder,
            is_main=folder == self.groups.main_folder,
            tier=tier or ContextTier.FRIEND,
        )

    def namespaces(self) -> list[str]:
        if not self.ipc_dir.is_dir():
            return []
        return sorted(
            p.name for p in self.ipc_dir.iterdir() if p.is_dir() and p.name != ERRORS_DIR
        )

    async def drain(self) -> int:
        """Process every pending command file once. Returns the number applied."""
        applied = 0
        for folder in self.namespaces():
            for queue in (MESSAGES_QUEUE, TASKS_QUEUE):
                queue_dir = self.ipc_dir / folder / queue
                if not queue_dir.is_dir():
                    continue
                for path in sorted(queue_dir.glob("*.json")):
                    if await self.process_file(path, folder, queue):
                        applied += 1
        return applied

    async def process_file(self, path: Path, folder: str, queue: str) -> bool:
        """Apply one command file. Returns True if applied, False if quarantined."""
        try:
            command = parse_command(path.read_bytes())
            if (queue == MESSAGES_QUEUE) != isinstance(command, SendMessage):
                raise CommandInvalid(f"{command.type} is not accepted on the {queue} queue")
            source = self.source_for(folder)
            await self.apply(command, source)
        except Exception as exc:
            if isinstance(exc, CommandDenied):
                logger.warning("Command %s from %s denied: %s", path.name, folder, exc)
            elif isinstance(exc, CommandError):
                logger.warning("Command %s from %s rejected: %s", path.name, folder, exc)
            else:
                logger.exception("Command %s from %s failed", path.name, folder)
            self.quarantine(path, folder)
            return False

        path.unlink(missing_ok=True)
        return True

    def quarantine(self, path: Path, folder: str) -> Path:
        errors_dir = self.ipc_dir / ERRORS_DIR
        errors_dir.mkdir(parents=True, exist_ok=True)
        target = errors_dir / f"{folder}-{path.name}"
        n = 1
        while target.exists():
            target = errors_dir / f"{folder}-{path.stem}.{n}{path.suffix}"
            n += 1
        os.replace(path, target)
        logger.info("Quarantined %s -> %s", path, target)
        return target

    # ── Dispatch ─────────────────────────────────────────────────────────

    async def apply(self, command: Command, source: SourceNamespace) -> None:
        match command:
            case SendMessage():
                await self._send_message(command, source)
            case ScheduleTask():
                await self._schedule_task(command, source)
            case PauseTask():
                await self._set_task_status(command.task_id, TaskStatus.PAUSED, source)
            case ResumeTask():
                await self._set_task_status(command.task_id, TaskStatus.ACTIVE, source)
            case CancelTask():
                await self._cancel_task(command, source)
            case RefreshGroups():
                self._require_owner(command, source)
                await self._refresh_groups(source.folder)
                logger.info("Group directory refreshed for %s", source.folder)
            case RegisterGroup():
                self._register_group(command, source)
            case AddUser():
                self._add_user(command, source)
            case RemoveUser():
                self._remove_user(command, source)
            case ListUsers():
                self._list_users(command, source)
            case GetMyTier():
                self._get_my_tier(command, source)
            case _:
                assert_never(command)

    # ── Authorization helpers ────────────────────────────────────────────

    @staticmethod
    def _require_owner(command: Command, source: SourceNamespace) -> None:
        if source.tier != ContextTier.OWNER:
            raise CommandDenied(f"{command.type} requires owner tier (source tier {source.tier.value})")

    @staticmethod
    def _may_manage_task(source: SourceNamespace, task_folder: str) -> bool:
        if source.tier == ContextTier.OWNER:
            return True
        if source.tier == ContextTier.FAMILY:
            return task_folder == source.folder
        return False

    # ── Handlers ─────────────────────────────────────────────────────────

    async def _send_message(self, command: SendMessage, source: SourceNamespace) -> None:
        target = self.groups.get(command.chat_jid)
        if not (source.is_main or (target is not None and target.folder == source.folder)):
            raise CommandDenied(f"{source.folder} may not send to {command.chat_jid}")
        await self.transport.send(command.chat_jid, command.text)
        logger.info("Command channel message sent to %s from %s", command.chat_jid, source.folder)

    async def _schedule_task(self, command: ScheduleTask, source: SourceNamespace) -> None:
        if source.tier == ContextTier.FRIEND:
            raise CommandDenied("friend tier cannot schedule tasks")

        target_folder = command.group_folder or source.folder
        if source.tier != ContextTier.OWNER and target_folder != source.folder:
            raise CommandDenied(f"{source.folder} may not schedule tasks for {target_folder}")

        target_jid = self.groups.jid_for_folder(target_folder)
        if target_jid is None:
            raise CommandInvalid(f"target group {target_folder!r} is not registered")

        try:
            task = await self.scheduler.create_task(
                group_folder=target_folder,
                chat_jid=target_jid,
                prompt=command.prompt,
                schedule_type=command.schedule_type,
                schedule_value=command.schedule_value,
                context_mode=command.context_mode,
            )
        except ScheduleError as exc:
            raise CommandInvalid(str(exc)) from exc
        logger.info(
            "Task %s scheduled by %s for %s (next_run=%s)",
            task.id,
            source.folder,
            target_folder,
            task.next_run,
        )

    async def _load_task_for(
        self, task_id: str, action: str, source: SourceNamespace
    ) -> ScheduledTask:
        task = await self.store.get_task(task_id)
        if task is None:
            raise CommandInvalid(f"task {task_id} does not exist")
        if not self._may_manage_task(source, task.group_folder):
            raise CommandDenied(
                f"{source.folder} ({source.tier.value}) may not {action} task {task_id} "
                f"owned by {task.group_folder}"
            )
        return task

    async def _set_task_status(
        self, task_id: str, status: TaskStatus, source: SourceNamespace
    ) -> None:
        action = "pause" if status == TaskStatus.PAUSED else "resume"
        task = await self._load_task_for(task_id, action, source)
        if task.status == TaskStatus.COMPLETED:
            raise CommandInvalid(f"task {task_id} is completed")
        await self.store.update_task(task_id, status=status)
        logger.info("Task %s %sd by %s", task_id, action, source.folder)

    async def _cancel_task(self, command: CancelTask, source: SourceNamespace) -> None:
        await self._load_task_for(command.task_id, "cancel", source)
        await self.store.delete_task(command.task_id)
        logger.info("Task %s cancelled by %s", command.task_id, source.folder)

    def _register_group(self, command: RegisterGroup, source: SourceNamespace) -> None:
        self._require_owner(command, source)
        # Extra mounts are host-configured only; a sandbox may set the timeout.
        container_config = None
        if command.container_config and command.container_config.timeout:
            container_config = ContainerConfig(timeout=command.container_config.timeout)
        try:
            self.groups.register(
                command.jid,
                RegisteredGroup(
                    name=command.name,
                    folder=command.folder,
                    trigger=command.trigger,
                    context_tier=command.context_tier,
                    container_config=container_config,
                ),
            )
        except GroupRegistrationError as exc:
            raise CommandInvalid(str(exc)) from exc

    def _add_user(self, command: AddUser, source: SourceNamespace) -> None:
        self._require_owner(command, source)
        owner = self.users.owner
        try:
            added = self.users.add_user(
                command.user_jid,
                command.user_name,
                command.tier,
                added_by=owner.jid if owner else None,
            )
        except RegistryError as exc:
            raise CommandInvalid(str(exc)) from exc
        if not added:
            raise CommandInvalid(f"user {command.user_jid} is already registered")
        logger.info("User %s added as %s via %s", command.user_jid, command.tier, source.folder)

    def _remove_user(self, command: RemoveUser, source: SourceNamespace) -> None:
        self._require_owner(command, source)
        try:
            removed = self.users.remove_user(command.user_jid)
        except RegistryError as exc:
            raise CommandInvalid(str(exc)) from exc
        if not removed:
            raise CommandInvalid(f"user {command.user_jid} is not registered")
        logger.info("User %s removed via %s", command.user_jid, source.folder)

    def _list_users(self, command: ListUsers, source: SourceNamespace) -> None:
        if source.tier not in (ContextTier.OWNER, ContextTier.FAMILY):
            raise CommandDenied("list_users requires owner or family tier")
        data = self.users.load()
        payload = {
            "type": "list_users",
            "owner": data.owner.model_dump(by_alias=True, exclude_none=True) if data.owner.jid else None,
            "family": [u.model_dump(by_alias=True, exclude_none=True) for u in data.family],
            "friend": [u.model_dump(by_alias=True, exclude_none=True) for u in data.friend],
        }
        self._respond(source, command.request_id, "list_users", payload)
        logger.info(
            "Users listed for %s (family=%d, friend=%d)",
            source.folder,
            len(data.family),
            len(data.friend),
        )

    def _get_my_tier(self, command: GetMyTier, source: SourceNamespace) -> None:
        payload = {
            "type": "get_my_tier",
            "groupFolder": source.folder,
            "tier": source.tier.value,
            "isMain": source.is_main,
        }
        self._respond(source, command.request_id, "get_my_tier", payload)
        logger.info("Tier queried by %s: %s", source.folder, source.tier.value)

    def _respond(
        self, source: SourceNamespace, request_id: str | None, kind: str, payload: dict
    ) -> Path:
        if request_id is not None and not _REQUEST_ID_RE.match(request_id):
            raise CommandInvalid(f"invalid requestId {request_id!r}")
        name = request_id or kind
        path = self.ipc_dir / source.folder / RESPONSES_DIR / f"{name}.json"
        save_json(path, payload)
        return path
