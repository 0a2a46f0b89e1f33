"""Core data models for Warden."""

from __future__ import annotations

import enum
from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field


# ── Tiers ────────────────────────────────────────────────────────────────────


class UserTier(str, enum.Enum):
    """Trust level of a principal."""

    OWNER = "owner"
    FAMILY = "family"
    FRIEND = "friend"
    STRANGER = "stranger"


class ContextTier(str, enum.Enum):
    """Privilege context granted to a single agent invocation."""

    OWNER = "owner"
    FAMILY = "family"
    FRIEND = "friend"

    @property
    def restrictiveness(self) -> int:
        """Owner < Family < Friend, from least to most restrictive."""
        return _RESTRICTIVENESS[self]


_RESTRICTIVENESS = {
    ContextTier.OWNER: 0,
    ContextTier.FAMILY: 1,
    ContextTier.FRIEND: 2,
}


# ── Principal Registry ───────────────────────────────────────────────────────


class UserInfo(BaseModel):
    """One registered principal (users.json entry)."""

    model_config = ConfigDict(populate_by_name=True)

    jid: str
    name: str = ""
    added_at: str = Field(default="", alias="addedAt")
    added_by: str | None = Field(default=None, alias="addedBy")


class UserRegistryData(BaseModel):
    """On-disk shape of users.json: one owner, family and friend lists."""

    owner: UserInfo = Field(default_factory=lambda: UserInfo(jid=""))
    family: list[UserInfo] = Field(default_factory=list)
    friend: list[UserInfo] = Field(default_factory=list)


# ── Groups ───────────────────────────────────────────────────────────────────


class AdditionalMount(BaseModel):
    """An extra mount requested by a group's container config."""

    model_config = ConfigDict(populate_by_name=True)

    host_path: str = Field(alias="hostPath")
    container_path: str | None = Field(default=None, alias="containerPath")
    readonly: bool = True


class ContainerConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    additional_mounts: list[AdditionalMount] = Field(
        default_factory=list, alias="additionalMounts"
    )
    timeout: int | None = None  # milliseconds
    env: dict[str, str] = Field(default_factory=dict)


class RegisteredGroup(BaseModel):
    """A principal group: a chat with its own workspace, session and command channel."""

    model_config = ConfigDict(populate_by_name=True)

    name: str
    folder: str
    trigger: str
    added_at: str = ""
    context_tier: ContextTier | None = Field(default=None, alias="contextTier")
    container_config: ContainerConfig | None = Field(default=None, alias="containerConfig")


# ── Messages ─────────────────────────────────────────────────────────────────


class NewMessage(BaseModel):
    """A stored inbound message."""

    id: str
    chat_jid: str
    sender: str
    sender_name: str = ""
    content: str = ""
    timestamp: str


class ChatInfo(BaseModel):
    jid: str
    name: str
    last_message_time: str


# ── Scheduled Tasks ──────────────────────────────────────────────────────────


class ScheduleType(str, enum.Enum):
    CRON = "cron"
    INTERVAL = "interval"
    ONCE = "once"


class ContextMode(str, enum.Enum):
    GROUP = "group"
    ISOLATED = "isolated"


class TaskStatus(str, enum.Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"


class ScheduledTask(BaseModel):
    """A recurring or one-shot agent run (scheduled_tasks row)."""

    id: str
    group_folder: str
    chat_jid: str
    prompt: str
    schedule_type: ScheduleType
    schedule_value: str
    context_mode: ContextMode = ContextMode.ISOLATED
    next_run: str | None = None
    last_run: str | None = None
    last_result: str | None = None
    status: TaskStatus = TaskStatus.ACTIVE
    created_at: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())


class TaskRunLog(BaseModel):
    """Immutable record of one scheduled task run."""

    task_id: str
    run_at: str
    duration_ms: int
    status: str  # "success" | "error"
    result: str | None = None
    error: str | None = None


# ── Authorization ────────────────────────────────────────────────────────────


class AuthorizationResult(BaseModel):
    can_invoke: bool
    tier: UserTier
    reason: str = ""


class GroupParticipant(BaseModel):
    jid: str
    tier: UserTier


# ── Sandbox I/O ──────────────────────────────────────────────────────────────


class ContainerInput(BaseModel):
    """Serialized onto the sandbox's stdin as a single JSON object."""

    model_config = ConfigDict(populate_by_name=True)

    prompt: str
    session_id: str | None = Field(default=None, alias="sessionId")
    group_folder: str = Field(alias="groupFolder")
    chat_jid: str = Field(alias="chatJid")
    is_main: bool = Field(alias="isMain")
    is_scheduled_task: bool = Field(default=False, alias="isScheduledTask")
    effective_tier: ContextTier | None = Field(default=None, alias="effectiveTier")


class ContainerOutput(BaseModel):
    """Result protocol emitted by the sandbox between the output sentinels."""

    model_config = ConfigDict(populate_by_name=True)

    status: str  # "success" | "error"
    result: str | None = None
    new_session_id: str | None = Field(default=None, alias="newSessionId")
    error: str | None = None


class VolumeMount(BaseModel):
    host_path: str
    container_path: str
    readonly: bool = False

    def describe(self) -> str:
        suffix = " (ro)" if self.readonly else ""
        return f"{self.host_path} -> {self.container_path}{suffix}"
