"""Read-only snapshots written into a group's command-channel dir before each run."""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field

from warden.models import ScheduledTask
from warden.utils import save_json

TASKS_SNAPSHOT = "current_tasks.json"
GROUPS_SNAPSHOT = "available_groups.json"


class AvailableGroup(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    jid: str
    name: str
    last_activity: str = Field(alias="lastActivity")
    is_registered: bool = Field(alias="isRegistered")


def write_tasks_snapshot(
    ipc_dir: Path, group_folder: str, is_main: bool, tasks: list[ScheduledTask]
) -> Path:
    """Main sees every task; other groups only their own."""
    visible = tasks if is_main else [t for t in tasks if t.group_folder == group_folder]
    path = ipc_dir / group_folder / TASKS_SNAPSHOT
    save_json(
        path,
        [
            {
                "id": t.id,
                "groupFolder": t.group_folder,
                "prompt": t.prompt,
                "schedule_type": t.schedule_type.value,
                "schedule_value": t.schedule_value,
                "status": t.status.value,
                "next_run": t.next_run,
            }
            for t in visible
        ],
    )
    return path


def write_groups_snapshot(
    ipc_dir: Path, group_folder: str, is_main: bool, groups: list[AvailableGroup]
) -> Path:
    """Only main may activate groups, so only main sees the list."""
    path = ipc_dir / group_folder / GROUPS_SNAPSHOT
    save_json(
        path,
        {
            "groups": [g.model_dump(by_alias=True) for g in groups] if is_main else [],
            "lastSync": datetime.now(timezone.utc).isoformat(),
        },
    )
    return path
