"""Registered group registry (registered_groups.json).

Maps an external channel id to its RegisteredGroup. The folder name is the
group's namespace identity for workspace, session and command channel, so
it is validated on registration and never taken from anywhere else.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from pathlib import Path

from pydantic import ValidationError

from warden.models import RegisteredGroup
from warden.utils import load_json, save_json

logger = logging.getLogger(__name__)

FOLDER_RE = re.compile(r"^[a-z0-9][a-z0-9_-]*$")
# Folder names with a fixed meaning on the host.
RESERVED_FOLDERS = frozenset({"global", "errors"})


class GroupRegistrationError(ValueError):
    pass


class GroupRegistry:
    """In-memory view of registered_groups.json, written through on change."""

    def __init__(self, path: Path, groups_dir: Path, main_folder: str = "main") -> None:
        self.path = path
        self.groups_dir = groups_dir
        self.main_folder = main_folder
        self._groups: dict[str, RegisteredGroup] = {}

    def load(self) -> None:
        raw = load_json(self.path, {})
        groups: dict[str, RegisteredGroup] = {}
        if isinstance(raw, dict):
            for jid, data in raw.items():
                try:
                    groups[jid] = RegisteredGroup.model_validate(data)
                except ValidationError:
                    logger.error("Skipping invalid group entry for %s in %s", jid, self.path)
        self._groups = groups
        logger.info("Loaded %d registered groups", len(groups))

    def _save(self) -> None:
        save_json(
            self.path,
            {
                jid: g.model_dump(mode="json", by_alias=True, exclude_none=True)
                for jid, g in self._groups.items()
            },
        )

    # ── Lookups ──────────────────────────────────────────────────────────

    def get(self, jid: str) -> RegisteredGroup | None:
        return self._groups.get(jid)

    def by_folder(self, folder: str) -> list[tuple[str, RegisteredGroup]]:
        return [(jid, g) for jid, g in self._groups.items() if g.folder == folder]

    def jid_for_folder(self, folder: str) -> str | None:
        matches = self.by_folder(folder)
        return matches[0][0] if matches else None

    def folders(self) -> set[str]:
        return {g.folder for g in self._groups.values()}

    def jids(self) -> list[str]:
        return list(self._groups)

    def items(self) -> list[tuple[str, RegisteredGroup]]:
        return list(self._groups.items())

    def is_main(self, group: RegisteredGroup) -> bool:
        return group.folder == self.main_folder

    # ── Mutations ────────────────────────────────────────────────────────

    def register(self, jid: str, group: RegisteredGroup) -> RegisteredGroup:
        """Register (or re-register) a channel and create its workspace."""
        if not jid:
            raise GroupRegistrationError("group id is required")
        if not FOLDER_RE.match(group.folder) or group.folder in RESERVED_FOLDERS:
            raise GroupRegistrationError(f"invalid group folder name: {group.folder!r}")

        existing = self._groups.get(jid)
        if existing is not None and existing.folder != group.folder:
            raise GroupRegistrationError(
                f"{jid} is already registered with folder {existing.folder!r}"
            )
        owner_jid = self.jid_for_folder(group.folder)
        if owner_jid is not None and owner_jid != jid:
            raise GroupRegistrationError(
                f"folder {group.folder!r} is already bound to {owner_jid}"
            )

        if not group.added_at:
            group = group.model_copy(update={"added_at": datetime.now(timezone.utc).isoformat()})

        self._groups[jid] = group
        self._save()
        (self.groups_dir / group.folder / "logs").mkdir(parents=True, exist_ok=True)
        logger.info("Group registered: %s (%s) -> folder %s", group.name, jid, group.folder)
        return group
