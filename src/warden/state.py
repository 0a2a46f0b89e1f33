"""Router state (watermarks) and per-group agent sessions, persisted as JSON."""

from __future__ import annotations

import logging
from pathlib import Path

from warden.utils import load_json, save_json

logger = logging.getLogger(__name__)


class RouterState:
    """Intake watermark plus the last timestamp each chat was answered at."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self.last_timestamp = ""
        self.last_agent_timestamp: dict[str, str] = {}

    def load(self) -> None:
        raw = load_json(self.path, {})
        self.last_timestamp = raw.get("last_timestamp", "") or ""
        self.last_agent_timestamp = dict(raw.get("last_agent_timestamp", {}) or {})

    def save(self) -> None:
        save_json(
            self.path,
            {
                "last_timestamp": self.last_timestamp,
                "last_agent_timestamp": self.last_agent_timestamp,
            },
        )

    def advance(self, timestamp: str) -> None:
        """Move the intake watermark forward (never backwards) and persist."""
        if timestamp > self.last_timestamp:
            self.last_timestamp = timestamp
            self.save()

    def mark_answered(self, chat_jid: str, timestamp: str) -> None:
        self.last_agent_timestamp[chat_jid] = timestamp
        self.save()


class SessionStore:
    """Agent session id per group folder (sessions.json)."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self._sessions: dict[str, str] = {}

    def load(self) -> None:
        raw = load_json(self.path, {})
        self._sessions = {k: v for k, v in raw.items() if isinstance(v, str)}

    def get(self, folder: str) -> str | None:
        return self._sessions.get(folder)

    def set(self, folder: str, session_id: str) -> None:
        if self._sessions.get(folder) == session_id:
            return
        self._sessions[folder] = session_id
        save_json(self.path, self._sessions)
        logger.debug("Session for %s updated", folder)
