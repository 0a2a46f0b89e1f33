"""Principal registry — users.json backed owner/family/friend membership.

Reads go through a short-TTL in-memory cache; every write replaces the
file atomically and drops the cache before returning, so a reader never
sees data older than ``cache_ttl`` seconds and always sees its own writes.

Any problem reading the file (missing, unparsable, wrong shape) yields an
empty registry, which classifies every identity as ``stranger``.
"""

from __future__ import annotations

import json
import logging
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Literal

from pydantic import ValidationError

from warden.models import UserInfo, UserRegistryData, UserTier
from warden.utils import normalize_jid, save_json

logger = logging.getLogger(__name__)


class RegistryError(Exception):
    """A registry mutation was refused."""


class UserRegistry:
    """File-backed principal registry with a bounded-staleness read cache."""

    def __init__(
        self,
        path: Path,
        *,
        cache_ttl: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.path = path
        self.cache_ttl = cache_ttl
        self._clock = clock
        self._cache: UserRegistryData | None = None
        self._loaded_at: float = 0.0
        # Listeners run after every successful write (e.g. stranger cache invalidation).
        self._on_change: list[Callable[[], None]] = []

    def on_change(self, callback: Callable[[], None]) -> None:
        self._on_change.append(callback)

    # ── Loading ──────────────────────────────────────────────────────────

    def _read_file(self) -> UserRegistryData | None:
        """Parse users.json. Returns None if the file exists but is unusable."""
        if not self.path.exists():
            return UserRegistryData()
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
            return UserRegistryData.model_validate(raw)
        except (OSError, ValueError, ValidationError):
            logger.error("User registry at %s is unreadable; treating everyone as stranger", self.path)
            return None

    def load(self) -> UserRegistryData:
        """Return the registry, served from cache while it is fresh."""
        now = self._clock()
        if self._cache is not None and now - self._loaded_at < self.cache_ttl:
            return self._cache

        data = self._read_file() or UserRegistryData()
        self._cache = data
        self._loaded_at = now
        return data

    def invalidate(self) -> None:
        self._cache = None

    def _load_for_write(self) -> UserRegistryData:
        data = self._read_file()
        if data is None:
            raise RegistryError(f"Refusing to modify unreadable registry: {self.path}")
        return data

    def _save(self, data: UserRegistryData) -> None:
        save_json(self.path, data.model_dump(mode="json", by_alias=True, exclude_none=True))
        self.invalidate()
        logger.info("User registry saved")
        for callback in self._on_change:
            callback()

    # ── Lookups ──────────────────────────────────────────────────────────

    @staticmethod
    def _tier_in(normalized: str, data: UserRegistryData) -> UserTier:
        if data.owner.jid and normalize_jid(data.owner.jid) == normalized:
            return UserTier.OWNER
        if any(normalize_jid(u.jid) == normalized for u in data.family):
            return UserTier.FAMILY
        if any(normalize_jid(u.jid) == normalized for u in data.friend):
            return UserTier.FRIEND
        return UserTier.STRANGER

    def get_tier(self, jid: str) -> UserTier:
        """Tier for an identity; ``stranger`` when not registered."""
        normalized = normalize_jid(jid)
        if not normalized:
            return UserTier.STRANGER
        return self._tier_in(normalized, self.load())

    def get_user_info(self, jid: str) -> UserInfo | None:
        normalized = normalize_jid(jid)
        data = self.load()
        for user in [data.owner, *data.family, *data.friend]:
            if user.jid and normalize_jid(user.jid) == normalized:
                return user
        return None

    def users_by_tier(self, tier: Literal["owner", "family", "friend"] | UserTier) -> list[UserInfo]:
        tier = UserTier(tier)
        data = self.load()
        if tier == UserTier.OWNER:
            return [data.owner] if data.owner.jid else []
        if tier == UserTier.FAMILY:
            return list(data.family)
        if tier == UserTier.FRIEND:
            return list(data.friend)
        return []

    @property
    def owner(self) -> UserInfo | None:
        owners = self.users_by_tier(UserTier.OWNER)
        return owners[0] if owners else None

    # ── Mutations ────────────────────────────────────────────────────────

    def initialize_owner(self, jid: str, name: str) -> UserInfo:
        """Set the owner during first setup. Raises if one already exists."""
        data = self._load_for_write()
        if data.owner.jid:
            raise RegistryError("Owner already initialized")

        normalized = normalize_jid(jid)
        if self._tier_in(normalized, data) != UserTier.STRANGER:
            raise RegistryError(f"{normalized} is already registered")

        data.owner = UserInfo(
            jid=normalized, name=name, added_at=datetime.now(timezone.utc).isoformat()
        )
        self._save(data)
        logger.info("Owner initialized: %s (%s)", name, normalized)
        return data.owner

    def add_user(
        self,
        jid: str,
        name: str,
        tier: Literal["family", "friend"] | UserTier,
        added_by: str | None = None,
    ) -> bool:
        """Add a family member or friend. Returns False if the identity already exists."""
        tier = UserTier(tier)
        if tier not in (UserTier.FAMILY, UserTier.FRIEND):
            raise RegistryError(f"Cannot add user with tier {tier.value}")

        normalized = normalize_jid(jid)
        if not normalized:
            raise RegistryError("Cannot add user with empty identity")

        data = self._load_for_write()
        current = self._tier_in(normalized, data)
        if current != UserTier.STRANGER:
            logger.info("User %s already exists as %s", normalized, current.value)
            return False

        info = UserInfo(
            jid=normalized,
            name=name,
            added_at=datetime.now(timezone.utc).isoformat(),
            added_by=normalize_jid(added_by) if added_by else None,
        )
        if tier == UserTier.FAMILY:
            data.family.append(info)
        else:
            data.friend.append(info)

        self._save(data)
        logger.info("Added %s (%s) as %s", name, normalized, tier.value)
        return True

    def remove_user(self, jid: str) -> bool:
        """Remove a family member or friend. The owner can never be removed."""
        normalized = normalize_jid(jid)
        data = self._load_for_write()

        if data.owner.jid and normalize_jid(data.owner.jid) == normalized:
            raise RegistryError("Cannot remove owner from registry")

        for tier_name in ("family", "friend"):
            members: list[UserInfo] = getattr(data, tier_name)
            kept = [u for u in members if normalize_jid(u.jid) != normalized]
            if len(kept) != len(members):
                setattr(data, tier_name, kept)
                self._save(data)
                logger.info("Removed user %s from %s", normalized, tier_name)
                return True

        logger.info("User %s not found in registry", normalized)
        return False
