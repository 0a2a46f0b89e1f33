"""Tier-based authorization: who may invoke the agent, and with what context.

PolicyEngine is a pure function of the principal registry. StrangerGate
layers a per-group TTL cache on top of it to veto whole channels that
contain anyone not in the registry.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Callable, Iterable

from warden.models import AuthorizationResult, ContextTier, GroupParticipant, UserTier
from warden.utils import normalize_jid

if TYPE_CHECKING:
    from warden.users import UserRegistry

logger = logging.getLogger(__name__)

DEFAULT_STRANGER_CACHE_TTL = 300.0  # seconds

_INVOKING_TIERS = frozenset({UserTier.OWNER, UserTier.FAMILY})


class PolicyEngine:
    """Classifies principals and derives effective execution contexts."""

    def __init__(self, users: UserRegistry) -> None:
        self.users = users

    def classify(self, jid: str) -> UserTier:
        try:
            return self.users.get_tier(jid)
        except Exception:
            # Fail secure: any registry failure means "not trusted".
            logger.exception("Registry lookup failed for %s; classifying as stranger", jid)
            return UserTier.STRANGER

    def can_invoke(self, jid: str, is_group_chat: bool) -> AuthorizationResult:
        """Only owner and family can start an agent turn."""
        tier = self.classify(jid)
        allowed = tier in _INVOKING_TIERS
        reason = (
            f"{tier.value} tier user can invoke the assistant"
            if allowed
            else f"{tier.value} tier users cannot invoke the assistant"
        )
        logger.info(
            "Invoke check: sender=%s tier=%s can_invoke=%s group_chat=%s",
            normalize_jid(jid),
            tier.value,
            allowed,
            is_group_chat,
        )
        return AuthorizationResult(can_invoke=allowed, tier=tier, reason=reason)

    @staticmethod
    def effective_context(
        sender_tier: UserTier, group_context_tier: ContextTier | None = None
    ) -> ContextTier:
        """Reconcile sender tier with a group's tier ceiling.

        The group tier can only restrict, never elevate: a friend speaking in
        an owner-tier group still runs with friend context.
        """
        if sender_tier == UserTier.OWNER:
            baseline = ContextTier.OWNER
        elif sender_tier == UserTier.FAMILY:
            baseline = ContextTier.FAMILY
        else:
            baseline = ContextTier.FRIEND

        if group_context_tier is None:
            return baseline

        group_context_tier = ContextTier(group_context_tier)
        if group_context_tier.restrictiveness > baseline.restrictiveness:
            logger.info(
                "Group tier %s restricts sender context %s",
                group_context_tier.value,
                baseline.value,
            )
            return group_context_tier
        return baseline

    def participant_tiers(self, participants: Iterable[str]) -> list[GroupParticipant]:
        return [
            GroupParticipant(jid=normalize_jid(jid), tier=self.classify(jid))
            for jid in participants
        ]


# ── Stranger detection ───────────────────────────────────────────────────────


@dataclass
class StrangerCacheEntry:
    has_strangers: bool
    last_checked: float
    participant_snapshot: frozenset[str]
    strangers: tuple[str, ...] = ()


@dataclass
class StrangerCheck:
    """Outcome of a stranger check for one group."""

    group_id: str
    has_strangers: bool
    strangers: list[str] = field(default_factory=list)
    from_cache: bool = False


class StrangerCache:
    """Per-group stranger decisions with TTL expiry and an injected clock."""

    def __init__(
        self,
        ttl: float = DEFAULT_STRANGER_CACHE_TTL,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl = ttl
        self._clock = clock
        self._entries: dict[str, StrangerCacheEntry] = {}

    def now(self) -> float:
        return self._clock()

    def get(self, group_id: str, snapshot: frozenset[str]) -> StrangerCacheEntry | None:
        """Return a live entry whose snapshot matches exactly, else None."""
        entry = self._entries.get(group_id)
        if entry is None:
            return None
        if self._clock() - entry.last_checked >= self.ttl:
            return None
        if entry.participant_snapshot != snapshot:
            return None
        return entry

    def set(self, group_id: str, entry: StrangerCacheEntry) -> None:
        self._entries[group_id] = entry

    def clear(self, group_id: str | None = None) -> int:
        if group_id is None:
            count = len(self._entries)
            self._entries.clear()
            return count
        return 1 if self._entries.pop(group_id, None) is not None else 0


class StrangerGate:
    """Fail-secure admit/deny for a whole channel based on its participants."""

    def __init__(self, policy: PolicyEngine, cache: StrangerCache | None = None) -> None:
        self.policy = policy
        self.cache = cache or StrangerCache()

    def check(
        self, group_id: str, participants: Iterable[str], force_refresh: bool = False
    ) -> StrangerCheck:
        group_key = normalize_jid(group_id)
        snapshot = frozenset(normalize_jid(p) for p in participants if p)

        if not force_refresh:
            cached = self.cache.get(group_key, snapshot)
            if cached is not None:
                logger.debug(
                    "Stranger check (cached): group=%s has_strangers=%s",
                    group_key,
                    cached.has_strangers,
                )
                return StrangerCheck(
                    group_id=group_key,
                    has_strangers=cached.has_strangers,
                    strangers=list(cached.strangers),
                    from_cache=True,
                )

        strangers = sorted(
            jid for jid in snapshot if self.policy.classify(jid) == UserTier.STRANGER
        )
        result = bool(strangers)
        self.cache.set(
            group_key,
            StrangerCacheEntry(
                has_strangers=result,
                last_checked=self.cache.now(),
                participant_snapshot=snapshot,
                strangers=tuple(strangers),
            ),
        )
        logger.info(
            "Stranger check (fresh): group=%s participants=%d has_strangers=%s",
            group_key,
            len(snapshot),
            result,
        )
        return StrangerCheck(group_id=group_key, has_strangers=result, strangers=strangers)

    def restore(self, group_id: str, participants: Iterable[str], age: float) -> bool:
        """Seed a persisted positive decision that is ``age`` seconds old.

        Participants are re-classified against the current registry; nothing
        is seeded if the entry has expired or nobody is a stranger any more.
        """
        if age < 0 or age >= self.cache.ttl:
            return False
        snapshot = frozenset(normalize_jid(p) for p in participants if p)
        strangers = sorted(
            jid for jid in snapshot if self.policy.classify(jid) == UserTier.STRANGER
        )
        if not strangers:
            return False
        self.cache.set(
            normalize_jid(group_id),
            StrangerCacheEntry(
                has_strangers=True,
                last_checked=self.cache.now() - age,
                participant_snapshot=snapshot,
                strangers=tuple(strangers),
            ),
        )
        return True

    def has_strangers(
        self, group_id: str, participants: Iterable[str], force_refresh: bool = False
    ) -> bool:
        return self.check(group_id, participants, force_refresh).has_strangers

    def invalidate(self, group_id: str | None = None) -> None:
        """Drop cached decisions for one group, or for every group."""
        if group_id is None:
            count = self.cache.clear()
            logger.info("Cleared all stranger caches (%d)", count)
        else:
            self.cache.clear(normalize_jid(group_id))
            logger.info("Cleared stranger cache for group %s", group_id)


def format_stranger_alert(group_name: str, strangers: list[tuple[str, str]]) -> str:
    """Owner DM listing the strangers (display name, identity) found in a group."""
    lines = []
    for name, jid in strangers:
        phone = jid.split("@", 1)[0]
        label = f"{name} (+{phone})" if name and name != phone else f"+{phone}"
        lines.append(f"  • {label}")
    return (
        "🚨 *Stranger Alert*\n\n"
        "A group with strangers has been detected and ignored:\n\n"
        f"*Group:* {group_name}\n\n"
        f"*Strangers detected ({len(strangers)}):*\n"
        + "\n".join(lines)
        + "\n\nAll messages in this group will be ignored until the strangers "
        "are removed or added to your user registry."
    )
