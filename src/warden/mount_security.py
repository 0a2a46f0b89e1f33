"""Mount security — vet extra bind mounts against a host-only allowlist.

The allowlist lives outside every sandbox (default
``~/.config/warden/mount-allowlist.json``) so agents cannot widen their own
filesystem access. Shape::

    {
      "allowedRoots": [
        {"path": "~/projects", "access": {"owner": "rw", "family": "ro"},
         "description": "code"}
      ],
      "blockedPatterns": ["secrets"]
    }

Every check runs on the symlink-resolved real path, so a link pointing
into ``~/.ssh`` is rejected the same as ``~/.ssh`` itself.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path, PurePosixPath
from typing import Iterable, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from warden.models import AdditionalMount, ContextTier, UserTier, VolumeMount

logger = logging.getLogger(__name__)

EXTRA_MOUNT_PREFIX = "/workspace/extra"

# Always blocked, on top of whatever the allowlist adds.
DEFAULT_BLOCKED_PATTERNS: tuple[str, ...] = (
    ".ssh",
    ".gnupg",
    ".gpg",
    ".aws",
    ".azure",
    ".gcloud",
    ".kube",
    ".docker",
    "credentials",
    ".netrc",
    ".npmrc",
    ".pypirc",
    "id_rsa",
    "id_ed25519",
    "private_key",
    ".secret",
    ".env",
)

MountAccess = Literal["rw", "ro"]


class TierAccess(BaseModel):
    owner: MountAccess | None = None
    family: MountAccess | None = None
    friend: Literal["ro"] | None = None


class AllowedRoot(BaseModel):
    path: str
    access: TierAccess = Field(default_factory=TierAccess)
    description: str | None = None


class MountAllowlist(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    allowed_roots: list[AllowedRoot] = Field(default_factory=list, alias="allowedRoots")
    blocked_patterns: list[str] = Field(default_factory=list, alias="blockedPatterns")


class MountRejected(Exception):
    """A requested mount failed validation."""


def _real_path(path: str | Path) -> Path:
    """Expand ``~`` and follow every symlink. Raises MountRejected if it doesn't exist."""
    expanded = Path(os.path.expanduser(str(path)))
    try:
        return expanded.resolve(strict=True)
    except (OSError, RuntimeError) as exc:
        raise MountRejected(f"cannot resolve {path}: {exc}") from exc


def matched_blocked_pattern(resolved: Path, patterns: Iterable[str]) -> str | None:
    lowered = str(resolved).lower()
    for pattern in patterns:
        if pattern and pattern.lower() in lowered:
            return pattern
    return None


def validate_vault_path(vault_path: str | Path, vault_name: str) -> Path:
    """Check a vault directory before it is mounted. Returns the resolved path.

    Raises:
        MountRejected: missing, blocked, or not a directory.
    """
    try:
        resolved = _real_path(vault_path)
    except MountRejected as exc:
        raise MountRejected(
            f"{vault_name} vault path does not exist or cannot be resolved: {vault_path}. "
            "Verify the vault settings or disable the vault."
        ) from exc

    pattern = matched_blocked_pattern(resolved, DEFAULT_BLOCKED_PATTERNS)
    if pattern:
        raise MountRejected(
            f"{vault_name} vault path contains blocked pattern {pattern!r}: "
            f"{vault_path} (resolved to {resolved})"
        )
    if not resolved.is_dir():
        raise MountRejected(f"{vault_name} vault path is not a directory: {resolved}")
    return resolved


class MountSecurityValidator:
    """Turns a group's requested extra mounts into vetted VolumeMounts."""

    def __init__(self, allowlist_path: Path) -> None:
        self.allowlist_path = Path(os.path.expanduser(str(allowlist_path)))
        self._allowlist: MountAllowlist | None = None
        self._loaded = False

    def load_allowlist(self) -> MountAllowlist | None:
        """Load once per process. A missing or corrupt file disables extra mounts."""
        if self._loaded:
            return self._allowlist
        self._loaded = True

        if not self.allowlist_path.exists():
            logger.warning(
                "Mount allowlist not found at %s; additional mounts are disabled",
                self.allowlist_path,
            )
            return None
        try:
            raw = json.loads(self.allowlist_path.read_text(encoding="utf-8"))
            self._allowlist = MountAllowlist.model_validate(raw)
        except (OSError, ValueError, ValidationError):
            logger.exception("Mount allowlist at %s is invalid; additional mounts are disabled", self.allowlist_path)
            self._allowlist = None
            return None

        logger.info(
            "Mount allowlist loaded: %d roots, %d blocked patterns",
            len(self._allowlist.allowed_roots),
            len(self._allowlist.blocked_patterns),
        )
        return self._allowlist

    # ── Single mount ─────────────────────────────────────────────────────

    @staticmethod
    def _container_path(mount: AdditionalMount, resolved: Path) -> str:
        name = mount.container_path or resolved.name
        p = PurePosixPath(name)
        if p.is_absolute() or ".." in p.parts or not p.parts:
            raise MountRejected(f"invalid container path {name!r}")
        return f"{EXTRA_MOUNT_PREFIX}/{p}"

    def _find_root(
        self, resolved: Path, allowlist: MountAllowlist
    ) -> tuple[AllowedRoot, Path] | None:
        for root in allowlist.allowed_roots:
            try:
                root_path = _real_path(root.path)
            except MountRejected:
                logger.debug("Allowed root %s does not exist; skipping", root.path)
                continue
            if resolved == root_path or resolved.is_relative_to(root_path):
                return root, root_path
        return None

    def validate_mount(
        self, mount: AdditionalMount, tier: ContextTier | UserTier
    ) -> VolumeMount:
        """Vet one mount for a tier. Raises MountRejected with the reason."""
        tier_name = tier.value
        if tier_name == UserTier.STRANGER.value:
            raise MountRejected("strangers never receive mounts")

        allowlist = self.load_allowlist()
        if allowlist is None:
            raise MountRejected("no mount allowlist configured")

        resolved = _real_path(mount.host_path)

        pattern = matched_blocked_pattern(
            resolved, [*DEFAULT_BLOCKED_PATTERNS, *allowlist.blocked_patterns]
        )
        if pattern:
            raise MountRejected(f"{resolved} matches blocked pattern {pattern!r}")

        if self.allowlist_path.exists():
            allowlist_real = self.allowlist_path.resolve()
            if allowlist_real.is_relative_to(resolved):
                raise MountRejected(f"{resolved} would expose the mount allowlist")

        found = self._find_root(resolved, allowlist)
        if found is None:
            raise MountRejected(f"{resolved} is not under any allowed root")
        root, _ = found

        access = getattr(root.access, tier_name, None)
        if access is None:
            raise MountRejected(f"{tier_name} tier has no access to root {root.path}")

        wants_write = not mount.readonly
        if wants_write and (access != "rw" or tier_name == ContextTier.FRIEND.value):
            raise MountRejected(
                f"{tier_name} tier requested write access but root {root.path} grants read-only"
            )

        return VolumeMount(
            host_path=str(resolved),
            container_path=self._container_path(mount, resolved),
            readonly=mount.readonly,
        )

    # ── Batch ────────────────────────────────────────────────────────────

    def validate(
        self,
        requested: Iterable[AdditionalMount],
        group_name: str,
        is_main: bool,
        tier: ContextTier | UserTier | None = None,
    ) -> list[VolumeMount]:
        """Vet every requested mount; rejected ones are logged and dropped.

        ``tier`` defaults to owner for the main group and friend otherwise.
        """
        if tier is None:
            tier = ContextTier.OWNER if is_main else ContextTier.FRIEND

        vetted: list[VolumeMount] = []
        seen: set[str] = set()
        for mount in requested:
            try:
                result = self.validate_mount(mount, tier)
            except MountRejected as exc:
                logger.warning(
                    "Rejected additional mount for group %s (%s): %s -- %s",
                    group_name,
                    tier.value,
                    mount.host_path,
                    exc,
                )
                continue
            if result.container_path in seen:
                logger.warning(
                    "Rejected duplicate container path %s for group %s",
                    result.container_path,
                    group_name,
                )
                continue
            seen.add(result.container_path)
            vetted.append(result)
            logger.debug("Validated mount for group %s: %s", group_name, result.describe())
        return vetted
