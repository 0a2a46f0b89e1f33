"""Mount composition for one sandbox run.

Every bind mount a sandbox receives comes from here: tier-determined
system paths plus the extra mounts the validator has vetted. Nothing
else is ever passed to the container runtime.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING

from warden.models import ContextTier, RegisteredGroup, VolumeMount
from warden.mount_security import MountRejected, validate_vault_path
from warden.sandbox.env_scrub import write_restricted_env

if TYPE_CHECKING:
    from warden.config import WardenConfig
    from warden.mount_security import MountSecurityValidator

logger = logging.getLogger(__name__)

# Container-side layout.
PROJECT_MOUNT = "/workspace/project"
PRIVATE_VAULT_MOUNT = "/workspace/vaults/private"
MAIN_VAULT_MOUNT = "/workspace/vaults/main"
GROUP_MOUNT = "/workspace/group"
GLOBAL_MOUNT = "/workspace/global"
SESSION_MOUNT = "/home/node/.claude"
IPC_MOUNT = "/workspace/ipc"
ENV_MOUNT = "/workspace/env-dir"

GLOBAL_FOLDER = "global"
IPC_SUBDIRS = ("messages", "tasks", "responses")


def session_dir_path(data_dir: Path, tier: ContextTier, group_folder: str) -> Path:
    """Session storage shared by tier: owner and family share one each, friends are per-group."""
    base = data_dir / "sessions"
    if tier == ContextTier.OWNER:
        return base / "owner" / ".claude"
    if tier == ContextTier.FAMILY:
        return base / "family" / ".claude"
    return base / "friends" / group_folder / ".claude"


def group_ipc_dir(ipc_dir: Path, group_folder: str) -> Path:
    path = ipc_dir / group_folder
    for sub in IPC_SUBDIRS:
        (path / sub).mkdir(parents=True, exist_ok=True)
    return path


def _vault_mount(enabled: bool, path: str, name: str, target: str) -> VolumeMount | None:
    if not enabled or not path:
        return None
    try:
        resolved = validate_vault_path(path, name)
    except MountRejected as exc:
        logger.error("Skipping %s vault mount: %s", name, exc)
        return None
    return VolumeMount(host_path=str(resolved), container_path=target, readonly=False)


def build_volume_mounts(
    config: WardenConfig,
    group: RegisteredGroup,
    is_main: bool,
    tier: ContextTier,
    validator: MountSecurityValidator,
) -> list[VolumeMount]:
    """Compose the full mount set for ``group`` running at ``tier``."""
    mounts: list[VolumeMount] = []
    group_dir = config.groups_dir / group.folder
    group_dir.mkdir(parents=True, exist_ok=True)

    if tier == ContextTier.OWNER:
        mounts.append(
            VolumeMount(
                host_path=str(config.project_root),
                container_path=PROJECT_MOUNT,
                readonly=False,
            )
        )
        private = _vault_mount(
            config.vaults.private_vault.enabled,
            config.vaults.private_vault.path,
            "private",
            PRIVATE_VAULT_MOUNT,
        )
        if private:
            mounts.append(private)

    if tier in (ContextTier.OWNER, ContextTier.FAMILY):
        main_vault = _vault_mount(
            config.vaults.main_vault.enabled,
            config.vaults.main_vault.path,
            "main",
            MAIN_VAULT_MOUNT,
        )
        if main_vault:
            mounts.append(main_vault)

    mounts.append(
        VolumeMount(host_path=str(group_dir), container_path=GROUP_MOUNT, readonly=False)
    )

    if tier != ContextTier.OWNER:
        global_dir = config.groups_dir / GLOBAL_FOLDER
        if global_dir.is_dir():
            mounts.append(
                VolumeMount(host_path=str(global_dir), container_path=GLOBAL_MOUNT, readonly=True)
            )

    session_dir = session_dir_path(config.data_dir, tier, group.folder)
    session_dir.mkdir(parents=True, exist_ok=True)
    mounts.append(
        VolumeMount(host_path=str(session_dir), container_path=SESSION_MOUNT, readonly=False)
    )

    mounts.append(
        VolumeMount(
            host_path=str(group_ipc_dir(config.ipc_dir, group.folder)),
            container_path=IPC_MOUNT,
            readonly=False,
        )
    )

    env_dir = write_restricted_env(config.sandbox, config.env_file_path, config.data_dir / "env")
    if env_dir is not None:
        mounts.append(VolumeMount(host_path=str(env_dir), container_path=ENV_MOUNT, readonly=True))

    requested = group.container_config.additional_mounts if group.container_config else []
    if requested:
        mounts.extend(validator.validate(requested, group.name, is_main, tier))

    return mounts


def build_container_args(
    runtime: str, image: str, mounts: list[VolumeMount], name: str
) -> list[str]:
    """Argument vector for ``<runtime> run``; stdin stays open for the input JSON."""
    args = [runtime, "run", "-i", "--rm", "--name", name]
    for mount in mounts:
        if mount.readonly:
            args += [
                "--mount",
                f"type=bind,source={mount.host_path},target={mount.container_path},readonly",
            ]
        else:
            args += ["-v", f"{mount.host_path}:{mount.container_path}"]
    args.append(image)
    return args
