"""Tests for mount composition, container argv, env scrubbing and snapshots."""

from __future__ import annotations

import json
import os
import stat

import pytest

from conftest import make_group
from warden.models import (
    AdditionalMount,
    ContainerConfig,
    ContextTier,
    ScheduledTask,
    ScheduleType,
    VolumeMount,
)
from warden.mount_security import MountSecurityValidator
from warden.sandbox import (
    AvailableGroup,
    build_container_args,
    build_volume_mounts,
    filter_env,
    session_dir_path,
    write_groups_snapshot,
    write_restricted_env,
    write_tasks_snapshot,
)
from warden.sandbox.mounts import (
    ENV_MOUNT,
    GLOBAL_MOUNT,
    GROUP_MOUNT,
    IPC_MOUNT,
    MAIN_VAULT_MOUNT,
    PRIVATE_VAULT_MOUNT,
    PROJECT_MOUNT,
    SESSION_MOUNT,
)


@pytest.fixture
def validator(config):
    return MountSecurityValidator(config.mount_allowlist_path)


@pytest.fixture
def vaults(config, tmp_path):
    main = tmp_path / "vaults" / "main"
    private = tmp_path / "vaults" / "personal"
    main.mkdir(parents=True)
    private.mkdir(parents=True)
    config.vaults.main_vault.enabled = True
    config.vaults.main_vault.path = str(main)
    config.vaults.private_vault.enabled = True
    config.vaults.private_vault.path = str(private)
    return main, private


def _targets(mounts: list[VolumeMount]) -> dict[str, VolumeMount]:
    return {m.container_path: m for m in mounts}


class TestTierMounts:
    def test_owner(self, config, validator, vaults):
        mounts = _targets(
            build_volume_mounts(config, make_group(), True, ContextTier.OWNER, validator)
        )
        assert PROJECT_MOUNT in mounts
        assert PRIVATE_VAULT_MOUNT in mounts
        assert MAIN_VAULT_MOUNT in mounts
        assert GLOBAL_MOUNT not in mounts
        assert mounts[SESSION_MOUNT].host_path.endswith(os.path.join("sessions", "owner", ".claude"))

    def test_family(self, config, validator, vaults):
        (config.groups_dir / "global").mkdir(parents=True)
        group = make_group("Family", "family", ContextTier.FAMILY)
        mounts = _targets(build_volume_mounts(config, group, False, ContextTier.FAMILY, validator))
        assert PROJECT_MOUNT not in mounts
        assert PRIVATE_VAULT_MOUNT not in mounts
        assert MAIN_VAULT_MOUNT in mounts
        assert mounts[GLOBAL_MOUNT].readonly is True
        assert mounts[GROUP_MOUNT].host_path == str(config.groups_dir / "family")

    def test_friend(self, config, validator, vaults):
        group = make_group("Friends", "friends", ContextTier.FRIEND)
        mounts = _targets(build_volume_mounts(config, group, False, ContextTier.FRIEND, validator))
        assert set(mounts) == {GROUP_MOUNT, SESSION_MOUNT, IPC_MOUNT}
        assert mounts[SESSION_MOUNT].host_path == str(
            session_dir_path(config.data_dir, ContextTier.FRIEND, "friends")
        )
        assert mounts[IPC_MOUNT].host_path == str(config.ipc_dir / "friends")
        for sub in ("messages", "tasks", "responses"):
            assert (config.ipc_dir / "friends" / sub).is_dir()

    def test_missing_vault_is_skipped(self, config, validator):
        config.vaults.main_vault.enabled = True
        config.vaults.main_vault.path = "/definitely/not/here"
        mounts = _targets(
            build_volume_mounts(config, make_group(), True, ContextTier.OWNER, validator)
        )
        assert MAIN_VAULT_MOUNT not in mounts

    def test_extra_mounts_need_allowlist(self, config, validator, tmp_path):
        (tmp_path / "code").mkdir()
        group = make_group(
            container_config=ContainerConfig(
                additional_mounts=[AdditionalMount(host_path=str(tmp_path / "code"))]
            )
        )
        mounts = build_volume_mounts(config, group, True, ContextTier.OWNER, validator)
        assert not any(m.container_path.startswith("/workspace/extra") for m in mounts)

    def test_session_sharing(self, config):
        owner_a = session_dir_path(config.data_dir, ContextTier.OWNER, "a")
        owner_b = session_dir_path(config.data_dir, ContextTier.OWNER, "b")
        friend_a = session_dir_path(config.data_dir, ContextTier.FRIEND, "a")
        friend_b = session_dir_path(config.data_dir, ContextTier.FRIEND, "b")
        assert owner_a == owner_b
        assert friend_a != friend_b


class TestContainerArgs:
    def test_argv(self):
        args = build_container_args(
            "docker",
            "img:1",
            [
                VolumeMount(host_path="/h/group", container_path="/workspace/group"),
                VolumeMount(host_path="/h/env", container_path="/workspace/env-dir", readonly=True),
            ],
            "warden-main-1",
        )
        assert args == [
            "docker",
            "run",
            "-i",
            "--rm",
            "--name",
            "warden-main-1",
            "-v",
            "/h/group:/workspace/group",
            "--mount",
            "type=bind,source=/h/env,target=/workspace/env-dir,readonly",
            "img:1",
        ]


class TestEnvScrub:
    def test_filter(self):
        assert filter_env({"A": "1", "B": "2", "C": ""}, ["A", "C"]) == {"A": "1"}

    def test_only_allowlisted_names_written(self, config, tmp_path):
        env_file = tmp_path / ".env"
        env_file.write_text(
            "ANTHROPIC_API_KEY=sk-test\nWARDEN_BRIDGE_TOKEN=bridge\nWARDEN_WEBHOOK_SECRET=hook\n"
        )
        env_dir = write_restricted_env(config.sandbox, env_file, tmp_path / "env")
        assert env_dir == tmp_path / "env"
        written = (env_dir / "env").read_text()
        assert "ANTHROPIC_API_KEY=sk-test" in written
        assert "bridge" not in written
        assert "hook" not in written
        assert stat.S_IMODE((env_dir / "env").stat().st_mode) == 0o600

    def test_nothing_allowlisted(self, config, tmp_path):
        env_file = tmp_path / ".env"
        env_file.write_text("OTHER=1\n")
        assert write_restricted_env(config.sandbox, env_file, tmp_path / "env") is None

    def test_env_mount_added(self, config, validator):
        config.env_file_path.write_text("CLAUDE_CODE_OAUTH_TOKEN=tok\n")
        mounts = _targets(
            build_volume_mounts(config, make_group(), True, ContextTier.OWNER, validator)
        )
        assert mounts[ENV_MOUNT].readonly is True


class TestSnapshots:
    def _task(self, id: str, folder: str) -> ScheduledTask:
        return ScheduledTask(
            id=id,
            group_folder=folder,
            chat_jid="c",
            prompt="p",
            schedule_type=ScheduleType.INTERVAL,
            schedule_value="1000",
        )

    def test_tasks_filtered_for_non_main(self, tmp_path):
        tasks = [self._task("a", "main"), self._task("b", "family")]
        path = write_tasks_snapshot(tmp_path, "family", False, tasks)
        assert [t["id"] for t in json.loads(path.read_text())] == ["b"]
        path = write_tasks_snapshot(tmp_path, "main", True, tasks)
        assert [t["id"] for t in json.loads(path.read_text())] == ["a", "b"]

    def test_groups_only_for_main(self, tmp_path):
        groups = [AvailableGroup(jid="x@g.us", name="X", last_activity="t", is_registered=False)]
        data = json.loads(write_groups_snapshot(tmp_path, "family", False, groups).read_text())
        assert data["groups"] == []
        data = json.loads(write_groups_snapshot(tmp_path, "main", True, groups).read_text())
        assert data["groups"][0]["isRegistered"] is False
        assert "lastSync" in data
