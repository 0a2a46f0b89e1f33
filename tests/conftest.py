"""Shared fixtures for Warden tests."""

from __future__ import annotations

import asyncio
import sys

import pytest
import pytest_asyncio

from warden.config import PathsConfig, RuntimeConfig, WardenConfig
from warden.models import ContextTier, RegisteredGroup
from warden.sandbox.config import SandboxConfig
from warden.store import MessageStore
from warden.users import UserRegistry

OWNER = "15550000001@s.whatsapp.net"
FAMILY = "15550000002@s.whatsapp.net"
FRIEND = "15550000003@s.whatsapp.net"
STRANGER = "15559999999@s.whatsapp.net"

MAIN_JID = "15550000001@s.whatsapp.net"
FAMILY_GROUP_JID = "120363000000000001@g.us"
FRIENDS_GROUP_JID = "120363000000000002@g.us"


@pytest.fixture
def config(tmp_path) -> WardenConfig:
    """Config rooted in a temp dir with a fake container runtime."""
    return WardenConfig(
        paths=PathsConfig(
            project_root=str(tmp_path),
            mount_allowlist=str(tmp_path / "mount-allowlist.json"),
        ),
        runtime=RuntimeConfig(timezone="UTC"),
        sandbox=SandboxConfig(runtime="fake-runtime", image="warden-agent:test", timeout_ms=10_000),
    )


@pytest.fixture
def users(config) -> UserRegistry:
    reg = UserRegistry(config.data_dir / "users.json", cache_ttl=0)
    reg.initialize_owner(OWNER, "Olivia")
    reg.add_user(FAMILY, "Fay", "family", added_by=OWNER)
    reg.add_user(FRIEND, "Fred", "friend", added_by=OWNER)
    return reg


@pytest_asyncio.fixture
async def store(tmp_path):
    s = MessageStore(str(tmp_path / "messages.db"))
    await s.initialize()
    yield s
    await s.close()


def make_group(
    name: str = "Main",
    folder: str = "main",
    context_tier: ContextTier | None = None,
    **kwargs,
) -> RegisteredGroup:
    return RegisteredGroup(
        name=name,
        folder=folder,
        trigger="@Warden",
        added_at="2024-01-01T00:00:00+00:00",
        context_tier=context_tier,
        **kwargs,
    )


def python_spawn(script: str, calls: list | None = None):
    """A spawn function that runs ``script`` with this interpreter instead of a container.

    The container argv is recorded in ``calls`` when given.
    """

    async def spawn(*args, **kwargs):
        if calls is not None:
            calls.append(list(args))
        return await asyncio.create_subprocess_exec(sys.executable, "-c", script, **kwargs)

    return spawn
