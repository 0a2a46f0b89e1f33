"""Configuration loading for Warden.

Reads <config-dir>/config.yaml. Pydantic models validate the schema;
a handful of environment variables override paths for deployment.
"""

from __future__ import annotations

import logging
import os
import re
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, field_validator

from warden.sandbox.config import SandboxConfig

logger = logging.getLogger(__name__)


# ── Config Models ────────────────────────────────────────────────────────────


class AssistantConfig(BaseModel):
    name: str = "Warden"
    # Regex matched against message text; ``{name}`` is replaced by the assistant name.
    trigger_pattern: str = r"^@{name}\b"

    @property
    def trigger_regex(self) -> re.Pattern[str]:
        return re.compile(
            self.trigger_pattern.format(name=re.escape(self.name)), re.IGNORECASE
        )


class PathsConfig(BaseModel):
    """Host filesystem layout. Relative paths resolve against the project root."""

    project_root: str = "."
    data_dir: str = "data"
    groups_dir: str = "groups"
    store_dir: str = "store"
    # Host-only; never mounted into a sandbox.
    mount_allowlist: str = "~/.config/warden/mount-allowlist.json"


class RuntimeConfig(BaseModel):
    poll_interval: float = 2.0  # seconds, message intake
    ipc_poll_interval: float = 1.0  # seconds, command channel drain
    scheduler_interval: float = 60.0  # seconds
    group_sync_interval: int = 86400  # seconds
    timezone: str = "UTC"
    main_group_folder: str = "main"
    stranger_cache_ttl: float = 300.0  # seconds
    registry_cache_ttl: float = 5.0  # seconds

    @field_validator("timezone")
    @classmethod
    def _validate_timezone(cls, v: str) -> str:
        from zoneinfo import ZoneInfo

        try:
            ZoneInfo(v)
        except Exception as exc:
            raise ValueError(f"Unknown timezone: {v!r}") from exc
        return v


class VaultSettings(BaseModel):
    path: str = ""
    enabled: bool = False


class VaultConfig(BaseModel):
    main_vault: VaultSettings = Field(default_factory=VaultSettings)
    private_vault: VaultSettings = Field(default_factory=VaultSettings)


class BridgeConfig(BaseModel):
    """External messaging bridge the transport adapter talks to."""

    url: str = "http://127.0.0.1:3100"
    token_env: str = "WARDEN_BRIDGE_TOKEN"
    timeout: float = 15.0

    @property
    def token(self) -> str | None:
        return os.environ.get(self.token_env) or None


class ServerConfig(BaseModel):
    host: str = "127.0.0.1"
    port: int = 8000
    webhook_secret_env: str = "WARDEN_WEBHOOK_SECRET"

    @property
    def webhook_secret(self) -> str | None:
        return os.environ.get(self.webhook_secret_env) or None


class WardenConfig(BaseModel):
    """Top-level Warden configuration (matches config.yaml)."""

    assistant: AssistantConfig = Field(default_factory=AssistantConfig)
    paths: PathsConfig = Field(default_factory=PathsConfig)
    runtime: RuntimeConfig = Field(default_factory=RuntimeConfig)
    sandbox: SandboxConfig = Field(default_factory=SandboxConfig)
    vaults: VaultConfig = Field(default_factory=VaultConfig)
    bridge: BridgeConfig = Field(default_factory=BridgeConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)

    # ── Resolved paths ───────────────────────────────────────────────────

    @property
    def project_root(self) -> Path:
        return Path(self.paths.project_root).expanduser().resolve()

    def _resolve(self, value: str) -> Path:
        p = Path(value).expanduser()
        return p if p.is_absolute() else self.project_root / p

    @property
    def data_dir(self) -> Path:
        return self._resolve(self.paths.data_dir)

    @property
    def groups_dir(self) -> Path:
        return self._resolve(self.paths.groups_dir)

    @property
    def store_dir(self) -> Path:
        return self._resolve(self.paths.store_dir)

    @property
    def ipc_dir(self) -> Path:
        return self.data_dir / "ipc"

    @property
    def mount_allowlist_path(self) -> Path:
        return Path(self.paths.mount_allowlist).expanduser()

    @property
    def env_file_path(self) -> Path:
        return self._resolve(self.sandbox.env_file)


def load_config(config_dir: Path) -> WardenConfig:
    """Load Warden configuration from a config directory.

    Args:
        config_dir: Directory containing config.yaml.

    Returns:
        Validated WardenConfig.

    Raises:
        FileNotFoundError: If config.yaml doesn't exist.
        ValueError: If config validation fails.
    """
    config_path = config_dir / "config.yaml"
    if not config_path.exists():
        raise FileNotFoundError(f"Warden config not found: {config_path}")

    with open(config_path) as f:
        raw = yaml.safe_load(f) or {}

    config = WardenConfig(**raw)

    # Environment variable overrides for deployment
    data_dir = os.environ.get("WARDEN_DATA_DIR")
    if data_dir:
        config.paths.data_dir = data_dir

    groups_dir = os.environ.get("WARDEN_GROUPS_DIR")
    if groups_dir:
        config.paths.groups_dir = groups_dir

    tz = os.environ.get("WARDEN_TIMEZONE")
    if tz:
        config.runtime = RuntimeConfig(**{**config.runtime.model_dump(), "timezone": tz})

    image = os.environ.get("WARDEN_CONTAINER_IMAGE")
    if image:
        config.sandbox.image = image

    bridge_url = os.environ.get("WARDEN_BRIDGE_URL")
    if bridge_url:
        config.bridge.url = bridge_url

    logger.info(
        "Loaded Warden config: assistant=%s, main_group=%s, tz=%s",
        config.assistant.name,
        config.runtime.main_group_folder,
        config.runtime.timezone,
    )
    return config
