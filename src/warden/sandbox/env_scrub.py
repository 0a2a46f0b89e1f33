"""Restricted environment file for sandbox processes.

The project ``.env`` holds host credentials (bridge token, webhook secret,
and so on). Sandboxes only ever see a filtered copy containing the
variable names in ``SandboxConfig.allowed_env_vars``, written to
``<data>/env/env`` and mounted read-only at ``/workspace/env-dir``.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import TYPE_CHECKING

from dotenv import dotenv_values

if TYPE_CHECKING:
    from warden.sandbox.config import SandboxConfig

logger = logging.getLogger(__name__)


def filter_env(values: dict[str, str | None], allowed: list[str]) -> dict[str, str]:
    """Keep only allowlisted names with a non-empty value."""
    allowed_set = set(allowed)
    return {k: v for k, v in values.items() if k in allowed_set and v}


def _quote(value: str) -> str:
    if any(c in value for c in " \t#'\"\\$\n"):
        escaped = value.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")
        return f'"{escaped}"'
    return value


def write_restricted_env(
    config: SandboxConfig, env_file: Path, env_dir: Path
) -> Path | None:
    """Write the filtered env file into ``env_dir``.

    Returns the directory to mount, or None when nothing is allowlisted
    (the mount is then skipped entirely).
    """
    if not env_file.exists():
        logger.debug("No env file at %s; sandbox gets no credentials", env_file)
        return None

    kept = filter_env(dotenv_values(env_file), config.allowed_env_vars)
    if not kept:
        return None

    env_dir.mkdir(parents=True, exist_ok=True)
    target = env_dir / "env"
    tmp = env_dir / "env.tmp"
    tmp.write_text("".join(f"{k}={_quote(v)}\n" for k, v in kept.items()), encoding="utf-8")
    os.chmod(tmp, 0o600)
    os.replace(tmp, target)
    # Names only; values never reach the log.
    logger.debug("Restricted env file written with vars: %s", ", ".join(sorted(kept)))
    return env_dir
