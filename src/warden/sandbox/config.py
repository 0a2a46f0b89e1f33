"""Sandbox configuration model."""

from __future__ import annotations

from pydantic import BaseModel, Field


class SandboxConfig(BaseModel):
    """Configuration for container-sandboxed agent execution."""

    # Container runtime CLI (``container`` for Apple Container, or ``docker``/``podman``).
    runtime: str = "container"
    image: str = "warden-agent:latest"
    # Wall-clock limit per run in milliseconds; groups may override.
    timeout_ms: int = 300_000
    # Per-stream cap on captured stdout/stderr, in bytes.
    max_output_bytes: int = 10 * 1024 * 1024
    # Project .env file the restricted env file is filtered from.
    env_file: str = ".env"
    # Only these variable names ever reach the sandbox.
    allowed_env_vars: list[str] = Field(
        default_factory=lambda: [
            "CLAUDE_CODE_OAUTH_TOKEN",
            "ANTHROPIC_API_KEY",
        ]
    )
    output_start_marker: str = "---WARDEN_OUTPUT_START---"
    output_end_marker: str = "---WARDEN_OUTPUT_END---"
