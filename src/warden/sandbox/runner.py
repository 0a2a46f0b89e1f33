"""Container runner — one isolated agent process per unit of work.

Spawns the container runtime with the composed mounts, writes the
ContainerInput JSON to stdin, collects capped stdout/stderr under a
wall-clock timeout, and parses the sentinel-delimited ContainerOutput.

``run()`` never raises for sandbox failures; every failure mode becomes
a ``ContainerOutput(status="error")`` so callers only branch on status.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from pydantic import ValidationError

from warden.models import ContainerInput, ContainerOutput, ContextTier, RegisteredGroup, VolumeMount
from warden.sandbox.mounts import build_container_args, build_volume_mounts

if TYPE_CHECKING:
    from warden.config import WardenConfig
    from warden.mount_security import MountSecurityValidator

logger = logging.getLogger(__name__)

_READ_CHUNK = 64 * 1024

SpawnFn = Callable[..., Awaitable[asyncio.subprocess.Process]]


class OutputParseError(ValueError):
    """Sandbox stdout did not contain a valid result object."""


def parse_output(stdout: str, start_marker: str, end_marker: str) -> ContainerOutput:
    """Extract the result between sentinels, falling back to the last non-empty line."""
    start = stdout.find(start_marker)
    end = stdout.find(end_marker, start + len(start_marker)) if start != -1 else -1
    if start != -1 and end != -1:
        payload = stdout[start + len(start_marker) : end].strip()
    else:
        lines = [line for line in stdout.strip().splitlines() if line.strip()]
        if not lines:
            raise OutputParseError("no output from sandbox")
        payload = lines[-1].strip()

    try:
        return ContainerOutput.model_validate(json.loads(payload))
    except (ValueError, ValidationError) as exc:
        raise OutputParseError(f"invalid result payload: {exc}") from exc


async def _read_capped(stream: asyncio.StreamReader | None, cap: int) -> tuple[bytes, bool]:
    """Read a stream to EOF keeping at most ``cap`` bytes. Excess is drained, not kept."""
    if stream is None:
        return b"", False
    buf = bytearray()
    truncated = False
    while True:
        chunk = await stream.read(_READ_CHUNK)
        if not chunk:
            break
        remaining = cap - len(buf)
        if remaining > 0:
            buf += chunk[:remaining]
        if len(chunk) > remaining:
            truncated = True
    return bytes(buf), truncated


class ContainerRunner:
    """Runs agent turns in containers, serialized per group."""

    def __init__(
        self,
        config: WardenConfig,
        validator: MountSecurityValidator,
        *,
        spawn: SpawnFn = asyncio.create_subprocess_exec,
    ) -> None:
        self.config = config
        self.validator = validator
        self._spawn = spawn
        self._locks: dict[str, asyncio.Lock] = {}

    def lock_for(self, group_folder: str) -> asyncio.Lock:
        lock = self._locks.get(group_folder)
        if lock is None:
            lock = self._locks[group_folder] = asyncio.Lock()
        return lock

    def timeout_ms(self, group: RegisteredGroup) -> int:
        if group.container_config and group.container_config.timeout:
            return group.container_config.timeout
        return self.config.sandbox.timeout_ms

    async def run(self, group: RegisteredGroup, input: ContainerInput) -> ContainerOutput:
        """Run one agent turn for ``group``. Waits for any in-flight run of the same group."""
        async with self.lock_for(group.folder):
            return await self.run_locked(group, input)

    async def run_locked(self, group: RegisteredGroup, input: ContainerInput) -> ContainerOutput:
        """Run one agent turn; the caller must already hold ``lock_for(group.folder)``."""
        try:
            return await self._run(group, input)
        except Exception as exc:
            logger.exception("Sandbox run for group %s failed unexpectedly", group.name)
            return ContainerOutput(status="error", error=f"Sandbox failure: {exc}")

    async def _run(self, group: RegisteredGroup, input: ContainerInput) -> ContainerOutput:
        sandbox = self.config.sandbox
        tier = (
            input.effective_tier
            or group.context_tier
            or (ContextTier.OWNER if input.is_main else ContextTier.FRIEND)
        )

        logs_dir = self.config.groups_dir / group.folder / "logs"
        logs_dir.mkdir(parents=True, exist_ok=True)

        mounts = build_volume_mounts(self.config, group, input.is_main, tier, self.validator)
        name = f"warden-{group.folder}-{int(time.time() * 1000)}"
        args = build_container_args(sandbox.runtime, sandbox.image, mounts, name)

        logger.debug(
            "Sandbox mounts for %s: %s", group.name, "; ".join(m.describe() for m in mounts)
        )
        logger.info(
            "Spawning sandbox for group %s (tier=%s, mounts=%d, main=%s)",
            group.name,
            tier.value,
            len(mounts),
            input.is_main,
        )

        started = time.monotonic()
        try:
            proc = await self._spawn(
                *args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            logger.error("Sandbox spawn failed for group %s: %s", group.name, exc)
            self._write_log(
                logs_dir,
                group=group,
                input=input,
                args=args,
                mounts=mounts,
                duration_ms=int((time.monotonic() - started) * 1000),
                exit_code=None,
                error=f"spawn failed: {exc}",
            )
            return ContainerOutput(status="error", error=f"Container spawn error: {exc}")

        payload = input.model_dump_json(by_alias=True).encode()
        cap = sandbox.max_output_bytes
        timeout_ms = self.timeout_ms(group)

        async def _feed() -> None:
            if proc.stdin is None:
                return
            try:
                proc.stdin.write(payload)
                await proc.stdin.drain()
            except (BrokenPipeError, ConnectionResetError):
                logger.warning("Sandbox for group %s closed stdin early", group.name)
            finally:
                proc.stdin.close()

        # stdin is fed alongside the readers so a sandbox that never reads
        # still falls under the timeout.
        async def _collect() -> tuple[tuple[bytes, bool], tuple[bytes, bool], int]:
            _, out, err = await asyncio.gather(
                _feed(), _read_capped(proc.stdout, cap), _read_capped(proc.stderr, cap)
            )
            code = await proc.wait()
            return out, err, code

        try:
            (stdout_b, stdout_trunc), (stderr_b, stderr_trunc), code = await asyncio.wait_for(
                _collect(), timeout=timeout_ms / 1000
            )
        except asyncio.TimeoutError:
            try:
                proc.kill()
            except ProcessLookupError:
                pass
            await proc.wait()
            duration_ms = int((time.monotonic() - started) * 1000)
            logger.error("Sandbox for group %s timed out after %dms, killed", group.name, timeout_ms)
            self._write_log(
                logs_dir,
                group=group,
                input=input,
                args=args,
                mounts=mounts,
                duration_ms=duration_ms,
                exit_code=None,
                timed_out=True,
            )
            return ContainerOutput(
                status="error", error=f"Container timed out after {timeout_ms}ms"
            )

        duration_ms = int((time.monotonic() - started) * 1000)
        stdout = stdout_b.decode(errors="replace")
        stderr = stderr_b.decode(errors="replace")

        if stdout_trunc:
            logger.warning("Sandbox stdout for group %s truncated at %d bytes", group.name, cap)
        if stderr_trunc:
            logger.warning("Sandbox stderr for group %s truncated at %d bytes", group.name, cap)

        log_file = self._write_log(
            logs_dir,
            group=group,
            input=input,
            args=args,
            mounts=mounts,
            duration_ms=duration_ms,
            exit_code=code,
            stdout=stdout,
            stderr=stderr,
            stdout_truncated=stdout_trunc,
            stderr_truncated=stderr_trunc,
        )

        if code != 0:
            logger.error(
                "Sandbox for group %s exited with code %s after %dms (log: %s)",
                group.name,
                code,
                duration_ms,
                log_file,
            )
            return ContainerOutput(
                status="error", error=f"Container exited with code {code}: {stderr[-200:]}"
            )

        try:
            output = parse_output(stdout, sandbox.output_start_marker, sandbox.output_end_marker)
        except OutputParseError as exc:
            logger.error("Failed to parse sandbox output for group %s: %s", group.name, exc)
            return ContainerOutput(
                status="error", error=f"Failed to parse container output: {exc}"
            )

        logger.info(
            "Sandbox for group %s completed in %dms (status=%s, has_result=%s)",
            group.name,
            duration_ms,
            output.status,
            bool(output.result),
        )
        return output

    # ── Run log ──────────────────────────────────────────────────────────

    def _write_log(
        self,
        logs_dir: Path,
        *,
        group: RegisteredGroup,
        input: ContainerInput,
        args: list[str],
        mounts: list[VolumeMount],
        duration_ms: int,
        exit_code: int | None,
        stdout: str = "",
        stderr: str = "",
        stdout_truncated: bool = False,
        stderr_truncated: bool = False,
        timed_out: bool = False,
        error: str = "",
    ) -> Path:
        now = datetime.now(timezone.utc)
        stamp = now.isoformat().replace(":", "-").replace(".", "-")
        log_file = logs_dir / f"container-{stamp}.log"
        verbose = logger.isEnabledFor(logging.DEBUG)

        lines: list[Any] = [
            "=== Container Run Log ===",
            f"Timestamp: {now.isoformat()}",
            f"Group: {group.name}",
            f"IsMain: {input.is_main}",
            f"Tier: {input.effective_tier.value if input.effective_tier else 'default'}",
            f"Duration: {duration_ms}ms",
            f"Exit Code: {exit_code}",
            f"Timed Out: {timed_out}",
            f"Stdout Truncated: {stdout_truncated}",
            f"Stderr Truncated: {stderr_truncated}",
            "",
        ]
        if error:
            lines += [f"Error: {error}", ""]
        if verbose:
            lines += [
                "=== Input ===",
                input.model_dump_json(by_alias=True, indent=2),
                "",
                "=== Container Args ===",
                " ".join(args),
                "",
                "=== Mounts ===",
                "\n".join(m.describe() for m in mounts),
                "",
                f"=== Stderr{' (TRUNCATED)' if stderr_truncated else ''} ===",
                stderr,
                "",
                f"=== Stdout{' (TRUNCATED)' if stdout_truncated else ''} ===",
                stdout,
            ]
        else:
            lines += [
                "=== Input Summary ===",
                f"Prompt length: {len(input.prompt)} chars",
                f"Session ID: {input.session_id or 'new'}",
                "",
                "=== Mounts ===",
                "\n".join(
                    f"{m.container_path}{' (ro)' if m.readonly else ''}" for m in mounts
                ),
                "",
            ]
            if exit_code not in (0, None):
                lines += ["=== Stderr (last 500 chars) ===", stderr[-500:], ""]

        log_file.write_text("\n".join(lines), encoding="utf-8")
        logger.debug("Sandbox run log written: %s (verbose=%s)", log_file, verbose)
        return log_file
