"""Container sandbox for agent turns.

- Tier-determined mount composition plus vetted extra mounts
- Restricted env file (allowlisted variable names only)
- Per-group serialized container runs with timeout and output caps
- Task and group snapshots for the command-channel dir
"""

from .config import SandboxConfig
from .env_scrub import filter_env, write_restricted_env
from .mounts import build_container_args, build_volume_mounts, session_dir_path
from .runner import ContainerRunner, OutputParseError, parse_output
from .snapshots import AvailableGroup, write_groups_snapshot, write_tasks_snapshot

__all__ = [
    "AvailableGroup",
    "ContainerRunner",
    "OutputParseError",
    "SandboxConfig",
    "build_container_args",
    "build_volume_mounts",
    "filter_env",
    "parse_output",
    "session_dir_path",
    "write_groups_snapshot",
    "write_restricted_env",
    "write_tasks_snapshot",
]
