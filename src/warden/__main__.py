"""Warden CLI entry point."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path


# ── Default templates for `warden init` ──────────────────────────────────────

_DEFAULT_CONFIG = """\
# config.yaml — Warden host configuration

assistant:
  name: "{assistant_name}"
  trigger_pattern: "^@{{name}}\\\\b"

paths:
  project_root: "{project_root}"
  data_dir: data
  groups_dir: groups
  store_dir: store
  mount_allowlist: "~/.config/warden/mount-allowlist.json"

runtime:
  poll_interval: 2.0
  ipc_poll_interval: 1.0
  scheduler_interval: 60.0
  timezone: UTC
  main_group_folder: main

sandbox:
  runtime: container
  image: "warden-agent:latest"
  timeout_ms: 300000
  env_file: .env
  allowed_env_vars:
    - CLAUDE_CODE_OAUTH_TOKEN
    - ANTHROPIC_API_KEY

vaults:
  main_vault:
    enabled: false
    path: ""
  private_vault:
    enabled: false
    path: ""

bridge:
  url: "http://127.0.0.1:3100"
  token_env: WARDEN_BRIDGE_TOKEN

server:
  host: 127.0.0.1
  port: 8000
  webhook_secret_env: WARDEN_WEBHOOK_SECRET
"""

_DEFAULT_ALLOWLIST = {
    "allowedRoots": [
        {
            "path": "~/projects",
            "access": {"owner": "rw", "family": "ro"},
            "description": "Development projects",
        }
    ],
    "blockedPatterns": ["password", "secret", "token"],
}

_DEFAULT_MAIN_NOTES = """\
# {assistant_name}

You are {assistant_name}, a personal assistant. This is the owner's private
control channel: messages here need no trigger and run with full context.
"""


def _init_project(config_dir: Path, assistant_name: str) -> None:
    """Scaffold a config directory, empty registries and the main group."""
    config_path = config_dir / "config.yaml"
    if config_path.exists():
        print(f"Error: {config_path} already exists", file=sys.stderr)
        print("Remove it first if you want to re-initialize.", file=sys.stderr)
        sys.exit(1)

    config_dir.mkdir(parents=True, exist_ok=True)
    config_path.write_text(
        _DEFAULT_CONFIG.format(assistant_name=assistant_name, project_root=config_dir.resolve())
    )

    from warden.utils import save_json

    data_dir = config_dir / "data"
    data_dir.mkdir(parents=True, exist_ok=True)
    users_path = data_dir / "users.json"
    if not users_path.exists():
        save_json(users_path, {"owner": {"jid": "", "name": ""}, "family": [], "friend": []})

    main_dir = config_dir / "groups" / "main"
    (main_dir / "logs").mkdir(parents=True, exist_ok=True)
    (config_dir / "groups" / "global").mkdir(parents=True, exist_ok=True)
    notes = main_dir / "CLAUDE.md"
    if not notes.exists():
        notes.write_text(_DEFAULT_MAIN_NOTES.format(assistant_name=assistant_name))

    allowlist = Path("~/.config/warden/mount-allowlist.json").expanduser()
    if not allowlist.exists():
        allowlist.parent.mkdir(parents=True, exist_ok=True)
        allowlist.write_text(json.dumps(_DEFAULT_ALLOWLIST, indent=2) + "\n")
        print(f"Wrote mount allowlist template to {allowlist}")

    print(f"Initialized Warden at {config_dir}")
    print()
    print("Next steps:")
    print(f"  1. Review {config_path}")
    print("  2. Run: warden set-owner <jid> <name>")
    print("  3. Register the main group by its chat id from the owner's self-chat")
    print(f"  4. Run: warden serve --config-dir {config_dir}")


def _set_owner(config_dir: Path, jid: str, name: str) -> None:
    from warden.config import load_config
    from warden.users import RegistryError, UserRegistry

    try:
        config = load_config(config_dir)
    except FileNotFoundError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    registry = UserRegistry(config.data_dir / "users.json")
    try:
        owner = registry.initialize_owner(jid, name)
    except RegistryError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    print(f"Owner set: {owner.name} ({owner.jid})")


def _register_main(config_dir: Path, jid: str, name: str) -> None:
    from warden.config import load_config
    from warden.groups import GroupRegistrationError, GroupRegistry
    from warden.models import ContextTier, RegisteredGroup

    try:
        config = load_config(config_dir)
    except FileNotFoundError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    folder = config.runtime.main_group_folder
    groups = GroupRegistry(config.data_dir / "registered_groups.json", config.groups_dir, folder)
    groups.load()
    try:
        groups.register(
            jid,
            RegisteredGroup(
                name=name,
                folder=folder,
                trigger=f"@{config.assistant.name}",
                added_at=datetime.now(timezone.utc).isoformat(),
                context_tier=ContextTier.OWNER,
            ),
        )
    except GroupRegistrationError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    print(f"Main group registered: {name} ({jid})")


def main():
    parser = argparse.ArgumentParser(
        prog="warden",
        description="Warden — trust-and-sandbox host for a shared personal assistant",
    )

    subparsers = parser.add_subparsers(dest="command")

    def add_config_dir(p: argparse.ArgumentParser) -> None:
        p.add_argument(
            "--config-dir",
            type=Path,
            default=Path.cwd(),
            help="Directory containing config.yaml (default: current directory)",
        )

    # warden init
    init_parser = subparsers.add_parser("init", help="Scaffold a new Warden installation")
    add_config_dir(init_parser)
    init_parser.add_argument(
        "--assistant-name", default="Warden", help="Assistant name used in the trigger"
    )

    # warden set-owner
    owner_parser = subparsers.add_parser("set-owner", help="Register the single Owner")
    add_config_dir(owner_parser)
    owner_parser.add_argument("jid", help="Owner identity (e.g. 15551234567@s.whatsapp.net)")
    owner_parser.add_argument("name", help="Owner display name")

    # warden register-main
    main_parser = subparsers.add_parser("register-main", help="Register the main control chat")
    add_config_dir(main_parser)
    main_parser.add_argument("jid", help="Chat id of the owner's control channel")
    main_parser.add_argument("--name", default="Main", help="Display name (default: Main)")

    # warden serve
    serve_parser = subparsers.add_parser("serve", help="Start the Warden host")
    add_config_dir(serve_parser)
    serve_parser.add_argument("--host", help="Host to bind to (default: from config)")
    serve_parser.add_argument("--port", type=int, help="Port to bind to (default: from config)")
    serve_parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)",
    )

    args = parser.parse_args()

    if args.command == "init":
        _init_project(args.config_dir, args.assistant_name)
        return

    if args.command == "set-owner":
        _set_owner(args.config_dir, args.jid, args.name)
        return

    if args.command == "register-main":
        _register_main(args.config_dir, args.jid, args.name)
        return

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    # Default: serve
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    from warden.config import load_config
    from warden.host import check_container_runtime

    try:
        config = load_config(args.config_dir)
    except FileNotFoundError as e:
        print(f"Error: {e}", file=sys.stderr)
        print("Run 'warden init' to create one, or specify --config-dir", file=sys.stderr)
        sys.exit(1)

    error = asyncio.run(check_container_runtime(config.sandbox.runtime))
    if error:
        print(f"Error: {error}", file=sys.stderr)
        print("Agents cannot run without a container runtime.", file=sys.stderr)
        sys.exit(1)

    # Create and run app
    import uvicorn

    from warden.server import create_app

    app = create_app(config)
    uvicorn.run(
        app,
        host=args.host or config.server.host,
        port=args.port or config.server.port,
        log_level=args.log_level.lower(),
    )


if __name__ == "__main__":
    main()
