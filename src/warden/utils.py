"""Small shared helpers: identity normalization and atomic JSON state files."""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


def normalize_jid(jid: str) -> str:
    """Strip a device/session suffix (``:<n>``) from the local part of an identity.

    The ``@domain`` part is preserved: ``"1555:3@s.whatsapp.net"`` becomes
    ``"1555@s.whatsapp.net"``.
    """
    local, sep, domain = jid.strip().partition("@")
    local = local.split(":", 1)[0]
    return f"{local}@{domain}" if sep and domain else local


def phone_from_jid(jid: str) -> str:
    """Return the phone-like local part of a normalized identity."""
    return normalize_jid(jid).split("@", 1)[0]


def load_json(path: Path, default: Any) -> Any:
    """Read a JSON file, returning ``default`` if it is missing or unreadable."""
    try:
        if path.exists():
            return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        logger.warning("Could not read %s, using defaults", path)
    return default


def save_json(path: Path, data: Any) -> None:
    """Write JSON atomically (temp file + rename in the same directory)."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(f"{path.name}.tmp")
    tmp.write_text(json.dumps(data, indent=2), encoding="utf-8")
    os.replace(tmp, path)
