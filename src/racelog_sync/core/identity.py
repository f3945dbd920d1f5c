"""Identity layer: global record ids and persistent node identity.

Global ids are random 128-bit UUIDs, so any node can mint them offline
without coordinating with the hub. Node ids are generated once per
installation and persisted to disk.
"""

from __future__ import annotations

import platform
import re
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from uuid import UUID, uuid4

from racelog_sync.utils.timeutils import utcnow

_GLOBAL_ID_PATTERN = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$"
)
_NODE_ID_PATTERN = re.compile(r"^[a-zA-Z0-9_\-\.]{1,64}$")


@dataclass(frozen=True)
class NodeInfo:
    """Immutable node identity record."""

    node_id: str
    node_name: str
    registered_at: datetime


def assign() -> str:
    """Mint a new global id.

    Never blocks and never fails. The caller stores the value with the
    record at creation time; it is never regenerated afterwards.
    """
    return str(uuid4())


def is_global_id(value: object) -> bool:
    """Return True if *value* is a canonical lower-case UUID string."""
    return isinstance(value, str) and bool(_GLOBAL_ID_PATTERN.match(value))


def normalize_global_id(value: str) -> str:
    """Return the canonical form of a UUID string.

    Raises:
        ValueError: If *value* is not a UUID.
    """
    return str(UUID(value))


def is_node_id(value: object) -> bool:
    """Return True if *value* is usable as a node identifier."""
    return isinstance(value, str) and bool(_NODE_ID_PATTERN.match(value))


def get_node_id(config_dir: Path) -> str:
    """Return the persistent node ID for this installation.

    Reads the ID from ``{config_dir}/node_id``.  If the file does not
    exist, a new 16-character hex ID is generated, written to that file,
    and returned.

    Args:
        config_dir: Directory where the ``node_id`` file is stored (usually
            the racelog-sync data directory).

    Returns:
        16-character hex node identifier string.
    """
    id_path = config_dir / "node_id"

    if id_path.exists():
        try:
            existing = id_path.read_text(encoding="utf-8").strip()
            if existing:
                return existing
        except OSError:
            pass  # Fall through to generate a new ID

    new_id = uuid4().hex[:16]

    config_dir.mkdir(parents=True, exist_ok=True)
    id_path.write_text(new_id, encoding="utf-8")

    return new_id


def get_node_name() -> str:
    """Return the machine hostname, or ``"unknown"``."""
    name = platform.node()
    return name if name else "unknown"


def get_node_info(config_dir: Path, node_name: str | None = None) -> NodeInfo:
    """Return a fully-populated :class:`NodeInfo` for this installation.

    Args:
        config_dir: Directory where the ``node_id`` file is stored.
        node_name: Display name override (defaults to the hostname).
    """
    return NodeInfo(
        node_id=get_node_id(config_dir),
        node_name=node_name or get_node_name(),
        registered_at=utcnow(),
    )
