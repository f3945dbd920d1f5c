"""Unified configuration for racelog-sync nodes.

One configuration file per node, shared by the CLI, the sync daemon and
the hub server.

Configuration is stored in ~/.racelog-sync/config.toml
Node data is stored in ~/.racelog-sync/node.db (SQLite)
"""

from __future__ import annotations

import json
import logging
import os
import tomllib
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import TYPE_CHECKING, Any

from racelog_sync.core.context import DEFAULT_TIE_BREAK, MergeTieBreak, NodeContext, NodeRole
from racelog_sync.core.fingerprint import DEFAULT_WINDOW_SECONDS
from racelog_sync.core.identity import get_node_id, get_node_name
from racelog_sync.sync.queue import DEFAULT_BACKOFF_BASE_SECONDS, DEFAULT_BACKOFF_CAP_SECONDS

if TYPE_CHECKING:
    from racelog_sync.storage.sqlite_store import SQLiteStorage

logger = logging.getLogger(__name__)


def get_racelog_dir() -> Path:
    """Get racelog-sync data directory.

    Priority:
    1. RACELOG_SYNC_DIR environment variable
    2. ~/.racelog-sync/
    """
    env_dir = os.environ.get("RACELOG_SYNC_DIR")
    if env_dir:
        return Path(env_dir)
    return Path.home() / ".racelog-sync"


def _toml_str(value: str) -> str:
    # JSON string escapes are valid TOML basic-string escapes
    return json.dumps(value)


@dataclass(frozen=True)
class NodeSettings:
    """Role and display name of this installation."""

    role: NodeRole = NodeRole.EDGE
    name: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"role": self.role.value, "name": self.name}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> NodeSettings:
        return cls(
            role=NodeRole(str(data.get("role", NodeRole.EDGE.value)).lower()),
            name=str(data.get("name", "")),
        )


@dataclass(frozen=True)
class HubSettings:
    """Where an edge finds its hub."""

    url: str = "http://127.0.0.1:8000"
    api_key: str = ""
    timeout: float = 30.0

    def to_dict(self) -> dict[str, Any]:
        return {"url": self.url, "api_key": self.api_key, "timeout": self.timeout}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> HubSettings:
        return cls(
            url=str(data.get("url", "http://127.0.0.1:8000")),
            api_key=str(data.get("api_key", "")),
            timeout=float(data.get("timeout", 30.0)),
        )


@dataclass(frozen=True)
class SyncSettings:
    """Sync cycle scheduling and batching."""

    interval_seconds: float = 60.0
    health_interval_seconds: float = 10.0
    batch_size: int = 100
    backoff_base_seconds: float = DEFAULT_BACKOFF_BASE_SECONDS
    backoff_cap_seconds: float = DEFAULT_BACKOFF_CAP_SECONDS
    scopes: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "interval_seconds": self.interval_seconds,
            "health_interval_seconds": self.health_interval_seconds,
            "batch_size": self.batch_size,
            "backoff_base_seconds": self.backoff_base_seconds,
            "backoff_cap_seconds": self.backoff_cap_seconds,
            "scopes": list(self.scopes),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SyncSettings:
        return cls(
            interval_seconds=float(data.get("interval_seconds", 60.0)),
            health_interval_seconds=float(data.get("health_interval_seconds", 10.0)),
            batch_size=max(1, int(data.get("batch_size", 100))),
            backoff_base_seconds=float(
                data.get("backoff_base_seconds", DEFAULT_BACKOFF_BASE_SECONDS)
            ),
            backoff_cap_seconds=float(data.get("backoff_cap_seconds", DEFAULT_BACKOFF_CAP_SECONDS)),
            scopes=tuple(str(s) for s in data.get("scopes", [])),
        )


@dataclass(frozen=True)
class DedupSettings:
    """Fingerprint deduplication settings.

    ``tie_break`` must be identical on every node of a deployment, so
    that all of them pick the same canonical record.
    """

    window_seconds: int = DEFAULT_WINDOW_SECONDS
    tie_break: MergeTieBreak = DEFAULT_TIE_BREAK

    def to_dict(self) -> dict[str, Any]:
        return {"window_seconds": self.window_seconds, "tie_break": self.tie_break.value}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DedupSettings:
        return cls(
            window_seconds=max(1, int(data.get("window_seconds", DEFAULT_WINDOW_SECONDS))),
            tie_break=MergeTieBreak(str(data.get("tie_break", DEFAULT_TIE_BREAK.value))),
        )


@dataclass(frozen=True)
class UnifiedConfig:
    """Unified configuration for one racelog-sync node.

    Storage location: ~/.racelog-sync/config.toml
    Database location: ~/.racelog-sync/node.db
    """

    # Base directory for all node data
    data_dir: Path = field(default_factory=get_racelog_dir)

    node: NodeSettings = field(default_factory=NodeSettings)
    hub: HubSettings = field(default_factory=HubSettings)
    sync: SyncSettings = field(default_factory=SyncSettings)
    dedup: DedupSettings = field(default_factory=DedupSettings)

    # Metadata
    version: str = "1.0"

    @classmethod
    def load(cls, config_path: Path | None = None) -> UnifiedConfig:
        """Load configuration from file, or create default if doesn't exist."""
        if config_path is None:
            data_dir = get_racelog_dir()
            config_path = data_dir / "config.toml"
        else:
            data_dir = config_path.parent

        if not config_path.exists():
            config = cls(data_dir=data_dir)
            config.save()
            return config

        with open(config_path, "rb") as f:
            data = tomllib.load(f)

        return cls(
            data_dir=data_dir,
            node=NodeSettings.from_dict(data.get("node", {})),
            hub=HubSettings.from_dict(data.get("hub", {})),
            sync=SyncSettings.from_dict(data.get("sync", {})),
            dedup=DedupSettings.from_dict(data.get("dedup", {})),
            version=data.get("version", "1.0"),
        )

    def save(self) -> None:
        """Save configuration to TOML file (atomic write via temp+rename)."""
        import tempfile

        self.data_dir.mkdir(parents=True, exist_ok=True)
        config_path = self.data_dir / "config.toml"

        lines = [
            "# racelog-sync node configuration",
            "",
            f"version = {_toml_str(self.version)}",
            "",
            "# Node role (edge or hub) and display name",
            "[node]",
            f"role = {_toml_str(self.node.role.value)}",
            f"name = {_toml_str(self.node.name)}",
            "",
            "# Hub connection (edge nodes)",
            "[hub]",
            f"url = {_toml_str(self.hub.url)}",
            f"api_key = {_toml_str(self.hub.api_key)}",
            f"timeout = {float(self.hub.timeout)}",
            "",
            "# Sync scheduling",
            "[sync]",
            f"interval_seconds = {float(self.sync.interval_seconds)}",
            f"health_interval_seconds = {float(self.sync.health_interval_seconds)}",
            f"batch_size = {int(self.sync.batch_size)}",
            f"backoff_base_seconds = {float(self.sync.backoff_base_seconds)}",
            f"backoff_cap_seconds = {float(self.sync.backoff_cap_seconds)}",
            f"scopes = {json.dumps(list(self.sync.scopes))}",
            "",
            "# Duplicate detection; keep identical on every node",
            "[dedup]",
            f"window_seconds = {int(self.dedup.window_seconds)}",
            f"tie_break = {_toml_str(self.dedup.tie_break.value)}",
        ]

        content = "\n".join(lines) + "\n"
        fd, tmp_path = tempfile.mkstemp(dir=str(self.data_dir), suffix=".toml.tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(content)
            Path(tmp_path).replace(config_path)
        except BaseException:
            Path(tmp_path).unlink(missing_ok=True)
            raise

    @property
    def config_path(self) -> Path:
        """Get path to config file."""
        return self.data_dir / "config.toml"

    @property
    def db_path(self) -> Path:
        """Get path to the node database."""
        return self.data_dir / "node.db"

    @property
    def node_id(self) -> str:
        """Persistent id of this installation (created on first access)."""
        return get_node_id(self.data_dir)

    def with_updates(self, **sections: Any) -> UnifiedConfig:
        """Return a copy with whole sections replaced."""
        return replace(self, **sections)

    def build_context(self, role: NodeRole | None = None) -> NodeContext:
        """Create the per-node context the engine and hub share."""
        return NodeContext(
            node_id=self.node_id,
            node_name=self.node.name or get_node_name(),
            role=role or self.node.role,
            tie_break=self.dedup.tie_break,
            window_seconds=self.dedup.window_seconds,
        )


# Singleton instance for easy access
_config: UnifiedConfig | None = None

# Cached storage instances keyed by db_path string
_storage_cache: dict[str, SQLiteStorage] = {}


def get_config(reload: bool = False) -> UnifiedConfig:
    """Get the unified configuration (singleton).

    Args:
        reload: Force reload from disk

    Returns:
        UnifiedConfig instance
    """
    global _config
    if _config is None or reload:
        _config = UnifiedConfig.load()
    return _config


def reset_config() -> None:
    """Drop the cached configuration (useful for testing)."""
    global _config
    _config = None


async def get_shared_storage(db_path: str | Path | None = None) -> SQLiteStorage:
    """Get the node's SQLite storage.

    Storage instances are cached per database path so the CLI, the daemon
    and the server never open the same file twice in one process.

    Args:
        db_path: Database file, or the configured node database if None

    Returns:
        SQLiteStorage instance, initialized and ready to use
    """
    from racelog_sync.storage.sqlite_store import SQLiteStorage

    path = Path(db_path) if db_path is not None else get_config().db_path
    cache_key = str(path.resolve())

    cached = _storage_cache.get(cache_key)
    if cached is not None and cached._conn is not None:
        return cached

    storage = SQLiteStorage(path)
    try:
        await storage.initialize()
    except Exception:
        await storage.close()
        raise

    _storage_cache[cache_key] = storage
    logger.debug("Opened shared storage %s", cache_key)
    return storage


async def close_shared_storage() -> None:
    """Close every cached storage instance."""
    while _storage_cache:
        _, storage = _storage_cache.popitem()
        await storage.close()
