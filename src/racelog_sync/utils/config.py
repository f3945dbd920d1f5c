"""Environment-driven settings for the hub server.

Every setting is read from a ``RACELOG_SYNC_<NAME>`` variable. Malformed
values fall back to the default and are logged, so a typo in a unit file
never keeps the hub from starting.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

ENV_PREFIX = "RACELOG_SYNC_"
DEFAULT_CORS_ORIGINS = ("http://localhost:*", "http://127.0.0.1:*")


def _env(name: str) -> str | None:
    value = os.getenv(ENV_PREFIX + name)
    if value is None or not value.strip():
        return None
    return value.strip()


def _env_port(name: str, default: int) -> int:
    raw = _env(name)
    if raw is None:
        return default
    try:
        port = int(raw)
    except ValueError:
        port = -1
    if not 0 < port < 65536:
        logger.warning("Ignoring %s%s=%r, using port %d", ENV_PREFIX, name, raw, default)
        return default
    return port


@dataclass
class Config:
    """
    Hub server configuration.

    ``db_path`` of None means the node database in the data directory;
    ``api_key`` of None leaves every route open.
    """

    host: str = "127.0.0.1"
    port: int = 8000
    debug: bool = False
    db_path: str | None = None
    cors_origins: list[str] = field(default_factory=lambda: list(DEFAULT_CORS_ORIGINS))
    api_key: str | None = None

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables."""
        origins = _env("CORS_ORIGINS")
        return cls(
            host=_env("HOST") or "127.0.0.1",
            port=_env_port("PORT", 8000),
            debug=(_env("DEBUG") or "").lower() in ("true", "1", "yes"),
            db_path=_env("DB_PATH"),
            cors_origins=(
                [o.strip() for o in origins.split(",") if o.strip()]
                if origins
                else list(DEFAULT_CORS_ORIGINS)
            ),
            api_key=_env("API_KEY"),
        )


_config: Config | None = None


def get_config() -> Config:
    """Get the process-wide hub configuration."""
    global _config
    if _config is None:
        _config = Config.from_env()
    return _config


def reset_config() -> None:
    global _config
    _config = None
