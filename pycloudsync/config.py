"""Configuration management for pycloudsync.

Settings are read from ``config.json`` in the configuration directory and
can be overridden per key with ``PYCLOUDSYNC_*`` environment variables.
Saved provider connections live in ``connections.json`` next to it.
"""

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Optional

from .exceptions import ConfigError
from .models import ProviderConnection
from .utils import (
    DEFAULT_EVENT_BUFFER_SIZE,
    DEFAULT_MAX_RETRIES,
    DEFAULT_MAX_SCAN_DEPTH,
    DEFAULT_MAX_WORKERS,
    DEFAULT_REQUEST_TIMEOUT,
    DEFAULT_RETRY_DELAY,
    DEFAULT_SCHEDULER_TICK,
    DEFAULT_SESSION_TTL,
)

logger = logging.getLogger(__name__)

ENV_PREFIX = "PYCLOUDSYNC_"
CONFIG_FILE_NAME = "config.json"
CONNECTIONS_FILE_NAME = "connections.json"


@dataclass
class EngineSettings:
    """Snapshot of the tunables used by the job engine and scheduler."""

    max_workers: int = DEFAULT_MAX_WORKERS
    max_retries: int = DEFAULT_MAX_RETRIES
    retry_delay: float = DEFAULT_RETRY_DELAY
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT
    scheduler_tick: float = DEFAULT_SCHEDULER_TICK
    event_buffer_size: int = DEFAULT_EVENT_BUFFER_SIZE
    max_scan_depth: int = DEFAULT_MAX_SCAN_DEPTH
    session_ttl: float = DEFAULT_SESSION_TTL


# key -> (environment variable suffix, parser)
_SETTINGS: dict[str, tuple[str, Callable[[Any], Any]]] = {
    "max_workers": ("MAX_WORKERS", int),
    "max_retries": ("MAX_RETRIES", int),
    "retry_delay": ("RETRY_DELAY", float),
    "request_timeout": ("REQUEST_TIMEOUT", float),
    "scheduler_tick": ("SCHEDULER_TICK", float),
    "event_buffer_size": ("EVENT_BUFFER", int),
    "max_scan_depth": ("MAX_SCAN_DEPTH", int),
    "session_ttl": ("SESSION_TTL", float),
}


class Config:
    """Configuration manager backed by a directory of JSON files."""

    def __init__(self, config_dir: Optional[Path] = None):
        """Initialize configuration.

        Args:
            config_dir: Directory holding config.json and connections.json.
                Defaults to $PYCLOUDSYNC_CONFIG_DIR or ~/.config/pycloudsync
        """
        if config_dir is None:
            env_dir = os.environ.get(f"{ENV_PREFIX}CONFIG_DIR")
            config_dir = (
                Path(env_dir) if env_dir else Path.home() / ".config" / "pycloudsync"
            )
        self.config_dir = Path(config_dir)

    def get_config_path(self) -> Path:
        return self.config_dir / CONFIG_FILE_NAME

    def get_connections_path(self) -> Path:
        return self.config_dir / CONNECTIONS_FILE_NAME

    def _read_json(self, path: Path, default: Any) -> Any:
        if not path.exists():
            return default
        try:
            with open(path, encoding="utf-8") as f:
                return json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigError(f"Cannot read {path}: {e}") from e

    def _write_json(self, path: Path, data: Any) -> None:
        self.config_dir.mkdir(parents=True, exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
        # Connection configs carry credentials
        path.chmod(0o600)

    def get(self, key: str, default: Any = None) -> Any:
        """Get a setting, environment variables taking precedence."""
        file_values = self._read_json(self.get_config_path(), {})
        if not isinstance(file_values, dict):
            raise ConfigError(f"{self.get_config_path()} must contain an object")

        env_suffix, parser = _SETTINGS.get(key, (key.upper(), str))
        raw = os.environ.get(f"{ENV_PREFIX}{env_suffix}")
        if raw is None:
            raw = file_values.get(key)
        if raw is None:
            return default
        try:
            return parser(raw)
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Invalid value for {key}: {raw!r}") from e

    def engine_settings(self) -> EngineSettings:
        """Build engine settings from config file and environment."""
        defaults = EngineSettings()
        values = {
            key: self.get(key, getattr(defaults, key)) for key in _SETTINGS
        }
        return EngineSettings(**values)

    def load_connections(self) -> list[ProviderConnection]:
        """Load saved provider connections.

        Returns:
            List of ProviderConnection objects

        Raises:
            ConfigError: If the file is malformed
        """
        data = self._read_json(self.get_connections_path(), [])
        if not isinstance(data, list):
            raise ConfigError(
                f"{self.get_connections_path()} must contain a list of connections"
            )
        connections = []
        for i, item in enumerate(data):
            if not isinstance(item, dict) or "provider_type" not in item:
                raise ConfigError(f"Connection #{i} is missing 'provider_type'")
            connections.append(ProviderConnection.from_dict(item))
        logger.debug(f"Loaded {len(connections)} connection(s)")
        return connections

    def save_connection(self, connection: ProviderConnection) -> None:
        """Add or replace a connection in connections.json."""
        existing = [
            c for c in self.load_connections() if c.id != connection.id
        ]
        existing.append(connection)
        self._write_json(
            self.get_connections_path(), [c.to_dict() for c in existing]
        )

    def remove_connection(self, connection_id: str) -> bool:
        """Remove a saved connection. Returns True if it existed."""
        connections = self.load_connections()
        remaining = [c for c in connections if c.id != connection_id]
        if len(remaining) == len(connections):
            return False
        self._write_json(
            self.get_connections_path(), [c.to_dict() for c in remaining]
        )
        return True


config = Config()
