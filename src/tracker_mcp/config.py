"""
Server configuration for tracker-mcp.

Supports configuration via:
1. Environment variables (highest priority)
2. TOML config file (tracker-mcp.toml)
3. Default values (lowest priority)

Environment variables:
- TRACKER_MCP_CONFIG_FILE: Path to TOML config file
- TRACKER_MCP_LOG_LEVEL: Logging level (DEBUG, INFO, WARNING, ERROR)
- TRACKER_MCP_STRUCTURED_LOGGING: Emit JSON log lines (true/false)
- TRACKER_MCP_STORE_BACKEND: "memory" or "http"
- TRACKER_MCP_STORE_URL: Base URL of the document service (http backend)
- TRACKER_MCP_STORE_TOKEN: Bearer token for the document service
- TRACKER_MCP_STORE_TIMEOUT: Request timeout in seconds
- TRACKER_MCP_SEQUENCE_CACHE_TTL: Seconds a verified counter skips healing (0 disables)
- TRACKER_MCP_BATCH_SIZE: Default items per chunk for bulk operations
- TRACKER_MCP_MAX_BATCH_SIZE: Largest chunk a caller may request
- TRACKER_MCP_MAX_BULK_ITEMS: Largest number of items per bulk call
- TRACKER_MCP_CHUNK_DELAY_MS: Pause between chunks in milliseconds

Example tracker-mcp.toml:

    [logging]
    level = "DEBUG"
    structured = false

    [store]
    backend = "http"
    url = "http://localhost:8080"

    [sequence]
    cache_ttl_seconds = 10

    [batch]
    default_batch_size = 10
"""

import logging
import os
from dataclasses import dataclass, field
from importlib.metadata import PackageNotFoundError, version as get_package_version
from pathlib import Path
from typing import Any, Callable, Dict, Optional

try:
    import tomllib
except ImportError:
    import tomli as tomllib  # Python < 3.11 fallback

from tracker_mcp.core.logging_config import configure_logging

logger = logging.getLogger(__name__)

_VALID_BACKENDS = ("memory", "http")


def _get_version() -> str:
    try:
        return get_package_version("tracker-mcp")
    except PackageNotFoundError:
        return "0.1.0"


_PACKAGE_VERSION = _get_version()


def _parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"true", "1", "yes", "on"}


@dataclass
class StoreConfig:
    """Document store connection settings.

    Attributes:
        backend: "memory" (in-process) or "http" (REST document service)
        url: Base URL for the http backend
        token: Optional bearer token
        timeout: Request timeout in seconds
    """

    backend: str = "memory"
    url: str = ""
    token: Optional[str] = None
    timeout: float = 30.0

    @classmethod
    def from_toml_dict(cls, data: Dict[str, Any]) -> "StoreConfig":
        return cls(
            backend=_normalize_backend(str(data.get("backend", "memory"))),
            url=str(data.get("url", "")),
            token=data.get("token") or None,
            timeout=float(data.get("timeout", 30.0)),
        )


@dataclass
class SequenceConfig:
    """Issue-number counter settings."""

    cache_ttl_seconds: float = 10.0

    @classmethod
    def from_toml_dict(cls, data: Dict[str, Any]) -> "SequenceConfig":
        return cls(cache_ttl_seconds=float(data.get("cache_ttl_seconds", 10.0)))


@dataclass
class BatchConfig:
    """Bulk operation limits.

    Attributes:
        default_batch_size: Items per chunk when the caller gives none
        max_batch_size: Largest chunk a caller may request
        max_items: Largest number of items per bulk call
        chunk_delay_ms: Pause between chunks
    """

    default_batch_size: int = 10
    max_batch_size: int = 50
    max_items: int = 100
    chunk_delay_ms: int = 0

    @classmethod
    def from_toml_dict(cls, data: Dict[str, Any]) -> "BatchConfig":
        return cls(
            default_batch_size=int(data.get("default_batch_size", 10)),
            max_batch_size=int(data.get("max_batch_size", 50)),
            max_items=int(data.get("max_items", 100)),
            chunk_delay_ms=int(data.get("chunk_delay_ms", 0)),
        )


def _normalize_backend(value: str) -> str:
    normalized = value.strip().lower()
    if normalized not in _VALID_BACKENDS:
        logger.warning(
            "Invalid store backend '%s'. Falling back to 'memory'. Valid options: %s",
            value,
            ", ".join(_VALID_BACKENDS),
        )
        return "memory"
    return normalized


@dataclass
class ServerConfig:
    """Server configuration with support for env vars and TOML overrides."""

    # Logging configuration
    log_level: str = "INFO"
    structured_logging: bool = True

    # Server configuration
    server_name: str = "tracker-mcp"
    server_version: str = field(default_factory=lambda: _PACKAGE_VERSION)

    store: StoreConfig = field(default_factory=StoreConfig)
    sequence: SequenceConfig = field(default_factory=SequenceConfig)
    batch: BatchConfig = field(default_factory=BatchConfig)

    @classmethod
    def from_env(cls, config_file: Optional[str] = None) -> "ServerConfig":
        """
        Create configuration from environment variables and optional TOML file.

        Priority (highest to lowest):
        1. Environment variables
        2. TOML config file
        3. Default values
        """
        config = cls()

        toml_path = config_file or os.environ.get("TRACKER_MCP_CONFIG_FILE")
        if toml_path:
            config._load_toml(Path(toml_path))
        else:
            for default_path in ["tracker-mcp.toml", ".tracker-mcp.toml"]:
                if Path(default_path).exists():
                    config._load_toml(Path(default_path))
                    break

        config._load_env()
        return config

    def _load_toml(self, path: Path) -> None:
        """Load configuration from TOML file."""
        if not path.exists():
            logger.warning(f"Config file not found: {path}")
            return

        try:
            with open(path, "rb") as f:
                data = tomllib.load(f)

            if "logging" in data:
                log = data["logging"]
                if "level" in log:
                    self.log_level = str(log["level"]).upper()
                if "structured" in log:
                    self.structured_logging = _parse_bool(log["structured"])

            if "server" in data:
                srv = data["server"]
                if "name" in srv:
                    self.server_name = srv["name"]
                if "version" in srv:
                    self.server_version = srv["version"]

            if "store" in data:
                self.store = StoreConfig.from_toml_dict(data["store"])
            if "sequence" in data:
                self.sequence = SequenceConfig.from_toml_dict(data["sequence"])
            if "batch" in data:
                self.batch = BatchConfig.from_toml_dict(data["batch"])

        except (OSError, tomllib.TOMLDecodeError, TypeError, ValueError) as e:
            logger.error(f"Error loading config file {path}: {e}")

    def _load_env(self) -> None:
        """Load configuration from environment variables."""
        if level := os.environ.get("TRACKER_MCP_LOG_LEVEL"):
            self.log_level = level.upper()
        if structured := os.environ.get("TRACKER_MCP_STRUCTURED_LOGGING"):
            self.structured_logging = _parse_bool(structured)

        if backend := os.environ.get("TRACKER_MCP_STORE_BACKEND"):
            self.store.backend = _normalize_backend(backend)
        if url := os.environ.get("TRACKER_MCP_STORE_URL"):
            self.store.url = url
        if token := os.environ.get("TRACKER_MCP_STORE_TOKEN"):
            self.store.token = token

        self._env_number("TRACKER_MCP_STORE_TIMEOUT", self.store, "timeout", float)
        self._env_number(
            "TRACKER_MCP_SEQUENCE_CACHE_TTL", self.sequence, "cache_ttl_seconds", float
        )
        self._env_number("TRACKER_MCP_BATCH_SIZE", self.batch, "default_batch_size", int)
        self._env_number("TRACKER_MCP_MAX_BATCH_SIZE", self.batch, "max_batch_size", int)
        self._env_number("TRACKER_MCP_MAX_BULK_ITEMS", self.batch, "max_items", int)
        self._env_number("TRACKER_MCP_CHUNK_DELAY_MS", self.batch, "chunk_delay_ms", int)

    @staticmethod
    def _env_number(
        name: str, target: Any, attr: str, cast: Callable[[str], Any]
    ) -> None:
        raw = os.environ.get(name)
        if not raw:
            return
        try:
            setattr(target, attr, cast(raw))
        except ValueError:
            logger.warning(f"Ignoring invalid value for {name}: {raw!r}")

    def setup_logging(self) -> None:
        """Configure logging based on settings."""
        configure_logging(
            level=getattr(logging, self.log_level, logging.INFO),
            format="structured" if self.structured_logging else "human",
        )


# Global configuration instance
_config: Optional[ServerConfig] = None


def get_config() -> ServerConfig:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = ServerConfig.from_env()
    return _config


def set_config(config: ServerConfig) -> None:
    """Set the global configuration instance."""
    global _config
    _config = config
