"""
Configuration management for MDB_CASBIN_ADAPTER.

Adapters can be configured with direct parameters, with an AdapterConfig, or
purely from environment variables.
"""

import os

from .constants import (
    DEFAULT_COLLECTION_NAME,
    DEFAULT_MONGO_URI,
    DEFAULT_SERVER_SELECTION_TIMEOUT_MS,
    DEFAULT_TIMEOUT_SECONDS,
    MAX_COLLECTION_NAME_LENGTH,
    MIN_SERVER_SELECTION_TIMEOUT_MS,
    RESERVED_COLLECTION_PREFIX,
)
from .exceptions import ConfigurationError


def _env_flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


class AdapterConfig:
    """
    Policy adapter configuration.

    Explicit arguments win over environment variables, which win over the
    built-in defaults.

    Example:
        # Using environment variables
        config = AdapterConfig()
        adapter = Adapter(config=config)

        # Or using direct parameters
        adapter = Adapter("mongodb://localhost:27017", db_name="authz")
    """

    def __init__(
        self,
        mongo_uri: str | None = None,
        db_name: str | None = None,
        collection_name: str | None = None,
        timeout: float | None = None,
        filtered: bool | None = None,
        server_selection_timeout_ms: int | None = None,
    ):
        """
        Initialize configuration.

        Args:
            mongo_uri: MongoDB connection URI (defaults to CASBIN_MONGO_URI, then MONGO_URI)
            db_name: Database name (defaults to CASBIN_DB_NAME, then the URI's database,
                then "casbin")
            collection_name: Rule collection (defaults to CASBIN_COLLECTION_NAME or "casbin_rule")
            timeout: Per-operation timeout in seconds (defaults to CASBIN_ADAPTER_TIMEOUT or 30)
            filtered: Start in filtered mode (defaults to CASBIN_ADAPTER_FILTERED or false)
            server_selection_timeout_ms: Server selection timeout in ms (defaults to 5000)
        """
        self.mongo_uri = mongo_uri or os.getenv(
            "CASBIN_MONGO_URI", os.getenv("MONGO_URI", DEFAULT_MONGO_URI)
        )
        self.db_name = db_name or os.getenv("CASBIN_DB_NAME") or None
        self.collection_name = collection_name or os.getenv(
            "CASBIN_COLLECTION_NAME", DEFAULT_COLLECTION_NAME
        )
        if timeout is None:
            timeout = float(os.getenv("CASBIN_ADAPTER_TIMEOUT", str(DEFAULT_TIMEOUT_SECONDS)))
        self.timeout = timeout
        self.filtered = _env_flag("CASBIN_ADAPTER_FILTERED") if filtered is None else filtered
        self.server_selection_timeout_ms = server_selection_timeout_ms or int(
            os.getenv(
                "MONGO_SERVER_SELECTION_TIMEOUT_MS", str(DEFAULT_SERVER_SELECTION_TIMEOUT_MS)
            )
        )

    def with_overrides(self, **overrides) -> "AdapterConfig":
        """
        Return a copy with the given non-None values replacing this config's.

        Example:
            config.with_overrides(db_name="authz", timeout=None)  # timeout kept
        """
        values = {
            "mongo_uri": self.mongo_uri,
            "db_name": self.db_name,
            "collection_name": self.collection_name,
            "timeout": self.timeout,
            "filtered": self.filtered,
            "server_selection_timeout_ms": self.server_selection_timeout_ms,
        }
        unknown = set(overrides) - set(values)
        if unknown:
            raise ConfigurationError(
                f"Unknown adapter configuration keys: {sorted(unknown)}",
                config_key=", ".join(sorted(unknown)),
            )
        values.update({k: v for k, v in overrides.items() if v is not None})
        return AdapterConfig(**values)

    def validate(self) -> None:
        """
        Validate configuration values.

        Raises:
            ConfigurationError: If required configuration is missing or invalid
        """
        if not self.mongo_uri:
            raise ConfigurationError(
                "mongo_uri is required (set CASBIN_MONGO_URI or pass it directly)",
                config_key="mongo_uri",
            )

        if self.timeout <= 0:
            raise ConfigurationError(
                f"timeout must be > 0, got {self.timeout}",
                config_key="timeout",
                config_value=self.timeout,
            )

        if self.server_selection_timeout_ms < MIN_SERVER_SELECTION_TIMEOUT_MS:
            raise ConfigurationError(
                f"server_selection_timeout_ms must be >= {MIN_SERVER_SELECTION_TIMEOUT_MS}, "
                f"got {self.server_selection_timeout_ms}",
                config_key="server_selection_timeout_ms",
                config_value=self.server_selection_timeout_ms,
            )

        name = self.collection_name
        if not name or len(name) > MAX_COLLECTION_NAME_LENGTH:
            raise ConfigurationError(
                f"collection_name must be 1-{MAX_COLLECTION_NAME_LENGTH} characters",
                config_key="collection_name",
                config_value=name,
            )
        if name.startswith(RESERVED_COLLECTION_PREFIX) or "$" in name:
            raise ConfigurationError(
                f"collection_name '{name}' is reserved or contains '$'",
                config_key="collection_name",
                config_value=name,
            )

    def __repr__(self) -> str:
        return (
            f"AdapterConfig(db_name={self.db_name!r}, collection_name={self.collection_name!r}, "
            f"timeout={self.timeout}, filtered={self.filtered})"
        )
