"""
Configuration management for EavDB.

All configuration is done via environment variables prefixed with
``EAVDB_``. This module provides typed configuration classes with
validation.

Invariants:
    - All settings have sensible defaults for local development
    - column_count and value_base_length must not change for an
      existing database file (slots and truncation depend on them)

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
    - Never change the default column_count or value_base_length
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


@dataclass(frozen=True)
class StorageConfig:
    """SQLite storage configuration.

    Attributes:
        path: SQLite database file shared by every process
        wal_mode: SQLite WAL mode enabled
        busy_timeout_ms: SQLite busy timeout in milliseconds
        max_retries: Retries for a transaction failing on lock contention
        retry_backoff_ms: Initial backoff, doubled per retry
        retry_backoff_max_ms: Upper bound for a single backoff
    """

    path: str = "./var/eavdb.sqlite3"
    wal_mode: bool = True
    busy_timeout_ms: int = 5000
    max_retries: int = 5
    retry_backoff_ms: int = 20
    retry_backoff_max_ms: int = 1000

    @classmethod
    def from_env(cls) -> StorageConfig:
        """Load configuration from environment variables."""
        return cls(
            path=os.getenv("EAVDB_STORAGE_PATH", "./var/eavdb.sqlite3"),
            wal_mode=_env_bool("EAVDB_SQLITE_WAL_MODE", "true"),
            busy_timeout_ms=int(os.getenv("EAVDB_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            max_retries=int(os.getenv("EAVDB_STORAGE_MAX_RETRIES", "5")),
            retry_backoff_ms=int(os.getenv("EAVDB_STORAGE_RETRY_BACKOFF_MS", "20")),
            retry_backoff_max_ms=int(os.getenv("EAVDB_STORAGE_RETRY_BACKOFF_MAX_MS", "1000")),
        )


@dataclass(frozen=True)
class ModelConfig:
    """Wide table shape.

    Attributes:
        column_count: Number of (t_i, v_i) column pairs per entity table
        value_base_length: Max characters stored in a v_i column
        index_top_k: Most used where/order columns indexed on table creation
    """

    column_count: int = 64
    value_base_length: int = 255
    index_top_k: int = 8

    @classmethod
    def from_env(cls) -> ModelConfig:
        """Load configuration from environment variables."""
        return cls(
            column_count=int(os.getenv("EAVDB_COLUMN_COUNT", "64")),
            value_base_length=int(os.getenv("EAVDB_VALUE_BASE_LENGTH", "255")),
            index_top_k=int(os.getenv("EAVDB_INDEX_TOP_K", "8")),
        )


@dataclass(frozen=True)
class CacheConfig:
    """In-process cache sizes and TTLs.

    Attributes:
        resource_max: Max cached resource names
        resource_ttl_seconds: TTL of a cached resource
        attribute_ttl_seconds: TTL of a cached attribute list
        entity_max: Max cached entity rows per resource kind
        entity_ttl_seconds: TTL of a cached entity row
    """

    resource_max: int = 1000
    resource_ttl_seconds: float = 300.0
    attribute_ttl_seconds: float = 2.0
    entity_max: int = 500
    entity_ttl_seconds: float = 60.0

    @classmethod
    def from_env(cls) -> CacheConfig:
        """Load configuration from environment variables."""
        return cls(
            resource_max=int(os.getenv("EAVDB_RESOURCE_CACHE_MAX", "1000")),
            resource_ttl_seconds=float(os.getenv("EAVDB_RESOURCE_CACHE_TTL", "300")),
            attribute_ttl_seconds=float(os.getenv("EAVDB_ATTRIBUTE_CACHE_TTL", "2")),
            entity_max=int(os.getenv("EAVDB_ENTITY_CACHE_MAX", "500")),
            entity_ttl_seconds=float(os.getenv("EAVDB_ENTITY_CACHE_TTL", "60")),
        )


@dataclass(frozen=True)
class LockConfig:
    """Named lock configuration.

    Attributes:
        try_max: Acquisition attempts before LockTimeout
        try_interval_ms: Wait between attempts
        unlock_on_start: Clear every lock when the driver connects.
            Enable it only on the process that starts the group, or run
            ``eavdb-admin unlock-all`` before starting; other processes
            may legitimately hold locks when a later one connects.
    """

    try_max: int = 10
    try_interval_ms: int = 300
    unlock_on_start: bool = False

    @classmethod
    def from_env(cls) -> LockConfig:
        """Load configuration from environment variables."""
        return cls(
            try_max=int(os.getenv("EAVDB_LOCK_TRY_MAX", "10")),
            try_interval_ms=int(os.getenv("EAVDB_LOCK_TRY_INTERVAL_MS", "300")),
            unlock_on_start=_env_bool("EAVDB_UNLOCK_ON_START", "false"),
        )


@dataclass(frozen=True)
class UsageConfig:
    """Column usage tracking.

    Attributes:
        enabled: Whether filter/sort usage is recorded
        flush_interval_seconds: Interval between background flushes
    """

    enabled: bool = True
    flush_interval_seconds: float = 30.0

    @classmethod
    def from_env(cls) -> UsageConfig:
        """Load configuration from environment variables."""
        return cls(
            enabled=_env_bool("EAVDB_USAGE_ENABLED", "true"),
            flush_interval_seconds=float(os.getenv("EAVDB_USAGE_FLUSH_SECONDS", "30")),
        )


@dataclass(frozen=True)
class UpdateConfig:
    """Update ordering.

    Attributes:
        serialize_updates: Run updates of the same entity id one at a time
            in this process. Off by default: concurrent updates are
            last-write-wins per column.
        sequential_timeout_seconds: Max wait for a queued update
    """

    serialize_updates: bool = False
    sequential_timeout_seconds: float = 60.0

    @classmethod
    def from_env(cls) -> UpdateConfig:
        """Load configuration from environment variables."""
        return cls(
            serialize_updates=_env_bool("EAVDB_SERIALIZE_UPDATES", "false"),
            sequential_timeout_seconds=float(os.getenv("EAVDB_SEQUENTIAL_TIMEOUT", "60")),
        )


@dataclass(frozen=True)
class ObservabilityConfig:
    """Logging configuration.

    Attributes:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: Log format (json, text)
    """

    log_level: str = "INFO"
    log_format: str = "json"

    @classmethod
    def from_env(cls) -> ObservabilityConfig:
        """Load configuration from environment variables."""
        return cls(
            log_level=os.getenv("EAVDB_LOG_LEVEL", "INFO"),
            log_format=os.getenv("EAVDB_LOG_FORMAT", "json"),
        )


@dataclass
class DriverConfig:
    """Complete driver configuration.

    Attributes:
        storage: SQLite storage configuration
        model: Wide table shape
        cache: Cache sizes and TTLs
        lock: Named lock configuration
        usage: Usage tracking configuration
        update: Update ordering configuration
        observability: Logging configuration
    """

    storage: StorageConfig = field(default_factory=StorageConfig)
    model: ModelConfig = field(default_factory=ModelConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    lock: LockConfig = field(default_factory=LockConfig)
    usage: UsageConfig = field(default_factory=UsageConfig)
    update: UpdateConfig = field(default_factory=UpdateConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> DriverConfig:
        """Load complete configuration from environment variables.

        Returns:
            DriverConfig with all sections populated from environment.

        Raises:
            ValueError: If configuration is invalid.
        """
        config = cls(
            storage=StorageConfig.from_env(),
            model=ModelConfig.from_env(),
            cache=CacheConfig.from_env(),
            lock=LockConfig.from_env(),
            usage=UsageConfig.from_env(),
            update=UpdateConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )
        config.validate()
        return config

    @classmethod
    def for_path(cls, path: str, **sections) -> DriverConfig:
        """Build a configuration with defaults for a given database file."""
        config = cls(storage=StorageConfig(path=path), **sections)
        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        if not self.storage.path:
            raise ValueError("EAVDB_STORAGE_PATH is required")
        # Every operation opens its own connection, so the file must be shared
        if self.storage.path == ":memory:":
            raise ValueError("EAVDB_STORAGE_PATH must name a file, not :memory:")
        if self.storage.max_retries < 0:
            raise ValueError("EAVDB_STORAGE_MAX_RETRIES must not be negative")
        if self.model.column_count < 1:
            raise ValueError("EAVDB_COLUMN_COUNT must be at least 1")
        # A padded number must fit the base column
        if self.model.value_base_length < 64:
            raise ValueError("EAVDB_VALUE_BASE_LENGTH must be at least 64")
        if self.model.index_top_k < 0:
            raise ValueError("EAVDB_INDEX_TOP_K must not be negative")
        if self.lock.try_max < 1:
            raise ValueError("EAVDB_LOCK_TRY_MAX must be at least 1")
        if self.lock.try_interval_ms <= 0:
            raise ValueError("EAVDB_LOCK_TRY_INTERVAL_MS must be positive")
        if self.usage.flush_interval_seconds <= 0:
            raise ValueError("EAVDB_USAGE_FLUSH_SECONDS must be positive")

        if not os.path.exists(
            os.path.dirname(os.path.abspath(self.storage.path))
        ):
            logger.warning(
                f"Storage directory does not exist: {self.storage.path}. "
                "It will be created on connect."
            )

    def log_config(self) -> None:
        """Log configuration."""
        logger.info(
            "Driver configuration loaded",
            extra={
                "storage_path": self.storage.path,
                "wal_mode": self.storage.wal_mode,
                "column_count": self.model.column_count,
                "value_base_length": self.model.value_base_length,
                "lock_try_max": self.lock.try_max,
                "usage_enabled": self.usage.enabled,
                "serialize_updates": self.update.serialize_updates,
                "log_level": self.observability.log_level,
            },
        )
