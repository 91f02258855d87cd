"""
Configuration management for the PITR server.

All configuration is done via environment variables - no config files inside containers.
This module provides typed, immutable configuration classes with validation.
Each component receives its section at construction; nothing reads the
environment deeper in the call chain.

Invariants:
    - All settings have sensible defaults for local development
    - Production deployments MUST set explicit values for storage and retention
    - Secrets are never logged or exposed in error messages

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
    - Deprecate settings by logging warnings but continuing to support them
    - Keep the environment variable names stable, schedulers depend on them
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from enum import Enum

from .errors import ConfigurationError

logger = logging.getLogger(__name__)


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


class StorageBackend(Enum):
    """Supported storage backends."""

    S3 = "s3"
    LOCAL = "local"
    MEMORY = "memory"


class EngineKind(Enum):
    """Supported database engines."""

    POSTGRES = "postgres"
    MEMORY = "memory"


@dataclass(frozen=True)
class S3Config:
    """S3 (or S3-compatible: MinIO, Hetzner Object Storage) configuration.

    Attributes:
        bucket: S3 bucket name
        region: AWS region
        endpoint_url: Custom endpoint URL (for MinIO / Hetzner)
        prefix: Key prefix under which the {timeline}/{kind}/{id} layout lives
        storage_class: Storage class for uploaded objects
        access_key_id: AWS access key ID (optional, uses AWS credential chain)
        secret_access_key: AWS secret access key (optional)
    """

    bucket: str = "pgpitr-backups"
    region: str = "us-east-1"
    endpoint_url: str | None = None
    prefix: str = "postgres"
    storage_class: str = "STANDARD_IA"
    access_key_id: str | None = None
    secret_access_key: str | None = None

    @classmethod
    def from_env(cls) -> S3Config:
        """Load configuration from environment variables."""
        return cls(
            bucket=os.getenv("S3_BUCKET", "pgpitr-backups"),
            region=os.getenv("S3_REGION", os.getenv("AWS_REGION", "us-east-1")),
            endpoint_url=os.getenv("S3_ENDPOINT"),
            prefix=os.getenv("S3_PREFIX", "postgres"),
            storage_class=os.getenv("S3_STORAGE_CLASS", "STANDARD_IA"),
            access_key_id=os.getenv("AWS_ACCESS_KEY_ID"),
            secret_access_key=os.getenv("AWS_SECRET_ACCESS_KEY"),
        )


@dataclass(frozen=True)
class LocalStorageConfig:
    """Filesystem storage configuration (NFS mounts, SFTP-backed volumes).

    Attributes:
        root: Directory under which artifacts are stored
    """

    root: str = "/var/lib/pgpitr/storage"

    @classmethod
    def from_env(cls) -> LocalStorageConfig:
        """Load configuration from environment variables."""
        return cls(root=os.getenv("LOCAL_STORAGE_ROOT", "/var/lib/pgpitr/storage"))


@dataclass(frozen=True)
class ReplicaConfig:
    """Cross-region destinations.

    Attributes:
        regions: Mapping of region name to bucket
        endpoint_url: Custom endpoint URL shared by all destinations
        storage_class: Storage class for replicated objects
    """

    regions: dict[str, str] = field(default_factory=dict)
    endpoint_url: str | None = None
    storage_class: str = "STANDARD_IA"

    @classmethod
    def from_env(cls) -> ReplicaConfig:
        """Load configuration from environment variables.

        CROSS_REGION_TARGETS is a comma-separated list of region=bucket pairs,
        e.g. "eu-west-1=backups-eu,us-west-2=backups-usw".
        """
        regions: dict[str, str] = {}
        raw = os.getenv("CROSS_REGION_TARGETS", "")
        for item in filter(None, (part.strip() for part in raw.split(","))):
            region, sep, bucket = item.partition("=")
            if not sep or not region or not bucket:
                raise ConfigurationError(f"Invalid CROSS_REGION_TARGETS entry: '{item}'")
            regions[region.strip()] = bucket.strip()
        return cls(
            regions=regions,
            endpoint_url=os.getenv("CROSS_REGION_ENDPOINT"),
            storage_class=os.getenv("CROSS_REGION_STORAGE_CLASS", "STANDARD_IA"),
        )


@dataclass(frozen=True)
class RetryConfig:
    """Retry policy shared by every component that touches storage.

    Attributes:
        max_attempts: Maximum attempts per operation (including the first)
        base_delay_ms: Delay before the first retry
        max_delay_ms: Upper bound for a single backoff delay
        multiplier: Exponential backoff multiplier
        operation_timeout_seconds: Timeout applied to every network operation
    """

    max_attempts: int = 5
    base_delay_ms: int = 200
    max_delay_ms: int = 30_000
    multiplier: float = 2.0
    operation_timeout_seconds: float = 300.0

    @classmethod
    def from_env(cls) -> RetryConfig:
        """Load configuration from environment variables."""
        return cls(
            max_attempts=int(os.getenv("RETRY_MAX_ATTEMPTS", "5")),
            base_delay_ms=int(os.getenv("RETRY_BASE_DELAY_MS", "200")),
            max_delay_ms=int(os.getenv("RETRY_MAX_DELAY_MS", "30000")),
            multiplier=float(os.getenv("RETRY_MULTIPLIER", "2.0")),
            operation_timeout_seconds=float(os.getenv("STORAGE_TIMEOUT_SECONDS", "300")),
        )


@dataclass(frozen=True)
class EngineConfig:
    """Database engine configuration.

    Attributes:
        kind: Engine implementation
        instance_id: Identifier of the production instance
        dsn: libpq connection string for psql
        data_dir: Production data directory
        bin_dir: Directory holding psql, pg_ctl and pg_waldump
        spool_dir: Directory where the archive_command hands off segments
        restore_root: Parent directory for fresh restore data directories
        sandbox_root: Parent directory for validation sandboxes
        sandbox_port: Port of the validation sandbox instance
        restore_port: Port of an instance being restored for promotion
        wal_segment_size: WAL segment size in bytes (must match the cluster)
    """

    kind: EngineKind = EngineKind.POSTGRES
    instance_id: str = "primary"
    dsn: str = "postgresql://postgres@localhost:5432/postgres"
    data_dir: str = "/var/lib/postgresql/data"
    bin_dir: str = "/usr/lib/postgresql/16/bin"
    spool_dir: str = "/var/lib/pgpitr/spool"
    restore_root: str = "/var/lib/pgpitr/restore"
    sandbox_root: str = "/var/lib/pgpitr/sandbox"
    sandbox_port: int = 55432
    restore_port: int = 55433
    wal_segment_size: int = 16 * 1024 * 1024

    @classmethod
    def from_env(cls) -> EngineConfig:
        """Load configuration from environment variables."""
        kind_str = os.getenv("ENGINE", "postgres").lower()
        try:
            kind = EngineKind(kind_str)
        except ValueError:
            raise ConfigurationError(f"Invalid ENGINE '{kind_str}'. Must be one of: postgres, memory")
        return cls(
            kind=kind,
            instance_id=os.getenv("INSTANCE_ID", "primary"),
            dsn=os.getenv("POSTGRES_DSN", "postgresql://postgres@localhost:5432/postgres"),
            data_dir=os.getenv("PGDATA", "/var/lib/postgresql/data"),
            bin_dir=os.getenv("PG_BIN_DIR", "/usr/lib/postgresql/16/bin"),
            spool_dir=os.getenv("ARCHIVE_SPOOL_DIR", "/var/lib/pgpitr/spool"),
            restore_root=os.getenv("RESTORE_ROOT", "/var/lib/pgpitr/restore"),
            sandbox_root=os.getenv("SANDBOX_ROOT", "/var/lib/pgpitr/sandbox"),
            sandbox_port=int(os.getenv("SANDBOX_PORT", "55432")),
            restore_port=int(os.getenv("RESTORE_PORT", "55433")),
            wal_segment_size=int(os.getenv("WAL_SEGMENT_SIZE", str(16 * 1024 * 1024))),
        )


@dataclass(frozen=True)
class CatalogConfig:
    """Backup catalog configuration.

    Attributes:
        path: SQLite file holding the catalog index
        busy_timeout_ms: SQLite busy timeout in milliseconds
        rebuild_if_missing: Rebuild from storage manifests when the file is absent
    """

    path: str = "/var/lib/pgpitr/catalog.db"
    busy_timeout_ms: int = 5000
    rebuild_if_missing: bool = True

    @classmethod
    def from_env(cls) -> CatalogConfig:
        """Load configuration from environment variables."""
        return cls(
            path=os.getenv("CATALOG_PATH", "/var/lib/pgpitr/catalog.db"),
            busy_timeout_ms=int(os.getenv("CATALOG_BUSY_TIMEOUT_MS", "5000")),
            rebuild_if_missing=_env_bool("CATALOG_REBUILD_IF_MISSING", "true"),
        )


@dataclass(frozen=True)
class RecoveryConfig:
    """Recovery engine configuration.

    Attributes:
        refetch_attempts: Re-downloads allowed for an artifact whose checksum does not match
        replay_timeout_seconds: How long WAL replay may take before the session fails
        max_finished_sessions: Finished sessions kept for status lookups
    """

    refetch_attempts: int = 1
    replay_timeout_seconds: float = 3600.0
    max_finished_sessions: int = 100

    @classmethod
    def from_env(cls) -> RecoveryConfig:
        """Load configuration from environment variables."""
        return cls(
            refetch_attempts=int(os.getenv("RECOVERY_REFETCH_ATTEMPTS", "1")),
            replay_timeout_seconds=float(os.getenv("RECOVERY_REPLAY_TIMEOUT_SECONDS", "3600")),
            max_finished_sessions=int(os.getenv("RECOVERY_MAX_FINISHED_SESSIONS", "100")),
        )


@dataclass(frozen=True)
class ArchiverConfig:
    """WAL archiver configuration.

    Attributes:
        enabled: Whether the archiver worker runs
        max_parallel_uploads: Maximum concurrent segment uploads
    """

    enabled: bool = True
    max_parallel_uploads: int = 4

    @classmethod
    def from_env(cls) -> ArchiverConfig:
        """Load configuration from environment variables."""
        return cls(
            enabled=_env_bool("ARCHIVER_ENABLED", "true"),
            max_parallel_uploads=int(os.getenv("ARCHIVE_MAX_PARALLEL", "4")),
        )


@dataclass(frozen=True)
class BaseBackupConfig:
    """Base backup manager configuration.

    Attributes:
        schedule_enabled: Whether the built-in schedule loop runs
        interval_seconds: Interval between scheduled backups
        retention_count: Keep at least this many most recent complete backups
        retention_age_days: Keep every complete backup newer than this
        wal_wait_timeout_seconds: How long to wait for the backup's WAL to be archived
    """

    schedule_enabled: bool = False
    interval_seconds: int = 86400
    retention_count: int = 7
    retention_age_days: int = 30
    wal_wait_timeout_seconds: float = 600.0

    @classmethod
    def from_env(cls) -> BaseBackupConfig:
        """Load configuration from environment variables."""
        return cls(
            schedule_enabled=_env_bool("BACKUP_SCHEDULE_ENABLED", "false"),
            interval_seconds=int(os.getenv("BACKUP_INTERVAL_SECONDS", "86400")),
            retention_count=int(os.getenv("BACKUP_RETENTION_COUNT", "7")),
            retention_age_days=int(os.getenv("BACKUP_RETENTION_DAYS", "30")),
            wal_wait_timeout_seconds=float(os.getenv("BACKUP_WAL_WAIT_SECONDS", "600")),
        )


@dataclass(frozen=True)
class ValidatorConfig:
    """Validator configuration.

    Attributes:
        schedule_enabled: Whether the built-in schedule loop runs
        interval_seconds: Interval between validations (weekly by default)
        time_budget_seconds: Hard limit for one validation run
        spot_check_count: Number of artifacts re-read for checksum spot checks
    """

    schedule_enabled: bool = False
    interval_seconds: int = 7 * 86400
    time_budget_seconds: float = 3600.0
    spot_check_count: int = 5

    @classmethod
    def from_env(cls) -> ValidatorConfig:
        """Load configuration from environment variables."""
        return cls(
            schedule_enabled=_env_bool("VALIDATION_SCHEDULE_ENABLED", "false"),
            interval_seconds=int(os.getenv("VALIDATION_INTERVAL_SECONDS", str(7 * 86400))),
            time_budget_seconds=float(os.getenv("VALIDATION_TIME_BUDGET_SECONDS", "3600")),
            spot_check_count=int(os.getenv("VALIDATION_SPOT_CHECKS", "5")),
        )


@dataclass(frozen=True)
class ReplicatorConfig:
    """Cross-region replicator configuration.

    Attributes:
        schedule_enabled: Whether the built-in schedule loop runs
        interval_seconds: Interval between sync cycles
        workers: Size of the copy worker pool
        alert_after_failures: Consecutive failures before a lag alert
        mirror_deletes: Remove pruned artifacts from destinations
    """

    schedule_enabled: bool = False
    interval_seconds: int = 3600
    workers: int = 4
    alert_after_failures: int = 3
    mirror_deletes: bool = True

    @classmethod
    def from_env(cls) -> ReplicatorConfig:
        """Load configuration from environment variables."""
        return cls(
            schedule_enabled=_env_bool("SYNC_SCHEDULE_ENABLED", "false"),
            interval_seconds=int(os.getenv("SYNC_INTERVAL_SECONDS", "3600")),
            workers=int(os.getenv("SYNC_WORKERS", "4")),
            alert_after_failures=int(os.getenv("SYNC_ALERT_AFTER_FAILURES", "3")),
            mirror_deletes=_env_bool("SYNC_MIRROR_DELETES", "true"),
        )


@dataclass(frozen=True)
class HttpConfig:
    """Trigger API configuration.

    Attributes:
        enabled: Whether the HTTP trigger API is served
        host: Host to bind to
        port: Port to listen on
    """

    enabled: bool = True
    host: str = "127.0.0.1"
    port: int = 8085

    @classmethod
    def from_env(cls) -> HttpConfig:
        """Load configuration from environment variables."""
        return cls(
            enabled=_env_bool("HTTP_ENABLED", "true"),
            host=os.getenv("HTTP_HOST", "127.0.0.1"),
            port=int(os.getenv("HTTP_PORT", "8085")),
        )


@dataclass(frozen=True)
class NotificationConfig:
    """Notification hand-off to the external alerting collaborator.

    Attributes:
        webhook_url: Endpoint receiving JSON events (None = log only)
        min_severity: Lowest severity forwarded to the webhook
        timeout_seconds: Webhook request timeout
    """

    webhook_url: str | None = None
    min_severity: str = "warning"
    timeout_seconds: float = 10.0

    @classmethod
    def from_env(cls) -> NotificationConfig:
        """Load configuration from environment variables."""
        return cls(
            webhook_url=os.getenv("NOTIFY_WEBHOOK_URL"),
            min_severity=os.getenv("NOTIFY_MIN_SEVERITY", "warning"),
            timeout_seconds=float(os.getenv("NOTIFY_TIMEOUT_SECONDS", "10")),
        )


@dataclass(frozen=True)
class ObservabilityConfig:
    """Observability and logging configuration.

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
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "json"),
        )


@dataclass(frozen=True)
class ServerConfig:
    """Complete server configuration.

    This aggregates all configuration sections and provides validation.

    Attributes:
        storage_backend: Which storage backend to use
        s3: S3 configuration (if storage_backend is S3)
        local: Local storage configuration (if storage_backend is LOCAL)
        replicas: Cross-region destinations
        retry: Shared retry policy
        engine: Database engine configuration
        catalog: Catalog configuration
        recovery: Recovery configuration
        archiver: Archiver configuration
        backup: Base backup and retention configuration
        validator: Validator configuration
        replicator: Replicator configuration
        http: Trigger API configuration
        notifications: Notification configuration
        observability: Observability configuration
    """

    storage_backend: StorageBackend = StorageBackend.S3
    s3: S3Config = field(default_factory=S3Config)
    local: LocalStorageConfig = field(default_factory=LocalStorageConfig)
    replicas: ReplicaConfig = field(default_factory=ReplicaConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    engine: EngineConfig = field(default_factory=EngineConfig)
    catalog: CatalogConfig = field(default_factory=CatalogConfig)
    recovery: RecoveryConfig = field(default_factory=RecoveryConfig)
    archiver: ArchiverConfig = field(default_factory=ArchiverConfig)
    backup: BaseBackupConfig = field(default_factory=BaseBackupConfig)
    validator: ValidatorConfig = field(default_factory=ValidatorConfig)
    replicator: ReplicatorConfig = field(default_factory=ReplicatorConfig)
    http: HttpConfig = field(default_factory=HttpConfig)
    notifications: NotificationConfig = field(default_factory=NotificationConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> ServerConfig:
        """Load complete configuration from environment variables.

        Returns:
            ServerConfig with all sections populated from environment.

        Raises:
            ConfigurationError: If required configuration is missing or invalid.
        """
        backend_str = os.getenv("STORAGE_BACKEND", "s3").lower()
        try:
            storage_backend = StorageBackend(backend_str)
        except ValueError:
            raise ConfigurationError(
                f"Invalid STORAGE_BACKEND '{backend_str}'. Must be one of: s3, local, memory"
            )

        config = cls(
            storage_backend=storage_backend,
            s3=S3Config.from_env(),
            local=LocalStorageConfig.from_env(),
            replicas=ReplicaConfig.from_env(),
            retry=RetryConfig.from_env(),
            engine=EngineConfig.from_env(),
            catalog=CatalogConfig.from_env(),
            recovery=RecoveryConfig.from_env(),
            archiver=ArchiverConfig.from_env(),
            backup=BaseBackupConfig.from_env(),
            validator=ValidatorConfig.from_env(),
            replicator=ReplicatorConfig.from_env(),
            http=HttpConfig.from_env(),
            notifications=NotificationConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )

        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ConfigurationError: If configuration is invalid.
        """
        if self.storage_backend == StorageBackend.S3 and not self.s3.bucket:
            raise ConfigurationError("S3_BUCKET is required when STORAGE_BACKEND=s3")
        if self.storage_backend == StorageBackend.LOCAL and not self.local.root:
            raise ConfigurationError("LOCAL_STORAGE_ROOT is required when STORAGE_BACKEND=local")

        if self.backup.retention_count < 1:
            raise ConfigurationError("BACKUP_RETENTION_COUNT must be at least 1")
        if self.backup.retention_age_days < 0:
            raise ConfigurationError("BACKUP_RETENTION_DAYS must not be negative")
        if self.retry.max_attempts < 1:
            raise ConfigurationError("RETRY_MAX_ATTEMPTS must be at least 1")
        if self.archiver.max_parallel_uploads < 1:
            raise ConfigurationError("ARCHIVE_MAX_PARALLEL must be at least 1")
        if self.recovery.refetch_attempts < 0:
            raise ConfigurationError("RECOVERY_REFETCH_ATTEMPTS must not be negative")
        if self.recovery.max_finished_sessions < 0:
            raise ConfigurationError("RECOVERY_MAX_FINISHED_SESSIONS must not be negative")
        if self.replicator.workers < 1:
            raise ConfigurationError("SYNC_WORKERS must be at least 1")

        if self.storage_backend == StorageBackend.MEMORY:
            logger.warning("STORAGE_BACKEND=memory keeps artifacts in process memory only")

        if not os.path.exists(os.path.dirname(self.catalog.path) or "."):
            logger.warning(
                f"Catalog directory does not exist: {self.catalog.path}. "
                "It will be created on startup."
            )

    def log_config(self) -> None:
        """Log configuration (redacting secrets)."""
        logger.info(
            "Server configuration loaded",
            extra={
                "storage_backend": self.storage_backend.value,
                "s3_bucket": self.s3.bucket
                if self.storage_backend == StorageBackend.S3
                else None,
                "s3_endpoint": self.s3.endpoint_url,
                "local_root": self.local.root
                if self.storage_backend == StorageBackend.LOCAL
                else None,
                "replica_regions": sorted(self.replicas.regions),
                "engine": self.engine.kind.value,
                "instance_id": self.engine.instance_id,
                "catalog_path": self.catalog.path,
                "retention_count": self.backup.retention_count,
                "retention_age_days": self.backup.retention_age_days,
                "http_enabled": self.http.enabled,
                "webhook_configured": self.notifications.webhook_url is not None,
                "log_level": self.observability.log_level,
            },
        )
