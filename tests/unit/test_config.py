"""
Unit tests for configuration loading.

Tests cover:
- Defaults for local development
- Environment variable parsing per section
- Validation errors
"""

import pytest

from pgpitr.pitr_server.config import (
    BaseBackupConfig,
    EngineKind,
    RecoveryConfig,
    ReplicaConfig,
    RetryConfig,
    ServerConfig,
    StorageBackend,
)
from pgpitr.pitr_server.errors import ConfigurationError


class TestServerConfig:
    """Tests for ServerConfig.from_env() and validate()."""

    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("STORAGE_BACKEND", raising=False)
        monkeypatch.delenv("CROSS_REGION_TARGETS", raising=False)
        config = ServerConfig()

        assert config.storage_backend == StorageBackend.S3
        assert config.engine.kind == EngineKind.POSTGRES
        assert config.backup.retention_count == 7
        assert config.recovery.refetch_attempts == 1
        assert config.recovery.max_finished_sessions == 100
        assert config.http.host == "127.0.0.1"
        assert config.replicas.regions == {}

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("STORAGE_BACKEND", "local")
        monkeypatch.setenv("LOCAL_STORAGE_ROOT", "/srv/backups")
        monkeypatch.setenv("ENGINE", "memory")
        monkeypatch.setenv("INSTANCE_ID", "orders-db")
        monkeypatch.setenv("CATALOG_PATH", "/tmp/catalog.db")
        monkeypatch.setenv("BACKUP_RETENTION_COUNT", "3")
        monkeypatch.setenv("RETRY_MAX_ATTEMPTS", "9")
        monkeypatch.setenv("HTTP_PORT", "9000")
        monkeypatch.setenv("NOTIFY_WEBHOOK_URL", "http://alerts.local/hook")
        monkeypatch.setenv("RECOVERY_MAX_FINISHED_SESSIONS", "25")

        config = ServerConfig.from_env()

        assert config.storage_backend == StorageBackend.LOCAL
        assert config.local.root == "/srv/backups"
        assert config.engine.kind == EngineKind.MEMORY
        assert config.engine.instance_id == "orders-db"
        assert config.catalog.path == "/tmp/catalog.db"
        assert config.backup.retention_count == 3
        assert config.retry.max_attempts == 9
        assert config.http.port == 9000
        assert config.notifications.webhook_url == "http://alerts.local/hook"
        assert config.recovery.max_finished_sessions == 25

    def test_invalid_storage_backend(self, monkeypatch):
        monkeypatch.setenv("STORAGE_BACKEND", "ftp")
        with pytest.raises(ConfigurationError, match="STORAGE_BACKEND"):
            ServerConfig.from_env()

    def test_invalid_engine(self, monkeypatch):
        monkeypatch.setenv("STORAGE_BACKEND", "memory")
        monkeypatch.setenv("ENGINE", "oracle")
        with pytest.raises(ConfigurationError, match="ENGINE"):
            ServerConfig.from_env()

    def test_retention_count_must_be_positive(self):
        config = ServerConfig(backup=BaseBackupConfig(retention_count=0))
        with pytest.raises(ConfigurationError, match="BACKUP_RETENTION_COUNT"):
            config.validate()

    def test_retry_attempts_must_be_positive(self):
        config = ServerConfig(retry=RetryConfig(max_attempts=0))
        with pytest.raises(ConfigurationError, match="RETRY_MAX_ATTEMPTS"):
            config.validate()

    def test_finished_session_cap_not_negative(self):
        config = ServerConfig(recovery=RecoveryConfig(max_finished_sessions=-1))
        with pytest.raises(ConfigurationError, match="RECOVERY_MAX_FINISHED_SESSIONS"):
            config.validate()

    def test_config_is_immutable(self):
        config = ServerConfig()
        with pytest.raises(AttributeError):
            config.storage_backend = StorageBackend.MEMORY


class TestReplicaConfig:
    """CROSS_REGION_TARGETS parsing."""

    def test_parses_pairs(self, monkeypatch):
        monkeypatch.setenv("CROSS_REGION_TARGETS", "eu-west-1=backups-eu, us-west-2=backups-usw")

        config = ReplicaConfig.from_env()

        assert config.regions == {"eu-west-1": "backups-eu", "us-west-2": "backups-usw"}

    def test_empty(self, monkeypatch):
        monkeypatch.setenv("CROSS_REGION_TARGETS", "")
        assert ReplicaConfig.from_env().regions == {}

    @pytest.mark.parametrize("raw", ["eu-west-1", "=bucket", "eu-west-1="])
    def test_invalid_entry(self, monkeypatch, raw):
        monkeypatch.setenv("CROSS_REGION_TARGETS", raw)
        with pytest.raises(ConfigurationError):
            ReplicaConfig.from_env()
