"""
Configuration models for yamisskey-doctor.

Uses Pydantic settings for validation; every section reads its own
environment keys. One ``DoctorConfig`` is built per process by
``load_config`` and threaded explicitly into every component.
"""
import os
from pathlib import Path
from typing import Dict, Literal, Optional

from pydantic import AliasChoices, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from sqlalchemy.engine import URL

from yamisskey_doctor.exceptions import ConfigError

StorageType = Literal["r2", "linode"]


class StorageConfig(BaseSettings):
    """Backup storage (rclone remotes)."""
    model_config = SettingsConfigDict(extra="ignore", populate_by_name=True)

    storage_type: StorageType = Field(default="r2", validation_alias="STORAGE_TYPE")

    r2_remote: str = Field(default="r2", validation_alias="R2_REMOTE")
    r2_prefix: str = Field(default="backups", validation_alias="R2_PREFIX")

    linode_remote: str = Field(default="linode", validation_alias="LINODE_REMOTE")
    linode_bucket: str = Field(default="yamisskey-backup", validation_alias="LINODE_BUCKET")
    linode_prefix: str = Field(default="backups", validation_alias="LINODE_PREFIX")

    # Transient transfer failures are retried; a partial file is never reported as fetched
    transfer_retries: int = Field(default=2, ge=0, le=10, validation_alias="TRANSFER_RETRIES")
    transfer_retry_delay: float = Field(default=2.0, ge=0.0, le=60.0, validation_alias="TRANSFER_RETRY_DELAY")

    def remote_root(self) -> str:
        """rclone path of the directory holding backup objects."""
        if self.storage_type == "linode":
            return f"{self.linode_remote}:{self.linode_bucket}/{self.linode_prefix}"
        return f"{self.r2_remote}:{self.r2_prefix}"


class PostgresConfig(BaseSettings):
    """PostgreSQL connection settings."""
    model_config = SettingsConfigDict(extra="ignore", populate_by_name=True)

    host: str = Field(default="localhost", validation_alias="POSTGRES_HOST")
    port: int = Field(default=5432, ge=1, le=65535, validation_alias="POSTGRES_PORT")
    user: str = Field(default="misskey", validation_alias="POSTGRES_USER")
    password: Optional[str] = Field(
        default=None,
        repr=False,
        validation_alias=AliasChoices("PGPASSWORD", "POSTGRES_PASSWORD"),
    )
    database: str = Field(default="mk1", validation_alias="POSTGRES_DB")

    # Maintenance database used to create and drop scratch databases
    admin_database: str = Field(default="postgres", validation_alias="POSTGRES_ADMIN_DB")

    def url(self, database: Optional[str] = None) -> URL:
        """SQLAlchemy URL for ``database`` (the configured target by default)."""
        return URL.create(
            "postgresql+psycopg2",
            username=self.user,
            password=self.password,
            host=self.host,
            port=self.port,
            database=database or self.database,
        )

    def psql_env(self) -> Dict[str, str]:
        """Process environment for psql, with PGPASSWORD when configured."""
        env = dict(os.environ)
        if self.password:
            env["PGPASSWORD"] = self.password
        return env

    def describe(self, database: Optional[str] = None) -> str:
        """``user@host:port/db`` (never includes the password)."""
        return f"{self.user}@{self.host}:{self.port}/{database or self.database}"


class CheckConfig(BaseSettings):
    """Health check settings."""
    model_config = SettingsConfigDict(extra="ignore", populate_by_name=True)

    token: Optional[str] = Field(default=None, repr=False, validation_alias="MISSKEY_TOKEN")
    timeout_seconds: float = Field(default=5.0, gt=0, le=600, validation_alias="CHECK_TIMEOUT")
    handshake_timeout_seconds: float = Field(default=5.0, gt=0, le=60, validation_alias="STREAM_HANDSHAKE_TIMEOUT")
    queue_delayed_threshold: int = Field(default=1000, ge=0, validation_alias="QUEUE_DELAYED_THRESHOLD")

    @field_validator("token")
    @classmethod
    def _blank_token_is_none(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not v.strip():
            return None
        return v


class MonitoringConfig(BaseSettings):
    """Logging configuration."""
    model_config = SettingsConfigDict(extra="ignore", populate_by_name=True)

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="WARNING", validation_alias="LOG_LEVEL"
    )
    log_format: Literal["json", "text"] = Field(default="text", validation_alias="LOG_FORMAT")
    log_file: Optional[str] = Field(default=None, validation_alias="LOG_FILE")


class DoctorConfig(BaseSettings):
    """Main configuration class."""
    model_config = SettingsConfigDict(extra="ignore", populate_by_name=True)

    storage: StorageConfig = Field(default_factory=StorageConfig)
    postgres: PostgresConfig = Field(default_factory=PostgresConfig)
    check: CheckConfig = Field(default_factory=CheckConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)

    work_dir: Path = Field(default=Path("/tmp/yamisskey-restore"), validation_alias="WORK_DIR")

    # Per-call timeout for rclone/7z/psql. None keeps the tools' own behavior.
    tool_timeout_seconds: Optional[float] = Field(default=None, gt=0, validation_alias="TOOL_TIMEOUT")

    # Per-invocation flags, normally set from the command line
    dry_run: bool = Field(default=False, exclude=True)
    force: bool = Field(default=False, exclude=True)


def load_config() -> DoctorConfig:
    """
    Build the process configuration from the environment.

    Raises:
        ConfigError: If any value fails validation
    """
    try:
        return DoctorConfig()
    except ValidationError as e:
        raise ConfigError(f"invalid configuration: {e}") from e


def apply_cli_overrides(
    config: DoctorConfig,
    *,
    storage_type: Optional[str] = None,
    database: Optional[str] = None,
    timeout_seconds: Optional[float] = None,
    dry_run: Optional[bool] = None,
    force: Optional[bool] = None,
) -> DoctorConfig:
    """Return a copy of ``config`` with command-line flags applied."""
    storage = config.storage
    if storage_type is not None:
        if storage_type not in ("r2", "linode"):
            raise ConfigError(f"unknown storage type: {storage_type}")
        storage = storage.model_copy(update={"storage_type": storage_type})

    postgres = config.postgres
    if database:
        postgres = postgres.model_copy(update={"database": database})

    check = config.check
    if timeout_seconds is not None:
        if timeout_seconds <= 0:
            raise ConfigError("timeout must be positive")
        check = check.model_copy(update={"timeout_seconds": float(timeout_seconds)})

    update = {"storage": storage, "postgres": postgres, "check": check}
    if dry_run is not None:
        update["dry_run"] = dry_run
    if force is not None:
        update["force"] = force
    return config.model_copy(update=update)
