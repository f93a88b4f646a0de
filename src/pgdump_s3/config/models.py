"""Pydantic models for pgdump-s3 configuration."""

from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter
from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


# ============================================================================
# Connection Models
# ============================================================================


class BackupTarget(BaseModel):
    """Connection parameters of the database being dumped or restored."""

    model_config = ConfigDict(frozen=True)

    host: str
    port: int = 5432
    user: str
    password: SecretStr
    database: str


class StorageConfig(BaseModel):
    """S3 connection and transfer settings."""

    model_config = ConfigDict(frozen=True)

    bucket: str
    region: str = "us-east-1"
    endpoint: str = ""
    use_ssl: bool = True
    access_key_id: str
    secret_access_key: SecretStr
    part_size_mb: int = 10
    upload_concurrency: int = 5

    @property
    def endpoint_url(self) -> str | None:
        """Endpoint with a scheme, or ``None`` for the AWS default."""
        if not self.endpoint:
            return None
        if "://" in self.endpoint:
            return self.endpoint
        scheme = "https" if self.use_ssl else "http"
        return f"{scheme}://{self.endpoint}"


# ============================================================================
# Application Settings
# ============================================================================


_LOG_LEVELS = {"debug", "info", "warn", "error"}


class Settings(BaseSettings):
    """Application settings read from the environment.

    Variable names match the field names in upper case (``DB_HOST``,
    ``S3_BUCKET``, ``CRON_SCHEDULE`` ...).
    """

    model_config = SettingsConfigDict(extra="ignore")

    # Database
    db_host: str = Field(min_length=1)
    db_port: int = Field(default=5432, ge=1, le=65535)
    db_user: str = Field(min_length=1)
    db_password: SecretStr
    db_name: str = Field(min_length=1)

    # Object storage
    s3_bucket: str = Field(min_length=1)
    s3_access_key_id: str = Field(min_length=1)
    s3_secret_access_key: SecretStr
    s3_region: str = "us-east-1"
    s3_endpoint: str = ""
    s3_ssl: bool = True
    s3_path_prefix: str = "backups"
    s3_part_size_mb: int = Field(default=10, ge=5)
    s3_upload_concurrency: int = Field(default=5, ge=1)

    # Schedule
    cron_schedule: str = "@daily"
    time_zone: str = "UTC"
    backup_on_shutdown: bool = False
    cancel_inflight_on_shutdown: bool = False

    # Dump / restore
    restore_key: str = ""
    restore_database: str = "template1"
    dump_infix: str = ""
    dump_suffix: str = ".sql.gz"
    dump_compression_level: int = Field(default=6, ge=1, le=9)
    pg_tools_dir_template: str = "/usr/libexec/postgresql{version}"

    # Logging
    log_level: str = "info"
    log_format: str = "json"

    @field_validator("time_zone")
    @classmethod
    def _check_time_zone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"unknown time zone: {value}") from e
        return value

    @field_validator("cron_schedule")
    @classmethod
    def _check_cron_schedule(cls, value: str) -> str:
        if not croniter.is_valid(value):
            raise ValueError(f"invalid cron expression: {value}")
        return value

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        # Unknown levels fall back to info
        level = value.strip().lower()
        if level == "warning":
            level = "warn"
        return level if level in _LOG_LEVELS else "info"

    @field_validator("log_format")
    @classmethod
    def _check_log_format(cls, value: str) -> str:
        fmt = value.strip().lower()
        if fmt not in ("json", "rich"):
            raise ValueError(f"log format must be 'json' or 'rich', got {value!r}")
        return fmt

    @field_validator("pg_tools_dir_template")
    @classmethod
    def _check_tools_template(cls, value: str) -> str:
        if "{version}" not in value:
            raise ValueError("pg_tools_dir_template must contain '{version}'")
        return value

    @property
    def tzinfo(self) -> ZoneInfo:
        return ZoneInfo(self.time_zone)

    @property
    def verbose(self) -> bool:
        """Mirror child-process stderr instead of buffering it."""
        return self.log_level == "debug"

    def to_target(self) -> BackupTarget:
        return BackupTarget(
            host=self.db_host,
            port=self.db_port,
            user=self.db_user,
            password=self.db_password,
            database=self.db_name,
        )

    def to_storage_config(self) -> StorageConfig:
        return StorageConfig(
            bucket=self.s3_bucket,
            region=self.s3_region,
            endpoint=self.s3_endpoint,
            use_ssl=self.s3_ssl,
            access_key_id=self.s3_access_key_id,
            secret_access_key=self.s3_secret_access_key,
            part_size_mb=self.s3_part_size_mb,
            upload_concurrency=self.s3_upload_concurrency,
        )
