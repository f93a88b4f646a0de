"""Tests for settings loading and validation."""

import pytest

from pgdump_s3.config.loader import load_settings
from pgdump_s3.config.models import StorageConfig
from pgdump_s3.errors import StartupConfigurationError

REQUIRED_ENV = {
    "DB_HOST": "db.internal",
    "DB_USER": "backup",
    "DB_PASSWORD": "s3cret",
    "DB_NAME": "appdb",
    "S3_BUCKET": "dumps",
    "S3_ACCESS_KEY_ID": "AKIA123",
    "S3_SECRET_ACCESS_KEY": "secret-key",
}

OPTIONAL_ENV = [
    "DB_PORT", "S3_REGION", "S3_ENDPOINT", "S3_SSL", "S3_PATH_PREFIX",
    "S3_PART_SIZE_MB", "S3_UPLOAD_CONCURRENCY", "CRON_SCHEDULE", "TIME_ZONE",
    "BACKUP_ON_SHUTDOWN", "CANCEL_INFLIGHT_ON_SHUTDOWN", "RESTORE_KEY",
    "RESTORE_DATABASE", "DUMP_INFIX", "DUMP_SUFFIX", "DUMP_COMPRESSION_LEVEL",
    "PG_TOOLS_DIR_TEMPLATE", "LOG_LEVEL", "LOG_FORMAT",
]


@pytest.fixture
def env(monkeypatch, tmp_path):
    """Required variables set, everything else unset, cwd without a .env."""
    monkeypatch.chdir(tmp_path)
    for name in OPTIONAL_ENV:
        monkeypatch.delenv(name, raising=False)
    for name, value in REQUIRED_ENV.items():
        monkeypatch.setenv(name, value)
    return monkeypatch


class TestDefaults:
    def test_defaults(self, env):
        settings = load_settings()

        assert settings.db_port == 5432
        assert settings.s3_region == "us-east-1"
        assert settings.s3_path_prefix == "backups"
        assert settings.cron_schedule == "@daily"
        assert settings.time_zone == "UTC"
        assert settings.dump_suffix == ".sql.gz"
        assert settings.dump_compression_level == 6
        assert settings.restore_database == "template1"
        assert settings.restore_key == ""
        assert settings.log_level == "info"
        assert settings.log_format == "json"
        assert settings.backup_on_shutdown is False

    def test_password_is_secret(self, env):
        settings = load_settings()
        assert "s3cret" not in repr(settings)
        assert settings.db_password.get_secret_value() == "s3cret"

    def test_to_target(self, env):
        env.setenv("DB_PORT", "6543")
        target = load_settings().to_target()

        assert target.host == "db.internal"
        assert target.port == 6543
        assert target.user == "backup"
        assert target.database == "appdb"
        assert target.password.get_secret_value() == "s3cret"

    def test_to_storage_config(self, env):
        env.setenv("S3_PART_SIZE_MB", "16")
        env.setenv("S3_UPLOAD_CONCURRENCY", "2")
        storage = load_settings().to_storage_config()

        assert storage.bucket == "dumps"
        assert storage.part_size_mb == 16
        assert storage.upload_concurrency == 2
        assert storage.secret_access_key.get_secret_value() == "secret-key"


class TestValidation:
    def test_missing_required_lists_fields(self, env):
        env.delenv("DB_PASSWORD")
        env.delenv("S3_BUCKET")

        with pytest.raises(StartupConfigurationError) as exc_info:
            load_settings()

        message = str(exc_info.value)
        assert "DB_PASSWORD: required but not set" in message
        assert "S3_BUCKET: required but not set" in message

    def test_unknown_time_zone(self, env):
        env.setenv("TIME_ZONE", "Mars/Olympus_Mons")
        with pytest.raises(StartupConfigurationError, match="TIME_ZONE"):
            load_settings()

    def test_invalid_cron_schedule(self, env):
        env.setenv("CRON_SCHEDULE", "every day at noon")
        with pytest.raises(StartupConfigurationError, match="CRON_SCHEDULE"):
            load_settings()

    def test_part_size_below_s3_minimum(self, env):
        env.setenv("S3_PART_SIZE_MB", "4")
        with pytest.raises(StartupConfigurationError, match="S3_PART_SIZE_MB"):
            load_settings()

    def test_compression_level_range(self, env):
        env.setenv("DUMP_COMPRESSION_LEVEL", "10")
        with pytest.raises(StartupConfigurationError):
            load_settings()

    def test_tools_template_needs_placeholder(self, env):
        env.setenv("PG_TOOLS_DIR_TEMPLATE", "/usr/lib/postgresql/bin")
        with pytest.raises(StartupConfigurationError, match="PG_TOOLS_DIR_TEMPLATE"):
            load_settings()

    @pytest.mark.parametrize(
        ("raw", "expected"),
        [("DEBUG", "debug"), ("warning", "warn"), ("error", "error"), ("verbose", "info")],
    )
    def test_log_level_normalized(self, env, raw, expected):
        env.setenv("LOG_LEVEL", raw)
        assert load_settings().log_level == expected

    def test_debug_enables_verbose(self, env):
        env.setenv("LOG_LEVEL", "debug")
        assert load_settings().verbose is True

    def test_bad_log_format(self, env):
        env.setenv("LOG_FORMAT", "xml")
        with pytest.raises(StartupConfigurationError, match="LOG_FORMAT"):
            load_settings()


class TestFileSources:
    def test_toml_fills_unset_values(self, env, tmp_path):
        config = tmp_path / "pgdump-s3.toml"
        config.write_text('s3_path_prefix = "nightly"\ncron_schedule = "0 3 * * *"\n')

        settings = load_settings(config_path=config)

        assert settings.s3_path_prefix == "nightly"
        assert settings.cron_schedule == "0 3 * * *"

    def test_environment_beats_toml(self, env, tmp_path):
        env.setenv("S3_PATH_PREFIX", "from-env")
        config = tmp_path / "pgdump-s3.toml"
        config.write_text('S3_PATH_PREFIX = "from-toml"\n')

        assert load_settings(config_path=config).s3_path_prefix == "from-env"

    def test_missing_toml(self, env, tmp_path):
        with pytest.raises(StartupConfigurationError, match="not found"):
            load_settings(config_path=tmp_path / "absent.toml")

    def test_invalid_toml(self, env, tmp_path):
        config = tmp_path / "broken.toml"
        config.write_text("db_host = \n")
        with pytest.raises(StartupConfigurationError, match="Invalid TOML"):
            load_settings(config_path=config)

    def test_nested_tables_rejected(self, env, tmp_path):
        config = tmp_path / "nested.toml"
        config.write_text('[database]\nhost = "x"\n')
        with pytest.raises(StartupConfigurationError, match="database"):
            load_settings(config_path=config)

    def test_env_file(self, env, tmp_path):
        env_file = tmp_path / "service.env"
        env_file.write_text("DUMP_INFIX=_nightly\nDB_PORT=6000\n")

        settings = load_settings(env_file=env_file)

        assert settings.dump_infix == "_nightly"
        assert settings.db_port == 6000


class TestStorageEndpoint:
    def _config(self, **kwargs) -> StorageConfig:
        return StorageConfig(
            bucket="dumps", access_key_id="a", secret_access_key="b", **kwargs
        )

    def test_no_endpoint(self):
        assert self._config().endpoint_url is None

    def test_scheme_added_from_ssl_flag(self):
        assert self._config(endpoint="minio:9000").endpoint_url == "https://minio:9000"
        assert (
            self._config(endpoint="minio:9000", use_ssl=False).endpoint_url
            == "http://minio:9000"
        )

    def test_explicit_scheme_kept(self):
        assert (
            self._config(endpoint="http://localhost:9000").endpoint_url
            == "http://localhost:9000"
        )
