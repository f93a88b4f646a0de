"""Settings loading from the environment and an optional TOML file."""

import os
import tomllib
from pathlib import Path

from pydantic import ValidationError

from pgdump_s3.config.models import Settings
from pgdump_s3.errors import StartupConfigurationError


def _read_toml(config_path: Path) -> dict:
    if not config_path.exists():
        raise StartupConfigurationError(f"Config file not found: {config_path}")

    try:
        with open(config_path, "rb") as f:
            data = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise StartupConfigurationError(f"Invalid TOML in {config_path}: {e}") from e

    # Flat keys only; names match the environment variables in lower case
    nested = [key for key, value in data.items() if isinstance(value, dict)]
    if nested:
        raise StartupConfigurationError(
            f"Unsupported tables in {config_path}: {', '.join(nested)}"
        )
    return {key.lower(): value for key, value in data.items()}


def _format_validation_error(error: ValidationError) -> str:
    lines = ["Invalid configuration:"]
    for item in error.errors():
        field = ".".join(str(part) for part in item["loc"]).upper()
        if item["type"] == "missing":
            lines.append(f"  - {field}: required but not set")
        else:
            lines.append(f"  - {field}: {item['msg']}")
    return "\n".join(lines)


def load_settings(
    config_path: Path | None = None,
    env_file: Path | None = None,
) -> Settings:
    """Load application settings.

    Precedence (highest first): process environment, TOML file, env file,
    field defaults.

    Args:
        config_path: Optional flat TOML file whose keys are setting names
            (e.g. ``db_host = "localhost"``).
        env_file: Optional dotenv-style file.

    Returns:
        Validated ``Settings``.

    Raises:
        StartupConfigurationError: If the file cannot be read or any setting
            is missing or invalid.
    """
    overrides: dict = {}
    if config_path is not None:
        file_values = _read_toml(Path(config_path))
        overrides = {
            key: value
            for key, value in file_values.items()
            if key.upper() not in os.environ
        }

    try:
        return Settings(_env_file=env_file, **overrides)
    except ValidationError as e:
        raise StartupConfigurationError(_format_validation_error(e)) from e
