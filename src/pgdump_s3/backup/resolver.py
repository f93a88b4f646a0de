"""PostgreSQL server version detection and client tool resolution.

Queries the live server for ``server_version_num`` and picks the oldest
installed ``pg_dump``/``psql`` whose major version is at least the
server's.  pg_dump can dump servers older than itself but not newer ones,
so scanning upward from the server's own version finds the closest
compatible install.

Uses psycopg (v3) for the one-off version query.

Usage:
    from pgdump_s3.backup.resolver import resolve_tools

    binding = resolve_tools(settings.to_target())
    print(binding.dump_executable_path)
"""

import logging
import os
from collections.abc import Callable
from pathlib import Path

import psycopg

from pgdump_s3.backup.models import HIGHEST_VERSION, LOWEST_VERSION, ToolBinding
from pgdump_s3.config.models import BackupTarget
from pgdump_s3.errors import (
    ToolNotFoundError,
    UnsupportedServerVersionError,
    VersionResolutionError,
)

logger = logging.getLogger(__name__)

# https://www.postgresql.org/docs/current/functions-info.html#FUNCTIONS-INFO-VERSION
VERSION_MULTIPLIER = 10000
VERSION_QUERY = "SELECT current_setting('server_version_num')::int"
DEFAULT_TOOLS_DIR_TEMPLATE = "/usr/libexec/postgresql{version}"

DUMP_TOOL = "pg_dump"
RESTORE_TOOL = "psql"


def _is_executable(path: str) -> bool:
    return os.path.isfile(path) and os.access(path, os.X_OK)


def detect_server_version(target: BackupTarget, connect_timeout: int = 10) -> int:
    """Return the server's numeric version (e.g. ``160004``).

    Raises:
        VersionResolutionError: If the connection or query fails, or the
            result is not an integer.
    """
    try:
        with psycopg.connect(
            host=target.host,
            port=target.port,
            user=target.user,
            password=target.password.get_secret_value(),
            dbname=target.database,
            connect_timeout=connect_timeout,
        ) as conn:
            row = conn.execute(VERSION_QUERY).fetchone()
    except psycopg.Error as e:
        raise VersionResolutionError(f"failed to get PostgreSQL version: {e}") from e

    raw = row[0] if row else None
    logger.debug("postgres version number: %r", raw)
    try:
        return int(str(raw).strip())
    except (TypeError, ValueError) as e:
        raise VersionResolutionError(f"failed to parse version number {raw!r}") from e


def major_version_of(version_num: int, lowest: int = LOWEST_VERSION) -> int:
    """Convert ``server_version_num`` to a major version.

    Raises:
        UnsupportedServerVersionError: If the server is older than ``lowest``.
    """
    minimum = lowest * VERSION_MULTIPLIER
    if version_num < minimum:
        raise UnsupportedServerVersionError(version_num, minimum)
    return version_num // VERSION_MULTIPLIER


def find_tool(
    tool: str,
    major_version: int,
    tool_dir_template: str = DEFAULT_TOOLS_DIR_TEMPLATE,
    highest: int = HIGHEST_VERSION,
    is_executable: Callable[[str], bool] = _is_executable,
) -> str:
    """Return the first installed ``tool`` for versions ``major_version..highest``.

    Raises:
        ToolNotFoundError: If no version in range has the tool installed.
    """
    for version in range(major_version, highest + 1):
        candidate = str(Path(tool_dir_template.format(version=version)) / tool)
        if is_executable(candidate):
            return candidate
    raise ToolNotFoundError(tool, major_version)


def resolve_tools(
    target: BackupTarget,
    tool_dir_template: str = DEFAULT_TOOLS_DIR_TEMPLATE,
    version_num: int | None = None,
) -> ToolBinding:
    """Detect the server version and bind matching pg_dump and psql.

    Runs once at startup; any failure should abort the process.

    Args:
        target: Database to probe.
        tool_dir_template: Directory holding each version's binaries, with a
            ``{version}`` placeholder.
        version_num: Skip the server query and use this version number.

    Returns:
        ``ToolBinding`` for the detected major version.

    Raises:
        VersionResolutionError: On connection failure, unsupported server
            version, or no compatible tool installed.
    """
    if version_num is None:
        logger.info(
            "Detecting PostgreSQL version on %s:%s", target.host, target.port
        )
        version_num = detect_server_version(target)

    major = major_version_of(version_num)
    if major > HIGHEST_VERSION:
        raise ToolNotFoundError(DUMP_TOOL, major)
    logger.info("Detected PostgreSQL major version %d", major)

    dump_path = find_tool(DUMP_TOOL, major, tool_dir_template)
    restore_path = find_tool(RESTORE_TOOL, major, tool_dir_template)
    logger.info("Found suitable pg_dump: %s", dump_path)
    logger.info("Found suitable psql: %s", restore_path)

    return ToolBinding(
        major_version=major,
        dump_executable_path=dump_path,
        restore_executable_path=restore_path,
    )
