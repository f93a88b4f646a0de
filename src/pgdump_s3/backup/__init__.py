"""Streaming dump and restore pipelines.

Resolves the PostgreSQL client tools for the live server, streams
``pg_dump`` output into object storage and restores stored dumps through
``psql``.

Usage:
    from pgdump_s3.backup import resolve_tools, PipelineContext
    from pgdump_s3.backup import dump_to_storage, restore_from_storage
"""

from pgdump_s3.backup.dump import dump_to_storage
from pgdump_s3.backup.models import (
    HIGHEST_VERSION,
    LOWEST_VERSION,
    KeyNaming,
    PipelineContext,
    PipelineResult,
    ToolBinding,
)
from pgdump_s3.backup.naming import generate_dump_key
from pgdump_s3.backup.resolver import resolve_tools
from pgdump_s3.backup.restore import restore_from_storage

__all__ = [
    "HIGHEST_VERSION",
    "LOWEST_VERSION",
    "KeyNaming",
    "PipelineContext",
    "PipelineResult",
    "ToolBinding",
    "dump_to_storage",
    "generate_dump_key",
    "resolve_tools",
    "restore_from_storage",
]
