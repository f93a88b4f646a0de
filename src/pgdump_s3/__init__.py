"""pgdump-s3: Streaming PostgreSQL dumps to S3-compatible object storage.

Runs ``pg_dump`` on a cron schedule and streams its compressed output
straight into a multipart upload; restores stream the other way, from the
bucket through gunzip into ``psql``.  Client tools are matched to the live
server's major version at startup.

Usage:
    from pgdump_s3 import load_settings, resolve_tools, PipelineContext
    from pgdump_s3 import S3ObjectStorage, dump_to_storage, restore_from_storage
"""

__version__ = "0.1.0"

# Adapters
from pgdump_s3.adapters.base import ObjectStorage, ObjectStream, UploadResult
from pgdump_s3.adapters.s3 import S3ObjectStorage

# Config
from pgdump_s3.config.loader import load_settings
from pgdump_s3.config.models import BackupTarget, Settings, StorageConfig

# Pipelines
from pgdump_s3.backup.dump import dump_to_storage
from pgdump_s3.backup.models import PipelineContext, PipelineResult, ToolBinding
from pgdump_s3.backup.resolver import resolve_tools
from pgdump_s3.backup.restore import restore_from_storage

# Scheduling
from pgdump_s3.scheduler import BackupScheduler

# Errors
from pgdump_s3.errors import PgDumpS3Error, PipelineError

__all__ = [
    # Adapters
    "ObjectStorage",
    "ObjectStream",
    "UploadResult",
    "S3ObjectStorage",
    # Config
    "load_settings",
    "Settings",
    "BackupTarget",
    "StorageConfig",
    # Pipelines
    "PipelineContext",
    "PipelineResult",
    "ToolBinding",
    "resolve_tools",
    "dump_to_storage",
    "restore_from_storage",
    # Scheduling
    "BackupScheduler",
    # Errors
    "PgDumpS3Error",
    "PipelineError",
]
