"""Models shared by the dump and restore pipelines.

Usage:
    from pgdump_s3.backup.models import PipelineContext, ToolBinding, KeyNaming

    binding = ToolBinding(
        major_version=16,
        dump_executable_path="/usr/libexec/postgresql16/pg_dump",
        restore_executable_path="/usr/libexec/postgresql16/psql",
    )
    ctx = PipelineContext(target=target, binding=binding, storage=storage)
"""

from dataclasses import dataclass, field
from zoneinfo import ZoneInfo

from pydantic import BaseModel, ConfigDict, Field

from pgdump_s3.adapters.base import ObjectStorage
from pgdump_s3.config.models import BackupTarget, Settings
from pgdump_s3.errors import PipelineError

LOWEST_VERSION = 15
HIGHEST_VERSION = 17


class ToolBinding(BaseModel):
    """Client tools selected for the detected server major version."""

    model_config = ConfigDict(frozen=True)

    major_version: int = Field(ge=LOWEST_VERSION, le=HIGHEST_VERSION)
    dump_executable_path: str
    restore_executable_path: str


class KeyNaming(BaseModel):
    """Components of generated dump object keys."""

    model_config = ConfigDict(frozen=True)

    prefix: str = "backups"
    infix: str = ""
    suffix: str = ".sql.gz"
    time_zone: str = "UTC"

    @property
    def tzinfo(self) -> ZoneInfo:
        return ZoneInfo(self.time_zone)


class PipelineResult(BaseModel):
    """Outcome of one dump or restore run."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    success: bool
    key: str
    location: str | None = None
    bytes_transferred: int | None = None
    error: PipelineError | None = None


@dataclass(frozen=True)
class PipelineContext:
    """Everything a pipeline run needs, passed explicitly.

    Attributes:
        target: Database connection parameters.
        binding: Resolved pg_dump/psql executables.
        storage: Object storage the dumps live in.
        naming: Dump key components.
        verbose: Mirror child stderr to our stderr instead of buffering it.
        compression_level: gzip level handed to ``pg_dump -Z``.
        restore_database: Maintenance database psql connects to on restore.
        chunk_size: Read size for the dump's stdout pipe.
    """

    target: BackupTarget
    binding: ToolBinding
    storage: ObjectStorage
    naming: KeyNaming = field(default_factory=KeyNaming)
    verbose: bool = False
    compression_level: int = 6
    restore_database: str = "template1"
    chunk_size: int = 256 * 1024

    @classmethod
    def from_settings(
        cls, settings: Settings, binding: ToolBinding, storage: ObjectStorage
    ) -> "PipelineContext":
        return cls(
            target=settings.to_target(),
            binding=binding,
            storage=storage,
            naming=KeyNaming(
                prefix=settings.s3_path_prefix,
                infix=settings.dump_infix,
                suffix=settings.dump_suffix,
                time_zone=settings.time_zone,
            ),
            verbose=settings.verbose,
            compression_level=settings.dump_compression_level,
            restore_database=settings.restore_database,
        )
