"""Exception hierarchy for pgdump-s3.

Startup errors (configuration, version resolution) abort the process.
Pipeline errors fail a single dump or restore run and are reported through
``PipelineResult.error``.

Usage:
    from pgdump_s3.errors import PipelineError, TransferError

    result = await dump_to_storage(ctx)
    if isinstance(result.error, TransferError):
        ...
"""


class PgDumpS3Error(Exception):
    """Base class for all pgdump-s3 errors."""


# ============================================================================
# Startup Errors
# ============================================================================


class StartupConfigurationError(PgDumpS3Error):
    """Raised when required settings are missing or invalid."""


class VersionResolutionError(PgDumpS3Error):
    """Raised when the server version cannot be matched to installed tools."""


class UnsupportedServerVersionError(VersionResolutionError):
    """Raised when the server is older than the lowest supported version."""

    def __init__(self, detected: int, minimum: int) -> None:
        self.detected = detected
        self.minimum = minimum
        super().__init__(
            f"Postgres version is not supported: found {detected}, min {minimum}"
        )


class ToolNotFoundError(VersionResolutionError):
    """Raised when no installed binary matches the server's major version."""

    def __init__(self, tool: str, major_version: int) -> None:
        self.tool = tool
        self.major_version = major_version
        super().__init__(
            f"no suitable {tool} found for PostgreSQL {major_version}"
        )


# ============================================================================
# Pipeline Errors
# ============================================================================


class PipelineError(PgDumpS3Error):
    """Base class for errors that fail one dump or restore run."""


class _ProcessError(PipelineError):
    tool = "process"

    def __init__(self, returncode: int | None, stderr: str = "", detail: str = "") -> None:
        self.returncode = returncode
        self.stderr = stderr
        message = detail or f"{self.tool} exited with code {returncode}"
        if stderr.strip():
            message = f"{message}, stderr: {stderr.strip()}"
        super().__init__(message)


class DumpExecutionError(_ProcessError):
    """Raised when pg_dump cannot start or exits non-zero."""

    tool = "pg_dump"


class RestoreExecutionError(_ProcessError):
    """Raised when the restore tool cannot start, exits non-zero or stops reading."""

    tool = "psql"


class TransferError(PipelineError):
    """Raised when an upload to or download from object storage fails."""


class ObjectNotFoundError(TransferError):
    """Raised when the requested dump object does not exist."""

    def __init__(self, bucket: str, key: str) -> None:
        self.bucket = bucket
        self.key = key
        super().__init__(f"object not found: s3://{bucket}/{key}")


class DecompressionError(PipelineError):
    """Raised when a stored dump is corrupt or truncated."""


class PipelineCancelledError(PipelineError):
    """Raised when a run is cancelled through its cancel event."""


class ResourceReleaseError(PipelineError):
    """Raised when closing a stream or handle fails during cleanup."""

    def __init__(self, resource: str, cause: BaseException) -> None:
        self.resource = resource
        self.cause = cause
        super().__init__(f"failed to close {resource}: {cause}")


class CombinedPipelineError(PipelineError):
    """Several pipeline failures surfaced together.

    The first entry of ``errors`` is the primary failure; the rest happened
    while cleaning up after it.
    """

    def __init__(self, errors: list[PipelineError]) -> None:
        self.errors = tuple(errors)
        super().__init__("; ".join(str(e) for e in self.errors))


def combine_errors(
    primary: PipelineError | None, secondary: PipelineError
) -> PipelineError:
    """Merge a cleanup failure into the error already in flight.

    Args:
        primary: The error that was being raised, or ``None``.
        secondary: The error raised during cleanup.

    Returns:
        ``secondary`` when there is no primary error, otherwise a
        ``CombinedPipelineError`` holding both (flattened if ``primary`` is
        itself combined).
    """
    if primary is None:
        return secondary
    if isinstance(primary, CombinedPipelineError):
        return CombinedPipelineError([*primary.errors, secondary])
    return CombinedPipelineError([primary, secondary])
