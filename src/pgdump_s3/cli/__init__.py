"""CLI for scheduled PostgreSQL dumps to S3 and restores from S3.

Usage:
    pgdump-s3                       # same as `pgdump-s3 run`
    pgdump-s3 run
    pgdump-s3 dump
    pgdump-s3 restore backups/pg16_app_2024-05-01T00-00-00.sql.gz
    pgdump-s3 tools
    pgdump-s3 --config pgdump-s3.toml --env-file .env run

Commands:
    run      - Service mode: restore once if RESTORE_KEY is set, otherwise
               dump on CRON_SCHEDULE until SIGINT/SIGTERM
    dump     - Take one dump now
    restore  - Restore one dump (KEY argument or RESTORE_KEY)
    tools    - Show the pg_dump/psql selected for the server
"""

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path

from rich.console import Console
from rich.table import Table

from pgdump_s3.adapters.s3 import S3ObjectStorage
from pgdump_s3.backup.dump import dump_to_storage
from pgdump_s3.backup.models import PipelineContext, ToolBinding
from pgdump_s3.backup.resolver import resolve_tools
from pgdump_s3.backup.restore import restore_from_storage
from pgdump_s3.config.loader import load_settings
from pgdump_s3.config.models import Settings
from pgdump_s3.errors import PgDumpS3Error, StartupConfigurationError
from pgdump_s3.logging_config import configure_logging
from pgdump_s3.scheduler import BackupScheduler

console = Console()
err_console = Console(stderr=True)
logger = logging.getLogger(__name__)


# ============================================================================
# Startup helpers
# ============================================================================


def _load(args: argparse.Namespace) -> Settings:
    """Load settings and configure logging from them."""
    settings = load_settings(
        config_path=getattr(args, "config", None),
        env_file=getattr(args, "env_file", None),
    )
    configure_logging(settings.log_level, settings.log_format)
    return settings


async def _resolve(settings: Settings) -> ToolBinding:
    # psycopg's blocking connect stays off the event loop
    return await asyncio.to_thread(
        resolve_tools, settings.to_target(), settings.pg_tools_dir_template
    )


async def _build_context(settings: Settings) -> PipelineContext:
    binding = await _resolve(settings)
    storage = S3ObjectStorage.from_config(settings.to_storage_config())
    return PipelineContext.from_settings(settings, binding, storage)


def _execute(impl, args: argparse.Namespace) -> int:
    """Run an async command, turning startup and pipeline errors into exit 1."""
    try:
        return asyncio.run(impl(args))
    except PgDumpS3Error as e:
        logger.error("%s", e)
        err_console.print(f"[bold red]x[/bold red] {e}")
        return 1


# ============================================================================
# Async command implementations
# ============================================================================


async def _async_run(args: argparse.Namespace) -> int:
    """Service mode.

    Args:
        args: Parsed arguments with config and env_file.

    Returns:
        0 on clean shutdown or successful restore, 1 on a failed restore.
    """
    settings = _load(args)
    ctx = await _build_context(settings)

    if settings.restore_key:
        result = await restore_from_storage(ctx, settings.restore_key)
        return 0 if result.success else 1

    scheduler = BackupScheduler(
        lambda cancel: dump_to_storage(ctx, cancel=cancel),
        schedule=settings.cron_schedule,
        tz=settings.tzinfo,
        cancel_inflight_on_shutdown=settings.cancel_inflight_on_shutdown,
    )

    loop = asyncio.get_running_loop()
    signals = (signal.SIGINT, signal.SIGTERM)
    for sig in signals:
        loop.add_signal_handler(sig, scheduler.request_shutdown)
    try:
        await scheduler.run()
    finally:
        # A second signal during shutdown falls back to the default handler
        for sig in signals:
            loop.remove_signal_handler(sig)

    logger.info("Shutting down")
    await scheduler.on_shutdown(run_final_backup=settings.backup_on_shutdown)
    return 0


async def _async_dump(args: argparse.Namespace) -> int:
    settings = _load(args)
    ctx = await _build_context(settings)

    result = await dump_to_storage(ctx)
    if result.success:
        console.print(
            f"[bold green]v[/bold green] Uploaded [bold cyan]{result.location}[/bold cyan] "
            f"({result.bytes_transferred} bytes)"
        )
        return 0
    err_console.print(f"[bold red]x[/bold red] {result.error}")
    return 1


async def _async_restore(args: argparse.Namespace) -> int:
    """Restore one dump.

    Args:
        args: Parsed arguments; ``key`` overrides ``RESTORE_KEY``.

    Returns:
        0 on success, 1 on failure or when no key was given.
    """
    settings = _load(args)
    key = getattr(args, "key", None) or settings.restore_key
    if not key:
        raise StartupConfigurationError(
            "No dump key given: pass KEY or set RESTORE_KEY"
        )
    ctx = await _build_context(settings)

    result = await restore_from_storage(ctx, key)
    if result.success:
        console.print(
            f"[bold green]v[/bold green] Restored [bold cyan]{ctx.target.database}[/bold cyan] "
            f"from {result.location}"
        )
        return 0
    err_console.print(f"[bold red]x[/bold red] {result.error}")
    return 1


async def _async_tools(args: argparse.Namespace) -> int:
    settings = _load(args)
    binding = await _resolve(settings)

    table = Table(title="PostgreSQL Client Tools", show_header=False)
    table.add_column("Key", style="dim")
    table.add_column("Value")
    table.add_row("Server major version", f"[bold cyan]{binding.major_version}[/bold cyan]")
    table.add_row("pg_dump", binding.dump_executable_path)
    table.add_row("psql", binding.restore_executable_path)
    console.print(table)
    return 0


# ============================================================================
# Sync command wrappers (called by argparse)
# ============================================================================


def cmd_run(args: argparse.Namespace) -> int:
    """Run the backup service.

    Wraps the async implementation with ``asyncio.run()``.
    """
    return _execute(_async_run, args)


def cmd_dump(args: argparse.Namespace) -> int:
    """Take one dump now."""
    return _execute(_async_dump, args)


def cmd_restore(args: argparse.Namespace) -> int:
    """Restore one dump."""
    return _execute(_async_restore, args)


def cmd_tools(args: argparse.Namespace) -> int:
    """Show the client tools selected for the server."""
    return _execute(_async_tools, args)


# ============================================================================
# Main entry point
# ============================================================================


def main() -> int:
    """Main CLI entry point.

    Parses command line arguments and dispatches to appropriate handler.
    Without a command, runs the service.

    Returns:
        Exit code (0 for success, 1 for errors).
    """
    parser = argparse.ArgumentParser(
        prog="pgdump-s3",
        description="Stream PostgreSQL dumps to S3 on a schedule and restore them",
    )

    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Flat TOML file with settings (environment variables take precedence)",
    )
    parser.add_argument(
        "--env-file",
        type=Path,
        default=None,
        help="Dotenv file read before defaults",
    )

    subparsers = parser.add_subparsers(dest="command")

    # run command
    p_run = subparsers.add_parser(
        "run",
        help="Dump on CRON_SCHEDULE until stopped (or restore RESTORE_KEY once)",
    )
    p_run.set_defaults(func=cmd_run)

    # dump command
    p_dump = subparsers.add_parser(
        "dump",
        help="Take one dump now",
    )
    p_dump.set_defaults(func=cmd_dump)

    # restore command
    p_restore = subparsers.add_parser(
        "restore",
        help="Restore one dump into the server",
    )
    p_restore.add_argument(
        "key",
        nargs="?",
        default=None,
        help="Object key of the dump (default: RESTORE_KEY)",
    )
    p_restore.set_defaults(func=cmd_restore)

    # tools command
    p_tools = subparsers.add_parser(
        "tools",
        help="Show the pg_dump/psql selected for the server",
    )
    p_tools.set_defaults(func=cmd_tools)

    args = parser.parse_args()
    func = getattr(args, "func", None) or cmd_run
    return func(args)


if __name__ == "__main__":
    sys.exit(main())
