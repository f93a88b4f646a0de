"""Dump object key generation."""

import posixpath
from datetime import datetime, timezone

from pgdump_s3.backup.models import KeyNaming

TIMESTAMP_FORMAT = "%Y-%m-%dT%H-%M-%S"


def generate_dump_key(
    naming: KeyNaming,
    major_version: int,
    database: str,
    now: datetime | None = None,
) -> str:
    """Build the object key for a new dump.

    Format: ``{prefix}/pg{major}_{database}_{timestamp}{infix}{suffix}`` with
    the timestamp at second precision in ``naming.time_zone``.  Two dumps in
    the same second with the same components get the same key; the later
    upload replaces the earlier one.

    Args:
        naming: Prefix, infix, suffix and time zone.
        major_version: Server major version the dump was taken from.
        database: Database name.
        now: Point in time to stamp (default: current time).  Naive values
            are taken as UTC.

    Returns:
        Object key, e.g. ``backups/pg16_mydb_2024-05-01T12-00-00.sql.gz``.
    """
    if now is None:
        now = datetime.now(naming.tzinfo)
    elif now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    stamp = now.astimezone(naming.tzinfo).strftime(TIMESTAMP_FORMAT)

    filename = f"pg{major_version}_{database}_{stamp}{naming.infix}{naming.suffix}"
    prefix = naming.prefix.strip("/")
    return posixpath.join(prefix, filename) if prefix else filename
