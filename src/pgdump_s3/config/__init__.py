"""Configuration management: environment settings and connection models.

Usage:
    >>> from pgdump_s3.config import load_settings, Settings, BackupTarget
"""

from pgdump_s3.config.loader import load_settings
from pgdump_s3.config.models import BackupTarget, Settings, StorageConfig

__all__ = ["load_settings", "Settings", "BackupTarget", "StorageConfig"]
