"""Utility helpers for application QSettings access."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from PyQt5.QtCore import QSettings

from .app_constants import (
    EMERGENCY_BACKUP_AGE_SECONDS,
    LOCK_WAIT_SECONDS,
    RENAMED_FILE_MAX_AGE_DAYS,
    RETENTION_DELETE_COUNT,
    RETENTION_THRESHOLD,
    SETTINGS_APP,
    SETTINGS_ORG,
)

BACKUP_INTERVALS = ("daily", "weekly", "monthly")


def get_app_settings(*, org: str = SETTINGS_ORG, app: str = SETTINGS_APP) -> QSettings:
    """Return a QSettings instance using the default org/app identifiers."""
    return QSettings(org, app)


@dataclass
class StorageSettings:
    """Backup scheduling and retention preferences."""

    auto_backup_enabled: bool = False
    auto_backup_interval: str = "daily"
    auto_backup_dir: Optional[str] = None
    emergency_backup_age_s: int = EMERGENCY_BACKUP_AGE_SECONDS
    retention_threshold: int = RETENTION_THRESHOLD
    retention_delete_count: int = RETENTION_DELETE_COUNT
    renamed_file_max_age_days: int = RENAMED_FILE_MAX_AGE_DAYS
    lock_wait_s: float = LOCK_WAIT_SECONDS


def _positive_int(settings, key: str, default: int, logger: logging.Logger) -> int:
    raw = settings.value(key, default)
    try:
        value = int(raw)
    except (TypeError, ValueError):
        logger.warning("Ignoring non-numeric setting %s=%r; using %s", key, raw, default)
        return default
    if value <= 0:
        logger.warning("Ignoring non-positive setting %s=%r; using %s", key, raw, default)
        return default
    return value


def load_storage_settings(settings=None, *, logger: Optional[logging.Logger] = None) -> StorageSettings:
    """Read backup preferences, falling back to defaults on bad values."""
    logger = logger or logging.getLogger(__name__)
    settings = settings if settings is not None else get_app_settings()

    interval = str(settings.value("backup/auto_interval", "daily") or "daily").lower()
    if interval not in BACKUP_INTERVALS:
        logger.warning("Unknown backup interval %r; falling back to daily", interval)
        interval = "daily"

    auto_dir = settings.value("backup/auto_path", None) or None

    try:
        lock_wait = float(settings.value("backup/lock_wait_seconds", LOCK_WAIT_SECONDS))
    except (TypeError, ValueError):
        lock_wait = LOCK_WAIT_SECONDS
    if lock_wait <= 0:
        lock_wait = LOCK_WAIT_SECONDS

    return StorageSettings(
        auto_backup_enabled=settings.value("backup/auto_enabled", False, type=bool),
        auto_backup_interval=interval,
        auto_backup_dir=auto_dir,
        emergency_backup_age_s=_positive_int(
            settings, "backup/emergency_age_seconds", EMERGENCY_BACKUP_AGE_SECONDS, logger
        ),
        retention_threshold=_positive_int(
            settings, "backup/retention_threshold", RETENTION_THRESHOLD, logger
        ),
        retention_delete_count=_positive_int(
            settings, "backup/retention_delete_count", RETENTION_DELETE_COUNT, logger
        ),
        renamed_file_max_age_days=_positive_int(
            settings, "backup/renamed_max_age_days", RENAMED_FILE_MAX_AGE_DAYS, logger
        ),
        lock_wait_s=lock_wait,
    )


__all__ = ["get_app_settings", "load_storage_settings", "StorageSettings", "QSettings"]
