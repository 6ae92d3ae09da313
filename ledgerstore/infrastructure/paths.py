"""Resolve the user data directory that anchors every store file."""
from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

from PyQt5.QtCore import QStandardPaths

from ledgerstore.exceptions import InvalidConfigurationError

from .app_constants import BACKUP_DIRNAME, DATA_DIR_ENV, DB_FILENAME, LOCK_FILENAME


def user_data_dir(create: bool = True) -> Path:
    """Return the writable data directory, honouring the env override."""
    override = os.environ.get(DATA_DIR_ENV)
    if override:
        path = Path(override)
        if path.exists() and not path.is_dir():
            raise InvalidConfigurationError(f"{DATA_DIR_ENV} points at a file, not a directory: {path}")
    else:
        location = QStandardPaths.writableLocation(QStandardPaths.AppDataLocation)
        path = Path(location) if location else Path.home() / ".ledgerstore"
    if create:
        path.mkdir(parents=True, exist_ok=True)
    return path


def database_path(data_dir: Optional[Path] = None) -> Path:
    return Path(data_dir or user_data_dir()) / DB_FILENAME


def backup_dir(data_dir: Optional[Path] = None, *, create: bool = True) -> Path:
    path = Path(data_dir or user_data_dir()) / BACKUP_DIRNAME
    if create:
        path.mkdir(parents=True, exist_ok=True)
    return path


def lock_file_path(data_dir: Optional[Path] = None) -> Path:
    return Path(data_dir or user_data_dir()) / LOCK_FILENAME
