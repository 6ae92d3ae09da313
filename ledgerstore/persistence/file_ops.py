"""Filesystem helpers around the store file, its sidecars and backup copies."""
from __future__ import annotations

import errno
import hashlib
import logging
import os
import re
import shutil
import sqlite3
import time
from pathlib import Path
from typing import List, Optional, Tuple

from ledgerstore.exceptions import BackupError, DatabaseLockedError
from ledgerstore.infrastructure.db_session import open_readonly

logger = logging.getLogger(__name__)

CHECKSUM_CHUNK_BYTES = 8192
STALE_SIDECAR_AGE_SECONDS = 60
STALE_WAL_DELETE_AGE_SECONDS = 5 * 60
LOCK_POLL_INTERVAL_SECONDS = 0.5
RENAMED_FILE_PATTERN = re.compile(r"\.old\.\d+$")
RECOVERY_FILE_MARKERS = (
    ".backup.",
    ".corrupted.",
    ".corrupted_last_resort.",
    ".emergency.",
    ".integrity_issue.",
    ".pre_repair_backup.",
)
RECOVERY_FILES_KEPT = 3
_BUSY_ERRNOS = {errno.EBUSY, errno.EPERM, errno.EACCES}


def now_ms() -> int:
    return int(time.time() * 1000)


def sidecar_paths(db_path) -> Tuple[str, str, str]:
    """Return the WAL, SHM and rollback-journal paths for ``db_path``."""
    db_path = str(db_path)
    return db_path + "-wal", db_path + "-shm", db_path + "-journal"


def remove_sidecars(db_path) -> None:
    wal, shm, _ = sidecar_paths(db_path)
    for path in (wal, shm):
        try:
            os.remove(path)
            logger.debug("Removed sidecar %s", path)
        except FileNotFoundError:
            pass


def calculate_file_checksum(filepath) -> str:
    """SHA-256 of the file contents as lowercase hex."""
    sha256 = hashlib.sha256()
    with open(filepath, "rb") as f:
        for chunk in iter(lambda: f.read(CHECKSUM_CHUNK_BYTES), b""):
            sha256.update(chunk)
    return sha256.hexdigest()


def check_integrity(conn: sqlite3.Connection, pragma: str = "integrity_check") -> Tuple[bool, List[str]]:
    """Run ``PRAGMA integrity_check`` (or ``quick_check``) as a strict ok/not-ok test."""
    rows = [str(row[0]) for row in conn.execute(f"PRAGMA {pragma}").fetchall()]
    return rows == ["ok"], rows


def file_passes_integrity(path) -> bool:
    """Open ``path`` read-only and require a clean integrity check."""
    path = Path(path)
    if not path.is_file() or path.stat().st_size == 0:
        return False
    try:
        conn = open_readonly(path)
    except sqlite3.Error as exc:
        logger.debug("Cannot open %s read-only: %s", path, exc)
        return False
    try:
        ok, details = check_integrity(conn)
        if not ok:
            logger.warning("Integrity check failed for %s: %s", path, details[:5])
        return ok
    except sqlite3.DatabaseError as exc:
        logger.warning("Integrity check raised for %s: %s", path, exc)
        return False
    finally:
        conn.close()


def ensure_writable_dir(directory, *, create: bool = True) -> Path:
    """Return ``directory`` as a Path, raising ``BackupError`` with an actionable message."""
    path = Path(directory)
    if not path.exists():
        if not create:
            raise BackupError(f"Directory does not exist: {path}")
        try:
            path.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise BackupError(f"Cannot create directory {path}: {exc.strerror or exc}") from exc
    if not path.is_dir():
        raise BackupError(f"Not a directory: {path}")
    if not os.access(path, os.W_OK):
        raise BackupError(f"Directory is not writable: {path}. Choose another location or check permissions.")
    return path


def safe_delete(path, max_retries: int = 5) -> bool:
    """Delete ``path``, retrying on lock errors and renaming it aside as a last resort.

    Returns True when the path no longer exists under its original name.
    """
    path = str(path)
    if not os.path.exists(path):
        return True
    for attempt in range(1, max_retries + 1):
        try:
            os.remove(path)
            return True
        except OSError as exc:
            if exc.errno not in _BUSY_ERRNOS:
                raise
            if attempt < max_retries:
                time.sleep(0.1 * attempt)
                continue
            renamed = f"{path}.old.{now_ms()}"
            try:
                os.replace(path, renamed)
            except OSError as rename_exc:
                raise BackupError(
                    f"Cannot delete or rename file: {path}. "
                    f"File may be in use by another process. Error: {exc}"
                ) from rename_exc
            logger.info("Renamed locked file to %s", renamed)
            return True
    return False


def cleanup_old_renamed_files(directory, max_age_days: int = 7) -> int:
    """Remove ``*.old.<ms>`` leftovers older than ``max_age_days``."""
    directory = Path(directory)
    if not directory.is_dir():
        return 0
    cutoff = time.time() - max_age_days * 24 * 60 * 60
    deleted = 0
    freed = 0
    for entry in directory.iterdir():
        if not RENAMED_FILE_PATTERN.search(entry.name) or not entry.is_file():
            continue
        try:
            stats = entry.stat()
            if stats.st_mtime < cutoff:
                entry.unlink()
                deleted += 1
                freed += stats.st_size
        except OSError as exc:
            logger.warning("Could not delete old renamed file %s: %s", entry.name, exc)
    if deleted:
        logger.info("Cleaned up %d old renamed files, freed %.2f MB", deleted, freed / (1024 * 1024))
    return deleted


def is_database_locked(db_path, *, timeout: float = 0.1) -> bool:
    """Probe for another writer by taking and releasing a RESERVED lock."""
    if not os.path.exists(str(db_path)):
        return False
    try:
        conn = sqlite3.connect(str(db_path), timeout=timeout, isolation_level=None)
    except sqlite3.OperationalError as exc:
        return "locked" in str(exc).lower() or "busy" in str(exc).lower()
    try:
        conn.execute("BEGIN IMMEDIATE")
        conn.execute("ROLLBACK")
        return False
    except sqlite3.OperationalError as exc:
        message = str(exc).lower()
        return "locked" in message or "busy" in message
    except sqlite3.DatabaseError:
        # Unreadable file is not a lock
        return False
    finally:
        conn.close()


def wait_for_unlock(db_path, max_wait: float = 10.0, *, poll_interval: float = LOCK_POLL_INTERVAL_SECONDS) -> None:
    """Poll until no other handle holds a write lock, or raise ``DatabaseLockedError``."""
    deadline = time.monotonic() + max_wait
    while True:
        if not is_database_locked(db_path):
            return
        if time.monotonic() >= deadline:
            raise DatabaseLockedError(
                f"Database {db_path} is still locked after {max_wait:.1f}s. "
                "Please close other instances of the application and try again."
            )
        time.sleep(poll_interval)


def cleanup_stale_wal_files(db_path) -> None:
    """Remove sidecars left by a crashed process, never while a writer is active."""
    db_path = str(db_path)
    wal, shm, journal = sidecar_paths(db_path)
    if is_database_locked(db_path):
        logger.debug("Skipping sidecar cleanup: %s is in use", db_path)
        return

    now = time.time()
    if os.path.exists(wal):
        wal_age = now - os.path.getmtime(wal)
        if wal_age > STALE_SIDECAR_AGE_SECONDS:
            try:
                conn = sqlite3.connect(db_path, timeout=1)
                try:
                    conn.execute("PRAGMA wal_checkpoint(TRUNCATE)")
                finally:
                    conn.close()
                if os.path.exists(wal) and os.path.getsize(wal) > 0 and wal_age > STALE_WAL_DELETE_AGE_SECONDS:
                    os.remove(wal)
                    logger.info("Removed stale WAL file %s", wal)
            except (sqlite3.Error, OSError) as exc:
                # WAL may still hold committed pages; leave it alone
                logger.debug("Stale WAL checkpoint failed for %s: %s", wal, exc)

    if os.path.exists(shm) and not os.path.exists(wal):
        try:
            os.remove(shm)
            logger.debug("Removed orphaned SHM file %s", shm)
        except OSError as exc:
            logger.debug("Could not remove SHM file %s: %s", shm, exc)

    if os.path.exists(journal) and now - os.path.getmtime(journal) > STALE_SIDECAR_AGE_SECONDS:
        try:
            os.remove(journal)
            logger.debug("Removed stale journal file %s", journal)
        except OSError as exc:
            logger.debug("Could not remove journal file %s: %s", journal, exc)


def cleanup_old_corrupted_backups(db_path, max_age_days: int = 7, keep: int = RECOVERY_FILES_KEPT) -> int:
    """Prune recovery copies (corrupted/emergency/...) beside the store file."""
    db_path = Path(db_path)
    directory = db_path.parent
    if not directory.is_dir():
        return 0
    cutoff = time.time() - max_age_days * 24 * 60 * 60
    deleted = 0
    for marker in RECOVERY_FILE_MARKERS:
        prefix = db_path.name + marker
        candidates = sorted(
            (p for p in directory.iterdir() if p.is_file() and p.name.startswith(prefix)),
            key=lambda p: p.stat().st_mtime,
            reverse=True,
        )
        for index, candidate in enumerate(candidates):
            if index < keep and candidate.stat().st_mtime >= cutoff:
                continue
            try:
                candidate.unlink()
                deleted += 1
            except OSError as exc:
                logger.warning("Could not delete recovery file %s: %s", candidate.name, exc)
    if deleted:
        logger.info("Removed %d old recovery files next to %s", deleted, db_path.name)
    return deleted


def free_disk_space(path) -> Optional[int]:
    try:
        return shutil.disk_usage(str(path)).free
    except OSError:
        return None


_CORRUPTION_CODES = {11, 26}  # SQLITE_CORRUPT, SQLITE_NOTADB


def is_corruption_error(exc: BaseException) -> bool:
    """True for SQLite errors that signal a damaged file rather than a bad statement."""
    if not isinstance(exc, sqlite3.DatabaseError):
        return False
    code = getattr(exc, "sqlite_errorcode", None)
    if code is not None:
        return (code & 0xFF) in _CORRUPTION_CODES
    return type(exc) is sqlite3.DatabaseError
