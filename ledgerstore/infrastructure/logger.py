import logging
import logging.handlers
import os
import sqlite3
from datetime import datetime, timedelta
from pathlib import Path

from ledgerstore.infrastructure.app_constants import DEBUG_ENV, DEFAULT_LOG_DIR, LOG_DIR_ENV
from ledgerstore.infrastructure.settings import get_app_settings

LOG_FORMAT = '%(asctime)s [%(levelname)s] [%(module)s:%(lineno)d] [%(funcName)s] %(message)s'
SENSITIVE_KEYS = ['password', 'key', 'salt', 'hash', 'token', 'secret']

MB = 1024 * 1024
# (file suffix, level, max bytes, backups); the debug file only exists in debug mode
LOG_FILES = (
    ("", logging.INFO, 5 * MB, 10),
    ("_error", logging.ERROR, 5 * MB, 10),
    ("_debug", logging.DEBUG, 10 * MB, 5),
)


def _rotating_handler(path, level, max_bytes, backups, formatter):
    handler = logging.handlers.RotatingFileHandler(
        path, maxBytes=max_bytes, backupCount=backups, encoding='utf-8'
    )
    handler.setLevel(level)
    handler.setFormatter(formatter)
    return handler


def setup_logging(app_name="ledgerstore", log_dir=DEFAULT_LOG_DIR, debug_mode=False):
    """
    Route every logger through rotating files in ``log_dir`` plus the console.

    ``<app_name>.log`` gets INFO and up, ``<app_name>_error.log`` ERROR and up,
    and in debug mode ``<app_name>_debug.log`` gets everything. Existing root
    handlers are replaced, so calling this again reconfigures cleanly.

    Returns:
        logging.Logger: the root logger
    """
    log_path = Path(log_dir)
    log_path.mkdir(parents=True, exist_ok=True)

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG if debug_mode else logging.INFO)
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(LOG_FORMAT)
    for suffix, level, max_bytes, backups in LOG_FILES:
        if level == logging.DEBUG and not debug_mode:
            continue
        root_logger.addHandler(
            _rotating_handler(log_path / f"{app_name}{suffix}.log", level, max_bytes, backups, formatter)
        )

    console_handler = logging.StreamHandler()
    console_handler.setLevel(logging.DEBUG if debug_mode else logging.WARNING)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    root_logger.info(f"Logging to {log_path} (debug={'on' if debug_mode else 'off'})")
    return root_logger


class DatabaseOperation:
    """Context manager that logs a named storage operation and never swallows errors."""

    def __init__(self, operation_name, logger=None):
        self.operation_name = operation_name
        self.logger = logger or logging.getLogger(__name__)
        self.success = False

    def __enter__(self):
        self.logger.debug(f"Starting database operation: {self.operation_name}")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if exc_type is None:
            self.logger.debug(f"Completed database operation: {self.operation_name}")
            self.success = True
            return False

        if issubclass(exc_type, sqlite3.Error):
            self.logger.error(f"Database error during {self.operation_name}: {exc_val}", exc_info=True)
        elif issubclass(exc_type, ValueError):
            self.logger.warning(f"Value error during {self.operation_name}: {exc_val}", exc_info=True)
        else:
            self.logger.error(f"Unexpected error during {self.operation_name}: {exc_val}", exc_info=True)
        return False


def sanitize_for_logging(data, sensitive_keys=None):
    """
    Mask values whose keys look like credentials.

    Args:
        data: Dictionary (or list of dictionaries) to sanitize
        sensitive_keys: List of key fragments to mask

    Returns:
        A sanitized copy of the data
    """
    if sensitive_keys is None:
        sensitive_keys = SENSITIVE_KEYS

    if isinstance(data, list):
        return [sanitize_for_logging(item, sensitive_keys) for item in data]
    if not isinstance(data, dict):
        return data

    result = {}
    for key, value in data.items():
        if any(s_key in str(key).lower() for s_key in sensitive_keys):
            result[key] = '********'
        elif isinstance(value, (dict, list)):
            result[key] = sanitize_for_logging(value, sensitive_keys)
        else:
            result[key] = value
    return result


def cleanup_old_logs(log_dir=DEFAULT_LOG_DIR, max_age_days=1):
    """
    Remove log files older than max_age_days.

    Returns:
        int: Number of files removed
    """
    logger = logging.getLogger(__name__)

    if max_age_days < 1:
        logger.warning(f"Invalid max_age_days value ({max_age_days}), using default of 1 day")
        max_age_days = 1

    log_path = Path(log_dir)
    if not log_path.exists():
        logger.warning(f"Log directory {log_dir} does not exist, nothing to clean up")
        return 0

    cutoff = datetime.now() - timedelta(days=max_age_days)
    removed_count = 0
    for file_path in log_path.glob("*.log*"):
        if not file_path.is_file():
            continue
        # The active handlers keep writing to the un-suffixed files
        if file_path.suffix == ".log":
            continue
        file_time = datetime.fromtimestamp(file_path.stat().st_mtime)
        if file_time < cutoff:
            try:
                file_path.unlink()
                removed_count += 1
                logger.debug(f"Removed old log file: {file_path}")
            except OSError as e:
                logger.warning(f"Failed to remove old log file {file_path}: {e}")

    logger.info(f"Log cleanup completed: removed {removed_count} files older than {max_age_days} days")
    return removed_count


def get_log_config():
    """Logging preferences: env vars first, then the ``logging/*`` settings keys."""
    settings = get_app_settings()

    if DEBUG_ENV in os.environ:
        debug_mode = os.environ[DEBUG_ENV].lower() in ('true', '1', 'yes')
    else:
        debug_mode = settings.value("logging/debug_mode", False, type=bool)
    log_dir = os.environ.get(LOG_DIR_ENV) or settings.value("logging/log_dir", DEFAULT_LOG_DIR)

    try:
        cleanup_days = int(settings.value("logging/cleanup_days", 1))
    except (TypeError, ValueError):
        cleanup_days = 1

    return {
        'debug_mode': debug_mode,
        'log_dir': str(log_dir),
        'auto_cleanup': settings.value("logging/auto_cleanup", False, type=bool),
        'cleanup_days': max(1, min(cleanup_days, 365)),
    }


def reconfigure_logging():
    config = get_log_config()
    root_logger = setup_logging(debug_mode=config['debug_mode'], log_dir=config['log_dir'])
    if config['auto_cleanup']:
        cleanup_old_logs(config['log_dir'], config['cleanup_days'])
    root_logger.debug(f"Logging configuration: {config}")
    return root_logger
