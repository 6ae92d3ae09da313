"""Application-wide identifiers and storage defaults."""

APP_NAME = "LedgerStore"
APP_VERSION = "1.4.0"

SETTINGS_ORG = "LedgerStore"
SETTINGS_APP = "LedgerStoreApp"

DB_FILENAME = "ledger.db"
BACKUP_DIRNAME = "backups"
LOCK_FILENAME = "ledger.lock"
DEFAULT_LOG_DIR = "logs"

DATA_DIR_ENV = "LEDGERSTORE_DATA_DIR"
DEBUG_ENV = "LEDGERSTORE_DEBUG"
LOG_DIR_ENV = "LEDGERSTORE_LOG_DIR"

# Retention defaults
EMERGENCY_BACKUP_AGE_SECONDS = 60 * 60
RETENTION_THRESHOLD = 15
RETENTION_DELETE_COUNT = 10
RENAMED_FILE_MAX_AGE_DAYS = 7
LOCK_WAIT_SECONDS = 10.0
