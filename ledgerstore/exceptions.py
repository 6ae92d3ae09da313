"""Custom exception hierarchy for the ledger storage engine.

Engines raise these between their own phases and translate them into
result objects at public-method boundaries.
"""


class LedgerStoreError(Exception):
    """Base exception for all ledger storage errors."""

    pass


# Database-related exceptions
class DatabaseError(LedgerStoreError):
    """Base exception for database-related errors."""

    pass


class DatabaseConnectionError(DatabaseError):
    """Raised when the store cannot be opened or reopened."""

    pass


class DatabaseLockedError(DatabaseError):
    """Raised when the store stays locked past the wait window."""

    pass


class DatabaseMigrationError(DatabaseError):
    """Raised when a schema or currency migration fails."""

    pass


class DatabaseIntegrityError(DatabaseError):
    """Raised when an integrity check does not return ok."""

    pass


class ChecksumMismatchError(DatabaseIntegrityError):
    """Raised when a backup file no longer matches its recorded checksum."""

    pass


class SchemaDriftError(DatabaseError):
    """Raised when a table or column expected by the caller is missing."""

    pass


# Backup/restore exceptions
class BackupError(LedgerStoreError):
    """Raised when a backup cannot be produced or verified."""

    pass


class RestoreError(LedgerStoreError):
    """Raised when a backup cannot be validated or swapped in."""

    pass


class RepairError(LedgerStoreError):
    """Raised when corruption repair cannot proceed."""

    pass


# Security-related exceptions
class SecurityError(LedgerStoreError):
    """Base exception for security-related errors."""

    pass


class EncryptionError(SecurityError):
    """Raised when archive encryption/decryption fails."""

    pass


class CredentialStoreError(SecurityError):
    """Raised when credential storage/retrieval fails."""

    pass


# Configuration exceptions
class ConfigurationError(LedgerStoreError):
    """Base exception for configuration-related errors."""

    pass


class InvalidConfigurationError(ConfigurationError):
    """Raised when configuration is invalid."""

    pass
