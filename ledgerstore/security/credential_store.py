"""Keyring-backed storage for the backup archive passphrase."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional

import keyring
from keyring.errors import KeyringError, PasswordDeleteError

from ledgerstore.exceptions import CredentialStoreError

SERVICE_NAME = "LedgerStore"


@dataclass(frozen=True)
class _CredentialDescriptor:
    kind: str
    secure_id: str
    legacy_key: str


_ENTRIES = {
    "archive": _CredentialDescriptor(
        kind="archive", secure_id="backup_archive_passphrase", legacy_key="backup/archive_passphrase"
    ),
}


def _get_entry(kind: str) -> _CredentialDescriptor:
    try:
        return _ENTRIES[kind]
    except KeyError as exc:  # pragma: no cover - developer error
        raise ValueError(f"Unknown credential kind: {kind}") from exc


def get_secret(
    kind: str, *, settings: Optional[Any] = None, logger: Optional[logging.Logger] = None
) -> Optional[str]:
    """
    Retrieve the secret for ``kind`` from the keyring.

    A plaintext value left in QSettings by older builds is moved into the keyring.
    """
    descriptor = _get_entry(kind)
    try:
        value = keyring.get_password(SERVICE_NAME, descriptor.secure_id)
    except KeyringError as exc:
        raise CredentialStoreError(f"Failed to read credential '{kind}': {exc}") from exc
    if value:
        return value

    if settings is None:
        return None
    legacy_value = settings.value(descriptor.legacy_key)
    if not legacy_value:
        return None
    try:
        keyring.set_password(SERVICE_NAME, descriptor.secure_id, legacy_value)
    except KeyringError as exc:
        if logger:
            logger.warning("Failed to migrate legacy credential '%s': %s", kind, exc, exc_info=True)
        return legacy_value
    settings.remove(descriptor.legacy_key)
    settings.sync()
    if logger:
        logger.info("Migrated legacy credential '%s' into secure store", kind)
    return legacy_value


def set_secret(
    kind: str,
    value: str,
    *,
    settings: Optional[Any] = None,
    logger: Optional[logging.Logger] = None,
) -> None:
    descriptor = _get_entry(kind)
    try:
        keyring.set_password(SERVICE_NAME, descriptor.secure_id, value)
    except KeyringError as exc:
        raise CredentialStoreError(f"Failed to store credential '{kind}': {exc}") from exc
    if settings is not None:
        settings.remove(descriptor.legacy_key)
        settings.sync()
    if logger:
        logger.debug("Stored credential '%s' in secure store", kind)


def delete_secret(
    kind: str, *, settings: Optional[Any] = None, logger: Optional[logging.Logger] = None
) -> None:
    descriptor = _get_entry(kind)
    if settings is not None:
        settings.remove(descriptor.legacy_key)
        settings.sync()
    try:
        keyring.delete_password(SERVICE_NAME, descriptor.secure_id)
    except PasswordDeleteError:
        if logger:
            logger.debug("Credential '%s' not present in secure store during delete", kind)
    except KeyringError as exc:
        raise CredentialStoreError(f"Failed to delete credential '{kind}': {exc}") from exc
