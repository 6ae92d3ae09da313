import os
import sqlite3
import sys
from pathlib import Path

import pytest

os.environ.setdefault("QT_QPA_PLATFORM", "offscreen")

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from ledgerstore.infrastructure.settings import StorageSettings  # noqa: E402


def _coerce_bool(value, default):
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    if value is None:
        if isinstance(default, bool):
            return default
        return False
    return bool(value)


class _SettingsStub:
    """In-memory replacement for QSettings during tests."""

    _data = {}

    def __init__(self, org="LedgerStore", app="LedgerStoreApp"):
        self._key = (org, app)
        self._store = _SettingsStub._data.setdefault(self._key, {})

    def value(self, key, default=None, type=None, **kwargs):  # noqa: A002 - signature mirrors QSettings
        if "defaultValue" in kwargs and default is None:
            default = kwargs["defaultValue"]
        val = self._store.get(key, default)
        if type is bool:
            return _coerce_bool(val, default)
        return val

    def setValue(self, key, value):
        self._store[key] = value

    def remove(self, key):
        self._store.pop(key, None)

    def sync(self):  # QSettings compatibility
        return True

    @classmethod
    def clear(cls):
        cls._data.clear()


class _CredentialStoreStub:
    """In-memory stand-in for the OS keyring."""

    _store = {}
    _legacy_keys = {"archive": "backup/archive_passphrase"}

    @classmethod
    def reset(cls):
        cls._store = {}

    @classmethod
    def get_secret(cls, kind, *, settings=None, logger=None):
        value = cls._store.get(kind)
        if value is not None:
            return value
        if settings is None:
            return None
        legacy_key = cls._legacy_keys[kind]
        legacy_value = settings.value(legacy_key)
        if legacy_value is not None:
            cls._store[kind] = legacy_value
            settings.remove(legacy_key)
            return legacy_value
        return None

    @classmethod
    def set_secret(cls, kind, value, *, settings=None, logger=None):
        cls._store[kind] = value
        if settings is not None:
            settings.remove(cls._legacy_keys[kind])

    @classmethod
    def delete_secret(cls, kind, *, settings=None, logger=None):
        cls._store.pop(kind, None)


@pytest.fixture()
def settings_stub(monkeypatch):
    _SettingsStub.clear()
    _CredentialStoreStub.reset()
    monkeypatch.setattr("ledgerstore.infrastructure.settings.QSettings", _SettingsStub, raising=False)
    monkeypatch.setattr("ledgerstore.infrastructure.logger.QSettings", _SettingsStub, raising=False)
    monkeypatch.setattr(
        "ledgerstore.security.credential_store.get_secret", _CredentialStoreStub.get_secret, raising=False
    )
    monkeypatch.setattr(
        "ledgerstore.security.credential_store.set_secret", _CredentialStoreStub.set_secret, raising=False
    )
    monkeypatch.setattr(
        "ledgerstore.security.credential_store.delete_secret", _CredentialStoreStub.delete_secret, raising=False
    )
    yield _SettingsStub
    _SettingsStub.clear()
    _CredentialStoreStub.reset()


@pytest.fixture()
def credential_stub(settings_stub):
    return _CredentialStoreStub


@pytest.fixture()
def data_dir(tmp_path, monkeypatch):
    path = tmp_path / "data"
    path.mkdir()
    monkeypatch.setenv("LEDGERSTORE_DATA_DIR", str(path))
    return path


@pytest.fixture()
def storage_settings():
    return StorageSettings(lock_wait_s=1.0)


@pytest.fixture()
def manager(data_dir, settings_stub, storage_settings):
    from ledgerstore.persistence.database_manager import DatabaseManager

    db = DatabaseManager(data_dir / "ledger.db", storage_settings=storage_settings)
    try:
        yield db
    finally:
        db.close()


@pytest.fixture()
def legacy_store(tmp_path):
    """A store file whose money columns are still REAL."""
    from ledgerstore.persistence.migrations import ensure_schema

    path = tmp_path / "legacy.db"
    conn = sqlite3.connect(str(path), isolation_level=None)
    try:
        conn.execute("PRAGMA foreign_keys=ON")
        ensure_schema(conn, money_type="REAL")
    finally:
        conn.close()
    return path

