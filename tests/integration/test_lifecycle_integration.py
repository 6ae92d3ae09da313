import logging
from datetime import datetime

from tests.factories import product
from ledgerstore.infrastructure.settings import StorageSettings
from ledgerstore.services.lifecycle import StartupStatus, StoreLifecycle


def test_startup_and_quit_with_auto_backup(data_dir, settings_stub, caplog):
    settings = StorageSettings(auto_backup_enabled=True, auto_backup_interval="monthly", lock_wait_s=1.0)
    lifecycle = StoreLifecycle(data_dir, settings=settings)

    with caplog.at_level(logging.INFO):
        result = lifecycle.startup()

    assert result.status is StartupStatus.OK
    assert "Starting LedgerStore" in caplog.text
    assert result.db.insert("products", product()).success
    lifecycle.shutdown(now=datetime(2024, 3, 5))

    target = data_dir / "backups" / "backup-2024-03.db"
    assert target.exists() and target.stat().st_size > 0
    assert lifecycle.db is None

    again = StoreLifecycle(data_dir, settings=settings)
    reopened = again.startup()
    try:
        assert reopened.status is StartupStatus.OK
        assert reopened.db.get_by_id("products", "prod_1") is not None
        history = reopened.db.get_backup_history()
        assert any(entry.backup_type == "auto" for entry in history)
    finally:
        again.shutdown(now=datetime(2024, 3, 6))

    assert len(list((data_dir / "backups").glob("backup-2024-03*.db"))) == 1


def test_quit_without_auto_backup_writes_nothing(data_dir, settings_stub):
    lifecycle = StoreLifecycle(data_dir, settings=StorageSettings(lock_wait_s=1.0))
    assert lifecycle.startup().status is StartupStatus.OK

    lifecycle.shutdown()

    assert not (data_dir / "backups").exists() or not any((data_dir / "backups").iterdir())


def test_quit_backup_runs_when_period_file_has_no_history(manager, data_dir):
    from ledgerstore.services.lifecycle import run_auto_backup_at_quit, scheduled_backup_name

    stale = data_dir / "backups" / scheduled_backup_name("daily")
    stale.parent.mkdir(exist_ok=True)
    stale.write_bytes(b"left over from a copy" * 10)
    assert manager.get_backup_history() == []

    result = run_auto_backup_at_quit(manager, StorageSettings(auto_backup_enabled=True))

    assert result is not None and result.success
    assert stale.read_bytes().startswith(b"SQLite format 3")
    assert manager.get_last_backup_date() is not None
