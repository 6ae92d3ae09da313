import json
import os
import sqlite3
import time

import pytest

from tests.factories import product
from ledgerstore.persistence import file_ops


def _backup_path(data_dir, name="manual.db"):
    return data_dir / "backups" / name


def test_backup_then_restore_roundtrip(manager, data_dir):
    manager.insert("products", product())
    target = _backup_path(data_dir)

    backup = manager.create_backup(target)

    assert backup.success
    assert backup.file_size == target.stat().st_size
    assert backup.checksum == file_ops.calculate_file_checksum(target)
    assert file_ops.file_passes_integrity(target)
    history = manager.get_backup_history()
    assert history[0].backup_path == str(target)
    assert history[0].checksum == backup.checksum
    assert manager.get_last_backup_date() is not None

    manager.update("products", "prod_1", {"name": "Renamed"})
    manager.insert("products", product(id="prod_2", code="P-002"))

    restored = manager.restore_backup(target)

    assert restored.success
    assert manager.get_by_id("products", "prod_1")["name"] == "Widget"
    assert manager.get_by_id("products", "prod_2") is None
    assert len(list(data_dir.glob("ledger.db.backup.*"))) == 1


def test_dismissed_dialogs_are_cancellations(manager):
    backup = manager.create_backup(None)
    restore = manager.restore_backup(None)

    assert backup.cancelled and not backup.success
    assert restore.cancelled and not restore.success
    assert backup.to_dict() == {"success": False, "cancelled": True}


def test_checksum_mismatch_leaves_live_store_untouched(manager, data_dir):
    manager.insert("products", product())
    target = _backup_path(data_dir)
    assert manager.create_backup(target).success
    manager.update("products", "prod_1", {"name": "Live value"})
    with open(target, "ab") as handle:
        handle.write(b"\0" * 512)

    result = manager.restore_backup(target)

    assert not result.success
    assert "checksum" in result.error.lower()
    assert result.rolled_back is False
    assert manager.get_by_id("products", "prod_1")["name"] == "Live value"
    assert list(data_dir.glob("ledger.db.backup.*")) == []


def test_restore_of_incomplete_store_rolls_back(manager, data_dir, tmp_path):
    manager.insert("products", product())
    stranger = tmp_path / "stranger.db"
    conn = sqlite3.connect(str(stranger))
    try:
        conn.execute("CREATE TABLE notes (id INTEGER PRIMARY KEY, body TEXT)")
        conn.commit()
    finally:
        conn.close()

    result = manager.restore_backup(stranger)

    assert not result.success
    assert result.rolled_back
    assert "Original database restored" in result.error
    assert manager.get_by_id("products", "prod_1")["name"] == "Widget"


def test_restore_validates_source_path(manager, tmp_path):
    missing = manager.restore_backup(tmp_path / "nope.db")
    empty_file = tmp_path / "empty.db"
    empty_file.write_bytes(b"")
    empty = manager.restore_backup(empty_file)

    assert not missing.success and "does not exist" in missing.error
    assert not empty.success and "empty" in empty.error


def test_restore_from_json_export(manager, tmp_path):
    manager.insert("products", product())
    export = tmp_path / "export.json"
    export.write_text(
        json.dumps({"tables": {"products": [product(id="prod_json", code="J-1", legacyField="x")]}}),
        encoding="utf-8",
    )

    result = manager.restore_backup(export)

    assert result.success
    assert [row["id"] for row in manager.get_all("products")] == ["prod_json"]


@pytest.mark.parametrize(
    "tables",
    [
        {"products": ["not-a-row"]},
        {"products": 42},
        {"products": [{"id": "ok"}, None]},
    ],
)
def test_malformed_json_export_is_reported_not_raised(manager, tmp_path, tables):
    manager.insert("products", product())
    export = tmp_path / "broken.json"
    export.write_text(json.dumps({"tables": tables}), encoding="utf-8")

    result = manager.restore_backup(export)

    assert not result.success
    assert "JSON backup table 'products'" in result.error
    assert manager.get_by_id("products", "prod_1")["name"] == "Widget"


def test_encrypted_archive_roundtrip(manager, data_dir, credential_stub):
    credential_stub.set_secret("archive", "archive-pass")
    manager.insert("products", product())
    archive = data_dir / "exports" / "ledger.lsbk"

    exported = manager.export_encrypted_backup(archive, "archive-pass")

    assert exported.success and exported.encrypted
    assert b"SQLite format 3" not in archive.read_bytes()[:64]
    manager.delete("products", "prod_1")

    restored = manager.restore_backup(archive)

    assert restored.success
    assert manager.get_by_id("products", "prod_1") is not None


def test_retention_prunes_oldest_files_and_history(manager, data_dir):
    backup_dir = data_dir / "backups"
    backup_dir.mkdir(exist_ok=True)
    base = time.time() - 10_000
    for index in range(16):
        path = backup_dir / f"backup-{index:02d}.db"
        path.write_bytes(b"x" * 100)
        os.utime(path, (base + index, base + index))
        manager.raw_query(
            "INSERT INTO backup_history (id, backupPath, backupType, fileSize, createdAt) "
            "VALUES (?, ?, 'auto', 100, ?)",
            (f"backup_{index}", str(path), f"2024-01-{index + 1:02d}T00:00:00+00:00"),
        )

    deleted = manager.delete_old_backups_when_exceeds(15, 10, backup_dir)

    assert deleted == 10
    remaining = sorted(p.name for p in backup_dir.iterdir())
    assert remaining == [f"backup-{index:02d}.db" for index in range(10, 16)]
    rows = manager.raw_query("SELECT id FROM backup_history ORDER BY id")
    assert len(rows) == 6


def test_retention_below_threshold_keeps_everything(manager, data_dir):
    backup_dir = data_dir / "backups"
    backup_dir.mkdir(exist_ok=True)
    for index in range(15):
        (backup_dir / f"backup-{index:02d}.db").write_bytes(b"x")

    assert manager.delete_old_backups_when_exceeds(15, 10, backup_dir) == 0
    assert manager.delete_old_backups_by_count(12, backup_dir) == 3
    assert len(list(backup_dir.iterdir())) == 12


def test_delete_old_backups_by_age(manager, data_dir):
    old = _backup_path(data_dir, "old.db")
    assert manager.create_backup(old).success
    manager.raw_query("UPDATE backup_history SET createdAt = '2020-01-01T00:00:00+00:00'")
    fresh = _backup_path(data_dir, "fresh.db")
    assert manager.create_backup(fresh).success

    assert manager.delete_old_backups(days_to_keep=30) == 1
    assert not old.exists()
    assert fresh.exists()


def test_history_includes_backups_found_on_disk(manager, data_dir):
    backup_dir = data_dir / "backups"
    backup_dir.mkdir(exist_ok=True)
    found = backup_dir / "copied-by-hand.db"
    conn = sqlite3.connect(str(found))
    try:
        conn.execute("CREATE TABLE t (id INTEGER)")
        conn.commit()
    finally:
        conn.close()
    (backup_dir / "garbage.db").write_bytes(b"definitely not sqlite" * 100)
    recorded = _backup_path(data_dir)
    assert manager.create_backup(recorded).success

    history = manager.get_backup_history(limit=10)

    by_path = {entry.backup_path: entry for entry in history}
    assert by_path[str(found)].discovered is True
    assert by_path[str(recorded)].discovered is False
    assert str(backup_dir / "garbage.db") not in by_path
    assert len(by_path) == len(history)


def test_latest_valid_backup_skips_damaged_files(manager, data_dir):
    good = _backup_path(data_dir, "good.db")
    assert manager.create_backup(good).success
    bad = _backup_path(data_dir, "newer-but-bad.db")
    bad.write_bytes(b"SQLite format 3\x00" + b"\xff" * 8192)

    assert manager.backups.find_latest_valid_backup() == str(good)
