"""Result and record types returned across the storage engine boundary."""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any, Dict, List, Optional


class OperationStatus(Enum):
    """Three outcomes the UI collaborator renders distinctly."""

    OK = auto()
    CANCELLED = auto()
    FAILED = auto()


@dataclass
class _Result:
    status: OperationStatus
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.status is OperationStatus.OK

    @property
    def cancelled(self) -> bool:
        return self.status is OperationStatus.CANCELLED

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"success": self.success}
        if self.cancelled:
            payload["cancelled"] = True
        if self.error:
            payload["error"] = self.error
        return payload


@dataclass
class WriteResult(_Result):
    """Outcome of a write-path call; storage exceptions never escape it."""

    changes: int = 0
    last_insert_rowid: Optional[int] = None
    row_id: Optional[str] = None

    @classmethod
    def ok(cls, changes: int = 0, *, last_insert_rowid: Optional[int] = None,
           row_id: Optional[str] = None) -> "WriteResult":
        return cls(OperationStatus.OK, changes=changes,
                   last_insert_rowid=last_insert_rowid, row_id=row_id)

    @classmethod
    def failed(cls, error: str) -> "WriteResult":
        return cls(OperationStatus.FAILED, error=error)

    def to_dict(self) -> Dict[str, Any]:
        payload = super().to_dict()
        if self.success:
            payload["changes"] = self.changes
            payload["lastInsertRowid"] = self.last_insert_rowid
            if self.row_id is not None:
                payload["id"] = self.row_id
        return payload


@dataclass
class BackupResult(_Result):
    """Outcome of a manual, automatic, or emergency backup."""

    path: Optional[str] = None
    file_size: int = 0
    checksum: Optional[str] = None
    encrypted: bool = False

    @classmethod
    def ok(cls, path: str, file_size: int, checksum: Optional[str], *, encrypted: bool = False) -> "BackupResult":
        return cls(OperationStatus.OK, path=path, file_size=file_size,
                   checksum=checksum, encrypted=encrypted)

    @classmethod
    def failed(cls, error: str, path: Optional[str] = None) -> "BackupResult":
        return cls(OperationStatus.FAILED, error=error, path=path)

    @classmethod
    def cancelled_result(cls) -> "BackupResult":
        return cls(OperationStatus.CANCELLED)

    def to_dict(self) -> Dict[str, Any]:
        payload = super().to_dict()
        if self.success:
            payload.update(fileSize=self.file_size, checksum=self.checksum, encrypted=self.encrypted)
        return payload


@dataclass
class RestoreResult(_Result):
    """Outcome of a restore; ``rolled_back`` is set when the prior store was reinstated."""

    path: Optional[str] = None
    rolled_back: bool = False

    @classmethod
    def ok(cls, path: str) -> "RestoreResult":
        return cls(OperationStatus.OK, path=path)

    @classmethod
    def failed(cls, error: str, path: Optional[str] = None, *, rolled_back: bool = False) -> "RestoreResult":
        return cls(OperationStatus.FAILED, error=error, path=path, rolled_back=rolled_back)

    @classmethod
    def cancelled_result(cls) -> "RestoreResult":
        return cls(OperationStatus.CANCELLED)


class RepairState(Enum):
    """States of the corruption repair state machine."""

    DETECTED = auto()
    BACKUP_CORRUPT_COPY = auto()
    ATTEMPT_IN_PLACE_REPAIR = auto()
    VERIFY = auto()
    REPAIRED = auto()
    ATTEMPT_RESTORE_FROM_BACKUP = auto()
    RESTORED_FROM_BACKUP = auto()
    PRESERVE_CORRUPTED = auto()

    @property
    def is_terminal(self) -> bool:
        return self in (RepairState.REPAIRED, RepairState.RESTORED_FROM_BACKUP, RepairState.PRESERVE_CORRUPTED)


@dataclass
class RepairOutcome:
    """Terminal state of a repair run plus the files it touched."""

    state: RepairState
    message: str = ""
    corrupt_copy: Optional[str] = None
    restored_from: Optional[str] = None
    preserved_path: Optional[str] = None
    history: List[RepairState] = field(default_factory=list)
    aborted: bool = False
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return not self.aborted and self.state in (RepairState.REPAIRED, RepairState.RESTORED_FROM_BACKUP)


@dataclass
class BackupRecord:
    """Row of the ``backup_history`` table, or a backup discovered on disk."""

    id: str
    backup_path: str
    backup_type: str
    file_size: int
    checksum: Optional[str]
    created_at: str
    encrypted: bool = False
    discovered: bool = False

    @classmethod
    def from_row(cls, row) -> "BackupRecord":
        return cls(
            id=row["id"],
            backup_path=row["backupPath"],
            backup_type=row["backupType"],
            file_size=int(row["fileSize"] or 0),
            checksum=row["checksum"],
            created_at=row["createdAt"],
            encrypted=bool(row["encrypted"]),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "backupPath": self.backup_path,
            "backupType": self.backup_type,
            "fileSize": self.file_size,
            "checksum": self.checksum,
            "encrypted": self.encrypted,
            "createdAt": self.created_at,
            "discovered": self.discovered,
        }


@dataclass
class ColumnCheck:
    """Currency-migration test result for one monetary column."""

    table: str
    column: str
    rows_checked: int
    mismatches: int

    @property
    def passed(self) -> bool:
        return self.mismatches == 0


@dataclass
class MigrationReport:
    """Summary of a currency-migration phase run."""

    phase: str
    success: bool
    message: str = ""
    columns: List[ColumnCheck] = field(default_factory=list)
    row_counts: Dict[str, tuple] = field(default_factory=dict)
    foreign_key_violations: int = 0

    @property
    def failed_columns(self) -> List[ColumnCheck]:
        return [check for check in self.columns if not check.passed]
