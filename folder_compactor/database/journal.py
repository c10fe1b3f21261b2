import sqlite3
import logging
import uuid
from datetime import datetime, UTC
from pathlib import Path
from typing import List, Optional

from ..exceptions import JournalError
from ..models import CompressionAlgorithm, CompressionMode, OperationRecord, OperationStatus
from .db import DBManager

_COLUMNS = (
    "id, path, mode, algorithm, startedAt, finishedAt, beforeBytes, afterBytes, "
    "status, errorMessage, isRollback, originalOperationId"
)


class SqliteOperationJournal:
    """
    Durable log of compress / rollback attempts.

    A record is added (InProgress) before the tool starts and updated to a
    terminal status afterwards. A crash in between leaves an InProgress row,
    which get_unfinished() reports on the next start.
    """

    def __init__(self, db_path: Path):
        self.db = DBManager(db_path)

    def initialize(self):
        try:
            self.db.initialize()
        except (sqlite3.Error, OSError) as e:
            raise JournalError(f"Cannot initialize journal at {self.db.db_path}: {e}") from e

    def add(self, record: OperationRecord):
        logging.debug(f"Journal add {record.id} {record.status.name} {record.path}")
        try:
            with self.db.write_lock, self.db.connection() as conn:
                with conn:
                    conn.execute(
                        f"INSERT INTO operations ({_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                        _to_row(record),
                    )
        except sqlite3.Error as e:
            raise JournalError(f"Failed to add operation {record.id}: {e}") from e

    def update(self, record: OperationRecord):
        logging.debug(f"Journal update {record.id} -> {record.status.name}")
        row = _to_row(record)
        try:
            with self.db.write_lock, self.db.connection() as conn:
                with conn:
                    cur = conn.execute("""
                        UPDATE operations
                        SET path = ?, mode = ?, algorithm = ?, startedAt = ?, finishedAt = ?,
                            beforeBytes = ?, afterBytes = ?, status = ?, errorMessage = ?,
                            isRollback = ?, originalOperationId = ?
                        WHERE id = ?
                    """, row[1:] + row[:1])
                    if cur.rowcount == 0:
                        raise JournalError(f"Operation {record.id} is not in the journal.")
        except sqlite3.Error as e:
            raise JournalError(f"Failed to update operation {record.id}: {e}") from e

    def get_recent(self, take: int = 20) -> List[OperationRecord]:
        """Most recent records, newest first."""
        return self._select(f"SELECT {_COLUMNS} FROM operations ORDER BY startedAt DESC LIMIT ?", (max(0, take),))

    def get_by_id(self, op_id) -> Optional[OperationRecord]:
        rows = self._select(f"SELECT {_COLUMNS} FROM operations WHERE id = ?", (str(op_id),))
        return rows[0] if rows else None

    def get_unfinished(self) -> List[OperationRecord]:
        """Records a crash left in Pending / InProgress, oldest first."""
        return self._select(
            f"SELECT {_COLUMNS} FROM operations WHERE status IN (?, ?) ORDER BY startedAt ASC",
            (int(OperationStatus.PENDING), int(OperationStatus.IN_PROGRESS)),
        )

    def _select(self, sql: str, params) -> List[OperationRecord]:
        try:
            with self.db.connection() as conn:
                rows = conn.execute(sql, params).fetchall()
        except sqlite3.Error as e:
            raise JournalError(f"Journal query failed: {e}") from e
        return [_from_row(r) for r in rows]


def _to_iso(dt: Optional[datetime]) -> Optional[str]:
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC).isoformat(timespec="microseconds")


def _from_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value)


def _to_row(r: OperationRecord) -> tuple:
    return (
        str(r.id),
        r.path,
        int(r.mode),
        int(r.algorithm),
        _to_iso(r.started_at or datetime.now(UTC)),
        _to_iso(r.finished_at),
        int(r.before_bytes),
        int(r.after_bytes),
        int(r.status),
        r.error_message,
        int(r.is_rollback),
        str(r.original_operation_id) if r.original_operation_id else None,
    )


def _from_row(row) -> OperationRecord:
    (op_id, path, mode, algorithm, started, finished, before, after,
     status, error, is_rollback, original) = row
    return OperationRecord(
        id=uuid.UUID(op_id),
        path=path,
        mode=CompressionMode(mode),
        algorithm=CompressionAlgorithm(algorithm),
        started_at=_from_iso(started),
        finished_at=_from_iso(finished),
        before_bytes=before,
        after_bytes=after,
        status=OperationStatus(status),
        error_message=error,
        is_rollback=bool(is_rollback),
        original_operation_id=uuid.UUID(original) if original else None,
    )
