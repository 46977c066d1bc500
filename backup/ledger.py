"""SQLite ledger recording every backup attempt and its outcome."""
from __future__ import annotations

import json
import sqlite3
from contextlib import closing
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from core.db import connect, transaction

from .errors import LedgerError
from .types import BackupMetadata, BackupMetrics, BackupStatus, BackupType, TERMINAL_STATUSES

_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS backups (
  id TEXT PRIMARY KEY,
  timestamp_utc TEXT NOT NULL,
  type TEXT NOT NULL,
  status TEXT NOT NULL,
  platform TEXT NOT NULL,
  destinations TEXT NOT NULL,
  size_bytes INTEGER NOT NULL DEFAULT 0,
  checksum TEXT,
  payload_sha256 TEXT,
  schema_version INTEGER,
  domains TEXT NOT NULL DEFAULT '[]',
  record_counts TEXT NOT NULL DEFAULT '{}',
  encrypted INTEGER NOT NULL DEFAULT 0,
  verified INTEGER NOT NULL DEFAULT 0,
  error TEXT,
  error_code TEXT,
  reaped_utc TEXT,
  purge_pending TEXT NOT NULL DEFAULT '[]'
);
CREATE INDEX IF NOT EXISTS idx_backups_timestamp ON backups(timestamp_utc);
CREATE TABLE IF NOT EXISTS backup_events (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  backup_id TEXT NOT NULL,
  ts_utc TEXT NOT NULL,
  status TEXT NOT NULL,
  detail TEXT
);
"""

_ALLOWED_TRANSITIONS: Dict[BackupStatus, frozenset] = {
    BackupStatus.PENDING: frozenset({BackupStatus.IN_PROGRESS, BackupStatus.FAILED, BackupStatus.CANCELLED}),
    BackupStatus.IN_PROGRESS: frozenset(TERMINAL_STATUSES),
}

_UPDATABLE = {
    "size": "size_bytes",
    "checksum": "checksum",
    "payload_sha256": "payload_sha256",
    "schema_version": "schema_version",
    "domains": "domains",
    "record_counts": "record_counts",
    "encrypted": "encrypted",
    "verified": "verified",
    "error": "error",
    "error_code": "error_code",
}


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


def _to_column(field: str, value: Any) -> Any:
    if field in ("domains", "record_counts"):
        return json.dumps(value, sort_keys=True)
    if field in ("encrypted", "verified"):
        return int(bool(value))
    return value


def _from_row(row: sqlite3.Row) -> BackupMetadata:
    return BackupMetadata(
        id=str(row["id"]),
        timestamp=str(row["timestamp_utc"]),
        type=BackupType(row["type"]),
        status=BackupStatus(row["status"]),
        platform=str(row["platform"]),
        destinations=list(json.loads(row["destinations"] or "[]")),
        size=int(row["size_bytes"] or 0),
        checksum=row["checksum"],
        payload_sha256=row["payload_sha256"],
        schema_version=row["schema_version"],
        domains=list(json.loads(row["domains"] or "[]")),
        record_counts=dict(json.loads(row["record_counts"] or "{}")),
        encrypted=bool(row["encrypted"]),
        verified=bool(row["verified"]),
        error=row["error"],
        error_code=row["error_code"],
        reaped_utc=row["reaped_utc"],
        purge_pending=list(json.loads(row["purge_pending"] or "[]")),
    )


class MetadataLedger:
    """Single source of truth for which backups exist and where they live.

    Rows are appended when a run starts and move monotonically through
    ``pending -> in_progress -> completed|failed|cancelled``. Terminal rows are
    never edited again; retention only sets ``reaped_utc`` (a tombstone) and
    tracks destinations whose bytes still await deletion in ``purge_pending``.
    Every status change is also appended to ``backup_events``.
    """

    def __init__(self, db_path: Path) -> None:
        self._db_path = Path(db_path)
        with closing(self._connect()) as conn:
            conn.executescript(_SCHEMA_SQL)
            columns = {row["name"] for row in conn.execute("PRAGMA table_info(backups)")}
            if "purge_pending" not in columns:
                conn.execute("ALTER TABLE backups ADD COLUMN purge_pending TEXT NOT NULL DEFAULT '[]'")
            conn.commit()

    def _connect(self) -> sqlite3.Connection:
        return connect(self._db_path)

    @staticmethod
    def _record_event(conn: sqlite3.Connection, backup_id: str, status: str, detail: Optional[str]) -> None:
        conn.execute(
            "INSERT INTO backup_events(backup_id, ts_utc, status, detail) VALUES(?, ?, ?, ?)",
            (backup_id, _utcnow(), status, detail),
        )

    # ------------------------------------------------------------------
    def append(self, metadata: BackupMetadata) -> BackupMetadata:
        with closing(self._connect()) as conn:
            try:
                with transaction(conn):
                    conn.execute(
                        """
                        INSERT INTO backups(
                            id, timestamp_utc, type, status, platform, destinations, size_bytes,
                            checksum, payload_sha256, schema_version, domains, record_counts,
                            encrypted, verified, error, error_code
                        ) VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        (
                            metadata.id,
                            metadata.timestamp,
                            metadata.type.value,
                            metadata.status.value,
                            metadata.platform,
                            json.dumps(list(metadata.destinations)),
                            int(metadata.size),
                            metadata.checksum,
                            metadata.payload_sha256,
                            metadata.schema_version,
                            _to_column("domains", metadata.domains),
                            _to_column("record_counts", metadata.record_counts),
                            int(metadata.encrypted),
                            int(metadata.verified),
                            metadata.error,
                            metadata.error_code,
                        ),
                    )
                    self._record_event(conn, metadata.id, metadata.status.value, metadata.error)
            except sqlite3.IntegrityError as exc:
                raise LedgerError(f"backup {metadata.id} already recorded") from exc
        return metadata

    def transition(self, backup_id: str, status: BackupStatus, **fields: Any) -> BackupMetadata:
        unknown = set(fields) - set(_UPDATABLE)
        if unknown:
            raise LedgerError(f"fields not updatable: {', '.join(sorted(unknown))}")
        with closing(self._connect()) as conn:
            with transaction(conn):
                row = conn.execute("SELECT status FROM backups WHERE id=?", (backup_id,)).fetchone()
                if row is None:
                    raise LedgerError(f"backup {backup_id} is not in the ledger")
                current = BackupStatus(row["status"])
                if status not in _ALLOWED_TRANSITIONS.get(current, frozenset()):
                    raise LedgerError(f"backup {backup_id} cannot move from {current.value} to {status.value}")
                assignments = ["status=?"]
                values: List[Any] = [status.value]
                for field, value in fields.items():
                    assignments.append(f"{_UPDATABLE[field]}=?")
                    values.append(_to_column(field, value))
                values.append(backup_id)
                conn.execute(f"UPDATE backups SET {', '.join(assignments)} WHERE id=?", values)
                self._record_event(conn, backup_id, status.value, fields.get("error"))
        result = self.get(backup_id)
        if result is None:
            raise LedgerError(f"backup {backup_id} vanished from the ledger")
        return result

    def tombstone(
        self,
        backup_id: str,
        *,
        reaped_utc: Optional[str] = None,
        purge_pending: Iterable[str] = (),
    ) -> None:
        """Hide a terminal row; ``purge_pending`` names destinations still holding bytes."""

        pending = sorted(set(purge_pending))
        with closing(self._connect()) as conn:
            with transaction(conn):
                row = conn.execute("SELECT status, reaped_utc FROM backups WHERE id=?", (backup_id,)).fetchone()
                if row is None:
                    raise LedgerError(f"backup {backup_id} is not in the ledger")
                if BackupStatus(row["status"]) not in TERMINAL_STATUSES:
                    raise LedgerError(f"backup {backup_id} is still running")
                if row["reaped_utc"]:
                    return
                conn.execute(
                    "UPDATE backups SET reaped_utc=?, purge_pending=? WHERE id=?",
                    (reaped_utc or _utcnow(), json.dumps(pending), backup_id),
                )
                self._record_event(conn, backup_id, "reaped", ",".join(pending) or None)

    def set_purge_pending(self, backup_id: str, destinations: Iterable[str]) -> None:
        with closing(self._connect()) as conn:
            with transaction(conn):
                cursor = conn.execute(
                    "UPDATE backups SET purge_pending=? WHERE id=? AND reaped_utc IS NOT NULL",
                    (json.dumps(sorted(set(destinations))), backup_id),
                )
                if cursor.rowcount == 0:
                    raise LedgerError(f"backup {backup_id} is not a reaped entry")

    def pending_purges(self) -> List[BackupMetadata]:
        with closing(self._connect()) as conn:
            rows = conn.execute(
                "SELECT * FROM backups WHERE reaped_utc IS NOT NULL AND purge_pending != '[]' "
                "ORDER BY timestamp_utc, id"
            ).fetchall()
        return [_from_row(row) for row in rows]

    # ------------------------------------------------------------------
    def get(self, backup_id: str) -> Optional[BackupMetadata]:
        with closing(self._connect()) as conn:
            row = conn.execute("SELECT * FROM backups WHERE id=?", (backup_id,)).fetchone()
        return _from_row(row) if row else None

    def list(self, limit: Optional[int] = 50, *, include_reaped: bool = False) -> List[BackupMetadata]:
        sql = "SELECT * FROM backups"
        if not include_reaped:
            sql += " WHERE reaped_utc IS NULL"
        sql += " ORDER BY timestamp_utc DESC, id DESC"
        params: tuple = ()
        if limit is not None:
            sql += " LIMIT ?"
            params = (max(int(limit), 0),)
        with closing(self._connect()) as conn:
            rows = conn.execute(sql, params).fetchall()
        return [_from_row(row) for row in rows]

    def events(self, backup_id: str) -> List[Dict[str, Any]]:
        with closing(self._connect()) as conn:
            rows = conn.execute(
                "SELECT ts_utc, status, detail FROM backup_events WHERE backup_id=? ORDER BY id",
                (backup_id,),
            ).fetchall()
        return [dict(row) for row in rows]

    def latest_completed(self, destination: Optional[str] = None) -> Optional[BackupMetadata]:
        for entry in self.list(limit=None):
            if entry.status is not BackupStatus.COMPLETED:
                continue
            if destination is None or destination in entry.destinations:
                return entry
        return None

    def metrics(self, *, next_run_utc: Optional[str] = None) -> BackupMetrics:
        entries = self.list(limit=None, include_reaped=True)
        completed = [entry for entry in entries if entry.status is BackupStatus.COMPLETED]
        live = [entry for entry in completed if not entry.reaped]
        return BackupMetrics(
            total_backups=len(entries),
            successful_backups=len(completed),
            failed_backups=sum(1 for entry in entries if entry.status is BackupStatus.FAILED),
            cancelled_backups=sum(1 for entry in entries if entry.status is BackupStatus.CANCELLED),
            total_data_size=sum(entry.size for entry in live),
            last_backup_utc=completed[0].timestamp if completed else None,
            next_scheduled_utc=next_run_utc,
        )


__all__ = ["MetadataLedger"]
