"""Common dataclasses shared across backup modules."""
from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def canonical_json(value: Any) -> bytes:
    """Serialise *value* deterministically; used for storage and checksums."""

    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def utc_iso(moment: datetime) -> str:
    """Fixed-width UTC ISO-8601 text; ledger ordering relies on it sorting lexically."""

    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).isoformat(timespec="microseconds")


class BackupType(str, Enum):
    MANUAL = "manual"
    SCHEDULED = "scheduled"


class BackupStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({BackupStatus.COMPLETED, BackupStatus.FAILED, BackupStatus.CANCELLED})


class RestoreState(str, Enum):
    IDLE = "idle"
    VALIDATING = "validating"
    STAGED = "staged"
    APPLYING = "applying"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"
    FAILED = "failed"


@dataclass(slots=True, eq=False)
class RecordSet:
    """Records exported by one domain. Record order carries no meaning.

    ``missing`` marks a domain whose backing store did not exist yet; applying
    such a set removes the store again. It never reaches a snapshot.
    """

    domain: str
    records: List[Dict[str, Any]] = field(default_factory=list)
    missing: bool = False

    def canonical_records(self) -> List[Dict[str, Any]]:
        return sorted(self.records, key=canonical_json)

    def __len__(self) -> int:
        return len(self.records)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, RecordSet):
            return NotImplemented
        if self.domain != other.domain or len(self.records) != len(other.records):
            return False
        mine = sorted(canonical_json(record) for record in self.records)
        theirs = sorted(canonical_json(record) for record in other.records)
        return mine == theirs


@dataclass(slots=True)
class Manifest:
    schema_version: int
    created_utc: str
    app_version: str
    domains: List[str]
    record_counts: Dict[str, int]
    checksum: str = ""
    encrypted: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def checksum_payload(self) -> Dict[str, Any]:
        data = self.to_dict()
        data.pop("checksum", None)
        data.pop("encrypted", None)
        return data


@dataclass(slots=True)
class Snapshot:
    manifest: Manifest
    domains: Dict[str, RecordSet]

    def record_counts(self) -> Dict[str, int]:
        return {name: len(records) for name, records in sorted(self.domains.items())}


@dataclass(slots=True)
class BackupMetadata:
    id: str
    timestamp: str
    type: BackupType
    status: BackupStatus
    platform: str
    destinations: List[str] = field(default_factory=list)
    size: int = 0
    checksum: Optional[str] = None
    payload_sha256: Optional[str] = None
    schema_version: Optional[int] = None
    domains: List[str] = field(default_factory=list)
    record_counts: Dict[str, int] = field(default_factory=dict)
    encrypted: bool = False
    verified: bool = False
    error: Optional[str] = None
    error_code: Optional[str] = None
    reaped_utc: Optional[str] = None
    purge_pending: List[str] = field(default_factory=list)

    @property
    def created(self) -> datetime:
        return datetime.fromisoformat(self.timestamp)

    @property
    def reaped(self) -> bool:
        return self.reaped_utc is not None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["type"] = self.type.value
        data["status"] = self.status.value
        return data


@dataclass(slots=True)
class RestoreResult:
    success: bool
    backup_id: str
    state: RestoreState
    restored_counts: Dict[str, int] = field(default_factory=dict)
    destination: Optional[str] = None
    failed_domain: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["state"] = self.state.value
        return data


@dataclass(slots=True)
class RetentionSummary:
    removed: List[str]
    kept: List[str]
    freed_bytes: int


@dataclass(slots=True)
class BackupMetrics:
    total_backups: int
    successful_backups: int
    failed_backups: int
    cancelled_backups: int
    total_data_size: int
    last_backup_utc: Optional[str]
    next_scheduled_utc: Optional[str]


@dataclass(slots=True)
class BackupHealth:
    ok: bool
    enabled: bool
    last_backup_utc: Optional[str]
    last_backup_age_s: Optional[float]
    missed_schedule: bool
    success_rate: float = 1.0


@dataclass(frozen=True)
class ExportResult:
    path: str
    format: str
    records: int
    domains: List[str]


__all__ = [
    "BackupHealth",
    "BackupMetadata",
    "BackupMetrics",
    "BackupStatus",
    "BackupType",
    "ExportResult",
    "Manifest",
    "RecordSet",
    "RestoreResult",
    "RestoreState",
    "RetentionSummary",
    "Snapshot",
    "TERMINAL_STATUSES",
    "canonical_json",
    "utc_iso",
]
