"""Retention policy enforcement for backups."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import AbstractSet, Callable, Dict, Iterable, List, Mapping, Optional, Set, Tuple

from .destinations import DestinationWriter, manifest_key, snapshot_key
from .errors import DestinationError
from .ledger import MetadataLedger
from .logs import BackupLogger
from .types import BackupMetadata, BackupStatus, RetentionSummary


@dataclass(slots=True)
class RetentionPolicy:
    retention_days: int = 90

    @property
    def window(self) -> timedelta:
        return timedelta(days=self.retention_days)


def newest_completed_per_destination(entries: Iterable[BackupMetadata]) -> Set[str]:
    newest: Dict[str, BackupMetadata] = {}
    for entry in entries:
        if entry.status is not BackupStatus.COMPLETED or entry.reaped:
            continue
        for destination in entry.destinations:
            current = newest.get(destination)
            if current is None or (entry.timestamp, entry.id) > (current.timestamp, current.id):
                newest[destination] = entry
    return {entry.id for entry in newest.values()}


def select_candidates(
    entries: Iterable[BackupMetadata],
    policy: RetentionPolicy,
    *,
    now: datetime,
    protected: AbstractSet[str] = frozenset(),
) -> List[BackupMetadata]:
    """Entries strictly older than the window, minus the newest completed per destination."""

    items = [entry for entry in entries if not entry.reaped]
    keep = newest_completed_per_destination(items) | set(protected)
    cutoff = now - policy.window
    candidates = [
        entry
        for entry in items
        if entry.status.terminal and entry.id not in keep and entry.created < cutoff
    ]
    candidates.sort(key=lambda entry: entry.timestamp)
    return candidates


class RetentionReaper:
    """Delete expired backup bytes and tombstone their ledger rows."""

    def __init__(
        self,
        ledger: MetadataLedger,
        destinations: Mapping[str, DestinationWriter],
        *,
        logger: BackupLogger,
        in_flight: Callable[[], AbstractSet[str]] = frozenset,
    ) -> None:
        self._ledger = ledger
        self._destinations = destinations
        self._logger = logger
        self._in_flight = in_flight

    def reap(self, policy: RetentionPolicy, *, now: Optional[datetime] = None) -> RetentionSummary:
        moment = now or datetime.now(timezone.utc)
        self._retry_pending_purges()
        entries = self._ledger.list(limit=None)
        candidates = select_candidates(entries, policy, now=moment, protected=self._in_flight())

        removed: List[str] = []
        freed = 0
        for entry in candidates:
            outcome = self._delete_bytes(entry)
            if outcome is None:
                continue
            # A partially deleted entry is no longer restorable.
            self._ledger.tombstone(entry.id, purge_pending=outcome)
            removed.append(entry.id)
            freed += entry.size if entry.status is BackupStatus.COMPLETED else 0
            self._logger.warning("backup_removed", id=entry.id, reason="retention",
                                 purge_pending=",".join(outcome) or None)

        kept = [entry.id for entry in entries if entry.id not in removed]
        self._logger.event(event="retention_applied", phase="retention", ok=True, removed=len(removed),
                           kept=len(kept), retention_days=policy.retention_days)
        return RetentionSummary(removed=removed, kept=kept, freed_bytes=freed)

    def _delete_at(self, entry: BackupMetadata, name: str) -> Tuple[bool, bool]:
        """Delete both artifacts at one destination; returns (any_deleted, all_deleted)."""

        writer = self._destinations[name]
        deleted = 0
        keys = (snapshot_key(entry.id), manifest_key(entry.id))
        for key in keys:
            try:
                writer.delete(key)
            except DestinationError as exc:
                self._logger.failure("retention_delete_failed", exc, id=entry.id, destination=name, key=key)
                continue
            deleted += 1
        return deleted > 0, deleted == len(keys)

    def _delete_bytes(self, entry: BackupMetadata) -> Optional[List[str]]:
        """Delete an entry's artifacts everywhere.

        Returns the destinations that still hold bytes, or ``None`` when nothing
        was deleted and the entry is left untouched.
        """

        missing = [name for name in entry.destinations if name not in self._destinations]
        if missing and entry.status is BackupStatus.COMPLETED:
            # Bytes may still exist somewhere we cannot reach; keep the row and every copy.
            self._logger.warning("retention_skipped", id=entry.id, destination=",".join(missing),
                                 reason="destination_unavailable")
            return None
        touched = False
        leftovers: List[str] = []
        for name in entry.destinations:
            if name not in self._destinations:
                continue
            any_deleted, all_deleted = self._delete_at(entry, name)
            touched = touched or any_deleted
            if not all_deleted:
                leftovers.append(name)
        if leftovers and not touched:
            return None
        return leftovers

    def _retry_pending_purges(self) -> None:
        for entry in self._ledger.pending_purges():
            remaining: List[str] = []
            for name in entry.purge_pending:
                if name not in self._destinations or not self._delete_at(entry, name)[1]:
                    remaining.append(name)
            if remaining != entry.purge_pending:
                self._ledger.set_purge_pending(entry.id, remaining)
                self._logger.info("retention_purge_retried", id=entry.id, purge_pending=",".join(remaining) or None)


__all__ = ["RetentionPolicy", "RetentionReaper", "newest_completed_per_destination", "select_candidates"]
