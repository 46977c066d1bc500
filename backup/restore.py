"""Restore backups with validation first and rollback on partial failure."""
from __future__ import annotations

from typing import Iterable, List, Mapping, Optional, Tuple

from .crypto import EncryptionLayer
from .destinations import DestinationWriter
from .errors import ApplyError
from .logs import BackupLogger
from .providers import DomainProvider
from .types import BackupMetadata, RecordSet, RestoreResult, RestoreState, Snapshot
from .verify import fetch_verified_payload, open_payload


class RestoreCoordinator:
    """Drive one restore through ``idle -> validating -> staged -> applying``.

    A run ends ``committed`` when every domain applied, ``rolled_back`` when a
    domain failed and all earlier domains were put back, or ``failed`` when it
    stopped before any domain was touched (or a rollback step itself failed).
    """

    def __init__(
        self,
        providers: Mapping[str, DomainProvider],
        *,
        logger: BackupLogger,
        encryption: Optional[EncryptionLayer] = None,
    ) -> None:
        self._providers = dict(providers)
        self._logger = logger
        self._encryption = encryption
        self.state = RestoreState.IDLE
        self.history: List[RestoreState] = [RestoreState.IDLE]

    # ------------------------------------------------------------------
    def _enter(self, state: RestoreState, backup_id: str) -> None:
        self.state = state
        self.history.append(state)
        self._logger.info("restore_state", id=backup_id, state=state.value)

    def _select(self, snapshot: Snapshot, domains: Optional[Iterable[str]]) -> List[str]:
        available = sorted(snapshot.domains)
        selected = available if domains is None else sorted(set(domains))
        for name in selected:
            if name not in snapshot.domains:
                raise ApplyError(name, "domain is not present in this backup")
            if name not in self._providers:
                raise ApplyError(name, "no provider registered for this domain")
        return selected

    def _rollback(self, applied: List[Tuple[str, RecordSet]], backup_id: str) -> List[str]:
        errors: List[str] = []
        for name, previous in reversed(applied):
            try:
                self._providers[name].apply_atomic(previous)
                self._logger.info("restore_rollback", id=backup_id, domain=name)
            except Exception as exc:
                errors.append(f"{name}: {exc}")
                self._logger.failure("restore_rollback_failed", exc, id=backup_id, domain=name)
        return errors

    # ------------------------------------------------------------------
    def restore(
        self,
        destination: DestinationWriter,
        backup_id: str,
        *,
        expected: Optional[BackupMetadata] = None,
        domains: Optional[Iterable[str]] = None,
    ) -> RestoreResult:
        self.history = []
        self._enter(RestoreState.IDLE, backup_id)
        try:
            self._enter(RestoreState.VALIDATING, backup_id)
            record, payload = fetch_verified_payload(destination, backup_id, expected=expected)
            self._enter(RestoreState.STAGED, backup_id)
            snapshot = open_payload(record, payload, encryption=self._encryption)
            selected = self._select(snapshot, domains)
        except Exception as exc:
            self._enter(RestoreState.FAILED, backup_id)
            self._logger.failure("restore_failed", exc, id=backup_id, phase="validate")
            raise

        self._enter(RestoreState.APPLYING, backup_id)
        applied: List[Tuple[str, RecordSet]] = []
        for name in selected:
            try:
                previous = self._providers[name].apply_atomic(snapshot.domains[name])
            except Exception as exc:
                self._logger.failure("restore_apply_failed", exc, id=backup_id, domain=name)
                rollback_errors = self._rollback(applied, backup_id)
                self._enter(RestoreState.FAILED if rollback_errors else RestoreState.ROLLED_BACK, backup_id)
                raise ApplyError(name, str(exc) or type(exc).__name__, rollback_errors=rollback_errors) from exc
            applied.append((name, previous))
            self._logger.info("restore_applied", id=backup_id, domain=name, records=len(snapshot.domains[name]))

        self._enter(RestoreState.COMMITTED, backup_id)
        self._logger.event(event="backup_restored", phase="restore", ok=True, id=backup_id,
                           destination=destination.name)
        return RestoreResult(
            success=True,
            backup_id=backup_id,
            state=RestoreState.COMMITTED,
            restored_counts={name: len(snapshot.domains[name]) for name in selected},
            destination=destination.name,
        )


__all__ = ["RestoreCoordinator"]
