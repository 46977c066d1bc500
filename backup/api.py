"""Public API for backup operations."""
from __future__ import annotations

import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from fastapi import APIRouter, FastAPI, HTTPException
from pydantic import BaseModel, ConfigDict, Field

from core.paths import (
    ensure_working_dir_structure,
    get_backups_dir,
    get_exports_dir,
    get_keystore_path,
    get_ledger_db_path,
    resolve_working_dir,
)
from core.settings import load_settings

from . import __version__ as APP_VERSION
from .codec import EXPORT_FORMATS, encode, looks_like_export
from .compose import SnapshotComposer
from .config import BackupConfiguration, ConfigurationUpdateResult, load_configuration, save_configuration
from .create import record_rejected, run_backup, unrecorded_failure
from .crypto import EncryptionLayer, resolve_encryption
from .destinations import BackupFileSource, CloudDestination, DestinationWriter, LocalDestination
from .errors import (
    ApplyError,
    ArtifactNotFoundError,
    BackupError,
    BusyError,
    CodecError,
    ConfigurationError,
    DestinationError,
    ExportOnlyFormatError,
    LedgerError,
)
from .ledger import MetadataLedger
from .locks import CancelToken, EngineLock
from .logs import BackupLogger
from .providers import DomainProvider, index_providers
from .restore import RestoreCoordinator
from .retention import RetentionPolicy, RetentionReaper
from .schedule import BackupScheduler, local_now, next_run_at
from .types import (
    BackupHealth,
    BackupMetadata,
    BackupMetrics,
    BackupStatus,
    BackupType,
    ExportResult,
    RestoreResult,
    RestoreState,
    RetentionSummary,
    utc_iso,
)
from .verify import verify_backup

_LOW_SUCCESS_RATE = 0.9


class BackupListResponse(BaseModel):
    backups: List[Dict[str, Any]]


class RestoreRequest(BaseModel):
    domains: Optional[List[str]] = None


class ExportRequest(BaseModel):
    format: str = "csv"
    domains: Optional[List[str]] = None


class ConfigurationPatch(BaseModel):
    model_config = ConfigDict(extra="forbid")

    enabled: Optional[bool] = None
    frequency: Optional[str] = None
    time: Optional[str] = Field(default=None, description="24h HH:MM")
    include_user_data: Optional[bool] = None
    include_communication_data: Optional[bool] = None
    include_progress_data: Optional[bool] = None
    include_settings: Optional[bool] = None
    local_backup: Optional[bool] = None
    cloud_backup: Optional[bool] = None
    encryption_enabled: Optional[bool] = None
    retention_days: Optional[int] = None


def build_destinations(
    settings: Mapping[str, Any],
    working_dir: Path,
    *,
    cloud_client: Any = None,
) -> Dict[str, DestinationWriter]:
    destinations: Dict[str, DestinationWriter] = {"local": LocalDestination(get_backups_dir(working_dir))}
    cloud = settings.get("cloud") if isinstance(settings.get("cloud"), Mapping) else {}
    if cloud.get("bucket"):
        destinations["cloud"] = CloudDestination(
            str(cloud["bucket"]),
            prefix=str(cloud.get("prefix") or ""),
            client=cloud_client,
            region=cloud.get("region"),
            endpoint_url=cloud.get("endpoint_url"),
        )
    return destinations


class BackupService:
    """Coordinate backup, verification, restore, and retention workflows."""

    def __init__(
        self,
        *,
        working_dir: Optional[Path] = None,
        settings: Optional[Dict[str, Any]] = None,
        providers: Iterable[DomainProvider] | Mapping[str, DomainProvider] = (),
        destinations: Optional[Mapping[str, DestinationWriter]] = None,
        cloud_client: Any = None,
        passphrase: Optional[str] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._working_dir = Path(working_dir or resolve_working_dir())
        ensure_working_dir_structure(self._working_dir)
        self._settings = dict(settings) if settings is not None else load_settings(self._working_dir)
        self._clock = clock or local_now
        self._logger = BackupLogger(self._working_dir)
        self._config = load_configuration(self._working_dir, self._settings)
        self._config_lock = threading.Lock()
        self._providers = index_providers(providers)
        if destinations is not None:
            self._destinations = dict(destinations)
        else:
            self._destinations = build_destinations(self._settings, self._working_dir, cloud_client=cloud_client)
        self._encryption = self._resolve_encryption(passphrase)
        self._ledger = MetadataLedger(get_ledger_db_path(self._working_dir))
        self._lock = EngineLock()
        self._cancel: Optional[CancelToken] = None
        self._composer = SnapshotComposer(self._providers, logger=self._logger)
        self._coordinator = RestoreCoordinator(self._providers, logger=self._logger, encryption=self._encryption)
        self._reaper = RetentionReaper(
            self._ledger,
            self._destinations,
            logger=self._logger,
            in_flight=self._lock.restoring_ids,
        )
        scheduler_cfg = self._settings.get("scheduler") if isinstance(self._settings.get("scheduler"), dict) else {}
        self._health_max_age_s = float(scheduler_cfg.get("health_max_age_h", 25)) * 3600.0
        self._scheduler = BackupScheduler(
            config_provider=lambda: self.configuration,
            run_backup=self.run_scheduled_backup,
            logger=self._logger,
            health_check=self.check_health,
            clock=self._clock,
            poll_s=float(scheduler_cfg.get("poll_s", 60)),
        )

    # ------------------------------------------------------------------
    @property
    def working_dir(self) -> Path:
        return self._working_dir

    @property
    def configuration(self) -> BackupConfiguration:
        with self._config_lock:
            return self._config

    @property
    def ledger(self) -> MetadataLedger:
        return self._ledger

    @property
    def scheduler(self) -> BackupScheduler:
        return self._scheduler

    @property
    def destinations(self) -> Dict[str, DestinationWriter]:
        return dict(self._destinations)

    def _resolve_encryption(self, passphrase: Optional[str]) -> Optional[EncryptionLayer]:
        try:
            return resolve_encryption(self._settings, get_keystore_path(self._working_dir), passphrase=passphrase)
        except (ConfigurationError, OSError) as exc:
            # Encrypted runs fail with a ConfigurationError until a key is available.
            self._logger.failure("encryption_unavailable", exc)
            return None

    # ------------------------------------------------------------------
    def start(self) -> None:
        self._scheduler.start()

    def stop(self) -> None:
        self._scheduler.stop()

    # ------------------------------------------------------------------
    def trigger_manual_backup(self) -> BackupMetadata:
        return self._run(BackupType.MANUAL)

    def run_scheduled_backup(self) -> BackupMetadata:
        return self._run(BackupType.SCHEDULED)

    def cancel_backup(self) -> bool:
        token = self._cancel
        if token is None:
            return False
        token.cancel()
        self._logger.info("backup_cancel_requested")
        return True

    def _run(self, backup_type: BackupType) -> BackupMetadata:
        config = self.configuration
        try:
            return self._run_locked(backup_type, config)
        except (LedgerError, sqlite3.Error) as exc:
            self._logger.failure("ledger_unavailable", exc, type=backup_type.value)
            return unrecorded_failure(backup_type=backup_type, config=config, error=exc, now=self._clock())

    def _run_locked(self, backup_type: BackupType, config: BackupConfiguration) -> BackupMetadata:
        try:
            with self._lock.hold("backup"):
                self._cancel = CancelToken()
                try:
                    result = run_backup(
                        backup_type=backup_type,
                        config=config,
                        composer=self._composer,
                        destinations=self._destinations,
                        ledger=self._ledger,
                        logger=self._logger,
                        encryption=self._encryption,
                        cancel=self._cancel,
                        now=self._clock(),
                    )
                finally:
                    self._cancel = None
                if result.status is BackupStatus.COMPLETED:
                    self._reap(config)
                return result
        except BusyError as exc:
            self._logger.failure("backup_rejected", exc, type=backup_type.value)
            return record_rejected(
                backup_type=backup_type, config=config, ledger=self._ledger, error=exc, now=self._clock()
            )

    def _reap(self, config: BackupConfiguration) -> Optional[RetentionSummary]:
        try:
            return self._reaper.reap(RetentionPolicy(config.retention_days), now=self._clock())
        except (BackupError, sqlite3.Error) as exc:
            self._logger.failure("retention_failed", exc)
            return None

    # ------------------------------------------------------------------
    def list_backups(self, limit: int = 50) -> List[BackupMetadata]:
        try:
            return self._ledger.list(limit=limit)
        except (LedgerError, sqlite3.Error) as exc:
            self._logger.failure("ledger_unavailable", exc, operation="list")
            return []

    def get_backup(self, backup_id: str) -> Optional[BackupMetadata]:
        try:
            return self._ledger.get(backup_id)
        except (LedgerError, sqlite3.Error) as exc:
            self._logger.failure("ledger_unavailable", exc, operation="get", id=backup_id)
            return None

    def _restorable(self, backup_id: str) -> BackupMetadata:
        metadata = self._ledger.get(backup_id)
        if metadata is None or metadata.reaped:
            raise ArtifactNotFoundError(f"backup {backup_id} does not exist")
        if metadata.status is not BackupStatus.COMPLETED:
            raise ArtifactNotFoundError(f"backup {backup_id} is {metadata.status.value}, not completed")
        return metadata

    def _sources(self, metadata: BackupMetadata) -> List[DestinationWriter]:
        names = sorted(metadata.destinations, key=lambda name: (name != "local", name))
        sources = [self._destinations[name] for name in names if name in self._destinations]
        if not sources:
            raise ArtifactNotFoundError(f"no configured destination holds backup {metadata.id}")
        return sources

    def restore(self, backup_id: str, domains: Optional[Iterable[str]] = None) -> RestoreResult:
        """Restore a completed backup; failures come back as an unsuccessful result."""

        attempted = False
        try:
            with self._lock.hold("restore", backup_id=backup_id):
                metadata = self._restorable(backup_id)
                sources = self._sources(metadata)
                selected = list(domains) if domains is not None else None
                attempted = True
                for index, source in enumerate(sources):
                    try:
                        return self._coordinator.restore(source, backup_id, expected=metadata, domains=selected)
                    except DestinationError as exc:
                        if index == len(sources) - 1:
                            raise
                        self._logger.failure("restore_source_unavailable", exc, id=backup_id,
                                             destination=source.name)
                raise ArtifactNotFoundError(f"backup {backup_id} is not available")
        except ApplyError as exc:
            return RestoreResult(
                success=False,
                backup_id=backup_id,
                state=self._coordinator.state,
                failed_domain=exc.domain,
                error=str(exc),
                error_code=exc.code,
            )
        except Exception as exc:
            return self._restore_failure(exc, backup_id, attempted=attempted)

    def import_backup(self, path: Path, domains: Optional[Iterable[str]] = None) -> RestoreResult:
        """Restore a backup file copied from another device or an earlier install.

        *path* names the ``.snapshot`` file (or its ``.manifest.json``); both
        must sit side by side. The import is verified exactly like a stored
        backup but never enters this device's ledger.
        """

        target = Path(path)
        backup_id = target.name
        attempted = False
        try:
            if target.suffix.lstrip(".").lower() in EXPORT_FORMATS:
                raise ExportOnlyFormatError(f"{target.name} is a human export and cannot be restored")
            if target.is_file():
                with open(target, "rb") as handle:
                    if looks_like_export(handle.read(256)):
                        raise ExportOnlyFormatError(f"{target.name} is a human export and cannot be restored")
            source = BackupFileSource(target)
            backup_id = source.backup_id
            selected = list(domains) if domains is not None else None
            with self._lock.hold("restore", backup_id=backup_id):
                attempted = True
                result = self._coordinator.restore(source, backup_id, domains=selected)
        except ApplyError as exc:
            return RestoreResult(
                success=False,
                backup_id=backup_id,
                state=self._coordinator.state,
                failed_domain=exc.domain,
                error=str(exc),
                error_code=exc.code,
            )
        except Exception as exc:
            return self._restore_failure(exc, backup_id, attempted=attempted)
        self._logger.event(event="backup_imported", phase="restore", ok=True, id=backup_id, path=str(target))
        return result

    def _restore_failure(self, exc: Exception, backup_id: str, *, attempted: bool) -> RestoreResult:
        code = exc.code if isinstance(exc, BackupError) else type(exc).__name__
        self._logger.failure("restore_rejected", exc, id=backup_id)
        state = self._coordinator.state if attempted else RestoreState.IDLE
        return RestoreResult(success=False, backup_id=backup_id, state=state, error=str(exc) or code,
                             error_code=code)

    # ------------------------------------------------------------------
    def update_configuration(self, partial: Mapping[str, Any]) -> ConfigurationUpdateResult:
        with self._config_lock:
            current = self._config
            try:
                updated = current.updated(partial)
                save_configuration(updated, self._working_dir)
            except ConfigurationError as exc:
                self._logger.failure("configuration_rejected", exc, fields=sorted(partial))
                return ConfigurationUpdateResult(False, current, error=str(exc), error_code=exc.code)
            except OSError as exc:
                self._logger.failure("configuration_save_failed", exc)
                return ConfigurationUpdateResult(False, current, error=str(exc), error_code=type(exc).__name__)
            self._config = updated
            self._settings["backup"] = updated.to_dict()
        self._logger.info("configuration_updated", fields=sorted(partial))
        return ConfigurationUpdateResult(True, updated)

    def apply_retention(self, now: Optional[datetime] = None) -> RetentionSummary:
        with self._lock.hold("retention"):
            policy = RetentionPolicy(self.configuration.retention_days)
            return self._reaper.reap(policy, now=now or self._clock())

    def verify_backup(self, backup_id: str) -> Dict[str, object]:
        metadata = self._restorable(backup_id)
        reports: List[Dict[str, object]] = []
        for source in self._sources(metadata):
            reports.append(verify_backup(source, metadata, encryption=self._encryption, logger=self._logger))
        return {"id": backup_id, "ok": True, "destinations": reports}

    def export_data(self, format: str, domains: Optional[Iterable[str]] = None) -> ExportResult:
        """Write a human readable export; export formats cannot be restored."""

        if format not in EXPORT_FORMATS:
            raise CodecError(f"export format must be one of {', '.join(EXPORT_FORMATS)}")
        wanted = list(domains) if domains is not None else self.configuration.selected_domains()
        selected = [domain for domain in wanted if domain in self._composer.domains]
        with self._lock.hold("export"):
            snapshot = self._composer.compose(selected, now=self._clock())
        payload = encode(snapshot, format)
        stamp = self._clock().astimezone(timezone.utc).strftime("%Y%m%d-%H%M%S")
        target = get_exports_dir(self._working_dir) / f"backup_export_{stamp}.{format}"
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(payload)
        records = sum(snapshot.record_counts().values())
        self._logger.event(event="data_exported", phase="export", ok=True, path=str(target), format=format,
                           records=records)
        return ExportResult(path=str(target), format=format, records=records, domains=sorted(snapshot.domains))

    # ------------------------------------------------------------------
    def metrics(self) -> BackupMetrics:
        upcoming = next_run_at(self._clock(), self.configuration)
        return self._ledger.metrics(next_run_utc=utc_iso(upcoming) if upcoming else None)

    def check_health(self, now: Optional[datetime] = None) -> BackupHealth:
        moment = now or self._clock()
        config = self.configuration
        last = self._ledger.latest_completed()
        age = (moment - last.created).total_seconds() if last else None
        missed = config.enabled and (age is None or age > self._health_max_age_s)
        metrics = self._ledger.metrics()
        rate = metrics.successful_backups / metrics.total_backups if metrics.total_backups else 1.0
        health = BackupHealth(
            ok=not missed and rate >= _LOW_SUCCESS_RATE,
            enabled=config.enabled,
            last_backup_utc=last.timestamp if last else None,
            last_backup_age_s=age,
            missed_schedule=missed,
            success_rate=rate,
        )
        if missed:
            self._logger.warning("backup_schedule_missed", last_backup_utc=health.last_backup_utc,
                                 max_age_s=self._health_max_age_s)
        if rate < _LOW_SUCCESS_RATE:
            self._logger.warning("backup_success_rate_low", success_rate=round(rate, 3),
                                 total=metrics.total_backups)
        return health

    # ------------------------------------------------------------------
    def router(self) -> APIRouter:
        router = APIRouter(prefix="/v1/backup", tags=["backup"])

        @router.get("/backups", response_model=BackupListResponse)
        def list_backups(limit: int = 50) -> BackupListResponse:
            return BackupListResponse(backups=[entry.to_dict() for entry in self.list_backups(limit)])

        @router.get("/backups/{backup_id}", response_model=Dict[str, Any])
        def get_backup(backup_id: str) -> Dict[str, Any]:
            entry = self.get_backup(backup_id)
            if entry is None:
                raise HTTPException(status_code=404, detail="Backup not found")
            payload = entry.to_dict()
            payload["events"] = self._ledger.events(backup_id)
            return payload

        @router.post("/run", response_model=Dict[str, Any])
        def run_backup_now() -> Dict[str, Any]:
            entry = self.trigger_manual_backup()
            if entry.error_code == BusyError.__name__:
                raise HTTPException(status_code=409, detail=entry.to_dict())
            return entry.to_dict()

        @router.post("/cancel", response_model=Dict[str, bool])
        def cancel() -> Dict[str, bool]:
            return {"cancelled": self.cancel_backup()}

        @router.post("/restore/{backup_id}", response_model=Dict[str, Any])
        def restore(backup_id: str, request: Optional[RestoreRequest] = None) -> Dict[str, Any]:
            result = self.restore(backup_id, domains=request.domains if request else None)
            if result.success:
                return result.to_dict()
            status = {BusyError.__name__: 409, ArtifactNotFoundError.__name__: 404}.get(result.error_code or "", 422)
            raise HTTPException(status_code=status, detail=result.to_dict())

        @router.get("/config", response_model=Dict[str, Any])
        def get_config() -> Dict[str, Any]:
            return self.configuration.to_dict()

        @router.patch("/config", response_model=Dict[str, Any])
        def patch_config(patch: ConfigurationPatch) -> Dict[str, Any]:
            result = self.update_configuration(patch.model_dump(exclude_unset=True))
            if not result.success:
                raise HTTPException(status_code=422, detail={"error": result.error, "error_code": result.error_code})
            return result.configuration.to_dict()

        @router.post("/retention", response_model=Dict[str, Any])
        def retention() -> Dict[str, Any]:
            try:
                summary = self.apply_retention()
            except BusyError as exc:
                raise HTTPException(status_code=409, detail=str(exc)) from exc
            return {"removed": summary.removed, "kept": summary.kept, "freed_bytes": summary.freed_bytes}

        @router.post("/verify/{backup_id}", response_model=Dict[str, Any])
        def verify(backup_id: str) -> Dict[str, Any]:
            try:
                return self.verify_backup(backup_id)
            except ArtifactNotFoundError as exc:
                raise HTTPException(status_code=404, detail=str(exc)) from exc
            except BackupError as exc:
                raise HTTPException(status_code=422, detail={"error": str(exc), "error_code": exc.code}) from exc

        @router.post("/export", response_model=Dict[str, Any])
        def export(request: ExportRequest) -> Dict[str, Any]:
            try:
                result = self.export_data(request.format, request.domains)
            except BusyError as exc:
                raise HTTPException(status_code=409, detail=str(exc)) from exc
            except BackupError as exc:
                raise HTTPException(status_code=422, detail={"error": str(exc), "error_code": exc.code}) from exc
            return {"path": result.path, "format": result.format, "records": result.records, "domains": result.domains}

        @router.get("/metrics", response_model=Dict[str, Any])
        def metrics() -> Dict[str, Any]:
            data = self.metrics()
            return {
                "total_backups": data.total_backups,
                "successful_backups": data.successful_backups,
                "failed_backups": data.failed_backups,
                "cancelled_backups": data.cancelled_backups,
                "total_data_size": data.total_data_size,
                "last_backup_utc": data.last_backup_utc,
                "next_scheduled_utc": data.next_scheduled_utc,
            }

        @router.get("/health", response_model=Dict[str, Any])
        def health() -> Dict[str, Any]:
            data = self.check_health()
            return {
                "ok": data.ok,
                "enabled": data.enabled,
                "last_backup_utc": data.last_backup_utc,
                "last_backup_age_s": data.last_backup_age_s,
                "missed_schedule": data.missed_schedule,
                "success_rate": data.success_rate,
            }

        return router


def create_app(service: BackupService, *, run_scheduler: bool = True) -> FastAPI:
    """Create a FastAPI application serving the backup router."""

    app = FastAPI(title="Backup Engine", version=APP_VERSION, docs_url="/docs", openapi_url="/openapi.json")
    app.include_router(service.router())

    if run_scheduler:

        @app.on_event("startup")
        def _start_scheduler() -> None:
            service.start()

        @app.on_event("shutdown")
        def _stop_scheduler() -> None:
            service.stop()

    return app


__all__ = ["BackupService", "build_destinations", "create_app"]
