"""Run one backup: compose, encode, encrypt, write, verify and record."""
from __future__ import annotations

import json
import platform
import uuid
from datetime import datetime, timezone
from typing import List, Mapping, Optional

from . import __version__ as APP_VERSION
from .codec import encode
from .compose import SnapshotComposer
from .config import BackupConfiguration
from .crypto import EncryptionLayer
from .destinations import DestinationWriter, manifest_key, snapshot_key
from .errors import BackupCancelled, BackupError, ConfigurationError, DestinationError, LedgerError, WriteError
from .ledger import MetadataLedger
from .locks import CancelToken
from .logs import BackupLogger
from .types import BackupMetadata, BackupStatus, BackupType, utc_iso
from .verify import manifest_record, sha256_hex


def new_backup_id(now: datetime) -> str:
    return f"{now.astimezone(timezone.utc).strftime('%Y%m%d-%H%M%S')}-{uuid.uuid4().hex[:8]}"


def platform_name() -> str:
    return platform.system().lower() or "unknown"


def _discard(destination: DestinationWriter, keys: List[str], *, logger: BackupLogger) -> None:
    for key in reversed(keys):
        try:
            destination.delete(key)
        except DestinationError as exc:
            logger.failure("cleanup_failed", exc, destination=destination.name, key=key)


def _write_artifacts(
    destination: DestinationWriter,
    backup_id: str,
    payload: bytes,
    record: bytes,
    *,
    cancel: CancelToken,
    logger: BackupLogger,
) -> None:
    touched: List[str] = []
    try:
        for key, data in ((snapshot_key(backup_id), payload), (manifest_key(backup_id), record)):
            cancel.check(f"write of {key} to {destination.name}")
            touched.append(key)
            destination.put(key, data)
            logger.info("artifact_written", destination=destination.name, key=key, size=len(data))
    except Exception:
        _discard(destination, touched, logger=logger)
        raise


def _verify_written(destination: DestinationWriter, backup_id: str, payload_sha256: str) -> None:
    stored = destination.get(snapshot_key(backup_id))
    if sha256_hex(stored) != payload_sha256:
        raise WriteError(f"{destination.name}: read-back of {backup_id} does not match what was written")


def _resolve_writers(
    config: BackupConfiguration, destinations: Mapping[str, DestinationWriter]
) -> List[DestinationWriter]:
    names = config.destination_names()
    if not names:
        raise ConfigurationError("neither local nor cloud backup is enabled")
    writers: List[DestinationWriter] = []
    for name in names:
        writer = destinations.get(name)
        if writer is None:
            raise ConfigurationError(f"{name} backup is enabled but no {name} destination is configured")
        writers.append(writer)
    return writers


def run_backup(
    *,
    backup_type: BackupType,
    config: BackupConfiguration,
    composer: SnapshotComposer,
    destinations: Mapping[str, DestinationWriter],
    ledger: MetadataLedger,
    logger: BackupLogger,
    encryption: Optional[EncryptionLayer] = None,
    cancel: Optional[CancelToken] = None,
    now: Optional[datetime] = None,
) -> BackupMetadata:
    """Run the whole pipeline and return the terminal ledger entry.

    Stage errors never escape: they end as a ``failed`` (or ``cancelled``)
    entry and every artifact this run wrote is deleted again.
    """

    started = now or datetime.now(timezone.utc)
    cancel = cancel or CancelToken()
    backup_id = new_backup_id(started)
    metadata = ledger.append(
        BackupMetadata(
            id=backup_id,
            timestamp=utc_iso(started),
            type=backup_type,
            status=BackupStatus.PENDING,
            platform=platform_name(),
            destinations=config.destination_names(),
            encrypted=config.encryption_enabled,
        )
    )
    logger.event(event="backup_start", phase="create", ok=True, id=backup_id, type=backup_type.value)

    written: List[DestinationWriter] = []
    try:
        writers = _resolve_writers(config, destinations)
        if config.encryption_enabled and encryption is None:
            raise ConfigurationError("encryption is enabled but no key is available")
        ledger.transition(backup_id, BackupStatus.IN_PROGRESS)

        domains = [domain for domain in config.selected_domains() if domain in composer.domains]
        snapshot = composer.compose(domains, cancel=cancel, now=started)
        snapshot.manifest.encrypted = config.encryption_enabled
        payload = encode(snapshot)
        if config.encryption_enabled:
            payload = encryption.encrypt(payload)

        metadata.size = len(payload)
        metadata.checksum = snapshot.manifest.checksum
        metadata.payload_sha256 = sha256_hex(payload)
        metadata.schema_version = snapshot.manifest.schema_version
        metadata.domains = list(snapshot.manifest.domains)
        metadata.record_counts = dict(snapshot.manifest.record_counts)
        record = json.dumps(manifest_record(metadata, app_version=APP_VERSION), indent=2, sort_keys=True)

        for writer in writers:
            written.append(writer)
            _write_artifacts(writer, backup_id, payload, record.encode("utf-8"), cancel=cancel, logger=logger)
            _verify_written(writer, backup_id, metadata.payload_sha256)

        completed = ledger.transition(
            backup_id,
            BackupStatus.COMPLETED,
            size=metadata.size,
            checksum=metadata.checksum,
            payload_sha256=metadata.payload_sha256,
            schema_version=metadata.schema_version,
            domains=metadata.domains,
            record_counts=metadata.record_counts,
            encrypted=config.encryption_enabled,
            verified=True,
        )
    except Exception as exc:
        for writer in written:
            _discard(writer, [snapshot_key(backup_id), manifest_key(backup_id)], logger=logger)
        status = BackupStatus.CANCELLED if isinstance(exc, BackupCancelled) else BackupStatus.FAILED
        code = exc.code if isinstance(exc, BackupError) else type(exc).__name__
        message = str(exc) or code
        logger.event(event="backup_failed", phase="create", ok=False, id=backup_id, status=status.value,
                     err=code, err_msg=message)
        return ledger.transition(backup_id, status, error=message, error_code=code)

    logger.event(event="backup_complete", phase="create", ok=True, id=backup_id, size=completed.size,
                 destinations=completed.destinations)
    return completed


def record_rejected(
    *,
    backup_type: BackupType,
    config: BackupConfiguration,
    ledger: MetadataLedger,
    error: BackupError,
    now: Optional[datetime] = None,
) -> BackupMetadata:
    """Record an attempt that never started, e.g. because the engine was busy."""

    started = now or datetime.now(timezone.utc)
    backup_id = new_backup_id(started)
    ledger.append(
        BackupMetadata(
            id=backup_id,
            timestamp=utc_iso(started),
            type=backup_type,
            status=BackupStatus.PENDING,
            platform=platform_name(),
            destinations=config.destination_names(),
        )
    )
    return ledger.transition(backup_id, BackupStatus.FAILED, error=str(error), error_code=error.code)


def unrecorded_failure(
    *,
    backup_type: BackupType,
    config: BackupConfiguration,
    error: BaseException,
    now: Optional[datetime] = None,
) -> BackupMetadata:
    """A failed entry for an attempt the ledger itself could not record. Not persisted."""

    started = now or datetime.now(timezone.utc)
    return BackupMetadata(
        id=new_backup_id(started),
        timestamp=utc_iso(started),
        type=backup_type,
        status=BackupStatus.FAILED,
        platform=platform_name(),
        destinations=config.destination_names(),
        error=str(error) or type(error).__name__,
        error_code=LedgerError.__name__,
    )


__all__ = ["new_backup_id", "platform_name", "record_rejected", "run_backup", "unrecorded_failure"]
