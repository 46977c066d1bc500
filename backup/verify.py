"""Verify stored backups without touching live data."""
from __future__ import annotations

import hashlib
import json
from typing import Any, Dict, Optional, Tuple

from .codec import compute_checksum, decode
from .crypto import EncryptionLayer
from .destinations import DestinationWriter, manifest_key, snapshot_key
from .errors import BackupError, ChecksumMismatchError, ConfigurationError, DecodeError
from .logs import BackupLogger
from .types import BackupMetadata, Snapshot


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def manifest_record(metadata: BackupMetadata, *, app_version: str) -> Dict[str, Any]:
    return {
        "id": metadata.id,
        "timestamp": metadata.timestamp,
        "size": metadata.size,
        "schema_version": metadata.schema_version,
        "domains": list(metadata.domains),
        "record_counts": dict(metadata.record_counts),
        "checksum": metadata.checksum,
        "payload_sha256": metadata.payload_sha256,
        "encrypted": bool(metadata.encrypted),
        "app_version": app_version,
    }


def _load_record(destination: DestinationWriter, backup_id: str) -> Dict[str, Any]:
    raw = destination.get(manifest_key(backup_id))
    try:
        record = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise ChecksumMismatchError(f"manifest record for {backup_id} is unreadable") from exc
    if not isinstance(record, dict) or record.get("id") != backup_id:
        raise ChecksumMismatchError(f"manifest record for {backup_id} does not describe this backup")
    return record


def fetch_verified_payload(
    destination: DestinationWriter,
    backup_id: str,
    *,
    expected: Optional[BackupMetadata] = None,
) -> Tuple[Dict[str, Any], bytes]:
    """Return the manifest record and payload once the payload hash matches."""

    record = _load_record(destination, backup_id)
    recorded = record.get("payload_sha256")
    if expected is not None and expected.payload_sha256 and recorded != expected.payload_sha256:
        raise ChecksumMismatchError(f"manifest record for {backup_id} disagrees with the ledger")
    payload = destination.get(snapshot_key(backup_id))
    if not isinstance(recorded, str) or sha256_hex(payload) != recorded:
        raise ChecksumMismatchError(f"stored payload for {backup_id} does not match its checksum")
    if "size" in record:
        try:
            size = int(record["size"])
        except (TypeError, ValueError) as exc:
            raise ChecksumMismatchError(f"manifest record for {backup_id} has an unreadable size") from exc
        if size != len(payload):
            raise ChecksumMismatchError(f"stored payload for {backup_id} has an unexpected size")
    return record, payload


def open_payload(
    record: Dict[str, Any],
    payload: bytes,
    *,
    encryption: Optional[EncryptionLayer] = None,
) -> Snapshot:
    """Decrypt and decode a verified payload and re-check its content checksum."""

    data = payload
    if record.get("encrypted"):
        if encryption is None:
            raise ConfigurationError("backup is encrypted but no key is configured")
        data = encryption.decrypt(payload)
    elif EncryptionLayer.is_encrypted(payload):
        raise DecodeError("payload is encrypted but its manifest says otherwise")
    snapshot = decode(data)
    actual = compute_checksum(snapshot.manifest, snapshot.domains)
    if actual != snapshot.manifest.checksum or actual != record.get("checksum"):
        raise ChecksumMismatchError(f"content checksum mismatch for backup {record.get('id')}")
    return snapshot


def verify_backup(
    destination: DestinationWriter,
    metadata: BackupMetadata,
    *,
    encryption: Optional[EncryptionLayer],
    logger: BackupLogger,
) -> Dict[str, object]:
    try:
        record, payload = fetch_verified_payload(destination, metadata.id, expected=metadata)
        snapshot = open_payload(record, payload, encryption=encryption)
    except BackupError as exc:
        logger.event(event="backup_verified", phase="verify", ok=False, id=metadata.id,
                     destination=destination.name, error=str(exc))
        raise
    logger.event(event="backup_verified", phase="verify", ok=True, id=metadata.id, destination=destination.name)
    return {
        "id": metadata.id,
        "destination": destination.name,
        "domains": sorted(snapshot.domains),
        "record_counts": snapshot.record_counts(),
        "size": len(payload),
    }


__all__ = ["fetch_verified_payload", "manifest_record", "open_payload", "sha256_hex", "verify_backup"]
