"""Snapshot codec: one canonical restorable bundle plus export-only formats."""
from __future__ import annotations

import csv
import hashlib
import io
import json
import zipfile
import zlib
from typing import Any, Dict, Mapping
from xml.etree import ElementTree as ET

from .errors import CodecError, DecodeError, EncodeError, ExportOnlyFormatError
from .types import Manifest, RecordSet, Snapshot, canonical_json

SCHEMA_VERSION = 1
CANONICAL_FORMAT = "snapshot"
EXPORT_FORMATS = ("csv", "xml")

_ZIP_MAGIC = b"PK\x03\x04"
_ZIP_EPOCH = (1980, 1, 1, 0, 0, 0)
_CSV_HEADER = ["domain", "record_index", "record"]
_MANIFEST_NAME = "manifest.json"


def export_formats() -> tuple[str, ...]:
    return EXPORT_FORMATS


def domain_bytes(records: RecordSet) -> bytes:
    try:
        return canonical_json(records.canonical_records())
    except (TypeError, ValueError) as exc:
        raise EncodeError(f"domain '{records.domain}' holds records that are not JSON serialisable: {exc}") from exc


def compute_checksum(manifest: Manifest, domains: Mapping[str, RecordSet]) -> str:
    """SHA-256 over the manifest (minus checksum fields) and every domain in name order."""

    digest = hashlib.sha256()
    digest.update(canonical_json(manifest.checksum_payload()))
    for name in sorted(domains):
        digest.update(name.encode("utf-8"))
        digest.update(b"\x00")
        digest.update(domain_bytes(domains[name]))
    return digest.hexdigest()


# ----------------------------------------------------------------------
def _zip_entry(name: str) -> zipfile.ZipInfo:
    info = zipfile.ZipInfo(name, date_time=_ZIP_EPOCH)
    info.compress_type = zipfile.ZIP_DEFLATED
    info.external_attr = 0o644 << 16
    return info


def _encode_bundle(snapshot: Snapshot) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as archive:
        archive.writestr(_zip_entry(_MANIFEST_NAME), canonical_json(snapshot.manifest.to_dict()))
        for name in sorted(snapshot.domains):
            archive.writestr(_zip_entry(f"domains/{name}.json"), domain_bytes(snapshot.domains[name]))
    return buffer.getvalue()


def _encode_csv(snapshot: Snapshot) -> bytes:
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(_CSV_HEADER)
    for name in sorted(snapshot.domains):
        for index, record in enumerate(snapshot.domains[name].canonical_records()):
            writer.writerow([name, index, json.dumps(record, sort_keys=True, ensure_ascii=False)])
    return buffer.getvalue().encode("utf-8")


def _encode_xml(snapshot: Snapshot) -> bytes:
    manifest = snapshot.manifest
    root = ET.Element(
        "backup",
        {
            "schema_version": str(manifest.schema_version),
            "created_utc": manifest.created_utc,
            "checksum": manifest.checksum,
        },
    )
    for name in sorted(snapshot.domains):
        records = snapshot.domains[name].canonical_records()
        domain_el = ET.SubElement(root, "domain", {"name": name, "count": str(len(records))})
        for record in records:
            attrs = {"id": str(record["id"])} if "id" in record else {}
            record_el = ET.SubElement(domain_el, "record", attrs)
            record_el.text = json.dumps(record, sort_keys=True, ensure_ascii=False)
    ET.indent(root)
    return ET.tostring(root, encoding="utf-8", xml_declaration=True)


_ENCODERS = {
    CANONICAL_FORMAT: _encode_bundle,
    "csv": _encode_csv,
    "xml": _encode_xml,
}


def encode(snapshot: Snapshot, format: str = CANONICAL_FORMAT) -> bytes:
    encoder = _ENCODERS.get(format)
    if encoder is None:
        raise CodecError(f"unsupported format '{format}'")
    try:
        return encoder(snapshot)
    except EncodeError:
        raise
    except (TypeError, ValueError, KeyError) as exc:
        raise EncodeError(f"could not encode snapshot as {format}: {exc}") from exc


# ----------------------------------------------------------------------
def looks_like_export(data: bytes) -> bool:
    head = data[:64].lstrip()
    if head.startswith(b"<?xml") or head.startswith(b"<backup"):
        return True
    first_line = data.split(b"\n", 1)[0].strip()
    return first_line == ",".join(_CSV_HEADER).encode("ascii")


def _parse_manifest(raw: Dict[str, Any]) -> Manifest:
    try:
        manifest = Manifest(
            schema_version=int(raw["schema_version"]),
            created_utc=str(raw["created_utc"]),
            app_version=str(raw.get("app_version") or ""),
            domains=[str(name) for name in raw["domains"]],
            record_counts={str(k): int(v) for k, v in dict(raw["record_counts"]).items()},
            checksum=str(raw.get("checksum") or ""),
            encrypted=bool(raw.get("encrypted", False)),
        )
    except (KeyError, TypeError, ValueError) as exc:
        raise DecodeError(f"invalid snapshot manifest: {exc}") from exc
    if manifest.schema_version > SCHEMA_VERSION:
        raise DecodeError(
            f"snapshot schema {manifest.schema_version} is newer than supported schema {SCHEMA_VERSION}"
        )
    return manifest


def _decode_bundle(data: bytes) -> Snapshot:
    if not data.startswith(_ZIP_MAGIC):
        if looks_like_export(data):
            raise ExportOnlyFormatError("payload is a human export, not a restorable snapshot")
        raise DecodeError("payload is not a snapshot bundle")
    try:
        with zipfile.ZipFile(io.BytesIO(data), "r") as archive:
            manifest = _parse_manifest(json.loads(archive.read(_MANIFEST_NAME)))
            domains: Dict[str, RecordSet] = {}
            for name in manifest.domains:
                records = json.loads(archive.read(f"domains/{name}.json"))
                if not isinstance(records, list) or not all(isinstance(item, dict) for item in records):
                    raise DecodeError(f"domain '{name}' is not a list of records")
                domains[name] = RecordSet(domain=name, records=records)
    except KeyError as exc:
        raise DecodeError(f"snapshot bundle is missing {exc}") from exc
    except (zipfile.BadZipFile, zlib.error, json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise DecodeError(f"snapshot bundle is corrupt: {exc}") from exc
    for name, records in domains.items():
        expected = manifest.record_counts.get(name)
        if expected is not None and expected != len(records):
            raise DecodeError(f"domain '{name}' has {len(records)} records, manifest lists {expected}")
    return Snapshot(manifest=manifest, domains=domains)


def decode(data: bytes, format: str = CANONICAL_FORMAT) -> Snapshot:
    if format in EXPORT_FORMATS:
        raise ExportOnlyFormatError(f"'{format}' is an export-only format and cannot be restored")
    if format != CANONICAL_FORMAT:
        raise CodecError(f"unsupported format '{format}'")
    return _decode_bundle(data)


__all__ = [
    "CANONICAL_FORMAT",
    "EXPORT_FORMATS",
    "SCHEMA_VERSION",
    "compute_checksum",
    "decode",
    "domain_bytes",
    "encode",
    "export_formats",
    "looks_like_export",
]
