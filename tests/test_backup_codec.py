import io
import zipfile

import pytest

from backup.codec import SCHEMA_VERSION, compute_checksum, decode, encode
from backup.errors import CodecError, DecodeError, ExportOnlyFormatError
from backup.types import Manifest, RecordSet, Snapshot


def _snapshot() -> Snapshot:
    domains = {
        "users": RecordSet("users", [{"id": 2, "name": "Zoë"}, {"id": 1, "name": "Ada"}]),
        "messages": RecordSet("messages", [{"id": "m1", "text": "hello, world", "tags": ["a", "b"]}]),
        "settings": RecordSet("settings", []),
    }
    manifest = Manifest(
        schema_version=SCHEMA_VERSION,
        created_utc="2024-03-01T02:00:00.000000+00:00",
        app_version="0.0.0-test",
        domains=sorted(domains),
        record_counts={name: len(records) for name, records in domains.items()},
    )
    manifest.checksum = compute_checksum(manifest, domains)
    return Snapshot(manifest=manifest, domains=domains)


def test_snapshot_round_trip_preserves_records_and_checksum():
    snapshot = _snapshot()

    decoded = decode(encode(snapshot))

    assert decoded.manifest.checksum == snapshot.manifest.checksum
    assert decoded.manifest.domains == ["messages", "settings", "users"]
    assert decoded.domains == snapshot.domains
    assert compute_checksum(decoded.manifest, decoded.domains) == snapshot.manifest.checksum


def test_encode_is_deterministic_and_order_insensitive():
    first = _snapshot()
    second = _snapshot()
    second.domains["users"] = RecordSet("users", list(reversed(second.domains["users"].records)))

    assert encode(first) == encode(second)
    assert compute_checksum(first.manifest, first.domains) == compute_checksum(second.manifest, second.domains)


def test_checksum_changes_when_a_record_changes():
    snapshot = _snapshot()
    altered = dict(snapshot.domains)
    altered["users"] = RecordSet("users", [{"id": 1, "name": "Ada"}, {"id": 2, "name": "Zoe"}])

    assert compute_checksum(snapshot.manifest, altered) != snapshot.manifest.checksum


@pytest.mark.parametrize("fmt", ["csv", "xml"])
def test_export_formats_cannot_be_restored(fmt):
    snapshot = _snapshot()
    exported = encode(snapshot, fmt)
    assert exported

    with pytest.raises(ExportOnlyFormatError):
        decode(exported, fmt)
    with pytest.raises(ExportOnlyFormatError):
        decode(exported)


def test_csv_export_lists_every_record():
    text = encode(_snapshot(), "csv").decode("utf-8")
    lines = text.strip().split("\n")

    assert lines[0] == "domain,record_index,record"
    assert len(lines) == 1 + 3


def test_unknown_format_is_rejected():
    with pytest.raises(CodecError):
        encode(_snapshot(), "yaml")


def test_decode_rejects_garbage_and_truncated_bundles():
    payload = encode(_snapshot())

    with pytest.raises(DecodeError):
        decode(b"not a snapshot at all")
    with pytest.raises(DecodeError):
        decode(payload[: len(payload) // 2])


def test_decode_rejects_newer_schema():
    snapshot = _snapshot()
    snapshot.manifest.schema_version = SCHEMA_VERSION + 1

    with pytest.raises(DecodeError):
        decode(encode(snapshot))


def test_decode_rejects_record_count_mismatch():
    snapshot = _snapshot()
    snapshot.manifest.record_counts["users"] = 5

    with pytest.raises(DecodeError):
        decode(encode(snapshot))


def test_bundle_layout():
    with zipfile.ZipFile(io.BytesIO(encode(_snapshot()))) as archive:
        names = archive.namelist()

    assert names[0] == "manifest.json"
    assert "domains/users.json" in names
