import io

import pytest
from botocore.exceptions import ClientError

from backup.destinations import (
    BackupFileSource,
    CloudDestination,
    LocalDestination,
    backup_id_from_key,
    manifest_key,
    snapshot_key,
)
from backup.errors import ArtifactNotFoundError, DestinationError, WriteError


class FakeS3Client:
    """In-memory stand-in for the subset of the boto3 S3 client we call."""

    def __init__(self, *, fail_puts: bool = False, page_size: int = 1000) -> None:
        self.objects = {}
        self.fail_puts = fail_puts
        self.page_size = page_size
        self.deleted = []

    @staticmethod
    def _error(code: str, operation: str) -> ClientError:
        return ClientError({"Error": {"Code": code, "Message": code}}, operation)

    def put_object(self, *, Bucket, Key, Body):
        if self.fail_puts:
            self.objects[(Bucket, Key)] = Body[:3]
            raise self._error("SlowDown", "PutObject")
        self.objects[(Bucket, Key)] = bytes(Body)

    def get_object(self, *, Bucket, Key):
        if (Bucket, Key) not in self.objects:
            raise self._error("NoSuchKey", "GetObject")
        return {"Body": io.BytesIO(self.objects[(Bucket, Key)])}

    def delete_object(self, *, Bucket, Key):
        self.deleted.append(Key)
        self.objects.pop((Bucket, Key), None)

    def list_objects_v2(self, *, Bucket, Prefix, ContinuationToken=None):
        keys = sorted(key for bucket, key in self.objects if bucket == Bucket and key.startswith(Prefix))
        start = int(ContinuationToken or 0)
        page = keys[start : start + self.page_size]
        response = {"Contents": [{"Key": key} for key in page]}
        if start + self.page_size < len(keys):
            response["IsTruncated"] = True
            response["NextContinuationToken"] = str(start + self.page_size)
        return response


def test_artifact_keys():
    assert snapshot_key("20240101-020000-abcd1234") == "backups/20240101-020000-abcd1234.snapshot"
    assert manifest_key("x") == "backups/x.manifest.json"
    assert backup_id_from_key(snapshot_key("abc")) == "abc"
    assert backup_id_from_key(manifest_key("abc")) is None


def test_local_put_is_idempotent_and_listed(tmp_path):
    dest = LocalDestination(tmp_path / "store")

    dest.put("backups/a.snapshot", b"one")
    dest.put("backups/a.snapshot", b"two")

    assert dest.get("backups/a.snapshot") == b"two"
    assert dest.list() == ["backups/a.snapshot"]
    assert not [path for path in (tmp_path / "store" / "backups").iterdir() if path.name.endswith(".partial")]


def test_local_write_failure_leaves_no_partial(tmp_path, monkeypatch):
    dest = LocalDestination(tmp_path / "store")

    def broken_replace(src, dst):
        raise OSError(28, "No space left on device")

    monkeypatch.setattr("backup.destinations.os.replace", broken_replace)

    with pytest.raises(WriteError):
        dest.put("backups/b.snapshot", b"payload")

    assert list((tmp_path / "store" / "backups").iterdir()) == []


def test_interrupted_local_write_leaves_no_partial(tmp_path, monkeypatch):
    dest = LocalDestination(tmp_path / "store")

    def interrupted_fsync(fd):
        raise RuntimeError("writer thread stopped")

    monkeypatch.setattr("backup.destinations.os.fsync", interrupted_fsync)

    with pytest.raises(RuntimeError):
        dest.put("backups/c.snapshot", b"payload")

    assert list((tmp_path / "store" / "backups").iterdir()) == []


def test_local_get_missing_and_delete_idempotent(tmp_path):
    dest = LocalDestination(tmp_path / "store")

    with pytest.raises(ArtifactNotFoundError):
        dest.get("backups/missing.snapshot")

    dest.delete("backups/missing.snapshot")


@pytest.mark.parametrize("key", ["/etc/passwd", "../escape.snapshot", "backups/../../x"])
def test_local_rejects_keys_outside_root(tmp_path, key):
    dest = LocalDestination(tmp_path / "store")

    with pytest.raises(DestinationError):
        dest.put(key, b"x")


def test_cloud_round_trip_with_prefix():
    client = FakeS3Client(page_size=2)
    dest = CloudDestination("bucket", prefix="device-1/", client=client)

    for index in range(3):
        dest.put(snapshot_key(f"id{index}"), f"payload{index}".encode())

    assert ("bucket", "device-1/backups/id0.snapshot") in client.objects
    assert dest.get(snapshot_key("id1")) == b"payload1"
    assert dest.list() == [snapshot_key("id0"), snapshot_key("id1"), snapshot_key("id2")]

    dest.delete(snapshot_key("id0"))
    assert dest.list() == [snapshot_key("id1"), snapshot_key("id2")]


def test_cloud_failed_upload_is_discarded():
    client = FakeS3Client(fail_puts=True)
    dest = CloudDestination("bucket", client=client)

    with pytest.raises(WriteError):
        dest.put("backups/a.snapshot", b"payload")

    assert client.objects == {}
    assert client.deleted == ["backups/a.snapshot"]


def test_cloud_missing_object_is_not_found():
    dest = CloudDestination("bucket", client=FakeS3Client())

    with pytest.raises(ArtifactNotFoundError):
        dest.get("backups/none.snapshot")


def test_backup_file_source_reads_side_by_side_files(tmp_path):
    (tmp_path / "20240101-020000-abcd1234.snapshot").write_bytes(b"payload")
    (tmp_path / "20240101-020000-abcd1234.manifest.json").write_bytes(b"{}")

    source = BackupFileSource(tmp_path / "20240101-020000-abcd1234.snapshot")

    assert source.backup_id == "20240101-020000-abcd1234"
    assert source.get(snapshot_key(source.backup_id)) == b"payload"
    assert source.list() == [manifest_key(source.backup_id), snapshot_key(source.backup_id)]
    with pytest.raises(ArtifactNotFoundError):
        source.get(snapshot_key("other"))
    with pytest.raises(DestinationError):
        source.delete(snapshot_key(source.backup_id))
    with pytest.raises(DestinationError):
        BackupFileSource(tmp_path / "notes.txt")
