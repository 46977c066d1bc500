import io
import json
import sqlite3
import threading
from contextlib import closing
from datetime import datetime, timedelta, timezone

import pytest
from botocore.exceptions import ClientError
from fastapi.testclient import TestClient

from backup.api import BackupService, create_app
from backup.destinations import manifest_key, snapshot_key
from backup.errors import CodecError
from backup.providers import build_file_providers
from backup.types import BackupStatus, RecordSet, RestoreState
from core.paths import get_domains_dir, get_keystore_path, get_ledger_db_path
from core.settings import load_settings


class FakeS3Client:
    def __init__(self) -> None:
        self.objects = {}

    def put_object(self, *, Bucket, Key, Body):
        self.objects[Key] = bytes(Body)

    def get_object(self, *, Bucket, Key):
        if Key not in self.objects:
            raise ClientError({"Error": {"Code": "NoSuchKey", "Message": "missing"}}, "GetObject")
        return {"Body": io.BytesIO(self.objects[Key])}

    def delete_object(self, *, Bucket, Key):
        self.objects.pop(Key, None)

    def list_objects_v2(self, *, Bucket, Prefix, ContinuationToken=None):
        return {"Contents": [{"Key": key} for key in sorted(self.objects) if key.startswith(Prefix)]}


class Clock:
    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> None:
        self.now += timedelta(**delta)


DOMAINS = ["messages", "settings", "users"]


def _seed(working_dir):
    base = get_domains_dir(working_dir)
    base.mkdir(parents=True, exist_ok=True)
    (base / "users.json").write_text(json.dumps([{"id": 1, "name": "Ada"}]), encoding="utf-8")
    (base / "messages.json").write_text(json.dumps([{"id": 1, "text": "I want water"}]), encoding="utf-8")
    (base / "settings.json").write_text(json.dumps([{"key": "voice", "value": "en-GB"}]), encoding="utf-8")


def _service(tmp_path, *, settings=None, clock=None, cloud_client=None, providers=None):
    working_dir = tmp_path / "work"
    _seed(working_dir)
    return BackupService(
        working_dir=working_dir,
        settings=settings if settings is not None else load_settings(working_dir),
        providers=providers if providers is not None else build_file_providers(working_dir, DOMAINS),
        cloud_client=cloud_client,
        clock=clock,
    )


def test_backup_and_restore_round_trip(tmp_path):
    service = _service(tmp_path)

    entry = service.trigger_manual_backup()

    assert entry.status is BackupStatus.COMPLETED
    assert entry.encrypted
    assert get_keystore_path(service.working_dir).exists()

    users = get_domains_dir(service.working_dir) / "users.json"
    users.write_text(json.dumps([{"id": 9, "name": "Mallory"}]), encoding="utf-8")

    result = service.restore(entry.id)

    assert result.success
    assert result.state is RestoreState.COMMITTED
    assert result.destination == "local"
    assert json.loads(users.read_text(encoding="utf-8")) == [{"id": 1, "name": "Ada"}]
    assert service.verify_backup(entry.id)["ok"] is True


def test_restore_of_unknown_backup_returns_failure(tmp_path):
    service = _service(tmp_path)

    result = service.restore("20240101-000000-deadbeef")

    assert not result.success
    assert result.error_code == "ArtifactNotFoundError"
    assert result.state is RestoreState.IDLE


def test_tampered_backup_is_refused(tmp_path):
    service = _service(tmp_path)
    entry = service.trigger_manual_backup()
    local = service.destinations["local"]
    local.put(snapshot_key(entry.id), local.get(snapshot_key(entry.id)) + b"\x00")

    result = service.restore(entry.id)

    assert not result.success
    assert result.error_code == "ChecksumMismatchError"
    assert result.state is RestoreState.FAILED


def test_restore_falls_back_to_cloud_copy(tmp_path):
    client = FakeS3Client()
    settings = {"backup": {"cloud_backup": True}, "cloud": {"bucket": "backups-bucket", "prefix": "device"}}
    service = _service(tmp_path, settings=settings, cloud_client=client)

    entry = service.trigger_manual_backup()
    assert entry.destinations == ["local", "cloud"]
    assert f"device/{snapshot_key(entry.id)}" in client.objects

    local = service.destinations["local"]
    local.delete(snapshot_key(entry.id))
    local.delete(manifest_key(entry.id))

    result = service.restore(entry.id)

    assert result.success
    assert result.destination == "cloud"


def test_second_operation_is_rejected_while_busy(tmp_path):
    started = threading.Event()
    release = threading.Event()

    class SlowProvider:
        domain = "analytics"

        def export(self):
            started.set()
            release.wait(timeout=10)
            return RecordSet("analytics", [{"event": "tap"}])

        def apply_atomic(self, records):
            return RecordSet("analytics", [])

    working_dir = tmp_path / "work"
    _seed(working_dir)
    providers = dict(build_file_providers(working_dir, ["users"]))
    providers["analytics"] = SlowProvider()
    service = _service(tmp_path, providers=providers)

    outcome = {}
    worker = threading.Thread(target=lambda: outcome.setdefault("entry", service.trigger_manual_backup()))
    worker.start()
    assert started.wait(timeout=10)

    rejected = service.trigger_manual_backup()
    refused = service.restore("anything")
    assert service.cancel_backup() is True

    release.set()
    worker.join(timeout=10)

    assert rejected.status is BackupStatus.FAILED
    assert rejected.error_code == "BusyError"
    assert refused.error_code == "BusyError"
    assert refused.state is RestoreState.IDLE
    assert outcome["entry"].status is BackupStatus.CANCELLED
    assert service.cancel_backup() is False


def test_update_configuration_validates_and_persists(tmp_path):
    service = _service(tmp_path)

    rejected = service.update_configuration({"time": "25:00"})
    assert not rejected.success
    assert rejected.error_code == "ConfigurationError"
    assert service.configuration.time == "02:00"

    unknown = service.update_configuration({"compression": True})
    assert not unknown.success

    accepted = service.update_configuration({"frequency": "weekly", "retention_days": 30})
    assert accepted.success
    assert service.configuration.frequency == "weekly"
    stored = load_settings(service.working_dir)["backup"]
    assert stored["frequency"] == "weekly"
    assert stored["retention_days"] == 30


def test_health_and_metrics(tmp_path):
    clock = Clock(datetime(2024, 3, 1, 2, 0, tzinfo=timezone.utc))
    service = _service(tmp_path, clock=clock)

    assert service.check_health().missed_schedule is True

    service.trigger_manual_backup()
    health = service.check_health()
    assert health.ok
    assert health.last_backup_age_s == 0

    clock.advance(hours=26)
    assert service.check_health().missed_schedule is True

    metrics = service.metrics()
    assert metrics.total_backups == 1
    assert metrics.successful_backups == 1
    assert metrics.next_scheduled_utc == "2024-03-03T02:00:00.000000+00:00"


def test_export_writes_human_readable_file(tmp_path):
    service = _service(tmp_path)

    result = service.export_data("csv")

    with open(result.path, encoding="utf-8") as handle:
        text = handle.read()
    assert text.startswith("domain,record_index,record")
    assert result.records == 3
    assert result.domains == DOMAINS
    with pytest.raises(CodecError):
        service.export_data("snapshot")


def test_daily_backups_with_thirty_day_retention(tmp_path):
    client = FakeS3Client()
    clock = Clock(datetime(2024, 1, 1, 2, 0, tzinfo=timezone.utc))
    settings = {
        "backup": {"frequency": "daily", "time": "02:00", "retention_days": 30, "cloud_backup": True},
        "cloud": {"bucket": "backups-bucket"},
    }
    service = _service(tmp_path, settings=settings, clock=clock, cloud_client=client)

    ids = []
    for _ in range(35):
        entry = service.run_scheduled_backup()
        assert entry.status is BackupStatus.COMPLETED
        ids.append(entry.id)
        clock.advance(days=1)

    live = [entry.id for entry in service.list_backups(limit=100)]
    assert live == list(reversed(ids[4:]))
    assert len(client.objects) == 2 * len(live)
    assert len(service.destinations["local"].list()) == 2 * len(live)


def test_router_end_to_end(tmp_path):
    service = _service(tmp_path)
    client = TestClient(create_app(service, run_scheduler=False))

    created = client.post("/v1/backup/run")
    assert created.status_code == 200
    backup_id = created.json()["id"]
    assert created.json()["status"] == "completed"

    listing = client.get("/v1/backup/backups").json()["backups"]
    assert [item["id"] for item in listing] == [backup_id]
    detail = client.get(f"/v1/backup/backups/{backup_id}").json()
    assert [event["status"] for event in detail["events"]] == ["pending", "in_progress", "completed"]
    assert client.get("/v1/backup/backups/missing").status_code == 404

    assert client.patch("/v1/backup/config", json={"retention_days": 0}).status_code == 422
    assert client.patch("/v1/backup/config", json={"bogus": True}).status_code == 422
    patched = client.patch("/v1/backup/config", json={"frequency": "monthly"})
    assert patched.status_code == 200
    assert patched.json()["frequency"] == "monthly"

    restored = client.post(f"/v1/backup/restore/{backup_id}", json={"domains": ["users"]})
    assert restored.status_code == 200
    assert restored.json()["restored_counts"] == {"users": 1}
    assert client.post("/v1/backup/restore/missing").status_code == 404

    assert client.post(f"/v1/backup/verify/{backup_id}").json()["ok"] is True
    assert client.post("/v1/backup/export", json={"format": "xml"}).json()["records"] == 3
    assert client.post("/v1/backup/export", json={"format": "snapshot"}).status_code == 422
    assert client.get("/v1/backup/metrics").json()["successful_backups"] == 1
    assert client.get("/v1/backup/health").json()["ok"] is True
    assert client.post("/v1/backup/retention").json()["removed"] == []


def test_ledger_failure_returns_typed_results(tmp_path):
    service = _service(tmp_path)
    with closing(sqlite3.connect(get_ledger_db_path(service.working_dir))) as conn:
        conn.execute("DROP TABLE backups")
        conn.commit()

    entry = service.trigger_manual_backup()

    assert entry.status is BackupStatus.FAILED
    assert entry.error_code == "LedgerError"
    assert "backups" in entry.error
    assert service.list_backups() == []
    assert service.get_backup(entry.id) is None
    assert service.destinations["local"].list() == []
