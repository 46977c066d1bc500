"""Destination writers: local filesystem and S3 compatible object storage."""
from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path, PurePosixPath
from typing import Any, List, Optional, Protocol, runtime_checkable

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .errors import ArtifactNotFoundError, ConfigurationError, DestinationError, WriteError

LOGGER = logging.getLogger("backup_engine.destinations")

KEY_PREFIX = "backups/"
SNAPSHOT_SUFFIX = ".snapshot"
MANIFEST_SUFFIX = ".manifest.json"
_PARTIAL_SUFFIX = ".partial"
_MISSING_CODES = {"NoSuchKey", "404", "NotFound"}


def snapshot_key(backup_id: str) -> str:
    return f"{KEY_PREFIX}{backup_id}{SNAPSHOT_SUFFIX}"


def manifest_key(backup_id: str) -> str:
    return f"{KEY_PREFIX}{backup_id}{MANIFEST_SUFFIX}"


def backup_id_from_key(key: str) -> Optional[str]:
    if key.startswith(KEY_PREFIX) and key.endswith(SNAPSHOT_SUFFIX):
        return key[len(KEY_PREFIX) : -len(SNAPSHOT_SUFFIX)]
    return None


@runtime_checkable
class DestinationWriter(Protocol):
    name: str

    def put(self, key: str, data: bytes) -> None:
        ...

    def get(self, key: str) -> bytes:
        ...

    def list(self, prefix: str = KEY_PREFIX) -> List[str]:
        ...

    def delete(self, key: str) -> None:
        ...


class LocalDestination:
    """Store artifacts below a root directory. Writes land via atomic rename."""

    def __init__(self, root: Path, *, name: str = "local") -> None:
        self.name = name
        self._root = Path(root)

    @property
    def root(self) -> Path:
        return self._root

    def _resolve(self, key: str) -> Path:
        pure = PurePosixPath(key)
        if pure.is_absolute() or any(part in ("", "..") for part in pure.parts) or not pure.parts:
            raise DestinationError(f"invalid artifact key {key!r}")
        return self._root.joinpath(*pure.parts)

    def put(self, key: str, data: bytes) -> None:
        target = self._resolve(key)
        tmp_name: Optional[str] = None
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(prefix=f".{target.name}.", suffix=_PARTIAL_SUFFIX, dir=target.parent)
            with os.fdopen(fd, "wb") as handle:
                handle.write(data)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, target)
        except BaseException as exc:
            if tmp_name is not None:
                Path(tmp_name).unlink(missing_ok=True)
            if isinstance(exc, OSError):
                raise WriteError(f"{self.name}: could not write {key}: {exc}") from exc
            raise

    def get(self, key: str) -> bytes:
        target = self._resolve(key)
        try:
            return target.read_bytes()
        except FileNotFoundError as exc:
            raise ArtifactNotFoundError(f"{self.name}: {key} not found") from exc
        except OSError as exc:
            raise DestinationError(f"{self.name}: could not read {key}: {exc}") from exc

    def list(self, prefix: str = KEY_PREFIX) -> List[str]:
        if not self._root.exists():
            return []
        keys: List[str] = []
        for item in self._root.rglob("*"):
            if not item.is_file() or item.name.startswith("."):
                continue
            key = item.relative_to(self._root).as_posix()
            if key.startswith(prefix):
                keys.append(key)
        return sorted(keys)

    def delete(self, key: str) -> None:
        target = self._resolve(key)
        try:
            target.unlink(missing_ok=True)
        except OSError as exc:
            raise DestinationError(f"{self.name}: could not delete {key}: {exc}") from exc


class CloudDestination:
    """S3 compatible bucket. Keys are write-once per backup id; last writer wins."""

    def __init__(
        self,
        bucket: str,
        *,
        prefix: str = "",
        client: Any = None,
        region: Optional[str] = None,
        endpoint_url: Optional[str] = None,
        name: str = "cloud",
    ) -> None:
        if not bucket:
            raise ConfigurationError("cloud backup requires a bucket")
        self.name = name
        self._bucket = bucket
        self._prefix = prefix.strip("/")
        self._region = region
        self._endpoint_url = endpoint_url
        self._client = client

    @property
    def client(self) -> Any:
        if self._client is None:
            self._client = boto3.client("s3", region_name=self._region, endpoint_url=self._endpoint_url)
        return self._client

    def _full_key(self, key: str) -> str:
        if self._prefix:
            return f"{self._prefix}/{key}"
        return key

    def _strip(self, full_key: str) -> str:
        if self._prefix and full_key.startswith(self._prefix + "/"):
            return full_key[len(self._prefix) + 1 :]
        return full_key

    def put(self, key: str, data: bytes) -> None:
        full_key = self._full_key(key)
        try:
            self.client.put_object(Bucket=self._bucket, Key=full_key, Body=data)
        except (BotoCoreError, ClientError) as exc:
            self._discard(full_key)
            raise WriteError(f"{self.name}: upload of {key} failed: {exc}") from exc

    def _discard(self, full_key: str) -> None:
        try:
            self.client.delete_object(Bucket=self._bucket, Key=full_key)
        except (BotoCoreError, ClientError) as exc:
            LOGGER.warning("cleanup of s3://%s/%s failed: %s", self._bucket, full_key, exc)

    def get(self, key: str) -> bytes:
        try:
            response = self.client.get_object(Bucket=self._bucket, Key=self._full_key(key))
            return response["Body"].read()
        except ClientError as exc:
            code = str(exc.response.get("Error", {}).get("Code", ""))
            if code in _MISSING_CODES:
                raise ArtifactNotFoundError(f"{self.name}: {key} not found") from exc
            raise DestinationError(f"{self.name}: download of {key} failed: {exc}") from exc
        except BotoCoreError as exc:
            raise DestinationError(f"{self.name}: download of {key} failed: {exc}") from exc

    def list(self, prefix: str = KEY_PREFIX) -> List[str]:
        keys: List[str] = []
        kwargs = {"Bucket": self._bucket, "Prefix": self._full_key(prefix)}
        try:
            while True:
                response = self.client.list_objects_v2(**kwargs)
                keys.extend(self._strip(item["Key"]) for item in response.get("Contents", []))
                if not response.get("IsTruncated"):
                    break
                kwargs["ContinuationToken"] = response["NextContinuationToken"]
        except (BotoCoreError, ClientError) as exc:
            raise DestinationError(f"{self.name}: listing failed: {exc}") from exc
        return sorted(keys)

    def delete(self, key: str) -> None:
        try:
            self.client.delete_object(Bucket=self._bucket, Key=self._full_key(key))
        except (BotoCoreError, ClientError) as exc:
            raise DestinationError(f"{self.name}: delete of {key} failed: {exc}") from exc


class BackupFileSource:
    """Read-only view of a copied backup: ``{id}.snapshot`` plus ``{id}.manifest.json`` beside it."""

    def __init__(self, path: Path, *, name: str = "import") -> None:
        path = Path(path)
        if path.name.endswith(MANIFEST_SUFFIX):
            backup_id = path.name[: -len(MANIFEST_SUFFIX)]
        elif path.name.endswith(SNAPSHOT_SUFFIX):
            backup_id = path.name[: -len(SNAPSHOT_SUFFIX)]
        else:
            raise DestinationError(f"{path.name} is not a {SNAPSHOT_SUFFIX} or {MANIFEST_SUFFIX} file")
        if not backup_id:
            raise DestinationError(f"{path.name} does not name a backup")
        self.name = name
        self.backup_id = backup_id
        self._files = {
            snapshot_key(backup_id): path.with_name(backup_id + SNAPSHOT_SUFFIX),
            manifest_key(backup_id): path.with_name(backup_id + MANIFEST_SUFFIX),
        }

    def put(self, key: str, data: bytes) -> None:
        raise DestinationError(f"{self.name}: imported backups are read-only")

    def get(self, key: str) -> bytes:
        target = self._files.get(key)
        if target is None:
            raise ArtifactNotFoundError(f"{self.name}: {key} not found")
        try:
            return target.read_bytes()
        except FileNotFoundError as exc:
            raise ArtifactNotFoundError(f"{self.name}: {target.name} not found") from exc
        except OSError as exc:
            raise DestinationError(f"{self.name}: could not read {target.name}: {exc}") from exc

    def list(self, prefix: str = KEY_PREFIX) -> List[str]:
        return sorted(key for key, target in self._files.items() if key.startswith(prefix) and target.exists())

    def delete(self, key: str) -> None:
        raise DestinationError(f"{self.name}: imported backups are read-only")


__all__ = [
    "BackupFileSource",
    "CloudDestination",
    "DestinationWriter",
    "KEY_PREFIX",
    "LocalDestination",
    "backup_id_from_key",
    "manifest_key",
    "snapshot_key",
]
