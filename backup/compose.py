"""Compose domain exports into one checksummed snapshot."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Dict, Iterable, Mapping, Optional

from . import __version__ as APP_VERSION
from .codec import SCHEMA_VERSION, compute_checksum, domain_bytes
from .errors import BackupError, EncodeError, ExportError
from .locks import CancelToken
from .logs import BackupLogger
from .providers import DomainProvider
from .types import Manifest, RecordSet, Snapshot, utc_iso


class SnapshotComposer:
    """Export every requested domain or none at all."""

    def __init__(self, providers: Mapping[str, DomainProvider], *, logger: BackupLogger) -> None:
        self._providers = dict(providers)
        self._logger = logger

    @property
    def domains(self) -> list[str]:
        return sorted(self._providers)

    def _export(self, domain: str) -> RecordSet:
        provider = self._providers.get(domain)
        if provider is None:
            raise ExportError(domain, "no provider registered")
        try:
            exported = provider.export()
        except BackupError:
            raise
        except Exception as exc:
            raise ExportError(domain, str(exc) or type(exc).__name__) from exc
        if not isinstance(exported, RecordSet):
            raise ExportError(domain, f"provider returned {type(exported).__name__}, expected RecordSet")
        if exported.domain != domain:
            raise ExportError(domain, f"provider returned records for '{exported.domain}'")
        if not all(isinstance(record, dict) for record in exported.records):
            raise ExportError(domain, "records must be mappings")
        try:
            domain_bytes(exported)
        except EncodeError as exc:
            raise ExportError(domain, str(exc)) from exc
        return exported

    def compose(
        self,
        domains: Iterable[str],
        *,
        cancel: Optional[CancelToken] = None,
        now: Optional[datetime] = None,
    ) -> Snapshot:
        requested = sorted(set(domains))
        if not requested:
            raise ExportError("*", "no domains selected for backup")
        exported: Dict[str, RecordSet] = {}
        for domain in requested:
            if cancel is not None:
                cancel.check(f"export of {domain}")
            records = self._export(domain)
            exported[domain] = RecordSet(domain=domain, records=records.canonical_records())
            self._logger.info("domain_exported", domain=domain, records=len(records))

        manifest = Manifest(
            schema_version=SCHEMA_VERSION,
            created_utc=utc_iso(now or datetime.now(timezone.utc)),
            app_version=APP_VERSION,
            domains=requested,
            record_counts={name: len(exported[name]) for name in requested},
        )
        manifest.checksum = compute_checksum(manifest, exported)
        return Snapshot(manifest=manifest, domains=exported)


__all__ = ["SnapshotComposer"]
