"""Domain provider contract and a JSON file backed implementation."""
from __future__ import annotations

import json
import os
import re
import tempfile
from pathlib import Path
from typing import Dict, Iterable, Mapping, Protocol, runtime_checkable

from core.paths import get_domains_dir

from .types import RecordSet

_DOMAIN_PATTERN = re.compile(r"^[a-z][a-z0-9_]{0,63}$")


def validate_domain_id(domain: str) -> str:
    if not isinstance(domain, str) or not _DOMAIN_PATTERN.match(domain):
        raise ValueError(f"invalid domain id: {domain!r}")
    return domain


@runtime_checkable
class DomainProvider(Protocol):
    """Owned by the data domain; the engine only moves its records around."""

    domain: str

    def export(self) -> RecordSet:
        ...

    def apply_atomic(self, records: RecordSet) -> RecordSet:
        """Replace the live records and return the state that was replaced."""
        ...


class JsonFileDomainProvider:
    """Keep a domain's records in one JSON file, replaced atomically."""

    def __init__(self, domain: str, path: Path) -> None:
        self.domain = validate_domain_id(domain)
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def _read(self) -> list:
        if not self._path.exists():
            return []
        with self._path.open("r", encoding="utf-8") as handle:
            data = json.load(handle)
        if not isinstance(data, list):
            raise ValueError(f"{self._path} does not hold a record list")
        return data

    def export(self) -> RecordSet:
        if not self._path.exists():
            return RecordSet(domain=self.domain, records=[], missing=True)
        return RecordSet(domain=self.domain, records=self._read())

    def apply_atomic(self, records: RecordSet) -> RecordSet:
        if records.domain != self.domain:
            raise ValueError(f"records for '{records.domain}' cannot be applied to '{self.domain}'")
        previous = self.export()
        if records.missing:
            self._path.unlink(missing_ok=True)
            return previous
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{self.domain}.", suffix=".tmp", dir=self._path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(records.records, handle, ensure_ascii=False, sort_keys=True)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, self._path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        return previous


def build_file_providers(working_dir: Path, domains: Iterable[str]) -> Dict[str, JsonFileDomainProvider]:
    base = get_domains_dir(working_dir)
    return {domain: JsonFileDomainProvider(domain, base / f"{domain}.json") for domain in domains}


def index_providers(providers: Iterable[DomainProvider] | Mapping[str, DomainProvider]) -> Dict[str, DomainProvider]:
    if isinstance(providers, Mapping):
        items = list(providers.values())
    else:
        items = list(providers)
    indexed: Dict[str, DomainProvider] = {}
    for provider in items:
        domain = validate_domain_id(provider.domain)
        if domain in indexed:
            raise ValueError(f"duplicate provider for domain '{domain}'")
        indexed[domain] = provider
    return indexed


__all__ = [
    "DomainProvider",
    "JsonFileDomainProvider",
    "build_file_providers",
    "index_providers",
    "validate_domain_id",
]
