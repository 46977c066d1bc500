"""Error hierarchy for backup and restore operations."""
from __future__ import annotations

from typing import List, Optional


class BackupError(RuntimeError):
    """Base exception for backup related failures."""

    @property
    def code(self) -> str:
        return type(self).__name__


class ConfigurationError(BackupError):
    """Raised when the backup configuration is invalid or incomplete."""


class ExportError(BackupError):
    """Raised when a domain provider fails to export its records."""

    def __init__(self, domain: str, message: str) -> None:
        super().__init__(f"export of domain '{domain}' failed: {message}")
        self.domain = domain


class CodecError(BackupError):
    """Base class for snapshot encoding and decoding failures."""


class EncodeError(CodecError):
    """Raised when a snapshot cannot be serialised."""


class DecodeError(CodecError):
    """Raised when bytes cannot be decoded into a snapshot."""


class ExportOnlyFormatError(DecodeError):
    """Raised when an export-only format is presented for restore."""


class EncryptionError(BackupError):
    """Base class for encryption layer failures."""


class EncryptionKeyError(EncryptionError):
    """The key or passphrase does not match the one used to encrypt."""


class EncryptionCorruptError(EncryptionError):
    """The encrypted payload is truncated or has been altered."""


class DestinationError(BackupError):
    """Base class for destination writer failures."""


class WriteError(DestinationError):
    """Raised when a destination is unreachable, full or rejects a write."""


class ArtifactNotFoundError(DestinationError):
    """Raised when a requested key does not exist at a destination."""


class ChecksumMismatchError(BackupError):
    """Raised when stored bytes do not match their recorded checksum."""


class ApplyError(BackupError):
    """Raised when a domain rejects the records of a restore."""

    def __init__(self, domain: str, message: str, *, rollback_errors: Optional[List[str]] = None) -> None:
        super().__init__(f"apply of domain '{domain}' failed: {message}")
        self.domain = domain
        self.rollback_errors = list(rollback_errors or [])


class BusyError(BackupError):
    """Raised when a backup or restore is already running."""


class BackupCancelled(BackupError):
    """Raised at a cancellation checkpoint after cancel was requested."""


class LedgerError(BackupError):
    """Raised when the metadata ledger rejects an operation."""


__all__ = [
    "ApplyError",
    "ArtifactNotFoundError",
    "BackupCancelled",
    "BackupError",
    "BusyError",
    "ChecksumMismatchError",
    "CodecError",
    "ConfigurationError",
    "DecodeError",
    "DestinationError",
    "EncodeError",
    "EncryptionCorruptError",
    "EncryptionError",
    "EncryptionKeyError",
    "ExportError",
    "ExportOnlyFormatError",
    "LedgerError",
    "WriteError",
]
