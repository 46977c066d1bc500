"""Backup, restore and retention for the application's data domains."""
from __future__ import annotations

__version__ = "1.0.0"

from .api import BackupService, create_app
from .config import BackupConfiguration, ConfigurationUpdateResult
from .errors import BackupError
from .providers import DomainProvider, JsonFileDomainProvider
from .retention import RetentionPolicy
from .types import BackupMetadata, BackupStatus, BackupType, RecordSet, RestoreResult, RetentionSummary

__all__ = [
    "BackupConfiguration",
    "BackupError",
    "BackupMetadata",
    "BackupService",
    "BackupStatus",
    "BackupType",
    "ConfigurationUpdateResult",
    "DomainProvider",
    "JsonFileDomainProvider",
    "RecordSet",
    "RestoreResult",
    "RetentionPolicy",
    "RetentionSummary",
    "__version__",
    "create_app",
]
