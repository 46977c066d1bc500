"""Closed, validated backup configuration persisted in settings.json."""
from __future__ import annotations

import re
from dataclasses import asdict, dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from core.settings import DEFAULT_SETTINGS, load_settings, save_settings

from .errors import ConfigurationError

FREQUENCIES = ("daily", "weekly", "monthly")

# Configuration flag -> domain ids it covers.
DOMAIN_GROUPS: Dict[str, tuple[str, ...]] = {
    "include_user_data": ("users",),
    "include_communication_data": ("books", "messages", "symbols"),
    "include_progress_data": ("analytics",),
    "include_settings": ("settings",),
}

_TIME_PATTERN = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")
_BOOL_FIELDS = (
    "enabled",
    "include_user_data",
    "include_communication_data",
    "include_progress_data",
    "include_settings",
    "local_backup",
    "cloud_backup",
    "encryption_enabled",
)


@dataclass(frozen=True, slots=True)
class BackupConfiguration:
    enabled: bool = True
    frequency: str = "daily"
    time: str = "02:00"
    include_user_data: bool = True
    include_communication_data: bool = True
    include_progress_data: bool = True
    include_settings: bool = True
    local_backup: bool = True
    cloud_backup: bool = False
    encryption_enabled: bool = True
    retention_days: int = 90

    def __post_init__(self) -> None:
        for name in _BOOL_FIELDS:
            if not isinstance(getattr(self, name), bool):
                raise ConfigurationError(f"{name} must be a boolean")
        if self.frequency not in FREQUENCIES:
            raise ConfigurationError(f"frequency must be one of {', '.join(FREQUENCIES)}")
        if not isinstance(self.time, str) or not _TIME_PATTERN.match(self.time):
            raise ConfigurationError("time must use 24h HH:MM format")
        if isinstance(self.retention_days, bool) or not isinstance(self.retention_days, int):
            raise ConfigurationError("retention_days must be an integer")
        if self.retention_days < 1:
            raise ConfigurationError("retention_days must be at least 1")

    # ------------------------------------------------------------------
    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "BackupConfiguration":
        known = {item.name for item in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigurationError(f"unknown configuration fields: {', '.join(unknown)}")
        return cls(**dict(data))

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def updated(self, partial: Mapping[str, Any]) -> "BackupConfiguration":
        known = {item.name for item in fields(self)}
        unknown = sorted(set(partial) - known)
        if unknown:
            raise ConfigurationError(f"unknown configuration fields: {', '.join(unknown)}")
        return replace(self, **dict(partial))

    @property
    def schedule_time(self) -> tuple[int, int]:
        hours, minutes = self.time.split(":")
        return int(hours), int(minutes)

    def selected_domains(self) -> List[str]:
        selected: List[str] = []
        for flag, domains in DOMAIN_GROUPS.items():
            if getattr(self, flag):
                selected.extend(domains)
        return selected

    def destination_names(self) -> List[str]:
        names: List[str] = []
        if self.local_backup:
            names.append("local")
        if self.cloud_backup:
            names.append("cloud")
        return names


@dataclass(slots=True)
class ConfigurationUpdateResult:
    success: bool
    configuration: BackupConfiguration
    error: Optional[str] = None
    error_code: Optional[str] = None


def load_configuration(working_dir: Path, settings: Optional[Mapping[str, Any]] = None) -> BackupConfiguration:
    """Build the live configuration from settings, falling back to defaults."""

    data = settings if settings is not None else load_settings(working_dir)
    raw = data.get("backup")
    section = dict(DEFAULT_SETTINGS["backup"])
    if isinstance(raw, Mapping):
        section.update({key: value for key, value in raw.items() if key in section})
    return BackupConfiguration.from_dict(section)


def save_configuration(config: BackupConfiguration, working_dir: Path) -> None:
    settings = load_settings(working_dir)
    settings["backup"] = config.to_dict()
    save_settings(settings, working_dir)


__all__ = [
    "BackupConfiguration",
    "ConfigurationUpdateResult",
    "DOMAIN_GROUPS",
    "FREQUENCIES",
    "load_configuration",
    "save_configuration",
]
