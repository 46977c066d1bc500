from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Tuple


# Section name -> {key: accepted types}. "*" accepts any payload, None any scalar.
_ALLOWED_STRUCTURE: Dict[str, Any] = {
    "backup": {
        "enabled": (bool,),
        "frequency": (str,),
        "time": (str,),
        "include_user_data": (bool,),
        "include_communication_data": (bool,),
        "include_progress_data": (bool,),
        "include_settings": (bool,),
        "local_backup": (bool,),
        "cloud_backup": (bool,),
        "encryption_enabled": (bool,),
        "retention_days": (int,),
    },
    "cloud": {
        "bucket": (str, type(None)),
        "prefix": (str,),
        "region": (str, type(None)),
        "endpoint_url": (str, type(None)),
    },
    "encryption": {
        "key_source": (str,),
        "passphrase_env": (str,),
    },
    "scheduler": "*",
    "api": "*",
    "working_dir": None,
    "version": None,
}


def _type_ok(value: Any, accepted: Tuple[type, ...]) -> bool:
    # bool is an int subclass; a flag is never a day count.
    if isinstance(value, bool) and bool not in accepted:
        return False
    return isinstance(value, accepted)


@dataclass(slots=True)
class SettingsValidator:
    schema: Mapping[str, Any]

    def unknown_keys(self, payload: Mapping[str, Any]) -> List[str]:
        return sorted(self._iter_unknown(payload))

    def type_errors(self, payload: Mapping[str, Any]) -> List[str]:
        return sorted(self._iter_type_errors(payload))

    def _iter_unknown(self, payload: Mapping[str, Any]) -> Iterable[str]:
        for key, value in payload.items():
            if key not in self.schema:
                yield key
                continue
            rule = self.schema[key]
            if not isinstance(rule, Mapping) or not isinstance(value, Mapping):
                continue
            for sub in value:
                if sub not in rule:
                    yield f"{key}.{sub}"

    def _iter_type_errors(self, payload: Mapping[str, Any]) -> Iterable[str]:
        for section, rule in self.schema.items():
            if not isinstance(rule, Mapping):
                continue
            value = payload.get(section)
            if value is None:
                continue
            if not isinstance(value, Mapping):
                yield f"{section}: expected object"
                continue
            for key, accepted in rule.items():
                if key in value and not _type_ok(value[key], accepted):
                    yield f"{section}.{key}: {type(value[key]).__name__}"


SETTINGS_VALIDATOR = SettingsValidator(_ALLOWED_STRUCTURE)

__all__ = ["SETTINGS_VALIDATOR", "SettingsValidator"]
