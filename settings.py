#!/usr/bin/env python3
"""
User settings stored in the database.

Every recognized key is declared in ``SETTINGS_FIELDS`` with its type and
default. Updates naming an unknown key, or carrying a value of the wrong
type, are rejected as a whole with ``ValidationError``.
"""

from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple

from config import config
from errors import ValidationError


@dataclass(frozen=True)
class SettingField:
    types: Tuple[type, ...]
    default: Any
    check: Optional[Callable[[Any], Optional[str]]] = None


def _non_negative(value) -> Optional[str]:
    return "must not be negative" if value < 0 else None


def _one_of(*choices) -> Callable[[Any], Optional[str]]:
    def _check(value) -> Optional[str]:
        return None if value in choices else f"must be one of {', '.join(choices)}"
    return _check


def _positive(value) -> Optional[str]:
    return "must be positive" if value <= 0 else None


SETTINGS_FIELDS: Dict[str, SettingField] = {
    'filter': SettingField((str,), '', _one_of('', 'unread', 'starred')),
    'feed': SettingField((str,), ''),
    'feed_list_width': SettingField((int,), 300, _positive),
    'item_list_width': SettingField((int,), 300, _positive),
    'sort_newest_first': SettingField((bool,), True),
    'theme_name': SettingField((str,), 'light', _one_of('light', 'sepia', 'night')),
    'theme_font': SettingField((str,), ''),
    'theme_size': SettingField((int, float), 1.0, _positive),
    # Minutes between refresh ticks; 0 turns automatic refresh off
    'refresh_rate': SettingField((int,), config.REFRESH_INTERVAL_MINUTES, _non_negative),
}


def default_settings() -> Dict[str, Any]:
    return {key: setting.default for key, setting in SETTINGS_FIELDS.items()}


def _type_ok(value: Any, types: Tuple[type, ...]) -> bool:
    # bool is a subclass of int; only accept it where bool is declared
    if isinstance(value, bool):
        return bool in types
    return isinstance(value, types)


def validate_settings(values: Any) -> Dict[str, Any]:
    """Check an update payload and return it as a plain dict.

    Raises:
        ValidationError: listing every offending key in ``errors``.
    """
    if not isinstance(values, dict):
        raise ValidationError("settings must be an object")

    errors: Dict[str, str] = {}
    for key, value in values.items():
        setting = SETTINGS_FIELDS.get(key)
        if setting is None:
            errors[key] = "unknown setting"
            continue
        if not _type_ok(value, setting.types):
            expected = " or ".join(t.__name__ for t in setting.types)
            errors[key] = f"expected {expected}, got {type(value).__name__}"
            continue
        if setting.check is not None:
            problem = setting.check(value)
            if problem:
                errors[key] = problem

    if errors:
        raise ValidationError(f"invalid settings: {', '.join(sorted(errors))}", errors=errors)
    return dict(values)


def merge_with_defaults(stored: Dict[str, Any]) -> Dict[str, Any]:
    """Overlay stored values on the defaults, dropping keys no longer recognized."""
    merged = default_settings()
    for key, value in stored.items():
        setting = SETTINGS_FIELDS.get(key)
        if setting is not None and _type_ok(value, setting.types):
            merged[key] = value
    return merged
