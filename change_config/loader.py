"""
Configuration Loader (``change_config.loader``).

Responsibility
--------------
Loads YAML settings files, overlays ``CHANGE_KERNEL_*`` environment
variables, and parses the result into the frozen ``WorkflowSettings``
dataclass.  The single public entry point for runtime settings is
``change_config.get_settings()``.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Wrong type or out-of-range value  -> ``ConfigError``.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml

from change_config.schema import (
    NotificationSettings,
    NumberingSettings,
    WorkflowSettings,
)
from change_kernel.exceptions import ValidationError

ENV_PREFIX = "CHANGE_KERNEL_"

# Environment variable suffix -> dotted path in the YAML document
_ENV_KEYS: dict[str, tuple[str, ...]] = {
    "DATABASE_URL": ("database_url",),
    "NUMBER_PREFIX": ("numbering", "prefix"),
    "NUMBER_WIDTH": ("numbering", "width"),
    "SCOPE_CODE_LENGTH": ("numbering", "scope_code_length"),
    "NUMBERING_MAX_ATTEMPTS": ("numbering", "max_attempts"),
    "MONEY_PLACES": ("money", "places"),
    "NOTIFICATION_MAX_ATTEMPTS": ("notifications", "max_attempts"),
    "NOTIFY_ON_SUBMIT": ("notifications", "notify_on_submit"),
    "LOG_LEVEL": ("logging", "level"),
}

_TRUE_STRINGS = frozenset({"1", "true", "yes", "on"})
_FALSE_STRINGS = frozenset({"0", "false", "no", "off"})


class ConfigError(ValidationError):
    """Settings document is malformed."""

    code: str = "CONFIG_ERROR"

    def __init__(self, key: str, reason: str):
        self.key = key
        self.reason = reason
        super().__init__(f"Invalid setting {key}: {reason}")


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
        ConfigError: if the document is not a mapping.
    """
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ConfigError(str(path), "top level must be a mapping")
    return data


def merge_documents(base: Mapping[str, Any], override: Mapping[str, Any]) -> dict[str, Any]:
    """Deep-merge ``override`` into a copy of ``base``."""
    merged: dict[str, Any] = dict(base)
    for key, value in override.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), Mapping):
            merged[key] = merge_documents(merged[key], value)
        else:
            merged[key] = value
    return merged


def apply_env_overrides(
    data: Mapping[str, Any],
    environ: Mapping[str, str],
) -> dict[str, Any]:
    """Overlay ``CHANGE_KERNEL_*`` variables onto a settings document."""
    result = merge_documents(data, {})
    for suffix, path in _ENV_KEYS.items():
        raw = environ.get(ENV_PREFIX + suffix)
        if raw is None:
            continue
        node = result
        for part in path[:-1]:
            child = node.get(part)
            node[part] = dict(child) if isinstance(child, Mapping) else {}
            node = node[part]
        node[path[-1]] = raw
    return result


def _as_int(key: str, value: Any, minimum: int) -> int:
    if isinstance(value, bool):
        raise ConfigError(key, "expected an integer")
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ConfigError(key, f"expected an integer, got {value!r}") from None
    if number < minimum:
        raise ConfigError(key, f"must be >= {minimum}")
    return number


def _as_bool(key: str, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in _TRUE_STRINGS:
            return True
        if lowered in _FALSE_STRINGS:
            return False
    raise ConfigError(key, f"expected a boolean, got {value!r}")


def _as_str(key: str, value: Any) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(key, "expected a non-empty string")
    return value.strip()


def parse_settings(data: Mapping[str, Any]) -> WorkflowSettings:
    """Parse a merged settings document into ``WorkflowSettings``."""
    if "database_url" not in data:
        raise ConfigError("database_url", "is required")

    numbering = data.get("numbering") or {}
    notifications = data.get("notifications") or {}
    money = data.get("money") or {}
    logging_section = data.get("logging") or {}

    defaults_numbering = NumberingSettings()
    defaults_notifications = NotificationSettings()

    return WorkflowSettings(
        database_url=_as_str("database_url", data["database_url"]),
        numbering=NumberingSettings(
            prefix=_as_str(
                "numbering.prefix",
                numbering.get("prefix", defaults_numbering.prefix),
            ).upper(),
            width=_as_int(
                "numbering.width",
                numbering.get("width", defaults_numbering.width),
                minimum=1,
            ),
            scope_code_length=_as_int(
                "numbering.scope_code_length",
                numbering.get("scope_code_length", defaults_numbering.scope_code_length),
                minimum=1,
            ),
            max_attempts=_as_int(
                "numbering.max_attempts",
                numbering.get("max_attempts", defaults_numbering.max_attempts),
                minimum=1,
            ),
        ),
        notifications=NotificationSettings(
            max_attempts=_as_int(
                "notifications.max_attempts",
                notifications.get("max_attempts", defaults_notifications.max_attempts),
                minimum=1,
            ),
            notify_on_submit=_as_bool(
                "notifications.notify_on_submit",
                notifications.get("notify_on_submit", defaults_notifications.notify_on_submit),
            ),
        ),
        money_places=_as_int("money.places", money.get("places", 2), minimum=0),
        log_level=_as_str("logging.level", logging_section.get("level", "INFO")).upper(),
    )


def load_settings(
    path: Path | None = None,
    environ: Mapping[str, str] | None = None,
    defaults_path: Path | None = None,
) -> WorkflowSettings:
    """Load defaults, overlay an optional file and the environment, parse."""
    from change_config import DEFAULTS_PATH

    document = load_yaml_file(defaults_path or DEFAULTS_PATH)
    if path is not None:
        document = merge_documents(document, load_yaml_file(path))
    document = apply_env_overrides(
        document, os.environ if environ is None else environ,
    )
    return parse_settings(document)
