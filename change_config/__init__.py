"""
change_config -- single public entrypoint for workflow settings.

Responsibility:
    Provides the ONLY way to obtain settings at runtime through
    ``get_settings()``.  No other component may read configuration files
    or environment variables directly.  Returns a frozen
    ``WorkflowSettings``.

Failure modes:
    - ``FileNotFoundError`` -- an explicit settings path does not exist.
    - ``ConfigError`` -- a value has the wrong type or is out of range.
"""

from __future__ import annotations

from collections.abc import Mapping
from pathlib import Path

from change_config.schema import (
    NotificationSettings,
    NumberingSettings,
    WorkflowSettings,
)
from change_kernel.logging_config import get_logger

_logger = get_logger("config")

DEFAULTS_PATH = Path(__file__).parent / "defaults.yaml"

__all__ = [
    "DEFAULTS_PATH",
    "NotificationSettings",
    "NumberingSettings",
    "WorkflowSettings",
    "get_settings",
]


def get_settings(
    path: Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> WorkflowSettings:
    """The ONLY public settings entrypoint.

    Args:
        path: Optional YAML file layered over the shipped defaults.
        environ: Environment mapping; defaults to ``os.environ``.

    Returns:
        Frozen ``WorkflowSettings``.
    """
    from change_config.loader import load_settings

    settings = load_settings(path=path, environ=environ)
    _logger.info(
        "settings_loaded",
        extra={
            "source": str(path) if path else "defaults",
            "number_prefix": settings.numbering.prefix,
            "numbering_max_attempts": settings.numbering.max_attempts,
        },
    )
    return settings
