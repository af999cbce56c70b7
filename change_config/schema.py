"""
Workflow settings schema.

``WorkflowSettings`` is the runtime artifact: a frozen, validated value
produced by ``change_config.loader`` from YAML plus environment overrides.
Services receive it by injection and never read files or the environment
themselves.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class NumberingSettings:
    """How human-readable change request numbers are formed."""

    prefix: str = "CO"
    width: int = 4
    scope_code_length: int = 8
    max_attempts: int = 5


@dataclass(frozen=True)
class NotificationSettings:
    """Outbox delivery behaviour."""

    max_attempts: int = 3
    notify_on_submit: bool = True


@dataclass(frozen=True)
class WorkflowSettings:
    """Complete settings for one deployment of the workflow."""

    database_url: str
    numbering: NumberingSettings = NumberingSettings()
    notifications: NotificationSettings = NotificationSettings()
    money_places: int = 2
    log_level: str = "INFO"
