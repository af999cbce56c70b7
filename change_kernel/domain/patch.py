"""
Typed change request patch.

``ChangeRequestPatch`` enumerates exactly the fields a caller may edit
through ``ChangeRequestWorkflow.update``.  A field left at ``UNSET`` is not
touched; a field set to ``None`` is cleared.  Raw mappings from an outer
layer go through ``from_mapping``, which refuses any key that is not on
the allow-list and coerces values to their domain types.
"""

from __future__ import annotations

from collections.abc import Iterator, Mapping
from dataclasses import dataclass, fields
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Final
from uuid import UUID

from change_kernel.db.types import to_decimal
from change_kernel.domain.change_request import (
    ChangeCategory,
    ChangePriority,
    ChangeRequestStatus,
)
from change_kernel.exceptions import (
    DisallowedFieldError,
    DuplicateApproverError,
    InvalidFieldValueError,
)


class _Unset:
    """Marker for a patch field the caller did not supply."""

    _instance: _Unset | None = None

    def __new__(cls) -> _Unset:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNSET"

    def __bool__(self) -> bool:
        return False


UNSET: Final = _Unset()

# Fields that feed the recalculation engine.
FINANCIAL_FIELDS: frozenset[str] = frozenset({
    "baseline_value",
    "delta_value",
    "baseline_date",
    "day_impact",
})


@dataclass(frozen=True)
class ChangeRequestPatch:
    """The editable fields of a change request."""

    title: str | None | _Unset = UNSET
    description: str | None | _Unset = UNSET
    reason: str | None | _Unset = UNSET
    scope_of_work: str | None | _Unset = UNSET
    requested_by: str | None | _Unset = UNSET
    category: ChangeCategory | _Unset = UNSET
    priority: ChangePriority | _Unset = UNSET
    status: ChangeRequestStatus | _Unset = UNSET
    baseline_value: Decimal | None | _Unset = UNSET
    delta_value: Decimal | None | _Unset = UNSET
    baseline_date: date | None | _Unset = UNSET
    day_impact: int | None | _Unset = UNSET
    required_approvers: tuple[UUID, ...] | _Unset = UNSET
    rejection_reason: str | None | _Unset = UNSET

    @classmethod
    def field_names(cls) -> tuple[str, ...]:
        return tuple(f.name for f in fields(cls))

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> ChangeRequestPatch:
        """Validate a raw mapping into a patch.

        Raises:
            DisallowedFieldError: A key is not an editable field.
            InvalidFieldValueError: A value cannot be coerced.
        """
        allowed = set(cls.field_names())
        disallowed = tuple(k for k in data if k not in allowed)
        if disallowed:
            raise DisallowedFieldError(disallowed)

        values: dict[str, Any] = {}
        for name, raw in data.items():
            values[name] = _COERCERS[name](name, raw)
        return cls(**values)

    def items(self) -> Iterator[tuple[str, Any]]:
        """Supplied fields in declaration order."""
        for f in fields(self):
            value = getattr(self, f.name)
            if value is not UNSET:
                yield f.name, value

    def supplied(self) -> frozenset[str]:
        return frozenset(name for name, _ in self.items())

    @property
    def is_empty(self) -> bool:
        return not self.supplied()

    def validated(self) -> ChangeRequestPatch:
        """Re-run coercion over the supplied fields."""
        return ChangeRequestPatch.from_mapping(dict(self.items()))

    def without(self, *names: str) -> ChangeRequestPatch:
        """Copy of this patch with ``names`` reset to UNSET."""
        values = {name: value for name, value in self.items() if name not in names}
        return ChangeRequestPatch(**values)


# -------------------------------------------------------------------------
# Coercion
# -------------------------------------------------------------------------


def coerce_text(name: str, value: Any) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise InvalidFieldValueError(name, value, "expected text")
    return value


def coerce_required_text(name: str, value: Any) -> str:
    if not isinstance(value, str) or not value.strip():
        raise InvalidFieldValueError(name, value, "must be non-empty text")
    return value.strip()


def coerce_money(name: str, value: Any) -> Decimal | None:
    if value is None:
        return None
    try:
        return to_decimal(value, name)
    except ValueError as exc:
        raise InvalidFieldValueError(name, value, str(exc)) from None


def coerce_date(name: str, value: Any) -> date | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            return date.fromisoformat(value)
        except ValueError:
            pass
    raise InvalidFieldValueError(name, value, "expected an ISO date")


def coerce_day_impact(name: str, value: Any) -> int | None:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidFieldValueError(name, value, "expected a whole number of days")
    return value


def coerce_uuid(name: str, value: Any) -> UUID:
    if isinstance(value, UUID):
        return value
    try:
        return UUID(str(value))
    except ValueError:
        raise InvalidFieldValueError(name, value, "expected a UUID") from None


def coerce_approvers(name: str, value: Any) -> tuple[UUID, ...]:
    if value is None:
        return ()
    if isinstance(value, (str, bytes)) or not hasattr(value, "__iter__"):
        raise InvalidFieldValueError(name, value, "expected a list of approver ids")
    approvers = tuple(coerce_uuid(name, v) for v in value)
    seen: set[UUID] = set()
    for approver_id in approvers:
        if approver_id in seen:
            raise DuplicateApproverError(str(approver_id))
        seen.add(approver_id)
    return approvers


def enum_coercer(enum_type):
    def coerce(name: str, value: Any):
        try:
            return enum_type(value)
        except ValueError:
            raise InvalidFieldValueError(
                name, value, f"expected one of {[m.value for m in enum_type]}"
            ) from None
    return coerce


_COERCERS = {
    "title": coerce_required_text,
    "description": coerce_text,
    "reason": coerce_text,
    "scope_of_work": coerce_text,
    "requested_by": coerce_text,
    "category": enum_coercer(ChangeCategory),
    "priority": enum_coercer(ChangePriority),
    "status": enum_coercer(ChangeRequestStatus),
    "baseline_value": coerce_money,
    "delta_value": coerce_money,
    "baseline_date": coerce_date,
    "day_impact": coerce_day_impact,
    "required_approvers": coerce_approvers,
    "rejection_reason": coerce_text,
}

