"""
Financial recalculation engine (``change_kernel.domain.recalculation``).

Responsibility
--------------
Pure computation of the derived fields of a change request:

* ``revised_value = baseline_value + delta_value``
* ``revised_date  = baseline_date + day_impact`` (calendar days)
* cost line amounts and their sum, which may stand in for ``delta_value``

Architecture position
---------------------
**Kernel domain layer** -- pure functions.  ZERO I/O.  Callers (the
workflow and the cost item service) persist whatever this module returns
in the same transaction as the input that changed.

Invariants enforced
-------------------
* A derived value is computed only when both operands are known.
* A derived value that was computed once is never erased: when an operand
  is missing the previous derived value is returned unchanged.
* Money is rounded half-up to two places via ``round_money``; floats are
  never accepted.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import date, timedelta
from decimal import Decimal

from change_kernel.db.types import MONEY_DECIMAL_PLACES, round_money


def recompute_value(
    baseline: Decimal | None,
    delta: Decimal | None,
    previous_revised: Decimal | None,
    decimal_places: int = MONEY_DECIMAL_PLACES,
) -> Decimal | None:
    """Return ``baseline + delta`` or, if either is unknown, ``previous_revised``."""
    if baseline is None or delta is None:
        return previous_revised
    return round_money(baseline + delta, decimal_places)


def recompute_date(
    baseline_date: date | None,
    day_impact: int | None,
    previous_revised_date: date | None,
) -> date | None:
    """Return ``baseline_date + day_impact`` days or ``previous_revised_date``.

    Calendar arithmetic only; weekends and holidays count.
    """
    if baseline_date is None or day_impact is None:
        return previous_revised_date
    return baseline_date + timedelta(days=day_impact)


def line_amount(
    quantity: Decimal,
    unit_rate: Decimal,
    decimal_places: int = MONEY_DECIMAL_PLACES,
) -> Decimal:
    """Amount of one cost line."""
    return round_money(quantity * unit_rate, decimal_places)


def sum_line_amounts(
    amounts: Iterable[Decimal],
    decimal_places: int = MONEY_DECIMAL_PLACES,
) -> Decimal:
    """Total of line amounts; an empty set totals zero."""
    total = sum(amounts, Decimal("0"))
    return round_money(total, decimal_places)


@dataclass(frozen=True)
class RecalculationInputs:
    """Base inputs of the derived fields."""

    baseline_value: Decimal | None = None
    delta_value: Decimal | None = None
    baseline_date: date | None = None
    day_impact: int | None = None


@dataclass(frozen=True)
class DerivedFields:
    """Derived fields of a change request."""

    revised_value: Decimal | None = None
    revised_date: date | None = None

    def changes_from(self, previous: DerivedFields) -> dict[str, tuple[object, object]]:
        """Fields that differ from ``previous`` as ``{name: (old, new)}``."""
        changed: dict[str, tuple[object, object]] = {}
        if self.revised_value != previous.revised_value:
            changed["revised_value"] = (previous.revised_value, self.revised_value)
        if self.revised_date != previous.revised_date:
            changed["revised_date"] = (previous.revised_date, self.revised_date)
        return changed


def derive(
    inputs: RecalculationInputs,
    previous: DerivedFields | None = None,
    decimal_places: int = MONEY_DECIMAL_PLACES,
) -> DerivedFields:
    """Compute both derived fields from ``inputs``, keeping ``previous`` where unknown."""
    previous = previous or DerivedFields()
    return DerivedFields(
        revised_value=recompute_value(
            inputs.baseline_value,
            inputs.delta_value,
            previous.revised_value,
            decimal_places,
        ),
        revised_date=recompute_date(
            inputs.baseline_date,
            inputs.day_impact,
            previous.revised_date,
        ),
    )
