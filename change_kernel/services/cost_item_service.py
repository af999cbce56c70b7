"""
CostItemService -- priced line items behind a change request's delta.

Responsibility:
    Adds, updates and removes cost line items.  While a request takes its
    delta from line items (``delta_from_line_items``), every line change
    recomputes ``delta_value`` as the sum of line amounts and
    ``revised_value`` from it, in the same flush as the line change.

Architecture position:
    Kernel > Services.  Called by ChangeRequestWorkflow, which owns the
    transaction and has already checked that the request is editable.

Invariants enforced:
    - amount = round_money(quantity x unit_rate).
    - delta_value == sum(amount) whenever delta_from_line_items is set.
    - Each line change and each derived-field change writes one audit
      entry.
"""

from collections.abc import Mapping
from decimal import Decimal
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy.orm import Session

from change_kernel.db.types import to_decimal
from change_kernel.domain.clock import Clock, SystemClock
from change_kernel.domain.recalculation import line_amount, sum_line_amounts
from change_kernel.exceptions import (
    CostLineItemNotFoundError,
    DisallowedFieldError,
    InvalidFieldValueError,
    MissingFieldError,
)
from change_kernel.logging_config import get_logger
from change_kernel.models.audit_entry import AuditAction
from change_kernel.models.change_request import ChangeRequestModel, CostLineItemModel
from change_kernel.services.audit_trail import AuditTrail
from change_kernel.services.recalculation_service import RecalculationService

logger = get_logger("services.cost_items")

EDITABLE_ITEM_FIELDS = frozenset({
    "description",
    "quantity",
    "unit",
    "unit_rate",
    "category",
    "notes",
})


def _decimal(field_name: str, value: Any) -> Decimal:
    if value is None:
        raise MissingFieldError(field_name)
    try:
        return to_decimal(value, field_name)
    except ValueError as exc:
        raise InvalidFieldValueError(field_name, value, str(exc)) from None


def _describe(item: CostLineItemModel) -> str:
    return f"{item.description}: {item.quantity} x {item.unit_rate} = {item.amount}"


class CostItemService:
    """
    Maintain the cost line items of change requests.

    Non-goals:
        - Does NOT call ``session.commit()`` -- caller controls boundaries.
        - Does NOT check the request's status; the workflow does.
    """

    def __init__(
        self,
        session: Session,
        audit: AuditTrail,
        recalculation: RecalculationService,
        clock: Clock | None = None,
        money_places: int = 2,
    ):
        self._session = session
        self._audit = audit
        self._recalculation = recalculation
        self._clock = clock or SystemClock()
        self._money_places = money_places

    def add(
        self,
        request: ChangeRequestModel,
        data: Mapping[str, Any],
        actor_id: UUID,
    ) -> CostLineItemModel:
        """Add a line item and, on first use, switch the delta to line items."""
        unknown = tuple(k for k in data if k not in EDITABLE_ITEM_FIELDS)
        if unknown:
            raise DisallowedFieldError(unknown)
        description = data.get("description")
        if not isinstance(description, str) or not description.strip():
            raise MissingFieldError("description")

        quantity = _decimal("quantity", data.get("quantity"))
        unit_rate = _decimal("unit_rate", data.get("unit_rate"))
        position = max((i.position for i in request.cost_items), default=0) + 1

        item = CostLineItemModel(
            id=uuid4(),
            request_id=request.id,
            description=description.strip(),
            quantity=quantity,
            unit=data.get("unit"),
            unit_rate=unit_rate,
            amount=line_amount(quantity, unit_rate, self._money_places),
            category=data.get("category"),
            notes=data.get("notes"),
            position=position,
            created_at=self._clock.now(),
        )
        request.cost_items.append(item)
        self._session.flush()

        self._audit.append(
            request.id,
            actor_id,
            AuditAction.COST_ITEM_ADDED,
            field_name="cost_items",
            new=_describe(item),
        )
        self.sync_delta(request, actor_id, enable=True)
        logger.info(
            "cost_item_added",
            extra={"request_id": str(request.id), "item_id": str(item.id), "amount": item.amount},
        )
        return item

    def update(
        self,
        request: ChangeRequestModel,
        item_id: UUID,
        changes: Mapping[str, Any],
        actor_id: UUID,
    ) -> CostLineItemModel:
        """Edit a line item and recompute its amount."""
        unknown = tuple(k for k in changes if k not in EDITABLE_ITEM_FIELDS)
        if unknown:
            raise DisallowedFieldError(unknown)

        item = self._get(request, item_id)
        before = _describe(item)

        if "description" in changes:
            description = changes["description"]
            if not isinstance(description, str) or not description.strip():
                raise InvalidFieldValueError("description", description, "must be non-empty text")
            item.description = description.strip()
        if "quantity" in changes:
            item.quantity = _decimal("quantity", changes["quantity"])
        if "unit_rate" in changes:
            item.unit_rate = _decimal("unit_rate", changes["unit_rate"])
        for name in ("unit", "category", "notes"):
            if name in changes:
                setattr(item, name, changes[name])
        item.amount = line_amount(item.quantity, item.unit_rate, self._money_places)
        self._session.flush()

        after = _describe(item)
        if after != before:
            self._audit.append(
                request.id,
                actor_id,
                AuditAction.COST_ITEM_UPDATED,
                field_name="cost_items",
                old=before,
                new=after,
            )
        self.sync_delta(request, actor_id)
        return item

    def remove(
        self,
        request: ChangeRequestModel,
        item_id: UUID,
        actor_id: UUID,
    ) -> None:
        """Remove a line item; the delta follows the remaining lines."""
        item = self._get(request, item_id)
        before = _describe(item)
        request.cost_items.remove(item)
        self._session.flush()

        self._audit.append(
            request.id,
            actor_id,
            AuditAction.COST_ITEM_REMOVED,
            field_name="cost_items",
            old=before,
        )
        self.sync_delta(request, actor_id)

    def _get(self, request: ChangeRequestModel, item_id: UUID) -> CostLineItemModel:
        for item in request.cost_items:
            if item.id == item_id:
                return item
        raise CostLineItemNotFoundError(str(item_id))

    def sync_delta(
        self,
        request: ChangeRequestModel,
        actor_id: UUID,
        enable: bool = False,
    ) -> None:
        """Recompute delta and revised value from the line items."""
        if enable and not request.delta_from_line_items:
            request.delta_from_line_items = True
            self._audit.append(
                request.id,
                actor_id,
                AuditAction.UPDATED,
                field_name="delta_from_line_items",
                old=False,
                new=True,
            )
        request.updated_at = self._clock.now()
        if not request.delta_from_line_items:
            self._session.flush()
            return

        new_delta = sum_line_amounts((i.amount for i in request.cost_items), self._money_places)
        if new_delta != request.delta_value:
            self._audit.append(
                request.id,
                actor_id,
                AuditAction.RECALCULATED,
                field_name="delta_value",
                old=request.delta_value,
                new=new_delta,
                comment="Sum of cost line items",
            )
            request.delta_value = new_delta

        self._session.flush()
        self._recalculation.apply(request, actor_id, comment="Cost line items changed")
