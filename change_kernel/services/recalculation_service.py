"""
RecalculationService -- persists the derived fields of a change request.

Responsibility:
    Runs the pure recalculation engine (``domain.recalculation``) over a
    request's current inputs and writes back every derived field that
    changed, with one ``recalculated`` audit entry per field.

Architecture position:
    Kernel > Services.  Called by ChangeRequestWorkflow after financial
    field edits and by CostItemService after line item changes, always in
    the same flush as the input change.
"""

from uuid import UUID

from sqlalchemy.orm import Session

from change_kernel.domain.recalculation import DerivedFields, RecalculationInputs, derive
from change_kernel.logging_config import get_logger
from change_kernel.models.audit_entry import AuditAction
from change_kernel.models.change_request import ChangeRequestModel
from change_kernel.services.audit_trail import AuditTrail

logger = get_logger("services.recalculation")


class RecalculationService:
    """Keep revised_value / revised_date in step with their inputs."""

    def __init__(self, session: Session, audit: AuditTrail, money_places: int = 2):
        self._session = session
        self._audit = audit
        self._money_places = money_places

    def apply(
        self,
        request: ChangeRequestModel,
        actor_id: UUID,
        comment: str | None = None,
    ) -> dict[str, tuple[object, object]]:
        """Recompute and store the derived fields; returns ``{name: (old, new)}``."""
        previous = DerivedFields(request.revised_value, request.revised_date)
        derived = derive(
            RecalculationInputs(
                baseline_value=request.baseline_value,
                delta_value=request.delta_value,
                baseline_date=request.baseline_date,
                day_impact=request.day_impact,
            ),
            previous,
            self._money_places,
        )
        changed = derived.changes_from(previous)
        if not changed:
            return changed

        for field_name, (old, new) in changed.items():
            setattr(request, field_name, new)
        self._session.flush()

        for field_name, (old, new) in changed.items():
            self._audit.append(
                request.id,
                actor_id,
                AuditAction.RECALCULATED,
                field_name=field_name,
                old=old,
                new=new,
                comment=comment,
            )
        logger.info(
            "derived_fields_recalculated",
            extra={
                "request_id": str(request.id),
                "fields": sorted(changed),
                "revised_value": request.revised_value,
                "revised_date": str(request.revised_date) if request.revised_date else None,
            },
        )
        return changed
