"""
ORM-level immutability enforcement for the change kernel.

===============================================================================
PROTECTED ENTITIES
===============================================================================

Entity              | Rule
--------------------|-------------------------------------------------------
AuditEntry          | ALWAYS immutable: no UPDATE, no DELETE
ApprovalStep        | Immutable once decided (approved/rejected/cancelled)
ChangeRequest       | number is write-once; lifecycle timestamps are
                    | write-once; revised_value/revised_date are never
                    | nulled once computed; rows are never deleted

SQLAlchemy fires mapper events before UPDATE/DELETE statements reach the
database:

    session.flush()
         |
         v
    [before_update] --> _check_*() --> ImmutabilityViolationError
    [before_delete] --> _check_*() --> ImmutabilityViolationError
         |
         v
    SQL sent to database (only if checks pass)

A failed check aborts the flush; the orchestrator then rolls the whole
unit of work back.

===============================================================================
USAGE
===============================================================================

``change_kernel.models`` registers the listeners on import.  Tests that
must write a forbidden row (to prove tamper detection) can lift them:

    from change_kernel.db.immutability import unregister_immutability_listeners
    unregister_immutability_listeners()
    # ... do forbidden operation ...
    register_immutability_listeners()
"""

from sqlalchemy import event, inspect
from sqlalchemy.orm.attributes import get_history

from change_kernel.exceptions import ImmutabilityViolationError
from change_kernel.logging_config import get_logger

logger = get_logger("db.immutability")

WRITE_ONCE_FIELDS = (
    "number",
    "submitted_at",
    "approved_at",
    "rejected_at",
    "rejection_reason",
    "completed_at",
    "cancelled_at",
)

NEVER_NULLED_FIELDS = (
    "revised_value",
    "revised_date",
)


def _blocked(entity_type: str, entity_id, operation: str, reason: str, field: str | None = None):
    logger.error(
        "immutability_violation_blocked",
        extra={
            "entity_type": entity_type,
            "entity_id": str(entity_id),
            "operation": operation,
            "field": field,
        },
    )
    return ImmutabilityViolationError(
        entity_type=entity_type,
        entity_id=str(entity_id),
        reason=reason,
    )


# -------------------------------------------------------------------------
# AuditEntry
# -------------------------------------------------------------------------


def _check_audit_entry_update(mapper, connection, target):
    raise _blocked("AuditEntry", target.id, "UPDATE", "Audit entries are immutable")


def _check_audit_entry_delete(mapper, connection, target):
    raise _blocked("AuditEntry", target.id, "DELETE", "Audit entries cannot be deleted")


# -------------------------------------------------------------------------
# ApprovalStep
# -------------------------------------------------------------------------


def _was_decided(target) -> bool:
    """Whether the step was already decided before this flush.

    The decision itself (pending -> approved) is allowed; anything after
    it is not.
    """
    from change_kernel.domain.change_request import UNDECIDED_STEP_STATUSES

    history = get_history(target, "status")
    if history.deleted:
        previous = history.deleted[0]
    elif not history.added:
        previous = target.status
    else:
        return False
    return previous not in UNDECIDED_STEP_STATUSES


def _check_approval_step_update(mapper, connection, target):
    if not _was_decided(target):
        return
    state = inspect(target)
    for prop in state.mapper.column_attrs:
        attr = state.attrs[prop.key]
        if attr.history.has_changes():
            raise _blocked(
                "ApprovalStep",
                target.id,
                "UPDATE",
                f"Cannot modify field '{attr.key}' of a decided approval step",
                field=attr.key,
            )


def _check_approval_step_delete(mapper, connection, target):
    from change_kernel.domain.change_request import UNDECIDED_STEP_STATUSES

    if target.status not in UNDECIDED_STEP_STATUSES:
        raise _blocked(
            "ApprovalStep",
            target.id,
            "DELETE",
            "Decided approval steps cannot be deleted",
        )


# -------------------------------------------------------------------------
# ChangeRequest
# -------------------------------------------------------------------------


def _check_change_request_update(mapper, connection, target):
    for field in WRITE_ONCE_FIELDS:
        history = get_history(target, field)
        if history.deleted and history.deleted[0] is not None:
            raise _blocked(
                "ChangeRequest",
                target.id,
                "UPDATE",
                f"'{field}' is write-once and already set",
                field=field,
            )
    for field in NEVER_NULLED_FIELDS:
        history = get_history(target, field)
        if history.deleted and history.deleted[0] is not None and getattr(target, field) is None:
            raise _blocked(
                "ChangeRequest",
                target.id,
                "UPDATE",
                f"'{field}' was computed and cannot be cleared",
                field=field,
            )


def _check_change_request_delete(mapper, connection, target):
    raise _blocked(
        "ChangeRequest",
        target.id,
        "DELETE",
        "Change requests are never deleted; cancel them instead",
    )


_LISTENERS = (
    ("AuditEntryModel", "before_update", _check_audit_entry_update),
    ("AuditEntryModel", "before_delete", _check_audit_entry_delete),
    ("ApprovalStepModel", "before_update", _check_approval_step_update),
    ("ApprovalStepModel", "before_delete", _check_approval_step_delete),
    ("ChangeRequestModel", "before_update", _check_change_request_update),
    ("ChangeRequestModel", "before_delete", _check_change_request_delete),
)


def _models() -> dict:
    from change_kernel.models.audit_entry import AuditEntryModel
    from change_kernel.models.change_request import ApprovalStepModel, ChangeRequestModel

    return {
        "AuditEntryModel": AuditEntryModel,
        "ApprovalStepModel": ApprovalStepModel,
        "ChangeRequestModel": ChangeRequestModel,
    }


def register_immutability_listeners() -> None:
    """Register all immutability listeners. Safe to call repeatedly."""
    models = _models()
    for model_name, event_name, listener in _LISTENERS:
        target = models[model_name]
        if not event.contains(target, event_name, listener):
            event.listen(target, event_name, listener)


def unregister_immutability_listeners() -> None:
    """
    Remove immutability listeners.

    WARNING: Only use this in tests where you need to intentionally
    violate immutability rules to verify detection.
    """
    models = _models()
    for model_name, event_name, listener in _LISTENERS:
        target = models[model_name]
        if event.contains(target, event_name, listener):
            event.remove(target, event_name, listener)
