"""Domain models for the change kernel."""

from change_kernel.models.audit_entry import AuditAction, AuditEntryModel
from change_kernel.models.change_request import (
    ApprovalStepModel,
    ChangeRequestModel,
    CostLineItemModel,
)
from change_kernel.models.notification import (
    NotificationOutboxModel,
    NotificationStatus,
)
from change_kernel.models.sequence import SequenceCounter

__all__ = [
    "ApprovalStepModel",
    "AuditAction",
    "AuditEntryModel",
    "ChangeRequestModel",
    "CostLineItemModel",
    "NotificationOutboxModel",
    "NotificationStatus",
    "SequenceCounter",
]

# Immutability rules apply as soon as the models are mapped.
from change_kernel.db.immutability import register_immutability_listeners  # noqa: E402

register_immutability_listeners()
