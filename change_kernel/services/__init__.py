"""Services for the change kernel (write side)."""

from change_kernel.services.approval_chain import ApprovalChain
from change_kernel.services.audit_trail import AuditRecord, AuditTrail
from change_kernel.services.change_request_workflow import ChangeRequestWorkflow
from change_kernel.services.cost_item_service import CostItemService
from change_kernel.services.notification_outbox import (
    DispatchResult,
    LoggingNotificationSink,
    NotificationOutbox,
    NotificationSink,
)
from change_kernel.services.numbering_service import NumberingService
from change_kernel.services.recalculation_service import RecalculationService
from change_kernel.services.sequence_service import SequenceService

__all__ = [
    "ApprovalChain",
    "AuditRecord",
    "AuditTrail",
    "ChangeRequestWorkflow",
    "CostItemService",
    "DispatchResult",
    "LoggingNotificationSink",
    "NotificationOutbox",
    "NotificationSink",
    "NumberingService",
    "RecalculationService",
    "SequenceService",
]
