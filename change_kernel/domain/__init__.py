"""
Pure domain layer.

This module contains pure data transfer objects and domain logic
with NO dependencies on:
- ORM (SQLAlchemy)
- Database
- I/O

All domain objects are immutable and deterministic.
"""

from change_kernel.domain.change_request import (
    AWAITING_DECISION_STATUSES,
    EDITABLE_STATUSES,
    LIFECYCLE_TIMESTAMP_FIELDS,
    REOPEN_TRANSITIONS,
    STATUS_TRANSITIONS,
    TERMINAL_STATUSES,
    ApprovalDecision,
    ApprovalStep,
    ChangeCategory,
    ChangePriority,
    ChangeRequest,
    ChangeRequestStatus,
    CostLineItem,
    StepStatus,
    can_transition,
)
from change_kernel.domain.clock import Clock, DeterministicClock, SystemClock
from change_kernel.domain.patch import UNSET, ChangeRequestPatch
from change_kernel.domain.recalculation import (
    DerivedFields,
    RecalculationInputs,
    derive,
    line_amount,
    recompute_date,
    recompute_value,
    sum_line_amounts,
)

__all__ = [
    "AWAITING_DECISION_STATUSES",
    "EDITABLE_STATUSES",
    "LIFECYCLE_TIMESTAMP_FIELDS",
    "REOPEN_TRANSITIONS",
    "STATUS_TRANSITIONS",
    "TERMINAL_STATUSES",
    "UNSET",
    "ApprovalDecision",
    "ApprovalStep",
    "ChangeCategory",
    "ChangePriority",
    "ChangeRequest",
    "ChangeRequestPatch",
    "ChangeRequestStatus",
    "Clock",
    "CostLineItem",
    "DerivedFields",
    "DeterministicClock",
    "RecalculationInputs",
    "StepStatus",
    "SystemClock",
    "can_transition",
    "derive",
    "line_amount",
    "recompute_date",
    "recompute_value",
    "sum_line_amounts",
]
