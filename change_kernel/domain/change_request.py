"""
Change request domain types (``change_kernel.domain.change_request``).

Responsibility
--------------
Pure value objects for the change request workflow.  Defines the closed
sets of statuses, categories and priorities, the status state machine, the
approval step lifecycle, and the frozen DTOs returned by the services.

Architecture position
---------------------
**Kernel domain layer** -- pure value objects.  ZERO I/O.  No imports
from ``db/``, ``services/``, ``selectors/``, or outer layers.

Invariants enforced
-------------------
* ``STATUS_TRANSITIONS`` defines the only valid forward status changes.
  Terminal statuses have no outgoing edges; rejected -> draft exists only
  as the explicit reopen action (``REOPEN_TRANSITIONS``).
* Every status maps to exactly one lifecycle timestamp field or to none
  (``LIFECYCLE_TIMESTAMP_FIELDS``), checked exhaustively at import time.
* Exactly one approval step per round is ``pending``; later steps are
  ``queued`` until the chain reaches them.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID


# =========================================================================
# Closed value sets
# =========================================================================


class ChangeRequestStatus(str, Enum):
    """Change request lifecycle states."""

    DRAFT = "draft"
    PENDING_REVIEW = "pending_review"
    UNDER_REVIEW = "under_review"
    PENDING_APPROVAL = "pending_approval"
    APPROVED = "approved"
    REJECTED = "rejected"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class ChangeCategory(str, Enum):
    """Kind of change to the contract scope."""

    ADDITION = "addition"
    DELETION = "deletion"
    MODIFICATION = "modification"
    TIME_EXTENSION = "time_extension"
    ACCELERATION = "acceleration"
    SUBSTITUTION = "substitution"


class ChangePriority(str, Enum):
    """Urgency of the change."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class StepStatus(str, Enum):
    """Approval step lifecycle states."""

    QUEUED = "queued"
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


class ApprovalDecision(str, Enum):
    """
    Decision types that an approver can make.

    Values match the step status a decision produces.  The imperative
    spellings ``approve`` and ``reject`` are accepted as aliases.
    """

    APPROVE = "approved"
    REJECT = "rejected"

    @classmethod
    def _missing_(cls, value):
        if isinstance(value, str):
            return _DECISION_ALIASES.get(value.strip().lower())
        return None


_DECISION_ALIASES: dict[str, ApprovalDecision] = {
    "approve": ApprovalDecision.APPROVE,
    "reject": ApprovalDecision.REJECT,
    "approved": ApprovalDecision.APPROVE,
    "rejected": ApprovalDecision.REJECT,
}


# =========================================================================
# Status state machine
# =========================================================================


STATUS_TRANSITIONS: dict[ChangeRequestStatus, frozenset[ChangeRequestStatus]] = {
    ChangeRequestStatus.DRAFT: frozenset({
        ChangeRequestStatus.PENDING_REVIEW,
        ChangeRequestStatus.CANCELLED,
    }),
    ChangeRequestStatus.PENDING_REVIEW: frozenset({
        ChangeRequestStatus.UNDER_REVIEW,
        ChangeRequestStatus.PENDING_APPROVAL,
        ChangeRequestStatus.APPROVED,
        ChangeRequestStatus.REJECTED,
        ChangeRequestStatus.CANCELLED,
    }),
    ChangeRequestStatus.UNDER_REVIEW: frozenset({
        ChangeRequestStatus.PENDING_APPROVAL,
        ChangeRequestStatus.APPROVED,
        ChangeRequestStatus.REJECTED,
        ChangeRequestStatus.CANCELLED,
    }),
    ChangeRequestStatus.PENDING_APPROVAL: frozenset({
        ChangeRequestStatus.APPROVED,
        ChangeRequestStatus.REJECTED,
        ChangeRequestStatus.CANCELLED,
    }),
    ChangeRequestStatus.APPROVED: frozenset({
        ChangeRequestStatus.IN_PROGRESS,
        ChangeRequestStatus.COMPLETED,
    }),
    ChangeRequestStatus.IN_PROGRESS: frozenset({
        ChangeRequestStatus.COMPLETED,
    }),
    ChangeRequestStatus.REJECTED: frozenset(),
    ChangeRequestStatus.COMPLETED: frozenset(),
    ChangeRequestStatus.CANCELLED: frozenset(),
}

# The explicit reopen action is the only backward edge.
REOPEN_TRANSITIONS: dict[ChangeRequestStatus, ChangeRequestStatus] = {
    ChangeRequestStatus.REJECTED: ChangeRequestStatus.DRAFT,
}

TERMINAL_STATUSES: frozenset[ChangeRequestStatus] = frozenset({
    ChangeRequestStatus.APPROVED,
    ChangeRequestStatus.REJECTED,
    ChangeRequestStatus.COMPLETED,
    ChangeRequestStatus.CANCELLED,
})

# Statuses in which descriptive and financial fields may still change.
EDITABLE_STATUSES: frozenset[ChangeRequestStatus] = frozenset({
    ChangeRequestStatus.DRAFT,
    ChangeRequestStatus.PENDING_REVIEW,
    ChangeRequestStatus.UNDER_REVIEW,
    ChangeRequestStatus.PENDING_APPROVAL,
})

# Statuses in which approvers may record decisions.
AWAITING_DECISION_STATUSES: frozenset[ChangeRequestStatus] = frozenset({
    ChangeRequestStatus.PENDING_REVIEW,
    ChangeRequestStatus.UNDER_REVIEW,
    ChangeRequestStatus.PENDING_APPROVAL,
})

LIFECYCLE_TIMESTAMP_FIELDS: dict[ChangeRequestStatus, str | None] = {
    ChangeRequestStatus.DRAFT: None,
    ChangeRequestStatus.PENDING_REVIEW: "submitted_at",
    ChangeRequestStatus.UNDER_REVIEW: None,
    ChangeRequestStatus.PENDING_APPROVAL: None,
    ChangeRequestStatus.APPROVED: "approved_at",
    ChangeRequestStatus.REJECTED: "rejected_at",
    ChangeRequestStatus.IN_PROGRESS: None,
    ChangeRequestStatus.COMPLETED: "completed_at",
    ChangeRequestStatus.CANCELLED: "cancelled_at",
}


UNDECIDED_STEP_STATUSES: frozenset[StepStatus] = frozenset({
    StepStatus.QUEUED,
    StepStatus.PENDING,
})


def can_transition(
    current: ChangeRequestStatus,
    target: ChangeRequestStatus,
) -> bool:
    """Whether ``current -> target`` is a permitted forward transition."""
    return target in STATUS_TRANSITIONS[current]


def decision_outcome(decision: ApprovalDecision) -> StepStatus:
    """Map a decision to the resulting step status."""
    if decision is ApprovalDecision.APPROVE:
        return StepStatus.APPROVED
    if decision is ApprovalDecision.REJECT:
        return StepStatus.REJECTED
    raise ValueError(f"Unhandled decision: {decision!r}")


# =========================================================================
# Records
# =========================================================================


@dataclass(frozen=True)
class ApprovalStep:
    """One approver's slot in the ordered decision chain. Immutable snapshot."""

    step_id: UUID
    request_id: UUID
    round: int
    level: int
    approver_id: UUID
    status: StepStatus
    decided_at: datetime | None = None
    comment: str | None = None

    @property
    def is_decided(self) -> bool:
        return self.status not in UNDECIDED_STEP_STATUSES


@dataclass(frozen=True)
class CostLineItem:
    """A priced line justifying the requested delta. Immutable snapshot."""

    item_id: UUID
    request_id: UUID
    description: str
    quantity: Decimal
    unit: str | None
    unit_rate: Decimal
    amount: Decimal
    category: str | None = None
    notes: str | None = None


@dataclass(frozen=True)
class ChangeRequest:
    """Immutable snapshot of a change request and its current approval round."""

    request_id: UUID
    number: str
    scope_id: UUID
    title: str
    description: str
    category: ChangeCategory
    priority: ChangePriority
    status: ChangeRequestStatus
    initiated_by: UUID
    requested_by: str | None = None
    reason: str | None = None
    scope_of_work: str | None = None
    baseline_value: Decimal | None = None
    delta_value: Decimal | None = None
    revised_value: Decimal | None = None
    delta_from_line_items: bool = False
    baseline_date: date | None = None
    day_impact: int | None = None
    revised_date: date | None = None
    required_approvers: tuple[UUID, ...] = ()
    current_approver_id: UUID | None = None
    current_level: int | None = None
    approval_round: int = 1
    submitted_at: datetime | None = None
    approved_at: datetime | None = None
    rejected_at: datetime | None = None
    completed_at: datetime | None = None
    cancelled_at: datetime | None = None
    rejection_reason: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    version: int = 1
    approval_steps: tuple[ApprovalStep, ...] = ()

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def pending_step(self) -> ApprovalStep | None:
        """The step currently awaiting a decision, if any."""
        for step in self.approval_steps:
            if step.status == StepStatus.PENDING:
                return step
        return None
