"""
Module: change_kernel.selectors.change_request_selector
Responsibility: Read-only query access to change requests, their approval
    chains and per-scope statistics.  Converts ORM models to frozen DTOs.
Architecture position: Kernel > Selectors.  May import from models/,
    domain/ value types and selectors/base.py.  MUST NOT import from
    services/ or outer layers.

Invariants enforced:
    - Read-only: no mutations performed on any queried data.
    - DTO convention: public methods return ChangeRequest / ApprovalStep /
      ChangeRequestStatistics, never raw ORM models.
    - Listings are newest first (created_at DESC, number DESC as the
      tie-break for requests created in the same instant).

Failure modes:
    - Returns None or an empty list when nothing matches (never raises on
      absence of data).
"""

from dataclasses import dataclass, field
from decimal import Decimal
from uuid import UUID

from sqlalchemy import func, select

from change_kernel.db.types import round_money
from change_kernel.domain.change_request import (
    AWAITING_DECISION_STATUSES,
    ApprovalStep,
    ChangeCategory,
    ChangePriority,
    ChangeRequest,
    ChangeRequestStatus,
)
from change_kernel.models.change_request import ApprovalStepModel, ChangeRequestModel
from change_kernel.selectors.base import BaseSelector

# Statuses whose delta counts as granted.
APPROVED_STATUSES = frozenset({
    ChangeRequestStatus.APPROVED,
    ChangeRequestStatus.IN_PROGRESS,
    ChangeRequestStatus.COMPLETED,
})


@dataclass(frozen=True)
class ChangeRequestStatistics:
    """Aggregate figures for the change requests of one scope."""

    scope_id: UUID
    total_count: int = 0
    counts_by_status: dict[ChangeRequestStatus, int] = field(default_factory=dict)
    total_approved_value: Decimal = Decimal("0")
    pending_value: Decimal = Decimal("0")
    total_approved_days: int = 0
    average_approval_days: Decimal | None = None

    def count(self, status: ChangeRequestStatus) -> int:
        return self.counts_by_status.get(status, 0)


class ChangeRequestSelector(BaseSelector[ChangeRequestModel]):
    """Read side of the change request workflow."""

    def get(self, request_id: UUID) -> ChangeRequest | None:
        request = self.session.get(ChangeRequestModel, request_id)
        return request.to_dto() if request is not None else None

    def list_by_scope(
        self,
        scope_id: UUID,
        status: ChangeRequestStatus | None = None,
        category: ChangeCategory | None = None,
        priority: ChangePriority | None = None,
    ) -> list[ChangeRequest]:
        """
        Change requests of ``scope_id``, newest first.

        Each filter narrows the result only when supplied.
        """
        stmt = select(ChangeRequestModel).where(ChangeRequestModel.scope_id == scope_id)
        if status is not None:
            stmt = stmt.where(ChangeRequestModel.status == ChangeRequestStatus(status))
        if category is not None:
            stmt = stmt.where(ChangeRequestModel.category == ChangeCategory(category))
        if priority is not None:
            stmt = stmt.where(ChangeRequestModel.priority == ChangePriority(priority))
        stmt = stmt.order_by(
            ChangeRequestModel.created_at.desc(),
            ChangeRequestModel.number.desc(),
        )
        return [r.to_dto() for r in self.session.execute(stmt).scalars().all()]

    def approval_chain(self, request_id: UUID, round_no: int | None = None) -> list[ApprovalStep]:
        """Steps of one approval round (default: the current one) in level order."""
        if round_no is None:
            round_no = self.session.execute(
                select(ChangeRequestModel.approval_round)
                .where(ChangeRequestModel.id == request_id)
            ).scalar_one_or_none()
            if round_no is None:
                return []
        steps = self.session.execute(
            select(ApprovalStepModel)
            .where(ApprovalStepModel.request_id == request_id)
            .where(ApprovalStepModel.round == round_no)
            .order_by(ApprovalStepModel.level)
        ).scalars().all()
        return [s.to_dto() for s in steps]

    def awaiting_approver(self, approver_id: UUID) -> list[ChangeRequest]:
        """Requests whose pending step belongs to ``approver_id``, oldest first."""
        stmt = (
            select(ChangeRequestModel)
            .where(ChangeRequestModel.current_approver_id == approver_id)
            .where(ChangeRequestModel.status.in_(list(AWAITING_DECISION_STATUSES)))
            .order_by(ChangeRequestModel.submitted_at, ChangeRequestModel.number)
        )
        return [r.to_dto() for r in self.session.execute(stmt).scalars().all()]

    def statistics(self, scope_id: UUID, money_places: int = 2) -> ChangeRequestStatistics:
        """
        Counts per status and value totals for ``scope_id``.

        approved value and days cover approved, in-progress and completed
        requests; pending value covers requests awaiting a decision.
        """
        rows = self.session.execute(
            select(
                ChangeRequestModel.status,
                func.count(ChangeRequestModel.id),
                func.sum(ChangeRequestModel.delta_value),
                func.sum(ChangeRequestModel.day_impact),
            )
            .where(ChangeRequestModel.scope_id == scope_id)
            .group_by(ChangeRequestModel.status)
        ).all()

        counts: dict[ChangeRequestStatus, int] = {}
        approved_value = Decimal("0")
        pending_value = Decimal("0")
        approved_days = 0
        for status, count, delta_sum, days_sum in rows:
            status = ChangeRequestStatus(status)
            counts[status] = count
            if status in APPROVED_STATUSES:
                approved_value += Decimal(str(delta_sum or 0))
                approved_days += int(days_sum or 0)
            elif status in AWAITING_DECISION_STATUSES:
                pending_value += Decimal(str(delta_sum or 0))

        durations = self.session.execute(
            select(ChangeRequestModel.submitted_at, ChangeRequestModel.approved_at)
            .where(ChangeRequestModel.scope_id == scope_id)
            .where(ChangeRequestModel.submitted_at.is_not(None))
            .where(ChangeRequestModel.approved_at.is_not(None))
        ).all()
        average_days = None
        if durations:
            seconds = sum((a - s).total_seconds() for s, a in durations)
            average_days = round_money(
                Decimal(str(seconds)) / Decimal(86400) / len(durations),
                money_places,
            )

        return ChangeRequestStatistics(
            scope_id=scope_id,
            total_count=sum(counts.values()),
            counts_by_status=counts,
            total_approved_value=round_money(approved_value, money_places),
            pending_value=round_money(pending_value, money_places),
            total_approved_days=approved_days,
            average_approval_days=average_days,
        )
