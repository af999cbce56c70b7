"""
Module: change_kernel.models.change_request
Responsibility: ORM persistence for change requests, their approval steps
    and their cost line items.
Architecture position: Kernel > Models.  May import from db/ and domain/
    value types only.

Invariants enforced:
    - UNIQUE(scope_id, number): a number is never issued twice in a scope.
    - UNIQUE(request_id, round, level): one step per level per round.
    - UNIQUE(request_id, round, approver_id): an approver appears once per
      round.
    - Partial UNIQUE(request_id, round) WHERE status = 'pending': at most
      one step awaits a decision at any instant.
    - ``version`` is the optimistic version counter; a flush against a row
      that changed underneath raises StaleDataError.
    - ``number``, lifecycle timestamps and decided steps are protected by
      the listeners in db/immutability.py.

Failure modes:
    - IntegrityError on any of the uniqueness constraints above.
    - StaleDataError on a lost optimistic version race.
    - ImmutabilityViolationError on write-once / decided-step violations.
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Date,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from change_kernel.db.base import Base, EnumValue, UUIDString
from change_kernel.domain.change_request import (
    ApprovalStep,
    ChangeCategory,
    ChangePriority,
    ChangeRequest,
    ChangeRequestStatus,
    CostLineItem,
    StepStatus,
)


def _values(enum_type) -> str:
    return ", ".join(f"'{m.value}'" for m in enum_type)


class ChangeRequestModel(Base):
    """Persistent change request.

    Contract:
        Status transitions are governed by the state machine in
        ``domain.change_request``; the model only stores the result.

    Guarantees:
        - number is unique within scope_id and write-once.
        - revised_value / revised_date are written only by the recalculation
          engine through the workflow.
    """

    __tablename__ = "change_requests"

    __table_args__ = (
        UniqueConstraint("scope_id", "number", name="uq_change_requests_scope_number"),
        CheckConstraint(
            f"status IN ({_values(ChangeRequestStatus)})",
            name="ck_change_requests_valid_status",
        ),
        CheckConstraint(
            f"category IN ({_values(ChangeCategory)})",
            name="ck_change_requests_valid_category",
        ),
        CheckConstraint(
            f"priority IN ({_values(ChangePriority)})",
            name="ck_change_requests_valid_priority",
        ),
        CheckConstraint("approval_round >= 1", name="ck_change_requests_round_positive"),
        Index("ix_change_requests_scope_status", "scope_id", "status"),
        Index("ix_change_requests_current_approver", "current_approver_id"),
    )

    number: Mapped[str] = mapped_column(String(50), nullable=False)
    scope_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    scope_of_work: Mapped[str | None] = mapped_column(Text, nullable=True)
    requested_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    initiated_by: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    category: Mapped[ChangeCategory] = mapped_column(
        EnumValue(ChangeCategory), nullable=False,
    )
    priority: Mapped[ChangePriority] = mapped_column(
        EnumValue(ChangePriority), nullable=False, default=ChangePriority.MEDIUM,
    )
    status: Mapped[ChangeRequestStatus] = mapped_column(
        EnumValue(ChangeRequestStatus), nullable=False, default=ChangeRequestStatus.DRAFT,
    )

    # Financial inputs and derived values
    baseline_value: Mapped[Decimal | None] = mapped_column(Numeric(18, 2), nullable=True)
    delta_value: Mapped[Decimal | None] = mapped_column(Numeric(18, 2), nullable=True)
    revised_value: Mapped[Decimal | None] = mapped_column(Numeric(18, 2), nullable=True)
    delta_from_line_items: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False,
    )

    # Schedule inputs and derived value
    baseline_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    day_impact: Mapped[int | None] = mapped_column(Integer, nullable=True)
    revised_date: Mapped[date | None] = mapped_column(Date, nullable=True)

    # Ordered approver ids as strings
    required_approvers: Mapped[list] = mapped_column(JSON, nullable=False, default=list)

    # Materialized pointer into the current round's steps
    current_approver_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    current_level: Mapped[int | None] = mapped_column(Integer, nullable=True)
    approval_round: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    # Lifecycle timestamps (write-once)
    submitted_at: Mapped[datetime | None] = mapped_column(nullable=True)
    approved_at: Mapped[datetime | None] = mapped_column(nullable=True)
    rejected_at: Mapped[datetime | None] = mapped_column(nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(nullable=True)
    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(nullable=False)
    updated_at: Mapped[datetime] = mapped_column(nullable=False)

    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    approval_steps: Mapped[list[ApprovalStepModel]] = relationship(
        "ApprovalStepModel",
        back_populates="request",
        order_by="[ApprovalStepModel.round, ApprovalStepModel.level]",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    cost_items: Mapped[list[CostLineItemModel]] = relationship(
        "CostLineItemModel",
        back_populates="request",
        order_by="CostLineItemModel.position",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    def __repr__(self) -> str:
        return f"<ChangeRequest {self.number} status={self.status.value}>"

    @property
    def approver_ids(self) -> tuple[UUID, ...]:
        return tuple(UUID(str(a)) for a in (self.required_approvers or []))

    def current_round_steps(self) -> list[ApprovalStepModel]:
        """Steps of the active approval round, in level order."""
        return [s for s in self.approval_steps if s.round == self.approval_round]

    def to_dto(self) -> ChangeRequest:
        """Convert ORM model to frozen domain DTO."""
        return ChangeRequest(
            request_id=self.id,
            number=self.number,
            scope_id=self.scope_id,
            title=self.title,
            description=self.description,
            category=self.category,
            priority=self.priority,
            status=self.status,
            initiated_by=self.initiated_by,
            requested_by=self.requested_by,
            reason=self.reason,
            scope_of_work=self.scope_of_work,
            baseline_value=self.baseline_value,
            delta_value=self.delta_value,
            revised_value=self.revised_value,
            delta_from_line_items=self.delta_from_line_items,
            baseline_date=self.baseline_date,
            day_impact=self.day_impact,
            revised_date=self.revised_date,
            required_approvers=self.approver_ids,
            current_approver_id=self.current_approver_id,
            current_level=self.current_level,
            approval_round=self.approval_round,
            submitted_at=self.submitted_at,
            approved_at=self.approved_at,
            rejected_at=self.rejected_at,
            completed_at=self.completed_at,
            cancelled_at=self.cancelled_at,
            rejection_reason=self.rejection_reason,
            created_at=self.created_at,
            updated_at=self.updated_at,
            version=self.version,
            approval_steps=tuple(s.to_dto() for s in self.current_round_steps()),
        )


class ApprovalStepModel(Base):
    """One approver's slot in the chain.

    Contract:
        queued -> pending -> approved | rejected, or queued/pending ->
        cancelled.  Decided steps never change again.
    """

    __tablename__ = "approval_steps"

    __table_args__ = (
        UniqueConstraint(
            "request_id", "round", "level",
            name="uq_approval_steps_level",
        ),
        UniqueConstraint(
            "request_id", "round", "approver_id",
            name="uq_approval_steps_approver",
        ),
        Index(
            "ix_approval_steps_one_pending",
            "request_id", "round",
            unique=True,
            postgresql_where=text("status = 'pending'"),
            sqlite_where=text("status = 'pending'"),
        ),
        CheckConstraint(
            f"status IN ({_values(StepStatus)})",
            name="ck_approval_steps_valid_status",
        ),
        CheckConstraint("level >= 1", name="ck_approval_steps_level_positive"),
        Index("ix_approval_steps_approver", "approver_id", "status"),
    )

    request_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("change_requests.id"),
        nullable=False,
    )
    round: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    level: Mapped[int] = mapped_column(Integer, nullable=False)
    approver_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    status: Mapped[StepStatus] = mapped_column(
        EnumValue(StepStatus), nullable=False, default=StepStatus.QUEUED,
    )
    decided_at: Mapped[datetime | None] = mapped_column(nullable=True)
    comment: Mapped[str | None] = mapped_column(Text, nullable=True)

    request: Mapped[ChangeRequestModel] = relationship(
        "ChangeRequestModel",
        back_populates="approval_steps",
    )

    def __repr__(self) -> str:
        return (
            f"<ApprovalStep request={self.request_id} round={self.round} "
            f"level={self.level} status={self.status.value}>"
        )

    def to_dto(self) -> ApprovalStep:
        """Convert ORM model to frozen domain DTO."""
        return ApprovalStep(
            step_id=self.id,
            request_id=self.request_id,
            round=self.round,
            level=self.level,
            approver_id=self.approver_id,
            status=self.status,
            decided_at=self.decided_at,
            comment=self.comment,
        )


class CostLineItemModel(Base):
    """Priced line justifying a change request's delta."""

    __tablename__ = "cost_line_items"

    __table_args__ = (
        Index("ix_cost_line_items_request", "request_id"),
    )

    request_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("change_requests.id"),
        nullable=False,
    )
    description: Mapped[str] = mapped_column(String(500), nullable=False)
    quantity: Mapped[Decimal] = mapped_column(Numeric(18, 3), nullable=False)
    unit: Mapped[str | None] = mapped_column(String(20), nullable=True)
    unit_rate: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    category: Mapped[str | None] = mapped_column(String(50), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_at: Mapped[datetime] = mapped_column(nullable=False)

    request: Mapped[ChangeRequestModel] = relationship(
        "ChangeRequestModel",
        back_populates="cost_items",
    )

    def __repr__(self) -> str:
        return f"<CostLineItem {self.description!r} amount={self.amount}>"

    def to_dto(self) -> CostLineItem:
        return CostLineItem(
            item_id=self.id,
            request_id=self.request_id,
            description=self.description,
            quantity=self.quantity,
            unit=self.unit,
            unit_rate=self.unit_rate,
            amount=self.amount,
            category=self.category,
            notes=self.notes,
        )
