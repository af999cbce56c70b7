"""
ApprovalChain -- sequential multi-party approval of change requests.

Responsibility:
    Materializes the ordered approval steps of a change request and records
    approver decisions against them, advancing the current-approver pointer
    or short-circuiting the request to rejected.

Architecture position:
    Kernel > Services -- imperative shell.  Called by ChangeRequestWorkflow;
    writes through AuditTrail and NotificationOutbox in the caller's
    transaction.

Invariants enforced:
    - Steps of one round are numbered 1..N with no gaps; exactly the step at
      the lowest undecided level is pending, the rest are queued.
    - ``current_level`` / ``current_approver_id`` on the request always name
      that pending step (or are None when nothing awaits a decision).
    - Decisions re-read the request under ``FOR UPDATE`` and the step with
      ``populate_existing`` inside the deciding transaction; nothing read
      earlier in the call is trusted.
    - Approval happens in strictly ascending level order.  Rejection at any
      level rejects the request at once and cancels every queued step.
    - approved_at / rejected_at are stamped only if unset.

Failure modes:
    - ChangeRequestNotFoundError: unknown request.
    - TerminalStateError / NotSubmittedError / RecordLockedError: the
      request is not awaiting decisions.
    - ApproverNotFoundError: the approver has no step in the current round.
    - AlreadyDecidedError: the approver's step is already decided.
    - OutOfTurnDecisionError: an earlier level is still undecided.
    - MissingFieldError: a rejection without reason or comment.
    - DuplicateApproverError / ApproverListLockedError on materialization.
"""

from collections.abc import Sequence
from uuid import UUID, uuid4

from sqlalchemy import select
from sqlalchemy.orm import Session

from change_kernel.domain.change_request import (
    AWAITING_DECISION_STATUSES,
    TERMINAL_STATUSES,
    UNDECIDED_STEP_STATUSES,
    ApprovalDecision,
    ChangeRequestStatus,
    StepStatus,
    decision_outcome,
)
from change_kernel.domain.clock import Clock, SystemClock
from change_kernel.exceptions import (
    AlreadyDecidedError,
    ApproverListLockedError,
    ApproverNotFoundError,
    ChangeRequestNotFoundError,
    DuplicateApproverError,
    MissingFieldError,
    NotSubmittedError,
    OutOfTurnDecisionError,
    RecordLockedError,
    TerminalStateError,
)
from change_kernel.logging_config import LogContext, get_logger
from change_kernel.models.audit_entry import AuditAction
from change_kernel.models.change_request import ApprovalStepModel, ChangeRequestModel
from change_kernel.services.audit_trail import AuditTrail
from change_kernel.services.notification_outbox import NotificationOutbox

logger = get_logger("services.approval_chain")


class ApprovalChain:
    """
    Service for the ordered approval steps of change requests.

    Contract:
        Operates on ChangeRequestModel instances attached to ``session``.
        All writes are flushed, never committed.

    Non-goals:
        - Does NOT call ``session.commit()`` -- caller controls boundaries.
        - Does NOT check who the acting user is; identity is supplied.
    """

    def __init__(
        self,
        session: Session,
        audit: AuditTrail,
        outbox: NotificationOutbox,
        clock: Clock | None = None,
    ):
        self._session = session
        self._audit = audit
        self._outbox = outbox
        self._clock = clock or SystemClock()

    # =========================================================================
    # Materialization
    # =========================================================================

    def materialize(
        self,
        request: ChangeRequestModel,
        approver_ids: Sequence[UUID],
        actor_id: UUID,
    ) -> list[ApprovalStepModel]:
        """
        Create one step per approver for the request's current round.

        Level 1 starts pending, later levels queued.  The pointer is set to
        level 1, or cleared when the list is empty.

        Raises:
            DuplicateApproverError: An approver appears twice.
        """
        seen: set[UUID] = set()
        for approver_id in approver_ids:
            if approver_id in seen:
                raise DuplicateApproverError(str(approver_id))
            seen.add(approver_id)

        steps = []
        for level, approver_id in enumerate(approver_ids, start=1):
            step = ApprovalStepModel(
                id=uuid4(),
                request_id=request.id,
                round=request.approval_round,
                level=level,
                approver_id=approver_id,
                status=StepStatus.PENDING if level == 1 else StepStatus.QUEUED,
            )
            request.approval_steps.append(step)
            steps.append(step)

        request.required_approvers = [str(a) for a in approver_ids]
        self._point_at(request, steps[0] if steps else None)
        self._session.flush()

        self._audit.append(
            request.id,
            actor_id,
            AuditAction.APPROVERS_ASSIGNED,
            field_name="required_approvers",
            new=list(approver_ids),
            comment=f"Approval round {request.approval_round}: {len(steps)} step(s)",
        )
        logger.info(
            "approval_steps_materialized",
            extra={
                "request_id": str(request.id),
                "round": request.approval_round,
                "step_count": len(steps),
            },
        )
        return steps

    def replace_approvers(
        self,
        request: ChangeRequestModel,
        approver_ids: Sequence[UUID],
        actor_id: UUID,
    ) -> list[ApprovalStepModel]:
        """
        Replace the approver list of a draft request.

        Raises:
            ApproverListLockedError: The request is no longer a draft.
        """
        if request.status != ChangeRequestStatus.DRAFT:
            raise ApproverListLockedError(str(request.id), request.status.value)

        stale = [s for s in request.current_round_steps() if s.status in UNDECIDED_STEP_STATUSES]
        for step in stale:
            request.approval_steps.remove(step)
        # Old rows must be gone before the new level 1 is inserted.
        self._session.flush()
        return self.materialize(request, approver_ids, actor_id)

    def start_new_round(
        self,
        request: ChangeRequestModel,
        actor_id: UUID,
    ) -> list[ApprovalStepModel]:
        """Open the next approval round with fresh steps from the approver list."""
        request.approval_round += 1
        return self.materialize(request, request.approver_ids, actor_id)

    # =========================================================================
    # Queries
    # =========================================================================

    def undecided_steps(self, request: ChangeRequestModel) -> list[ApprovalStepModel]:
        return [s for s in request.current_round_steps() if s.status in UNDECIDED_STEP_STATUSES]

    def _find_step(self, request: ChangeRequestModel, approver_id: UUID) -> ApprovalStepModel | None:
        return self._session.execute(
            select(ApprovalStepModel)
            .where(ApprovalStepModel.request_id == request.id)
            .where(ApprovalStepModel.round == request.approval_round)
            .where(ApprovalStepModel.approver_id == approver_id)
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def _next_queued(self, request: ChangeRequestModel, after_level: int) -> ApprovalStepModel | None:
        return self._session.execute(
            select(ApprovalStepModel)
            .where(ApprovalStepModel.request_id == request.id)
            .where(ApprovalStepModel.round == request.approval_round)
            .where(ApprovalStepModel.level > after_level)
            .where(ApprovalStepModel.status == StepStatus.QUEUED)
            .order_by(ApprovalStepModel.level)
            .limit(1)
        ).scalar_one_or_none()

    def _lock_request(self, request_id: UUID) -> ChangeRequestModel:
        request = self._session.execute(
            select(ChangeRequestModel)
            .where(ChangeRequestModel.id == request_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if request is None:
            raise ChangeRequestNotFoundError(str(request_id))
        return request

    @staticmethod
    def _point_at(request: ChangeRequestModel, step: ApprovalStepModel | None) -> None:
        request.current_level = step.level if step is not None else None
        request.current_approver_id = step.approver_id if step is not None else None

    @staticmethod
    def ensure_awaiting_decision(request: ChangeRequestModel) -> None:
        """Raise unless the request can take approval decisions."""
        status = request.status
        if status in TERMINAL_STATUSES:
            raise TerminalStateError(str(request.id), status.value)
        if status == ChangeRequestStatus.DRAFT:
            raise NotSubmittedError(str(request.id))
        if status not in AWAITING_DECISION_STATUSES:
            raise RecordLockedError(str(request.id), status.value)

    # =========================================================================
    # Decisions
    # =========================================================================

    def record_decision(
        self,
        request_id: UUID,
        approver_id: UUID,
        decision: ApprovalDecision,
        comment: str | None,
        actor_id: UUID,
        reason: str | None = None,
    ) -> ChangeRequestModel:
        """
        Record ``approver_id``'s decision on ``request_id``.

        Preconditions:
            - The request has been submitted and is not terminal.
            - ``approver_id`` owns the pending step at the current level.

        Postconditions (approve):
            - The step is approved with a decision timestamp.
            - Either the next queued step becomes pending and the pointer
              moves to it, or (last step) the request becomes approved and
              approved_at is set if unset.

        Postconditions (reject):
            - The step is rejected; every queued step is cancelled.
            - The request becomes rejected with rejected_at (if unset) and
              rejection_reason (if unset).
        """
        decision = ApprovalDecision(decision)

        request = self._session.get(ChangeRequestModel, request_id)
        if request is None:
            raise ChangeRequestNotFoundError(str(request_id))
        if decision is ApprovalDecision.REJECT and not (reason or comment):
            raise MissingFieldError("reason")
        self.ensure_awaiting_decision(request)

        # Re-read under lock; another decision may have landed meanwhile.
        request = self._lock_request(request_id)
        self.ensure_awaiting_decision(request)

        step = self._find_step(request, approver_id)
        if step is None:
            raise ApproverNotFoundError(str(request_id), str(approver_id))
        if step.status not in UNDECIDED_STEP_STATUSES:
            raise AlreadyDecidedError(str(request_id), str(approver_id), step.status.value)
        if step.status != StepStatus.PENDING or step.level != request.current_level:
            raise OutOfTurnDecisionError(
                str(request_id),
                str(approver_id),
                step.level,
                request.current_level or 0,
            )

        with LogContext.bind(
            number=request.number,
            approver_id=str(approver_id),
            approval_round=request.approval_round,
            current_level=step.level,
        ):
            self._apply_decision(request, step, decision, comment, actor_id, reason)
        return request

    def _apply_decision(
        self,
        request: ChangeRequestModel,
        step: ApprovalStepModel,
        decision: ApprovalDecision,
        comment: str | None,
        actor_id: UUID,
        reason: str | None,
    ) -> None:
        now = self._clock.now()
        step.status = decision_outcome(decision)
        step.decided_at = now
        step.comment = comment
        request.updated_at = now
        # The decided step must leave 'pending' before another step enters it.
        self._session.flush()

        if decision is ApprovalDecision.APPROVE:
            self._after_approval(request, step, actor_id, comment)
        else:
            self._after_rejection(request, step, actor_id, comment, reason)

        self._session.flush()
        logger.info(
            "approval_decision_recorded",
            extra={"decision": decision, "request_status": request.status},
        )

    def _after_approval(
        self,
        request: ChangeRequestModel,
        step: ApprovalStepModel,
        actor_id: UUID,
        comment: str | None,
    ) -> None:
        self._audit.append(
            request.id,
            actor_id,
            AuditAction.APPROVAL_GRANTED,
            field_name="level",
            new=step.level,
            comment=comment,
        )

        next_step = self._next_queued(request, step.level)
        if next_step is not None:
            previous_approver = request.current_approver_id
            next_step.status = StepStatus.PENDING
            self._point_at(request, next_step)
            self._session.flush()
            self._audit.append(
                request.id,
                actor_id,
                AuditAction.UPDATED,
                field_name="current_approver_id",
                old=previous_approver,
                new=next_step.approver_id,
            )
            self._outbox.enqueue(
                next_step.approver_id,
                "Change request awaiting your approval",
                f"{request.number} - {request.title} needs your decision "
                f"(level {next_step.level}).",
                NotificationOutbox.APPROVAL_REQUIRED,
                request.id,
            )
            return

        self.mark_approved(request, actor_id, "All approval levels granted")

    def _after_rejection(
        self,
        request: ChangeRequestModel,
        step: ApprovalStepModel,
        actor_id: UUID,
        comment: str | None,
        reason: str | None,
    ) -> None:
        self._audit.append(
            request.id,
            actor_id,
            AuditAction.APPROVAL_REJECTED,
            field_name="level",
            new=step.level,
            comment=comment or reason,
        )
        self.cancel_remaining(request, actor_id, "Approval rejected")
        self.mark_rejected(request, actor_id, reason or comment)

    def mark_approved(
        self,
        request: ChangeRequestModel,
        actor_id: UUID,
        comment: str | None = None,
    ) -> None:
        """Move the request to approved and notify its initiator."""
        old_status = request.status
        request.status = ChangeRequestStatus.APPROVED
        if request.approved_at is None:
            request.approved_at = self._clock.now()
        self._point_at(request, None)
        self._session.flush()
        self._audit.append(
            request.id,
            actor_id,
            AuditAction.APPROVED,
            field_name="status",
            old=old_status,
            new=request.status,
            comment=comment,
        )
        self._outbox.enqueue(
            request.initiated_by,
            "Change request approved",
            f"{request.number} - {request.title} has been approved.",
            NotificationOutbox.CHANGE_APPROVED,
            request.id,
        )

    def mark_rejected(
        self,
        request: ChangeRequestModel,
        actor_id: UUID,
        reason: str | None,
    ) -> None:
        """Move the request to rejected and notify its initiator."""
        old_status = request.status
        request.status = ChangeRequestStatus.REJECTED
        if request.rejected_at is None:
            request.rejected_at = self._clock.now()
        if request.rejection_reason is None and reason:
            request.rejection_reason = reason
        self._point_at(request, None)
        self._session.flush()
        self._audit.append(
            request.id,
            actor_id,
            AuditAction.REJECTED,
            field_name="status",
            old=old_status,
            new=request.status,
            comment=reason,
        )
        self._outbox.enqueue(
            request.initiated_by,
            "Change request rejected",
            f"{request.number} - {request.title} has been rejected"
            + (f": {reason}" if reason else "."),
            NotificationOutbox.CHANGE_REJECTED,
            request.id,
        )

    def cancel_remaining(
        self,
        request: ChangeRequestModel,
        actor_id: UUID,
        comment: str,
    ) -> int:
        """Cancel every undecided step of the current round; returns the count."""
        undecided = self.undecided_steps(request)
        if not undecided:
            return 0
        now = self._clock.now()
        for step in undecided:
            step.status = StepStatus.CANCELLED
            step.decided_at = now
        self._point_at(request, None)
        self._session.flush()
        self._audit.append(
            request.id,
            actor_id,
            AuditAction.STEPS_CANCELLED,
            field_name="approval_steps",
            new=len(undecided),
            comment=comment,
        )
        logger.info(
            "approval_steps_cancelled",
            extra={"request_id": str(request.id), "count": len(undecided)},
        )
        return len(undecided)
