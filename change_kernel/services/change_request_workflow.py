"""
ChangeRequestWorkflow -- the single entry point for change request operations.

Responsibility:
    Composes numbering, approval chain, recalculation, cost items, audit
    trail and notification outbox into one unit of work per public
    operation.  Validates patches, enforces the status state machine and
    the editability rules, and maps storage failures onto the kernel's
    error taxonomy.

Architecture position:
    Kernel > Services -- imperative shell.  The outermost layer of the
    kernel; outer surfaces (HTTP, CLI, batch) call it with an explicit
    SQLAlchemy Session.

Invariants enforced:
    - One transaction per operation: commit on success, rollback on any
      failure when ``auto_commit`` is True.  With ``auto_commit=False`` the
      operation runs inside a savepoint of the caller's transaction, so a
      failure still leaves nothing behind.
    - Every changed field writes exactly one audit entry with old and new
      value; derived fields are recomputed in the same flush as their
      inputs and audited as ``recalculated``.
    - Status changes follow STATUS_TRANSITIONS; lifecycle timestamps are
      stamped only when unset.
    - Notifications are written to the outbox inside the transaction and
      delivered only after commit; delivery never fails an operation.

Failure modes:
    - ValidationError / NotFoundError / InvalidStateError from the domain
      checks, re-raised unchanged after rollback.
    - ConcurrentModificationError when the optimistic version check fails.
    - PersistenceConflictError when a uniqueness constraint rejects a write.
    - StorageError for any other SQLAlchemy failure.
    - UnexpectedError for anything else.
"""

import time
from collections.abc import Callable, Mapping
from typing import Any, TypeVar
from uuid import UUID, uuid4

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from change_config.schema import NotificationSettings, NumberingSettings, WorkflowSettings
from change_kernel.domain.change_request import (
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
    can_transition,
)
from change_kernel.domain.clock import Clock, SystemClock
from change_kernel.domain.patch import (
    FINANCIAL_FIELDS,
    ChangeRequestPatch,
    coerce_uuid,
    enum_coercer,
)
from change_kernel.exceptions import (
    ApprovalChainIncompleteError,
    ChangeKernelError,
    ChangeRequestNotFoundError,
    ConcurrentModificationError,
    DerivedFieldEditError,
    DisallowedFieldError,
    ImmutabilityViolationError,
    InvalidTransitionError,
    MissingFieldError,
    PersistenceConflictError,
    RecordLockedError,
    StorageError,
    TerminalStateError,
    UnexpectedError,
)
from change_kernel.logging_config import LogContext, get_logger
from change_kernel.models.audit_entry import AuditAction
from change_kernel.models.change_request import ChangeRequestModel
from change_kernel.selectors.change_request_selector import (
    ChangeRequestSelector,
    ChangeRequestStatistics,
)
from change_kernel.services.approval_chain import ApprovalChain
from change_kernel.services.audit_trail import AuditRecord, AuditTrail
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

logger = get_logger("services.workflow")

T = TypeVar("T")

# Fields accepted by create(); status and rejection_reason are workflow-owned.
CREATE_FIELDS: frozenset[str] = (
    frozenset(ChangeRequestPatch.field_names()) - {"status", "rejection_reason"}
) | {"scope_id"}

_LIFECYCLE_ACTIONS: dict[ChangeRequestStatus, AuditAction] = {
    ChangeRequestStatus.PENDING_REVIEW: AuditAction.SUBMITTED,
    ChangeRequestStatus.COMPLETED: AuditAction.COMPLETED,
    ChangeRequestStatus.CANCELLED: AuditAction.CANCELLED,
}

_coerce_status = enum_coercer(ChangeRequestStatus)
_coerce_category = enum_coercer(ChangeCategory)
_coerce_priority = enum_coercer(ChangePriority)
_coerce_decision = enum_coercer(ApprovalDecision)


class ChangeRequestWorkflow:
    """
    Orchestrates the change request lifecycle.

    Contract:
        Every public mutating method is one unit of work and returns a
        frozen DTO built after the final flush.  Read methods never write.

    Non-goals:
        - Does NOT authenticate or authorize; ``actor_id`` is trusted.
        - Does NOT retry conflicts; callers decide whether to re-run.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        settings: WorkflowSettings | None = None,
        sink: NotificationSink | None = None,
        auto_commit: bool = True,
        dispatch_on_commit: bool = True,
    ):
        self._session = session
        self._clock = clock or SystemClock()
        self._auto_commit = auto_commit
        self._dispatch_on_commit = dispatch_on_commit
        self._sink = sink or LoggingNotificationSink()

        numbering_settings = settings.numbering if settings else NumberingSettings()
        self._notification_settings = (
            settings.notifications if settings else NotificationSettings()
        )
        self._money_places = settings.money_places if settings else 2

        self._sequences = SequenceService(session)
        self._numbering = NumberingService(session, numbering_settings, self._sequences)
        self._audit = AuditTrail(session, self._clock, self._sequences)
        self._outbox = NotificationOutbox(session, self._clock, self._notification_settings)
        self._chain = ApprovalChain(session, self._audit, self._outbox, self._clock)
        self._recalculation = RecalculationService(session, self._audit, self._money_places)
        self._costs = CostItemService(
            session, self._audit, self._recalculation, self._clock, self._money_places,
        )
        self._selector = ChangeRequestSelector(session)

    # =========================================================================
    # Unit of work
    # =========================================================================

    def _run(
        self,
        operation: str,
        fn: Callable[[], T],
        request_id: UUID | None = None,
        actor_id: UUID | None = None,
        scope_id: Any = None,
        deliver: bool = True,
    ) -> T:
        correlation_id = str(uuid4())
        with LogContext.bind(
            correlation_id=correlation_id,
            request_id=str(request_id) if request_id else None,
            actor_id=str(actor_id) if actor_id else None,
            scope_id=str(scope_id) if scope_id else None,
            operation=operation,
        ):
            logger.info(f"{operation}_started")
            t0 = time.monotonic()
            self._outbox.take_enqueued()

            try:
                if self._auto_commit:
                    result = fn()
                    self._session.commit()
                else:
                    with self._session.begin_nested():
                        result = fn()
            except Exception as exc:
                if self._auto_commit:
                    self._session.rollback()
                error = self._translate(operation, request_id, exc)
                duration_ms = round((time.monotonic() - t0) * 1000, 2)
                extra = {
                    "duration_ms": duration_ms,
                    "error_code": error.code,
                    "error_type": type(exc).__name__,
                }
                if isinstance(error, UnexpectedError):
                    logger.error(f"{operation}_failed", extra=extra, exc_info=True)
                else:
                    logger.warning(f"{operation}_failed", extra=extra)
                if error is exc:
                    raise
                raise error from exc

            duration_ms = round((time.monotonic() - t0) * 1000, 2)
            logger.info(
                f"{operation}_completed",
                extra={"duration_ms": duration_ms},
            )

            enqueued = self._outbox.take_enqueued()
            if deliver and enqueued and self._auto_commit and self._dispatch_on_commit:
                self._deliver_after_commit(enqueued)
            return result

    @staticmethod
    def _translate(operation: str, request_id: UUID | None, exc: Exception) -> ChangeKernelError:
        """Map a failure onto the kernel's error taxonomy."""
        if isinstance(exc, ChangeKernelError):
            return exc
        if isinstance(exc, StaleDataError):
            return ConcurrentModificationError("ChangeRequest", str(request_id))
        if isinstance(exc, IntegrityError):
            return PersistenceConflictError(str(exc.orig))
        if isinstance(exc, SQLAlchemyError):
            return StorageError(operation, str(exc))
        return UnexpectedError(f"{operation} failed: {type(exc).__name__}: {exc}")

    def _deliver_after_commit(self, ids: list[UUID]) -> None:
        """Deliver the rows this operation enqueued; other rows wait for dispatch_notifications."""
        try:
            self._outbox.dispatch_pending(self._sink, ids=ids)
            self._session.commit()
        except SQLAlchemyError:
            self._session.rollback()
            logger.warning("notification_dispatch_failed", exc_info=True)

    def _load(self, request_id: UUID) -> ChangeRequestModel:
        """Read the request under a row lock, discarding any cached state."""
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
    def _ensure_editable(request: ChangeRequestModel) -> None:
        if request.status in TERMINAL_STATUSES:
            raise TerminalStateError(str(request.id), request.status.value)
        if request.status not in EDITABLE_STATUSES:
            raise RecordLockedError(str(request.id), request.status.value)

    # =========================================================================
    # Create / update
    # =========================================================================

    def create(self, data: Mapping[str, Any], actor_id: UUID) -> ChangeRequest:
        """
        Create a draft change request.

        ``data`` must carry ``scope_id`` and ``title``; every other key must
        be an editable field.  A number is allocated, the initial derived
        fields are computed, and approval steps are materialized from
        ``required_approvers`` when given.

        Raises:
            MissingFieldError: scope_id or title absent.
            DisallowedFieldError: A key is not accepted at creation.
            InvalidFieldValueError: A value cannot be coerced.
            NumberingConflictError: No free number within the retry budget.
        """
        return self._run(
            "change_request_create",
            lambda: self._create(data, actor_id),
            actor_id=actor_id,
            scope_id=data.get("scope_id"),
        )

    def _create(self, data: Mapping[str, Any], actor_id: UUID) -> ChangeRequest:
        disallowed = tuple(k for k in data if k not in CREATE_FIELDS)
        if disallowed:
            raise DisallowedFieldError(disallowed)
        for required in ("scope_id", "title"):
            if data.get(required) is None:
                raise MissingFieldError(required)

        scope_id = coerce_uuid("scope_id", data["scope_id"])
        fields = dict(
            ChangeRequestPatch.from_mapping(
                {k: v for k, v in data.items() if k != "scope_id"}
            ).items()
        )
        now = self._clock.now()

        request = ChangeRequestModel(
            id=uuid4(),
            number=self._numbering.next_number(scope_id),
            scope_id=scope_id,
            title=fields["title"],
            description=fields.get("description") or "",
            reason=fields.get("reason"),
            scope_of_work=fields.get("scope_of_work"),
            requested_by=fields.get("requested_by"),
            initiated_by=actor_id,
            category=fields.get("category", ChangeCategory.MODIFICATION),
            priority=fields.get("priority", ChangePriority.MEDIUM),
            status=ChangeRequestStatus.DRAFT,
            baseline_value=fields.get("baseline_value"),
            delta_value=fields.get("delta_value"),
            baseline_date=fields.get("baseline_date"),
            day_impact=fields.get("day_impact"),
            delta_from_line_items=False,
            required_approvers=[],
            approval_round=1,
            created_at=now,
            updated_at=now,
        )
        self._session.add(request)
        self._session.flush()

        self._audit.append(
            request.id,
            actor_id,
            AuditAction.CREATED,
            field_name="number",
            new=request.number,
            comment="Change request created",
        )
        self._recalculation.apply(request, actor_id)

        approvers = fields.get("required_approvers")
        if approvers:
            self._chain.materialize(request, approvers, actor_id)

        self._session.flush()
        logger.info(
            "change_request_created",
            extra={
                "request_id": str(request.id),
                "number": request.number,
                "approver_count": len(approvers or ()),
            },
        )
        return request.to_dto()

    def update(
        self,
        request_id: UUID,
        patch: ChangeRequestPatch | Mapping[str, Any],
        actor_id: UUID,
    ) -> ChangeRequest:
        """
        Apply a partial update.

        Field edits are audited one entry per changed field; derived fields
        follow in the same transaction.  A ``status`` in the patch is applied
        after the field edits and validated against the transition table.

        Raises:
            DisallowedFieldError / InvalidFieldValueError: Bad patch.
            DerivedFieldEditError: delta_value edited while it is the sum
                of cost line items.
            TerminalStateError / RecordLockedError: Fields edited in a
                non-editable status.
            ApproverListLockedError: Approvers changed after submission.
            InvalidTransitionError / ApprovalChainIncompleteError: Bad
                status change.
        """
        return self._run(
            "change_request_update",
            lambda: self._update(request_id, patch, actor_id),
            request_id=request_id,
            actor_id=actor_id,
        )

    def _update(
        self,
        request_id: UUID,
        patch: ChangeRequestPatch | Mapping[str, Any],
        actor_id: UUID,
    ) -> ChangeRequest:
        if isinstance(patch, ChangeRequestPatch):
            patch = patch.validated()
        else:
            patch = ChangeRequestPatch.from_mapping(patch)

        request = self._load(coerce_uuid("request_id", request_id))
        target = patch.status if "status" in patch.supplied() else None
        if target == request.status:
            target = None

        changes = self._field_changes(request, patch.without("status"))
        if changes:
            self._apply_field_changes(request, changes, actor_id)
        if target is not None:
            self._transition(request, target, actor_id, reason=request.rejection_reason)

        if changes or target is not None:
            request.updated_at = self._clock.now()
            self._session.flush()
        else:
            logger.debug("update_noop", extra={"request_id": str(request.id)})
        return request.to_dto()

    @staticmethod
    def _field_changes(
        request: ChangeRequestModel,
        patch: ChangeRequestPatch,
    ) -> dict[str, tuple[Any, Any]]:
        changes: dict[str, tuple[Any, Any]] = {}
        for name, new in patch.items():
            if name == "required_approvers":
                old = request.approver_ids
            elif name == "description":
                old, new = request.description, new or ""
            else:
                old = getattr(request, name)
            if old != new:
                changes[name] = (old, new)
        return changes

    def _apply_field_changes(
        self,
        request: ChangeRequestModel,
        changes: dict[str, tuple[Any, Any]],
        actor_id: UUID,
    ) -> None:
        self._ensure_editable(request)
        if "delta_value" in changes and request.delta_from_line_items:
            raise DerivedFieldEditError("delta_value", "cost line items")
        if "rejection_reason" in changes and changes["rejection_reason"][0] is not None:
            raise ImmutabilityViolationError(
                "ChangeRequest", str(request.id), "'rejection_reason' is write-once and already set",
            )

        approvers = changes.pop("required_approvers", None)
        if approvers is not None:
            old, new = approvers
            self._audit.append(
                request.id,
                actor_id,
                AuditAction.UPDATED,
                field_name="required_approvers",
                old=list(old),
                new=list(new),
            )
            self._chain.replace_approvers(request, new, actor_id)

        for name, (old, new) in changes.items():
            setattr(request, name, new)
        self._session.flush()
        for name, (old, new) in changes.items():
            self._audit.append(
                request.id,
                actor_id,
                AuditAction.UPDATED,
                field_name=name,
                old=old,
                new=new,
            )

        if FINANCIAL_FIELDS & changes.keys():
            self._recalculation.apply(request, actor_id)

    # =========================================================================
    # Status changes
    # =========================================================================

    def _transition(
        self,
        request: ChangeRequestModel,
        target: ChangeRequestStatus,
        actor_id: UUID,
        comment: str | None = None,
        reason: str | None = None,
    ) -> None:
        current = request.status
        if not can_transition(current, target):
            if current in TERMINAL_STATUSES and not STATUS_TRANSITIONS[current]:
                raise TerminalStateError(str(request.id), current.value)
            raise InvalidTransitionError(current.value, target.value)

        if target is ChangeRequestStatus.APPROVED:
            undecided = self._chain.undecided_steps(request)
            if undecided:
                raise ApprovalChainIncompleteError(str(request.id), len(undecided))
            self._chain.mark_approved(request, actor_id, comment)
            return

        if target is ChangeRequestStatus.REJECTED:
            self._chain.cancel_remaining(request, actor_id, "Change request rejected")
            self._chain.mark_rejected(request, actor_id, reason or comment)
            return

        if target is ChangeRequestStatus.CANCELLED:
            self._chain.cancel_remaining(request, actor_id, "Change request cancelled")

        request.status = target
        timestamp_field = LIFECYCLE_TIMESTAMP_FIELDS[target]
        if timestamp_field and getattr(request, timestamp_field) is None:
            setattr(request, timestamp_field, self._clock.now())
        self._session.flush()

        self._audit.append(
            request.id,
            actor_id,
            _LIFECYCLE_ACTIONS.get(target, AuditAction.STATUS_CHANGED),
            field_name="status",
            old=current,
            new=target,
            comment=comment,
        )

        if (
            target is ChangeRequestStatus.PENDING_REVIEW
            and self._notification_settings.notify_on_submit
            and request.current_approver_id is not None
        ):
            self._outbox.enqueue(
                request.current_approver_id,
                "Change request awaiting your approval",
                f"{request.number} - {request.title} has been submitted "
                f"and needs your decision (level {request.current_level}).",
                NotificationOutbox.APPROVAL_REQUIRED,
                request.id,
            )

    def _change_status(
        self,
        request_id: UUID,
        target: ChangeRequestStatus,
        actor_id: UUID,
        comment: str | None = None,
    ) -> ChangeRequest:
        request = self._load(coerce_uuid("request_id", request_id))
        self._transition(request, target, actor_id, comment=comment, reason=comment)
        request.updated_at = self._clock.now()
        self._session.flush()
        return request.to_dto()

    def submit(self, request_id: UUID, actor_id: UUID) -> ChangeRequest:
        """
        Submit a draft for approval (draft -> pending_review).

        Submitting a request that is already pending review is a no-op.
        """
        return self._run(
            "change_request_submit",
            lambda: self._submit(request_id, actor_id),
            request_id=request_id,
            actor_id=actor_id,
        )

    def _submit(self, request_id: UUID, actor_id: UUID) -> ChangeRequest:
        request = self._load(coerce_uuid("request_id", request_id))
        if request.status is ChangeRequestStatus.PENDING_REVIEW:
            logger.info("submit_noop", extra={"request_id": str(request.id)})
            return request.to_dto()
        return self._change_status(
            request.id, ChangeRequestStatus.PENDING_REVIEW, actor_id, "Submitted for approval",
        )

    def decide(
        self,
        request_id: UUID,
        approver_id: UUID,
        decision: ApprovalDecision | str,
        comment: str | None = None,
        actor_id: UUID | None = None,
        reason: str | None = None,
    ) -> ChangeRequest:
        """
        Record an approver's decision.

        ``actor_id`` defaults to the approver.  A rejection needs a reason
        or a comment.

        Raises:
            ChangeRequestNotFoundError / ApproverNotFoundError
            NotSubmittedError / TerminalStateError / RecordLockedError
            OutOfTurnDecisionError / AlreadyDecidedError
            MissingFieldError: Rejection without reason or comment.
        """
        actor = actor_id or approver_id

        def op() -> ChangeRequest:
            request = self._chain.record_decision(
                coerce_uuid("request_id", request_id),
                coerce_uuid("approver_id", approver_id),
                _coerce_decision("decision", decision),
                comment,
                actor,
                reason=reason,
            )
            return request.to_dto()

        return self._run(
            "approval_decision",
            op,
            request_id=request_id,
            actor_id=actor,
        )

    def reopen(
        self,
        request_id: UUID,
        actor_id: UUID,
        comment: str | None = None,
    ) -> ChangeRequest:
        """
        Return a rejected request to draft and open a new approval round.

        The new round has fresh steps for every approver in
        ``required_approvers``; earlier rounds stay in storage untouched.
        """

        def op() -> ChangeRequest:
            request = self._load(coerce_uuid("request_id", request_id))
            target = REOPEN_TRANSITIONS.get(request.status)
            if target is None:
                raise InvalidTransitionError(
                    request.status.value, ChangeRequestStatus.DRAFT.value,
                )
            old_status = request.status
            request.status = target
            request.updated_at = self._clock.now()
            self._session.flush()
            self._audit.append(
                request.id,
                actor_id,
                AuditAction.REOPENED,
                field_name="status",
                old=old_status,
                new=target,
                comment=comment,
            )
            self._chain.start_new_round(request, actor_id)
            self._session.flush()
            return request.to_dto()

        return self._run(
            "change_request_reopen",
            op,
            request_id=request_id,
            actor_id=actor_id,
        )

    def cancel(
        self,
        request_id: UUID,
        actor_id: UUID,
        reason: str | None = None,
    ) -> ChangeRequest:
        """Withdraw the request; undecided approval steps are cancelled."""
        return self._run(
            "change_request_cancel",
            lambda: self._change_status(
                request_id, ChangeRequestStatus.CANCELLED, actor_id, reason,
            ),
            request_id=request_id,
            actor_id=actor_id,
        )

    def start_work(self, request_id: UUID, actor_id: UUID) -> ChangeRequest:
        return self._run(
            "change_request_start_work",
            lambda: self._change_status(
                request_id, ChangeRequestStatus.IN_PROGRESS, actor_id,
            ),
            request_id=request_id,
            actor_id=actor_id,
        )

    def complete(self, request_id: UUID, actor_id: UUID) -> ChangeRequest:
        return self._run(
            "change_request_complete",
            lambda: self._change_status(
                request_id, ChangeRequestStatus.COMPLETED, actor_id,
            ),
            request_id=request_id,
            actor_id=actor_id,
        )

    # =========================================================================
    # Cost line items
    # =========================================================================

    def _load_editable(self, request_id: UUID) -> ChangeRequestModel:
        request = self._load(coerce_uuid("request_id", request_id))
        self._ensure_editable(request)
        return request

    def add_cost_item(
        self,
        request_id: UUID,
        data: Mapping[str, Any],
        actor_id: UUID,
    ) -> CostLineItem:
        """Add a priced line; from then on delta_value is the sum of lines."""

        def op() -> CostLineItem:
            request = self._load_editable(request_id)
            return self._costs.add(request, data, actor_id).to_dto()

        return self._run(
            "cost_item_add",
            op,
            request_id=request_id,
            actor_id=actor_id,
        )

    def update_cost_item(
        self,
        request_id: UUID,
        item_id: UUID,
        changes: Mapping[str, Any],
        actor_id: UUID,
    ) -> CostLineItem:
        def op() -> CostLineItem:
            request = self._load_editable(request_id)
            item = self._costs.update(
                request, coerce_uuid("item_id", item_id), changes, actor_id,
            )
            return item.to_dto()

        return self._run(
            "cost_item_update",
            op,
            request_id=request_id,
            actor_id=actor_id,
        )

    def remove_cost_item(
        self,
        request_id: UUID,
        item_id: UUID,
        actor_id: UUID,
    ) -> ChangeRequest:
        def op() -> ChangeRequest:
            request = self._load_editable(request_id)
            self._costs.remove(request, coerce_uuid("item_id", item_id), actor_id)
            return request.to_dto()

        return self._run(
            "cost_item_remove",
            op,
            request_id=request_id,
            actor_id=actor_id,
        )

    # =========================================================================
    # Notifications
    # =========================================================================

    def dispatch_notifications(self, limit: int | None = None) -> DispatchResult:
        """Deliver due outbox rows to the configured sink."""
        return self._run(
            "notification_dispatch",
            lambda: self._outbox.dispatch_pending(self._sink, limit),
            deliver=False,
        )

    # =========================================================================
    # Reads
    # =========================================================================

    def _existing(self, request_id: UUID) -> ChangeRequestModel:
        request = self._session.get(ChangeRequestModel, coerce_uuid("request_id", request_id))
        if request is None:
            raise ChangeRequestNotFoundError(str(request_id))
        return request

    def get(self, request_id: UUID) -> ChangeRequest:
        return self._existing(request_id).to_dto()

    def list_by_scope(
        self,
        scope_id: UUID,
        status: ChangeRequestStatus | str | None = None,
        category: ChangeCategory | str | None = None,
        priority: ChangePriority | str | None = None,
    ) -> list[ChangeRequest]:
        """Requests of a scope, newest first, optionally filtered."""
        return self._selector.list_by_scope(
            coerce_uuid("scope_id", scope_id),
            status=_coerce_status("status", status) if status is not None else None,
            category=_coerce_category("category", category) if category is not None else None,
            priority=_coerce_priority("priority", priority) if priority is not None else None,
        )

    def get_history(self, request_id: UUID, newest_first: bool = False) -> list[AuditRecord]:
        """Audit entries in insertion order (or newest first for display)."""
        request = self._existing(request_id)
        return self._audit.history(request.id, newest_first=newest_first)

    def get_approval_chain(self, request_id: UUID) -> list[ApprovalStep]:
        """Steps of the current approval round in level order."""
        request = self._existing(request_id)
        return self._selector.approval_chain(request.id)

    def get_cost_items(self, request_id: UUID) -> list[CostLineItem]:
        request = self._existing(request_id)
        return [item.to_dto() for item in request.cost_items]

    def get_awaiting_approver(self, approver_id: UUID) -> list[ChangeRequest]:
        return self._selector.awaiting_approver(coerce_uuid("approver_id", approver_id))

    def get_statistics(self, scope_id: UUID) -> ChangeRequestStatistics:
        return self._selector.statistics(
            coerce_uuid("scope_id", scope_id), self._money_places,
        )

    def verify_audit_chain(self, request_id: UUID) -> bool:
        request = self._existing(request_id)
        return self._audit.verify_chain(request.id)
