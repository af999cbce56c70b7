"""
ApprovalChain tests.

Verifies:
- Steps are materialized 1..N with level 1 pending and the rest queued
- Decisions land strictly in level order
- Rejection at any level rejects the request and cancels queued steps
- Decided steps are immutable
- Approvers can only be replaced on drafts
"""

from uuid import uuid4

import pytest

from change_kernel.domain.change_request import (
    ApprovalDecision,
    ChangeRequestStatus,
    StepStatus,
)
from change_kernel.exceptions import (
    AlreadyDecidedError,
    ApproverListLockedError,
    ApproverNotFoundError,
    ChangeRequestNotFoundError,
    DuplicateApproverError,
    ImmutabilityViolationError,
    MissingFieldError,
    NotSubmittedError,
    OutOfTurnDecisionError,
    TerminalStateError,
)
from change_kernel.models.change_request import ChangeRequestModel
from change_kernel.models.notification import NotificationOutboxModel
from change_kernel.services.approval_chain import ApprovalChain
from change_kernel.services.notification_outbox import NotificationOutbox

APPROVE = ApprovalDecision.APPROVE
REJECT = ApprovalDecision.REJECT


@pytest.fixture
def chain(session, audit_trail, outbox, deterministic_clock):
    return ApprovalChain(session, audit_trail, outbox, deterministic_clock)


def _model(session, request_id) -> ChangeRequestModel:
    return session.get(ChangeRequestModel, request_id)


def _statuses(request: ChangeRequestModel) -> list[StepStatus]:
    return [s.status for s in request.current_round_steps()]


class TestMaterialize:
    def test_levels_and_initial_statuses(self, session, make_request, approver_a, approver_b, approver_c):
        dto = make_request(required_approvers=[approver_a, approver_b, approver_c])
        request = _model(session, dto.request_id)

        steps = request.current_round_steps()
        assert [s.level for s in steps] == [1, 2, 3]
        assert [s.approver_id for s in steps] == [approver_a, approver_b, approver_c]
        assert _statuses(request) == [StepStatus.PENDING, StepStatus.QUEUED, StepStatus.QUEUED]
        assert request.current_level == 1
        assert request.current_approver_id == approver_a

    def test_no_approvers_no_pointer(self, session, make_request):
        request = _model(session, make_request().request_id)
        assert request.current_round_steps() == []
        assert request.current_approver_id is None
        assert request.current_level is None

    def test_duplicate_approver_refused(self, session, chain, make_request, approver_a, test_actor_id):
        request = _model(session, make_request().request_id)
        with pytest.raises(DuplicateApproverError):
            chain.materialize(request, [approver_a, approver_a], test_actor_id)

    def test_replace_on_draft(self, session, chain, make_request, approver_a, approver_b, approver_c, test_actor_id):
        request = _model(session, make_request(required_approvers=[approver_a, approver_b]).request_id)
        chain.replace_approvers(request, [approver_c, approver_a], test_actor_id)

        steps = request.current_round_steps()
        assert [s.approver_id for s in steps] == [approver_c, approver_a]
        assert request.current_approver_id == approver_c
        assert request.approver_ids == (approver_c, approver_a)

    def test_replace_after_submit_refused(self, session, chain, submitted_request, approver_c, test_actor_id):
        request = _model(session, submitted_request.request_id)
        with pytest.raises(ApproverListLockedError):
            chain.replace_approvers(request, [approver_c], test_actor_id)


class TestDecisionOrder:
    def test_approve_advances_pointer(self, session, chain, submitted_request, approver_a, approver_b):
        request = chain.record_decision(submitted_request.request_id, approver_a, APPROVE, "ok", approver_a)

        assert request.status is ChangeRequestStatus.PENDING_REVIEW
        assert _statuses(request) == [StepStatus.APPROVED, StepStatus.PENDING]
        assert request.current_approver_id == approver_b
        assert request.current_level == 2

    def test_next_approver_is_notified(self, session, chain, submitted_request, approver_a, approver_b):
        chain.record_decision(submitted_request.request_id, approver_a, APPROVE, None, approver_a)
        rows = session.query(NotificationOutboxModel).filter_by(recipient_id=approver_b).all()
        assert [r.category for r in rows] == [NotificationOutbox.APPROVAL_REQUIRED]

    def test_out_of_turn_refused(self, chain, submitted_request, approver_b):
        with pytest.raises(OutOfTurnDecisionError) as exc_info:
            chain.record_decision(submitted_request.request_id, approver_b, APPROVE, None, approver_b)
        assert exc_info.value.level == 2
        assert exc_info.value.current_level == 1

    def test_unknown_approver_refused(self, chain, submitted_request):
        with pytest.raises(ApproverNotFoundError):
            chain.record_decision(submitted_request.request_id, uuid4(), APPROVE, None, uuid4())

    def test_second_decision_by_same_approver_refused(self, chain, submitted_request, approver_a):
        chain.record_decision(submitted_request.request_id, approver_a, APPROVE, None, approver_a)
        with pytest.raises(AlreadyDecidedError):
            chain.record_decision(submitted_request.request_id, approver_a, APPROVE, None, approver_a)

    def test_last_approval_approves_request(
        self, chain, submitted_request, approver_a, approver_b, deterministic_clock,
    ):
        chain.record_decision(submitted_request.request_id, approver_a, APPROVE, None, approver_a)
        deterministic_clock.advance(3600)
        request = chain.record_decision(submitted_request.request_id, approver_b, APPROVE, None, approver_b)

        assert request.status is ChangeRequestStatus.APPROVED
        assert request.approved_at == deterministic_clock.now()
        assert request.current_approver_id is None
        assert _statuses(request) == [StepStatus.APPROVED, StepStatus.APPROVED]

    def test_decision_on_draft_refused(self, chain, make_request, approver_a):
        dto = make_request(required_approvers=[approver_a])
        with pytest.raises(NotSubmittedError):
            chain.record_decision(dto.request_id, approver_a, APPROVE, None, approver_a)

    def test_unknown_request(self, chain, approver_a):
        with pytest.raises(ChangeRequestNotFoundError):
            chain.record_decision(uuid4(), approver_a, APPROVE, None, approver_a)


class TestRejection:
    def test_reject_short_circuits(self, chain, submitted_request, approver_a):
        request = chain.record_decision(
            submitted_request.request_id, approver_a, REJECT, None, approver_a,
            reason="Over budget",
        )
        assert request.status is ChangeRequestStatus.REJECTED
        assert request.rejection_reason == "Over budget"
        assert request.rejected_at is not None
        assert _statuses(request) == [StepStatus.REJECTED, StepStatus.CANCELLED]
        assert request.current_approver_id is None

    def test_comment_serves_as_reason(self, chain, submitted_request, approver_a):
        request = chain.record_decision(
            submitted_request.request_id, approver_a, REJECT, "Not in scope", approver_a,
        )
        assert request.rejection_reason == "Not in scope"

    def test_reject_requires_reason(self, chain, submitted_request, approver_a):
        with pytest.raises(MissingFieldError):
            chain.record_decision(submitted_request.request_id, approver_a, REJECT, None, approver_a)

    def test_unknown_request_checked_before_reason(self, chain, approver_a):
        with pytest.raises(ChangeRequestNotFoundError):
            chain.record_decision(uuid4(), approver_a, REJECT, None, approver_a)

    def test_no_decisions_after_rejection(self, chain, submitted_request, approver_a, approver_b):
        chain.record_decision(submitted_request.request_id, approver_a, REJECT, "No", approver_a)
        with pytest.raises(TerminalStateError):
            chain.record_decision(submitted_request.request_id, approver_b, APPROVE, None, approver_b)


class TestDecidedStepImmutability:
    def test_decided_step_cannot_change(self, session, chain, submitted_request, approver_a):
        request = chain.record_decision(submitted_request.request_id, approver_a, APPROVE, "ok", approver_a)
        step = request.current_round_steps()[0]
        step.comment = "rewritten"
        with pytest.raises(ImmutabilityViolationError):
            session.flush()

    def test_decided_step_cannot_be_deleted(self, session, chain, submitted_request, approver_a):
        request = chain.record_decision(submitted_request.request_id, approver_a, APPROVE, "ok", approver_a)
        session.delete(request.current_round_steps()[0])
        with pytest.raises(ImmutabilityViolationError):
            session.flush()


class TestNewRound:
    def test_start_new_round(self, session, chain, submitted_request, approver_a, approver_b, test_actor_id):
        request = chain.record_decision(submitted_request.request_id, approver_a, REJECT, "No", approver_a)
        request.status = ChangeRequestStatus.DRAFT
        chain.start_new_round(request, test_actor_id)

        assert request.approval_round == 2
        assert _statuses(request) == [StepStatus.PENDING, StepStatus.QUEUED]
        assert request.current_approver_id == approver_a
        # Round 1 is kept as it was decided.
        assert len(request.approval_steps) == 4
