"""
ChangeRequestWorkflow unit-of-work tests.

Verifies:
- A failed operation leaves the stored record, its audit trail and the
  number counter exactly as they were
- Storage failures are mapped onto the kernel error taxonomy
- Notification delivery is best effort and never fails an operation
- Every operation logs started / completed / failed with its context
- auto_commit=False defers to the caller's transaction
"""

from dataclasses import replace
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm.exc import StaleDataError

from change_config.schema import NotificationSettings
from change_kernel.domain.change_request import ChangeRequestStatus
from change_kernel.exceptions import (
    ConcurrentModificationError,
    ConflictError,
    PersistenceConflictError,
    StorageError,
    UnexpectedError,
)
from change_kernel.models.change_request import ChangeRequestModel
from change_kernel.models.notification import NotificationOutboxModel, NotificationStatus
from change_kernel.services.change_request_workflow import ChangeRequestWorkflow
from change_kernel.services.notification_outbox import NotificationOutbox
from change_kernel.services.numbering_service import scope_code


def _raiser(exc):
    def _raise(*args, **kwargs):
        raise exc
    return _raise


class TestRollback:
    def test_failed_update_leaves_prior_state(self, workflow, make_request, monkeypatch, test_actor_id):
        request = make_request(baseline_value="100000", delta_value="15000")
        history = len(workflow.get_history(request.request_id))
        monkeypatch.setattr(workflow._recalculation, "apply", _raiser(RuntimeError("disk on fire")))

        with pytest.raises(UnexpectedError) as exc_info:
            workflow.update(request.request_id, {"delta_value": "20000"}, test_actor_id)
        assert isinstance(exc_info.value.__cause__, RuntimeError)

        monkeypatch.undo()
        stored = workflow.get(request.request_id)
        assert stored.delta_value == Decimal("15000")
        assert stored.revised_value == Decimal("115000")
        assert len(workflow.get_history(request.request_id)) == history

    def test_failed_create_strands_no_number(self, workflow, make_request, monkeypatch, scope_id, approver_a):
        monkeypatch.setattr(workflow._chain, "materialize", _raiser(RuntimeError("boom")))
        with pytest.raises(UnexpectedError):
            make_request(required_approvers=[approver_a])
        monkeypatch.undo()

        assert workflow.list_by_scope(scope_id) == []
        assert make_request().number == f"CO-{scope_code(scope_id)}-0001"

    def test_failed_decision_keeps_step_pending(self, workflow, submitted_request, monkeypatch, approver_a, approver_b):
        monkeypatch.setattr(workflow._audit, "append", _raiser(RuntimeError("audit store down")))
        with pytest.raises(UnexpectedError):
            workflow.decide(submitted_request.request_id, approver_a, "approve")
        monkeypatch.undo()

        request = workflow.get(submitted_request.request_id)
        assert request.current_approver_id == approver_a
        assert request.pending_step.approver_id == approver_a
        request = workflow.decide(submitted_request.request_id, approver_a, "approve")
        assert request.current_approver_id == approver_b


class TestErrorMapping:
    def test_stale_data_is_concurrent_modification(self, workflow, submitted_request, monkeypatch, approver_a):
        monkeypatch.setattr(workflow._chain, "record_decision", _raiser(StaleDataError("version mismatch")))
        with pytest.raises(ConcurrentModificationError) as exc_info:
            workflow.decide(submitted_request.request_id, approver_a, "approve")
        assert isinstance(exc_info.value, ConflictError)
        assert exc_info.value.entity_id == str(submitted_request.request_id)

    def test_integrity_error_is_persistence_conflict(self, workflow, submitted_request, monkeypatch, approver_a):
        error = IntegrityError("UPDATE approval_steps", {}, Exception("UNIQUE constraint failed"))
        monkeypatch.setattr(workflow._chain, "record_decision", _raiser(error))
        with pytest.raises(PersistenceConflictError) as exc_info:
            workflow.decide(submitted_request.request_id, approver_a, "approve")
        assert "UNIQUE constraint failed" in exc_info.value.detail

    def test_other_storage_failure(self, workflow, submitted_request, monkeypatch, approver_a):
        error = OperationalError("SELECT 1", {}, Exception("server closed the connection"))
        monkeypatch.setattr(workflow._chain, "record_decision", _raiser(error))
        with pytest.raises(StorageError) as exc_info:
            workflow.decide(submitted_request.request_id, approver_a, "approve")
        assert exc_info.value.operation == "approval_decision"
        assert isinstance(exc_info.value, UnexpectedError)

    def test_version_column_guards_concurrent_writers(self, session, make_request):
        request = make_request()
        model = session.get(ChangeRequestModel, request.request_id)
        assert model.version == request.version
        model.title = "Edited"
        session.flush()
        assert model.version == request.version + 1


class TestNotifications:
    def test_submit_notifies_first_approver(self, submitted_request, recording_sink, approver_a, approver_b):
        sent = recording_sink.to(approver_a)
        assert [n["category"] for n in sent] == [NotificationOutbox.APPROVAL_REQUIRED]
        assert sent[0]["related_id"] == submitted_request.request_id
        assert recording_sink.to(approver_b) == []

    def test_chain_progress_notifies(
        self, workflow, submitted_request, recording_sink, approver_a, approver_b, test_actor_id,
    ):
        workflow.decide(submitted_request.request_id, approver_a, "approve")
        assert len(recording_sink.to(approver_b)) == 1
        workflow.decide(submitted_request.request_id, approver_b, "approve")
        assert [n["category"] for n in recording_sink.to(test_actor_id)] == [
            NotificationOutbox.CHANGE_APPROVED,
        ]

    def test_rejection_notifies_initiator(self, workflow, submitted_request, recording_sink, approver_a, test_actor_id):
        workflow.decide(submitted_request.request_id, approver_a, "reject", reason="Over budget")
        sent = recording_sink.to(test_actor_id)
        assert sent[0]["category"] == NotificationOutbox.CHANGE_REJECTED
        assert "Over budget" in sent[0]["message"]

    def test_submit_notification_can_be_disabled(
        self, session, deterministic_clock, settings, recording_sink, scope_id, approver_a, test_actor_id,
    ):
        quiet = replace(settings, notifications=NotificationSettings(notify_on_submit=False))
        workflow = ChangeRequestWorkflow(session, deterministic_clock, quiet, recording_sink)
        request = workflow.create(
            {"scope_id": scope_id, "title": "Quiet", "required_approvers": [approver_a]}, test_actor_id,
        )
        workflow.submit(request.request_id, test_actor_id)
        assert recording_sink.sent == []

    def test_failing_sink_never_fails_the_operation(
        self, session, deterministic_clock, settings, failing_sink, recording_sink,
        scope_id, approver_a, test_actor_id,
    ):
        workflow = ChangeRequestWorkflow(session, deterministic_clock, settings, failing_sink)
        request = workflow.create(
            {"scope_id": scope_id, "title": "Noisy", "required_approvers": [approver_a]}, test_actor_id,
        )

        submitted = workflow.submit(request.request_id, test_actor_id)

        assert submitted.status is ChangeRequestStatus.PENDING_REVIEW
        assert failing_sink.calls == 1
        row = session.query(NotificationOutboxModel).filter_by(recipient_id=approver_a).one()
        assert row.status is NotificationStatus.FAILED

        retry = ChangeRequestWorkflow(session, deterministic_clock, settings, recording_sink)
        result = retry.dispatch_notifications()
        assert result.delivered == 1
        assert row.status is NotificationStatus.DELIVERED

    def test_after_commit_delivers_only_own_rows(
        self, session, deterministic_clock, settings, workflow, make_request, recording_sink,
        scope_id, approver_a, approver_b, test_actor_id,
    ):
        held = ChangeRequestWorkflow(
            session, deterministic_clock, settings, recording_sink, dispatch_on_commit=False,
        )
        waiting = held.create(
            {"scope_id": scope_id, "title": "Held", "required_approvers": [approver_a]}, test_actor_id,
        )
        held.submit(waiting.request_id, test_actor_id)
        assert recording_sink.sent == []

        other = make_request(required_approvers=[approver_b])
        workflow.submit(other.request_id, test_actor_id)

        assert len(recording_sink.to(approver_b)) == 1
        assert recording_sink.to(approver_a) == []
        row = session.query(NotificationOutboxModel).filter_by(recipient_id=approver_a).one()
        assert row.status is NotificationStatus.PENDING

    def test_outbox_rows_roll_back_with_the_operation(
        self, session, workflow, submitted_request, monkeypatch, approver_a, approver_b,
    ):
        enqueue = workflow._outbox.enqueue

        def enqueue_then_fail(*args, **kwargs):
            enqueue(*args, **kwargs)
            raise RuntimeError("late failure")

        monkeypatch.setattr(workflow._outbox, "enqueue", enqueue_then_fail)
        with pytest.raises(UnexpectedError):
            workflow.decide(submitted_request.request_id, approver_a, "approve")
        assert session.query(NotificationOutboxModel).filter_by(recipient_id=approver_b).count() == 0


class TestOperationLogging:
    def test_completed_operation_logged(self, captured_logs, make_request, test_actor_id):
        request = make_request()
        records = captured_logs()

        started = [r for r in records if r["message"] == "change_request_create_started"]
        completed = [r for r in records if r["message"] == "change_request_create_completed"]
        assert len(started) == 1 and len(completed) == 1
        assert completed[0]["operation"] == "change_request_create"
        assert completed[0]["actor_id"] == str(test_actor_id)
        assert completed[0]["correlation_id"] == started[0]["correlation_id"]
        assert "duration_ms" in completed[0]
        assert any(r["message"] == "change_request_created" and r["number"] == request.number for r in records)

    def test_failed_operation_logged(self, captured_logs, workflow, test_actor_id):
        missing = uuid4()
        with pytest.raises(Exception):
            workflow.update(missing, {"title": "x"}, test_actor_id)
        failed = [r for r in captured_logs() if r["message"] == "change_request_update_failed"]
        assert failed[0]["level"] == "WARNING"
        assert failed[0]["error_code"] == "CHANGE_REQUEST_NOT_FOUND"
        assert failed[0]["request_id"] == str(missing)

    def test_unexpected_failure_logged_as_error(self, captured_logs, workflow, make_request, monkeypatch, test_actor_id):
        request = make_request()
        monkeypatch.setattr(workflow._recalculation, "apply", _raiser(RuntimeError("boom")))
        with pytest.raises(UnexpectedError):
            workflow.update(request.request_id, {"delta_value": "1"}, test_actor_id)
        failed = [r for r in captured_logs() if r["message"] == "change_request_update_failed"]
        assert failed[0]["level"] == "ERROR"
        assert failed[0]["error_type"] == "RuntimeError"
        assert "traceback" in failed[0]

    def test_context_cleared_after_operation(self, make_request):
        from change_kernel.logging_config import LogContext

        make_request()
        assert LogContext.get_all() == {}


class TestCallerOwnedTransaction:
    def test_nothing_committed_without_caller(self, session, deterministic_clock, settings, scope_id, test_actor_id):
        workflow = ChangeRequestWorkflow(session, deterministic_clock, settings, auto_commit=False)
        request = workflow.create({"scope_id": scope_id, "title": "Deferred"}, test_actor_id)
        assert session.get(ChangeRequestModel, request.request_id) is not None

        session.rollback()

        assert session.get(ChangeRequestModel, request.request_id) is None

    def test_failure_rolls_back_only_the_operation(
        self, session, deterministic_clock, settings, scope_id, test_actor_id, monkeypatch,
    ):
        workflow = ChangeRequestWorkflow(session, deterministic_clock, settings, auto_commit=False)
        kept = workflow.create({"scope_id": scope_id, "title": "Kept"}, test_actor_id)

        monkeypatch.setattr(workflow._recalculation, "apply", _raiser(RuntimeError("boom")))
        with pytest.raises(UnexpectedError):
            workflow.update(kept.request_id, {"delta_value": "1"}, test_actor_id)
        monkeypatch.undo()

        stored = session.get(ChangeRequestModel, kept.request_id)
        assert stored is not None
        assert stored.delta_value is None


class TestStatistics:
    @pytest.fixture
    def populated_scope(self, workflow, make_request, deterministic_clock, approver_a, approver_b, test_actor_id):
        approved = make_request(delta_value="15000", day_impact=10, required_approvers=[approver_a])
        workflow.submit(approved.request_id, test_actor_id)
        deterministic_clock.advance(days=2)
        workflow.decide(approved.request_id, approver_a, "approve")

        pending = make_request(delta_value="5000", required_approvers=[approver_b], priority="low")
        workflow.submit(pending.request_id, test_actor_id)

        draft = make_request(delta_value="999", category="deletion")
        return approved, pending, draft

    def test_counts_and_values(self, workflow, scope_id, populated_scope):
        stats = workflow.get_statistics(scope_id)
        assert stats.total_count == 3
        assert stats.count(ChangeRequestStatus.APPROVED) == 1
        assert stats.count(ChangeRequestStatus.PENDING_REVIEW) == 1
        assert stats.count(ChangeRequestStatus.DRAFT) == 1
        assert stats.count(ChangeRequestStatus.CANCELLED) == 0
        assert stats.total_approved_value == Decimal("15000.00")
        assert stats.pending_value == Decimal("5000.00")
        assert stats.total_approved_days == 10
        assert stats.average_approval_days == Decimal("2.00")

    def test_other_scopes_excluded(self, workflow, make_request, populated_scope):
        other = uuid4()
        make_request(scope_id=other, delta_value="1")
        stats = workflow.get_statistics(other)
        assert stats.total_count == 1
        assert stats.total_approved_value == Decimal("0.00")
        assert stats.average_approval_days is None

    def test_list_newest_first(self, workflow, scope_id, populated_scope):
        approved, pending, draft = populated_scope
        listed = workflow.list_by_scope(scope_id)
        assert [r.request_id for r in listed] == [draft.request_id, pending.request_id, approved.request_id]

    def test_list_filters(self, workflow, scope_id, populated_scope):
        approved, pending, draft = populated_scope
        assert [r.request_id for r in workflow.list_by_scope(scope_id, status="approved")] == [approved.request_id]
        assert [r.request_id for r in workflow.list_by_scope(scope_id, category="deletion")] == [draft.request_id]
        assert [r.request_id for r in workflow.list_by_scope(scope_id, priority="low")] == [pending.request_id]
        assert workflow.list_by_scope(scope_id, status="cancelled") == []
