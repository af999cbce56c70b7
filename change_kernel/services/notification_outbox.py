"""
NotificationOutbox -- best-effort notification side channel.

Responsibility:
    Records notifications for key workflow transitions as outbox rows
    inside the business transaction, and delivers them to a
    ``NotificationSink`` after that transaction has committed.

Architecture position:
    Kernel > Services.  Called by ApprovalChain and ChangeRequestWorkflow.

Invariants enforced:
    - Enqueue runs inside a savepoint.  A storage failure while writing the
      outbox row is logged and discarded; the surrounding business
      transaction carries on unaffected.
    - Delivery never raises.  A sink failure marks the row failed with the
      error text; the row is retried by later dispatches until
      ``max_attempts`` is reached.
    - Outbox state never feeds back into change request state.
"""

from dataclasses import dataclass
from typing import Protocol
from uuid import UUID, uuid4

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from change_config.schema import NotificationSettings
from change_kernel.domain.clock import Clock, SystemClock
from change_kernel.logging_config import get_logger
from change_kernel.models.notification import NotificationOutboxModel, NotificationStatus

logger = get_logger("services.notifications")


class NotificationSink(Protocol):
    """Delivery transport for notifications."""

    def notify(
        self,
        user_id: UUID,
        title: str,
        message: str,
        category: str,
        related_id: UUID | None,
    ) -> None:
        ...


class LoggingNotificationSink:
    """Default sink: writes each notification to the structured log."""

    def notify(
        self,
        user_id: UUID,
        title: str,
        message: str,
        category: str,
        related_id: UUID | None,
    ) -> None:
        logger.info(
            "notification_sent",
            extra={
                "recipient_id": str(user_id),
                "title": title,
                "category": category,
                "related_id": str(related_id) if related_id else None,
            },
        )


@dataclass(frozen=True)
class DispatchResult:
    """Outcome of one dispatch pass."""

    delivered: int = 0
    failed: int = 0

    @property
    def attempted(self) -> int:
        return self.delivered + self.failed


class NotificationOutbox:
    """
    Write and deliver outbox rows.

    Non-goals:
        - Does NOT call ``session.commit()`` -- caller controls boundaries.
    """

    # Categories
    APPROVAL_REQUIRED = "approval_required"
    CHANGE_APPROVED = "change_approved"
    CHANGE_REJECTED = "change_rejected"
    CHANGE_SUBMITTED = "change_submitted"

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        settings: NotificationSettings | None = None,
    ):
        self._session = session
        self._clock = clock or SystemClock()
        self._settings = settings or NotificationSettings()
        self._enqueued: list[UUID] = []

    def enqueue(
        self,
        recipient_id: UUID,
        title: str,
        message: str,
        category: str,
        related_id: UUID | None = None,
    ) -> NotificationOutboxModel | None:
        """
        Record a notification for delivery after commit.

        Returns the outbox row, or None if it could not be written.
        """
        row = NotificationOutboxModel(
            id=uuid4(),
            recipient_id=recipient_id,
            title=title,
            message=message,
            category=category,
            related_id=related_id,
            status=NotificationStatus.PENDING,
            attempts=0,
            created_at=self._clock.now(),
        )
        # Business changes flush outside the savepoint so their errors propagate.
        self._session.flush()
        try:
            with self._session.begin_nested():
                self._session.add(row)
                self._session.flush()
        except SQLAlchemyError:
            logger.warning(
                "notification_enqueue_failed",
                extra={"recipient_id": str(recipient_id), "category": category},
                exc_info=True,
            )
            return None

        self._enqueued.append(row.id)
        logger.debug(
            "notification_enqueued",
            extra={
                "notification_id": str(row.id),
                "recipient_id": str(recipient_id),
                "category": category,
            },
        )
        return row

    def take_enqueued(self) -> list[UUID]:
        """Ids enqueued since the last call; clears the list."""
        ids, self._enqueued = self._enqueued, []
        return ids

    def pending(
        self,
        limit: int | None = None,
        ids: list[UUID] | None = None,
    ) -> list[NotificationOutboxModel]:
        """
        Rows still due for delivery, oldest first.

        Rows are locked with SKIP LOCKED, so concurrent dispatchers never
        claim the same row.  ``ids`` restricts the pass to those rows.
        """
        stmt = (
            select(NotificationOutboxModel)
            .where(NotificationOutboxModel.status.in_(
                [NotificationStatus.PENDING, NotificationStatus.FAILED]
            ))
            .where(NotificationOutboxModel.attempts < self._settings.max_attempts)
            .order_by(NotificationOutboxModel.created_at, NotificationOutboxModel.id)
            .with_for_update(skip_locked=True)
        )
        if ids is not None:
            stmt = stmt.where(NotificationOutboxModel.id.in_(list(ids)))
        if limit is not None:
            stmt = stmt.limit(limit)
        return list(self._session.execute(stmt).scalars().all())

    def dispatch_pending(
        self,
        sink: NotificationSink,
        limit: int | None = None,
        ids: list[UUID] | None = None,
    ) -> DispatchResult:
        """Deliver due rows to ``sink``; never raises on sink failure."""
        delivered = 0
        failed = 0
        for row in self.pending(limit, ids):
            row.attempts += 1
            try:
                sink.notify(
                    row.recipient_id,
                    row.title,
                    row.message,
                    row.category,
                    row.related_id,
                )
            except Exception as exc:
                row.status = NotificationStatus.FAILED
                row.last_error = f"{type(exc).__name__}: {exc}"
                failed += 1
                logger.warning(
                    "notification_delivery_failed",
                    extra={
                        "notification_id": str(row.id),
                        "recipient_id": str(row.recipient_id),
                        "attempts": row.attempts,
                    },
                    exc_info=True,
                )
                continue

            row.status = NotificationStatus.DELIVERED
            row.delivered_at = self._clock.now()
            row.last_error = None
            delivered += 1

        self._session.flush()
        result = DispatchResult(delivered=delivered, failed=failed)
        if result.attempted:
            logger.info(
                "notifications_dispatched",
                extra={"delivered": delivered, "failed": failed},
            )
        return result
