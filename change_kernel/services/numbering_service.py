"""
NumberingService -- human-readable change request numbers.

Responsibility:
    Issues ``<PREFIX>-<SCOPECODE>-<ordinal>`` numbers (``CO-1A2B3C4D-0001``)
    that are unique within a scope.  SCOPECODE is the leading characters
    of the scope id, upper-cased; the ordinal is zero-padded.

Architecture position:
    Kernel > Services.  Called by ChangeRequestWorkflow.create inside the
    same transaction that inserts the request, so a rolled-back creation
    also rolls back its ordinal.

Invariants enforced:
    - The ordinal comes from the per-scope locked counter in
      SequenceService, never from counting existing rows.
    - A candidate already present under (scope_id, number), e.g. a row
      imported without going through the counter, is skipped.
    - UNIQUE(scope_id, number) on change_requests backs both rules.

Failure modes:
    - NumberingConflictError after ``max_attempts`` taken candidates.
"""

from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from change_config.schema import NumberingSettings
from change_kernel.exceptions import NumberingConflictError
from change_kernel.logging_config import get_logger
from change_kernel.models.change_request import ChangeRequestModel
from change_kernel.services.sequence_service import SequenceService

logger = get_logger("services.numbering")


def scope_code(scope_id: UUID, length: int = 8) -> str:
    """Leading ``length`` characters of the scope id, upper-cased."""
    return str(scope_id)[:length].upper()


def format_number(prefix: str, code: str, ordinal: int, width: int = 4) -> str:
    """``CO``, ``1A2B3C4D``, 7 -> ``CO-1A2B3C4D-0007``."""
    return f"{prefix}-{code}-{ordinal:0{width}d}"


class NumberingService:
    """
    Allocates change request numbers.

    Non-goals:
        - Does NOT call ``session.commit()`` -- caller controls boundaries.
    """

    def __init__(
        self,
        session: Session,
        settings: NumberingSettings | None = None,
        sequence_service: SequenceService | None = None,
    ):
        self._session = session
        self._settings = settings or NumberingSettings()
        self._sequences = sequence_service or SequenceService(session)

    def _is_taken(self, scope_id: UUID, number: str) -> bool:
        return self._session.execute(
            select(ChangeRequestModel.id)
            .where(ChangeRequestModel.scope_id == scope_id)
            .where(ChangeRequestModel.number == number)
        ).first() is not None

    def next_number(self, scope_id: UUID) -> str:
        """
        Allocate the next free number in ``scope_id``.

        Raises:
            NumberingConflictError: No free candidate within the retry budget.
        """
        settings = self._settings
        code = scope_code(scope_id, settings.scope_code_length)
        sequence_name = SequenceService.change_request_sequence(scope_id)

        for attempt in range(1, settings.max_attempts + 1):
            ordinal = self._sequences.next_value(sequence_name)
            candidate = format_number(settings.prefix, code, ordinal, settings.width)
            if not self._is_taken(scope_id, candidate):
                logger.info(
                    "number_allocated",
                    extra={
                        "scope_id": str(scope_id),
                        "number": candidate,
                        "attempt": attempt,
                    },
                )
                return candidate
            logger.warning(
                "number_taken_skipped",
                extra={"scope_id": str(scope_id), "number": candidate},
            )

        logger.error(
            "numbering_conflict",
            extra={"scope_id": str(scope_id), "attempts": settings.max_attempts},
        )
        raise NumberingConflictError(str(scope_id), settings.max_attempts)
