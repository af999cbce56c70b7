"""
AuditTrail -- append-only, hash-chained history of change requests.

Responsibility:
    Appends one immutable AuditEntryModel row per field edit, derived-field
    recalculation, lifecycle action and approval decision, and reads the
    history back in true insertion order.

Architecture position:
    Kernel > Services -- imperative shell, called by ApprovalChain,
    CostItemService and ChangeRequestWorkflow inside their transaction.

Invariants enforced:
    - seq comes from SequenceService (locked counter row), never max+1.
    - hash = H(request_id | action | payload_hash | prev_hash), where
      prev_hash is the previous entry of the same request.
    - Append-only: the ORM listeners in db/immutability.py refuse any
      UPDATE or DELETE.

Failure modes:
    - AuditChainBrokenError from verify_chain() on any mismatch.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from change_kernel.domain.clock import Clock, SystemClock
from change_kernel.exceptions import AuditChainBrokenError
from change_kernel.logging_config import get_logger
from change_kernel.models.audit_entry import AuditAction, AuditEntryModel
from change_kernel.services.sequence_service import SequenceService
from change_kernel.utils.hashing import hash_audit_entry, hash_payload, snapshot

logger = get_logger("services.audit_trail")


@dataclass(frozen=True)
class AuditRecord:
    """A single entry of a change request's history."""

    entry_id: UUID
    seq: int
    request_id: UUID
    actor_id: UUID
    action: AuditAction
    occurred_at: datetime
    field_name: str | None = None
    old_value: str | None = None
    new_value: str | None = None
    comment: str | None = None
    hash: str = ""

    @classmethod
    def from_model(cls, entry: AuditEntryModel) -> "AuditRecord":
        return cls(
            entry_id=entry.id,
            seq=entry.seq,
            request_id=entry.request_id,
            actor_id=entry.actor_id,
            action=entry.action,
            occurred_at=entry.occurred_at,
            field_name=entry.field_name,
            old_value=entry.old_value,
            new_value=entry.new_value,
            comment=entry.comment,
            hash=entry.hash,
        )


class AuditTrail:
    """
    Append and read the audit history of change requests.

    Non-goals:
        - Does NOT call ``session.commit()`` -- caller controls boundaries.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        sequence_service: SequenceService | None = None,
    ):
        self._session = session
        self._clock = clock or SystemClock()
        self._sequences = sequence_service or SequenceService(session)

    def _last_hash(self, request_id: UUID) -> str | None:
        last = self._session.execute(
            select(AuditEntryModel.hash)
            .where(AuditEntryModel.request_id == request_id)
            .order_by(AuditEntryModel.seq.desc())
            .limit(1)
        ).scalar_one_or_none()
        return last

    def append(
        self,
        request_id: UUID,
        actor_id: UUID,
        action: AuditAction,
        field_name: str | None = None,
        old: Any = None,
        new: Any = None,
        comment: str | None = None,
    ) -> AuditEntryModel:
        """
        Append one entry to the history of ``request_id``.

        ``old`` and ``new`` are snapshotted to strings at write time.

        Postconditions:
            - A new row is flushed with the next global seq and a hash
              linked to the previous entry of the same request.
        """
        seq = self._sequences.next_value(SequenceService.AUDIT_ENTRY)
        prev_hash = self._last_hash(request_id)

        entry = AuditEntryModel(
            seq=seq,
            request_id=request_id,
            actor_id=actor_id,
            action=action,
            field_name=field_name,
            old_value=snapshot(old),
            new_value=snapshot(new),
            comment=comment,
            occurred_at=self._clock.now(),
            prev_hash=prev_hash,
        )
        entry.payload_hash = hash_payload(entry.hashed_payload())
        entry.hash = hash_audit_entry(
            request_id=str(request_id),
            action=action.value,
            payload_hash=entry.payload_hash,
            prev_hash=prev_hash,
        )

        self._session.add(entry)
        self._session.flush()

        logger.info(
            "audit_entry_appended",
            extra={
                "request_id": str(request_id),
                "action": action.value,
                "field_name": field_name,
                "seq": seq,
            },
        )
        return entry

    def history(self, request_id: UUID, newest_first: bool = False) -> list[AuditRecord]:
        """Entries of ``request_id`` in insertion order (or reversed for display)."""
        order = AuditEntryModel.seq.desc() if newest_first else AuditEntryModel.seq
        entries = self._session.execute(
            select(AuditEntryModel)
            .where(AuditEntryModel.request_id == request_id)
            .order_by(order)
        ).scalars().all()
        return [AuditRecord.from_model(e) for e in entries]

    def verify_chain(self, request_id: UUID) -> bool:
        """
        Recompute the hash chain of ``request_id``.

        Returns True when every entry's stored hash and prev_hash match.

        Raises:
            AuditChainBrokenError: At the first entry that does not verify.
        """
        entries = self._session.execute(
            select(AuditEntryModel)
            .where(AuditEntryModel.request_id == request_id)
            .order_by(AuditEntryModel.seq)
            .execution_options(populate_existing=True)
        ).scalars().all()

        expected_prev: str | None = None
        for entry in entries:
            if entry.prev_hash != expected_prev:
                logger.critical(
                    "audit_chain_broken",
                    extra={"request_id": str(request_id), "seq": entry.seq},
                )
                raise AuditChainBrokenError(
                    str(entry.id),
                    expected_prev or "None",
                    entry.prev_hash or "None",
                )

            payload_hash = hash_payload(entry.hashed_payload())
            expected_hash = hash_audit_entry(
                request_id=str(entry.request_id),
                action=entry.action.value,
                payload_hash=payload_hash,
                prev_hash=entry.prev_hash,
            )
            if payload_hash != entry.payload_hash or expected_hash != entry.hash:
                logger.critical(
                    "audit_chain_broken",
                    extra={"request_id": str(request_id), "seq": entry.seq},
                )
                raise AuditChainBrokenError(str(entry.id), expected_hash, entry.hash)

            expected_prev = entry.hash

        logger.info(
            "audit_chain_verified",
            extra={"request_id": str(request_id), "entry_count": len(entries)},
        )
        return True
