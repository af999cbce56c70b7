"""
Module: change_kernel.models.audit_entry
Responsibility: ORM persistence for the per-request, hash-chained audit trail.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - Audit entries are append-only; no UPDATE or DELETE (db/immutability.py).
    - seq is globally unique and monotonically increasing, allocated by
      SequenceService from a locked counter row.
    - hash = H(request_id | action | payload_hash | prev_hash), where
      prev_hash is the hash of the previous entry of the same request.
      Validated by AuditTrail.verify_chain().

Failure modes:
    - ImmutabilityViolationError on any UPDATE/DELETE attempt.
    - AuditChainBrokenError when chain validation detects a hash mismatch.

Audit relevance:
    AuditEntry IS the history of a change request.  Every field edit,
    derived-field recalculation, lifecycle transition and approval decision
    produces one entry.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from uuid import UUID

from sqlalchemy import BigInteger, ForeignKey, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from change_kernel.db.base import Base, EnumValue, UUIDString


class AuditAction(str, Enum):
    """Kinds of auditable change request actions."""

    # Record lifecycle
    CREATED = "created"
    UPDATED = "updated"
    RECALCULATED = "recalculated"
    SUBMITTED = "submitted"
    APPROVED = "approved"
    REJECTED = "rejected"
    STATUS_CHANGED = "status_changed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    REOPENED = "reopened"

    # Approval chain
    APPROVERS_ASSIGNED = "approvers_assigned"
    APPROVAL_GRANTED = "approval_granted"
    APPROVAL_REJECTED = "approval_rejected"
    STEPS_CANCELLED = "steps_cancelled"

    # Cost line items
    COST_ITEM_ADDED = "cost_item_added"
    COST_ITEM_UPDATED = "cost_item_updated"
    COST_ITEM_REMOVED = "cost_item_removed"


class AuditEntryModel(Base):
    """
    Audit entry with per-request hash chain for tamper evidence.

    Guarantees:
        - prev_hash is None only for the first entry of a request.
        - old_value / new_value are string snapshots taken at write time.

    Non-goals:
        - This model does NOT enforce hash correctness at INSERT time;
          that is the responsibility of AuditTrail.
    """

    __tablename__ = "change_audit_entries"

    __table_args__ = (
        Index("ix_change_audit_request_seq", "request_id", "seq"),
        Index("ix_change_audit_action", "action"),
    )

    seq: Mapped[int] = mapped_column(BigInteger, nullable=False, unique=True)

    request_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("change_requests.id"),
        nullable=False,
    )
    actor_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    action: Mapped[AuditAction] = mapped_column(EnumValue(AuditAction), nullable=False)

    field_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    old_value: Mapped[str | None] = mapped_column(Text, nullable=True)
    new_value: Mapped[str | None] = mapped_column(Text, nullable=True)
    comment: Mapped[str | None] = mapped_column(Text, nullable=True)

    occurred_at: Mapped[datetime] = mapped_column(nullable=False)

    payload_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    prev_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    hash: Mapped[str] = mapped_column(String(64), nullable=False)

    def __repr__(self) -> str:
        return f"<AuditEntry {self.seq} {self.action.value} on {self.request_id}>"

    @property
    def is_genesis(self) -> bool:
        return self.prev_hash is None

    def hashed_payload(self) -> dict[str, str | None]:
        """The fields covered by payload_hash."""
        return {
            "actor_id": str(self.actor_id),
            "field_name": self.field_name,
            "old_value": self.old_value,
            "new_value": self.new_value,
            "comment": self.comment,
            "occurred_at": self.occurred_at.isoformat(),
        }
