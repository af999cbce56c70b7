"""
Module: change_kernel.models.sequence
Responsibility: Named counter rows behind SequenceService.

Each row is a named sequence with its current value.  Row-level locking
(``SELECT ... FOR UPDATE``) in SequenceService keeps allocation monotonic
under concurrency.
"""

from sqlalchemy import BigInteger, String
from sqlalchemy.orm import Mapped, mapped_column

from change_kernel.db.base import Base


class SequenceCounter(Base):
    """Sequence counter table."""

    __tablename__ = "sequence_counters"

    # Sequence name (e.g., "audit_entry", "change_request:<scope id>")
    name: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
        unique=True,
    )

    current_value: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
        default=0,
    )

    def __repr__(self) -> str:
        return f"<SequenceCounter {self.name}={self.current_value}>"
