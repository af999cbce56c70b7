"""
Injectable time source.

Every timestamp the kernel writes comes from a ``Clock`` handed to the
service constructors:

* request lifecycle stamps (``created_at``, ``submitted_at``,
  ``approved_at``, ``rejected_at`` and the rest);
* step decision times;
* audit entry times;
* outbox enqueue and delivery times.

No service calls ``datetime.now()`` itself.  Times are always
timezone-aware UTC, matching the ``UTCDateTime`` column type, which
refuses naive values.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone

DEFAULT_TEST_EPOCH = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


class Clock(ABC):
    """Source of the current UTC time."""

    @abstractmethod
    def now(self) -> datetime:
        ...


class SystemClock(Clock):
    """Wall-clock time."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class DeterministicClock(Clock):
    """
    A clock that only moves when told to.

    ``now()`` is stable between calls, so every stamp written by one
    workflow operation carries the same instant.  Tests move time forward
    with ``advance`` to separate submission from approval and so on.
    """

    def __init__(self, start: datetime = DEFAULT_TEST_EPOCH):
        if start.tzinfo is None:
            raise ValueError("DeterministicClock needs a timezone-aware start time")
        self._now = start.astimezone(timezone.utc)

    def now(self) -> datetime:
        return self._now

    def advance(self, seconds: int = 0, *, days: int = 0) -> datetime:
        """Move forward and return the new time."""
        if seconds < 0 or days < 0:
            raise ValueError("DeterministicClock cannot move backwards")
        self._now += timedelta(days=days, seconds=seconds)
        return self._now
