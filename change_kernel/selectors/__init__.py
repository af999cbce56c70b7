"""Selectors for the change kernel (read side)."""

from change_kernel.selectors.change_request_selector import (
    ChangeRequestSelector,
    ChangeRequestStatistics,
)

__all__ = [
    "ChangeRequestSelector",
    "ChangeRequestStatistics",
]
