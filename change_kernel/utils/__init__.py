"""Utility modules for the change kernel."""

from change_kernel.utils.hashing import (
    canonicalize_json,
    hash_audit_entry,
    hash_payload,
    snapshot,
)

__all__ = [
    "canonicalize_json",
    "hash_audit_entry",
    "hash_payload",
    "snapshot",
]
