"""
Change Kernel - change request approval workflow

A transactional, append-only change-order workflow with:
- Scope-unique sequential numbering
- Sequential multi-party approval chains
- Derived value/schedule recalculation persisted with its inputs
- Immutable, hash-chained audit history
- Best-effort notification outbox
"""

__version__ = "0.1.0"
