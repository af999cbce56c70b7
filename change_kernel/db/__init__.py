"""Database layer - engine, base classes, types, and immutability."""

from change_kernel.db.base import UUID, Base, EnumValue, UTCDateTime, UUIDString
from change_kernel.db.engine import (
    create_tables,
    drop_tables,
    init_engine_from_url,
    make_session_factory,
    session_scope,
)
from change_kernel.db.types import round_money, to_decimal

__all__ = [
    "Base",
    "EnumValue",
    "UUID",
    "UUIDString",
    "UTCDateTime",
    "round_money",
    "to_decimal",
    "create_tables",
    "drop_tables",
    "init_engine_from_url",
    "make_session_factory",
    "session_scope",
]
