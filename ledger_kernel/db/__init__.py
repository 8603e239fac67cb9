"""Database layer - engine, base classes, types, and immutability."""

from ledger_kernel.db.base import Base, TimestampedBase, UTCDateTime, UUIDString
from ledger_kernel.db.engine import (
    create_tables,
    get_engine,
    get_session,
    get_session_factory,
    init_engine_from_url,
    reset_engine,
    session_scope,
)

__all__ = [
    "init_engine_from_url",
    "get_engine",
    "get_session",
    "get_session_factory",
    "session_scope",
    "create_tables",
    "reset_engine",
    "Base",
    "TimestampedBase",
    "UTCDateTime",
    "UUIDString",
]
