"""Database layer - engine, base classes and column types."""

from escrow_kernel.db.base import UUID, Base, TrackedBase, UTCDateTime, UUIDString
from escrow_kernel.db.engine import create_tables, get_engine, get_session

__all__ = [
    "get_engine",
    "get_session",
    "create_tables",
    "Base",
    "TrackedBase",
    "UTCDateTime",
    "UUIDString",
    "UUID",
]
