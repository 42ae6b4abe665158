"""Database layer - engine, declarative base and transaction scopes."""

from tranche_kernel.db.base import Base, TrackedBase, UUIDString
from tranche_kernel.db.engine import (
    create_sqlite_engine,
    create_tables,
    get_engine,
    get_session_factory,
    init_engine_from_url,
    reset_engine,
    session_scope,
    transaction_scope,
)

__all__ = [
    "Base",
    "TrackedBase",
    "UUIDString",
    "create_sqlite_engine",
    "create_tables",
    "get_engine",
    "get_session_factory",
    "init_engine_from_url",
    "reset_engine",
    "session_scope",
    "transaction_scope",
]
