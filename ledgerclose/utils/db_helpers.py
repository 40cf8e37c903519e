"""
LedgerClose - Database Helpers

Dialect-aware INSERT ... ON CONFLICT support. PostgreSQL runs in
production; SQLite backs the test suite.
"""

from typing import Any

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession


def dialect_insert(db: AsyncSession, table: Any):
    """
    Build an INSERT for the session's dialect that supports
    on_conflict_do_nothing / on_conflict_do_update.
    """
    dialect_name = db.get_bind().dialect.name
    if dialect_name == "postgresql":
        return postgresql.insert(table)
    if dialect_name == "sqlite":
        return sqlite.insert(table)
    raise NotImplementedError(f"Upsert not supported for dialect {dialect_name}")


def is_postgresql(db: AsyncSession) -> bool:
    return db.get_bind().dialect.name == "postgresql"
