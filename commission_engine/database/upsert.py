"""Dialect-aware INSERT ... ON CONFLICT statements.

PostgreSQL and SQLite share the ``on_conflict_do_nothing`` /
``on_conflict_do_update`` API; this picks the right construct for the bound
dialect so upserts stay single atomic statements on both.
"""
from typing import Any

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

SUPPORTED_DIALECTS = ("postgresql", "sqlite")


def insert_for(db: AsyncSession, model: Any) -> Any:
    """
    Build an INSERT construct supporting ON CONFLICT for the session's dialect.

    Args:
        db: Database session
        model: Mapped class to insert into

    Returns:
        Insert: dialect-specific insert statement

    Raises:
        ValueError: If the dialect has no ON CONFLICT support here
    """
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert(model)
    if dialect == "sqlite":
        return sqlite.insert(model)
    raise ValueError(f"Upserts are not supported on dialect {dialect!r}")
