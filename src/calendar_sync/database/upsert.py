"""Dialect-aware INSERT ... ON CONFLICT DO UPDATE.

PostgreSQL and SQLite both support upsert with an explicit conflict target;
SQLAlchemy exposes it through dialect-specific `insert()` constructs.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any

from sqlalchemy.dialects import postgresql, sqlite

from calendar_sync.database.connection import dialect_name


def upsert_statement(
    model: Any,
    rows: Sequence[dict[str, Any]],
    conflict_columns: Sequence[str],
    update_columns: Sequence[str],
):
    """Build a multi-row upsert for `model`.

    Args:
        model: Mapped class to insert into
        rows: Column values, one dict per row
        conflict_columns: Columns of the unique constraint used as conflict target
        update_columns: Columns overwritten from the incoming row on conflict
    """
    dialect = dialect_name()
    if dialect == "postgresql":
        insert = postgresql.insert
    elif dialect == "sqlite":
        insert = sqlite.insert
    else:
        raise NotImplementedError(f"Upsert not supported for dialect {dialect}")

    stmt = insert(model).values(list(rows))
    return stmt.on_conflict_do_update(
        index_elements=list(conflict_columns),
        set_={column: stmt.excluded[column] for column in update_columns},
    )
