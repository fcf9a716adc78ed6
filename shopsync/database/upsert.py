"""
Dialect-aware upserts

INSERT ... ON CONFLICT DO UPDATE for PostgreSQL and SQLite, keyed on a
table's natural key.
"""

from typing import Any, Dict, Iterable, List, Sequence

from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from shopsync.errors import ConfigurationError


def dialect_name(session: AsyncSession) -> str:
    """Name of the dialect the session is bound to"""
    return session.get_bind().dialect.name


def upsert_statement(
    dialect: str,
    model: Any,
    rows: List[Dict[str, Any]],
    index_elements: Sequence[str],
    update_columns: Iterable[str],
):
    """
    Build a multi-row upsert.
    
    Args:
        dialect: "postgresql" or "sqlite"
        model: Mapped class to insert into
        rows: Row dicts, all with the same keys
        index_elements: Natural key columns the conflict is detected on
        update_columns: Columns overwritten from the incoming row on conflict
    """
    if dialect == "postgresql":
        insert_stmt = pg_insert(model).values(rows)
    elif dialect == "sqlite":
        insert_stmt = sqlite_insert(model).values(rows)
    else:
        raise ConfigurationError(f"Upserts are not supported on dialect {dialect}")
    
    set_map = {column: insert_stmt.excluded[column] for column in update_columns}
    return insert_stmt.on_conflict_do_update(
        index_elements=list(index_elements),
        set_=set_map,
    )


async def upsert_rows(
    session: AsyncSession,
    model: Any,
    rows: List[Dict[str, Any]],
    index_elements: Sequence[str],
    chunk_size: int = 500,
) -> int:
    """
    Upsert rows in chunks, overwriting every non-key column on conflict.
    
    Returns:
        Number of rows written
    """
    if not rows:
        return 0
    
    dialect = dialect_name(session)
    update_columns = [key for key in rows[0] if key not in index_elements]
    written = 0
    for i in range(0, len(rows), chunk_size):
        chunk = rows[i:i + chunk_size]
        stmt = upsert_statement(dialect, model, chunk, index_elements, update_columns)
        await session.execute(stmt)
        written += len(chunk)
    return written
