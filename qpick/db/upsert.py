"""Dialect-aware INSERT ... ON CONFLICT helpers.

Mutable shared state (watches, push registrations, cooldowns, processed
markers) is only ever written through a single upsert keyed by a unique
constraint. PostgreSQL and SQLite expose the same ``on_conflict_*`` API on
their dialect-specific ``insert`` constructs.
"""

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession


def insert_for(session: AsyncSession, model):
    """Return the dialect-specific ``insert(model)`` for the session's bind."""
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert(model)
    if dialect == "sqlite":
        return sqlite.insert(model)
    raise NotImplementedError(f"Upsert not supported for dialect: {dialect}")


async def upsert(
    session: AsyncSession,
    model,
    values: dict,
    conflict_columns: list[str],
    update_columns: list[str],
) -> None:
    """Insert ``values`` or update ``update_columns`` on a unique-key conflict."""
    stmt = insert_for(session, model).values(**values)
    stmt = stmt.on_conflict_do_update(
        index_elements=conflict_columns,
        set_={column: stmt.excluded[column] for column in update_columns},
    )
    await session.execute(stmt)


async def insert_ignore(
    session: AsyncSession,
    model,
    values: dict,
    conflict_columns: list[str],
    returning=None,
):
    """
    Insert ``values`` unless the unique key already exists.

    Args:
        returning: Optional column to return; the result is None when the
                   row already existed.
    """
    stmt = insert_for(session, model).values(**values)
    stmt = stmt.on_conflict_do_nothing(index_elements=conflict_columns)
    if returning is not None:
        stmt = stmt.returning(returning)
        result = await session.execute(stmt)
        return result.scalar_one_or_none()
    await session.execute(stmt)
    return None
