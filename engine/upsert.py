"""Conflict-tolerant inserts.

``insert_or_ignore`` expresses "insert unless a row with the same unique key
already exists" as an explicit ``ON CONFLICT DO NOTHING`` for the dialects we
run on, so callers branch on the returned id instead of catching
driver-specific unique-violation errors.
"""

from __future__ import annotations

import logging
from typing import Any, Sequence

from sqlalchemy import insert
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)


async def insert_or_ignore(
    db: AsyncSession,
    entity: Any,
    values: dict[str, Any],
    conflict_columns: Sequence[str],
) -> Any | None:
    """Insert ``values`` into ``entity``'s table.

    Returns the primary key of the new row, or None when a row with the same
    ``conflict_columns`` already exists (possibly written by a concurrent
    transaction that won the race).
    """
    pk = entity.__mapper__.primary_key[0]
    dialect = db.bind.dialect.name

    if dialect in ("postgresql", "sqlite"):
        module = postgresql if dialect == "postgresql" else sqlite
        stmt = (
            module.insert(entity)
            .values(**values)
            .on_conflict_do_nothing(index_elements=list(conflict_columns))
            .returning(pk)
        )
        result = await db.execute(stmt)
        return result.scalar_one_or_none()

    # Other dialects: isolate the attempt in a savepoint.
    try:
        async with db.begin_nested():
            result = await db.execute(insert(entity).values(**values).returning(pk))
            return result.scalar_one()
    except IntegrityError:
        logger.debug("Insert into %s suppressed as duplicate", entity.__tablename__)
        return None
