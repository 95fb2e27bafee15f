"""
SqlStateStore — session state in any SQLAlchemy-supported database.

One row per (session_id, key). ``put`` upserts the dirty keys present in
the document and deletes the dirty keys that are absent, inside a single
transaction.
"""
from __future__ import annotations

import structlog
from typing import Iterable

from sqlalchemy import and_, delete, select
from sqlalchemy.exc import SQLAlchemyError

from database.models import SessionStateRow
from database.session import get_session
from database.store_base import BaseStateStore
from engine.errors import CollaboratorError
from state.document import StateDocument

logger = structlog.get_logger()


class SqlStateStore(BaseStateStore):
    """Works with PostgreSQL, MySQL 8+, and SQLite."""

    async def get(self, session_id: str) -> StateDocument:
        try:
            async with get_session() as db:
                stmt = select(SessionStateRow).where(SessionStateRow.session_id == session_id)
                result = await db.execute(stmt)
                data = {row.key: row.value for row in result.scalars()}
        except SQLAlchemyError as e:
            logger.error("sql_store_read_failed", contact_id=session_id, error=str(e))
            raise CollaboratorError(f"Failed to read state for {session_id}: {e}", "store", session_id) from e
        return StateDocument(data)

    async def put(self, session_id: str, document: StateDocument, dirty_keys: Iterable[str]) -> None:
        keys = list(dirty_keys)
        deleted = [k for k in keys if k not in document]
        written = [k for k in keys if k in document]
        try:
            async with get_session() as db:
                if deleted:
                    await db.execute(delete(SessionStateRow).where(and_(
                        SessionStateRow.session_id == session_id,
                        SessionStateRow.key.in_(deleted),
                    )))
                for key in written:
                    row = await db.get(SessionStateRow, (session_id, key))
                    if row is None:
                        db.add(SessionStateRow(session_id=session_id, key=key, value=document[key]))
                    else:
                        row.value = document[key]
        except SQLAlchemyError as e:
            logger.error("sql_store_write_failed", contact_id=session_id, error=str(e))
            raise CollaboratorError(f"Failed to write state for {session_id}: {e}", "store", session_id) from e
        logger.debug("state_persisted", backend="sql", contact_id=session_id, written=written, deleted=deleted)
