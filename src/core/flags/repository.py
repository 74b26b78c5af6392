"""
Flag Repository: SQLite persistence for feature flag overrides.

All CRUD for the feature_flags table.  Write methods accept an open
connection so the service can combine the flag write and its audit row in
one FlagDatabase transaction; without one they open their own.
"""

from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Dict, Iterator, List, Optional, Sequence

from src.core.flags.context import Context
from src.core.flags.database import FlagDatabase
from src.core.flags.models import FlagRecord, FlagState

logger = logging.getLogger(__name__)


class FlagRepository:
    """SQLite-backed repository for FlagRecords."""

    def __init__(self, db: FlagDatabase):
        self._db = db

    @contextmanager
    def _conn(self, conn: Optional[sqlite3.Connection]) -> Iterator[sqlite3.Connection]:
        if conn is not None:
            yield conn
        else:
            with self._db.transaction() as own:
                yield own

    # -----------------------------------------------------------------------
    # Reads
    # -----------------------------------------------------------------------

    def find_at(
        self,
        feature: str,
        context: Context,
        conn: Optional[sqlite3.Connection] = None,
    ) -> Optional[FlagRecord]:
        """Fetch the override stored at exactly ``context``."""
        with self._conn(conn) as c:
            row = c.execute(
                """SELECT * FROM feature_flags
                   WHERE feature = ? AND context_type = ? AND context_id = ?""",
                (feature, context.context_type, context.id),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_record(row)

    def fetch_chain(self, feature: str, contexts: Sequence[Context]) -> Dict[str, FlagRecord]:
        """Fetch every override of ``feature`` along a context chain.

        One SELECT, so the result is a single consistent snapshot; a
        narrower record can never appear next to a stale wider one.

        Returns:
            Mapping of context key ("Account:1") to FlagRecord.
        """
        if not contexts:
            return {}
        clauses = " OR ".join(["(context_type = ? AND context_id = ?)"] * len(contexts))
        params: list = [feature]
        for context in contexts:
            params.extend([context.context_type, context.id])

        with self._db.transaction() as conn:
            rows = conn.execute(
                f"SELECT * FROM feature_flags WHERE feature = ? AND ({clauses})",
                params,
            ).fetchall()

        records = [self._row_to_record(row) for row in rows]
        return {r.context_key: r for r in records}

    def list_for_context(self, context: Context) -> List[FlagRecord]:
        """All overrides stored at exactly ``context``."""
        with self._db.transaction() as conn:
            rows = conn.execute(
                """SELECT * FROM feature_flags
                   WHERE context_type = ? AND context_id = ? ORDER BY feature""",
                (context.context_type, context.id),
            ).fetchall()
        return [self._row_to_record(row) for row in rows]

    def count(self) -> int:
        with self._db.transaction() as conn:
            row = conn.execute("SELECT COUNT(*) FROM feature_flags").fetchone()
        return row[0]

    # -----------------------------------------------------------------------
    # Writes
    # -----------------------------------------------------------------------

    def insert(self, record: FlagRecord, conn: Optional[sqlite3.Connection] = None) -> FlagRecord:
        """Insert a new override.

        Raises:
            sqlite3.IntegrityError: If another override already exists for
                the same (feature, context).
        """
        with self._conn(conn) as c:
            c.execute(
                """INSERT INTO feature_flags
                   (id, feature, context_type, context_id, state, locking_account_id,
                    updated_by, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, NULL, ?, ?, ?)""",
                (
                    record.id,
                    record.feature,
                    record.context_type,
                    record.context_id,
                    record.state.value,
                    record.updated_by,
                    record.created_at.isoformat(),
                    record.updated_at.isoformat(),
                ),
            )
        logger.debug("Flag inserted: %s on %s = %s", record.feature, record.context_key, record.state.value)
        return record

    def update_state(
        self,
        record: FlagRecord,
        state: FlagState,
        actor_id: Optional[str],
        conn: Optional[sqlite3.Connection] = None,
    ) -> FlagRecord:
        """Change the state of an existing override in place."""
        now = datetime.now(timezone.utc)
        with self._conn(conn) as c:
            cursor = c.execute(
                "UPDATE feature_flags SET state = ?, updated_by = ?, updated_at = ? WHERE id = ?",
                (state.value, actor_id, now.isoformat(), record.id),
            )
            if cursor.rowcount == 0:
                raise ValueError(f"Flag not found: {record.id}")
        return record.model_copy(update={"state": state, "updated_by": actor_id, "updated_at": now})

    def delete(self, record: FlagRecord, conn: Optional[sqlite3.Connection] = None) -> bool:
        """Hard delete an override.  Returns False if it was already gone."""
        with self._conn(conn) as c:
            cursor = c.execute("DELETE FROM feature_flags WHERE id = ?", (record.id,))
        return cursor.rowcount > 0

    # -----------------------------------------------------------------------
    # Internal helpers
    # -----------------------------------------------------------------------

    @staticmethod
    def _row_to_record(row) -> FlagRecord:
        """Convert a sqlite3.Row to a FlagRecord."""
        return FlagRecord(
            id=row["id"],
            feature=row["feature"],
            context_type=row["context_type"],
            context_id=row["context_id"],
            state=FlagState(row["state"]),
            updated_by=row["updated_by"],
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )
