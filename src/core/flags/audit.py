"""
Flag Audit Log: append-only record of feature flag changes.

Rows are written inside the same transaction as the flag change they
describe and are never updated or deleted.  The resolver never reads them;
entries() exists for reporting.
"""

from __future__ import annotations

import logging
import sqlite3
from datetime import datetime
from typing import List, Optional

from src.core.flags.context import Context
from src.core.flags.database import FlagDatabase
from src.core.flags.models import AuditAction, AuditLogEntry

logger = logging.getLogger(__name__)


class AuditLog:
    """SQLite-backed, append-only flag audit log."""

    def __init__(self, db: FlagDatabase):
        self._db = db

    def append(self, entry: AuditLogEntry, conn: Optional[sqlite3.Connection] = None) -> AuditLogEntry:
        params = (
            entry.id,
            entry.feature,
            entry.context_type,
            entry.context_id,
            entry.actor_id,
            entry.action.value,
            entry.prior_state,
            entry.new_state,
            entry.created_at.isoformat(),
        )
        sql = """INSERT INTO feature_flag_audit
                 (id, feature, context_type, context_id, actor_id, action,
                  prior_state, new_state, created_at)
                 VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)"""
        if conn is not None:
            conn.execute(sql, params)
        else:
            with self._db.transaction() as own:
                own.execute(sql, params)

        logger.info(
            "Flag audit: %s %s on %s:%s by %s (%s -> %s)",
            entry.action.value, entry.feature, entry.context_type, entry.context_id,
            entry.actor_id or "system", entry.prior_state, entry.new_state,
        )
        return entry

    def entries(
        self,
        feature: Optional[str] = None,
        context: Optional[Context] = None,
        limit: int = 100,
    ) -> List[AuditLogEntry]:
        """Most recent entries first, optionally filtered."""
        where = []
        params: list = []
        if feature is not None:
            where.append("feature = ?")
            params.append(feature)
        if context is not None:
            where.append("context_type = ? AND context_id = ?")
            params.extend([context.context_type, context.id])

        sql = "SELECT * FROM feature_flag_audit"
        if where:
            sql += " WHERE " + " AND ".join(where)
        sql += " ORDER BY created_at DESC, rowid DESC LIMIT ?"
        params.append(limit)

        with self._db.transaction() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [self._row_to_entry(row) for row in rows]

    def count(self, feature: Optional[str] = None) -> int:
        with self._db.transaction() as conn:
            if feature is None:
                row = conn.execute("SELECT COUNT(*) FROM feature_flag_audit").fetchone()
            else:
                row = conn.execute(
                    "SELECT COUNT(*) FROM feature_flag_audit WHERE feature = ?", (feature,)
                ).fetchone()
        return row[0]

    @staticmethod
    def _row_to_entry(row) -> AuditLogEntry:
        return AuditLogEntry(
            id=row["id"],
            feature=row["feature"],
            context_type=row["context_type"],
            context_id=row["context_id"],
            actor_id=row["actor_id"],
            action=AuditAction(row["action"]),
            prior_state=row["prior_state"],
            new_state=row["new_state"],
            created_at=datetime.fromisoformat(row["created_at"]),
        )
