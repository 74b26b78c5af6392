"""
Flag Database: SQLite persistence for feature flag overrides and audit.

Thread-safe, WAL-mode database with schema versioning and migration support.
A unique index on (feature, context_type, context_id) guarantees at most
one override per feature per context; concurrent creators race on it.
"""

from __future__ import annotations

import logging
import os
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator, List

logger = logging.getLogger(__name__)

_DB_FILE = "feature_flags.sqlite"

SCHEMA_V1 = """
-- Feature flag schema version 1

CREATE TABLE IF NOT EXISTS flags_schema_version (
    version INTEGER PRIMARY KEY,
    applied_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS feature_flags (
    id TEXT PRIMARY KEY,
    feature TEXT NOT NULL,
    context_type TEXT NOT NULL,
    context_id TEXT NOT NULL,
    state TEXT NOT NULL DEFAULT 'allowed',
    locking_account_id TEXT,
    updated_by TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_feature_flags_feature_context
    ON feature_flags(feature, context_type, context_id);
CREATE INDEX IF NOT EXISTS idx_feature_flags_context
    ON feature_flags(context_type, context_id);
"""


SCHEMA_V2 = """
-- Feature flag schema version 2: audit log

CREATE TABLE IF NOT EXISTS feature_flag_audit (
    id TEXT PRIMARY KEY,
    feature TEXT NOT NULL,
    context_type TEXT NOT NULL,
    context_id TEXT NOT NULL,
    actor_id TEXT,
    action TEXT NOT NULL,
    prior_state TEXT,
    new_state TEXT NOT NULL,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_flag_audit_feature ON feature_flag_audit(feature);
CREATE INDEX IF NOT EXISTS idx_flag_audit_context
    ON feature_flag_audit(context_type, context_id);
CREATE INDEX IF NOT EXISTS idx_flag_audit_created ON feature_flag_audit(created_at);
"""


# version -> DDL that brings the schema from version-1 up to version
MIGRATIONS = {
    1: SCHEMA_V1,
    2: SCHEMA_V2,
}


class FlagDatabase:
    """SQLite store shared by the repository and the audit log.

    Each thread gets its own connection.  Every connection handed out is
    remembered so close() can release all of them, not just the caller's.
    """

    CURRENT_SCHEMA_VERSION = max(MIGRATIONS)

    def __init__(self, data_dir: str = "data/flags", busy_timeout: float = 30.0):
        os.makedirs(data_dir, exist_ok=True)
        self._db_path = os.path.join(data_dir, _DB_FILE)
        self._busy_timeout = busy_timeout
        self._local = threading.local()
        self._opened: List[sqlite3.Connection] = []
        self._opened_lock = threading.Lock()

        self._migrate()

    def _connection(self) -> sqlite3.Connection:
        conn = getattr(self._local, "conn", None)
        if conn is None:
            conn = sqlite3.connect(self._db_path, timeout=self._busy_timeout, check_same_thread=False)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=NORMAL")
            self._local.conn = conn
            with self._opened_lock:
                self._opened.append(conn)
        return conn

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Yield this thread's connection; commit on success, roll back on error."""
        conn = self._connection()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise

    # -----------------------------------------------------------------------
    # Schema
    # -----------------------------------------------------------------------

    @property
    def schema_version(self) -> int:
        """Highest applied migration, 0 for a fresh file."""
        conn = self._connection()
        has_table = conn.execute(
            "SELECT 1 FROM sqlite_master WHERE type='table' AND name='flags_schema_version'"
        ).fetchone()
        if not has_table:
            return 0
        row = conn.execute("SELECT MAX(version) FROM flags_schema_version").fetchone()
        return row[0] or 0

    def _migrate(self) -> None:
        current = self.schema_version
        if current >= self.CURRENT_SCHEMA_VERSION:
            return
        conn = self._connection()
        for version in range(current + 1, self.CURRENT_SCHEMA_VERSION + 1):
            conn.executescript(MIGRATIONS[version])
            conn.execute(
                "INSERT INTO flags_schema_version (version, applied_at) VALUES (?, ?)",
                (version, datetime.now(timezone.utc).isoformat()),
            )
            conn.commit()
            logger.info("Feature flag schema migrated to version %d (%s)", version, self._db_path)

    # -----------------------------------------------------------------------
    # Lifecycle
    # -----------------------------------------------------------------------

    @property
    def db_path(self) -> str:
        return self._db_path

    def close(self) -> None:
        """Close every connection this database has opened, on any thread."""
        with self._opened_lock:
            opened, self._opened = self._opened, []
        for conn in opened:
            conn.close()
        self._local = threading.local()
