"""SQLite reference collaborators.

A host platform normally provides its own content store, file catalog,
usage ledger and cache invalidation. These implementations satisfy the
protocols in :mod:`filelink_usage.interfaces` on top of plain SQLite tables
so the service, CLI and tests can run against a single database file.
"""

from __future__ import annotations

import json
import logging
import posixpath
import sqlite3
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Set, Tuple

from .metrics import collector

logger = logging.getLogger(__name__)


class _SqliteBackend:
    """Connection and schema handling shared by the reference collaborators."""

    SCHEMA_SQL = ""

    def __init__(self, db_path: str) -> None:
        self.db_path = db_path
        if db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn: Optional[sqlite3.Connection] = None
        self._ensure_schema()

    def _get_conn(self) -> sqlite3.Connection:
        if self._conn is None:
            self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA busy_timeout = 5000")
        return self._conn

    def _ensure_schema(self) -> None:
        conn = self._get_conn()
        for stmt in self.SCHEMA_SQL.split(";"):
            stmt = stmt.strip()
            if stmt:
                conn.execute(stmt)
        conn.commit()

    def close(self) -> None:
        if self._conn:
            self._conn.close()
            self._conn = None


# ---------------------------------------------------------------------------
# Content store
# ---------------------------------------------------------------------------

class SqliteContentStore(_SqliteBackend):
    """Owners with their text payloads and optional rendered markup."""

    SCHEMA_SQL = """
    CREATE TABLE IF NOT EXISTS content_owners (
        owner_type TEXT NOT NULL,
        owner_id INTEGER NOT NULL,
        payloads TEXT NOT NULL DEFAULT '[]',
        rendered TEXT,
        updated_at REAL,
        PRIMARY KEY (owner_type, owner_id)
    );
    """

    def __init__(self, db_path: str, owner_types: Optional[Sequence[str]] = None) -> None:
        self._owner_types = list(owner_types) if owner_types else None
        super().__init__(db_path)

    def owner_types(self) -> List[str]:
        if self._owner_types is not None:
            return list(self._owner_types)
        rows = self._get_conn().execute(
            "SELECT DISTINCT owner_type FROM content_owners ORDER BY owner_type"
        ).fetchall()
        return [r["owner_type"] for r in rows]

    def list_owner_ids(self, owner_type: str, after_id: int, limit: int) -> List[int]:
        rows = self._get_conn().execute(
            """SELECT owner_id FROM content_owners
               WHERE owner_type = ? AND owner_id > ?
               ORDER BY owner_id LIMIT ?""",
            (owner_type, after_id, limit),
        ).fetchall()
        return [int(r["owner_id"]) for r in rows]

    def load_payloads(self, owner_type: str, owner_id: int) -> Optional[List[str]]:
        row = self._get_conn().execute(
            "SELECT payloads FROM content_owners WHERE owner_type = ? AND owner_id = ?",
            (owner_type, owner_id),
        ).fetchone()
        if row is None:
            return None
        payloads = json.loads(row["payloads"] or "[]")
        return [p for p in payloads if isinstance(p, str)]

    def render(self, owner_type: str, owner_id: int) -> Optional[str]:
        row = self._get_conn().execute(
            "SELECT rendered FROM content_owners WHERE owner_type = ? AND owner_id = ?",
            (owner_type, owner_id),
        ).fetchone()
        return row["rendered"] if row else None

    def save_owner(
        self,
        owner_type: str,
        owner_id: int,
        payloads: Sequence[Optional[str]],
        rendered: Optional[str] = None,
        updated_at: Optional[float] = None,
    ) -> None:
        """Create or replace an owner's payloads."""
        conn = self._get_conn()
        conn.execute(
            """INSERT OR REPLACE INTO content_owners
                   (owner_type, owner_id, payloads, rendered, updated_at)
               VALUES (?, ?, ?, ?, ?)""",
            (owner_type, owner_id, json.dumps(list(payloads)), rendered, updated_at),
        )
        conn.commit()

    def delete_owner(self, owner_type: str, owner_id: int) -> bool:
        conn = self._get_conn()
        cur = conn.execute(
            "DELETE FROM content_owners WHERE owner_type = ? AND owner_id = ?",
            (owner_type, owner_id),
        )
        conn.commit()
        return cur.rowcount > 0


# ---------------------------------------------------------------------------
# File catalog (File Resolver)
# ---------------------------------------------------------------------------

def _filename(uri: str) -> str:
    path = uri.split("://", 1)[-1]
    return posixpath.basename(path.rstrip("/"))


class SqliteFileCatalog(_SqliteBackend):
    """Managed files keyed by id, with their stored URI and filename."""

    SCHEMA_SQL = """
    CREATE TABLE IF NOT EXISTS managed_files (
        fid INTEGER PRIMARY KEY AUTOINCREMENT,
        uri TEXT NOT NULL UNIQUE,
        filename TEXT NOT NULL
    );

    CREATE INDEX IF NOT EXISTS idx_managed_files_filename ON managed_files(filename);
    """

    def add_file(self, uri: str, file_id: Optional[int] = None) -> int:
        """Register a file and return its id."""
        conn = self._get_conn()
        if file_id is None:
            cur = conn.execute(
                "INSERT INTO managed_files (uri, filename) VALUES (?, ?)",
                (uri, _filename(uri)),
            )
            file_id = int(cur.lastrowid)
        else:
            conn.execute(
                "INSERT INTO managed_files (fid, uri, filename) VALUES (?, ?, ?)",
                (file_id, uri, _filename(uri)),
            )
        conn.commit()
        return file_id

    def delete_file(self, file_id: int) -> bool:
        conn = self._get_conn()
        cur = conn.execute("DELETE FROM managed_files WHERE fid = ?", (file_id,))
        conn.commit()
        return cur.rowcount > 0

    def resolve_uri(self, uri: str) -> Optional[int]:
        row = self._get_conn().execute(
            "SELECT fid FROM managed_files WHERE uri = ?", (uri,)
        ).fetchone()
        return int(row["fid"]) if row else None

    def resolve_file(self, file_id: int) -> Optional[str]:
        row = self._get_conn().execute(
            "SELECT uri FROM managed_files WHERE fid = ?", (file_id,)
        ).fetchone()
        return row["uri"] if row else None

    def find_by_filename(self, filename: str) -> List[Tuple[int, str]]:
        rows = self._get_conn().execute(
            "SELECT fid, uri FROM managed_files WHERE filename = ? ORDER BY fid",
            (filename,),
        ).fetchall()
        return [(int(r["fid"]), r["uri"]) for r in rows]


# ---------------------------------------------------------------------------
# Usage ledger
# ---------------------------------------------------------------------------

class SqliteUsageLedger(_SqliteBackend):
    """Reference-counted usage records, one row per (file, namespace, type, id)."""

    SCHEMA_SQL = """
    CREATE TABLE IF NOT EXISTS file_usage (
        fid INTEGER NOT NULL,
        module TEXT NOT NULL,
        type TEXT NOT NULL,
        id INTEGER NOT NULL,
        count INTEGER NOT NULL DEFAULT 0,
        PRIMARY KEY (fid, module, type, id)
    );

    CREATE INDEX IF NOT EXISTS idx_file_usage_owner ON file_usage(module, type, id);
    """

    def add(self, file_id: int, namespace: str, owner_type: str, owner_id: int, count: int = 1) -> None:
        conn = self._get_conn()
        conn.execute(
            """INSERT INTO file_usage (fid, module, type, id, count) VALUES (?, ?, ?, ?, ?)
               ON CONFLICT (fid, module, type, id) DO UPDATE SET count = count + excluded.count""",
            (file_id, namespace, owner_type, owner_id, count),
        )
        conn.commit()

    def remove(self, file_id: int, namespace: str, owner_type: str, owner_id: int, count: int = 1) -> None:
        conn = self._get_conn()
        key = (file_id, namespace, owner_type, owner_id)
        conn.execute(
            "UPDATE file_usage SET count = count - ? WHERE fid = ? AND module = ? AND type = ? AND id = ?",
            (count, *key),
        )
        conn.execute(
            "DELETE FROM file_usage WHERE fid = ? AND module = ? AND type = ? AND id = ? AND count <= 0",
            key,
        )
        conn.commit()

    def list_usage(self, file_id: int) -> Dict[str, Dict[str, Dict[int, int]]]:
        rows = self._get_conn().execute(
            "SELECT module, type, id, count FROM file_usage WHERE fid = ? AND count > 0",
            (file_id,),
        ).fetchall()
        usage: Dict[str, Dict[str, Dict[int, int]]] = {}
        for r in rows:
            usage.setdefault(r["module"], {}).setdefault(r["type"], {})[int(r["id"])] = int(r["count"])
        return usage

    def list_owner_usage(self, namespace: str, owner_type: str, owner_id: int) -> Dict[int, int]:
        rows = self._get_conn().execute(
            """SELECT fid, count FROM file_usage
               WHERE module = ? AND type = ? AND id = ? AND count > 0""",
            (namespace, owner_type, owner_id),
        ).fetchall()
        return {int(r["fid"]): int(r["count"]) for r in rows}


# ---------------------------------------------------------------------------
# Invalidation
# ---------------------------------------------------------------------------

class LoggingInvalidationSink:
    """Invalidation sink that only logs and counts.

    Stands in for a cache-tag invalidator when the tracker runs standalone.
    """

    def invalidate(self, file_ids: Set[int]) -> None:
        if not file_ids:
            return
        ids = sorted(file_ids)
        logger.info("Invalidating %d file(s): %s", len(ids), ids[:20])
        collector.inc_invalidations(len(ids))
