"""SQLite storage for the tracker's derived state.

Single-file database with:
* ``filelink_matches``: one row per (owner, canonical link) currently in content
* ``filelink_scan_status``: last successful scan time per owner
* ``filelink_state``: key/value markers (last global scan) and settings overrides
* Auto-create schema on first use

Everything here can be dropped and rebuilt by a full rescan.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from .interfaces import MatchRow, Owner

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_SCHEMA_SQL = """
-- Links currently present in owner content
CREATE TABLE IF NOT EXISTS filelink_matches (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    owner_type TEXT NOT NULL,
    owner_id INTEGER NOT NULL,
    link TEXT NOT NULL,
    managed_file_uri TEXT,
    seen_at REAL NOT NULL,
    UNIQUE (owner_type, owner_id, link)
);

CREATE INDEX IF NOT EXISTS idx_matches_link ON filelink_matches(link);
CREATE INDEX IF NOT EXISTS idx_matches_managed ON filelink_matches(managed_file_uri);

-- Last successful scan per owner
CREATE TABLE IF NOT EXISTS filelink_scan_status (
    owner_type TEXT NOT NULL,
    owner_id INTEGER NOT NULL,
    scanned_at REAL NOT NULL,
    PRIMARY KEY (owner_type, owner_id)
);

CREATE INDEX IF NOT EXISTS idx_scan_status_time ON filelink_scan_status(scanned_at);

-- Markers and settings overrides
CREATE TABLE IF NOT EXISTS filelink_state (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
"""

LAST_SCAN_KEY = "last_scan"
_SETTING_PREFIX = "setting:"

# SQLite's default limit on bound parameters is 999 on older builds.
_IN_CHUNK = 500


def _chunks(items: List[int], size: int) -> Iterable[List[int]]:
    for start in range(0, len(items), size):
        yield items[start:start + size]


class LinkUsageStorage:
    """SQLite-backed match store, scan-status store and settings store."""

    def __init__(self, db_path: str) -> None:
        self.db_path = db_path

        # Ensure parent directory exists
        if db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        self._conn: Optional[sqlite3.Connection] = None
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Connection helpers
    # ------------------------------------------------------------------

    def _get_conn(self) -> sqlite3.Connection:
        if self._conn is None:
            self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA busy_timeout = 5000")
            self._conn.execute("PRAGMA temp_store = MEMORY")
        return self._conn

    def close(self) -> None:
        if self._conn:
            self._conn.close()
            self._conn = None

    # ------------------------------------------------------------------
    # Schema bootstrap
    # ------------------------------------------------------------------

    def _ensure_schema(self) -> None:
        conn = self._get_conn()
        cur = conn.cursor()
        for stmt in _SCHEMA_SQL.split(";"):
            stmt = stmt.strip()
            if stmt:
                cur.execute(stmt)
        conn.commit()

    # ------------------------------------------------------------------
    # Match rows
    # ------------------------------------------------------------------

    def get_matches(self, owner: Owner) -> Dict[str, MatchRow]:
        """Return the owner's match rows keyed by canonical link."""
        conn = self._get_conn()
        rows = conn.execute(
            """SELECT owner_type, owner_id, link, managed_file_uri, seen_at
               FROM filelink_matches
               WHERE owner_type = ? AND owner_id = ?""",
            (owner.type, owner.id),
        ).fetchall()
        return {r["link"]: self._row_to_match(r) for r in rows}

    def upsert_match(
        self,
        owner: Owner,
        link: str,
        seen_at: float,
        managed_file_uri: Optional[str] = None,
    ) -> None:
        """Insert a match row or refresh its timestamp and resolved URI."""
        conn = self._get_conn()
        conn.execute(
            """INSERT INTO filelink_matches (owner_type, owner_id, link, managed_file_uri, seen_at)
               VALUES (?, ?, ?, ?, ?)
               ON CONFLICT (owner_type, owner_id, link) DO UPDATE SET
                   seen_at = excluded.seen_at,
                   managed_file_uri = COALESCE(excluded.managed_file_uri, filelink_matches.managed_file_uri)""",
            (owner.type, owner.id, link, managed_file_uri, seen_at),
        )
        conn.commit()

    def set_managed_uri(self, owner: Owner, link: str, managed_file_uri: str) -> None:
        conn = self._get_conn()
        conn.execute(
            """UPDATE filelink_matches SET managed_file_uri = ?
               WHERE owner_type = ? AND owner_id = ? AND link = ?""",
            (managed_file_uri, owner.type, owner.id, link),
        )
        conn.commit()

    def delete_match(self, owner: Owner, link: str) -> bool:
        conn = self._get_conn()
        cur = conn.execute(
            "DELETE FROM filelink_matches WHERE owner_type = ? AND owner_id = ? AND link = ?",
            (owner.type, owner.id, link),
        )
        conn.commit()
        return cur.rowcount > 0

    def delete_owner_matches(self, owner: Owner) -> int:
        conn = self._get_conn()
        cur = conn.execute(
            "DELETE FROM filelink_matches WHERE owner_type = ? AND owner_id = ?",
            (owner.type, owner.id),
        )
        conn.commit()
        return int(cur.rowcount or 0)

    def find_owners_by_link(
        self, link: str, managed_file_uri: Optional[str] = None
    ) -> List[MatchRow]:
        """Match rows whose link (or recorded file URI) points at a file."""
        conn = self._get_conn()
        if managed_file_uri:
            rows = conn.execute(
                """SELECT owner_type, owner_id, link, managed_file_uri, seen_at
                   FROM filelink_matches
                   WHERE link = ? OR managed_file_uri = ?
                   ORDER BY owner_type, owner_id""",
                (link, managed_file_uri),
            ).fetchall()
        else:
            rows = conn.execute(
                """SELECT owner_type, owner_id, link, managed_file_uri, seen_at
                   FROM filelink_matches WHERE link = ?
                   ORDER BY owner_type, owner_id""",
                (link,),
            ).fetchall()
        return [self._row_to_match(r) for r in rows]

    def count_matches(self) -> int:
        conn = self._get_conn()
        return int(conn.execute("SELECT COUNT(*) AS c FROM filelink_matches").fetchone()["c"])

    def truncate_matches(self) -> None:
        conn = self._get_conn()
        conn.execute("DELETE FROM filelink_matches")
        conn.commit()

    @staticmethod
    def _row_to_match(row: sqlite3.Row) -> MatchRow:
        return MatchRow(
            owner_type=row["owner_type"],
            owner_id=int(row["owner_id"]),
            link=row["link"],
            seen_at=float(row["seen_at"]),
            managed_file_uri=row["managed_file_uri"],
        )

    # ------------------------------------------------------------------
    # Scan status
    # ------------------------------------------------------------------

    def get_scan_time(self, owner: Owner) -> Optional[float]:
        conn = self._get_conn()
        row = conn.execute(
            "SELECT scanned_at FROM filelink_scan_status WHERE owner_type = ? AND owner_id = ?",
            (owner.type, owner.id),
        ).fetchone()
        return float(row["scanned_at"]) if row else None

    def get_scan_times(self, owner_type: str, owner_ids: List[int]) -> Dict[int, float]:
        """Scan times for a page of owners; owners never scanned are absent."""
        conn = self._get_conn()
        result: Dict[int, float] = {}
        for chunk in _chunks(list(owner_ids), _IN_CHUNK):
            placeholders = ",".join("?" for _ in chunk)
            rows = conn.execute(
                f"""SELECT owner_id, scanned_at FROM filelink_scan_status
                    WHERE owner_type = ? AND owner_id IN ({placeholders})""",
                (owner_type, *chunk),
            ).fetchall()
            for r in rows:
                result[int(r["owner_id"])] = float(r["scanned_at"])
        return result

    def set_scanned(self, owner: Owner, scanned_at: float) -> None:
        conn = self._get_conn()
        conn.execute(
            """INSERT OR REPLACE INTO filelink_scan_status (owner_type, owner_id, scanned_at)
               VALUES (?, ?, ?)""",
            (owner.type, owner.id, scanned_at),
        )
        conn.commit()

    def delete_scan_status(self, owner: Owner) -> None:
        conn = self._get_conn()
        conn.execute(
            "DELETE FROM filelink_scan_status WHERE owner_type = ? AND owner_id = ?",
            (owner.type, owner.id),
        )
        conn.commit()

    def truncate_scan_status(self) -> None:
        conn = self._get_conn()
        conn.execute("DELETE FROM filelink_scan_status")
        conn.commit()

    # ------------------------------------------------------------------
    # State markers and settings
    # ------------------------------------------------------------------

    def get_state(self, key: str, default: Any = None) -> Any:
        conn = self._get_conn()
        row = conn.execute("SELECT value FROM filelink_state WHERE key = ?", (key,)).fetchone()
        if not row:
            return default
        return json.loads(row["value"])

    def set_state(self, key: str, value: Any) -> None:
        conn = self._get_conn()
        conn.execute(
            "INSERT OR REPLACE INTO filelink_state (key, value) VALUES (?, ?)",
            (key, json.dumps(value)),
        )
        conn.commit()

    def delete_state(self, key: str) -> None:
        conn = self._get_conn()
        conn.execute("DELETE FROM filelink_state WHERE key = ?", (key,))
        conn.commit()

    def get_last_scan(self) -> float:
        return float(self.get_state(LAST_SCAN_KEY, 0) or 0)

    def set_last_scan(self, at: float) -> None:
        self.set_state(LAST_SCAN_KEY, at)

    def get_setting(self, name: str, default: Any = None) -> Any:
        return self.get_state(_SETTING_PREFIX + name, default)

    def set_setting(self, name: str, value: Any) -> None:
        self.set_state(_SETTING_PREFIX + name, value)

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------

    def stats(self) -> Dict[str, Any]:
        """Return database statistics."""
        conn = self._get_conn()
        total = self.count_matches()
        by_type = conn.execute(
            "SELECT owner_type, COUNT(*) AS c FROM filelink_matches GROUP BY owner_type"
        ).fetchall()
        unresolved = conn.execute(
            "SELECT COUNT(*) AS c FROM filelink_matches WHERE managed_file_uri IS NULL"
        ).fetchone()["c"]
        owners = conn.execute(
            "SELECT COUNT(*) AS c FROM (SELECT DISTINCT owner_type, owner_id FROM filelink_matches)"
        ).fetchone()["c"]
        scanned = conn.execute("SELECT COUNT(*) AS c FROM filelink_scan_status").fetchone()["c"]

        return {
            "total_matches": total,
            "matches_by_type": {r["owner_type"]: r["c"] for r in by_type},
            "unresolved_matches": int(unresolved),
            "owners_with_links": int(owners),
            "owners_scanned": int(scanned),
            "last_scan": self.get_last_scan(),
        }

