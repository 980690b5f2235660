"""
SQLite-backed store for cached AI responses.

Keys are content hashes, so entries stay valid across process restarts
until they expire.
"""

import json
from datetime import datetime
from typing import Dict, Optional

from .db import DEFAULT_DB_PATH, get_connection
from .models import CacheEntry
from .repository import from_db_timestamp, to_db_timestamp


class SQLiteCacheStore:
    """Durable cache store using the ``ai_cache`` table.

    The table is created by ``initialize_schema``.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def get(self, key: str, now: datetime) -> Optional[CacheEntry]:
        """Return the live entry for ``key``; expired rows are deleted."""
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                "SELECT cache_key, operation_type, value, created_at, expires_at "
                "FROM ai_cache WHERE cache_key = ?",
                (key,),
            ).fetchone()
            if row is None:
                return None

            entry = CacheEntry(
                key=row[0],
                operation_type=row[1],
                value=json.loads(row[2]),
                created_at=from_db_timestamp(row[3]),
                expires_at=from_db_timestamp(row[4]),
            )
            if entry.is_expired(now):
                conn.execute("DELETE FROM ai_cache WHERE cache_key = ?", (key,))
                conn.commit()
                return None
            return entry
        finally:
            conn.close()

    def set(self, entry: CacheEntry) -> None:
        conn = get_connection(self.db_path)
        try:
            conn.execute(
                "INSERT OR REPLACE INTO ai_cache "
                "(cache_key, operation_type, value, created_at, expires_at) "
                "VALUES (?, ?, ?, ?, ?)",
                (
                    entry.key,
                    entry.operation_type,
                    json.dumps(entry.value, default=str),
                    to_db_timestamp(entry.created_at),
                    to_db_timestamp(entry.expires_at),
                ),
            )
            conn.commit()
        finally:
            conn.close()

    def purge_expired(self, now: datetime) -> int:
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                "DELETE FROM ai_cache WHERE expires_at <= ?", (to_db_timestamp(now),)
            )
            conn.commit()
            return cursor.rowcount
        finally:
            conn.close()

    def clear(self) -> int:
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("DELETE FROM ai_cache")
            conn.commit()
            return cursor.rowcount
        finally:
            conn.close()

    def count_by_operation(self, now: datetime) -> Dict[str, int]:
        """Live entries per operation type."""
        conn = get_connection(self.db_path)
        try:
            rows = conn.execute(
                "SELECT operation_type, COUNT(*) FROM ai_cache "
                "WHERE expires_at > ? GROUP BY operation_type",
                (to_db_timestamp(now),),
            ).fetchall()
            return {row[0]: row[1] for row in rows}
        finally:
            conn.close()
