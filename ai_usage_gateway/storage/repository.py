"""
Repository pattern for data access.

Handles database operations for the usage ledger, the per-user quota
records with their interaction audit log, quota settings and cost alerts.
"""

import dataclasses
import json
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from .db import DEFAULT_DB_PATH, get_connection
from .models import (
    AlertSeverity,
    AlertType,
    CostAlert,
    InteractionLogEntry,
    QuotaRecord,
    UsageLogEntry,
)


def to_db_timestamp(value: datetime) -> str:
    """Serialize a datetime as a UTC ISO string (naive values are UTC)."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_db_timestamp(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _dump_metadata(metadata: Optional[Dict[str, Any]]) -> str:
    return json.dumps(metadata or {}, default=str, sort_keys=True)


def _load_metadata(raw: Optional[str]) -> Dict[str, Any]:
    return json.loads(raw) if raw else {}


_USAGE_COLUMNS = (
    "created_at, user_id, operation_type, model, prompt_tokens, "
    "completion_tokens, total_tokens, cost, cache_hit, metadata"
)

_QUOTA_COLUMNS = "user_id, daily_limit, consumed_today, last_reset_at, granted_today"

_INTERACTION_COLUMNS = (
    "created_at, user_id, operation_type, interactions_deducted, balance_after, metadata"
)

ADMIN_GRANT_OPERATION = "admin_grant"

_ALERT_COLUMNS = (
    "id, created_at, alert_type, threshold, current_value, message, severity, resolved"
)


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the gateway tables if they don't exist.

    ``ai_usage_log`` and ``interaction_log`` are append-only ledgers:
    no UPDATE or DELETE is ever issued against them.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS ai_usage_log (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                created_at TEXT NOT NULL,
                user_id TEXT,
                operation_type TEXT NOT NULL,
                model TEXT NOT NULL,
                prompt_tokens INTEGER NOT NULL,
                completion_tokens INTEGER NOT NULL,
                total_tokens INTEGER NOT NULL,
                cost REAL NOT NULL,
                cache_hit INTEGER NOT NULL DEFAULT 0,
                metadata TEXT NOT NULL DEFAULT '{}'
            );
            CREATE INDEX IF NOT EXISTS idx_ai_usage_log_created_at
                ON ai_usage_log (created_at);

            CREATE TABLE IF NOT EXISTS user_quota (
                user_id TEXT PRIMARY KEY,
                daily_limit INTEGER NOT NULL,
                consumed_today INTEGER NOT NULL DEFAULT 0,
                granted_today INTEGER NOT NULL DEFAULT 0,
                last_reset_at TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS interaction_log (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                created_at TEXT NOT NULL,
                user_id TEXT NOT NULL,
                operation_type TEXT NOT NULL,
                interactions_deducted INTEGER NOT NULL,
                balance_after INTEGER NOT NULL,
                metadata TEXT NOT NULL DEFAULT '{}'
            );
            CREATE INDEX IF NOT EXISTS idx_interaction_log_user
                ON interaction_log (user_id, created_at);

            CREATE TABLE IF NOT EXISTS interaction_settings (
                setting_key TEXT PRIMARY KEY,
                setting_value TEXT NOT NULL,
                updated_by TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS ai_cost_alert (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                created_at TEXT NOT NULL,
                alert_type TEXT NOT NULL,
                threshold REAL NOT NULL,
                current_value REAL NOT NULL,
                message TEXT NOT NULL,
                severity TEXT NOT NULL,
                resolved INTEGER NOT NULL DEFAULT 0,
                resolved_at TEXT
            );
            CREATE INDEX IF NOT EXISTS idx_ai_cost_alert_lookup
                ON ai_cost_alert (alert_type, threshold, created_at);

            CREATE TABLE IF NOT EXISTS ai_cache (
                cache_key TEXT PRIMARY KEY,
                operation_type TEXT NOT NULL,
                value TEXT NOT NULL,
                created_at TEXT NOT NULL,
                expires_at TEXT NOT NULL
            );
        """)
        conn.commit()
    finally:
        conn.close()


def _usage_params(entry: UsageLogEntry) -> tuple:
    return (
        to_db_timestamp(entry.created_at),
        entry.user_id,
        entry.operation_type,
        entry.model,
        entry.prompt_tokens,
        entry.completion_tokens,
        entry.total_tokens,
        entry.cost,
        1 if entry.cache_hit else 0,
        _dump_metadata(entry.metadata),
    )


def _usage_from_row(row) -> UsageLogEntry:
    return UsageLogEntry(
        created_at=from_db_timestamp(row[0]),
        user_id=row[1],
        operation_type=row[2],
        model=row[3],
        prompt_tokens=row[4],
        completion_tokens=row[5],
        total_tokens=row[6],
        cost=row[7],
        cache_hit=bool(row[8]),
        metadata=_load_metadata(row[9]),
    )


def _quota_from_row(row) -> QuotaRecord:
    return QuotaRecord(
        user_id=row[0],
        daily_limit=row[1],
        consumed_today=row[2],
        last_reset_at=from_db_timestamp(row[3]),
        granted_today=row[4],
    )


def _interaction_from_row(row) -> InteractionLogEntry:
    return InteractionLogEntry(
        created_at=from_db_timestamp(row[0]),
        user_id=row[1],
        operation_type=row[2],
        interactions_deducted=row[3],
        balance_after=row[4],
        metadata=_load_metadata(row[5]),
    )


def _alert_from_row(row) -> CostAlert:
    return CostAlert(
        id=row[0],
        created_at=from_db_timestamp(row[1]),
        alert_type=AlertType(row[2]),
        threshold=row[3],
        current_value=row[4],
        message=row[5],
        severity=AlertSeverity(row[6]),
        resolved=bool(row[7]),
    )


def insert_usage_events(entries: List[UsageLogEntry], db_path: str = DEFAULT_DB_PATH) -> None:
    """Insert multiple usage log entries atomically.

    All entries are inserted in a single transaction: either the whole
    batch lands in the ledger or none of it does.

    Args:
        entries: Usage entries to record
        db_path: Path to SQLite database file
    """
    if not entries:
        return

    conn = get_connection(db_path)
    try:
        conn.execute("BEGIN TRANSACTION")
        conn.executemany(
            f"INSERT INTO ai_usage_log ({_USAGE_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            [_usage_params(entry) for entry in entries],
        )
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def fetch_usage_since(
    since: datetime,
    until: Optional[datetime] = None,
    db_path: str = DEFAULT_DB_PATH,
) -> List[UsageLogEntry]:
    """Fetch usage entries created in ``[since, until)``, oldest first.

    Args:
        since: Inclusive lower bound
        until: Exclusive upper bound (open-ended when None)
        db_path: Path to SQLite database file

    Returns:
        List of usage entries ordered by creation time
    """
    conn = get_connection(db_path)
    try:
        query = f"SELECT {_USAGE_COLUMNS} FROM ai_usage_log WHERE created_at >= ?"
        params: List[Any] = [to_db_timestamp(since)]
        if until is not None:
            query += " AND created_at < ?"
            params.append(to_db_timestamp(until))
        query += " ORDER BY created_at ASC, id ASC"

        cursor = conn.execute(query, params)
        return [_usage_from_row(row) for row in cursor.fetchall()]
    finally:
        conn.close()


def fetch_recent_usage_events(
    operation_type: Optional[str] = None,
    user_id: Optional[str] = None,
    limit: int = 100,
    db_path: str = DEFAULT_DB_PATH,
) -> List[UsageLogEntry]:
    """Fetch recent usage entries, newest first.

    Args:
        operation_type: Optional filter for a specific operation
        user_id: Optional filter for a specific (canonical) user id
        limit: Maximum number of entries to return
        db_path: Path to SQLite database file

    Returns:
        List of usage entries ordered by creation time (newest first)
    """
    conn = get_connection(db_path)
    try:
        query = f"SELECT {_USAGE_COLUMNS} FROM ai_usage_log"
        params: List[Any] = []
        conditions = []
        if operation_type:
            conditions.append("operation_type = ?")
            params.append(operation_type)
        if user_id:
            conditions.append("user_id = ?")
            params.append(user_id)
        if conditions:
            query += " WHERE " + " AND ".join(conditions)
        query += " ORDER BY created_at DESC, id DESC LIMIT ?"
        params.append(limit)

        cursor = conn.execute(query, params)
        return [_usage_from_row(row) for row in cursor.fetchall()]
    finally:
        conn.close()


class GatewayRepository:
    """Repository for the usage ledger and the quota tables.

    Wraps the module-level ledger functions and owns the transactional
    quota operations, so services receive one handle bound to a database.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        """Initialize the repository with a database path.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path

    def initialize(self) -> None:
        initialize_schema(self.db_path)

    # -- usage ledger -----------------------------------------------------

    def insert_usage_events(self, entries: List[UsageLogEntry]) -> None:
        insert_usage_events(entries, self.db_path)

    def fetch_usage_since(
        self, since: datetime, until: Optional[datetime] = None
    ) -> List[UsageLogEntry]:
        return fetch_usage_since(since, until, self.db_path)

    def fetch_recent_usage(
        self,
        operation_type: Optional[str] = None,
        user_id: Optional[str] = None,
        limit: int = 100,
    ) -> List[UsageLogEntry]:
        return fetch_recent_usage_events(operation_type, user_id, limit, self.db_path)

    def cost_since(self, since: datetime) -> float:
        """Total ledger cost of entries created at or after ``since``."""
        conn = get_connection(self.db_path)
        try:
            return conn.execute(
                "SELECT COALESCE(SUM(cost), 0) FROM ai_usage_log WHERE created_at >= ?",
                (to_db_timestamp(since),),
            ).fetchone()[0]
        finally:
            conn.close()

    # -- quotas -----------------------------------------------------------

    def get_quota(self, user_id: str) -> Optional[QuotaRecord]:
        """Return the stored quota record, or None if the user has none yet."""
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                f"SELECT {_QUOTA_COLUMNS} FROM user_quota WHERE user_id = ?", (user_id,)
            ).fetchone()
            return _quota_from_row(row) if row else None
        finally:
            conn.close()

    def deduct_interaction(
        self,
        user_id: str,
        operation_type: str,
        metadata: Optional[Dict[str, Any]],
        now: datetime,
        day_start: datetime,
        default_daily_limit: int,
    ) -> QuotaRecord:
        """Reset-if-stale, deduct one interaction and write the audit entry.

        Runs in a single write transaction so the reset and the deduction
        are observed together by every other connection.

        Args:
            user_id: Canonical user id
            operation_type: Operation that consumed the interaction
            metadata: Extra audit information
            now: Deduction timestamp
            day_start: Start of the current day in the operating timezone
            default_daily_limit: Limit used when the record is created

        Returns:
            The updated QuotaRecord
        """
        return self._adjust_quota(
            user_id, operation_type, metadata, now, day_start, default_daily_limit, consumed=1
        )

    def grant_interactions(
        self,
        user_id: str,
        amount: int,
        admin_id: str,
        now: datetime,
        day_start: datetime,
        default_daily_limit: int,
    ) -> QuotaRecord:
        """Add ``amount`` extra interactions for today and audit the grant.

        Grants are cleared by the next daily reset, like the consumed counter.
        """
        return self._adjust_quota(
            user_id,
            ADMIN_GRANT_OPERATION,
            {"admin_id": admin_id, "amount": amount},
            now,
            day_start,
            default_daily_limit,
            granted=amount,
        )

    def _adjust_quota(
        self,
        user_id: str,
        operation_type: str,
        metadata: Optional[Dict[str, Any]],
        now: datetime,
        day_start: datetime,
        default_daily_limit: int,
        consumed: int = 0,
        granted: int = 0,
    ) -> QuotaRecord:
        now_db = to_db_timestamp(now)
        conn = get_connection(self.db_path)
        try:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute(
                f"SELECT {_QUOTA_COLUMNS} FROM user_quota WHERE user_id = ?", (user_id,)
            ).fetchone()

            if row is None:
                record = QuotaRecord(
                    user_id=user_id,
                    daily_limit=default_daily_limit,
                    consumed_today=0,
                    last_reset_at=now,
                )
                conn.execute(
                    "INSERT INTO user_quota (user_id, daily_limit, consumed_today, "
                    "last_reset_at, created_at, updated_at) VALUES (?, ?, 0, ?, ?, ?)",
                    (user_id, default_daily_limit, now_db, now_db, now_db),
                )
            else:
                record = _quota_from_row(row)

            consumed_today = record.consumed_today
            granted_today = record.granted_today
            last_reset_at = record.last_reset_at
            if last_reset_at < day_start:
                consumed_today = 0
                granted_today = 0
                last_reset_at = now
            consumed_today += consumed
            granted_today += granted

            conn.execute(
                "UPDATE user_quota SET consumed_today = ?, granted_today = ?, last_reset_at = ?, "
                "updated_at = ? WHERE user_id = ?",
                (consumed_today, granted_today, to_db_timestamp(last_reset_at), now_db, user_id),
            )

            updated = QuotaRecord(
                user_id=user_id,
                daily_limit=record.daily_limit,
                consumed_today=consumed_today,
                last_reset_at=last_reset_at,
                granted_today=granted_today,
            )

            conn.execute(
                f"INSERT INTO interaction_log ({_INTERACTION_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?)",
                (
                    now_db,
                    user_id,
                    operation_type,
                    consumed - granted,
                    updated.available_today,
                    _dump_metadata(metadata),
                ),
            )
            conn.commit()
            return updated
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def upsert_daily_limit(self, user_id: str, daily_limit: int, now: datetime) -> QuotaRecord:
        """Create or update a user's daily limit override."""
        now_db = to_db_timestamp(now)
        conn = get_connection(self.db_path)
        try:
            conn.execute(
                "INSERT INTO user_quota (user_id, daily_limit, consumed_today, last_reset_at, "
                "created_at, updated_at) VALUES (?, ?, 0, ?, ?, ?) "
                "ON CONFLICT(user_id) DO UPDATE SET daily_limit = excluded.daily_limit, "
                "updated_at = excluded.updated_at",
                (user_id, daily_limit, now_db, now_db, now_db),
            )
            conn.commit()
            row = conn.execute(
                f"SELECT {_QUOTA_COLUMNS} FROM user_quota WHERE user_id = ?", (user_id,)
            ).fetchone()
            return _quota_from_row(row)
        finally:
            conn.close()

    def reset_all_quotas(self, now: datetime) -> int:
        """Zero every user's daily counter. Returns the number of users reset."""
        now_db = to_db_timestamp(now)
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                "UPDATE user_quota SET consumed_today = 0, granted_today = 0, "
                "last_reset_at = ?, updated_at = ?",
                (now_db, now_db),
            )
            conn.commit()
            return cursor.rowcount
        finally:
            conn.close()

    def list_quotas(self, limit: int = 50, offset: int = 0) -> Tuple[List[QuotaRecord], int]:
        """Page through quota records, most recently updated first."""
        conn = get_connection(self.db_path)
        try:
            total = conn.execute("SELECT COUNT(*) FROM user_quota").fetchone()[0]
            rows = conn.execute(
                f"SELECT {_QUOTA_COLUMNS} FROM user_quota "
                "ORDER BY updated_at DESC LIMIT ? OFFSET ?",
                (limit, offset),
            ).fetchall()
            return [_quota_from_row(row) for row in rows], total
        finally:
            conn.close()

    def fetch_interactions(
        self, user_id: str, limit: int = 50, offset: int = 0
    ) -> Tuple[List[InteractionLogEntry], int]:
        """Page through a user's interaction log, newest first."""
        conn = get_connection(self.db_path)
        try:
            total = conn.execute(
                "SELECT COUNT(*) FROM interaction_log WHERE user_id = ?", (user_id,)
            ).fetchone()[0]
            rows = conn.execute(
                f"SELECT {_INTERACTION_COLUMNS} FROM interaction_log WHERE user_id = ? "
                "ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?",
                (user_id, limit, offset),
            ).fetchall()
            return [_interaction_from_row(row) for row in rows], total
        finally:
            conn.close()

    def interaction_totals(self, user_id: str, since: datetime) -> Tuple[Dict[str, int], int]:
        """Consumed interactions per operation type since ``since`` and the all-time total.

        Admin grants are excluded.
        """
        conn = get_connection(self.db_path)
        try:
            rows = conn.execute(
                "SELECT operation_type, SUM(interactions_deducted) FROM interaction_log "
                "WHERE user_id = ? AND interactions_deducted > 0 AND created_at >= ? "
                "GROUP BY operation_type",
                (user_id, to_db_timestamp(since)),
            ).fetchall()
            total = conn.execute(
                "SELECT COALESCE(SUM(interactions_deducted), 0) FROM interaction_log "
                "WHERE user_id = ? AND interactions_deducted > 0",
                (user_id,),
            ).fetchone()[0]
            return {row[0]: row[1] for row in rows}, total
        finally:
            conn.close()

    # -- settings ---------------------------------------------------------

    def get_settings(self) -> Dict[str, str]:
        conn = get_connection(self.db_path)
        try:
            rows = conn.execute("SELECT setting_key, setting_value FROM interaction_settings").fetchall()
            return {row[0]: row[1] for row in rows}
        finally:
            conn.close()

    def upsert_setting(self, key: str, value: str, updated_by: str, now: datetime) -> Dict[str, Any]:
        """Store one setting and return the saved row."""
        now_db = to_db_timestamp(now)
        conn = get_connection(self.db_path)
        try:
            conn.execute(
                "INSERT INTO interaction_settings (setting_key, setting_value, updated_by, updated_at) "
                "VALUES (?, ?, ?, ?) "
                "ON CONFLICT(setting_key) DO UPDATE SET setting_value = excluded.setting_value, "
                "updated_by = excluded.updated_by, updated_at = excluded.updated_at",
                (key, value, updated_by, now_db),
            )
            conn.commit()
        finally:
            conn.close()
        return {"setting_key": key, "setting_value": value, "updated_by": updated_by, "updated_at": now_db}

    # -- cost alerts ------------------------------------------------------

    def create_alert(self, alert: CostAlert, dedup_since: datetime) -> Optional[CostAlert]:
        """Insert ``alert`` unless an unresolved one with the same type and
        threshold was created at or after ``dedup_since``.

        Returns:
            The stored alert with its id, or None if it was a duplicate
        """
        conn = get_connection(self.db_path)
        try:
            conn.execute("BEGIN IMMEDIATE")
            existing = conn.execute(
                "SELECT 1 FROM ai_cost_alert WHERE alert_type = ? AND threshold = ? "
                "AND resolved = 0 AND created_at >= ? LIMIT 1",
                (alert.alert_type.value, alert.threshold, to_db_timestamp(dedup_since)),
            ).fetchone()
            if existing:
                conn.rollback()
                return None

            cursor = conn.execute(
                "INSERT INTO ai_cost_alert (created_at, alert_type, threshold, current_value, "
                "message, severity, resolved) VALUES (?, ?, ?, ?, ?, ?, 0)",
                (
                    to_db_timestamp(alert.created_at),
                    alert.alert_type.value,
                    alert.threshold,
                    alert.current_value,
                    alert.message,
                    alert.severity.value,
                ),
            )
            conn.commit()
            return dataclasses.replace(alert, id=cursor.lastrowid, resolved=False)
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def fetch_alerts(self, include_resolved: bool = False, limit: int = 50) -> List[CostAlert]:
        """Cost alerts, newest first."""
        conn = get_connection(self.db_path)
        try:
            query = f"SELECT {_ALERT_COLUMNS} FROM ai_cost_alert"
            if not include_resolved:
                query += " WHERE resolved = 0"
            query += " ORDER BY created_at DESC, id DESC LIMIT ?"
            rows = conn.execute(query, (limit,)).fetchall()
            return [_alert_from_row(row) for row in rows]
        finally:
            conn.close()

    def resolve_alert(self, alert_id: int, now: datetime) -> bool:
        """Mark an alert resolved. Returns False if it was missing or already resolved."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                "UPDATE ai_cost_alert SET resolved = 1, resolved_at = ? WHERE id = ? AND resolved = 0",
                (to_db_timestamp(now), alert_id),
            )
            conn.commit()
            return cursor.rowcount > 0
        finally:
            conn.close()
