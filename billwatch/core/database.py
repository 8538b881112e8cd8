"""
Billwatch Database

Single source of truth for alerts, alert audit events, scope proofs, their
notification log, and sweep bookkeeping.

Every dedup decision is made by the database, not by a read followed by a
write: alert creation relies on a partial unique index over open alerts,
state transitions are ``UPDATE ... WHERE status = ?`` compare-and-swaps, and
notifications are claimed by inserting into a table unique on
``(scope_proof_id, notification_type)``.
"""
from __future__ import annotations

import json
import logging
import os
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from billwatch.core.models import (
    Alert,
    AlertAction,
    AlertEvent,
    AlertKind,
    AlertStatus,
    NotificationType,
    ScopeProof,
    ScopeProofNotification,
    ScopeProofStatus,
    to_iso,
    utcnow,
)
from billwatch.core.settings import get_settings

try:
    import psycopg
    from psycopg.rows import dict_row
    HAS_POSTGRES = True
except ImportError:  # pragma: no cover
    psycopg = None
    dict_row = None
    HAS_POSTGRES = False

logger = logging.getLogger(__name__)

SQLITE_BUSY_TIMEOUT_SEC = 30.0

# (sort value, id) of the last row of the previous page.
PageKey = Tuple[str, str]


def _keyset(sort_column: str, id_column: str, after: Optional[PageKey]) -> Tuple[str, tuple]:
    if after is None:
        return "", ()
    sort_value, last_id = after
    return (
        f" AND ({sort_column} > ? OR ({sort_column} = ? AND {id_column} > ?))",
        (sort_value, sort_value, last_id),
    )


class BillwatchDB:
    def __init__(self, db_path: str = "billwatch.db", dsn: Optional[str] = None):
        self.dsn = dsn if dsn is not None else os.getenv("DATABASE_URL")
        self.db_path = db_path
        dsn = (self.dsn or "").strip().lower()
        self.allow_sqlite_fallback = str(
            os.getenv("BILLWATCH_DB_FALLBACK_SQLITE", "true")
        ).strip().lower() not in {"0", "false", "no", "off"}
        self.use_postgres = bool(
            HAS_POSTGRES
            and dsn
            and (dsn.startswith("postgres://") or dsn.startswith("postgresql://"))
        )
        self._initialized = False
        self._fallback_warned = False

    def _sqlite_connection(self):
        conn = sqlite3.connect(self.db_path, timeout=SQLITE_BUSY_TIMEOUT_SEC)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def connect(self):
        if self.use_postgres:
            try:
                conn = psycopg.connect(self.dsn, row_factory=dict_row)
            except Exception as exc:
                if not self.allow_sqlite_fallback:
                    raise
                if not self._fallback_warned:
                    logger.warning(
                        "Postgres unavailable (%s). Falling back to SQLite at %s. "
                        "Set BILLWATCH_DB_FALLBACK_SQLITE=false to disable fallback.",
                        exc,
                        self.db_path,
                    )
                    self._fallback_warned = True
                self.use_postgres = False
                conn = self._sqlite_connection()
        else:
            conn = self._sqlite_connection()
        try:
            yield conn
        finally:
            conn.close()

    def _prepare_sql(self, sql: str) -> str:
        if self.use_postgres:
            return sql.replace("?", "%s")
        return sql

    def _fetchone(self, sql: str, params: tuple = ()) -> Optional[Dict[str, Any]]:
        self.initialize()
        with self.connect() as conn:
            cur = conn.cursor()
            cur.execute(self._prepare_sql(sql), params)
            row = cur.fetchone()
        return dict(row) if row else None

    def _fetchall(self, sql: str, params: tuple = ()) -> List[Dict[str, Any]]:
        self.initialize()
        with self.connect() as conn:
            cur = conn.cursor()
            cur.execute(self._prepare_sql(sql), params)
            rows = cur.fetchall()
        return [dict(row) for row in rows]

    def _execute(self, sql: str, params: tuple = ()) -> int:
        self.initialize()
        with self.connect() as conn:
            cur = conn.cursor()
            cur.execute(self._prepare_sql(sql), params)
            conn.commit()
            return cur.rowcount

    def initialize(self) -> None:
        if self._initialized:
            return
        with self.connect() as conn:
            cur = conn.cursor()

            cur.execute("""
                CREATE TABLE IF NOT EXISTS alerts (
                    id TEXT PRIMARY KEY,
                    account_id TEXT NOT NULL,
                    kind TEXT NOT NULL,
                    status TEXT NOT NULL,
                    source_kind TEXT NOT NULL,
                    source_id TEXT NOT NULL,
                    client_name TEXT,
                    client_email TEXT,
                    estimated_amount TEXT,
                    currency TEXT DEFAULT 'USD',
                    confidence INTEGER DEFAULT 0,
                    close_reason TEXT,
                    created_at TEXT,
                    updated_at TEXT,
                    closed_at TEXT
                )
            """)

            cur.execute("""
                CREATE TABLE IF NOT EXISTS alert_events (
                    id TEXT PRIMARY KEY,
                    alert_id TEXT NOT NULL,
                    account_id TEXT NOT NULL,
                    action TEXT NOT NULL,
                    metadata TEXT,
                    created_at TEXT
                )
            """)

            cur.execute("""
                CREATE TABLE IF NOT EXISTS alert_suppressions (
                    account_id TEXT NOT NULL,
                    kind TEXT NOT NULL,
                    source_id TEXT NOT NULL,
                    alert_id TEXT,
                    reason TEXT,
                    created_at TEXT,
                    PRIMARY KEY (account_id, kind, source_id)
                )
            """)

            cur.execute("""
                CREATE TABLE IF NOT EXISTS scope_proofs (
                    id TEXT PRIMARY KEY,
                    account_id TEXT NOT NULL,
                    project_id TEXT,
                    invoice_id TEXT,
                    description TEXT NOT NULL,
                    estimated_cost TEXT NOT NULL,
                    currency TEXT DEFAULT 'USD',
                    photos TEXT DEFAULT '[]',
                    client_name TEXT,
                    client_email TEXT,
                    status TEXT NOT NULL DEFAULT 'draft',
                    approval_token_hash TEXT UNIQUE,
                    token_expires_at TEXT,
                    token_used_at TEXT,
                    requested_at TEXT,
                    approved_at TEXT,
                    approved_by TEXT,
                    decision TEXT,
                    created_at TEXT,
                    updated_at TEXT
                )
            """)

            cur.execute("""
                CREATE TABLE IF NOT EXISTS scope_proof_notifications (
                    id TEXT PRIMARY KEY,
                    scope_proof_id TEXT NOT NULL,
                    notification_type TEXT NOT NULL,
                    channel TEXT NOT NULL,
                    sent_at TEXT,
                    UNIQUE(scope_proof_id, notification_type)
                )
            """)

            cur.execute("""
                CREATE TABLE IF NOT EXISTS sweep_runs (
                    pass_name TEXT PRIMARY KEY,
                    last_started_at TEXT,
                    last_finished_at TEXT,
                    lease_until TEXT,
                    last_summary TEXT,
                    last_error TEXT
                )
            """)

            cur.execute(
                "CREATE UNIQUE INDEX IF NOT EXISTS idx_alerts_open_unique "
                "ON alerts(account_id, kind, source_id) WHERE status = 'open'"
            )
            cur.execute("CREATE INDEX IF NOT EXISTS idx_alerts_account_status ON alerts(account_id, status)")
            cur.execute("CREATE INDEX IF NOT EXISTS idx_alert_events_alert ON alert_events(alert_id)")
            cur.execute("CREATE INDEX IF NOT EXISTS idx_scope_proofs_account ON scope_proofs(account_id, status)")
            cur.execute("CREATE INDEX IF NOT EXISTS idx_scope_proofs_pending_expiry ON scope_proofs(status, token_expires_at)")
            cur.execute("CREATE INDEX IF NOT EXISTS idx_scope_proof_notifications_proof ON scope_proof_notifications(scope_proof_id)")

            conn.commit()

        self._initialized = True

    # ------------------------------------------------------------------
    # Alerts
    # ------------------------------------------------------------------

    def _insert_alert_event(
        self,
        cur,
        alert_id: str,
        account_id: str,
        action: AlertAction,
        metadata: Optional[Dict[str, Any]],
        ts: str,
    ) -> None:
        cur.execute(
            self._prepare_sql("""
                INSERT INTO alert_events (id, alert_id, account_id, action, metadata, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
            """),
            (f"AEV-{uuid.uuid4().hex}", alert_id, account_id, action.value, json.dumps(metadata or {}), ts),
        )

    def create_alert_if_absent(
        self, payload: Dict[str, Any], metadata: Optional[Dict[str, Any]] = None
    ) -> Optional[Alert]:
        """Insert an open alert unless one is already open for (account, kind, source).

        Returns the new alert, or None when the uniqueness constraint rejected
        the insert (a duplicate trigger).
        """
        self.initialize()
        now = to_iso(payload.get("created_at") or utcnow())
        alert_id = payload.get("id") or f"ALR-{uuid.uuid4().hex}"
        amount = payload.get("estimated_amount")
        sql = self._prepare_sql("""
            INSERT INTO alerts
            (id, account_id, kind, status, source_kind, source_id, client_name, client_email,
             estimated_amount, currency, confidence, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT DO NOTHING
        """)
        with self.connect() as conn:
            cur = conn.cursor()
            cur.execute(sql, (
                alert_id,
                payload["account_id"],
                AlertKind(payload["kind"]).value,
                AlertStatus.OPEN.value,
                payload["source_kind"].value if hasattr(payload["source_kind"], "value") else payload["source_kind"],
                payload["source_id"],
                payload.get("client_name"),
                payload.get("client_email"),
                str(amount) if amount is not None else None,
                payload.get("currency") or "USD",
                int(payload.get("confidence") or 0),
                now,
                now,
            ))
            if cur.rowcount != 1:
                conn.rollback()
                return None
            self._insert_alert_event(cur, alert_id, payload["account_id"], AlertAction.CREATED, metadata, now)
            conn.commit()
        return self.get_alert(alert_id)

    def close_alert(
        self,
        alert_id: str,
        reason: str,
        metadata: Optional[Dict[str, Any]] = None,
        closed_at: Optional[datetime] = None,
        suppress: bool = False,
    ) -> Optional[Alert]:
        """Move an open alert to fixed. Returns None if it was not open.

        With ``suppress`` the (account, kind, source) is also recorded in
        ``alert_suppressions`` in the same transaction, so detection does not
        raise it again until the condition has cleared once.
        """
        self.initialize()
        now = to_iso(closed_at or utcnow())
        with self.connect() as conn:
            cur = conn.cursor()
            cur.execute(
                self._prepare_sql("""
                    UPDATE alerts
                    SET status = ?, close_reason = ?, closed_at = ?, updated_at = ?
                    WHERE id = ? AND status = ?
                """),
                (AlertStatus.FIXED.value, reason, now, now, alert_id, AlertStatus.OPEN.value),
            )
            if cur.rowcount != 1:
                conn.rollback()
                return None
            cur.execute(
                self._prepare_sql("SELECT account_id, kind, source_id FROM alerts WHERE id = ?"), (alert_id,)
            )
            row = dict(cur.fetchone())
            event_meta = {"reason": reason}
            event_meta.update(metadata or {})
            self._insert_alert_event(cur, alert_id, row["account_id"], AlertAction.CLOSED, event_meta, now)
            if suppress:
                cur.execute(
                    self._prepare_sql("""
                        INSERT INTO alert_suppressions (account_id, kind, source_id, alert_id, reason, created_at)
                        VALUES (?, ?, ?, ?, ?, ?)
                        ON CONFLICT (account_id, kind, source_id)
                        DO UPDATE SET alert_id = excluded.alert_id, reason = excluded.reason,
                                      created_at = excluded.created_at
                    """),
                    (row["account_id"], row["kind"], row["source_id"], alert_id, reason, now),
                )
            conn.commit()
        return self.get_alert(alert_id)

    def is_alert_suppressed(self, account_id: str, kind: AlertKind, source_id: str) -> bool:
        row = self._fetchone(
            "SELECT 1 AS hit FROM alert_suppressions WHERE account_id = ? AND kind = ? AND source_id = ?",
            (account_id, AlertKind(kind).value, source_id),
        )
        return row is not None

    def clear_alert_suppression(self, account_id: str, kind: AlertKind, source_id: str) -> bool:
        """Drop a manual dismissal once its condition no longer holds."""
        return self._execute(
            "DELETE FROM alert_suppressions WHERE account_id = ? AND kind = ? AND source_id = ?",
            (account_id, AlertKind(kind).value, source_id),
        ) == 1

    def close_open_alert(
        self,
        account_id: str,
        kind: AlertKind,
        source_id: str,
        reason: str,
        metadata: Optional[Dict[str, Any]] = None,
        closed_at: Optional[datetime] = None,
    ) -> Optional[Alert]:
        existing = self.get_open_alert(account_id, kind, source_id)
        if not existing:
            return None
        return self.close_alert(existing.id, reason, metadata, closed_at)

    def get_alert(self, alert_id: str) -> Optional[Alert]:
        row = self._fetchone("SELECT * FROM alerts WHERE id = ?", (alert_id,))
        return Alert.from_row(row) if row else None

    def get_open_alert(self, account_id: str, kind: AlertKind, source_id: str) -> Optional[Alert]:
        row = self._fetchone(
            "SELECT * FROM alerts WHERE account_id = ? AND kind = ? AND source_id = ? AND status = ?",
            (account_id, AlertKind(kind).value, source_id, AlertStatus.OPEN.value),
        )
        return Alert.from_row(row) if row else None

    def list_open_alerts(self, account_id: str) -> List[Alert]:
        rows = self._fetchall(
            "SELECT * FROM alerts WHERE account_id = ? AND status = ? ORDER BY created_at ASC",
            (account_id, AlertStatus.OPEN.value),
        )
        return [Alert.from_row(row) for row in rows]

    def list_all_open_alerts(self, after: Optional[PageKey] = None, limit: int = 500) -> List[Alert]:
        """One page of open alerts across accounts, ordered by (created_at, id)."""
        keyset, params = _keyset("created_at", "id", after)
        rows = self._fetchall(
            f"SELECT * FROM alerts WHERE status = ?{keyset} ORDER BY created_at ASC, id ASC LIMIT ?",
            (AlertStatus.OPEN.value, *params, limit),
        )
        return [Alert.from_row(row) for row in rows]

    def list_alerts_for_source(self, account_id: str, kind: AlertKind, source_id: str) -> List[Alert]:
        rows = self._fetchall(
            "SELECT * FROM alerts WHERE account_id = ? AND kind = ? AND source_id = ? ORDER BY created_at ASC",
            (account_id, AlertKind(kind).value, source_id),
        )
        return [Alert.from_row(row) for row in rows]

    def list_alert_events(self, alert_id: str) -> List[AlertEvent]:
        rows = self._fetchall(
            "SELECT * FROM alert_events WHERE alert_id = ? ORDER BY created_at ASC",
            (alert_id,),
        )
        return [AlertEvent.from_row(row) for row in rows]

    # ------------------------------------------------------------------
    # Scope proofs
    # ------------------------------------------------------------------

    def create_scope_proof(self, payload: Dict[str, Any]) -> ScopeProof:
        self.initialize()
        now = to_iso(utcnow())
        proof_id = payload.get("id") or f"SCP-{uuid.uuid4().hex}"
        sql = self._prepare_sql("""
            INSERT INTO scope_proofs
            (id, account_id, project_id, invoice_id, description, estimated_cost, currency, photos,
             client_name, client_email, status, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """)
        with self.connect() as conn:
            cur = conn.cursor()
            cur.execute(sql, (
                proof_id,
                payload["account_id"],
                payload.get("project_id"),
                payload.get("invoice_id"),
                payload["description"],
                str(payload["estimated_cost"]),
                payload.get("currency") or "USD",
                json.dumps(list(payload.get("photos") or [])),
                payload.get("client_name"),
                payload.get("client_email"),
                ScopeProofStatus.DRAFT.value,
                now,
                now,
            ))
            conn.commit()
        return self.get_scope_proof(proof_id)

    def get_scope_proof(self, scope_proof_id: str) -> Optional[ScopeProof]:
        row = self._fetchone("SELECT * FROM scope_proofs WHERE id = ?", (scope_proof_id,))
        return ScopeProof.from_row(row) if row else None

    def get_scope_proof_by_token_hash(self, token_hash: str) -> Optional[ScopeProof]:
        row = self._fetchone("SELECT * FROM scope_proofs WHERE approval_token_hash = ?", (token_hash,))
        return ScopeProof.from_row(row) if row else None

    def list_scope_proofs(
        self,
        account_id: str,
        status: Optional[ScopeProofStatus] = None,
        project_id: Optional[str] = None,
        limit: int = 200,
    ) -> List[ScopeProof]:
        query = "SELECT * FROM scope_proofs WHERE account_id = ?"
        params: List[Any] = [account_id]
        if status:
            query += " AND status = ?"
            params.append(ScopeProofStatus(status).value)
        if project_id:
            query += " AND project_id = ?"
            params.append(project_id)
        query += " ORDER BY created_at DESC LIMIT ?"
        params.append(limit)
        return [ScopeProof.from_row(row) for row in self._fetchall(query, tuple(params))]

    def delete_draft_scope_proof(self, scope_proof_id: str) -> bool:
        return self._execute(
            "DELETE FROM scope_proofs WHERE id = ? AND status = ?",
            (scope_proof_id, ScopeProofStatus.DRAFT.value),
        ) == 1

    def mark_scope_proof_pending(
        self,
        scope_proof_id: str,
        token_hash: str,
        requested_at: datetime,
        expires_at: datetime,
        client_email: Optional[str] = None,
    ) -> bool:
        """draft -> pending. False when the proof is no longer a draft."""
        now = to_iso(requested_at)
        return self._execute(
            """
            UPDATE scope_proofs
            SET status = ?, approval_token_hash = ?, requested_at = ?, token_expires_at = ?,
                client_email = COALESCE(CAST(? AS TEXT), client_email), updated_at = ?
            WHERE id = ? AND status = ?
            """,
            (
                ScopeProofStatus.PENDING.value,
                token_hash,
                now,
                to_iso(expires_at),
                client_email,
                now,
                scope_proof_id,
                ScopeProofStatus.DRAFT.value,
            ),
        ) == 1

    def consume_approval_token(
        self,
        token_hash: str,
        now: datetime,
        to_status: ScopeProofStatus,
        decision: str,
        approved_by: Optional[str] = None,
    ) -> Optional[ScopeProof]:
        """Spend a pending, unexpired, unused token exactly once.

        Approval defaults ``approved_by`` to the client email the request was
        sent to.
        """
        ts = to_iso(now)
        approving = ScopeProofStatus(to_status) == ScopeProofStatus.APPROVED
        changed = self._execute(
            """
            UPDATE scope_proofs
            SET status = ?, token_used_at = ?, decision = ?, approved_at = ?,
                approved_by = CASE WHEN ? = 1 THEN COALESCE(CAST(? AS TEXT), client_email) ELSE NULL END,
                updated_at = ?
            WHERE approval_token_hash = ? AND status = ? AND token_used_at IS NULL AND token_expires_at > ?
            """,
            (
                ScopeProofStatus(to_status).value,
                ts,
                decision,
                ts if approving else None,
                1 if approving else 0,
                approved_by,
                ts,
                token_hash,
                ScopeProofStatus.PENDING.value,
                ts,
            ),
        )
        if changed != 1:
            return None
        return self.get_scope_proof_by_token_hash(token_hash)

    def expire_scope_proof(self, scope_proof_id: str, now: datetime) -> bool:
        ts = to_iso(now)
        return self._execute(
            """
            UPDATE scope_proofs SET status = ?, updated_at = ?
            WHERE id = ? AND status = ? AND token_expires_at <= ?
            """,
            (ScopeProofStatus.EXPIRED.value, ts, scope_proof_id, ScopeProofStatus.PENDING.value, ts),
        ) == 1

    # The three sweep queries below page by keyset so a row the sweep cannot
    # settle (missing account, failing channel) never hides the rows after it.

    def list_scope_proofs_due_for_reminder(
        self,
        requested_before: datetime,
        now: datetime,
        after: Optional[PageKey] = None,
        limit: int = 500,
    ) -> List[ScopeProof]:
        keyset, params = _keyset("sp.requested_at", "sp.id", after)
        rows = self._fetchall(
            f"""
            SELECT sp.* FROM scope_proofs sp
            WHERE sp.status = ? AND sp.requested_at <= ? AND sp.token_expires_at > ?
              AND NOT EXISTS (
                SELECT 1 FROM scope_proof_notifications n
                WHERE n.scope_proof_id = sp.id AND n.notification_type = ?
              ){keyset}
            ORDER BY sp.requested_at ASC, sp.id ASC LIMIT ?
            """,
            (
                ScopeProofStatus.PENDING.value,
                to_iso(requested_before),
                to_iso(now),
                NotificationType.REMINDER.value,
                *params,
                limit,
            ),
        )
        return [ScopeProof.from_row(row) for row in rows]

    def list_expirable_scope_proofs(
        self, now: datetime, after: Optional[PageKey] = None, limit: int = 500
    ) -> List[ScopeProof]:
        keyset, params = _keyset("token_expires_at", "id", after)
        rows = self._fetchall(
            f"SELECT * FROM scope_proofs WHERE status = ? AND token_expires_at <= ?{keyset} "
            "ORDER BY token_expires_at ASC, id ASC LIMIT ?",
            (ScopeProofStatus.PENDING.value, to_iso(now), *params, limit),
        )
        return [ScopeProof.from_row(row) for row in rows]

    def list_expired_without_notice(self, after: Optional[PageKey] = None, limit: int = 500) -> List[ScopeProof]:
        # Declined proofs are expired too, but they get their own notice.
        keyset, params = _keyset("sp.token_expires_at", "sp.id", after)
        rows = self._fetchall(
            f"""
            SELECT sp.* FROM scope_proofs sp
            WHERE sp.status = ? AND sp.decision IS NULL
              AND NOT EXISTS (
                SELECT 1 FROM scope_proof_notifications n
                WHERE n.scope_proof_id = sp.id AND n.notification_type = ?
              ){keyset}
            ORDER BY sp.token_expires_at ASC, sp.id ASC LIMIT ?
            """,
            (ScopeProofStatus.EXPIRED.value, NotificationType.EXPIRY.value, *params, limit),
        )
        return [ScopeProof.from_row(row) for row in rows]

    # ------------------------------------------------------------------
    # Scope proof notifications
    # ------------------------------------------------------------------

    def claim_notification(
        self,
        scope_proof_id: str,
        notification_type: NotificationType,
        channel: str,
        sent_at: Optional[datetime] = None,
    ) -> bool:
        """Record a notification before sending it. False if already recorded."""
        return self._execute(
            """
            INSERT INTO scope_proof_notifications (id, scope_proof_id, notification_type, channel, sent_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT DO NOTHING
            """,
            (
                f"SPN-{uuid.uuid4().hex}",
                scope_proof_id,
                NotificationType(notification_type).value,
                channel,
                to_iso(sent_at or utcnow()),
            ),
        ) == 1

    def release_notification(self, scope_proof_id: str, notification_type: NotificationType) -> None:
        self._execute(
            "DELETE FROM scope_proof_notifications WHERE scope_proof_id = ? AND notification_type = ?",
            (scope_proof_id, NotificationType(notification_type).value),
        )

    def list_notifications(self, scope_proof_id: str) -> List[ScopeProofNotification]:
        rows = self._fetchall(
            "SELECT * FROM scope_proof_notifications WHERE scope_proof_id = ? ORDER BY sent_at ASC",
            (scope_proof_id,),
        )
        return [ScopeProofNotification.from_row(row) for row in rows]

    # ------------------------------------------------------------------
    # Sweep bookkeeping
    # ------------------------------------------------------------------

    def claim_sweep_pass(
        self,
        pass_name: str,
        now: datetime,
        min_interval: Optional[timedelta],
        lease: timedelta,
    ) -> bool:
        """Take the lease on a sweep pass if it is due and nobody else holds it."""
        self._execute(
            "INSERT INTO sweep_runs (pass_name) VALUES (?) ON CONFLICT DO NOTHING",
            (pass_name,),
        )
        ts = to_iso(now)
        sql = """
            UPDATE sweep_runs SET last_started_at = ?, lease_until = ?
            WHERE pass_name = ? AND (lease_until IS NULL OR lease_until <= ?)
        """
        params: List[Any] = [ts, to_iso(now + lease), pass_name, ts]
        if min_interval is not None:
            sql += " AND (last_finished_at IS NULL OR last_finished_at <= ?)"
            params.append(to_iso(now - min_interval))
        return self._execute(sql, tuple(params)) == 1

    def finish_sweep_pass(self, pass_name: str, now: datetime, summary: Dict[str, Any]) -> None:
        self._execute(
            """
            UPDATE sweep_runs SET last_finished_at = ?, lease_until = NULL, last_summary = ?, last_error = NULL
            WHERE pass_name = ?
            """,
            (to_iso(now), json.dumps(summary), pass_name),
        )

    def fail_sweep_pass(self, pass_name: str, error: str) -> None:
        # last_finished_at stays put so the pass is retried on the next tick.
        self._execute(
            "UPDATE sweep_runs SET lease_until = NULL, last_error = ? WHERE pass_name = ?",
            (error, pass_name),
        )

    def list_sweep_runs(self) -> List[Dict[str, Any]]:
        rows = self._fetchall("SELECT * FROM sweep_runs ORDER BY pass_name ASC")
        for row in rows:
            raw = row.get("last_summary")
            if isinstance(raw, str):
                try:
                    row["last_summary"] = json.loads(raw)
                except json.JSONDecodeError:
                    row["last_summary"] = {}
        return rows


_DB_INSTANCE: Optional[BillwatchDB] = None


def get_db() -> BillwatchDB:
    global _DB_INSTANCE
    if _DB_INSTANCE is None:
        settings = get_settings()
        _DB_INSTANCE = BillwatchDB(db_path=settings.db_path, dsn=settings.database_url)
    return _DB_INSTANCE
