"""
Persistent cooldown and audit state for OpsGuard.

Cooldown windows must survive process restarts, otherwise a crash would
silently reset every rate limit. Execution records and escalation tickets
are append-only logs stored alongside them.

Classes:
    StateStore: Abstract store interface
    MemoryStateStore: Process-local store for tests and dry runs
    SQLiteStateStore: Durable SQLite-backed store

Example:
    >>> store = SQLiteStateStore("opsguard.db")
    >>> store.save_window(window)
    >>> store.load_window("api", ActionKind.RESTART)
"""
import json
import logging
import sqlite3
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

from dateutil import parser as date_parser

from ..exceptions import StorageError
from ..models import (
    ActionKind,
    CooldownWindow,
    EscalationTicket,
    ExecutionRecord,
    Outcome,
)

logger = logging.getLogger(__name__)

WindowUpdate = Callable[[Optional[CooldownWindow]], Optional[CooldownWindow]]


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return date_parser.isoparse(value)


class StateStore(ABC):
    """Storage contract for cooldown windows and the audit trail."""

    @abstractmethod
    def load_window(self, service: str, action_kind: ActionKind) -> Optional[CooldownWindow]:
        """Return the stored window for a key, or None."""

    @abstractmethod
    def save_window(self, window: CooldownWindow) -> None:
        """Insert or replace the window for its key."""

    @abstractmethod
    def delete_window(self, service: str, action_kind: ActionKind) -> None:
        """Remove the window for a key, if any."""

    @abstractmethod
    def update_window(
        self,
        service: str,
        action_kind: ActionKind,
        update: WindowUpdate,
    ) -> Optional[CooldownWindow]:
        """
        Atomically read, change and write the window for a key.

        ``update`` gets a copy of the stored window (or None) and returns
        the window to store, or None to delete it. No other writer, in this
        process or another, can change the key in between. If ``update``
        raises, the stored window is left as it was.

        Returns:
            The window now stored, or None
        """

    @abstractmethod
    def list_windows(self, service: Optional[str] = None) -> List[CooldownWindow]:
        """List stored windows, optionally for one service."""

    @abstractmethod
    def append_record(self, record: ExecutionRecord) -> None:
        """Append an execution record."""

    @abstractmethod
    def list_records(
        self,
        incident_id: Optional[str] = None,
        service: Optional[str] = None,
        since: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> List[ExecutionRecord]:
        """List execution records, oldest first."""

    @abstractmethod
    def append_ticket(self, ticket: EscalationTicket) -> None:
        """Append an escalation ticket."""

    @abstractmethod
    def list_tickets(
        self,
        incident_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[EscalationTicket]:
        """List escalation tickets, oldest first."""

    def close(self) -> None:
        """Release resources held by the store."""


class MemoryStateStore(StateStore):
    """In-process store. State is lost when the process exits."""

    def __init__(self):
        self._windows: Dict[Tuple[str, ActionKind], CooldownWindow] = {}
        self._records: List[ExecutionRecord] = []
        self._tickets: List[EscalationTicket] = []
        self._lock = threading.Lock()

    def load_window(self, service: str, action_kind: ActionKind) -> Optional[CooldownWindow]:
        with self._lock:
            window = self._windows.get((service, ActionKind(action_kind)))
            return window.copy() if window else None

    def save_window(self, window: CooldownWindow) -> None:
        with self._lock:
            self._windows[window.key] = window.copy()

    def delete_window(self, service: str, action_kind: ActionKind) -> None:
        with self._lock:
            self._windows.pop((service, ActionKind(action_kind)), None)

    def update_window(
        self,
        service: str,
        action_kind: ActionKind,
        update: WindowUpdate,
    ) -> Optional[CooldownWindow]:
        key = (service, ActionKind(action_kind))
        with self._lock:
            current = self._windows.get(key)
            window = update(current.copy() if current else None)
            if window is None:
                self._windows.pop(key, None)
                return None
            self._windows[key] = window.copy()
            return window.copy()

    def list_windows(self, service: Optional[str] = None) -> List[CooldownWindow]:
        with self._lock:
            return [
                w.copy() for w in self._windows.values()
                if service is None or w.service == service
            ]

    def append_record(self, record: ExecutionRecord) -> None:
        with self._lock:
            self._records.append(record)

    def list_records(
        self,
        incident_id: Optional[str] = None,
        service: Optional[str] = None,
        since: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> List[ExecutionRecord]:
        with self._lock:
            records = [
                r for r in self._records
                if (incident_id is None or r.incident_id == incident_id)
                and (service is None or r.service == service)
                and (since is None or r.started_at >= since)
            ]
        if limit:
            records = records[-limit:]
        return records

    def append_ticket(self, ticket: EscalationTicket) -> None:
        with self._lock:
            self._tickets.append(ticket)

    def list_tickets(
        self,
        incident_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[EscalationTicket]:
        with self._lock:
            tickets = [
                t for t in self._tickets
                if incident_id is None or t.incident_id == incident_id
            ]
        if limit:
            tickets = tickets[-limit:]
        return tickets


class SQLiteStateStore(StateStore):
    """
    SQLite-backed durable store.

    A connection is opened per operation so the store can be shared across
    worker threads. Writes are serialized with a process-local lock. Window
    read-modify-write cycles run in ``BEGIN IMMEDIATE`` transactions, which
    take the database write lock up front, so separate processes sharing the
    file cannot interleave between the read and the write.
    """

    def __init__(self, db_path: str | Path = "opsguard.db", timeout: float = 30.0):
        """
        Initialize state store.

        Args:
            db_path: Path to SQLite database file
            timeout: Seconds to wait on a locked database
        """
        self.db_path = Path(db_path)
        self.timeout = timeout
        self._write_lock = threading.Lock()
        self._init_database()

    def _init_database(self) -> None:
        """Initialize database schema."""
        if self.db_path.parent and not self.db_path.parent.exists():
            self.db_path.parent.mkdir(parents=True, exist_ok=True)

        with self._get_connection() as conn:
            cursor = conn.cursor()

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS cooldown_windows (
                    service TEXT NOT NULL,
                    action_kind TEXT NOT NULL,
                    count INTEGER NOT NULL,
                    window_start TEXT NOT NULL,
                    last_action_timestamp TEXT,
                    PRIMARY KEY (service, action_kind)
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS execution_records (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    record_id TEXT NOT NULL UNIQUE,
                    incident_id TEXT NOT NULL,
                    service TEXT NOT NULL,
                    host_id TEXT NOT NULL,
                    action_kind TEXT NOT NULL,
                    tier INTEGER,
                    started_at TEXT NOT NULL,
                    ended_at TEXT NOT NULL,
                    outcome TEXT NOT NULL,
                    detail TEXT,
                    denial_policy TEXT,
                    playbook TEXT,
                    dry_run INTEGER NOT NULL DEFAULT 0
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS escalation_tickets (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    ticket_id TEXT NOT NULL UNIQUE,
                    incident_id TEXT NOT NULL,
                    service TEXT NOT NULL,
                    action_kind TEXT NOT NULL,
                    outcome TEXT NOT NULL,
                    action_refs TEXT NOT NULL,
                    payload TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    denial_policy TEXT,
                    diagnosis_required INTEGER NOT NULL DEFAULT 0,
                    recommended_tier INTEGER
                )
            """)

            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_records_incident
                ON execution_records(incident_id)
            """)

            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_records_service_time
                ON execution_records(service, started_at)
            """)

            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_tickets_incident
                ON escalation_tickets(incident_id)
            """)

            conn.commit()
            logger.info(f"State store initialized at {self.db_path}")

    @contextmanager
    def _get_connection(self):
        """Context manager for database connections."""
        try:
            conn = sqlite3.connect(self.db_path, timeout=self.timeout)
        except sqlite3.Error as e:
            raise StorageError(f"Cannot open state store {self.db_path}: {e}") from e

        conn.row_factory = sqlite3.Row
        try:
            yield conn
        except sqlite3.Error as e:
            conn.rollback()
            logger.error(f"State store error: {e}")
            raise StorageError(f"State store operation failed: {e}") from e
        finally:
            conn.close()

    @contextmanager
    def _immediate_transaction(self):
        """Connection holding the database write lock until commit."""
        with self._write_lock, self._get_connection() as conn:
            conn.isolation_level = None
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.rollback()
                raise
            conn.commit()

    # Cooldown windows

    def load_window(self, service: str, action_kind: ActionKind) -> Optional[CooldownWindow]:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM cooldown_windows WHERE service = ? AND action_kind = ?",
                (service, ActionKind(action_kind).value),
            ).fetchone()

        return self._row_to_window(row) if row else None

    def save_window(self, window: CooldownWindow) -> None:
        with self._write_lock, self._get_connection() as conn:
            self._upsert_window(conn, window)
            conn.commit()
        logger.debug(f"Saved cooldown window {window.service}/{window.action_kind.value}")

    def delete_window(self, service: str, action_kind: ActionKind) -> None:
        with self._write_lock, self._get_connection() as conn:
            self._delete_window(conn, service, ActionKind(action_kind))
            conn.commit()

    def update_window(
        self,
        service: str,
        action_kind: ActionKind,
        update: WindowUpdate,
    ) -> Optional[CooldownWindow]:
        action_kind = ActionKind(action_kind)
        with self._immediate_transaction() as conn:
            row = conn.execute(
                "SELECT * FROM cooldown_windows WHERE service = ? AND action_kind = ?",
                (service, action_kind.value),
            ).fetchone()
            window = update(self._row_to_window(row) if row else None)
            if window is None:
                self._delete_window(conn, service, action_kind)
            else:
                self._upsert_window(conn, window)
        return window

    @staticmethod
    def _upsert_window(conn: sqlite3.Connection, window: CooldownWindow) -> None:
        conn.execute("""
            INSERT INTO cooldown_windows (
                service, action_kind, count, window_start, last_action_timestamp
            ) VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(service, action_kind) DO UPDATE SET
                count = excluded.count,
                window_start = excluded.window_start,
                last_action_timestamp = excluded.last_action_timestamp
        """, (
            window.service,
            window.action_kind.value,
            window.count,
            window.window_start.isoformat(),
            window.last_action_timestamp.isoformat() if window.last_action_timestamp else None,
        ))

    @staticmethod
    def _delete_window(conn: sqlite3.Connection, service: str, action_kind: ActionKind) -> None:
        conn.execute(
            "DELETE FROM cooldown_windows WHERE service = ? AND action_kind = ?",
            (service, action_kind.value),
        )

    def list_windows(self, service: Optional[str] = None) -> List[CooldownWindow]:
        query = "SELECT * FROM cooldown_windows"
        params: tuple = ()
        if service is not None:
            query += " WHERE service = ?"
            params = (service,)
        query += " ORDER BY service, action_kind"

        with self._get_connection() as conn:
            rows = conn.execute(query, params).fetchall()

        return [self._row_to_window(row) for row in rows]

    @staticmethod
    def _row_to_window(row: sqlite3.Row) -> CooldownWindow:
        return CooldownWindow(
            service=row["service"],
            action_kind=ActionKind(row["action_kind"]),
            count=row["count"],
            window_start=_parse_ts(row["window_start"]),
            last_action_timestamp=_parse_ts(row["last_action_timestamp"]),
        )

    # Execution records

    def append_record(self, record: ExecutionRecord) -> None:
        with self._write_lock, self._get_connection() as conn:
            conn.execute("""
                INSERT INTO execution_records (
                    record_id, incident_id, service, host_id, action_kind, tier,
                    started_at, ended_at, outcome, detail, denial_policy,
                    playbook, dry_run
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                record.record_id,
                record.incident_id,
                record.service,
                record.host_id,
                record.action_kind.value,
                record.tier,
                record.started_at.isoformat(),
                record.ended_at.isoformat(),
                record.outcome.value,
                record.detail,
                record.denial_policy,
                record.playbook,
                int(record.dry_run),
            ))
            conn.commit()

    def list_records(
        self,
        incident_id: Optional[str] = None,
        service: Optional[str] = None,
        since: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> List[ExecutionRecord]:
        clauses = []
        params: list = []
        if incident_id is not None:
            clauses.append("incident_id = ?")
            params.append(incident_id)
        if service is not None:
            clauses.append("service = ?")
            params.append(service)
        if since is not None:
            clauses.append("started_at >= ?")
            params.append(since.isoformat())

        query = "SELECT * FROM execution_records"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY seq DESC"
        if limit:
            query += " LIMIT ?"
            params.append(int(limit))

        with self._get_connection() as conn:
            rows = conn.execute(query, params).fetchall()

        return [
            ExecutionRecord(
                record_id=row["record_id"],
                incident_id=row["incident_id"],
                service=row["service"],
                host_id=row["host_id"],
                action_kind=ActionKind(row["action_kind"]),
                tier=row["tier"],
                started_at=_parse_ts(row["started_at"]),
                ended_at=_parse_ts(row["ended_at"]),
                outcome=Outcome(row["outcome"]),
                detail=row["detail"] or "",
                denial_policy=row["denial_policy"],
                playbook=row["playbook"],
                dry_run=bool(row["dry_run"]),
            )
            for row in reversed(rows)
        ]

    # Escalation tickets

    def append_ticket(self, ticket: EscalationTicket) -> None:
        with self._write_lock, self._get_connection() as conn:
            conn.execute("""
                INSERT INTO escalation_tickets (
                    ticket_id, incident_id, service, action_kind, outcome,
                    action_refs, payload, created_at, denial_policy,
                    diagnosis_required, recommended_tier
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                ticket.ticket_id,
                ticket.incident_id,
                ticket.service,
                ticket.action_kind.value,
                ticket.outcome.value,
                json.dumps(list(ticket.action_refs)),
                json.dumps(ticket.payload, default=str),
                ticket.created_at.isoformat(),
                ticket.denial_policy,
                int(ticket.diagnosis_required),
                ticket.recommended_tier,
            ))
            conn.commit()

    def list_tickets(
        self,
        incident_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[EscalationTicket]:
        query = "SELECT * FROM escalation_tickets"
        params: list = []
        if incident_id is not None:
            query += " WHERE incident_id = ?"
            params.append(incident_id)
        query += " ORDER BY seq DESC"
        if limit:
            query += " LIMIT ?"
            params.append(int(limit))

        with self._get_connection() as conn:
            rows = conn.execute(query, params).fetchall()

        return [
            EscalationTicket(
                ticket_id=row["ticket_id"],
                incident_id=row["incident_id"],
                service=row["service"],
                action_kind=ActionKind(row["action_kind"]),
                outcome=Outcome(row["outcome"]),
                action_refs=tuple(json.loads(row["action_refs"])),
                payload=json.loads(row["payload"]),
                created_at=_parse_ts(row["created_at"]),
                denial_policy=row["denial_policy"],
                diagnosis_required=bool(row["diagnosis_required"]),
                recommended_tier=row["recommended_tier"],
            )
            for row in reversed(rows)
        ]
