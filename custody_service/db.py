"""
Database module for the custody service.

SQLite implementation of CustodyStore. Entities are stored as JSON bodies
(the same camelCase shape used for exported packages) next to the columns
needed for lookups. Anchor records live in their own table so that event
rows are written exactly once and never updated.
"""

import json
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, List, Optional

from custodychain import (
    AnchorRecord,
    AuditEntry,
    Batch,
    BatchStatus,
    Credential,
    CustodyStore,
    Document,
    Event,
    Facility,
    Party,
    ValidationError,
    order_events,
)
from custodychain.models import UnreadableEvent, decode_event

from .config import DB_PATH

_TABLES = ["parties", "facilities", "documents", "credentials", "batches", "events", "anchors", "audit_log"]


def _dumps(data: Dict[str, Any]) -> str:
    return json.dumps(data, sort_keys=True)


class SqliteStore(CustodyStore):
    """
    SQLite-backed custody store.

    Uses one connection per thread (anchor results arrive on dispatcher
    threads) and WAL mode so readers never block the writer.
    """

    def __init__(self, db_path: Optional[str] = None):
        self.db_path = Path(db_path or DB_PATH)
        self._local = threading.local()

    def _get_connection(self) -> sqlite3.Connection:
        """
        Get a thread-local database connection.
        Connections are reused within the same thread for performance.
        """
        conn = getattr(self._local, 'conn', None)
        if conn is None:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(str(self.db_path), check_same_thread=False, timeout=10)
            conn.execute("PRAGMA journal_mode=WAL;")
            conn.execute("PRAGMA synchronous=NORMAL;")
            conn.execute("PRAGMA temp_store=MEMORY;")
            conn.row_factory = sqlite3.Row
            self._local.conn = conn
        return conn

    @contextmanager
    def _transaction(self):
        """
        Context manager for database transactions.
        Automatically commits on success, rolls back on failure.
        """
        conn = self._get_connection()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise

    def init_db(self) -> None:
        """
        Initialize database schema.
        Safe to call multiple times (uses IF NOT EXISTS).
        """
        with self._transaction() as conn:
            conn.execute("""
            CREATE TABLE IF NOT EXISTS parties (
                party_id TEXT PRIMARY KEY,
                body_json TEXT NOT NULL
            );""")
            conn.execute("""
            CREATE TABLE IF NOT EXISTS facilities (
                facility_id TEXT PRIMARY KEY,
                body_json TEXT NOT NULL
            );""")
            conn.execute("""
            CREATE TABLE IF NOT EXISTS documents (
                document_id TEXT PRIMARY KEY,
                related_batch_id TEXT,
                body_json TEXT NOT NULL
            );""")
            conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_documents_batch
            ON documents(related_batch_id);""")
            conn.execute("""
            CREATE TABLE IF NOT EXISTS batches (
                batch_id TEXT PRIMARY KEY,
                external_reference TEXT NOT NULL UNIQUE,
                status TEXT NOT NULL,
                body_json TEXT NOT NULL
            );""")
            conn.execute("""
            CREATE TABLE IF NOT EXISTS events (
                event_id TEXT PRIMARY KEY,
                batch_id TEXT NOT NULL,
                timestamp TEXT NOT NULL,
                sequence INTEGER NOT NULL,
                body_json TEXT NOT NULL
            );""")
            conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_events_batch
            ON events(batch_id, timestamp, sequence);""")
            conn.execute("""
            CREATE TABLE IF NOT EXISTS credentials (
                credential_id TEXT PRIMARY KEY,
                subject_batch_id TEXT,
                body_json TEXT NOT NULL
            );""")
            conn.execute("""
            CREATE TABLE IF NOT EXISTS anchors (
                subject_id TEXT PRIMARY KEY,
                subject_type TEXT NOT NULL,
                record_json TEXT NOT NULL
            );""")
            conn.execute("""
            CREATE TABLE IF NOT EXISTS audit_log (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                entity_id TEXT NOT NULL,
                entry_json TEXT NOT NULL
            );""")
            conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_audit_entity
            ON audit_log(entity_id);""")

    # ============================================================
    # Row helpers
    # ============================================================

    def _anchor_for(self, conn: sqlite3.Connection, subject_id: str) -> Optional[AnchorRecord]:
        row = conn.execute("SELECT record_json FROM anchors WHERE subject_id=?", (subject_id,)).fetchone()
        return AnchorRecord.from_dict(json.loads(row['record_json'])) if row else None

    def _batch_from_row(self, conn: sqlite3.Connection, row) -> Batch:
        batch = Batch.from_dict(json.loads(row['body_json']))
        batch.anchor = self._anchor_for(conn, batch.batch_id)
        return batch

    def _event_from_row(self, conn: sqlite3.Connection, row) -> Event:
        event = Event.from_dict(json.loads(row['body_json']))
        event.anchor = self._anchor_for(conn, event.event_id)
        return event

    @staticmethod
    def _body(entity) -> str:
        data = entity.to_dict()
        data.pop("anchor", None)
        return _dumps(data)

    def _insert_batch(self, conn: sqlite3.Connection, batch: Batch) -> None:
        try:
            conn.execute(
                "INSERT INTO batches(batch_id, external_reference, status, body_json) VALUES(?,?,?,?)",
                (batch.batch_id, batch.external_reference, batch.status.value, self._body(batch))
            )
        except sqlite3.IntegrityError as e:
            raise ValidationError(f"Batch {batch.batch_id} or reference {batch.external_reference} already exists") from e
        if batch.anchor is not None:
            self._upsert_anchor(conn, batch.anchor)

    def _insert_event(self, conn: sqlite3.Connection, event: Event) -> None:
        try:
            conn.execute(
                "INSERT INTO events(event_id, batch_id, timestamp, sequence, body_json) VALUES(?,?,?,?,?)",
                (event.event_id, event.batch_id, event.timestamp, event.sequence, self._body(event))
            )
        except sqlite3.IntegrityError as e:
            raise ValidationError(f"Event {event.event_id} already exists") from e
        if event.anchor is not None:
            self._upsert_anchor(conn, event.anchor)

    def _update_batch(self, conn: sqlite3.Connection, batch: Batch) -> None:
        cur = conn.execute(
            "UPDATE batches SET status=?, body_json=? WHERE batch_id=?",
            (batch.status.value, self._body(batch), batch.batch_id)
        )
        if cur.rowcount != 1:
            raise ValidationError(f"Batch {batch.batch_id} does not exist")

    def _upsert_anchor(self, conn: sqlite3.Connection, record: AnchorRecord) -> None:
        conn.execute(
            "INSERT OR REPLACE INTO anchors(subject_id, subject_type, record_json) VALUES(?,?,?)",
            (record.subject_id, record.subject_type, _dumps(record.to_dict()))
        )

    # ============================================================
    # Parties / facilities / documents
    # ============================================================

    def save_party(self, party: Party) -> None:
        with self._transaction() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO parties(party_id, body_json) VALUES(?,?)",
                (party.party_id, _dumps(party.to_dict()))
            )

    def load_party(self, party_id: str) -> Optional[Party]:
        row = self._get_connection().execute(
            "SELECT body_json FROM parties WHERE party_id=?", (party_id,)
        ).fetchone()
        return Party.from_dict(json.loads(row['body_json'])) if row else None

    def list_parties(self) -> List[Party]:
        rows = self._get_connection().execute("SELECT body_json FROM parties ORDER BY rowid").fetchall()
        return [Party.from_dict(json.loads(r['body_json'])) for r in rows]

    def save_facility(self, facility: Facility) -> None:
        with self._transaction() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO facilities(facility_id, body_json) VALUES(?,?)",
                (facility.facility_id, _dumps(facility.to_dict()))
            )

    def load_facility(self, facility_id: str) -> Optional[Facility]:
        row = self._get_connection().execute(
            "SELECT body_json FROM facilities WHERE facility_id=?", (facility_id,)
        ).fetchone()
        return Facility.from_dict(json.loads(row['body_json'])) if row else None

    def list_facilities(self) -> List[Facility]:
        rows = self._get_connection().execute("SELECT body_json FROM facilities ORDER BY rowid").fetchall()
        return [Facility.from_dict(json.loads(r['body_json'])) for r in rows]

    def save_document(self, document: Document) -> None:
        with self._transaction() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO documents(document_id, related_batch_id, body_json) VALUES(?,?,?)",
                (document.document_id, document.related_batch_id, _dumps(document.to_dict()))
            )

    def load_document(self, document_id: str) -> Optional[Document]:
        row = self._get_connection().execute(
            "SELECT body_json FROM documents WHERE document_id=?", (document_id,)
        ).fetchone()
        return Document.from_dict(json.loads(row['body_json'])) if row else None

    def list_documents(self, batch_id: Optional[str] = None) -> List[Document]:
        conn = self._get_connection()
        if batch_id is None:
            rows = conn.execute("SELECT body_json FROM documents ORDER BY rowid").fetchall()
        else:
            rows = conn.execute(
                "SELECT body_json FROM documents WHERE related_batch_id=? ORDER BY rowid", (batch_id,)
            ).fetchall()
        return [Document.from_dict(json.loads(r['body_json'])) for r in rows]

    def save_credential(self, credential: Credential) -> None:
        with self._transaction() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO credentials(credential_id, subject_batch_id, body_json) VALUES(?,?,?)",
                (credential.credential_id, credential.subject_batch_id, _dumps(credential.to_dict()))
            )

    def load_credential(self, credential_id: str) -> Optional[Credential]:
        row = self._get_connection().execute(
            "SELECT body_json FROM credentials WHERE credential_id=?", (credential_id,)
        ).fetchone()
        return Credential.from_dict(json.loads(row['body_json'])) if row else None

    def list_credentials(self, batch_id: Optional[str] = None) -> List[Credential]:
        conn = self._get_connection()
        if batch_id is None:
            rows = conn.execute("SELECT body_json FROM credentials ORDER BY rowid").fetchall()
        else:
            rows = conn.execute(
                "SELECT body_json FROM credentials WHERE subject_batch_id=? ORDER BY rowid", (batch_id,)
            ).fetchall()
        return [Credential.from_dict(json.loads(r['body_json'])) for r in rows]

    # ============================================================
    # Batches and events
    # ============================================================

    def save_batch(self, batch: Batch) -> None:
        with self._transaction() as conn:
            self._insert_batch(conn, batch)

    def update_batch(self, batch: Batch) -> None:
        with self._transaction() as conn:
            self._update_batch(conn, batch)

    def load_batch(self, batch_id: str) -> Optional[Batch]:
        conn = self._get_connection()
        row = conn.execute("SELECT body_json FROM batches WHERE batch_id=?", (batch_id,)).fetchone()
        return self._batch_from_row(conn, row) if row else None

    def find_batch_by_reference(self, external_reference: str) -> Optional[Batch]:
        conn = self._get_connection()
        row = conn.execute(
            "SELECT body_json FROM batches WHERE external_reference=?", (external_reference,)
        ).fetchone()
        return self._batch_from_row(conn, row) if row else None

    def list_batches(self, status: Optional[BatchStatus] = None) -> List[Batch]:
        conn = self._get_connection()
        if status is None:
            rows = conn.execute("SELECT body_json FROM batches ORDER BY rowid").fetchall()
        else:
            rows = conn.execute(
                "SELECT body_json FROM batches WHERE status=? ORDER BY rowid", (status.value,)
            ).fetchall()
        return [self._batch_from_row(conn, r) for r in rows]

    def append_event(self, event: Event) -> None:
        with self._transaction() as conn:
            self._insert_event(conn, event)

    def load_event(self, event_id: str) -> Optional[Event]:
        conn = self._get_connection()
        row = conn.execute("SELECT body_json FROM events WHERE event_id=?", (event_id,)).fetchone()
        return self._event_from_row(conn, row) if row else None

    def load_events_for_batch(self, batch_id: str) -> List[Event]:
        conn = self._get_connection()
        rows = conn.execute(
            "SELECT body_json FROM events WHERE batch_id=? ORDER BY timestamp, sequence", (batch_id,)
        ).fetchall()
        return order_events(self._event_from_row(conn, r) for r in rows)

    def load_events_for_verification(self, batch_id: str) -> list:
        """Rows whose body no longer decodes come back as UnreadableEvent."""
        conn = self._get_connection()
        rows = conn.execute(
            "SELECT event_id, body_json FROM events WHERE batch_id=? ORDER BY timestamp, sequence", (batch_id,)
        ).fetchall()
        events = []
        for row in rows:
            try:
                body = json.loads(row['body_json'])
            except ValueError as e:
                event = UnreadableEvent(body={"eventId": row["event_id"]}, error=f"stored event body is not JSON: {e}")
            else:
                event = decode_event(body)
                if isinstance(event, UnreadableEvent):
                    event.body.setdefault("eventId", row["event_id"])
            event.anchor = self._anchor_for(conn, row['event_id'])
            events.append(event)
        return order_events(events)

    def record_event(self, event: Event, batch: Batch) -> None:
        """Event insert and batch update commit together or not at all."""
        with self._transaction() as conn:
            self._insert_event(conn, event)
            self._update_batch(conn, batch)

    def record_batch(self, batch: Batch, event: Event) -> None:
        with self._transaction() as conn:
            self._insert_batch(conn, batch)
            self._insert_event(conn, event)

    def attach_anchor(self, subject_id: str, record: AnchorRecord) -> bool:
        with self._transaction() as conn:
            known = conn.execute(
                "SELECT 1 FROM events WHERE event_id=? UNION SELECT 1 FROM batches WHERE batch_id=?",
                (subject_id, subject_id)
            ).fetchone()
            if known is None:
                return False
            self._upsert_anchor(conn, record)
            return True

    # ============================================================
    # Audit trail
    # ============================================================

    def append_audit(self, entry: AuditEntry) -> None:
        with self._transaction() as conn:
            conn.execute(
                "INSERT INTO audit_log(entity_id, entry_json) VALUES(?,?)",
                (entry.entity_id, _dumps(entry.to_dict()))
            )

    def load_audit(self, entity_id: Optional[str] = None) -> List[AuditEntry]:
        conn = self._get_connection()
        if entity_id is None:
            rows = conn.execute("SELECT entry_json FROM audit_log ORDER BY id").fetchall()
        else:
            rows = conn.execute(
                "SELECT entry_json FROM audit_log WHERE entity_id=? ORDER BY id", (entity_id,)
            ).fetchall()
        return [AuditEntry.from_dict(json.loads(r['entry_json'])) for r in rows]

    # ============================================================
    # Metrics and Health
    # ============================================================

    def get_db_stats(self) -> Dict[str, int]:
        """Get database statistics for monitoring."""
        conn = self._get_connection()
        stats = {}
        for table in _TABLES:
            cur = conn.execute(f"SELECT COUNT(*) as cnt FROM {table}")
            stats[f"{table}_count"] = cur.fetchone()['cnt']
        return stats

    # ============================================================
    # Test Support: Database Reset
    # ============================================================

    def reset_db(self) -> None:
        """
        Reset the database for test isolation.
        Clears all tables but preserves schema.
        """
        with self._transaction() as conn:
            for table in _TABLES:
                conn.execute(f"DELETE FROM {table}")

    def close_connection(self) -> None:
        """Close the thread-local connection (for cleanup)."""
        conn = getattr(self._local, 'conn', None)
        if conn is not None:
            conn.close()
            self._local.conn = None
