# Durable Outbox - SQLite storage for decoded events awaiting delivery
# Every event is written here before any network attempt

import json
import logging
import sqlite3
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, List, Optional

from .errors import PersistenceError
from .events import RECORD_CLASS_EVENT, DomainEvent, EventType

logger = logging.getLogger(__name__)

STATUS_PENDING = 'pending'
STATUS_SYNCED = 'synced'


@dataclass
class OutboxRecord:
    """A stored DomainEvent plus its delivery bookkeeping"""
    id: int
    record_class: str
    event: DomainEvent
    sync_status: str
    attempts: int
    created_at: str
    last_error: Optional[str] = None
    synced_at: Optional[str] = None


class DurableOutbox:
    """SQLite-backed append-only outbox with sync status"""

    DB_PATH = "data/edge_agent.db"

    def __init__(self, db_path: str = None, max_records: int = 10000,
                 retention_days: int = 7, attempt_cap: int = 5):
        self.db_path = str(db_path or self.DB_PATH)
        self.max_records = max_records
        self.retention_days = retention_days
        self.attempt_cap = attempt_cap
        # Serializes writes from the loop thread and worker threads
        self.lock = threading.Lock()
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self):
        """Initialize database schema; failure here is fatal"""
        try:
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
            with self.lock:
                conn = self._connect()
                try:
                    conn.execute('PRAGMA journal_mode=WAL')
                    conn.execute('''
                        CREATE TABLE IF NOT EXISTS outbox (
                            id INTEGER PRIMARY KEY AUTOINCREMENT,
                            record_class TEXT NOT NULL,
                            event_type TEXT NOT NULL,
                            machine_id TEXT NOT NULL,
                            amount TEXT,
                            timestamp TEXT NOT NULL,
                            idempotency_key TEXT,
                            raw_payload TEXT,
                            metadata_json TEXT,
                            sync_status TEXT NOT NULL DEFAULT 'pending',
                            attempts INTEGER NOT NULL DEFAULT 0,
                            last_error TEXT,
                            created_at TEXT NOT NULL,
                            synced_at TEXT
                        )
                    ''')
                    conn.execute('''
                        CREATE INDEX IF NOT EXISTS idx_outbox_pending
                        ON outbox(record_class, sync_status, id)
                    ''')
                    # State table for last sync time, shutdown markers
                    conn.execute('''
                        CREATE TABLE IF NOT EXISTS state (
                            key TEXT PRIMARY KEY,
                            value TEXT,
                            updated_at TEXT
                        )
                    ''')
                    conn.commit()
                finally:
                    conn.close()
        except (sqlite3.Error, OSError) as e:
            raise PersistenceError(f"Cannot open outbox at {self.db_path}: {e}") from e
        logger.info("Outbox initialized: %s", self.db_path)

    def append(self, event: DomainEvent) -> int:
        """Persist an event and return its id; committed before returning"""
        now = _utcnow().isoformat()
        try:
            with self.lock:
                conn = self._connect()
                try:
                    cursor = conn.execute('''
                        INSERT INTO outbox
                        (record_class, event_type, machine_id, amount, timestamp,
                         idempotency_key, raw_payload, metadata_json, created_at)
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ''', (event.record_class, event.event_type.value, event.machine_id,
                          str(event.amount) if event.amount is not None else None,
                          event.timestamp.isoformat(), event.idempotency_key,
                          event.raw_payload, json.dumps(event.metadata), now))
                    record_id = cursor.lastrowid
                    evicted = self._evict_oldest(conn)
                    conn.commit()
                finally:
                    conn.close()
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to append {event.event_type.value}: {e}") from e

        if evicted:
            logger.warning("Outbox over capacity (%d): evicted %d oldest records",
                           self.max_records, evicted)
        logger.debug("Stored %s locally (ID: %s)", event.event_type.value, record_id)
        return record_id

    def _evict_oldest(self, conn: sqlite3.Connection) -> int:
        if not self.max_records:
            return 0
        total = conn.execute('SELECT COUNT(*) FROM outbox').fetchone()[0]
        excess = total - self.max_records
        if excess <= 0:
            return 0
        conn.execute('''
            DELETE FROM outbox WHERE id IN (
                SELECT id FROM outbox ORDER BY id ASC LIMIT ?
            )
        ''', (excess,))
        return excess

    def list_pending(self, limit: int = 10, max_attempts: int = 5,
                     record_class: str = RECORD_CLASS_EVENT) -> List[OutboxRecord]:
        """Pending records below the attempt cap, oldest first"""
        with self.lock:
            conn = self._connect()
            try:
                rows = conn.execute('''
                    SELECT * FROM outbox
                    WHERE record_class = ? AND sync_status = ? AND attempts < ?
                    ORDER BY id ASC
                    LIMIT ?
                ''', (record_class, STATUS_PENDING, max_attempts, limit)).fetchall()
            finally:
                conn.close()
        return [_row_to_record(row) for row in rows]

    def get(self, record_id: int) -> Optional[OutboxRecord]:
        with self.lock:
            conn = self._connect()
            try:
                row = conn.execute('SELECT * FROM outbox WHERE id = ?', (record_id,)).fetchone()
            finally:
                conn.close()
        return _row_to_record(row) if row else None

    def mark_synced(self, record_id: int) -> bool:
        """Mark a record synced; a no-op for missing or already synced ids"""
        try:
            with self.lock:
                conn = self._connect()
                try:
                    cursor = conn.execute('''
                        UPDATE outbox SET sync_status = ?, synced_at = ?
                        WHERE id = ? AND sync_status = ?
                    ''', (STATUS_SYNCED, _utcnow().isoformat(), record_id, STATUS_PENDING))
                    conn.commit()
                    changed = cursor.rowcount > 0
                finally:
                    conn.close()
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to mark {record_id} synced: {e}") from e
        if changed:
            logger.debug("Marked record %s as synced", record_id)
        return changed

    def increment_attempts(self, record_id: int, error: str = None):
        """Record a failed delivery attempt"""
        try:
            with self.lock:
                conn = self._connect()
                try:
                    conn.execute('''
                        UPDATE outbox
                        SET attempts = MIN(attempts + 1, ?), last_error = ?
                        WHERE id = ? AND sync_status = ?
                    ''', (self.attempt_cap, error, record_id, STATUS_PENDING))
                    conn.commit()
                finally:
                    conn.close()
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to update attempts for {record_id}: {e}") from e

    def stats(self) -> Dict[str, int]:
        """Get outbox statistics"""
        with self.lock:
            conn = self._connect()
            try:
                stats = {
                    'total_count': conn.execute('SELECT COUNT(*) FROM outbox').fetchone()[0],
                    'pending_count': conn.execute(
                        'SELECT COUNT(*) FROM outbox WHERE sync_status = ?',
                        (STATUS_PENDING,)).fetchone()[0],
                    'pending_events': 0,
                    'pending_sessions': 0,
                }
                for record_class, count in conn.execute('''
                    SELECT record_class, COUNT(*) FROM outbox
                    WHERE sync_status = ? GROUP BY record_class
                ''', (STATUS_PENDING,)):
                    stats[f'pending_{record_class}s'] = count
            finally:
                conn.close()
        return stats

    def cleanup(self, now: Optional[datetime] = None) -> int:
        """Delete synced records older than the retention window"""
        cutoff = (now or _utcnow()) - timedelta(days=self.retention_days)
        try:
            with self.lock:
                conn = self._connect()
                try:
                    cursor = conn.execute('''
                        DELETE FROM outbox WHERE sync_status = ? AND created_at < ?
                    ''', (STATUS_SYNCED, cutoff.isoformat()))
                    conn.commit()
                    deleted = cursor.rowcount
                finally:
                    conn.close()
        except sqlite3.Error as e:
            raise PersistenceError(f"Cleanup failed: {e}") from e
        if deleted:
            logger.info("Cleaned up %d synced records older than %d days",
                        deleted, self.retention_days)
        return deleted

    def save_state(self, key: str, value: Any):
        """Save state key-value"""
        with self.lock:
            conn = self._connect()
            try:
                conn.execute('''
                    INSERT OR REPLACE INTO state (key, value, updated_at)
                    VALUES (?, ?, ?)
                ''', (key, json.dumps(value), _utcnow().isoformat()))
                conn.commit()
            finally:
                conn.close()

    def load_state(self, key: str, default: Any = None) -> Any:
        """Load state value"""
        with self.lock:
            conn = self._connect()
            try:
                row = conn.execute('SELECT value FROM state WHERE key = ?', (key,)).fetchone()
            finally:
                conn.close()
        if row is None:
            return default
        try:
            return json.loads(row[0])
        except ValueError:
            return row[0]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _row_to_record(row: sqlite3.Row) -> OutboxRecord:
    event = DomainEvent(
        event_type=EventType(row['event_type']),
        machine_id=row['machine_id'],
        timestamp=datetime.fromisoformat(row['timestamp']),
        raw_payload=row['raw_payload'],
        amount=Decimal(row['amount']) if row['amount'] is not None else None,
        idempotency_key=row['idempotency_key'],
        metadata=json.loads(row['metadata_json']) if row['metadata_json'] else {},
    )
    return OutboxRecord(
        id=row['id'],
        record_class=row['record_class'],
        event=event,
        sync_status=row['sync_status'],
        attempts=row['attempts'],
        created_at=row['created_at'],
        last_error=row['last_error'],
        synced_at=row['synced_at'],
    )
