# Tests for the durable outbox

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from edge_agent.errors import PersistenceError
from edge_agent.events import DomainEvent, EventType
from edge_agent.outbox import DurableOutbox


def make_event(machine='machine_29', amount='10.00', event_type=EventType.MONEY_IN, **kwargs):
    return DomainEvent(
        event_type=event_type,
        machine_id=machine,
        timestamp=datetime(2024, 1, 15, 10, 30, tzinfo=timezone.utc),
        raw_payload=f'{event_type.value} {amount}',
        amount=Decimal(amount) if amount is not None else None,
        **kwargs,
    )


class TestDurableOutbox:
    """SQLite outbox"""

    def setup_method(self):
        self.db_path = None

    def open(self, tmp_path, **kwargs):
        self.db_path = tmp_path / 'outbox.db'
        return DurableOutbox(self.db_path, **kwargs)

    def test_insertion_order(self, tmp_path):
        """Appending A then B lists A then B"""
        outbox = self.open(tmp_path)
        a = outbox.append(make_event('machine_01'))
        b = outbox.append(make_event('machine_02'))

        pending = outbox.list_pending()

        assert [r.id for r in pending] == [a, b]
        assert [r.event.machine_id for r in pending] == ['machine_01', 'machine_02']

    def test_round_trip_fields(self, tmp_path):
        """Stored events come back unchanged"""
        outbox = self.open(tmp_path)
        event = make_event(amount='1234.50', idempotency_key='daily_money_in_machine_29_2024-01-15',
                           metadata={'source': 'daily_report', 'reportDate': '2024-01-15'})

        record = outbox.get(outbox.append(event))

        assert record.event == event
        assert record.sync_status == 'pending'
        assert record.attempts == 0
        assert record.record_class == 'event'

    def test_mark_synced_idempotent(self, tmp_path):
        """A second mark_synced on the same id is a no-op"""
        outbox = self.open(tmp_path)
        record_id = outbox.append(make_event())

        assert outbox.mark_synced(record_id) is True
        synced_at = outbox.get(record_id).synced_at
        assert outbox.mark_synced(record_id) is False

        record = outbox.get(record_id)
        assert record.sync_status == 'synced'
        assert record.synced_at == synced_at
        assert outbox.list_pending() == []

    def test_mark_synced_unknown_id(self, tmp_path):
        outbox = self.open(tmp_path)

        assert outbox.mark_synced(999) is False

    def test_attempts_capped(self, tmp_path):
        """Attempts stop at the cap and capped records are not listed"""
        outbox = self.open(tmp_path, attempt_cap=5)
        record_id = outbox.append(make_event())

        for _ in range(7):
            outbox.increment_attempts(record_id, 'HTTP 500')

        record = outbox.get(record_id)
        assert record.attempts == 5
        assert record.last_error == 'HTTP 500'
        assert record.sync_status == 'pending'
        assert outbox.list_pending(max_attempts=5) == []

    def test_list_pending_limit_and_class(self, tmp_path):
        """Batches are bounded and split by record class"""
        outbox = self.open(tmp_path)
        for _ in range(12):
            outbox.append(make_event())
        outbox.append(make_event(amount=None, event_type=EventType.SESSION_START))

        assert len(outbox.list_pending(limit=10)) == 10
        sessions = outbox.list_pending(limit=10, record_class='session')
        assert [r.event.event_type for r in sessions] == [EventType.SESSION_START]

    def test_stats(self, tmp_path):
        outbox = self.open(tmp_path)
        first = outbox.append(make_event())
        outbox.append(make_event())
        outbox.append(make_event(amount=None, event_type=EventType.SESSION_END))
        outbox.mark_synced(first)

        stats = outbox.stats()

        assert stats == {
            'total_count': 3,
            'pending_count': 2,
            'pending_events': 1,
            'pending_sessions': 1,
        }

    def test_cleanup_only_old_synced(self, tmp_path):
        """Retention never removes pending records"""
        outbox = self.open(tmp_path, retention_days=7)
        synced = outbox.append(make_event())
        pending = outbox.append(make_event())
        outbox.mark_synced(synced)

        assert outbox.cleanup() == 0
        deleted = outbox.cleanup(now=datetime.now(timezone.utc) + timedelta(days=8))

        assert deleted == 1
        assert outbox.get(synced) is None
        assert outbox.get(pending) is not None

    def test_eviction_drops_oldest(self, tmp_path):
        """Over capacity the oldest rows go first"""
        outbox = self.open(tmp_path, max_records=3)
        ids = [outbox.append(make_event()) for _ in range(5)]

        assert outbox.stats()['total_count'] == 3
        assert [r.id for r in outbox.list_pending()] == ids[2:]

    def test_survives_reopen(self, tmp_path):
        """Pending records are still there after a restart"""
        outbox = self.open(tmp_path)
        record_id = outbox.append(make_event())

        reopened = DurableOutbox(self.db_path)

        assert [r.id for r in reopened.list_pending()] == [record_id]

    def test_state_round_trip(self, tmp_path):
        outbox = self.open(tmp_path)
        outbox.save_state('last_recovery', {'pending_records': 2})

        assert outbox.load_state('last_recovery') == {'pending_records': 2}
        assert outbox.load_state('missing', 'default') == 'default'

    def test_unopenable_path(self, tmp_path):
        """Init failure is a PersistenceError"""
        blocker = tmp_path / 'not_a_dir'
        blocker.write_text('x')

        with pytest.raises(PersistenceError):
            DurableOutbox(blocker / 'outbox.db')
