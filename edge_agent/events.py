# Domain events - canonical event model and the builder that normalizes decoder output
# Machine ids, amounts and idempotency keys are computed here and nowhere else

import logging
import random
import string
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, Optional

from .errors import ParseError

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    MONEY_IN = 'money_in'
    MONEY_OUT = 'money_out'
    VOUCHER_PRINT = 'voucher_print'
    SESSION_START = 'session_start'
    SESSION_END = 'session_end'


MONETARY_TYPES = frozenset({EventType.MONEY_IN, EventType.MONEY_OUT, EventType.VOUCHER_PRINT})
SESSION_TYPES = frozenset({EventType.SESSION_START, EventType.SESSION_END})

# Outbox record classes; sessions are delivered to their own endpoint
RECORD_CLASS_EVENT = 'event'
RECORD_CLASS_SESSION = 'session'


@dataclass
class Extraction:
    """What a decoder matcher pulled out of one fragment, before normalization"""
    event_type: EventType
    machine_number: Optional[str]
    raw: str
    amount_text: Optional[str] = None
    daily_summary: bool = False
    source: str = 'serial_line'
    extra: Dict[str, Any] = field(default_factory=dict)


@dataclass
class DomainEvent:
    """A decoded, normalized event ready for the outbox"""
    event_type: EventType
    machine_id: str
    timestamp: datetime
    raw_payload: str
    amount: Optional[Decimal] = None
    idempotency_key: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def record_class(self) -> str:
        if self.event_type in SESSION_TYPES:
            return RECORD_CLASS_SESSION
        return RECORD_CLASS_EVENT

    def to_payload(self) -> Dict[str, Any]:
        """Outbound JSON body for the backend."""
        payload = {
            'eventType': self.event_type.value,
            'amount': float(self.amount) if self.amount is not None else None,
            'timestamp': self.timestamp.isoformat(),
            'machineId': self.machine_id,
            'rawData': self.raw_payload,
            'idempotencyKey': self.idempotency_key,
            'metadata': dict(self.metadata),
        }
        if self.record_class == RECORD_CLASS_SESSION:
            payload['sessionId'] = self.metadata.get('sessionId')
            payload['action'] = self.metadata.get('action')
        return payload


def format_machine_id(machine_number) -> str:
    """'3' -> 'machine_03'; raw machine numbers are never forwarded un-padded."""
    text = str(machine_number).strip()
    if not text.isdigit():
        raise ParseError(f"Invalid machine number: {machine_number!r}")
    return f"machine_{int(text):02d}"


def parse_amount(amount_text: Optional[str]) -> Decimal:
    """Parse '1,234.50' into Decimal('1234.50'); reject anything non-numeric or negative."""
    if amount_text is None:
        raise ParseError("Missing amount")
    cleaned = str(amount_text).replace(',', '').replace('$', '').strip()
    try:
        amount = Decimal(cleaned)
    except InvalidOperation:
        raise ParseError(f"Unparseable amount: {amount_text!r}")
    if not amount.is_finite() or amount < 0:
        raise ParseError(f"Invalid amount: {amount_text!r}")
    return amount


def daily_idempotency_key(event_type: EventType, machine_id: str, timestamp: datetime) -> str:
    """Same machine, type and UTC report date always give the same key."""
    report_date = timestamp.astimezone(timezone.utc).date().isoformat()
    return f"daily_{event_type.value}_{machine_id}_{report_date}"


def generate_session_id(machine_number: str, timestamp: datetime) -> str:
    millis = int(timestamp.timestamp() * 1000)
    suffix = ''.join(random.choices(string.ascii_lowercase + string.digits, k=9))
    return f"session_{machine_number}_{millis}_{suffix}"


class EventBuilder:
    """Turns decoder extractions into DomainEvents"""

    def build(self, extraction: Extraction, timestamp: Optional[datetime] = None) -> DomainEvent:
        timestamp = timestamp or datetime.now(timezone.utc)
        if timestamp.tzinfo is None:
            timestamp = timestamp.replace(tzinfo=timezone.utc)

        if extraction.machine_number is None:
            raise ParseError(f"No machine number for {extraction.event_type.value}")
        machine_id = format_machine_id(extraction.machine_number)

        amount = None
        if extraction.event_type in MONETARY_TYPES:
            amount = parse_amount(extraction.amount_text)
        elif extraction.amount_text is not None:
            amount = parse_amount(extraction.amount_text)

        metadata: Dict[str, Any] = {'source': extraction.source}
        metadata.update(extraction.extra)

        idempotency_key = None
        if extraction.daily_summary:
            metadata['source'] = 'daily_report'
            metadata['reportDate'] = timestamp.astimezone(timezone.utc).date().isoformat()
            idempotency_key = daily_idempotency_key(extraction.event_type, machine_id, timestamp)

        if extraction.event_type in SESSION_TYPES:
            metadata['action'] = 'start' if extraction.event_type == EventType.SESSION_START else 'end'
            metadata['sessionId'] = generate_session_id(str(int(extraction.machine_number)), timestamp)

        event = DomainEvent(
            event_type=extraction.event_type,
            machine_id=machine_id,
            timestamp=timestamp,
            raw_payload=extraction.raw,
            amount=amount,
            idempotency_key=idempotency_key,
            metadata=metadata,
        )
        logger.debug("Built %s for %s (amount=%s)", event.event_type.value, machine_id, amount)
        return event
