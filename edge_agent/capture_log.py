# Capture Log - raw serial capture to JSONL and replay through the pipeline
# Replaying a day's capture re-derives the same idempotency keys, so it is safe
# to backfill events the backend already has.

import json
import logging
import re
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, List, Optional, Tuple

from .events import DomainEvent

logger = logging.getLogger(__name__)

UNPRINTABLE = re.compile(r'[\x00-\x1F\x7F-\x9F]')


class CaptureLog:
    """Appends every raw chunk to a daily raw-YYYY-MM-DD.jsonl file"""

    def __init__(self, capture_dir: str = 'data/serial-logs', enabled: bool = False):
        self.capture_dir = Path(capture_dir)
        self.enabled = enabled
        self.session = int(time.time() * 1000)
        if self.enabled:
            self.capture_dir.mkdir(parents=True, exist_ok=True)
            logger.info("Serial capture ENABLED: %s", self.capture_dir)

    def file_for(self, when: datetime) -> Path:
        return self.capture_dir / f"raw-{when.date().isoformat()}.jsonl"

    def log_raw(self, data: bytes, source: str = 'serial', when: datetime = None):
        if not self.enabled:
            return
        when = when or datetime.now(timezone.utc)
        entry = {
            'timestamp': when.isoformat(),
            'session': self.session,
            'source': source,
            'length': len(data),
            'hex': data.hex(),
            'ascii': UNPRINTABLE.sub('.', data.decode('latin-1')),
        }
        try:
            with open(self.file_for(when), 'a', encoding='utf-8') as f:
                f.write(json.dumps(entry) + '\n')
        except OSError as e:
            logger.error("Failed to write raw capture: %s", e)


def read_capture(path) -> Iterator[Tuple[datetime, bytes]]:
    """Yield (timestamp, bytes) for each well-formed capture entry"""
    with open(path, 'r', encoding='utf-8') as f:
        for line_number, line in enumerate(f, 1):
            line = line.strip()
            if not line:
                continue
            try:
                entry = json.loads(line)
                when = datetime.fromisoformat(entry['timestamp'].replace('Z', '+00:00'))
                data = bytes.fromhex(entry['hex'])
            except (ValueError, KeyError, TypeError) as e:
                logger.warning("Skipping capture line %d: %s", line_number, e)
                continue
            if when.tzinfo is None:
                when = when.replace(tzinfo=timezone.utc)
            yield when, data


class DryRunOutbox:
    """In-memory sink for replays that must not touch the real outbox"""

    def __init__(self):
        self.events: List[DomainEvent] = []

    def append(self, event: DomainEvent) -> int:
        self.events.append(event)
        return len(self.events)


def replay_capture(path, pipeline) -> List[Tuple[int, DomainEvent]]:
    """Feed a capture file through the pipeline using the recorded timestamps"""
    stored: List[Tuple[int, DomainEvent]] = []
    last: Optional[datetime] = None
    chunks = 0
    for when, data in read_capture(path):
        stored.extend(pipeline.process_chunk(data, now=when.timestamp(), timestamp=when))
        last = when
        chunks += 1
    stored.extend(pipeline.flush(timestamp=last))
    logger.info("Replayed %d chunks from %s: %d events", chunks, path, len(stored))
    return stored
