# Ingest Pipeline - framer -> decoder -> builder -> outbox on one consumer task
# Raw chunks arrive through a bounded queue; the consumer is the only code that
# touches the framer and the decoder state.

import asyncio
import logging
from datetime import datetime
from typing import Callable, List, Optional, Tuple

from .errors import ParseError, PersistenceError
from .events import DomainEvent, EventBuilder
from .outbox import DurableOutbox
from .protocol_decoder import ProtocolDecoder
from .stream_framer import Fragment, StreamFramer

logger = logging.getLogger(__name__)

APPEND_RETRIES = 3


class IngestPipeline:
    """Turns raw controller bytes into outbox records"""

    def __init__(self, outbox: DurableOutbox, framer: StreamFramer = None,
                 decoder: ProtocolDecoder = None, builder: EventBuilder = None,
                 on_event: Optional[Callable[[int, DomainEvent], None]] = None,
                 max_queue: int = 1024):
        self.outbox = outbox
        self.framer = framer or StreamFramer()
        self.decoder = decoder or ProtocolDecoder()
        self.builder = builder or EventBuilder()
        self.on_event = on_event
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=max_queue)
        self.events_stored = 0
        self.fragments_rejected = 0
        self._task: Optional[asyncio.Task] = None

    async def submit(self, data: bytes):
        """Hand a raw chunk to the consumer; waits while the queue is full"""
        await self.queue.put(data)

    def process_chunk(self, data: bytes, now: float = None,
                      timestamp: datetime = None) -> List[Tuple[int, DomainEvent]]:
        """Synchronous core: frame, decode, build and persist one chunk"""
        return self._process_fragments(self.framer.feed(data, now), timestamp)

    def poll(self, now: float = None, timestamp: datetime = None) -> List[Tuple[int, DomainEvent]]:
        """Close an assembly whose deadline has passed"""
        expired = self.framer.poll(now)
        return self._process_fragments([expired] if expired else [], timestamp)

    def flush(self, timestamp: datetime = None) -> List[Tuple[int, DomainEvent]]:
        return self._process_fragments(self.framer.flush(), timestamp)

    def _process_fragments(self, fragments: List[Fragment],
                           timestamp: datetime = None) -> List[Tuple[int, DomainEvent]]:
        stored = []
        for fragment in fragments:
            try:
                extraction = self.decoder.feed(fragment)
                if extraction is None:
                    continue
                event = self.builder.build(extraction, timestamp)
            except ParseError as e:
                self.fragments_rejected += 1
                logger.warning("Dropped fragment: %s", e)
                continue

            record_id = self._append(event)
            if record_id is None:
                continue
            self.events_stored += 1
            logger.info("Parsed event: %s from %s (amount=%s, id=%s)", event.event_type.value,
                        event.machine_id, event.amount, record_id)
            stored.append((record_id, event))
            if self.on_event:
                self.on_event(record_id, event)
        return stored

    def _append(self, event: DomainEvent) -> Optional[int]:
        for attempt in range(1, APPEND_RETRIES + 1):
            try:
                return self.outbox.append(event)
            except PersistenceError as e:
                logger.warning("Outbox append failed (attempt %d/%d): %s",
                               attempt, APPEND_RETRIES, e)
        logger.error("Event lost after %d append attempts: %s %s %s", APPEND_RETRIES,
                     event.event_type.value, event.machine_id, event.raw_payload)
        return None

    async def _consume(self):
        while True:
            timeout = self.framer.seconds_until_deadline()
            try:
                if timeout is None:
                    data = await self.queue.get()
                else:
                    data = await asyncio.wait_for(self.queue.get(), timeout=timeout)
            except asyncio.TimeoutError:
                self.poll()
                continue
            try:
                self.process_chunk(data)
            except Exception:
                logger.exception("Unexpected error while processing %d bytes", len(data))
            finally:
                self.queue.task_done()

    def start(self):
        if self._task is None:
            self._task = asyncio.get_running_loop().create_task(self._consume(), name='ingest')

    async def stop(self):
        """Drain queued chunks, close any open assembly, stop the consumer"""
        if self._task is None:
            return
        await self.queue.join()
        self._task.cancel()
        await asyncio.gather(self._task, return_exceptions=True)
        self._task = None
        self.flush()
