# Sync Engine - timer-driven reconciliation of the outbox with the backend
# Probe, then drain events and sessions in bounded fail-fast batches

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from .errors import ConnectivityError, DeliveryError, PersistenceError
from .events import RECORD_CLASS_EVENT, RECORD_CLASS_SESSION
from .outbox import DurableOutbox

logger = logging.getLogger(__name__)

CLEANUP_INTERVAL = 24 * 60 * 60  # seconds
LAST_SUCCESSFUL_SYNC_KEY = 'last_successful_sync'


@dataclass
class BatchResult:
    delivered: int = 0
    failed: int = 0


@dataclass
class SyncResult:
    online: bool
    batches: Dict[str, BatchResult] = field(default_factory=dict)

    @property
    def delivered(self) -> int:
        return sum(b.delivered for b in self.batches.values())


class SyncEngine:
    """Drains pending outbox records to the backend on a timer"""

    def __init__(self, outbox: DurableOutbox, client, batch_size: int = 10,
                 max_attempts: int = 5, interval: float = 30, startup_delay: float = 5,
                 cleanup_interval: float = CLEANUP_INTERVAL):
        self.outbox = outbox
        self.client = client
        self.batch_size = batch_size
        self.max_attempts = max_attempts
        self.interval = interval
        self.startup_delay = startup_delay
        self.cleanup_interval = cleanup_interval

        self.is_online = False
        self.is_syncing = False
        self.last_sync_attempt: Optional[datetime] = None
        self.last_successful_sync: Optional[str] = outbox.load_state(LAST_SUCCESSFUL_SYNC_KEY)

        self._tasks: List[asyncio.Task] = []
        self._pending_force: Optional[asyncio.Task] = None

    async def sync_to_backend(self) -> Optional[SyncResult]:
        """One tick. Returns None when another sync is already running."""
        if self.is_syncing:
            logger.debug("Sync already in progress, skipping")
            return None

        self.is_syncing = True
        self.last_sync_attempt = datetime.now(timezone.utc)
        try:
            try:
                await asyncio.to_thread(self.client.probe)
            except ConnectivityError as e:
                if self.is_online:
                    logger.warning("Backend unreachable, working offline: %s", e)
                else:
                    logger.debug("Sync probe failed - still offline: %s", e)
                self.is_online = False
                return SyncResult(online=False)

            if not self.is_online:
                logger.info("Backend reachable, back online")
            self.is_online = True

            result = SyncResult(online=True)
            result.batches[RECORD_CLASS_EVENT] = await self._drain(
                RECORD_CLASS_EVENT, self.client.send_event)
            result.batches[RECORD_CLASS_SESSION] = await self._drain(
                RECORD_CLASS_SESSION, self.client.send_session)

            if result.delivered:
                logger.info("Sync completed: %d events, %d sessions",
                            result.batches[RECORD_CLASS_EVENT].delivered,
                            result.batches[RECORD_CLASS_SESSION].delivered)

            self.last_successful_sync = datetime.now(timezone.utc).isoformat()
            self.outbox.save_state(LAST_SUCCESSFUL_SYNC_KEY, self.last_successful_sync)
            return result
        finally:
            self.is_syncing = False

    async def _drain(self, record_class: str, send) -> BatchResult:
        batch = BatchResult()
        records = self.outbox.list_pending(limit=self.batch_size, max_attempts=self.max_attempts,
                                           record_class=record_class)
        for record in records:
            try:
                await asyncio.to_thread(send, record.event.to_payload())
            except DeliveryError as e:
                batch.failed += 1
                self.outbox.increment_attempts(record.id, str(e))
                if record.attempts + 1 >= self.max_attempts:
                    logger.error("%s %s reached %d delivery attempts and stays pending: %s",
                                 record_class, record.id, self.max_attempts, e)
                else:
                    logger.warning("Failed to sync %s ID %s: %s", record_class, record.id, e)
                # Backend presumed down: leave the rest for the next tick
                break
            self.outbox.mark_synced(record.id)
            batch.delivered += 1
        return batch

    async def force_sync(self) -> Optional[SyncResult]:
        """Immediate sync outside the timer; still honours the is_syncing guard"""
        logger.debug("Forcing immediate sync")
        return await self.sync_to_backend()

    def request_sync(self):
        """Schedule a forced sync without waiting for it"""
        if self.is_syncing or (self._pending_force and not self._pending_force.done()):
            return
        self._pending_force = asyncio.get_running_loop().create_task(self._guarded(self.force_sync))

    async def _guarded(self, coro_fn):
        try:
            return await coro_fn()
        except PersistenceError as e:
            logger.error("Outbox error during sync: %s", e)
        except Exception:
            logger.exception("Unexpected error during sync")

    async def _sync_loop(self):
        await asyncio.sleep(self.startup_delay)
        while True:
            await self._guarded(self.sync_to_backend)
            await asyncio.sleep(self.interval)

    async def _cleanup_loop(self):
        while True:
            await asyncio.sleep(self.cleanup_interval)
            try:
                self.outbox.cleanup()
            except PersistenceError as e:
                logger.error("Outbox cleanup failed: %s", e)

    def start(self):
        loop = asyncio.get_running_loop()
        self._tasks = [
            loop.create_task(self._sync_loop(), name='sync_loop'),
            loop.create_task(self._cleanup_loop(), name='outbox_cleanup'),
        ]
        logger.info("Sync engine started (every %ss, batch %d)", self.interval, self.batch_size)

    async def stop(self):
        tasks = list(self._tasks)
        if self._pending_force:
            tasks.append(self._pending_force)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks = []
        self._pending_force = None
        logger.info("Sync engine stopped")

    def get_status(self) -> Dict[str, Any]:
        status = {
            'is_online': self.is_online,
            'is_syncing': self.is_syncing,
            'last_sync_attempt': self.last_sync_attempt.isoformat() if self.last_sync_attempt else None,
            'last_successful_sync': self.last_successful_sync,
        }
        status.update(self.outbox.stats())
        return status
