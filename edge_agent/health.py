# Health Reporter - periodic heartbeat with serial and sync state

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from .errors import DeliveryError

logger = logging.getLogger(__name__)


class HealthReporter:
    """Sends a heartbeat on a timer; never raises into the loop"""

    def __init__(self, client, sync_engine, interval: float = 30):
        self.client = client
        self.sync_engine = sync_engine
        self.interval = interval
        self.serial_connected = False
        self.last_data_received: Optional[str] = None
        self.error_count = 0
        self.started_at = time.monotonic()
        self._task: Optional[asyncio.Task] = None

    def update_serial_status(self, connected: bool):
        if connected != self.serial_connected:
            logger.info("Serial status update: %s", 'CONNECTED' if connected else 'DISCONNECTED')
        self.serial_connected = connected

    def record_data(self):
        self.last_data_received = datetime.now(timezone.utc).isoformat()

    def record_error(self, message: str = None, level: str = None):
        """Error-alert callback target for logging_config"""
        self.error_count += 1

    def get_health_data(self) -> Dict[str, Any]:
        stats = self.sync_engine.outbox.stats()
        return {
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'serialConnected': self.serial_connected,
            'lastDataReceived': self.last_data_received,
            'queueSize': stats['pending_count'],
            'isOnline': self.sync_engine.is_online,
            'lastSuccessfulSync': self.sync_engine.last_successful_sync,
            'uptime': round(time.monotonic() - self.started_at, 1),
            'errorCount': self.error_count,
        }

    async def send_heartbeat(self) -> bool:
        try:
            await asyncio.to_thread(self.client.send_heartbeat, self.get_health_data())
            return True
        except DeliveryError as e:
            logger.warning("Failed to send heartbeat: %s", e)
            return False

    async def send_shutdown(self):
        data = self.get_health_data()
        data['status'] = 'shutting_down'
        try:
            await asyncio.to_thread(self.client.send_heartbeat, data)
        except DeliveryError as e:
            logger.warning("Failed to send shutdown heartbeat: %s", e)

    async def _run(self):
        while True:
            await asyncio.sleep(self.interval)
            try:
                await self.send_heartbeat()
            except Exception:
                logger.exception("Unexpected error while sending heartbeat")

    def start(self):
        if self._task:
            return
        self._task = asyncio.get_running_loop().create_task(self._run(), name='heartbeat')
        logger.info("Health monitoring started (%ss interval)", self.interval)

    async def stop(self):
        if self._task:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
        logger.info("Health monitoring stopped")
