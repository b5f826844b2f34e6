# Recovery Manager - restart bookkeeping for the edge agent
# Logs the downtime window on startup; pending records are left to the sync engine

import logging
from datetime import datetime, timezone
from typing import Any, Dict

from .outbox import DurableOutbox

logger = logging.getLogger(__name__)

LAST_SHUTDOWN_KEY = 'last_shutdown'
RUNNING_KEY = 'running'


class RecoveryManager:
    """Manages restart recovery state in the outbox state table"""

    def __init__(self, outbox: DurableOutbox):
        self.outbox = outbox

    def on_startup(self) -> Dict[str, Any]:
        """Run recovery process on startup"""
        now = datetime.now(timezone.utc)
        last_shutdown = self.outbox.load_state(LAST_SHUTDOWN_KEY)
        crashed = bool(self.outbox.load_state(RUNNING_KEY, False))
        stats = self.outbox.stats()

        report = {
            'started_at': now.isoformat(),
            'last_shutdown': last_shutdown,
            'last_successful_sync': self.outbox.load_state('last_successful_sync'),
            'unclean_shutdown': crashed,
            'pending_records': stats['pending_count'],
            'downtime_seconds': None,
        }

        if last_shutdown:
            try:
                stopped_at = datetime.fromisoformat(last_shutdown)
                report['downtime_seconds'] = round((now - stopped_at).total_seconds())
            except (TypeError, ValueError):
                logger.warning("Unreadable shutdown marker: %r", last_shutdown)
            logger.info("Agent was down since %s (%s s)", last_shutdown,
                        report['downtime_seconds'])

        if crashed:
            logger.warning("Previous run did not shut down cleanly; last successful sync %s. "
                           "Controller output during the outage was not captured.",
                           report['last_successful_sync'])

        if stats['pending_count']:
            logger.info("Found %d pending records to redeliver", stats['pending_count'])

        self.outbox.save_state(RUNNING_KEY, True)
        self.outbox.save_state('last_recovery', report)
        return report

    def on_shutdown(self):
        """Save state before shutdown"""
        stats = self.outbox.stats()
        self.outbox.save_state(LAST_SHUTDOWN_KEY, datetime.now(timezone.utc).isoformat())
        self.outbox.save_state('pending_on_shutdown', stats['pending_count'])
        self.outbox.save_state(RUNNING_KEY, False)
        logger.info("Shutdown: %d records pending sync", stats['pending_count'])

    def get_recovery_status(self) -> Dict[str, Any]:
        """Outbox counts plus the restart markers, read from the state table"""
        status = dict(self.outbox.stats())
        for key in (LAST_SHUTDOWN_KEY, 'pending_on_shutdown', 'last_successful_sync',
                    'last_recovery'):
            status[key] = self.outbox.load_state(key)
        status['running'] = bool(self.outbox.load_state(RUNNING_KEY, False))
        return status
