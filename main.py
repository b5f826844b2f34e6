#!/usr/bin/env python3
"""
Edge Agent - serial controller decoding with offline-first backend sync
"""

import argparse
import asyncio
import json
import logging
import signal
import sys
from pathlib import Path

from edge_agent import __version__
from edge_agent.api_client import BackendClient, StubBackendClient
from edge_agent.capture_log import CaptureLog, DryRunOutbox, replay_capture
from edge_agent.config import load_config
from edge_agent.errors import PersistenceError
from edge_agent.events import EventBuilder
from edge_agent.health import HealthReporter
from edge_agent.logging_config import set_error_alert_callback, setup_logging
from edge_agent.mock_controller import MockController
from edge_agent.outbox import DurableOutbox
from edge_agent.pipeline import IngestPipeline
from edge_agent.protocol_decoder import DecoderPolicy, ProtocolDecoder
from edge_agent.recovery import RecoveryManager
from edge_agent.serial_monitor import PrinterPassthrough, SerialMonitor
from edge_agent.stream_framer import StreamFramer
from edge_agent.sync_engine import SyncEngine
from edge_agent.tokens import EnvFileTokenProvider

logger = logging.getLogger('edge_agent.main')


def _open_outbox(config) -> DurableOutbox:
    return DurableOutbox(
        config['db_path'],
        max_records=config['max_records'],
        retention_days=config['retention_days'],
        attempt_cap=config['max_attempts'],
    )


def _build_pipeline(config, outbox, passthrough=None, on_event=None) -> IngestPipeline:
    bootstrap = config.get('bootstrap_machine')
    policy = DecoderPolicy(
        infer_missing_machine=bool(config['infer_missing_machine']),
        bootstrap_machine=str(bootstrap) if bootstrap is not None else None,
    )
    framer = StreamFramer(assembly_timeout=config['assembly_timeout_ms'] / 1000,
                          passthrough=passthrough)
    return IngestPipeline(outbox, framer=framer, decoder=ProtocolDecoder(policy),
                          builder=EventBuilder(), on_event=on_event)


class EdgeAgent:
    def __init__(self, config):
        self.config = config
        self.outbox = _open_outbox(config)

        token_provider = EnvFileTokenProvider(config['env_file'], fallback=config['machine_token'])
        if config['api_endpoint']:
            self.client = BackendClient(config['api_endpoint'], token_provider,
                                        timeout=config['http_timeout'],
                                        hub_id=config['machine_id'])
        else:
            logger.warning("No api_endpoint configured - using stub backend client")
            self.client = StubBackendClient()

        self.sync = SyncEngine(
            self.outbox, self.client,
            batch_size=config['sync_batch_size'],
            max_attempts=config['max_attempts'],
            interval=config['sync_interval'],
            startup_delay=config['sync_startup_delay'],
        )
        self.health = HealthReporter(self.client, self.sync, interval=config['heartbeat_interval'])
        set_error_alert_callback(self.health.record_error)
        self.recovery = RecoveryManager(self.outbox)
        self.capture = CaptureLog(config['capture_dir'], enabled=config['enable_serial_logging'])

        self.printer = PrinterPassthrough(config['printer_port'], config['serial_baud']) \
            if config['printer_port'] else None
        self.pipeline = _build_pipeline(config, self.outbox, passthrough=self.printer,
                                        on_event=self._on_event)

        self.mock = MockController() if config['mock_mode'] else None
        self.serial = None if self.mock else SerialMonitor(
            config['serial_port'], self._on_serial_data, baudrate=config['serial_baud'],
            on_connected=lambda: self.health.update_serial_status(True),
            on_disconnected=lambda: self.health.update_serial_status(False),
        )
        self._stop_event = None

    async def _on_serial_data(self, data: bytes):
        self.capture.log_raw(data)
        self.health.record_data()
        await self.pipeline.submit(data)

    def _on_event(self, record_id, event):
        # Stored already; try to deliver right away
        self.sync.request_sync()

    def request_stop(self):
        if self._stop_event and not self._stop_event.is_set():
            logger.info("Shutdown requested")
            self._stop_event.set()

    def _install_signal_handlers(self):
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_stop)
            except (NotImplementedError, RuntimeError):
                # Not available on this platform; KeyboardInterrupt still works
                pass

    async def run(self):
        self._stop_event = asyncio.Event()
        self._install_signal_handlers()
        logger.info("Edge Agent %s starting (machine %s)", __version__, self.config['machine_id'])

        self.recovery.on_startup()
        self.pipeline.start()
        self.sync.start()
        self.health.start()

        if self.mock:
            logger.info("MOCK MODE - no serial hardware")
            self.health.update_serial_status(True)
            self.mock.start(self._on_serial_data)
        else:
            if self.printer:
                await asyncio.to_thread(self.printer.open)
            self.serial.start()

        await self._stop_event.wait()
        await self.shutdown()

    async def shutdown(self):
        logger.info("Shutting down gracefully...")
        if self.mock:
            await self.mock.stop()
        if self.serial:
            await self.serial.stop()
        await self.pipeline.stop()

        try:
            await self.sync.force_sync()
        except PersistenceError as e:
            logger.error("Final sync failed: %s", e)
        await self.sync.stop()

        await self.health.stop()
        await self.health.send_shutdown()
        self.recovery.on_shutdown()
        if self.printer:
            self.printer.close()
        logger.info("Shutdown complete")


def cmd_run(config) -> int:
    try:
        agent = EdgeAgent(config)
    except PersistenceError as e:
        logger.critical("Cannot start: %s", e)
        return 1

    print("=" * 50)
    print(f"  Edge Agent {__version__}")
    print("=" * 50)
    print(f"Machine: {config['machine_id']}")
    print(f"Serial: {'mock' if config['mock_mode'] else config['serial_port']}")
    print(f"Backend: {config['api_endpoint'] or 'stub (offline)'}")
    print(f"Outbox: {config['db_path']}")
    print("=" * 50)
    print("Press Ctrl+C to stop")

    try:
        asyncio.run(agent.run())
    except KeyboardInterrupt:
        print("\nStopping...")
    return 0


def cmd_replay(config, path: str, dry_run: bool = False) -> int:
    if not Path(path).exists():
        logger.error("Capture file not found: %s", path)
        return 1
    try:
        outbox = DryRunOutbox() if dry_run else _open_outbox(config)
    except PersistenceError as e:
        logger.critical("Cannot open outbox: %s", e)
        return 1

    stored = replay_capture(path, _build_pipeline(config, outbox))
    for record_id, event in stored:
        amount = f"{event.amount:.2f}" if event.amount is not None else '-'
        print(f"{record_id:>6}  {event.timestamp.isoformat()}  {event.event_type.value:<14} "
              f"{event.machine_id:<11} {amount:>10}  {event.idempotency_key or ''}")
    print(f"{len(stored)} events {'found (dry run)' if dry_run else 'queued for sync'}")
    return 0


def cmd_status(config) -> int:
    try:
        outbox = _open_outbox(config)
    except PersistenceError as e:
        logger.critical("Cannot open outbox: %s", e)
        return 1
    status = RecoveryManager(outbox).get_recovery_status()
    print(json.dumps(status, indent=2))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='Edge Agent')
    parser.add_argument('--config', help='path to config.json')
    parser.add_argument('--version', action='version', version=__version__)
    sub = parser.add_subparsers(dest='command')
    sub.add_parser('run', help='run the agent (default)')
    replay = sub.add_parser('replay', help='re-parse a raw serial capture file')
    replay.add_argument('file')
    replay.add_argument('--dry-run', action='store_true', help='decode only, do not store')
    sub.add_parser('status', help='show outbox statistics')
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    config = load_config(args.config)
    # Console noise would mix with replay/status output
    setup_logging(config['log_path'], level=config['log_level'],
                  console=args.command in (None, 'run'))

    if args.command == 'replay':
        return cmd_replay(config, args.file, args.dry_run)
    if args.command == 'status':
        return cmd_status(config)
    return cmd_run(config)


if __name__ == '__main__':
    sys.exit(main())
