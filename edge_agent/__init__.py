# Edge Agent
# Serial controller decoding, durable outbox and backend sync

__version__ = '0.1.0'

from .events import DomainEvent, EventBuilder, EventType
from .stream_framer import StreamFramer, Line, Assembly
from .protocol_decoder import ProtocolDecoder, DecoderPolicy, DecoderState, decode
from .outbox import DurableOutbox, OutboxRecord
from .sync_engine import SyncEngine
from .health import HealthReporter
from .pipeline import IngestPipeline
from .api_client import BackendClient, StubBackendClient
from .recovery import RecoveryManager

__all__ = [
    'DomainEvent',
    'EventBuilder',
    'EventType',
    'StreamFramer',
    'Line',
    'Assembly',
    'ProtocolDecoder',
    'DecoderPolicy',
    'DecoderState',
    'decode',
    'DurableOutbox',
    'OutboxRecord',
    'SyncEngine',
    'HealthReporter',
    'IngestPipeline',
    'BackendClient',
    'StubBackendClient',
    'RecoveryManager',
]
