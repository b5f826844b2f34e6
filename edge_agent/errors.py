# Error taxonomy for the edge agent
# Fragment-level and record-level errors are caught where they occur; only
# PersistenceError during outbox initialization is allowed to stop the process.

from typing import Optional


class EdgeAgentError(Exception):
    """Base class for all edge agent errors"""


class ParseError(EdgeAgentError):
    """A single fragment failed extraction (missing field, bad number)"""


class PersistenceError(EdgeAgentError):
    """The outbox could not be opened or written"""


class DeliveryError(EdgeAgentError):
    """The backend rejected a request or could not be reached"""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ConnectivityError(DeliveryError):
    """The connectivity probe failed; no records are touched this tick"""
