# Stream Framer - splits the controller byte stream into line and assembly fragments
# The controller multiplexes CR/LF tabular lines (daily reports) with multi-line
# voucher blocks closed by ESC P, so both framings run over every byte.

import logging
import re
import time
from dataclasses import dataclass
from typing import Callable, List, Optional, Union

logger = logging.getLogger(__name__)

# Lines end at CR/LF; the assembly terminator also ends whatever line it trails
LINE_SPLIT = re.compile(r'\r\n|\x1bP\x00?')
ASSEMBLY_TERMINATOR = b'\x1bP'
ASSEMBLY_START = re.compile(rb'MACHINE\s+NUMBER|Voucher\s*#', re.IGNORECASE)
DEFAULT_ASSEMBLY_TIMEOUT = 2.0  # seconds
DEFAULT_MAX_ASSEMBLY_BYTES = 64 * 1024
# Idle bytes kept so a start marker split across reads is still found
START_TAIL_BYTES = 32


@dataclass
class Line:
    """A delimiter-terminated line, delimiter removed"""
    text: str


@dataclass
class Assembly:
    """A raw byte block closed by the terminator or by the deadline"""
    data: bytes
    timed_out: bool = False


Fragment = Union[Line, Assembly]


class StreamFramer:
    """Two-channel framer: CR/LF lines and ESC P terminated assemblies"""

    def __init__(self, assembly_timeout: float = DEFAULT_ASSEMBLY_TIMEOUT,
                 max_assembly_bytes: int = DEFAULT_MAX_ASSEMBLY_BYTES,
                 passthrough: Optional[Callable[[bytes], None]] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.assembly_timeout = assembly_timeout
        self.max_assembly_bytes = max_assembly_bytes
        self.passthrough = passthrough
        self.clock = clock
        self._line_buffer = ''
        self._assembly = bytearray()
        self._idle_tail = b''
        self.assembly_in_progress = False
        self.assembly_deadline: Optional[float] = None

    def feed(self, data: bytes, now: Optional[float] = None) -> List[Fragment]:
        """Frame one raw chunk. Lines come out before an assembly closed by the same chunk."""
        now = self.clock() if now is None else now
        self._passthrough(data)

        fragments: List[Fragment] = []
        # A deadline that passed while no data arrived closes the old assembly first
        expired = self.poll(now)
        if expired:
            fragments.append(expired)

        fragments.extend(self._feed_lines(data))
        fragments.extend(self._feed_assembly(data, now))
        return fragments

    def poll(self, now: Optional[float] = None) -> Optional[Assembly]:
        """Force-complete the current assembly if its deadline has passed."""
        if not self.assembly_in_progress:
            return None
        now = self.clock() if now is None else now
        if now < self.assembly_deadline:
            return None
        logger.warning("Assembly timed out after %.0f ms without terminator (%d bytes)",
                       self.assembly_timeout * 1000, len(self._assembly))
        return self._finish(timed_out=True)

    def seconds_until_deadline(self, now: Optional[float] = None) -> Optional[float]:
        if not self.assembly_in_progress:
            return None
        now = self.clock() if now is None else now
        return max(0.0, self.assembly_deadline - now)

    def flush(self) -> List[Fragment]:
        """Emit whatever is buffered (used at end of a replayed capture)."""
        fragments: List[Fragment] = []
        if self._line_buffer:
            fragments.append(Line(self._line_buffer))
            self._line_buffer = ''
        self._idle_tail = b''
        if self.assembly_in_progress:
            fragments.append(self._finish(timed_out=True))
        return fragments

    def _passthrough(self, data: bytes):
        if self.passthrough is None:
            return
        try:
            self.passthrough(data)
        except Exception as e:
            logger.error("Pass-through sink failed: %s", e)

    def _feed_lines(self, data: bytes) -> List[Line]:
        self._line_buffer += data.decode('latin-1')
        parts = LINE_SPLIT.split(self._line_buffer)
        self._line_buffer = parts.pop()
        return [Line(part) for part in parts]

    def _feed_assembly(self, data: bytes, now: float) -> List[Assembly]:
        fragments: List[Assembly] = []
        pending = data
        while pending:
            if not self.assembly_in_progress:
                pending = self._idle_tail + pending
                match = ASSEMBLY_START.search(pending)
                if not match:
                    self._idle_tail = pending[-(START_TAIL_BYTES - 1):]
                    break
                self._idle_tail = b''
                self.assembly_in_progress = True
                self.assembly_deadline = now + self.assembly_timeout
                self._assembly = bytearray()
                pending = pending[match.start():]
                logger.debug("Assembly started")

            # Search from a little before the new bytes so a terminator split
            # across chunks is still found
            search_from = max(0, len(self._assembly) - 1)
            self._assembly.extend(pending)
            pending = b''

            index = self._assembly.find(ASSEMBLY_TERMINATOR, search_from)
            if index >= 0:
                end = index + len(ASSEMBLY_TERMINATOR)
                if end < len(self._assembly) and self._assembly[end] == 0x00:
                    end += 1
                pending = bytes(self._assembly[end:])
                del self._assembly[end:]
                fragments.append(self._finish(timed_out=False))
            elif len(self._assembly) > self.max_assembly_bytes:
                logger.warning("Assembly exceeded %d bytes, closing it", self.max_assembly_bytes)
                fragments.append(self._finish(timed_out=True))
        return fragments

    def _finish(self, timed_out: bool) -> Assembly:
        assembly = Assembly(bytes(self._assembly), timed_out=timed_out)
        self._assembly = bytearray()
        self.assembly_in_progress = False
        self.assembly_deadline = None
        return assembly
