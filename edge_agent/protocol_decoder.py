# Protocol Decoder - classifies controller fragments into event extractions
# decode(state, fragment) is pure: the caller threads DecoderState through
# successive calls, so machine context carried between lines is explicit.

import logging
import re
from dataclasses import dataclass, replace
from enum import Enum
from typing import List, Optional, Pattern, Tuple

from .events import EventType, Extraction
from .stream_framer import Assembly, Fragment, Line

logger = logging.getLogger(__name__)

AMOUNT = r'([\d,]+\.\d{2})'
NON_PRINTABLE = re.compile(r'[^\x20-\x7E\r\n]')


class Phase(Enum):
    IDLE = 'idle'
    AWAITING_VOUCHER_MACHINE_NUMBER = 'awaiting_voucher_machine_number'
    AWAITING_DAILY_AMOUNT = 'awaiting_daily_amount'


@dataclass(frozen=True)
class DecoderState:
    """Context carried from one fragment to the next"""
    phase: Phase = Phase.IDLE
    current_machine_marker: Optional[str] = None
    last_known_machine: Optional[str] = None
    voucher_machine_number: Optional[str] = None
    # Set by a "Unit Daily" line: totals that follow belong to no machine
    context_reset: bool = False
    # Machine whose "Daily In" closed its marker; a trailing total paid line
    # belongs to it
    block_machine: Optional[str] = None
    block_inferred: bool = False
    marker_out_reported: bool = False


@dataclass(frozen=True)
class DecoderPolicy:
    # Attribute a marker-less daily amount to last machine + 1
    infer_missing_machine: bool = True
    # Machine used when nothing at all is known yet; None drops the amount
    bootstrap_machine: Optional[str] = '29'


DEFAULT_POLICY = DecoderPolicy()


class LineKind(Enum):
    UNIT_DAILY = 'unit_daily'
    BOILERPLATE = 'boilerplate'
    MACHINE_MARKER = 'machine_marker'
    COMBINED_DAILY_IN = 'combined_daily_in'
    DAILY_IN = 'daily_in'
    DAILY_OUT = 'daily_out'
    VOUCHER_PRINT = 'voucher_print'
    MONEY_IN = 'money_in'
    COLLECT = 'collect'
    SESSION_START = 'session_start'
    SESSION_END = 'session_end'
    MACHINE_NUMBER_HEADER = 'machine_number_header'
    BARE_NUMBER = 'bare_number'
    VOUCHER_BODY = 'voucher_body'


@dataclass(frozen=True)
class LineMatcher:
    kind: LineKind
    pattern: Pattern


@dataclass(frozen=True)
class LineMatch:
    kind: LineKind
    groups: Tuple[Optional[str], ...]


def _m(kind: LineKind, pattern: str) -> LineMatcher:
    return LineMatcher(kind, re.compile(pattern, re.IGNORECASE))


# Order matters: "Unit Daily" must win over boilerplate, "Daily Total Paid"
# must not be swallowed by the "Daily Total" boilerplate header, and the
# combined marker+amount form must be tried before the bare marker.
LINE_MATCHERS: List[LineMatcher] = [
    _m(LineKind.UNIT_DAILY, r'^Unit\s+Daily'),
    _m(LineKind.BOILERPLATE, r'^[\*_\-=\s]+$'),
    _m(LineKind.BOILERPLATE, r'^Daily\s+(Books|of|REMOTE|MATCH)\b'),
    _m(LineKind.BOILERPLATE, r'^Daily\s+Total(?!\s+Paid)'),
    _m(LineKind.BOILERPLATE, r'^(DATE|SERIAL|Last\s+Cleared|Dailies)\b'),
    _m(LineKind.BOILERPLATE, r'^This\s+voucher'),
    _m(LineKind.BOILERPLATE, r'by\s+this\s+base\s+unit'),
    _m(LineKind.BOILERPLATE, r'^Out\s+==\s*\d+'),
    _m(LineKind.COMBINED_DAILY_IN, r'<\s*(\d+)\s*>\s+Daily\s+In\s+==\s*' + AMOUNT),
    _m(LineKind.MACHINE_MARKER, r'^<\s*(\d+)\s*>$'),
    _m(LineKind.DAILY_IN, r'^Daily\s+In\s+==\s*' + AMOUNT),
    _m(LineKind.DAILY_OUT, r'^Daily\s+(?:Out|Total\s+Paid)\s+==\s*' + AMOUNT),
    _m(LineKind.VOUCHER_PRINT, r'VOUCHER\s+PRINT:\s*\$\s*' + AMOUNT + r'\s*-\s*MACHINE\s+(\d+)'),
    _m(LineKind.MONEY_IN, r'MONEY\s+IN:\s*\$\s*' + AMOUNT + r'\s*-\s*MACHINE\s+(\d+)'),
    _m(LineKind.COLLECT, r'COLLECT:\s*\$\s*' + AMOUNT + r'\s*-\s*MACHINE\s+(\d+)'),
    _m(LineKind.SESSION_START, r'SESSION\s+START\s*-\s*MACHINE\s+(\d+)'),
    _m(LineKind.SESSION_END, r'SESSION\s+END\s*-\s*MACHINE\s+(\d+)'),
    _m(LineKind.MACHINE_NUMBER_HEADER, r'^MACHINE\s+NUMBER\s*:?\s*(\d+)?$'),
    _m(LineKind.BARE_NUMBER, r'^(\d+)$'),
    _m(LineKind.VOUCHER_BODY, r'^Voucher\s*#\s*\d+'),
    _m(LineKind.VOUCHER_BODY, r'\d+\s+plays?\s+collected'),
    _m(LineKind.VOUCHER_BODY, r'\d+\s+POINTS\b'),
    _m(LineKind.VOUCHER_BODY, r'^Confidence\s+Number'),
    _m(LineKind.VOUCHER_BODY, r'^\$\s*[\d,]+\.\d{2}$'),
]

# Patterns applied to a whole voucher assembly
VOUCHER_NUMBER = re.compile(r'Voucher\s*#\s*(\d+)', re.IGNORECASE)
VOUCHER_DOLLARS = re.compile(r'\$\s*' + AMOUNT)
VOUCHER_POINTS = re.compile(r'(\d+)\s+POINTS\b', re.IGNORECASE)
VOUCHER_PLAYS = re.compile(r'(\d+)\s+plays?\s+collected', re.IGNORECASE)
VOUCHER_SERIAL = re.compile(r'SERIAL\s*(?:NUMBER|NO\.?)?\s*#?\s*:?\s*([\w-]+)', re.IGNORECASE)
VOUCHER_CONFIDENCE = re.compile(r'Confidence\s+Number\s*:?\s*([\w-]+)', re.IGNORECASE)
BLOCK_MACHINE_NUMBER = re.compile(r'MACHINE\s+NUMBER\s*:?\s*(\d+)', re.IGNORECASE)
BLOCK_MACHINE = re.compile(r'MACHINE\s*:?\s*#?\s*(\d+)', re.IGNORECASE)

_LEGACY_TYPES = {
    LineKind.VOUCHER_PRINT: EventType.VOUCHER_PRINT,
    LineKind.MONEY_IN: EventType.MONEY_IN,
    LineKind.COLLECT: EventType.MONEY_OUT,
}
_SESSION_TYPES = {
    LineKind.SESSION_START: EventType.SESSION_START,
    LineKind.SESSION_END: EventType.SESSION_END,
}


def clean_text(text: str) -> str:
    """Drop non-printable control characters, keeping CR/LF."""
    return NON_PRINTABLE.sub('', text)


def classify_line(text: str) -> Optional[LineMatch]:
    """First matcher in LINE_MATCHERS order that matches the cleaned line."""
    for matcher in LINE_MATCHERS:
        match = matcher.pattern.search(text)
        if match:
            return LineMatch(matcher.kind, match.groups())
    return None


def _settled(state: DecoderState) -> DecoderState:
    """Leave any voucher wait and derive the phase from the marker."""
    phase = Phase.AWAITING_DAILY_AMOUNT if state.current_machine_marker else Phase.IDLE
    return replace(state, phase=phase)


def decode(state: DecoderState, fragment: Fragment,
           policy: DecoderPolicy = DEFAULT_POLICY) -> Tuple[DecoderState, Optional[Extraction]]:
    if isinstance(fragment, Line):
        return decode_line(state, fragment.text, policy)
    if isinstance(fragment, Assembly):
        return decode_assembly(state, fragment)
    raise TypeError(f"Unknown fragment type: {type(fragment).__name__}")


def decode_line(state: DecoderState, text: str,
                policy: DecoderPolicy = DEFAULT_POLICY) -> Tuple[DecoderState, Optional[Extraction]]:
    line = clean_text(text).strip()
    if not line:
        return state, None

    match = classify_line(line)

    if state.phase is Phase.AWAITING_VOUCHER_MACHINE_NUMBER:
        if match and match.kind is LineKind.BARE_NUMBER:
            logger.debug("Captured voucher machine number %s", match.groups[0])
            return _settled(replace(state, voucher_machine_number=match.groups[0])), None
        state = _settled(state)

    if match is None:
        logger.warning("Unrecognized data format: %r", line[:60])
        return state, None

    kind = match.kind

    if kind is LineKind.UNIT_DAILY:
        logger.info("Unit daily totals: machine context cleared")
        return DecoderState(context_reset=True), None

    if kind in (LineKind.BOILERPLATE, LineKind.VOUCHER_BODY):
        return state, None

    if kind is LineKind.MACHINE_MARKER:
        machine = match.groups[0]
        logger.info("Captured machine marker <%s>", machine)
        return replace(state, phase=Phase.AWAITING_DAILY_AMOUNT, current_machine_marker=machine,
                       last_known_machine=machine, context_reset=False,
                       block_machine=None, block_inferred=False, marker_out_reported=False), None

    if kind is LineKind.COMBINED_DAILY_IN:
        machine, amount = match.groups
        new_state = replace(state, phase=Phase.IDLE, current_machine_marker=None,
                            last_known_machine=machine, context_reset=False,
                            block_machine=machine, block_inferred=False,
                            marker_out_reported=False)
        return new_state, _daily(EventType.MONEY_IN, machine, amount, line)

    if kind is LineKind.DAILY_IN:
        return _decode_daily_in(state, match.groups[0], line, policy)

    if kind is LineKind.DAILY_OUT:
        return _decode_daily_out(state, match.groups[0], line, policy)

    if kind in _LEGACY_TYPES:
        amount, machine = match.groups
        return state, Extraction(_LEGACY_TYPES[kind], machine, raw=line, amount_text=amount)

    if kind in _SESSION_TYPES:
        return state, Extraction(_SESSION_TYPES[kind], match.groups[0], raw=line)

    if kind is LineKind.MACHINE_NUMBER_HEADER:
        if match.groups[0]:
            return replace(state, voucher_machine_number=match.groups[0]), None
        return replace(state, phase=Phase.AWAITING_VOUCHER_MACHINE_NUMBER), None

    # A bare number outside a voucher header carries no meaning
    logger.warning("Unrecognized data format: %r", line[:60])
    return state, None


def _daily(event_type: EventType, machine: str, amount: str, line: str,
           inferred: bool = False) -> Extraction:
    extra = {'machineInferred': True} if inferred else {}
    return Extraction(event_type, machine, raw=line, amount_text=amount,
                      daily_summary=True, extra=extra)


def _fallback_machine(state: DecoderState, policy: DecoderPolicy, label: str) -> Optional[str]:
    """Machine for an amount with no marker: last known + 1, then the bootstrap machine."""
    if state.last_known_machine is not None:
        if not policy.infer_missing_machine:
            logger.warning("%s without machine marker dropped (inference disabled)", label)
            return None
        machine = str(int(state.last_known_machine) + 1)
        logger.warning("%s without machine marker: inferred machine %s", label, machine)
        return machine

    if policy.bootstrap_machine is None:
        logger.warning("%s without any machine context dropped", label)
        return None
    logger.warning("%s without any machine context: using bootstrap machine %s",
                   label, policy.bootstrap_machine)
    return policy.bootstrap_machine


def _decode_daily_in(state: DecoderState, amount: str, line: str,
                     policy: DecoderPolicy) -> Tuple[DecoderState, Optional[Extraction]]:
    if state.current_machine_marker is not None:
        machine = state.current_machine_marker
        block = None if state.marker_out_reported else machine
        new_state = replace(state, phase=Phase.IDLE, current_machine_marker=None,
                            block_machine=block, block_inferred=False)
        return new_state, _daily(EventType.MONEY_IN, machine, amount, line)

    if state.context_reset:
        logger.info("Daily In after unit totals without machine marker, not attributed")
        return state, None

    machine = _fallback_machine(state, policy, "Daily In")
    if machine is None:
        return state, None
    new_state = replace(state, last_known_machine=machine, block_machine=machine,
                        block_inferred=True, marker_out_reported=False)
    return new_state, _daily(EventType.MONEY_IN, machine, amount, line, inferred=True)


def _decode_daily_out(state: DecoderState, amount: str, line: str,
                      policy: DecoderPolicy) -> Tuple[DecoderState, Optional[Extraction]]:
    if state.current_machine_marker is not None:
        # The marker stays: "Daily In" for the same machine may follow
        return replace(state, marker_out_reported=True), _daily(
            EventType.MONEY_OUT, state.current_machine_marker, amount, line)

    if state.block_machine is not None:
        machine = state.block_machine
        new_state = replace(state, block_machine=None, block_inferred=False)
        return new_state, _daily(EventType.MONEY_OUT, machine, amount, line,
                                 inferred=state.block_inferred)

    if state.context_reset:
        logger.info("Total line after unit totals without machine marker, not attributed: %r",
                    line[:60])
        return state, None

    machine = _fallback_machine(state, policy, "Daily Out")
    if machine is None:
        return state, None
    return replace(state, last_known_machine=machine), _daily(
        EventType.MONEY_OUT, machine, amount, line, inferred=True)


def decode_assembly(state: DecoderState,
                    assembly: Assembly) -> Tuple[DecoderState, Optional[Extraction]]:
    """Extract a voucher from a completed assembly; the voucher context is consumed either way."""
    text = clean_text(assembly.data.decode('latin-1'))
    new_state = _settled(replace(state, voucher_machine_number=None))

    machine = state.voucher_machine_number
    if machine is None:
        found = BLOCK_MACHINE_NUMBER.search(text) or BLOCK_MACHINE.search(text)
        machine = found.group(1) if found else None

    extra = {'timedOut': assembly.timed_out}
    amount = None
    dollars = VOUCHER_DOLLARS.search(text)
    points = VOUCHER_POINTS.search(text)
    plays = VOUCHER_PLAYS.search(text)
    if points:
        extra['points'] = int(points.group(1))
    if plays:
        extra['playsCollected'] = int(plays.group(1))
    if dollars:
        amount = dollars.group(1)
    elif points or plays:
        amount = (points or plays).group(1)
        extra['amountUnit'] = 'points'

    for key, pattern in (('voucherNumber', VOUCHER_NUMBER), ('serialNumber', VOUCHER_SERIAL),
                         ('confidenceNumber', VOUCHER_CONFIDENCE)):
        found = pattern.search(text)
        if found:
            extra[key] = found.group(1)

    if machine is None or amount is None:
        missing = [name for name, value in (('machine number', machine), ('amount', amount))
                   if value is None]
        logger.warning("Rejected malformed voucher assembly (missing %s, %d bytes, timed out: %s)",
                       ' and '.join(missing), len(assembly.data), assembly.timed_out)
        return new_state, None

    return new_state, Extraction(EventType.VOUCHER_PRINT, machine, raw=text.strip(),
                                 amount_text=amount, source='voucher_assembly', extra=extra)


class ProtocolDecoder:
    """Holds the DecoderState for the single ingest consumer"""

    def __init__(self, policy: DecoderPolicy = DEFAULT_POLICY):
        self.policy = policy
        self.state = DecoderState()

    def feed(self, fragment: Fragment) -> Optional[Extraction]:
        self.state, extraction = decode(self.state, fragment, self.policy)
        return extraction

    def reset(self):
        self.state = DecoderState()
        logger.info("Decoder state reset")
