# Tests for the protocol decoder

from decimal import Decimal

from edge_agent.events import EventBuilder, EventType
from edge_agent.protocol_decoder import (
    DecoderPolicy, DecoderState, LineKind, Phase, ProtocolDecoder,
    classify_line, decode, decode_assembly, decode_line,
)
from edge_agent.stream_framer import Assembly, Line


def run_lines(lines, policy=DecoderPolicy()):
    state = DecoderState()
    extractions = []
    for line in lines:
        state, extraction = decode_line(state, line, policy)
        if extraction:
            extractions.append(extraction)
    return state, extractions


class TestDailyReports:
    """Daily report lines and machine context"""

    def setup_method(self):
        self.builder = EventBuilder()

    def test_marker_then_daily_in(self):
        """Marker followed by Daily In gives one money_in for that machine"""
        _, extractions = run_lines(["<29>", "Daily In == 897.00"])

        assert len(extractions) == 1
        event = self.builder.build(extractions[0])
        assert event.event_type == EventType.MONEY_IN
        assert event.machine_id == 'machine_29'
        assert event.amount == Decimal('897.00')
        assert event.idempotency_key.startswith('daily_money_in_machine_29_')

    def test_daily_in_clears_marker(self):
        """Daily In consumes the marker"""
        state, _ = run_lines(["<29>", "Daily In == 897.00"])

        assert state.current_machine_marker is None
        assert state.last_known_machine == '29'
        assert state.phase is Phase.IDLE

    def test_unit_daily_then_marker_total_paid(self):
        """Unit Daily resets context but a following marker still attributes"""
        _, extractions = run_lines(["Unit Daily Report", "<5>", "Daily Total Paid == 12.00"])

        assert len(extractions) == 1
        event = self.builder.build(extractions[0])
        assert event.event_type == EventType.MONEY_OUT
        assert event.machine_id == 'machine_05'
        assert event.amount == Decimal('12.00')

    def test_grand_total_after_unit_daily_is_dropped(self):
        """Totals with no marker after Unit Daily produce nothing"""
        _, extractions = run_lines([
            "<30>", "Daily In == 10.00",
            "Unit Daily Totals", "Daily Total Paid == 99.00", "Daily In == 500.00",
        ])

        assert len(extractions) == 1
        assert extractions[0].machine_number == '30'

    def test_total_paid_keeps_marker(self):
        """Daily Out leaves the marker for the Daily In that follows"""
        _, extractions = run_lines(["<12>", "Daily Out == 40.00", "Daily In == 100.00"])

        assert [(e.event_type, e.machine_number) for e in extractions] == [
            (EventType.MONEY_OUT, '12'),
            (EventType.MONEY_IN, '12'),
        ]

    def test_total_paid_after_daily_in(self):
        """Controller order <N>, Daily In, Total Paid keeps both on machine N"""
        _, extractions = run_lines([
            "<29>", "Daily In == 1.00", "Daily Total Paid == 2.00",
            "<30>", "Daily In == 3.00", "Daily Total Paid == 4.00",
        ])

        assert [(e.event_type, e.machine_number, e.amount_text, e.extra)
                for e in extractions] == [
            (EventType.MONEY_IN, '29', '1.00', {}),
            (EventType.MONEY_OUT, '29', '2.00', {}),
            (EventType.MONEY_IN, '30', '3.00', {}),
            (EventType.MONEY_OUT, '30', '4.00', {}),
        ]

    def test_total_paid_before_daily_in(self):
        """Order <N>, Total Paid, Daily In attributes each line once"""
        state, extractions = run_lines([
            "<29>", "Daily Total Paid == 2.00", "Daily In == 1.00",
        ])

        assert [(e.event_type, e.machine_number) for e in extractions] == [
            (EventType.MONEY_OUT, '29'),
            (EventType.MONEY_IN, '29'),
        ]
        assert state.block_machine is None

    def test_second_total_in_block_is_inferred(self):
        """Only one total paid line trails a Daily In"""
        _, extractions = run_lines([
            "<29>", "Daily In == 1.00", "Daily Total Paid == 2.00", "Daily Total Paid == 6.00",
        ])

        assert extractions[2].machine_number == '30'
        assert extractions[2].extra == {'machineInferred': True}

    def test_total_paid_without_marker_uses_bootstrap(self):
        """With no context at all Total Paid goes to the bootstrap machine"""
        _, extractions = run_lines(["Daily Total Paid == 5.00"])

        assert [(e.event_type, e.machine_number) for e in extractions] == [
            (EventType.MONEY_OUT, '29'),
        ]
        assert extractions[0].extra == {'machineInferred': True}

    def test_total_paid_without_marker_bootstrap_disabled(self):
        _, extractions = run_lines(["Daily Total Paid == 5.00"],
                                   DecoderPolicy(bootstrap_machine=None))

        assert extractions == []

    def test_combined_marker_and_amount(self):
        """<NN> Daily In == X on one line, with thousands separator"""
        _, extractions = run_lines(["<7> Daily In == 1,234.50"])

        event = self.builder.build(extractions[0])
        assert event.machine_id == 'machine_07'
        assert event.amount == Decimal('1234.50')

    def test_boilerplate_ignored(self):
        """Report headers and separators do not produce events or warnings"""
        state, extractions = run_lines([
            "Daily Books", "************", "DATE 01/15/24", "Daily Total",
            "Last Cleared 01/14/24", "Out == 3",
        ])

        assert extractions == []
        assert state == DecoderState()


class TestMachineInference:
    """Heuristic fallback for Daily In without a marker"""

    def test_infers_next_machine(self):
        """Missing marker attributes to last known machine + 1"""
        _, extractions = run_lines(["<30>", "Daily In == 10.00", "Daily In == 20.00"])

        assert [e.machine_number for e in extractions] == ['30', '31']
        assert extractions[1].extra == {'machineInferred': True}

    def test_inference_disabled(self):
        """With the heuristic off the unmarked amount is dropped"""
        policy = DecoderPolicy(infer_missing_machine=False)
        _, extractions = run_lines(["<30>", "Daily In == 10.00", "Daily In == 20.00"], policy)

        assert [e.machine_number for e in extractions] == ['30']

    def test_bootstrap_machine(self):
        """First Daily In with no context goes to the bootstrap machine"""
        state, extractions = run_lines(["Daily In == 5.00"])

        assert extractions[0].machine_number == '29'
        assert state.last_known_machine == '29'

    def test_bootstrap_disabled(self):
        """No bootstrap machine means no event"""
        _, extractions = run_lines(["Daily In == 5.00"], DecoderPolicy(bootstrap_machine=None))

        assert extractions == []


class TestLegacyLines:
    """Single-line event formats"""

    def test_voucher_print(self):
        """VOUCHER PRINT line with zero-padded machine"""
        _, extractions = run_lines(["VOUCHER PRINT: $50.00 - MACHINE 03"])

        event = EventBuilder().build(extractions[0])
        assert event.event_type == EventType.VOUCHER_PRINT
        assert event.machine_id == 'machine_03'
        assert event.amount == Decimal('50.00')
        assert event.idempotency_key is None

    def test_money_in_and_collect(self):
        """MONEY IN is money_in, COLLECT is money_out"""
        _, extractions = run_lines([
            "MONEY IN: $20.00 - MACHINE 5",
            "COLLECT: $15.00 - MACHINE 12",
        ])

        assert [(e.event_type, e.machine_number, e.amount_text) for e in extractions] == [
            (EventType.MONEY_IN, '5', '20.00'),
            (EventType.MONEY_OUT, '12', '15.00'),
        ]

    def test_sessions(self):
        """Session lines carry no amount"""
        _, extractions = run_lines(["SESSION START - MACHINE 4", "SESSION END - MACHINE 4"])

        assert [e.event_type for e in extractions] == [EventType.SESSION_START,
                                                       EventType.SESSION_END]
        assert all(e.amount_text is None for e in extractions)

    def test_unrecognized_line(self):
        """Unknown text is dropped without changing state"""
        state, extraction = decode_line(DecoderState(), "hello world")

        assert extraction is None
        assert state == DecoderState()

    def test_control_characters_stripped(self):
        """Printer control bytes around a marker are removed"""
        state, _ = decode_line(DecoderState(), "\x1b\x00<29>\x07")

        assert state.current_machine_marker == '29'

    def test_blank_line_keeps_phase(self):
        """Blank lines do not leave the awaiting phase"""
        state, _ = decode_line(DecoderState(), "MACHINE NUMBER")
        state, _ = decode_line(state, "   ")

        assert state.phase is Phase.AWAITING_VOUCHER_MACHINE_NUMBER


class TestMatcherOrder:
    """Overlapping patterns resolve in the documented order"""

    def test_total_paid_not_boilerplate(self):
        assert classify_line("Daily Total Paid == 5.00").kind is LineKind.DAILY_OUT
        assert classify_line("Daily Total").kind is LineKind.BOILERPLATE

    def test_unit_daily_wins(self):
        assert classify_line("Unit Daily Totals").kind is LineKind.UNIT_DAILY

    def test_combined_before_marker(self):
        assert classify_line("<12> Daily In == 3.00").kind is LineKind.COMBINED_DAILY_IN
        assert classify_line("<12>").kind is LineKind.MACHINE_MARKER


class TestVoucherAssembly:
    """Voucher blocks framed by ESC P"""

    VOUCHER = (b"MACHINE NUMBER\r\n29\r\nVoucher # 12345\r\n$25.00\r\n"
               b"Confidence Number 556677\r\n\x1bP")

    def test_machine_number_from_line_context(self):
        """Header and bare number on the line channel feed the assembly"""
        state, _ = run_lines(["MACHINE NUMBER", "29"])
        assert state.voucher_machine_number == '29'

        state, extraction = decode_assembly(state, Assembly(self.VOUCHER))

        assert extraction.event_type == EventType.VOUCHER_PRINT
        assert extraction.machine_number == '29'
        assert extraction.amount_text == '25.00'
        assert extraction.extra['voucherNumber'] == '12345'
        assert extraction.extra['confidenceNumber'] == '556677'
        assert extraction.extra['timedOut'] is False
        assert state.voucher_machine_number is None

    def test_machine_number_from_block(self):
        """Without line context the number is read from the block"""
        _, extraction = decode_assembly(DecoderState(), Assembly(self.VOUCHER))

        assert extraction.machine_number == '29'

    def test_header_with_inline_number(self):
        """MACHINE NUMBER: 33 on one line"""
        state, _ = decode_line(DecoderState(), "MACHINE NUMBER: 33")

        assert state.voucher_machine_number == '33'

    def test_non_number_cancels_awaiting(self):
        """Another line while awaiting the number drops the wait"""
        state, _ = run_lines(["MACHINE NUMBER", "Voucher # 5"])

        assert state.phase is Phase.IDLE
        assert state.voucher_machine_number is None

    def test_points_fallback(self):
        """Points are used as the amount when there is no dollar figure"""
        data = b"MACHINE NUMBER 31\r\nVoucher # 77\r\n12 POINTS\r\n\x1bP"

        _, extraction = decode_assembly(DecoderState(), Assembly(data, timed_out=True))

        assert extraction.amount_text == '12'
        assert extraction.extra['amountUnit'] == 'points'
        assert extraction.extra['points'] == 12
        assert extraction.extra['timedOut'] is True

    def test_rejects_without_machine(self):
        """A voucher with no machine number is rejected"""
        state, extraction = decode_assembly(DecoderState(),
                                            Assembly(b"Voucher # 1\r\n$5.00\r\n\x1bP"))

        assert extraction is None
        assert state == DecoderState()

    def test_rejects_without_amount(self):
        """A voucher with no amount is rejected and the context is consumed"""
        state = DecoderState(voucher_machine_number='29')

        state, extraction = decode_assembly(state, Assembly(b"Voucher # 1\r\n\x1bP"))

        assert extraction is None
        assert state.voucher_machine_number is None


class TestDecodePurity:
    """decode() never mutates its input"""

    def test_input_state_unchanged(self):
        """The caller's state value is left as it was"""
        original = DecoderState()

        new_state, _ = decode(original, Line("<29>"))

        assert original == DecoderState()
        assert new_state.current_machine_marker == '29'

    def test_same_input_same_output(self):
        """Decoding is deterministic"""
        state = DecoderState(last_known_machine='30')

        first = decode(state, Line("Daily In == 10.00"))
        second = decode(state, Line("Daily In == 10.00"))

        assert first == second

    def test_wrapper_threads_state(self):
        """ProtocolDecoder keeps state across feed() calls"""
        decoder = ProtocolDecoder()

        assert decoder.feed(Line("<29>")) is None
        extraction = decoder.feed(Line("Daily In == 897.00"))

        assert extraction.machine_number == '29'
        decoder.reset()
        assert decoder.state == DecoderState()
