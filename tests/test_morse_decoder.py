"""Unit tests for the Morse timing decoder."""
import pytest

from morsevision import (
    BlinkType,
    DecoderEventKind,
    GapWindow,
    MorseDecoderConfig,
    MorseTimingDecoder,
    replay_blink_script,
)


def kinds(events):
    return [event.kind for event in events]


class TestClassify:
    """Test suite for dot/dash classification."""

    @pytest.mark.parametrize("duration_ms,expected", [
        (60, BlinkType.DOT),
        (240, BlinkType.DOT),
        (300, BlinkType.DOT),
        (380, BlinkType.DOT),
        (381, BlinkType.DASH),
        (520, BlinkType.DASH),
        (1500, BlinkType.DASH),
    ])
    def test_thresholds_and_midpoint(self, decoder, duration_ms, expected):
        assert decoder.classify(duration_ms) is expected

    def test_monotonic(self, decoder):
        symbols = [decoder.classify(d) for d in range(50, 2001, 10)]
        first_dash = symbols.index(BlinkType.DASH)
        assert all(s is BlinkType.DOT for s in symbols[:first_dash])
        assert all(s is BlinkType.DASH for s in symbols[first_dash:])


class TestLetterAndWordGaps:
    """Test suite for gap evaluation."""

    def test_two_dots_decode_to_i_then_word(self, timing_config, recorder):
        decoder = MorseTimingDecoder(timing_config, morse_dict={'..': 'I'}, **recorder.kwargs())

        assert decoder.process_blink(150, 150) is BlinkType.DOT
        assert decoder.process_blink(150, 450) is BlinkType.DOT
        assert decoder.pending_symbols == '..'

        # Idle must exceed the letter gap
        assert decoder.tick(450 + 800) == []

        events = decoder.tick(450 + 801)
        assert kinds(events) == [DecoderEventKind.LETTER_DECODED]
        assert events[0].value == 'I'
        assert recorder.letters == ['I']
        assert decoder.pending_symbols == ''
        assert decoder.pending_word == 'I'

        events = decoder.tick(450 + 801 + 2000)
        assert kinds(events) == [DecoderEventKind.WORD_COMPLETE]
        assert recorder.words == ['I']
        assert decoder.pending_word == ''

    def test_letters_accumulate_into_a_word(self, decoder, recorder):
        events = replay_blink_script(decoder, "150 150 150 150 p900 150 150 p2500")

        assert recorder.letters == ['H', 'I']
        assert recorder.words == ['HI']
        assert kinds(events) == [
            DecoderEventKind.LETTER_DECODED,
            DecoderEventKind.LETTER_DECODED,
            DecoderEventKind.WORD_COMPLETE,
        ]

    def test_letter_and_word_can_fire_in_one_tick(self, decoder, recorder):
        decoder.process_blink(600, 0)

        events = decoder.tick(5000)

        assert kinds(events) == [DecoderEventKind.LETTER_DECODED, DecoderEventKind.WORD_COMPLETE]
        assert recorder.words == ['T']

    def test_unknown_sequence_is_dropped(self, decoder, recorder):
        for i in range(7):
            decoder.process_blink(600, i * 800)

        events = decoder.tick(6 * 800 + 900)

        assert kinds(events) == [DecoderEventKind.LETTER_DROPPED]
        assert events[0].sequence == '-------'
        assert recorder.letters == []
        assert decoder.pending_symbols == ''
        assert decoder.pending_word == ''

    def test_tick_before_first_blink_is_noop(self, decoder):
        assert decoder.tick(10_000) == []

    def test_new_blink_restarts_idle_time(self, decoder, recorder):
        decoder.process_blink(150, 0)
        decoder.process_blink(150, 700)

        assert decoder.tick(1400) == []
        assert decoder.pending_symbols == '..'


class TestConfiguration:
    """Test suite for live reconfiguration."""

    def test_update_does_not_reclassify_pending_symbols(self, decoder):
        assert decoder.process_blink(300, 300) is BlinkType.DOT

        decoder.update_config(dot_duration_ms=100, dash_duration_ms=200)

        assert decoder.pending_symbols == '.'
        assert decoder.process_blink(300, 700) is BlinkType.DASH
        assert decoder.pending_symbols == '.-'

    def test_partial_update_keeps_other_fields(self, decoder):
        decoder.update_config(letter_gap_ms=500)

        assert decoder.config.letter_gap_ms == 500
        assert decoder.config.word_gap_ms == 2000
        assert decoder.config.dot_duration_ms == 240

    def test_config_is_copied(self, timing_config):
        decoder = MorseTimingDecoder(timing_config)
        decoder.update_config(dot_duration_ms=100)
        assert timing_config.dot_duration_ms == 240

    def test_unknown_field_rejected(self, decoder):
        with pytest.raises(TypeError):
            decoder.update_config(dot_ms=100)

    def test_shorter_letter_gap_applies_immediately(self, decoder, recorder):
        decoder.process_blink(150, 0)
        decoder.update_config(letter_gap_ms=300)

        decoder.tick(301)
        assert recorder.letters == ['E']


class TestResetAndAccessors:
    """Test suite for reset and live accessors."""

    def test_reset_clears_everything(self, decoder):
        decoder.process_blink(150, 0)
        decoder.tick(1000)
        decoder.process_blink(600, 1100)
        decoder.process_blink(1000, 1500)

        decoder.reset()

        assert decoder.pending_symbols == ''
        assert decoder.pending_word == ''
        assert decoder.last_blink_end_ms is None
        assert not decoder.emergency.armed
        assert decoder.tick(100_000) == []

    def test_gap_window(self, decoder):
        assert decoder.gap_window(0) is GapWindow.SYMBOL

        decoder.process_blink(150, 1000)
        assert decoder.gap_window(1800) is GapWindow.SYMBOL
        assert decoder.gap_window(1801) is GapWindow.LETTER
        assert decoder.gap_window(3000) is GapWindow.LETTER
        assert decoder.gap_window(3001) is GapWindow.WORD


class TestReplay:
    """Test suite for the scripted replay helper."""

    def test_sos(self, decoder, recorder):
        replay_blink_script(decoder, "150 150 150 p900 600 600 600 p900 150 150 150 p2500")
        assert recorder.words == ['SOS']

    def test_bad_token(self, decoder):
        with pytest.raises(ValueError):
            replay_blink_script(decoder, "150, x20")

    def test_event_timestamps_follow_simulated_clock(self):
        decoder = MorseTimingDecoder(MorseDecoderConfig(letter_gap_ms=800, word_gap_ms=2000))
        events = replay_blink_script(decoder, "150 p3000", symbol_gap_ms=200, tick_ms=50)

        letter, word = events
        # Blink ends at 150; first tick past 150 + 800 lands on 1000
        assert letter.at_ms == 1000
        assert word.at_ms == 2200
