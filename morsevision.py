"""
MorseVision Core
================
Eye Aspect Ratio + Blink Classification + Morse / Emergency Decoding

This module turns per-frame eye landmarks into blink events and blink
durations into Morse letters, words and emergency requests for a hands-free
communication device. Every state transition takes an explicit timestamp in
milliseconds, so the same code is driven by the camera loop, the gap-check
timer thread, or a test.

Author: AI Lab - Tel-U
Date: January 2026
"""

import logging
import os
import re
import threading
import time
from collections import deque
from dataclasses import dataclass, field, fields, replace
from enum import Enum
from itertools import count
from typing import Callable, Deque, Dict, Iterator, List, Optional, Sequence, Tuple

import numpy as np


logger = logging.getLogger(__name__)


# =============================================================================
# CONSTANTS & CONFIGURATION
# =============================================================================

# MediaPipe FaceMesh eye contour indices, ordered p1..p6:
# outer corner, two upper-lid points, inner corner, two lower-lid points
LEFT_EYE_LANDMARKS = [33, 160, 158, 133, 153, 144]
RIGHT_EYE_LANDMARKS = [362, 385, 387, 263, 373, 380]

# Morse code dictionary
MORSE_CODE_DICT = {
    '.-': 'A', '-...': 'B', '-.-.': 'C', '-..': 'D', '.': 'E',
    '..-.': 'F', '--.': 'G', '....': 'H', '..': 'I', '.---': 'J',
    '-.-': 'K', '.-..': 'L', '--': 'M', '-.': 'N', '---': 'O',
    '.--.': 'P', '--.-': 'Q', '.-.': 'R', '...': 'S', '-': 'T',
    '..-': 'U', '...-': 'V', '.--': 'W', '-..-': 'X', '-.--': 'Y',
    '--..': 'Z', '.----': '1', '..---': '2', '...--': '3', '....-': '4',
    '.....': '5', '-....': '6', '--...': '7', '---..': '8', '----.': '9',
    '-----': '0', '.-.-.-': '.', '--..--': ',', '..--..': '?',
    '.----.': "'", '-.-.--': '!', '-..-.': '/', '-.--.': '(',
    '-.--.-': ')', '.-...': '&', '---...': ':', '-.-.-.': ';',
    '-...-': '=', '.-.-.': '+', '-....-': '-', '..--.-': '_',
    '.-..-.': '"', '...-..-': '$', '.--.-.': '@',
}

# Blink band: closures outside [50, 2000] ms are noise
BLINK_MIN_DURATION_MS = 50
BLINK_MAX_DURATION_MS = 2000

# Calibration
DEFAULT_EAR_THRESHOLD = 0.2
CALIBRATION_THRESHOLD_FACTOR = 0.7
DEFAULT_CALIBRATION_SAMPLES = 150  # ~5 seconds at 30 FPS
MIN_CALIBRATION_SAMPLES = 50

# Emergency overlay
EMERGENCY_TRIGGER_DURATION_MS = 900
EMERGENCY_SEQUENCE_LENGTH = 2
EMERGENCY_TIMEOUT_MS = 4000

DEFAULT_GAP_CHECK_INTERVAL_MS = 50

# Recent decoder events kept by a session for display
EVENT_HISTORY_SIZE = 200

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def configure_logging(level: str = "INFO"):
    """Install the root log handler used by the app and the pipeline tester."""
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format=LOG_FORMAT,
    )


def current_time_ms() -> int:
    """Wall-clock time in integer milliseconds."""
    return int(time.time() * 1000)


# =============================================================================
# DATA CLASSES & ENUMS
# =============================================================================

Point = Tuple[float, float]


class EyeState(Enum):
    """Latch state of the blink classifier."""
    OPEN = "open"
    CLOSED = "closed"


class BlinkType(Enum):
    """Enumeration of blink types for Morse code."""
    DOT = "."
    DASH = "-"


class EmergencyCode(Enum):
    """The four emergency actions reachable through the overlay."""
    CALL_NURSE = "CALL_NURSE"
    GET_WATER = "GET_WATER"
    GET_HELP = "GET_HELP"
    I_AM_IN_PAIN = "I_AM_IN_PAIN"

    @property
    def description(self) -> str:
        return EMERGENCY_DESCRIPTIONS[self]

    @property
    def label(self) -> str:
        return self.value.replace('_', ' ')


EMERGENCY_CODE_DICT = {
    '..': EmergencyCode.CALL_NURSE,
    '.-': EmergencyCode.GET_WATER,
    '-.': EmergencyCode.GET_HELP,
    '--': EmergencyCode.I_AM_IN_PAIN,
}

EMERGENCY_DESCRIPTIONS = {
    EmergencyCode.CALL_NURSE: "Request immediate nurse assistance",
    EmergencyCode.GET_WATER: "Request water or hydration",
    EmergencyCode.GET_HELP: "General help request",
    EmergencyCode.I_AM_IN_PAIN: "Alert staff to pain or discomfort",
}


class EmergencyPhase(Enum):
    """Overlay phases. Resolution and timeout both land back in DISARMED."""
    DISARMED = "disarmed"
    ARMED = "armed"


class DecoderEventKind(Enum):
    """Outcome of a decoder transition."""
    LETTER_DECODED = "letter_decoded"
    LETTER_DROPPED = "letter_dropped"
    WORD_COMPLETE = "word_complete"
    EMERGENCY_ARMED = "emergency_armed"
    EMERGENCY = "emergency"
    EMERGENCY_DROPPED = "emergency_dropped"
    EMERGENCY_TIMED_OUT = "emergency_timed_out"


class GapWindow(Enum):
    """Which finalisation window the current idle time has reached."""
    SYMBOL = "symbol"
    LETTER = "letter"
    WORD = "word"


@dataclass(frozen=True)
class EarReading:
    """EAR values computed for a single frame."""
    left_ear: float
    right_ear: float
    avg_ear: float


@dataclass(frozen=True)
class BlinkEvent:
    """A closed interval reported when the eyes re-open."""
    occurred_at_ms: int
    duration_ms: int
    ear_at_start: float


@dataclass(frozen=True)
class CalibrationResult:
    """Container for calibration results."""
    threshold: float
    avg_ear: float
    std_ear: float
    sample_count: int


@dataclass
class MorseDecoderConfig:
    """Duration thresholds of the Morse timing decoder, in milliseconds."""
    dot_duration_ms: int = 240    # Max duration for a certain dot
    dash_duration_ms: int = 520   # Min duration for a certain dash
    letter_gap_ms: int = 800      # Idle time that closes a letter
    word_gap_ms: int = 2000       # Idle time that closes a word


@dataclass(frozen=True)
class EmergencyState:
    """Emergency overlay state: a phase tag plus the collected symbols."""
    phase: EmergencyPhase = EmergencyPhase.DISARMED
    sequence: Tuple[BlinkType, ...] = ()
    armed_at_ms: Optional[int] = None

    @property
    def armed(self) -> bool:
        return self.phase is EmergencyPhase.ARMED

    @property
    def sequence_str(self) -> str:
        return ''.join(symbol.value for symbol in self.sequence)


DISARMED = EmergencyState()


@dataclass(frozen=True)
class DecoderEvent:
    """
    Explicit outcome of a decoder transition.

    ``value`` carries the decoded character, the completed word or the
    emergency code name; ``sequence`` carries the Morse symbols involved.
    """
    kind: DecoderEventKind
    value: str = ""
    sequence: str = ""
    at_ms: int = 0

    @property
    def emergency_code(self) -> Optional[EmergencyCode]:
        if self.kind is DecoderEventKind.EMERGENCY:
            return EmergencyCode(self.value)
        return None


@dataclass(frozen=True)
class TimingPreset:
    """Named dot/dash timing pair."""
    label: str
    dot_duration_ms: int
    dash_duration_ms: int


TIMING_PRESETS = [
    TimingPreset("Fast Blink", 180, 360),
    TimingPreset("Balanced", 240, 520),
    TimingPreset("Slow Blink", 320, 720),
]


@dataclass
class SystemConfig:
    """System configuration parameters."""
    # Morse timing (ms)
    dot_duration_ms: int = 240
    dash_duration_ms: int = 520
    letter_gap_ms: int = 800
    word_gap_ms: int = 2000

    # Blink detection
    ear_threshold: float = DEFAULT_EAR_THRESHOLD

    # Calibration
    calibration_samples: int = DEFAULT_CALIBRATION_SAMPLES
    min_calibration_samples: int = MIN_CALIBRATION_SAMPLES

    # Scheduling
    gap_check_interval_ms: int = DEFAULT_GAP_CHECK_INTERVAL_MS

    # Landmark provider contract
    left_eye_landmarks: List[int] = field(default_factory=lambda: list(LEFT_EYE_LANDMARKS))
    right_eye_landmarks: List[int] = field(default_factory=lambda: list(RIGHT_EYE_LANDMARKS))

    # Performance
    target_fps: int = 30
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "SystemConfig":
        """Build a config from MORSEVISION_* environment variables."""
        defaults = cls()
        return cls(
            dot_duration_ms=int(os.getenv("MORSEVISION_DOT_MS", defaults.dot_duration_ms)),
            dash_duration_ms=int(os.getenv("MORSEVISION_DASH_MS", defaults.dash_duration_ms)),
            letter_gap_ms=int(os.getenv("MORSEVISION_LETTER_GAP_MS", defaults.letter_gap_ms)),
            word_gap_ms=int(os.getenv("MORSEVISION_WORD_GAP_MS", defaults.word_gap_ms)),
            ear_threshold=float(os.getenv("MORSEVISION_EAR_THRESHOLD", defaults.ear_threshold)),
            calibration_samples=int(os.getenv("MORSEVISION_CALIBRATION_SAMPLES",
                                              defaults.calibration_samples)),
            min_calibration_samples=int(os.getenv("MORSEVISION_MIN_CALIBRATION",
                                                  defaults.min_calibration_samples)),
            gap_check_interval_ms=int(os.getenv("MORSEVISION_GAP_CHECK_MS",
                                                defaults.gap_check_interval_ms)),
            target_fps=int(os.getenv("MORSEVISION_TARGET_FPS", defaults.target_fps)),
            log_level=os.getenv("MORSEVISION_LOG_LEVEL", defaults.log_level),
        )

    def decoder_config(self) -> MorseDecoderConfig:
        """Timing subset handed to the Morse decoder."""
        return MorseDecoderConfig(
            dot_duration_ms=self.dot_duration_ms,
            dash_duration_ms=self.dash_duration_ms,
            letter_gap_ms=self.letter_gap_ms,
            word_gap_ms=self.word_gap_ms,
        )


# =============================================================================
# EAR ESTIMATION MODULE
# =============================================================================

# Horizontal eye widths below this are treated as a degenerate reading
MIN_HORIZONTAL_DISTANCE = 1e-6


def compute_ear(eye_points: Sequence[Point]) -> Optional[float]:
    """
    Compute Eye Aspect Ratio (EAR) from six eye landmarks.

    EAR = (||p2-p6|| + ||p3-p5||) / (2 * ||p1-p4||)

    Where p1-p6 are the 6 eye landmarks in order:
    p1: outer corner, p2: upper outer, p3: upper inner,
    p4: inner corner, p5: lower inner, p6: lower outer

    Args:
        eye_points: Six (x, y) points, extra coordinates are ignored

    Returns:
        Eye Aspect Ratio, or None when the eye corners coincide

    Raises:
        ValueError: If the sample does not hold exactly six points
    """
    if len(eye_points) != 6:
        raise ValueError(f"An eye sample needs 6 landmarks, got {len(eye_points)}")

    points = np.asarray(eye_points, dtype=float)[:, :2]

    # Vertical distances
    v1 = np.linalg.norm(points[1] - points[5])  # p2-p6
    v2 = np.linalg.norm(points[2] - points[4])  # p3-p5

    # Horizontal distance
    h = np.linalg.norm(points[0] - points[3])   # p1-p4

    if h < MIN_HORIZONTAL_DISTANCE:
        return None

    return float((v1 + v2) / (2.0 * h))


def compute_ear_pair(left_eye: Sequence[Point],
                     right_eye: Sequence[Point]) -> Optional[EarReading]:
    """
    Compute EAR for both eyes independently and their mean.

    Returns:
        EarReading, or None if either eye gave no reading
    """
    left_ear = compute_ear(left_eye)
    right_ear = compute_ear(right_eye)
    if left_ear is None or right_ear is None:
        return None
    return EarReading(left_ear, right_ear, (left_ear + right_ear) / 2.0)


# =============================================================================
# BLINK CLASSIFIER MODULE
# =============================================================================

class BlinkClassifier:
    """
    Turns per-frame EAR readings into blink events.

    A two-state latch (OPEN <-> CLOSED) against the EAR threshold. A blink is
    reported only on the CLOSED -> OPEN edge and only when the closed interval
    lasted between 50 and 2000 ms. A calibration sub-mode collects baseline
    EAR samples instead of running the latch and derives the threshold as 70%
    of their mean.
    """

    def __init__(self, ear_threshold: float = DEFAULT_EAR_THRESHOLD,
                 calibration_capacity: int = DEFAULT_CALIBRATION_SAMPLES,
                 min_calibration_samples: int = MIN_CALIBRATION_SAMPLES,
                 on_blink: Optional[Callable[[BlinkEvent], None]] = None):
        """
        Initialize the blink classifier.

        Args:
            ear_threshold: EAR below which the eyes count as closed
            calibration_capacity: Maximum number of calibration samples kept
            min_calibration_samples: Samples required to finish calibration
            on_blink: Called with every accepted BlinkEvent

        Raises:
            ValueError: If calibration_capacity is below min_calibration_samples
        """
        if calibration_capacity < min_calibration_samples:
            raise ValueError(
                f"calibration_capacity ({calibration_capacity}) must be at least "
                f"min_calibration_samples ({min_calibration_samples})"
            )
        self.ear_threshold = ear_threshold
        self.calibration_capacity = calibration_capacity
        self.min_calibration_samples = min_calibration_samples
        self.on_blink = on_blink

        # Latch state
        self.is_eye_closed = False
        self.close_started_at_ms: Optional[int] = None
        self.ear_at_close_start = 0.0

        # Calibration state
        self.is_calibrating = False
        self.calibration_samples: List[float] = []

    @property
    def eye_state(self) -> EyeState:
        return EyeState.CLOSED if self.is_eye_closed else EyeState.OPEN

    def set_blink_callback(self, callback: Optional[Callable[[BlinkEvent], None]]):
        self.on_blink = callback

    def get_ear_threshold(self) -> float:
        return self.ear_threshold

    def set_ear_threshold(self, threshold: float):
        self.ear_threshold = threshold

    def observe_frame(self, left_eye: Optional[Sequence[Point]],
                      right_eye: Optional[Sequence[Point]],
                      now_ms: int) -> Optional[EarReading]:
        """
        Process one frame of eye landmarks.

        Args:
            left_eye: Six left-eye points, or None when no face was found
            right_eye: Six right-eye points, or None when no face was found
            now_ms: Frame timestamp in milliseconds

        Returns:
            The EAR triple, or None if this frame gave no reading
        """
        if left_eye is None or right_eye is None:
            return None

        reading = compute_ear_pair(left_eye, right_eye)
        if reading is None:
            return None

        if self.is_calibrating:
            if len(self.calibration_samples) < self.calibration_capacity:
                self.calibration_samples.append(reading.avg_ear)
            return reading

        self.update_latch(reading.avg_ear, now_ms)
        return reading

    def update_latch(self, avg_ear: float, now_ms: int) -> Optional[BlinkEvent]:
        """
        Run the open/closed latch for one EAR value.

        Returns:
            BlinkEvent if a valid blink just ended, None otherwise
        """
        # Blink start
        if not self.is_eye_closed and avg_ear < self.ear_threshold:
            self.is_eye_closed = True
            self.close_started_at_ms = now_ms
            self.ear_at_close_start = avg_ear
            return None

        # Blink end
        if self.is_eye_closed and avg_ear >= self.ear_threshold:
            self.is_eye_closed = False
            duration_ms = int(now_ms - self.close_started_at_ms)
            self.close_started_at_ms = None

            if not BLINK_MIN_DURATION_MS <= duration_ms <= BLINK_MAX_DURATION_MS:
                logger.debug("Ignoring %d ms closure outside the blink band", duration_ms)
                return None

            event = BlinkEvent(
                occurred_at_ms=now_ms,
                duration_ms=duration_ms,
                ear_at_start=self.ear_at_close_start,
            )
            if self.on_blink:
                self.on_blink(event)
            return event

        return None

    def begin_calibration(self):
        """Start collecting baseline samples. Keep eyes open and relaxed."""
        self.is_calibrating = True
        self.calibration_samples = []
        self.reset()
        logger.info("Starting calibration (%d samples)", self.calibration_capacity)

    def end_calibration(self) -> Optional[CalibrationResult]:
        """
        Finish calibration and derive the EAR threshold.

        Returns:
            CalibrationResult, or None if fewer than the minimum samples were
            collected (threshold and calibration mode are left untouched)
        """
        sample_count = len(self.calibration_samples)
        if sample_count < self.min_calibration_samples:
            logger.warning("Not enough calibration samples (%d < %d)",
                           sample_count, self.min_calibration_samples)
            return None

        samples = np.asarray(self.calibration_samples, dtype=float)
        avg_ear = float(np.mean(samples))
        std_ear = float(np.std(samples))

        self.ear_threshold = avg_ear * CALIBRATION_THRESHOLD_FACTOR
        self.is_calibrating = False

        logger.info("Calibration complete: avg EAR=%.3f, std=%.3f, threshold=%.3f",
                    avg_ear, std_ear, self.ear_threshold)
        return CalibrationResult(
            threshold=self.ear_threshold,
            avg_ear=avg_ear,
            std_ear=std_ear,
            sample_count=sample_count,
        )

    def cancel_calibration(self):
        """Leave calibration mode without changing the threshold."""
        self.is_calibrating = False
        self.calibration_samples = []

    def calibration_progress(self) -> float:
        """Calibration progress as a percentage in [0, 100]."""
        if self.calibration_capacity <= 0:
            return 100.0
        return min(100.0, len(self.calibration_samples) / self.calibration_capacity * 100.0)

    def reset(self):
        """Reset latch state."""
        self.is_eye_closed = False
        self.close_started_at_ms = None
        self.ear_at_close_start = 0.0


# =============================================================================
# EMERGENCY OVERLAY MODULE
# =============================================================================

def arm_emergency(now_ms: int) -> EmergencyState:
    """DISARMED -> ARMED with an empty sequence."""
    return EmergencyState(EmergencyPhase.ARMED, (), now_ms)


def advance_emergency(state: EmergencyState, symbol: BlinkType,
                      now_ms: int,
                      code_dict: Optional[Dict[str, EmergencyCode]] = None
                      ) -> Tuple[EmergencyState, Optional[DecoderEvent]]:
    """
    Append a symbol to an armed overlay.

    The code resolves the instant two symbols are collected, whether or not
    the sequence is in the code table.

    Returns:
        (next state, EMERGENCY / EMERGENCY_DROPPED event or None)
    """
    code_dict = code_dict if code_dict is not None else EMERGENCY_CODE_DICT
    sequence = state.sequence + (symbol,)

    if len(sequence) < EMERGENCY_SEQUENCE_LENGTH:
        return replace(state, sequence=sequence), None

    combo = ''.join(s.value for s in sequence[:EMERGENCY_SEQUENCE_LENGTH])
    code = code_dict.get(combo)
    if code is None:
        logger.warning("Unknown emergency sequence: %s", combo)
        return DISARMED, DecoderEvent(DecoderEventKind.EMERGENCY_DROPPED,
                                      sequence=combo, at_ms=now_ms)

    logger.info("Emergency code detected: %s (%s)", code.value, combo)
    return DISARMED, DecoderEvent(DecoderEventKind.EMERGENCY, value=code.value,
                                  sequence=combo, at_ms=now_ms)


def expire_emergency(state: EmergencyState, idle_ms: int,
                     now_ms: int) -> Tuple[EmergencyState, Optional[DecoderEvent]]:
    """
    Disarm an armed overlay once it has been idle for longer than the timeout.

    Returns:
        (next state, EMERGENCY_TIMED_OUT event or None)
    """
    if not state.armed or idle_ms <= EMERGENCY_TIMEOUT_MS:
        return state, None
    logger.warning("Emergency input timed out after %d ms. Resetting.", idle_ms)
    return DISARMED, DecoderEvent(DecoderEventKind.EMERGENCY_TIMED_OUT,
                                  sequence=state.sequence_str, at_ms=now_ms)


def emergency_codes() -> List[Dict[str, str]]:
    """Emergency reference rows: combo, code and description."""
    return [
        {'combo': combo, 'code': code.value, 'description': code.description}
        for combo, code in EMERGENCY_CODE_DICT.items()
    ]


# =============================================================================
# MORSE CODE DECODER MODULE
# =============================================================================

class MorseTimingDecoder:
    """
    Decodes blink durations into Morse symbols, letters and words.

    Durations are classified into dots and dashes, collected into a pending
    letter, and finalised by idle-time gaps evaluated in ``tick``. A blink of
    900 ms or longer arms the emergency overlay, which reads the next two
    symbols as an emergency code instead.
    """

    def __init__(self, config: Optional[MorseDecoderConfig] = None,
                 on_letter: Optional[Callable[[str], None]] = None,
                 on_word: Optional[Callable[[str], None]] = None,
                 on_emergency: Optional[Callable[[EmergencyCode], None]] = None,
                 morse_dict: Optional[Dict[str, str]] = None,
                 emergency_dict: Optional[Dict[str, EmergencyCode]] = None):
        """
        Initialize the Morse decoder.

        Args:
            config: Timing thresholds (defaults if None)
            on_letter: Called with each decoded character
            on_word: Called with each completed word
            on_emergency: Called with each resolved emergency code
            morse_dict: Morse sequence -> character table
            emergency_dict: Two-symbol sequence -> emergency code table
        """
        self.config = replace(config) if config else MorseDecoderConfig()
        self.on_letter = on_letter
        self.on_word = on_word
        self.on_emergency = on_emergency
        self.morse_dict = morse_dict if morse_dict is not None else MORSE_CODE_DICT
        self.emergency_dict = emergency_dict if emergency_dict is not None else EMERGENCY_CODE_DICT

        # State
        self._pending_symbols: List[BlinkType] = []
        self._pending_word: List[str] = []
        self.last_blink_end_ms: Optional[int] = None
        self.emergency = DISARMED

    @property
    def pending_symbols(self) -> str:
        """The Morse sequence of the letter in progress."""
        return ''.join(symbol.value for symbol in self._pending_symbols)

    @property
    def pending_word(self) -> str:
        """Letters decoded since the last word gap."""
        return ''.join(self._pending_word)

    def classify(self, duration_ms: float) -> BlinkType:
        """
        Classify a blink duration as a dot or a dash.

        Durations between the dot and dash thresholds fall back to the
        midpoint between them; the midpoint itself is a dot.
        """
        if duration_ms <= self.config.dot_duration_ms:
            return BlinkType.DOT

        if duration_ms >= self.config.dash_duration_ms:
            return BlinkType.DASH

        midpoint = (self.config.dot_duration_ms + self.config.dash_duration_ms) / 2.0
        return BlinkType.DOT if duration_ms <= midpoint else BlinkType.DASH

    def process_blink(self, duration_ms: int, now_ms: int) -> BlinkType:
        """
        Feed one blink and return its symbol for UI feedback.

        Args:
            duration_ms: Blink duration in milliseconds
            now_ms: Time the blink ended

        Returns:
            The classified symbol
        """
        symbol, _ = self.feed_blink(duration_ms, now_ms)
        return symbol

    def feed_blink(self, duration_ms: int,
                   now_ms: int) -> Tuple[BlinkType, List[DecoderEvent]]:
        """
        Feed one blink and return its symbol together with the outcome events.
        """
        events: List[DecoderEvent] = []
        symbol = self.classify(duration_ms)

        if not self.emergency.armed and duration_ms >= EMERGENCY_TRIGGER_DURATION_MS:
            # The trigger blink itself is not part of any letter
            self.emergency = arm_emergency(now_ms)
            events.append(DecoderEvent(DecoderEventKind.EMERGENCY_ARMED, at_ms=now_ms))
            logger.info("Emergency trigger detected (%d ms). Awaiting code...", duration_ms)
        elif self.emergency.armed:
            self.emergency, event = advance_emergency(
                self.emergency, symbol, now_ms, self.emergency_dict
            )
            if event is not None:
                self._pending_symbols.clear()
                self._pending_word.clear()
                events.append(event)
            else:
                logger.debug("Emergency input: %s", self.emergency.sequence_str)
        else:
            self._pending_symbols.append(symbol)
            logger.debug("Blink: %d ms -> %s | Current: %s",
                         duration_ms, symbol.value, self.pending_symbols)

        self.last_blink_end_ms = now_ms
        self._dispatch(events)
        return symbol, events

    def tick(self, now_ms: int) -> List[DecoderEvent]:
        """
        Evaluate letter, word and emergency gaps.

        Meant to run on a steady cadence independent of blink arrival.

        Args:
            now_ms: Current time in milliseconds

        Returns:
            Events produced by this evaluation
        """
        if self.last_blink_end_ms is None:
            return []

        idle_ms = now_ms - self.last_blink_end_ms
        events: List[DecoderEvent] = []

        if self.emergency.armed:
            self.emergency, timeout_event = expire_emergency(self.emergency, idle_ms, now_ms)
            if timeout_event is not None:
                events.append(timeout_event)
                self._dispatch(events)
                return events

        if idle_ms > self.config.letter_gap_ms and self._pending_symbols:
            events.append(self._resolve_letter(now_ms))

        if idle_ms > self.config.word_gap_ms and self._pending_word:
            events.append(self._finalize_word(now_ms))

        self._dispatch(events)
        return events

    def _resolve_letter(self, now_ms: int) -> DecoderEvent:
        sequence = self.pending_symbols
        self._pending_symbols.clear()

        char = self.morse_dict.get(sequence)
        if char is None:
            logger.warning("Unknown morse sequence: %s", sequence)
            return DecoderEvent(DecoderEventKind.LETTER_DROPPED, sequence=sequence, at_ms=now_ms)

        self._pending_word.append(char)
        logger.info("Decoded: %s -> %s", sequence, char)
        return DecoderEvent(DecoderEventKind.LETTER_DECODED, value=char,
                            sequence=sequence, at_ms=now_ms)

    def _finalize_word(self, now_ms: int) -> DecoderEvent:
        word = self.pending_word
        self._pending_word.clear()
        logger.info("Word complete: %s", word)
        return DecoderEvent(DecoderEventKind.WORD_COMPLETE, value=word, at_ms=now_ms)

    def _dispatch(self, events: List[DecoderEvent]):
        for event in events:
            if event.kind is DecoderEventKind.LETTER_DECODED and self.on_letter:
                self.on_letter(event.value)
            elif event.kind is DecoderEventKind.WORD_COMPLETE and self.on_word:
                self.on_word(event.value)
            elif event.kind is DecoderEventKind.EMERGENCY and self.on_emergency:
                self.on_emergency(event.emergency_code)

    def gap_window(self, now_ms: int) -> GapWindow:
        """Which finalisation window the idle time since the last blink is in."""
        if self.last_blink_end_ms is None:
            return GapWindow.SYMBOL
        idle_ms = now_ms - self.last_blink_end_ms
        if idle_ms <= self.config.letter_gap_ms:
            return GapWindow.SYMBOL
        if idle_ms <= self.config.word_gap_ms:
            return GapWindow.LETTER
        return GapWindow.WORD

    def update_config(self, **changes):
        """
        Merge timing fields into the active config.

        Applies to blinks classified from now on; symbols already pending
        keep their classification.

        Raises:
            TypeError: On an unknown field name
        """
        self.config = replace(self.config, **changes)

    def reset(self):
        """Clear pending symbols and word, and disarm the overlay."""
        self._pending_symbols.clear()
        self._pending_word.clear()
        self.last_blink_end_ms = None
        self.emergency = DISARMED


def morse_chart(morse_dict: Optional[Dict[str, str]] = None) -> Dict[str, List[Tuple[str, str]]]:
    """
    Group the Morse table for reference display.

    Returns:
        {'letters': [(char, code)], 'numbers': [...], 'punctuation': [...]}
    """
    morse_dict = morse_dict if morse_dict is not None else MORSE_CODE_DICT
    chart = {'letters': [], 'numbers': [], 'punctuation': []}
    for code, char in morse_dict.items():
        if char.isalpha():
            chart['letters'].append((char, code))
        elif char.isdigit():
            chart['numbers'].append((char, code))
        else:
            chart['punctuation'].append((char, code))
    for group in chart.values():
        group.sort()
    return chart


# =============================================================================
# SESSION MODULE
# =============================================================================

@dataclass(frozen=True)
class Message:
    """One entry in the conversation history."""
    id: str
    text: str
    timestamp_ms: int
    is_emergency: bool = False


class MessageLog:
    """In-memory message history of a session."""

    def __init__(self):
        self._messages: List[Message] = []
        self._ids = count(1)

    def add(self, text: str, timestamp_ms: int, is_emergency: bool = False) -> Message:
        message = Message(
            id=f"{timestamp_ms}-{next(self._ids)}",
            text=text,
            timestamp_ms=timestamp_ms,
            is_emergency=is_emergency,
        )
        self._messages.append(message)
        return message

    def add_emergency(self, code: EmergencyCode, timestamp_ms: int) -> Message:
        return self.add(f"EMERGENCY: {code.value}", timestamp_ms, is_emergency=True)

    @property
    def total_characters(self) -> int:
        return sum(len(message.text) for message in self._messages)

    def clear(self):
        self._messages = []

    def __iter__(self) -> Iterator[Message]:
        return iter(list(self._messages))

    def __len__(self) -> int:
        return len(self._messages)


class SessionStats:
    """Blink counter, session timer and last-blink bookkeeping."""

    def __init__(self, started_at_ms: Optional[int] = None):
        self.started_at_ms = started_at_ms
        self.blink_count = 0
        self.last_blink: Optional[BlinkEvent] = None
        self.last_symbol: Optional[BlinkType] = None

    def start(self, now_ms: int):
        self.started_at_ms = now_ms
        self.blink_count = 0

    def record_blink(self, event: BlinkEvent, symbol: BlinkType):
        self.blink_count += 1
        self.last_blink = event
        self.last_symbol = symbol

    def session_timer(self, now_ms: int) -> str:
        """Elapsed session time as MM:SS."""
        if self.started_at_ms is None:
            return "00:00"
        elapsed = max(0, (now_ms - self.started_at_ms) // 1000)
        return f"{elapsed // 60:02d}:{elapsed % 60:02d}"

    def format_last_blink(self, now_ms: int) -> str:
        if self.last_blink is None:
            return "--"
        seconds_ago = (now_ms - self.last_blink.occurred_at_ms) // 1000
        if seconds_ago < 1:
            return "Just now"
        if seconds_ago < 60:
            return f"{seconds_ago}s ago"
        return f"{seconds_ago // 60}m ago"


class GapTicker(threading.Thread):
    """Runs the session gap check on a fixed cadence until stopped."""

    def __init__(self, session: "MorseVisionSession",
                 interval_ms: int = DEFAULT_GAP_CHECK_INTERVAL_MS,
                 clock: Callable[[], int] = current_time_ms):
        super().__init__(name="morsevision-gap-ticker", daemon=True)
        self.session = session
        self.interval_ms = interval_ms
        self.clock = clock
        self._stop_event = threading.Event()

    def run(self):
        interval = self.interval_ms / 1000.0
        while not self._stop_event.wait(interval):
            try:
                self.session.tick(self.clock())
            except Exception:
                logger.exception("Gap check failed")

    def stop(self, timeout: float = 1.0):
        self._stop_event.set()
        if self.is_alive() and threading.current_thread() is not self:
            self.join(timeout)

    @property
    def stopped(self) -> bool:
        return self._stop_event.is_set()


class MorseVisionSession:
    """
    One live signal stream: classifier, decoder, history and gap ticker.

    All frame, blink and tick processing is serialised behind one lock, so
    the camera loop and the ticker thread may call in concurrently.
    """

    def __init__(self, config: Optional[SystemConfig] = None,
                 on_letter: Optional[Callable[[str], None]] = None,
                 on_word: Optional[Callable[[str], None]] = None,
                 on_emergency: Optional[Callable[[EmergencyCode], None]] = None,
                 on_blink: Optional[Callable[[BlinkEvent, BlinkType], None]] = None,
                 clock: Callable[[], int] = current_time_ms):
        """
        Initialize the session.

        Args:
            config: System configuration (uses defaults if None)
            on_letter: Called with each decoded character
            on_word: Called with each completed word
            on_emergency: Called with each resolved emergency code
            on_blink: Called with each accepted blink and its symbol
            clock: Millisecond clock used by the gap ticker
        """
        self.config = config or SystemConfig()
        self.clock = clock
        self.on_blink = on_blink

        self._lock = threading.RLock()
        self._ticker: Optional[GapTicker] = None
        self._closed = False

        self.classifier = BlinkClassifier(
            ear_threshold=self.config.ear_threshold,
            calibration_capacity=self.config.calibration_samples,
            min_calibration_samples=self.config.min_calibration_samples,
            on_blink=self._handle_blink,
        )
        self.decoder = MorseTimingDecoder(
            self.config.decoder_config(),
            on_letter=on_letter,
            on_word=on_word,
            on_emergency=on_emergency,
        )
        self.messages = MessageLog()
        self.stats = SessionStats()
        self.events: Deque[DecoderEvent] = deque(maxlen=EVENT_HISTORY_SIZE)

    # -- lifecycle ----------------------------------------------------------

    def start(self):
        """Start the periodic gap check."""
        with self._lock:
            if self._closed:
                raise RuntimeError("Session is closed")
            if self._ticker is not None:
                return
            if self.stats.started_at_ms is None:
                self.stats.start(self.clock())
            self._ticker = GapTicker(self, self.config.gap_check_interval_ms, self.clock)
        self._ticker.start()

    def stop(self):
        """Stop the periodic gap check, keeping decoder state."""
        with self._lock:
            ticker, self._ticker = self._ticker, None
        if ticker is not None:
            ticker.stop()

    def close(self):
        """Stop scheduling and drop pending overlay and buffers."""
        self.stop()
        with self._lock:
            self.decoder.reset()
            self.classifier.reset()
            self._closed = True

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def running(self) -> bool:
        return self._ticker is not None

    # -- signal path --------------------------------------------------------

    def observe_frame(self, eyes: Optional[Tuple[Sequence[Point], Sequence[Point]]],
                      now_ms: int) -> Optional[EarReading]:
        """
        Feed one frame of landmarks.

        Args:
            eyes: (left_eye, right_eye) points, or None when no face was found
            now_ms: Frame timestamp in milliseconds
        """
        if eyes is None:
            return None
        with self._lock:
            if self._closed:
                return None
            return self.classifier.observe_frame(eyes[0], eyes[1], now_ms)

    def process_blink(self, duration_ms: int, now_ms: int) -> BlinkType:
        """Feed a blink duration directly, bypassing the classifier."""
        return self._handle_blink(BlinkEvent(now_ms, duration_ms, 0.0))

    def tick(self, now_ms: int) -> List[DecoderEvent]:
        with self._lock:
            if self._closed:
                return []
            events = self.decoder.tick(now_ms)
            self._record(events)
            return events

    def _handle_blink(self, event: BlinkEvent) -> BlinkType:
        with self._lock:
            if self._closed:
                return self.decoder.classify(event.duration_ms)
            symbol, events = self.decoder.feed_blink(event.duration_ms, event.occurred_at_ms)
            self.stats.record_blink(event, symbol)
            self._record(events)
            if self.on_blink:
                self.on_blink(event, symbol)
            return symbol

    def _record(self, events: List[DecoderEvent]):
        for event in events:
            self.events.append(event)
            if event.kind is DecoderEventKind.WORD_COMPLETE:
                self.messages.add(event.value, event.at_ms)
            elif event.kind is DecoderEventKind.EMERGENCY:
                self.messages.add_emergency(event.emergency_code, event.at_ms)

    # -- calibration --------------------------------------------------------

    def begin_calibration(self):
        with self._lock:
            self.classifier.begin_calibration()

    def end_calibration(self) -> Optional[CalibrationResult]:
        with self._lock:
            result = self.classifier.end_calibration()
            if result is not None:
                self.config.ear_threshold = result.threshold
            return result

    def cancel_calibration(self):
        with self._lock:
            self.classifier.cancel_calibration()

    def calibration_progress(self) -> float:
        with self._lock:
            return self.classifier.calibration_progress()

    @property
    def ear_threshold(self) -> float:
        return self.classifier.get_ear_threshold()

    # -- configuration & UI -------------------------------------------------

    def update_config(self, **kwargs):
        """Update configuration parameters."""
        with self._lock:
            known = {f.name for f in fields(self.config)}
            for key, value in kwargs.items():
                if key in known:
                    setattr(self.config, key, value)
            timing = {key: value for key, value in kwargs.items()
                      if key in {f.name for f in fields(self.decoder.config)}}
            if timing:
                self.decoder.update_config(**timing)
            if 'ear_threshold' in kwargs:
                self.classifier.set_ear_threshold(kwargs['ear_threshold'])

    def apply_preset(self, preset: TimingPreset):
        self.update_config(dot_duration_ms=preset.dot_duration_ms,
                           dash_duration_ms=preset.dash_duration_ms)

    def clear_messages(self):
        """Clear the history and everything being typed."""
        with self._lock:
            self.messages.clear()
            self.events.clear()
            self.decoder.reset()
            self.stats.last_blink = None
            self.stats.last_symbol = None

    def snapshot(self, now_ms: int) -> dict:
        """Live state for display."""
        with self._lock:
            emergency = self.decoder.emergency
            return {
                'morse_sequence': self.decoder.pending_symbols,
                'current_word': self.decoder.pending_word,
                'gap_window': self.decoder.gap_window(now_ms),
                'emergency_armed': emergency.armed,
                'emergency_sequence': emergency.sequence_str,
                'eye_state': self.classifier.eye_state,
                'ear_threshold': self.classifier.get_ear_threshold(),
                'is_calibrating': self.classifier.is_calibrating,
                'calibration_progress': self.classifier.calibration_progress(),
                'blink_count': self.stats.blink_count,
                'session_timer': self.stats.session_timer(now_ms),
                'last_blink': self.stats.format_last_blink(now_ms),
                'last_blink_duration_ms': (self.stats.last_blink.duration_ms
                                           if self.stats.last_blink else None),
                'last_symbol': self.stats.last_symbol,
                'messages': list(self.messages),
            }


# =============================================================================
# SIMULATION
# =============================================================================

_SCRIPT_TOKEN = re.compile(r'^(p?)(\d+)$')


def parse_blink_script(script: str) -> List[Tuple[str, int]]:
    """
    Parse a blink script such as ``"150, 150, p900, 950"``.

    Plain numbers are blink durations, ``pN`` is N ms of open-eye pause.

    Returns:
        List of ('blink' | 'pause', ms) steps

    Raises:
        ValueError: On a malformed token
    """
    steps = []
    for token in re.split(r'[,\s]+', script.strip().lower()):
        if not token:
            continue
        match = _SCRIPT_TOKEN.match(token)
        if match is None:
            raise ValueError(f"Bad blink script token: {token!r}")
        steps.append(('pause' if match.group(1) else 'blink', int(match.group(2))))
    return steps


def replay_blink_script(decoder: MorseTimingDecoder, script: str,
                        symbol_gap_ms: int = 200,
                        tick_ms: int = DEFAULT_GAP_CHECK_INTERVAL_MS,
                        start_ms: int = 0) -> List[DecoderEvent]:
    """
    Drive a decoder through a blink script on a simulated clock.

    Each blink is followed by ``symbol_gap_ms`` of open eyes; gap checks run
    every ``tick_ms`` of simulated time.

    Returns:
        Every event the decoder produced, in order
    """
    now = start_ms
    events: List[DecoderEvent] = []

    def advance(duration_ms: int):
        nonlocal now
        end = now + duration_ms
        while now < end:
            now = min(now + tick_ms, end)
            events.extend(decoder.tick(now))

    for kind, value in parse_blink_script(script):
        if kind == 'blink':
            now += value
            events.extend(decoder.feed_blink(value, now)[1])
            advance(symbol_gap_ms)
        else:
            advance(value)
    return events
