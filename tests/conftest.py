"""Pytest configuration and shared fixtures for the MorseVision core.

Provides synthetic eye geometry with a known aspect ratio and decoders wired
to recording callbacks.
"""
import sys
import logging
from pathlib import Path
from typing import List

import pytest

# Add the project root to Python path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from morsevision import MorseDecoderConfig, MorseTimingDecoder


# Configure logging for tests
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[logging.StreamHandler()]
)


OPEN_EAR = 0.3
CLOSED_EAR = 0.1


def make_eye(ear: float, width: float = 0.04, x0: float = 0.3, y0: float = 0.4):
    """Six normalized points whose EAR is exactly ``ear``.

    p1/p4 are the corners, p2/p3 sit ``h`` above and p6/p5 ``h`` below the
    corner line, so EAR = (2h + 2h) / (2 * width) = 2h / width.
    """
    h = ear * width / 2.0
    return [
        (x0, y0),                       # p1 outer corner
        (x0 + width / 3, y0 - h),       # p2 upper outer
        (x0 + 2 * width / 3, y0 - h),   # p3 upper inner
        (x0 + width, y0),               # p4 inner corner
        (x0 + 2 * width / 3, y0 + h),   # p5 lower inner
        (x0 + width / 3, y0 + h),       # p6 lower outer
    ]


def eyes(ear: float):
    """A (left, right) pair with the same EAR."""
    return make_eye(ear), make_eye(ear, x0=0.6)


class Recorder:
    """Collects decoder notifications."""

    def __init__(self):
        self.letters: List[str] = []
        self.words: List[str] = []
        self.emergencies = []

    def kwargs(self):
        return {
            'on_letter': self.letters.append,
            'on_word': self.words.append,
            'on_emergency': self.emergencies.append,
        }


@pytest.fixture
def recorder():
    return Recorder()


@pytest.fixture
def timing_config():
    """Timing used by the end-to-end scenarios."""
    return MorseDecoderConfig(dot_duration_ms=240, dash_duration_ms=520,
                              letter_gap_ms=800, word_gap_ms=2000)


@pytest.fixture
def decoder(timing_config, recorder):
    """Decoder with the full Morse table and recording callbacks."""
    return MorseTimingDecoder(timing_config, **recorder.kwargs())
