"""Unit tests for the blink classifier latch and calibration."""
import numpy as np
import pytest

from conftest import CLOSED_EAR, OPEN_EAR, eyes
from morsevision import BlinkClassifier, BlinkEvent, CalibrationResult, EyeState


@pytest.fixture
def blinks():
    return []


@pytest.fixture
def classifier(blinks):
    return BlinkClassifier(ear_threshold=0.2, on_blink=blinks.append)


def feed(classifier, ear, now_ms):
    left, right = eyes(ear)
    return classifier.observe_frame(left, right, now_ms)


def blink(classifier, start_ms, duration_ms, frame_ms=33):
    """Open frame, closed frames for ``duration_ms``, then an open frame."""
    feed(classifier, OPEN_EAR, start_ms - frame_ms)
    t = start_ms
    while t < start_ms + duration_ms:
        feed(classifier, CLOSED_EAR, t)
        t += frame_ms
    feed(classifier, OPEN_EAR, start_ms + duration_ms)


class TestLatch:
    """Test suite for OPEN <-> CLOSED edge detection."""

    def test_returns_ear_triple(self, classifier):
        reading = feed(classifier, OPEN_EAR, 0)
        assert reading.avg_ear == pytest.approx(OPEN_EAR)

    def test_single_closed_interval_emits_one_event(self, classifier, blinks):
        blink(classifier, 1000, 300)

        assert len(blinks) == 1
        event = blinks[0]
        assert isinstance(event, BlinkEvent)
        assert event.duration_ms == 300
        assert event.occurred_at_ms == 1300
        assert event.ear_at_start == pytest.approx(CLOSED_EAR)

    def test_many_closed_frames_do_not_repeat_emission(self, classifier, blinks):
        feed(classifier, CLOSED_EAR, 0)
        for t in range(10, 400, 10):
            feed(classifier, CLOSED_EAR, t)
        assert blinks == []
        assert classifier.eye_state == EyeState.CLOSED

        feed(classifier, OPEN_EAR, 400)
        feed(classifier, OPEN_EAR, 433)
        assert len(blinks) == 1

    @pytest.mark.parametrize("duration_ms,accepted", [
        (49, False), (50, True), (2000, True), (2001, False),
    ])
    def test_duration_band_is_inclusive(self, classifier, blinks, duration_ms, accepted):
        feed(classifier, CLOSED_EAR, 1000)
        event = classifier.update_latch(OPEN_EAR, 1000 + duration_ms)

        assert (event is not None) is accepted
        assert len(blinks) == (1 if accepted else 0)
        assert classifier.eye_state == EyeState.OPEN

    def test_threshold_boundary_counts_as_open(self, classifier):
        classifier.update_latch(0.2, 0)
        assert classifier.eye_state == EyeState.OPEN

    def test_missing_face_is_not_closure(self, classifier, blinks):
        assert classifier.observe_frame(None, None, 0) is None
        assert classifier.eye_state == EyeState.OPEN

        feed(classifier, CLOSED_EAR, 100)
        assert classifier.observe_frame(None, None, 200) is None
        assert classifier.eye_state == EyeState.CLOSED

        feed(classifier, OPEN_EAR, 400)
        assert [b.duration_ms for b in blinks] == [300]

    def test_threshold_accessors(self, classifier):
        classifier.set_ear_threshold(0.05)
        assert classifier.get_ear_threshold() == 0.05

        feed(classifier, CLOSED_EAR, 0)
        assert classifier.eye_state == EyeState.OPEN


class TestCalibration:
    """Test suite for threshold calibration."""

    def test_calibration_frames_skip_the_latch(self, classifier, blinks):
        classifier.begin_calibration()
        for t in range(0, 1000, 33):
            feed(classifier, CLOSED_EAR if t % 99 == 0 else OPEN_EAR, t)

        assert blinks == []
        assert classifier.eye_state == EyeState.OPEN

    def test_begin_discards_latch_state(self, classifier, blinks):
        feed(classifier, CLOSED_EAR, 0)
        classifier.begin_calibration()

        assert classifier.eye_state == EyeState.OPEN
        assert classifier.is_calibrating
        assert classifier.calibration_samples == []

    def test_49_samples_fail_without_side_effects(self, classifier):
        classifier.begin_calibration()
        for i in range(49):
            feed(classifier, OPEN_EAR, i * 33)

        assert classifier.end_calibration() is None
        assert classifier.get_ear_threshold() == 0.2
        assert classifier.is_calibrating

    def test_50_samples_set_threshold_to_70_percent_of_mean(self, classifier):
        classifier.begin_calibration()
        for i in range(50):
            feed(classifier, 0.28 + (i % 5) * 0.01, i * 33)

        result = classifier.end_calibration()

        assert isinstance(result, CalibrationResult)
        mean = np.mean(classifier.calibration_samples)
        assert result.avg_ear == pytest.approx(mean)
        assert result.threshold == pytest.approx(0.7 * mean)
        assert result.std_ear == pytest.approx(np.std(classifier.calibration_samples))
        assert result.sample_count == 50
        assert classifier.get_ear_threshold() == result.threshold
        assert not classifier.is_calibrating

    def test_latch_resumes_with_new_threshold(self, classifier, blinks):
        classifier.begin_calibration()
        for i in range(60):
            feed(classifier, 0.4, i * 33)
        classifier.end_calibration()

        # 0.25 is below 0.7 * 0.4 = 0.28
        feed(classifier, 0.25, 5000)
        feed(classifier, 0.4, 5200)
        assert [b.duration_ms for b in blinks] == [200]

    def test_progress_is_bounded_and_monotonic(self, classifier):
        classifier.begin_calibration()
        assert classifier.calibration_progress() == 0.0

        progress = []
        for i in range(200):
            feed(classifier, OPEN_EAR, i * 33)
            progress.append(classifier.calibration_progress())

        assert progress == sorted(progress)
        assert progress[74] == pytest.approx(50.0)
        assert progress[-1] == 100.0
        assert len(classifier.calibration_samples) == 150

    def test_cancel_keeps_threshold(self, classifier):
        classifier.begin_calibration()
        feed(classifier, OPEN_EAR, 0)
        classifier.cancel_calibration()

        assert not classifier.is_calibrating
        assert classifier.get_ear_threshold() == 0.2

    def test_capacity_below_minimum_rejected(self):
        with pytest.raises(ValueError):
            BlinkClassifier(calibration_capacity=40, min_calibration_samples=50)

    def test_capacity_equal_to_minimum_can_finish(self):
        classifier = BlinkClassifier(calibration_capacity=50, min_calibration_samples=50)
        classifier.begin_calibration()
        for i in range(80):
            classifier.observe_frame(*eyes(OPEN_EAR), i * 33)

        assert classifier.calibration_progress() == 100.0
        assert classifier.end_calibration() is not None
