"""
MorseVision AI - Hands-Free Morse Communication
===============================================
MediaPipe FaceLandmarker + Streamlit

Webcam front end for the MorseVision core: MediaPipe supplies the eye contour
landmarks, the core turns them into blinks, letters, words and emergency
requests, and Streamlit renders the live session.

Run with: streamlit run morsevision_app.py

Author: AI Lab - Tel-U
Date: January 2026
"""

import logging
import os
import time
import urllib.request
from typing import List, Optional, Sequence, Tuple

import cv2
import numpy as np
import mediapipe as mp
from mediapipe.tasks import python as mp_tasks
from mediapipe.tasks.python import vision as mp_vision
from mediapipe import Image as MpImage
import streamlit as st

from morsevision import (
    TIMING_PRESETS,
    BlinkType,
    EarReading,
    EyeState,
    GapWindow,
    MorseVisionSession,
    Point,
    SystemConfig,
    configure_logging,
    current_time_ms,
    emergency_codes,
    morse_chart,
)


logger = logging.getLogger(__name__)


# =============================================================================
# LANDMARK PROVIDER MODULE
# =============================================================================

# Download FaceLandmarker model if not exists
FACE_LANDMARKER_MODEL_PATH = "face_landmarker.task"
FACE_LANDMARKER_MODEL_URL = "https://storage.googleapis.com/mediapipe-models/face_landmarker/face_landmarker/float16/1/face_landmarker.task"

EyePair = Tuple[List[Point], List[Point]]


def download_face_landmarker_model(path: str = FACE_LANDMARKER_MODEL_PATH):
    """Download the FaceLandmarker model if it doesn't exist."""
    if not os.path.exists(path):
        logger.info("Downloading FaceLandmarker model...")
        urllib.request.urlretrieve(FACE_LANDMARKER_MODEL_URL, path)
        logger.info("Model downloaded to %s", path)


class LandmarkProvider:
    """
    Resolves the six-point eye contours of a single face per frame using
    MediaPipe FaceLandmarker (Tasks API).
    """

    def __init__(self, left_eye_indices: Sequence[int], right_eye_indices: Sequence[int],
                 min_detection_confidence: float = 0.5,
                 min_tracking_confidence: float = 0.5,
                 model_path: str = FACE_LANDMARKER_MODEL_PATH):
        """
        Initialize the provider with MediaPipe FaceLandmarker.

        Args:
            left_eye_indices: Six FaceMesh indices of the left eye contour
            right_eye_indices: Six FaceMesh indices of the right eye contour
            min_detection_confidence: Minimum confidence for face detection
            min_tracking_confidence: Minimum confidence for landmark tracking
            model_path: Local path of the FaceLandmarker task file
        """
        self.left_eye_indices = list(left_eye_indices)
        self.right_eye_indices = list(right_eye_indices)

        download_face_landmarker_model(model_path)

        base_options = mp_tasks.BaseOptions(model_asset_path=model_path)
        options = mp_vision.FaceLandmarkerOptions(
            base_options=base_options,
            running_mode=mp_vision.RunningMode.IMAGE,
            num_faces=1,
            min_face_detection_confidence=min_detection_confidence,
            min_face_presence_confidence=min_tracking_confidence,
            min_tracking_confidence=min_tracking_confidence,
            output_face_blendshapes=False,
            output_facial_transformation_matrixes=False
        )
        self.face_landmarker = mp_vision.FaceLandmarker.create_from_options(options)

    def detect(self, frame: np.ndarray) -> Optional[EyePair]:
        """
        Find the eye contours in a BGR frame.

        Returns:
            (left_eye, right_eye) normalized image-space points, or None when
            no face was found
        """
        rgb_frame = cv2.cvtColor(frame, cv2.COLOR_BGR2RGB)
        mp_image = MpImage(image_format=mp.ImageFormat.SRGB, data=rgb_frame)

        results = self.face_landmarker.detect(mp_image)
        if not results.face_landmarks:
            return None

        face_landmarks = results.face_landmarks[0]
        left_eye = [(face_landmarks[i].x, face_landmarks[i].y) for i in self.left_eye_indices]
        right_eye = [(face_landmarks[i].x, face_landmarks[i].y) for i in self.right_eye_indices]
        return left_eye, right_eye

    def close(self):
        """Release resources."""
        if self.face_landmarker:
            self.face_landmarker.close()


def draw_eye_contour(frame: np.ndarray, eye: Sequence[Point],
                     color: Tuple[int, int, int]):
    """Draw an eye contour from normalized points."""
    h, w = frame.shape[:2]
    points = (np.asarray(eye) * [w, h]).astype(int)
    for i in range(len(points)):
        pt1 = tuple(int(v) for v in points[i])
        pt2 = tuple(int(v) for v in points[(i + 1) % len(points)])
        cv2.circle(frame, pt1, 2, color, -1)
        cv2.line(frame, pt1, pt2, color, 1)


# =============================================================================
# MAIN PIPELINE
# =============================================================================

class MorseVisionSystem:
    """
    Wires the landmark provider into a MorseVision session and renders
    per-frame overlays.
    """

    def __init__(self, config: Optional[SystemConfig] = None):
        """
        Initialize the system.

        Args:
            config: System configuration (uses defaults if None)
        """
        self.config = config or SystemConfig.from_env()
        self.landmark_provider = LandmarkProvider(
            self.config.left_eye_landmarks,
            self.config.right_eye_landmarks,
        )
        self.session = MorseVisionSession(
            self.config,
            on_word=lambda word: logger.info("Message: %s", word),
            on_emergency=lambda code: logger.warning("EMERGENCY: %s", code.value),
        )
        self.last_reading: Optional[EarReading] = None
        self.processing_time_ms = 0.0

    def process_frame(self, frame: np.ndarray) -> Tuple[np.ndarray, dict]:
        """
        Process a single frame through the entire pipeline.

        Args:
            frame: Input frame (BGR)

        Returns:
            Tuple of (annotated_frame, results_dict)
        """
        start_time = time.time()
        now_ms = current_time_ms()
        annotated_frame = frame.copy()

        eyes = self.landmark_provider.detect(frame)
        reading = self.session.observe_frame(eyes, now_ms)
        self.last_reading = reading

        results = self.session.snapshot(now_ms)
        results['face_detected'] = eyes is not None
        results['ear'] = reading.avg_ear if reading else None

        if eyes is not None:
            color = (0, 0, 255) if results['eye_state'] == EyeState.CLOSED else (0, 255, 0)
            draw_eye_contour(annotated_frame, eyes[0], color)
            draw_eye_contour(annotated_frame, eyes[1], color)

        self.processing_time_ms = (time.time() - start_time) * 1000
        return self._add_overlays(annotated_frame, results), results

    def _add_overlays(self, frame: np.ndarray, results: dict) -> np.ndarray:
        """Add status overlays to the frame."""
        h, w = frame.shape[:2]

        if not results['face_detected']:
            cv2.putText(frame, "No face detected",
                        (10, 30), cv2.FONT_HERSHEY_SIMPLEX, 0.7, (0, 0, 255), 2)
            return frame

        state_color = (0, 255, 0) if results['eye_state'] == EyeState.OPEN else (0, 0, 255)
        cv2.putText(frame, f"Eye: {results['eye_state'].value}",
                    (10, 30), cv2.FONT_HERSHEY_SIMPLEX, 0.7, state_color, 2)

        if results['ear'] is not None:
            cv2.putText(frame, f"EAR: {results['ear']:.3f} / {results['ear_threshold']:.3f}",
                        (10, 60), cv2.FONT_HERSHEY_SIMPLEX, 0.5, (255, 255, 255), 1)

        if results['emergency_armed']:
            cv2.putText(frame, f"EMERGENCY: {results['emergency_sequence'] or '_'}",
                        (w // 2 - 110, 30), cv2.FONT_HERSHEY_SIMPLEX, 0.8, (0, 0, 255), 2)
        elif results['is_calibrating']:
            cv2.putText(frame, f"CALIBRATING: {results['calibration_progress']:.0f}%",
                        (w // 2 - 100, 30), cv2.FONT_HERSHEY_SIMPLEX, 0.8, (0, 165, 255), 2)

        if results['morse_sequence']:
            cv2.putText(frame, f"Morse: {results['morse_sequence']}",
                        (10, h - 60), cv2.FONT_HERSHEY_SIMPLEX, 0.7, (0, 255, 255), 2)

        if results['current_word']:
            cv2.putText(frame, f"Word: {results['current_word'][-30:]}",
                        (10, h - 25), cv2.FONT_HERSHEY_SIMPLEX, 0.7, (255, 255, 0), 2)

        return frame

    def close(self):
        """Release resources."""
        self.session.close()
        self.landmark_provider.close()


# =============================================================================
# STREAMLIT APPLICATION
# =============================================================================

def start_detection():
    """Callback for start button."""
    st.session_state.is_running = True

def stop_detection():
    """Callback for stop button."""
    st.session_state.is_running = False

def start_calibration_cb():
    """Callback for start calibration button - also starts detection."""
    st.session_state.start_calibration_flag = True
    st.session_state.is_running = True

def clear_messages_cb():
    """Callback for clear messages button."""
    st.session_state.clear_messages_flag = True

def apply_preset_cb(index: int):
    """Callback for a timing preset button."""
    preset = TIMING_PRESETS[index]
    st.session_state.dot_ms = preset.dot_duration_ms
    st.session_state.dash_ms = preset.dash_duration_ms


def render_messages(placeholder, messages):
    """Render the message history, newest first."""
    if not messages:
        placeholder.info("No messages yet")
        return
    lines = []
    for message in reversed(messages[-10:]):
        stamp = time.strftime("%H:%M:%S", time.localtime(message.timestamp_ms / 1000))
        prefix = "🚨 " if message.is_emergency else ""
        lines.append(f"`{stamp}` {prefix}**{message.text}**")
    placeholder.markdown("\n\n".join(lines))


def render_calibration_status(placeholder, results: dict, calibration):
    if results['is_calibrating']:
        placeholder.warning(
            f"🎯 Keep eyes open and relaxed... {results['calibration_progress']:.0f}%"
        )
    elif calibration is not None:
        placeholder.success(
            f"✅ Calibrated! Avg EAR: {calibration.avg_ear:.3f} "
            f"(std {calibration.std_ear:.3f}) | Threshold: {calibration.threshold:.3f}"
        )
    else:
        placeholder.info(f"Not calibrated - threshold {results['ear_threshold']:.3f}")


def create_streamlit_app():
    """
    Create and run the Streamlit application.
    """
    st.set_page_config(
        page_title="MorseVision AI",
        page_icon="👁️",
        layout="wide"
    )

    st.title("👁️ MorseVision AI")
    st.markdown("*Hands-free Morse communication · MediaPipe FaceLandmarker + Streamlit*")

    defaults = SystemConfig.from_env()

    # Initialize session state
    for key, value in {
        'system': None,
        'is_running': False,
        'start_calibration_flag': False,
        'clear_messages_flag': False,
        'calibration': None,
        'dot_ms': defaults.dot_duration_ms,
        'dash_ms': defaults.dash_duration_ms,
    }.items():
        if key not in st.session_state:
            st.session_state[key] = value

    # Sidebar controls
    with st.sidebar:
        st.header("⚙️ Settings")

        st.subheader("Blink Tuning")
        dot_ms = st.slider("Dot duration (ms)", 120, 500, step=10, key="dot_ms",
                           help="Blinks up to this long are always dots.")
        dash_ms = st.slider("Dash duration (ms)", 300, 900, step=10, key="dash_ms",
                            help="Blinks at least this long are always dashes.")
        preset_cols = st.columns(len(TIMING_PRESETS))
        for i, (col, preset) in enumerate(zip(preset_cols, TIMING_PRESETS)):
            with col:
                st.button(preset.label, key=f"preset_{i}", use_container_width=True,
                          on_click=apply_preset_cb, args=(i,))

        st.subheader("Timing Settings")
        letter_gap = st.slider("Letter Gap (ms)", 400, 2000, defaults.letter_gap_ms, 50)
        word_gap = st.slider("Word Gap (ms)", 1000, 5000, defaults.word_gap_ms, 100)

        st.divider()

        st.subheader("🎯 Calibration")
        st.caption("Look at the camera with eyes open and relaxed for ~5 seconds")
        st.button("Start Calibration", use_container_width=True, key="start_cal_btn",
                  on_click=start_calibration_cb)
        cal_status = st.empty()

        st.divider()
        st.button("Clear Messages", use_container_width=True, key="clear_btn",
                  on_click=clear_messages_cb)

    # Main content area
    col_video, col_info = st.columns([2, 1])

    with col_video:
        st.subheader("📹 Live Video Feed")
        video_placeholder = st.empty()

        btn_col1, btn_col2 = st.columns(2)
        with btn_col1:
            st.button("▶️ Start Session", use_container_width=True, key="start_btn",
                      on_click=start_detection)
        with btn_col2:
            st.button("⏹️ Stop Session", use_container_width=True, key="stop_btn",
                      on_click=stop_detection)

    with col_info:
        st.subheader("📊 Status")
        metric_cols = st.columns(3)
        timer_display = metric_cols[0].empty()
        blink_display = metric_cols[1].empty()
        last_blink_display = metric_cols[2].empty()
        ear_display = st.empty()

        st.subheader("📡 Current Morse")
        morse_display = st.empty()
        gap_display = st.empty()

        st.subheader("📝 Messages")
        messages_display = st.empty()

    # Reference tables
    with st.expander("📖 Morse Code Reference"):
        chart = morse_chart()
        ref_cols = st.columns(3)
        for col, group in zip(ref_cols, ['letters', 'numbers', 'punctuation']):
            with col:
                st.markdown(f"**{group.title()}**")
                for char, code in chart[group]:
                    st.text(f"{char}: {code}")

    with st.expander("🚨 Emergency Codes (hold ≥ 0.9 s, then two blinks)"):
        for row in emergency_codes():
            st.markdown(f"`Hold + {row['combo']}` **{row['code'].replace('_', ' ')}** "
                        f"- {row['description']}")

    # Initialize system
    if st.session_state.system is None:
        try:
            st.session_state.system = MorseVisionSystem(defaults)
        except Exception as e:
            st.error(f"Failed to initialize landmark model: {e}")
            return

    system = st.session_state.system

    system.session.update_config(
        dot_duration_ms=dot_ms,
        dash_duration_ms=dash_ms,
        letter_gap_ms=letter_gap,
        word_gap_ms=word_gap,
    )

    if st.session_state.start_calibration_flag:
        system.session.begin_calibration()
        st.session_state.calibration = None
        st.session_state.start_calibration_flag = False

    if st.session_state.clear_messages_flag:
        system.session.clear_messages()
        st.session_state.clear_messages_flag = False

    # Video processing with while loop (no flickering)
    if st.session_state.is_running:
        cap = cv2.VideoCapture(0)
        cap.set(cv2.CAP_PROP_FRAME_WIDTH, 640)
        cap.set(cv2.CAP_PROP_FRAME_HEIGHT, 480)
        cap.set(cv2.CAP_PROP_FPS, system.config.target_fps)
        cap.set(cv2.CAP_PROP_BUFFERSIZE, 1)  # Minimize buffer for real-time

        if cap.isOpened():
            system.session.start()
            try:
                while st.session_state.is_running:
                    ret, frame = cap.read()

                    if not ret:
                        st.error("Failed to capture frame from webcam")
                        break

                    # Flip frame horizontally for mirror effect
                    frame = cv2.flip(frame, 1)

                    annotated_frame, results = system.process_frame(frame)

                    # Calibration finishes once the sample buffer is full
                    if results['is_calibrating'] and results['calibration_progress'] >= 100:
                        calibration = system.session.end_calibration()
                        if calibration is not None:
                            st.session_state.calibration = calibration
                            results['is_calibrating'] = False
                            results['ear_threshold'] = calibration.threshold

                    display_frame = cv2.cvtColor(annotated_frame, cv2.COLOR_BGR2RGB)
                    video_placeholder.image(display_frame, channels="RGB", use_container_width=True)

                    timer_display.metric("Session", results['session_timer'])
                    blink_display.metric("Blinks", results['blink_count'])
                    last_blink_display.metric("Last Blink", results['last_blink'])

                    if results['ear'] is not None:
                        ear_display.metric("EAR / Threshold",
                                           f"{results['ear']:.3f} / {results['ear_threshold']:.3f}")
                    else:
                        ear_display.metric("EAR / Threshold", "---")

                    if results['emergency_armed']:
                        morse_display.error(
                            f"🚨 Emergency mode: {results['emergency_sequence'] or '_'}"
                        )
                    elif results['morse_sequence'] or results['current_word']:
                        morse_display.code(
                            f"{results['current_word']} {results['morse_sequence']}".strip(),
                            language=None,
                        )
                    else:
                        morse_display.info("Waiting for blinks...")

                    symbol = results['last_symbol']
                    last_label = "--"
                    if symbol is not None:
                        last_label = (f"{'DOT ·' if symbol is BlinkType.DOT else 'DASH –'} "
                                      f"({results['last_blink_duration_ms']} ms)")
                    gap_display.caption(
                        f"Gap window: {results['gap_window'].value.upper()} | Last: {last_label}"
                    )

                    render_messages(messages_display, results['messages'])
                    render_calibration_status(cal_status, results, st.session_state.calibration)

                    # Small delay to control frame rate
                    time.sleep(0.001)

            except Exception as e:
                st.error(f"Error: {e}")
            finally:
                system.session.stop()
                cap.release()
        else:
            st.error("Camera not available")
            st.session_state.is_running = False
    else:
        results = system.session.snapshot(current_time_ms())
        video_placeholder.info("👆 Click 'Start Session' to begin")
        timer_display.metric("Session", "00:00")
        blink_display.metric("Blinks", results['blink_count'])
        last_blink_display.metric("Last Blink", results['last_blink'])
        ear_display.metric("EAR / Threshold", f"--- / {results['ear_threshold']:.3f}")
        morse_display.info("Waiting for input...")
        gap_display.caption(f"Gap window: {GapWindow.SYMBOL.value.upper()}")
        render_messages(messages_display, results['messages'])
        render_calibration_status(cal_status, results, st.session_state.calibration)


# =============================================================================
# ENTRY POINT
# =============================================================================

if __name__ == "__main__":
    configure_logging(os.getenv("MORSEVISION_LOG_LEVEL", "INFO"))
    # Check if running in Streamlit context
    try:
        # This will work when running with `streamlit run`
        create_streamlit_app()
    except Exception as e:
        print(f"Error: {e}")
        print("\nTo run the application, use:")
        print("  streamlit run morsevision_app.py")
