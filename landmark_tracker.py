"""
Frame-by-frame facial landmark tracking.

The tracker runs a two-state machine per video stream:

    SEARCHING  --face found-->      TRACKING
    TRACKING   --continuation ok--> TRACKING
    TRACKING   --continuation fails--> SEARCHING

While searching, the face detector is run on the whole frame and the
cascade regressor is seeded with the mean shape placed in the first face
region. While tracking, the previous frame's landmarks seed the regressor
directly and the detector is not run. A continuation predicate compares the
landmark bounding boxes of consecutive frames and ends tracking when the
result drifts implausibly.

Per-stream state lives in an explicit `TrackingState` value, so a single
`LandmarkTracker` (and its model) can serve any number of streams.

Example usage:
    tracker = LandmarkTracker(load_regression_model(path),
                              HaarCascadeFaceDetector(cascade))
    session = TrackingSession(tracker)
    for result in session.run(frames):
        if result.has_landmarks:
            draw(result.landmarks)

License: MIT
"""

import numpy as np
from typing import Callable, Iterable, Iterator, Optional, Tuple
from dataclasses import dataclass
from enum import Enum
import logging
import math
import time

from landmark_geometry import (
    LandmarkCollection, Rect, enclosing_bounding_box,
    seed_from_face_region, seed_from_previous
)
from cascade_regressor import CascadeRegressor
from face_detector import FaceDetector

logger = logging.getLogger(__name__)


ContinuationPredicate = Callable[[Rect, Rect], bool]


@dataclass
class TrackerConfig:
    """Configuration parameters for the landmark tracker."""

    # Continuation predicate tolerances (previous box vs. current box)
    max_area_ratio: float = 1.8  # allowed growth/shrink factor of box area
    max_aspect_change: float = 0.35  # relative change of width/height
    max_center_shift: float = 0.5  # center motion, in previous box widths
    min_face_size: float = 20.0  # minimum landmark box width (pixels)

    # Seeding while tracking
    recenter_on_track: bool = False

    # Run the face detector on the same frame when tracking is lost
    redetect_on_loss: bool = False


class TrackingPhase(Enum):
    SEARCHING = 'searching'
    TRACKING = 'tracking'


class LandmarkSchemaError(ValueError):
    """The regressor returned landmarks that do not match the model schema."""


@dataclass(frozen=True)
class TrackingState:
    """Per-stream tracker state carried from one frame to the next."""
    is_tracking: bool = False
    current_landmarks: Optional[LandmarkCollection] = None

    def __post_init__(self):
        if self.is_tracking and self.current_landmarks is None:
            raise ValueError("A tracking state needs current landmarks")
        if not self.is_tracking and self.current_landmarks is not None:
            raise ValueError("A searching state carries no landmarks")

    @classmethod
    def initial(cls) -> "TrackingState":
        return cls()

    @property
    def phase(self) -> TrackingPhase:
        return TrackingPhase.TRACKING if self.is_tracking else TrackingPhase.SEARCHING


@dataclass
class FrameResult:
    """Tracker output for a single frame."""
    frame_index: int
    landmarks: Optional[LandmarkCollection]  # None: no landmarks this frame
    phase_before: TrackingPhase
    phase: TrackingPhase  # phase the next frame starts in
    face_region: Optional[Rect] = None
    detector_invoked: bool = False
    continuation_passed: Optional[bool] = None  # None: no check this frame
    rejected_landmarks: Optional[LandmarkCollection] = None
    detection_time_ms: float = 0.0
    regression_time_ms: float = 0.0
    processing_time_ms: float = 0.0

    @property
    def has_landmarks(self) -> bool:
        return self.landmarks is not None

    @property
    def tracking_lost(self) -> bool:
        return self.continuation_passed is False


class BoundingBoxContinuity:
    """
    Default continuation predicate.

    Tracking continues while the landmarks' bounding box keeps a plausible
    size, shape and position relative to the previous frame's box.
    """

    def __init__(self, config: Optional[TrackerConfig] = None):
        self.config = config or TrackerConfig()

    def __call__(self, previous: Rect, current: Rect) -> bool:
        cfg = self.config

        if previous.area <= 0 or current.area <= 0:
            return False
        if current.width < cfg.min_face_size:
            return False

        area_ratio = current.area / previous.area
        if not (1.0 / cfg.max_area_ratio <= area_ratio <= cfg.max_area_ratio):
            return False

        aspect_change = abs(current.aspect_ratio / previous.aspect_ratio - 1.0)
        if aspect_change > cfg.max_aspect_change:
            return False

        (px, py), (cx, cy) = previous.center, current.center
        if math.hypot(cx - px, cy - py) > cfg.max_center_shift * previous.width:
            return False

        return True


class LandmarkTracker:
    """
    Detect-once, track-thereafter landmark tracker.

    Holds the shared, read-only collaborators; all per-stream state is
    passed in and returned by `process`.
    """

    def __init__(
        self,
        regressor: CascadeRegressor,
        face_detector: FaceDetector,
        config: Optional[TrackerConfig] = None,
        continuation: Optional[ContinuationPredicate] = None
    ):
        self.regressor = regressor
        self.face_detector = face_detector
        self.config = config or TrackerConfig()
        self.continuation = continuation or BoundingBoxContinuity(self.config)

    def _regress(self, frame: np.ndarray, seed: LandmarkCollection) -> LandmarkCollection:
        landmarks = self.regressor.detect(frame, seed)
        if landmarks.ids != self.regressor.landmark_ids:
            raise LandmarkSchemaError(
                f"Regressor returned {len(landmarks)} landmarks, "
                f"model schema has {self.regressor.num_landmarks}"
            )
        return landmarks

    def _continues(self, previous: LandmarkCollection, current: LandmarkCollection) -> bool:
        return bool(self.continuation(enclosing_bounding_box(previous),
                                      enclosing_bounding_box(current)))

    def process(
        self,
        frame: np.ndarray,
        state: TrackingState,
        frame_index: int = 0
    ) -> Tuple[FrameResult, TrackingState]:
        """
        Process a single frame.

        Args:
            frame: BGR input frame
            state: State produced by the previous frame
            frame_index: Index reported in the result

        Returns:
            (FrameResult, TrackingState for the next frame)
        """
        start_time = time.perf_counter()
        phase_before = state.phase

        tracking = state.is_tracking
        landmarks = None
        face_region = None
        detector_invoked = False
        continuation_passed = None
        rejected = None
        t_fd = 0.0
        t_fit = 0.0

        # Tracking: seed from the previous frame
        if tracking:
            mean_shape = self.regressor.mean_shape if self.config.recenter_on_track else None
            seed = seed_from_previous(state.current_landmarks, mean_shape)

            t0 = time.perf_counter()
            refined = self._regress(frame, seed)
            t_fit += (time.perf_counter() - t0) * 1000

            continuation_passed = self._continues(state.current_landmarks, refined)
            if continuation_passed:
                landmarks = refined
            else:
                rejected = refined
                tracking = False
                logger.info(f"Frame {frame_index}: tracking lost, back to face detection")

        # Searching: full-frame face detection, seed from the mean shape
        if not tracking and (phase_before is TrackingPhase.SEARCHING
                             or self.config.redetect_on_loss):
            t0 = time.perf_counter()
            faces = self.face_detector.detect_faces(frame)
            t_fd = (time.perf_counter() - t0) * 1000
            detector_invoked = True

            if faces:
                face_region = faces[0]
                t0 = time.perf_counter()
                landmarks = self._regress(
                    frame, seed_from_face_region(self.regressor.mean_shape, face_region)
                )
                t_fit += (time.perf_counter() - t0) * 1000
                tracking = True
                logger.info(f"Frame {frame_index}: face acquired at {face_region.as_int_tuple()}")

        logger.debug(f"Frame {frame_index}: FD: {t_fd:.1f} ms\tLM: {t_fit:.1f} ms")

        next_state = TrackingState(is_tracking=tracking,
                                   current_landmarks=landmarks if tracking else None)

        result = FrameResult(
            frame_index=frame_index,
            landmarks=landmarks,
            phase_before=phase_before,
            phase=next_state.phase,
            face_region=face_region,
            detector_invoked=detector_invoked,
            continuation_passed=continuation_passed,
            rejected_landmarks=rejected,
            detection_time_ms=t_fd,
            regression_time_ms=t_fit,
            processing_time_ms=(time.perf_counter() - start_time) * 1000
        )
        return result, next_state


class TrackingSession:
    """Tracks one video stream, owning its state and frame counter."""

    def __init__(self, tracker: LandmarkTracker):
        self.tracker = tracker
        self.state = TrackingState.initial()
        self.frame_index = 0

    @property
    def phase(self) -> TrackingPhase:
        return self.state.phase

    def process(self, frame: np.ndarray) -> FrameResult:
        result, self.state = self.tracker.process(frame, self.state, self.frame_index)
        self.frame_index += 1
        return result

    def run(self, frames: Iterable[Optional[np.ndarray]]) -> Iterator[FrameResult]:
        """Process frames until the sequence ends or yields an empty frame."""
        for frame in frames:
            if frame is None or frame.size == 0:
                break
            yield self.process(frame)

    def reset(self):
        """Forget the tracked face and restart frame numbering."""
        self.state = TrackingState.initial()
        self.frame_index = 0
