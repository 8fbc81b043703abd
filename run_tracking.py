"""
Real-time facial landmark tracking on a video or camera stream.

Loads a cascaded-regression landmark model and an OpenCV cascade face
detector, detects a face once and then tracks its landmarks from frame to
frame, falling back to detection when tracking degrades.

Usage:
    python run_tracking.py -f haarcascade_frontalface_alt2.xml -m model.npz
    python run_tracking.py -f haarcascade_frontalface_alt2.xml -i video.mp4
    python run_tracking.py --demo --no-display  # Synthetic frames, mock model

License: MIT
"""

import argparse
import itertools
import logging
import sys
from typing import Iterator, List, Optional

import cv2
import numpy as np

from landmark_geometry import Rect
from cascade_regressor import (
    MockCascadeRegressor, ModelLoadError, load_regression_model
)
from face_detector import (
    DetectorLoadError, HaarCascadeFaceDetector, ScriptedFaceDetector
)
from landmark_tracker import (
    FrameResult, LandmarkTracker, TrackerConfig, TrackingPhase, TrackingSession
)
from tracking_evaluation import TrackingEvaluator

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "data/rcr/face_landmarks_model_rcr_22.npz"
WINDOW_NAME = "video"


class FrameSourceError(IOError):
    """Raised when a video file or camera cannot be opened."""


def open_capture(source: Optional[str] = None) -> cv2.VideoCapture:
    """Open a video file, or camera 0 when no file is given."""
    cap = cv2.VideoCapture(0) if source is None else cv2.VideoCapture(source)
    if not cap.isOpened():
        raise FrameSourceError(
            f"Couldn't open {'camera 0' if source is None else source}"
        )
    return cap


def video_frames(capture) -> Iterator[np.ndarray]:
    """Yield frames until a read fails or an empty frame is returned."""
    while True:
        ret, frame = capture.read()
        if not ret or frame is None or frame.size == 0:
            break
        yield frame


def synthetic_frames(
    n_frames: int,
    face: Rect,
    size=(480, 640)
) -> Iterator[np.ndarray]:
    """Gray frames with a bright ellipse where the face would be."""
    for _ in range(n_frames):
        frame = np.full((size[0], size[1], 3), 40, dtype=np.uint8)
        cx, cy = face.center
        cv2.ellipse(frame, (int(cx), int(cy)),
                    (int(face.width / 2), int(face.height / 2)),
                    0, 0, 360, (180, 180, 180), -1)
        yield frame


def draw_overlay(frame: np.ndarray, result: FrameResult) -> np.ndarray:
    """Copy of the frame with face region, landmarks and phase drawn."""
    vis = frame.copy()

    if result.face_region is not None:
        x, y, w, h = result.face_region.as_int_tuple()
        cv2.rectangle(vis, (x, y), (x + w, y + h), (255, 0, 0))

    if result.landmarks is not None:
        for x, y in result.landmarks.points:
            cv2.circle(vis, (int(round(x)), int(round(y))), 2, (0, 255, 0), -1)

    color = (0, 255, 0) if result.phase is TrackingPhase.TRACKING else (0, 0, 255)
    cv2.putText(vis, result.phase.value, (10, 25),
                cv2.FONT_HERSHEY_SIMPLEX, 0.6, color, 2)
    return vis


def build_demo(n_frames: int):
    """Mock model, scripted detector and synthetic frames."""
    face = Rect(220, 140, 200, 200)
    detector = ScriptedFaceDetector([[], [], []], default=[face])
    return MockCascadeRegressor(), detector, synthetic_frames(n_frames, face)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Facial landmark tracking with cascaded regression",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    python run_tracking.py -f haarcascade_frontalface_alt2.xml
    python run_tracking.py -f haarcascade_frontalface_alt2.xml -i video.mp4 --recenter
    python run_tracking.py --demo --no-display
        """
    )

    parser.add_argument('-f', '--facedetector', type=str,
                        help="full path to OpenCV's face detector "
                             "(haarcascade_frontalface_alt2.xml)")
    parser.add_argument('-m', '--model', type=str, default=DEFAULT_MODEL,
                        help='learned landmark detection model')
    parser.add_argument('-i', '--input', type=str,
                        help='input video file. If not specified, camera 0 will be used.')
    parser.add_argument('--recenter', action='store_true',
                        help='re-align the mean shape into the last landmarks when tracking')
    parser.add_argument('--redetect-on-loss', action='store_true',
                        help='run the face detector on the frame where tracking was lost')
    parser.add_argument('--max-frames', type=int,
                        help='stop after this many frames')
    parser.add_argument('--demo', action='store_true',
                        help='run on synthetic frames with a mock model')
    parser.add_argument('--no-display', action='store_true',
                        help='do not open a window')
    parser.add_argument('-v', '--verbose', action='store_true',
                        help='log per-frame timings')

    args = parser.parse_args(argv)
    if not args.demo and not args.facedetector:
        parser.error("--facedetector is required unless --demo is given")
    return args


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    args = parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    config = TrackerConfig(
        recenter_on_track=args.recenter,
        redetect_on_loss=args.redetect_on_loss
    )

    capture = None
    if args.demo:
        regressor, detector, frames = build_demo(args.max_frames or 100)
    else:
        try:
            regressor = load_regression_model(args.model)
            detector = HaarCascadeFaceDetector(args.facedetector)
            capture = open_capture(args.input)
        except (ModelLoadError, DetectorLoadError, FrameSourceError) as e:
            logger.error(str(e))
            return 1
        frames = video_frames(capture)

    if args.max_frames is not None:
        frames = itertools.islice(frames, args.max_frames)

    session = TrackingSession(LandmarkTracker(regressor, detector, config))
    results: List[FrameResult] = []

    try:
        for frame in frames:
            result = session.process(frame)
            results.append(result)

            if not args.no_display:
                cv2.imshow(WINDOW_NAME, draw_overlay(frame, result))
                if cv2.waitKey(30) >= 0:
                    break
    except KeyboardInterrupt:
        logger.info("Interrupted")
    finally:
        if capture is not None:
            capture.release()
        if not args.no_display:
            cv2.destroyAllWindows()

    stats = TrackingEvaluator().summarize(results)
    logger.info(
        f"{stats.n_frames} frames, landmarks in {stats.landmark_rate:.0%}, "
        f"tracked {stats.tracked_fraction:.0%}, "
        f"{stats.n_detector_calls} detector calls, {stats.n_losses} losses"
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
