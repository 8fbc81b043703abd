import os

import cv2
import numpy as np
import pytest

from landmark_geometry import Rect
from face_detector import (
    DetectorLoadError, HaarCascadeFaceDetector, ScriptedFaceDetector, order_by_area
)


FRONTAL_FACE_CASCADE = os.path.join(
    getattr(getattr(cv2, 'data', None), 'haarcascades', ''),
    'haarcascade_frontalface_alt2.xml'
)

needs_cascade = pytest.mark.skipif(
    not os.path.isfile(FRONTAL_FACE_CASCADE),
    reason="OpenCV cascade data not installed"
)


class TestScriptedFaceDetector:

    def test_replays_script_then_default(self, frame):
        face = Rect(10, 10, 100, 100)
        detector = ScriptedFaceDetector([[], [face]], default=[Rect(0, 0, 5, 5)])

        assert detector.detect_faces(frame) == []
        assert detector.detect_faces(frame) == [face]
        assert detector.detect_faces(frame) == [Rect(0, 0, 5, 5)]
        assert detector.calls == 3

    def test_empty_after_script(self, frame):
        detector = ScriptedFaceDetector([[Rect(1, 2, 3, 4)]])
        detector.detect_faces(frame)
        assert detector.detect_faces(frame) == []


class TestHaarCascadeFaceDetector:

    def test_missing_cascade(self, tmp_path):
        with pytest.raises(DetectorLoadError):
            HaarCascadeFaceDetector(str(tmp_path / 'nope.xml'))

    def test_unreadable_cascade(self, tmp_path):
        path = tmp_path / 'broken.xml'
        path.write_text('<opencv_storage><cascade>broken')
        with pytest.raises(DetectorLoadError):
            HaarCascadeFaceDetector(str(path))

    @needs_cascade
    def test_blank_frame_has_no_faces(self, frame):
        detector = HaarCascadeFaceDetector(FRONTAL_FACE_CASCADE)
        assert detector.detect_faces(frame) == []

    @needs_cascade
    def test_detections_come_back_largest_first(self, frame):
        detector = HaarCascadeFaceDetector(FRONTAL_FACE_CASCADE)

        class FakeCascade:
            def detectMultiScale(self, gray, **kwargs):
                assert gray.ndim == 2
                return np.array([[0, 0, 60, 60], [50, 40, 120, 120], [5, 5, 80, 80]])

        detector.cascade = FakeCascade()
        assert [f.width for f in detector.detect_faces(frame)] == [120, 80, 60]


class TestOrderByArea:

    def test_largest_first(self):
        faces = order_by_area(np.array([[0, 0, 60, 60], [50, 40, 120, 120], [5, 5, 80, 80]]))
        assert [f.width for f in faces] == [120, 80, 60]
        assert faces[0] == Rect(50, 40, 120, 120)

    def test_area_not_width(self):
        faces = order_by_area([(0, 0, 100, 10), (0, 0, 40, 40)])
        assert faces == [Rect(0, 0, 40, 40), Rect(0, 0, 100, 10)]

    def test_no_detections(self):
        assert order_by_area(()) == []


class TestOpenCVApi:

    def test_detector_and_descriptor_classes_available(self):
        assert int(cv2.__version__.split('.')[0]) == 4
        assert hasattr(cv2, 'CascadeClassifier')
        assert hasattr(cv2, 'HOGDescriptor')
