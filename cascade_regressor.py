"""
Cascaded-regression landmark detection.

A cascade regressor refines an initial landmark estimate through a fixed
number of learned stages. Every stage samples image features around the
current estimate and predicts an additive displacement for each landmark
(supervised descent). The tracker only relies on the `CascadeRegressor`
contract: deterministic, schema-preserving, read-only on the image and of
bounded cost per call.

License: MIT
"""

import numpy as np
from typing import Dict, List, Optional, Sequence, Type
from dataclasses import dataclass
from abc import ABC, abstractmethod
from pathlib import Path
import logging
import zipfile
import cv2

from landmark_geometry import (
    LandmarkCollection, Rect, enclosing_bounding_box, seed_from_face_region
)

logger = logging.getLogger(__name__)


# 9-point canonical face (normalized, nose-centered, y down):
# eye corners (4), nose tip (1), mouth corners (2), eyebrow centers (2)
CANONICAL_LANDMARK_IDS = (
    'left_eye_outer', 'left_eye_inner', 'right_eye_inner', 'right_eye_outer',
    'nose_tip', 'mouth_left', 'mouth_right',
    'left_eyebrow_center', 'right_eyebrow_center',
)

CANONICAL_MEAN_POINTS = np.array([
    [-0.165, -0.062],
    [-0.050, -0.062],
    [0.050, -0.062],
    [0.165, -0.062],
    [0.0, 0.0],
    [-0.092, 0.095],
    [0.092, 0.095],
    [-0.115, -0.115],
    [0.115, -0.115],
])


def canonical_mean_shape() -> LandmarkCollection:
    """Mean shape of the built-in 9-point face model."""
    return LandmarkCollection(CANONICAL_LANDMARK_IDS, CANONICAL_MEAN_POINTS.copy())


class ModelLoadError(IOError):
    """Raised when a regression model cannot be read or is malformed."""


def _to_gray(image: np.ndarray) -> np.ndarray:
    """Grayscale uint8 copy of a BGR or single-channel image."""
    if image.ndim == 3:
        gray = cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)
    else:
        gray = image.copy()
    if gray.dtype != np.uint8:
        gray = cv2.convertScaleAbs(gray)
    return gray


class FeatureExtractor(ABC):
    """
    Samples a fixed-length feature vector around each landmark.

    Patches are square, centered on the landmark, with a side of
    `patch_scale` times the larger side of the current estimate's bounding box,
    resampled to `resolution` x `resolution` pixels.
    """

    name = 'base'

    def __init__(self, patch_scale: float = 0.25, resolution: int = 16):
        if patch_scale <= 0:
            raise ValueError("patch_scale must be positive")
        if resolution < 2:
            raise ValueError("resolution must be at least 2")
        self.patch_scale = patch_scale
        self.resolution = resolution

    def _patches(self, gray: np.ndarray, landmarks: LandmarkCollection) -> List[np.ndarray]:
        box = enclosing_bounding_box(landmarks)
        side = max(2, int(round(self.patch_scale * max(box.width, box.height))))
        patches = []
        for x, y in landmarks.points:
            patch = cv2.getRectSubPix(gray, (side, side), (float(x), float(y)))
            patches.append(cv2.resize(patch, (self.resolution, self.resolution),
                                      interpolation=cv2.INTER_LINEAR))
        return patches

    def extract(self, image: np.ndarray, landmarks: LandmarkCollection) -> np.ndarray:
        """
        Compute features for all landmarks.

        Args:
            image: BGR or grayscale image (not modified)
            landmarks: Current landmark estimate

        Returns:
            1-D feature vector of length `feature_length(len(landmarks))`
        """
        gray = _to_gray(image)
        return np.concatenate([
            self._describe(patch) for patch in self._patches(gray, landmarks)
        ])

    @abstractmethod
    def _describe(self, patch: np.ndarray) -> np.ndarray:
        pass

    @abstractmethod
    def feature_length(self, num_landmarks: int) -> int:
        pass


class HogFeatureExtractor(FeatureExtractor):
    """Histogram-of-oriented-gradients descriptor per landmark patch."""

    name = 'hog'

    def __init__(self, patch_scale: float = 0.25, resolution: int = 16,
                 cell_size: int = 8, num_bins: int = 9):
        super().__init__(patch_scale, resolution)
        if resolution % cell_size != 0:
            raise ValueError("resolution must be a multiple of cell_size")
        self.cell_size = cell_size
        self.num_bins = num_bins
        self.hog = cv2.HOGDescriptor(
            (resolution, resolution),
            (cell_size, cell_size),
            (cell_size // 2, cell_size // 2),
            (cell_size, cell_size),
            num_bins
        )

    def _describe(self, patch: np.ndarray) -> np.ndarray:
        return np.asarray(self.hog.compute(patch), dtype=np.float64).ravel()

    def feature_length(self, num_landmarks: int) -> int:
        return int(self.hog.getDescriptorSize()) * num_landmarks


class PatchIntensityFeatureExtractor(FeatureExtractor):
    """Zero-mean, unit-variance raw intensities per landmark patch."""

    name = 'patch'

    def _describe(self, patch: np.ndarray) -> np.ndarray:
        values = patch.astype(np.float64).ravel()
        return (values - values.mean()) / (values.std() + 1e-6)

    def feature_length(self, num_landmarks: int) -> int:
        return self.resolution * self.resolution * num_landmarks


FEATURE_EXTRACTORS: Dict[str, Type[FeatureExtractor]] = {
    HogFeatureExtractor.name: HogFeatureExtractor,
    PatchIntensityFeatureExtractor.name: PatchIntensityFeatureExtractor,
}


def create_feature_extractor(name: str, **kwargs) -> FeatureExtractor:
    """Instantiate a feature extractor by name."""
    if name not in FEATURE_EXTRACTORS:
        raise ValueError(f"Unknown feature type: {name}. "
                         f"Available: {list(FEATURE_EXTRACTORS.keys())}")
    return FEATURE_EXTRACTORS[name](**kwargs)


class CascadeRegressor(ABC):
    """Landmark regression model as seen by the tracker."""

    @property
    @abstractmethod
    def mean_shape(self) -> LandmarkCollection:
        """Canonical mean landmarks (read-only)."""
        pass

    @abstractmethod
    def detect(self, image: np.ndarray, seed: LandmarkCollection) -> LandmarkCollection:
        """Refine `seed` on `image`. Never mutates the image or the seed."""
        pass

    @property
    def landmark_ids(self):
        return self.mean_shape.ids

    @property
    def num_landmarks(self) -> int:
        return len(self.mean_shape)

    def detect_in_region(self, image: np.ndarray, face_rect: Rect) -> LandmarkCollection:
        """Seed from the mean shape aligned into `face_rect`, then refine."""
        return self.detect(image, seed_from_face_region(self.mean_shape, face_rect))


@dataclass
class RegressionStage:
    """One linear stage: (F + 1) x 2N weights, the last row is the bias."""
    weights: np.ndarray

    def predict(self, features: np.ndarray) -> np.ndarray:
        """Displacement for every landmark, N x 2 (in mean-shape units)."""
        if len(features) + 1 != self.weights.shape[0]:
            raise ValueError(
                f"Stage expects {self.weights.shape[0] - 1} features, "
                f"got {len(features)}"
            )
        update = np.append(features, 1.0) @ self.weights
        return update.reshape(-1, 2)


class SupervisedDescentRegressor(CascadeRegressor):
    """
    Linear cascaded regression (supervised descent method).

    Displacements are predicted in mean-shape units and scaled by the ratio
    of the current estimate's box width to the mean shape's box width, so a
    model applies to faces of any size.
    """

    def __init__(
        self,
        mean_shape: LandmarkCollection,
        stages: Sequence[RegressionStage],
        feature_extractor: Optional[FeatureExtractor] = None
    ):
        mean_box = enclosing_bounding_box(mean_shape)
        if mean_box.width == 0 or mean_box.height == 0:
            raise ValueError("Mean shape has a degenerate bounding box")

        self._mean_shape = mean_shape.copy()
        self._mean_shape.points.setflags(write=False)
        self.stages = list(stages)
        self.feature_extractor = feature_extractor or HogFeatureExtractor()

        n_coords = 2 * len(mean_shape)
        expected_rows = self.feature_extractor.feature_length(len(mean_shape)) + 1
        for i, stage in enumerate(self.stages):
            if stage.weights.shape != (expected_rows, n_coords):
                raise ValueError(
                    f"Stage {i} weights have shape {stage.weights.shape}, "
                    f"expected {(expected_rows, n_coords)}"
                )

        self._mean_width = mean_box.width

    @property
    def mean_shape(self) -> LandmarkCollection:
        return self._mean_shape

    def _scale(self, landmarks: LandmarkCollection) -> float:
        width = enclosing_bounding_box(landmarks).width
        if width == 0:
            return 1.0
        return width / self._mean_width

    def detect(self, image: np.ndarray, seed: LandmarkCollection) -> LandmarkCollection:
        """
        Run every stage on the current estimate.

        Args:
            image: BGR or grayscale frame
            seed: Initial estimate with the model's landmark schema

        Returns:
            Refined landmarks in image coordinates
        """
        if len(seed) != self.num_landmarks:
            raise ValueError(
                f"Seed has {len(seed)} landmarks, model expects {self.num_landmarks}"
            )

        current = seed.points.copy()
        for stage in self.stages:
            estimate = seed.with_points(current)
            features = self.feature_extractor.extract(image, estimate)
            current = current + stage.predict(features) * self._scale(estimate)

        return seed.with_points(current)


class MockCascadeRegressor(CascadeRegressor):
    """
    Deterministic stand-in for a trained model, for demos and testing.

    Each stage moves the estimate `step` of the way towards the mean shape
    aligned into the estimate's own bounding box. The image is ignored.
    """

    def __init__(self, mean_shape: Optional[LandmarkCollection] = None,
                 n_stages: int = 4, step: float = 0.5):
        if mean_shape is None:
            mean_shape = canonical_mean_shape()
        self._mean_shape = mean_shape.copy()
        self.n_stages = n_stages
        self.step = step

    @property
    def mean_shape(self) -> LandmarkCollection:
        return self._mean_shape

    def detect(self, image: np.ndarray, seed: LandmarkCollection) -> LandmarkCollection:
        current = seed.points.copy()
        for _ in range(self.n_stages):
            box = enclosing_bounding_box(seed.with_points(current))
            if box.width == 0 or box.height == 0:
                break
            target = seed_from_face_region(self._mean_shape, box).points
            current = current + self.step * (target - current)
        return seed.with_points(current)


def save_regression_model(model: SupervisedDescentRegressor, path: str):
    """Write a model as a NumPy .npz archive."""
    extractor = model.feature_extractor
    arrays = {
        'landmark_ids': np.array(model.landmark_ids),
        'mean_shape': np.asarray(model.mean_shape.points),
        'feature_type': np.array(extractor.name),
        'patch_scale': np.array(extractor.patch_scale),
        'patch_resolution': np.array(extractor.resolution),
        'num_stages': np.array(len(model.stages)),
    }
    if isinstance(extractor, HogFeatureExtractor):
        arrays['hog_cell_size'] = np.array(extractor.cell_size)
        arrays['hog_num_bins'] = np.array(extractor.num_bins)
    for i, stage in enumerate(model.stages):
        arrays[f'stage_{i}'] = stage.weights
    np.savez(path, **arrays)
    logger.info(f"Saved model with {len(model.stages)} stages to {path}")


def load_regression_model(path: str) -> SupervisedDescentRegressor:
    """
    Load a model written by `save_regression_model`.

    Raises:
        ModelLoadError: file missing, unreadable or malformed
    """
    path = Path(path)
    if not path.is_file():
        raise ModelLoadError(f"Model file not found: {path}")

    try:
        with np.load(path, allow_pickle=False) as data:
            ids = [str(i) for i in data['landmark_ids']]
            mean_shape = LandmarkCollection(ids, data['mean_shape'])
            feature_type = str(data['feature_type'])
            options = {
                'patch_scale': float(data['patch_scale']),
                'resolution': int(data['patch_resolution']),
            }
            if feature_type == HogFeatureExtractor.name:
                options['cell_size'] = int(data['hog_cell_size'])
                options['num_bins'] = int(data['hog_num_bins'])
            extractor = create_feature_extractor(feature_type, **options)
            stages = [
                RegressionStage(np.asarray(data[f'stage_{i}'], dtype=np.float64))
                for i in range(int(data['num_stages']))
            ]
        model = SupervisedDescentRegressor(mean_shape, stages, extractor)
    except (OSError, KeyError, ValueError, TypeError, AttributeError,
            zipfile.BadZipFile) as e:
        raise ModelLoadError(f"Error reading the model {path}: {e}") from e

    logger.info(f"Loaded model {path}: {model.num_landmarks} landmarks, "
                f"{len(stages)} stages, {extractor.name} features")
    return model
