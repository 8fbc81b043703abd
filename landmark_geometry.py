"""
Landmark geometry: rectangles, landmark collections and the mappings
between a detected face region and the regressor's canonical mean shape.

All coordinates are image pixel coordinates (x to the right, y down).

License: MIT
"""

import numpy as np
from typing import Iterator, Optional, Sequence, Tuple
from dataclasses import dataclass


@dataclass
class Rect:
    """Axis-aligned rectangle in image space."""
    x: float
    y: float
    width: float
    height: float

    def __post_init__(self):
        if self.width < 0 or self.height < 0:
            raise ValueError(
                f"Rect width/height must be non-negative, got "
                f"{self.width} x {self.height}"
            )

    @classmethod
    def from_xywh(cls, xywh: Sequence[float]) -> "Rect":
        """Build from an (x, y, w, h) row as returned by OpenCV detectors."""
        x, y, w, h = xywh
        return cls(float(x), float(y), float(w), float(h))

    @property
    def area(self) -> float:
        return self.width * self.height

    @property
    def aspect_ratio(self) -> float:
        """Width over height, 0 for a zero-height rectangle."""
        return self.width / self.height if self.height > 0 else 0.0

    @property
    def center(self) -> Tuple[float, float]:
        return self.x + self.width / 2.0, self.y + self.height / 2.0

    def as_int_tuple(self) -> Tuple[int, int, int, int]:
        return (int(round(self.x)), int(round(self.y)),
                int(round(self.width)), int(round(self.height)))


@dataclass(frozen=True)
class Landmark:
    """A single named landmark."""
    name: str
    x: float
    y: float


class LandmarkCollection:
    """
    Ordered set of named 2D landmarks sharing one coordinate frame.

    The identifier order is the model's anatomical ordering; points are
    stored as an N x 2 float array.
    """

    def __init__(self, ids: Sequence[str], points: np.ndarray):
        points = np.asarray(points, dtype=np.float64)
        if points.ndim != 2 or points.shape[1] != 2:
            raise ValueError(f"Expected N x 2 points, got shape {points.shape}")
        if len(ids) != len(points):
            raise ValueError(
                f"{len(ids)} landmark ids for {len(points)} points"
            )
        self.ids: Tuple[str, ...] = tuple(str(i) for i in ids)
        self.points = points

    @classmethod
    def from_landmarks(cls, landmarks: Sequence[Landmark]) -> "LandmarkCollection":
        return cls(
            [lm.name for lm in landmarks],
            np.array([[lm.x, lm.y] for lm in landmarks], dtype=np.float64).reshape(-1, 2)
        )

    def __len__(self) -> int:
        return len(self.ids)

    def __iter__(self) -> Iterator[Landmark]:
        for name, (x, y) in zip(self.ids, self.points):
            yield Landmark(name, float(x), float(y))

    def __getitem__(self, name: str) -> Landmark:
        try:
            idx = self.ids.index(name)
        except ValueError:
            raise KeyError(name)
        x, y = self.points[idx]
        return Landmark(name, float(x), float(y))

    def __eq__(self, other) -> bool:
        if not isinstance(other, LandmarkCollection):
            return NotImplemented
        return self.ids == other.ids and np.array_equal(self.points, other.points)

    def __repr__(self) -> str:
        return f"LandmarkCollection(n={len(self)})"

    def has_same_schema(self, other: "LandmarkCollection") -> bool:
        return self.ids == other.ids

    def with_points(self, points: np.ndarray) -> "LandmarkCollection":
        """New collection with the same ids and the given points."""
        return LandmarkCollection(self.ids, points)

    def copy(self) -> "LandmarkCollection":
        return LandmarkCollection(self.ids, self.points.copy())


def enclosing_bounding_box(landmarks: LandmarkCollection) -> Rect:
    """
    Tight axis-aligned box around all landmarks.

    Args:
        landmarks: Non-empty landmark collection

    Returns:
        Rect spanning [min_x, max_x] x [min_y, max_y]. A single point (or
        points collinear along one axis) gives a zero width and/or height.
    """
    if len(landmarks) == 0:
        raise ValueError("Cannot compute the bounding box of an empty collection")

    min_x, min_y = landmarks.points.min(axis=0)
    max_x, max_y = landmarks.points.max(axis=0)
    return Rect(float(min_x), float(min_y),
                float(max_x - min_x), float(max_y - min_y))


def seed_from_face_region(
    mean_shape: LandmarkCollection,
    face_rect: Rect
) -> LandmarkCollection:
    """
    Place the mean shape inside a detected face region.

    The mean shape is scaled so that its enclosing box matches the face
    region's width and height, then translated to the region's origin.

    Args:
        mean_shape: Canonical mean landmarks of the regression model
        face_rect: Face region from the detector

    Returns:
        Initial landmark estimate in image coordinates
    """
    mean_box = enclosing_bounding_box(mean_shape)
    if mean_box.width == 0 or mean_box.height == 0:
        raise ValueError("Mean shape has a degenerate bounding box")

    scale = np.array([face_rect.width / mean_box.width,
                      face_rect.height / mean_box.height])
    origin = np.array([mean_box.x, mean_box.y])
    offset = np.array([face_rect.x, face_rect.y])

    return mean_shape.with_points((mean_shape.points - origin) * scale + offset)


def seed_from_previous(
    previous_landmarks: LandmarkCollection,
    mean_shape: Optional[LandmarkCollection] = None
) -> LandmarkCollection:
    """
    Seed the regressor from the previous frame's landmarks.

    Without a mean shape this is the identity (an independent copy). With
    one, the mean shape is re-aligned into the previous landmarks' enclosing
    box, which discards accumulated shape drift while keeping position and
    scale. A degenerate previous box falls back to the identity.
    """
    if mean_shape is None:
        return previous_landmarks.copy()

    box = enclosing_bounding_box(previous_landmarks)
    if box.width == 0 or box.height == 0:
        return previous_landmarks.copy()
    return seed_from_face_region(mean_shape, box)
