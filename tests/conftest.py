
import numpy as np
import pytest


from landmark_geometry import LandmarkCollection, Rect
from cascade_regressor import CascadeRegressor, canonical_mean_shape


class IdentityRegressor(CascadeRegressor):
    """Returns the seed unchanged and records every call."""

    def __init__(self, mean_shape=None):
        self._mean_shape = mean_shape if mean_shape is not None else canonical_mean_shape()
        self.seeds = []

    @property
    def mean_shape(self):
        return self._mean_shape

    def detect(self, image, seed):
        self.seeds.append(seed)
        return seed.copy()


class ScriptedPredicate:
    """Continuation predicate answering from a list, then always True."""

    def __init__(self, answers=()):
        self.answers = list(answers)
        self.calls = []

    def __call__(self, previous, current):
        self.calls.append((previous, current))
        if self.answers:
            return self.answers.pop(0)
        return True


@pytest.fixture
def mean_shape():
    return canonical_mean_shape()


@pytest.fixture
def square_shape():
    return LandmarkCollection(
        ['a', 'b', 'c', 'd'],
        np.array([[0.0, 0.0], [2.0, 0.0], [2.0, 4.0], [0.0, 4.0]])
    )


@pytest.fixture
def frame():
    return np.zeros((240, 320, 3), dtype=np.uint8)


@pytest.fixture
def face_rect():
    return Rect(10, 10, 100, 100)


@pytest.fixture
def identity_regressor(mean_shape):
    return IdentityRegressor(mean_shape)
