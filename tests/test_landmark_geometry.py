import numpy as np
import pytest

from landmark_geometry import (
    Landmark, LandmarkCollection, Rect, enclosing_bounding_box,
    seed_from_face_region, seed_from_previous
)


class TestRect:

    def test_negative_size_rejected(self):
        with pytest.raises(ValueError):
            Rect(0, 0, -1, 5)

    def test_from_opencv_row(self):
        r = Rect.from_xywh(np.array([10, 20, 30, 40], dtype=np.int32))
        assert r == Rect(10.0, 20.0, 30.0, 40.0)
        assert r.area == 1200
        assert r.center == (25.0, 40.0)
        assert r.aspect_ratio == pytest.approx(0.75)

    def test_zero_height_aspect_ratio(self):
        assert Rect(0, 0, 5, 0).aspect_ratio == 0.0


class TestLandmarkCollection:

    def test_shape_validation(self):
        with pytest.raises(ValueError):
            LandmarkCollection(['a'], np.zeros((2, 2)))
        with pytest.raises(ValueError):
            LandmarkCollection(['a', 'b'], np.zeros((2, 3)))

    def test_iteration_and_lookup(self, square_shape):
        landmarks = list(square_shape)
        assert landmarks[1] == Landmark('b', 2.0, 0.0)
        assert square_shape['c'] == Landmark('c', 2.0, 4.0)
        with pytest.raises(KeyError):
            square_shape['z']

    def test_from_landmarks(self):
        lc = LandmarkCollection.from_landmarks([Landmark('p', 1, 2), Landmark('q', 3, 4)])
        assert lc.ids == ('p', 'q')
        np.testing.assert_array_equal(lc.points, [[1, 2], [3, 4]])

    def test_copy_is_independent(self, square_shape):
        copy = square_shape.copy()
        copy.points[0, 0] = 99
        assert square_shape.points[0, 0] == 0


class TestEnclosingBoundingBox:

    def test_bounds_every_point(self, mean_shape):
        box = enclosing_bounding_box(mean_shape)
        xs, ys = mean_shape.points[:, 0], mean_shape.points[:, 1]
        assert box.x == xs.min()
        assert box.y == ys.min()
        assert box.x + box.width == pytest.approx(xs.max())
        assert box.y + box.height == pytest.approx(ys.max())

    def test_single_point_is_degenerate(self):
        box = enclosing_bounding_box(LandmarkCollection(['a'], [[3.0, 4.0]]))
        assert box == Rect(3.0, 4.0, 0.0, 0.0)
        assert box.area == 0

    def test_collinear_points_have_zero_area(self):
        lc = LandmarkCollection(['a', 'b', 'c'], [[0, 5], [3, 5], [7, 5]])
        box = enclosing_bounding_box(lc)
        assert box.width == 7
        assert box.area == 0

    def test_empty_collection(self):
        with pytest.raises(ValueError):
            enclosing_bounding_box(LandmarkCollection([], np.zeros((0, 2))))


class TestSeedFromFaceRegion:

    def test_seed_fills_face_region(self, mean_shape, face_rect):
        seed = seed_from_face_region(mean_shape, face_rect)
        box = enclosing_bounding_box(seed)

        assert box.width == pytest.approx(face_rect.width)
        assert box.height == pytest.approx(face_rect.height)
        assert box.x == pytest.approx(face_rect.x)
        assert box.y == pytest.approx(face_rect.y)
        assert seed.ids == mean_shape.ids

    def test_anisotropic_scaling(self, square_shape):
        seed = seed_from_face_region(square_shape, Rect(100, 50, 20, 10))
        np.testing.assert_allclose(
            seed.points, [[100, 50], [120, 50], [120, 60], [100, 60]]
        )

    def test_mean_shape_untouched(self, mean_shape, face_rect):
        before = mean_shape.points.copy()
        seed_from_face_region(mean_shape, face_rect)
        np.testing.assert_array_equal(mean_shape.points, before)

    def test_degenerate_mean_shape(self):
        flat = LandmarkCollection(['a', 'b'], [[0, 0], [1, 0]])
        with pytest.raises(ValueError):
            seed_from_face_region(flat, Rect(0, 0, 10, 10))


class TestSeedFromPrevious:

    def test_identity(self, mean_shape, face_rect):
        previous = seed_from_face_region(mean_shape, face_rect)
        seed = seed_from_previous(previous)
        assert seed == previous
        assert seed.points is not previous.points

    def test_recenter_aligns_mean_into_previous_box(self, mean_shape, face_rect):
        previous = seed_from_face_region(mean_shape, face_rect)
        previous.points[4] += [3.0, -2.0]  # nose tip drifted inside the box

        seed = seed_from_previous(previous, mean_shape)

        assert enclosing_bounding_box(seed) == enclosing_bounding_box(
            seed_from_face_region(mean_shape, enclosing_bounding_box(previous))
        )
        np.testing.assert_allclose(
            seed.points, seed_from_face_region(mean_shape, face_rect).points
        )

    def test_recenter_degenerate_previous_falls_back(self, square_shape):
        previous = LandmarkCollection(square_shape.ids, np.full((4, 2), 7.0))
        assert seed_from_previous(previous, square_shape) == previous
