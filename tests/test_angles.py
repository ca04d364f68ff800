"""Tests for angular coordinate utilities."""

import math

import numpy as np
import pytest

from utils.angles import (
    MAX_PITCH,
    angles_to_direction,
    angles_to_equirect_pixel,
    angular_distances,
    clamp_pitch,
    equirect_pixel_to_angles,
    normalize_yaw,
)


class TestNormalization:
    """Tests for yaw wrapping and pitch clamping."""

    @pytest.mark.parametrize("yaw,expected", [
        (0.0, 0.0),
        (math.pi / 2, math.pi / 2),
        (3 * math.pi / 2, -math.pi / 2),
        (-3 * math.pi / 2, math.pi / 2),
        (4 * math.pi + 0.25, 0.25),
    ])
    def test_normalize_yaw(self, yaw, expected):
        assert normalize_yaw(yaw) == pytest.approx(expected)

    def test_normalize_yaw_range(self):
        for yaw in np.linspace(-20, 20, 101):
            wrapped = normalize_yaw(float(yaw))
            assert -math.pi <= wrapped < math.pi

    def test_clamp_pitch(self):
        assert clamp_pitch(2.0) == MAX_PITCH
        assert clamp_pitch(-2.0) == -MAX_PITCH
        assert clamp_pitch(0.3) == 0.3


class TestPixelMapping:
    """Tests for equirectangular pixel <-> angle mapping."""

    def test_centre_is_forward(self):
        """The image centre maps to yaw=0, pitch=0."""
        yaw, pitch = equirect_pixel_to_angles(2000, 1000, 4000, 2000)

        assert yaw == pytest.approx(0.0)
        assert pitch == pytest.approx(0.0)

    def test_quadrant(self):
        """Right of centre is positive yaw, above centre is negative pitch."""
        yaw, pitch = equirect_pixel_to_angles(3000, 500, 4000, 2000)

        assert yaw == pytest.approx(math.pi / 2)
        assert pitch == pytest.approx(-math.pi / 4)

    def test_inverse(self):
        x, y = angles_to_equirect_pixel(math.pi / 2, -math.pi / 4, 4000, 2000)

        assert x == pytest.approx(3000)
        assert y == pytest.approx(500)

    def test_invalid_size(self):
        with pytest.raises(ValueError):
            equirect_pixel_to_angles(10, 10, 0, 100)
        with pytest.raises(ValueError):
            angles_to_equirect_pixel(0.0, 0.0, 100, -1)


class TestDirections:
    """Tests for view direction vectors and distances."""

    def test_forward(self):
        np.testing.assert_array_almost_equal(angles_to_direction(0.0, 0.0), [0.0, 0.0, -1.0])

    def test_right(self):
        np.testing.assert_array_almost_equal(angles_to_direction(math.pi / 2, 0.0), [1.0, 0.0, 0.0])

    def test_down(self):
        """Positive pitch looks down."""
        np.testing.assert_array_almost_equal(angles_to_direction(0.0, math.pi / 2), [0.0, -1.0, 0.0])

    def test_vectorized(self):
        """Arrays of angles give one row per direction."""
        directions = angles_to_direction([0.0, math.pi / 2], [0.0, 0.0])

        assert directions.shape == (2, 3)
        np.testing.assert_array_almost_equal(directions[1], [1.0, 0.0, 0.0])

    def test_angular_distances(self):
        distances = angular_distances(
            (0.0, 0.0),
            [(0.0, 0.0), (math.pi / 2, 0.0), (0.0, math.pi / 2)],
        )

        np.testing.assert_allclose(distances, [0.0, math.pi / 2, math.pi / 2], atol=1e-6)

    def test_distance_across_seam(self):
        """Yaw wraps: -pi+0.1 is 0.2 rad from pi-0.1."""
        distances = angular_distances((math.pi - 0.1, 0.0), [(-math.pi + 0.1, 0.0)])

        assert distances[0] == pytest.approx(0.2)

    def test_no_positions(self):
        assert angular_distances((0.0, 0.0), []).shape == (0,)
