"""Angular coordinate utilities for equirectangular panoramas."""

import math
import numpy as np
from typing import Sequence, Tuple

MAX_PITCH = math.pi / 2


def normalize_yaw(yaw: float) -> float:
    """Wrap yaw into [-pi, pi)."""
    return float((yaw + math.pi) % (2 * math.pi) - math.pi)


def clamp_pitch(pitch: float) -> float:
    """Clamp pitch into [-pi/2, pi/2]."""
    return float(max(-MAX_PITCH, min(MAX_PITCH, pitch)))


def equirect_pixel_to_angles(
    x: float,
    y: float,
    width: int,
    height: int
) -> Tuple[float, float]:
    """
    Convert a pixel position on an equirectangular image to (yaw, pitch).

    The image centre maps to yaw=0, pitch=0. Yaw grows to the right,
    pitch grows downwards, matching the viewer's convention.

    Args:
        x: Horizontal pixel coordinate (0..width)
        y: Vertical pixel coordinate (0..height)
        width: Image width in pixels
        height: Image height in pixels

    Returns:
        Tuple of (yaw, pitch) in radians
    """
    if width <= 0 or height <= 0:
        raise ValueError(f"Invalid image size: {width}x{height}")

    yaw = (x / width - 0.5) * 2 * math.pi
    pitch = (y / height - 0.5) * math.pi
    return normalize_yaw(yaw), clamp_pitch(pitch)


def angles_to_equirect_pixel(
    yaw: float,
    pitch: float,
    width: int,
    height: int
) -> Tuple[float, float]:
    """Inverse of equirect_pixel_to_angles."""
    if width <= 0 or height <= 0:
        raise ValueError(f"Invalid image size: {width}x{height}")

    x = (normalize_yaw(yaw) / (2 * math.pi) + 0.5) * width
    y = (clamp_pitch(pitch) / math.pi + 0.5) * height
    return float(x), float(y)


def angles_to_direction(yaw, pitch) -> np.ndarray:
    """
    Convert (yaw, pitch) to unit view directions.

    Uses a Y-up frame with yaw=0 looking along -Z. Positive pitch
    looks down. Scalars give shape (3,), arrays of N angles give (N, 3).
    """
    yaw = np.asarray(yaw, dtype=float)
    pitch = np.asarray(pitch, dtype=float)
    cos_p = np.cos(pitch)
    return np.stack([
        np.sin(yaw) * cos_p,
        -np.sin(pitch),
        -np.cos(yaw) * cos_p,
    ], axis=-1)


def angular_distances(
    origin: Tuple[float, float],
    positions: Sequence[Tuple[float, float]]
) -> np.ndarray:
    """
    Great-circle angles in radians from origin to each (yaw, pitch).

    Returns:
        Array of shape (len(positions),)
    """
    if len(positions) == 0:
        return np.zeros(0)

    coords = np.asarray(positions, dtype=float)
    directions = angles_to_direction(coords[:, 0], coords[:, 1])
    dots = np.clip(directions @ angles_to_direction(*origin), -1.0, 1.0)
    return np.arccos(dots)
