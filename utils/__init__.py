"""Utility functions for the panotour pipeline."""

from .angles import (
    equirect_pixel_to_angles,
    angles_to_equirect_pixel,
    normalize_yaw,
    clamp_pitch,
)
from .naming import safe_file_name
from .validation import (
    Project,
    Scene,
    InfoHotspot,
    LinkHotspot,
    ValidationError,
    UnsupportedVersionError,
    validate_project,
)

__all__ = [
    "equirect_pixel_to_angles",
    "angles_to_equirect_pixel",
    "normalize_yaw",
    "clamp_pitch",
    "safe_file_name",
    "Project",
    "Scene",
    "InfoHotspot",
    "LinkHotspot",
    "ValidationError",
    "UnsupportedVersionError",
    "validate_project",
]
