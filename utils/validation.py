"""Project document models and structural validation."""

from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Tuple, Union
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

SUPPORTED_VERSION = 1


class ValidationErrorKind(str, Enum):
    NOT_A_RECORD = "not_a_record"
    UNSUPPORTED_VERSION = "unsupported_version"
    INVALID_TITLE = "invalid_title"
    INVALID_SCENES = "invalid_scenes"
    MALFORMED_CONTENT = "malformed_content"
    DUPLICATE_ID = "duplicate_id"


class ValidationError(Exception):
    """Malformed or incompatible project document."""

    def __init__(self, kind: ValidationErrorKind, message: str):
        super().__init__(message)
        self.kind = kind
        self.message = message


class UnsupportedVersionError(ValidationError):
    """Project document carries a version this build cannot load."""

    def __init__(self, version: Any):
        super().__init__(
            ValidationErrorKind.UNSUPPORTED_VERSION,
            f"Unsupported project version: {version!r} (expected {SUPPORTED_VERSION})",
        )
        self.version = version


# Pydantic models for the project document. Field names are snake_case in
# Python and camelCase on disk.


class TourModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_dict(self) -> Dict:
        """Serialize with on-disk key names, omitting unset optionals."""
        return self.model_dump(by_alias=True, exclude_none=True)


class PanoramaDescriptor(TourModel):
    type: Literal["equirect"] = "equirect"
    label: Optional[str] = None
    file_name: Optional[str] = None
    width: Optional[int] = Field(default=None, gt=0)
    height: Optional[int] = Field(default=None, gt=0)


class ViewParameters(TourModel):
    yaw: float = 0.0
    pitch: float = 0.0
    fov: float = Field(default=1.25, gt=0)


class InfoHotspot(TourModel):
    id: str = Field(..., min_length=1)
    type: Literal["info"] = "info"
    yaw: float
    pitch: float
    title: Optional[str] = None
    text: Optional[str] = None


class LinkHotspot(TourModel):
    id: str = Field(..., min_length=1)
    type: Literal["link"] = "link"
    yaw: float
    pitch: float
    target_scene_id: str
    rotation: Optional[float] = None


Hotspot = Annotated[Union[InfoHotspot, LinkHotspot], Field(discriminator="type")]

hotspot_adapter = TypeAdapter(Hotspot)


class Scene(TourModel):
    id: str = Field(..., min_length=1)
    name: str
    panorama: PanoramaDescriptor = Field(default_factory=PanoramaDescriptor)
    initial_view: ViewParameters = Field(default_factory=ViewParameters)
    hotspots: List[Hotspot] = Field(default_factory=list)


class Project(TourModel):
    """Root project document."""

    version: int = SUPPORTED_VERSION
    created_at: str
    updated_at: str
    title: str
    scenes: List[Scene] = Field(default_factory=list)


def find_duplicate_ids(project: Project) -> List[str]:
    """
    Find identifiers that break uniqueness.

    Scene ids must be unique across the project, hotspot ids within
    their owning scene.

    Returns:
        List of human-readable descriptions (empty if all unique)
    """
    problems = []
    seen_scenes = set()
    for scene in project.scenes:
        if scene.id in seen_scenes:
            problems.append(f"Duplicate scene id: {scene.id}")
        seen_scenes.add(scene.id)

        seen_hotspots = set()
        for hotspot in scene.hotspots:
            if hotspot.id in seen_hotspots:
                problems.append(f"Duplicate hotspot id in scene {scene.id}: {hotspot.id}")
            seen_hotspots.add(hotspot.id)

    return problems


def _is_supported_version(version: Any) -> bool:
    """Integer 1; an integral float (1.0) counts, booleans do not."""
    if isinstance(version, bool) or not isinstance(version, (int, float)):
        return False
    return version == SUPPORTED_VERSION


def validate_project(data: Any) -> Tuple[Optional[Project], Optional[ValidationError]]:
    """
    Validate a candidate project document.

    Structural only: link targets and asset presence are not checked.
    The version is checked before any other content, so an unsupported
    version is reported even when the rest of the document is fine.

    Args:
        data: Parsed JSON value

    Returns:
        Tuple of (project, error); exactly one of them is None
    """
    if not isinstance(data, dict):
        return None, ValidationError(ValidationErrorKind.NOT_A_RECORD, "Project is not an object")

    version = data.get("version")
    if not _is_supported_version(version):
        return None, UnsupportedVersionError(version)

    if not isinstance(data.get("title"), str):
        return None, ValidationError(ValidationErrorKind.INVALID_TITLE, "Project.title must be a string")

    if not isinstance(data.get("scenes"), list):
        return None, ValidationError(ValidationErrorKind.INVALID_SCENES, "Project.scenes must be an array")

    try:
        project = Project.model_validate(data)
    except PydanticValidationError as e:
        return None, ValidationError(ValidationErrorKind.MALFORMED_CONTENT, str(e))

    duplicates = find_duplicate_ids(project)
    if duplicates:
        return None, ValidationError(ValidationErrorKind.DUPLICATE_ID, "; ".join(duplicates))

    return project, None
