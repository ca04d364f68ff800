"""
Project Document

Creates, mutates, saves and loads the versioned tour project.

Every mutating operation returns a new Project (deep copy) with the
targeted scene or hotspot replaced and updatedAt rewritten. The input
project is never modified.
"""

import json
import math
import secrets
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel
from rich.console import Console

from utils.angles import angular_distances
from utils.validation import (
    Hotspot,
    InfoHotspot,
    LinkHotspot,
    Project,
    Scene,
    ViewParameters,
    hotspot_adapter,
    validate_project,
)

console = Console()

DEFAULT_TITLE = "Untitled Tour"

# Hotspots closer than this (radians, about 2 degrees) overlap on screen.
HOTSPOT_OVERLAP = math.radians(2.0)


class ProjectError(Exception):
    """Error while editing, saving or loading a project."""
    pass


def now_iso() -> str:
    """Current UTC time as ISO-8601 with millisecond precision and a Z suffix."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def new_id(prefix: str = "id") -> str:
    """
    Mint an identifier: <prefix>_<random hex>_<millisecond timestamp hex>.

    Collisions are statistically negligible; no central counter is kept.
    """
    return f"{prefix}_{secrets.token_hex(6)}_{time.time_ns() // 1_000_000:x}"


def create_empty_project(title: str = DEFAULT_TITLE, now: Optional[str] = None) -> Project:
    """Create a fresh version-1 project with no scenes."""
    stamp = now or now_iso()
    return Project(created_at=stamp, updated_at=stamp, title=title, scenes=[])


def touch(project: Project, now: Optional[str] = None) -> Project:
    """Return a deep copy with updatedAt set to now."""
    updated = project.model_copy(deep=True)
    updated.updated_at = now or now_iso()
    return updated


def find_scene(project: Project, scene_id: str) -> Optional[Scene]:
    for scene in project.scenes:
        if scene.id == scene_id:
            return scene
    return None


def _scene_index(project: Project, scene_id: str) -> int:
    for i, scene in enumerate(project.scenes):
        if scene.id == scene_id:
            return i
    raise ProjectError(f"Scene not found: {scene_id}")


def _hotspot_index(scene: Scene, hotspot_id: str) -> int:
    for i, hotspot in enumerate(scene.hotspots):
        if hotspot.id == hotspot_id:
            return i
    raise ProjectError(f"Hotspot not found in scene {scene.id}: {hotspot_id}")


def _replace_scene(project: Project, scene_id: str, **changes) -> Project:
    updated = project.model_copy(deep=True)
    index = _scene_index(updated, scene_id)
    updated.scenes[index] = updated.scenes[index].model_copy(update=changes)
    return touch(updated)


def append_scenes(project: Project, scenes: Iterable[Scene]) -> Project:
    """
    Append scenes to the end of the project.

    Raises:
        ProjectError: If a scene id is already used
    """
    new_scenes = [s.model_copy(deep=True) for s in scenes]
    taken = {s.id for s in project.scenes}
    for scene in new_scenes:
        if scene.id in taken:
            raise ProjectError(f"Duplicate scene id: {scene.id}")
        taken.add(scene.id)

    updated = project.model_copy(deep=True)
    updated.scenes.extend(new_scenes)
    return touch(updated)


def update_scene(project: Project, scene_id: str, hotspots: List[Hotspot]) -> Project:
    """Replace the hotspot list of one scene."""
    ids = [h.id for h in hotspots]
    if len(ids) != len(set(ids)):
        raise ProjectError(f"Duplicate hotspot ids for scene {scene_id}")
    return _replace_scene(project, scene_id, hotspots=[h.model_copy(deep=True) for h in hotspots])


def rename_scene(project: Project, scene_id: str, name: str) -> Project:
    return _replace_scene(project, scene_id, name=name)


def set_initial_view(project: Project, scene_id: str, view: ViewParameters) -> Project:
    """Store the camera pose shown when entering a scene."""
    return _replace_scene(project, scene_id, initial_view=view.model_copy())


def set_title(project: Project, title: str) -> Project:
    updated = project.model_copy(deep=True)
    updated.title = title
    return touch(updated)


def remove_scene(project: Project, scene_id: str) -> Project:
    """
    Remove a scene and every link hotspot that targets it.

    Links in other scenes pointing at the removed scene are dropped so
    that no dangling reference is left behind.
    """
    updated = project.model_copy(deep=True)
    index = _scene_index(updated, scene_id)
    del updated.scenes[index]

    for scene in updated.scenes:
        scene.hotspots = [
            h for h in scene.hotspots
            if not (isinstance(h, LinkHotspot) and h.target_scene_id == scene_id)
        ]

    return touch(updated)


def add_hotspot(project: Project, scene_id: str, hotspot: Hotspot) -> Project:
    """
    Append a hotspot to a scene.

    Raises:
        ProjectError: If the scene is missing or the hotspot id is taken
    """
    scene = find_scene(project, scene_id)
    if scene is None:
        raise ProjectError(f"Scene not found: {scene_id}")
    if any(h.id == hotspot.id for h in scene.hotspots):
        raise ProjectError(f"Duplicate hotspot id in scene {scene_id}: {hotspot.id}")

    return _replace_scene(
        project,
        scene_id,
        hotspots=[h.model_copy(deep=True) for h in scene.hotspots] + [hotspot.model_copy(deep=True)],
    )


def update_hotspot(project: Project, scene_id: str, hotspot_id: str, patch: Dict[str, Any]) -> Project:
    """
    Apply a field patch to one hotspot.

    The patch uses on-disk key names (e.g. "targetSceneId") or Python
    field names. The result is re-validated against the hotspot union, so
    switching "type" requires the fields of the new variant.
    """
    scene = find_scene(project, scene_id)
    if scene is None:
        raise ProjectError(f"Scene not found: {scene_id}")
    index = _hotspot_index(scene, hotspot_id)

    if "id" in patch and patch["id"] != hotspot_id:
        raise ProjectError("Hotspot id cannot be changed")

    patch = {(to_camel(k) if "_" in k else k): v for k, v in patch.items()}
    merged = {**scene.hotspots[index].to_dict(), **patch}
    try:
        patched = hotspot_adapter.validate_python(merged)
    except PydanticValidationError as e:
        raise ProjectError(f"Invalid hotspot patch: {e}")

    hotspots = [h.model_copy(deep=True) for h in scene.hotspots]
    hotspots[index] = patched
    return _replace_scene(project, scene_id, hotspots=hotspots)


def remove_hotspot(project: Project, scene_id: str, hotspot_id: str) -> Project:
    scene = find_scene(project, scene_id)
    if scene is None:
        raise ProjectError(f"Scene not found: {scene_id}")
    _hotspot_index(scene, hotspot_id)

    return _replace_scene(
        project,
        scene_id,
        hotspots=[h.model_copy(deep=True) for h in scene.hotspots if h.id != hotspot_id],
    )


def clear_hotspots(project: Project, scene_id: str) -> Project:
    return _replace_scene(project, scene_id, hotspots=[])


def make_info_hotspot(
    yaw: float,
    pitch: float,
    title: Optional[str] = None,
    text: Optional[str] = None
) -> InfoHotspot:
    return InfoHotspot(id=new_id("hs"), yaw=yaw, pitch=pitch, title=title, text=text)


def make_link_hotspot(
    yaw: float,
    pitch: float,
    target_scene_id: str,
    rotation: float = 0.0
) -> LinkHotspot:
    return LinkHotspot(
        id=new_id("hs"),
        yaw=yaw,
        pitch=pitch,
        target_scene_id=target_scene_id,
        rotation=rotation,
    )


def describe_hotspot(hotspot: Hotspot, project: Project) -> str:
    """One-line summary of a hotspot for listings."""
    position = f"yaw={hotspot.yaw:.3f} pitch={hotspot.pitch:.3f}"
    if isinstance(hotspot, InfoHotspot):
        return f"info {hotspot.id} ({position}) {hotspot.title or 'Info'}"
    if isinstance(hotspot, LinkHotspot):
        target = find_scene(project, hotspot.target_scene_id)
        target_name = target.name if target else f"{hotspot.target_scene_id} (missing)"
        return f"link {hotspot.id} ({position}) -> {target_name}"
    raise TypeError(f"Unknown hotspot type: {type(hotspot).__name__}")


def dangling_links(project: Project) -> List[Tuple[str, str, str]]:
    """
    Find link hotspots whose target scene does not exist.

    Returns:
        List of (scene_id, hotspot_id, target_scene_id)
    """
    scene_ids = {s.id for s in project.scenes}
    result = []
    for scene in project.scenes:
        for hotspot in scene.hotspots:
            if isinstance(hotspot, LinkHotspot) and hotspot.target_scene_id not in scene_ids:
                result.append((scene.id, hotspot.id, hotspot.target_scene_id))
    return result


def find_nearby_hotspots(
    scene: Scene,
    yaw: float,
    pitch: float,
    tolerance: float = HOTSPOT_OVERLAP
) -> List[Hotspot]:
    """
    Hotspots of a scene within tolerance radians of (yaw, pitch).

    Used to warn before placing a hotspot on top of another one.
    """
    if not scene.hotspots:
        return []
    distances = angular_distances((yaw, pitch), [(h.yaw, h.pitch) for h in scene.hotspots])
    return [h for h, d in zip(scene.hotspots, distances) if d <= tolerance]


def save_project(project: Project, path: Path) -> Path:
    """Write the project as pretty-printed JSON."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, 'w', encoding='utf-8') as f:
        json.dump(project.to_dict(), f, indent=2, ensure_ascii=False)

    console.print(f"[green]Saved project: {path}[/green]")
    return path


def load_project(path: Path) -> Project:
    """
    Load and validate a project file.

    Raises:
        ProjectError: If the file is missing or not valid JSON
        ValidationError: If the document is malformed
        UnsupportedVersionError: If the document version is not supported
    """
    if not path.exists():
        raise ProjectError(f"Project file not found: {path}")

    try:
        with open(path, 'r', encoding='utf-8') as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise ProjectError(f"Invalid JSON in project file: {e}")
    except (OSError, UnicodeDecodeError) as e:
        raise ProjectError(f"Cannot read project file {path}: {e}")

    project, error = validate_project(data)
    if error is not None:
        raise error

    dangling = dangling_links(project)
    if dangling:
        console.print(f"[yellow]Warning: {len(dangling)} link hotspot(s) point at missing scenes[/yellow]")

    return project
