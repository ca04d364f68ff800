"""
Ingestion Pipeline Stage

Imports panorama files into a project. Files are processed strictly one
at a time, in input order: each is normalized, persisted under a fresh
scene id, and only then turned into a Scene. A file that fails is
skipped and reported; the rest of the batch continues.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Union
from rich.console import Console
from rich.progress import Progress, SpinnerColumn, TextColumn, BarColumn

from utils.validation import PanoramaDescriptor, Project, Scene, ViewParameters
from .assets import AssetStore, AssetStoreError, PreviewRegistry, StoredAsset
from .capability import RendererCapabilities
from .normalize import NormalizeError, NormalizedImage, PanoramaSource, normalize_panorama
from .project import (
    ProjectError,
    append_scenes,
    find_scene,
    new_id,
    now_iso,
    remove_scene,
    touch,
)

console = Console()

DEFAULT_FOV = 1.25


class IngestError(Exception):
    """Error during ingestion process."""
    pass


@dataclass
class ImportFailure:
    """One file that could not be imported."""
    file_name: str
    error: Exception

    def __str__(self) -> str:
        return f"{self.file_name}: {self.error}"


@dataclass
class ImportResult:
    """Outcome of a batch import."""
    project: Project
    scenes: List[Scene] = field(default_factory=list)
    failures: List[ImportFailure] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures


def panorama_label(normalized: NormalizedImage) -> str:
    if normalized.was_resized:
        return f"Imported (scaled to {normalized.width}×{normalized.height})"
    return "Imported equirect"


def build_scene(scene_id: str, normalized: NormalizedImage, fallback_name: str) -> Scene:
    """Create the Scene record for a freshly normalized panorama."""
    return Scene(
        id=scene_id,
        name=Path(normalized.file_name).stem or fallback_name,
        panorama=PanoramaDescriptor(
            label=panorama_label(normalized),
            file_name=normalized.file_name,
            width=normalized.original_width,
            height=normalized.original_height,
        ),
        initial_view=ViewParameters(yaw=0.0, pitch=0.0, fov=DEFAULT_FOV),
        hotspots=[],
    )


def build_stored_asset(scene_id: str, normalized: NormalizedImage) -> StoredAsset:
    return StoredAsset(
        scene_id=scene_id,
        file_name=normalized.file_name,
        payload=normalized.payload,
        width=normalized.width,
        height=normalized.height,
        original_width=normalized.original_width,
        original_height=normalized.original_height,
        updated_at=now_iso(),
    )


def _source_name(source: Union[Path, PanoramaSource]) -> str:
    return source.name


async def import_panoramas(
    project: Project,
    sources: Iterable[Union[Path, PanoramaSource]],
    store: AssetStore,
    capabilities: RendererCapabilities,
    previews: Optional[PreviewRegistry] = None,
    force_max_size: Optional[int] = None,
    encoding: str = "JPEG",
    quality: float = 0.9,
    show_progress: bool = True,
) -> ImportResult:
    """
    Import a batch of panorama files.

    Args:
        project: Project to extend
        sources: Files (paths or raw sources), processed in this order
        store: Asset store receiving the normalized payloads
        capabilities: Renderer capabilities for the safe dimension
        previews: Optional preview registry to install display handles in
        force_max_size: Override the safe dimension
        encoding: Encoding for resized panoramas
        quality: Encoder quality in 0..1
        show_progress: Show a progress bar

    Returns:
        ImportResult with the updated project, new scenes and failures
    """
    sources = list(sources)
    new_scenes: List[Scene] = []
    failures: List[ImportFailure] = []

    console.print(f"[blue]Importing {len(sources)} panorama(s)...[/blue]")

    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        TextColumn("{task.completed}/{task.total}"),
        console=console,
        disable=not show_progress,
    ) as progress:
        task = progress.add_task("Processing", total=len(sources))

        for source in sources:
            name = _source_name(source)
            progress.update(task, description=f"Processing {name}")

            try:
                normalized = await normalize_panorama(
                    source,
                    capabilities,
                    force_max_size=force_max_size,
                    encoding=encoding,
                    quality=quality,
                )
                scene_id = new_id("scene")
                asset = build_stored_asset(scene_id, normalized)
                await store.put(asset)
            except (NormalizeError, AssetStoreError) as e:
                console.print(f"[yellow]Skipped {name}: {e}[/yellow]")
                failures.append(ImportFailure(file_name=name, error=e))
                progress.advance(task)
                continue

            if previews is not None:
                previews.install(asset)

            fallback = f"Scene {len(project.scenes) + len(new_scenes) + 1}"
            new_scenes.append(build_scene(scene_id, normalized, fallback))
            progress.advance(task)

    updated = append_scenes(project, new_scenes) if new_scenes else project

    if failures:
        console.print(f"[yellow]Imported {len(new_scenes)}/{len(sources)} panorama(s)[/yellow]")
    else:
        console.print(f"[green]Imported {len(new_scenes)} panorama(s)[/green]")

    return ImportResult(project=updated, scenes=new_scenes, failures=failures)


async def reimport_scene_asset(
    project: Project,
    scene_id: str,
    source: Union[Path, PanoramaSource],
    store: AssetStore,
    capabilities: RendererCapabilities,
    previews: Optional[PreviewRegistry] = None,
    force_max_size: Optional[int] = None,
    encoding: str = "JPEG",
    quality: float = 0.9,
) -> Project:
    """
    Replace the panorama of an existing scene.

    The old payload is overwritten in the store and the scene's previous
    preview handle is revoked. Hotspots and initial view are kept.

    Raises:
        IngestError: If the scene does not exist
        NormalizeError: If the file cannot be normalized
        AssetStoreError: If the asset cannot be persisted
    """
    scene = find_scene(project, scene_id)
    if scene is None:
        raise IngestError(f"Scene not found: {scene_id}")

    normalized = await normalize_panorama(
        source,
        capabilities,
        force_max_size=force_max_size,
        encoding=encoding,
        quality=quality,
    )
    asset = build_stored_asset(scene_id, normalized)
    await store.put(asset)

    if previews is not None:
        previews.install(asset)

    updated = touch(project)
    target = find_scene(updated, scene_id)
    target.panorama = PanoramaDescriptor(
        label=panorama_label(normalized),
        file_name=normalized.file_name,
        width=normalized.original_width,
        height=normalized.original_height,
    )

    console.print(f"[green]Replaced panorama for scene {scene.name}[/green]")
    return updated


async def delete_scene(
    project: Project,
    scene_id: str,
    store: AssetStore,
    previews: Optional[PreviewRegistry] = None,
) -> Project:
    """
    Remove a scene, its stored asset and its preview handle.

    Link hotspots targeting the scene are removed from the other scenes.
    """
    try:
        updated = remove_scene(project, scene_id)
    except ProjectError as e:
        raise IngestError(str(e))

    await store.delete(scene_id)
    if previews is not None:
        previews.release(scene_id)

    console.print(f"[green]Deleted scene {scene_id}[/green]")
    return updated


async def rehydrate_assets(
    project: Project,
    store: AssetStore,
    previews: Optional[PreviewRegistry] = None,
) -> Dict[str, StoredAsset]:
    """
    Load the stored asset of every scene that has one.

    Scenes without an asset are reported but not treated as errors.

    Returns:
        Dict of scene id to StoredAsset
    """
    assets: Dict[str, StoredAsset] = {}
    missing = []

    for scene in project.scenes:
        asset = await store.get(scene.id)
        if asset is None:
            missing.append(scene.name or scene.id)
            continue
        assets[scene.id] = asset
        if previews is not None:
            previews.install(asset)

    if missing:
        console.print(f"[yellow]No stored panorama for: {', '.join(missing)}[/yellow]")

    return assets
