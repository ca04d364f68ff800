"""
Tour Pipeline Command Line

Wires the stages together: create a project, import panoramas, edit
hotspots, validate and export a standalone viewer.
"""

import asyncio
import json
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import List, Optional
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
import typer

from utils.angles import equirect_pixel_to_angles
from utils.validation import ValidationError, validate_project
from .assets import DirectoryAssetStore, AssetStoreError
from .capability import RendererCapabilities, probe_capabilities
from .export import (
    ExportError,
    export_viewer,
    find_external_references,
    load_runtime,
    validate_export,
)
from .normalize import set_pixel_limit
from .ingest import IngestError, delete_scene, import_panoramas, rehydrate_assets
from .project import (
    ProjectError,
    add_hotspot,
    create_empty_project,
    dangling_links,
    describe_hotspot,
    find_nearby_hotspots,
    find_scene,
    load_project,
    make_info_hotspot,
    make_link_hotspot,
    remove_hotspot,
    save_project,
)

console = Console()
app = typer.Typer(help="Panorama tour builder")

ASSETS_DIR_NAME = ".panotour_assets"


@dataclass
class TourConfig:
    """Configuration for import and export."""
    # Normalization
    max_texture_size: Optional[int] = None
    force_max_size: Optional[int] = None
    encoding: str = "JPEG"
    quality: float = 0.9
    max_pixels: Optional[int] = None

    # Storage
    assets_dir: Optional[Path] = None

    # Export
    runtime_path: Optional[Path] = None
    downloads_dir: Optional[Path] = None

    def capabilities(self) -> RendererCapabilities:
        """Probe once; a configured max texture size stands in for the renderer query."""
        query = (lambda: self.max_texture_size) if self.max_texture_size else None
        return probe_capabilities(query)

    def store_for(self, project_path: Path) -> DirectoryAssetStore:
        """Asset store next to the project file unless configured."""
        return DirectoryAssetStore(self.assets_dir or project_path.parent / ASSETS_DIR_NAME)


class HotspotKind(str, Enum):
    info = "info"
    link = "link"


def _fail(message: str) -> None:
    console.print(f"[bold red]Error:[/bold red] {message}")
    raise typer.Exit(1)


def _load(project_path: Path):
    try:
        return load_project(project_path)
    except (ProjectError, ValidationError) as e:
        _fail(str(e))


@app.command()
def new(
    project_path: Path = typer.Argument(..., help="Project file to create"),
    title: str = typer.Option("Untitled Tour", help="Tour title"),
    force: bool = typer.Option(False, "--force", help="Overwrite an existing file"),
):
    """Create an empty project."""
    if project_path.exists() and not force:
        _fail(f"Project already exists: {project_path}")
    save_project(create_empty_project(title), project_path)


@app.command("import")
def import_cmd(
    project_path: Path = typer.Argument(..., help="Project file"),
    files: List[Path] = typer.Argument(..., help="Equirectangular images to import"),
    assets_dir: Optional[Path] = typer.Option(None, envvar="PANOTOUR_ASSETS_DIR", help="Asset store directory"),
    max_texture_size: Optional[int] = typer.Option(
        None, envvar="PANOTOUR_MAX_TEXTURE_SIZE", help="Renderer max texture size"
    ),
    force_max_size: Optional[int] = typer.Option(None, help="Exact maximum edge length, skips clamping"),
    encoding: str = typer.Option("JPEG", help="Encoding for resized images: JPEG or WEBP"),
    quality: float = typer.Option(0.9, min=0.0, max=1.0, help="Encoder quality (0-1)"),
    max_pixels: Optional[int] = typer.Option(
        None, envvar="PANOTOUR_MAX_PIXELS", min=1, help="Largest accepted panorama in pixels"
    ),
):
    """Import panoramas, one scene per file."""
    config = TourConfig(
        max_texture_size=max_texture_size,
        force_max_size=force_max_size,
        encoding=encoding,
        quality=quality,
        max_pixels=max_pixels,
        assets_dir=assets_dir,
    )
    if config.max_pixels:
        set_pixel_limit(config.max_pixels)
    project = _load(project_path)
    capabilities = config.capabilities()

    result = asyncio.run(import_panoramas(
        project,
        files,
        config.store_for(project_path),
        capabilities,
        force_max_size=config.force_max_size,
        encoding=config.encoding,
        quality=config.quality,
    ))

    if result.scenes:
        save_project(result.project, project_path)

    if result.failures:
        console.print("[yellow]Failed files:[/yellow]")
        for failure in result.failures:
            console.print(f"  [yellow]• {failure}[/yellow]")
        raise typer.Exit(1)


@app.command()
def export(
    project_path: Path = typer.Argument(..., help="Project file"),
    target_dir: Optional[Path] = typer.Option(None, help="Folder to write the viewer bundle into"),
    runtime: Optional[Path] = typer.Option(None, envvar="PANOTOUR_RUNTIME_JS", help="Path to marzipano.js"),
    downloads_dir: Optional[Path] = typer.Option(None, help="Where to write the single-file viewer"),
    assets_dir: Optional[Path] = typer.Option(None, envvar="PANOTOUR_ASSETS_DIR", help="Asset store directory"),
):
    """Export a standalone viewer (folder bundle or single HTML file)."""
    config = TourConfig(assets_dir=assets_dir, runtime_path=runtime, downloads_dir=downloads_dir)
    project = _load(project_path)

    try:
        runtime_js = load_runtime(config.runtime_path)
        assets = asyncio.run(rehydrate_assets(project, config.store_for(project_path)))
        result = asyncio.run(export_viewer(
            project,
            assets,
            target_dir,
            runtime_js,
            downloads_dir=config.downloads_dir,
        ))
    except (ExportError, AssetStoreError) as e:
        _fail(str(e))

    console.print(Panel.fit(
        f"[bold green]Export complete![/bold green]\n\n"
        f"Mode: {result.mode}\n"
        f"Output: {result.path}",
        border_style="green"
    ))


@app.command()
def validate(
    project_path: Path = typer.Argument(..., help="Project file to validate"),
):
    """Validate a project file."""
    try:
        with open(project_path, 'r', encoding='utf-8') as f:
            data = json.load(f)
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
        _fail(f"Cannot read project: {e}")

    project, error = validate_project(data)
    if error is not None:
        console.print(f"[red]Validation failed ({error.kind.value}):[/red] {error.message}")
        raise typer.Exit(1)

    dangling = dangling_links(project)
    if dangling:
        console.print("[yellow]Link hotspots with missing targets:[/yellow]")
        for scene_id, hotspot_id, target in dangling:
            console.print(f"  [yellow]• {scene_id}/{hotspot_id} -> {target}[/yellow]")

    console.print("[green]Project is valid![/green]")


@app.command()
def info(
    project_path: Path = typer.Argument(..., help="Project file"),
):
    """Show scenes and hotspots of a project."""
    project = _load(project_path)

    console.print(f"[bold]{project.title}[/bold] (updated {project.updated_at})")
    table = Table("Scene", "Name", "Size", "Hotspots")
    for scene in project.scenes:
        size = ""
        if scene.panorama.width and scene.panorama.height:
            size = f"{scene.panorama.width}x{scene.panorama.height}"
        table.add_row(scene.id, scene.name, size, str(len(scene.hotspots)))
    console.print(table)

    for scene in project.scenes:
        for hotspot in scene.hotspots:
            console.print(f"  {scene.name}: {describe_hotspot(hotspot, project)}")


@app.command("hotspot-add")
def hotspot_add(
    project_path: Path = typer.Argument(..., help="Project file"),
    scene_id: str = typer.Argument(..., help="Scene to annotate"),
    kind: HotspotKind = typer.Option(HotspotKind.info, help="Hotspot type"),
    yaw: Optional[float] = typer.Option(None, help="Yaw in radians"),
    pitch: Optional[float] = typer.Option(None, help="Pitch in radians"),
    x: Optional[float] = typer.Option(None, help="Pixel x on the panorama (instead of yaw)"),
    y: Optional[float] = typer.Option(None, help="Pixel y on the panorama (instead of pitch)"),
    title: Optional[str] = typer.Option(None, help="Info title"),
    text: Optional[str] = typer.Option(None, help="Info text"),
    target: Optional[str] = typer.Option(None, help="Target scene id for link hotspots"),
    rotation: float = typer.Option(0.0, help="Link arrow rotation in radians"),
):
    """Add an info or link hotspot to a scene."""
    project = _load(project_path)
    scene = find_scene(project, scene_id)
    if scene is None:
        _fail(f"Scene not found: {scene_id}")

    if x is not None and y is not None:
        if not (scene.panorama.width and scene.panorama.height):
            _fail("Scene has no known panorama size, use --yaw/--pitch")
        yaw, pitch = equirect_pixel_to_angles(x, y, scene.panorama.width, scene.panorama.height)
    if yaw is None or pitch is None:
        _fail("Give --yaw and --pitch (or --x and --y)")

    if kind == HotspotKind.link:
        if not target:
            _fail("Select target scene for link hotspot (--target)")
        if target == scene_id:
            _fail("Link target must be a different scene")
        if find_scene(project, target) is None:
            _fail(f"Target scene not found: {target}")
        hotspot = make_link_hotspot(yaw, pitch, target, rotation)
    else:
        info_count = sum(1 for h in scene.hotspots if h.type == "info")
        hotspot = make_info_hotspot(yaw, pitch, title or f"Info {info_count + 1}", text or "")

    for other in find_nearby_hotspots(scene, yaw, pitch):
        console.print(f"[yellow]Overlaps existing hotspot: {describe_hotspot(other, project)}[/yellow]")

    try:
        project = add_hotspot(project, scene_id, hotspot)
    except ProjectError as e:
        _fail(str(e))

    save_project(project, project_path)
    console.print(f"[green]Added {describe_hotspot(hotspot, project)}[/green]")


@app.command("hotspot-remove")
def hotspot_remove(
    project_path: Path = typer.Argument(..., help="Project file"),
    scene_id: str = typer.Argument(..., help="Scene id"),
    hotspot_id: str = typer.Argument(..., help="Hotspot id"),
):
    """Remove a hotspot from a scene."""
    project = _load(project_path)
    try:
        project = remove_hotspot(project, scene_id, hotspot_id)
    except ProjectError as e:
        _fail(str(e))
    save_project(project, project_path)


@app.command("scene-remove")
def scene_remove(
    project_path: Path = typer.Argument(..., help="Project file"),
    scene_id: str = typer.Argument(..., help="Scene id"),
    assets_dir: Optional[Path] = typer.Option(None, envvar="PANOTOUR_ASSETS_DIR", help="Asset store directory"),
):
    """Remove a scene, its panorama and any links pointing at it."""
    config = TourConfig(assets_dir=assets_dir)
    project = _load(project_path)
    try:
        project = asyncio.run(delete_scene(project, scene_id, config.store_for(project_path)))
    except (IngestError, AssetStoreError) as e:
        _fail(str(e))
    save_project(project, project_path)


@app.command("check-export")
def check_export(
    path: Path = typer.Argument(..., help="Export folder or standalone HTML file"),
):
    """Check an export for missing files and external references."""
    if path.is_dir():
        errors = validate_export(path)
    elif path.is_file():
        refs = find_external_references(path.read_text(encoding="utf-8"))
        errors = [f"External reference: {ref}" for ref in refs]
    else:
        _fail(f"Not found: {path}")

    if errors:
        console.print("[red]Export check failed:[/red]")
        for error in errors:
            console.print(f"  [red]• {error}[/red]")
        raise typer.Exit(1)

    console.print("[green]Export is self-contained and complete![/green]")


@app.command("stages")
def list_stages():
    """List all pipeline stages."""
    stages = [
        ("1. Probe", "Determine the safe panorama size for the renderer"),
        ("2. Normalize", "Decode and downsize oversized panoramas"),
        ("3. Ingest", "Store assets and append one scene per file"),
        ("4. Edit", "Add, update and remove hotspots"),
        ("5. Export", "Bundle a standalone viewer"),
    ]

    console.print("[bold]Pipeline Stages:[/bold]\n")
    for name, desc in stages:
        console.print(f"  [blue]{name}[/blue]: {desc}")


if __name__ == "__main__":
    app()
