"""
Export Pipeline Stage

Bundles a project and its stored panoramas into a viewer that runs
without the editor.

Two delivery modes, chosen by what the host allows:
- directory: a folder with the hosted viewer, assets/ and an extra
  self-contained page (when the target directory is writable)
- single file: only the self-contained page (otherwise)

Page and script builders are pure functions of their inputs.
"""

import asyncio
import base64
import html
import json
import os
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterable, List, Optional
from rich.console import Console

from utils.naming import safe_file_name
from utils.validation import Project
from .assets import StoredAsset, guess_image_mime

console = Console()

VIEWER_BRAND = "Tour Viewer"
MODE_DIRECTORY = "directory"
MODE_SINGLE_FILE = "single-file"

REQUIRED_FILES = [
    "index.html",
    "style.css",
    "marzipano.js",
    "project.js",
    "viewer.js",
    "README.txt",
    "viewer_standalone.html",
]


class ExportError(Exception):
    """Error during export."""
    pass


VIEWER_CSS = """
html, body { margin: 0; padding: 0; height: 100%; background: #0b0f17; color: #e6eefc; font-family: system-ui, -apple-system, Segoe UI, Roboto, Arial, sans-serif; }
.topbar { position: fixed; top: 0; left: 0; right: 0; height: 48px; display: flex; align-items: center; gap: 10px; padding: 0 12px; background: rgba(10,14,22,0.88); backdrop-filter: blur(10px); border-bottom: 1px solid rgba(255,255,255,0.08); z-index: 10; }
.brand { font-weight: 700; letter-spacing: 0.2px; }
.spacer { flex: 1; }
.btn { background: rgba(255,255,255,0.06); color: #e6eefc; border: 1px solid rgba(255,255,255,0.10); border-radius: 10px; padding: 6px 10px; cursor: pointer; }
.btn:hover { background: rgba(255,255,255,0.10); }
.select { background: rgba(255,255,255,0.06); color: #e6eefc; border: 1px solid rgba(255,255,255,0.10); border-radius: 10px; padding: 6px 10px; }
#pano { position: absolute; top: 48px; left: 0; right: 0; bottom: 0; }
.hotspotDot { width: 18px; height: 18px; border-radius: 999px; border: 2px solid rgba(243,196,106,0.95); background: rgba(16,20,28,0.85); box-shadow: 0 8px 18px rgba(0,0,0,0.35); display: flex; align-items: center; justify-content: center; cursor: pointer; }
.hotspotDot:hover { transform: scale(1.06); }
.hsArrow { width: 18px; height: 18px; display: flex; align-items: center; justify-content: center; }
.infoPanel { position: fixed; left: 12px; bottom: 12px; width: min(420px, calc(100% - 24px)); background: rgba(10,14,22,0.92); border: 1px solid rgba(255,255,255,0.10); border-radius: 14px; padding: 12px 12px 10px; box-shadow: 0 16px 40px rgba(0,0,0,0.45); z-index: 12; display: none; }
.infoPanel.show { display: block; }
.infoTitle { font-weight: 700; margin-bottom: 6px; }
.infoText { opacity: 0.92; line-height: 1.35; white-space: pre-wrap; }
.infoClose { position: absolute; top: 8px; right: 10px; cursor: pointer; opacity: 0.7; }
.infoClose:hover { opacity: 1; }
""".strip()

# Shared by the hosted and the self-contained page. Reads the project from
# window.TOUR_PROJECT and image URLs (relative paths or data URIs) from
# window.TOUR_ASSETS.
VIEWER_JS = r"""
(function(){
  var project = window.TOUR_PROJECT;
  var assets = window.TOUR_ASSETS || {};
  if (!project || !project.scenes || !project.scenes.length) {
    document.body.innerHTML = '<div style="padding:24px;color:#fff">No scenes in project</div>';
    return;
  }

  var container = document.getElementById('pano');
  var viewer = new window.Marzipano.Viewer(container, { stageType: 'webgl' });
  var sceneMap = {};
  project.scenes.forEach(function(s){ sceneMap[s.id] = s; });

  var sceneSelect = document.getElementById('sceneSelect');
  project.scenes.forEach(function(s){
    var opt = document.createElement('option');
    opt.value = s.id;
    opt.textContent = s.name || s.id;
    sceneSelect.appendChild(opt);
  });

  var infoPanel = document.getElementById('infoPanel');
  var infoTitle = document.getElementById('infoTitle');
  var infoText = document.getElementById('infoText');
  document.getElementById('infoClose').addEventListener('click', function(){
    infoPanel.classList.remove('show');
  });

  function showInfo(title, text){
    infoTitle.textContent = title || 'Info';
    infoText.textContent = text || '';
    infoPanel.classList.add('show');
  }

  function hideInfo(){
    infoPanel.classList.remove('show');
  }

  function makeLinkEl(h){
    var el = document.createElement('div');
    el.className = 'hotspotDot hotspotLink';
    var arrow = document.createElement('div');
    arrow.className = 'hsArrow';
    arrow.innerHTML = '<svg viewBox="0 0 24 24" width="18" height="18" aria-hidden="true"><path fill="rgba(243,196,106,0.95)" d="M4 12a1 1 0 0 1 1-1h9.2l-2.4-2.4a1 1 0 1 1 1.4-1.4l4.6 4.6a1 1 0 0 1 0 1.4l-4.6 4.6a1 1 0 1 1-1.4-1.4l2.4-2.4H5a1 1 0 0 1-1-1z"/></svg>';
    var rot = (typeof h.rotation === 'number') ? h.rotation : 0;
    arrow.style.transform = 'rotate(' + rot + 'rad)';
    el.appendChild(arrow);
    var target = sceneMap[h.targetSceneId];
    el.title = 'Go to: ' + (target ? (target.name || target.id) : h.targetSceneId);
    el.addEventListener('click', function(ev){
      ev.preventDefault();
      ev.stopPropagation();
      if (target) loadScene(target.id);
    });
    return el;
  }

  function makeInfoEl(h){
    var el = document.createElement('div');
    el.className = 'hotspotDot hotspotInfo';
    el.title = h.title || 'Info';
    el.addEventListener('click', function(ev){
      ev.preventDefault();
      ev.stopPropagation();
      showInfo(h.title, h.text);
    });
    return el;
  }

  function makeHotspotEl(h){
    switch (h.type) {
      case 'link': return makeLinkEl(h);
      case 'info': return makeInfoEl(h);
      default: return null;
    }
  }

  var current = { id: null, scene: null, container: null, hotspots: [] };

  function clearHotspots(){
    var container = current.container;
    current.hotspots.forEach(function(handle){
      if (container && container.hasHotspot(handle)) container.destroyHotspot(handle);
    });
    current.hotspots = [];
  }

  function loadScene(sceneId){
    var s = sceneMap[sceneId];
    if (!s) return;
    hideInfo();
    clearHotspots();
    sceneSelect.value = s.id;

    var imgUrl = assets[s.id];
    if (!imgUrl) {
      showInfo(s.name || s.id, 'No panorama image for this scene.');
      return;
    }

    var source = window.Marzipano.ImageUrlSource.fromString(imgUrl);
    var geometry = new window.Marzipano.EquirectGeometry([{ width: 8000 }]);
    var limiter = window.Marzipano.RectilinearView.limit.traditional(1024, (120 * Math.PI) / 180);
    var view = new window.Marzipano.RectilinearView(s.initialView || { yaw: 0, pitch: 0, fov: 1.25 }, limiter);
    var scene = viewer.createScene({ source: source, geometry: geometry, view: view });
    current.id = s.id;
    current.scene = scene;
    scene.switchTo({ transitionDuration: 260 });

    var hsContainer = scene.hotspotContainer();
    current.container = hsContainer;
    (s.hotspots || []).forEach(function(h){
      var el = makeHotspotEl(h);
      if (!el) return;
      current.hotspots.push(hsContainer.createHotspot(el, { yaw: h.yaw, pitch: h.pitch }));
    });
  }

  sceneSelect.addEventListener('change', function(){
    loadScene(sceneSelect.value);
  });

  document.getElementById('btnFullscreen').addEventListener('click', function(){
    var el = document.documentElement;
    if (!document.fullscreenElement) {
      (el.requestFullscreen || el.webkitRequestFullscreen || el.msRequestFullscreen).call(el);
    } else {
      (document.exitFullscreen || document.webkitExitFullscreen || document.msExitFullscreen).call(document);
    }
  });

  loadScene(project.scenes[0].id);
})();
""".strip()

README_TEMPLATE = """{title}: exported tour viewer

Files:
- index.html              Viewer for hosting (any static web server).
- viewer_standalone.html  Offline viewer, everything embedded (double-click works).
- project.js              Tour data ({scene_count} scene(s)).
- assets/                 One panorama per scene ({asset_count} file(s)).

Local preview options:
1) Recommended: open viewer_standalone.html (no server needed).
2) Or serve this folder and open http://localhost:8000 :
   python -m http.server 8000
"""


@dataclass
class ViewerFiles:
    """Text files of the hosted viewer."""
    index_html: str
    css: str
    runtime_js: str
    project_js: str
    viewer_js: str
    readme: str


@dataclass
class ExportAsset:
    scene_id: str
    file_name: str
    payload: bytes


@dataclass
class ExportResult:
    mode: str
    path: Path
    files: List[Path] = field(default_factory=list)


def escape_html(text: str) -> str:
    return html.escape(text, quote=True)


def inline_json(value) -> str:
    """JSON safe to embed inside a <script> element."""
    text = json.dumps(value, indent=2, ensure_ascii=False)
    return (
        text.replace("<", "\\u003c")
        .replace(">", "\\u003e")
        .replace("&", "\\u0026")
        .replace("\u2028", "\\u2028")
        .replace("\u2029", "\\u2029")
    )


def inline_script(source: str) -> str:
    """Neutralize closing tags so inlined code cannot end its <script> early."""
    return re.sub(r"</(script)", r"<\\/\1", source, flags=re.IGNORECASE)


def inline_style(css: str) -> str:
    return re.sub(r"</(style)", r"<\\/\1", css, flags=re.IGNORECASE)


def asset_file_names(scene_ids: Iterable[str]) -> Dict[str, str]:
    """
    Assign a file name under assets/ to each scene id.

    Ids that sanitize to the same name (e.g. "hall 1" and "hall#1") get
    _2, _3, ... suffixes in the given order. Names are compared
    case-insensitively so bundles survive case-folding file systems.
    """
    names = {}
    taken = set()
    for scene_id in scene_ids:
        stem = safe_file_name(f"{scene_id}.jpg")[:-len(".jpg")]
        name = f"{stem}.jpg"
        counter = 2
        while name.lower() in taken:
            name = f"{stem}_{counter}.jpg"
            counter += 1
        taken.add(name.lower())
        names[scene_id] = name
    return names


def asset_to_data_uri(payload: bytes) -> str:
    mime = guess_image_mime(payload)
    return f"data:{mime};base64,{base64.b64encode(payload).decode('ascii')}"


def collect_export_assets(project: Project, assets: Dict[str, StoredAsset]) -> List[ExportAsset]:
    """One ExportAsset per scene that has a stored asset, in scene order."""
    present = [
        scene.id for scene in project.scenes
        if assets.get(scene.id) is not None and assets[scene.id].payload
    ]
    names = asset_file_names(present)
    return [
        ExportAsset(scene_id=scene_id, file_name=names[scene_id], payload=assets[scene_id].payload)
        for scene_id in present
    ]


def _page_body() -> str:
    return """    <div class="topbar">
      <div class="brand">{brand}</div>
      <select id="sceneSelect" class="select"></select>
      <div class="spacer"></div>
      <button class="btn" id="btnFullscreen">Fullscreen</button>
    </div>
    <div id="pano"></div>
    <div id="infoPanel" class="infoPanel">
      <div class="infoClose" id="infoClose">✕</div>
      <div class="infoTitle" id="infoTitle"></div>
      <div class="infoText" id="infoText"></div>
    </div>""".format(brand=VIEWER_BRAND)


def build_project_js(project: Project, asset_urls: Dict[str, str]) -> str:
    return (
        f"window.TOUR_PROJECT = {inline_json(project.to_dict())};\n"
        f"window.TOUR_ASSETS = {inline_json(asset_urls)};\n"
    )


def build_viewer_files(
    project: Project,
    runtime_js: str,
    export_assets: Optional[List[ExportAsset]] = None,
) -> ViewerFiles:
    """
    Build the text files of the hosted viewer.

    Panoramas are referenced by relative path under assets/.
    """
    export_assets = export_assets or []
    title = escape_html(project.title or VIEWER_BRAND)
    asset_urls = {a.scene_id: f"assets/{a.file_name}" for a in export_assets}

    index_html = f"""<!doctype html>
<html lang="en">
  <head>
    <meta charset="UTF-8" />
    <meta name="viewport" content="width=device-width, initial-scale=1.0" />
    <title>{title}</title>
    <link rel="stylesheet" href="style.css" />
  </head>
  <body>
{_page_body()}

    <script src="marzipano.js"></script>
    <script src="project.js"></script>
    <script src="viewer.js"></script>
  </body>
</html>
"""

    readme = README_TEMPLATE.format(
        title=project.title or VIEWER_BRAND,
        scene_count=len(project.scenes),
        asset_count=len(export_assets),
    )

    return ViewerFiles(
        index_html=index_html,
        css=VIEWER_CSS,
        runtime_js=runtime_js,
        project_js=build_project_js(project, asset_urls),
        viewer_js=VIEWER_JS + "\n",
        readme=readme,
    )


def build_standalone_html(
    project: Project,
    embedded_assets: Dict[str, str],
    css: str,
    runtime_js: str,
) -> str:
    """
    Build a single HTML page with everything inlined.

    Panoramas are data URIs; runtime, stylesheet, project and viewer
    logic are inline, so the page opens from file:// with no requests.
    """
    title = escape_html(project.title or VIEWER_BRAND)
    return f"""<!doctype html>
<html lang="en">
  <head>
    <meta charset="UTF-8" />
    <meta name="viewport" content="width=device-width, initial-scale=1.0" />
    <title>{title}</title>
    <style>{inline_style(css)}</style>
  </head>
  <body>
{_page_body()}

    <script>{inline_script(runtime_js)}</script>
    <script>{build_project_js(project, embedded_assets)}</script>
    <script>{VIEWER_JS}</script>
  </body>
</html>
"""


_INLINE_SCRIPT = re.compile(r"(<script\b[^>]*>)(.*?)(</script\s*>)", re.IGNORECASE | re.DOTALL)

_REFERENCE_PATTERNS = [
    re.compile(r"""(?<![\w-])(?:src|href|poster|action|data)\s*=\s*["']([^"']*)["']""", re.IGNORECASE),
    re.compile(r"""url\(\s*["']?([^"')\s]+)""", re.IGNORECASE),
    re.compile(r"""@import\s+["']([^"']+)["']""", re.IGNORECASE),
]

_SRCSET = re.compile(r"""(?<![\w-])srcset\s*=\s*["']([^"']*)["']""", re.IGNORECASE)


def _is_inline(ref: str) -> bool:
    return not ref or ref.startswith("#") or ref.lower().startswith("data:")


def find_external_references(page: str) -> List[str]:
    """
    List resource references in a page that are not inline.

    data: URIs and in-page fragments are inline; anything else would make
    the browser fetch a resource. Bodies of inline <script> elements are
    code, not markup, and are not scanned.
    """
    markup = _INLINE_SCRIPT.sub(r"\1\3", page)

    found = []
    for pattern in _REFERENCE_PATTERNS:
        for match in pattern.finditer(markup):
            ref = match.group(1).strip()
            if not _is_inline(ref):
                found.append(ref)

    for match in _SRCSET.finditer(markup):
        for candidate in match.group(1).split(","):
            parts = candidate.split()
            if parts and not _is_inline(parts[0]):
                found.append(parts[0])
    return found


def load_runtime(runtime_path: Optional[Path]) -> str:
    """Read the renderer runtime script embedded in exports."""
    if runtime_path is None:
        raise ExportError("No renderer runtime configured (set PANOTOUR_RUNTIME_JS or --runtime)")
    if not runtime_path.exists():
        raise ExportError(f"Renderer runtime not found: {runtime_path}")
    return runtime_path.read_text(encoding="utf-8")


def directory_write_supported(target_dir: Optional[Path]) -> bool:
    """Whether the host lets us write a bundle into target_dir."""
    if target_dir is None or not target_dir.is_dir():
        return False
    return os.access(target_dir, os.W_OK | os.X_OK)


def export_folder_name(now: datetime) -> str:
    stamp = now.astimezone(timezone.utc).strftime("%Y-%m-%dT%H-%M-%S-%f")[:-3] + "Z"
    return safe_file_name(f"tour_export_{stamp}")


def standalone_file_name(project: Project) -> str:
    return safe_file_name(f"{project.title or 'tour'}_viewer.html")


def embed_assets(export_assets: List[ExportAsset]) -> Dict[str, str]:
    return {a.scene_id: asset_to_data_uri(a.payload) for a in export_assets}


def _write_text(path: Path, text: str) -> Path:
    path.write_text(text, encoding="utf-8")
    return path


def _write_bytes(path: Path, data: bytes) -> Path:
    path.write_bytes(data)
    return path


async def write_directory_bundle(
    out_dir: Path,
    files: ViewerFiles,
    export_assets: List[ExportAsset],
    standalone_html: str,
) -> List[Path]:
    """Write the hosted viewer, its assets and the standalone page."""
    loop = asyncio.get_running_loop()
    assets_dir = out_dir / "assets"
    assets_dir.mkdir(parents=True, exist_ok=True)

    written = []
    for name, text in [
        ("index.html", files.index_html),
        ("style.css", files.css),
        ("marzipano.js", files.runtime_js),
        ("project.js", files.project_js),
        ("viewer.js", files.viewer_js),
        ("README.txt", files.readme),
    ]:
        written.append(await loop.run_in_executor(None, _write_text, out_dir / name, text))

    for asset in export_assets:
        written.append(await loop.run_in_executor(
            None, _write_bytes, assets_dir / asset.file_name, asset.payload
        ))

    written.append(await loop.run_in_executor(
        None, _write_text, out_dir / "viewer_standalone.html", standalone_html
    ))
    return written


async def export_viewer(
    project: Project,
    assets: Dict[str, StoredAsset],
    target_dir: Optional[Path],
    runtime_js: str,
    downloads_dir: Optional[Path] = None,
    now: Optional[datetime] = None,
) -> ExportResult:
    """
    Export a standalone viewer for a project.

    Directory mode is used when target_dir is a writable directory; the
    bundle goes into a new tour_export_<timestamp>/ folder inside it.
    Otherwise only the self-contained page is written to downloads_dir
    (default: current directory).

    Args:
        project: Project snapshot to export
        assets: Stored assets keyed by scene id
        target_dir: Folder chosen for the directory bundle
        runtime_js: Renderer runtime source to embed
        downloads_dir: Destination of the single-file page
        now: Timestamp for the export folder name

    Returns:
        ExportResult with the mode and the written path(s)
    """
    if not project.scenes:
        raise ExportError("Project has no scenes to export")

    export_assets = collect_export_assets(project, assets)
    missing = len(project.scenes) - len(export_assets)
    if missing:
        console.print(f"[yellow]Warning: {missing} scene(s) have no stored panorama[/yellow]")

    files = build_viewer_files(project, runtime_js, export_assets)
    embedded = embed_assets(export_assets)
    standalone = build_standalone_html(project, embedded, files.css, runtime_js)

    if directory_write_supported(target_dir):
        out_dir = target_dir / export_folder_name(now or datetime.now(timezone.utc))
        console.print(f"[blue]Exporting viewer folder: {out_dir}[/blue]")
        try:
            written = await write_directory_bundle(out_dir, files, export_assets, standalone)
        except OSError as e:
            raise ExportError(f"Failed to write export folder: {e}")

        console.print(f"[bold green]Exported viewer to folder: {out_dir}[/bold green]")
        console.print(f"  Scenes: {len(project.scenes)}, panoramas: {len(export_assets)}")
        return ExportResult(mode=MODE_DIRECTORY, path=out_dir, files=written)

    if target_dir is not None:
        console.print(f"[yellow]Cannot write to {target_dir}, exporting a single HTML file[/yellow]")

    downloads_dir = downloads_dir or Path.cwd()
    out_path = downloads_dir / standalone_file_name(project)
    loop = asyncio.get_running_loop()
    try:
        downloads_dir.mkdir(parents=True, exist_ok=True)
        await loop.run_in_executor(None, _write_text, out_path, standalone)
    except OSError as e:
        raise ExportError(f"Failed to write {out_path}: {e}")

    size_mb = out_path.stat().st_size / (1024 * 1024)
    console.print(f"[bold green]Downloaded viewer HTML: {out_path}[/bold green] ({size_mb:.1f} MB)")
    return ExportResult(mode=MODE_SINGLE_FILE, path=out_path, files=[out_path])


def read_exported_project(export_dir: Path) -> Dict:
    """Parse project.js of a directory bundle back into a dict."""
    text = (export_dir / "project.js").read_text(encoding="utf-8")
    match = re.match(
        r"window\.TOUR_PROJECT = (.*?);\nwindow\.TOUR_ASSETS = (.*?);\n?$",
        text,
        re.DOTALL,
    )
    if not match:
        raise ExportError(f"Unrecognized project.js in {export_dir}")
    return {
        "project": json.loads(match.group(1)),
        "assets": json.loads(match.group(2)),
    }


def validate_export(export_dir: Path) -> List[str]:
    """
    Validate a directory bundle.

    Returns:
        List of validation errors (empty if valid)
    """
    errors = []

    for name in REQUIRED_FILES:
        if not (export_dir / name).exists():
            errors.append(f"Missing required file: {name}")

    if (export_dir / "project.js").exists():
        try:
            data = read_exported_project(export_dir)
        except (ExportError, json.JSONDecodeError) as e:
            errors.append(f"Invalid project.js: {e}")
        else:
            scene_ids = [s.get("id") for s in data["project"].get("scenes", [])]
            if len(scene_ids) != len(set(scene_ids)):
                errors.append("Duplicate scene ids in project.js")

            assets_dir = export_dir / "assets"
            asset_files = set()
            if assets_dir.is_dir():
                asset_files = {p.name for p in assets_dir.iterdir() if p.is_file()}
            referenced_list = [Path(url).name for url in data["assets"].values()]
            referenced = set(referenced_list)
            for name in sorted(n for n in referenced if referenced_list.count(n) > 1):
                errors.append(f"Asset file shared by several scenes: assets/{name}")
            for name in sorted(referenced - asset_files):
                errors.append(f"Missing asset file: assets/{name}")
            for name in sorted(asset_files - referenced):
                errors.append(f"Unreferenced asset file: assets/{name}")

    standalone = export_dir / "viewer_standalone.html"
    if standalone.exists():
        refs = find_external_references(standalone.read_text(encoding="utf-8"))
        for ref in refs:
            errors.append(f"External reference in viewer_standalone.html: {ref}")

    return errors
