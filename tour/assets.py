"""
Panorama Asset Storage

Stored assets are normalized panorama payloads keyed by scene id. They
live outside the project document and are joined with it at export
time. Stores expose an async put/get/delete interface.

Also holds the preview registry: one short-lived display handle per
scene, revoked whenever the scene's asset is replaced or removed.
"""

import asyncio
import hashlib
import json
import secrets
import shutil
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional, Protocol
from rich.console import Console

from utils.naming import safe_file_name

console = Console()


class AssetStoreError(Exception):
    """Error while persisting or loading an asset."""
    pass


@dataclass
class StoredAsset:
    """Normalized panorama payload plus metadata."""
    scene_id: str
    file_name: str
    payload: bytes
    width: int
    height: int
    original_width: int
    original_height: int
    updated_at: str

    def to_metadata(self) -> Dict:
        """Metadata without the payload, with on-disk key names."""
        return {
            "sceneId": self.scene_id,
            "fileName": self.file_name,
            "width": self.width,
            "height": self.height,
            "originalWidth": self.original_width,
            "originalHeight": self.original_height,
            "updatedAt": self.updated_at,
            "size": len(self.payload),
        }

    @classmethod
    def from_metadata(cls, metadata: Dict, payload: bytes) -> "StoredAsset":
        return cls(
            scene_id=metadata["sceneId"],
            file_name=metadata["fileName"],
            payload=payload,
            width=int(metadata["width"]),
            height=int(metadata["height"]),
            original_width=int(metadata["originalWidth"]),
            original_height=int(metadata["originalHeight"]),
            updated_at=metadata["updatedAt"],
        )


def guess_image_mime(payload: bytes) -> str:
    """Sniff the MIME type of an image payload from its magic bytes."""
    if payload.startswith(b"\xff\xd8\xff"):
        return "image/jpeg"
    if payload.startswith(b"\x89PNG\r\n\x1a\n"):
        return "image/png"
    if payload[:4] == b"RIFF" and payload[8:12] == b"WEBP":
        return "image/webp"
    if payload[:6] in (b"GIF87a", b"GIF89a"):
        return "image/gif"
    if payload.startswith(b"BM"):
        return "image/bmp"
    if payload[:4] in (b"II*\x00", b"MM\x00*"):
        return "image/tiff"
    return "application/octet-stream"


def storage_key(scene_id: str) -> str:
    """
    File-safe key for a scene id.

    Ids that are already file-safe are used as-is; any other id gets a
    digest of the raw id appended, so "hall 1" and "hall#1" stay apart.
    """
    key = safe_file_name(scene_id)
    if key == scene_id:
        return key
    digest = hashlib.sha1(scene_id.encode("utf-8")).hexdigest()[:12]
    return f"{key}_{digest}"


class AssetStore(Protocol):
    """Async key-value store of assets keyed by scene id."""

    async def put(self, asset: StoredAsset) -> None: ...

    async def get(self, scene_id: str) -> Optional[StoredAsset]: ...

    async def delete(self, scene_id: str) -> None: ...


class MemoryAssetStore:
    """In-process store, mainly for tests and one-shot exports."""

    def __init__(self):
        self._assets: Dict[str, StoredAsset] = {}

    async def put(self, asset: StoredAsset) -> None:
        self._assets[asset.scene_id] = asset

    async def get(self, scene_id: str) -> Optional[StoredAsset]:
        return self._assets.get(scene_id)

    async def delete(self, scene_id: str) -> None:
        self._assets.pop(scene_id, None)

    def __len__(self) -> int:
        return len(self._assets)


class DirectoryAssetStore:
    """
    Store assets as files in a directory.

    Layout:
    assets_dir/
    ├── <key>.bin   (payload)
    └── <key>.json  (metadata, including the raw sceneId)

    The key is storage_key(sceneId).
    """

    def __init__(self, root: Path):
        self.root = root

    def _paths(self, scene_id: str):
        key = storage_key(scene_id)
        return self.root / f"{key}.bin", self.root / f"{key}.json"

    def _write(self, asset: StoredAsset) -> None:
        payload_path, meta_path = self._paths(asset.scene_id)
        self.root.mkdir(parents=True, exist_ok=True)
        payload_path.write_bytes(asset.payload)
        with open(meta_path, 'w', encoding='utf-8') as f:
            json.dump(asset.to_metadata(), f, indent=2)

    def _read(self, scene_id: str) -> Optional[StoredAsset]:
        payload_path, meta_path = self._paths(scene_id)
        if not meta_path.exists() or not payload_path.exists():
            return None
        with open(meta_path, 'r', encoding='utf-8') as f:
            metadata = json.load(f)
        return StoredAsset.from_metadata(metadata, payload_path.read_bytes())

    def _remove(self, scene_id: str) -> None:
        for path in self._paths(scene_id):
            path.unlink(missing_ok=True)

    async def put(self, asset: StoredAsset) -> None:
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, self._write, asset)
        except OSError as e:
            raise AssetStoreError(f"Failed to store asset for {asset.scene_id}: {e}")

    async def get(self, scene_id: str) -> Optional[StoredAsset]:
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, self._read, scene_id)
        except (OSError, json.JSONDecodeError, KeyError) as e:
            raise AssetStoreError(f"Failed to load asset for {scene_id}: {e}")

    async def delete(self, scene_id: str) -> None:
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, self._remove, scene_id)
        except OSError as e:
            raise AssetStoreError(f"Failed to delete asset for {scene_id}: {e}")


_EXTENSIONS = {
    "image/jpeg": ".jpg",
    "image/png": ".png",
    "image/webp": ".webp",
    "image/gif": ".gif",
    "image/bmp": ".bmp",
    "image/tiff": ".tif",
}


@dataclass
class PreviewHandle:
    """Display reference for one scene's current asset."""
    scene_id: str
    path: Path
    revoked: bool = False

    @property
    def url(self) -> str:
        return self.path.as_uri()

    def revoke(self) -> None:
        if not self.revoked:
            self.path.unlink(missing_ok=True)
            self.revoked = True


class PreviewRegistry:
    """
    Owns preview handles, at most one per scene.

    Installing a new asset for a scene revokes that scene's previous
    handle first. Handles are never shared between scenes.
    """

    def __init__(self, directory: Optional[Path] = None):
        self._owns_directory = directory is None
        self.directory = directory or Path(tempfile.mkdtemp(prefix="panotour_preview_"))
        self._handles: Dict[str, PreviewHandle] = {}

    def install(self, asset: StoredAsset) -> PreviewHandle:
        self.release(asset.scene_id)

        ext = _EXTENSIONS.get(guess_image_mime(asset.payload), ".bin")
        name = f"{storage_key(asset.scene_id)}_{secrets.token_hex(4)}{ext}"
        path = self.directory / name
        self.directory.mkdir(parents=True, exist_ok=True)
        path.write_bytes(asset.payload)

        handle = PreviewHandle(scene_id=asset.scene_id, path=path)
        self._handles[asset.scene_id] = handle
        return handle

    def get(self, scene_id: str) -> Optional[PreviewHandle]:
        return self._handles.get(scene_id)

    def release(self, scene_id: str) -> None:
        handle = self._handles.pop(scene_id, None)
        if handle is not None:
            handle.revoke()

    def close(self) -> None:
        for scene_id in list(self._handles):
            self.release(scene_id)
        if self._owns_directory:
            shutil.rmtree(self.directory, ignore_errors=True)

    def __len__(self) -> int:
        return len(self._handles)

    def __enter__(self) -> "PreviewRegistry":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
