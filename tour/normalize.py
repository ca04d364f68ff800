"""
Panorama Normalization Stage

Decodes an imported equirectangular image and, only when it exceeds the
renderer's safe dimension, downsizes and re-encodes it. Images that are
already small enough are passed through byte for byte.
"""

import asyncio
import warnings
from dataclasses import dataclass
from io import BytesIO
from pathlib import Path
from typing import Optional, Tuple, Union
from PIL import Image, UnidentifiedImageError
from rich.console import Console

from .capability import RendererCapabilities

console = Console()

# Largest accepted panorama: 32768x16384. Pillow's default guard (about
# 89 MP) rejects common high-resolution equirects.
MAX_PANORAMA_PIXELS = 32768 * 16384

# Modes resized before conversion to RGB.
RESIZE_IN_PLACE_MODES = ("1", "L", "LA", "RGB", "RGBA")

ENCODINGS = {
    "jpeg": "JPEG",
    "jpg": "JPEG",
    "image/jpeg": "JPEG",
    "webp": "WEBP",
    "image/webp": "WEBP",
}


class NormalizeError(Exception):
    """Error while normalizing one panorama."""
    pass


class DecodeError(NormalizeError):
    """The input could not be decoded as an image."""
    pass


class EncodeError(NormalizeError):
    """The resized image could not be encoded."""
    pass


@dataclass
class PanoramaSource:
    """Raw bytes of an imported file plus its original name."""
    name: str
    data: bytes

    @property
    def stem(self) -> str:
        return Path(self.name).stem


@dataclass
class NormalizedImage:
    """Result of normalization: payload and its final/original dimensions."""
    payload: bytes
    width: int
    height: int
    original_width: int
    original_height: int
    file_name: str

    @property
    def was_resized(self) -> bool:
        return (self.width, self.height) != (self.original_width, self.original_height)


async def read_source(source: Union[Path, PanoramaSource]) -> PanoramaSource:
    """Read a file into a PanoramaSource (no-op for an existing source)."""
    if isinstance(source, PanoramaSource):
        return source

    loop = asyncio.get_running_loop()
    try:
        data = await loop.run_in_executor(None, source.read_bytes)
    except OSError as e:
        raise DecodeError(f"Cannot read {source}: {e}")
    return PanoramaSource(name=source.name, data=data)


def compute_scale(width: int, height: int, max_dimension: int) -> float:
    """Scale factor that fits the longer edge into max_dimension, never above 1."""
    return min(1.0, max_dimension / max(width, height))


def scaled_size(width: int, height: int, max_dimension: int) -> Tuple[int, int]:
    """
    Target size for a panorama under a maximum edge length.

    Example: 12000x6000 with max 8192 gives 8192x4096.
    """
    scale = compute_scale(width, height, max_dimension)
    return round(width * scale), round(height * scale)


def resolve_encoding(encoding: str) -> str:
    """Map a format or MIME name to a Pillow format."""
    key = encoding.lower()
    if key not in ENCODINGS:
        raise EncodeError(f"Unsupported encoding: {encoding}")
    return ENCODINGS[key]


def pillow_quality(quality: float) -> int:
    """Map a 0..1 quality to Pillow's 1..100 scale."""
    return max(1, min(100, round(quality * 100)))


def set_pixel_limit(max_pixels: int) -> None:
    """
    Set the largest image, in pixels, that decode_image accepts.

    This is Pillow's decompression-bomb guard, shared by the process.
    """
    if max_pixels <= 0:
        raise ValueError(f"Invalid pixel limit: {max_pixels}")
    Image.MAX_IMAGE_PIXELS = max_pixels


set_pixel_limit(MAX_PANORAMA_PIXELS)


def decode_image(
    data: bytes,
    max_dimension: Optional[int] = None
) -> Tuple[Image.Image, Tuple[int, int]]:
    """
    Decode image bytes into a fully loaded Pillow image.

    When max_dimension is given and the input is a JPEG larger than it,
    the decoder is asked for a reduced draft (1/2, 1/4 or 1/8 scale) that
    is still at least the target size, which bounds memory for huge
    panoramas. The caller owns the returned image and must close it.

    Returns:
        Tuple of (image, original (width, height))

    Raises:
        DecodeError: If the data is not an image or exceeds the pixel limit
    """
    try:
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", Image.DecompressionBombWarning)
            image = Image.open(BytesIO(data))
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as e:
        raise DecodeError(f"Failed to decode image: {e}")

    original_size = image.size
    width, height = original_size
    limit = Image.MAX_IMAGE_PIXELS
    if limit and width * height > limit:
        image.close()
        raise DecodeError(f"Image too large: {width}x{height} exceeds {limit} pixels")

    if max_dimension and image.format == "JPEG" and compute_scale(width, height, max_dimension) < 1:
        image.draft("RGB", scaled_size(width, height, max_dimension))

    try:
        image.load()
    except (Image.DecompressionBombError, OSError, ValueError, SyntaxError) as e:
        image.close()
        raise DecodeError(f"Failed to decode image: {e}")

    return image, original_size


def _save(image: Image.Image, fmt: str, quality: float) -> bytes:
    buffer = BytesIO()
    image.save(buffer, format=fmt, quality=pillow_quality(quality))
    return buffer.getvalue()


def encode_resized(
    image: Image.Image,
    size: Tuple[int, int],
    encoding: str = "JPEG",
    quality: float = 0.9
) -> bytes:
    """
    Resample to size, flatten to RGB and encode.

    Common modes are resized before conversion so the full-size image is
    never expanded to RGB.
    """
    fmt = resolve_encoding(encoding)
    try:
        if image.mode in RESIZE_IN_PLACE_MODES:
            with image.resize(size, Image.Resampling.LANCZOS) as resized, resized.convert("RGB") as rgb:
                return _save(rgb, fmt, quality)
        with image.convert("RGB") as rgb, rgb.resize(size, Image.Resampling.LANCZOS) as resized:
            return _save(resized, fmt, quality)
    except (OSError, ValueError, KeyError) as e:
        raise EncodeError(f"Failed to encode image: {e}")


async def normalize_panorama(
    source: Union[Path, PanoramaSource],
    capabilities: RendererCapabilities,
    force_max_size: Optional[int] = None,
    encoding: str = "JPEG",
    quality: float = 0.9,
) -> NormalizedImage:
    """
    Normalize one panorama for safe rendering.

    Args:
        source: Path to the image or its raw bytes
        capabilities: Renderer capabilities providing the safe dimension
        force_max_size: Use this maximum edge instead of the safe dimension
        encoding: Target format when a resize is needed ("JPEG" or "WEBP")
        quality: Encoder quality in 0..1

    Returns:
        NormalizedImage (original bytes when no resize was needed)

    Raises:
        DecodeError: If the input is not a decodable image or is larger
            than the pixel limit (see set_pixel_limit)
        EncodeError: If the resized image cannot be encoded
    """
    source = await read_source(source)
    safe_max = force_max_size or capabilities.safe_max_dimension
    loop = asyncio.get_running_loop()

    image, (original_width, original_height) = await loop.run_in_executor(
        None, decode_image, source.data, safe_max
    )
    try:
        width, height = scaled_size(original_width, original_height, safe_max)

        if compute_scale(original_width, original_height, safe_max) == 1:
            payload = source.data
        else:
            payload = await loop.run_in_executor(
                None, encode_resized, image, (width, height), encoding, quality
            )
            console.print(
                f"  Resized {source.name}: {original_width}x{original_height} -> {width}x{height}"
            )
    finally:
        image.close()

    return NormalizedImage(
        payload=payload,
        width=width,
        height=height,
        original_width=original_width,
        original_height=original_height,
        file_name=source.name,
    )
