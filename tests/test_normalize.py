"""Tests for the capability probe and panorama normalization."""

import asyncio
from io import BytesIO

import pytest
from PIL import Image

from tour.capability import (
    FALLBACK_DIMENSION,
    RendererCapabilities,
    clamp_texture_size,
    probe_capabilities,
)
from tour.normalize import (
    MAX_PANORAMA_PIXELS,
    DecodeError,
    EncodeError,
    PanoramaSource,
    decode_image,
    normalize_panorama,
    pillow_quality,
    resolve_encoding,
    scaled_size,
    set_pixel_limit,
)


def make_image_bytes(width, height, fmt="PNG", color=(200, 120, 40)):
    """Encode a solid test image."""
    buffer = BytesIO()
    Image.new("RGB", (width, height), color).save(buffer, format=fmt)
    return buffer.getvalue()


def image_size(payload):
    with Image.open(BytesIO(payload)) as image:
        return image.size, image.format


class TestCapabilities:
    """Tests for the renderer capability probe."""

    @pytest.mark.parametrize("reported,expected", [
        (16384, 8192),
        (8192, 8192),
        (4096, 4096),
        (1024, 2048),
        (100, 2048),
        (0, FALLBACK_DIMENSION),
        (-5, FALLBACK_DIMENSION),
        (None, FALLBACK_DIMENSION),
    ])
    def test_clamp(self, reported, expected):
        assert clamp_texture_size(reported) == expected

    def test_probe_without_query(self):
        """No renderer means the fallback size."""
        assert probe_capabilities().safe_max_dimension == FALLBACK_DIMENSION

    def test_probe_query_failure(self):
        """A failing query degrades to the fallback instead of raising."""
        def broken():
            raise RuntimeError("context lost")

        assert probe_capabilities(broken).safe_max_dimension == FALLBACK_DIMENSION

    def test_probe_reports(self):
        capabilities = probe_capabilities(lambda: 16384)

        assert capabilities.max_texture_size == 16384
        assert capabilities.safe_max_dimension == 8192


class TestSizing:
    """Tests for size and encoder helpers."""

    def test_scaled_size(self):
        assert scaled_size(12000, 6000, 8192) == (8192, 4096)

    def test_scaled_size_never_upscales(self):
        assert scaled_size(1000, 500, 8192) == (1000, 500)

    def test_scaled_size_portrait(self):
        """The longer edge decides, whichever it is."""
        assert scaled_size(500, 1000, 100) == (50, 100)

    def test_resolve_encoding(self):
        assert resolve_encoding("jpeg") == "JPEG"
        assert resolve_encoding("image/webp") == "WEBP"
        with pytest.raises(EncodeError):
            resolve_encoding("gif")

    def test_pillow_quality(self):
        assert pillow_quality(0.9) == 90
        assert pillow_quality(0.0) == 1
        assert pillow_quality(2.0) == 100


class TestNormalize:
    """Tests for normalize_panorama."""

    def test_small_image_passes_through(self):
        """Images within the safe size are returned byte for byte."""
        data = make_image_bytes(400, 200)
        source = PanoramaSource(name="small.png", data=data)

        result = asyncio.run(normalize_panorama(source, RendererCapabilities()))

        assert result.payload == data
        assert (result.width, result.height) == (400, 200)
        assert (result.original_width, result.original_height) == (400, 200)
        assert not result.was_resized
        assert result.file_name == "small.png"

    def test_downscale_with_forced_size(self):
        """Oversized images are resized to fit and re-encoded as JPEG."""
        source = PanoramaSource(name="big.png", data=make_image_bytes(400, 200))

        result = asyncio.run(normalize_panorama(source, RendererCapabilities(), force_max_size=100))

        assert (result.width, result.height) == (100, 50)
        assert (result.original_width, result.original_height) == (400, 200)
        assert result.was_resized
        assert image_size(result.payload) == ((100, 50), "JPEG")

    def test_small_texture_report_clamps_to_minimum(self):
        """A tiny reported texture size still allows 2048px panoramas."""
        source = PanoramaSource(name="wide.jpg", data=make_image_bytes(3000, 1500, fmt="JPEG"))
        capabilities = RendererCapabilities(max_texture_size=100)

        result = asyncio.run(normalize_panorama(source, capabilities))

        assert (result.width, result.height) == (2048, 1024)
        assert image_size(result.payload)[0] == (2048, 1024)

    def test_webp_encoding(self):
        source = PanoramaSource(name="big.png", data=make_image_bytes(400, 200))

        result = asyncio.run(normalize_panorama(
            source, RendererCapabilities(), force_max_size=200, encoding="WEBP", quality=0.5
        ))

        assert image_size(result.payload) == ((200, 100), "WEBP")

    def test_alpha_is_flattened(self):
        """RGBA input can still be re-encoded as JPEG."""
        buffer = BytesIO()
        Image.new("RGBA", (400, 200), (10, 20, 30, 128)).save(buffer, format="PNG")
        source = PanoramaSource(name="alpha.png", data=buffer.getvalue())

        result = asyncio.run(normalize_panorama(source, RendererCapabilities(), force_max_size=100))

        assert image_size(result.payload) == ((100, 50), "JPEG")

    def test_undecodable_input(self):
        source = PanoramaSource(name="notes.txt", data=b"definitely not an image")

        with pytest.raises(DecodeError):
            asyncio.run(normalize_panorama(source, RendererCapabilities()))

    def test_unsupported_encoding(self):
        source = PanoramaSource(name="big.png", data=make_image_bytes(400, 200))

        with pytest.raises(EncodeError):
            asyncio.run(normalize_panorama(
                source, RendererCapabilities(), force_max_size=100, encoding="GIF"
            ))

    def test_reads_from_path(self, tmp_path):
        path = tmp_path / "room.png"
        path.write_bytes(make_image_bytes(64, 32))

        result = asyncio.run(normalize_panorama(path, RendererCapabilities()))

        assert result.file_name == "room.png"
        assert result.payload == path.read_bytes()

    def test_missing_path(self, tmp_path):
        with pytest.raises(DecodeError):
            asyncio.run(normalize_panorama(tmp_path / "missing.jpg", RendererCapabilities()))


class TestLargeInputs:
    """Tests for the pixel limit and memory-bounded decoding."""

    def test_panorama_above_pillow_default_limit(self):
        """A 180 MP bilevel panorama imports and is scaled to the safe size."""
        buffer = BytesIO()
        Image.new("1", (19000, 9500), 1).save(buffer, format="PNG")
        source = PanoramaSource(name="huge.png", data=buffer.getvalue())

        result = asyncio.run(normalize_panorama(source, RendererCapabilities(max_texture_size=8192)))

        assert (result.width, result.height) == (8192, 4096)
        assert (result.original_width, result.original_height) == (19000, 9500)
        assert image_size(result.payload) == ((8192, 4096), "JPEG")

    def test_pixel_limit_rejects(self, monkeypatch):
        monkeypatch.setattr(Image, "MAX_IMAGE_PIXELS", 1000)
        source = PanoramaSource(name="big.png", data=make_image_bytes(400, 200))

        with pytest.raises(DecodeError, match="too large|Failed to decode"):
            asyncio.run(normalize_panorama(source, RendererCapabilities()))

    def test_set_pixel_limit(self, monkeypatch):
        monkeypatch.setattr(Image, "MAX_IMAGE_PIXELS", Image.MAX_IMAGE_PIXELS)

        set_pixel_limit(5000)
        assert Image.MAX_IMAGE_PIXELS == 5000

        with pytest.raises(ValueError):
            set_pixel_limit(0)

    def test_default_limit(self):
        assert Image.MAX_IMAGE_PIXELS >= MAX_PANORAMA_PIXELS

    def test_jpeg_draft_keeps_original_size(self):
        """Reduced-scale JPEG decoding still reports the full source size."""
        source = PanoramaSource(name="wide.jpg", data=make_image_bytes(4000, 2000, fmt="JPEG"))

        result = asyncio.run(normalize_panorama(source, RendererCapabilities(), force_max_size=500))

        assert (result.width, result.height) == (500, 250)
        assert (result.original_width, result.original_height) == (4000, 2000)
        assert image_size(result.payload) == ((500, 250), "JPEG")

    def test_decode_image_draft(self):
        image, original_size = decode_image(make_image_bytes(4000, 2000, fmt="JPEG"), max_dimension=500)
        try:
            assert original_size == (4000, 2000)
            assert 500 <= image.size[0] < 4000
        finally:
            image.close()
