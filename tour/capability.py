"""
Renderer Capability Probe

Determines the largest panorama edge length the target renderer can
display reliably. The probe runs once at startup and the resulting
RendererCapabilities object is passed to the normalization stage.
"""

from dataclasses import dataclass
from typing import Callable, Optional
from rich.console import Console

console = Console()

MIN_SAFE_DIMENSION = 2048
MAX_SAFE_DIMENSION = 8192
FALLBACK_DIMENSION = 4096


def clamp_texture_size(max_texture_size: Optional[int]) -> int:
    """
    Clamp a reported maximum texture size into the safe range.

    Low-end renderers still get at least 2048px; large reports are capped
    at 8192px to bound memory and bandwidth. A missing or non-positive
    report falls back to 4096.
    """
    if not max_texture_size or max_texture_size <= 0:
        return FALLBACK_DIMENSION
    return max(MIN_SAFE_DIMENSION, min(int(max_texture_size), MAX_SAFE_DIMENSION))


@dataclass(frozen=True)
class RendererCapabilities:
    """Host rendering capabilities, measured once per session."""
    max_texture_size: Optional[int] = None

    @property
    def safe_max_dimension(self) -> int:
        return clamp_texture_size(self.max_texture_size)


def probe_capabilities(
    query: Optional[Callable[[], Optional[int]]] = None
) -> RendererCapabilities:
    """
    Query the renderer once and wrap the answer.

    Args:
        query: Callable returning the renderer's maximum texture edge
            length, or None when no renderer is reachable

    Returns:
        RendererCapabilities (falls back to 4096px if the query fails)
    """
    if query is None:
        console.print(f"[yellow]No renderer query available, using {FALLBACK_DIMENSION}px[/yellow]")
        return RendererCapabilities()

    try:
        reported = query()
    except Exception as e:
        console.print(f"[yellow]Renderer query failed ({e}), using {FALLBACK_DIMENSION}px[/yellow]")
        return RendererCapabilities()

    capabilities = RendererCapabilities(max_texture_size=reported)
    console.print(f"[green]Safe panorama size: {capabilities.safe_max_dimension}px[/green]")
    return capabilities
