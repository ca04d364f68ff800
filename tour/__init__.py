"""
Panorama Tour Pipeline

Turns 360° equirectangular photos into a navigable tour and exports a
viewer that works without the editor.

Pipeline stages:
1. Probe - Determine the renderer's safe panorama size
2. Normalize - Decode and downsize oversized panoramas
3. Ingest - Store assets and append one scene per file
4. Edit - Manage scenes and hotspots in the project document
5. Export - Bundle a hosted folder or a single self-contained page
"""

__version__ = "0.1.0"
