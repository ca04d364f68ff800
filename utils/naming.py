"""File naming helpers shared by the asset store and the exporter."""

import re

_UNSAFE_CHARS = re.compile(r"[^a-zA-Z0-9._-]+")


def safe_file_name(name: str, fallback: str = "file") -> str:
    """
    Sanitize a name for use as a file name.

    Runs of characters outside [A-Za-z0-9._-] become a single underscore,
    leading/trailing underscores are trimmed, and an empty result falls
    back to a generic name.
    """
    cleaned = _UNSAFE_CHARS.sub("_", name).strip("_")
    return cleaned or fallback
