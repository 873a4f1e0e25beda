"""Security limits for untrusted input handling.

Image bytes and JSON payloads arrive from clients; everything read from
disk or the network goes through these limits first.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from photoattest.errors import PhotoAttestError

# Default security limits
DEFAULT_MAX_IMAGE_SIZE = 100 * 1024 * 1024  # 100 MB
DEFAULT_MAX_JSON_DEPTH = 32
DEFAULT_MAX_JSON_SIZE = 1 * 1024 * 1024  # 1 MB


class SecurityLimits:
    """Configurable security limits."""

    def __init__(
        self,
        max_image_size: int = DEFAULT_MAX_IMAGE_SIZE,
        max_json_depth: int = DEFAULT_MAX_JSON_DEPTH,
        max_json_size: int = DEFAULT_MAX_JSON_SIZE,
    ) -> None:
        self.max_image_size = max_image_size
        self.max_json_depth = max_json_depth
        self.max_json_size = max_json_size


class SecurityError(PhotoAttestError):
    """Security limit exceeded."""
    pass


def safe_read_bytes(path: Path, limits: SecurityLimits | None = None) -> bytes:
    """Read a file after checking its size against the image limit.

    Raises:
        SecurityError: If the file is larger than ``max_image_size``
    """
    limits = limits or SecurityLimits()
    resolved = path.resolve()

    size = resolved.stat().st_size
    if size > limits.max_image_size:
        raise SecurityError(
            f"File too large: {path} ({size} bytes > {limits.max_image_size})"
        )

    return resolved.read_bytes()


def check_json_depth(obj: Any, current_depth: int = 0, max_depth: int = DEFAULT_MAX_JSON_DEPTH) -> int:
    """Check JSON object depth.

    Raises:
        SecurityError: If depth exceeds max_depth
    """
    if current_depth > max_depth:
        raise SecurityError(f"JSON depth exceeds maximum: {max_depth}")

    if isinstance(obj, dict):
        children = obj.values()
    elif isinstance(obj, list):
        children = obj
    else:
        return current_depth

    depth = current_depth
    for child in children:
        depth = max(depth, check_json_depth(child, current_depth + 1, max_depth))
    return depth


def safe_load_json(data: bytes | str, limits: SecurityLimits | None = None) -> Any:
    """Load JSON with size and depth limits.

    Raises:
        SecurityError: If limits are exceeded or the JSON is invalid
    """
    limits = limits or SecurityLimits()

    raw = data if isinstance(data, bytes) else data.encode("utf-8")
    if len(raw) > limits.max_json_size:
        raise SecurityError(
            f"JSON data too large: {len(raw)} bytes > {limits.max_json_size}"
        )

    try:
        obj = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise SecurityError(f"Invalid JSON: {e}") from e

    check_json_depth(obj, max_depth=limits.max_json_depth)
    return obj
