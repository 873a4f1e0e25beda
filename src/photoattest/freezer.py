"""Canonical image freezer.

Fixes the exact byte representation of a captured image once. Every later
stage (tile hashing, signing, upload, verification) operates on the same
``bytes`` object, so no recompression can slip in between signing and
verification.
"""

from __future__ import annotations

import hashlib
import logging
import struct
from dataclasses import dataclass, field

from photoattest.errors import PhotoAttestError
from photoattest.security import SecurityLimits

logger = logging.getLogger(__name__)

JPEG_SOI = b"\xff\xd8\xff"
JPEG_EOI = b"\xff\xd9"
PNG_SIGNATURE = b"\x89PNG\r\n\x1a\n"
PNG_IEND = b"IEND"
HEIF_BRANDS = frozenset({b"heic", b"heix", b"hevc", b"heim", b"heis", b"mif1", b"msf1", b"avif"})

FORMAT_JPEG = "jpeg"
FORMAT_PNG = "png"
FORMAT_HEIC = "heic"
FORMAT_WEBP = "webp"
FORMAT_RAW = "raw"


class EncodingError(PhotoAttestError):
    """Input bytes cannot be fixed into a stable image representation."""
    pass


@dataclass(frozen=True)
class FrozenImage:
    """Immutable image buffer.

    ``data`` is always a ``bytes`` object and ``length`` always equals
    ``len(data)``. Build instances with :func:`freeze`.
    """

    data: bytes = field(repr=False)
    length: int
    format: str = FORMAT_RAW

    def __post_init__(self) -> None:
        if type(self.data) is not bytes:
            raise TypeError("FrozenImage.data must be bytes")
        if self.length != len(self.data):
            raise ValueError(
                f"Declared length {self.length} does not match buffer length {len(self.data)}"
            )

    @property
    def sha256(self) -> str:
        """SHA-256 of the whole buffer, hex."""
        return hashlib.sha256(self.data).hexdigest()

    def __len__(self) -> int:
        return self.length


def _is_complete_jpeg(data: bytes) -> bool:
    return data.startswith(JPEG_SOI) and data.rfind(JPEG_EOI, len(JPEG_SOI)) != -1


def _is_complete_png(data: bytes) -> bool:
    if not data.startswith(PNG_SIGNATURE):
        return False
    # IEND chunk: length(4)=0, type(4), crc(4)
    return data.rfind(PNG_IEND) >= len(PNG_SIGNATURE) + 4


def _is_heif(data: bytes) -> bool:
    if len(data) < 12 or data[4:8] != b"ftyp":
        return False
    box_size = struct.unpack(">I", data[:4])[0]
    if box_size < 16 or box_size > len(data):
        return False
    brands = [data[8:12]]
    brands.extend(data[i:i + 4] for i in range(16, box_size - 3, 4))
    return any(brand in HEIF_BRANDS for brand in brands)


def _is_webp(data: bytes) -> bool:
    if len(data) < 12 or data[:4] != b"RIFF" or data[8:12] != b"WEBP":
        return False
    riff_size = struct.unpack("<I", data[4:8])[0]
    return riff_size + 8 <= len(data)


def detect_format(data: bytes) -> str | None:
    """Identify a complete image container, or None if unrecognised."""
    if _is_complete_jpeg(data):
        return FORMAT_JPEG
    if _is_complete_png(data):
        return FORMAT_PNG
    if _is_heif(data):
        return FORMAT_HEIC
    if _is_webp(data):
        return FORMAT_WEBP
    return None


def freeze(
    raw: bytes | bytearray | memoryview | FrozenImage,
    limits: SecurityLimits | None = None,
    require_known_format: bool = True,
) -> FrozenImage:
    """Freeze captured bytes into a FrozenImage.

    The bytes are copied as-is; nothing is decoded and re-encoded.

    Args:
        raw: Captured image bytes (an existing FrozenImage is returned as-is)
        limits: Security limits (max image size)
        require_known_format: Reject bytes that are not a complete
            JPEG, PNG, HEIF or WebP container

    Returns:
        FrozenImage

    Raises:
        EncodingError: If the input is empty, too large, not bytes-like,
            or not a recognisable image
    """
    if isinstance(raw, FrozenImage):
        return raw

    if not isinstance(raw, (bytes, bytearray, memoryview)):
        raise EncodingError(f"Expected image bytes, got {type(raw).__name__}")

    limits = limits or SecurityLimits()
    data = bytes(raw)

    if not data:
        raise EncodingError("Image is empty")
    if len(data) > limits.max_image_size:
        raise EncodingError(
            f"Image too large: {len(data)} bytes > {limits.max_image_size}"
        )

    image_format = detect_format(data)
    if image_format is None:
        if require_known_format:
            raise EncodingError("Unrecognised or truncated image container")
        image_format = FORMAT_RAW

    logger.debug("Froze %d bytes (%s)", len(data), image_format)
    return FrozenImage(data=data, length=len(data), format=image_format)
