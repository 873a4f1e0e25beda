"""Canonical JSON serialization and stable hashing.

The metadata digest is computed over this encoding, so it is part of the
wire contract and must never change shape.

Design decisions:
- Hash algorithm: SHA-256 (matches the tile tree and the signed message)
- JSON: sorted keys, no whitespace, ASCII-only
- Arrays: preserved order (caller must sort where semantic ordering matters)
- Floats: finite values only; NaN/Inf raise errors, -0.0 becomes 0.0
"""

from __future__ import annotations

import hashlib
import json
import math
from typing import Any


class CanonicalJSONEncoder(json.JSONEncoder):
    """JSON encoder that produces canonical, deterministic output.

    Guarantees:
    - Sorted keys at all levels
    - No whitespace
    - ASCII-only output
    - Consistent float representation (rejects NaN/Inf)
    """

    def __init__(self, **kwargs: Any) -> None:
        kwargs["sort_keys"] = True
        kwargs["separators"] = (",", ":")
        kwargs["ensure_ascii"] = True
        kwargs["allow_nan"] = False
        super().__init__(**kwargs)

    def default(self, o: Any) -> Any:
        """Handle non-serializable types."""
        if hasattr(o, "to_dict"):
            return o.to_dict()
        if hasattr(o, "value"):
            return o.value
        return super().default(o)

    def encode(self, o: Any) -> str:
        """Encode with canonical formatting."""
        return super().encode(self._normalize(o))

    def _normalize(self, obj: Any) -> Any:
        """Recursively normalize values for canonical representation."""
        if obj is None or isinstance(obj, bool):
            return obj
        if isinstance(obj, float):
            if math.isnan(obj) or math.isinf(obj):
                raise ValueError(f"Cannot canonicalize non-finite float: {obj}")
            if obj == 0.0:
                return 0.0
            return obj
        if isinstance(obj, (int, str)):
            return obj
        if isinstance(obj, dict):
            return {str(k): self._normalize(v) for k, v in sorted(obj.items())}
        if isinstance(obj, (list, tuple)):
            return [self._normalize(item) for item in obj]
        if hasattr(obj, "to_dict"):
            return self._normalize(obj.to_dict())
        if hasattr(obj, "value"):
            return obj.value
        return obj


# Singleton encoder instance
_encoder = CanonicalJSONEncoder()


def canonical_json(data: Any) -> str:
    """Produce canonical JSON string from data.

    Raises:
        ValueError: If data contains NaN or Infinity floats
    """
    return _encoder.encode(data)


def canonical_bytes(data: Any) -> bytes:
    """Canonical JSON encoded as UTF-8 bytes."""
    return canonical_json(data).encode("utf-8")


def canonical_hash(data: Any, algorithm: str = "sha256") -> bytes:
    """Compute deterministic digest of any data via canonical JSON.

    Args:
        data: JSON-serializable data
        algorithm: Hash algorithm (sha256, sha3_256, blake2b)

    Returns:
        Raw digest bytes (32 bytes for every supported algorithm)
    """
    if algorithm == "sha256":
        hasher = hashlib.sha256()
    elif algorithm == "sha3_256":
        hasher = hashlib.sha3_256()
    elif algorithm == "blake2b":
        hasher = hashlib.blake2b(digest_size=32)
    else:
        raise ValueError(f"Unsupported algorithm: {algorithm}")

    hasher.update(canonical_bytes(data))
    return hasher.digest()
