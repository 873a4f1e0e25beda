"""Wire payload validation.

Attestations and metadata bundles arrive as JSON from capture devices.
They are checked against the JSON schemas shipped in ``schemas/`` before
being turned into model objects, so a bad payload is reported with every
offending path at once instead of the first parse failure.
"""

from __future__ import annotations

import json
from functools import lru_cache
from pathlib import Path
from typing import Any

import jsonschema

from photoattest.errors import PhotoAttestError
from photoattest.metadata import MalformedFieldError, MetadataBundle
from photoattest.security import SecurityError, SecurityLimits, safe_load_json
from photoattest.signer import Attestation

SCHEMAS_DIR = Path(__file__).parent / "schemas"


class PayloadError(PhotoAttestError):
    """A payload failed schema validation or could not be parsed."""

    def __init__(self, message: str, errors: list[str] | None = None):
        super().__init__(message)
        self.errors = errors or []


@lru_cache(maxsize=None)
def load_schema(name: str) -> dict[str, Any]:
    """Load a bundled schema by name (``attestation`` or ``metadata``)."""
    path = SCHEMAS_DIR / f"{name}.schema.json"
    if not path.exists():
        raise PayloadError(f"Unknown schema: {name}")
    with open(path, encoding="utf-8") as f:
        return json.load(f)


def validate_payload(name: str, data: Any) -> list[str]:
    """Return every schema violation as ``path: message`` (empty if valid)."""
    validator = jsonschema.Draft7Validator(load_schema(name))
    errors = []
    for error in sorted(validator.iter_errors(data), key=lambda e: list(e.absolute_path)):
        location = "/".join(str(p) for p in error.absolute_path) or "<root>"
        errors.append(f"{location}: {error.message}")
    return errors


def _decode(name: str, data: str | bytes | dict[str, Any], limits: SecurityLimits | None) -> Any:
    if isinstance(data, dict):
        return data
    try:
        return safe_load_json(data, limits)
    except SecurityError as e:
        raise PayloadError(f"{name} payload rejected: {e}") from e


def parse_attestation(
    data: str | bytes | dict[str, Any],
    limits: SecurityLimits | None = None,
) -> Attestation:
    """Validate and parse an attestation payload.

    Raises:
        PayloadError: If the payload is not valid JSON, violates the schema,
            or carries badly encoded values
    """
    decoded = _decode("attestation", data, limits)
    errors = validate_payload("attestation", decoded)
    if errors:
        raise PayloadError("Invalid attestation", errors)
    try:
        return Attestation.from_dict(decoded)
    except ValueError as e:
        raise PayloadError("Invalid attestation", [str(e)]) from e


def parse_metadata(
    data: str | bytes | dict[str, Any],
    limits: SecurityLimits | None = None,
) -> MetadataBundle:
    """Validate and parse a metadata payload.

    Raises:
        PayloadError: If the payload is not valid JSON, violates the schema,
            or a present field is malformed
    """
    decoded = _decode("metadata", data, limits)
    errors = validate_payload("metadata", decoded)
    if errors:
        raise PayloadError("Invalid metadata", errors)
    try:
        return MetadataBundle.from_dict(decoded)
    except MalformedFieldError as e:
        raise PayloadError("Invalid metadata", [f"{e.field}: {e.reason}"]) from e
