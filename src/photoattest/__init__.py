"""photoattest - capture attestation and verification engine.

Binds a captured photograph to a tile hash tree and a hardware-rooted
signature at capture time, and re-derives and scores that evidence later.

Example:
    >>> from photoattest import SoftwareKeyHandle, capture, VerificationEngine
    >>> key = SoftwareKeyHandle.generate()
    >>> captured = capture(jpeg_bytes, bundle, key)
    >>> engine = VerificationEngine(key_registry=KeyRegistry.from_handles([key]))
    >>> engine.verify(captured.frozen.data, captured.attestation, bundle).verdict
    <Verdict.AUTHENTIC: 'AUTHENTIC'>
"""

from __future__ import annotations

__version__ = "0.3.0"

from photoattest.capture import (
    CapturedImage,
    CertificationOutcome,
    LocalSubmitter,
    SubmissionUnavailable,
    Submitter,
    capture,
    certify,
)
from photoattest.config import EngineConfig, PlausibilityLimits
from photoattest.engine import VerificationEngine, VerificationResult
from photoattest.errors import PhotoAttestError
from photoattest.freezer import EncodingError, FrozenImage, freeze
from photoattest.keys import KeyAccessError, KeyHandle, KeyRegistry, SoftwareKeyHandle
from photoattest.metadata import (
    DeviceClass,
    GeoCoordinate,
    MalformedFieldError,
    MetadataBundle,
    MotionSample,
    digest,
)
from photoattest.offline import OfflineCertifier
from photoattest.payload import PayloadError, parse_attestation, parse_metadata
from photoattest.scoring import AUTHENTIC_THRESHOLD, Mode, ScoringPolicy, Verdict
from photoattest.signer import Attestation, SigningUnavailable, sign
from photoattest.tiles import DEFAULT_TILE_SIZE, TileHashTree, build_tree, diff_tiles

__all__ = [
    "__version__",
    # Errors
    "PhotoAttestError",
    "EncodingError",
    "MalformedFieldError",
    "SigningUnavailable",
    "KeyAccessError",
    "SubmissionUnavailable",
    "PayloadError",
    # Capture side
    "FrozenImage",
    "freeze",
    "TileHashTree",
    "build_tree",
    "diff_tiles",
    "DEFAULT_TILE_SIZE",
    "MetadataBundle",
    "GeoCoordinate",
    "MotionSample",
    "DeviceClass",
    "digest",
    "KeyHandle",
    "SoftwareKeyHandle",
    "KeyRegistry",
    "Attestation",
    "sign",
    "capture",
    "certify",
    "CapturedImage",
    "CertificationOutcome",
    "Submitter",
    "LocalSubmitter",
    # Verification side
    "VerificationEngine",
    "VerificationResult",
    "OfflineCertifier",
    "parse_attestation",
    "parse_metadata",
    "ScoringPolicy",
    "Verdict",
    "Mode",
    "AUTHENTIC_THRESHOLD",
    "EngineConfig",
    "PlausibilityLimits",
]
