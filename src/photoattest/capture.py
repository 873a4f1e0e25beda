"""Capture-side pipeline.

freeze -> build tile tree -> digest metadata -> sign, strictly in that
order, then one attempt to reach the verification service. If signing is
unavailable or the service cannot be reached in time, the attempt falls
back to local offline certification. The choice between the two paths is
made once per attempt; they never race.

The transport itself belongs to a collaborator implementing Submitter.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from photoattest.config import EngineConfig
from photoattest.engine import VerificationEngine, VerificationResult
from photoattest.errors import PhotoAttestError
from photoattest.freezer import FrozenImage, freeze
from photoattest.keys import KeyHandle
from photoattest.metadata import MetadataBundle, digest
from photoattest.offline import OfflineCertifier
from photoattest.scoring import ScoringPolicy
from photoattest.signer import Attestation, SigningUnavailable, call_with_timeout, sign
from photoattest.tiles import TileHashTree, build_tree

logger = logging.getLogger(__name__)


class SubmissionUnavailable(PhotoAttestError):
    """The verification service could not be reached."""
    pass


@dataclass(frozen=True)
class CapturedImage:
    """Everything the capture side hands to transport."""

    frozen: FrozenImage
    tree: TileHashTree
    metadata: MetadataBundle
    metadata_digest: bytes
    attestation: Attestation

    def to_dict(self) -> dict[str, Any]:
        return {
            "image_sha256": self.frozen.sha256,
            "image_length": self.frozen.length,
            "image_format": self.frozen.format,
            "tree": self.tree.to_dict(include_leaves=False),
            "metadata": self.metadata.to_dict(),
            "attestation": self.attestation.to_dict(),
        }


@dataclass(frozen=True)
class CertificationOutcome:
    """Result of one certification attempt."""

    result: VerificationResult
    captured: CapturedImage | None = None
    fell_back: bool = False
    reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "result": self.result.to_dict(),
            "captured": self.captured.to_dict() if self.captured else None,
            "fell_back": self.fell_back,
            "reason": self.reason,
        }


class Submitter(ABC):
    """Transport to the verification service."""

    @abstractmethod
    def submit(
        self,
        frozen: FrozenImage,
        attestation: Attestation,
        metadata: MetadataBundle,
        timeout: float | None = None,
    ) -> VerificationResult:
        """Send the evidence and return the service's verdict.

        ``timeout`` is a hint for the transport; certify() enforces its own
        deadline around the call either way.

        Raises:
            SubmissionUnavailable: If the service cannot be reached
        """


class LocalSubmitter(Submitter):
    """Submitter backed by an in-process VerificationEngine."""

    def __init__(self, engine: VerificationEngine, now: datetime | None = None) -> None:
        self.engine = engine
        self.now = now

    def submit(
        self,
        frozen: FrozenImage,
        attestation: Attestation,
        metadata: MetadataBundle,
        timeout: float | None = None,
    ) -> VerificationResult:
        return self.engine.verify(frozen, attestation, metadata, now=self.now)


def _bundle(metadata: MetadataBundle | Mapping[str, Any]) -> MetadataBundle:
    return metadata if isinstance(metadata, MetadataBundle) else MetadataBundle.from_dict(metadata)


def capture(
    raw: bytes | FrozenImage,
    metadata: MetadataBundle | Mapping[str, Any],
    key_handle: KeyHandle,
    tile_size: int | None = None,
    key_timeout: float | None = None,
    config: EngineConfig | None = None,
) -> CapturedImage:
    """Freeze, hash, digest and sign one captured image.

    ``tile_size`` and ``key_timeout`` override the values in ``config``.

    Raises:
        EncodingError: If the image bytes are unusable
        MalformedFieldError: If a present metadata field is malformed
        SigningUnavailable: If the key handle fails or times out
    """
    config = config or EngineConfig()
    tile_size = tile_size or config.tile_size
    key_timeout = key_timeout or config.key_timeout

    frozen = freeze(
        raw,
        limits=config.security_limits,
        require_known_format=config.require_known_format,
    )
    bundle = _bundle(metadata)
    tree = build_tree(frozen, tile_size, workers=config.hash_workers)
    metadata_digest = digest(bundle)
    attestation = sign(
        tree.root,
        metadata_digest,
        key_handle,
        timeout=key_timeout,
        tile_size=tile_size,
    )

    logger.info(
        "Captured %d bytes: %d tiles, root %s, key %s",
        frozen.length, tree.tile_count, tree.root_hex[:16], attestation.key_id,
    )
    return CapturedImage(
        frozen=frozen,
        tree=tree,
        metadata=bundle,
        metadata_digest=metadata_digest,
        attestation=attestation,
    )


def certify(
    raw: bytes | FrozenImage,
    metadata: MetadataBundle | Mapping[str, Any],
    key_handle: KeyHandle,
    submitter: Submitter | None = None,
    local_key_handle: KeyHandle | None = None,
    config: EngineConfig | None = None,
    policy: ScoringPolicy | None = None,
    now: datetime | None = None,
) -> CertificationOutcome:
    """Run one full certification attempt.

    Args:
        raw: Captured image bytes
        metadata: Capture metadata
        key_handle: Hardware-backed device key
        submitter: Transport to the verification service (None = offline)
        local_key_handle: Key for the offline sanity signature
            (defaults to key_handle, unless key_handle is what failed)
        config: Engine configuration
        policy: Scoring policy for the offline path
        now: Reference time for the offline path

    Returns:
        CertificationOutcome; always carries a result

    Raises:
        EncodingError: If the image bytes are unusable
        MalformedFieldError: If a present metadata field is malformed
    """
    config = config or EngineConfig()
    fallback_key = local_key_handle or key_handle

    frozen = freeze(
        raw,
        limits=config.security_limits,
        require_known_format=config.require_known_format,
    )
    bundle = _bundle(metadata)

    try:
        captured = capture(frozen, bundle, key_handle, config=config)
    except SigningUnavailable as e:
        # The device key just failed; only a separate local key is worth trying.
        return _fallback(frozen, bundle, None, local_key_handle, config, policy, now, f"signing unavailable: {e}")

    if submitter is None:
        return _fallback(frozen, bundle, captured, fallback_key, config, policy, now, "no verifier configured")

    try:
        result = call_with_timeout(
            lambda: submitter.submit(
                captured.frozen, captured.attestation, captured.metadata, timeout=config.submit_timeout
            ),
            config.submit_timeout,
        )
    except TimeoutError:
        return _fallback(
            frozen, bundle, captured, fallback_key, config, policy, now,
            f"verifier did not answer within {config.submit_timeout}s",
        )
    except SubmissionUnavailable as e:
        return _fallback(frozen, bundle, captured, fallback_key, config, policy, now, f"verifier unreachable: {e}")
    except Exception as e:
        logger.warning("Submitter failed: %s: %s", type(e).__name__, e)
        return _fallback(frozen, bundle, captured, fallback_key, config, policy, now, f"verifier unreachable: {e}")

    return CertificationOutcome(result=result, captured=captured)


def _fallback(
    frozen: FrozenImage,
    bundle: MetadataBundle,
    captured: CapturedImage | None,
    key_handle: KeyHandle | None,
    config: EngineConfig,
    policy: ScoringPolicy | None,
    now: datetime | None,
    reason: str,
) -> CertificationOutcome:
    logger.warning("Falling back to offline certification: %s", reason)
    certifier = OfflineCertifier(policy=policy, config=config)
    result = certifier.certify_offline(
        frozen,
        bundle,
        local_key_handle=key_handle,
        attestation=captured.attestation if captured else None,
        now=now,
    )
    return CertificationOutcome(result=result, captured=captured, fell_back=True, reason=reason)
