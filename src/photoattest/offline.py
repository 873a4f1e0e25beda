"""Offline fallback certifier.

Used when no verification service is reachable or the device key could
not sign for online submission. It runs the same integrity and
plausibility checks as the online engine, but there is no remote
authority to cross-check the device signature against, so the
``signature`` check never passes here. With the default weights an
offline result therefore tops out at 0.70.

If a local key handle is available, the certifier signs the recomputed
root and digest with it and checks that signature against the handle's
own public key (``local_signature``). That is a sanity check of the local
key only and carries no weight in the default table.

certify_offline() always returns a result. A user-facing certification
action must terminate, so every failure becomes a failed check.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from datetime import datetime
from typing import Any

from photoattest.config import EngineConfig
from photoattest.engine import VerificationResult, assemble_result, resolve_now
from photoattest.freezer import EncodingError, FrozenImage, freeze
from photoattest.keys import KeyHandle, PublicKeyInfo
from photoattest.metadata import MalformedFieldError, MetadataBundle, digest
from photoattest.scoring import (
    CHECK_COMPLETENESS,
    CHECK_GEO,
    CHECK_INTEGRITY,
    CHECK_LOCAL_SIGNATURE,
    CHECK_METADATA_BINDING,
    CHECK_MOTION,
    CHECK_SIGNATURE,
    CHECK_TIMESTAMP,
    CheckOutcome,
    Mode,
    ScoringPolicy,
    score_metadata,
)
from photoattest.signer import Attestation, SigningUnavailable, sign, verify_signature
from photoattest.tiles import TileHashTree, build_tree

logger = logging.getLogger(__name__)

METADATA_CHECKS = (CHECK_COMPLETENESS, CHECK_GEO, CHECK_MOTION, CHECK_TIMESTAMP)


class OfflineCertifier:
    """Reduced-trust local certifier that always produces a verdict."""

    def __init__(
        self,
        policy: ScoringPolicy | None = None,
        config: EngineConfig | None = None,
    ) -> None:
        self.policy = policy or ScoringPolicy()
        self.config = config or EngineConfig()

    def certify_offline(
        self,
        frozen_image_bytes: FrozenImage | bytes,
        metadata_bundle: MetadataBundle | Mapping[str, Any],
        local_key_handle: KeyHandle | None = None,
        attestation: Attestation | None = None,
        now: datetime | None = None,
    ) -> VerificationResult:
        """Certify locally without a verification service.

        Args:
            frozen_image_bytes: The frozen image (or its bytes)
            metadata_bundle: Capture metadata (bundle or wire mapping)
            local_key_handle: Local key for the signing sanity check
            attestation: Capture-time attestation, if one was produced
            now: Reference time for timestamp recency

        Returns:
            VerificationResult with mode OFFLINE (never raises)
        """
        try:
            return self._certify(frozen_image_bytes, metadata_bundle, local_key_handle, attestation, now)
        except Exception:
            # Last resort: certification must terminate with a result.
            logger.exception("Offline certification failed unexpectedly")
            outcomes = {
                name: CheckOutcome(False, "offline certification error")
                for name in (CHECK_INTEGRITY, CHECK_METADATA_BINDING, CHECK_SIGNATURE, *METADATA_CHECKS)
            }
            return assemble_result(outcomes, self.policy, Mode.OFFLINE, None)

    def _certify(
        self,
        frozen_image_bytes: FrozenImage | bytes,
        metadata_bundle: MetadataBundle | Mapping[str, Any],
        local_key_handle: KeyHandle | None,
        attestation: Attestation | None,
        now: datetime | None,
    ) -> VerificationResult:
        now = resolve_now(now)
        outcomes: dict[str, CheckOutcome] = {}

        tree = self._rebuild_tree(frozen_image_bytes, attestation)
        if tree is None:
            outcomes[CHECK_INTEGRITY] = CheckOutcome(False, "image bytes unusable")
        elif attestation is None:
            outcomes[CHECK_INTEGRITY] = CheckOutcome(True, f"tree rebuilt locally over {tree.tile_count} tiles")
        elif tree.root == attestation.tree_root:
            outcomes[CHECK_INTEGRITY] = CheckOutcome(True, "root matches capture-time attestation")
        else:
            outcomes[CHECK_INTEGRITY] = CheckOutcome(False, "root differs from capture-time attestation")

        bundle: MetadataBundle | None = None
        bundle_digest: bytes | None = None
        try:
            bundle = (
                metadata_bundle
                if isinstance(metadata_bundle, MetadataBundle)
                else MetadataBundle.from_dict(metadata_bundle)
            )
            bundle_digest = digest(bundle)
        except MalformedFieldError as e:
            logger.warning("Offline certification with malformed metadata: %s", e)
            outcomes[CHECK_METADATA_BINDING] = CheckOutcome(False, str(e))

        if bundle_digest is not None:
            if attestation is None:
                outcomes[CHECK_METADATA_BINDING] = CheckOutcome(True, "digest computed locally")
            elif bundle_digest == attestation.metadata_digest:
                outcomes[CHECK_METADATA_BINDING] = CheckOutcome(True, "metadata digest matches")
            else:
                outcomes[CHECK_METADATA_BINDING] = CheckOutcome(False, "metadata digest mismatch")

        outcomes[CHECK_SIGNATURE] = CheckOutcome(False, "no verification authority reachable")
        outcomes[CHECK_LOCAL_SIGNATURE] = self._local_signature(tree, bundle_digest, local_key_handle)

        if bundle is not None:
            outcomes.update(score_metadata(bundle, now, self.config.plausibility))
        else:
            outcomes.update({name: CheckOutcome(False, "metadata malformed") for name in METADATA_CHECKS})

        result = assemble_result(outcomes, self.policy, Mode.OFFLINE, tree)
        logger.info(
            "Offline certification: %s (confidence %.2f)",
            result.verdict.value,
            result.confidence,
        )
        return result

    def _rebuild_tree(
        self,
        frozen_image_bytes: FrozenImage | bytes,
        attestation: Attestation | None,
    ) -> TileHashTree | None:
        tile_size = (attestation.tile_size if attestation else None) or self.config.tile_size
        try:
            frozen = freeze(
                frozen_image_bytes,
                limits=self.config.security_limits,
                require_known_format=self.config.require_known_format,
            )
            return build_tree(frozen, tile_size, workers=self.config.hash_workers)
        except (EncodingError, ValueError) as e:
            logger.warning("Offline certification with unusable image: %s", e)
            return None

    def _local_signature(
        self,
        tree: TileHashTree | None,
        bundle_digest: bytes | None,
        key_handle: KeyHandle | None,
    ) -> CheckOutcome:
        if key_handle is None:
            return CheckOutcome(False, "no local key")
        if tree is None or bundle_digest is None:
            return CheckOutcome(False, "nothing to sign")
        try:
            local = sign(
                tree.root,
                bundle_digest,
                key_handle,
                timeout=self.config.key_timeout,
                tile_size=tree.tile_size,
            )
        except SigningUnavailable as e:
            return CheckOutcome(False, f"local key unavailable: {e}")
        if local.public_key is None:
            return CheckOutcome(False, "local key did not report a public key")

        own_key = PublicKeyInfo(key_id=local.key_id, public_key=local.public_key, algorithm=local.algorithm)
        if verify_signature(local, own_key):
            return CheckOutcome(True, f"signed by local key {local.key_id}")
        return CheckOutcome(False, "local signature does not verify")
