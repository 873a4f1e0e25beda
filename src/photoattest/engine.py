"""Verification engine (server side).

Re-derives the evidence for a submitted photo and scores it:

1. Recompute the tile tree from the received bytes and compare roots.
2. Recompute the metadata digest and compare it to the attested digest.
3. Verify the signature over tree_root || metadata_digest.
4. Score metadata plausibility, independently of the binding.
5. Combine the boolean sub-checks with the policy's weight table.
6. Apply the policy threshold to get the verdict.

A failed check is an answer, not an error: verify() only raises for
unusable input (bytes that cannot be frozen, a malformed metadata field).
The engine keeps no per-call state, so one instance can serve concurrent
calls.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from types import MappingProxyType
from typing import Any

from photoattest.canonical import canonical_json
from photoattest.config import EngineConfig
from photoattest.determinism import stable_now
from photoattest.freezer import FrozenImage, freeze
from photoattest.keys import KeyRegistry
from photoattest.metadata import MetadataBundle, digest
from photoattest.scoring import (
    CHECK_INTEGRITY,
    CHECK_METADATA_BINDING,
    CHECK_SIGNATURE,
    FAILURE_INDICATORS,
    CheckOutcome,
    Mode,
    ScoringPolicy,
    Verdict,
    score_metadata,
)
from photoattest.signer import Attestation, verify_signature
from photoattest.tiles import TileHashTree, build_tree, diff_tiles

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VerificationResult:
    """Outcome of one verification or offline certification attempt.

    Produced fresh per call and never mutated. ``weights`` and
    ``threshold`` snapshot the policy in force, so a stored result can be
    re-read after the policy changes.
    """

    checks: Mapping[str, bool]
    confidence: float
    verdict: Verdict
    mode: Mode
    weights: Mapping[str, float] = field(default_factory=dict)
    threshold: float = 0.0
    tree_root: str | None = None
    tile_count: int = 0
    details: Mapping[str, str] = field(default_factory=dict)
    indicators: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        for name in ("checks", "weights", "details"):
            object.__setattr__(self, name, MappingProxyType(dict(getattr(self, name))))
        object.__setattr__(self, "indicators", tuple(self.indicators))

    @property
    def authentic(self) -> bool:
        return self.verdict == Verdict.AUTHENTIC

    def passed(self, check: str) -> bool:
        return self.checks.get(check, False)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "checks": dict(sorted(self.checks.items())),
            "confidence": self.confidence,
            "verdict": self.verdict.value,
            "mode": self.mode.value,
            "weights": dict(sorted(self.weights.items())),
            "threshold": self.threshold,
            "tree_root": self.tree_root,
            "tile_count": self.tile_count,
            "details": dict(sorted(self.details.items())),
            "indicators": list(self.indicators),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> VerificationResult:
        """Create from dictionary (e.g. a relayed verifier response)."""
        return cls(
            checks={str(k): bool(v) for k, v in data["checks"].items()},
            confidence=float(data["confidence"]),
            verdict=Verdict(data["verdict"]),
            mode=Mode(data["mode"]),
            weights={str(k): float(v) for k, v in data.get("weights", {}).items()},
            threshold=float(data.get("threshold", 0.0)),
            tree_root=data.get("tree_root"),
            tile_count=int(data.get("tile_count", 0)),
            details={str(k): str(v) for k, v in data.get("details", {}).items()},
            indicators=tuple(data.get("indicators", ())),
        )

    def to_json(self) -> str:
        """Canonical JSON; identical results give identical strings."""
        return canonical_json(self.to_dict())

    def to_markdown(self) -> str:
        """Generate markdown report."""
        lines = [
            "# Photo Verification Report",
            "",
            f"**Verdict:** {'✅ AUTHENTIC' if self.authentic else '❌ REJECTED'}",
            f"**Confidence:** {self.confidence * 100:.1f}% (threshold {self.threshold * 100:.0f}%)",
            f"**Mode:** {self.mode.value}",
            f"**Tree Root:** `{self.tree_root or 'unavailable'}`",
            f"**Tiles:** {self.tile_count}",
            "",
            "## Checks",
            "",
            "| Check | Result | Weight | Detail |",
            "|-------|--------|--------|--------|",
        ]
        for name in sorted(self.checks):
            status = "✅" if self.checks[name] else "❌"
            weight = self.weights.get(name, 0.0)
            lines.append(f"| {name} | {status} | {weight:.2f} | {self.details.get(name, '')} |")
        lines.append("")

        if self.indicators:
            lines.extend(["## Fraud Indicators", ""])
            for indicator in self.indicators:
                lines.append(f"- ⚠️ {indicator}")
            lines.append("")

        return "\n".join(lines)

    def write_json(self, path: Path) -> None:
        """Write to JSON file."""
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            json.dump(self.to_dict(), f, indent=2, sort_keys=True)

    def write_markdown(self, path: Path) -> None:
        """Write to Markdown file."""
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            f.write(self.to_markdown())


def resolve_now(now: datetime | None) -> datetime:
    """Default to the (determinism-aware) current time; naive means UTC."""
    if now is None:
        return stable_now()
    if now.tzinfo is None:
        return now.replace(tzinfo=UTC)
    return now


def assemble_result(
    outcomes: Mapping[str, CheckOutcome],
    policy: ScoringPolicy,
    mode: Mode,
    tree: TileHashTree | None,
) -> VerificationResult:
    """Combine sub-check outcomes into a VerificationResult."""
    checks = {name: outcome.passed for name, outcome in sorted(outcomes.items())}
    confidence = policy.combine(checks)
    return VerificationResult(
        checks=checks,
        confidence=confidence,
        verdict=policy.verdict_for(confidence),
        mode=mode,
        weights=dict(policy.weights),
        threshold=policy.threshold,
        tree_root=tree.root_hex if tree is not None else None,
        tile_count=tree.tile_count if tree is not None else 0,
        details={name: outcome.detail for name, outcome in sorted(outcomes.items())},
        indicators=tuple(
            FAILURE_INDICATORS[name]
            for name, passed in checks.items()
            if not passed and name in FAILURE_INDICATORS
        ),
    )


class VerificationEngine:
    """Stateless verifier for attested photos."""

    def __init__(
        self,
        policy: ScoringPolicy | None = None,
        key_registry: KeyRegistry | None = None,
        config: EngineConfig | None = None,
    ) -> None:
        """Initialize engine.

        Args:
            policy: Weight table and threshold (defaults to the 6-factor model)
            key_registry: Trusted device public keys
            config: Engine configuration
        """
        self.policy = policy or ScoringPolicy()
        self.key_registry = key_registry or KeyRegistry()
        self.config = config or EngineConfig()

    def verify(
        self,
        frozen_image_bytes: FrozenImage | bytes,
        attestation: Attestation,
        metadata_bundle: MetadataBundle | Mapping[str, Any],
        now: datetime | None = None,
    ) -> VerificationResult:
        """Verify a photo against its attestation and metadata.

        Args:
            frozen_image_bytes: The exact bytes that were attested
            attestation: Attestation produced at capture time
            metadata_bundle: Capture metadata (bundle or wire mapping)
            now: Reference time for timestamp recency (default: current time)

        Returns:
            VerificationResult with mode ONLINE

        Raises:
            EncodingError: If the bytes cannot be frozen
            MalformedFieldError: If a present metadata field is malformed
        """
        now = resolve_now(now)
        frozen = freeze(
            frozen_image_bytes,
            limits=self.config.security_limits,
            require_known_format=self.config.require_known_format,
        )
        if not isinstance(metadata_bundle, MetadataBundle):
            metadata_bundle = MetadataBundle.from_dict(metadata_bundle)

        outcomes: dict[str, CheckOutcome] = {}

        # 1. Content integrity
        tile_size = attestation.tile_size or self.config.tile_size
        tree = build_tree(frozen, tile_size, workers=self.config.hash_workers)
        if tree.root == attestation.tree_root:
            outcomes[CHECK_INTEGRITY] = CheckOutcome(True, f"root matches over {tree.tile_count} tiles")
        else:
            outcomes[CHECK_INTEGRITY] = CheckOutcome(
                False, f"recomputed root {tree.root_hex[:16]} != attested {attestation.tree_root.hex()[:16]}"
            )

        # 2. Metadata binding
        if digest(metadata_bundle) == attestation.metadata_digest:
            outcomes[CHECK_METADATA_BINDING] = CheckOutcome(True, "metadata digest matches")
        else:
            outcomes[CHECK_METADATA_BINDING] = CheckOutcome(False, "metadata digest mismatch")

        # 3. Signature over the attested root and digest
        outcomes[CHECK_SIGNATURE] = self._check_signature(attestation)

        # 4. Plausibility
        outcomes.update(score_metadata(metadata_bundle, now, self.config.plausibility))

        # 5-6. Confidence and verdict
        result = assemble_result(outcomes, self.policy, Mode.ONLINE, tree)
        logger.info(
            "Verified %s: %s (confidence %.2f, failed: %s)",
            tree.root_hex[:16],
            result.verdict.value,
            result.confidence,
            ", ".join(name for name, ok in result.checks.items() if not ok) or "none",
        )
        return result

    def _check_signature(self, attestation: Attestation) -> CheckOutcome:
        public_key = self.key_registry.resolve(
            attestation.key_id,
            embedded_public_key=attestation.public_key,
            trust_embedded=self.config.trust_embedded_keys,
        )
        if public_key is None:
            return CheckOutcome(False, f"key {attestation.key_id} is not trusted")
        if verify_signature(attestation, public_key):
            return CheckOutcome(True, f"{attestation.algorithm} signature valid for key {attestation.key_id}")
        return CheckOutcome(False, "signature does not verify")

    def localize_tampering(
        self,
        frozen_image_bytes: FrozenImage | bytes,
        reference_tree: TileHashTree,
    ) -> set[int]:
        """Tile indices where the received bytes differ from a capture-side tree.

        Raises:
            EncodingError: If the bytes cannot be frozen
        """
        frozen = freeze(
            frozen_image_bytes,
            limits=self.config.security_limits,
            require_known_format=self.config.require_known_format,
        )
        tree = build_tree(frozen, reference_tree.tile_size, workers=self.config.hash_workers)
        return diff_tiles(reference_tree, tree)
