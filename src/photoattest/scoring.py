"""Metadata plausibility checks and weighted confidence scoring.

Each sub-check is a plain boolean: it contributes its full weight when it
passes and nothing otherwise. Weights come from a ScoringPolicy handed to
the engine, so a deployment can retune them without touching the checks.

Default weight table (sums to 1.0):

    signature               0.30
    integrity               0.25
    metadata_completeness   0.20
    geo_plausibility        0.10
    motion_plausibility     0.10
    timestamp_plausibility  0.05

A result is AUTHENTIC when confidence >= threshold (0.70 by default).
"""

from __future__ import annotations

import math
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Any

from photoattest.config import STANDARD_GRAVITY, PlausibilityLimits
from photoattest.metadata import MetadataBundle

AUTHENTIC_THRESHOLD = 0.70

CHECK_SIGNATURE = "signature"
CHECK_INTEGRITY = "integrity"
CHECK_METADATA_BINDING = "metadata_binding"
CHECK_COMPLETENESS = "metadata_completeness"
CHECK_GEO = "geo_plausibility"
CHECK_MOTION = "motion_plausibility"
CHECK_TIMESTAMP = "timestamp_plausibility"
CHECK_LOCAL_SIGNATURE = "local_signature"

# metadata_binding is reported but unweighted here, so a valid signature
# with a swapped bundle still scores on plausibility alone. Deployments
# that accept third-party metadata should give it weight via ScoringPolicy.
DEFAULT_WEIGHTS: dict[str, float] = {
    CHECK_SIGNATURE: 0.30,
    CHECK_INTEGRITY: 0.25,
    CHECK_COMPLETENESS: 0.20,
    CHECK_GEO: 0.10,
    CHECK_MOTION: 0.10,
    CHECK_TIMESTAMP: 0.05,
}

# Weighted sums are rounded to this many places to drop float noise
# (0.25 + 0.20 + 0.10 + 0.10 + 0.05 must equal 0.70 exactly).
CONFIDENCE_PRECISION = 10
WEIGHT_SUM_TOLERANCE = 1e-9

# Shown in reports when a check fails
FAILURE_INDICATORS: dict[str, str] = {
    CHECK_SIGNATURE: "Invalid or unverifiable device signature",
    CHECK_INTEGRITY: "Image bytes do not match the attested content",
    CHECK_METADATA_BINDING: "Metadata differs from what was attested",
    CHECK_COMPLETENESS: "Missing critical capture metadata",
    CHECK_GEO: "Location missing or implausible",
    CHECK_MOTION: "Motion data missing or static (possible screenshot)",
    CHECK_TIMESTAMP: "Capture time missing, implausible or uncorroborated",
    CHECK_LOCAL_SIGNATURE: "Local key could not sign",
}


class Verdict(Enum):
    """Final verdict."""

    AUTHENTIC = "AUTHENTIC"
    REJECTED = "REJECTED"


class Mode(Enum):
    """Which path produced the result."""

    ONLINE = "ONLINE"
    OFFLINE = "OFFLINE"


@dataclass(frozen=True)
class CheckOutcome:
    """Boolean sub-check with a short explanation."""

    passed: bool
    detail: str


@dataclass(frozen=True)
class ScoringPolicy:
    """Weight table and verdict threshold."""

    weights: Mapping[str, float] = field(default_factory=lambda: dict(DEFAULT_WEIGHTS))
    threshold: float = AUTHENTIC_THRESHOLD

    def __post_init__(self) -> None:
        if not self.weights:
            raise ValueError("Weight table is empty")
        for name, weight in self.weights.items():
            if isinstance(weight, bool) or not isinstance(weight, (int, float)):
                raise ValueError(f"Weight for {name} is not a number")
            if not math.isfinite(weight) or weight < 0:
                raise ValueError(f"Weight for {name} must be finite and >= 0, got {weight}")
        total = math.fsum(self.weights.values())
        if abs(total - 1.0) > WEIGHT_SUM_TOLERANCE:
            raise ValueError(f"Weights must sum to 1.0, got {total}")
        if not 0.0 <= self.threshold <= 1.0:
            raise ValueError(f"threshold must be within [0, 1], got {self.threshold}")
        object.__setattr__(self, "weights", MappingProxyType(dict(sorted(self.weights.items()))))

    def combine(self, checks: Mapping[str, bool]) -> float:
        """Weighted sum of passing checks, in [0, 1]."""
        total = math.fsum(weight for name, weight in self.weights.items() if checks.get(name))
        return min(1.0, max(0.0, round(total, CONFIDENCE_PRECISION)))

    def verdict_for(self, confidence: float) -> Verdict:
        """The only place the verdict boundary is applied (inclusive)."""
        return Verdict.AUTHENTIC if confidence >= self.threshold else Verdict.REJECTED

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ScoringPolicy:
        weights = data.get("weights")
        return cls(
            weights={str(k): float(v) for k, v in weights.items()} if weights else dict(DEFAULT_WEIGHTS),
            threshold=float(data.get("threshold", AUTHENTIC_THRESHOLD)),
        )

    def to_dict(self) -> dict[str, Any]:
        return {"weights": dict(self.weights), "threshold": self.threshold}


def check_completeness(bundle: MetadataBundle) -> CheckOutcome:
    """Capture timestamp and a physical device class are both present."""
    missing = []
    if bundle.capture_timestamp is None:
        missing.append("captureTimestamp")
    if bundle.device_class is None:
        missing.append("deviceClass")
    if missing:
        return CheckOutcome(False, f"missing: {', '.join(missing)}")
    if not bundle.device_class.is_physical:
        return CheckOutcome(False, f"device class '{bundle.device_class.value}' is not a physical camera")
    return CheckOutcome(True, f"present: {', '.join(bundle.present_fields())}")


def check_geo(bundle: MetadataBundle, limits: PlausibilityLimits) -> CheckOutcome:
    geo = bundle.geo
    if geo is None:
        return CheckOutcome(False, "location missing")
    if not (-90.0 <= geo.latitude <= 90.0 and -180.0 <= geo.longitude <= 180.0):
        return CheckOutcome(False, f"coordinates out of range ({geo.latitude}, {geo.longitude})")
    if geo.latitude == 0.0 and geo.longitude == 0.0:
        return CheckOutcome(False, "coordinates are exactly (0, 0)")
    if geo.accuracy_m is not None and not 0.0 < geo.accuracy_m <= limits.max_geo_accuracy_m:
        return CheckOutcome(False, f"accuracy {geo.accuracy_m} m outside (0, {limits.max_geo_accuracy_m}]")
    return CheckOutcome(True, f"{geo.latitude:.4f}, {geo.longitude:.4f}")


def check_motion(bundle: MetadataBundle, limits: PlausibilityLimits) -> CheckOutcome:
    motion = bundle.motion
    if motion is None:
        return CheckOutcome(False, "motion sensors missing")

    magnitude = motion.magnitude
    if not limits.min_gravity <= magnitude <= limits.max_gravity:
        return CheckOutcome(
            False,
            f"acceleration {magnitude:.2f} m/s^2 outside [{limits.min_gravity:.2f}, {limits.max_gravity:.2f}]",
        )

    # A device resting perfectly flat, or a synthetic reading, shows no shake.
    ax, ay, az = motion.accelerometer
    variance = abs(ax) + abs(ay) + abs(az - STANDARD_GRAVITY)
    if variance <= limits.min_motion_variance:
        return CheckOutcome(False, f"no natural motion (variance {variance:.2f})")
    return CheckOutcome(True, f"natural motion (variance {variance:.2f})")


def check_timestamp(bundle: MetadataBundle, now: datetime, limits: PlausibilityLimits) -> CheckOutcome:
    """Capture time is recent, not in the future, and backed by a sensor reading."""
    captured = bundle.capture_timestamp
    if captured is None:
        return CheckOutcome(False, "timestamp missing")

    age = (now - captured).total_seconds()
    if age < -limits.clock_skew_seconds:
        return CheckOutcome(False, "timestamp is in the future")
    if age > limits.max_capture_age_seconds:
        return CheckOutcome(False, f"timestamp is {age / 86400:.1f} days old")

    if bundle.geo is None and bundle.motion is None:
        return CheckOutcome(False, "timestamp not corroborated by any sensor reading")

    readings = []
    if bundle.geo is not None and bundle.geo.fix_timestamp is not None:
        readings.append(("location fix", bundle.geo.fix_timestamp))
    if bundle.motion is not None and bundle.motion.sampled_at is not None:
        readings.append(("motion sample", bundle.motion.sampled_at))
    for label, reading in readings:
        skew = abs((reading - captured).total_seconds())
        if skew > limits.max_sensor_skew_seconds:
            return CheckOutcome(False, f"{label} is {skew:.0f}s away from capture time")

    return CheckOutcome(True, f"captured {max(age, 0.0) / 60:.0f} minutes ago")


def score_metadata(
    bundle: MetadataBundle,
    now: datetime,
    limits: PlausibilityLimits | None = None,
) -> dict[str, CheckOutcome]:
    """Run every metadata plausibility sub-check.

    Never raises: an absent field is a failed check, not an error.
    """
    limits = limits or PlausibilityLimits()
    return {
        CHECK_COMPLETENESS: check_completeness(bundle),
        CHECK_GEO: check_geo(bundle, limits),
        CHECK_MOTION: check_motion(bundle, limits),
        CHECK_TIMESTAMP: check_timestamp(bundle, now, limits),
    }
