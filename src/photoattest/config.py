"""Engine configuration.

Supports:
- Dataclass defaults
- Environment variable configuration (PHOTOATTEST_*)
- YAML file configuration
- Runtime overrides via constructor arguments

The scoring weights and verdict threshold live in ScoringPolicy and are
loaded from the ``scoring:`` section of the same YAML file.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

import yaml

from photoattest.security import DEFAULT_MAX_IMAGE_SIZE, SecurityLimits
from photoattest.tiles import DEFAULT_TILE_SIZE

if TYPE_CHECKING:
    from photoattest.scoring import ScoringPolicy

DAY = 24 * 60 * 60
STANDARD_GRAVITY = 9.81


@dataclass
class PlausibilityLimits:
    """Bounds used by the metadata plausibility checks."""

    max_capture_age_seconds: float = 30 * DAY
    clock_skew_seconds: float = 5 * 60
    max_sensor_skew_seconds: float = 10 * 60
    max_geo_accuracy_m: float = 1000.0
    min_gravity: float = 0.5 * STANDARD_GRAVITY
    max_gravity: float = 2.0 * STANDARD_GRAVITY
    min_motion_variance: float = 0.1

    def __post_init__(self) -> None:
        for name in (
            "max_capture_age_seconds",
            "clock_skew_seconds",
            "max_sensor_skew_seconds",
            "max_geo_accuracy_m",
            "min_motion_variance",
        ):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must be >= 0, got {getattr(self, name)}")
        if not 0 <= self.min_gravity <= self.max_gravity:
            raise ValueError(
                f"gravity bounds must satisfy 0 <= min <= max, got {self.min_gravity}, {self.max_gravity}"
            )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PlausibilityLimits:
        known = cls.__dataclass_fields__
        return cls(**{k: float(v) for k, v in data.items() if k in known})

    def to_dict(self) -> dict[str, float]:
        return {name: getattr(self, name) for name in self.__dataclass_fields__}


@dataclass
class EngineConfig:
    """Configuration shared by capture, verification and fallback paths."""

    tile_size: int = DEFAULT_TILE_SIZE
    hash_workers: int = 1
    key_timeout: float = 5.0
    submit_timeout: float = 10.0
    require_known_format: bool = True
    trust_embedded_keys: bool = False
    max_image_size: int = DEFAULT_MAX_IMAGE_SIZE
    plausibility: PlausibilityLimits = field(default_factory=PlausibilityLimits)

    def __post_init__(self) -> None:
        if self.tile_size < 1:
            raise ValueError(f"tile_size must be >= 1, got {self.tile_size}")
        if self.hash_workers < 1:
            raise ValueError(f"hash_workers must be >= 1, got {self.hash_workers}")
        if self.key_timeout <= 0:
            raise ValueError(f"key_timeout must be > 0, got {self.key_timeout}")
        if self.submit_timeout <= 0:
            raise ValueError(f"submit_timeout must be > 0, got {self.submit_timeout}")
        if self.max_image_size < 1:
            raise ValueError(f"max_image_size must be >= 1, got {self.max_image_size}")

    @property
    def security_limits(self) -> SecurityLimits:
        return SecurityLimits(max_image_size=self.max_image_size)

    @classmethod
    def from_env(cls) -> EngineConfig:
        """
        Create configuration from environment variables.

        Environment variables:
            PHOTOATTEST_TILE_SIZE: Tile size in bytes
            PHOTOATTEST_HASH_WORKERS: Threads used for tile hashing
            PHOTOATTEST_KEY_TIMEOUT: Seconds to wait for the key handle
            PHOTOATTEST_SUBMIT_TIMEOUT: Seconds to wait for the verifier
            PHOTOATTEST_REQUIRE_KNOWN_FORMAT: Reject non-image bytes (true/false)
            PHOTOATTEST_TRUST_EMBEDDED_KEYS: Accept keys carried in attestations (true/false)
            PHOTOATTEST_MAX_IMAGE_SIZE: Maximum image size in bytes
        """
        return cls(
            tile_size=int(os.getenv("PHOTOATTEST_TILE_SIZE", str(DEFAULT_TILE_SIZE))),
            hash_workers=int(os.getenv("PHOTOATTEST_HASH_WORKERS", "1")),
            key_timeout=float(os.getenv("PHOTOATTEST_KEY_TIMEOUT", "5.0")),
            submit_timeout=float(os.getenv("PHOTOATTEST_SUBMIT_TIMEOUT", "10.0")),
            require_known_format=os.getenv("PHOTOATTEST_REQUIRE_KNOWN_FORMAT", "true").lower() == "true",
            trust_embedded_keys=os.getenv("PHOTOATTEST_TRUST_EMBEDDED_KEYS", "false").lower() == "true",
            max_image_size=int(os.getenv("PHOTOATTEST_MAX_IMAGE_SIZE", str(DEFAULT_MAX_IMAGE_SIZE))),
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EngineConfig:
        """Create configuration from dictionary (e.g., YAML)."""
        plausibility_data = data.get("plausibility", {})
        plausibility = (
            PlausibilityLimits.from_dict(plausibility_data) if plausibility_data else PlausibilityLimits()
        )
        return cls(
            tile_size=int(data.get("tile_size", DEFAULT_TILE_SIZE)),
            hash_workers=int(data.get("hash_workers", 1)),
            key_timeout=float(data.get("key_timeout", 5.0)),
            submit_timeout=float(data.get("submit_timeout", 10.0)),
            require_known_format=bool(data.get("require_known_format", True)),
            trust_embedded_keys=bool(data.get("trust_embedded_keys", False)),
            max_image_size=int(data.get("max_image_size", DEFAULT_MAX_IMAGE_SIZE)),
            plausibility=plausibility,
        )

    @classmethod
    def from_yaml(cls, path: Path) -> EngineConfig:
        """Load the ``engine:`` section of a YAML file."""
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ValueError(f"Config file must contain a mapping: {path}")
        return cls.from_dict(data.get("engine", {}))

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "tile_size": self.tile_size,
            "hash_workers": self.hash_workers,
            "key_timeout": self.key_timeout,
            "submit_timeout": self.submit_timeout,
            "require_known_format": self.require_known_format,
            "trust_embedded_keys": self.trust_embedded_keys,
            "max_image_size": self.max_image_size,
            "plausibility": self.plausibility.to_dict(),
        }


def load_settings(path: Path | None = None) -> tuple[EngineConfig, ScoringPolicy]:
    """Load engine config and scoring policy.

    Reads ``path`` if given, else the file named by PHOTOATTEST_CONFIG,
    else falls back to environment variables and defaults.

    YAML layout:
        engine: {tile_size: 4096, key_timeout: 5.0, plausibility: {...}}
        scoring: {threshold: 0.7, weights: {signature: 0.3, ...}}
    """
    from photoattest.scoring import ScoringPolicy

    if path is None and os.getenv("PHOTOATTEST_CONFIG"):
        path = Path(os.environ["PHOTOATTEST_CONFIG"])

    if path is None:
        return EngineConfig.from_env(), ScoringPolicy()

    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Config file must contain a mapping: {path}")

    config = EngineConfig.from_dict(data.get("engine", {}))
    scoring_data = data.get("scoring")
    policy = ScoringPolicy.from_dict(scoring_data) if scoring_data else ScoringPolicy()
    return config, policy
