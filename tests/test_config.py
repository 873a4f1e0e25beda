"""Tests for engine configuration loading."""

from __future__ import annotations

from pathlib import Path

import pytest
import yaml

from photoattest.config import EngineConfig, PlausibilityLimits, load_settings
from photoattest.scoring import ScoringPolicy


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in (
        "PHOTOATTEST_CONFIG",
        "PHOTOATTEST_TILE_SIZE",
        "PHOTOATTEST_HASH_WORKERS",
        "PHOTOATTEST_KEY_TIMEOUT",
        "PHOTOATTEST_SUBMIT_TIMEOUT",
        "PHOTOATTEST_REQUIRE_KNOWN_FORMAT",
        "PHOTOATTEST_TRUST_EMBEDDED_KEYS",
        "PHOTOATTEST_MAX_IMAGE_SIZE",
    ):
        monkeypatch.delenv(name, raising=False)


class TestEngineConfig:
    """Test EngineConfig."""

    def test_defaults(self):
        config = EngineConfig()
        assert config.tile_size == 4096
        assert config.hash_workers == 1
        assert config.require_known_format is True
        assert config.trust_embedded_keys is False

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("PHOTOATTEST_TILE_SIZE", "1024")
        monkeypatch.setenv("PHOTOATTEST_HASH_WORKERS", "4")
        monkeypatch.setenv("PHOTOATTEST_KEY_TIMEOUT", "1.5")
        monkeypatch.setenv("PHOTOATTEST_TRUST_EMBEDDED_KEYS", "TRUE")

        config = EngineConfig.from_env()
        assert config.tile_size == 1024
        assert config.hash_workers == 4
        assert config.key_timeout == 1.5
        assert config.trust_embedded_keys is True

    def test_from_dict(self):
        config = EngineConfig.from_dict(
            {"tile_size": 512, "submit_timeout": 3, "plausibility": {"max_geo_accuracy_m": 50}}
        )
        assert config.tile_size == 512
        assert config.submit_timeout == 3.0
        assert config.plausibility.max_geo_accuracy_m == 50.0
        assert config.plausibility.clock_skew_seconds == 300.0

    def test_dict_round_trip(self):
        config = EngineConfig(tile_size=2048, hash_workers=2)
        assert EngineConfig.from_dict(config.to_dict()) == config

    def test_from_yaml(self, tmp_path: Path):
        path = tmp_path / "settings.yaml"
        path.write_text(yaml.safe_dump({"engine": {"tile_size": 8192}}), encoding="utf-8")
        assert EngineConfig.from_yaml(path).tile_size == 8192

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"tile_size": 0},
            {"hash_workers": 0},
            {"key_timeout": 0},
            {"submit_timeout": -1},
            {"max_image_size": 0},
        ],
    )
    def test_validation(self, kwargs):
        with pytest.raises(ValueError):
            EngineConfig(**kwargs)

    def test_security_limits(self):
        assert EngineConfig(max_image_size=1000).security_limits.max_image_size == 1000


class TestPlausibilityLimits:
    def test_negative_rejected(self):
        with pytest.raises(ValueError):
            PlausibilityLimits(max_capture_age_seconds=-1)

    def test_gravity_bounds(self):
        with pytest.raises(ValueError):
            PlausibilityLimits(min_gravity=20.0, max_gravity=10.0)

    def test_unknown_keys_ignored(self):
        limits = PlausibilityLimits.from_dict({"clock_skew_seconds": 60, "nonsense": 1})
        assert limits.clock_skew_seconds == 60.0


class TestLoadSettings:
    def test_defaults_without_file(self):
        config, policy = load_settings()
        assert config == EngineConfig()
        assert policy == ScoringPolicy()

    def test_file(self, tmp_path: Path):
        path = tmp_path / "settings.yaml"
        path.write_text(
            yaml.safe_dump(
                {
                    "engine": {"tile_size": 1024},
                    "scoring": {
                        "threshold": 0.8,
                        "weights": {"signature": 0.5, "integrity": 0.5},
                    },
                }
            ),
            encoding="utf-8",
        )
        config, policy = load_settings(path)
        assert config.tile_size == 1024
        assert policy.threshold == 0.8
        assert policy.weights == {"signature": 0.5, "integrity": 0.5}

    def test_env_names_file(self, tmp_path: Path, monkeypatch):
        path = tmp_path / "settings.yaml"
        path.write_text("engine:\n  hash_workers: 3\n", encoding="utf-8")
        monkeypatch.setenv("PHOTOATTEST_CONFIG", str(path))
        config, _ = load_settings()
        assert config.hash_workers == 3

    def test_not_a_mapping(self, tmp_path: Path):
        path = tmp_path / "settings.yaml"
        path.write_text("- a\n- b\n", encoding="utf-8")
        with pytest.raises(ValueError, match="mapping"):
            load_settings(path)

    def test_bad_weights(self, tmp_path: Path):
        path = tmp_path / "settings.yaml"
        path.write_text(yaml.safe_dump({"scoring": {"weights": {"signature": 0.2}}}), encoding="utf-8")
        with pytest.raises(ValueError):
            load_settings(path)
