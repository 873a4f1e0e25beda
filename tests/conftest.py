"""Shared fixtures for photoattest tests."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from photoattest.config import EngineConfig
from photoattest.keys import KeyRegistry, SoftwareKeyHandle
from photoattest.metadata import DeviceClass, GeoCoordinate, MetadataBundle, MotionSample

NOW = datetime(2025, 6, 1, 12, 0, 0, tzinfo=UTC)
CAPTURED_AT = NOW - timedelta(minutes=2)

TILE_SIZE = 256


def build_jpeg(body_length: int = 10 * TILE_SIZE - 6) -> bytes:
    """Synthetic JPEG container: SOI marker, body, EOI marker.

    Body bytes stay below 0xFF so no stray marker appears when a test
    flips or truncates a byte.
    """
    body = bytes((i * 7 + 3) % 251 for i in range(body_length))
    return b"\xff\xd8\xff\xe0" + body + b"\xff\xd9"


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def make_jpeg():
    """Factory for synthetic JPEG bytes of a given body length."""
    return build_jpeg


@pytest.fixture
def jpeg_bytes() -> bytes:
    """Ten tiles at TILE_SIZE."""
    return build_jpeg()


@pytest.fixture
def config() -> EngineConfig:
    return EngineConfig(tile_size=TILE_SIZE, key_timeout=2.0, submit_timeout=2.0)


@pytest.fixture
def key_handle() -> SoftwareKeyHandle:
    return SoftwareKeyHandle.generate()


@pytest.fixture
def registry(key_handle: SoftwareKeyHandle) -> KeyRegistry:
    return KeyRegistry.from_handles([key_handle])


@pytest.fixture
def full_bundle() -> MetadataBundle:
    """Bundle that passes every plausibility check at NOW."""
    return MetadataBundle(
        capture_timestamp=CAPTURED_AT,
        geo=GeoCoordinate(
            latitude=37.7749,
            longitude=-122.4194,
            accuracy_m=8.0,
            altitude_m=16.0,
            fix_timestamp=CAPTURED_AT - timedelta(seconds=3),
        ),
        motion=MotionSample(
            accelerometer=(0.31, 0.22, 9.93),
            gyroscope=(0.01, -0.02, 0.005),
            sampled_at=CAPTURED_AT,
        ),
        device_class=DeviceClass.SMARTPHONE,
        sensor_flags=frozenset({"secure_enclave", "verified_boot"}),
    )


@pytest.fixture
def sparse_bundle() -> MetadataBundle:
    """Timestamp and device class only; no geo or motion."""
    return MetadataBundle(capture_timestamp=CAPTURED_AT, device_class=DeviceClass.SMARTPHONE)


@pytest.fixture
def full_bundle_wire(full_bundle: MetadataBundle) -> dict:
    return full_bundle.to_dict()
