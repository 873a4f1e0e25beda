"""Capture metadata bundle and its canonical digest.

A MetadataBundle records the capture context: when, where, how the device
was moving, what kind of device it was, and which hardware protections it
reported. Every field is optional. An absent field is omitted from the
canonical serialization (never written as null), so two bundles with
different sets of present fields can never share a digest.

Structural problems in a present field (wrong type, NaN, a timestamp with
no UTC offset) raise MalformedFieldError. Values that are well-formed but
implausible, such as a latitude of 95, are left to the plausibility checks.
"""

from __future__ import annotations

import math
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

from photoattest.canonical import canonical_hash
from photoattest.determinism import format_timestamp, parse_timestamp
from photoattest.errors import PhotoAttestError


class MalformedFieldError(PhotoAttestError, ValueError):
    """A present metadata field is structurally invalid."""

    def __init__(self, field: str, reason: str) -> None:
        super().__init__(f"Malformed metadata field '{field}': {reason}")
        self.field = field
        self.reason = reason


class DeviceClass(Enum):
    """Kind of device that produced the capture."""

    SMARTPHONE = "smartphone"
    TABLET = "tablet"
    CAMERA = "camera"
    EMULATOR = "emulator"
    UNKNOWN = "unknown"

    @property
    def is_physical(self) -> bool:
        return self in (DeviceClass.SMARTPHONE, DeviceClass.TABLET, DeviceClass.CAMERA)


def _number(field: str, value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise MalformedFieldError(field, f"expected a number, got {type(value).__name__}")
    number = float(value)
    if not math.isfinite(number):
        raise MalformedFieldError(field, "must be finite")
    return number


def _optional_number(field: str, value: Any) -> float | None:
    return None if value is None else _number(field, value)


def _timestamp(field: str, value: Any) -> datetime:
    if isinstance(value, str):
        try:
            return parse_timestamp(value)
        except ValueError as e:
            raise MalformedFieldError(field, str(e)) from e
    if not isinstance(value, datetime):
        raise MalformedFieldError(field, f"expected a timestamp, got {type(value).__name__}")
    if value.tzinfo is None or value.utcoffset() is None:
        raise MalformedFieldError(field, "timestamp must carry a UTC offset")
    return value


def _optional_timestamp(field: str, value: Any) -> datetime | None:
    return None if value is None else _timestamp(field, value)


def _pick(data: Mapping[str, Any], *names: str) -> Any:
    for name in names:
        if name in data:
            return data[name]
    return None


def _mapping(field: str, value: Any) -> Mapping[str, Any]:
    if not isinstance(value, Mapping):
        raise MalformedFieldError(field, f"expected an object, got {type(value).__name__}")
    return value


@dataclass(frozen=True)
class GeoCoordinate:
    """Location fix at capture time (degrees, metres)."""

    latitude: float
    longitude: float
    accuracy_m: float | None = None
    altitude_m: float | None = None
    fix_timestamp: datetime | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "latitude", _number("geoCoordinate.latitude", self.latitude))
        object.__setattr__(self, "longitude", _number("geoCoordinate.longitude", self.longitude))
        object.__setattr__(
            self, "accuracy_m", _optional_number("geoCoordinate.accuracy", self.accuracy_m)
        )
        object.__setattr__(
            self, "altitude_m", _optional_number("geoCoordinate.altitude", self.altitude_m)
        )
        object.__setattr__(
            self, "fix_timestamp", _optional_timestamp("geoCoordinate.timestamp", self.fix_timestamp)
        )

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"latitude": self.latitude, "longitude": self.longitude}
        if self.accuracy_m is not None:
            result["accuracy"] = self.accuracy_m
        if self.altitude_m is not None:
            result["altitude"] = self.altitude_m
        if self.fix_timestamp is not None:
            result["timestamp"] = format_timestamp(self.fix_timestamp)
        return result

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> GeoCoordinate:
        data = _mapping("geoCoordinate", data)
        for required in ("latitude", "longitude"):
            if required not in data:
                raise MalformedFieldError(f"geoCoordinate.{required}", "missing")
        return cls(
            latitude=data["latitude"],
            longitude=data["longitude"],
            accuracy_m=_pick(data, "accuracy", "accuracy_m"),
            altitude_m=_pick(data, "altitude", "altitude_m"),
            fix_timestamp=_pick(data, "timestamp", "fix_timestamp"),
        )


def _vector(field: str, value: Any) -> tuple[float, float, float]:
    if isinstance(value, Mapping):
        try:
            parts = (value["x"], value["y"], value["z"])
        except KeyError as e:
            raise MalformedFieldError(field, f"missing component {e.args[0]}") from e
    elif isinstance(value, (list, tuple)) and len(value) == 3:
        parts = tuple(value)
    else:
        raise MalformedFieldError(field, "expected {x, y, z} or a 3-element list")
    x, y, z = (_number(f"{field}.{axis}", v) for axis, v in zip("xyz", parts))
    return (x, y, z)


@dataclass(frozen=True)
class MotionSample:
    """Inertial reading taken at capture time.

    Accelerometer in m/s^2 (gravity included), gyroscope in rad/s.
    """

    accelerometer: tuple[float, float, float]
    gyroscope: tuple[float, float, float] | None = None
    sampled_at: datetime | None = None

    def __post_init__(self) -> None:
        object.__setattr__(
            self, "accelerometer", _vector("motionSample.accelerometer", self.accelerometer)
        )
        if self.gyroscope is not None:
            object.__setattr__(self, "gyroscope", _vector("motionSample.gyroscope", self.gyroscope))
        object.__setattr__(
            self, "sampled_at", _optional_timestamp("motionSample.sampledAt", self.sampled_at)
        )

    @property
    def magnitude(self) -> float:
        return math.sqrt(sum(component * component for component in self.accelerometer))

    def to_dict(self) -> dict[str, Any]:
        x, y, z = self.accelerometer
        result: dict[str, Any] = {"accelerometer": {"x": x, "y": y, "z": z}}
        if self.gyroscope is not None:
            gx, gy, gz = self.gyroscope
            result["gyroscope"] = {"x": gx, "y": gy, "z": gz}
        if self.sampled_at is not None:
            result["sampledAt"] = format_timestamp(self.sampled_at)
        return result

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> MotionSample:
        data = _mapping("motionSample", data)
        if "accelerometer" not in data:
            raise MalformedFieldError("motionSample.accelerometer", "missing")
        return cls(
            accelerometer=data["accelerometer"],
            gyroscope=data.get("gyroscope"),
            sampled_at=_pick(data, "sampledAt", "sampled_at"),
        )


@dataclass(frozen=True)
class MetadataBundle:
    """Capture-context record; every field is independently optional."""

    capture_timestamp: datetime | None = None
    geo: GeoCoordinate | None = None
    motion: MotionSample | None = None
    device_class: DeviceClass | None = None
    sensor_flags: frozenset[str] | None = None

    def __post_init__(self) -> None:
        object.__setattr__(
            self,
            "capture_timestamp",
            _optional_timestamp("captureTimestamp", self.capture_timestamp),
        )
        if self.geo is not None and not isinstance(self.geo, GeoCoordinate):
            raise MalformedFieldError("geoCoordinate", "expected a GeoCoordinate")
        if self.motion is not None and not isinstance(self.motion, MotionSample):
            raise MalformedFieldError("motionSample", "expected a MotionSample")
        if self.device_class is not None and not isinstance(self.device_class, DeviceClass):
            try:
                object.__setattr__(self, "device_class", DeviceClass(self.device_class))
            except ValueError as e:
                raise MalformedFieldError(
                    "deviceClass", f"unknown device class {self.device_class!r}"
                ) from e
        if self.sensor_flags is not None:
            if not isinstance(self.sensor_flags, (list, tuple, set, frozenset)) or not all(
                isinstance(flag, str) and flag for flag in self.sensor_flags
            ):
                raise MalformedFieldError("sensorFlags", "expected a list of non-empty strings")
            object.__setattr__(self, "sensor_flags", frozenset(self.sensor_flags))

    def present_fields(self) -> list[str]:
        """Wire names of the fields that are present."""
        return sorted(self.to_dict())

    def to_dict(self) -> dict[str, Any]:
        """Wire form with absent fields omitted."""
        result: dict[str, Any] = {}
        if self.capture_timestamp is not None:
            result["captureTimestamp"] = format_timestamp(self.capture_timestamp)
        if self.geo is not None:
            result["geoCoordinate"] = self.geo.to_dict()
        if self.motion is not None:
            result["motionSample"] = self.motion.to_dict()
        if self.device_class is not None:
            result["deviceClass"] = self.device_class.value
        if self.sensor_flags is not None:
            result["sensorFlags"] = sorted(self.sensor_flags)
        return result

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> MetadataBundle:
        """Parse the wire form (camelCase; snake_case also accepted).

        Raises:
            MalformedFieldError: If a present field is structurally invalid
        """
        data = _mapping("metadata", data)

        geo = _pick(data, "geoCoordinate", "geo")
        motion = _pick(data, "motionSample", "motion")
        flags = _pick(data, "sensorFlags", "sensor_flags")
        if flags is not None and not isinstance(flags, (list, tuple, set, frozenset)):
            raise MalformedFieldError("sensorFlags", "expected a list of strings")

        return cls(
            capture_timestamp=_pick(data, "captureTimestamp", "capture_timestamp"),
            geo=GeoCoordinate.from_dict(geo) if geo is not None else None,
            motion=MotionSample.from_dict(motion) if motion is not None else None,
            device_class=_pick(data, "deviceClass", "device_class"),
            sensor_flags=flags,
        )


def digest(bundle: MetadataBundle | Mapping[str, Any]) -> bytes:
    """SHA-256 over the canonical serialization of the present fields.

    Raises:
        MalformedFieldError: If a present field is structurally invalid
    """
    if not isinstance(bundle, MetadataBundle):
        bundle = MetadataBundle.from_dict(bundle)
    return canonical_hash(bundle.to_dict(), algorithm="sha256")


def digest_hex(bundle: MetadataBundle | Mapping[str, Any]) -> str:
    return digest(bundle).hex()
