"""Determinism mode for reproducible verification.

Timestamp plausibility depends on the current time. Callers that need
bit-identical results pass ``now`` explicitly; tests can instead pin the
clock for a whole block:

    with determinism_mode():
        result = engine.verify(data, attestation, bundle)
"""

from __future__ import annotations

import contextlib
import threading
from datetime import UTC, datetime
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Generator

# Thread-local state for determinism mode
_state = threading.local()

FIXED_TIMESTAMP = "2025-01-01T00:00:00Z"
FIXED_TIMESTAMP_DT = datetime(2025, 1, 1, 0, 0, 0, tzinfo=UTC)


def is_deterministic() -> bool:
    """Check if determinism mode is active."""
    return getattr(_state, "deterministic", False)


def set_determinism_mode(enabled: bool = True) -> None:
    """Set determinism mode for the current thread."""
    _state.deterministic = enabled


@contextlib.contextmanager
def determinism_mode() -> Generator[None, None, None]:
    """Context manager to enable determinism mode."""
    prev = getattr(_state, "deterministic", False)
    _state.deterministic = True
    try:
        yield
    finally:
        _state.deterministic = prev


def stable_now() -> datetime:
    """Return current UTC time, or the fixed time in determinism mode."""
    if is_deterministic():
        return FIXED_TIMESTAMP_DT
    return datetime.now(UTC)


def format_timestamp(ts: datetime) -> str:
    """Format an aware datetime as UTC with microseconds.

    Format: 2025-01-01T00:00:00.000000Z
    """
    if ts.tzinfo is None:
        raise ValueError("Timestamp must be timezone-aware")
    return ts.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO 8601 timestamp, accepting a trailing 'Z'.

    Raises:
        ValueError: If the string is not ISO 8601 or carries no offset
    """
    ts = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if ts.tzinfo is None:
        raise ValueError(f"Timestamp has no UTC offset: {value}")
    return ts
