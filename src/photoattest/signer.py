"""Attestation signer (capture side).

An Attestation binds one frozen image (through its tile tree root) to one
metadata bundle (through its digest). The signed message is exactly

    tree_root || metadata_digest    (32 + 32 bytes)

and is the only byte layout the engine signs.

The signer never retries. A key handle that fails or does not answer
within the timeout surfaces as SigningUnavailable, and the caller routes
to offline certification.
"""

from __future__ import annotations

import base64
import binascii
import logging
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, TypeVar

from photoattest.errors import PhotoAttestError
from photoattest.keys import (
    ALG_ES256,
    SUPPORTED_ALGORITHMS,
    KeyHandle,
    PublicKeyInfo,
    verify_with_public_key,
)
from photoattest.tiles import HASH_SIZE

logger = logging.getLogger(__name__)

T = TypeVar("T")


class SigningUnavailable(PhotoAttestError):
    """The key handle could not produce a signature."""
    pass


@dataclass(frozen=True)
class Attestation:
    """Signed binding of a tree root and a metadata digest."""

    tree_root: bytes
    metadata_digest: bytes
    signature: bytes
    key_id: str
    public_key: bytes | None = None
    algorithm: str = ALG_ES256
    tile_size: int | None = None

    def __post_init__(self) -> None:
        if len(self.tree_root) != HASH_SIZE:
            raise ValueError(f"tree_root must be {HASH_SIZE} bytes")
        if len(self.metadata_digest) != HASH_SIZE:
            raise ValueError(f"metadata_digest must be {HASH_SIZE} bytes")
        if self.algorithm not in SUPPORTED_ALGORITHMS:
            raise ValueError(f"Unsupported algorithm: {self.algorithm}")
        if self.tile_size is not None and self.tile_size < 1:
            raise ValueError("tile_size must be >= 1")

    def signed_message(self) -> bytes:
        return signed_message(self.tree_root, self.metadata_digest)

    def to_dict(self) -> dict[str, Any]:
        """Wire form: hex for hashes, base64 for signature and key."""
        result: dict[str, Any] = {
            "treeRoot": self.tree_root.hex(),
            "metadataDigest": self.metadata_digest.hex(),
            "signature": base64.b64encode(self.signature).decode("ascii"),
            "keyId": self.key_id,
            "algorithm": self.algorithm,
        }
        if self.public_key is not None:
            result["publicKey"] = base64.b64encode(self.public_key).decode("ascii")
        if self.tile_size is not None:
            result["tileSize"] = self.tile_size
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Attestation:
        """Parse the wire form.

        Raises:
            ValueError: If a field is missing or badly encoded
        """
        try:
            public_key = data.get("publicKey")
            return cls(
                tree_root=bytes.fromhex(data["treeRoot"]),
                metadata_digest=bytes.fromhex(data["metadataDigest"]),
                signature=base64.b64decode(data["signature"], validate=True),
                key_id=str(data["keyId"]),
                public_key=base64.b64decode(public_key, validate=True) if public_key else None,
                algorithm=data.get("algorithm", ALG_ES256),
                tile_size=data.get("tileSize"),
            )
        except KeyError as e:
            raise ValueError(f"Attestation field missing: {e.args[0]}") from e
        except (TypeError, binascii.Error) as e:
            raise ValueError(f"Attestation field badly encoded: {e}") from e


def signed_message(tree_root: bytes, metadata_digest: bytes) -> bytes:
    """The exact bytes covered by the signature."""
    if len(tree_root) != HASH_SIZE or len(metadata_digest) != HASH_SIZE:
        raise ValueError(f"tree_root and metadata_digest must be {HASH_SIZE} bytes each")
    return tree_root + metadata_digest


def call_with_timeout(fn: Callable[[], T], timeout: float | None) -> T:
    """Run a key-handle call, giving up after ``timeout`` seconds.

    A call that times out keeps running on its worker thread; its result is
    discarded.

    Raises:
        TimeoutError: If the call did not finish in time
    """
    if timeout is None:
        return fn()
    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="key-handle")
    try:
        future = executor.submit(fn)
        return future.result(timeout=timeout)
    finally:
        executor.shutdown(wait=False, cancel_futures=True)


def sign(
    tree_root: bytes,
    metadata_digest: bytes,
    key_handle: KeyHandle,
    timeout: float | None = None,
    tile_size: int | None = None,
    embed_public_key: bool = True,
) -> Attestation:
    """Sign tree_root || metadata_digest with a key handle.

    Args:
        tree_root: 32-byte tile tree root
        metadata_digest: 32-byte metadata digest
        key_handle: Opaque handle to the device key
        timeout: Seconds to wait for the key handle (None waits forever)
        tile_size: Tile size the root was built with, recorded for verifiers
        embed_public_key: Include the DER public key in the attestation

    Returns:
        Attestation

    Raises:
        ValueError: If the root or digest is not 32 bytes
        SigningUnavailable: If the key handle fails or times out
    """
    message = signed_message(tree_root, metadata_digest)

    def _use_key() -> tuple[PublicKeyInfo, bytes]:
        return key_handle.attest_key(), key_handle.sign(message)

    try:
        info, signature = call_with_timeout(_use_key, timeout)
    except TimeoutError as e:
        logger.warning("Key handle did not respond within %.2fs", timeout)
        raise SigningUnavailable(f"Key handle timed out after {timeout}s") from e
    except Exception as e:
        # Key handles wrap platform APIs; any failure means the key is unusable.
        logger.warning("Key handle failed: %s", e)
        raise SigningUnavailable(f"Key handle unavailable: {e}") from e

    return Attestation(
        tree_root=tree_root,
        metadata_digest=metadata_digest,
        signature=signature,
        key_id=info.key_id,
        public_key=info.public_key if embed_public_key else None,
        algorithm=info.algorithm,
        tile_size=tile_size,
    )


def verify_signature(attestation: Attestation, public_key: PublicKeyInfo) -> bool:
    """Check an attestation's signature against a resolved public key."""
    if public_key.key_id != attestation.key_id:
        return False
    return verify_with_public_key(
        public_key.public_key,
        attestation.algorithm,
        attestation.signature,
        attestation.signed_message(),
    )
