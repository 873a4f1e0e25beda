"""Key handles and the verifier's trust store.

Capture devices keep their signing key in hardware (Secure Enclave,
StrongBox, a TPM). The engine only ever talks to a KeyHandle, an opaque
object that can sign bytes and report its public key; the private key
material never leaves it. SoftwareKeyHandle is the in-process
implementation used for local fallback certification, tooling and tests.

Key IDs are the first 16 bytes of SHA-256 over the DER
SubjectPublicKeyInfo, hex encoded.
"""

from __future__ import annotations

import hashlib
import logging
from abc import ABC, abstractmethod
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml
from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)

from photoattest.errors import PhotoAttestError

logger = logging.getLogger(__name__)

ALG_ES256 = "ES256"
ALG_ED25519 = "Ed25519"
SUPPORTED_ALGORITHMS = (ALG_ES256, ALG_ED25519)


class KeyAccessError(PhotoAttestError):
    """The key handle could not be used."""
    pass


def compute_key_id(public_key_der: bytes) -> str:
    """Stable identifier for a DER-encoded public key."""
    return hashlib.sha256(public_key_der).digest()[:16].hex()


@dataclass(frozen=True)
class PublicKeyInfo:
    """Public half of a key handle."""

    key_id: str
    public_key: bytes  # DER SubjectPublicKeyInfo
    algorithm: str = ALG_ES256

    def to_pem(self) -> str:
        key = serialization.load_der_public_key(self.public_key)
        return key.public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        ).decode("ascii")


def _algorithm_for(public_key: Any) -> str:
    if isinstance(public_key, ec.EllipticCurvePublicKey):
        if not isinstance(public_key.curve, ec.SECP256R1):
            raise ValueError(f"Unsupported curve: {public_key.curve.name}")
        return ALG_ES256
    if isinstance(public_key, Ed25519PublicKey):
        return ALG_ED25519
    raise ValueError(f"Unsupported key type: {type(public_key).__name__}")


def _public_der(public_key: Any) -> bytes:
    return public_key.public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )


def load_public_key(data: bytes | str) -> PublicKeyInfo:
    """Load a PEM or DER public key.

    Raises:
        ValueError: If the key cannot be parsed or uses an unsupported type
    """
    raw = data.encode("ascii") if isinstance(data, str) else data
    try:
        if raw.lstrip().startswith(b"-----BEGIN"):
            key = serialization.load_pem_public_key(raw)
        else:
            key = serialization.load_der_public_key(raw)
    except (ValueError, UnsupportedAlgorithm) as e:
        raise ValueError(f"Invalid public key: {e}") from e

    der = _public_der(key)
    return PublicKeyInfo(key_id=compute_key_id(der), public_key=der, algorithm=_algorithm_for(key))


def verify_with_public_key(
    public_key_der: bytes,
    algorithm: str,
    signature: bytes,
    message: bytes,
) -> bool:
    """Check a signature; any decoding problem counts as invalid."""
    try:
        key = serialization.load_der_public_key(public_key_der)
        if _algorithm_for(key) != algorithm:
            return False
        if algorithm == ALG_ES256:
            key.verify(signature, message, ec.ECDSA(hashes.SHA256()))
        else:
            key.verify(signature, message)
        return True
    except (InvalidSignature, ValueError, TypeError, UnsupportedAlgorithm):
        return False


class KeyHandle(ABC):
    """Opaque signing capability bound to protected key material."""

    @abstractmethod
    def sign(self, message: bytes) -> bytes:
        """Sign message bytes.

        Raises:
            KeyAccessError: If the key cannot be used
        """

    @abstractmethod
    def attest_key(self) -> PublicKeyInfo:
        """Return the public key and its ID.

        Raises:
            KeyAccessError: If the key cannot be used
        """


class SoftwareKeyHandle(KeyHandle):
    """In-process key pair backed by the cryptography library."""

    def __init__(self, private_key: ec.EllipticCurvePrivateKey | Ed25519PrivateKey) -> None:
        public_key = private_key.public_key()
        self._private_key = private_key
        self._info = PublicKeyInfo(
            key_id=compute_key_id(_public_der(public_key)),
            public_key=_public_der(public_key),
            algorithm=_algorithm_for(public_key),
        )

    @classmethod
    def generate(cls, algorithm: str = ALG_ES256) -> SoftwareKeyHandle:
        """Generate a fresh key pair (ES256 mirrors Secure Enclave keys)."""
        if algorithm == ALG_ES256:
            return cls(ec.generate_private_key(ec.SECP256R1()))
        if algorithm == ALG_ED25519:
            return cls(Ed25519PrivateKey.generate())
        raise ValueError(f"Unsupported algorithm: {algorithm}")

    @classmethod
    def from_pem(cls, data: bytes | str, password: bytes | None = None) -> SoftwareKeyHandle:
        """Load a PKCS#8 PEM private key."""
        raw = data.encode("ascii") if isinstance(data, str) else data
        try:
            key = serialization.load_pem_private_key(raw, password=password)
        except (ValueError, TypeError, UnsupportedAlgorithm) as e:
            raise KeyAccessError(f"Cannot load private key: {e}") from e
        if not isinstance(key, (ec.EllipticCurvePrivateKey, Ed25519PrivateKey)):
            raise KeyAccessError(f"Unsupported private key type: {type(key).__name__}")
        return cls(key)

    @classmethod
    def from_file(cls, path: Path, password: bytes | None = None) -> SoftwareKeyHandle:
        try:
            data = path.read_bytes()
        except OSError as e:
            raise KeyAccessError(f"Cannot read key file {path}: {e}") from e
        return cls.from_pem(data, password=password)

    def to_pem(self) -> bytes:
        """Export the private key (software keys only)."""
        return self._private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        )

    def public_key_pem(self) -> str:
        return self._info.to_pem()

    def sign(self, message: bytes) -> bytes:
        if self._info.algorithm == ALG_ES256:
            return self._private_key.sign(message, ec.ECDSA(hashes.SHA256()))
        return self._private_key.sign(message)

    def attest_key(self) -> PublicKeyInfo:
        return self._info


class UnavailableKeyHandle(KeyHandle):
    """Stand-in for a device without a usable hardware key store."""

    def __init__(self, reason: str = "hardware key store not present") -> None:
        self.reason = reason

    def sign(self, message: bytes) -> bytes:
        raise KeyAccessError(self.reason)

    def attest_key(self) -> PublicKeyInfo:
        raise KeyAccessError(self.reason)


class KeyRegistry:
    """Trust store of device public keys, indexed by key ID."""

    def __init__(self, keys: Iterable[PublicKeyInfo] | None = None) -> None:
        self._keys: dict[str, PublicKeyInfo] = {}
        for info in keys or ():
            self.register(info)

    def register(self, key: PublicKeyInfo | bytes | str) -> PublicKeyInfo:
        """Add a key (PublicKeyInfo, PEM, or DER)."""
        info = key if isinstance(key, PublicKeyInfo) else load_public_key(key)
        self._keys[info.key_id] = info
        return info

    def get(self, key_id: str) -> PublicKeyInfo | None:
        return self._keys.get(key_id)

    def __contains__(self, key_id: object) -> bool:
        return key_id in self._keys

    def __len__(self) -> int:
        return len(self._keys)

    def key_ids(self) -> list[str]:
        return sorted(self._keys)

    def resolve(
        self,
        key_id: str,
        embedded_public_key: bytes | None = None,
        trust_embedded: bool = False,
    ) -> PublicKeyInfo | None:
        """Find the public key for an attestation.

        Registered keys win. An embedded key is only used when
        ``trust_embedded`` is set and its ID matches ``key_id``.
        """
        info = self._keys.get(key_id)
        if info is not None:
            return info

        if trust_embedded and embedded_public_key:
            try:
                embedded = load_public_key(embedded_public_key)
            except ValueError:
                logger.warning("Embedded public key for %s could not be parsed", key_id)
                return None
            if embedded.key_id == key_id:
                return embedded
            logger.warning("Embedded public key does not match key ID %s", key_id)
        return None

    @classmethod
    def from_handles(cls, handles: Iterable[KeyHandle]) -> KeyRegistry:
        return cls(handle.attest_key() for handle in handles)

    @classmethod
    def from_dict(cls, data: Mapping[str, str]) -> KeyRegistry:
        """Build from a mapping of key ID to PEM public key.

        Raises:
            ValueError: If a key does not load or its ID does not match
        """
        registry = cls()
        for key_id, pem in sorted(data.items()):
            info = registry.register(pem)
            if info.key_id != key_id:
                raise ValueError(f"Key ID mismatch: listed {key_id}, computed {info.key_id}")
        return registry

    @classmethod
    def from_file(cls, path: Path) -> KeyRegistry:
        """Load a YAML (or JSON) trust store file."""
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        keys = data.get("keys", data) if isinstance(data, dict) else None
        if not isinstance(keys, dict):
            raise ValueError(f"Trust store must map key IDs to PEM keys: {path}")
        return cls.from_dict(keys)

    def to_dict(self) -> dict[str, str]:
        return {key_id: self._keys[key_id].to_pem() for key_id in self.key_ids()}
