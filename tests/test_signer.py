"""Tests for key handles, the trust store and the attestation signer."""

from __future__ import annotations

import threading
import time
from pathlib import Path

import pytest
import yaml

from photoattest.keys import (
    ALG_ED25519,
    KeyAccessError,
    KeyHandle,
    KeyRegistry,
    PublicKeyInfo,
    SoftwareKeyHandle,
    UnavailableKeyHandle,
    compute_key_id,
    load_public_key,
)
from photoattest.signer import Attestation, SigningUnavailable, sign, signed_message, verify_signature

ROOT = bytes(range(32))
DIGEST = bytes(range(32, 64))


class SlowKeyHandle(KeyHandle):
    """Key handle that blocks until released."""

    def __init__(self, inner: KeyHandle):
        self.inner = inner
        self.release = threading.Event()

    def sign(self, message: bytes) -> bytes:
        self.release.wait(timeout=5)
        return self.inner.sign(message)

    def attest_key(self) -> PublicKeyInfo:
        return self.inner.attest_key()


class BrokenKeyHandle(KeyHandle):
    """Key handle whose platform call fails."""

    def sign(self, message: bytes) -> bytes:
        raise OSError("keystore daemon not running")

    def attest_key(self) -> PublicKeyInfo:
        raise OSError("keystore daemon not running")


class TestSoftwareKeyHandle:
    """In-process keys."""

    def test_key_id(self, key_handle):
        info = key_handle.attest_key()
        assert info.key_id == compute_key_id(info.public_key)
        assert len(info.key_id) == 32

    def test_pem_round_trip(self, key_handle):
        restored = SoftwareKeyHandle.from_pem(key_handle.to_pem())
        assert restored.attest_key() == key_handle.attest_key()

    def test_from_file(self, key_handle, tmp_path: Path):
        path = tmp_path / "device.pem"
        path.write_bytes(key_handle.to_pem())
        assert SoftwareKeyHandle.from_file(path).attest_key().key_id == key_handle.attest_key().key_id

    def test_missing_file(self, tmp_path: Path):
        with pytest.raises(KeyAccessError):
            SoftwareKeyHandle.from_file(tmp_path / "missing.pem")

    def test_garbage_pem(self):
        with pytest.raises(KeyAccessError):
            SoftwareKeyHandle.from_pem(b"not a key")

    def test_public_key_pem_loads(self, key_handle):
        info = load_public_key(key_handle.public_key_pem())
        assert info.key_id == key_handle.attest_key().key_id

    def test_unsupported_algorithm(self):
        with pytest.raises(ValueError):
            SoftwareKeyHandle.generate("RS256")

    def test_unavailable_handle(self):
        handle = UnavailableKeyHandle()
        with pytest.raises(KeyAccessError):
            handle.sign(b"x")
        with pytest.raises(KeyAccessError):
            handle.attest_key()


class TestSign:
    """sign() contract."""

    def test_signature_covers_root_and_digest(self, key_handle):
        attestation = sign(ROOT, DIGEST, key_handle)
        assert attestation.signed_message() == ROOT + DIGEST
        assert attestation.key_id == key_handle.attest_key().key_id
        assert verify_signature(attestation, key_handle.attest_key())

    def test_ed25519(self):
        handle = SoftwareKeyHandle.generate(ALG_ED25519)
        attestation = sign(ROOT, DIGEST, handle)
        assert attestation.algorithm == ALG_ED25519
        assert verify_signature(attestation, handle.attest_key())

    def test_wrong_lengths(self, key_handle):
        with pytest.raises(ValueError):
            sign(ROOT[:31], DIGEST, key_handle)
        with pytest.raises(ValueError):
            signed_message(ROOT, DIGEST + b"\x00")

    def test_unavailable_handle_raises_signing_unavailable(self):
        with pytest.raises(SigningUnavailable) as exc_info:
            sign(ROOT, DIGEST, UnavailableKeyHandle("no secure enclave"))
        assert isinstance(exc_info.value.__cause__, KeyAccessError)

    def test_platform_failure_raises_signing_unavailable(self):
        with pytest.raises(SigningUnavailable):
            sign(ROOT, DIGEST, BrokenKeyHandle())

    def test_timeout_raises_promptly(self, key_handle):
        slow = SlowKeyHandle(key_handle)
        started = time.monotonic()
        try:
            with pytest.raises(SigningUnavailable, match="timed out"):
                sign(ROOT, DIGEST, slow, timeout=0.1)
            assert time.monotonic() - started < 2.0
        finally:
            slow.release.set()

    def test_no_public_key_embedded(self, key_handle):
        attestation = sign(ROOT, DIGEST, key_handle, embed_public_key=False)
        assert attestation.public_key is None


class TestVerifySignature:
    """Signature checks never raise."""

    def test_other_key_fails(self, key_handle):
        attestation = sign(ROOT, DIGEST, key_handle)
        other = SoftwareKeyHandle.generate().attest_key()
        assert not verify_signature(attestation, other)

    def test_key_id_mismatch_fails(self, key_handle):
        attestation = sign(ROOT, DIGEST, key_handle)
        info = key_handle.attest_key()
        relabelled = PublicKeyInfo(key_id="00" * 16, public_key=info.public_key, algorithm=info.algorithm)
        assert not verify_signature(attestation, relabelled)

    def test_tampered_signature_fails(self, key_handle):
        attestation = sign(ROOT, DIGEST, key_handle)
        forged = Attestation(
            tree_root=attestation.tree_root,
            metadata_digest=attestation.metadata_digest,
            signature=attestation.signature[:-1] + bytes([attestation.signature[-1] ^ 1]),
            key_id=attestation.key_id,
            algorithm=attestation.algorithm,
        )
        assert not verify_signature(forged, key_handle.attest_key())

    def test_garbage_key_fails(self, key_handle):
        attestation = sign(ROOT, DIGEST, key_handle)
        garbage = PublicKeyInfo(key_id=attestation.key_id, public_key=b"garbage")
        assert not verify_signature(attestation, garbage)


class TestAttestationWireForm:
    """Attestation dict form."""

    def test_round_trip(self, key_handle):
        attestation = sign(ROOT, DIGEST, key_handle, tile_size=256)
        wire = attestation.to_dict()
        assert wire["treeRoot"] == ROOT.hex()
        assert wire["tileSize"] == 256
        assert Attestation.from_dict(wire) == attestation

    def test_missing_field(self, key_handle):
        wire = sign(ROOT, DIGEST, key_handle).to_dict()
        del wire["signature"]
        with pytest.raises(ValueError, match="signature"):
            Attestation.from_dict(wire)

    def test_bad_base64(self, key_handle):
        wire = sign(ROOT, DIGEST, key_handle).to_dict()
        wire["signature"] = "!!!"
        with pytest.raises(ValueError):
            Attestation.from_dict(wire)


class TestKeyRegistry:
    """Verifier trust store."""

    def test_resolve_registered(self, key_handle, registry):
        key_id = key_handle.attest_key().key_id
        assert key_id in registry
        assert registry.resolve(key_id) == key_handle.attest_key()

    def test_unknown_key_unresolved(self, key_handle):
        info = key_handle.attest_key()
        assert KeyRegistry().resolve(info.key_id, embedded_public_key=info.public_key) is None

    def test_embedded_key_when_trusted(self, key_handle):
        info = key_handle.attest_key()
        resolved = KeyRegistry().resolve(info.key_id, embedded_public_key=info.public_key, trust_embedded=True)
        assert resolved == info

    def test_embedded_key_must_match_id(self, key_handle):
        other = SoftwareKeyHandle.generate().attest_key()
        resolved = KeyRegistry().resolve(
            key_handle.attest_key().key_id, embedded_public_key=other.public_key, trust_embedded=True
        )
        assert resolved is None

    def test_yaml_round_trip(self, registry, tmp_path: Path):
        path = tmp_path / "trust.yaml"
        path.write_text(yaml.safe_dump({"keys": registry.to_dict()}), encoding="utf-8")
        assert KeyRegistry.from_file(path).key_ids() == registry.key_ids()

    def test_listed_id_must_match(self, key_handle):
        with pytest.raises(ValueError, match="mismatch"):
            KeyRegistry.from_dict({"ff" * 16: key_handle.public_key_pem()})
