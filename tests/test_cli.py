"""Tests for the attestctl command line."""

from __future__ import annotations

import json
from pathlib import Path

import pytest
import yaml
from click.testing import CliRunner

from photoattest.cli import cli

NOW = "2025-06-01T12:00:00Z"


@pytest.fixture(autouse=True)
def no_config_env(monkeypatch):
    monkeypatch.delenv("PHOTOATTEST_CONFIG", raising=False)
    monkeypatch.setenv("PHOTOATTEST_TILE_SIZE", "256")


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def workspace(tmp_path: Path, jpeg_bytes, full_bundle_wire):
    image = tmp_path / "photo.jpg"
    image.write_bytes(jpeg_bytes)
    metadata = tmp_path / "metadata.json"
    metadata.write_text(json.dumps(full_bundle_wire), encoding="utf-8")
    return tmp_path


@pytest.fixture
def attested(runner, workspace):
    """Workspace with a trusted key and an attestation for photo.jpg."""
    result = runner.invoke(
        cli,
        ["keygen", "--out", str(workspace / "key.pem"), "--trust-store", str(workspace / "trust.yaml")],
    )
    assert result.exit_code == 0, result.output

    result = runner.invoke(
        cli,
        [
            "attest", str(workspace / "photo.jpg"),
            "-m", str(workspace / "metadata.json"),
            "-k", str(workspace / "key.pem"),
            "--out", str(workspace / "attestation.json"),
        ],
    )
    assert result.exit_code == 0, result.output
    return workspace


def _tamper(path: Path, position: int = 700) -> Path:
    data = bytearray(path.read_bytes())
    data[position] ^= 0x01
    tampered = path.with_name("tampered.jpg")
    tampered.write_bytes(bytes(data))
    return tampered


class TestKeygen:
    def test_writes_key_pair_and_trust_store(self, runner, tmp_path: Path):
        result = runner.invoke(
            cli, ["keygen", "--out", str(tmp_path / "key.pem"), "--trust-store", str(tmp_path / "trust.yaml")]
        )
        assert result.exit_code == 0, result.output
        assert "Key ID:" in result.output
        assert (tmp_path / "key.pub.pem").exists()

        with open(tmp_path / "trust.yaml", encoding="utf-8") as f:
            assert len(yaml.safe_load(f)["keys"]) == 1

    def test_refuses_overwrite(self, runner, tmp_path: Path):
        (tmp_path / "key.pem").write_text("existing", encoding="utf-8")
        result = runner.invoke(cli, ["keygen", "--out", str(tmp_path / "key.pem")])
        assert result.exit_code != 0
        assert "--force" in result.output

    def test_ed25519(self, runner, tmp_path: Path):
        result = runner.invoke(cli, ["keygen", "--out", str(tmp_path / "key.pem"), "-a", "Ed25519"])
        assert result.exit_code == 0
        assert "(Ed25519)" in result.output


class TestAttestAndVerify:
    def test_attestation_written(self, attested):
        with open(attested / "attestation.json", encoding="utf-8") as f:
            wire = json.load(f)
        assert wire["tileSize"] == 256
        assert set(wire) >= {"treeRoot", "metadataDigest", "signature", "keyId"}

    def test_verify_authentic(self, runner, attested):
        result = runner.invoke(
            cli,
            [
                "verify", str(attested / "photo.jpg"),
                "-a", str(attested / "attestation.json"),
                "-m", str(attested / "metadata.json"),
                "--trust-store", str(attested / "trust.yaml"),
                "--now", NOW,
                "--out", str(attested / "result.json"),
                "--markdown", str(attested / "report.md"),
            ],
        )
        assert result.exit_code == 0, result.output
        assert "Verdict: AUTHENTIC (confidence 1.00, mode ONLINE)" in result.output
        assert json.loads((attested / "result.json").read_text(encoding="utf-8"))["confidence"] == 1.0
        assert (attested / "report.md").exists()

    def test_verify_rejected_exit_code(self, runner, attested):
        result = runner.invoke(
            cli,
            [
                "verify", str(_tamper(attested / "photo.jpg")),
                "-a", str(attested / "attestation.json"),
                "-m", str(attested / "metadata.json"),
                "--now", NOW,
            ],
        )
        assert result.exit_code == 2
        assert "Verdict: REJECTED" in result.output
        assert "[FAIL] integrity" in result.output

    def test_verify_trust_embedded(self, runner, attested):
        result = runner.invoke(
            cli,
            [
                "verify", str(attested / "photo.jpg"),
                "-a", str(attested / "attestation.json"),
                "-m", str(attested / "metadata.json"),
                "--trust-embedded",
                "--now", NOW,
            ],
        )
        assert result.exit_code == 0
        assert "[PASS] signature" in result.output

    def test_verify_invalid_metadata(self, runner, attested):
        (attested / "bad.json").write_text('{"deviceClass": "toaster"}', encoding="utf-8")
        result = runner.invoke(
            cli,
            [
                "verify", str(attested / "photo.jpg"),
                "-a", str(attested / "attestation.json"),
                "-m", str(attested / "bad.json"),
            ],
        )
        assert result.exit_code == 1
        assert "Invalid metadata" in result.output
        assert "deviceClass" in result.output

    def test_attest_unusable_image(self, runner, attested):
        (attested / "notes.txt").write_text("not a photo", encoding="utf-8")
        result = runner.invoke(
            cli,
            [
                "attest", str(attested / "notes.txt"),
                "-m", str(attested / "metadata.json"),
                "-k", str(attested / "key.pem"),
            ],
        )
        assert result.exit_code == 1
        assert "Error:" in result.output


class TestOffline:
    def test_offline_with_key(self, runner, attested):
        result = runner.invoke(
            cli,
            [
                "offline", str(attested / "photo.jpg"),
                "-m", str(attested / "metadata.json"),
                "-k", str(attested / "key.pem"),
                "-a", str(attested / "attestation.json"),
                "--now", NOW,
            ],
        )
        assert result.exit_code == 0, result.output
        assert "mode OFFLINE" in result.output
        assert "[FAIL] signature" in result.output
        assert "[PASS] local_signature" in result.output

    def test_offline_never_fails_on_bad_metadata(self, runner, workspace):
        (workspace / "bad.json").write_text('{"geoCoordinate": {"latitude": "north"}}', encoding="utf-8")
        result = runner.invoke(
            cli, ["offline", str(workspace / "photo.jpg"), "-m", str(workspace / "bad.json"), "--now", NOW]
        )
        assert result.exit_code == 0
        assert "[FAIL] metadata_binding" in result.output


class TestTreeAndDiff:
    def test_freeze(self, runner, workspace, jpeg_bytes):
        result = runner.invoke(cli, ["freeze", str(workspace / "photo.jpg")])
        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["format"] == "jpeg"
        assert data["length"] == len(jpeg_bytes)

    def test_tree(self, runner, workspace):
        result = runner.invoke(cli, ["tree", str(workspace / "photo.jpg"), "--tile-size", "512"])
        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["tile_count"] == 5
        assert "leaves" not in data

    def test_diff_images(self, runner, workspace):
        tampered = _tamper(workspace / "photo.jpg")
        result = runner.invoke(cli, ["diff", str(workspace / "photo.jpg"), str(tampered)])
        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["changed_tiles"] == [2]
        assert data["byte_ranges"] == [[512, 768]]

    def test_diff_against_saved_tree(self, runner, workspace):
        tree_file = workspace / "tree.json"
        result = runner.invoke(cli, ["tree", str(workspace / "photo.jpg"), "--out", str(tree_file)])
        assert result.exit_code == 0

        tampered = _tamper(workspace / "photo.jpg", position=2000)
        result = runner.invoke(cli, ["diff", "--reference-tree", str(tree_file), str(tampered)])
        assert result.exit_code == 0
        assert json.loads(result.output)["changed_tiles"] == [7]


class TestGlobalOptions:
    def test_version(self, runner):
        result = runner.invoke(cli, ["--version"])
        assert result.exit_code == 0
        assert "attestctl" in result.output

    def test_config_file(self, runner, workspace):
        settings = workspace / "settings.yaml"
        settings.write_text(yaml.safe_dump({"engine": {"tile_size": 1024}}), encoding="utf-8")
        result = runner.invoke(cli, ["--config", str(settings), "tree", str(workspace / "photo.jpg")])
        assert result.exit_code == 0
        assert json.loads(result.output)["tile_count"] == 3

    def test_bad_config_file(self, runner, workspace):
        settings = workspace / "settings.yaml"
        settings.write_text("- just\n- a list\n", encoding="utf-8")
        result = runner.invoke(cli, ["--config", str(settings), "tree", str(workspace / "photo.jpg")])
        assert result.exit_code == 1
        assert "mapping" in result.output
