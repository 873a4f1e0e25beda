"""Tests for the tile hash tree."""

from __future__ import annotations

import hashlib

import pytest

from photoattest.freezer import freeze
from photoattest.tiles import (
    DEFAULT_TILE_SIZE,
    TileHashTree,
    build_tree,
    diff_tiles,
    hash_node,
    hash_tile,
    split_tiles,
    verify_tile,
)

TILE = 256


class TestBuildTree:
    """Tree construction."""

    def test_ten_tiles(self, jpeg_bytes):
        tree = build_tree(freeze(jpeg_bytes), TILE)
        assert tree.tile_count == 10
        assert tree.total_length == len(jpeg_bytes)
        assert len(tree.root) == 32

    def test_deterministic(self, jpeg_bytes):
        frozen = freeze(jpeg_bytes)
        first = build_tree(frozen, TILE)
        second = build_tree(frozen, TILE)
        assert first.root == second.root
        assert first.levels == second.levels

    def test_bytes_and_frozen_agree(self, jpeg_bytes):
        assert build_tree(jpeg_bytes, TILE).root == build_tree(freeze(jpeg_bytes), TILE).root

    def test_default_tile_size(self, jpeg_bytes):
        assert build_tree(jpeg_bytes).tile_size == DEFAULT_TILE_SIZE

    def test_single_tile_root_is_leaf(self):
        tree = build_tree(b"tiny", TILE)
        assert tree.tile_count == 1
        assert tree.depth == 0
        assert tree.root == hash_tile(b"tiny")

    def test_two_tiles(self):
        data = b"a" * TILE + b"b" * 10
        tree = build_tree(data, TILE)
        assert tree.root == hash_node(hash_tile(b"a" * TILE), hash_tile(b"b" * 10))

    def test_odd_node_is_promoted(self):
        data = b"a" * TILE + b"b" * TILE + b"c"
        tree = build_tree(data, TILE)
        left = hash_node(hash_tile(b"a" * TILE), hash_tile(b"b" * TILE))
        assert tree.root == hash_node(left, hash_tile(b"c"))

    def test_leaf_hash_includes_length(self):
        expected = hashlib.sha256(b"\x00" + (3).to_bytes(8, "big") + b"abc").digest()
        assert hash_tile(b"abc") == expected

    def test_invalid_tile_size(self, jpeg_bytes):
        with pytest.raises(ValueError):
            build_tree(jpeg_bytes, 0)

    def test_empty_input(self):
        with pytest.raises(ValueError):
            build_tree(b"", TILE)

    def test_split_tiles_last_tile_short(self):
        tiles = split_tiles(b"x" * 600, TILE)
        assert [len(t) for t in tiles] == [256, 256, 88]


class TestTamperSensitivity:
    """Any byte change moves the root and is localised."""

    @pytest.mark.parametrize("position", [0, 1, 255, 256, 1000, 2559])
    def test_single_byte_flip(self, jpeg_bytes, position):
        original = build_tree(jpeg_bytes, TILE)
        tampered = bytearray(jpeg_bytes)
        tampered[position] ^= 0x01
        changed = build_tree(bytes(tampered), TILE)

        assert changed.root != original.root
        assert diff_tiles(original, changed) == {position // TILE}

    def test_truncation_and_padding_differ(self, jpeg_bytes):
        truncated = jpeg_bytes[:-1]
        padded = truncated + b"\x00"
        assert len(padded) == len(jpeg_bytes)
        assert build_tree(truncated, TILE).root != build_tree(padded, TILE).root

    def test_tile_order_matters(self):
        a, b = b"a" * TILE, b"b" * TILE
        assert build_tree(a + b, TILE).root != build_tree(b + a, TILE).root


class TestParallelHashing:
    """Thread-pool hashing gives the same tree."""

    def test_parallel_equals_serial(self):
        data = bytes(i % 251 for i in range(200 * 64))
        serial = build_tree(data, 64)
        parallel = build_tree(data, 64, workers=4)
        assert serial.tile_count == 200
        assert parallel.levels == serial.levels


class TestDiffTiles:
    """Tamper localisation."""

    def test_identical_trees(self, jpeg_bytes):
        tree = build_tree(jpeg_bytes, TILE)
        assert diff_tiles(tree, build_tree(jpeg_bytes, TILE)) == set()

    def test_multiple_changes(self, jpeg_bytes):
        tampered = bytearray(jpeg_bytes)
        for position in (10, 700, 2300):
            tampered[position] ^= 0x01
        changed = diff_tiles(build_tree(jpeg_bytes, TILE), build_tree(bytes(tampered), TILE))
        assert changed == {0, 2, 8}

    def test_appended_bytes(self, jpeg_bytes):
        longer = jpeg_bytes + b"\x00" * (TILE + 1)
        changed = diff_tiles(build_tree(jpeg_bytes, TILE), build_tree(longer, TILE))
        assert changed == {10, 11}

    def test_tile_size_mismatch(self, jpeg_bytes):
        with pytest.raises(ValueError, match="Tile size mismatch"):
            diff_tiles(build_tree(jpeg_bytes, TILE), build_tree(jpeg_bytes, 128))


class TestProofs:
    """Audit paths."""

    @pytest.mark.parametrize("index", range(10))
    def test_every_tile_verifies(self, jpeg_bytes, index):
        tree = build_tree(jpeg_bytes, TILE)
        start, end = tree.tile_range(index)
        assert verify_tile(jpeg_bytes[start:end], tree.proof(index), tree.root)

    def test_wrong_tile_fails(self, jpeg_bytes):
        tree = build_tree(jpeg_bytes, TILE)
        assert not verify_tile(b"forged", tree.proof(3), tree.root)

    def test_out_of_range(self, jpeg_bytes):
        tree = build_tree(jpeg_bytes, TILE)
        with pytest.raises(IndexError):
            tree.proof(10)
        with pytest.raises(IndexError):
            tree.tile_range(-1)


class TestSerialization:
    """Tree dict form."""

    def test_round_trip(self, jpeg_bytes):
        tree = build_tree(jpeg_bytes, TILE)
        restored = TileHashTree.from_dict(tree.to_dict())
        assert restored.root == tree.root
        assert restored.levels == tree.levels

    def test_summary_omits_leaves(self, jpeg_bytes):
        summary = build_tree(jpeg_bytes, TILE).to_dict(include_leaves=False)
        assert "leaves" not in summary
        assert summary["tile_count"] == 10

    def test_tampered_root_rejected(self, jpeg_bytes):
        data = build_tree(jpeg_bytes, TILE).to_dict()
        data["root"] = "00" * 32
        with pytest.raises(ValueError):
            TileHashTree.from_dict(data)
