"""Tile hash tree over frozen image bytes.

The image is split into fixed-size tiles. Each tile is hashed on its own,
then the tile hashes are combined pairwise into a binary tree whose root is
the content fingerprint of the image.

Hashing rules (part of the wire contract):
- leaf = SHA-256(0x00 || u64be(len(tile)) || tile)
- node = SHA-256(0x01 || left || right)
- an odd trailing node is promoted unchanged to the next level

The final tile is hashed with its true length and never padded, so a
truncated image and a padded image can never produce the same root.
"""

from __future__ import annotations

import hashlib
import logging
import struct
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any

from photoattest.freezer import FrozenImage

logger = logging.getLogger(__name__)

# A ~4 MB photo yields on the order of 1,000 tiles.
DEFAULT_TILE_SIZE = 4096

HASH_SIZE = 32
LEAF_PREFIX = b"\x00"
NODE_PREFIX = b"\x01"

# Below this many tiles a thread pool costs more than it saves.
MIN_PARALLEL_TILES = 64


def hash_tile(tile: bytes) -> bytes:
    """Hash one tile including its true length."""
    hasher = hashlib.sha256()
    hasher.update(LEAF_PREFIX)
    hasher.update(struct.pack(">Q", len(tile)))
    hasher.update(tile)
    return hasher.digest()


def hash_node(left: bytes, right: bytes) -> bytes:
    """Hash two child hashes in left-to-right order."""
    return hashlib.sha256(NODE_PREFIX + left + right).digest()


def _next_level(level: tuple[bytes, ...]) -> tuple[bytes, ...]:
    parents = [hash_node(level[i], level[i + 1]) for i in range(0, len(level) - 1, 2)]
    if len(level) % 2:
        parents.append(level[-1])
    return tuple(parents)


@dataclass(frozen=True)
class TileHashTree:
    """Binary hash tree over ordered tile hashes.

    ``levels[0]`` holds the leaf hashes in tile order; ``levels[-1]`` holds
    the single root hash.
    """

    tile_size: int
    total_length: int
    levels: tuple[tuple[bytes, ...], ...]

    @property
    def root(self) -> bytes:
        return self.levels[-1][0]

    @property
    def root_hex(self) -> str:
        return self.root.hex()

    @property
    def leaves(self) -> tuple[bytes, ...]:
        return self.levels[0]

    @property
    def tile_count(self) -> int:
        return len(self.levels[0])

    @property
    def depth(self) -> int:
        return len(self.levels) - 1

    def tile_range(self, index: int) -> tuple[int, int]:
        """Byte range [start, end) covered by a tile."""
        if not 0 <= index < self.tile_count:
            raise IndexError(f"Tile index out of range: {index}")
        start = index * self.tile_size
        return start, min(start + self.tile_size, self.total_length)

    def proof(self, index: int) -> list[tuple[str, bytes]]:
        """Audit path for one tile.

        Returns a list of (side, sibling_hash) pairs from leaf to root, where
        side is "L" if the sibling sits to the left. Levels where the node
        was promoted without a sibling are skipped.
        """
        if not 0 <= index < self.tile_count:
            raise IndexError(f"Tile index out of range: {index}")

        path: list[tuple[str, bytes]] = []
        position = index
        for level in self.levels[:-1]:
            sibling = position ^ 1
            if sibling < len(level):
                side = "L" if sibling < position else "R"
                path.append((side, level[sibling]))
            position //= 2
        return path

    def to_dict(self, include_leaves: bool = True) -> dict[str, Any]:
        """Convert to dictionary."""
        result: dict[str, Any] = {
            "root": self.root_hex,
            "tile_size": self.tile_size,
            "total_length": self.total_length,
            "tile_count": self.tile_count,
            "depth": self.depth,
        }
        if include_leaves:
            result["leaves"] = [leaf.hex() for leaf in self.leaves]
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TileHashTree:
        """Rebuild a tree from its leaf hashes.

        Internal nodes are recomputed; a stored root that disagrees with
        the leaves raises ValueError.
        """
        leaves = tuple(bytes.fromhex(h) for h in data["leaves"])
        tree = _assemble(leaves, int(data["tile_size"]), int(data["total_length"]))
        if "root" in data and data["root"] != tree.root_hex:
            raise ValueError("Stored root does not match leaf hashes")
        return tree


def _assemble(leaves: tuple[bytes, ...], tile_size: int, total_length: int) -> TileHashTree:
    if not leaves:
        raise ValueError("Cannot build a tree without tiles")
    if any(len(leaf) != HASH_SIZE for leaf in leaves):
        raise ValueError("Leaf hashes must be 32 bytes")

    levels = [leaves]
    while len(levels[-1]) > 1:
        levels.append(_next_level(levels[-1]))
    return TileHashTree(tile_size=tile_size, total_length=total_length, levels=tuple(levels))


def split_tiles(data: bytes, tile_size: int) -> list[bytes]:
    """Partition bytes into contiguous tiles; the last may be shorter."""
    return [data[offset:offset + tile_size] for offset in range(0, len(data), tile_size)]


def build_tree(
    frozen: FrozenImage | bytes,
    tile_size: int = DEFAULT_TILE_SIZE,
    workers: int | None = None,
) -> TileHashTree:
    """Build the tile hash tree for a frozen image.

    Pure function: the same bytes and tile size always give the same root.

    Args:
        frozen: FrozenImage (or its raw bytes)
        tile_size: Tile size in bytes
        workers: Hash tiles on this many threads; leaf order is preserved

    Returns:
        TileHashTree

    Raises:
        ValueError: If tile_size < 1 or there are no bytes to hash
    """
    if tile_size < 1:
        raise ValueError(f"tile_size must be >= 1, got {tile_size}")

    data = frozen.data if isinstance(frozen, FrozenImage) else bytes(frozen)
    if not data:
        raise ValueError("Cannot build a tree over empty bytes")

    tiles = split_tiles(data, tile_size)

    if workers and workers > 1 and len(tiles) >= MIN_PARALLEL_TILES:
        # executor.map yields results in submission order
        with ThreadPoolExecutor(max_workers=workers) as executor:
            leaves = tuple(executor.map(hash_tile, tiles))
    else:
        leaves = tuple(hash_tile(tile) for tile in tiles)

    tree = _assemble(leaves, tile_size, len(data))
    logger.debug(
        "Built tile tree: %d tiles, depth %d, root %s",
        tree.tile_count, tree.depth, tree.root_hex[:16],
    )
    return tree


def verify_tile(tile: bytes, proof: list[tuple[str, bytes]], root: bytes) -> bool:
    """Check one tile against a root using its audit path."""
    current = hash_tile(tile)
    for side, sibling in proof:
        if side == "L":
            current = hash_node(sibling, current)
        elif side == "R":
            current = hash_node(current, sibling)
        else:
            return False
    return current == root


def diff_tiles(tree_a: TileHashTree, tree_b: TileHashTree) -> set[int]:
    """Identify exactly which tiles differ between two trees.

    Tiles present in only one tree count as changed.

    Raises:
        ValueError: If the trees use different tile sizes
    """
    if tree_a.tile_size != tree_b.tile_size:
        raise ValueError(
            f"Tile size mismatch: {tree_a.tile_size} != {tree_b.tile_size}"
        )

    if tree_a.tile_count != tree_b.tile_count:
        common = min(tree_a.tile_count, tree_b.tile_count)
        changed = {i for i in range(common) if tree_a.leaves[i] != tree_b.leaves[i]}
        changed.update(range(common, max(tree_a.tile_count, tree_b.tile_count)))
        return changed

    if tree_a.root == tree_b.root:
        return set()

    # Same shape: walk down from the root, skipping equal subtrees.
    changed: set[int] = set()
    stack = [(tree_a.depth, 0)]
    while stack:
        level, position = stack.pop()
        if tree_a.levels[level][position] == tree_b.levels[level][position]:
            continue
        if level == 0:
            changed.add(position)
            continue
        for child in (position * 2, position * 2 + 1):
            if child < len(tree_a.levels[level - 1]):
                stack.append((level - 1, child))
    return changed
