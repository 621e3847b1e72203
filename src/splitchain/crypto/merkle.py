"""Keccak Merkle tree for multi-fill hash-locks.

Leaves keep their insertion order (each leaf already commits to its fill
index). Pairs are hashed commutatively, keccak256(min(a, b) || max(a, b)),
so a proof is just the list of sibling hashes from leaf to root. An odd
node at the end of a level is paired with itself.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

from web3 import Web3


@dataclass(frozen=True)
class MerkleProof:
    """An inclusion proof for a single leaf."""
    leaf_hash: str
    index: int
    path: tuple[str, ...]
    root: str

    def verify(self) -> bool:
        node = _to_bytes(self.leaf_hash)
        for sibling in self.path:
            node = _hash_pair(node, _to_bytes(sibling))
        return Web3.to_hex(node) == self.root


class MerkleTree:
    """A deterministic keccak256 Merkle tree.

    Usage:
        tree = MerkleTree(leaves)
        root = tree.compute_root()
        proof = tree.inclusion_proof(2)
    """

    def __init__(self, leaves: Iterable[str] = ()) -> None:
        self._leaves: list[bytes] = []
        self._levels: list[list[bytes]] = []
        self._computed = False
        for leaf in leaves:
            self.add_leaf(leaf)

    def add_leaf(self, leaf_hash: str) -> None:
        """Add a 32-byte leaf. Must be called before compute_root."""
        if self._computed:
            raise RuntimeError("Tree already computed. Create a new tree.")
        leaf = _to_bytes(leaf_hash)
        if len(leaf) != 32:
            raise ValueError(f"Merkle leaf must be 32 bytes, got {len(leaf)}")
        self._leaves.append(leaf)

    @property
    def leaf_count(self) -> int:
        return len(self._leaves)

    def compute_root(self) -> str:
        """Compute the root. An empty tree has root keccak256(b"")."""
        if not self._leaves:
            return Web3.to_hex(Web3.keccak(b""))

        self._levels = [list(self._leaves)]
        current = self._levels[0]
        while len(current) > 1:
            parents: list[bytes] = []
            for i in range(0, len(current), 2):
                left = current[i]
                right = current[i + 1] if i + 1 < len(current) else left
                parents.append(_hash_pair(left, right))
            self._levels.append(parents)
            current = parents

        self._computed = True
        return Web3.to_hex(current[0])

    def inclusion_proof(self, index: int) -> MerkleProof:
        """Proof for the leaf at ``index``. Must call compute_root first."""
        if not self._computed:
            raise RuntimeError("Must call compute_root before generating proofs")
        if not 0 <= index < len(self._leaves):
            raise IndexError(f"No leaf at index {index}")

        path: list[str] = []
        position = index
        for level in self._levels[:-1]:
            sibling = position + 1 if position % 2 == 0 else position - 1
            if sibling >= len(level):
                sibling = position
            path.append(Web3.to_hex(level[sibling]))
            position //= 2

        return MerkleProof(
            leaf_hash=Web3.to_hex(self._leaves[index]),
            index=index,
            path=tuple(path),
            root=Web3.to_hex(self._levels[-1][0]),
        )


def _to_bytes(value: str) -> bytes:
    return bytes(Web3.to_bytes(hexstr=value))


def _hash_pair(left: bytes, right: bytes) -> bytes:
    low, high = sorted((left, right))
    return bytes(Web3.keccak(low + high))
