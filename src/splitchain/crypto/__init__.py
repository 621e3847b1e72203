"""Cryptographic primitives — keccak Merkle trees and EIP-712 hashing."""

from splitchain.crypto.merkle import MerkleProof, MerkleTree
from splitchain.crypto.typed_data import TypedDataDomain

__all__ = ["MerkleProof", "MerkleTree", "TypedDataDomain"]
