"""Secret vault — per-attempt swap secrets and their hash-lock.

A settlement attempt that needs N fills gets N independent 32-byte secrets.
The venue only ever sees their keccak256 hashes until a fill is ready, at
which point the matching secret is revealed.

Hash-lock encoding:
    1 secret   → keccak256(secret)
    N secrets  → Merkle root over leaves keccak256(uint64 index || hash_i),
                 with N - 1 packed into the top 16 bits of the root

Secrets live in memory only, keyed by fill index, and are dropped by
``sweep()``. They never appear in logs or reprs.
"""

from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

from web3 import Web3

from splitchain.crypto.merkle import MerkleProof, MerkleTree
from splitchain.errors import SecretNotFound

logger = logging.getLogger(__name__)

_COUNT_SHIFT = 240
_COUNT_MASK = 0xFFFF << _COUNT_SHIFT


def hash_secret(secret: str) -> str:
    return Web3.to_hex(Web3.keccak(hexstr=secret))


def merkle_leaf(index: int, secret_hash: str) -> str:
    return Web3.to_hex(
        Web3.solidity_keccak(
            ["uint64", "bytes32"], [index, Web3.to_bytes(hexstr=secret_hash)],
        )
    )


@dataclass(frozen=True)
class HashLock:
    """Commitment the order is locked with."""
    value: str
    fill_count: int
    leaves: Tuple[str, ...] = ()

    @property
    def multiple_fills(self) -> bool:
        return self.fill_count > 1

    def proof_for(self, index: int) -> Optional[MerkleProof]:
        """Merkle proof for a partial fill. None for single-fill locks."""
        if not self.multiple_fills:
            return None
        tree = MerkleTree(self.leaves)
        tree.compute_root()
        return tree.inclusion_proof(index)

    @classmethod
    def for_single_fill(cls, secret: str) -> HashLock:
        return cls(value=hash_secret(secret), fill_count=1)

    @classmethod
    def for_multiple_fills(cls, secret_hashes: Sequence[str]) -> HashLock:
        # Commutative keccak tree; not byte-compatible with the Fusion+ SDK encoding.
        if len(secret_hashes) < 2:
            raise ValueError("Multiple-fill hash-lock needs at least 2 secrets")
        leaves = tuple(merkle_leaf(i, h) for i, h in enumerate(secret_hashes))
        root = int(MerkleTree(leaves).compute_root(), 16)
        packed = (root & ~_COUNT_MASK) | ((len(leaves) - 1) << _COUNT_SHIFT)
        return cls(
            value="0x" + packed.to_bytes(32, "big").hex(),
            fill_count=len(leaves),
            leaves=leaves,
        )


class SecretVault:
    """Holds the secrets of exactly one settlement attempt.

    Usage:
        with SecretVault() as vault:
            secrets = vault.generate(preset.secrets_count)
            lock = vault.commitment(secrets)
            ...
            vault.reveal_for(idx)
    """

    def __init__(self) -> None:
        self._secrets: Dict[int, str] = {}
        self._generated = False

    def __enter__(self) -> SecretVault:
        return self

    def __exit__(self, *exc_info) -> None:
        self.sweep()

    def __repr__(self) -> str:
        return f"SecretVault(held={len(self._secrets)})"

    def generate(self, n: int) -> List[str]:
        """Generate ``n`` fresh 32-byte secrets, indexed 0..n-1."""
        if n < 1:
            raise ValueError("Secret count must be at least 1")
        if self._generated:
            raise RuntimeError("Vault already generated secrets for this attempt")
        self._generated = True
        generated = ["0x" + secrets.token_bytes(32).hex() for _ in range(n)]
        self._secrets = dict(enumerate(generated))
        logger.debug("Generated %d secrets", n)
        return list(generated)

    def secret_hashes(self) -> List[str]:
        return [hash_secret(self._secrets[i]) for i in sorted(self._secrets)]

    def commitment(self, secrets_: Sequence[str]) -> HashLock:
        if not secrets_:
            raise ValueError("Cannot commit to zero secrets")
        if len(secrets_) == 1:
            return HashLock.for_single_fill(secrets_[0])
        return HashLock.for_multiple_fills([hash_secret(s) for s in secrets_])

    def reveal_for(self, index: int) -> str:
        try:
            return self._secrets[index]
        except KeyError:
            raise SecretNotFound(index) from None

    def sweep(self) -> None:
        """Drop every held secret. Later reveals raise SecretNotFound."""
        if self._secrets:
            logger.debug("Swept %d secrets", len(self._secrets))
        self._secrets.clear()

    @property
    def held(self) -> int:
        return len(self._secrets)
