"""Ledger models — groups, expenses, debt edges, settlement records.

All amounts are integers in the token's smallest unit. No floats, no
Decimal: the ledger mirrors uint256 arithmetic on the chain.

Users are identified by address only. Addresses are normalised to the
lowercase 0x form the indexer stores, so the same account never appears
under two spellings.

Invariants enforced by these models:
- A debt edge never has debtor == creditor.
- An edge's amount is never negative.
- ``open`` is derived from the amount, never stored.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, NamedTuple, Optional, Tuple

from web3 import Web3


def normalize_address(value: str) -> str:
    """Return the canonical lowercase form of an address.

    Raises ValueError if ``value`` is not a 20-byte hex address.
    """
    if not isinstance(value, str) or not Web3.is_address(value):
        raise ValueError(f"Not an address: {value!r}")
    return value.lower()


def normalize_group_id(value: object) -> str:
    """Group ids are uint256 on chain; they are keyed by decimal string."""
    if isinstance(value, bool):
        raise ValueError(f"Not a group id: {value!r}")
    if isinstance(value, int):
        number = value
    elif isinstance(value, str) and value.strip().isdigit():
        number = int(value)
    else:
        raise ValueError(f"Not a group id: {value!r}")
    if number < 0:
        raise ValueError(f"Not a group id: {value!r}")
    return str(number)


class EdgeKey(NamedTuple):
    """Identity of a debt edge. Direction matters: debtor owes creditor."""

    group_id: str
    debtor: str
    creditor: str
    token: str

    @property
    def edge_id(self) -> str:
        """String id in the indexer's format: ``group:debtor->creditor:token``."""
        return f"{self.group_id}:{self.debtor}->{self.creditor}:{self.token}"

    @classmethod
    def of(cls, group_id: object, debtor: str, creditor: str, token: str) -> EdgeKey:
        """Build a key from raw values, normalising every component."""
        return cls(
            group_id=normalize_group_id(group_id),
            debtor=normalize_address(debtor),
            creditor=normalize_address(creditor),
            token=normalize_address(token),
        )


@dataclass(frozen=True)
class Group:
    group_id: str
    name: str
    members: Tuple[str, ...]
    created_utc: Optional[datetime] = None

    @property
    def member_count(self) -> int:
        return len(self.members)


@dataclass
class Expense:
    """A logged expense.

    ``voided`` is the only field that changes after creation. ``shares``
    records the per-debtor amounts that were added to edges, so a void can
    be reversed when the engine is configured to do so.
    """
    expense_id: str
    group_id: str
    payer: str
    token: str
    amount: int
    cid: str = ""
    memo: str = ""
    created_utc: Optional[datetime] = None
    voided: bool = False
    shares: Dict[str, int] = field(default_factory=dict)


@dataclass
class DebtEdge:
    """Directed, token-scoped amount one member owes another in a group.

    Mutable — the amount moves up with expense shares and down with
    settlements. A closed edge (amount 0) is kept for history.
    """
    key: EdgeKey
    amount: int = 0

    def __post_init__(self) -> None:
        if self.key.debtor == self.key.creditor:
            raise ValueError(
                f"Debt edge cannot point at its own debtor: {self.key.edge_id}"
            )
        if self.amount < 0:
            raise ValueError(f"Debt edge amount cannot be negative: {self.amount}")

    @property
    def open(self) -> bool:
        return self.amount > 0

    @property
    def edge_id(self) -> str:
        return self.key.edge_id

    def increase(self, delta: int) -> None:
        if delta < 0:
            raise ValueError("Use decrease() to reduce an edge")
        self.amount += delta

    def decrease(self, delta: int) -> int:
        """Reduce the amount, clamping at zero.

        Returns the part of ``delta`` that could not be applied (0 when the
        edge covered it fully).
        """
        if delta < 0:
            raise ValueError("Use increase() to grow an edge")
        applied = min(delta, self.amount)
        self.amount -= applied
        return delta - applied


@dataclass(frozen=True)
class SettlementIntent:
    """A commitment to settle, recorded before execution completes."""
    intent_hash: str
    group_id: str
    debtor: str
    creditor: str
    route_id: str
    created_utc: Optional[datetime] = None


@dataclass(frozen=True)
class Settlement:
    """A finalized settlement. Applied to its edge once, keyed by receipt."""
    receipt_hash: str
    group_id: str
    debtor: str
    creditor: str
    token: str
    amount: int
    dst_chain_id: int
    dst_tx_hash: str
    finalized_utc: Optional[datetime] = None

    @property
    def edge_key(self) -> EdgeKey:
        return EdgeKey(self.group_id, self.debtor, self.creditor, self.token)
