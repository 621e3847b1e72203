"""Route book — which chain each party settles on, and token addresses per chain.

A debt edge is denominated in a ledger token. To settle it, the debtor pays
from the chain they hold funds on, and the creditor receives on the chain
they prefer. The route book turns (debtor, creditor, token) into concrete
source and destination chain/token pairs.

JSON layout:
    {
      "defaultChainId": 1,
      "parties": {"0xabc...": {"chainId": 137}},
      "tokens": {"0xledgerToken...": {"1": "0xa0b8...", "137": "0xc213..."}}
    }

A ledger token without a mapping is assumed to live at the same address on
the default chain.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping

from splitchain.models.ledger import normalize_address


@dataclass(frozen=True)
class SwapRoute:
    src_chain_id: int
    src_token: str
    dst_chain_id: int
    dst_token: str

    @property
    def route_id(self) -> str:
        return f"fusion-plus:{self.src_chain_id}->{self.dst_chain_id}"


@dataclass
class RouteBook:
    default_chain_id: int = 1
    party_chains: Dict[str, int] = field(default_factory=dict)
    token_addresses: Dict[str, Dict[int, str]] = field(default_factory=dict)

    def set_party_chain(self, party: str, chain_id: int) -> None:
        self.party_chains[normalize_address(party)] = chain_id

    def set_token_address(self, ledger_token: str, chain_id: int, address: str) -> None:
        per_chain = self.token_addresses.setdefault(normalize_address(ledger_token), {})
        per_chain[chain_id] = normalize_address(address)

    def chain_for(self, party: str) -> int:
        return self.party_chains.get(normalize_address(party), self.default_chain_id)

    def token_on(self, ledger_token: str, chain_id: int) -> str:
        ledger_token = normalize_address(ledger_token)
        per_chain = self.token_addresses.get(ledger_token)
        if per_chain is None:
            if chain_id == self.default_chain_id:
                return ledger_token
            raise ValueError(f"Token {ledger_token} has no mapping for chain {chain_id}")
        if chain_id not in per_chain:
            raise ValueError(f"Token {ledger_token} has no address on chain {chain_id}")
        return per_chain[chain_id]

    def resolve(self, debtor: str, creditor: str, token: str) -> SwapRoute:
        """Route for ``debtor`` paying ``creditor`` a debt in ``token``.

        Raises ValueError if either side has no token address.
        """
        src_chain = self.chain_for(debtor)
        dst_chain = self.chain_for(creditor)
        return SwapRoute(
            src_chain_id=src_chain,
            src_token=self.token_on(token, src_chain),
            dst_chain_id=dst_chain,
            dst_token=self.token_on(token, dst_chain),
        )

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> RouteBook:
        book = cls(default_chain_id=int(data.get("defaultChainId", 1)))
        for party, body in (data.get("parties") or {}).items():
            book.set_party_chain(party, int(body["chainId"]))
        for token, per_chain in (data.get("tokens") or {}).items():
            for chain_id, address in per_chain.items():
                book.set_token_address(token, int(chain_id), address)
        return book

    @classmethod
    def from_json(cls, path: Path) -> RouteBook:
        return cls.from_dict(json.loads(Path(path).read_text(encoding="utf-8")))
