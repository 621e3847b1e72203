"""EIP-712 typed-data hashing for intents, receipts, and swap orders.

The ledger identifies a settlement intent and a settlement receipt by the
EIP-712 digest of their structs, under the ``SplitwiseX`` v1 domain bound
to the ledger contract. Swap orders are hashed under the limit order
protocol's domain on the source chain.

Encoding is delegated to eth_account; the digest is keccak256 of the
EIP-191 envelope, the same bytes a wallet signs.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable

from eth_account.messages import SignableMessage, encode_typed_data
from web3 import Web3

ZERO_BYTES32 = "0x" + "00" * 32

EIP712_DOMAIN = [
    {"name": "name", "type": "string"},
    {"name": "version", "type": "string"},
    {"name": "chainId", "type": "uint256"},
    {"name": "verifyingContract", "type": "address"},
]

SETTLE_INTENT = [
    {"name": "groupId", "type": "uint256"},
    {"name": "debtor", "type": "address"},
    {"name": "creditor", "type": "address"},
    {"name": "srcChainId", "type": "uint256"},
    {"name": "dstChainId", "type": "uint256"},
    {"name": "tokenIn", "type": "address"},
    {"name": "tokenOut", "type": "address"},
    {"name": "amountOutMin", "type": "uint256"},
    {"name": "deadline", "type": "uint256"},
    {"name": "routeId", "type": "string"},
    {"name": "edgeIdsHash", "type": "bytes32"},
]

SETTLEMENT_RECEIPT = [
    {"name": "groupId", "type": "uint256"},
    {"name": "debtor", "type": "address"},
    {"name": "creditor", "type": "address"},
    {"name": "token", "type": "address"},
    {"name": "amount", "type": "uint256"},
    {"name": "dstChainId", "type": "uint256"},
    {"name": "dstTxHash", "type": "bytes32"},
    {"name": "settleIntentHash", "type": "bytes32"},
]

LIMIT_ORDER = [
    {"name": "salt", "type": "uint256"},
    {"name": "maker", "type": "address"},
    {"name": "receiver", "type": "address"},
    {"name": "makerAsset", "type": "address"},
    {"name": "takerAsset", "type": "address"},
    {"name": "makingAmount", "type": "uint256"},
    {"name": "takingAmount", "type": "uint256"},
    {"name": "makerTraits", "type": "uint256"},
]

LIMIT_ORDER_PROTOCOL = "0x111111125421cA6dc452d289314280a0f8842A65"


@dataclass(frozen=True)
class TypedDataDomain:
    name: str
    version: str
    chain_id: int
    verifying_contract: str

    @classmethod
    def ledger(cls, chain_id: int, verifying_contract: str) -> TypedDataDomain:
        return cls("SplitwiseX", "1", chain_id, verifying_contract)

    @classmethod
    def limit_order(cls, chain_id: int) -> TypedDataDomain:
        return cls("1inch Aggregation Router", "6", chain_id, LIMIT_ORDER_PROTOCOL)

    def as_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "version": self.version,
            "chainId": self.chain_id,
            "verifyingContract": Web3.to_checksum_address(self.verifying_contract),
        }


def full_message(
    domain: TypedDataDomain,
    primary_type: str,
    fields: list[dict[str, str]],
    message: dict[str, Any],
) -> dict[str, Any]:
    """Assemble the EIP-712 document eth_account encodes."""
    return {
        "types": {"EIP712Domain": EIP712_DOMAIN, primary_type: fields},
        "primaryType": primary_type,
        "domain": domain.as_dict(),
        "message": message,
    }


def signable(document: dict[str, Any]) -> SignableMessage:
    return encode_typed_data(full_message=document)


def typed_data_hash(document: dict[str, Any]) -> str:
    """keccak256(0x19 || version || domainSeparator || structHash)."""
    message = signable(document)
    digest = Web3.keccak(b"\x19" + message.version + message.header + message.body)
    return Web3.to_hex(digest)


def edge_ids_hash(edge_ids: Iterable[str]) -> str:
    """Commitment to the set of edge ids an intent settles."""
    joined = ",".join(sorted(edge_ids)).encode("utf-8")
    return Web3.to_hex(Web3.keccak(joined))


def settle_intent_hash(
    domain: TypedDataDomain,
    *,
    group_id: str,
    debtor: str,
    creditor: str,
    src_chain_id: int,
    dst_chain_id: int,
    token_in: str,
    token_out: str,
    amount_out_min: int,
    deadline: int,
    route_id: str,
    edge_ids: Iterable[str],
) -> str:
    message = {
        "groupId": int(group_id),
        "debtor": Web3.to_checksum_address(debtor),
        "creditor": Web3.to_checksum_address(creditor),
        "srcChainId": src_chain_id,
        "dstChainId": dst_chain_id,
        "tokenIn": Web3.to_checksum_address(token_in),
        "tokenOut": Web3.to_checksum_address(token_out),
        "amountOutMin": amount_out_min,
        "deadline": deadline,
        "routeId": route_id,
        "edgeIdsHash": _bytes32(edge_ids_hash(edge_ids)),
    }
    return typed_data_hash(full_message(domain, "SettleIntent", SETTLE_INTENT, message))


def settlement_receipt_hash(
    domain: TypedDataDomain,
    *,
    group_id: str,
    debtor: str,
    creditor: str,
    token: str,
    amount: int,
    dst_chain_id: int,
    dst_tx_hash: str,
    intent_hash: str,
) -> str:
    message = {
        "groupId": int(group_id),
        "debtor": Web3.to_checksum_address(debtor),
        "creditor": Web3.to_checksum_address(creditor),
        "token": Web3.to_checksum_address(token),
        "amount": amount,
        "dstChainId": dst_chain_id,
        "dstTxHash": _bytes32(dst_tx_hash),
        "settleIntentHash": _bytes32(intent_hash),
    }
    return typed_data_hash(
        full_message(domain, "SettlementReceipt", SETTLEMENT_RECEIPT, message)
    )


def _bytes32(value: str) -> bytes:
    raw = bytes(Web3.to_bytes(hexstr=value))
    if len(raw) != 32:
        raise ValueError(f"Expected 32 bytes, got {len(raw)}: {value}")
    return raw
