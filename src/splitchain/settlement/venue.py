"""Settlement venue — the external quote / matching / relayer service.

The orchestrator never talks HTTP. It talks to the ``Venue`` protocol, and
any backend that satisfies it can broker the order: the Fusion+ relayer
client below in production, an in-memory fake in tests.

Every venue method raises VenueUnavailable for transport failures (the
caller may retry) and VenueProtocolError for answers it cannot use.
"""

from __future__ import annotations

import logging
from typing import Any, List, Optional, Protocol, Sequence, runtime_checkable

import requests
from eth_account import Account
from web3 import Web3

from splitchain.config import SettlementConfig
from splitchain.crypto.typed_data import signable
from splitchain.errors import VenueProtocolError, VenueUnavailable
from splitchain.models.settlement import (
    CrossChainOrder,
    OrderStatus,
    Quote,
    SwapRequest,
    ready_fill_indices,
)

logger = logging.getLogger(__name__)


@runtime_checkable
class Venue(Protocol):
    """Operations the settlement protocol consumes from a venue."""

    def get_quote(self, request: SwapRequest) -> Quote:
        ...

    def submit_order(
        self,
        src_chain_id: int,
        order: CrossChainOrder,
        quote_id: str,
        secret_hashes: Sequence[str],
    ) -> str:
        """Submit a signed order. Returns the order hash."""
        ...

    def get_order_status(self, order_hash: str) -> OrderStatus:
        ...

    def get_ready_to_accept_secret_fills(self, order_hash: str) -> List[int]:
        """Fill indices whose escrows are deployed and await a secret."""
        ...

    def submit_secret(self, order_hash: str, secret: str) -> None:
        ...


@runtime_checkable
class OrderSigner(Protocol):
    """External signer for the maker's orders. Keys never enter the core."""

    @property
    def address(self) -> str:
        ...

    def sign_order(self, order: CrossChainOrder) -> str:
        """Return the 0x-hex EIP-712 signature over the order."""
        ...


class LocalAccountSigner:
    """OrderSigner backed by a raw private key held by eth_account."""

    def __init__(self, private_key: str) -> None:
        self._account = Account.from_key(private_key)

    @property
    def address(self) -> str:
        return self._account.address

    def sign_order(self, order: CrossChainOrder) -> str:
        signed = self._account.sign_message(signable(order.typed_data()))
        return Web3.to_hex(signed.signature)

    def __repr__(self) -> str:
        return f"LocalAccountSigner({self.address})"


class FusionPlusVenue:
    """HTTP client for the Fusion+ cross-chain relayer API.

    Usage:
        venue = FusionPlusVenue(config, signer)
        quote = venue.get_quote(request)
    """

    def __init__(
        self,
        config: SettlementConfig,
        signer: OrderSigner,
        session: Optional[requests.Session] = None,
    ) -> None:
        self._base = config.api_url.rstrip("/")
        self._timeout = config.request_timeout
        self._signer = signer
        self._session = session or requests.Session()
        if config.api_key:
            self._session.headers["Authorization"] = f"Bearer {config.api_key}"

    def get_quote(self, request: SwapRequest) -> Quote:
        data = self._request(
            "GET",
            "/quoter/v1.0/quote/receive",
            params={
                "srcChain": request.src_chain_id,
                "dstChain": request.dst_chain_id,
                "srcTokenAddress": request.src_token,
                "dstTokenAddress": request.dst_token,
                "amount": str(request.amount),
                "walletAddress": request.sender,
                "enableEstimate": "true",
            },
        )
        quote = Quote.from_response(data)
        logger.info(
            "Quote %s: %d -> %d (preset %s, %d fills)",
            quote.quote_id, quote.src_token_amount, quote.dst_token_amount,
            quote.recommended_preset, quote.fill_count,
        )
        return quote

    def submit_order(
        self,
        src_chain_id: int,
        order: CrossChainOrder,
        quote_id: str,
        secret_hashes: Sequence[str],
    ) -> str:
        # The relayer verifies multiple-fill locks against its own tree
        # encoding, which SecretVault's Merkle root does not reproduce.
        if len(secret_hashes) > 1:
            raise VenueProtocolError(
                f"submit: {len(secret_hashes)}-fill orders are not supported by this relayer"
            )
        payload = order.to_payload()
        body = {
            "order": payload["order"],
            "extension": payload["extension"],
            "srcChainId": src_chain_id,
            "signature": self._signer.sign_order(order),
            "quoteId": quote_id,
            "secretHashes": None,
        }
        data = self._request("POST", "/relayer/v1.0/submit", json=body)
        order_hash = data.get("orderHash") or order.order_hash
        if not isinstance(order_hash, str):
            raise VenueProtocolError(f"submit: orderHash is not a string: {order_hash!r}")
        return order_hash

    def get_order_status(self, order_hash: str) -> OrderStatus:
        data = self._request("GET", f"/orders/v1.0/order/status/{order_hash}")
        return OrderStatus.from_response(order_hash, data)

    def get_ready_to_accept_secret_fills(self, order_hash: str) -> List[int]:
        data = self._request(
            "GET", f"/orders/v1.0/order/ready-to-accept-secret-fills/{order_hash}",
        )
        return ready_fill_indices(data)

    def submit_secret(self, order_hash: str, secret: str) -> None:
        self._request(
            "POST",
            "/relayer/v1.0/submit/secret",
            json={"orderHash": order_hash, "secret": secret},
        )

    def _request(self, method: str, path: str, **kwargs: Any) -> dict:
        url = f"{self._base}{path}"
        try:
            response = self._session.request(method, url, timeout=self._timeout, **kwargs)
        except requests.RequestException as exc:
            raise VenueUnavailable(f"{method} {path}: {exc}") from exc

        if response.status_code == 429 or response.status_code >= 500:
            raise VenueUnavailable(f"{method} {path}: HTTP {response.status_code}")
        if response.status_code >= 400:
            raise VenueProtocolError(
                f"{method} {path}: HTTP {response.status_code} {response.text[:200]}"
            )
        if not response.content:
            return {}
        try:
            data = response.json()
        except ValueError as exc:
            raise VenueProtocolError(f"{method} {path}: response is not JSON") from exc
        if not isinstance(data, dict):
            raise VenueProtocolError(f"{method} {path}: expected a JSON object")
        return data
