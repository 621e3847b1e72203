"""Settlement models — venue records and the attempt state machine.

Venue responses are validated here, at the boundary. Each ``from_response``
either returns a fully typed record or raises VenueProtocolError; nothing
downstream touches raw JSON.

Attempt state machine:
    QUOTING → ORDER_SUBMITTED → MONITORING → COMPLETED
                                           → EXPIRED
                                           → CANCELLED
                                           → TIMED_OUT
    QUOTING → FAILED            (quote failed)
    QUOTING → CANCELLED         (cancelled before an order existed)
    ORDER_SUBMITTED → FAILED    (submission failed after retry)

Terminal states have no exits.
"""

from __future__ import annotations

import enum
import threading
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Set, Tuple
from uuid import uuid4

from web3 import Web3

from splitchain.crypto.typed_data import (
    LIMIT_ORDER,
    TypedDataDomain,
    full_message,
    typed_data_hash,
)
from splitchain.errors import TransitionError, VenueProtocolError


@dataclass(frozen=True)
class SwapRequest:
    """What to move: ``amount`` of ``src_token`` on the source chain,
    delivered as ``dst_token`` to ``recipient`` on the destination chain."""
    amount: int
    src_chain_id: int
    dst_chain_id: int
    src_token: str
    dst_token: str
    sender: str
    recipient: str

    def __post_init__(self) -> None:
        if self.amount <= 0:
            raise ValueError("Swap amount must be positive")


def _field(data: Mapping[str, Any], key: str, kind: type, where: str) -> Any:
    if not isinstance(data, Mapping) or key not in data:
        raise VenueProtocolError(f"{where}: missing {key!r}")
    value = data[key]
    if kind is int:
        if isinstance(value, str) and value.isascii() and value.isdigit():
            value = int(value)
        if isinstance(value, bool) or not isinstance(value, int):
            raise VenueProtocolError(f"{where}: {key!r} is not an integer: {value!r}")
    elif not isinstance(value, kind):
        raise VenueProtocolError(f"{where}: {key!r} has type {type(value).__name__}")
    return value


def _optional(data: Mapping[str, Any], key: str, kind: type, where: str, default: Any) -> Any:
    """Like _field, but an absent or null value yields ``default``."""
    if data.get(key) is None:
        return default
    return _field(data, key, kind, where)


@dataclass(frozen=True)
class Preset:
    """An execution preset: fill count and auction timing."""
    name: str
    secrets_count: int
    auction_duration: int = 0
    allow_partial_fills: bool = False
    allow_multiple_fills: bool = False

    @classmethod
    def from_response(cls, name: str, data: Mapping[str, Any]) -> Preset:
        where = f"preset {name}"
        secrets_count = _field(data, "secretsCount", int, where)
        if secrets_count < 1:
            raise VenueProtocolError(f"{where}: secretsCount must be >= 1")
        return cls(
            name=name,
            secrets_count=secrets_count,
            auction_duration=_optional(data, "auctionDuration", int, where, 0),
            allow_partial_fills=_optional(data, "allowPartialFills", bool, where, False),
            allow_multiple_fills=_optional(data, "allowMultipleFills", bool, where, False),
        )


@dataclass(frozen=True)
class Quote:
    quote_id: str
    src_token_amount: int
    dst_token_amount: int
    presets: Dict[str, Preset]
    recommended_preset: str

    @property
    def preset(self) -> Preset:
        return self.presets[self.recommended_preset]

    @property
    def fill_count(self) -> int:
        return self.preset.secrets_count

    @classmethod
    def from_response(cls, data: Mapping[str, Any]) -> Quote:
        where = "quote"
        raw_presets = _field(data, "presets", Mapping, where)
        presets = {
            name: Preset.from_response(name, body)
            for name, body in raw_presets.items()
            if body is not None
        }
        recommended = _field(data, "recommendedPreset", str, where)
        if recommended not in presets:
            raise VenueProtocolError(f"{where}: recommended preset {recommended!r} not offered")
        return cls(
            quote_id=_field(data, "quoteId", str, where),
            src_token_amount=_field(data, "srcTokenAmount", int, where),
            dst_token_amount=_field(data, "dstTokenAmount", int, where),
            presets=presets,
            recommended_preset=recommended,
        )


class OrderStatusKind(str, enum.Enum):
    PENDING = "pending"
    EXECUTED = "executed"
    EXPIRED = "expired"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self != OrderStatusKind.PENDING


# Intermediate venue statuses collapse onto the four the protocol acts on.
_STATUS_ALIASES = {
    "partially-filled": OrderStatusKind.PENDING,
    "refunding": OrderStatusKind.PENDING,
    "refunded": OrderStatusKind.EXPIRED,
}


@dataclass(frozen=True)
class EscrowEvent:
    side: str
    action: str
    tx_hash: str


@dataclass(frozen=True)
class OrderStatus:
    order_hash: str
    status: OrderStatusKind
    escrow_events: Tuple[EscrowEvent, ...] = ()

    @property
    def dst_tx_hash(self) -> Optional[str]:
        """Destination-chain withdrawal tx, falling back to any dst escrow tx."""
        dst = [e for e in self.escrow_events if e.side == "dst"]
        for event in reversed(dst):
            if event.action == "withdrawn":
                return event.tx_hash
        return dst[-1].tx_hash if dst else None

    @classmethod
    def from_response(cls, order_hash: str, data: Mapping[str, Any]) -> OrderStatus:
        where = f"order {order_hash}"
        raw = _field(data, "status", str, where)
        try:
            status = _STATUS_ALIASES.get(raw) or OrderStatusKind(raw)
        except ValueError:
            raise VenueProtocolError(f"{where}: unknown status {raw!r}") from None
        events: List[EscrowEvent] = []
        for fill in _optional(data, "fills", list, where, []):
            if not isinstance(fill, Mapping):
                raise VenueProtocolError(f"{where}: fill is not an object")
            for event in _optional(fill, "escrowEvents", list, where, []):
                if not isinstance(event, Mapping):
                    raise VenueProtocolError(f"{where}: escrow event is not an object")
                events.append(EscrowEvent(
                    side=_optional(event, "side", str, where, ""),
                    action=_optional(event, "action", str, where, ""),
                    tx_hash=_optional(event, "transactionHash", str, where, ""),
                ))
        return cls(order_hash=order_hash, status=status, escrow_events=tuple(events))


def ready_fill_indices(data: Mapping[str, Any]) -> List[int]:
    """Parse a ready-to-accept-secret-fills response into fill indices."""
    fills = data.get("fills") if isinstance(data, Mapping) else None
    if not isinstance(fills, list):
        raise VenueProtocolError("ready fills: missing 'fills'")
    return [_field(fill, "idx", int, "ready fill") for fill in fills]


@dataclass(frozen=True)
class CrossChainOrder:
    """A receiver-scoped, hash-locked cross-chain order.

    The limit-order struct is what the maker signs on the source chain;
    the cross-chain terms (hash-lock, destination chain and receiver)
    travel alongside it as the order extension.
    """
    salt: int
    maker: str
    receiver: str
    src_chain_id: int
    dst_chain_id: int
    maker_asset: str
    taker_asset: str
    making_amount: int
    taking_amount: int
    hash_lock: str
    secrets_count: int
    preset: str
    maker_traits: int = 0

    def typed_data(self) -> dict[str, Any]:
        message = {
            "salt": self.salt,
            "maker": Web3.to_checksum_address(self.maker),
            "receiver": Web3.to_checksum_address(self.receiver),
            "makerAsset": Web3.to_checksum_address(self.maker_asset),
            "takerAsset": Web3.to_checksum_address(self.taker_asset),
            "makingAmount": self.making_amount,
            "takingAmount": self.taking_amount,
            "makerTraits": self.maker_traits,
        }
        return full_message(
            TypedDataDomain.limit_order(self.src_chain_id), "Order", LIMIT_ORDER, message,
        )

    @property
    def order_hash(self) -> str:
        return typed_data_hash(self.typed_data())

    def to_payload(self) -> dict[str, Any]:
        return {
            "order": {
                "salt": str(self.salt),
                "maker": self.maker,
                "receiver": self.receiver,
                "makerAsset": self.maker_asset,
                "takerAsset": self.taker_asset,
                "makingAmount": str(self.making_amount),
                "takingAmount": str(self.taking_amount),
                "makerTraits": str(self.maker_traits),
            },
            "extension": {
                "hashLock": self.hash_lock,
                "secretsCount": self.secrets_count,
                "dstChainId": self.dst_chain_id,
                "dstReceiver": self.receiver,
                "preset": self.preset,
            },
        }


class AttemptState(str, enum.Enum):
    QUOTING = "quoting"
    ORDER_SUBMITTED = "order_submitted"
    MONITORING = "monitoring"
    COMPLETED = "completed"
    EXPIRED = "expired"
    CANCELLED = "cancelled"
    TIMED_OUT = "timed_out"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return not ATTEMPT_TRANSITIONS[self]


ATTEMPT_TRANSITIONS: Dict[AttemptState, frozenset] = {
    AttemptState.QUOTING: frozenset({
        AttemptState.ORDER_SUBMITTED,
        AttemptState.FAILED,
        AttemptState.CANCELLED,
    }),
    AttemptState.ORDER_SUBMITTED: frozenset({
        AttemptState.MONITORING,
        AttemptState.FAILED,
    }),
    AttemptState.MONITORING: frozenset({
        AttemptState.COMPLETED,
        AttemptState.EXPIRED,
        AttemptState.CANCELLED,
        AttemptState.TIMED_OUT,
    }),
    AttemptState.COMPLETED: frozenset(),
    AttemptState.EXPIRED: frozenset(),
    AttemptState.CANCELLED: frozenset(),
    AttemptState.TIMED_OUT: frozenset(),
    AttemptState.FAILED: frozenset(),
}


@dataclass
class SettlementAttempt:
    """Everything one settlement attempt owns.

    Mutable — the orchestrator moves it through the state machine. No
    process-wide state: two attempts on different edges never share
    anything. ``cancel()`` is safe to call from another thread.
    """
    request: SwapRequest
    attempt_id: str = field(default_factory=lambda: f"attempt_{uuid4().hex[:12]}")
    state: AttemptState = AttemptState.QUOTING
    quote: Optional[Quote] = None
    order: Optional[CrossChainOrder] = None
    order_hash: Optional[str] = None
    revealed: Set[int] = field(default_factory=set)
    polls: int = 0
    dst_tx_hash: Optional[str] = None
    error: Optional[str] = None
    history: List[Tuple[AttemptState, AttemptState, str]] = field(default_factory=list)
    created_utc: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    finished_utc: Optional[datetime] = None
    _cancel: threading.Event = field(
        default_factory=threading.Event, repr=False, compare=False,
    )

    def transition_to(self, new_state: AttemptState, reason: str = "") -> None:
        """Transition to a new state, validating the transition is legal."""
        allowed = ATTEMPT_TRANSITIONS.get(self.state, frozenset())
        if new_state not in allowed:
            raise TransitionError(
                f"Invalid attempt transition: {self.state.value} → {new_state.value}. "
                f"Allowed: {', '.join(s.value for s in allowed) or 'none'}"
            )
        self.history.append((self.state, new_state, reason))
        self.state = new_state
        if new_state.terminal:
            self.finished_utc = datetime.now(timezone.utc)

    def cancel(self) -> None:
        self._cancel.set()

    @property
    def cancel_requested(self) -> bool:
        return self._cancel.is_set()

    @property
    def is_terminal(self) -> bool:
        return self.state.terminal

    @property
    def needs_reconciliation(self) -> bool:
        """A timed-out order may still settle on chain; someone must check."""
        return self.state == AttemptState.TIMED_OUT
