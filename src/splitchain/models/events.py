"""Typed ledger events.

The event log carries raw payloads keyed by the contract's parameter
names (``groupId``, ``expenseId``, ...). These classes are the boundary:
``from_record`` validates a payload and raises InvalidEvent when it is
malformed, ``to_record`` produces a payload in the same wire shape.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any, ClassVar, Optional, Tuple
from uuid import uuid4

from splitchain.errors import InvalidEvent
from splitchain.models.ledger import normalize_address, normalize_group_id
from splitchain.persistence.event_log import EventKind, EventRecord

_BYTES32 = re.compile(r"^0x[0-9a-fA-F]{64}$")


def _require(record: EventRecord, key: str) -> Any:
    if key not in record.payload:
        raise InvalidEvent(record.event_id, f"missing field {key!r}")
    return record.payload[key]


def _address(record: EventRecord, key: str) -> str:
    try:
        return normalize_address(_require(record, key))
    except ValueError as exc:
        raise InvalidEvent(record.event_id, f"{key}: {exc}") from exc


def _group(record: EventRecord) -> str:
    try:
        return normalize_group_id(_require(record, "groupId"))
    except ValueError as exc:
        raise InvalidEvent(record.event_id, f"groupId: {exc}") from exc


def _uint(record: EventRecord, key: str) -> int:
    value = _require(record, key)
    if isinstance(value, bool):
        raise InvalidEvent(record.event_id, f"{key} is not an integer")
    if isinstance(value, str) and value.isascii() and value.isdigit():
        value = int(value)
    if not isinstance(value, int) or value < 0:
        raise InvalidEvent(record.event_id, f"{key} is not a uint: {value!r}")
    return value


def _bytes32(record: EventRecord, key: str) -> str:
    value = _require(record, key)
    if not isinstance(value, str) or not _BYTES32.match(value):
        raise InvalidEvent(record.event_id, f"{key} is not bytes32: {value!r}")
    return value.lower()


def _expect_kind(record: EventRecord, kind: EventKind) -> None:
    if record.event_kind != kind:
        raise InvalidEvent(
            record.event_id,
            f"expected {kind.value}, got {record.event_kind.value}",
        )


class _LedgerEvent:
    KIND: ClassVar[EventKind]

    def to_payload(self) -> dict[str, Any]:
        raise NotImplementedError

    def to_record(
        self,
        event_id: Optional[str] = None,
        timestamp_utc: Optional[datetime] = None,
    ) -> EventRecord:
        if event_id is None:
            event_id = f"evt_{uuid4().hex[:16]}"
        return EventRecord.create(
            event_id=event_id,
            event_kind=self.KIND,
            payload=self.to_payload(),
            timestamp_utc=timestamp_utc,
        )


@dataclass(frozen=True)
class GroupCreated(_LedgerEvent):
    KIND: ClassVar[EventKind] = EventKind.GROUP_CREATED

    group_id: str
    name: str
    members: Tuple[str, ...]

    @classmethod
    def from_record(cls, record: EventRecord) -> GroupCreated:
        _expect_kind(record, cls.KIND)
        raw_members = _require(record, "members")
        if not isinstance(raw_members, (list, tuple)):
            raise InvalidEvent(record.event_id, "members is not a list")
        members: list[str] = []
        for raw in raw_members:
            try:
                address = normalize_address(raw)
            except ValueError as exc:
                raise InvalidEvent(record.event_id, f"members: {exc}") from exc
            if address not in members:
                members.append(address)
        return cls(
            group_id=_group(record),
            name=str(record.payload.get("name", "")),
            members=tuple(members),
        )

    def to_payload(self) -> dict[str, Any]:
        return {
            "groupId": self.group_id,
            "name": self.name,
            "members": list(self.members),
        }


@dataclass(frozen=True)
class ExpenseAdded(_LedgerEvent):
    KIND: ClassVar[EventKind] = EventKind.EXPENSE_ADDED

    group_id: str
    expense_id: str
    payer: str
    token: str
    amount: int
    cid: str = ""
    memo: str = ""

    @classmethod
    def from_record(cls, record: EventRecord) -> ExpenseAdded:
        _expect_kind(record, cls.KIND)
        return cls(
            group_id=_group(record),
            expense_id=str(_require(record, "expenseId")),
            payer=_address(record, "payer"),
            token=_address(record, "token"),
            amount=_uint(record, "amount"),
            cid=str(record.payload.get("cid", "")),
            memo=str(record.payload.get("memo", "")),
        )

    def to_payload(self) -> dict[str, Any]:
        return {
            "groupId": self.group_id,
            "expenseId": self.expense_id,
            "payer": self.payer,
            "token": self.token,
            "amount": self.amount,
            "cid": self.cid,
            "memo": self.memo,
        }


@dataclass(frozen=True)
class ExpenseVoided(_LedgerEvent):
    KIND: ClassVar[EventKind] = EventKind.EXPENSE_VOIDED

    expense_id: str

    @classmethod
    def from_record(cls, record: EventRecord) -> ExpenseVoided:
        _expect_kind(record, cls.KIND)
        return cls(expense_id=str(_require(record, "expenseId")))

    def to_payload(self) -> dict[str, Any]:
        return {"expenseId": self.expense_id}


@dataclass(frozen=True)
class SettlementIntentCreated(_LedgerEvent):
    KIND: ClassVar[EventKind] = EventKind.SETTLEMENT_INTENT_CREATED

    group_id: str
    intent_hash: str
    debtor: str
    creditor: str
    route_id: str

    @classmethod
    def from_record(cls, record: EventRecord) -> SettlementIntentCreated:
        _expect_kind(record, cls.KIND)
        return cls(
            group_id=_group(record),
            intent_hash=_bytes32(record, "intentHash"),
            debtor=_address(record, "debtor"),
            creditor=_address(record, "creditor"),
            route_id=str(_require(record, "routeId")),
        )

    def to_payload(self) -> dict[str, Any]:
        return {
            "groupId": self.group_id,
            "intentHash": self.intent_hash,
            "debtor": self.debtor,
            "creditor": self.creditor,
            "routeId": self.route_id,
        }


@dataclass(frozen=True)
class SettlementFinalized(_LedgerEvent):
    KIND: ClassVar[EventKind] = EventKind.SETTLEMENT_FINALIZED

    group_id: str
    debtor: str
    creditor: str
    token: str
    amount: int
    dst_chain_id: int
    dst_tx_hash: str
    receipt_hash: str
    intent_hash: Optional[str] = None

    @classmethod
    def from_record(cls, record: EventRecord) -> SettlementFinalized:
        _expect_kind(record, cls.KIND)
        intent_hash = None
        if record.payload.get("intentHash") is not None:
            intent_hash = _bytes32(record, "intentHash")
        return cls(
            group_id=_group(record),
            debtor=_address(record, "debtor"),
            creditor=_address(record, "creditor"),
            token=_address(record, "token"),
            amount=_uint(record, "amount"),
            dst_chain_id=_uint(record, "dstChainId"),
            dst_tx_hash=_bytes32(record, "dstTxHash"),
            receipt_hash=_bytes32(record, "receiptHash"),
            intent_hash=intent_hash,
        )

    def to_payload(self) -> dict[str, Any]:
        return {
            "groupId": self.group_id,
            "debtor": self.debtor,
            "creditor": self.creditor,
            "token": self.token,
            "amount": self.amount,
            "dstChainId": self.dst_chain_id,
            "dstTxHash": self.dst_tx_hash,
            "receiptHash": self.receipt_hash,
            "intentHash": self.intent_hash,
        }


EVENT_TYPES = {
    cls.KIND: cls
    for cls in (
        GroupCreated,
        ExpenseAdded,
        ExpenseVoided,
        SettlementIntentCreated,
        SettlementFinalized,
    )
}


def parse_event(record: EventRecord) -> _LedgerEvent:
    """Parse a record into its typed event.

    Any malformation, including an unreadable timestamp or a payload that
    is not an object, surfaces as InvalidEvent.
    """
    event_type = EVENT_TYPES.get(record.event_kind)
    if event_type is None:
        raise InvalidEvent(record.event_id, f"unhandled kind {record.event_kind!r}")
    if not isinstance(record.payload, dict):
        raise InvalidEvent(record.event_id, "payload is not an object")
    try:
        record.timestamp  # unreadable block times are rejected here
        return event_type.from_record(record)
    except (ValueError, TypeError, KeyError) as exc:
        raise InvalidEvent(record.event_id, str(exc)) from exc
