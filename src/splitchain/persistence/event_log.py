"""Append-only ledger event log.

The authoritative ledger (a contract plus its indexer in production) emits
an ordered stream of events. This module is the local shape of that
collaborator: events are appended, never modified, and the append order is
the total order the balance engine replays in.

The log can be persisted to a JSONL file (one JSON object per line) and
loaded back. Every record carries a SHA-256 hash of its canonical JSON, so
a tampered file is rejected on load.
"""

from __future__ import annotations

import enum
import hashlib
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Iterator, Optional

logger = logging.getLogger(__name__)

TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%SZ"
# Indexers may report sub-second block times.
_ACCEPTED_FORMATS = (TIMESTAMP_FORMAT, "%Y-%m-%dT%H:%M:%S.%fZ")


class EventKind(str, enum.Enum):
    """Ledger event names, as emitted by the Ledger contract."""
    GROUP_CREATED = "GroupCreated"
    EXPENSE_ADDED = "ExpenseAdded"
    EXPENSE_VOIDED = "ExpenseVoided"
    SETTLEMENT_INTENT_CREATED = "SettlementIntentCreated"
    SETTLEMENT_FINALIZED = "SettlementFinalized"


def _canonical_hash(
    event_id: str,
    event_kind: str,
    timestamp_utc: str,
    payload: dict[str, Any],
) -> str:
    canonical = json.dumps(
        {
            "event_id": event_id,
            "event_kind": event_kind,
            "timestamp_utc": timestamp_utc,
            "payload": payload,
        },
        sort_keys=True,
        ensure_ascii=False,
    ).encode("utf-8")
    return f"sha256:{hashlib.sha256(canonical).hexdigest()}"


@dataclass(frozen=True)
class EventRecord:
    """A single immutable ledger event.

    ``event_id`` is unique within a log; for chain-sourced events it is
    ``{tx_hash}-{log_index}``. ``timestamp_utc`` is the block time.
    """
    event_id: str
    event_kind: EventKind
    timestamp_utc: str
    payload: dict[str, Any]
    event_hash: str

    @staticmethod
    def create(
        event_id: str,
        event_kind: EventKind,
        payload: dict[str, Any],
        timestamp_utc: Optional[datetime] = None,
    ) -> EventRecord:
        """Create a new event record with computed hash."""
        ts = timestamp_utc or datetime.now(timezone.utc)
        ts_str = ts.strftime(TIMESTAMP_FORMAT)
        return EventRecord(
            event_id=event_id,
            event_kind=event_kind,
            timestamp_utc=ts_str,
            payload=payload,
            event_hash=_canonical_hash(event_id, event_kind.value, ts_str, payload),
        )

    @property
    def timestamp(self) -> datetime:
        """Parsed timestamp. Raises ValueError if it is in no accepted format."""
        for fmt in _ACCEPTED_FORMATS:
            try:
                parsed = datetime.strptime(str(self.timestamp_utc), fmt)
            except ValueError:
                continue
            return parsed.replace(tzinfo=timezone.utc)
        raise ValueError(f"Unrecognised timestamp: {self.timestamp_utc!r}")

    def to_json(self) -> dict[str, Any]:
        return {
            "event_id": self.event_id,
            "event_kind": self.event_kind.value,
            "timestamp_utc": self.timestamp_utc,
            "payload": self.payload,
            "event_hash": self.event_hash,
        }


class EventLog:
    """Append-only event log with optional file persistence.

    Query helpers cover the lookups the settlement side needs: events by
    kind, all events touching a group, and the event that created an
    expense.
    """

    def __init__(self, storage_path: Optional[Path] = None) -> None:
        self._events: list[EventRecord] = []
        self._storage_path = storage_path
        self._event_ids: set[str] = set()

        if storage_path and storage_path.exists():
            self._load_from_file(storage_path)

    def append(self, event: EventRecord) -> None:
        """Append an event to the log.

        Raises ValueError if event_id is a duplicate (replay protection).
        """
        if event.event_id in self._event_ids:
            raise ValueError(f"Duplicate event ID: {event.event_id}")

        self._events.append(event)
        self._event_ids.add(event.event_id)
        logger.debug("Appended %s %s", event.event_kind.value, event.event_id)

        if self._storage_path:
            self._append_to_file(event)

    def extend(self, events: Iterable[EventRecord]) -> None:
        for event in events:
            self.append(event)

    def __iter__(self) -> Iterator[EventRecord]:
        return iter(list(self._events))

    def __len__(self) -> int:
        return len(self._events)

    def events(self, kind: Optional[EventKind] = None) -> list[EventRecord]:
        """Return events in log order, optionally filtered by kind."""
        if kind is None:
            return list(self._events)
        return [e for e in self._events if e.event_kind == kind]

    def events_for_group(self, group_id: str) -> list[EventRecord]:
        """All events touching a group, including voids of its expenses."""
        group_id = str(group_id)
        expense_ids: set[str] = set()
        result: list[EventRecord] = []
        for event in self._events:
            payload = event.payload
            if str(payload.get("groupId")) == group_id:
                result.append(event)
                if event.event_kind == EventKind.EXPENSE_ADDED:
                    expense_ids.add(str(payload.get("expenseId")))
            elif (
                event.event_kind == EventKind.EXPENSE_VOIDED
                and str(payload.get("expenseId")) in expense_ids
            ):
                result.append(event)
        return result

    def find_expense(self, expense_id: str) -> Optional[EventRecord]:
        """Return the ExpenseAdded event for an expense id, if any."""
        for event in self._events:
            if (
                event.event_kind == EventKind.EXPENSE_ADDED
                and str(event.payload.get("expenseId")) == str(expense_id)
            ):
                return event
        return None

    @property
    def count(self) -> int:
        return len(self._events)

    @property
    def last_event(self) -> Optional[EventRecord]:
        return self._events[-1] if self._events else None

    def _append_to_file(self, event: EventRecord) -> None:
        """Append a single event to the JSONL file."""
        with self._storage_path.open("a", encoding="utf-8") as f:
            f.write(json.dumps(event.to_json(), sort_keys=True, ensure_ascii=False) + "\n")

    def _load_from_file(self, path: Path) -> None:
        """Load events from a JSONL file with integrity verification.

        Fail-closed: rejects tampered records (hash mismatch) and
        duplicate event IDs.
        """
        with path.open("r", encoding="utf-8") as f:
            for line_num, line in enumerate(f, 1):
                line = line.strip()
                if not line:
                    continue
                data = json.loads(line)

                event_id = data["event_id"]
                if event_id in self._event_ids:
                    raise ValueError(
                        f"Duplicate event ID on recovery (line {line_num}): {event_id}"
                    )

                expected_hash = _canonical_hash(
                    data["event_id"],
                    data["event_kind"],
                    data["timestamp_utc"],
                    data["payload"],
                )
                if data["event_hash"] != expected_hash:
                    raise ValueError(
                        f"Integrity check failed (line {line_num}): event {event_id} "
                        f"stored hash {data['event_hash']} != computed {expected_hash}"
                    )

                event = EventRecord(
                    event_id=data["event_id"],
                    event_kind=EventKind(data["event_kind"]),
                    timestamp_utc=data["timestamp_utc"],
                    payload=data["payload"],
                    event_hash=data["event_hash"],
                )
                self._events.append(event)
                self._event_ids.add(event.event_id)
        logger.info("Loaded %d events from %s", len(self._events), path)
