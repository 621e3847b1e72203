"""Balance engine — projects ledger events onto the current debt edges.

The engine is a deterministic fold over the event stream: replaying the
same ordered events into a fresh engine always yields the same edges,
byte for byte. Application is idempotent where replays can overlap:

- a repeated expense id is skipped,
- a repeated settlement receipt hash is skipped,
- a repeated intent hash is skipped.

Bad events never stop processing. They are logged, recorded on
``rejected`` and skipped. Over-settlements clamp the edge at zero and are
recorded on ``over_settlements`` for reconciliation.

Equal split:
    share = amount // divisor, remainder dropped (not redistributed).
    EXCLUDE_PAYER divides by the number of non-payer members.
    ALL_MEMBERS divides by the whole member count (legacy indexer).
"""

from __future__ import annotations

import enum
import logging
import threading
from typing import Dict, Iterable, List, Optional

from splitchain.errors import InvalidEvent, OverSettlement, UnknownEdge
from splitchain.models.events import (
    ExpenseAdded,
    ExpenseVoided,
    GroupCreated,
    SettlementFinalized,
    SettlementIntentCreated,
    parse_event,
)
from splitchain.models.ledger import (
    DebtEdge,
    EdgeKey,
    Expense,
    Group,
    Settlement,
    SettlementIntent,
    normalize_address,
    normalize_group_id,
)
from splitchain.persistence.event_log import EventRecord

logger = logging.getLogger(__name__)


class SplitPolicy(str, enum.Enum):
    """Divisor used for the equal split of an expense."""
    EXCLUDE_PAYER = "exclude_payer"
    ALL_MEMBERS = "all_members"


class BalanceEngine:
    """Maintains the DebtEdge set for every group and token.

    Usage:
        engine = BalanceEngine.replay(event_log)
        edge = engine.edge(EdgeKey.of("1", debtor, creditor, token))
        for edge in engine.edges(group_id="1", open_only=True):
            ...
    """

    def __init__(
        self,
        split_policy: SplitPolicy = SplitPolicy.EXCLUDE_PAYER,
        reverse_voided: bool = False,
    ) -> None:
        self._split_policy = split_policy
        self._reverse_voided = reverse_voided
        self._lock = threading.RLock()
        self._users: set[str] = set()
        self._groups: Dict[str, Group] = {}
        self._expenses: Dict[str, Expense] = {}
        self._edges: Dict[EdgeKey, DebtEdge] = {}
        self._intents: Dict[str, SettlementIntent] = {}
        self._settlements: Dict[str, Settlement] = {}
        self.rejected: List[InvalidEvent] = []
        self.over_settlements: List[OverSettlement] = []
        self.unknown_edges: List[UnknownEdge] = []

    @classmethod
    def replay(cls, records: Iterable[EventRecord], **options) -> BalanceEngine:
        """Build a fresh engine from an ordered event history."""
        engine = cls(**options)
        engine.apply_all(records)
        return engine

    @property
    def split_policy(self) -> SplitPolicy:
        return self._split_policy

    # ------------------------------------------------------------------
    # Event application
    # ------------------------------------------------------------------

    def apply_all(self, records: Iterable[EventRecord]) -> None:
        for record in records:
            self.apply(record)

    def apply(self, record: EventRecord) -> None:
        """Apply one event. Malformed events are logged and skipped."""
        with self._lock:
            try:
                event = parse_event(record)
                if isinstance(event, GroupCreated):
                    self._apply_group_created(record, event)
                elif isinstance(event, ExpenseAdded):
                    self._apply_expense_added(record, event)
                elif isinstance(event, ExpenseVoided):
                    self._apply_expense_voided(record, event)
                elif isinstance(event, SettlementIntentCreated):
                    self._apply_intent_created(record, event)
                elif isinstance(event, SettlementFinalized):
                    self._apply_settlement_finalized(record, event)
            except InvalidEvent as exc:
                logger.warning("Skipping invalid event %s", exc)
                self.rejected.append(exc)

    def _apply_group_created(self, record: EventRecord, event: GroupCreated) -> None:
        if not event.members:
            raise InvalidEvent(record.event_id, f"group {event.group_id} has no members")
        if event.group_id in self._groups:
            raise InvalidEvent(record.event_id, f"group {event.group_id} already exists")
        self._users.update(event.members)
        self._groups[event.group_id] = Group(
            group_id=event.group_id,
            name=event.name,
            members=event.members,
            created_utc=record.timestamp,
        )

    def _apply_expense_added(self, record: EventRecord, event: ExpenseAdded) -> None:
        group = self._groups.get(event.group_id)
        if group is None:
            raise InvalidEvent(record.event_id, f"unknown group {event.group_id}")
        if event.amount <= 0:
            raise InvalidEvent(record.event_id, "expense amount must be positive")
        if event.expense_id in self._expenses:
            logger.debug("Expense %s already applied", event.expense_id)
            return

        self._users.add(event.payer)
        expense = Expense(
            expense_id=event.expense_id,
            group_id=event.group_id,
            payer=event.payer,
            token=event.token,
            amount=event.amount,
            cid=event.cid,
            memo=event.memo,
            created_utc=record.timestamp,
        )
        self._expenses[event.expense_id] = expense

        if group.member_count <= 1:
            return
        debtors = [m for m in group.members if m != event.payer]
        if self._split_policy == SplitPolicy.ALL_MEMBERS:
            divisor = group.member_count
        else:
            divisor = len(debtors)
        share = event.amount // divisor
        if share == 0:
            return
        for debtor in debtors:
            key = EdgeKey(event.group_id, debtor, event.payer, event.token)
            self._get_or_create_edge(key).increase(share)
            expense.shares[debtor] = share

    def _apply_expense_voided(self, record: EventRecord, event: ExpenseVoided) -> None:
        expense = self._expenses.get(event.expense_id)
        if expense is None:
            raise InvalidEvent(record.event_id, f"unknown expense {event.expense_id}")
        if expense.voided:
            return
        expense.voided = True
        if not self._reverse_voided:
            return
        for debtor, share in expense.shares.items():
            key = EdgeKey(expense.group_id, debtor, expense.payer, expense.token)
            edge = self._edges.get(key)
            if edge is None:
                continue
            unapplied = edge.decrease(share)
            if unapplied:
                logger.warning(
                    "Void of %s could only reverse %d of %d on %s",
                    expense.expense_id, share - unapplied, share, key.edge_id,
                )

    def _apply_intent_created(
        self, record: EventRecord, event: SettlementIntentCreated,
    ) -> None:
        if event.intent_hash in self._intents:
            return
        self._users.update((event.debtor, event.creditor))
        self._intents[event.intent_hash] = SettlementIntent(
            intent_hash=event.intent_hash,
            group_id=event.group_id,
            debtor=event.debtor,
            creditor=event.creditor,
            route_id=event.route_id,
            created_utc=record.timestamp,
        )

    def _apply_settlement_finalized(
        self, record: EventRecord, event: SettlementFinalized,
    ) -> None:
        if event.amount <= 0:
            raise InvalidEvent(record.event_id, "settlement amount must be positive")
        if event.debtor == event.creditor:
            raise InvalidEvent(record.event_id, "settlement debtor equals creditor")
        if event.receipt_hash in self._settlements:
            logger.debug("Settlement %s already applied", event.receipt_hash)
            return

        self._users.update((event.debtor, event.creditor))
        settlement = Settlement(
            receipt_hash=event.receipt_hash,
            group_id=event.group_id,
            debtor=event.debtor,
            creditor=event.creditor,
            token=event.token,
            amount=event.amount,
            dst_chain_id=event.dst_chain_id,
            dst_tx_hash=event.dst_tx_hash,
            finalized_utc=record.timestamp,
        )
        self._settlements[event.receipt_hash] = settlement

        key = settlement.edge_key
        edge = self._edges.get(key)
        if edge is None:
            missing = UnknownEdge(key.edge_id)
            logger.warning("%s (receipt %s)", missing, event.receipt_hash)
            self.unknown_edges.append(missing)
            return

        outstanding = edge.amount
        if edge.decrease(event.amount):
            flag = OverSettlement(key.edge_id, event.receipt_hash, outstanding, event.amount)
            logger.warning("%s", flag)
            self.over_settlements.append(flag)

    def _get_or_create_edge(self, key: EdgeKey) -> DebtEdge:
        edge = self._edges.get(key)
        if edge is None:
            edge = DebtEdge(key=key)
            self._edges[key] = edge
        return edge

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def edge(self, key: EdgeKey) -> Optional[DebtEdge]:
        return self._edges.get(key)

    def edges(
        self,
        group_id: Optional[str] = None,
        token: Optional[str] = None,
        open_only: bool = False,
    ) -> List[DebtEdge]:
        """Edges in creation order, optionally filtered."""
        if group_id is not None:
            group_id = normalize_group_id(group_id)
        if token is not None:
            token = normalize_address(token)
        with self._lock:
            return [
                e for e in self._edges.values()
                if (group_id is None or e.key.group_id == group_id)
                and (token is None or e.key.token == token)
                and (not open_only or e.open)
            ]

    def open_edges_for(self, group_id: str, debtor: str) -> List[DebtEdge]:
        debtor = normalize_address(debtor)
        return [e for e in self.edges(group_id, open_only=True) if e.key.debtor == debtor]

    def net_balances(self, group_id: str, token: str) -> Dict[str, int]:
        """Net position per member: positive = owed to them, negative = owes."""
        balances: Dict[str, int] = {}
        group = self._groups.get(normalize_group_id(group_id))
        if group is not None:
            balances = {member: 0 for member in group.members}
        for edge in self.edges(group_id, token):
            balances[edge.key.creditor] = balances.get(edge.key.creditor, 0) + edge.amount
            balances[edge.key.debtor] = balances.get(edge.key.debtor, 0) - edge.amount
        return balances

    def snapshot(self) -> tuple:
        """Sorted (edge_id, amount) pairs. Equal snapshots mean equal state."""
        with self._lock:
            return tuple(sorted((k.edge_id, e.amount) for k, e in self._edges.items()))

    def group(self, group_id: str) -> Optional[Group]:
        return self._groups.get(normalize_group_id(group_id))

    def expense(self, expense_id: str) -> Optional[Expense]:
        return self._expenses.get(str(expense_id))

    def intent(self, intent_hash: str) -> Optional[SettlementIntent]:
        return self._intents.get(intent_hash.lower())

    def settlement(self, receipt_hash: str) -> Optional[Settlement]:
        return self._settlements.get(receipt_hash.lower())

    @property
    def users(self) -> frozenset:
        return frozenset(self._users)
