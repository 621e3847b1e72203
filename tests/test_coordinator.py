"""Tests for the settlement coordinator — edge to finalized receipt."""

import pytest

from fakes import (
    ALICE,
    BOB,
    CAROL,
    DST_TX_HASH,
    OTHER_TOKEN,
    TOKEN,
    FakeVenue,
    RecordingSleep,
    expense_added,
    group_created,
    now,
)
from splitchain.config import ZERO_ADDRESS
from splitchain.crypto.typed_data import ZERO_BYTES32, TypedDataDomain
from splitchain.errors import SettlementInProgress, UnknownEdge
from splitchain.ledger.engine import BalanceEngine
from splitchain.models.ledger import EdgeKey
from splitchain.models.settlement import AttemptState, OrderStatus, OrderStatusKind
from splitchain.persistence.event_log import EventKind, EventLog
from splitchain.settlement.coordinator import SettlementCoordinator
from splitchain.settlement.orchestrator import SettlementOrchestrator
from splitchain.settlement.routes import RouteBook

PENDING = OrderStatusKind.PENDING
EXECUTED = OrderStatusKind.EXECUTED

POLYGON_TOKEN = "0x" + "33" * 20


def _routes() -> RouteBook:
    book = RouteBook(default_chain_id=1)
    book.set_party_chain(ALICE, 137)
    book.set_token_address(TOKEN, 1, TOKEN)
    book.set_token_address(TOKEN, 137, POLYGON_TOKEN)
    return book


def _setup(venue, *records):
    """Group 1 of ALICE, BOB, CAROL where ALICE paid 300: BOB and CAROL owe 150."""
    log = EventLog()
    log.extend([
        group_created("1", [ALICE, BOB, CAROL]),
        expense_added("1", "e1", ALICE, 300),
        *records,
    ])
    engine = BalanceEngine.replay(log)
    coordinator = SettlementCoordinator(
        engine,
        log,
        SettlementOrchestrator(venue, sleep=RecordingSleep()),
        _routes(),
        TypedDataDomain.ledger(1, ZERO_ADDRESS),
    )
    return log, engine, coordinator


BOB_TO_ALICE = EdgeKey.of("1", BOB, ALICE, TOKEN)


class TestSettle:
    def test_success_closes_edge(self) -> None:
        venue = FakeVenue(statuses=[PENDING, EXECUTED], ready=[[0]])
        log, engine, coordinator = _setup(venue)

        outcome = coordinator.settle(BOB_TO_ALICE, now=now())

        assert outcome.success
        assert outcome.state == AttemptState.COMPLETED
        assert outcome.amount == 150
        assert engine.edge(BOB_TO_ALICE).amount == 0
        assert not engine.edge(BOB_TO_ALICE).open
        assert engine.edge(EdgeKey.of("1", CAROL, ALICE, TOKEN)).amount == 150
        assert outcome.receipt_hash.startswith("0x")
        assert engine.settlement(outcome.receipt_hash).dst_tx_hash == DST_TX_HASH

    def test_records_intent_and_finalized(self) -> None:
        venue = FakeVenue(statuses=[EXECUTED])
        log, engine, coordinator = _setup(venue)

        outcome = coordinator.settle(BOB_TO_ALICE, now=now())

        intents = log.events(EventKind.SETTLEMENT_INTENT_CREATED)
        finals = log.events(EventKind.SETTLEMENT_FINALIZED)
        assert len(intents) == 1
        assert len(finals) == 1
        assert intents[0].payload["intentHash"] == outcome.intent_hash
        assert intents[0].payload["routeId"] == f"fusion-plus:1->137/{outcome.attempt.attempt_id}"
        assert finals[0].payload["intentHash"] == outcome.intent_hash
        assert finals[0].payload["receiptHash"] == outcome.receipt_hash
        assert finals[0].payload["amount"] == 150
        assert engine.intent(outcome.intent_hash).debtor == BOB

    def test_route_resolved_per_party(self) -> None:
        venue = FakeVenue(statuses=[EXECUTED])
        _, _, coordinator = _setup(venue)
        outcome = coordinator.settle(BOB_TO_ALICE, now=now())
        request = outcome.attempt.request
        assert request.src_chain_id == 1
        assert request.dst_chain_id == 137
        assert request.src_token == TOKEN
        assert request.dst_token == POLYGON_TOKEN
        assert request.sender == BOB
        assert request.recipient == ALICE

    def test_replay_matches_live_state(self) -> None:
        venue = FakeVenue(statuses=[EXECUTED])
        log, engine, coordinator = _setup(venue)
        coordinator.settle(BOB_TO_ALICE, now=now())
        assert BalanceEngine.replay(log).snapshot() == engine.snapshot()

    def test_timeout_leaves_ledger_untouched(self) -> None:
        venue = FakeVenue(statuses=[PENDING])
        log, engine, coordinator = _setup(venue)
        before = engine.snapshot()

        outcome = coordinator.settle(BOB_TO_ALICE, now=now())

        assert not outcome.success
        assert outcome.state == AttemptState.TIMED_OUT
        assert outcome.needs_reconciliation
        assert outcome.receipt_hash is None
        assert engine.snapshot() == before
        assert log.events(EventKind.SETTLEMENT_FINALIZED) == []
        assert len(log.events(EventKind.SETTLEMENT_INTENT_CREATED)) == 1

    def test_failure_reports_error(self) -> None:
        venue = FakeVenue(quote_errors=2)
        _, engine, coordinator = _setup(venue)
        outcome = coordinator.settle(BOB_TO_ALICE, now=now())
        assert not outcome.success
        assert outcome.state == AttemptState.FAILED
        assert "quote failed" in outcome.errors[0]
        assert engine.edge(BOB_TO_ALICE).amount == 150

    def test_missing_dst_tx_recorded_as_zero(self) -> None:
        class NoTxVenue(FakeVenue):
            def get_order_status(self, order_hash):
                self.status_calls += 1
                return OrderStatus(order_hash=order_hash, status=EXECUTED)

        log, _, coordinator = _setup(NoTxVenue())
        coordinator.settle(BOB_TO_ALICE, now=now())
        final = log.events(EventKind.SETTLEMENT_FINALIZED)[0]
        assert final.payload["dstTxHash"] == ZERO_BYTES32

    def test_amount_read_once(self) -> None:
        holder = {}

        def add_expense_mid_flight(call: int) -> None:
            if call == 0:
                record = expense_added("1", "e2", ALICE, 600)
                holder["log"].append(record)
                holder["engine"].apply(record)

        venue = FakeVenue(statuses=[PENDING, EXECUTED], on_status=add_expense_mid_flight)
        log, engine, coordinator = _setup(venue)
        holder.update(log=log, engine=engine)

        outcome = coordinator.settle(BOB_TO_ALICE, now=now())

        assert outcome.amount == 150
        assert engine.edge(BOB_TO_ALICE).amount == 300

    def test_repeat_settlement_gets_own_receipt(self) -> None:
        venue = FakeVenue(statuses=[EXECUTED])
        log, engine, coordinator = _setup(venue)
        first = coordinator.settle(BOB_TO_ALICE, now=now())

        record = expense_added("1", "e2", ALICE, 300)
        log.append(record)
        engine.apply(record)
        second = coordinator.settle(BOB_TO_ALICE, now=now())

        assert second.success
        assert second.intent_hash != first.intent_hash
        assert second.receipt_hash != first.receipt_hash
        assert engine.settlement(first.receipt_hash) is not None
        assert engine.settlement(second.receipt_hash) is not None
        assert engine.edge(BOB_TO_ALICE).amount == 0
        assert len(log.events(EventKind.SETTLEMENT_FINALIZED)) == 2


class TestGuards:
    def test_concurrent_attempt_refused(self) -> None:
        raised = []
        holder = {}

        def settle_again(call: int) -> None:
            if call == 0:
                try:
                    holder["coordinator"].settle(BOB_TO_ALICE, now=now())
                except SettlementInProgress as exc:
                    raised.append(exc)

        venue = FakeVenue(statuses=[PENDING, EXECUTED], on_status=settle_again)
        _, _, coordinator = _setup(venue)
        holder["coordinator"] = coordinator

        outcome = coordinator.settle(BOB_TO_ALICE, now=now())

        assert outcome.success
        assert len(raised) == 1
        assert raised[0].edge_id == BOB_TO_ALICE.edge_id

    def test_slot_released_after_attempt(self) -> None:
        venue = FakeVenue(statuses=[PENDING])
        _, _, coordinator = _setup(venue)
        coordinator.settle(BOB_TO_ALICE, now=now())
        assert coordinator.active_attempt(BOB_TO_ALICE) is None

    def test_unknown_edge(self) -> None:
        _, _, coordinator = _setup(FakeVenue())
        with pytest.raises(UnknownEdge):
            coordinator.settle(EdgeKey.of("1", ALICE, BOB, TOKEN), now=now())

    def test_closed_edge(self) -> None:
        venue = FakeVenue(statuses=[EXECUTED])
        _, _, coordinator = _setup(venue)
        coordinator.settle(BOB_TO_ALICE, now=now())
        with pytest.raises(ValueError, match="Nothing owed"):
            coordinator.settle(BOB_TO_ALICE, now=now())

    def test_unroutable_token(self) -> None:
        venue = FakeVenue()
        _, _, coordinator = _setup(venue, expense_added("1", "e2", ALICE, 300, token=OTHER_TOKEN))
        with pytest.raises(ValueError, match="no mapping"):
            coordinator.settle(EdgeKey.of("1", BOB, ALICE, OTHER_TOKEN), now=now())
        assert venue.quote_calls == 0


class TestCancel:
    def test_cancel_without_attempt(self) -> None:
        _, _, coordinator = _setup(FakeVenue())
        assert coordinator.cancel(BOB_TO_ALICE) is False

    def test_cancel_running_attempt(self) -> None:
        holder = {}

        def cancel_on_first_poll(call: int) -> None:
            if call == 0:
                holder["cancelled"] = holder["coordinator"].cancel(BOB_TO_ALICE)

        venue = FakeVenue(
            statuses=[PENDING, OrderStatusKind.CANCELLED],
            ready=[[0]],
            on_status=cancel_on_first_poll,
        )
        _, engine, coordinator = _setup(venue)
        holder["coordinator"] = coordinator

        outcome = coordinator.settle(BOB_TO_ALICE, now=now())

        assert holder["cancelled"] is True
        assert outcome.state == AttemptState.CANCELLED
        assert venue.submitted_secrets == []
        assert engine.edge(BOB_TO_ALICE).amount == 150


class TestSelectEdge:
    def test_largest_edge(self) -> None:
        venue = FakeVenue()
        _, _, coordinator = _setup(
            venue,
            expense_added("1", "e2", CAROL, 900),
        )
        # BOB owes ALICE 150 and CAROL 450.
        edge = coordinator.select_edge("1", BOB)
        assert edge.key.creditor == CAROL
        assert edge.amount == 450

    def test_token_filter(self) -> None:
        venue = FakeVenue()
        _, _, coordinator = _setup(
            venue,
            expense_added("1", "e2", CAROL, 900, token=OTHER_TOKEN),
        )
        edge = coordinator.select_edge("1", BOB, token=TOKEN)
        assert edge.key == BOB_TO_ALICE

    def test_nothing_owed(self) -> None:
        _, _, coordinator = _setup(FakeVenue())
        assert coordinator.select_edge("1", ALICE) is None
