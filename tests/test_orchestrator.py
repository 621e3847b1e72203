"""Tests for the settlement orchestrator — lifecycle, reveals, retries, timeouts."""

import pytest

from fakes import (
    ALICE,
    BOB,
    DST_TX_HASH,
    ORDER_HASH,
    OTHER_TOKEN,
    TOKEN,
    FakeVenue,
    RecordingSleep,
    make_quote,
)
from splitchain.config import SettlementConfig
from splitchain.errors import TransitionError, VenueProtocolError, VenueUnavailable
from splitchain.models.settlement import (
    AttemptState,
    OrderStatusKind,
    SettlementAttempt,
    SwapRequest,
)
from splitchain.settlement.orchestrator import SettlementOrchestrator
from splitchain.settlement.vault import SecretVault, hash_secret

PENDING = OrderStatusKind.PENDING
EXECUTED = OrderStatusKind.EXECUTED


def _request(amount: int = 100) -> SwapRequest:
    return SwapRequest(
        amount=amount,
        src_chain_id=1,
        dst_chain_id=137,
        src_token=TOKEN,
        dst_token=OTHER_TOKEN,
        sender=BOB,
        recipient=ALICE,
    )


def _orchestrator(venue, sleep=None, **kwargs) -> SettlementOrchestrator:
    return SettlementOrchestrator(venue, sleep=sleep or RecordingSleep(), **kwargs)


class TestHappyPath:
    def test_single_fill_completes(self) -> None:
        venue = FakeVenue(statuses=[PENDING, EXECUTED], ready=[[0]])
        sleep = RecordingSleep()
        attempt = _orchestrator(venue, sleep).execute(_request())

        assert attempt.state == AttemptState.COMPLETED
        assert attempt.order_hash == ORDER_HASH
        assert attempt.dst_tx_hash == DST_TX_HASH
        assert attempt.revealed == {0}
        assert attempt.polls == 2
        assert len(venue.submitted_secrets) == 1
        assert sleep.calls == [5.0]

    def test_states_visited_in_order(self) -> None:
        venue = FakeVenue(statuses=[EXECUTED])
        attempt = _orchestrator(venue).execute(_request())
        visited = [new for _, new, _ in attempt.history]
        assert visited == [
            AttemptState.ORDER_SUBMITTED,
            AttemptState.MONITORING,
            AttemptState.COMPLETED,
        ]
        assert attempt.finished_utc is not None

    def test_hash_lock_commits_to_revealed_secret(self) -> None:
        venue = FakeVenue(statuses=[PENDING, EXECUTED], ready=[[0]])
        attempt = _orchestrator(venue).execute(_request())
        _, secret = venue.submitted_secrets[0]
        assert attempt.order.hash_lock == hash_secret(secret)
        assert attempt.order.secrets_count == 1

    def test_order_terms(self) -> None:
        venue = FakeVenue(quote=make_quote(dst_amount=97), statuses=[EXECUTED])
        attempt = _orchestrator(venue).execute(_request(amount=100))
        src_chain_id, order, quote_id, hashes = venue.submitted_orders[0]
        assert src_chain_id == 1
        assert quote_id == "quote-1"
        assert order.making_amount == 100
        assert order.taking_amount == 97
        assert order.maker == BOB
        assert order.receiver == ALICE
        assert order.dst_chain_id == 137
        assert len(hashes) == 1
        assert attempt.order is order

    def test_each_secret_revealed_once(self) -> None:
        venue = FakeVenue(statuses=[PENDING, PENDING, PENDING, EXECUTED], ready=[[0]])
        attempt = _orchestrator(venue).execute(_request())
        assert attempt.state == AttemptState.COMPLETED
        assert len(venue.submitted_secrets) == 1

    def test_multiple_fills_reveal_progressively(self) -> None:
        venue = FakeVenue(
            quote=make_quote(secrets_count=3),
            statuses=[PENDING, PENDING, PENDING, EXECUTED],
            ready=[[0], [0, 1], [0, 1, 2]],
        )
        attempt = _orchestrator(venue).execute(_request())

        assert attempt.state == AttemptState.COMPLETED
        assert attempt.revealed == {0, 1, 2}
        hashes = venue.submitted_orders[0][3]
        revealed = [secret for _, secret in venue.submitted_secrets]
        assert [hash_secret(s) for s in revealed] == hashes
        assert attempt.order.secrets_count == 3

    def test_secrets_swept_after_execute(self) -> None:
        vaults = []

        def factory() -> SecretVault:
            vault = SecretVault()
            vaults.append(vault)
            return vault

        venue = FakeVenue(statuses=[EXECUTED])
        _orchestrator(venue, vault_factory=factory).execute(_request())
        assert len(vaults) == 1
        assert vaults[0].held == 0


class TestTerminalOutcomes:
    def test_timeout_after_max_polls(self) -> None:
        venue = FakeVenue(statuses=[PENDING])
        sleep = RecordingSleep()
        attempt = _orchestrator(venue, sleep).execute(_request())

        assert attempt.state == AttemptState.TIMED_OUT
        assert attempt.needs_reconciliation
        assert attempt.polls == 120
        assert venue.status_calls == 120
        assert sleep.calls == [5.0] * 119

    def test_custom_poll_limit(self) -> None:
        venue = FakeVenue(statuses=[PENDING])
        sleep = RecordingSleep()
        attempt = _orchestrator(venue, sleep, poll_interval=1.5, max_polls=3).execute(_request())
        assert attempt.state == AttemptState.TIMED_OUT
        assert sleep.calls == [1.5, 1.5]

    def test_expired(self) -> None:
        venue = FakeVenue(statuses=[OrderStatusKind.EXPIRED])
        sleep = RecordingSleep()
        attempt = _orchestrator(venue, sleep).execute(_request())
        assert attempt.state == AttemptState.EXPIRED
        assert attempt.polls == 1
        assert sleep.calls == []
        assert not attempt.needs_reconciliation

    def test_venue_cancelled(self) -> None:
        venue = FakeVenue(statuses=[PENDING, OrderStatusKind.CANCELLED])
        attempt = _orchestrator(venue).execute(_request())
        assert attempt.state == AttemptState.CANCELLED
        assert attempt.dst_tx_hash is None

    def test_terminal_attempt_cannot_move(self) -> None:
        venue = FakeVenue(statuses=[EXECUTED])
        attempt = _orchestrator(venue).execute(_request())
        with pytest.raises(TransitionError):
            attempt.transition_to(AttemptState.MONITORING)

    def test_started_attempt_rejected(self) -> None:
        venue = FakeVenue(statuses=[EXECUTED])
        orchestrator = _orchestrator(venue)
        attempt = orchestrator.execute(_request())
        with pytest.raises(ValueError, match="already started"):
            orchestrator.execute(attempt.request, attempt)


class TestCancellation:
    def test_cancel_before_start(self) -> None:
        venue = FakeVenue()
        attempt = SettlementAttempt(request=_request())
        attempt.cancel()
        _orchestrator(venue).execute(attempt.request, attempt)
        assert attempt.state == AttemptState.CANCELLED
        assert venue.quote_calls == 0
        assert venue.submit_calls == 0

    def test_cancel_during_monitoring_stops_reveals(self) -> None:
        attempt = SettlementAttempt(request=_request())

        def cancel_on_first_poll(call: int) -> None:
            if call == 0:
                attempt.cancel()

        venue = FakeVenue(
            statuses=[PENDING, PENDING, OrderStatusKind.CANCELLED],
            ready=[[0]],
            on_status=cancel_on_first_poll,
        )
        _orchestrator(venue).execute(attempt.request, attempt)

        assert attempt.state == AttemptState.CANCELLED
        assert venue.submitted_secrets == []
        assert venue.ready_calls == 0
        assert attempt.polls == 3

    def test_cancelled_attempt_can_still_complete(self) -> None:
        attempt = SettlementAttempt(request=_request())
        venue = FakeVenue(
            statuses=[PENDING, EXECUTED],
            on_status=lambda call: attempt.cancel(),
        )
        _orchestrator(venue).execute(attempt.request, attempt)
        assert attempt.state == AttemptState.COMPLETED


class _ProtocolErrorVenue(FakeVenue):
    def get_quote(self, request):
        self.quote_calls += 1
        raise VenueProtocolError("quote: missing 'presets'")


class TestRetries:
    def test_quote_retried_once(self) -> None:
        venue = FakeVenue(statuses=[EXECUTED], quote_errors=1)
        sleep = RecordingSleep()
        attempt = _orchestrator(venue, sleep).execute(_request())
        assert attempt.state == AttemptState.COMPLETED
        assert venue.quote_calls == 2
        assert sleep.calls == [2.0]

    def test_quote_fails_after_retry(self) -> None:
        venue = FakeVenue(quote_errors=2)
        sleep = RecordingSleep()
        attempt = _orchestrator(venue, sleep).execute(_request())
        assert attempt.state == AttemptState.FAILED
        assert "quote failed" in attempt.error
        assert venue.quote_calls == 2
        assert venue.submit_calls == 0
        assert sleep.calls == [2.0]

    def test_backoff_is_linear(self) -> None:
        venue = FakeVenue(statuses=[EXECUTED], quote_errors=3)
        sleep = RecordingSleep()
        attempt = _orchestrator(venue, sleep, retries=3, retry_backoff=1.0).execute(_request())
        assert attempt.state == AttemptState.COMPLETED
        assert sleep.calls == [1.0, 2.0, 3.0]

    def test_protocol_error_not_retried(self) -> None:
        venue = _ProtocolErrorVenue()
        sleep = RecordingSleep()
        attempt = _orchestrator(venue, sleep).execute(_request())
        assert attempt.state == AttemptState.FAILED
        assert venue.quote_calls == 1
        assert sleep.calls == []

    def test_submit_retried_once(self) -> None:
        venue = FakeVenue(statuses=[EXECUTED], submit_errors=1)
        attempt = _orchestrator(venue).execute(_request())
        assert attempt.state == AttemptState.COMPLETED
        assert venue.submit_calls == 2

    def test_submit_fails_after_retry(self) -> None:
        venue = FakeVenue(submit_errors=2)
        attempt = _orchestrator(venue).execute(_request())
        assert attempt.state == AttemptState.FAILED
        assert attempt.order_hash is None
        assert venue.status_calls == 0

    def test_secret_resubmitted_next_poll(self) -> None:
        venue = FakeVenue(statuses=[PENDING, PENDING, EXECUTED], ready=[[0]], secret_errors=1)
        attempt = _orchestrator(venue).execute(_request())
        assert attempt.state == AttemptState.COMPLETED
        assert len(venue.submitted_secrets) == 1
        assert attempt.revealed == {0}

    def test_status_poll_failure_tolerated(self) -> None:
        venue = FakeVenue(statuses=[VenueUnavailable("timeout"), EXECUTED])
        attempt = _orchestrator(venue).execute(_request())
        assert attempt.state == AttemptState.COMPLETED
        assert attempt.polls == 2

    def test_ready_query_failure_tolerated(self) -> None:
        venue = FakeVenue(
            statuses=[PENDING, PENDING, EXECUTED],
            ready=[VenueUnavailable("timeout"), [0]],
        )
        attempt = _orchestrator(venue).execute(_request())
        assert attempt.state == AttemptState.COMPLETED
        assert attempt.revealed == {0}

    def test_unknown_fill_index_skipped(self) -> None:
        venue = FakeVenue(statuses=[PENDING, EXECUTED], ready=[[5]])
        attempt = _orchestrator(venue).execute(_request())
        assert attempt.state == AttemptState.COMPLETED
        assert venue.submitted_secrets == []


class TestFromConfig:
    def test_uses_config_cadence(self) -> None:
        config = SettlementConfig(poll_interval=0.5, max_polls=2, retries=0)
        venue = FakeVenue(statuses=[PENDING])
        sleep = RecordingSleep()
        attempt = SettlementOrchestrator.from_config(venue, config, sleep=sleep).execute(_request())
        assert attempt.state == AttemptState.TIMED_OUT
        assert sleep.calls == [0.5]

    def test_rejects_zero_polls(self) -> None:
        with pytest.raises(ValueError):
            SettlementOrchestrator(FakeVenue(), max_polls=0)
