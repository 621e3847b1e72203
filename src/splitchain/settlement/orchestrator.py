"""Settlement orchestrator — drives one attempt through the swap lifecycle.

    QUOTING          ask the venue for a quote, take its recommended preset
    ORDER_SUBMITTED  generate secrets, lock the order, submit it
    MONITORING       poll status; reveal secrets for fills that are ready
    terminal         COMPLETED | EXPIRED | CANCELLED | TIMED_OUT | FAILED

The only suspension point is the wait between polls, done through the
injected ``sleep`` so tests run on a fake clock. Timeouts are cooperative:
after ``max_polls`` polls without a terminal venue status the attempt ends
TIMED_OUT, which the caller must reconcile by hand.

Cancellation never touches the chain. A cancelled attempt stops revealing
secrets, so the venue lets the order lapse, and keeps observing until the
venue itself reports a terminal status.
"""

from __future__ import annotations

import logging
import secrets
import time
from typing import Callable, Optional, TypeVar

from splitchain.config import SettlementConfig
from splitchain.errors import SecretNotFound, VenueProtocolError, VenueUnavailable
from splitchain.models.settlement import (
    AttemptState,
    CrossChainOrder,
    OrderStatus,
    OrderStatusKind,
    SettlementAttempt,
    SwapRequest,
)
from splitchain.settlement.vault import SecretVault
from splitchain.settlement.venue import Venue

logger = logging.getLogger(__name__)

T = TypeVar("T")

_TERMINAL_FOR_STATUS = {
    OrderStatusKind.EXECUTED: AttemptState.COMPLETED,
    OrderStatusKind.EXPIRED: AttemptState.EXPIRED,
    OrderStatusKind.CANCELLED: AttemptState.CANCELLED,
}


class SettlementOrchestrator:
    """Runs settlement attempts against a venue.

    Usage:
        orchestrator = SettlementOrchestrator(venue)
        attempt = orchestrator.execute(request)
        if attempt.state == AttemptState.COMPLETED:
            ...
    """

    def __init__(
        self,
        venue: Venue,
        poll_interval: float = 5.0,
        max_polls: int = 120,
        retries: int = 1,
        retry_backoff: float = 2.0,
        sleep: Callable[[float], None] = time.sleep,
        vault_factory: Callable[[], SecretVault] = SecretVault,
    ) -> None:
        if max_polls < 1:
            raise ValueError("max_polls must be at least 1")
        self._venue = venue
        self._poll_interval = poll_interval
        self._max_polls = max_polls
        self._retries = retries
        self._retry_backoff = retry_backoff
        self._sleep = sleep
        self._vault_factory = vault_factory

    @classmethod
    def from_config(
        cls,
        venue: Venue,
        config: SettlementConfig,
        sleep: Callable[[float], None] = time.sleep,
    ) -> SettlementOrchestrator:
        return cls(
            venue,
            poll_interval=config.poll_interval,
            max_polls=config.max_polls,
            retries=config.retries,
            retry_backoff=config.retry_backoff,
            sleep=sleep,
        )

    def execute(
        self,
        request: SwapRequest,
        attempt: Optional[SettlementAttempt] = None,
    ) -> SettlementAttempt:
        """Run an attempt to a terminal state and return it.

        Pass ``attempt`` to keep a handle for cancellation from another
        thread. Secrets are swept when this returns, whatever the outcome.
        """
        if attempt is None:
            attempt = SettlementAttempt(request=request)
        if attempt.state != AttemptState.QUOTING:
            raise ValueError(f"Attempt {attempt.attempt_id} already started")

        with self._vault_factory() as vault:
            self._quote(attempt)
            if not attempt.is_terminal:
                self._submit(attempt, vault)
            if not attempt.is_terminal:
                self._monitor(attempt, vault)

        logger.info(
            "Attempt %s finished %s after %d polls",
            attempt.attempt_id, attempt.state.value, attempt.polls,
        )
        return attempt

    # ------------------------------------------------------------------

    def _quote(self, attempt: SettlementAttempt) -> None:
        if attempt.cancel_requested:
            attempt.transition_to(AttemptState.CANCELLED, "cancelled before quote")
            return
        try:
            attempt.quote = self._with_retries(
                "quote", lambda: self._venue.get_quote(attempt.request),
            )
        except (VenueUnavailable, VenueProtocolError) as exc:
            self._fail(attempt, f"quote failed: {exc}")
            return
        if attempt.cancel_requested:
            attempt.transition_to(AttemptState.CANCELLED, "cancelled before order")

    def _submit(self, attempt: SettlementAttempt, vault: SecretVault) -> None:
        request = attempt.request
        quote = attempt.quote
        preset = quote.preset
        attempt.transition_to(AttemptState.ORDER_SUBMITTED, f"preset {preset.name}")

        hash_lock = vault.commitment(vault.generate(preset.secrets_count))
        secret_hashes = vault.secret_hashes()
        attempt.order = CrossChainOrder(
            salt=secrets.randbits(96),
            maker=request.sender,
            receiver=request.recipient,
            src_chain_id=request.src_chain_id,
            dst_chain_id=request.dst_chain_id,
            maker_asset=request.src_token,
            taker_asset=request.dst_token,
            making_amount=request.amount,
            taking_amount=quote.dst_token_amount,
            hash_lock=hash_lock.value,
            secrets_count=hash_lock.fill_count,
            preset=preset.name,
        )
        try:
            attempt.order_hash = self._with_retries(
                "submit",
                lambda: self._venue.submit_order(
                    request.src_chain_id, attempt.order, quote.quote_id, secret_hashes,
                ),
            )
        except (VenueUnavailable, VenueProtocolError) as exc:
            self._fail(attempt, f"order submission failed: {exc}")
            return
        logger.info("Attempt %s submitted order %s", attempt.attempt_id, attempt.order_hash)

    def _monitor(self, attempt: SettlementAttempt, vault: SecretVault) -> None:
        attempt.transition_to(AttemptState.MONITORING)
        for poll in range(1, self._max_polls + 1):
            attempt.polls = poll
            status = self._poll_status(attempt)
            if status is not None and status.status.terminal:
                if status.status == OrderStatusKind.EXECUTED:
                    attempt.dst_tx_hash = status.dst_tx_hash
                attempt.transition_to(
                    _TERMINAL_FOR_STATUS[status.status], f"venue reported {status.status.value}",
                )
                return
            if not attempt.cancel_requested:
                self._reveal_ready(attempt, vault)
            if poll < self._max_polls:
                self._sleep(self._poll_interval)

        logger.warning(
            "Attempt %s: order %s not final after %d polls; needs manual reconciliation",
            attempt.attempt_id, attempt.order_hash, self._max_polls,
        )
        attempt.transition_to(AttemptState.TIMED_OUT, f"{self._max_polls} polls")

    def _poll_status(self, attempt: SettlementAttempt) -> Optional[OrderStatus]:
        try:
            status = self._venue.get_order_status(attempt.order_hash)
        except (VenueUnavailable, VenueProtocolError) as exc:
            logger.warning(
                "Attempt %s: status poll %d failed: %s",
                attempt.attempt_id, attempt.polls, exc,
            )
            return None
        logger.debug(
            "Attempt %s: order %s is %s (poll %d/%d)",
            attempt.attempt_id, attempt.order_hash, status.status.value,
            attempt.polls, self._max_polls,
        )
        return status

    def _reveal_ready(self, attempt: SettlementAttempt, vault: SecretVault) -> None:
        try:
            ready = self._venue.get_ready_to_accept_secret_fills(attempt.order_hash)
        except (VenueUnavailable, VenueProtocolError) as exc:
            logger.warning("Attempt %s: ready-fill query failed: %s", attempt.attempt_id, exc)
            return

        for idx in ready:
            if idx in attempt.revealed:
                continue
            try:
                secret = vault.reveal_for(idx)
            except SecretNotFound:
                logger.error(
                    "Attempt %s: venue asked for fill %d, which has no secret",
                    attempt.attempt_id, idx,
                )
                continue
            try:
                self._venue.submit_secret(attempt.order_hash, secret)
            except (VenueUnavailable, VenueProtocolError) as exc:
                logger.warning(
                    "Attempt %s: secret for fill %d not accepted, retrying next poll: %s",
                    attempt.attempt_id, idx, exc,
                )
                continue
            attempt.revealed.add(idx)
            logger.info("Attempt %s: revealed secret for fill %d", attempt.attempt_id, idx)

    def _with_retries(self, label: str, call: Callable[[], T]) -> T:
        """Retry VenueUnavailable with linear backoff. Other errors propagate."""
        retried = 0
        while True:
            try:
                return call()
            except VenueUnavailable as exc:
                if retried >= self._retries:
                    raise
                retried += 1
                delay = self._retry_backoff * retried
                logger.warning("%s failed (%s); retrying in %.1fs", label, exc, delay)
                self._sleep(delay)

    @staticmethod
    def _fail(attempt: SettlementAttempt, reason: str) -> None:
        logger.error("Attempt %s: %s", attempt.attempt_id, reason)
        attempt.error = reason
        attempt.transition_to(AttemptState.FAILED, reason)
