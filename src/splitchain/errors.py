"""Error taxonomy for the ledger and the settlement protocol.

Ledger-side conditions (InvalidEvent, UnknownEdge, OverSettlement) are
recoverable: the balance engine records and logs them, then keeps going.
Venue-side conditions are surfaced to the orchestrator, which decides
whether they are retried or end the attempt.
"""

from __future__ import annotations


class SplitchainError(Exception):
    """Base class for all splitchain errors."""


class InvalidEvent(SplitchainError):
    """A ledger event is malformed or references state that does not exist."""

    def __init__(self, event_id: str, reason: str) -> None:
        super().__init__(f"{event_id}: {reason}")
        self.event_id = event_id
        self.reason = reason


class UnknownEdge(SplitchainError):
    """A settlement references a debt edge that was never created."""

    def __init__(self, edge_id: str) -> None:
        super().__init__(f"Unknown debt edge: {edge_id}")
        self.edge_id = edge_id


class OverSettlement(SplitchainError):
    """A settlement exceeded the outstanding amount of its edge.

    Never raised out of the engine. Instances are kept on
    ``BalanceEngine.over_settlements`` for reconciliation.
    """

    def __init__(
        self,
        edge_id: str,
        receipt_hash: str,
        outstanding: int,
        settled: int,
    ) -> None:
        super().__init__(
            f"Settlement {receipt_hash} of {settled} exceeds outstanding "
            f"{outstanding} on {edge_id}; clamped to 0"
        )
        self.edge_id = edge_id
        self.receipt_hash = receipt_hash
        self.outstanding = outstanding
        self.settled = settled

    @property
    def excess(self) -> int:
        return self.settled - self.outstanding


class VenueUnavailable(SplitchainError):
    """The settlement venue could not be reached or returned an HTTP error."""


class VenueProtocolError(SplitchainError):
    """The venue answered, but the response does not have the expected shape."""


class SecretNotFound(SplitchainError, KeyError):
    """No secret is held for the requested fill index."""

    def __init__(self, index: int) -> None:
        super().__init__(f"No secret held for fill index {index}")
        self.index = index

    def __str__(self) -> str:
        return self.args[0]


class SettlementInProgress(SplitchainError):
    """A settlement attempt is already running for this debt edge."""

    def __init__(self, edge_id: str) -> None:
        super().__init__(f"Settlement already in progress for {edge_id}")
        self.edge_id = edge_id


class TransitionError(SplitchainError):
    """Raised when a settlement attempt state transition is not allowed."""
