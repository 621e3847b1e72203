"""Settlement coordinator — turns an open debt edge into a finalized settlement.

For one edge the coordinator:
1. refuses to start if another attempt on the same edge is still running,
2. reads the outstanding amount once (it is not re-read mid-flight),
3. resolves source and destination chain/token from the route book,
4. records a SettlementIntentCreated event,
5. drives the orchestrator to a terminal state,
6. on COMPLETED only, records SettlementFinalized and applies it.

Any other terminal state leaves the ledger exactly as it was.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional

from splitchain.crypto.typed_data import (
    ZERO_BYTES32,
    TypedDataDomain,
    settle_intent_hash,
    settlement_receipt_hash,
)
from splitchain.errors import SettlementInProgress, UnknownEdge
from splitchain.ledger.engine import BalanceEngine
from splitchain.models.events import SettlementFinalized, SettlementIntentCreated
from splitchain.models.ledger import DebtEdge, EdgeKey, normalize_address
from splitchain.models.settlement import AttemptState, SettlementAttempt, SwapRequest
from splitchain.persistence.event_log import EventLog
from splitchain.settlement.orchestrator import SettlementOrchestrator
from splitchain.settlement.routes import RouteBook, SwapRoute

logger = logging.getLogger(__name__)


@dataclass
class SettlementOutcome:
    """Result of one settlement attempt on one edge."""
    success: bool
    edge_id: str
    amount: int
    attempt: SettlementAttempt
    intent_hash: str
    receipt_hash: Optional[str] = None
    errors: List[str] = field(default_factory=list)

    @property
    def state(self) -> AttemptState:
        return self.attempt.state

    @property
    def needs_reconciliation(self) -> bool:
        return self.attempt.needs_reconciliation


class SettlementCoordinator:
    """Selects, executes, and records settlements of debt edges.

    Usage:
        coordinator = SettlementCoordinator(engine, event_log, orchestrator, routes, domain)
        edge = coordinator.select_edge("1", debtor)
        outcome = coordinator.settle(edge.key)
    """

    def __init__(
        self,
        engine: BalanceEngine,
        event_log: EventLog,
        orchestrator: SettlementOrchestrator,
        routes: RouteBook,
        domain: TypedDataDomain,
        intent_ttl: int = 3600,
    ) -> None:
        self._engine = engine
        self._event_log = event_log
        self._orchestrator = orchestrator
        self._routes = routes
        self._domain = domain
        self._intent_ttl = intent_ttl
        self._lock = threading.Lock()
        self._active: Dict[EdgeKey, SettlementAttempt] = {}

    def select_edge(
        self,
        group_id: str,
        debtor: str,
        token: Optional[str] = None,
    ) -> Optional[DebtEdge]:
        """The debtor's largest open edge in the group (ties by edge id)."""
        candidates = self._engine.open_edges_for(group_id, debtor)
        if token is not None:
            token = normalize_address(token)
            candidates = [e for e in candidates if e.key.token == token]
        if not candidates:
            return None
        return min(candidates, key=lambda e: (-e.amount, e.edge_id))

    def active_attempt(self, key: EdgeKey) -> Optional[SettlementAttempt]:
        with self._lock:
            return self._active.get(key)

    def cancel(self, key: EdgeKey) -> bool:
        """Ask the running attempt on ``key`` to stop. False if none is running."""
        attempt = self.active_attempt(key)
        if attempt is None:
            return False
        attempt.cancel()
        logger.info("Cancellation requested for %s", key.edge_id)
        return True

    def settle(self, key: EdgeKey, now: Optional[datetime] = None) -> SettlementOutcome:
        """Settle the full outstanding amount of one edge.

        Raises SettlementInProgress if the edge already has a running
        attempt, UnknownEdge if it does not exist, and ValueError if it is
        closed or has no route.
        """
        if now is None:
            now = datetime.now(timezone.utc)

        with self._lock:
            if key in self._active:
                raise SettlementInProgress(key.edge_id)
            edge = self._engine.edge(key)
            if edge is None:
                raise UnknownEdge(key.edge_id)
            if not edge.open:
                raise ValueError(f"Nothing owed on {key.edge_id}")
            amount = edge.amount
            route = self._routes.resolve(key.debtor, key.creditor, key.token)
            attempt = SettlementAttempt(request=SwapRequest(
                amount=amount,
                src_chain_id=route.src_chain_id,
                dst_chain_id=route.dst_chain_id,
                src_token=route.src_token,
                dst_token=route.dst_token,
                sender=key.debtor,
                recipient=key.creditor,
            ))
            self._active[key] = attempt

        try:
            intent_hash = self._record_intent(key, route, attempt, now)
            logger.info(
                "Settling %s: %d via %s (intent %s)",
                key.edge_id, amount, route.route_id, intent_hash,
            )
            self._orchestrator.execute(attempt.request, attempt)

            if attempt.state != AttemptState.COMPLETED:
                reason = attempt.error or f"attempt ended {attempt.state.value}"
                logger.warning("Settlement of %s not completed: %s", key.edge_id, reason)
                return SettlementOutcome(
                    success=False,
                    edge_id=key.edge_id,
                    amount=amount,
                    attempt=attempt,
                    intent_hash=intent_hash,
                    errors=[reason],
                )

            receipt_hash = self._record_finalized(key, route, amount, attempt, intent_hash)
            return SettlementOutcome(
                success=True,
                edge_id=key.edge_id,
                amount=amount,
                attempt=attempt,
                intent_hash=intent_hash,
                receipt_hash=receipt_hash,
            )
        finally:
            with self._lock:
                self._active.pop(key, None)

    def _record_intent(
        self, key: EdgeKey, route: SwapRoute, attempt: SettlementAttempt, now: datetime,
    ) -> str:
        # Scoped to the attempt so repeat settlements of one edge never share an intent.
        route_id = f"{route.route_id}/{attempt.attempt_id}"
        intent_hash = settle_intent_hash(
            self._domain,
            group_id=key.group_id,
            debtor=key.debtor,
            creditor=key.creditor,
            src_chain_id=route.src_chain_id,
            dst_chain_id=route.dst_chain_id,
            token_in=route.src_token,
            token_out=route.dst_token,
            amount_out_min=0,
            deadline=int(now.timestamp()) + self._intent_ttl,
            route_id=route_id,
            edge_ids=[key.edge_id],
        )
        event = SettlementIntentCreated(
            group_id=key.group_id,
            intent_hash=intent_hash,
            debtor=key.debtor,
            creditor=key.creditor,
            route_id=route_id,
        )
        self._append(event.to_record(timestamp_utc=now))
        return intent_hash

    def _record_finalized(
        self,
        key: EdgeKey,
        route: SwapRoute,
        amount: int,
        attempt: SettlementAttempt,
        intent_hash: str,
    ) -> str:
        dst_tx_hash = attempt.dst_tx_hash
        if not dst_tx_hash or len(dst_tx_hash) != 66:
            logger.warning(
                "Venue reported no destination tx for order %s; recording zero hash",
                attempt.order_hash,
            )
            dst_tx_hash = ZERO_BYTES32
        dst_tx_hash = dst_tx_hash.lower()
        receipt_hash = settlement_receipt_hash(
            self._domain,
            group_id=key.group_id,
            debtor=key.debtor,
            creditor=key.creditor,
            token=key.token,
            amount=amount,
            dst_chain_id=route.dst_chain_id,
            dst_tx_hash=dst_tx_hash,
            intent_hash=intent_hash,
        )
        event = SettlementFinalized(
            group_id=key.group_id,
            debtor=key.debtor,
            creditor=key.creditor,
            token=key.token,
            amount=amount,
            dst_chain_id=route.dst_chain_id,
            dst_tx_hash=dst_tx_hash,
            receipt_hash=receipt_hash,
            intent_hash=intent_hash,
        )
        self._append(event.to_record(timestamp_utc=attempt.finished_utc))
        logger.info("Finalized %s with receipt %s", key.edge_id, receipt_hash)
        return receipt_hash

    def _append(self, record) -> None:
        self._event_log.append(record)
        self._engine.apply(record)
