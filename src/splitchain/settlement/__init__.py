"""Cross-chain settlement — secrets, venue, orchestration, coordination."""

from splitchain.settlement.coordinator import SettlementCoordinator, SettlementOutcome
from splitchain.settlement.orchestrator import SettlementOrchestrator
from splitchain.settlement.routes import RouteBook, SwapRoute
from splitchain.settlement.vault import HashLock, SecretVault
from splitchain.settlement.venue import (
    FusionPlusVenue,
    LocalAccountSigner,
    OrderSigner,
    Venue,
)

__all__ = [
    "FusionPlusVenue",
    "HashLock",
    "LocalAccountSigner",
    "OrderSigner",
    "RouteBook",
    "SecretVault",
    "SettlementCoordinator",
    "SettlementOrchestrator",
    "SettlementOutcome",
    "SwapRoute",
    "Venue",
]
