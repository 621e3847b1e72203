"""Core data models for splitchain."""

from splitchain.models.ledger import (
    DebtEdge,
    EdgeKey,
    Expense,
    Group,
    Settlement,
    SettlementIntent,
)
from splitchain.models.settlement import (
    AttemptState,
    CrossChainOrder,
    OrderStatus,
    OrderStatusKind,
    Preset,
    Quote,
    SettlementAttempt,
    SwapRequest,
)

__all__ = [
    "AttemptState",
    "CrossChainOrder",
    "DebtEdge",
    "EdgeKey",
    "Expense",
    "Group",
    "OrderStatus",
    "OrderStatusKind",
    "Preset",
    "Quote",
    "Settlement",
    "SettlementAttempt",
    "SettlementIntent",
    "SwapRequest",
]
