"""Balance accounting — projects ledger events onto debt edges."""

from splitchain.ledger.engine import BalanceEngine, SplitPolicy

__all__ = ["BalanceEngine", "SplitPolicy"]
