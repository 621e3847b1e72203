"""splitchain — shared-expense debt ledger with cross-chain swap settlement."""

__version__ = "0.1.0"
