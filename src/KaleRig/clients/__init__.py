"""Ledger clients."""
from .ledger import BlockDetails, ChainHead, LedgerClient, Pail, SubmitResult

__all__ = ["BlockDetails", "ChainHead", "LedgerClient", "Pail", "SubmitResult"]
