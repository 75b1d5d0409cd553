"""Append-only plan ledger and its storage backends."""

from context_relay.ledger.ledger import InMemoryLedgerBackend, LedgerBackend, PlanLedger
from context_relay.ledger.repository import SqlLedgerBackend

__all__ = [
    "InMemoryLedgerBackend",
    "LedgerBackend",
    "PlanLedger",
    "SqlLedgerBackend",
]
