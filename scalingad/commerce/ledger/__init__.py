"""Append-only audit ledger for escrow events.

Models:
- LedgerEntry: Immutable audit record
- LedgerEventType: Kinds of recorded events

Service:
- Ledger: Append and read entries in causal order
"""

from scalingad.commerce.ledger.models import LedgerEntry, LedgerEventType
from scalingad.commerce.ledger.service import Ledger

__all__ = [
    "Ledger",
    "LedgerEntry",
    "LedgerEventType",
]
