# src/aema/ledger/__init__.py
"""
Ledger access layer.

  - types: plain records returned by ledger calls
  - txn: application-call transactions, canonical encoding, signing
  - client: LedgerClient protocol + composite operations
  - memory: deterministic in-process ledger
"""
