"""
aema: single-application key-value oracle buffer for an Algorand-style ledger.

  - core.reconciler: keeps exactly one schema-valid oracle app on the account
  - core.batcher: chunked put/delete transactions against that app
  - core.buffer: public facade (create_buffer, AlgoBuffer)
  - program: deployable TEAL approval/clear programs + Python state machine
  - ledger: client capability set, transactions, in-memory ledger
"""

from __future__ import annotations

from aema.core.buffer import AlgoBuffer, create_buffer
from aema.core.reconciler import ReconcileEvent
from aema.crypto.account import generate_private_key_b64
from aema.errors import (
    AemaError,
    BufferNotManaged,
    NoTargetResource,
    SetupError,
    TxRejected,
    WriteCancelled,
    WriteError,
)

__all__ = [
    "AemaError",
    "AlgoBuffer",
    "BufferNotManaged",
    "NoTargetResource",
    "ReconcileEvent",
    "SetupError",
    "TxRejected",
    "WriteCancelled",
    "WriteError",
    "create_buffer",
    "generate_private_key_b64",
]
