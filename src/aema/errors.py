from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional


@dataclass
class AemaError(Exception):
    """Canonical error type for buffer, ledger and reconciliation failures."""

    code: str
    reason: str
    details: Optional[Dict[str, Any]] = None

    def __str__(self) -> str:  # pragma: no cover
        if self.details is None:
            return f"{self.code}:{self.reason}"
        return f"{self.code}:{self.reason}:{self.details}"


class SetupError(AemaError):
    """Health or status probe failed while constructing a buffer."""


class LedgerError(AemaError):
    """A ledger client primitive failed (network, node or injected fault)."""


class TxRejected(AemaError):
    """The ledger or the oracle program rejected a transaction."""


class ConfirmationTimeout(AemaError):
    """A submitted transaction was not confirmed within the round window."""


class OperationCancelled(AemaError):
    """A cancel event fired or a deadline passed during a blocking wait."""


class NoTargetResource(AemaError):
    """No single valid oracle application exists for the account."""


@dataclass
class WriteError(AemaError):
    """A chunked put/delete failed part-way.

    Chunks before ``chunks_committed`` are already applied on-chain and are
    not rolled back.
    """

    chunks_committed: int = 0
    chunks_total: int = 0


class WriteCancelled(WriteError):
    """The caller cancelled (or timed out) a chunked write."""


class BufferNotManaged(BaseException):
    """Read/write attempted before the reconciler finished its first pass.

    This is a usage-contract violation, not a runtime fault. It derives from
    BaseException so ``except Exception`` handlers do not absorb it.
    """

    def __init__(self, operation: str) -> None:
        super().__init__(f"{operation} called before manage() completed a pass")
        self.operation = operation
