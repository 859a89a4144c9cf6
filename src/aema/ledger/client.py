"""
Ledger client capability set.

The buffer consumes a ledger through the LedgerClient protocol:
  - primitives: params, health, status, account/app lookup, raw submission,
    pending info, program compilation
  - composites: execute (sign + submit + confirm), create/delete application,
    store/delete globals

LedgerClientBase implements every composite on top of the primitives, so a
backend only has to provide the primitive calls.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Dict, Mapping, Optional, Protocol, Union, runtime_checkable

from aema.core.schema import generate_schemas
from aema.crypto.account import Account
from aema.errors import ConfirmationTimeout, LedgerError, OperationCancelled, TxRejected
from aema.ledger.txn import ApplicationCallTxn, OnComplete, make_application_call_txn, sign_transaction
from aema.ledger.types import (
    AccountInfo,
    Application,
    CompileResult,
    NodeStatus,
    PendingTxInfo,
    SuggestedParams,
)
from aema.log import log_event

log = logging.getLogger("aema.ledger")

KV = Union[str, bytes]

DEFAULT_TIMEOUT_ROUNDS = 10


# ---------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------


@dataclass(frozen=True)
class CancelScope:
    """Caller-supplied cancellation: an event, a monotonic deadline, or both."""

    event: Optional[threading.Event] = None
    deadline: Optional[float] = None

    @classmethod
    def from_args(cls, cancel: Optional[threading.Event] = None, timeout_s: Optional[float] = None) -> "CancelScope":
        deadline = None if timeout_s is None else time.monotonic() + max(0.0, float(timeout_s))
        return cls(event=cancel, deadline=deadline)

    def cancelled(self) -> bool:
        if self.event is not None and self.event.is_set():
            return True
        return self.deadline is not None and time.monotonic() >= self.deadline

    def check(self, where: str) -> None:
        if not self.cancelled():
            return
        reason = "cancelled" if (self.event is not None and self.event.is_set()) else "deadline_exceeded"
        raise OperationCancelled("cancelled", reason, {"where": where})


NO_CANCEL = CancelScope()


# ---------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------


@runtime_checkable
class LedgerClient(Protocol):
    def suggested_params(self) -> SuggestedParams: ...
    def health_check(self) -> None: ...
    def status(self) -> NodeStatus: ...
    def status_after_block(self, round: int) -> NodeStatus: ...
    def account_information(self, address: str) -> AccountInfo: ...
    def application_by_id(self, app_id: int) -> Application: ...
    def send_raw_transaction(self, raw: bytes) -> str: ...
    def pending_transaction_info(self, txid: str) -> PendingTxInfo: ...
    def compile_program(self, source: bytes) -> CompileResult: ...

    def execute_transaction(
        self,
        account: Account,
        txn: ApplicationCallTxn,
        *,
        timeout_rounds: int = DEFAULT_TIMEOUT_ROUNDS,
        scope: CancelScope = NO_CANCEL,
    ) -> PendingTxInfo: ...

    def delete_application(self, account: Account, app_id: int, *, scope: CancelScope = NO_CANCEL) -> None: ...

    def create_application(
        self, account: Account, approval: str, clear: str, *, scope: CancelScope = NO_CANCEL
    ) -> int: ...

    def store_globals(self, account: Account, app_id: int, pairs: Mapping[KV, KV]) -> None: ...
    def delete_globals(self, account: Account, app_id: int, *keys: KV) -> None: ...


# ---------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------


def wait_for_confirmation(
    client: LedgerClient,
    txid: str,
    timeout_rounds: int = DEFAULT_TIMEOUT_ROUNDS,
    *,
    scope: CancelScope = NO_CANCEL,
) -> PendingTxInfo:
    """Block until txid is confirmed, rejected, or the round window passes.

    Starts at the round after the current one and polls once per round.
    """
    if not txid or int(timeout_rounds) < 1:
        raise ValueError("bad arguments for wait_for_confirmation")

    start_round = int(client.status().last_round) + 1
    current = start_round

    while current < start_round + int(timeout_rounds):
        scope.check("wait_for_confirmation")
        info = client.pending_transaction_info(txid)
        if info.confirmed:
            log.debug("txn %s confirmed in round %d", txid, info.confirmed_round)
            return info
        if info.pool_error:
            raise TxRejected("rejected", "pool_error", {"txid": txid, "pool_error": info.pool_error})
        client.status_after_block(current)
        current += 1

    raise ConfirmationTimeout(
        "timeout",
        "tx_not_confirmed_in_round_range",
        {"txid": txid, "start_round": start_round, "rounds": int(timeout_rounds)},
    )


def as_bytes(v: KV) -> bytes:
    if isinstance(v, bytes):
        return v
    if isinstance(v, (bytearray, memoryview)):
        return bytes(v)
    if isinstance(v, str):
        return v.encode("utf-8")
    raise TypeError(f"expected str or bytes, got {type(v).__name__}")


# ---------------------------------------------------------------------
# Composite operations
# ---------------------------------------------------------------------


class LedgerClientBase:
    """Composite ledger operations built on the LedgerClient primitives."""

    def __init__(self) -> None:
        self._compiled: Dict[bytes, bytes] = {}
        self._compile_lock = threading.Lock()

    def compile_cached(self, source: Union[str, bytes]) -> bytes:
        src = as_bytes(source)
        with self._compile_lock:
            prog = self._compiled.get(src)
        if prog is not None:
            return prog
        prog = self.compile_program(src).program  # type: ignore[attr-defined]
        with self._compile_lock:
            self._compiled[src] = prog
        return prog

    def execute_transaction(
        self,
        account: Account,
        txn: ApplicationCallTxn,
        *,
        timeout_rounds: int = DEFAULT_TIMEOUT_ROUNDS,
        scope: CancelScope = NO_CANCEL,
    ) -> PendingTxInfo:
        scope.check("execute_transaction")
        signed = sign_transaction(account, txn)
        txid = self.send_raw_transaction(signed.encode())  # type: ignore[attr-defined]
        return wait_for_confirmation(self, txid, timeout_rounds, scope=scope)  # type: ignore[arg-type]

    def create_application(
        self,
        account: Account,
        approval: str,
        clear: str,
        *,
        scope: CancelScope = NO_CANCEL,
    ) -> int:
        approval_prog = self.compile_cached(approval)
        clear_prog = self.compile_cached(clear)
        local, glob = generate_schemas()

        params = self.suggested_params()  # type: ignore[attr-defined]
        txn = make_application_call_txn(
            sender=account.address,
            params=params,
            app_id=0,
            on_complete=OnComplete.NOOP,
            approval_program=approval_prog,
            clear_program=clear_prog,
            global_schema=glob,
            local_schema=local,
        )
        info = self.execute_transaction(account, txn, scope=scope)
        app_id = int(info.application_index or 0)
        if app_id <= 0:
            raise LedgerError("create_failed", "no_application_index", {"txid": info.txid})
        log_event(log, "application_created", app_id=app_id, creator=account.address, round=info.confirmed_round)
        return app_id

    def delete_application(self, account: Account, app_id: int, *, scope: CancelScope = NO_CANCEL) -> None:
        acc = self.account_information(account.address)  # type: ignore[attr-defined]
        if not any(int(a.id) == int(app_id) for a in acc.created_apps):
            raise LedgerError("not_found", "account_does_not_own_app", {"app_id": int(app_id)})

        params = self.suggested_params()  # type: ignore[attr-defined]
        txn = make_application_call_txn(
            sender=account.address,
            params=params,
            app_id=int(app_id),
            on_complete=OnComplete.DELETE_APPLICATION,
        )
        info = self.execute_transaction(account, txn, scope=scope)
        log_event(log, "application_deleted", app_id=int(app_id), round=info.confirmed_round)

    def store_globals(self, account: Account, app_id: int, pairs: Mapping[KV, KV]) -> None:
        from aema.core.batcher import put_entries_to_app  # local import

        put_entries_to_app(self, account, int(app_id), pairs)  # type: ignore[arg-type]

    def delete_globals(self, account: Account, app_id: int, *keys: KV) -> None:
        from aema.core.batcher import delete_entries_from_app  # local import

        delete_entries_from_app(self, account, int(app_id), keys)  # type: ignore[arg-type]
