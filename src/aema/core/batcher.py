from __future__ import annotations

"""Chunked put/delete of oracle global storage.

Each transaction carries at most MAX_ARGS application arguments:
  put:    [k1, v1, k2, v2, ...]  -> at most MAX_KV_ARGS pairs per chunk
  delete: [k1, k2, ...]          -> at most MAX_ARGS keys per chunk

Chunks are sent strictly in order; each waits for confirmation before the
next one is built. A failure stops the write; earlier chunks stay committed.
"""

import logging
import threading
from typing import Callable, Iterable, List, Mapping, Optional, Sequence, Tuple

from aema.config import BufferConfig
from aema.crypto.account import Account
from aema.errors import NoTargetResource, OperationCancelled, WriteCancelled, WriteError
from aema.ledger.client import KV, NO_CANCEL, CancelScope, LedgerClient, as_bytes
from aema.ledger.txn import MAX_KEY_LEN, MAX_KV_LEN, ApplicationCallTxn, OnComplete, make_application_call_txn
from aema.ledger.types import SuggestedParams
from aema.log import log_event
from aema.metrics import inc_counter
from aema.program.teal import MAX_ARGS, MAX_KV_ARGS, MODE_DELETE, MODE_PUT

log = logging.getLogger("aema.batcher")

Pair = Tuple[bytes, bytes]


def _validate_key(k: bytes) -> None:
    if not k:
        raise ValueError("storage keys must be non-empty")
    if len(k) > MAX_KEY_LEN:
        raise ValueError(f"storage key longer than {MAX_KEY_LEN} bytes")


def normalize_entries(entries: Mapping[KV, KV]) -> List[Pair]:
    out: List[Pair] = []
    for k, v in entries.items():
        kb, vb = as_bytes(k), as_bytes(v)
        _validate_key(kb)
        if len(kb) + len(vb) > MAX_KV_LEN:
            raise ValueError(f"key+value longer than {MAX_KV_LEN} bytes for key {kb!r}")
        out.append((kb, vb))
    return out


def normalize_keys(keys: Iterable[KV]) -> List[bytes]:
    out: List[bytes] = []
    for k in keys:
        kb = as_bytes(k)
        _validate_key(kb)
        out.append(kb)
    return out


def chunk_entries(pairs: Sequence[Pair], size: int = MAX_KV_ARGS) -> List[List[Pair]]:
    n = max(1, int(size))
    return [list(pairs[i : i + n]) for i in range(0, len(pairs), n)]


def chunk_keys(keys: Sequence[bytes], size: int = MAX_ARGS) -> List[List[bytes]]:
    n = max(1, int(size))
    return [list(keys[i : i + n]) for i in range(0, len(keys), n)]


def build_put_txn(sender: str, params: SuggestedParams, app_id: int, chunk: Sequence[Pair]) -> ApplicationCallTxn:
    args: List[bytes] = []
    for k, v in chunk:
        args.append(k)
        args.append(v)
    return make_application_call_txn(
        sender=sender,
        params=params,
        app_id=int(app_id),
        on_complete=OnComplete.NOOP,
        app_args=args,
        note=MODE_PUT,
    )


def build_delete_txn(sender: str, params: SuggestedParams, app_id: int, chunk: Sequence[bytes]) -> ApplicationCallTxn:
    return make_application_call_txn(
        sender=sender,
        params=params,
        app_id=int(app_id),
        on_complete=OnComplete.NOOP,
        app_args=list(chunk),
        note=MODE_DELETE,
    )


def _send_chunks(
    client: LedgerClient,
    account: Account,
    app_id: int,
    chunks: Sequence[Sequence],
    build: Callable[[str, SuggestedParams, int, Sequence], ApplicationCallTxn],
    *,
    op: str,
    scope: CancelScope,
    timeout_rounds: int,
) -> int:
    total = len(chunks)
    for i, chunk in enumerate(chunks):
        try:
            scope.check(f"{op}_chunk")
            params = client.suggested_params()
            txn = build(account.address, params, app_id, chunk)
            info = client.execute_transaction(account, txn, timeout_rounds=timeout_rounds, scope=scope)
        except OperationCancelled as e:
            inc_counter(f"batch_{op}_cancelled_total", 1)
            raise WriteCancelled(
                "cancelled",
                e.reason,
                {"op": op, "app_id": app_id, "chunk": i},
                chunks_committed=i,
                chunks_total=total,
            ) from e
        except Exception as e:
            inc_counter(f"batch_{op}_errors_total", 1)
            log_event(log, "chunk_failed", level=logging.WARNING, op=op, app_id=app_id, chunk=i, total=total, error=str(e))
            raise WriteError(
                "write_failed",
                f"{op}_chunk_failed",
                {"op": op, "app_id": app_id, "chunk": i, "error": f"{type(e).__name__}:{e}"},
                chunks_committed=i,
                chunks_total=total,
            ) from e

        inc_counter(f"batch_{op}_chunks_total", 1)
        log_event(log, "chunk_confirmed", op=op, app_id=app_id, chunk=i, total=total, round=info.confirmed_round)
    return total


def put_entries_to_app(
    client: LedgerClient,
    account: Account,
    app_id: int,
    entries: Mapping[KV, KV],
    *,
    scope: CancelScope = NO_CANCEL,
    timeout_rounds: int = 10,
) -> int:
    """Write entries to app_id's global storage. Returns the number of chunks sent."""
    chunks = chunk_entries(normalize_entries(entries))
    return _send_chunks(
        client, account, app_id, chunks, build_put_txn, op="put", scope=scope, timeout_rounds=timeout_rounds
    )


def delete_entries_from_app(
    client: LedgerClient,
    account: Account,
    app_id: int,
    keys: Iterable[KV],
    *,
    scope: CancelScope = NO_CANCEL,
    timeout_rounds: int = 10,
) -> int:
    """Remove keys from app_id's global storage. Returns the number of chunks sent."""
    chunks = chunk_keys(normalize_keys(keys))
    return _send_chunks(
        client, account, app_id, chunks, build_delete_txn, op="delete", scope=scope, timeout_rounds=timeout_rounds
    )


class MutationBatcher:
    """Chunked writes against whichever app `target()` names.

    `target` returns the single valid app id or None; the buffer passes the
    reconciler's cached id.
    """

    def __init__(
        self,
        client: LedgerClient,
        account: Account,
        *,
        target: Callable[[], Optional[int]],
        cfg: BufferConfig,
    ) -> None:
        self._client = client
        self._account = account
        self._target = target
        self._cfg = cfg

    def _require_target(self) -> int:
        app_id = self._target()
        if not app_id:
            raise NoTargetResource("no_target", "no_single_valid_application", {"address": self._account.address})
        return int(app_id)

    def put_entries(
        self,
        entries: Mapping[KV, KV],
        *,
        cancel: Optional[threading.Event] = None,
        timeout_s: Optional[float] = None,
    ) -> int:
        app_id = self._require_target()
        return put_entries_to_app(
            self._client,
            self._account,
            app_id,
            entries,
            scope=CancelScope.from_args(cancel, timeout_s),
            timeout_rounds=self._cfg.confirm_rounds,
        )

    def delete_entries(
        self,
        keys: Iterable[KV],
        *,
        cancel: Optional[threading.Event] = None,
        timeout_s: Optional[float] = None,
    ) -> int:
        app_id = self._require_target()
        return delete_entries_from_app(
            self._client,
            self._account,
            app_id,
            keys,
            scope=CancelScope.from_args(cancel, timeout_s),
            timeout_rounds=self._cfg.confirm_rounds,
        )
