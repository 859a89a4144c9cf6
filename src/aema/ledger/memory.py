from __future__ import annotations

import base64
import copy
import random
import threading
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Set, Union

import yaml

from aema.crypto.account import is_valid_address, sha512_256
from aema.errors import LedgerError, TxRejected
from aema.ledger.client import LedgerClientBase
from aema.ledger.txn import MAX_KEY_LEN, MAX_KV_LEN, SignedTxn, decode_signed_txn
from aema.ledger.types import (
    AccountInfo,
    Application,
    CompileResult,
    NodeStatus,
    PendingTxInfo,
    StateSchema,
    SuggestedParams,
)
from aema.program.state_machine import AppCall, CallVerdict, evaluate_app_call

Json = Dict[str, Any]

MIN_FEE = 1_000
VALIDITY_WINDOW = 1_000
GENESIS_ID = "aema-memnet-v1"

Op = Union[str, Callable[..., Any]]


def _op_name(op: Op) -> str:
    if isinstance(op, str):
        return op.strip()
    return str(getattr(op, "__name__", "")).strip()


class InMemoryLedger(LedgerClientBase):
    """
    Deterministic in-process ledger used for unit tests and local runs.

    - Does not open sockets
    - Verifies signatures against the sender address
    - Every hosted application runs the oracle approval logic
    - A submitted txn is evaluated at submission and again when the next
      block is produced (status_after_block); it confirms in that block

    Test helpers:
      set_error(True, "delete_application")  -> the named call raises LedgerError
      create_dummy_apps(...), seed_app(...), seed_from_yaml(...)
      submitted                              -> every accepted SignedTxn, in order
    """

    def __init__(self, *, start_round: int = 1, seed: int = 0) -> None:
        super().__init__()
        self._lock = threading.RLock()
        self._round = int(start_round)
        self._next_app_id = 1
        self._apps: Dict[int, Application] = {}
        self._pool: List[SignedTxn] = []
        self._pending: Dict[str, PendingTxInfo] = {}
        self._failing: Set[str] = set()
        self._rng = random.Random(seed)
        self.submitted: List[SignedTxn] = []

    # ---- fault injection ----

    def set_error(self, enabled: bool, *ops: Op) -> None:
        with self._lock:
            for op in ops:
                name = _op_name(op)
                if not name:
                    continue
                if enabled:
                    self._failing.add(name)
                else:
                    self._failing.discard(name)

    def clear_errors(self) -> None:
        with self._lock:
            self._failing.clear()

    def _maybe_fail(self, op: str) -> None:
        if op in self._failing:
            raise LedgerError("injected", f"{op}_failed", {"op": op})

    # ---- fixtures ----

    def _new_app(
        self,
        *,
        creator: str,
        global_schema: StateSchema,
        local_schema: StateSchema,
        created_at_round: int,
        approval_program: bytes = b"",
        clear_program: bytes = b"",
        state: Optional[Dict[bytes, bytes]] = None,
    ) -> int:
        app_id = self._next_app_id
        self._next_app_id += 1
        self._apps[app_id] = Application(
            id=app_id,
            creator=creator,
            global_schema=global_schema,
            local_schema=local_schema,
            created_at_round=int(created_at_round),
            global_state=dict(state or {}),
            approval_program=approval_program,
            clear_program=clear_program,
        )
        return app_id

    def seed_app(
        self,
        *,
        creator: str,
        global_bytes: int = 64,
        global_ints: int = 0,
        created_at_round: Optional[int] = None,
        state: Optional[Dict[Any, Any]] = None,
    ) -> int:
        """Insert an application directly, bypassing transactions."""
        with self._lock:
            st = {_to_bytes(k): _to_bytes(v) for k, v in (state or {}).items()}
            return self._new_app(
                creator=creator,
                global_schema=StateSchema(num_uint=int(global_ints), num_byte_slice=int(global_bytes)),
                local_schema=StateSchema(),
                created_at_round=self._round if created_at_round is None else int(created_at_round),
                state=st,
            )

    def create_dummy_apps(self, count: int, min_bytes: int, max_bytes: int, *, creator: str) -> List[int]:
        """Seed `count` apps whose global byte-slice count is drawn from [min_bytes, max_bytes]."""
        out: List[int] = []
        with self._lock:
            for _ in range(int(count)):
                nbs = self._rng.randint(int(min_bytes), int(max_bytes))
                out.append(self.seed_app(creator=creator, global_bytes=nbs))
                self._round += 1
        return out

    def seed_from_yaml(self, path: Union[str, Path], *, creator: str) -> List[int]:
        """Seed apps from a YAML fixture.

        Expected shape:
          apps:
            - {global_bytes: 64, global_ints: 0, created_at_round: 3, state: {k: v}}
        """
        doc = yaml.safe_load(Path(path).read_text(encoding="utf-8")) or {}
        if not isinstance(doc, dict):
            raise ValueError("fixture root must be a mapping")
        apps = doc.get("apps") or []
        if not isinstance(apps, list):
            raise ValueError("fixture 'apps' must be a list")

        out: List[int] = []
        for rec in apps:
            if not isinstance(rec, dict):
                raise ValueError("fixture app entries must be mappings")
            out.append(
                self.seed_app(
                    creator=str(rec.get("creator") or creator),
                    global_bytes=int(rec.get("global_bytes", 64)),
                    global_ints=int(rec.get("global_ints", 0)),
                    created_at_round=rec.get("created_at_round"),
                    state=rec.get("state") or {},
                )
            )
        return out

    # ---- primitives ----

    def suggested_params(self) -> SuggestedParams:
        with self._lock:
            self._maybe_fail("suggested_params")
            return SuggestedParams(
                fee=MIN_FEE,
                first_valid=self._round,
                last_valid=self._round + VALIDITY_WINDOW,
                genesis_id=GENESIS_ID,
                genesis_hash=base64.b64encode(sha512_256(GENESIS_ID.encode("ascii"))).decode("ascii"),
            )

    def health_check(self) -> None:
        with self._lock:
            self._maybe_fail("health_check")

    def status(self) -> NodeStatus:
        with self._lock:
            self._maybe_fail("status")
            return NodeStatus(last_round=self._round)

    def status_after_block(self, round: int) -> NodeStatus:
        with self._lock:
            self._maybe_fail("status_after_block")
            while self._round <= int(round):
                self._produce_block()
            return NodeStatus(last_round=self._round)

    def account_information(self, address: str) -> AccountInfo:
        with self._lock:
            self._maybe_fail("account_information")
            if not is_valid_address(address):
                raise LedgerError("bad_request", "invalid_address", {"address": address})
            apps = [copy.deepcopy(a) for a in sorted(self._apps.values(), key=lambda a: a.id) if a.creator == address]
            return AccountInfo(address=address, round=self._round, created_apps=apps)

    def application_by_id(self, app_id: int) -> Application:
        with self._lock:
            self._maybe_fail("application_by_id")
            app = self._apps.get(int(app_id))
            if app is None:
                raise LedgerError("not_found", "application_does_not_exist", {"app_id": int(app_id)})
            return copy.deepcopy(app)

    def send_raw_transaction(self, raw: bytes) -> str:
        with self._lock:
            self._maybe_fail("send_raw_transaction")
            stx = decode_signed_txn(raw)
            txid = stx.txid()
            if txid in self._pending:
                raise TxRejected("rejected", "duplicate_txn", {"txid": txid})
            self._check_envelope(stx)
            verdict = self._evaluate(stx)
            if not verdict.ok:
                raise TxRejected("rejected", "logic_eval_error", {"txid": txid, "reason": verdict.reason})
            self._check_storage(stx, verdict)

            self._pool.append(stx)
            self._pending[txid] = PendingTxInfo(txid=txid)
            self.submitted.append(stx)
            return txid

    def pending_transaction_info(self, txid: str) -> PendingTxInfo:
        with self._lock:
            self._maybe_fail("pending_transaction_info")
            info = self._pending.get(txid)
            if info is None:
                raise LedgerError("not_found", "unknown_txid", {"txid": txid})
            return info

    def compile_program(self, source: bytes) -> CompileResult:
        with self._lock:
            self._maybe_fail("compile_program")
            src = bytes(source)
            if not src.strip():
                raise LedgerError("bad_request", "empty_program", None)
            # Stand-in assembly: version byte + source text.
            program = b"\x05" + src
            digest = base64.b32encode(sha512_256(b"Program" + program)).decode("ascii").rstrip("=")
            return CompileResult(program=program, hash=digest)

    # ---- composites with fault hooks ----

    def execute_transaction(self, account, txn, **kw):
        self._maybe_fail("execute_transaction")
        return super().execute_transaction(account, txn, **kw)

    def create_application(self, account, approval, clear, **kw):
        self._maybe_fail("create_application")
        return super().create_application(account, approval, clear, **kw)

    def delete_application(self, account, app_id, **kw):
        self._maybe_fail("delete_application")
        return super().delete_application(account, app_id, **kw)

    def store_globals(self, account, app_id, pairs):
        self._maybe_fail("store_globals")
        return super().store_globals(account, app_id, pairs)

    def delete_globals(self, account, app_id, *keys):
        self._maybe_fail("delete_globals")
        return super().delete_globals(account, app_id, *keys)

    # ---- execution ----

    def _check_envelope(self, stx: SignedTxn) -> None:
        t = stx.txn
        txid = stx.txid()
        if not stx.verify():
            raise TxRejected("rejected", "invalid_signature", {"txid": txid})
        if t.genesis_id and t.genesis_id != GENESIS_ID:
            raise TxRejected("rejected", "wrong_genesis", {"txid": txid, "genesis_id": t.genesis_id})
        if int(t.fee) < MIN_FEE:
            raise TxRejected("rejected", "fee_too_low", {"txid": txid, "fee": int(t.fee)})
        next_round = self._round + 1
        if not (int(t.first_valid) <= next_round <= int(t.last_valid)):
            raise TxRejected(
                "rejected",
                "txn_dead",
                {"txid": txid, "first_valid": int(t.first_valid), "last_valid": int(t.last_valid), "round": next_round},
            )

    def _evaluate(self, stx: SignedTxn) -> CallVerdict:
        t = stx.txn
        if int(t.app_id) == 0:
            return evaluate_app_call(AppCall(app_id=0, sender=t.sender, creator=t.sender, on_complete=t.on_complete))
        app = self._apps.get(int(t.app_id))
        if app is None:
            raise TxRejected("rejected", "application_does_not_exist", {"app_id": int(t.app_id)})
        return evaluate_app_call(
            AppCall(
                app_id=app.id,
                sender=t.sender,
                creator=app.creator,
                on_complete=t.on_complete,
                args=t.app_args,
                note=t.note,
            )
        )

    def _check_storage(self, stx: SignedTxn, verdict: CallVerdict) -> None:
        if not verdict.puts:
            return
        app = self._apps[int(stx.txn.app_id)]
        keys = set(app.global_state.keys())
        for k, v in verdict.puts:
            if not k:
                raise TxRejected("rejected", "empty_key", {"app_id": app.id})
            if len(k) > MAX_KEY_LEN or len(k) + len(v) > MAX_KV_LEN:
                raise TxRejected("rejected", "key_value_too_long", {"app_id": app.id, "key_len": len(k)})
            keys.add(k)
        if len(keys) > int(app.global_schema.num_byte_slice):
            raise TxRejected(
                "rejected",
                "global_state_full",
                {"app_id": app.id, "slots": int(app.global_schema.num_byte_slice), "needed": len(keys)},
            )

    def _apply(self, stx: SignedTxn, confirmed_round: int) -> PendingTxInfo:
        t = stx.txn
        txid = stx.txid()
        try:
            verdict = self._evaluate(stx)
            if not verdict.ok:
                raise TxRejected("rejected", "logic_eval_error", {"txid": txid, "reason": verdict.reason})
            self._check_storage(stx, verdict)
        except TxRejected as e:
            return PendingTxInfo(txid=txid, pool_error=f"{e.code}:{e.reason}")

        if int(t.app_id) == 0:
            app_id = self._new_app(
                creator=t.sender,
                global_schema=t.global_schema,
                local_schema=t.local_schema,
                created_at_round=confirmed_round,
                approval_program=t.approval_program,
                clear_program=t.clear_program,
            )
            return PendingTxInfo(txid=txid, confirmed_round=confirmed_round, application_index=app_id)

        if verdict.reason == "delete_application":
            self._apps.pop(int(t.app_id), None)
        else:
            state = self._apps[int(t.app_id)].global_state
            for k, v in verdict.puts:
                state[k] = v
            for k in verdict.deletes:
                state.pop(k, None)
        return PendingTxInfo(txid=txid, confirmed_round=confirmed_round)

    def _produce_block(self) -> None:
        self._round += 1
        pool, self._pool = self._pool, []
        for stx in pool:
            self._pending[stx.txid()] = self._apply(stx, self._round)


def _to_bytes(v: Any) -> bytes:
    if isinstance(v, bytes):
        return v
    return str(v).encode("utf-8")
