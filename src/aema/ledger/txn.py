from __future__ import annotations

"""Application-call transactions: building, canonical encoding, signing.

Wire shape (canonical JSON, sorted keys, bytes as base64, empty fields omitted):

  {
    "sig": "<b64 signature>",
    "txn": {
      "type": "appl",
      "snd": "<address>",
      "apid": <app id, 0 on create>,
      "apan": <on-completion code>,
      "apaa": ["<b64 arg>", ...],
      "note": "<b64>",
      "apap": "<b64 approval program>",
      "apsu": "<b64 clear program>",
      "apgs": {"nui": n, "nbs": n},
      "apls": {"nui": n, "nbs": n},
      "fee": n, "fv": n, "lv": n, "gen": "...", "gh": "..."
    }
  }

The signature and the transaction id both cover b"TX" + canonical txn bytes.
"""

import base64
import json
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Dict, List, Literal, Optional, Sequence, Tuple

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from aema.crypto.account import Account, sha512_256, verify_signature
from aema.errors import TxRejected
from aema.ledger.types import StateSchema, SuggestedParams

Json = Dict[str, Any]

MAX_APP_ARGS = 16
MAX_KEY_LEN = 64
MAX_KV_LEN = 128
TX_PREFIX = b"TX"


class OnComplete(IntEnum):
    NOOP = 0
    OPT_IN = 1
    CLOSE_OUT = 2
    CLEAR_STATE = 3
    UPDATE_APPLICATION = 4
    DELETE_APPLICATION = 5


def _b64(b: bytes) -> str:
    return base64.b64encode(b).decode("ascii")


def _unb64(s: str) -> bytes:
    return base64.b64decode(s.encode("ascii"), validate=True)


def _schema_json(s: StateSchema) -> Json:
    out: Json = {}
    if s.num_uint:
        out["nui"] = int(s.num_uint)
    if s.num_byte_slice:
        out["nbs"] = int(s.num_byte_slice)
    return out


@dataclass(frozen=True)
class ApplicationCallTxn:
    sender: str
    app_id: int
    on_complete: OnComplete
    fee: int
    first_valid: int
    last_valid: int
    genesis_id: str = ""
    genesis_hash: str = ""
    app_args: Tuple[bytes, ...] = ()
    note: bytes = b""
    approval_program: bytes = b""
    clear_program: bytes = b""
    global_schema: StateSchema = field(default_factory=StateSchema)
    local_schema: StateSchema = field(default_factory=StateSchema)

    def to_json(self) -> Json:
        out: Json = {
            "type": "appl",
            "snd": self.sender,
            "fee": int(self.fee),
            "fv": int(self.first_valid),
            "lv": int(self.last_valid),
        }
        if self.app_id:
            out["apid"] = int(self.app_id)
        if self.on_complete != OnComplete.NOOP:
            out["apan"] = int(self.on_complete)
        if self.app_args:
            out["apaa"] = [_b64(a) for a in self.app_args]
        if self.note:
            out["note"] = _b64(self.note)
        if self.approval_program:
            out["apap"] = _b64(self.approval_program)
        if self.clear_program:
            out["apsu"] = _b64(self.clear_program)
        gs = _schema_json(self.global_schema)
        if gs:
            out["apgs"] = gs
        ls = _schema_json(self.local_schema)
        if ls:
            out["apls"] = ls
        if self.genesis_id:
            out["gen"] = self.genesis_id
        if self.genesis_hash:
            out["gh"] = self.genesis_hash
        return out

    def encode(self) -> bytes:
        return json.dumps(self.to_json(), sort_keys=True, separators=(",", ":"), ensure_ascii=True).encode("ascii")

    def bytes_to_sign(self) -> bytes:
        return TX_PREFIX + self.encode()

    def txid(self) -> str:
        return base64.b32encode(sha512_256(self.bytes_to_sign())).decode("ascii").rstrip("=")


@dataclass(frozen=True)
class SignedTxn:
    txn: ApplicationCallTxn
    sig: bytes

    def encode(self) -> bytes:
        obj = {"sig": _b64(self.sig), "txn": self.txn.to_json()}
        return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=True).encode("ascii")

    def txid(self) -> str:
        return self.txn.txid()

    def verify(self) -> bool:
        return verify_signature(address=self.txn.sender, message=self.txn.bytes_to_sign(), signature=self.sig)


def make_application_call_txn(
    *,
    sender: str,
    params: SuggestedParams,
    app_id: int = 0,
    on_complete: OnComplete = OnComplete.NOOP,
    app_args: Optional[Sequence[bytes]] = None,
    note: bytes = b"",
    approval_program: bytes = b"",
    clear_program: bytes = b"",
    global_schema: Optional[StateSchema] = None,
    local_schema: Optional[StateSchema] = None,
) -> ApplicationCallTxn:
    args = tuple(bytes(a) for a in (app_args or ()))
    if len(args) > MAX_APP_ARGS:
        raise ValueError(f"application call takes at most {MAX_APP_ARGS} args (got {len(args)})")
    return ApplicationCallTxn(
        sender=sender,
        app_id=int(app_id),
        on_complete=OnComplete(on_complete),
        fee=int(params.fee),
        first_valid=int(params.first_valid),
        last_valid=int(params.last_valid),
        genesis_id=params.genesis_id,
        genesis_hash=params.genesis_hash,
        app_args=args,
        note=bytes(note),
        approval_program=bytes(approval_program),
        clear_program=bytes(clear_program),
        global_schema=global_schema or StateSchema(),
        local_schema=local_schema or StateSchema(),
    )


def sign_transaction(account: Account, txn: ApplicationCallTxn) -> SignedTxn:
    if txn.sender != account.address:
        raise ValueError("transaction sender does not match signing account")
    return SignedTxn(txn=txn, sig=account.sign(txn.bytes_to_sign()))


# ---------------------------------------------------------------------------
# Wire decoding
# ---------------------------------------------------------------------------


class _StrictModel(BaseModel):
    """Strict model: reject unknown keys."""

    model_config = ConfigDict(extra="forbid")


class _SchemaWire(_StrictModel):
    nui: int = Field(default=0, ge=0)
    nbs: int = Field(default=0, ge=0)


class _TxnWire(_StrictModel):
    type: Literal["appl"]
    snd: str = Field(min_length=1)
    apid: int = Field(default=0, ge=0)
    apan: int = Field(default=0, ge=0, le=5)
    apaa: List[str] = Field(default_factory=list, max_length=MAX_APP_ARGS)
    note: str = ""
    apap: str = ""
    apsu: str = ""
    apgs: Optional[_SchemaWire] = None
    apls: Optional[_SchemaWire] = None
    fee: int = Field(ge=0)
    fv: int = Field(ge=0)
    lv: int = Field(ge=0)
    gen: str = ""
    gh: str = ""


class _SignedTxnWire(_StrictModel):
    sig: str = Field(min_length=1)
    txn: _TxnWire


def _schema_from_wire(w: Optional[_SchemaWire]) -> StateSchema:
    if w is None:
        return StateSchema()
    return StateSchema(num_uint=int(w.nui), num_byte_slice=int(w.nbs))


def decode_signed_txn(raw: bytes) -> SignedTxn:
    """Parse raw wire bytes into a SignedTxn.

    Raises TxRejected("bad_encoding", ...) on any shape or encoding problem.
    """
    try:
        w = _SignedTxnWire.model_validate_json(raw)
        t = w.txn
        txn = ApplicationCallTxn(
            sender=t.snd,
            app_id=int(t.apid),
            on_complete=OnComplete(int(t.apan)),
            fee=int(t.fee),
            first_valid=int(t.fv),
            last_valid=int(t.lv),
            genesis_id=t.gen,
            genesis_hash=t.gh,
            app_args=tuple(_unb64(a) for a in t.apaa),
            note=_unb64(t.note) if t.note else b"",
            approval_program=_unb64(t.apap) if t.apap else b"",
            clear_program=_unb64(t.apsu) if t.apsu else b"",
            global_schema=_schema_from_wire(t.apgs),
            local_schema=_schema_from_wire(t.apls),
        )
        return SignedTxn(txn=txn, sig=_unb64(w.sig))
    except ValidationError as e:
        raise TxRejected("bad_encoding", "invalid_signed_txn", {"errors": e.error_count()}) from e
    except ValueError as e:
        raise TxRejected("bad_encoding", "invalid_base64", {"error": str(e)}) from e
