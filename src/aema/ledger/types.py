from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List


@dataclass(frozen=True, slots=True)
class StateSchema:
    num_uint: int = 0
    num_byte_slice: int = 0


@dataclass(frozen=True, slots=True)
class SuggestedParams:
    fee: int
    first_valid: int
    last_valid: int
    genesis_id: str
    genesis_hash: str


@dataclass(frozen=True, slots=True)
class NodeStatus:
    last_round: int
    catchup_time_ns: int = 0


@dataclass
class Application:
    """An application (oracle resource) as reported by the ledger."""

    id: int
    creator: str
    global_schema: StateSchema = field(default_factory=StateSchema)
    local_schema: StateSchema = field(default_factory=StateSchema)
    created_at_round: int = 0
    global_state: Dict[bytes, bytes] = field(default_factory=dict)
    approval_program: bytes = b""
    clear_program: bytes = b""


@dataclass
class AccountInfo:
    address: str
    round: int = 0
    created_apps: List[Application] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class PendingTxInfo:
    txid: str
    confirmed_round: int = 0
    pool_error: str = ""
    application_index: int = 0

    @property
    def confirmed(self) -> bool:
        return self.confirmed_round > 0


@dataclass(frozen=True, slots=True)
class CompileResult:
    program: bytes
    hash: str

