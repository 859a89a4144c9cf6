from __future__ import annotations

"""Python evaluation of the oracle approval program.

States: entry -> access_check -> (allow | reject | dispatch) -> (allow | reject).

The verdict carries the visited states and the ordered storage mutations so a
ledger implementation can apply them atomically on accept.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Sequence, Tuple

from aema.ledger.txn import OnComplete
from aema.program.teal import MAX_ARGS, MODE_DELETE, MODE_PUT


class State(str, Enum):
    ENTRY = "entry"
    ACCESS_CHECK = "access_check"
    DISPATCH = "dispatch"
    ALLOW = "allow"
    REJECT = "reject"


@dataclass(frozen=True)
class AppCall:
    app_id: int
    sender: str
    creator: str
    on_complete: OnComplete
    args: Sequence[bytes] = ()
    note: bytes = b""


@dataclass(frozen=True)
class CallVerdict:
    ok: bool
    reason: str
    trace: Tuple[State, ...]
    puts: Tuple[Tuple[bytes, bytes], ...] = ()
    deletes: Tuple[bytes, ...] = ()

    @property
    def final_state(self) -> State:
        return self.trace[-1]


def _allow(trace: list, reason: str, *, puts=(), deletes=()) -> CallVerdict:
    trace.append(State.ALLOW)
    return CallVerdict(True, reason, tuple(trace), tuple(puts), tuple(deletes))


def _reject(trace: list, reason: str) -> CallVerdict:
    trace.append(State.REJECT)
    return CallVerdict(False, reason, tuple(trace))


def _dispatch(call: AppCall, trace: list) -> CallVerdict:
    args = [bytes(a) for a in call.args]
    if not args:
        return _allow(trace, "noop_call")
    if len(args) > MAX_ARGS:
        return _reject(trace, "too_many_args")

    mode = bytes(call.note or b"")
    if mode == MODE_PUT:
        if len(args) % 2 != 0:
            return _reject(trace, "odd_put_args")
        puts = [(args[i], args[i + 1]) for i in range(0, len(args), 2)]
        return _allow(trace, "put", puts=puts)
    if mode == MODE_DELETE:
        return _allow(trace, "delete", deletes=args)
    return _reject(trace, "unknown_mode")


def evaluate_app_call(call: AppCall) -> CallVerdict:
    trace = [State.ENTRY]

    if int(call.app_id) == 0:
        return _allow(trace, "create")

    trace.append(State.ACCESS_CHECK)
    if call.sender != call.creator:
        return _reject(trace, "not_creator")
    if call.on_complete == OnComplete.DELETE_APPLICATION:
        return _allow(trace, "delete_application")
    if call.on_complete != OnComplete.NOOP:
        return _reject(trace, "unsupported_on_complete")

    trace.append(State.DISPATCH)
    return _dispatch(call, trace)
