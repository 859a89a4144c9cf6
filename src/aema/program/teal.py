from __future__ import annotations

"""Deployable oracle program (TEAL) and the constants it is built around.

The approval program is the binding contract for every transaction the
buffer builds:

  - creation call                    -> accept
  - sender != creator                -> reject
  - DeleteApplication by creator     -> accept
  - any other non-NoOp completion    -> reject
  - NoOp by creator, no args         -> accept
  - NoOp by creator, note "put"      -> app_global_put over (key, value) arg pairs
  - NoOp by creator, note "delete"   -> app_global_del over key args
  - any other note                   -> reject

aema.program.state_machine evaluates the same machine in Python.
"""

# Schema the single oracle application must declare.
GLOBAL_INTS = 0
GLOBAL_BYTES = 64
LOCAL_INTS = 0
LOCAL_BYTES = 0

# Per-call argument ceiling; a (key, value) pair uses two slots.
MAX_ARGS = 16
MAX_KV_ARGS = MAX_ARGS // 2

MODE_PUT = b"put"
MODE_DELETE = b"delete"

TEAL_VERSION = 5

APPROVAL_SOURCE = f"""#pragma version {TEAL_VERSION}
// creation
txn ApplicationID
int 0
==
bnz allow

// access check: creator only
txn Sender
global CreatorAddress
==
bz reject

txn OnCompletion
int DeleteApplication
==
bnz allow

txn OnCompletion
int NoOp
==
bz reject

// dispatch
txn NumAppArgs
int 0
==
bnz allow

txn Note
byte "{MODE_PUT.decode()}"
==
bnz put

txn Note
byte "{MODE_DELETE.decode()}"
==
bnz delete

b reject

put:
txn NumAppArgs
int 2
%
bnz reject
int 0
store 0
put_loop:
load 0
txn NumAppArgs
==
bnz allow
load 0
txnas ApplicationArgs
load 0
int 1
+
txnas ApplicationArgs
app_global_put
load 0
int 2
+
store 0
b put_loop

delete:
int 0
store 0
delete_loop:
load 0
txn NumAppArgs
==
bnz allow
load 0
txnas ApplicationArgs
app_global_del
load 0
int 1
+
store 0
b delete_loop

reject:
int 0
return

allow:
int 1
return
"""

CLEAR_SOURCE = f"""#pragma version {TEAL_VERSION}
int 1
return
"""
