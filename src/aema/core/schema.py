from __future__ import annotations

from typing import List, Tuple

from aema.ledger.types import AccountInfo, Application, StateSchema
from aema.program.teal import GLOBAL_BYTES, GLOBAL_INTS, LOCAL_BYTES, LOCAL_INTS


def fulfills_schema(app: Application) -> bool:
    """True if the application has the oracle's global state schema.

    An id of 0 never refers to a live application.
    """
    if int(app.id) == 0:
        return False
    if int(app.global_schema.num_byte_slice) != GLOBAL_BYTES:
        return False
    if int(app.global_schema.num_uint) != GLOBAL_INTS:
        return False
    return True


def generate_schemas() -> Tuple[StateSchema, StateSchema]:
    """Return (local, global) schemas to declare when creating the oracle."""
    local = StateSchema(num_uint=LOCAL_INTS, num_byte_slice=LOCAL_BYTES)
    glob = StateSchema(num_uint=GLOBAL_INTS, num_byte_slice=GLOBAL_BYTES)
    return local, glob


def valid_account(info: AccountInfo) -> bool:
    """True if the account holds exactly one app and it fulfils the schema."""
    return len(info.created_apps) == 1 and fulfills_schema(info.created_apps[0])


def partition_apps(apps: List[Application]) -> Tuple[List[Application], List[Application]]:
    valid: List[Application] = []
    invalid: List[Application] = []
    for app in apps:
        (valid if fulfills_schema(app) else invalid).append(app)
    return valid, invalid
