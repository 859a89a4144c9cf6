from __future__ import annotations

import queue
import threading
import time

from aema.config import BufferConfig
from aema.core.reconciler import EVENT_CREATED, EVENT_DELETED, ReconcileEvent, Reconciler
from aema.core.schema import fulfills_schema, valid_account
from aema.crypto.account import generate_account
from aema.ledger.memory import InMemoryLedger
from aema.metrics import counter

CFG = BufferConfig(min_sleep_ms=10, timeout_ms=2_000, error_backoff_max_ms=80)


def _mk(ledger: InMemoryLedger, *, maxsize: int = 0):
    acc = generate_account()
    events: "queue.Queue[ReconcileEvent]" = queue.Queue(maxsize=maxsize)
    r = Reconciler(client=ledger, account=acc, cfg=CFG, events=events, resource_lock=threading.RLock())
    return acc, events, r


def _drain(events: "queue.Queue[ReconcileEvent]"):
    out = []
    while True:
        try:
            out.append(events.get_nowait())
        except queue.Empty:
            return out


def _wait_for(pred, timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if pred():
            return True
        time.sleep(0.01)
    return bool(pred())


def test_invalid_apps_are_replaced_by_one_valid_app() -> None:
    ledger = InMemoryLedger(seed=1)
    acc, events, r = _mk(ledger)
    dummy = ledger.create_dummy_apps(6, 18, 32, creator=acc.address)

    assert r.run_once() is True
    assert r.ready
    assert r.current_app_id is None
    assert r.run_once() is True

    evs = _drain(events)
    assert [e.kind for e in evs] == [EVENT_DELETED] * 6 + [EVENT_CREATED]
    assert sorted(e.app_id for e in evs[:6]) == sorted(dummy)

    info = ledger.account_information(acc.address)
    assert valid_account(info)
    assert r.current_app_id == info.created_apps[0].id == evs[-1].app_id


def test_oldest_valid_app_survives_dedupe() -> None:
    ledger = InMemoryLedger()
    acc, events, r = _mk(ledger)
    a = ledger.seed_app(creator=acc.address, created_at_round=7)
    b = ledger.seed_app(creator=acc.address, created_at_round=3)
    c = ledger.seed_app(creator=acc.address, created_at_round=5)

    assert r.run_once() is True
    assert r.current_app_id == b

    evs = _drain(events)
    assert [e.kind for e in evs] == [EVENT_DELETED, EVENT_DELETED]
    # Newest first.
    assert [e.app_id for e in evs] == [a, c]
    assert [x.id for x in ledger.account_information(acc.address).created_apps] == [b]


def test_equal_rounds_keep_lowest_id() -> None:
    ledger = InMemoryLedger()
    acc, events, r = _mk(ledger)
    ids = [ledger.seed_app(creator=acc.address, created_at_round=4) for _ in range(3)]

    assert r.run_once() is True
    assert r.current_app_id == ids[0]
    assert [e.app_id for e in _drain(events)] == [ids[2], ids[1]]


def test_invalid_apps_are_deleted_before_valid_one_is_adopted() -> None:
    ledger = InMemoryLedger()
    acc, events, r = _mk(ledger)
    good = ledger.seed_app(creator=acc.address)
    bad = ledger.seed_app(creator=acc.address, global_bytes=12, global_ints=2)

    assert r.run_once() is True
    assert r.current_app_id is None
    assert [(e.kind, e.app_id) for e in _drain(events)] == [(EVENT_DELETED, bad)]

    assert r.run_once() is True
    assert r.current_app_id == good
    assert _drain(events) == []


def test_zero_apps_creates_one() -> None:
    ledger = InMemoryLedger()
    acc, events, r = _mk(ledger)

    assert r.run_once() is True
    evs = _drain(events)
    assert [e.kind for e in evs] == [EVENT_CREATED]
    app = ledger.application_by_id(evs[0].app_id)
    assert fulfills_schema(app)
    assert r.current_app_id == app.id


def test_single_valid_app_is_left_alone() -> None:
    ledger = InMemoryLedger()
    acc, events, r = _mk(ledger)
    app_id = ledger.seed_app(creator=acc.address)

    assert r.run_once() is True
    assert r.current_app_id == app_id
    assert ledger.submitted == []
    assert _drain(events) == []


def test_failing_delete_keeps_loop_alive_until_it_recovers() -> None:
    ledger = InMemoryLedger(seed=2)
    acc, events, r = _mk(ledger)
    ledger.create_dummy_apps(3, 18, 32, creator=acc.address)
    ledger.set_error(True, "delete_application")

    assert r.run_once() is False
    assert r.run_once() is False
    assert r.consecutive_failures == 2
    assert "delete_application" in r.last_error
    assert _drain(events) == []

    ledger.set_error(False, "delete_application")
    assert r.run_once() is True
    assert r.consecutive_failures == 0
    assert r.last_error == ""
    assert r.run_once() is True
    assert valid_account(ledger.account_information(acc.address))


def test_account_lookup_failure_leaves_reconciler_not_ready() -> None:
    ledger = InMemoryLedger()
    _, _, r = _mk(ledger)
    ledger.set_error(True, "account_information")

    assert r.run_once() is False
    assert not r.ready
    assert not r.wait_ready(0.01)


def test_create_failure_emits_nothing() -> None:
    ledger = InMemoryLedger()
    acc, events, r = _mk(ledger)
    ledger.set_error(True, "create_application")

    assert r.run_once() is False
    assert r.ready
    assert r.current_app_id is None
    assert _drain(events) == []
    assert ledger.account_information(acc.address).created_apps == []


def test_backoff_grows_and_is_capped() -> None:
    ledger = InMemoryLedger()
    _, _, r = _mk(ledger)
    assert r._next_sleep_s() == CFG.min_sleep_s

    ledger.set_error(True, "account_information")
    sleeps = []
    for _ in range(5):
        r.run_once()
        sleeps.append(r._next_sleep_s())
    assert sleeps == [0.01, 0.02, 0.04, 0.08, 0.08]


def test_full_event_queue_drops_without_blocking() -> None:
    ledger = InMemoryLedger(seed=4)
    acc, events, r = _mk(ledger, maxsize=1)
    ledger.create_dummy_apps(3, 18, 32, creator=acc.address)
    dropped = counter("reconciler_events_dropped_total")

    assert r.run_once() is True
    assert events.qsize() == 1
    assert counter("reconciler_events_dropped_total") == dropped + 2
    assert ledger.account_information(acc.address).created_apps == []


def test_background_loop_converges_and_stops() -> None:
    ledger = InMemoryLedger(seed=5)
    acc, events, r = _mk(ledger)
    ledger.create_dummy_apps(2, 18, 32, creator=acc.address)

    assert r.start() is True
    assert r.start() is False
    try:
        assert r.wait_ready(5.0)
        assert _wait_for(lambda: r.current_app_id is not None)
    finally:
        r.stop(timeout=5.0)

    assert not r.started
    assert r.stopping
    assert valid_account(ledger.account_information(acc.address))
    kinds = [e.kind for e in _drain(events)]
    assert kinds.count(EVENT_CREATED) == 1
    assert kinds.count(EVENT_DELETED) == 2


def test_background_loop_survives_failing_deletes() -> None:
    ledger = InMemoryLedger(seed=6)
    acc, events, r = _mk(ledger)
    ledger.create_dummy_apps(2, 18, 32, creator=acc.address)
    ledger.set_error(True, "delete_application")

    assert r.start() is True
    try:
        assert r.wait_ready(5.0)
        assert _wait_for(lambda: r.consecutive_failures > 2)
        assert r.running
        assert r.started
    finally:
        r.stop(timeout=5.0)

    assert not r.running
    assert _drain(events) == []
    assert len(ledger.account_information(acc.address).created_apps) == 2


class _GatedLedger(InMemoryLedger):
    """account_information blocks until `gate` is set."""

    def __init__(self) -> None:
        super().__init__()
        self.gate = threading.Event()
        self.entered = threading.Event()

    def account_information(self, address: str):
        self.entered.set()
        assert self.gate.wait(5.0)
        return super().account_information(address)


def _loop_threads(acc) -> int:
    name = f"aema-reconciler-{acc.address[:8]}"
    return sum(1 for t in threading.enumerate() if t.name == name and t.is_alive())


def test_restart_waits_for_previous_loop_to_exit() -> None:
    ledger = _GatedLedger()
    acc, events, r = _mk(ledger)

    assert r.start() is True
    assert ledger.entered.wait(5.0)
    r.stop(timeout=0.05)
    assert not r.started
    assert r.running

    # Old loop is stuck in a remote call; a second loop must not start.
    assert r.start() is False
    assert _loop_threads(acc) == 1

    ledger.gate.set()
    assert _wait_for(lambda: not r.running)
    assert _loop_threads(acc) == 0
    # The stopped loop never acts on the late account snapshot.
    assert ledger.account_information(acc.address).created_apps == []

    assert r.start() is True
    try:
        assert _wait_for(lambda: r.current_app_id is not None)
        assert _loop_threads(acc) == 1
    finally:
        r.stop(timeout=5.0)

    kinds = [e.kind for e in _drain(events)]
    assert kinds == [EVENT_CREATED]
