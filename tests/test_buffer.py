from __future__ import annotations

import threading
import time

import pytest

from aema import (
    AlgoBuffer,
    BufferNotManaged,
    NoTargetResource,
    ReconcileEvent,
    create_buffer,
    generate_private_key_b64,
)
from aema.config import BufferConfig
from aema.core.reconciler import EVENT_CREATED
from aema.crypto.account import account_from_private_key, is_valid_address
from aema.ledger.memory import InMemoryLedger
from aema.program.teal import MODE_DELETE, MODE_PUT

CFG = BufferConfig(min_sleep_ms=10, timeout_ms=2_000, error_backoff_max_ms=20)


def _wait_for(pred, timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if pred():
            return True
        time.sleep(0.01)
    return bool(pred())


def _managed(ledger: InMemoryLedger) -> AlgoBuffer:
    buf, err = create_buffer(ledger, generate_private_key_b64(), CFG)
    assert err is None
    buf.manage()
    assert buf.wait_ready(5.0)
    assert _wait_for(lambda: buf.current_app_id is not None)
    return buf


def test_create_buffer_reports_probe_failures_but_returns_buffer() -> None:
    ledger = InMemoryLedger()
    ledger.set_error(True, "health_check")
    buf, err = create_buffer(ledger, None, CFG)
    assert err is not None
    assert err.reason == "health_check_failed"
    assert is_valid_address(buf.address)

    ledger.clear_errors()
    ledger.set_error(True, "status")
    buf, err = create_buffer(ledger, None, CFG)
    assert err is not None
    assert err.reason == "status_failed"
    assert is_valid_address(buf.address)


def test_create_buffer_uses_supplied_key() -> None:
    key = generate_private_key_b64()
    buf, err = create_buffer(InMemoryLedger(), key, CFG)
    assert err is None
    assert buf.address == account_from_private_key(key).address
    assert buf.config == CFG


def test_operations_before_manage_are_fatal() -> None:
    buf, _ = create_buffer(InMemoryLedger(), None, CFG)
    assert not issubclass(BufferNotManaged, Exception)

    with pytest.raises(BufferNotManaged):
        buf.get_storage()
    with pytest.raises(BufferNotManaged):
        buf.put_elements({"a": "1"})
    with pytest.raises(BufferNotManaged):
        buf.delete_elements("a")


def test_put_then_get_storage() -> None:
    ledger = InMemoryLedger()
    with _managed(ledger) as buf:
        assert buf.put_elements({"a": "1", "b": "2"}) == 1
        assert buf.get_storage() == {b"a": b"1", b"b": b"2"}

        assert buf.delete_elements("a") == 1
        assert buf.get_storage() == {b"b": b"2"}


def test_put_is_chunked_by_eight_pairs() -> None:
    ledger = InMemoryLedger()
    with _managed(ledger) as buf:
        before = len(ledger.submitted)
        assert buf.put_elements({"k%02d" % i: "v%02d" % i for i in range(18)}) == 3

        sent = [s.txn for s in ledger.submitted[before:]]
        assert [len(t.app_args) for t in sent] == [16, 16, 4]
        assert all(t.note == MODE_PUT for t in sent)
        assert all(t.app_id == buf.current_app_id for t in sent)
        assert len(buf.get_storage()) == 18


def test_delete_is_chunked_by_sixteen_keys() -> None:
    ledger = InMemoryLedger()
    with _managed(ledger) as buf:
        before = len(ledger.submitted)
        assert buf.delete_elements(*["k%02d" % i for i in range(20)]) == 2

        sent = [s.txn for s in ledger.submitted[before:]]
        assert [len(t.app_args) for t in sent] == [16, 4]
        assert all(t.note == MODE_DELETE for t in sent)


def test_no_valid_app_means_no_target() -> None:
    ledger = InMemoryLedger()
    ledger.set_error(True, "create_application")
    buf, _ = create_buffer(ledger, None, CFG)
    with buf:
        buf.manage()
        assert buf.wait_ready(5.0)
        with pytest.raises(NoTargetResource):
            buf.put_elements({"a": "1"})
        with pytest.raises(NoTargetResource):
            buf.get_storage()


def test_manage_emits_creation_event() -> None:
    ledger = InMemoryLedger()
    with _managed(ledger) as buf:
        ev = buf.events.get(timeout=5.0)
        assert isinstance(ev, ReconcileEvent)
        assert ev.kind == EVENT_CREATED
        assert ev.app_id == buf.current_app_id


def test_context_manager_stops_reconciler() -> None:
    ledger = InMemoryLedger()
    with _managed(ledger) as buf:
        buf.manage()
        assert buf._reconciler.started
    assert not buf._reconciler.started


class _SlowWriteLedger(InMemoryLedger):
    """Put transactions wait on `release`; deletes are recorded in `calls`."""

    def __init__(self) -> None:
        super().__init__()
        self.release = threading.Event()
        self.writing = threading.Event()
        self.calls: list = []

    def execute_transaction(self, account, txn, **kw):
        if txn.note == MODE_PUT:
            self.writing.set()
            assert self.release.wait(5.0)
            info = super().execute_transaction(account, txn, **kw)
            self.calls.append("put")
            return info
        return super().execute_transaction(account, txn, **kw)

    def delete_application(self, account, app_id, **kw):
        self.calls.append(("delete", int(app_id)))
        return super().delete_application(account, app_id, **kw)


def test_reconciler_delete_waits_for_inflight_write() -> None:
    ledger = _SlowWriteLedger()
    with _managed(ledger) as buf:
        keep = buf.current_app_id
        writer = threading.Thread(target=buf.put_elements, args=({"a": "1"},))
        writer.start()
        assert ledger.writing.wait(5.0)

        extra = ledger.seed_app(creator=buf.address, created_at_round=10_000)
        # The reconciler sees the duplicate but the write still holds the lock.
        time.sleep(0.3)
        assert ledger.calls == []

        ledger.release.set()
        writer.join(5.0)
        assert not writer.is_alive()
        assert _wait_for(lambda: ("delete", extra) in ledger.calls)
        assert ledger.calls[0] == "put"
        assert _wait_for(lambda: buf.current_app_id == keep)
        assert buf.get_storage() == {b"a": b"1"}
