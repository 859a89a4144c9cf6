from __future__ import annotations

import logging
import queue
import threading
import time
from dataclasses import dataclass
from typing import List, Optional

from aema.config import BufferConfig
from aema.core.schema import partition_apps
from aema.crypto.account import Account
from aema.ledger.client import CancelScope, LedgerClient
from aema.ledger.types import Application
from aema.log import log_event
from aema.metrics import inc_counter, set_gauge
from aema.program.teal import APPROVAL_SOURCE, CLEAR_SOURCE

log = logging.getLogger("aema.reconciler")

EVENT_CREATED = "created"
EVENT_DELETED = "deleted"


@dataclass(frozen=True, slots=True)
class ReconcileEvent:
    kind: str
    app_id: int
    ts_ms: int


def _now_ms() -> int:
    return int(time.time() * 1000)


class Reconciler:
    """Background loop keeping exactly one schema-valid oracle app on the account.

    Each pass:
      1. fetch account state
      2. invalid apps present  -> delete them (abort the pass on first failure)
      3. several valid apps    -> keep the oldest (lowest created_at_round), delete the rest
      4. no valid app          -> create one
      5. otherwise             -> nothing to do

    Remote failures never escape a pass: they are logged, counted and retried
    on the next pass. Progress is reported by putting a ReconcileEvent on
    `events` without blocking; a full queue drops the event.

    The readiness event and the cached current app id are written only here.
    """

    def __init__(
        self,
        *,
        client: LedgerClient,
        account: Account,
        cfg: BufferConfig,
        events: "queue.Queue[ReconcileEvent]",
        resource_lock: threading.RLock,
    ) -> None:
        self._client = client
        self._account = account
        self._cfg = cfg
        self._events = events
        self._resource_lock = resource_lock

        self._ready = threading.Event()
        self._stop = threading.Event()
        self._t: Optional[threading.Thread] = None
        self._started = False
        self._start_lock = threading.Lock()

        self._current_app_id: Optional[int] = None
        self._consecutive_failures = 0
        self._last_error = ""

    # ---- read-only views ----

    @property
    def started(self) -> bool:
        return self._started

    @property
    def ready(self) -> bool:
        return self._ready.is_set()

    def wait_ready(self, timeout: Optional[float] = None) -> bool:
        return self._ready.wait(timeout)

    @property
    def current_app_id(self) -> Optional[int]:
        with self._resource_lock:
            return self._current_app_id

    @property
    def last_error(self) -> str:
        return self._last_error

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    # ---- lifecycle ----

    def start(self) -> bool:
        with self._start_lock:
            if self._started:
                return False
            prev = self._t
            if prev is not None and prev.is_alive():
                # Previous loop has not returned from its last remote call.
                log.warning("reconciler restart refused; previous loop still running")
                return False
            self._stop.clear()
            name = f"aema-reconciler-{self._account.address[:8]}"
            self._t = threading.Thread(target=self._run, name=name, daemon=True)
            self._t.start()
            self._started = True
        inc_counter("reconciler_start_total", 1)
        return True

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        t = self._t
        if t is not None and t is not threading.current_thread():
            t.join(timeout=self._cfg.timeout_s if timeout is None else timeout)
        with self._start_lock:
            self._started = False
            if t is None or not t.is_alive():
                self._t = None
        inc_counter("reconciler_stop_total", 1)

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    @property
    def running(self) -> bool:
        t = self._t
        return t is not None and t.is_alive()

    # ---- loop ----

    def _run(self) -> None:
        while not self._stop.is_set():
            self.run_once()
            self._sleep(self._next_sleep_s())

    def _next_sleep_s(self) -> float:
        base = self._cfg.min_sleep_s
        if self._consecutive_failures <= 0:
            return base
        # Exponential backoff with cap.
        n = min(10, self._consecutive_failures - 1)
        cap = float(self._cfg.error_backoff_max_ms) / 1000.0
        return min(cap, base * (2**n))

    def _sleep(self, seconds: float) -> None:
        # Event.wait returns early on stop().
        self._stop.wait(max(0.0, float(seconds)))

    def run_once(self) -> bool:
        """Run a single reconciliation pass. Returns True if the pass had no failure."""
        inc_counter("reconcile_passes_total", 1)
        try:
            info = self._client.account_information(self._account.address)
        except Exception as err:
            self._mark_error(where="account_information", err=err)
            return False

        if not self._ready.is_set():
            self._ready.set()
            log_event(log, "reconciler_ready", address=self._account.address, apps=len(info.created_apps))

        valid, invalid = partition_apps(info.created_apps)
        set_gauge("reconciler_valid_apps", len(valid))
        set_gauge("reconciler_invalid_apps", len(invalid))

        if invalid:
            self._set_current(None)
            ok = self._delete_all(invalid, reason="invalid_schema")
        elif len(valid) > 1:
            ok = self._dedupe(valid)
        elif not valid:
            self._set_current(None)
            ok = self._create()
        else:
            self._set_current(int(valid[0].id))
            ok = True

        if ok:
            self._clear_error()
        return ok

    # ---- steps ----

    def _dedupe(self, valid: List[Application]) -> bool:
        ordered = sorted(valid, key=lambda a: (int(a.created_at_round), int(a.id)))
        keep, extra = ordered[0], ordered[1:]
        self._set_current(None)
        # Newest first; the survivor is always the oldest.
        if not self._delete_all(list(reversed(extra)), reason="duplicate"):
            return False
        self._set_current(int(keep.id))
        return True

    def _delete_all(self, apps: List[Application], *, reason: str) -> bool:
        for app in apps:
            if self._stop.is_set():
                return False
            try:
                with self._resource_lock:
                    self._client.delete_application(self._account, int(app.id), scope=self._op_scope())
            except Exception as err:
                self._mark_error(where="delete_application", err=err)
                return False
            inc_counter("reconciler_apps_deleted_total", 1)
            log_event(log, "app_deleted", app_id=int(app.id), reason=reason)
            self._emit(EVENT_DELETED, int(app.id))
        return True

    def _create(self) -> bool:
        if self._stop.is_set():
            return False
        try:
            with self._resource_lock:
                app_id = self._client.create_application(
                    self._account, APPROVAL_SOURCE, CLEAR_SOURCE, scope=self._op_scope()
                )
                self._current_app_id = int(app_id)
        except Exception as err:
            self._mark_error(where="create_application", err=err)
            return False
        inc_counter("reconciler_apps_created_total", 1)
        log_event(log, "app_created", app_id=int(app_id))
        self._emit(EVENT_CREATED, int(app_id))
        return True

    # ---- helpers ----

    def _op_scope(self) -> CancelScope:
        return CancelScope.from_args(timeout_s=self._cfg.timeout_s)

    def _set_current(self, app_id: Optional[int]) -> None:
        with self._resource_lock:
            self._current_app_id = app_id

    def _emit(self, kind: str, app_id: int) -> None:
        try:
            self._events.put_nowait(ReconcileEvent(kind=kind, app_id=int(app_id), ts_ms=_now_ms()))
        except queue.Full:
            inc_counter("reconciler_events_dropped_total", 1)
            log.warning("event queue full; dropped %s event for app %d", kind, app_id)

    def _mark_error(self, *, where: str, err: Exception) -> None:
        self._consecutive_failures += 1
        self._last_error = f"{where}:{type(err).__name__}:{err}"
        inc_counter("reconciler_errors_total", 1)
        set_gauge("reconciler_consecutive_failures", self._consecutive_failures)
        log.exception("reconcile pass failed (%s) failures=%s", where, self._consecutive_failures)

    def _clear_error(self) -> None:
        if self._consecutive_failures == 0 and not self._last_error:
            return
        self._consecutive_failures = 0
        self._last_error = ""
        set_gauge("reconciler_consecutive_failures", 0)
