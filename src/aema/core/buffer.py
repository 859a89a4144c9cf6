from __future__ import annotations

import logging
import queue
import threading
from typing import Dict, Mapping, Optional, Tuple, Union

from aema.config import BufferConfig, buffer_config_from_env
from aema.core.batcher import MutationBatcher
from aema.core.reconciler import ReconcileEvent, Reconciler
from aema.crypto.account import Account, account_from_optional_key
from aema.errors import BufferNotManaged, NoTargetResource, SetupError
from aema.ledger.client import KV, LedgerClient
from aema.log import log_event

log = logging.getLogger("aema.buffer")


class AlgoBuffer:
    """Key-value buffer backed by a single oracle application.

    Usage:
        buf, err = create_buffer(client, private_key)
        buf.manage()
        buf.wait_ready(timeout=...)
        buf.put_elements({"a": "1"})
        buf.get_storage()

    get_storage / put_elements / delete_elements raise BufferNotManaged if
    the reconciler has not finished its first account inspection.
    """

    def __init__(self, client: LedgerClient, account: Account, cfg: Optional[BufferConfig] = None) -> None:
        self._client = client
        self._account = account
        self._cfg = cfg or buffer_config_from_env()

        self._resource_lock = threading.RLock()
        self.events: "queue.Queue[ReconcileEvent]" = queue.Queue(maxsize=int(self._cfg.event_queue_size))

        self._reconciler = Reconciler(
            client=client,
            account=account,
            cfg=self._cfg,
            events=self.events,
            resource_lock=self._resource_lock,
        )
        self._batcher = MutationBatcher(
            client,
            account,
            target=lambda: self._reconciler.current_app_id,
            cfg=self._cfg,
        )

    # ---- identity / state ----

    @property
    def account(self) -> Account:
        return self._account

    @property
    def address(self) -> str:
        return self._account.address

    @property
    def config(self) -> BufferConfig:
        return self._cfg

    @property
    def ready(self) -> bool:
        return self._reconciler.ready

    @property
    def current_app_id(self) -> Optional[int]:
        return self._reconciler.current_app_id

    def wait_ready(self, timeout: Optional[float] = None) -> bool:
        return self._reconciler.wait_ready(timeout)

    # ---- lifecycle ----

    def manage(self) -> None:
        """Start the reconciler thread. Calling it again is a no-op."""
        if self._reconciler.start():
            log_event(log, "manage_started", address=self.address)

    def stop(self, timeout: Optional[float] = None) -> None:
        self._reconciler.stop(timeout)

    def __enter__(self) -> "AlgoBuffer":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()

    # ---- operations ----

    def _require_managed(self, operation: str) -> None:
        if not self._reconciler.ready:
            raise BufferNotManaged(operation)

    def get_storage(self) -> Dict[bytes, bytes]:
        """Return the current global storage of the oracle application."""
        self._require_managed("get_storage")
        with self._resource_lock:
            app_id = self._reconciler.current_app_id
            if not app_id:
                raise NoTargetResource("no_target", "no_single_valid_application", {"address": self.address})
            app = self._client.application_by_id(int(app_id))
        return dict(app.global_state)

    def put_elements(
        self,
        entries: Mapping[KV, KV],
        *,
        cancel: Optional[threading.Event] = None,
        timeout_s: Optional[float] = None,
    ) -> int:
        """Write entries in chunks. Returns the number of transactions sent.

        Raises WriteError on the first failed chunk; earlier chunks remain
        applied.
        """
        self._require_managed("put_elements")
        with self._resource_lock:
            return self._batcher.put_entries(entries, cancel=cancel, timeout_s=timeout_s)

    def delete_elements(
        self,
        *keys: KV,
        cancel: Optional[threading.Event] = None,
        timeout_s: Optional[float] = None,
    ) -> int:
        self._require_managed("delete_elements")
        with self._resource_lock:
            return self._batcher.delete_entries(keys, cancel=cancel, timeout_s=timeout_s)


def create_buffer(
    client: LedgerClient,
    private_key: Union[str, bytes, None] = None,
    cfg: Optional[BufferConfig] = None,
) -> Tuple[AlgoBuffer, Optional[SetupError]]:
    """Build a buffer for the account behind private_key (generated if None).

    The buffer is always returned. The second item is a SetupError if the
    health check or the status probe failed.
    """
    account = account_from_optional_key(private_key)
    buf = AlgoBuffer(client, account, cfg)

    try:
        client.health_check()
    except Exception as e:
        log_event(log, "setup_probe_failed", level=logging.WARNING, probe="health_check", error=str(e))
        return buf, SetupError("setup", "health_check_failed", {"error": f"{type(e).__name__}:{e}"})

    try:
        client.status()
    except Exception as e:
        log_event(log, "setup_probe_failed", level=logging.WARNING, probe="status", error=str(e))
        return buf, SetupError("setup", "status_failed", {"error": f"{type(e).__name__}:{e}"})

    log_event(log, "buffer_created", address=account.address)
    return buf, None
