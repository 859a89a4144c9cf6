from __future__ import annotations

import os
from dataclasses import dataclass, replace

from aema.env import load_dotenv_if_present


@dataclass(frozen=True, slots=True)
class BufferConfig:
    # Reconciler pacing
    min_sleep_ms: int = 5_000
    error_backoff_max_ms: int = 60_000

    # Blocking sub-steps (confirmation waits, probes)
    timeout_ms: int = 30_000
    confirm_rounds: int = 10

    # Reconciliation event channel
    event_queue_size: int = 64

    @property
    def min_sleep_s(self) -> float:
        return float(self.min_sleep_ms) / 1000.0

    @property
    def timeout_s(self) -> float:
        return float(self.timeout_ms) / 1000.0

    def with_overrides(self, **kw) -> "BufferConfig":
        return replace(self, **kw)


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.environ.get(name, str(default)))
    except ValueError:
        return int(default)


def buffer_config_from_env(*, load_dotenv: bool = True) -> BufferConfig:
    if load_dotenv:
        load_dotenv_if_present()

    min_sleep_ms = max(10, _env_int("AEMA_MIN_SLEEP_MS", 5_000))
    timeout_ms = max(100, _env_int("AEMA_TIMEOUT_MS", 30_000))
    confirm_rounds = max(1, _env_int("AEMA_CONFIRM_ROUNDS", 10))
    event_queue_size = max(1, _env_int("AEMA_EVENT_QUEUE_SIZE", 64))
    error_backoff_max_ms = max(min_sleep_ms, _env_int("AEMA_ERROR_BACKOFF_MAX_MS", 60_000))

    return BufferConfig(
        min_sleep_ms=int(min_sleep_ms),
        error_backoff_max_ms=int(error_backoff_max_ms),
        timeout_ms=int(timeout_ms),
        confirm_rounds=int(confirm_rounds),
        event_queue_size=int(event_queue_size),
    )
