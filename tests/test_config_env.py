from __future__ import annotations

import logging
import os
from pathlib import Path

import pytest

from aema import env as aema_env
from aema.config import BufferConfig, buffer_config_from_env
from aema.log import configure_logging, log_event
from aema.metrics import counter, inc_counter, set_gauge, snapshot

_VARS = (
    "AEMA_MIN_SLEEP_MS",
    "AEMA_TIMEOUT_MS",
    "AEMA_CONFIRM_ROUNDS",
    "AEMA_EVENT_QUEUE_SIZE",
    "AEMA_ERROR_BACKOFF_MAX_MS",
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch):
    for name in _VARS:
        monkeypatch.delenv(name, raising=False)
    aema_env._reset_for_tests()
    yield
    aema_env._reset_for_tests()


def test_defaults() -> None:
    cfg = buffer_config_from_env(load_dotenv=False)
    assert cfg == BufferConfig()
    assert cfg.min_sleep_s == 5.0
    assert cfg.timeout_s == 30.0
    assert cfg.confirm_rounds == 10
    assert cfg.event_queue_size == 64


def test_env_overrides_and_floors(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("AEMA_MIN_SLEEP_MS", "1")
    monkeypatch.setenv("AEMA_TIMEOUT_MS", "5")
    monkeypatch.setenv("AEMA_CONFIRM_ROUNDS", "0")
    monkeypatch.setenv("AEMA_EVENT_QUEUE_SIZE", "8")
    monkeypatch.setenv("AEMA_ERROR_BACKOFF_MAX_MS", "2")

    cfg = buffer_config_from_env(load_dotenv=False)
    assert cfg.min_sleep_ms == 10
    assert cfg.timeout_ms == 100
    assert cfg.confirm_rounds == 1
    assert cfg.event_queue_size == 8
    # Backoff cap never drops below the base sleep.
    assert cfg.error_backoff_max_ms == 10


def test_garbage_values_fall_back_to_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("AEMA_MIN_SLEEP_MS", "soon")
    monkeypatch.setenv("AEMA_TIMEOUT_MS", "")
    cfg = buffer_config_from_env(load_dotenv=False)
    assert cfg.min_sleep_ms == 5_000
    assert cfg.timeout_ms == 30_000


def test_with_overrides_returns_new_config() -> None:
    base = BufferConfig()
    fast = base.with_overrides(min_sleep_ms=10)
    assert fast.min_sleep_ms == 10
    assert base.min_sleep_ms == 5_000


def test_dotenv_fills_missing_but_never_overrides(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    p = tmp_path / "buffer.env"
    p.write_text("AEMA_TIMEOUT_MS=1234\nAEMA_MIN_SLEEP_MS=999\n", encoding="utf-8")

    # setenv first so monkeypatch restores both names afterwards.
    monkeypatch.setenv("AEMA_TIMEOUT_MS", "x")
    monkeypatch.delenv("AEMA_TIMEOUT_MS")
    monkeypatch.setenv("AEMA_MIN_SLEEP_MS", "50")
    monkeypatch.setenv("AEMA_DOTENV_PATH", str(p))

    cfg = buffer_config_from_env()
    assert cfg.timeout_ms == 1234
    assert cfg.min_sleep_ms == 50

    # Loaded once per process.
    assert aema_env.load_dotenv_if_present() is False
    assert os.environ["AEMA_TIMEOUT_MS"] == "1234"


def test_missing_dotenv_is_ignored(tmp_path: Path) -> None:
    assert aema_env.load_dotenv_if_present(str(tmp_path / "nope.env")) is False


def test_log_event_emits_one_json_line(caplog: pytest.LogCaptureFixture) -> None:
    logger = logging.getLogger("test.aema.events")
    with caplog.at_level(logging.INFO, logger="test.aema.events"):
        log_event(logger, "chunk_confirmed", op="put", key=b"k", chunk=0)
    assert len(caplog.records) == 1
    msg = caplog.records[0].getMessage()
    assert msg.startswith("{") and '"event":"chunk_confirmed"' in msg
    assert '"key":"k"' in msg


def test_configure_logging_is_idempotent(monkeypatch: pytest.MonkeyPatch) -> None:
    root = logging.getLogger("aema")
    saved = (list(root.handlers), root.level, root.propagate, getattr(root, "_aema_configured", False))
    try:
        monkeypatch.setenv("AEMA_LOG_LEVEL", "debug")
        configure_logging()
        configure_logging()
        assert len(root.handlers) == 1
        assert root.level == logging.DEBUG
    finally:
        root.handlers = saved[0]
        root.setLevel(saved[1])
        root.propagate = saved[2]
        setattr(root, "_aema_configured", saved[3])


def test_metrics_counters_and_gauges() -> None:
    start = counter("test_metric_total")
    inc_counter("test_metric_total", 2)
    inc_counter("", 5)
    set_gauge("test_gauge", 7)
    snap = snapshot()
    assert counter("test_metric_total") == start + 2
    assert snap["gauges"]["test_gauge"] == 7
    assert "" not in snap["counters"]
