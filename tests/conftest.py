"""
Shared fixtures: manual timers, a private metrics registry and seeded state dirs.
"""

import json
import socket
from pathlib import Path
from typing import Callable, List

import pytest
from prometheus_client import CollectorRegistry

from shadowbox.config import RuntimeConfig

SB_ENV_VARS = [
    "SB_PUBLIC_IP",
    "SB_METRICS_URL",
    "SB_API_PORT",
    "SB_API_PREFIX",
    "SB_STATE_DIR",
    "SB_CERTIFICATE_FILE",
    "SB_PRIVATE_KEY_FILE",
    "SB_DEFAULT_SERVER_NAME",
    "LOG_LEVEL",
]


class ManualTimerHandle:
    def __init__(self, delay_seconds: float, callback: Callable[[], None]):
        self.delay_seconds = delay_seconds
        self.callback = callback
        self._cancelled = False
        self.fired = False

    def cancel(self) -> None:
        self._cancelled = True

    def cancelled(self) -> bool:
        return self._cancelled


class ManualTimerScheduler:
    """Collects scheduled callbacks and runs them only when told to."""

    def __init__(self):
        self.handles: List[ManualTimerHandle] = []

    def schedule(self, delay_seconds: float, callback: Callable[[], None]) -> ManualTimerHandle:
        handle = ManualTimerHandle(delay_seconds, callback)
        self.handles.append(handle)
        return handle

    @property
    def active(self) -> List[ManualTimerHandle]:
        return [h for h in self.handles if not h.cancelled() and not h.fired]

    def fire_all(self) -> int:
        fired = 0
        for handle in self.active:
            handle.fired = True
            handle.callback()
            fired += 1
        return fired


@pytest.fixture
def timer_scheduler():
    return ManualTimerScheduler()


@pytest.fixture
def registry():
    """Fresh prometheus registry so collectors never clash between tests."""
    return CollectorRegistry()


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    """Every test starts without SB_* variables or LOG_LEVEL set."""
    for name in SB_ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    yield


@pytest.fixture
def state_dir(tmp_path) -> Path:
    directory = tmp_path / "persisted-state"
    directory.mkdir()
    return directory


@pytest.fixture
def seeded_state_dir(state_dir) -> Path:
    """State dir with the documents a deployed server starts from."""
    (state_dir / "shadowbox_server_config.json").write_text(json.dumps({"name": "Test Server"}))
    (state_dir / "shadowbox_stats.json").write_text(json.dumps({}))
    return state_dir


@pytest.fixture
def server_env(monkeypatch, seeded_state_dir, tmp_path):
    monkeypatch.setenv("SB_PUBLIC_IP", "203.0.113.7")
    monkeypatch.setenv("SB_STATE_DIR", str(seeded_state_dir))
    monkeypatch.setenv("SB_CERTIFICATE_FILE", str(tmp_path / "cert.pem"))
    monkeypatch.setenv("SB_PRIVATE_KEY_FILE", str(tmp_path / "key.pem"))
    return seeded_state_dir


@pytest.fixture
def runtime_config(seeded_state_dir, tmp_path) -> RuntimeConfig:
    return RuntimeConfig(
        public_ip="203.0.113.7",
        state_dir=seeded_state_dir,
        certificate_file=tmp_path / "cert.pem",
        private_key_file=tmp_path / "key.pem",
    )


@pytest.fixture
def busy_port():
    """A loopback port already held by a listening socket."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        sock.listen()
        yield sock.getsockname()[1]
