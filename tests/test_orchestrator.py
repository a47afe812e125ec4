"""
Tests for the startup sequence.

Exporter, scraper and API listener are replaced with fakes so the ordering
and failure rules can be checked without real sockets or subprocesses.
"""

import asyncio
import json
import logging
import socket
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from shadowbox.core.exceptions import (
    ConfigLoadError,
    DependencyConstructionError,
    ListenError,
    ScraperLaunchError,
    ValidationError,
)
from shadowbox.core.startup_state import StartupState
from shadowbox.orchestrator import StartupOrchestrator, _log_transient_failure
from shadowbox.services.access_keys import create_access_key_repository

pytestmark = pytest.mark.asyncio

EXPORTER_ADDRESS = "localhost:41000"


class FakeApiServer:
    instances = []

    def __init__(self, app, config):
        self.app = app
        self.config = config
        self.listening = False
        FakeApiServer.instances.append(self)

    async def serve(self, on_listening):
        self.listening = True
        on_listening()


@pytest.fixture(autouse=True)
def quiet_logging():
    FakeApiServer.instances = []
    with patch("shadowbox.orchestrator.setup_logging"):
        yield


@pytest.fixture
def exporter():
    exporter = MagicMock()
    exporter.start = AsyncMock(return_value=EXPORTER_ADDRESS)
    exporter.stop = AsyncMock()
    return exporter


@pytest.fixture
def scraper_handle():
    handle = MagicMock()
    handle.stop = AsyncMock()
    return handle


@pytest.fixture
def supervisor(scraper_handle):
    supervisor = MagicMock()
    supervisor.launch = AsyncMock(return_value=scraper_handle)
    return supervisor


async def fast_repository_factory(config, proxy_metrics):
    return await create_access_key_repository(
        config.public_ip,
        config.persistent_path("shadowbox_config.json"),
        proxy_metrics,
        port_for_new_access_keys=8388,
    )


def make_orchestrator(registry, exporter, supervisor, repository_factory=fast_repository_factory, **kwargs):
    return StartupOrchestrator(
        registry=registry,
        exporter=exporter,
        scraper_supervisor=supervisor,
        repository_factory=repository_factory,
        api_server_factory=kwargs.pop("api_server_factory", FakeApiServer),
        **kwargs,
    )


def free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


async def test_happy_path_reaches_serving(server_env, registry, exporter, supervisor, scraper_handle):
    orchestrator = make_orchestrator(registry, exporter, supervisor)

    await orchestrator.run()

    assert orchestrator.state == StartupState.SERVING
    assert orchestrator.state_machine.history == [
        StartupState.VALIDATING,
        StartupState.EXPORTING_METRICS,
        StartupState.SUPERVISING_SCRAPER,
        StartupState.LOADING_CONFIG,
        StartupState.CONSTRUCTING_DEPENDENT_SERVICE,
        StartupState.SERVING,
    ]
    assert len(FakeApiServer.instances) == 1
    assert FakeApiServer.instances[0].listening
    assert orchestrator.repository is not None

    # Shutdown stops owned children
    scraper_handle.stop.assert_awaited_once()
    exporter.stop.assert_awaited_once()


async def test_scrape_config_uses_exporter_address(server_env, registry, exporter, supervisor):
    orchestrator = make_orchestrator(registry, exporter, supervisor)

    await orchestrator.run()

    config_path, scrape_config, args = supervisor.launch.await_args.args
    assert config_path == server_env / "prometheus" / "config.yml"
    targets = [job.static_configs[0].targets for job in scrape_config.scrape_configs]
    assert targets == [["localhost:9090"], [EXPORTER_ADDRESS]]
    assert args[args.index("--storage.tsdb.retention.time") + 1] == "31d"


async def test_pending_metrics_are_flushed_on_shutdown(server_env, registry, exporter, supervisor):
    orchestrator = make_orchestrator(registry, exporter, supervisor)

    await orchestrator.run()

    stats = json.loads((server_env / "shadowbox_stats.json").read_text())
    assert set(stats) == {"transferStats", "hourlyMetrics"}
    assert "startUtcMs" in stats["hourlyMetrics"]
    assert not orchestrator.metrics_config.pending


async def test_transfer_recorded_while_serving_is_on_disk_after_shutdown(server_env, registry, exporter, supervisor):
    class TrafficApiServer(FakeApiServer):
        async def serve(self, on_listening):
            await super().serve(on_listening)
            orchestrator.shared_metrics.set_sharing_enabled(True)
            orchestrator.proxy_metrics.data_bytes.labels(access_key="0").inc(2048)

    orchestrator = make_orchestrator(registry, exporter, supervisor, api_server_factory=TrafficApiServer)

    await orchestrator.run()

    stats = json.loads((server_env / "shadowbox_stats.json").read_text())
    daily = stats["transferStats"]["dailyBytesByUserId"]
    assert [bucket["0"] for bucket in daily.values()] == [2048]
    assert stats["hourlyMetrics"]["bytesByUserId"] == {"0": 2048}
    assert not orchestrator.metrics_config.pending


async def test_non_numeric_port_fails_before_any_side_effect(
    monkeypatch, tmp_path, registry, exporter, supervisor
):
    state_dir = tmp_path / "empty-state"
    state_dir.mkdir()
    monkeypatch.setenv("SB_PUBLIC_IP", "203.0.113.7")
    monkeypatch.setenv("SB_STATE_DIR", str(state_dir))
    monkeypatch.setenv("SB_CERTIFICATE_FILE", "/tmp/cert.pem")
    monkeypatch.setenv("SB_PRIVATE_KEY_FILE", "/tmp/key.pem")
    monkeypatch.setenv("SB_API_PORT", "not-a-port")
    orchestrator = make_orchestrator(registry, exporter, supervisor)

    with pytest.raises(ValidationError) as exc_info:
        await orchestrator.run()

    assert "SB_API_PORT" in str(exc_info.value)
    assert orchestrator.state == StartupState.FAILED
    exporter.start.assert_not_awaited()
    supervisor.launch.assert_not_awaited()
    assert list(state_dir.iterdir()) == []
    assert FakeApiServer.instances == []


async def test_missing_hostname_names_parameter(server_env, monkeypatch, registry, exporter, supervisor):
    monkeypatch.delenv("SB_PUBLIC_IP")
    orchestrator = make_orchestrator(registry, exporter, supervisor)

    with pytest.raises(ValidationError) as exc_info:
        await orchestrator.run()

    assert exc_info.value.parameter == "SB_PUBLIC_IP"
    assert "SB_PUBLIC_IP" in str(exc_info.value)
    assert orchestrator.state_machine.history == [StartupState.VALIDATING, StartupState.FAILED]
    exporter.start.assert_not_awaited()


async def test_scraper_spawn_failure_is_fatal(server_env, registry, exporter, supervisor):
    supervisor.launch.side_effect = ScraperLaunchError("prometheus", FileNotFoundError("prometheus"))
    orchestrator = make_orchestrator(registry, exporter, supervisor)

    with pytest.raises(ScraperLaunchError):
        await orchestrator.run()

    assert orchestrator.state == StartupState.FAILED
    assert StartupState.LOADING_CONFIG not in orchestrator.state_machine.history


async def test_missing_server_config_is_fatal(server_env, registry, exporter, supervisor):
    (server_env / "shadowbox_server_config.json").unlink()
    orchestrator = make_orchestrator(registry, exporter, supervisor)

    with pytest.raises(ConfigLoadError) as exc_info:
        await orchestrator.run()

    assert "shadowbox_server_config.json" in str(exc_info.value)
    assert orchestrator.state == StartupState.FAILED
    assert FakeApiServer.instances == []


async def test_repository_rejection_is_fatal(server_env, registry, exporter, supervisor):
    async def failing_factory(config, proxy_metrics):
        raise RuntimeError("disk on fire")

    orchestrator = make_orchestrator(registry, exporter, supervisor, repository_factory=failing_factory)

    with pytest.raises(DependencyConstructionError) as exc_info:
        await orchestrator.run()

    assert "disk on fire" in str(exc_info.value)
    assert orchestrator.state == StartupState.FAILED
    assert FakeApiServer.instances == []


async def test_api_bind_failure_is_fatal(server_env, registry, exporter, supervisor, scraper_handle):
    class BusyApiServer(FakeApiServer):
        async def serve(self, on_listening):
            raise ListenError(self.config.api_port, 3)

    orchestrator = make_orchestrator(registry, exporter, supervisor, api_server_factory=BusyApiServer)

    with pytest.raises(ListenError):
        await orchestrator.run()

    assert orchestrator.state == StartupState.FAILED
    assert StartupState.SERVING not in orchestrator.state_machine.history
    scraper_handle.stop.assert_awaited_once()
    exporter.stop.assert_awaited_once()


async def test_api_never_listens_while_repository_is_pending(
    server_env, monkeypatch, registry, exporter, supervisor
):
    port = free_port()
    monkeypatch.setenv("SB_API_PORT", str(port))
    never = asyncio.Event()
    api_factory = MagicMock()

    async def pending_factory(config, proxy_metrics):
        await never.wait()

    orchestrator = make_orchestrator(
        registry, exporter, supervisor, repository_factory=pending_factory, api_server_factory=api_factory
    )
    run_task = asyncio.create_task(orchestrator.run())
    await asyncio.sleep(0.3)

    assert orchestrator.state == StartupState.CONSTRUCTING_DEPENDENT_SERVICE
    api_factory.assert_not_called()
    with pytest.raises(OSError):
        reader, writer = await asyncio.open_connection("127.0.0.1", port)
        writer.close()

    run_task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await run_task
    api_factory.assert_not_called()


async def test_transient_failures_are_logged(caplog):
    loop = asyncio.get_running_loop()

    async def boom():
        raise RuntimeError("late failure")

    task = asyncio.create_task(boom(), name="late-task")
    await asyncio.gather(task, return_exceptions=True)

    with caplog.at_level(logging.ERROR):
        _log_transient_failure(loop, {"exception": task.exception(), "task": task})

    assert "late-task" in caplog.text
    assert "late failure" in caplog.text
