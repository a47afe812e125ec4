"""
Startup sequence for the management server.

Validating -> ExportingMetrics -> SupervisingScraper -> LoadingConfig ->
ConstructingDependentService -> Serving. Any failure before Serving moves the
state machine to Failed and propagates; nothing listens on the API port until
the full pipeline is wired.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from fastapi import FastAPI
from prometheus_client import REGISTRY, CollectorRegistry

from .api.app_factory import create_management_app
from .api.server import ApiServer
from .config import (
    ACCESS_KEYS_FILENAME,
    METRICS_CONFIG_FILENAME,
    SCRAPER_CONFIG_FILENAME,
    SCRAPER_LISTEN_ADDRESS,
    SERVER_CONFIG_FILENAME,
    RuntimeConfig,
    load_runtime_config,
)
from .core.exceptions import DependencyConstructionError, TransientTaskError
from .core.json_config import ConfigDocument, DelayedWriteCoordinator
from .core.startup_state import StartupState, StartupStateMachine
from .logging_config import setup_logging
from .services.access_keys import AccessKeyRepository, ProxyMetrics, create_access_key_repository
from .services.manager_metrics import ManagerMetrics
from .services.manager_service import ManagerService
from .services.metrics_config import hourly_metrics_view, read_metrics_config, transfer_stats_view
from .services.metrics_exporter import MetricsExporter
from .services.prometheus_scraper import (
    ScraperHandle,
    ScraperSupervisor,
    build_scrape_config,
    build_scraper_args,
)
from .services.server_config import read_server_config
from .services.shared_metrics import SharedMetrics
from .services.usage_collector import UsageCollector

RepositoryFactory = Callable[[RuntimeConfig, ProxyMetrics], Awaitable[AccessKeyRepository]]


async def default_repository_factory(config: RuntimeConfig, proxy_metrics: ProxyMetrics) -> AccessKeyRepository:
    return await create_access_key_repository(
        config.public_ip, config.persistent_path(ACCESS_KEYS_FILENAME), proxy_metrics
    )


ApiServerFactory = Callable[[FastAPI, RuntimeConfig], ApiServer]


class StartupOrchestrator:
    """
    Builds every component in dependency order and then serves forever.

    Collaborators are injectable so each step can be exercised without real
    sockets or subprocesses.
    """

    def __init__(
        self,
        settings_factory: Callable[[], RuntimeConfig] = RuntimeConfig,
        registry: CollectorRegistry = REGISTRY,
        exporter: Optional[MetricsExporter] = None,
        scraper_supervisor: Optional[ScraperSupervisor] = None,
        repository_factory: RepositoryFactory = default_repository_factory,
        api_server_factory: ApiServerFactory = ApiServer,
    ):
        self._settings_factory = settings_factory
        self._registry = registry
        self._exporter = exporter or MetricsExporter(registry)
        self._scraper_supervisor = scraper_supervisor or ScraperSupervisor()
        self._repository_factory = repository_factory
        self._api_server_factory = api_server_factory

        self.state_machine = StartupStateMachine()
        self.config: Optional[RuntimeConfig] = None
        self.exporter_address: Optional[str] = None
        self.scraper: Optional[ScraperHandle] = None
        self.server_config: Optional[ConfigDocument[Dict[str, Any]]] = None
        self.metrics_config: Optional[DelayedWriteCoordinator[Dict[str, Any]]] = None
        self.manager_metrics: Optional[ManagerMetrics] = None
        self.shared_metrics: Optional[SharedMetrics] = None
        self.proxy_metrics: Optional[ProxyMetrics] = None
        self.usage_collector: Optional[UsageCollector] = None
        self.repository: Optional[AccessKeyRepository] = None
        self.api_server: Optional[ApiServer] = None

    @property
    def state(self) -> StartupState:
        return self.state_machine.state

    async def run(self) -> None:
        """Start up, then serve until the API server exits."""
        try:
            await self.start()
            await self.serve()
        finally:
            await self.shutdown()

    async def start(self) -> None:
        """Run every step up to, but not including, Serving."""
        try:
            self._validate()
            self.state_machine.transition(StartupState.EXPORTING_METRICS)
            await self._export_metrics()
            self.state_machine.transition(StartupState.SUPERVISING_SCRAPER)
            await self._supervise_scraper()
            self.state_machine.transition(StartupState.LOADING_CONFIG)
            self._load_config()
            self.state_machine.transition(StartupState.CONSTRUCTING_DEPENDENT_SERVICE)
            await self._construct_repository()
        except BaseException as e:
            if not self.state_machine.is_terminal:
                self.state_machine.fail(e)
            raise

    async def serve(self) -> None:
        app = create_management_app(self._build_manager_service(), self.config.api_path_prefix)
        self.api_server = self._api_server_factory(app, self.config)
        try:
            await self.api_server.serve(on_listening=self._on_listening)
        except BaseException as e:
            if not self.state_machine.is_terminal:
                self.state_machine.fail(e)
            raise

    async def shutdown(self) -> None:
        """Stop owned children, then force pending writes to disk."""
        if self.usage_collector is not None:
            await self.usage_collector.stop()
        if self.shared_metrics is not None:
            await self.shared_metrics.stop_hourly_reporting()
        if self.scraper is not None:
            await self.scraper.stop()
        await self._exporter.stop()
        # Last, so no write after it is left waiting on a timer
        if self.metrics_config is not None:
            try:
                self.metrics_config.close()
            except OSError as e:
                logging.error(f"Could not flush metrics on shutdown: {e}")

    def _validate(self) -> None:
        self.config = load_runtime_config(self._settings_factory)
        setup_logging(self.config.verbose)

        if self.config.uses_default_metrics_url:
            logging.warning("SB_METRICS_URL not set, using default")

        logging.debug("=== Config ===")
        logging.debug(f"SB_PUBLIC_IP: {self.config.public_ip}")
        logging.debug(f"SB_METRICS_URL: {self.config.metrics_url}")
        logging.debug(f"SB_API_PORT: {self.config.api_port}")
        logging.debug(f"SB_STATE_DIR: {self.config.state_dir}")
        logging.debug("==============")

    async def _export_metrics(self) -> None:
        self.exporter_address = await self._exporter.start()
        logging.debug(f"Node metrics is at {self.exporter_address}")

    async def _supervise_scraper(self) -> None:
        scrape_config = build_scrape_config(self.exporter_address, SCRAPER_LISTEN_ADDRESS)
        self.scraper = await self._scraper_supervisor.launch(
            self.config.persistent_path(SCRAPER_CONFIG_FILENAME),
            scrape_config,
            build_scraper_args(self.config, SCRAPER_LISTEN_ADDRESS),
        )

    def _load_config(self) -> None:
        self.server_config = read_server_config(self.config.persistent_path(SERVER_CONFIG_FILENAME))
        self.metrics_config = read_metrics_config(self.config.persistent_path(METRICS_CONFIG_FILENAME))
        self.manager_metrics = ManagerMetrics(transfer_stats_view(self.metrics_config))
        self.shared_metrics = SharedMetrics(
            hourly_metrics_view(self.metrics_config), self.server_config, self.config.metrics_url
        )

    async def _construct_repository(self) -> None:
        logging.info("Starting...")
        self.proxy_metrics = ProxyMetrics(self._registry)
        try:
            self.repository = await self._repository_factory(self.config, self.proxy_metrics)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            raise DependencyConstructionError("access key repository", e) from e

    def _build_manager_service(self) -> ManagerService:
        return ManagerService(
            self.config.default_server_name,
            self.server_config,
            self.repository,
            self.manager_metrics,
            self.shared_metrics,
        )

    def _on_listening(self) -> None:
        self.state_machine.transition(StartupState.SERVING)
        asyncio.get_running_loop().set_exception_handler(_log_transient_failure)
        self.shared_metrics.start_hourly_reporting()
        self.usage_collector = UsageCollector(self.proxy_metrics, self.manager_metrics, self.shared_metrics)
        self.usage_collector.start()
        logging.info(
            f"Manager listening at https://{self.config.public_ip}:{self.config.api_port}"
            f"{self.config.api_path_prefix}"
        )


def _log_transient_failure(loop: asyncio.AbstractEventLoop, context: Dict[str, Any]) -> None:
    exception = context.get("exception")
    task = context.get("task") or context.get("future")
    task_name = task.get_name() if isinstance(task, asyncio.Task) else "unknown"
    if exception is None:
        logging.error(f"Unhandled event loop error: {context.get('message')}")
        return
    logging.error(f"{TransientTaskError(task_name, exception)}")
