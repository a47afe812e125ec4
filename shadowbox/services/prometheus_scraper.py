"""Scrape-target config generation and supervision of the Prometheus subprocess."""

import asyncio
import logging
from pathlib import Path
from typing import List, Optional, Sequence

import aiofiles
import aiofiles.os
import yaml
from pydantic import BaseModel, ConfigDict, Field

from shadowbox.config import (
    SCRAPE_INTERVAL,
    SCRAPER_DATA_DIRNAME,
    SCRAPER_LISTEN_ADDRESS,
    SCRAPER_RETENTION,
    RuntimeConfig,
)
from shadowbox.core.exceptions import ScraperLaunchError

DEFAULT_SCRAPER_BINARY = "prometheus"


class GlobalScrapeSettings(BaseModel):
    scrape_interval: str = SCRAPE_INTERVAL


class StaticTargets(BaseModel):
    targets: List[str]


class ScrapeJob(BaseModel):
    job_name: str
    static_configs: List[StaticTargets]


class ScrapeConfig(BaseModel):
    global_: GlobalScrapeSettings = Field(default_factory=GlobalScrapeSettings, alias="global")
    scrape_configs: List[ScrapeJob] = Field(default_factory=list)

    model_config = ConfigDict(populate_by_name=True)

    def to_yaml(self) -> str:
        return yaml.safe_dump(self.model_dump(by_alias=True), sort_keys=False)


def build_scrape_config(exporter_address: str, scraper_address: str = SCRAPER_LISTEN_ADDRESS) -> ScrapeConfig:
    """Scrape the scraper itself plus the exporter's dynamically bound address."""
    return ScrapeConfig(
        scrape_configs=[
            ScrapeJob(job_name="prometheus", static_configs=[StaticTargets(targets=[scraper_address])]),
            ScrapeJob(job_name="outline-server", static_configs=[StaticTargets(targets=[exporter_address])]),
        ]
    )


def build_scraper_args(config: RuntimeConfig, listen_address: str = SCRAPER_LISTEN_ADDRESS) -> List[str]:
    return [
        "--storage.tsdb.retention.time", SCRAPER_RETENTION,
        "--storage.tsdb.path", str(config.persistent_path(SCRAPER_DATA_DIRNAME)),
        "--web.listen-address", listen_address,
        "--log.level", "debug" if config.verbose else "info",
    ]


class ScraperHandle:
    """
    Owned handle on the scraper subprocess.

    ``launched`` only means the process was spawned. ``is_running`` is the
    liveness check; nothing waits for the scraper to be ready.
    """

    def __init__(self, command: Sequence[str], restart_delay_seconds: float = 1.0):
        self._command = list(command)
        self._restart_delay_seconds = restart_delay_seconds
        self._process: Optional[asyncio.subprocess.Process] = None
        self._watch_task: Optional[asyncio.Task] = None
        self._stopping = False
        self.restart_count = 0

    @property
    def command(self) -> List[str]:
        return list(self._command)

    @property
    def launched(self) -> bool:
        return self._process is not None

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process else None

    def is_running(self) -> bool:
        return self._process is not None and self._process.returncode is None

    async def spawn(self) -> None:
        try:
            self._process = await asyncio.create_subprocess_exec(*self._command)
        except OSError as e:
            raise ScraperLaunchError(self._command[0], e) from e
        logging.info(f"Scraper started (pid {self._process.pid})")

    def watch(self) -> None:
        if self._watch_task is None:
            self._watch_task = asyncio.create_task(self._watch(), name="scraper-watch")

    async def _watch(self) -> None:
        while not self._stopping:
            returncode = await self._process.wait()
            if self._stopping:
                return
            logging.error(f"Scraper exited unexpectedly with code {returncode}, restarting")
            await asyncio.sleep(self._restart_delay_seconds)
            if self._stopping:
                return
            try:
                await self.spawn()
            except ScraperLaunchError as e:
                # Startup already succeeded once, keep the server up without metrics
                logging.error(f"Scraper restart failed: {e}")
                return
            self.restart_count += 1

    async def stop(self, timeout: float = 5.0) -> None:
        self._stopping = True
        if self._watch_task is not None:
            self._watch_task.cancel()
            await asyncio.gather(self._watch_task, return_exceptions=True)
            self._watch_task = None
        if not self.is_running():
            return
        self._process.terminate()
        try:
            await asyncio.wait_for(self._process.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            logging.warning("Scraper did not stop in time, killing it")
            self._process.kill()
            await self._process.wait()


class ScraperSupervisor:
    """Writes the scrape config and launches the scraper without waiting for it."""

    def __init__(self, binary: str = DEFAULT_SCRAPER_BINARY, restart_delay_seconds: float = 1.0):
        self._binary = binary
        self._restart_delay_seconds = restart_delay_seconds

    async def write_config(self, config_path: Path, scrape_config: ScrapeConfig) -> None:
        await aiofiles.os.makedirs(config_path.parent, exist_ok=True)
        async with aiofiles.open(config_path, "w", encoding="utf-8") as f:
            await f.write(scrape_config.to_yaml())
        logging.debug(f"Wrote scrape config to {config_path}")

    async def launch(
        self, config_path: Path, scrape_config: ScrapeConfig, args: Sequence[str]
    ) -> ScraperHandle:
        await self.write_config(config_path, scrape_config)
        command = [self._binary, "--config.file", str(config_path), *args]
        handle = ScraperHandle(command, restart_delay_seconds=self._restart_delay_seconds)
        await handle.spawn()
        handle.watch()
        return handle
