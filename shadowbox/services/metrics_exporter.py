import asyncio
import logging
import socket
from typing import Optional

import uvicorn
from fastapi import FastAPI
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST, REGISTRY, CollectorRegistry, generate_latest

from shadowbox.core.http_server import ManagedServer

LOOPBACK_HOST = "127.0.0.1"


def create_exporter_app(registry: CollectorRegistry) -> FastAPI:
    app = FastAPI(docs_url=None, redoc_url=None, openapi_url=None)

    # Every path serves the snapshot, the scraper only asks for /metrics
    @app.get("/{path:path}")
    async def metrics(path: str) -> Response:
        return Response(content=generate_latest(registry), media_type=CONTENT_TYPE_LATEST)

    return app


class MetricsExporter:
    """
    Serves the process's own metrics on an OS-assigned loopback port.

    The port is only known after the kernel assigns it, so ``start`` waits
    until the server is actually listening and returns ``localhost:<port>``.
    """

    def __init__(self, registry: CollectorRegistry = REGISTRY, startup_poll_seconds: float = 0.01):
        self._registry = registry
        self._startup_poll_seconds = startup_poll_seconds
        self._server: Optional[ManagedServer] = None
        self._serve_task: Optional[asyncio.Task] = None
        self._address: Optional[str] = None
        self._start_lock = asyncio.Lock()

    @property
    def address(self) -> Optional[str]:
        return self._address

    @property
    def registry(self) -> CollectorRegistry:
        return self._registry

    async def start(self) -> str:
        async with self._start_lock:
            if self._address is not None:
                return self._address

            sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
            sock.bind((LOOPBACK_HOST, 0))
            sock.setblocking(False)
            port = sock.getsockname()[1]

            config = uvicorn.Config(
                create_exporter_app(self._registry),
                log_config=None,
                access_log=False,
                lifespan="off",
            )
            self._server = ManagedServer(config, handle_signals=False)
            self._serve_task = asyncio.create_task(
                self._server.serve(sockets=[sock]), name="metrics-exporter"
            )

            while not self._server.started:
                if self._serve_task.done():
                    sock.close()
                    # Surfaces the serve() failure
                    self._serve_task.result()
                    raise RuntimeError("Metrics exporter stopped before listening")
                await asyncio.sleep(self._startup_poll_seconds)

            self._address = f"localhost:{port}"
            logging.debug(f"Metrics exporter listening at {self._address}")
            return self._address

    async def stop(self) -> None:
        if self._server is None or self._serve_task is None:
            return
        self._server.should_exit = True
        await asyncio.gather(self._serve_task, return_exceptions=True)
        self._server = None
        self._serve_task = None
        self._address = None
