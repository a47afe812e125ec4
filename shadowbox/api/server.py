import asyncio
from typing import Callable

import uvicorn
from fastapi import FastAPI

from ..config import RuntimeConfig
from ..core.exceptions import StartupError
from ..core.http_server import ManagedServer


class ApiServer:
    """TLS listener for the management app."""

    def __init__(self, app: FastAPI, config: RuntimeConfig, startup_poll_seconds: float = 0.05):
        self._startup_poll_seconds = startup_poll_seconds
        self._server = ManagedServer(
            uvicorn.Config(
                app,
                host="0.0.0.0",
                port=config.api_port,
                ssl_certfile=str(config.certificate_file),
                ssl_keyfile=str(config.private_key_file),
                log_config=None,
                lifespan="off",
            )
        )

    @property
    def started(self) -> bool:
        return self._server.started

    async def serve(self, on_listening: Callable[[], None]) -> None:
        """Listen until a shutdown signal, calling ``on_listening`` once bound."""
        serve_task = asyncio.create_task(self._server.serve(), name="management-api")
        try:
            while not self._server.started:
                if serve_task.done():
                    serve_task.result()
                    raise StartupError("Management API stopped before listening")
                await asyncio.sleep(self._startup_poll_seconds)
            on_listening()
            await asyncio.shield(serve_task)
        except asyncio.CancelledError:
            self._server.should_exit = True
            await asyncio.gather(serve_task, return_exceptions=True)
            raise
