import asyncio
import contextlib
import logging
import signal
import socket
from typing import Generator, List, Optional

import uvicorn

from shadowbox.core.exceptions import ListenError

HANDLED_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class ManagedServer(uvicorn.Server):
    """
    uvicorn server that never re-raises the signals it catches.

    Stock uvicorn re-raises SIGTERM once ``serve`` returns, which would end
    the process before pending writes are flushed. Here a signal only sets
    ``should_exit`` and the caller decides what happens next. Servers built
    with ``handle_signals=False`` ignore signals entirely.

    uvicorn also calls ``sys.exit`` when it cannot bind. That surfaces here as
    a ``ListenError`` so it fails startup like any other fatal error.
    """

    def __init__(self, config: uvicorn.Config, handle_signals: bool = True):
        super().__init__(config)
        self._handle_signals = handle_signals

    async def serve(self, sockets: Optional[List[socket.socket]] = None) -> None:
        try:
            await super().serve(sockets=sockets)
        except SystemExit as e:
            raise ListenError(self.config.port, e.code) from None

    @contextlib.contextmanager
    def capture_signals(self) -> Generator[None, None, None]:
        if not self._handle_signals:
            yield
            return

        loop = asyncio.get_running_loop()
        installed = []
        for sig in HANDLED_SIGNALS:
            try:
                loop.add_signal_handler(sig, self.handle_exit, sig, None)
                installed.append(sig)
            except (NotImplementedError, RuntimeError, ValueError):
                # Windows, or not on the main thread
                logging.debug(f"Cannot install handler for {sig!r}")
        try:
            yield
        finally:
            for sig in installed:
                loop.remove_signal_handler(sig)
