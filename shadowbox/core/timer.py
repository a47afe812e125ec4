"""Schedulable timers on top of the running event loop.

The delayed writer owns a scheduler instead of calling ``loop.call_later``
directly, so tests can swap in a manual one and fire timers on demand.
"""

import asyncio
from typing import Callable, Optional, Protocol


class TimerHandle(Protocol):
    def cancel(self) -> None: ...

    def cancelled(self) -> bool: ...


class TimerScheduler(Protocol):
    def schedule(self, delay_seconds: float, callback: Callable[[], None]) -> TimerHandle: ...


class LoopTimerScheduler:
    """Schedules callbacks with ``call_later`` on the running loop."""

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        self._loop = loop

    def schedule(self, delay_seconds: float, callback: Callable[[], None]) -> TimerHandle:
        loop = self._loop or asyncio.get_running_loop()
        return loop.call_later(delay_seconds, callback)
