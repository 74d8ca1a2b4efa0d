from __future__ import annotations

import asyncio
import time
from typing import Any, Callable, Optional, Protocol


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


class Scheduler(Protocol):
    """The single event queue every state mutation runs on."""

    def now(self) -> float: ...

    def call_later(self, delay: float, callback: Callable[..., Any], *args: Any) -> TimerHandle: ...

    def call_soon_threadsafe(self, callback: Callable[..., Any], *args: Any) -> None: ...


class AsyncioScheduler:
    """Scheduler backed by an asyncio event loop.

    When no loop is given, the running loop is looked up at call time, so the
    scheduler can be constructed before the loop starts (e.g. at app import).
    """

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        self._loop = loop

    def _get_loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def now(self) -> float:
        return time.monotonic()

    def call_later(self, delay: float, callback: Callable[..., Any], *args: Any) -> TimerHandle:
        return self._get_loop().call_later(max(0.0, delay), callback, *args)

    def call_soon_threadsafe(self, callback: Callable[..., Any], *args: Any) -> None:
        self._get_loop().call_soon_threadsafe(callback, *args)
