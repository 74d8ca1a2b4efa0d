"""Cancellable timers owned by the state they guard.

A timer that was cancelled or re-armed never runs its stale callback, even
when the underlying scheduler handle had already been queued.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Optional, Tuple

from .scheduler import Scheduler, TimerHandle

_logger = logging.getLogger("assistant_stream.timers")


class CancellableTimer:
    def __init__(self, scheduler: Scheduler, name: str) -> None:
        self._scheduler = scheduler
        self.name = name
        self._handle: Optional[TimerHandle] = None
        self._generation = 0
        self._callback: Optional[Callable[..., Any]] = None
        self._args: Tuple[Any, ...] = ()

    @property
    def active(self) -> bool:
        return self._handle is not None

    def start(self, delay: float, callback: Callable[..., Any], *args: Any) -> None:
        self.cancel()
        self._callback = callback
        self._args = args
        self._arm(delay)

    def _arm(self, delay: float) -> None:
        generation = self._generation
        self._handle = self._scheduler.call_later(delay, self._fire, generation)

    def _fire(self, generation: int) -> None:
        if generation != self._generation or self._handle is None:
            _logger.debug("timer_stale_fire_ignored", extra={"timer": self.name})
            return
        self._handle = None
        callback, args = self._callback, self._args
        if callback is not None:
            callback(*args)

    def cancel(self) -> None:
        self._generation += 1
        handle, self._handle = self._handle, None
        if handle is not None:
            handle.cancel()


class RepeatingTimer(CancellableTimer):
    """Fires every ``interval`` seconds until cancelled."""

    def __init__(self, scheduler: Scheduler, name: str) -> None:
        super().__init__(scheduler, name)
        self._interval = 0.0

    def start(self, delay: float, callback: Callable[..., Any], *args: Any) -> None:
        self._interval = delay
        super().start(delay, callback, *args)

    def _fire(self, generation: int) -> None:
        if generation != self._generation or self._handle is None:
            return
        # Re-arm before running so the callback may cancel the timer.
        self._arm(self._interval)
        if self._callback is not None:
            self._callback(*self._args)
