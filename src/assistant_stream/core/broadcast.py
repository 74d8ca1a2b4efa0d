from __future__ import annotations

import logging
from typing import Callable, Generic, List, TypeVar

T = TypeVar("T")

_logger = logging.getLogger("assistant_stream.broadcast")


class Broadcast(Generic[T]):
    """Observable value: subscribers get the current value immediately, then every change."""

    def __init__(self, initial: T, name: str = "broadcast") -> None:
        self._value = initial
        self._name = name
        self._listeners: List[Callable[[T], None]] = []

    @property
    def value(self) -> T:
        return self._value

    def subscribe(self, listener: Callable[[T], None]) -> Callable[[], None]:
        self._listeners.append(listener)
        self._deliver(listener, self._value)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def publish(self, value: T) -> None:
        self._value = value
        for listener in list(self._listeners):
            self._deliver(listener, value)

    def _deliver(self, listener: Callable[[T], None], value: T) -> None:
        # A failing subscriber must not break the state owner or its peers.
        try:
            listener(value)
        except Exception:
            _logger.exception("listener_failed", extra={"broadcast": self._name})

    def __len__(self) -> int:
        return len(self._listeners)
