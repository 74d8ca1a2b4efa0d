from __future__ import annotations

import json
import logging
import os
from typing import Any, Dict, Optional

try:  # pragma: no cover - optional dependency
    import redis  # type: ignore
except Exception:  # pragma: no cover - optional dependency
    redis = None  # type: ignore

_logger = logging.getLogger("assistant_stream.events")

CHANNEL_PREFIX = "assistant_stream.events."


class _RedisPublisher:
    def __init__(self, url: str) -> None:
        self._url = url
        self._client = None
        self._connect()

    def _connect(self) -> None:
        if redis is None:
            return
        try:
            self._client = redis.Redis.from_url(self._url, socket_timeout=0.5)
            self._client.ping()
        except Exception as exc:
            _logger.debug("event_publisher_connect_failed", extra={"err": str(exc)})
            self._client = None

    def publish(self, channel: str, payload: Dict[str, Any]) -> None:
        if not self._client:
            self._connect()
        if not self._client:
            return
        try:
            self._client.publish(channel, json.dumps(payload, default=str))
        except Exception as exc:
            _logger.debug("event_publish_failed", extra={"channel": channel, "err": str(exc)})
            self._client = None


_publisher: Optional[_RedisPublisher] = None


def _get_publisher() -> Optional[_RedisPublisher]:
    global _publisher
    if _publisher is not None:
        return _publisher
    url = os.getenv("REDIS_URL")
    if not url:
        return None
    _publisher = _RedisPublisher(url)
    return _publisher


def publish_event(event_type: str, payload: Dict[str, Any]) -> None:
    """Fan out a stream lifecycle event; a no-op when no broker is configured."""
    publisher = _get_publisher()
    if not publisher:
        return
    publisher.publish(f"{CHANNEL_PREFIX}{event_type}", payload)
