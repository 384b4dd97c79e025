"""Event publisher backed by Redis Streams."""

from __future__ import annotations

import json
from typing import Any, Dict, Iterable, Optional, Tuple

import redis
import structlog

logger = structlog.get_logger(__name__)


class EventPublisher:
    """Publish lifecycle events to a Redis Stream.

    Delivery is best effort: a failing ``XADD`` is logged and reported through
    the return value, never raised. The stream is trimmed approximately to
    ``maxlen`` entries.
    """

    def __init__(
        self,
        redis_url: str,
        stream_name: str,
        *,
        maxlen: Optional[int] = 1000,
        client: Optional[redis.Redis] = None,
    ) -> None:
        self._stream_name = stream_name
        self._maxlen = maxlen
        self._client = client if client is not None else redis.Redis.from_url(redis_url)

    @property
    def stream_name(self) -> str:
        return self._stream_name

    def publish(
        self,
        event_type: str,
        payload: Dict[str, Any],
        *,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Send an event to the configured stream.

        Parameters
        ----------
        event_type:
            Canonical name, e.g. ``booking.created``.
        payload:
            Serialisable body (will be JSON dumped).
        metadata:
            Optional envelope metadata (correlation id, actor, ...).
        """

        event = {
            "event_type": event_type,
            "payload": json.dumps(payload, default=str),
        }
        if metadata:
            event["metadata"] = json.dumps(metadata, default=str)

        try:
            self._client.xadd(
                self._stream_name,
                event,
                maxlen=self._maxlen,
                approximate=bool(self._maxlen),
            )
        except redis.RedisError:
            logger.exception("event_publish_failed", event_type=event_type, stream=self._stream_name)
            return False
        return True

    def publish_many(self, events: Iterable[Tuple[str, Dict[str, Any]]]) -> int:
        sent = 0
        for event_type, payload in events:
            if self.publish(event_type, payload):
                sent += 1
        return sent
