import json
import logging
from typing import Any

import redis
from opentelemetry import trace
from redis.exceptions import RedisError

from cargo_dispatch.core.clock import utc_now
from cargo_dispatch.core.correlation import get_current_correlation_id

logger = logging.getLogger(__name__)

_tracer = trace.get_tracer(__name__)


class RedisNotifier:
    """Publishes notifications on a Redis channel for the push/SMS workers.

    Uses the sync Redis client so it can be called from request threads and
    the timeout sweeper alike.
    """

    def __init__(self, client: "redis.Redis[str]", channel: str = "notifications") -> None:
        self._client = client
        self.channel = channel

    @classmethod
    def from_config(
        cls,
        host: str,
        port: int,
        db: int = 0,
        password: str | None = None,
        ssl: bool = False,
        channel: str = "notifications",
    ) -> "RedisNotifier":
        client = redis.Redis(
            host=host,
            port=port,
            db=db,
            password=password or None,
            ssl=ssl,
            decode_responses=True,
        )
        return cls(client, channel=channel)

    def notify(self, user_id: str, event_type: str, payload: dict[str, Any]) -> None:
        with _tracer.start_as_current_span("redis.publish") as span:
            span.set_attribute("db.system", "redis")
            span.set_attribute("db.redis.channel", self.channel)

            correlation_id = get_current_correlation_id()
            if correlation_id:
                span.set_attribute("correlation_id", correlation_id)

            message = {
                "user_id": user_id,
                "event_type": event_type,
                "payload": payload,
                "correlation_id": correlation_id,
                "timestamp": utc_now().isoformat(),
            }
            try:
                self._client.publish(self.channel, json.dumps(message, default=str))
            except RedisError as e:
                span.record_exception(e)
                logger.error(f"Failed to publish {event_type} for {user_id}: {e}")

    def close(self) -> None:
        self._client.close()
