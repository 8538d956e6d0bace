from __future__ import annotations

import datetime as dt
import json
import logging
from typing import Any, Dict, List, Tuple

import pika
from pika.exceptions import AMQPError

logger = logging.getLogger(__name__)


def user_routing_key(user_id: int, event: str) -> str:
    return f"user.{int(user_id)}.{event}"


class EventPublisher:
    """Publishes change events to a topic exchange, one routing key per affected user.

    Delivery is best effort: broker failures are logged and never raised to the caller.
    """

    def __init__(self, rabbitmq_url: str, exchange: str):
        self.rabbitmq_url = rabbitmq_url
        self.exchange = exchange

    def _connect(self) -> pika.BlockingConnection:
        params = pika.URLParameters(self.rabbitmq_url)
        params.heartbeat = 30
        params.blocked_connection_timeout = 30
        return pika.BlockingConnection(params)

    def publish(self, routing_key: str, payload: dict) -> bool:
        try:
            connection = self._connect()
        except (AMQPError, OSError) as e:
            logger.warning("Event broker unavailable, dropping %s: %s", routing_key, e)
            return False

        try:
            ch = connection.channel()
            ch.exchange_declare(exchange=self.exchange, exchange_type="topic", durable=True)
            body = json.dumps(payload, ensure_ascii=False, default=str).encode("utf-8")
            ch.basic_publish(
                exchange=self.exchange,
                routing_key=routing_key,
                body=body,
                properties=pika.BasicProperties(
                    content_type="application/json",
                    delivery_mode=2,  # persistent
                ),
            )
            return True
        except AMQPError as e:
            logger.warning("Failed to publish %s: %s", routing_key, e)
            return False
        finally:
            try:
                connection.close()
            except AMQPError:
                pass

    def notify_user(self, user_id: int, event: str, **fields: Any) -> bool:
        payload: Dict[str, Any] = {
            "event": event,
            "occurred_at": dt.datetime.now(dt.timezone.utc).isoformat().replace("+00:00", "Z"),
            "user_id": user_id,
            **fields,
        }
        return self.publish(user_routing_key(user_id, event), payload)


class RecordingPublisher(EventPublisher):
    """Keeps events in memory instead of talking to a broker (local runs and tests)."""

    def __init__(self):
        super().__init__(rabbitmq_url="", exchange="")
        self.events: List[Tuple[str, dict]] = []

    def publish(self, routing_key: str, payload: dict) -> bool:
        self.events.append((routing_key, payload))
        return True

    def routing_keys(self) -> List[str]:
        return [key for key, _ in self.events]
