import json
import logging
from typing import Any

from aiokafka import AIOKafkaProducer

from reservations.core.models import OutboxEvent

logger = logging.getLogger(__name__)


def reservation_event_message(event: OutboxEvent) -> dict[str, Any]:
    return {
        "event_id": event.id,
        "event_type": event.event_type,
        "payload": event.payload,
        "created_at": event.created_at.isoformat(),
    }


def reservation_event_key(event: OutboxEvent) -> str:
    """Events of one puppy share a partition so consumers see them in order."""
    return event.payload.get("puppy_id") or event.payload.get("id") or event.id


class KafkaProducer:
    """Publishes reservation lifecycle events relayed from the outbox."""

    def __init__(
        self,
        bootstrap_servers: str,
        topic: str,
    ):
        self._bootstrap_servers = bootstrap_servers
        self._topic = topic
        self._producer: AIOKafkaProducer | None = None

    async def start(self):
        self._producer = AIOKafkaProducer(
            bootstrap_servers=self._bootstrap_servers,
            value_serializer=lambda v: json.dumps(v, default=str).encode("utf-8"),
            key_serializer=lambda k: k.encode("utf-8") if k else None,
            enable_idempotence=True,
        )
        await self._producer.start()
        logger.info(f"Kafka producer connected to {self._bootstrap_servers}")

    async def stop(self):
        if self._producer:
            await self._producer.stop()
            self._producer = None

    async def publish(self, event: OutboxEvent) -> None:
        if not self._producer:
            raise RuntimeError("Producer is not started. Call start() first.")

        await self._producer.send_and_wait(
            topic=self._topic,
            value=reservation_event_message(event),
            key=reservation_event_key(event),
            headers=[("event_type", str(event.event_type).encode("utf-8"))],
        )
        logger.debug(f"Published {event.event_type} event {event.id}")

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.stop()
