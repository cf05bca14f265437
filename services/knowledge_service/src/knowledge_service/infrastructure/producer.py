from __future__ import annotations

import json

import structlog
from aiokafka import AIOKafkaProducer
from aiokafka.errors import KafkaError

from knowledge_service.domain.interfaces import EventPublisherPort
from shared.events.base import BaseEvent

logger = structlog.get_logger(__name__)


def _headers(event: BaseEvent) -> list[tuple[str, bytes]]:
    # Lets consumers route on type and version without decoding the payload.
    return [
        ("event_type", getattr(event, "event_type", type(event).__name__).encode("utf-8")),
        ("schema_version", event.schema_version.encode("utf-8")),
    ]


class RedpandaEventPublisher(EventPublisherPort):
    """Publishes knowledge-base lifecycle events to Redpanda, keyed by tenant."""

    def __init__(self, bootstrap_servers: str, client_id: str = "knowledge-service") -> None:
        self._bootstrap_servers = bootstrap_servers
        self._client_id = client_id
        self._producer: AIOKafkaProducer | None = None

    @property
    def is_started(self) -> bool:
        return self._producer is not None

    async def start(self) -> None:
        producer = AIOKafkaProducer(
            bootstrap_servers=self._bootstrap_servers,
            client_id=self._client_id,
            value_serializer=lambda v: json.dumps(v, default=str).encode("utf-8"),
            key_serializer=lambda k: k.encode("utf-8") if k else None,
            acks="all",
            enable_idempotence=True,
        )
        try:
            await producer.start()
        except KafkaError as exc:
            logger.error("producer.start.failed", bootstrap_servers=self._bootstrap_servers, error=str(exc))
            raise
        self._producer = producer
        logger.info("producer.started", bootstrap_servers=self._bootstrap_servers, client_id=self._client_id)

    async def stop(self) -> None:
        if self._producer is None:
            return
        producer, self._producer = self._producer, None
        try:
            await producer.stop()
        except KafkaError as exc:
            logger.warning("producer.stop.error", error=str(exc))
        logger.info("producer.stopped")

    async def publish(self, event: BaseEvent) -> None:
        if self._producer is None:
            raise RuntimeError("Producer is not started. Call start() first.")

        log = logger.bind(
            topic=event.topic,
            event_id=str(event.event_id),
            correlation_id=str(event.correlation_id),
            tenant_id=event.tenant_id,
        )
        try:
            metadata = await self._producer.send_and_wait(
                event.topic,
                value=event.to_message(),
                key=event.partition_key,
                headers=_headers(event),
            )
        except KafkaError as exc:
            log.error("event.publish.failed", error=str(exc))
            raise

        log.info("event.published", partition=metadata.partition, offset=metadata.offset)
