"""Click event producer: Kafka first, Redis stream as the fallback transport.

The redirect handler schedules ``ClickQueue.enqueue`` as a post-response
background task. Nothing in here raises to the caller: a click that cannot
be published on either transport is logged and counted, and the redirect
has already been sent.

Flow Diagram: enqueue()
========================
::
    ┌─────────────┐
    │ ClickEvent  │
    └──────┬──────┘
           ▼
    ┌─────────────┐
    │ wrap in     │
    │ ClickMessage│  (event_id, attempt=1)
    └──────┬──────┘
           ▼
    ┌─────────────┐
    │ Kafka       │── ok ──► published
    │ send_and_   │
    │ wait(timeout)│
    └──────┬──────┘
     fail / disabled
           ▼
    ┌─────────────┐
    │ XADD        │── ok ──► fallback
    │ click_events│
    └──────┬──────┘
           ▼
        dropped (logged at ERROR with the payload)

How to Use
===========
**Start the producer on startup**::
    producer = await start_producer(settings)
    queue = ClickQueue(producer, redis_client, settings)

**Publish**::
    await queue.enqueue(ClickEvent(link_id=1, short_code="abc123", clicked_at=utcnow()))

**Shutdown**::
    await stop_producer(producer)
"""

import asyncio
import json
import logging

import redis.asyncio as redis
from aiokafka import AIOKafkaProducer
from prometheus_client import Counter

from shortlinks.config import Settings
from shortlinks.enums import RequestStatus
from shortlinks.schemas import ClickEvent, ClickMessage

__all__ = ["ClickQueue", "start_producer", "stop_producer", "encode_message", "decode_message"]

logger = logging.getLogger("shortlinks.queue")

CLICK_EVENTS_PUBLISHED_TOTAL = Counter(
    "shortlinks_click_events_published_total",
    "Click events handed to a transport",
    ["transport", "status"],
)


def encode_message(message: ClickMessage) -> dict[str, str]:
    """Redis stream field layout shared by the producer and the worker."""
    return {"payload": message.model_dump_json(), "attempt": str(message.attempt)}


def decode_message(fields: dict[str, str]) -> ClickMessage:
    return ClickMessage.model_validate_json(fields["payload"])


async def start_producer(settings: Settings) -> AIOKafkaProducer | None:
    if not settings.KAFKA_ENABLED:
        return None

    producer = AIOKafkaProducer(
        bootstrap_servers=settings.KAFKA_BOOTSTRAP_SERVERS,
        value_serializer=lambda payload: json.dumps(payload).encode("utf-8"),
    )
    try:
        await producer.start()
    except Exception as exc:
        logger.warning(f"Kafka unavailable, clicks will use the Redis stream: {exc}")
        await producer.stop()
        return None
    return producer


async def stop_producer(producer: AIOKafkaProducer | None) -> None:
    if producer is not None:
        await producer.stop()


class ClickQueue:
    def __init__(self, producer: AIOKafkaProducer | None, client: redis.Redis, settings: Settings) -> None:
        self._producer = producer
        self._client = client
        self._settings = settings

    async def enqueue(self, event: ClickEvent) -> ClickMessage | None:
        """Publish one click. Returns the envelope, or None if both transports failed."""
        message = ClickMessage(event=event)

        if await self._publish_kafka(message):
            return message
        if await self._publish_stream(message):
            return message

        logger.error(
            f"Dropping click for {event.short_code}: no transport accepted it",
            extra={"event_id": message.event_id, "payload": message.model_dump_json()},
        )
        return None

    async def _publish_kafka(self, message: ClickMessage) -> bool:
        if self._producer is None:
            return False
        try:
            await asyncio.wait_for(
                self._producer.send_and_wait(
                    self._settings.KAFKA_CLICK_TOPIC,
                    message.model_dump(mode="json"),
                    key=message.event.short_code.encode("utf-8"),
                ),
                timeout=self._settings.QUEUE_PUBLISH_TIMEOUT_SECONDS,
            )
        except Exception as exc:
            CLICK_EVENTS_PUBLISHED_TOTAL.labels(transport="kafka", status=RequestStatus.ERROR).inc()
            logger.warning(f"Kafka publish failed for {message.event.short_code}: {exc}")
            return False
        CLICK_EVENTS_PUBLISHED_TOTAL.labels(transport="kafka", status=RequestStatus.SUCCESS).inc()
        return True

    async def _publish_stream(self, message: ClickMessage) -> bool:
        try:
            await self._client.xadd(self._settings.CLICK_STREAM_KEY, encode_message(message))
        except Exception as exc:
            CLICK_EVENTS_PUBLISHED_TOTAL.labels(transport="redis_stream", status=RequestStatus.ERROR).inc()
            logger.warning(f"Redis stream fallback failed for {message.event.short_code}: {exc}")
            return False
        CLICK_EVENTS_PUBLISHED_TOTAL.labels(transport="redis_stream", status=RequestStatus.SUCCESS).inc()
        return True
