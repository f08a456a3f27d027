"""Standalone click ingestion worker.

Consumes click messages from Kafka and from the Redis fallback stream,
re-drives parked retries when they fall due, and exposes Prometheus metrics.

Run with::

    python -m shortlinks.worker
"""

import asyncio
import json
import logging

import redis.asyncio as redis
from aiokafka import AIOKafkaConsumer
from prometheus_client import start_http_server
from pydantic import ValidationError
from redis.exceptions import ResponseError

from shortlinks.cache import CacheStore
from shortlinks.click_queue import decode_message
from shortlinks.config import Settings, get_settings
from shortlinks.database import build_engine, build_session_factory, init_db
from shortlinks.geoip import GeoIpResolver
from shortlinks.ingestion import ClickConsumer, ClickIngestionService
from shortlinks.logger import setup_logger
from shortlinks.schemas import ClickMessage
from shortlinks.user_agent import UserAgentParser

__all__ = ["ClickWorker", "run"]

logger = logging.getLogger("shortlinks.worker")


class ClickWorker:
    def __init__(self, consumer: ClickConsumer, client: redis.Redis, settings: Settings) -> None:
        self._consumer = consumer
        self._client = client
        self._settings = settings
        # Set when a batch fails unacknowledged; the next read replays the pending list.
        self._replay_pending = False

    async def ensure_stream_group(self) -> None:
        try:
            await self._client.xgroup_create(
                self._settings.CLICK_STREAM_KEY,
                self._settings.INGESTION_CONSUMER_GROUP,
                id="0",
                mkstream=True,
            )
        except ResponseError as exc:
            if "BUSYGROUP" not in str(exc):
                raise

    async def process_stream_batch(self, block_ms: int | None = None, start_id: str = ">") -> int:
        """Handle one XREADGROUP batch; ``start_id="0"`` replays this consumer's unacked entries.

        Entries are acknowledged after they are handled, so a crash
        mid-batch leaves them pending for the next replay.
        """
        if self._replay_pending:
            start_id = "0"
        replaying = start_id != ">"
        streams = await self._client.xreadgroup(
            groupname=self._settings.INGESTION_CONSUMER_GROUP,
            consumername=self._settings.INGESTION_CONSUMER_NAME,
            streams={self._settings.CLICK_STREAM_KEY: start_id},
            count=self._settings.INGESTION_BATCH_SIZE,
            block=block_ms,
        )
        if not streams:
            self._replay_pending = False
            return 0

        try:
            handled, delivered = await self._handle_entries(streams)
        except Exception:
            self._replay_pending = True
            raise
        if replaying and delivered < self._settings.INGESTION_BATCH_SIZE:
            self._replay_pending = False
        return handled

    async def _handle_entries(self, streams) -> tuple[int, int]:
        handled = 0
        delivered = 0
        for _, entries in streams:
            delivered += len(entries)
            batch: list[ClickMessage] = []
            ids: list[str] = []
            for entry_id, fields in entries:
                try:
                    batch.append(decode_message(fields))
                    ids.append(entry_id)
                except (KeyError, ValidationError):
                    logger.warning("invalid fallback click payload", exc_info=True)
                    await self._ack(entry_id)
            if batch:
                await self._consumer.handle_many(batch)
                await self._ack(*ids)
                handled += len(batch)
        return handled, delivered

    async def process_kafka_batch(self, kafka: AIOKafkaConsumer) -> int:
        records = await kafka.getmany(
            timeout_ms=self._settings.INGESTION_BLOCK_MS,
            max_records=self._settings.INGESTION_BATCH_SIZE,
        )
        batch: list[ClickMessage] = []
        for partition_records in records.values():
            for record in partition_records:
                try:
                    batch.append(ClickMessage.model_validate(record.value))
                except ValidationError:
                    logger.warning("invalid kafka click payload", exc_info=True)

        if batch:
            try:
                await self._consumer.handle_many(batch)
            except Exception:
                # Rewind so the uncommitted batch is fetched again.
                await kafka.seek_to_committed()
                raise
        if records:
            await kafka.commit()
        return len(batch)

    async def process_due_retries(self) -> int:
        return len(await self._consumer.process_due_retries())

    async def _ack(self, *entry_ids: str) -> None:
        await self._client.xack(
            self._settings.CLICK_STREAM_KEY,
            self._settings.INGESTION_CONSUMER_GROUP,
            *entry_ids,
        )


async def _start_kafka(settings: Settings) -> AIOKafkaConsumer | None:
    if not settings.KAFKA_ENABLED:
        return None
    kafka = AIOKafkaConsumer(
        settings.KAFKA_CLICK_TOPIC,
        bootstrap_servers=settings.KAFKA_BOOTSTRAP_SERVERS,
        group_id=settings.INGESTION_CONSUMER_GROUP,
        value_deserializer=lambda payload: json.loads(payload.decode("utf-8")),
        client_id=settings.INGESTION_CONSUMER_NAME,
        enable_auto_commit=False,
    )
    try:
        await kafka.start()
    except Exception as exc:
        logger.warning(f"Kafka unavailable, consuming the Redis stream only: {exc}")
        await kafka.stop()
        return None
    return kafka


async def run(settings: Settings | None = None) -> None:
    settings = settings or get_settings()
    setup_logger(settings.LOG_LEVEL)
    start_http_server(settings.INGESTION_METRICS_PORT)

    engine = build_engine(settings)
    await init_db(engine)
    client = redis.from_url(settings.REDIS_URL, encoding="utf-8", decode_responses=True)
    geo = GeoIpResolver.from_settings(settings)
    service = ClickIngestionService(
        build_session_factory(engine), CacheStore(client), settings, UserAgentParser(), geo
    )
    worker = ClickWorker(ClickConsumer(service.ingest, client, settings), client, settings)

    await worker.ensure_stream_group()
    await worker.process_stream_batch(start_id="0")
    kafka = await _start_kafka(settings)
    logger.info(f"Ingestion worker {settings.INGESTION_CONSUMER_NAME} started (kafka={'on' if kafka else 'off'})")

    try:
        while True:
            try:
                if kafka is not None:
                    await worker.process_kafka_batch(kafka)
                    await worker.process_stream_batch()
                else:
                    await worker.process_stream_batch(block_ms=settings.INGESTION_BLOCK_MS)
                await worker.process_due_retries()
            except Exception:
                logger.warning("ingestion loop iteration failed", exc_info=True)
                await asyncio.sleep(1)
    finally:
        if kafka is not None:
            await kafka.stop()
        await geo.close()
        await client.aclose()
        await engine.dispose()


if __name__ == "__main__":
    asyncio.run(run())
