"""Kafka envelope + producer/consumer helpers.

This module standardizes the shape of rental transition events, metadata
propagation, and the resilient consumer loop used by downstream services.
"""

import asyncio
import json
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from aiokafka import AIOKafkaConsumer, AIOKafkaProducer
from pydantic import BaseModel, Field

from carrental.common.config import settings
from carrental.common.logging import entity_id_ctx, entity_type_ctx, event_id_ctx, logger, trace_id_ctx
from carrental.common.metrics import event_queue_delay_seconds


LICENSE_TOPIC = "licenses.events"
CAR_TOPIC = "cars.events"
RENTAL_TOPIC = "rental.events"


class EventEnvelope(BaseModel):
    """Canonical event shape sent across Kafka topics."""

    event_id: str = Field(default_factory=lambda: str(uuid4()))
    event_type: str
    aggregate_id: str
    occurred_at: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    trace_id: str
    payload: dict[str, Any]


EVENT_TOPICS = {
    "LicenseUploaded": LICENSE_TOPIC,
    "LicenseApproved": LICENSE_TOPIC,
    "LicenseRejected": LICENSE_TOPIC,
    "CarCreated": CAR_TOPIC,
    "CarSelected": CAR_TOPIC,
    "CarDelivered": CAR_TOPIC,
    "CarInspected": CAR_TOPIC,
    "CarReturned": CAR_TOPIC,
    "CarRemoved": CAR_TOPIC,
    "DemoDataCreated": RENTAL_TOPIC,
}

TOPIC_ENTITIES = {LICENSE_TOPIC: "license", CAR_TOPIC: "car", RENTAL_TOPIC: "rental"}


def topic_for(event_type: str) -> str:
    """Topic an event type is published on; unknown types are rejected."""

    try:
        return EVENT_TOPICS[event_type]
    except KeyError:
        raise ValueError(f"no topic for event type {event_type!r}") from None


class KafkaBus:
    """Lazy Kafka producer wrapper used by service outbox publishers."""

    def __init__(self) -> None:
        self._producer: AIOKafkaProducer | None = None

    async def producer(self) -> AIOKafkaProducer:
        if self._producer is None:
            producer = AIOKafkaProducer(bootstrap_servers=settings.kafka_bootstrap_servers)
            await producer.start()
            self._producer = producer
        return self._producer

    async def publish(self, topic: str, event: EventEnvelope) -> None:
        producer = await self.producer()
        await producer.send_and_wait(
            topic,
            json.dumps(event.model_dump()).encode("utf-8"),
            key=event.aggregate_id.encode("utf-8"),
        )

    async def close(self) -> None:
        if self._producer:
            await self._producer.stop()


def parse_envelope(raw: bytes) -> EventEnvelope:
    return EventEnvelope(**json.loads(raw.decode("utf-8")))


def queue_delay_seconds(event: EventEnvelope, now: datetime | None = None) -> float:
    """Seconds between the event's `occurred_at` and `now`, never negative."""

    occurred_at = datetime.fromisoformat(event.occurred_at.replace("Z", "+00:00"))
    if occurred_at.tzinfo is None:
        occurred_at = occurred_at.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    return max(0.0, (now - occurred_at.astimezone(timezone.utc)).total_seconds())


async def make_consumer(topic: str, group_id: str) -> AIOKafkaConsumer:
    """Create a configured Kafka consumer for one topic/group."""

    consumer = AIOKafkaConsumer(
        topic,
        bootstrap_servers=settings.kafka_bootstrap_servers,
        group_id=group_id,
        auto_offset_reset="earliest",
        enable_auto_commit=False,
    )
    await consumer.start()
    return consumer


async def dispatch(topic: str, group_id: str, event: EventEnvelope, handler) -> None:
    """Run `handler` for one envelope with its ids bound into the log context."""

    event_queue_delay_seconds.labels(service=settings.service_name, topic=topic).observe(
        queue_delay_seconds(event)
    )
    trace_token = trace_id_ctx.set(event.trace_id)
    event_token = event_id_ctx.set(event.event_id)
    type_token = entity_type_ctx.set(TOPIC_ENTITIES.get(topic, ""))
    entity_token = entity_id_ctx.set(event.aggregate_id)
    try:
        logger.info(
            "event_received topic=%s group=%s event_type=%s aggregate_id=%s",
            topic,
            group_id,
            event.event_type,
            event.aggregate_id,
        )
        await handler(event)
    finally:
        trace_id_ctx.reset(trace_token)
        event_id_ctx.reset(event_token)
        entity_id_ctx.reset(entity_token)
        entity_type_ctx.reset(type_token)


async def consume_forever(
    topic: str,
    group_id: str,
    handler,
) -> None:
    """Continuously consume one topic and pass parsed envelopes to `handler`.

    Errors in individual messages are logged and processing continues; commit is
    done in batches to keep throughput reasonable.
    """

    while True:
        consumer = None
        try:
            consumer = await make_consumer(topic, group_id)
            while True:
                results = await consumer.getmany(timeout_ms=500, max_records=50)
                for _, messages in results.items():
                    for msg in messages:
                        try:
                            await dispatch(topic, group_id, parse_envelope(msg.value), handler)
                        except Exception as exc:
                            logger.error(
                                "handler_error topic=%s group=%s offset=%s error=%s",
                                topic,
                                group_id,
                                msg.offset,
                                exc,
                            )
                await consumer.commit()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error("consumer_loop_error topic=%s group=%s error=%s", topic, group_id, exc)
            await asyncio.sleep(2)
        finally:
            if consumer is not None:
                await consumer.stop()
            await asyncio.sleep(0)
