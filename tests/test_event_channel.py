import asyncio
import json
import logging
from decimal import Decimal

import pytest
from pydantic import ValidationError

from services.common.channel import EventChannel, InMemoryBroker, create_event_channel
from services.common.errors import EventPublishError
from services.common.events import EventType, OrderCompleted, ProductPriceChanged
from services.common.publisher import EventPublisher
from services.common.subscriber import EventConsumer


# ── Channel ──────────────────────────────────────


async def test_fan_out_to_every_subscriber(broker):
    received_a, received_b = [], []

    async def handler_a(payload):
        received_a.append(payload)

    async def handler_b(payload):
        received_b.append(payload)

    await broker.connect().subscribe("ORDER_PLACED", handler_a)
    await broker.connect().subscribe("ORDER_PLACED", handler_b)

    receivers = await broker.connect().publish("ORDER_PLACED", "hello")

    assert receivers == 2
    assert received_a == ["hello"]
    assert received_b == ["hello"]


async def test_late_subscriber_misses_earlier_messages(broker):
    received = []

    async def handler(payload):
        received.append(payload)

    publisher = broker.connect()
    assert await publisher.publish("ORDER_PAID", "first") == 0

    await broker.connect().subscribe("ORDER_PAID", handler)
    await publisher.publish("ORDER_PAID", "second")

    assert received == ["second"]


async def test_handler_error_is_logged_and_dropped(broker, caplog):
    received = []

    async def failing(payload):
        raise RuntimeError("boom")

    async def healthy(payload):
        received.append(payload)

    await broker.connect().subscribe("ORDER_SHIPPED", failing)
    await broker.connect().subscribe("ORDER_SHIPPED", healthy)

    with caplog.at_level(logging.ERROR):
        receivers = await broker.connect().publish("ORDER_SHIPPED", "payload")

    assert receivers == 2
    assert received == ["payload"]
    assert "Handler for channel ORDER_SHIPPED failed" in caplog.text


async def test_resubscribe_replaces_handler_for_same_client(broker):
    received = []

    async def old(payload):
        received.append(("old", payload))

    async def new(payload):
        received.append(("new", payload))

    channel = broker.connect()
    await channel.subscribe("ORDER_PAID", old)
    await channel.subscribe("ORDER_PAID", new)
    await broker.connect().publish("ORDER_PAID", "x")

    assert received == [("new", "x")]
    assert broker.subscriber_count("ORDER_PAID") == 1


async def test_close_unsubscribes_everything(broker):
    channel = broker.connect()

    async def handler(payload):
        pass

    await channel.subscribe("A", handler)
    await channel.subscribe("B", handler)
    await channel.close()

    assert broker.subscriber_count("A") == 0
    assert broker.subscriber_count("B") == 0


async def test_default_broker_does_not_wait_for_handlers():
    broker = InMemoryBroker()
    release = asyncio.Event()
    received = []

    async def slow(payload):
        await release.wait()
        received.append(payload)
        await broker.connect().publish("ORDER_COMPLETED", "chained")

    async def tail(payload):
        received.append(payload)

    await broker.connect().subscribe("ORDER_DELIVERED", slow)
    await broker.connect().subscribe("ORDER_COMPLETED", tail)

    assert await broker.connect().publish("ORDER_DELIVERED", "first") == 1
    assert received == []

    release.set()
    await broker.drain()

    assert received == ["first", "chained"]


def test_redis_transport_requires_client():
    with pytest.raises(ValueError):
        create_event_channel("redis")


def test_memory_transport_creates_private_broker_when_none_given():
    channel = create_event_channel("memory")
    assert isinstance(channel.broker, InMemoryBroker)


# ── Publisher ────────────────────────────────────


async def test_publisher_builds_envelope_with_camel_case_data(broker, recorder):
    await recorder.listen(EventType.PRODUCT_PRICE_CHANGED)
    publisher = EventPublisher(broker.connect(), source="catalog-service")

    await publisher.publish(
        EventType.PRODUCT_PRICE_CHANGED,
        ProductPriceChanged(
            product_id="p-1", name="Mug", previous_price=Decimal("10.00"),
            price=Decimal("12.50"),
        ),
    )

    [event] = recorder.events
    assert event.type == "PRODUCT_PRICE_CHANGED"
    assert event.source == "catalog-service"
    assert event.version == "1.0.0"
    assert event.timestamp.tzinfo is not None
    assert event.data == {
        "productId": "p-1",
        "name": "Mug",
        "previousPrice": "10.00",
        "price": "12.50",
    }


class BrokenChannel(EventChannel):
    async def publish(self, channel, payload):
        raise ConnectionError("redis is down")

    async def subscribe(self, channel, handler):
        pass

    async def unsubscribe(self, channel):
        pass


async def test_publish_failure_raises_event_publish_error(caplog):
    publisher = EventPublisher(BrokenChannel(), source="order-service")

    with pytest.raises(EventPublishError) as exc_info:
        await publisher.publish(
            EventType.ORDER_COMPLETED, OrderCompleted(order_id="o-1", user_id="u-1")
        )

    assert exc_info.value.status_code == 502
    assert "Failed to publish event ORDER_COMPLETED" in caplog.text


# ── Consumer ─────────────────────────────────────


class RecordingConsumer(EventConsumer):
    name = "recording-consumer"

    def __init__(self, channel, fail=False):
        super().__init__(channel)
        self.seen = []
        self.fail = fail

    def handlers(self):
        return {EventType.ORDER_COMPLETED: self.handle_completed}

    async def handle_completed(self, event):
        if self.fail:
            raise RuntimeError("handler exploded")
        self.seen.append(OrderCompleted.model_validate(event.data))


async def test_consumer_dispatches_to_its_handler(broker):
    consumer = RecordingConsumer(broker.connect())
    await consumer.start()
    publisher = EventPublisher(broker.connect(), source="order-service")

    await publisher.publish(
        EventType.ORDER_COMPLETED, OrderCompleted(order_id="o-1", user_id="u-1")
    )

    assert [d.order_id for d in consumer.seen] == ["o-1"]


async def test_consumer_start_twice_registers_once(broker, caplog):
    consumer = RecordingConsumer(broker.connect())
    await consumer.start()
    with caplog.at_level(logging.WARNING):
        await consumer.start()

    assert broker.subscriber_count(EventType.ORDER_COMPLETED) == 1
    assert "already running" in caplog.text


async def test_consumer_stop_unsubscribes(broker):
    consumer = RecordingConsumer(broker.connect())
    await consumer.start()
    await consumer.stop()

    assert not consumer.is_running
    assert broker.subscriber_count(EventType.ORDER_COMPLETED) == 0


async def test_malformed_payload_is_logged_and_reraised(broker, caplog):
    consumer = RecordingConsumer(broker.connect())

    with pytest.raises(ValidationError):
        await consumer.dispatch(EventType.ORDER_COMPLETED, '{"type": "ORDER_COMPLETED"}')

    assert "malformed ORDER_COMPLETED payload" in caplog.text


async def test_handler_error_is_logged_with_payload_and_reraised(broker, caplog):
    consumer = RecordingConsumer(broker.connect(), fail=True)
    payload = json.dumps(
        {
            "type": "ORDER_COMPLETED",
            "source": "order-service",
            "timestamp": "2026-01-01T00:00:00+00:00",
            "version": "1.0.0",
            "data": {"orderId": "o-9", "userId": "u-9"},
        }
    )

    with pytest.raises(RuntimeError):
        await consumer.dispatch(EventType.ORDER_COMPLETED, payload)

    assert "failed to process ORDER_COMPLETED" in caplog.text
    assert "o-9" in caplog.text
