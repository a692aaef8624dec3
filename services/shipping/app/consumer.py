"""
Shipping Service — イベントコンシューマーと配達ジョブ

  ORDER_PAID                      → 配送を作成して出荷
  ORDER_PLACED (CASH_ON_DELIVERY) → 配送を作成して出荷 (支払いは配達時)

DeliveryJob は一定間隔で配達予定時刻を過ぎた配送を配達完了にする。
"""

import asyncio
import logging

from sqlalchemy.orm import sessionmaker

from services.common.channel import EventChannel
from services.common.events import DomainEvent, EventType, OrderPaid, OrderPlaced
from services.common.publisher import EventPublisher
from services.common.subscriber import EventConsumer

from . import commands

logger = logging.getLogger(__name__)


class ShippingEventConsumer(EventConsumer):
    name = "shipping-consumer"

    def __init__(
        self,
        channel: EventChannel,
        async_session_factory: sessionmaker,
        publisher: EventPublisher,
    ) -> None:
        super().__init__(channel)
        self.async_session = async_session_factory
        self.publisher = publisher

    def handlers(self):
        return {
            EventType.ORDER_PAID: self.handle_order_paid,
            EventType.ORDER_PLACED: self.handle_order_placed,
        }

    async def handle_order_paid(self, event: DomainEvent) -> None:
        data = OrderPaid.model_validate(event.data)
        logger.info("Payment confirmed for order %s; creating shipment", data.order_id)
        async with self.async_session() as session:
            await commands.create_shipment(
                session, self.publisher, data.order_id, data.user_id,
                data.email, data.shipping_address,
            )

    async def handle_order_placed(self, event: DomainEvent) -> None:
        data = OrderPlaced.model_validate(event.data)
        if data.payment_type != "CASH_ON_DELIVERY":
            return
        logger.info("Cash-on-delivery order %s; creating shipment", data.order_id)
        async with self.async_session() as session:
            await commands.create_shipment(
                session, self.publisher, data.order_id, data.user_id,
                data.email, data.shipping_address,
            )


class DeliveryJob:
    def __init__(
        self,
        async_session_factory: sessionmaker,
        publisher: EventPublisher,
        interval: float = 60.0,
    ) -> None:
        self.async_session = async_session_factory
        self.publisher = publisher
        self.interval = interval
        self._task: asyncio.Task | None = None

    async def run_once(self) -> list[str]:
        async with self.async_session() as session:
            return await commands.deliver_due_shipments(session, self.publisher)

    async def _loop(self) -> None:
        while True:
            try:
                delivered = await self.run_once()
                if delivered:
                    logger.info("Delivery job marked %d shipments delivered", len(delivered))
            except Exception:
                logger.exception("Delivery job run failed")
            await asyncio.sleep(self.interval)

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._loop())
            logger.info("Delivery job started (interval=%ss)", self.interval)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Delivery job stopped")
