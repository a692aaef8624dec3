"""
Order Service — イベントコンシューマー

他サービスが発行したイベントで注文の状態を進める。

  PAYMENT_PROCESSED → PAID
  ORDER_SHIPPED     → SHIPPED
  ORDER_DELIVERED   → DELIVERED

イベント間の到着順は保証されない。ORDER_PLACED のコミットより前に
PAYMENT_PROCESSED が届くことはないが、注文が見つからない場合は
NotFoundError としてログに残し、そのイベントは失われる。
"""

import logging

from sqlalchemy.orm import sessionmaker

from services.common.channel import EventChannel
from services.common.events import (
    DomainEvent,
    EventType,
    OrderDelivered,
    OrderShipped,
    PaymentProcessed,
)
from services.common.publisher import EventPublisher
from services.common.subscriber import EventConsumer

from . import commands

logger = logging.getLogger(__name__)


class OrderEventConsumer(EventConsumer):
    name = "order-consumer"

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
            EventType.PAYMENT_PROCESSED: self.handle_payment_processed,
            EventType.ORDER_SHIPPED: self.handle_order_shipped,
            EventType.ORDER_DELIVERED: self.handle_order_delivered,
        }

    async def handle_payment_processed(self, event: DomainEvent) -> None:
        data = PaymentProcessed.model_validate(event.data)
        logger.info("Received PAYMENT_PROCESSED for order %s (payment %s)",
                    data.order_id, data.payment_transaction_id)
        async with self.async_session() as session:
            await commands.record_payment(session, self.publisher, data)

    async def handle_order_shipped(self, event: DomainEvent) -> None:
        data = OrderShipped.model_validate(event.data)
        logger.info("Received ORDER_SHIPPED for order %s", data.order_id)
        async with self.async_session() as session:
            await commands.record_shipment(session, data)

    async def handle_order_delivered(self, event: DomainEvent) -> None:
        data = OrderDelivered.model_validate(event.data)
        logger.info("Received ORDER_DELIVERED for order %s", data.order_id)
        async with self.async_session() as session:
            await commands.record_delivery(session, self.publisher, data)
