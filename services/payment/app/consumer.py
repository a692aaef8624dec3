"""
Payment Service — イベントコンシューマー

  ORDER_PLACED (PAY_NOW)  → 決済して PAYMENT_PROCESSED
  ORDER_REFUND_REQUESTED  → 返金して PAYMENT_REFUNDED
"""

import logging

from sqlalchemy.orm import sessionmaker

from services.common.channel import EventChannel
from services.common.events import DomainEvent, EventType, OrderPlaced, OrderRefundRequested
from services.common.publisher import EventPublisher
from services.common.subscriber import EventConsumer

from . import commands
from .gateway import SimulatedGateway

logger = logging.getLogger(__name__)


class PaymentEventConsumer(EventConsumer):
    name = "payment-consumer"

    def __init__(
        self,
        channel: EventChannel,
        async_session_factory: sessionmaker,
        publisher: EventPublisher,
        gateway: SimulatedGateway,
    ) -> None:
        super().__init__(channel)
        self.async_session = async_session_factory
        self.publisher = publisher
        self.gateway = gateway

    def handlers(self):
        return {
            EventType.ORDER_PLACED: self.handle_order_placed,
            EventType.ORDER_REFUND_REQUESTED: self.handle_refund_requested,
        }

    async def handle_order_placed(self, event: DomainEvent) -> None:
        data = OrderPlaced.model_validate(event.data)
        async with self.async_session() as session:
            transaction_id = await commands.charge_order(
                session, self.gateway, self.publisher, data
            )
        if transaction_id:
            logger.info("Charged order %s (%s)", data.order_id, transaction_id)

    async def handle_refund_requested(self, event: DomainEvent) -> None:
        data = OrderRefundRequested.model_validate(event.data)
        logger.info("Received ORDER_REFUND_REQUESTED for order %s (payment %s, amount %s)",
                    data.order_id, data.payment_transaction_id, data.amount)
        async with self.async_session() as session:
            await commands.refund_order(session, self.gateway, self.publisher, data)
