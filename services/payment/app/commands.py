"""
Payment Service — コマンドハンドラ

  charge_order  ORDER_PLACED (PAY_NOW) → CHARGE を記録 → PAYMENT_PROCESSED
  refund_order  ORDER_REFUND_REQUESTED → REFUND を記録 → PAYMENT_REFUNDED

どちらも (order_id, type) の一意制約で冪等。再送されたイベントは何もしない。
"""

import logging
from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import insert, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from services.common.errors import NotFoundError
from services.common.events import (
    EventType,
    OrderPlaced,
    OrderRefundRequested,
    PaymentProcessed,
    PaymentRefunded,
)
from services.common.publisher import EventPublisher

from .gateway import SimulatedGateway
from .schema import payment_transactions

logger = logging.getLogger(__name__)

CHARGE = "CHARGE"
REFUND = "REFUND"
SUCCESS = "SUCCESS"
FAILED = "FAILED"


async def _find(session: AsyncSession, order_id: str, tx_type: str):
    return (
        await session.execute(
            select(payment_transactions).where(
                payment_transactions.c.order_id == order_id,
                payment_transactions.c.type == tx_type,
            )
        )
    ).first()


async def charge_order(
    session: AsyncSession,
    gateway: SimulatedGateway,
    publisher: EventPublisher,
    data: OrderPlaced,
) -> str | None:
    """決済に成功したら取引 id を返す。代金引換・処理済み・失敗なら None。"""
    if data.payment_type != "PAY_NOW":
        return None

    transaction_id = str(uuid4())
    try:
        async with session.begin():
            if await _find(session, data.order_id, CHARGE) is not None:
                logger.info("Order %s already charged", data.order_id)
                return None
            result = gateway.charge(data.total_amount)
            await session.execute(
                insert(payment_transactions).values(
                    id=transaction_id,
                    order_id=data.order_id,
                    user_id=data.user_id,
                    amount=data.total_amount,
                    type=CHARGE,
                    status=SUCCESS if result.success else FAILED,
                    gateway=gateway.name,
                    gateway_transaction_id=result.gateway_transaction_id,
                    failure_reason=result.failure_reason,
                    created_at=datetime.now(timezone.utc),
                )
            )
    except IntegrityError:
        logger.info("Order %s was charged concurrently", data.order_id)
        return None

    if not result.success:
        logger.warning("Payment for order %s failed: %s", data.order_id, result.failure_reason)
        return None

    await publisher.publish(
        EventType.PAYMENT_PROCESSED,
        PaymentProcessed(
            payment_transaction_id=transaction_id,
            order_id=data.order_id,
            user_id=data.user_id,
        ),
    )
    return transaction_id


async def refund_order(
    session: AsyncSession,
    gateway: SimulatedGateway,
    publisher: EventPublisher,
    data: OrderRefundRequested,
) -> str | None:
    """返金した取引 id を返す。処理済みなら None。元の決済がなければ NotFoundError。"""
    refund_id = str(uuid4())
    try:
        async with session.begin():
            charge = (
                await session.execute(
                    select(payment_transactions).where(
                        payment_transactions.c.id == data.payment_transaction_id,
                        payment_transactions.c.type == CHARGE,
                        payment_transactions.c.status == SUCCESS,
                    )
                )
            ).first()
            if charge is None:
                raise NotFoundError(
                    f"Charge {data.payment_transaction_id} for order {data.order_id} not found"
                )
            if await _find(session, charge.order_id, REFUND) is not None:
                logger.info("Order %s already refunded", charge.order_id)
                return None
            result = gateway.refund(charge.amount)
            await session.execute(
                insert(payment_transactions).values(
                    id=refund_id,
                    order_id=charge.order_id,
                    user_id=charge.user_id,
                    amount=charge.amount,
                    currency=charge.currency,
                    type=REFUND,
                    status=SUCCESS,
                    gateway=gateway.name,
                    gateway_transaction_id=result.gateway_transaction_id,
                    original_transaction_id=charge.id,
                    created_at=datetime.now(timezone.utc),
                )
            )
    except IntegrityError:
        logger.info("Order %s was refunded concurrently", data.order_id)
        return None

    logger.info("Refunded %s for order %s (%s)", charge.amount, charge.order_id, data.reason)
    await publisher.publish(
        EventType.PAYMENT_REFUNDED,
        PaymentRefunded(
            order_id=charge.order_id,
            payment_transaction_id=charge.id,
            refund_transaction_id=refund_id,
            amount=charge.amount,
        ),
    )
    return refund_id