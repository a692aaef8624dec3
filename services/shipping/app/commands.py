"""
Shipping Service — コマンドハンドラ

  create_shipment       配送を作成してすぐ出荷し、ORDER_SHIPPED を発行
  deliver_due_shipments 配達予定時刻を過ぎた出荷済みの配送を配達完了にし、ORDER_DELIVERED を発行
"""

import logging
import secrets
import time
from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import uuid4

from sqlalchemy import insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from services.common.events import EventType, OrderDelivered, OrderShipped
from services.common.publisher import EventPublisher

from .schema import shipments

logger = logging.getLogger(__name__)

# シミュレーション用の配送所要時間
DEFAULT_TRANSIT_TIME = timedelta(minutes=10)


class ShipmentStatus:
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"


def generate_tracking_number() -> str:
    stamp = format(int(time.time() * 1000), "x")
    return f"TRK{stamp}{secrets.token_hex(3)}".upper()


async def create_shipment(
    session: AsyncSession,
    publisher: EventPublisher,
    order_id: str,
    user_id: str,
    email: str,
    shipping_address: dict[str, Any],
    transit_time: timedelta = DEFAULT_TRANSIT_TIME,
) -> str | None:
    """追跡番号を返す。既に配送があれば None (再送されたイベント)。"""
    now = datetime.now(timezone.utc)
    tracking_number = generate_tracking_number()
    estimated_delivery = now + transit_time
    try:
        async with session.begin():
            existing = await session.scalar(
                select(shipments.c.id).where(shipments.c.order_id == order_id)
            )
            if existing is not None:
                logger.info("Shipment for order %s already exists", order_id)
                return None
            await session.execute(
                insert(shipments).values(
                    id=str(uuid4()),
                    order_id=order_id,
                    user_id=user_id,
                    tracking_number=tracking_number,
                    status=ShipmentStatus.SHIPPED,
                    shipping_address=shipping_address,
                    email=email,
                    estimated_delivery=estimated_delivery,
                    shipped_at=now,
                    created_at=now,
                    updated_at=now,
                )
            )
    except IntegrityError:
        logger.info("Shipment for order %s was created concurrently", order_id)
        return None

    logger.info("Order %s shipped (tracking %s, eta %s)",
                order_id, tracking_number, estimated_delivery.isoformat())
    await publisher.publish(
        EventType.ORDER_SHIPPED,
        OrderShipped(
            order_id=order_id,
            user_id=user_id,
            tracking_number=tracking_number,
            estimated_delivery=estimated_delivery,
            shipped_at=now,
        ),
    )
    return tracking_number


async def deliver_due_shipments(
    session: AsyncSession, publisher: EventPublisher, now: datetime | None = None
) -> list[str]:
    """配達完了にした注文 id を返す。"""
    now = now or datetime.now(timezone.utc)
    delivered = []
    async with session.begin():
        due = (
            await session.execute(
                select(shipments).where(
                    shipments.c.status == ShipmentStatus.SHIPPED,
                    shipments.c.estimated_delivery <= now,
                )
            )
        ).fetchall()
        for row in due:
            result = await session.execute(
                update(shipments)
                .where(
                    shipments.c.id == row.id,
                    shipments.c.status == ShipmentStatus.SHIPPED,
                )
                .values(status=ShipmentStatus.DELIVERED, delivered_at=now, updated_at=now)
            )
            if result.rowcount == 1:
                delivered.append(row)

    for row in delivered:
        logger.info("Order %s delivered (tracking %s)", row.order_id, row.tracking_number)
        await publisher.publish(
            EventType.ORDER_DELIVERED,
            OrderDelivered(
                order_id=row.order_id,
                user_id=row.user_id,
                tracking_number=row.tracking_number,
                delivered_at=now,
            ),
        )
    return [row.order_id for row in delivered]
