"""
Catalog Service — イベントコンシューマー (在庫調整)

  ORDER_PLACED    → 明細ごとに在庫を減らす
  ORDER_CANCELLED → 明細ごとに在庫を戻す (直前の状態が CANCELLED / REFUNDED なら何もしない)

調整は stock_adjustments に (order_id, product_id, kind) で記録し、
在庫の更新と同じトランザクションでコミットする。同じイベントが再送されても
一意制約で弾かれるので在庫は二重に動かない。

在庫を戻すのは ORDER_PLACED で実際に減らした分だけ。ORDER_PLACED が
失われていた場合は戻さない。キャンセルが先に届いた場合は、後から届いた
ORDER_PLACED で減らさない。
"""

import logging
from collections import defaultdict
from datetime import datetime, timezone

from sqlalchemy import insert, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import sessionmaker

from services.common.channel import EventChannel
from services.common.events import (
    DomainEvent,
    EventType,
    OrderCancelled,
    OrderItemSnapshot,
    OrderPlaced,
)
from services.common.subscriber import EventConsumer

from .cache import CatalogCache
from .schema import products, stock_adjustments

logger = logging.getLogger(__name__)

PLACED = "ORDER_PLACED"
CANCELLED = "ORDER_CANCELLED"

# この状態からのキャンセルでは在庫は既に戻っている
NO_RESTOCK_STATUSES = {"CANCELLED", "REFUNDED"}


def _quantities(items: list[OrderItemSnapshot]) -> dict[str, int]:
    """同じ商品が複数行あれば合算する。"""
    totals: dict[str, int] = defaultdict(int)
    for item in items:
        totals[item.product_id] += item.quantity
    return dict(totals)


async def _adjustment_exists(
    session: AsyncSession, order_id: str, product_id: str, kind: str
) -> bool:
    found = await session.scalar(
        select(stock_adjustments.c.id).where(
            stock_adjustments.c.order_id == order_id,
            stock_adjustments.c.product_id == product_id,
            stock_adjustments.c.kind == kind,
        )
    )
    return found is not None


async def apply_adjustment(
    session: AsyncSession,
    order_id: str,
    product_id: str,
    quantity: int,
    kind: str,
) -> str | None:
    """
    1商品分の在庫調整を1トランザクションで行う。

    戻り値は調整した商品の slug (キャッシュ無効化用)。
    商品がない・適用済み・相殺済みなら None。
    """
    now = datetime.now(timezone.utc)
    async with session.begin():
        if kind == PLACED:
            if await _adjustment_exists(session, order_id, product_id, CANCELLED):
                logger.warning("Order %s was cancelled before placement reached catalog; "
                               "skipping stock decrement for %s", order_id, product_id)
                return None
            delta = -quantity
        else:
            if not await _adjustment_exists(session, order_id, product_id, PLACED):
                # 減らしていないので戻さない。ただし後着の ORDER_PLACED のために記録は残す
                await session.execute(
                    insert(stock_adjustments).values(
                        order_id=order_id, product_id=product_id, kind=kind,
                        quantity=0, created_at=now,
                    )
                )
                logger.warning("No stock decrement recorded for order %s product %s; "
                               "nothing to restock", order_id, product_id)
                return None
            delta = quantity

        row = (
            await session.execute(
                update(products)
                .where(products.c.id == product_id)
                .values(stock=products.c.stock + delta, updated_at=now)
                .returning(products.c.slug, products.c.stock)
            )
        ).first()
        if row is None:
            logger.warning("Product not found: %s", product_id)
            return None

        await session.execute(
            insert(stock_adjustments).values(
                order_id=order_id, product_id=product_id, kind=kind,
                quantity=quantity, created_at=now,
            )
        )
    logger.info("Stock for product %s %s by %d (now %d) for order %s",
                product_id, "decremented" if delta < 0 else "restocked",
                quantity, row.stock, order_id)
    return row.slug


class CatalogEventConsumer(EventConsumer):
    name = "catalog-consumer"

    def __init__(
        self,
        channel: EventChannel,
        async_session_factory: sessionmaker,
        cache: CatalogCache,
    ) -> None:
        super().__init__(channel)
        self.async_session = async_session_factory
        self.cache = cache

    def handlers(self):
        return {
            EventType.ORDER_PLACED: self.handle_order_placed,
            EventType.ORDER_CANCELLED: self.handle_order_cancelled,
        }

    async def handle_order_placed(self, event: DomainEvent) -> None:
        data = OrderPlaced.model_validate(event.data)
        logger.info("Processing ORDER_PLACED for order %s", data.order_id)
        await self._adjust(data.order_id, data.items, PLACED)

    async def handle_order_cancelled(self, event: DomainEvent) -> None:
        data = OrderCancelled.model_validate(event.data)
        if data.previous_status in NO_RESTOCK_STATUSES:
            logger.info("Order %s was already %s; no restock",
                        data.order_id, data.previous_status)
            return
        logger.info("Processing ORDER_CANCELLED for order %s", data.order_id)
        await self._adjust(data.order_id, data.items, CANCELLED)

    async def _adjust(self, order_id: str, items: list[OrderItemSnapshot], kind: str) -> None:
        """1商品の失敗で残りの明細の処理を止めない。"""
        for product_id, quantity in _quantities(items).items():
            try:
                async with self.async_session() as session:
                    slug = await apply_adjustment(session, order_id, product_id, quantity, kind)
            except IntegrityError:
                logger.info("%s adjustment for order %s product %s already applied",
                            kind, order_id, product_id)
                continue
            except SQLAlchemyError:
                logger.exception("Failed to adjust stock for order %s product %s",
                                 order_id, product_id)
                continue
            if slug is not None:
                await self.cache.invalidate_product(product_id, slug)
