"""
Cart Service — イベントコンシューマー

  ORDER_PLACED           → 注文者のカートを空にする
  PRODUCT_STATUS_CHANGED → 非公開になった商品を全カートから取り除く
  PRODUCT_DELETED        → 削除された商品を全カートから取り除く
  PRODUCT_PRICE_CHANGED  → 該当商品を含むカートの summary を破棄する

どのハンドラも何度適用しても結果は同じ。
"""

import logging

from services.common.channel import EventChannel
from services.common.events import (
    DomainEvent,
    EventType,
    OrderPlaced,
    ProductDeleted,
    ProductPriceChanged,
    ProductStatusChanged,
)
from services.common.subscriber import EventConsumer

from . import commands
from .store import CartStore

logger = logging.getLogger(__name__)


class CartEventConsumer(EventConsumer):
    name = "cart-consumer"

    def __init__(self, channel: EventChannel, store: CartStore) -> None:
        super().__init__(channel)
        self.store = store

    def handlers(self):
        return {
            EventType.ORDER_PLACED: self.handle_order_placed,
            EventType.PRODUCT_STATUS_CHANGED: self.handle_product_status_changed,
            EventType.PRODUCT_DELETED: self.handle_product_deleted,
            EventType.PRODUCT_PRICE_CHANGED: self.handle_product_price_changed,
        }

    async def handle_order_placed(self, event: DomainEvent) -> None:
        data = OrderPlaced.model_validate(event.data)
        await commands.clear_cart(self.store, data.user_id)
        logger.info("Cleared cart of user %s after order %s", data.user_id, data.order_id)

    async def handle_product_status_changed(self, event: DomainEvent) -> None:
        data = ProductStatusChanged.model_validate(event.data)
        if data.is_active:
            return
        affected = await commands.remove_product_everywhere(self.store, data.product_id)
        logger.info("Removed inactive product %s from %d carts", data.product_id, len(affected))

    async def handle_product_deleted(self, event: DomainEvent) -> None:
        data = ProductDeleted.model_validate(event.data)
        affected = await commands.remove_product_everywhere(self.store, data.product_id)
        logger.info("Removed deleted product %s from %d carts", data.product_id, len(affected))

    async def handle_product_price_changed(self, event: DomainEvent) -> None:
        data = ProductPriceChanged.model_validate(event.data)
        affected = await commands.refresh_carts_with_product(self.store, data.product_id)
        logger.info("Price of %s changed %s -> %s; refreshed %d carts",
                    data.product_id, data.previous_price, data.price, len(affected))
