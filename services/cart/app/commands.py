"""
Cart Service — コマンドハンドラ

変更のたびに cart:summary:{userId} を破棄する。
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal

from services.common.errors import NotFoundError

from .store import CartStore, new_item

logger = logging.getLogger(__name__)


async def add_item(
    store: CartStore,
    user_id: str,
    item_id: str,
    name: str,
    sku: str | None,
    quantity: int,
    price: Decimal,
) -> dict:
    """同じ商品が既にあれば数量・価格を上書きする。"""
    item = new_item(item_id, name, sku, quantity, price)
    await store.put(user_id, item)
    await store.invalidate_summary(user_id)
    logger.info("Added %s x%d to cart of user %s", item_id, quantity, user_id)
    return item


async def update_quantity(store: CartStore, user_id: str, item_id: str, quantity: int) -> dict:
    item = await store.item(user_id, item_id)
    if item is None:
        raise NotFoundError("Item not found in cart")
    item = {**item, "quantity": quantity, "updated_at": datetime.now(timezone.utc).isoformat()}
    await store.put(user_id, item)
    await store.invalidate_summary(user_id)
    return item


async def remove_item(store: CartStore, user_id: str, item_id: str) -> None:
    if not await store.remove(user_id, item_id):
        raise NotFoundError("Item not found in cart")
    await store.invalidate_summary(user_id)


async def clear_cart(store: CartStore, user_id: str) -> int:
    """削除した明細数を返す。空のカートでも成功する。"""
    cleared = len(await store.items(user_id))
    await store.drop(user_id)
    await store.invalidate_summary(user_id)
    logger.info("Cleared cart of user %s (%d items)", user_id, cleared)
    return cleared


async def remove_product_everywhere(store: CartStore, product_id: str) -> list[str]:
    """商品を含むすべてのカートから取り除く。影響したユーザーを返す。"""
    affected = []
    async for user_id in store.user_ids():
        if await store.remove(user_id, product_id):
            await store.invalidate_summary(user_id)
            affected.append(user_id)
    return affected


async def refresh_carts_with_product(store: CartStore, product_id: str) -> list[str]:
    """商品を含むカートの summary キャッシュだけを破棄する。"""
    affected = []
    async for user_id in store.user_ids():
        if await store.item(user_id, product_id) is not None:
            await store.invalidate_summary(user_id)
            affected.append(user_id)
    return affected
