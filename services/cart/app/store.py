"""
Cart Service — カートの保存先 (Redis)

カートは DB を持たず、Redis のハッシュが正本。

  cart:{userId}          ハッシュ itemId → 明細 JSON
  cart:summary:{userId}  集計結果のキャッシュ (SHORT)

ハッシュ本体への読み書きの失敗は握りつぶさずに伝播させる。
握りつぶすのは summary キャッシュの失敗だけ (CacheStore)。
"""

import json
from datetime import datetime, timezone
from decimal import Decimal

import redis.asyncio as aioredis

from services.common.cache import CacheStore

CART_PREFIX = "cart:"
SUMMARY_PREFIX = "cart:summary:"


def cart_key(user_id: str) -> str:
    return f"{CART_PREFIX}{user_id}"


def summary_key(user_id: str) -> str:
    return f"{SUMMARY_PREFIX}{user_id}"


def new_item(item_id: str, name: str, sku: str | None, quantity: int, price: Decimal) -> dict:
    return {
        "item_id": item_id,
        "name": name,
        "sku": sku,
        "quantity": quantity,
        "price": str(price),
        "added_at": datetime.now(timezone.utc).isoformat(),
    }


class CartStore:
    def __init__(self, redis: aioredis.Redis, cache: CacheStore) -> None:
        self.redis = redis
        self.cache = cache

    async def items(self, user_id: str) -> dict[str, dict]:
        raw = await self.redis.hgetall(cart_key(user_id))
        return {item_id: json.loads(value) for item_id, value in raw.items()}

    async def item(self, user_id: str, item_id: str) -> dict | None:
        raw = await self.redis.hget(cart_key(user_id), item_id)
        return json.loads(raw) if raw else None

    async def put(self, user_id: str, item: dict) -> None:
        await self.redis.hset(cart_key(user_id), item["item_id"], json.dumps(item))

    async def remove(self, user_id: str, *item_ids: str) -> int:
        return await self.redis.hdel(cart_key(user_id), *item_ids)

    async def drop(self, user_id: str) -> int:
        return await self.redis.delete(cart_key(user_id))

    async def invalidate_summary(self, user_id: str) -> None:
        await self.cache.delete(summary_key(user_id))

    async def user_ids(self):
        """ハッシュを持つ全ユーザー。summary キーは除く。"""
        async for key in self.redis.scan_iter(match=f"{CART_PREFIX}*", count=500):
            if not key.startswith(SUMMARY_PREFIX):
                yield key[len(CART_PREFIX):]
