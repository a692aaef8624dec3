"""
Common — キャッシュアサイド層

正本はリレーショナル DB。Redis はあくまで読み取り高速化のためのもの。

キー設計:
  {entity}:{id}              単一エンティティ (主キー)
  {entity}:{alias}:{value}   単一エンティティ (slug / sku などの一意キー)
  {list_prefix}{params_json} 一覧クエリ。パラメータ全体をキーに埋め込むので
                             クエリ形状ごとに別エントリ・別 TTL になる

書き込み時は単一キー・エイリアスキーを消したうえで、一覧プレフィックス配下を
すべて SCAN して削除する。変更された行がどのフィルタ条件に一致するかは
分からないため、一覧の部分的な無効化はしない。

障害方針: キャッシュの読み書き・削除の失敗はログに残して握りつぶす。
キャッシュの失敗で書き込み処理を失敗させてはならない。
"""

import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import IntEnum
from typing import Any

import redis.asyncio as aioredis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)


class CacheTTL(IntEnum):
    SHORT = 60 * 5  # 一覧・派生集計
    MEDIUM = 60 * 30  # 変化の遅いクエリ結果
    LONG = 60 * 60  # id / slug / sku による単一エンティティ


def _dumps(value: Any) -> str:
    return json.dumps(value, default=str, separators=(",", ":"))


def list_cache_key(prefix: str, params: dict[str, Any]) -> str:
    """同じパラメータ集合なら順序に関係なく同じキーになる。"""
    return f"{prefix}{json.dumps(params, sort_keys=True, default=str, separators=(',', ':'))}"


class CacheStore:
    """Redis 上の JSON キャッシュ。すべての Redis エラーを握りつぶす。"""

    def __init__(self, redis: aioredis.Redis, scan_count: int = 500) -> None:
        self.redis = redis
        self.scan_count = scan_count

    async def get(self, key: str) -> Any | None:
        try:
            raw = await self.redis.get(key)
        except RedisError as exc:
            logger.warning("Cache read failed for %s: %s", key, exc)
            return None
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            logger.warning("Discarding undecodable cache entry %s", key)
            return None

    async def set(self, key: str, value: Any, ttl: int) -> None:
        try:
            await self.redis.set(key, _dumps(value), ex=int(ttl))
        except RedisError as exc:
            logger.warning("Cache write failed for %s: %s", key, exc)

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        try:
            return await self.redis.delete(*keys)
        except RedisError as exc:
            logger.error("Cache delete failed for %s: %s", keys, exc)
            return 0

    async def keys_matching(self, pattern: str) -> list[str]:
        try:
            return [
                key.decode() if isinstance(key, bytes) else key
                async for key in self.redis.scan_iter(match=pattern, count=self.scan_count)
            ]
        except RedisError as exc:
            logger.error("Cache scan failed for %s: %s", pattern, exc)
            return []

    async def delete_matching(self, pattern: str) -> int:
        keys = await self.keys_matching(pattern)
        return await self.delete(*keys)


@dataclass(frozen=True)
class CacheNamespace:
    """
    エンティティ種別ごとのキー命名。

    list_prefixes は書き込みのたびに一括削除される一覧キーのプレフィックス。
    """

    entity: str
    alias_field: str
    list_prefixes: tuple[str, ...] = ()

    def entity_key(self, entity_id: str) -> str:
        return f"{self.entity}:{entity_id}"

    def alias_key(self, value: str) -> str:
        return f"{self.entity}:{self.alias_field}:{value}"


class EntityCache:
    def __init__(self, store: CacheStore, namespace: CacheNamespace) -> None:
        self.store = store
        self.ns = namespace

    # ── 読み取り ─────────────────────────────────

    async def get_entity(self, entity_id: str) -> dict | None:
        return await self.store.get(self.ns.entity_key(entity_id))

    async def get_by_alias(self, value: str) -> dict | None:
        return await self.store.get(self.ns.alias_key(value))

    async def get_list(self, prefix: str, params: dict[str, Any]) -> Any | None:
        return await self.store.get(list_cache_key(prefix, params))

    async def read_through(
        self,
        key: str,
        loader: Callable[[], Awaitable[Any]],
        ttl: int,
    ) -> tuple[Any, bool]:
        """
        キャッシュを引き、ミスなら loader で正本を読んで格納する。
        戻り値は (値, キャッシュ由来か)。loader が None を返したら格納しない。
        """
        cached = await self.store.get(key)
        if cached is not None:
            return cached, True
        value = await loader()
        if value is not None:
            await self.store.set(key, value, ttl)
        return value, False

    # ── 格納 ─────────────────────────────────────

    async def put_entity(self, entity: dict) -> None:
        """主キーとエイリアスの両方に格納する。"""
        await self.store.set(self.ns.entity_key(entity["id"]), entity, CacheTTL.LONG)
        alias = entity.get(self.ns.alias_field)
        if alias:
            await self.store.set(self.ns.alias_key(alias), entity, CacheTTL.LONG)

    async def put_list(
        self, prefix: str, params: dict[str, Any], value: Any, ttl: int
    ) -> None:
        await self.store.set(list_cache_key(prefix, params), value, ttl)

    # ── 無効化 ───────────────────────────────────

    async def forget(self, entity_id: str, *alias_values: str | None) -> None:
        """単一キーとエイリアスだけを消す。一覧は触らない。"""
        keys = [self.ns.entity_key(entity_id)]
        keys.extend(self.ns.alias_key(v) for v in alias_values if v)
        await self.store.delete(*keys)

    async def invalidate(self, entity_id: str, *alias_values: str | None) -> None:
        await self.forget(entity_id, *alias_values)
        await self.invalidate_lists()

    async def invalidate_lists(self) -> None:
        for prefix in self.ns.list_prefixes:
            await self.store.delete_matching(f"{prefix}*")

    async def invalidate_all(self) -> None:
        """単一キー・エイリアス・一覧をすべて消す(一括更新や関連エンティティの変更時)。"""
        await self.store.delete_matching(f"{self.ns.entity}:*")
        await self.invalidate_lists()
