"""
Common — サービスのランタイム(接続クライアント一式)

プロセス全体のグローバル変数にはせず、lifespan の開始時に明示的に生成して
app.state に載せ、終了時に確実に閉じる。
テストでは Redis クライアントやインメモリブローカーを外から渡せる。
"""

import logging
from dataclasses import dataclass

import redis.asyncio as aioredis
from sqlalchemy import MetaData
from sqlalchemy.ext.asyncio import AsyncEngine
from sqlalchemy.orm import sessionmaker

from .cache import CacheStore
from .channel import EventChannel, InMemoryBroker, create_event_channel
from .config import Settings
from .db import create_session_factory, create_tables
from .publisher import EventPublisher

logger = logging.getLogger(__name__)


@dataclass
class ServiceRuntime:
    settings: Settings
    redis: aioredis.Redis
    channel: EventChannel
    publisher: EventPublisher
    cache: CacheStore
    engine: AsyncEngine | None = None
    async_session: sessionmaker | None = None
    owns_redis: bool = True

    async def close(self) -> None:
        await self.channel.close()
        if self.owns_redis:
            await self.redis.aclose()
        if self.engine is not None:
            await self.engine.dispose()
        logger.info("%s runtime closed", self.settings.service_name)


async def open_runtime(
    settings: Settings,
    metadata: MetaData | None = None,
    redis: aioredis.Redis | None = None,
    broker: InMemoryBroker | None = None,
) -> ServiceRuntime:
    owns_redis = redis is None
    if redis is None:
        redis = aioredis.from_url(settings.redis_url, decode_responses=True)

    channel = create_event_channel(settings.event_transport, redis=redis, broker=broker)
    runtime = ServiceRuntime(
        settings=settings,
        redis=redis,
        channel=channel,
        publisher=EventPublisher(channel, source=settings.service_name),
        cache=CacheStore(redis),
        owns_redis=owns_redis,
    )

    if metadata is not None:
        runtime.engine, runtime.async_session = create_session_factory(settings.database_url)
        await create_tables(runtime.engine, metadata)

    logger.info("%s runtime ready (transport=%s)",
                settings.service_name, settings.event_transport)
    return runtime
