# tests/conftest.py
"""
共通フィクスチャ

  - Redis は fakeredis (decode_responses=True で本番と同じ str を返す)
  - イベントは InMemoryBroker(inline=True) (publish の中で同期的に配信される)
  - DB はテストごとの SQLite ファイル (aiosqlite)
"""

from contextlib import asynccontextmanager

import pytest
from fakeredis import FakeAsyncRedis
from httpx import ASGITransport, AsyncClient

from services.common.channel import InMemoryBroker
from services.common.config import Settings
from services.common.db import create_session_factory, create_tables
from services.common.events import DomainEvent
from services.common.publisher import EventPublisher


class EventRecorder:
    """ブローカーに1クライアントとして接続し、受け取ったイベントを溜める。"""

    def __init__(self, broker: InMemoryBroker) -> None:
        self.channel = broker.connect()
        self.events: list[DomainEvent] = []

    async def listen(self, *event_types: str) -> None:
        for event_type in event_types:
            await self.channel.subscribe(event_type, self._record)

    async def _record(self, payload: str) -> None:
        self.events.append(DomainEvent.model_validate_json(payload))

    def of_type(self, event_type: str) -> list[DomainEvent]:
        return [e for e in self.events if e.type == event_type]


@pytest.fixture
def broker():
    return InMemoryBroker(inline=True)


@pytest.fixture
async def redis():
    client = FakeAsyncRedis(decode_responses=True)
    yield client
    await client.flushall()
    await client.aclose()


@pytest.fixture
def recorder(broker):
    return EventRecorder(broker)


@pytest.fixture
def publisher(broker):
    """外部サービスになりすましてイベントを発行する。"""
    return EventPublisher(broker.connect(), source="test-suite")


@pytest.fixture
def settings_for(tmp_path):
    def build(service_name: str) -> Settings:
        return Settings(
            service_name=service_name,
            database_url=f"sqlite+aiosqlite:///{tmp_path}/{service_name}.db",
            event_transport="memory",
        )

    return build


@pytest.fixture
async def session_factory(tmp_path):
    """metadata ごとに DB ファイルを作り、sessionmaker を返す。"""
    engines = []

    async def build(metadata, name: str):
        engine, factory = create_session_factory(f"sqlite+aiosqlite:///{tmp_path}/{name}.db")
        await create_tables(engine, metadata)
        engines.append(engine)
        return factory

    yield build
    for engine in engines:
        await engine.dispose()


@pytest.fixture
def serve():
    """lifespan を走らせたうえで httpx クライアントを返す。"""

    @asynccontextmanager
    async def running(app):
        async with app.router.lifespan_context(app):
            transport = ASGITransport(app=app)
            async with AsyncClient(transport=transport, base_url="http://test") as client:
                yield client

    return running
