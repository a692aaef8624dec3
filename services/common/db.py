"""
Common — データベース接続

Database per Service: 各サービスは自分専用の DB を持ち、
他サービスの DB には直接アクセスしない。
"""

from sqlalchemy import MetaData
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker


def create_session_factory(database_url: str) -> tuple[AsyncEngine, sessionmaker]:
    engine = create_async_engine(database_url, echo=False)
    async_session = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    return engine, async_session


async def create_tables(engine: AsyncEngine, metadata: MetaData) -> None:
    """スキーマを作成する(ローカル実行・テスト用。本番はマイグレーションで管理)。"""
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
