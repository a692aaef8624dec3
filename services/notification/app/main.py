"""
Notification Service — FastAPI エントリーポイント

DB を持たない。イベントを購読してメールを送るだけで、HTTP はヘルスチェックのみ。
"""

import os
from contextlib import asynccontextmanager

import redis.asyncio as aioredis
from fastapi import FastAPI

from services.common.channel import InMemoryBroker
from services.common.config import Settings
from services.common.errors import install_error_handlers
from services.common.logging import setup_logging
from services.common.runtime import open_runtime

from .consumer import NotificationEventConsumer
from .mailer import Mailer, create_mailer

SERVICE_NAME = "notification-service"
DEFAULT_FRONTEND_URL = "http://localhost:3000"


def create_app(
    settings: Settings | None = None,
    redis: aioredis.Redis | None = None,
    broker: InMemoryBroker | None = None,
    mailer: Mailer | None = None,
    frontend_url: str | None = None,
) -> FastAPI:
    settings = settings or Settings.from_env(SERVICE_NAME, "")
    mailer = mailer or create_mailer()
    frontend_url = frontend_url or os.environ.get("FRONTEND_URL", DEFAULT_FRONTEND_URL)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging(settings.log_level)
        runtime = await open_runtime(settings, None, redis=redis, broker=broker)
        consumer = NotificationEventConsumer(runtime.channel, mailer, frontend_url)
        await consumer.start()
        app.state.runtime = runtime
        app.state.mailer = mailer
        yield
        await consumer.stop()
        await runtime.close()

    app = FastAPI(title="Notification Service", lifespan=lifespan)
    install_error_handlers(app)

    @app.get("/health")
    async def health():
        return {"status": "ok", "service": settings.service_name}

    return app


app = create_app()
