"""
Cart Service — FastAPI エントリーポイント

DB を持たないサービス。カートは Redis のハッシュに置く。
ユーザーの識別は API ゲートウェイが付与する x-user-id ヘッダに任せる。
"""

from contextlib import asynccontextmanager
from decimal import Decimal

import redis.asyncio as aioredis
from fastapi import FastAPI, Header, Request
from pydantic import BaseModel, Field

from services.common.channel import InMemoryBroker
from services.common.config import Settings
from services.common.errors import install_error_handlers
from services.common.logging import setup_logging
from services.common.runtime import open_runtime

from . import commands, queries
from .consumer import CartEventConsumer
from .store import CartStore

SERVICE_NAME = "cart-service"


class AddItemRequest(BaseModel):
    item_id: str = Field(min_length=1)
    name: str
    sku: str | None = None
    quantity: int = Field(gt=0)
    price: Decimal = Field(ge=0, decimal_places=2)


class UpdateQuantityRequest(BaseModel):
    quantity: int = Field(gt=0)


def create_app(
    settings: Settings | None = None,
    redis: aioredis.Redis | None = None,
    broker: InMemoryBroker | None = None,
) -> FastAPI:
    settings = settings or Settings.from_env(SERVICE_NAME, "")

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging(settings.log_level)
        runtime = await open_runtime(settings, redis=redis, broker=broker)
        store = CartStore(runtime.redis, runtime.cache)
        consumer = CartEventConsumer(runtime.channel, store)
        await consumer.start()
        app.state.runtime = runtime
        app.state.store = store
        yield
        await consumer.stop()
        await runtime.close()

    app = FastAPI(title="Cart Service", lifespan=lifespan)
    install_error_handlers(app)

    @app.post("/carts/me/items", status_code=201)
    async def add_item(req: AddItemRequest, request: Request, x_user_id: str = Header(...)):
        item = await commands.add_item(
            request.app.state.store, x_user_id,
            req.item_id, req.name, req.sku, req.quantity, req.price,
        )
        return {"message": "Item added to cart successfully.", "item": item}

    @app.get("/carts/me")
    async def get_cart(request: Request, x_user_id: str = Header(...)):
        cart, cached = await queries.get_cart(request.app.state.store, x_user_id)
        return {**cart, "cached": cached}

    @app.patch("/carts/me/items/{item_id}")
    async def update_item(
        item_id: str,
        req: UpdateQuantityRequest,
        request: Request,
        x_user_id: str = Header(...),
    ):
        item = await commands.update_quantity(
            request.app.state.store, x_user_id, item_id, req.quantity
        )
        return {"message": "Item quantity updated successfully", "item": item}

    @app.delete("/carts/me/items/{item_id}")
    async def remove_item(item_id: str, request: Request, x_user_id: str = Header(...)):
        await commands.remove_item(request.app.state.store, x_user_id, item_id)
        return {"message": "Item removed from cart successfully"}

    @app.delete("/carts/me")
    async def clear_cart(request: Request, x_user_id: str = Header(...)):
        cleared = await commands.clear_cart(request.app.state.store, x_user_id)
        return {"message": "Cart cleared successfully", "cleared_items": cleared}

    @app.get("/health")
    async def health():
        return {"status": "ok", "service": settings.service_name}

    return app


app = create_app()
