"""
Order Service — クエリハンドラ (読み取り側)
"""

import math

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from .schema import order_items, order_status_history, orders


def _iso(value) -> str | None:
    return value.isoformat() if value else None


def _order_to_dict(row) -> dict:
    return {
        "id": row.id,
        "user_id": row.user_id,
        "subtotal": str(row.subtotal),
        "shipping_cost": str(row.shipping_cost),
        "tax_amount": str(row.tax_amount),
        "total_amount": str(row.total_amount),
        "current_status": row.current_status,
        "payment_type": row.payment_type,
        "awaiting_delivery": bool(row.awaiting_delivery),
        "payment_transaction_id": row.payment_transaction_id,
        "tracking_number": row.tracking_number,
        "shipping_address": row.shipping_address,
        "created_at": _iso(row.created_at),
        "updated_at": _iso(row.updated_at),
    }


async def get_order(
    session: AsyncSession, order_id: str, user_id: str | None = None
) -> dict | None:
    """注文・明細・状態履歴(新しい順)をまとめて返す。"""
    stmt = select(orders).where(orders.c.id == order_id)
    if user_id is not None:
        stmt = stmt.where(orders.c.user_id == user_id)
    row = (await session.execute(stmt)).first()
    if not row:
        return None

    items = await session.execute(
        select(order_items)
        .where(order_items.c.order_id == order_id)
        .order_by(order_items.c.id)
    )
    history = await session.execute(
        select(order_status_history)
        .where(order_status_history.c.order_id == order_id)
        .order_by(
            order_status_history.c.timestamp.desc(), order_status_history.c.id.desc()
        )
    )

    order = _order_to_dict(row)
    order["items"] = [
        {
            "product_id": item.product_id,
            "product_name": item.product_name,
            "product_sku": item.product_sku,
            "quantity": item.quantity,
            "unit_price_at_purchase": str(item.unit_price_at_purchase),
        }
        for item in items.fetchall()
    ]
    order["status_history"] = [
        {"status": h.status, "reason": h.reason, "timestamp": _iso(h.timestamp)}
        for h in history.fetchall()
    ]
    return order


async def list_orders(
    session: AsyncSession, user_id: str, page: int = 1, limit: int = 10
) -> dict:
    """ユーザーの注文履歴(新しい順・ページング)"""
    page = max(page, 1)
    limit = max(limit, 1)
    result = await session.execute(
        select(orders)
        .where(orders.c.user_id == user_id)
        .order_by(orders.c.created_at.desc())
        .limit(limit)
        .offset((page - 1) * limit)
    )
    total = await session.scalar(
        select(func.count()).select_from(orders).where(orders.c.user_id == user_id)
    )
    total = total or 0
    return {
        "orders": [_order_to_dict(row) for row in result.fetchall()],
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "pages": math.ceil(total / limit),
        },
    }
