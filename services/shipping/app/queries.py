"""
Shipping Service — クエリハンドラ
"""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .schema import shipments


def _iso(value) -> str | None:
    return value.isoformat() if value else None


def _shipment_to_dict(row) -> dict:
    return {
        "id": row.id,
        "order_id": row.order_id,
        "user_id": row.user_id,
        "tracking_number": row.tracking_number,
        "status": row.status,
        "shipping_address": row.shipping_address,
        "estimated_delivery": _iso(row.estimated_delivery),
        "shipped_at": _iso(row.shipped_at),
        "delivered_at": _iso(row.delivered_at),
    }


async def get_shipment(session: AsyncSession, *criteria) -> dict | None:
    row = (await session.execute(select(shipments).where(*criteria))).first()
    return _shipment_to_dict(row) if row else None


async def shipments_for_user(session: AsyncSession, user_id: str) -> list[dict]:
    result = await session.execute(
        select(shipments)
        .where(shipments.c.user_id == user_id)
        .order_by(shipments.c.created_at.desc())
    )
    return [_shipment_to_dict(row) for row in result.fetchall()]
