"""
Payment Service — クエリハンドラ
"""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .schema import payment_transactions


async def transactions_for_order(session: AsyncSession, order_id: str) -> list[dict]:
    result = await session.execute(
        select(payment_transactions)
        .where(payment_transactions.c.order_id == order_id)
        .order_by(payment_transactions.c.created_at)
    )
    return [
        {
            "id": row.id,
            "order_id": row.order_id,
            "user_id": row.user_id,
            "amount": str(row.amount),
            "currency": row.currency,
            "type": row.type,
            "status": row.status,
            "gateway_transaction_id": row.gateway_transaction_id,
            "original_transaction_id": row.original_transaction_id,
            "failure_reason": row.failure_reason,
            "created_at": row.created_at.isoformat(),
        }
        for row in result.fetchall()
    ]
