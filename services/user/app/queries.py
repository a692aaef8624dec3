"""
User Service — クエリハンドラ
"""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .schema import user_profiles


def profile_to_dict(row) -> dict:
    return {
        "user_id": row.user_id,
        "email": row.email,
        "first_name": row.first_name,
        "last_name": row.last_name,
        "phone": row.phone,
        "created_at": row.created_at.isoformat(),
        "updated_at": row.updated_at.isoformat(),
    }


async def get_profile(session: AsyncSession, user_id: str) -> dict | None:
    row = (
        await session.execute(select(user_profiles).where(user_profiles.c.user_id == user_id))
    ).first()
    return profile_to_dict(row) if row else None
