"""
User Service — コマンドハンドラ

EMAIL_VERIFIED は再送されうるので、プロフィールの作成は「なければ作る」。
既にあれば何もしない(エラーにしない)。
"""

import logging
from datetime import datetime, timezone

from sqlalchemy import insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from services.common.errors import ConflictError, NotFoundError

from .queries import get_profile
from .schema import user_profiles

logger = logging.getLogger(__name__)


async def create_profile_if_absent(session: AsyncSession, user_id: str, email: str) -> bool:
    """作成したら True、既にあれば False。"""
    email = email.lower()
    now = datetime.now(timezone.utc)
    try:
        async with session.begin():
            existing = await session.scalar(
                select(user_profiles.c.user_id).where(
                    (user_profiles.c.user_id == user_id) | (user_profiles.c.email == email)
                )
            )
            if existing is not None:
                logger.warning("Profile already exists for user %s (%s); skipping",
                               user_id, email)
                return False
            await session.execute(
                insert(user_profiles).values(
                    user_id=user_id, email=email, created_at=now, updated_at=now
                )
            )
    except IntegrityError:
        logger.info("Profile for user %s was created concurrently", user_id)
        return False

    logger.info("Profile created for user %s", user_id)
    return True


async def update_profile(session: AsyncSession, user_id: str, changes: dict) -> dict:
    try:
        async with session.begin():
            result = await session.execute(
                update(user_profiles)
                .where(user_profiles.c.user_id == user_id)
                .values(**changes, updated_at=datetime.now(timezone.utc))
            )
            if result.rowcount == 0:
                raise NotFoundError("User profile not found")
    except IntegrityError as exc:
        raise ConflictError("Profile update conflicts with an existing profile") from exc

    logger.info("Profile updated for user %s: %s", user_id, sorted(changes))
    return await get_profile(session, user_id)
