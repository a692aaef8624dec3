"""
User Service — イベントコンシューマー

  EMAIL_VERIFIED → プロフィールを作成 (なければ)
"""

import logging

from sqlalchemy.orm import sessionmaker

from services.common.channel import EventChannel
from services.common.events import DomainEvent, EmailVerified, EventType
from services.common.subscriber import EventConsumer

from . import commands

logger = logging.getLogger(__name__)


class UserEventConsumer(EventConsumer):
    name = "user-consumer"

    def __init__(self, channel: EventChannel, async_session_factory: sessionmaker) -> None:
        super().__init__(channel)
        self.async_session = async_session_factory

    def handlers(self):
        return {EventType.EMAIL_VERIFIED: self.handle_email_verified}

    async def handle_email_verified(self, event: DomainEvent) -> None:
        data = EmailVerified.model_validate(event.data)
        logger.info("Received EMAIL_VERIFIED for user %s", data.user_id)
        async with self.async_session() as session:
            await commands.create_profile_if_absent(session, data.user_id, data.email)
