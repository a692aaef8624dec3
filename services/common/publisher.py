"""
Common — イベントパブリッシャー

ローカルトランザクションのコミット後に呼び出す。
発行に失敗してもローカルの書き込みは取り消されない。呼び出し側には
EventPublishError として伝わり、「下流サービスへの通知は保証されない」ことを
HTTP レスポンスに反映する。
"""

import logging
from datetime import datetime, timezone

from .channel import EventChannel
from .errors import EventPublishError
from .events import EVENT_SCHEMA_VERSION, DomainEvent, EventData

logger = logging.getLogger(__name__)


class EventPublisher:
    def __init__(
        self,
        channel: EventChannel,
        source: str,
        version: str = EVENT_SCHEMA_VERSION,
    ) -> None:
        self.channel = channel
        self.source = source
        self.version = version

    def build(self, event_type: str, data: EventData) -> DomainEvent:
        return DomainEvent(
            type=event_type,
            source=self.source,
            timestamp=datetime.now(timezone.utc),
            version=self.version,
            data=data.to_wire(),
        )

    async def publish(self, event_type: str, data: EventData) -> DomainEvent:
        event = self.build(event_type, data)
        try:
            receivers = await self.channel.publish(event.type, event.model_dump_json())
        except Exception as exc:
            logger.error(
                "Failed to publish event %s from %s: %s", event.type, self.source, exc
            )
            raise EventPublishError(
                f"{event.type} was recorded locally but could not be published"
            ) from exc
        logger.info(
            "Published event %s (source=%s, receivers=%d)",
            event.type,
            event.source,
            receivers,
        )
        return event
