"""
Common — イベントコンシューマー基底クラス

サービス起動時に、関心のあるイベント種別ごとにハンドラを1つだけ登録する。
受信したメッセージはデシリアライズして同期的にハンドラへ渡す。

ハンドラが例外を投げた場合はイベント全体をログに残して再送出する。
チャネルにはリトライも DLQ もないため、そのイベントの副作用は失われる。
同じイベントが複数回届くこともあるので、ハンドラは冪等に書くこと。
"""

import logging
from collections.abc import Awaitable, Callable

from pydantic import ValidationError

from .channel import EventChannel
from .events import DomainEvent

logger = logging.getLogger(__name__)

EventHandler = Callable[[DomainEvent], Awaitable[None]]


class EventConsumer:
    name = "event-consumer"

    def __init__(self, channel: EventChannel) -> None:
        self.channel = channel
        self.is_running = False

    def handlers(self) -> dict[str, EventHandler]:
        """イベント種別 → ハンドラ。サブクラスで定義する。"""
        return {}

    async def start(self) -> None:
        if self.is_running:
            logger.warning("%s is already running", self.name)
            return
        for event_type in self.handlers():
            await self.channel.subscribe(event_type, self._receiver(event_type))
            logger.info("%s subscribed to %s", self.name, event_type)
        self.is_running = True
        logger.info("%s started", self.name)

    async def stop(self) -> None:
        if not self.is_running:
            return
        for event_type in self.handlers():
            await self.channel.unsubscribe(event_type)
        self.is_running = False
        logger.info("%s stopped", self.name)

    def _receiver(self, event_type: str) -> Callable[[str], Awaitable[None]]:
        async def receive(payload: str) -> None:
            await self.dispatch(event_type, payload)

        return receive

    async def dispatch(self, event_type: str, payload: str) -> None:
        try:
            event = DomainEvent.model_validate_json(payload)
        except ValidationError:
            logger.error("%s received malformed %s payload: %s", self.name, event_type, payload)
            raise

        handler = self.handlers().get(event.type)
        if handler is None:
            logger.warning("%s has no handler for %s", self.name, event.type)
            return

        try:
            await handler(event)
        except Exception:
            logger.exception(
                "%s failed to process %s event: %s", self.name, event.type, payload
            )
            raise
