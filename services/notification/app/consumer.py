"""
Notification Service — イベントコンシューマー

  USER_REGISTERED          → メールアドレス確認メール
  PASSWORD_RESET_REQUESTED → パスワード再設定メール
  ORDER_PLACED             → 注文確認メール
  ORDER_CANCELLED          → キャンセル通知メール
  ORDER_REFUND_REQUESTED   → 返金開始の通知メール

宛先が空のイベントは送らずにスキップする。
送信失敗はログに残し、例外は呼び出し元へ伝えない。
"""

import logging

from services.common.channel import EventChannel
from services.common.events import (
    DomainEvent,
    EventType,
    OrderCancelled,
    OrderPlaced,
    OrderRefundRequested,
    PasswordResetRequested,
    UserRegistered,
)
from services.common.subscriber import EventConsumer

from . import templates
from .mailer import EmailMessage, Mailer

logger = logging.getLogger(__name__)


class NotificationEventConsumer(EventConsumer):
    name = "notification-consumer"

    def __init__(self, channel: EventChannel, mailer: Mailer, frontend_url: str) -> None:
        super().__init__(channel)
        self.mailer = mailer
        self.frontend_url = frontend_url.rstrip("/")

    def handlers(self):
        return {
            EventType.USER_REGISTERED: self.handle_user_registered,
            EventType.PASSWORD_RESET_REQUESTED: self.handle_password_reset_requested,
            EventType.ORDER_PLACED: self.handle_order_placed,
            EventType.ORDER_CANCELLED: self.handle_order_cancelled,
            EventType.ORDER_REFUND_REQUESTED: self.handle_refund_requested,
        }

    async def _deliver(self, kind: str, message: EmailMessage) -> None:
        if not message.to:
            logger.warning("Skipping %s email: no recipient", kind)
            return
        try:
            await self.mailer.send(message)
        except OSError:
            logger.exception("Failed to send %s email to %s", kind, message.to)

    async def handle_user_registered(self, event: DomainEvent) -> None:
        data = UserRegistered.model_validate(event.data)
        if not data.verification_token:
            logger.warning("USER_REGISTERED for %s has no verification token", data.user_id)
            return
        await self._deliver("verification", templates.verification_email(data, self.frontend_url))

    async def handle_password_reset_requested(self, event: DomainEvent) -> None:
        data = PasswordResetRequested.model_validate(event.data)
        await self._deliver(
            "password reset", templates.password_reset_email(data, self.frontend_url)
        )

    async def handle_order_placed(self, event: DomainEvent) -> None:
        data = OrderPlaced.model_validate(event.data)
        await self._deliver("order confirmation", templates.order_confirmation_email(data))

    async def handle_order_cancelled(self, event: DomainEvent) -> None:
        data = OrderCancelled.model_validate(event.data)
        await self._deliver("order cancellation", templates.order_cancellation_email(data))

    async def handle_refund_requested(self, event: DomainEvent) -> None:
        data = OrderRefundRequested.model_validate(event.data)
        await self._deliver("refund", templates.refund_requested_email(data))
