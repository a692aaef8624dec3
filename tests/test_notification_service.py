import logging
import smtplib
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from services.common.events import (
    EventType,
    OrderCancelled,
    OrderItemSnapshot,
    OrderPlaced,
    OrderRefundRequested,
    PasswordResetRequested,
    UserRegistered,
)
from services.notification.app.main import create_app
from services.notification.app.mailer import LoggingMailer, SmtpMailer, create_mailer

MUG = OrderItemSnapshot(
    product_id="p-1", product_name="Mug", quantity=2, unit_price=Decimal("10.00")
)


class FailingMailer(LoggingMailer):
    async def send(self, message):
        raise smtplib.SMTPServerDisconnected("connection lost")


@pytest.fixture
def mailer():
    return LoggingMailer()


@pytest.fixture
async def notification(settings_for, redis, broker, serve, mailer):
    app = create_app(
        settings_for("notification-service"), redis=redis, broker=broker,
        mailer=mailer, frontend_url="https://shop.example/",
    )
    async with serve(app) as client:
        yield client


async def test_health(notification):
    resp = await notification.get("/health")
    assert resp.json() == {"status": "ok", "service": "notification-service"}


async def test_registration_sends_verification_link(notification, publisher, mailer):
    await publisher.publish(
        EventType.USER_REGISTERED,
        UserRegistered(user_id="u-1", email="alice@example.com", name="Alice",
                       verification_token="tok-123"),
    )

    [message] = mailer.sent
    assert message.to == "alice@example.com"
    assert message.subject == "Verify Your E-Commerce Account"
    assert "https://shop.example/verify-email?token=tok-123" in message.body
    assert "Hi Alice" in message.body


async def test_registration_without_token_is_skipped(notification, publisher, mailer, caplog):
    with caplog.at_level(logging.WARNING):
        await publisher.publish(
            EventType.USER_REGISTERED,
            UserRegistered(user_id="u-2", email="bob@example.com", name="Bob",
                           verification_token=""),
        )

    assert mailer.sent == []
    assert "has no verification token" in caplog.text


async def test_password_reset_sends_reset_link(notification, publisher, mailer):
    await publisher.publish(
        EventType.PASSWORD_RESET_REQUESTED,
        PasswordResetRequested(
            email="alice@example.com", reset_token="reset-9",
            expires_at=datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc),
        ),
    )

    [message] = mailer.sent
    assert message.subject == "Reset Your E-Commerce Password"
    assert "https://shop.example/reset-password?token=reset-9" in message.body
    assert "2026-01-01T12:00:00+00:00" in message.body


async def test_order_placed_sends_confirmation(notification, publisher, mailer):
    await publisher.publish(
        EventType.ORDER_PLACED,
        OrderPlaced(
            order_id="o-1", status="PENDING", user_id="u-1", payment_type="CASH_ON_DELIVERY",
            items=[MUG], subtotal=Decimal("20.00"), shipping_cost=Decimal("5.99"),
            tax_amount=Decimal("1.60"), total_amount=Decimal("27.59"),
            email="alice@example.com",
        ),
    )

    [message] = mailer.sent
    assert message.subject == "Order Confirmation - #o-1"
    assert "Mug x 2 @ 10.00" in message.body
    assert "Total:    27.59" in message.body
    assert "pay on delivery" in message.body


async def test_order_without_email_is_skipped(notification, publisher, mailer, caplog):
    with caplog.at_level(logging.WARNING):
        await publisher.publish(
            EventType.ORDER_PLACED,
            OrderPlaced(
                order_id="o-2", status="PENDING", user_id="u-1", payment_type="PAY_NOW",
                items=[MUG], subtotal=Decimal("20.00"), shipping_cost=Decimal("0"),
                tax_amount=Decimal("0"), total_amount=Decimal("20.00"),
            ),
        )

    assert mailer.sent == []
    assert "Skipping order confirmation email: no recipient" in caplog.text


async def test_cancellation_and_refund_emails(notification, publisher, mailer):
    await publisher.publish(
        EventType.ORDER_CANCELLED,
        OrderCancelled(
            order_id="o-3", status="CANCELLED", requires_refund=True, previous_status="PAID",
            items=[MUG], user_id="u-1", reason="Changed my mind", email="alice@example.com",
        ),
    )
    await publisher.publish(
        EventType.ORDER_REFUND_REQUESTED,
        OrderRefundRequested(
            order_id="o-3", payment_transaction_id="txn-1", amount=Decimal("27.59"),
            email="alice@example.com",
        ),
    )

    cancelled, refund = mailer.sent
    assert cancelled.subject == "Order Cancelled - #o-3"
    assert "Reason: Changed my mind" in cancelled.body
    assert "refund for your payment has been initiated" in cancelled.body
    assert refund.subject == "Refund Initiated - Order #o-3"
    assert "27.59" in refund.body


@pytest.mark.parametrize("mailer", [FailingMailer()])
async def test_send_failure_is_logged(notification, publisher, caplog):
    await publisher.publish(
        EventType.PASSWORD_RESET_REQUESTED,
        PasswordResetRequested(
            email="alice@example.com", reset_token="reset-1",
            expires_at=datetime(2026, 1, 1, tzinfo=timezone.utc),
        ),
    )

    assert "Failed to send password reset email to alice@example.com" in caplog.text


def test_mailer_transport_is_chosen_from_env(monkeypatch):
    monkeypatch.setenv("MAIL_TRANSPORT", "smtp")
    monkeypatch.setenv("MAIL_HOST", "smtp.example")
    monkeypatch.setenv("MAIL_PORT", "2525")

    mailer = create_mailer()

    assert isinstance(mailer, SmtpMailer)
    assert (mailer.host, mailer.port) == ("smtp.example", 2525)
    assert isinstance(create_mailer("log"), LoggingMailer)
