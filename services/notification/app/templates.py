"""
Notification Service — メール本文の組み立て

イベントの data から件名と本文を作る。送信はしない。
"""

from services.common.events import (
    OrderCancelled,
    OrderItemSnapshot,
    OrderPlaced,
    OrderRefundRequested,
    PasswordResetRequested,
    UserRegistered,
)

from .mailer import EmailMessage


def _item_lines(items: list[OrderItemSnapshot]) -> str:
    return "\n".join(
        f"  - {item.product_name} x {item.quantity} @ {item.unit_price}" for item in items
    )


def verification_email(data: UserRegistered, frontend_url: str) -> EmailMessage:
    link = f"{frontend_url}/verify-email?token={data.verification_token}"
    return EmailMessage(
        to=data.email,
        subject="Verify Your E-Commerce Account",
        body=(
            f"Hi {data.name or 'there'},\n\n"
            f"Please confirm your email address:\n{link}\n\n"
            "The link expires in 10 minutes."
        ),
    )


def password_reset_email(data: PasswordResetRequested, frontend_url: str) -> EmailMessage:
    link = f"{frontend_url}/reset-password?token={data.reset_token}"
    return EmailMessage(
        to=data.email,
        subject="Reset Your E-Commerce Password",
        body=(
            f"Use the link below to choose a new password:\n{link}\n\n"
            f"The link expires at {data.expires_at.isoformat()}.\n"
            "If you did not request a reset, you can ignore this email."
        ),
    )


def order_confirmation_email(data: OrderPlaced) -> EmailMessage:
    payment = (
        "You will pay on delivery."
        if data.payment_type == "CASH_ON_DELIVERY"
        else "We will confirm once your payment has been processed."
    )
    return EmailMessage(
        to=data.email,
        subject=f"Order Confirmation - #{data.order_id}",
        body=(
            f"Thanks for your order #{data.order_id}.\n\n"
            f"{_item_lines(data.items)}\n\n"
            f"Subtotal: {data.subtotal}\n"
            f"Shipping: {data.shipping_cost}\n"
            f"Tax:      {data.tax_amount}\n"
            f"Total:    {data.total_amount}\n\n"
            f"{payment}"
        ),
    )


def order_cancellation_email(data: OrderCancelled) -> EmailMessage:
    refund = (
        "A refund for your payment has been initiated."
        if data.requires_refund
        else "No payment was taken for this order."
    )
    return EmailMessage(
        to=data.email,
        subject=f"Order Cancelled - #{data.order_id}",
        body=(
            f"Your order #{data.order_id} has been cancelled.\n"
            f"Reason: {data.reason or 'not given'}\n\n"
            f"{_item_lines(data.items)}\n\n"
            f"{refund}"
        ),
    )


def refund_requested_email(data: OrderRefundRequested) -> EmailMessage:
    return EmailMessage(
        to=data.email,
        subject=f"Refund Initiated - Order #{data.order_id}",
        body=(
            f"We have started a refund of {data.amount} for order #{data.order_id}.\n"
            f"Reason: {data.reason}"
        ),
    )
