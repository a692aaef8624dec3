"""
Common — ドメインイベント定義

イベントは「既に起きた事実」であり、コマンドではない。
過去形で命名し、不変(immutable)として扱う。

ワイヤ形式(全サービス共通):
    { type, source, timestamp, version, data }

type はそのまま Pub/Sub のチャネル名になる。
data のフィールド名はワイヤ上では camelCase に統一する。
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

EVENT_SCHEMA_VERSION = "1.0.0"


class EventType:
    # order-service
    ORDER_PLACED = "ORDER_PLACED"
    ORDER_PAID = "ORDER_PAID"
    ORDER_CANCELLED = "ORDER_CANCELLED"
    ORDER_REFUND_REQUESTED = "ORDER_REFUND_REQUESTED"
    ORDER_COMPLETED = "ORDER_COMPLETED"
    # payment-service
    PAYMENT_PROCESSED = "PAYMENT_PROCESSED"
    PAYMENT_REFUNDED = "PAYMENT_REFUNDED"
    # shipping-service
    ORDER_SHIPPED = "ORDER_SHIPPED"
    ORDER_DELIVERED = "ORDER_DELIVERED"
    # catalog-service
    PRODUCT_PRICE_CHANGED = "PRODUCT_PRICE_CHANGED"
    PRODUCT_STATUS_CHANGED = "PRODUCT_STATUS_CHANGED"
    PRODUCT_DELETED = "PRODUCT_DELETED"
    # auth-service
    USER_REGISTERED = "USER_REGISTERED"
    EMAIL_VERIFIED = "EMAIL_VERIFIED"
    PASSWORD_RESET_REQUESTED = "PASSWORD_RESET_REQUESTED"


class DomainEvent(BaseModel):
    """イベントのエンベロープ。timestamp はビジネス時刻ではなく発行時刻。"""

    model_config = ConfigDict(frozen=True)

    type: str
    source: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    version: str = EVENT_SCHEMA_VERSION
    data: dict[str, Any]


class EventData(BaseModel):
    """data 部の基底クラス。Python 側は snake_case、ワイヤ上は camelCase。"""

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, frozen=True
    )

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


# ── Order ────────────────────────────────────────


class OrderItemSnapshot(EventData):
    """購入時点の商品情報。カタログが後で変わっても再参照しない。"""

    product_id: str
    product_name: str
    product_sku: str | None = None
    quantity: int
    unit_price: Decimal


class OrderPlaced(EventData):
    order_id: str
    status: str
    user_id: str
    payment_type: str
    items: list[OrderItemSnapshot]
    subtotal: Decimal
    shipping_cost: Decimal
    tax_amount: Decimal
    total_amount: Decimal
    shipping_address: dict[str, Any] = Field(default_factory=dict)
    email: str = ""


class OrderPaid(EventData):
    order_id: str
    user_id: str
    payment_transaction_id: str
    shipping_address: dict[str, Any] = Field(default_factory=dict)
    email: str = ""


class OrderCancelled(EventData):
    order_id: str
    status: str
    requires_refund: bool
    previous_status: str
    items: list[OrderItemSnapshot]
    user_id: str
    reason: str | None = None
    email: str = ""


class OrderRefundRequested(EventData):
    order_id: str
    payment_transaction_id: str
    amount: Decimal
    reason: str = "Order cancellation"
    email: str = ""


class OrderCompleted(EventData):
    order_id: str
    user_id: str


# ── Payment ──────────────────────────────────────


class PaymentProcessed(EventData):
    payment_transaction_id: str
    order_id: str
    user_id: str
    message: str = "Payment successful"


class PaymentRefunded(EventData):
    order_id: str
    payment_transaction_id: str
    refund_transaction_id: str
    amount: Decimal


# ── Shipping ─────────────────────────────────────


class OrderShipped(EventData):
    order_id: str
    user_id: str
    tracking_number: str
    estimated_delivery: datetime
    shipped_at: datetime


class OrderDelivered(EventData):
    order_id: str
    user_id: str
    tracking_number: str
    delivered_at: datetime


# ── Catalog ──────────────────────────────────────


class ProductPriceChanged(EventData):
    product_id: str
    name: str
    previous_price: Decimal
    price: Decimal


class ProductStatusChanged(EventData):
    product_id: str
    name: str
    is_active: bool


class ProductDeleted(EventData):
    product_id: str


# ── Auth ─────────────────────────────────────────


class UserRegistered(EventData):
    user_id: str
    email: str
    name: str
    verification_token: str


class EmailVerified(EventData):
    user_id: str
    email: str


class PasswordResetRequested(EventData):
    email: str
    reset_token: str
    expires_at: datetime
