"""
Order Service — テーブル定義

orders                 注文ヘッダ。金額は固定小数点 (Numeric) で持つ
order_items            購入時点の商品スナップショット。カタログを再参照しない
order_status_history   追記専用の監査ログ。状態遷移ごとに1行
"""

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    Text,
)

metadata = MetaData()

MONEY = Numeric(10, 2)

orders = Table(
    "orders",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("user_id", String(64), nullable=False, index=True),
    Column("subtotal", MONEY, nullable=False),
    Column("shipping_cost", MONEY, nullable=False),
    Column("tax_amount", MONEY, nullable=False),
    Column("total_amount", MONEY, nullable=False),
    Column("current_status", String(16), nullable=False, index=True),
    Column("payment_type", String(32), nullable=False),
    Column("awaiting_delivery", Boolean, nullable=False, default=False),
    Column("payment_transaction_id", String(64)),
    Column("tracking_number", String(64)),
    Column("shipping_address", JSON, nullable=False),
    Column("email", String(255), nullable=False, default=""),
    Column("created_at", DateTime(timezone=True), nullable=False, index=True),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)

order_items = Table(
    "order_items",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("order_id", String(36), ForeignKey("orders.id"), nullable=False, index=True),
    Column("product_id", String(64), nullable=False, index=True),
    Column("product_name", Text, nullable=False),
    Column("product_sku", String(64)),
    Column("quantity", Integer, nullable=False),
    Column("unit_price_at_purchase", MONEY, nullable=False),
)

order_status_history = Table(
    "order_status_history",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("order_id", String(36), ForeignKey("orders.id"), nullable=False, index=True),
    Column("status", String(16), nullable=False),
    Column("reason", Text),
    Column("timestamp", DateTime(timezone=True), nullable=False),
)
